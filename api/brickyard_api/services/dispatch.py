from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any

from brickyard_api.services.errors import TransientDependencyError
from brickyard_api.services.jobs import JobRegistry, JobType

logger = logging.getLogger(__name__)


def lease_expired(dispatch: dict[str, Any], now: datetime | None = None) -> bool:
    lease_expires_at = dispatch.get("lease_expires_at")
    if dispatch.get("status") != "claimed" or not isinstance(lease_expires_at, datetime):
        return False
    return lease_expires_at <= (now or datetime.now(timezone.utc))


class Dispatcher:
    """Hands created jobs to the out-of-process executor through the dispatch queue.

    Delivery is at-least-once: a claimed dispatch whose lease runs out is requeued, so
    every stage handler has to tolerate seeing the same job more than once.
    """

    def __init__(
        self,
        repository: Any,
        *,
        wait_seconds: float = 2.0,
        lease_seconds: int = 300,
        max_attempts: int = 5,
    ) -> None:
        self.repository = repository
        self.wait_seconds = wait_seconds
        self.lease_seconds = lease_seconds
        self.max_attempts = max_attempts

    async def dispatch(self, job: dict[str, Any], params: dict[str, Any] | None = None) -> dict[str, Any] | None:
        """Enqueue ``{job_id, stage, params}``; returns ``None`` if the bounded wait ran out."""
        try:
            dispatch = await asyncio.wait_for(
                self.repository.enqueue_dispatch(job_id=job["id"], stage=job["type"], params=params or {}),
                timeout=self.wait_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning(
                "dispatch wait exceeded job_id=%s stage=%s wait_seconds=%s",
                job["id"],
                job["type"],
                self.wait_seconds,
            )
            return None
        logger.info("job dispatched job_id=%s stage=%s dispatch_id=%s", job["id"], job["type"], dispatch["id"])
        return dispatch

    async def claim(self, stages: list[str], worker_id: str, lease_seconds: int | None = None) -> dict[str, Any] | None:
        if not stages:
            return None
        return await self.repository.claim_next_dispatch(
            stages=stages,
            worker_id=worker_id,
            lease_seconds=lease_seconds or self.lease_seconds,
        )

    async def ack(self, dispatch_id: str, worker_id: str) -> dict[str, Any]:
        return await self.repository.ack_dispatch(dispatch_id, worker_id=worker_id)

    async def renew(self, dispatch_id: str, worker_id: str, lease_seconds: int | None = None) -> dict[str, Any]:
        """Extend the lease of a dispatch this worker still holds."""
        return await self.repository.renew_dispatch_lease(
            dispatch_id,
            worker_id=worker_id,
            lease_seconds=lease_seconds or self.lease_seconds,
        )

    async def requeue_expired(self, limit: int = 100) -> dict[str, int]:
        result = await self.repository.requeue_expired_dispatches(max_attempts=self.max_attempts, limit=limit)
        if result["requeued"] or result["dead"]:
            logger.info("expired dispatch leases requeued=%s dead=%s", result["requeued"], result["dead"])
        return result


async def launch_job(
    registry: JobRegistry,
    dispatcher: Dispatcher,
    job_type: JobType | str,
    marketplace: str,
    *,
    dataset_id: str | None = None,
    metadata: dict[str, Any] | None = None,
) -> tuple[dict[str, Any], dict[str, Any] | None]:
    """Create a job and hand it to the executor without waiting for the work itself."""
    job = await registry.create_job(job_type, marketplace, dataset_id=dataset_id, metadata=metadata)
    params = {"job_id": job["id"], "dataset_id": job["dataset_id"], **job["metadata"]}
    try:
        dispatch = await dispatcher.dispatch(job, params)
    except TransientDependencyError as exc:
        await registry.fail(job["id"], f"Failed to dispatch job: {exc}")
        raise
    return job, dispatch
