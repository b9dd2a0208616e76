from __future__ import annotations

import logging
from typing import Any

import httpx

logger = logging.getLogger(__name__)


def _error_detail(exc: httpx.HTTPStatusError) -> str:
    try:
        detail = exc.response.json().get("detail")
    except ValueError:
        detail = None
    return str(detail or exc.response.text or exc)


async def execute_reconcile(
    dispatch: dict[str, Any],
    client: Any,
    *,
    batch_size: int = 100,
    lease_seconds: int | None = None,
) -> dict[str, Any]:
    """Drive one reconcile job through plan, batches and finalize.

    Every step is keyed by job id and batch index on the API side, so a redelivered
    dispatch replays safely. With ``lease_seconds`` set the dispatch lease is renewed
    after each batch. A 409 means the job is already terminal (cancelled, timed out or
    finished by an earlier delivery) or the lease moved to another worker, and the
    handler stops without failing the job.
    """
    job_id = dispatch["job_id"]
    dispatch_id = dispatch.get("id")
    batch_size = max(1, batch_size)

    try:
        await client.heartbeat_job(job_id, message="Reconcile picked up by worker")
        listing_ids = await client.plan_reconcile(job_id)
        for index, start in enumerate(range(0, len(listing_ids), batch_size)):
            batch = await client.reconcile_batch(job_id, index, listing_ids[start : start + batch_size])
            logger.info(
                "reconcile batch done job_id=%s index=%s succeeded=%s failed=%s",
                job_id,
                index,
                batch.get("succeeded"),
                batch.get("failed"),
            )
            if lease_seconds and dispatch_id:
                await client.renew_dispatch(dispatch_id, lease_seconds)
        job = await client.finalize_reconcile(job_id)
    except httpx.HTTPStatusError as exc:
        if exc.response.status_code == 409:
            logger.info("reconcile job or dispatch lease no longer held; stopping job_id=%s", job_id)
            return {"handled": True, "job_id": job_id, "stopped": True}

        error = f"Critical error: {_error_detail(exc)}"
        logger.error("reconcile step failed job_id=%s status=%s error=%s", job_id, exc.response.status_code, error)
        await _fail_job(client, job_id, error)
        return {"handled": True, "job_id": job_id, "status": "failed", "error": error}

    return {"handled": True, "job_id": job_id, "status": job.get("status"), "listings": len(listing_ids)}


async def _fail_job(client: Any, job_id: str, error: str) -> None:
    try:
        await client.fail_job(job_id, error)
    except httpx.HTTPStatusError as exc:
        if exc.response.status_code != 409:
            raise
