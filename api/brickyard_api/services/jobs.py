from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any

from brickyard_api.services.errors import ValidationError

logger = logging.getLogger(__name__)


class JobType(str, Enum):
    CAPTURE = "capture"
    ENRICH = "enrich"
    MATERIALIZE = "materialize"
    SANITIZE = "sanitize"
    RECONCILE = "reconcile"
    ANALYZE = "analyze"


class JobStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.TIMED_OUT})
DEFAULT_JOB_TIMEOUT = timedelta(minutes=30)


def job_timeout(job_type: JobType) -> timedelta:
    if job_type is JobType.CAPTURE:
        return timedelta(minutes=30)
    if job_type is JobType.ENRICH:
        return timedelta(minutes=60)
    if job_type is JobType.ANALYZE:
        return timedelta(minutes=15)
    if job_type in (JobType.MATERIALIZE, JobType.SANITIZE, JobType.RECONCILE):
        return DEFAULT_JOB_TIMEOUT
    raise ValidationError(f"unhandled job type: {job_type!r}")


def resolve_job_type(raw: JobType | str, *, reject_unknown: bool = False) -> tuple[str, timedelta]:
    """Map a requested job type to its stored name and timeout.

    Unknown names fall back to the default timeout unless ``reject_unknown`` is set,
    in which case they raise ``ValidationError``.
    """
    if isinstance(raw, JobType):
        return raw.value, job_timeout(raw)
    try:
        known = JobType(raw)
    except ValueError:
        if reject_unknown:
            raise ValidationError(f"unknown job type: {raw!r}") from None
        logger.warning("unknown job type=%s; using default timeout of %s", raw, DEFAULT_JOB_TIMEOUT)
        return raw, DEFAULT_JOB_TIMEOUT
    return known.value, job_timeout(known)


class JobRegistry:
    """Creates jobs and applies heartbeat and terminal transitions.

    Execution happens out of process; this class only writes the job record.
    """

    def __init__(self, repository: Any, *, reject_unknown_types: bool = False) -> None:
        self.repository = repository
        self.reject_unknown_types = reject_unknown_types

    async def create_job(
        self,
        job_type: JobType | str,
        marketplace: str,
        *,
        dataset_id: str | None = None,
        metadata: dict[str, Any] | None = None,
        now: datetime | None = None,
    ) -> dict[str, Any]:
        type_name, timeout = resolve_job_type(job_type, reject_unknown=self.reject_unknown_types)
        started_at = now or datetime.now(timezone.utc)

        clean_metadata = dict(metadata or {})
        legacy_dataset_id = clean_metadata.pop("dataset_id", None)
        resolved_dataset_id = dataset_id or (legacy_dataset_id if isinstance(legacy_dataset_id, str) else None)

        job = await self.repository.insert_job(
            job_type=type_name,
            marketplace=marketplace,
            dataset_id=resolved_dataset_id,
            started_at=started_at,
            timeout_at=started_at + timeout,
            metadata=clean_metadata,
            last_update="Job started",
        )
        logger.info(
            "job created id=%s type=%s dataset_id=%s timeout_at=%s",
            job["id"],
            type_name,
            resolved_dataset_id,
            job["timeout_at"].isoformat(),
        )
        return job

    async def get_job(self, job_id: str) -> dict[str, Any]:
        return await self.repository.get_job(job_id)

    async def list_jobs(
        self,
        *,
        job_type: str | None = None,
        status: str | None = None,
        dataset_id: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[dict[str, Any]]:
        return await self.repository.list_jobs(
            job_type=job_type,
            status=status,
            dataset_id=dataset_id,
            limit=limit,
            offset=offset,
        )

    async def heartbeat(
        self,
        job_id: str,
        metadata_patch: dict[str, Any] | None = None,
        *,
        message: str | None = None,
        now: datetime | None = None,
    ) -> dict[str, Any]:
        return await self.repository.touch_running_job(
            job_id,
            metadata_patch=metadata_patch or {},
            last_update=message,
            now=now or datetime.now(timezone.utc),
        )

    async def complete(
        self,
        job_id: str,
        summary: dict[str, Any] | None = None,
        *,
        message: str | None = None,
        now: datetime | None = None,
    ) -> dict[str, Any]:
        job = await self.repository.finish_running_job(
            job_id,
            status=JobStatus.COMPLETED.value,
            error_message=None,
            metadata_patch=summary or {},
            last_update=message or "Job completed",
            now=now or datetime.now(timezone.utc),
        )
        logger.info("job completed id=%s type=%s", job_id, job["type"])
        return job

    async def fail(
        self,
        job_id: str,
        error: str,
        *,
        metadata_patch: dict[str, Any] | None = None,
        now: datetime | None = None,
    ) -> dict[str, Any]:
        if not error or not error.strip():
            raise ValidationError("error message must be a non-empty string")
        job = await self.repository.finish_running_job(
            job_id,
            status=JobStatus.FAILED.value,
            error_message=error,
            metadata_patch=metadata_patch or {},
            last_update=f"Job failed: {error}",
            now=now or datetime.now(timezone.utc),
        )
        logger.warning("job failed id=%s type=%s error=%s", job_id, job["type"], error)
        return job

    async def cancel(self, job_id: str, reason: str | None = None) -> dict[str, Any]:
        return await self.fail(job_id, f"Cancelled: {reason or 'requested by operator'}")
