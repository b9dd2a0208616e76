from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

logger = logging.getLogger(__name__)

TIMED_OUT_LAST_UPDATE = "Job timed out: No progress detected or exceeded maximum runtime"


@dataclass(slots=True, frozen=True)
class StaleJobCriteria:
    inactivity: timedelta = timedelta(minutes=10)
    max_runtime: timedelta = timedelta(minutes=60)

    def inactive_before(self, now: datetime) -> datetime:
        return now - self.inactivity

    def started_before(self, now: datetime) -> datetime:
        return now - self.max_runtime


@dataclass(slots=True)
class CleanupResult:
    jobs_updated: int
    job_ids: list[str] = field(default_factory=list)
    strategy: str = "primary"


def is_stale(job: dict[str, Any], criteria: StaleJobCriteria, now: datetime | None = None) -> bool:
    """True for a running job with no heartbeat, a passed deadline, or an exceeded ceiling."""
    now = now or datetime.now(timezone.utc)
    if job.get("status") != "running":
        return False

    updated_at = _as_datetime(job.get("updated_at"))
    timeout_at = _as_datetime(job.get("timeout_at"))
    started_at = _as_datetime(job.get("started_at"))

    if updated_at is not None and updated_at < criteria.inactive_before(now):
        return True
    if timeout_at is not None and timeout_at < now:
        return True
    if started_at is not None and started_at < criteria.started_before(now):
        return True
    return False


def timed_out_message(started_at: datetime | None, now: datetime) -> str:
    if started_at is None:
        return "Job timed out"
    minutes = round((now - started_at).total_seconds() / 60.0, 1)
    return f"Job timed out after {minutes} minutes"


class StaleJobDetector:
    """Finds running jobs whose worker died or hung and moves them to timed_out.

    The primary strategy is a single atomic bulk transition in the store. If it raises,
    the row-by-row fallback runs in this process. Both are idempotent: a second sweep
    matches nothing that was already transitioned.
    """

    def __init__(self, repository: Any, criteria: StaleJobCriteria | None = None) -> None:
        self.repository = repository
        self.criteria = criteria or StaleJobCriteria()

    async def cleanup(self, *, prefer_fallback: bool = False, now: datetime | None = None) -> CleanupResult:
        if prefer_fallback:
            return await self.cleanup_fallback(now=now)

        try:
            return await self.cleanup_primary(now=now)
        except Exception as primary_exc:
            logger.warning("stale job sweep primary strategy failed; falling back: %s", primary_exc)
            try:
                return await self.cleanup_fallback(now=now)
            except Exception as fallback_exc:
                logger.error("stale job sweep fallback strategy failed: %s", fallback_exc)
                raise primary_exc from fallback_exc

    async def cleanup_primary(self, *, now: datetime | None = None) -> CleanupResult:
        job_ids = await self.repository.mark_stale_jobs_timed_out(
            inactivity=self.criteria.inactivity,
            max_runtime=self.criteria.max_runtime,
            now=now,
        )
        if job_ids:
            logger.info("stale jobs timed out strategy=primary count=%s ids=%s", len(job_ids), job_ids)
        return CleanupResult(jobs_updated=len(job_ids), job_ids=list(job_ids), strategy="primary")

    async def cleanup_fallback(self, *, now: datetime | None = None) -> CleanupResult:
        current = now or datetime.now(timezone.utc)
        candidates = await self.repository.list_stale_running_jobs(
            inactive_before=self.criteria.inactive_before(current),
            started_before=self.criteria.started_before(current),
            now=current,
        )

        updated: list[str] = []
        for job in candidates:
            error_message = timed_out_message(_as_datetime(job.get("started_at")), current)
            # Guarded on status='running' so a job finished meanwhile is left alone.
            transitioned = await self.repository.time_out_running_job(
                job["id"],
                error_message=error_message,
                last_update=TIMED_OUT_LAST_UPDATE,
                now=current,
            )
            if transitioned:
                updated.append(job["id"])

        if updated:
            logger.info("stale jobs timed out strategy=fallback count=%s ids=%s", len(updated), updated)
        return CleanupResult(jobs_updated=len(updated), job_ids=updated, strategy="fallback")

    async def get_stats(self, *, now: datetime | None = None) -> dict[str, Any]:
        current = now or datetime.now(timezone.utc)
        return await self.repository.get_stale_job_stats(
            inactive_before=self.criteria.inactive_before(current),
            started_before=self.criteria.started_before(current),
            now=current,
        )


def _as_datetime(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, str) and value.strip():
        try:
            dt = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError:
            return None
    else:
        return None

    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt
