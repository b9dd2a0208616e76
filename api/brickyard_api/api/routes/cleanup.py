from fastapi import APIRouter, Depends

from brickyard_api.api.deps import get_stale_job_detector, to_http_exception
from brickyard_api.core.security import get_scheduler_principal
from brickyard_api.schemas.jobs import CleanupOut, CleanupRequest, CleanupStatsOut
from brickyard_api.services.errors import PipelineError
from brickyard_api.services.stale_jobs import CleanupResult, StaleJobDetector

router = APIRouter()


def _cleanup_out(result: CleanupResult) -> CleanupOut:
    return CleanupOut(
        jobs_updated=result.jobs_updated,
        job_ids=result.job_ids,
        strategy=result.strategy,
        message=f"Marked {result.jobs_updated} stale job(s) as timed out",
    )


@router.post("", response_model=CleanupOut)
async def cleanup_stale_jobs(
    payload: CleanupRequest | None = None,
    detector: StaleJobDetector = Depends(get_stale_job_detector),
) -> CleanupOut:
    try:
        result = await detector.cleanup(prefer_fallback=bool(payload and payload.use_fallback))
    except PipelineError as exc:
        raise to_http_exception(exc) from exc
    return _cleanup_out(result)


@router.get("/stats", response_model=CleanupStatsOut)
async def stale_job_stats(detector: StaleJobDetector = Depends(get_stale_job_detector)) -> CleanupStatsOut:
    try:
        stats = await detector.get_stats()
    except PipelineError as exc:
        raise to_http_exception(exc) from exc
    return CleanupStatsOut(
        **stats,
        inactivity_minutes=int(detector.criteria.inactivity.total_seconds() // 60),
        max_runtime_minutes=int(detector.criteria.max_runtime.total_seconds() // 60),
    )


@router.get("/cron", response_model=CleanupOut)
async def cleanup_stale_jobs_scheduled(
    principal=Depends(get_scheduler_principal),
    detector: StaleJobDetector = Depends(get_stale_job_detector),
) -> CleanupOut:
    try:
        result = await detector.cleanup()
    except PipelineError as exc:
        raise to_http_exception(exc) from exc
    return _cleanup_out(result)
