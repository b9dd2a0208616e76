from datetime import timedelta

from fastapi import Depends, HTTPException, status

from brickyard_api.core.config import Settings, get_settings
from brickyard_api.services.dispatch import Dispatcher
from brickyard_api.services.errors import (
    ConflictError,
    NotFoundError,
    PipelineError,
    TransientDependencyError,
    ValidationError,
)
from brickyard_api.services.jobs import JobRegistry
from brickyard_api.services.reconcile.engine import ReconciliationEngine
from brickyard_api.services.repository import get_repository
from brickyard_api.services.stale_jobs import StaleJobCriteria, StaleJobDetector


def to_http_exception(exc: PipelineError) -> HTTPException:
    if isinstance(exc, ValidationError):
        return HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_CONTENT, detail=str(exc))
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    if isinstance(exc, ConflictError):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    if isinstance(exc, TransientDependencyError):
        return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc))
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc))


def get_job_registry(
    settings: Settings = Depends(get_settings),
    repository=Depends(get_repository),
) -> JobRegistry:
    return JobRegistry(repository, reject_unknown_types=settings.reject_unknown_job_types)


def get_dispatcher(
    settings: Settings = Depends(get_settings),
    repository=Depends(get_repository),
) -> Dispatcher:
    return Dispatcher(
        repository,
        wait_seconds=settings.dispatch_wait_seconds,
        lease_seconds=settings.dispatch_lease_seconds,
        max_attempts=settings.dispatch_max_attempts,
    )


def get_stale_job_detector(
    settings: Settings = Depends(get_settings),
    repository=Depends(get_repository),
) -> StaleJobDetector:
    return StaleJobDetector(repository, stale_job_criteria(settings))


def get_reconciliation_engine(
    settings: Settings = Depends(get_settings),
    repository=Depends(get_repository),
    registry: JobRegistry = Depends(get_job_registry),
) -> ReconciliationEngine:
    return ReconciliationEngine(
        repository,
        registry,
        batch_size=settings.reconcile_batch_size,
        catalog_page_size=settings.catalog_lookup_page_size,
    )


def stale_job_criteria(settings: Settings) -> StaleJobCriteria:
    return StaleJobCriteria(
        inactivity=timedelta(minutes=settings.stale_inactivity_minutes),
        max_runtime=timedelta(minutes=settings.stale_max_runtime_minutes),
    )
