from fastapi import APIRouter, Depends, Query, status

from brickyard_api.api.deps import get_dispatcher, get_job_registry, to_http_exception
from brickyard_api.core.security import get_worker_principal
from brickyard_api.schemas.jobs import (
    CancelRequest,
    CompleteRequest,
    FailRequest,
    HeartbeatRequest,
    JobCreateRequest,
    JobDetailOut,
    JobLaunchOut,
    JobOut,
    JobStatus,
)
from brickyard_api.services.dispatch import Dispatcher, launch_job
from brickyard_api.services.errors import PipelineError
from brickyard_api.services.jobs import JobRegistry, JobType
from brickyard_api.services.progress import advance_pipeline
from brickyard_api.services.reconcile.detail import describe_reconcile_job
from brickyard_api.services.reconcile.engine import ReconcileRequest
from brickyard_api.services.repository import get_repository

router = APIRouter()


@router.get("", response_model=list[JobOut])
async def list_jobs(
    registry: JobRegistry = Depends(get_job_registry),
    job_type: str | None = Query(default=None, alias="type"),
    status_filter: JobStatus | None = Query(default=None, alias="status"),
    dataset_id: str | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
) -> list[JobOut]:
    try:
        rows = await registry.list_jobs(
            job_type=job_type,
            status=status_filter,
            dataset_id=dataset_id,
            limit=limit,
            offset=offset,
        )
    except PipelineError as exc:
        raise to_http_exception(exc) from exc
    return [JobOut(**row) for row in rows]


@router.post("", response_model=JobLaunchOut, status_code=status.HTTP_202_ACCEPTED)
async def create_job(
    payload: JobCreateRequest,
    registry: JobRegistry = Depends(get_job_registry),
    dispatcher: Dispatcher = Depends(get_dispatcher),
) -> JobLaunchOut:
    metadata = dict(payload.metadata)
    try:
        if payload.type == JobType.RECONCILE.value:
            request = ReconcileRequest.from_job({"dataset_id": payload.dataset_id, "metadata": metadata})
            metadata = request.to_metadata()
        job, dispatch = await launch_job(
            registry,
            dispatcher,
            payload.type,
            payload.marketplace,
            dataset_id=payload.dataset_id,
            metadata=metadata,
        )
    except PipelineError as exc:
        raise to_http_exception(exc) from exc

    return JobLaunchOut(
        job_id=job["id"],
        status=job["status"],
        dispatched=dispatch is not None,
        message=f"{job['type'].capitalize()} job started",
    )


@router.get("/{job_id}", response_model=JobDetailOut)
async def get_job(
    job_id: str,
    registry: JobRegistry = Depends(get_job_registry),
    repository=Depends(get_repository),
) -> JobDetailOut:
    try:
        job = await registry.get_job(job_id)
        reconciled_listings = None
        if job["type"] == JobType.RECONCILE.value:
            reconciled_listings = await describe_reconcile_job(repository, job)
    except PipelineError as exc:
        raise to_http_exception(exc) from exc
    return JobDetailOut(**job, reconciled_listings=reconciled_listings)


@router.post("/{job_id}/heartbeat", response_model=JobOut)
async def heartbeat_job(
    job_id: str,
    payload: HeartbeatRequest,
    principal=Depends(get_worker_principal),
    registry: JobRegistry = Depends(get_job_registry),
) -> JobOut:
    try:
        job = await registry.heartbeat(job_id, payload.metadata, message=payload.message)
    except PipelineError as exc:
        raise to_http_exception(exc) from exc
    return JobOut(**job)


@router.post("/{job_id}/complete", response_model=JobOut)
async def complete_job(
    job_id: str,
    payload: CompleteRequest,
    principal=Depends(get_worker_principal),
    repository=Depends(get_repository),
    registry: JobRegistry = Depends(get_job_registry),
    dispatcher: Dispatcher = Depends(get_dispatcher),
) -> JobOut:
    try:
        job = await registry.complete(job_id, payload.summary, message=payload.message)
    except PipelineError as exc:
        raise to_http_exception(exc) from exc
    await advance_pipeline(repository, registry, dispatcher, job)
    return JobOut(**job)


@router.post("/{job_id}/fail", response_model=JobOut)
async def fail_job(
    job_id: str,
    payload: FailRequest,
    principal=Depends(get_worker_principal),
    registry: JobRegistry = Depends(get_job_registry),
) -> JobOut:
    try:
        job = await registry.fail(job_id, payload.error, metadata_patch=payload.metadata)
    except PipelineError as exc:
        raise to_http_exception(exc) from exc
    return JobOut(**job)


@router.post("/{job_id}/cancel", response_model=JobOut)
async def cancel_job(
    job_id: str,
    payload: CancelRequest | None = None,
    registry: JobRegistry = Depends(get_job_registry),
) -> JobOut:
    try:
        job = await registry.cancel(job_id, payload.reason if payload else None)
    except PipelineError as exc:
        raise to_http_exception(exc) from exc
    return JobOut(**job)
