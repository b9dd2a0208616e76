from fastapi import APIRouter, Depends, Path, status

from brickyard_api.api.deps import get_dispatcher, get_job_registry, get_reconciliation_engine, to_http_exception
from brickyard_api.core.security import get_worker_principal
from brickyard_api.schemas.jobs import JobLaunchOut, JobOut
from brickyard_api.schemas.reconcile import (
    ReconcileBatchOut,
    ReconcileBatchRequest,
    ReconcilePlanOut,
    ReconcileTriggerRequest,
)
from brickyard_api.services.dispatch import Dispatcher, launch_job
from brickyard_api.services.errors import PipelineError
from brickyard_api.services.jobs import JobRegistry, JobType
from brickyard_api.services.progress import advance_pipeline
from brickyard_api.services.reconcile.engine import ReconcileRequest, ReconciliationEngine
from brickyard_api.services.reconcile.patterns import CURRENT_RECONCILIATION_VERSION
from brickyard_api.services.repository import get_repository

router = APIRouter()


@router.post("/trigger", response_model=JobLaunchOut, status_code=status.HTTP_202_ACCEPTED)
async def trigger_reconcile(
    payload: ReconcileTriggerRequest,
    registry: JobRegistry = Depends(get_job_registry),
    dispatcher: Dispatcher = Depends(get_dispatcher),
) -> JobLaunchOut:
    try:
        request = ReconcileRequest(
            listing_ids=payload.listing_ids,
            dataset_id=payload.dataset_id,
            limit=payload.limit,
            reconciliation_version=payload.reconciliation_version or CURRENT_RECONCILIATION_VERSION,
            cleanup_mode=payload.cleanup_mode,
            rerun=payload.rerun,
        )
        job, dispatch = await launch_job(
            registry,
            dispatcher,
            JobType.RECONCILE,
            payload.marketplace,
            dataset_id=payload.dataset_id,
            metadata=request.to_metadata(),
        )
    except PipelineError as exc:
        raise to_http_exception(exc) from exc

    return JobLaunchOut(
        job_id=job["id"],
        status=job["status"],
        dispatched=dispatch is not None,
        message="Reconcile job started",
    )


@router.post("/jobs/{job_id}/plan", response_model=ReconcilePlanOut)
async def plan_reconcile(
    job_id: str,
    principal=Depends(get_worker_principal),
    engine: ReconciliationEngine = Depends(get_reconciliation_engine),
) -> ReconcilePlanOut:
    try:
        listing_ids = await engine.plan(job_id)
    except PipelineError as exc:
        raise to_http_exception(exc) from exc
    return ReconcilePlanOut(job_id=job_id, listing_ids=listing_ids)


@router.post("/jobs/{job_id}/batches/{index}", response_model=ReconcileBatchOut)
async def process_reconcile_batch(
    job_id: str,
    payload: ReconcileBatchRequest,
    index: int = Path(ge=0),
    principal=Depends(get_worker_principal),
    engine: ReconciliationEngine = Depends(get_reconciliation_engine),
) -> ReconcileBatchOut:
    try:
        result = await engine.process_batch(job_id, index, payload.listing_ids)
    except PipelineError as exc:
        raise to_http_exception(exc) from exc
    return ReconcileBatchOut(
        job_id=job_id,
        index=result.index,
        succeeded=result.succeeded,
        failed=result.failed,
        extracted=result.extracted,
        validated=result.validated,
        links_upserted=result.links_upserted,
        errors=result.errors,
    )


@router.post("/jobs/{job_id}/finalize", response_model=JobOut)
async def finalize_reconcile(
    job_id: str,
    principal=Depends(get_worker_principal),
    repository=Depends(get_repository),
    dispatcher: Dispatcher = Depends(get_dispatcher),
    engine: ReconciliationEngine = Depends(get_reconciliation_engine),
) -> JobOut:
    try:
        job = await engine.finalize(job_id)
    except PipelineError as exc:
        raise to_http_exception(exc) from exc
    await advance_pipeline(repository, engine.registry, dispatcher, job)
    return JobOut(**job)
