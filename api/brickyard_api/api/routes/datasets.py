from fastapi import APIRouter, Depends, status

from brickyard_api.api.deps import get_dispatcher, get_job_registry, to_http_exception
from brickyard_api.schemas.datasets import DatasetProgressOut, RunNextJobOut, RunToCompletionOut
from brickyard_api.services.dispatch import Dispatcher
from brickyard_api.services.errors import PipelineError
from brickyard_api.services.jobs import JobRegistry
from brickyard_api.services.progress import get_dataset_progress, run_next_job, run_to_completion
from brickyard_api.services.repository import get_repository

router = APIRouter()


@router.get("/{dataset_id}/progress", response_model=DatasetProgressOut)
async def dataset_progress(dataset_id: str, repository=Depends(get_repository)) -> DatasetProgressOut:
    try:
        progress = await get_dataset_progress(repository, dataset_id)
    except PipelineError as exc:
        raise to_http_exception(exc) from exc
    return DatasetProgressOut(
        dataset_id=dataset_id,
        completed_stages=progress.completed_stages,
        next_stage=progress.next_stage,
        job_statuses=progress.job_statuses,
    )


@router.post("/{dataset_id}/run-next-job", response_model=RunNextJobOut, status_code=status.HTTP_202_ACCEPTED)
async def dataset_run_next_job(
    dataset_id: str,
    repository=Depends(get_repository),
    registry: JobRegistry = Depends(get_job_registry),
    dispatcher: Dispatcher = Depends(get_dispatcher),
) -> RunNextJobOut:
    try:
        job, dispatch = await run_next_job(repository, registry, dispatcher, dataset_id)
    except PipelineError as exc:
        raise to_http_exception(exc) from exc
    return RunNextJobOut(
        job_id=job["id"],
        stage=job["type"],
        dispatched=dispatch is not None,
        message=f"Started {job['type']} job",
    )


@router.post(
    "/{dataset_id}/run-to-completion",
    response_model=RunToCompletionOut,
    status_code=status.HTTP_202_ACCEPTED,
)
async def dataset_run_to_completion(
    dataset_id: str,
    repository=Depends(get_repository),
    registry: JobRegistry = Depends(get_job_registry),
    dispatcher: Dispatcher = Depends(get_dispatcher),
) -> RunToCompletionOut:
    try:
        run = await run_to_completion(repository, registry, dispatcher, dataset_id)
    except PipelineError as exc:
        raise to_http_exception(exc) from exc
    return RunToCompletionOut(
        job_id=run.job["id"],
        stage=run.job["type"],
        dispatched=run.dispatch is not None,
        remaining_stages=run.remaining_stages,
        message="Pipeline started. Remaining stages will run sequentially.",
    )
