from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

from brickyard_api.services.dispatch import launch_job
from brickyard_api.services.errors import ConflictError, PipelineError
from brickyard_api.services.jobs import JobStatus, JobType
from brickyard_api.services.reconcile.engine import ReconcileRequest

logger = logging.getLogger(__name__)

RUN_TO_COMPLETION_KEY = "run_to_completion"

PIPELINE_STAGES: tuple[JobType, ...] = (
    JobType.CAPTURE,
    JobType.ENRICH,
    JobType.MATERIALIZE,
    JobType.SANITIZE,
    JobType.RECONCILE,
    JobType.ANALYZE,
)


@dataclass(slots=True)
class PipelineProgress:
    completed_stages: list[str]
    next_stage: str | None
    job_statuses: dict[str, str] = field(default_factory=dict)


def project_pipeline_progress(jobs: Iterable[dict[str, Any]]) -> PipelineProgress:
    """Fold a scope's job history into per-stage status.

    ``jobs`` must be ordered by ``started_at`` descending. The first row seen for a
    stage is its latest run; older re-runs never override it.
    """
    latest: dict[str, str] = {}
    for job in jobs:
        job_type = job.get("type")
        status = job.get("status")
        if not isinstance(job_type, str) or not isinstance(status, str):
            continue
        if job_type not in latest:
            latest[job_type] = status

    stage_names = [stage.value for stage in PIPELINE_STAGES]
    completed = [name for name in stage_names if latest.get(name) == JobStatus.COMPLETED.value]
    next_stage = next((name for name in stage_names if latest.get(name) != JobStatus.COMPLETED.value), None)
    statuses = {name: latest[name] for name in stage_names if name in latest}
    return PipelineProgress(completed_stages=completed, next_stage=next_stage, job_statuses=statuses)


async def get_dataset_progress(repository: Any, dataset_id: str) -> PipelineProgress:
    await repository.get_dataset(dataset_id)
    jobs = await repository.list_dataset_jobs(dataset_id)
    return project_pipeline_progress(jobs)


async def run_next_job(
    repository: Any,
    registry: Any,
    dispatcher: Any,
    dataset_id: str,
    *,
    marketplace: str | None = None,
) -> tuple[dict[str, Any], dict[str, Any] | None]:
    """Create and dispatch a job for the dataset's next incomplete stage."""
    dataset = await repository.get_dataset(dataset_id)
    progress = project_pipeline_progress(await repository.list_dataset_jobs(dataset_id))
    if progress.next_stage is None:
        raise ConflictError("all pipeline stages are already completed for this dataset")
    if progress.next_stage == JobType.CAPTURE.value:
        raise ConflictError("capture needs search parameters and must be started by an operator")

    capture_job = await repository.get_latest_job(dataset_id=dataset_id, job_type=JobType.CAPTURE.value)
    return await launch_job(
        registry,
        dispatcher,
        progress.next_stage,
        marketplace or dataset.get("marketplace") or "ebay",
        dataset_id=dataset_id,
        metadata=_stage_metadata(progress.next_stage, dataset_id, capture_job),
    )


@dataclass(slots=True)
class PipelineRun:
    job: dict[str, Any]
    dispatch: dict[str, Any] | None
    remaining_stages: list[str]


async def run_to_completion(
    repository: Any,
    registry: Any,
    dispatcher: Any,
    dataset_id: str,
    *,
    marketplace: str | None = None,
) -> PipelineRun:
    """Start every remaining stage after capture, one after another.

    Only the first stage is launched here. Each job carries ``run_to_completion`` in its
    metadata and ``continue_pipeline`` launches the following stage when it completes,
    so a failed or timed out stage ends the chain.
    """
    await repository.get_dataset(dataset_id)
    jobs = await repository.list_dataset_jobs(dataset_id)
    running = next((job for job in jobs if job.get("status") == JobStatus.RUNNING.value), None)
    if running is not None:
        raise ConflictError(f"a {running['type']} job is already running for this dataset")

    capture_job = _latest_completed(jobs, JobType.CAPTURE.value)
    if capture_job is None:
        raise ConflictError("No completed capture job found for this dataset")

    progress = project_pipeline_progress(jobs)
    remaining = [
        stage.value
        for stage in PIPELINE_STAGES
        if stage is not JobType.CAPTURE and stage.value not in progress.completed_stages
    ]
    if not remaining:
        raise ConflictError("All pipeline stages are already complete")

    job, dispatch = await _launch_chained_stage(
        registry,
        dispatcher,
        remaining[0],
        dataset_id,
        capture_job,
        marketplace or capture_job.get("marketplace") or "ebay",
    )
    logger.info("pipeline run started dataset_id=%s remaining=%s", dataset_id, ",".join(remaining))
    return PipelineRun(job=job, dispatch=dispatch, remaining_stages=remaining)


async def continue_pipeline(
    repository: Any,
    registry: Any,
    dispatcher: Any,
    job: dict[str, Any],
) -> tuple[dict[str, Any], dict[str, Any] | None] | None:
    """Launch the stage after ``job`` if it completed as part of a pipeline run.

    Returns ``None`` when there is nothing to chain.
    """
    dataset_id = job.get("dataset_id")
    if (
        job.get("status") != JobStatus.COMPLETED.value
        or not (job.get("metadata") or {}).get(RUN_TO_COMPLETION_KEY)
        or not dataset_id
    ):
        return None

    jobs = await repository.list_dataset_jobs(dataset_id)
    if any(row.get("status") == JobStatus.RUNNING.value for row in jobs):
        logger.info("pipeline run paused dataset_id=%s; another job is running", dataset_id)
        return None

    progress = project_pipeline_progress(jobs)
    next_stage = progress.next_stage
    if next_stage is None:
        logger.info("pipeline run finished dataset_id=%s", dataset_id)
        return None
    capture_job = _latest_completed(jobs, JobType.CAPTURE.value)
    if next_stage == JobType.CAPTURE.value or capture_job is None:
        logger.warning("pipeline run stopped dataset_id=%s; capture is not complete", dataset_id)
        return None

    return await _launch_chained_stage(
        registry,
        dispatcher,
        next_stage,
        dataset_id,
        capture_job,
        job.get("marketplace") or capture_job.get("marketplace") or "ebay",
    )


async def advance_pipeline(repository: Any, registry: Any, dispatcher: Any, job: dict[str, Any]) -> None:
    """Run ``continue_pipeline`` after a completion; a launch error never undoes the completion."""
    try:
        await continue_pipeline(repository, registry, dispatcher, job)
    except PipelineError as exc:
        logger.warning("pipeline run stopped dataset_id=%s after job_id=%s: %s", job.get("dataset_id"), job["id"], exc)


async def _launch_chained_stage(
    registry: Any,
    dispatcher: Any,
    stage: str,
    dataset_id: str,
    capture_job: dict[str, Any],
    marketplace: str,
) -> tuple[dict[str, Any], dict[str, Any] | None]:
    metadata = _stage_metadata(stage, dataset_id, capture_job)
    metadata[RUN_TO_COMPLETION_KEY] = True
    job, dispatch = await launch_job(registry, dispatcher, stage, marketplace, dataset_id=dataset_id, metadata=metadata)
    logger.info("pipeline stage launched dataset_id=%s stage=%s job_id=%s", dataset_id, stage, job["id"])
    return job, dispatch


def _stage_metadata(stage: str, dataset_id: str, capture_job: dict[str, Any] | None) -> dict[str, Any]:
    if stage in (JobType.ENRICH.value, JobType.MATERIALIZE.value):
        return {"capture_job_id": capture_job["id"]} if capture_job is not None else {}
    if stage == JobType.RECONCILE.value:
        return ReconcileRequest(dataset_id=dataset_id).to_metadata()
    return {}


def _latest_completed(jobs: Iterable[dict[str, Any]], job_type: str) -> dict[str, Any] | None:
    return next(
        (job for job in jobs if job.get("type") == job_type and job.get("status") == JobStatus.COMPLETED.value),
        None,
    )
