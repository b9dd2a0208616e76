from __future__ import annotations

import asyncio
import logging
import random
import time

import httpx
from opentelemetry import trace

from brickyard_workers.core.config import get_settings
from brickyard_workers.core.telemetry import WorkerTelemetry, configure_worker_logging
from brickyard_workers.jobs.executor import claimable_stages, execute_dispatch
from brickyard_workers.services.job_client import PipelineClient

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


async def run_worker() -> None:
    settings = get_settings()
    configure_worker_logging(settings.worker_id, correlate=settings.otel_log_correlation)
    telemetry = WorkerTelemetry.start(settings)
    client = PipelineClient(
        base_url=settings.api_base_url,
        worker_id=settings.worker_id,
        api_key=settings.api_key,
        cron_secret=settings.cron_secret,
        timeout_seconds=settings.http_timeout_seconds,
    )
    stages = claimable_stages(settings.handled_stages)
    if not stages:
        logger.warning("no configured stage has a handler; worker will only run maintenance")
    if not settings.cron_secret:
        logger.warning("BY_WORKER_CRON_SECRET not set; scheduled stale sweep disabled")

    backoff = settings.poll_interval_seconds
    last_sweep_at = 0.0
    last_reap_at = 0.0

    try:
        while True:
            try:
                with tracer.start_as_current_span("worker.poll_cycle"):
                    now = time.monotonic()
                    if settings.cron_secret and now - last_sweep_at >= settings.stale_sweep_interval_seconds:
                        timed_out = await client.run_stale_sweep()
                        if timed_out:
                            logger.info("stale sweep timed out jobs: %s", timed_out)
                        last_sweep_at = now

                    if now - last_reap_at >= settings.dispatch_reap_interval_seconds:
                        reaped = await client.reap_expired_dispatches(limit=settings.dispatch_reap_batch_size)
                        if reaped["requeued"] or reaped["dead"]:
                            logger.info(
                                "expired dispatch leases requeued=%s dead=%s", reaped["requeued"], reaped["dead"]
                            )
                        last_reap_at = now

                    dispatch = None
                    if stages:
                        dispatch = await client.claim_dispatch(stages, lease_seconds=settings.claim_lease_seconds)
                    if not dispatch:
                        await asyncio.sleep(settings.poll_interval_seconds)
                        continue

                    with tracer.start_as_current_span("worker.process_dispatch") as span:
                        span.set_attribute("dispatch.id", dispatch["id"])
                        span.set_attribute("job.id", dispatch["job_id"])
                        span.set_attribute("job.stage", dispatch["stage"])
                        try:
                            result = await execute_dispatch(
                                dispatch,
                                client,
                                reconcile_batch_size=settings.reconcile_batch_size,
                                lease_seconds=settings.claim_lease_seconds,
                            )
                        except Exception:
                            # Left unacked: the lease expires and the dispatch is redelivered.
                            logger.exception(
                                "dispatch execution failed id=%s job_id=%s", dispatch["id"], dispatch["job_id"]
                            )
                            raise
                        try:
                            await client.ack_dispatch(dispatch["id"])
                        except httpx.HTTPStatusError as exc:
                            if exc.response.status_code != 409:
                                raise
                            logger.warning("dispatch lease lost before ack id=%s job_id=%s", dispatch["id"], dispatch["job_id"])
                        logger.info("dispatch done id=%s job_id=%s result=%s", dispatch["id"], dispatch["job_id"], result)

                    backoff = settings.poll_interval_seconds
            except Exception as exc:  # pragma: no cover - network robustness
                jitter = random.uniform(0.0, 0.5)
                sleep_for = min(backoff * (2.0 + jitter), settings.max_backoff_seconds)
                logger.warning("worker iteration failed: %s; retry in %.1fs", exc, sleep_for)
                await asyncio.sleep(sleep_for)
                backoff = sleep_for
    finally:
        telemetry.shutdown()


if __name__ == "__main__":
    asyncio.run(run_worker())
