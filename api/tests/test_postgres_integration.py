from __future__ import annotations

import asyncio
import os
from collections.abc import Coroutine, Generator
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, TypeVar

import asyncpg  # type: ignore[import-untyped]
from asyncpg import exceptions as pg_exc
import pytest
from fastapi.testclient import TestClient

from brickyard_api.core.config import get_settings
from brickyard_api.main import app
from brickyard_api.services.errors import AlreadyTerminalError, ConflictError
from brickyard_api.services.jobs import JobRegistry
from brickyard_api.services.reconcile.engine import CleanupMode, ReconcileRequest, ReconciliationEngine
from brickyard_api.services.repository import PostgresRepository, get_repository
from brickyard_api.services.stale_jobs import StaleJobDetector

MIGRATION = Path(__file__).resolve().parents[2] / "db" / "migrations" / "0001_pipeline_core.sql"
WORKER_HEADERS = {"X-API-Key": "integration-key", "X-Worker-Id": "integration-worker"}

T = TypeVar("T")


@pytest.fixture(scope="session")
def database_url() -> str:
    url = os.getenv("BY_DATABASE_URL") or os.getenv("DATABASE_URL")
    if not url:
        pytest.skip("integration tests require BY_DATABASE_URL or DATABASE_URL")
    _run(_apply_migration(url))
    return url


@pytest.fixture(autouse=True)
def reset_tables(database_url: str) -> None:
    _run(_truncate_tables(database_url))


@pytest.fixture
def api_client(database_url: str, monkeypatch: pytest.MonkeyPatch) -> Generator[TestClient, None, None]:
    monkeypatch.setenv("BY_DATABASE_URL", database_url)
    monkeypatch.setenv("BY_STORAGE_BACKEND", "postgres")
    monkeypatch.setenv("BY_WORKER_API_KEY", WORKER_HEADERS["X-API-Key"])
    get_settings.cache_clear()
    get_repository.cache_clear()

    with TestClient(app) as client:
        yield client

    get_repository.cache_clear()
    get_settings.cache_clear()


def test_job_lifecycle_over_http(api_client: TestClient, database_url: str) -> None:
    created = api_client.post("/jobs", json={"type": "analyze", "metadata": {"window_days": 30}})
    assert created.status_code == 202
    job_id = created.json()["job_id"]

    heartbeat = api_client.post(
        f"/jobs/{job_id}/heartbeat",
        json={"metadata": {"step": "pricing"}},
        headers=WORKER_HEADERS,
    )
    assert heartbeat.status_code == 200
    assert heartbeat.json()["metadata"] == {"window_days": 30, "step": "pricing"}

    assert api_client.post(f"/jobs/{job_id}/complete", json={}, headers=WORKER_HEADERS).status_code == 200
    assert api_client.post(f"/jobs/{job_id}/complete", json={}, headers=WORKER_HEADERS).status_code == 409

    row = _run(_fetchrow(database_url, "select status, completed_at, timeout_at - started_at as budget from jobs"))
    assert row["status"] == "completed"
    assert row["completed_at"] is not None
    assert row["budget"] == timedelta(minutes=15)

    dispatch = _run(_fetchrow(database_url, "select stage, params from job_dispatches"))
    assert dispatch["stage"] == "analyze"

    assert api_client.get("/jobs/not-a-uuid").status_code == 404
    assert api_client.get("/readyz").json() == {"status": "ready"}


def test_timeout_at_is_immutable(database_url: str) -> None:
    async def scenario() -> None:
        repo = PostgresRepository(database_url, 1, 2)
        try:
            job = await JobRegistry(repo).create_job("capture", "ebay")
        finally:
            await repo.close()
        conn = await asyncpg.connect(database_url)
        try:
            with pytest.raises(pg_exc.RaiseError):
                await conn.execute(
                    "update jobs set timeout_at = timeout_at + interval '1 hour' where id = $1::uuid",
                    job["id"],
                )
        finally:
            await conn.close()

    _run(scenario())


def test_stale_sweep_primary_and_fallback(database_url: str) -> None:
    async def scenario() -> None:
        repo = PostgresRepository(database_url, 1, 2)
        registry = JobRegistry(repo)
        detector = StaleJobDetector(repo)
        try:
            now = datetime.now(timezone.utc)
            stale = await registry.create_job("capture", "ebay", now=now - timedelta(minutes=45))
            fresh = await registry.create_job("capture", "ebay", now=now)

            stats = await detector.get_stats()
            assert stats["running_jobs"] == 2
            assert stats["stale_jobs"] == 1

            first = await detector.cleanup()
            assert first.strategy == "primary"
            assert first.job_ids == [stale["id"]]
            assert (await detector.cleanup()).jobs_updated == 0

            timed_out = await repo.get_job(stale["id"])
            assert timed_out["status"] == "timed_out"
            assert timed_out["error_message"].startswith("Job timed out after 45")
            assert (await repo.get_job(fresh["id"]))["status"] == "running"

            late = await registry.create_job("enrich", "ebay", now=now - timedelta(minutes=20))
            fallback = await detector.cleanup(prefer_fallback=True)
            assert fallback.strategy == "fallback"
            assert fallback.job_ids == [late["id"]]
            with pytest.raises(AlreadyTerminalError):
                await registry.heartbeat(late["id"], {"pages": 1})
        finally:
            await repo.close()

    _run(scenario())


def test_reconcile_run_against_postgres(database_url: str) -> None:
    async def scenario() -> None:
        conn = await asyncpg.connect(database_url)
        try:
            dataset_id = await conn.fetchval("insert into datasets (name) values ('Falcons') returning id::text")
            listing_id = await conn.fetchval(
                "insert into listings (title) values ('UCS 75192 Millennium Falcon') returning id::text"
            )
            await conn.execute(
                "insert into dataset_listings (dataset_id, listing_id) values ($1::uuid, $2::uuid)",
                dataset_id,
                listing_id,
            )
            falcon_id = await conn.fetchval(
                "insert into catalog_entities (identifier, name) values ('75192-1', 'Millennium Falcon') "
                "returning id::text"
            )
            old_id = await conn.fetchval(
                "insert into catalog_entities (identifier, name) values ('10179-1', 'Falcon 2007') returning id::text"
            )
            await conn.execute(
                "insert into listing_catalog_links (listing_id, catalog_entity_id, reconciliation_version) "
                "values ($1::uuid, $2::uuid, '1.1.0')",
                listing_id,
                old_id,
            )
        finally:
            await conn.close()

        repo = PostgresRepository(database_url, 1, 2)
        try:
            request = ReconcileRequest(dataset_id=dataset_id, cleanup_mode=CleanupMode.SUPERSEDE)
            job = await JobRegistry(repo).create_job(
                "reconcile",
                "ebay",
                dataset_id=dataset_id,
                metadata=request.to_metadata(),
            )
            finished = await ReconciliationEngine(repo).run(job["id"])
            assert finished["status"] == "completed"
            assert finished["metadata"]["validated_ids"] == [{"extracted_id": "75192", "listing_id": listing_id}]

            links = {link["catalog_entity_id"]: link for link in await repo.list_links([listing_id])}
            assert links[falcon_id]["status"] == "active"
            assert links[falcon_id]["identifier"] == "75192-1"
            assert links[old_id]["status"] == "superseded"

            [listing] = await repo.get_listings([listing_id])
            assert listing["reconciliation_version"] == "1.2.0"
            assert listing["reconciled_at"] is not None
        finally:
            await repo.close()

    _run(scenario())


def test_dispatch_claim_ack_and_requeue(database_url: str) -> None:
    async def scenario() -> None:
        repo = PostgresRepository(database_url, 1, 2)
        try:
            job = await JobRegistry(repo).create_job("sanitize", "ebay")
            queued = await repo.enqueue_dispatch(job_id=job["id"], stage="sanitize", params={"job_id": job["id"]})

            assert await repo.claim_next_dispatch(stages=["enrich"], worker_id="w-1", lease_seconds=60) is None
            claimed = await repo.claim_next_dispatch(stages=["sanitize"], worker_id="w-1", lease_seconds=1)
            assert claimed["id"] == queued["id"]
            assert claimed["attempts"] == 1
            assert await repo.claim_next_dispatch(stages=["sanitize"], worker_id="w-2", lease_seconds=60) is None

            await asyncio.sleep(1.2)
            assert await repo.requeue_expired_dispatches(max_attempts=5, limit=10) == {"requeued": 1, "dead": 0}

            again = await repo.claim_next_dispatch(stages=["sanitize"], worker_id="w-2", lease_seconds=60)
            assert again["attempts"] == 2
            acked = await repo.ack_dispatch(again["id"], worker_id="w-2")
            assert acked["status"] == "delivered"
        finally:
            await repo.close()

    _run(scenario())


def test_concurrent_batch_writes_merge_in_postgres(database_url: str) -> None:
    async def scenario() -> None:
        repo = PostgresRepository(database_url, 2, 4)
        try:
            job = await JobRegistry(repo).create_job("reconcile", "ebay", metadata=ReconcileRequest().to_metadata())
            now = datetime.now(timezone.utc)
            await asyncio.gather(
                *(
                    repo.record_reconcile_batch(
                        job["id"],
                        index=index,
                        batch={"index": index, "succeeded": 2, "failed": 1},
                        last_update=f"Reconciled batch {index + 1}",
                        now=now,
                    )
                    for index in range(4)
                )
            )
            stored = await repo.get_job(job["id"])
            assert set(stored["metadata"]["reconcile_batches"]) == {"0", "1", "2", "3"}
            assert stored["metadata"]["listings_processed"] == 12

            await JobRegistry(repo).complete(job["id"])
            with pytest.raises(AlreadyTerminalError):
                await repo.record_reconcile_batch(job["id"], index=4, batch={}, last_update=None, now=now)
        finally:
            await repo.close()

    _run(scenario())


def test_dispatch_lease_renewal(database_url: str) -> None:
    async def scenario() -> None:
        repo = PostgresRepository(database_url, 1, 2)
        try:
            job = await JobRegistry(repo).create_job("reconcile", "ebay")
            await repo.enqueue_dispatch(job_id=job["id"], stage="reconcile", params={"job_id": job["id"]})
            claimed = await repo.claim_next_dispatch(stages=["reconcile"], worker_id="w-1", lease_seconds=1)

            renewed = await repo.renew_dispatch_lease(claimed["id"], worker_id="w-1", lease_seconds=600)
            assert renewed["lease_expires_at"] > datetime.now(timezone.utc) + timedelta(seconds=500)
            with pytest.raises(ConflictError):
                await repo.renew_dispatch_lease(claimed["id"], worker_id="w-2", lease_seconds=600)

            await asyncio.sleep(1.2)
            assert await repo.requeue_expired_dispatches(max_attempts=5, limit=10) == {"requeued": 0, "dead": 0}
        finally:
            await repo.close()

    _run(scenario())


def _run(coro: Coroutine[Any, Any, T]) -> T:
    return asyncio.run(coro)


async def _apply_migration(database_url: str) -> None:
    conn = await asyncpg.connect(database_url)
    try:
        await conn.execute(MIGRATION.read_text(encoding="utf-8"))
    finally:
        await conn.close()


async def _truncate_tables(database_url: str) -> None:
    conn = await asyncpg.connect(database_url)
    try:
        await conn.execute(
            """
            truncate table
              job_dispatches,
              jobs,
              listing_catalog_links,
              dataset_listings,
              catalog_entities,
              listings,
              datasets
            restart identity cascade
            """
        )
    finally:
        await conn.close()


async def _fetchrow(database_url: str, query: str) -> asyncpg.Record:
    conn = await asyncpg.connect(database_url)
    try:
        return await conn.fetchrow(query)
    finally:
        await conn.close()
