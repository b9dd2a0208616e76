from __future__ import annotations

import asyncio
from collections.abc import Generator
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

from brickyard_api.core.config import Settings, get_settings
from brickyard_api.main import app
from brickyard_api.services.jobs import JobRegistry
from brickyard_api.services.repository import get_repository
from brickyard_api.services.store import InMemoryRepository

WORKER_KEY = "worker-key"
CRON_SECRET = "cron-secret"
WORKER_HEADERS = {"X-API-Key": WORKER_KEY, "X-Worker-Id": "worker-1"}


@pytest.fixture
def repo() -> InMemoryRepository:
    return InMemoryRepository()


@pytest.fixture
def settings() -> Settings:
    return Settings(storage_backend="memory", worker_api_key=WORKER_KEY, cron_secret=CRON_SECRET)


@pytest.fixture
def client(repo: InMemoryRepository, settings: Settings) -> Generator[TestClient, None, None]:
    app.dependency_overrides[get_repository] = lambda: repo
    app.dependency_overrides[get_settings] = lambda: settings
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _start_job(client: TestClient, job_type: str = "capture", **payload) -> str:
    response = client.post("/jobs", json={"type": job_type, "marketplace": "ebay", **payload})
    assert response.status_code == 202
    return response.json()["job_id"]


def test_create_job_returns_immediately_and_enqueues_dispatch(client: TestClient, repo: InMemoryRepository) -> None:
    response = client.post("/jobs", json={"type": "capture", "metadata": {"keywords": "lego 10305"}})

    assert response.status_code == 202
    body = response.json()
    assert body["status"] == "running"
    assert body["dispatched"] is True
    assert body["message"] == "Capture job started"

    [dispatch] = repo.dispatches.values()
    assert dispatch["stage"] == "capture"
    assert dispatch["params"] == {"job_id": body["job_id"], "dataset_id": None, "keywords": "lego 10305"}

    detail = client.get(f"/jobs/{body['job_id']}").json()
    assert detail["status"] == "running"
    assert detail["reconciled_listings"] is None


def test_unknown_job_type_is_accepted_unless_rejection_is_configured(
    client: TestClient,
    settings: Settings,
) -> None:
    assert client.post("/jobs", json={"type": "catalog_refresh"}).status_code == 202

    settings.reject_unknown_job_types = True
    response = client.post("/jobs", json={"type": "catalog_refresh"})
    assert response.status_code == 422


def test_missing_job_and_dataset_return_404(client: TestClient) -> None:
    assert client.get("/jobs/missing").status_code == 404
    assert client.post("/jobs", json={"type": "capture", "dataset_id": "missing"}).status_code == 404


def test_list_jobs_filters(client: TestClient) -> None:
    capture_id = _start_job(client, "capture")
    enrich_id = _start_job(client, "enrich")
    client.post(f"/jobs/{capture_id}/complete", json={}, headers=WORKER_HEADERS)

    assert [job["id"] for job in client.get("/jobs", params={"type": "enrich"}).json()] == [enrich_id]
    assert [job["id"] for job in client.get("/jobs", params={"status": "completed"}).json()] == [capture_id]
    assert client.get("/jobs", params={"status": "bogus"}).status_code == 422


def test_worker_endpoints_require_api_key(client: TestClient) -> None:
    job_id = _start_job(client)

    assert client.post(f"/jobs/{job_id}/heartbeat", json={}).status_code == 401
    bad_headers = {**WORKER_HEADERS, "X-API-Key": "nope"}
    assert client.post(f"/jobs/{job_id}/heartbeat", json={}, headers=bad_headers).status_code == 401

    response = client.post(
        f"/jobs/{job_id}/heartbeat",
        json={"metadata": {"pages": 2}, "message": "Fetched page 2"},
        headers=WORKER_HEADERS,
    )
    assert response.status_code == 200
    assert response.json()["metadata"] == {"pages": 2}
    assert response.json()["last_update"] == "Fetched page 2"


def test_worker_endpoints_unavailable_without_configured_key(client: TestClient, settings: Settings) -> None:
    settings.worker_api_key = None
    job_id = _start_job(client)

    assert client.post(f"/jobs/{job_id}/heartbeat", json={}, headers=WORKER_HEADERS).status_code == 503


def test_terminal_transitions_conflict_after_first(client: TestClient) -> None:
    job_id = _start_job(client)

    response = client.post(f"/jobs/{job_id}/complete", json={"summary": {"listings": 40}}, headers=WORKER_HEADERS)
    assert response.status_code == 200
    assert response.json()["status"] == "completed"

    assert client.post(f"/jobs/{job_id}/complete", json={}, headers=WORKER_HEADERS).status_code == 409
    assert client.post(f"/jobs/{job_id}/fail", json={"error": "late"}, headers=WORKER_HEADERS).status_code == 409
    assert client.post(f"/jobs/{job_id}/heartbeat", json={}, headers=WORKER_HEADERS).status_code == 409


def test_fail_requires_error_text(client: TestClient) -> None:
    job_id = _start_job(client)

    assert client.post(f"/jobs/{job_id}/fail", json={"error": ""}, headers=WORKER_HEADERS).status_code == 422
    response = client.post(f"/jobs/{job_id}/fail", json={"error": "captcha wall"}, headers=WORKER_HEADERS)
    assert response.json()["error_message"] == "captcha wall"


def test_cancel_job(client: TestClient) -> None:
    job_id = _start_job(client)

    response = client.post(f"/jobs/{job_id}/cancel", json={"reason": "wrong keywords"})

    assert response.status_code == 200
    assert response.json()["status"] == "failed"
    assert response.json()["error_message"] == "Cancelled: wrong keywords"
    assert client.post(f"/jobs/{job_id}/cancel").status_code == 409


def _old_running_job(repo: InMemoryRepository, minutes: int) -> str:
    started = datetime.now(timezone.utc) - timedelta(minutes=minutes)
    return asyncio.run(JobRegistry(repo).create_job("capture", "ebay", now=started))["id"]


def test_cleanup_endpoints(client: TestClient, repo: InMemoryRepository) -> None:
    stale_id = _old_running_job(repo, 45)
    _start_job(client)

    stats = client.get("/jobs/cleanup/stats").json()
    assert stats["running_jobs"] == 2
    assert stats["stale_jobs"] == 1
    assert stats["inactivity_minutes"] == 10
    assert stats["max_runtime_minutes"] == 60

    first = client.post("/jobs/cleanup").json()
    assert first["jobs_updated"] == 1
    assert first["job_ids"] == [stale_id]
    assert first["strategy"] == "primary"
    assert first["message"] == "Marked 1 stale job(s) as timed out"

    second = client.post("/jobs/cleanup", json={"use_fallback": True}).json()
    assert second["jobs_updated"] == 0
    assert second["strategy"] == "fallback"
    assert repo.jobs[stale_id]["status"] == "timed_out"


def test_cron_cleanup_requires_secret(client: TestClient, repo: InMemoryRepository, settings: Settings) -> None:
    _old_running_job(repo, 45)

    assert client.get("/jobs/cleanup/cron").status_code == 401
    assert client.get("/jobs/cleanup/cron", headers={"Authorization": "Bearer wrong"}).status_code == 401

    response = client.get("/jobs/cleanup/cron", headers={"Authorization": f"Bearer {CRON_SECRET}"})
    assert response.status_code == 200
    assert response.json()["jobs_updated"] == 1

    settings.cron_secret = None
    assert client.get("/jobs/cleanup/cron", headers={"Authorization": f"Bearer {CRON_SECRET}"}).status_code == 401


def test_dataset_progress_and_run_next_job(client: TestClient, repo: InMemoryRepository) -> None:
    repo.add_dataset("Castles", dataset_id="ds-1")

    assert client.post("/datasets/ds-1/run-next-job").status_code == 409

    capture_id = _start_job(client, "capture", dataset_id="ds-1")
    client.post(f"/jobs/{capture_id}/complete", json={}, headers=WORKER_HEADERS)

    progress = client.get("/datasets/ds-1/progress").json()
    assert progress == {
        "dataset_id": "ds-1",
        "completed_stages": ["capture"],
        "next_stage": "enrich",
        "job_statuses": {"capture": "completed"},
    }

    response = client.post("/datasets/ds-1/run-next-job")
    assert response.status_code == 202
    assert response.json()["stage"] == "enrich"
    assert repo.jobs[response.json()["job_id"]]["metadata"] == {"capture_job_id": capture_id}

    assert client.get("/datasets/missing/progress").status_code == 404


def test_reconcile_trigger_validates_request(client: TestClient, repo: InMemoryRepository) -> None:
    assert client.post("/reconcile/trigger", json={"reconciliation_version": "0.1.0"}).status_code == 422
    assert client.post("/reconcile/trigger", json={"cleanup_mode": "purge"}).status_code == 422
    assert client.post("/reconcile/trigger", json={"limit": 0}).status_code == 422
    assert repo.jobs == {}

    response = client.post("/reconcile/trigger", json={"listing_ids": ["l-1"], "cleanup_mode": "keep"})
    assert response.status_code == 202
    job = repo.jobs[response.json()["job_id"]]
    assert job["type"] == "reconcile"
    assert job["metadata"]["cleanup_mode"] == "keep"
    assert job["metadata"]["reconciliation_version"] == "1.2.0"


def test_generic_create_validates_reconcile_metadata(client: TestClient) -> None:
    response = client.post("/jobs", json={"type": "reconcile", "metadata": {"cleanup_mode": "purge"}})

    assert response.status_code == 422

    for metadata in ({"limit": "10"}, {"limit": True}, {"listing_ids": "l-1"}, {"reconciliation_version": 12}):
        response = client.post("/jobs", json={"type": "reconcile", "metadata": metadata})
        assert response.status_code == 422, metadata


def test_worker_drives_reconcile_through_dispatch_queue(client: TestClient, repo: InMemoryRepository) -> None:
    repo.add_listing(listing_id="l-1", title="LEGO 75192 Millennium Falcon")
    repo.add_listing(listing_id="l-2", title="Mystery box 99999")
    repo.add_catalog_entity("75192", "Millennium Falcon", entity_id="e-falcon")
    trigger = client.post("/reconcile/trigger", json={}).json()

    assert client.post("/dispatches/claim", json={"stages": ["capture"]}, headers=WORKER_HEADERS).json() is None
    claimed = client.post("/dispatches/claim", json={"stages": ["reconcile"]}, headers=WORKER_HEADERS).json()
    assert claimed["job_id"] == trigger["job_id"]
    assert claimed["status"] == "claimed"
    assert claimed["locked_by"] == "worker-1"
    assert claimed["attempts"] == 1

    job_id = claimed["params"]["job_id"]
    plan = client.post(f"/reconcile/jobs/{job_id}/plan", headers=WORKER_HEADERS).json()
    assert plan["listing_ids"] == ["l-1", "l-2"]

    batch = client.post(
        f"/reconcile/jobs/{job_id}/batches/0",
        json={"listing_ids": plan["listing_ids"]},
        headers=WORKER_HEADERS,
    ).json()
    assert batch["succeeded"] == 2
    assert batch["validated"] == 1

    finalized = client.post(f"/reconcile/jobs/{job_id}/finalize", headers=WORKER_HEADERS).json()
    assert finalized["status"] == "completed"
    assert client.post(f"/reconcile/jobs/{job_id}/finalize", headers=WORKER_HEADERS).status_code == 409

    other_worker = {**WORKER_HEADERS, "X-Worker-Id": "worker-2"}
    assert client.post(f"/dispatches/{claimed['id']}/ack", headers=other_worker).status_code == 409
    acked = client.post(f"/dispatches/{claimed['id']}/ack", headers=WORKER_HEADERS).json()
    assert acked["status"] == "delivered"
    assert client.post(f"/dispatches/{claimed['id']}/ack", headers=WORKER_HEADERS).status_code == 200

    detail = client.get(f"/jobs/{job_id}").json()
    listings = {item["listing_id"]: item for item in detail["reconciled_listings"]}
    assert listings["l-1"]["links"][0]["identifier"] == "75192"
    assert listings["l-2"]["extracted_ids"] == [{"extracted_id": "99999", "validated": False}]


def test_expired_dispatch_leases_are_requeued(client: TestClient, repo: InMemoryRepository) -> None:
    _start_job(client)
    claimed = client.post("/dispatches/claim", json={"stages": ["capture"]}, headers=WORKER_HEADERS).json()
    repo.dispatches[claimed["id"]]["lease_expires_at"] = datetime.now(timezone.utc) - timedelta(seconds=1)

    reaped = client.post("/dispatches/reap-expired", json={"limit": 10}, headers=WORKER_HEADERS).json()

    assert reaped == {"requeued": 1, "dead": 0}
    again = client.post("/dispatches/claim", json={"stages": ["capture"]}, headers=WORKER_HEADERS).json()
    assert again["id"] == claimed["id"]
    assert again["attempts"] == 2


def test_claimed_dispatch_lease_can_be_renewed_by_its_holder(client: TestClient, repo: InMemoryRepository) -> None:
    _start_job(client)
    claimed = client.post(
        "/dispatches/claim",
        json={"stages": ["capture"], "lease_seconds": 30},
        headers=WORKER_HEADERS,
    ).json()

    renewed = client.post(f"/dispatches/{claimed['id']}/renew", json={"lease_seconds": 600}, headers=WORKER_HEADERS)
    assert renewed.status_code == 200
    assert repo.dispatches[claimed["id"]]["lease_expires_at"] > datetime.now(timezone.utc) + timedelta(seconds=500)

    other_worker = {**WORKER_HEADERS, "X-Worker-Id": "worker-2"}
    assert client.post(f"/dispatches/{claimed['id']}/renew", headers=other_worker).status_code == 409
    assert client.post("/dispatches/unknown/renew", headers=WORKER_HEADERS).status_code == 404

    client.post(f"/dispatches/{claimed['id']}/ack", headers=WORKER_HEADERS)
    assert client.post(f"/dispatches/{claimed['id']}/renew", headers=WORKER_HEADERS).status_code == 409


def test_run_to_completion_chains_stages_until_one_fails(client: TestClient, repo: InMemoryRepository) -> None:
    repo.add_dataset("Castles", dataset_id="ds-1")
    assert client.post("/datasets/ds-1/run-to-completion").status_code == 409

    capture_id = _start_job(client, "capture", dataset_id="ds-1")
    client.post(f"/jobs/{capture_id}/complete", json={}, headers=WORKER_HEADERS)

    response = client.post("/datasets/ds-1/run-to-completion")
    assert response.status_code == 202
    body = response.json()
    assert body["stage"] == "enrich"
    assert body["remaining_stages"] == ["enrich", "materialize", "sanitize", "reconcile", "analyze"]
    assert client.post("/datasets/ds-1/run-to-completion").status_code == 409

    client.post(f"/jobs/{body['job_id']}/complete", json={}, headers=WORKER_HEADERS)
    materialize = next(job for job in repo.jobs.values() if job["type"] == "materialize")
    assert materialize["status"] == "running"
    assert materialize["metadata"] == {"capture_job_id": capture_id, "run_to_completion": True}

    client.post(f"/jobs/{materialize['id']}/fail", json={"error": "listing API quota exhausted"}, headers=WORKER_HEADERS)
    assert not any(job["type"] == "sanitize" for job in repo.jobs.values())
    assert client.get("/datasets/ds-1/progress").json()["next_stage"] == "materialize"
