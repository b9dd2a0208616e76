from __future__ import annotations

import asyncio
import copy
from datetime import datetime, timedelta, timezone
from typing import Any
from uuid import uuid4

from brickyard_api.services.dispatch import lease_expired
from brickyard_api.services.errors import AlreadyTerminalError, ConflictError, NotFoundError


def _identifier_base(identifier: str) -> str:
    return identifier.split("-", 1)[0]


class InMemoryRepository:
    """Process-local store with the same async interface as ``PostgresRepository``.

    Used by the test-suite and by ``BY_STORAGE_BACKEND=memory`` local runs. Rows are
    returned as copies so callers never mutate stored state.
    """

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self.jobs: dict[str, dict[str, Any]] = {}
        self.datasets: dict[str, dict[str, Any]] = {}
        self.dataset_listings: dict[str, list[str]] = {}
        self.listings: dict[str, dict[str, Any]] = {}
        self.catalog: dict[str, dict[str, Any]] = {}
        self.links: list[dict[str, Any]] = []
        self.dispatches: dict[str, dict[str, Any]] = {}
        self.fail_stale_function = False

    async def close(self) -> None:
        return None

    async def ping(self) -> bool:
        return True

    # Seeding

    def add_dataset(self, name: str, *, dataset_id: str | None = None, marketplace: str | None = None) -> dict[str, Any]:
        dataset = {
            "id": dataset_id or str(uuid4()),
            "name": name,
            "marketplace": marketplace,
            "created_at": datetime.now(timezone.utc),
        }
        self.datasets[dataset["id"]] = dataset
        self.dataset_listings.setdefault(dataset["id"], [])
        return dict(dataset)

    def add_listing(
        self,
        *,
        listing_id: str | None = None,
        title: str | None = None,
        description: str | None = None,
        sanitized_title: str | None = None,
        sanitized_description: str | None = None,
        dataset_id: str | None = None,
        status: str = "active",
        reconciliation_version: str | None = None,
        reconciled_at: datetime | None = None,
        marketplace: str = "ebay",
    ) -> dict[str, Any]:
        listing = {
            "id": listing_id or str(uuid4()),
            "marketplace": marketplace,
            "title": title,
            "description": description,
            "sanitized_title": sanitized_title,
            "sanitized_description": sanitized_description,
            "status": status,
            "reconciled_at": reconciled_at,
            "reconciliation_version": reconciliation_version,
        }
        self.listings[listing["id"]] = listing
        if dataset_id is not None:
            self.dataset_listings.setdefault(dataset_id, []).append(listing["id"])
        return dict(listing)

    def add_catalog_entity(self, identifier: str, name: str, *, entity_id: str | None = None) -> dict[str, Any]:
        entity = {"id": entity_id or str(uuid4()), "identifier": identifier, "name": name}
        self.catalog[entity["id"]] = entity
        return dict(entity)

    def add_link(
        self,
        listing_id: str,
        catalog_entity_id: str,
        *,
        status: str = "active",
        nature: str = "primary",
        reconciliation_version: str = "1.0.0",
    ) -> dict[str, Any]:
        now = datetime.now(timezone.utc)
        link = {
            "id": str(uuid4()),
            "listing_id": listing_id,
            "catalog_entity_id": catalog_entity_id,
            "nature": nature,
            "status": status,
            "reconciliation_version": reconciliation_version,
            "potential_year_match": False,
            "created_at": now,
            "updated_at": now,
        }
        self.links.append(link)
        return dict(link)

    # Jobs

    async def insert_job(
        self,
        *,
        job_type: str,
        marketplace: str,
        dataset_id: str | None,
        started_at: datetime,
        timeout_at: datetime,
        metadata: dict[str, Any],
        last_update: str,
    ) -> dict[str, Any]:
        async with self._lock:
            if dataset_id is not None and dataset_id not in self.datasets:
                raise NotFoundError("dataset not found")
            job = {
                "id": str(uuid4()),
                "type": job_type,
                "marketplace": marketplace,
                "dataset_id": dataset_id,
                "status": "running",
                "started_at": started_at,
                "updated_at": started_at,
                "completed_at": None,
                "timeout_at": timeout_at,
                "error_message": None,
                "last_update": last_update,
                "metadata": copy.deepcopy(metadata),
            }
            self.jobs[job["id"]] = job
            return copy.deepcopy(job)

    async def get_job(self, job_id: str) -> dict[str, Any]:
        job = self.jobs.get(job_id)
        if job is None:
            raise NotFoundError("job not found")
        return copy.deepcopy(job)

    async def list_jobs(
        self,
        *,
        job_type: str | None,
        status: str | None,
        dataset_id: str | None,
        limit: int,
        offset: int,
    ) -> list[dict[str, Any]]:
        rows = [
            job
            for job in self._jobs_newest_first()
            if (job_type is None or job["type"] == job_type)
            and (status is None or job["status"] == status)
            and (dataset_id is None or job["dataset_id"] == dataset_id)
        ]
        return copy.deepcopy(rows[offset : offset + limit])

    async def list_dataset_jobs(self, dataset_id: str) -> list[dict[str, Any]]:
        return copy.deepcopy([job for job in self._jobs_newest_first() if job["dataset_id"] == dataset_id])

    async def get_latest_job(self, *, dataset_id: str, job_type: str) -> dict[str, Any] | None:
        for job in self._jobs_newest_first():
            if job["dataset_id"] == dataset_id and job["type"] == job_type:
                return copy.deepcopy(job)
        return None

    async def touch_running_job(
        self,
        job_id: str,
        *,
        metadata_patch: dict[str, Any],
        last_update: str | None,
        now: datetime,
    ) -> dict[str, Any]:
        async with self._lock:
            job = self._running_job(job_id)
            job["metadata"].update(copy.deepcopy(metadata_patch))
            job["updated_at"] = max(job["updated_at"], now)
            if last_update is not None:
                job["last_update"] = last_update
            return copy.deepcopy(job)

    async def record_reconcile_batch(
        self,
        job_id: str,
        *,
        index: int,
        batch: dict[str, Any],
        last_update: str | None,
        now: datetime,
    ) -> dict[str, Any]:
        async with self._lock:
            job = self._running_job(job_id)
            batches = job["metadata"].setdefault("reconcile_batches", {})
            batches[str(index)] = copy.deepcopy(batch)
            job["metadata"]["listings_processed"] = sum(
                int(entry.get("succeeded", 0)) + int(entry.get("failed", 0)) for entry in batches.values()
            )
            job["updated_at"] = max(job["updated_at"], now)
            if last_update is not None:
                job["last_update"] = last_update
            return copy.deepcopy(job)

    async def finish_running_job(
        self,
        job_id: str,
        *,
        status: str,
        error_message: str | None,
        metadata_patch: dict[str, Any],
        last_update: str,
        now: datetime,
    ) -> dict[str, Any]:
        async with self._lock:
            job = self._running_job(job_id)
            job["metadata"].update(copy.deepcopy(metadata_patch))
            job["status"] = status
            job["error_message"] = error_message
            job["last_update"] = last_update
            job["completed_at"] = now
            job["updated_at"] = max(job["updated_at"], now)
            return copy.deepcopy(job)

    async def mark_stale_jobs_timed_out(
        self,
        *,
        inactivity: timedelta,
        max_runtime: timedelta,
        now: datetime | None = None,
    ) -> list[str]:
        if self.fail_stale_function:
            raise RuntimeError("function mark_stale_jobs_as_timed_out does not exist")
        current = now or datetime.now(timezone.utc)
        async with self._lock:
            updated: list[str] = []
            for job in self.jobs.values():
                if not self._is_stale(job, current - inactivity, current - max_runtime, current):
                    continue
                minutes = round((current - job["started_at"]).total_seconds() / 60.0, 1)
                job["status"] = "timed_out"
                job["completed_at"] = current
                job["updated_at"] = max(job["updated_at"], current)
                job["error_message"] = f"Job timed out after {minutes} minutes"
                job["last_update"] = "Job timed out: No progress detected or exceeded maximum runtime"
                updated.append(job["id"])
            return updated

    async def list_stale_running_jobs(
        self,
        *,
        inactive_before: datetime,
        started_before: datetime,
        now: datetime,
    ) -> list[dict[str, Any]]:
        rows = [job for job in self.jobs.values() if self._is_stale(job, inactive_before, started_before, now)]
        rows.sort(key=lambda job: job["started_at"])
        return copy.deepcopy(rows)

    async def time_out_running_job(
        self,
        job_id: str,
        *,
        error_message: str,
        last_update: str,
        now: datetime,
    ) -> bool:
        async with self._lock:
            job = self.jobs.get(job_id)
            if job is None or job["status"] != "running":
                return False
            job["status"] = "timed_out"
            job["error_message"] = error_message
            job["last_update"] = last_update
            job["completed_at"] = now
            job["updated_at"] = max(job["updated_at"], now)
            return True

    async def get_stale_job_stats(
        self,
        *,
        inactive_before: datetime,
        started_before: datetime,
        now: datetime,
    ) -> dict[str, Any]:
        running = [job for job in self.jobs.values() if job["status"] == "running"]
        stale = [job for job in running if self._is_stale(job, inactive_before, started_before, now)]
        return {
            "running_jobs": len(running),
            "stale_jobs": len(stale),
            "oldest_running_started_at": min((job["started_at"] for job in running), default=None),
        }

    # Datasets and listings

    async def get_dataset(self, dataset_id: str) -> dict[str, Any]:
        dataset = self.datasets.get(dataset_id)
        if dataset is None:
            raise NotFoundError("dataset not found")
        return dict(dataset)

    async def fetch_listings_for_reconciliation(
        self,
        *,
        dataset_id: str | None,
        listing_ids: list[str] | None,
        limit: int | None,
        version: str,
        rerun: bool,
    ) -> list[dict[str, Any]]:
        if listing_ids:
            wanted = set(listing_ids)
            candidates = [listing for listing in self.listings.values() if listing["id"] in wanted]
        else:
            candidates = [listing for listing in self.listings.values() if listing["status"] == "active"]
            if dataset_id:
                members = set(self.dataset_listings.get(dataset_id, []))
                candidates = [listing for listing in candidates if listing["id"] in members]

        if not rerun:
            candidates = [
                listing
                for listing in candidates
                if listing["reconciled_at"] is None or listing["reconciliation_version"] != version
            ]
        if limit:
            candidates = candidates[:limit]
        return copy.deepcopy(candidates)

    async def get_listings(self, listing_ids: list[str]) -> list[dict[str, Any]]:
        return [dict(self.listings[listing_id]) for listing_id in listing_ids if listing_id in self.listings]

    async def mark_listing_reconciled(self, listing_id: str, *, version: str, reconciled_at: datetime) -> None:
        listing = self.listings.get(listing_id)
        if listing is None:
            raise NotFoundError("listing not found")
        listing["reconciled_at"] = reconciled_at
        listing["reconciliation_version"] = version

    # Catalog

    async def get_catalog_entities_by_identifiers(self, identifiers: list[str]) -> list[dict[str, Any]]:
        wanted = set(identifiers)
        rows = [
            entity
            for entity in self.catalog.values()
            if entity["identifier"] in wanted or _identifier_base(entity["identifier"]) in wanted
        ]
        rows.sort(key=lambda entity: entity["identifier"])
        return [dict(entity) for entity in rows]

    async def get_catalog_entities_by_ids(self, entity_ids: list[str]) -> list[dict[str, Any]]:
        return [dict(self.catalog[entity_id]) for entity_id in entity_ids if entity_id in self.catalog]

    # Links

    async def upsert_link(
        self,
        *,
        listing_id: str,
        catalog_entity_id: str,
        nature: str,
        reconciliation_version: str,
        potential_year_match: bool,
        now: datetime,
    ) -> dict[str, Any]:
        async with self._lock:
            for link in self.links:
                if (
                    link["listing_id"] == listing_id
                    and link["catalog_entity_id"] == catalog_entity_id
                    and link["status"] == "active"
                ):
                    link.update(
                        nature=nature,
                        reconciliation_version=reconciliation_version,
                        potential_year_match=potential_year_match,
                        updated_at=now,
                    )
                    return dict(link)

            link = {
                "id": str(uuid4()),
                "listing_id": listing_id,
                "catalog_entity_id": catalog_entity_id,
                "nature": nature,
                "status": "active",
                "reconciliation_version": reconciliation_version,
                "potential_year_match": potential_year_match,
                "created_at": now,
                "updated_at": now,
            }
            self.links.append(link)
            return dict(link)

    async def apply_link_cleanup(
        self,
        *,
        listing_id: str,
        kept_entity_ids: list[str],
        mode: str,
        now: datetime,
    ) -> int:
        kept = set(kept_entity_ids)
        async with self._lock:
            stale = [
                link
                for link in self.links
                if link["listing_id"] == listing_id
                and link["status"] == "active"
                and link["catalog_entity_id"] not in kept
            ]
            if mode == "delete":
                self.links = [link for link in self.links if link not in stale]
            elif mode == "supersede":
                for link in stale:
                    link["status"] = "superseded"
                    link["updated_at"] = now
            else:
                return 0
            return len(stale)

    async def list_links(self, listing_ids: list[str], *, status: str | None = None) -> list[dict[str, Any]]:
        wanted = set(listing_ids)
        rows: list[dict[str, Any]] = []
        for link in self.links:
            if link["listing_id"] not in wanted or (status is not None and link["status"] != status):
                continue
            entity = self.catalog.get(link["catalog_entity_id"], {})
            rows.append({**link, "identifier": entity.get("identifier"), "name": entity.get("name")})
        return rows

    # Dispatch queue

    async def enqueue_dispatch(self, *, job_id: str, stage: str, params: dict[str, Any]) -> dict[str, Any]:
        async with self._lock:
            dispatch = {
                "id": str(uuid4()),
                "job_id": job_id,
                "stage": stage,
                "params": copy.deepcopy(params),
                "status": "pending",
                "attempts": 0,
                "locked_by": None,
                "lease_expires_at": None,
                "created_at": datetime.now(timezone.utc),
            }
            self.dispatches[dispatch["id"]] = dispatch
            return copy.deepcopy(dispatch)

    async def claim_next_dispatch(
        self,
        *,
        stages: list[str],
        worker_id: str,
        lease_seconds: int,
    ) -> dict[str, Any] | None:
        async with self._lock:
            for dispatch in self.dispatches.values():
                if dispatch["status"] != "pending" or dispatch["stage"] not in stages:
                    continue
                dispatch["status"] = "claimed"
                dispatch["locked_by"] = worker_id
                dispatch["lease_expires_at"] = datetime.now(timezone.utc) + timedelta(seconds=lease_seconds)
                dispatch["attempts"] += 1
                return copy.deepcopy(dispatch)
            return None

    async def ack_dispatch(self, dispatch_id: str, *, worker_id: str) -> dict[str, Any]:
        async with self._lock:
            dispatch = self.dispatches.get(dispatch_id)
            if dispatch is None:
                raise NotFoundError("dispatch not found")
            if dispatch["locked_by"] != worker_id or dispatch["status"] not in {"claimed", "delivered"}:
                raise ConflictError("dispatch is not leased by this worker")
            dispatch["status"] = "delivered"
            dispatch["lease_expires_at"] = None
            return copy.deepcopy(dispatch)

    async def renew_dispatch_lease(self, dispatch_id: str, *, worker_id: str, lease_seconds: int) -> dict[str, Any]:
        async with self._lock:
            dispatch = self.dispatches.get(dispatch_id)
            if dispatch is None:
                raise NotFoundError("dispatch not found")
            if dispatch["locked_by"] != worker_id or dispatch["status"] != "claimed":
                raise ConflictError("dispatch is not leased by this worker")
            dispatch["lease_expires_at"] = datetime.now(timezone.utc) + timedelta(seconds=lease_seconds)
            return copy.deepcopy(dispatch)

    async def requeue_expired_dispatches(self, *, max_attempts: int, limit: int) -> dict[str, int]:
        now = datetime.now(timezone.utc)
        requeued = 0
        dead = 0
        async with self._lock:
            expired = [dispatch for dispatch in self.dispatches.values() if lease_expired(dispatch, now)]
            expired = expired[: max(1, min(limit, 1000))]
            for dispatch in expired:
                dispatch["locked_by"] = None
                dispatch["lease_expires_at"] = None
                if dispatch["attempts"] >= max(1, max_attempts):
                    dispatch["status"] = "dead"
                    dead += 1
                else:
                    dispatch["status"] = "pending"
                    requeued += 1
        return {"requeued": requeued, "dead": dead}

    def _jobs_newest_first(self) -> list[dict[str, Any]]:
        return sorted(self.jobs.values(), key=lambda job: job["started_at"], reverse=True)

    def _running_job(self, job_id: str) -> dict[str, Any]:
        job = self.jobs.get(job_id)
        if job is None:
            raise NotFoundError("job not found")
        if job["status"] != "running":
            raise AlreadyTerminalError(f"job {job_id} is already {job['status']}")
        return job

    @staticmethod
    def _is_stale(job: dict[str, Any], inactive_before: datetime, started_before: datetime, now: datetime) -> bool:
        return job["status"] == "running" and (
            job["updated_at"] < inactive_before or job["timeout_at"] < now or job["started_at"] < started_before
        )
