from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from brickyard_api.services.errors import (
    AlreadyTerminalError,
    NotFoundError,
    TransientDependencyError,
    ValidationError,
)
from brickyard_api.services.jobs import JobRegistry, JobStatus, JobType
from brickyard_api.services.reconcile.catalog import CatalogResolver, is_year_like
from brickyard_api.services.reconcile.extractor import extract_identifiers, listing_text
from brickyard_api.services.reconcile.patterns import CURRENT_RECONCILIATION_VERSION, get_pattern

logger = logging.getLogger(__name__)


class CleanupMode(str, Enum):
    DELETE = "delete"
    SUPERSEDE = "supersede"
    KEEP = "keep"


class LinkNature(str, Enum):
    PRIMARY = "primary"
    IMPLIED = "implied"


class LinkStatus(str, Enum):
    ACTIVE = "active"
    SUPERSEDED = "superseded"
    DELETED = "deleted"


@dataclass(slots=True)
class ReconcileRequest:
    listing_ids: list[str] | None = None
    dataset_id: str | None = None
    limit: int | None = None
    reconciliation_version: str = CURRENT_RECONCILIATION_VERSION
    cleanup_mode: CleanupMode = CleanupMode.SUPERSEDE
    rerun: bool = False

    def __post_init__(self) -> None:
        if not isinstance(self.reconciliation_version, str):
            raise ValidationError("reconciliation_version must be a string")
        get_pattern(self.reconciliation_version)
        if not isinstance(self.cleanup_mode, CleanupMode):
            try:
                self.cleanup_mode = CleanupMode(self.cleanup_mode)
            except ValueError:
                raise ValidationError(f"invalid cleanup mode: {self.cleanup_mode!r}") from None
        if self.limit is not None and (
            isinstance(self.limit, bool) or not isinstance(self.limit, int) or self.limit < 1
        ):
            raise ValidationError("limit must be a positive integer")
        if self.listing_ids is not None:
            if not isinstance(self.listing_ids, list) or not all(isinstance(item, str) for item in self.listing_ids):
                raise ValidationError("listing_ids must be a list of strings")
            self.listing_ids = list(self.listing_ids)
        if self.dataset_id is not None and not isinstance(self.dataset_id, str):
            raise ValidationError("dataset_id must be a string")

    def to_metadata(self) -> dict[str, Any]:
        return {
            "listing_ids": self.listing_ids,
            "dataset_id": self.dataset_id,
            "limit": self.limit,
            "reconciliation_version": self.reconciliation_version,
            "cleanup_mode": self.cleanup_mode.value,
            "rerun": self.rerun,
        }

    @classmethod
    def from_job(cls, job: dict[str, Any]) -> ReconcileRequest:
        metadata = job.get("metadata") or {}
        return cls(
            listing_ids=metadata.get("listing_ids"),
            dataset_id=job.get("dataset_id") or metadata.get("dataset_id"),
            limit=metadata.get("limit"),
            reconciliation_version=metadata.get("reconciliation_version") or CURRENT_RECONCILIATION_VERSION,
            cleanup_mode=metadata.get("cleanup_mode") or CleanupMode.SUPERSEDE,
            rerun=bool(metadata.get("rerun", False)),
        )


@dataclass(slots=True)
class ListingReconciliation:
    listing_id: str
    extracted_ids: list[str]
    validated_ids: list[dict[str, str]]
    not_validated_ids: list[dict[str, str]]
    links_upserted: int
    links_cleaned: int


@dataclass(slots=True)
class BatchResult:
    index: int
    succeeded: int = 0
    failed: int = 0
    extracted: int = 0
    validated: int = 0
    links_upserted: int = 0
    processed_listing_ids: list[str] = field(default_factory=list)
    identifier_counts: list[int] = field(default_factory=list)
    validated_ids: list[dict[str, str]] = field(default_factory=list)
    not_validated_ids: list[dict[str, str]] = field(default_factory=list)
    errors: list[dict[str, str]] = field(default_factory=list)

    def to_metadata(self) -> dict[str, Any]:
        return {
            "index": self.index,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "extracted": self.extracted,
            "validated": self.validated,
            "links_upserted": self.links_upserted,
            "processed_listing_ids": self.processed_listing_ids,
            "identifier_counts": self.identifier_counts,
            "validated_ids": self.validated_ids,
            "not_validated_ids": self.not_validated_ids,
            "errors": self.errors,
        }


class ReconciliationEngine:
    """Extracts catalog identifiers from listings and maintains listing-catalog links.

    A run is split into steps keyed by job id so an at-least-once executor can replay
    any of them: ``plan`` stores the listing set, ``process_batch`` stores its result
    under the batch index, and ``finalize`` folds the batches into the job record.
    """

    def __init__(
        self,
        repository: Any,
        registry: JobRegistry | None = None,
        *,
        batch_size: int = 100,
        catalog_page_size: int = 100,
    ) -> None:
        self.repository = repository
        self.registry = registry or JobRegistry(repository)
        self.catalog = CatalogResolver(repository, page_size=catalog_page_size)
        self.batch_size = max(1, batch_size)

    async def run(self, job_id: str) -> dict[str, Any]:
        await self._get_running_reconcile_job(job_id)
        try:
            listing_ids = await self.plan(job_id)
            for index, start in enumerate(range(0, len(listing_ids), self.batch_size)):
                await self.process_batch(job_id, index, listing_ids[start : start + self.batch_size])
            return await self.finalize(job_id)
        except AlreadyTerminalError:
            raise
        except Exception as exc:
            logger.error("reconcile job aborted id=%s error=%r", job_id, exc)
            await self._fail_aborted_run(job_id, exc)
            raise

    async def _fail_aborted_run(self, job_id: str, exc: Exception) -> None:
        try:
            await self.registry.fail(job_id, f"Critical error: {str(exc) or type(exc).__name__}")
        except (AlreadyTerminalError, NotFoundError):
            logger.warning("reconcile job id=%s finished before it could be failed", job_id)

    async def plan(self, job_id: str) -> list[str]:
        job = await self._get_running_reconcile_job(job_id)
        metadata = job.get("metadata") or {}
        planned = metadata.get("planned_listing_ids")
        if isinstance(planned, list):
            return list(planned)

        request = ReconcileRequest.from_job(job)
        if request.dataset_id and not request.listing_ids:
            await self.repository.get_dataset(request.dataset_id)

        listings = await self.repository.fetch_listings_for_reconciliation(
            dataset_id=request.dataset_id,
            listing_ids=request.listing_ids,
            limit=request.limit,
            version=request.reconciliation_version,
            rerun=request.rerun,
        )
        listing_ids = [listing["id"] for listing in listings]
        await self.registry.heartbeat(
            job_id,
            {"planned_listing_ids": listing_ids, "listings_found": len(listing_ids)},
            message=f"Found {len(listing_ids)} listings to reconcile",
        )
        logger.info("reconcile plan id=%s listings=%s", job_id, len(listing_ids))
        return listing_ids

    async def process_batch(self, job_id: str, index: int, listing_ids: list[str]) -> BatchResult:
        job = await self._get_running_reconcile_job(job_id)
        request = ReconcileRequest.from_job(job)
        result = BatchResult(index=index)

        listings = {row["id"]: row for row in await self.repository.get_listings(listing_ids)}
        for listing_id in listing_ids:
            listing = listings.get(listing_id)
            if listing is None:
                result.failed += 1
                result.errors.append({"listing_id": listing_id, "error": "listing not found"})
                continue
            try:
                outcome = await self.reconcile_listing(listing, request)
            except TransientDependencyError:
                raise
            except Exception as exc:
                result.failed += 1
                result.errors.append({"listing_id": listing_id, "error": str(exc) or type(exc).__name__})
                logger.warning("reconcile listing failed job_id=%s listing_id=%s error=%r", job_id, listing_id, exc)
                continue

            result.succeeded += 1
            result.extracted += len(outcome.extracted_ids)
            result.validated += len(outcome.validated_ids)
            result.links_upserted += outcome.links_upserted
            result.processed_listing_ids.append(listing_id)
            result.identifier_counts.append(len(outcome.extracted_ids))
            result.validated_ids.extend(outcome.validated_ids)
            result.not_validated_ids.extend(outcome.not_validated_ids)

        stored = await self.repository.record_reconcile_batch(
            job_id,
            index=index,
            batch=result.to_metadata(),
            last_update=f"Reconciled batch {index + 1}",
            now=datetime.now(timezone.utc),
        )
        logger.info(
            "reconcile batch stored id=%s index=%s listings_processed=%s",
            job_id,
            index,
            (stored.get("metadata") or {}).get("listings_processed"),
        )
        return result

    async def finalize(self, job_id: str) -> dict[str, Any]:
        job = await self._get_running_reconcile_job(job_id)
        metadata = job.get("metadata") or {}
        planned = metadata.get("planned_listing_ids") or []
        batches = [
            batch
            for _, batch in sorted(
                (metadata.get("reconcile_batches") or {}).items(),
                key=lambda item: int(item[0]),
            )
        ]

        summary = _fold_batches(batches)
        summary["total_listings_input"] = len(planned)
        summary["reconcile_batches"] = {
            str(batch["index"]): {"succeeded": batch["succeeded"], "failed": batch["failed"]} for batch in batches
        }

        succeeded = summary["listings_succeeded"]
        failed = summary["listings_failed"]
        if failed > 0 and succeeded == 0:
            error = f"All {failed} listings failed to reconcile"
            return await self.registry.fail(job_id, error, metadata_patch=summary)

        if not planned:
            message = "No listings found to reconcile"
        elif failed:
            message = f"Completed: {succeeded} reconciled successfully, {failed} failed"
        else:
            message = f"Completed: {succeeded} listings reconciled successfully"
        return await self.registry.complete(job_id, summary, message=message)

    async def reconcile_listing(
        self,
        listing: dict[str, Any],
        request: ReconcileRequest,
        *,
        now: datetime | None = None,
    ) -> ListingReconciliation:
        current = now or datetime.now(timezone.utc)
        listing_id = listing["id"]
        version = request.reconciliation_version

        extracted = extract_identifiers(listing_text(listing), version)
        resolved = await self.catalog.resolve(extracted)

        validated: list[dict[str, str]] = []
        not_validated: list[dict[str, str]] = []
        kept_entity_ids: list[str] = []
        for extracted_id in extracted:
            entity = resolved.get(extracted_id)
            if entity is None:
                not_validated.append({"extracted_id": extracted_id, "listing_id": listing_id})
                continue
            validated.append({"extracted_id": extracted_id, "listing_id": listing_id})
            if entity["id"] not in kept_entity_ids:
                kept_entity_ids.append(entity["id"])
                await self.repository.upsert_link(
                    listing_id=listing_id,
                    catalog_entity_id=entity["id"],
                    nature=LinkNature.PRIMARY.value,
                    reconciliation_version=version,
                    potential_year_match=is_year_like(entity["identifier"]),
                    now=current,
                )

        cleaned = await self.apply_cleanup(listing_id, kept_entity_ids, request.cleanup_mode, now=current)
        await self.repository.mark_listing_reconciled(listing_id, version=version, reconciled_at=current)

        return ListingReconciliation(
            listing_id=listing_id,
            extracted_ids=extracted,
            validated_ids=validated,
            not_validated_ids=not_validated,
            links_upserted=len(kept_entity_ids),
            links_cleaned=cleaned,
        )

    async def apply_cleanup(
        self,
        listing_id: str,
        kept_entity_ids: list[str],
        mode: CleanupMode,
        *,
        now: datetime | None = None,
    ) -> int:
        if mode is CleanupMode.KEEP:
            return 0
        if mode is CleanupMode.DELETE or mode is CleanupMode.SUPERSEDE:
            return await self.repository.apply_link_cleanup(
                listing_id=listing_id,
                kept_entity_ids=kept_entity_ids,
                mode=mode.value,
                now=now or datetime.now(timezone.utc),
            )
        raise ValidationError(f"invalid cleanup mode: {mode!r}")

    async def _get_running_reconcile_job(self, job_id: str) -> dict[str, Any]:
        job = await self.repository.get_job(job_id)
        if job["type"] != JobType.RECONCILE.value:
            raise ValidationError(f"job {job_id} is a {job['type']} job, not reconcile")
        if job["status"] != JobStatus.RUNNING.value:
            raise AlreadyTerminalError(f"job {job_id} is already {job['status']}")
        return job


def _fold_batches(batches: list[dict[str, Any]]) -> dict[str, Any]:
    validated: list[dict[str, str]] = []
    not_validated: list[dict[str, str]] = []
    errors: list[dict[str, str]] = []
    processed: list[str] = []
    counts: list[int] = []
    totals = {"succeeded": 0, "failed": 0, "extracted": 0, "validated": 0, "links_upserted": 0}

    for batch in batches:
        for key in totals:
            totals[key] += int(batch.get(key, 0))
        validated.extend(batch.get("validated_ids") or [])
        not_validated.extend(batch.get("not_validated_ids") or [])
        errors.extend(batch.get("errors") or [])
        processed.extend(batch.get("processed_listing_ids") or [])
        counts.extend(batch.get("identifier_counts") or [])

    def _sort_key(entry: dict[str, str]) -> tuple[str, str]:
        return entry["extracted_id"], entry["listing_id"]

    return {
        "listings_succeeded": totals["succeeded"],
        "listings_failed": totals["failed"],
        "extracted": totals["extracted"],
        "validated": totals["validated"],
        "links_created": totals["links_upserted"],
        "processed_listing_ids": sorted(processed),
        "validated_ids": sorted(validated, key=_sort_key),
        "not_validated_ids": sorted(not_validated, key=_sort_key),
        "errors": errors,
        "distribution": _distribution(counts),
    }


def _distribution(counts: list[int]) -> dict[str, int]:
    buckets = {
        "listings_with_zero_ids": 0,
        "listings_with_one_id": 0,
        "listings_with_two_ids": 0,
        "listings_with_three_ids": 0,
        "listings_with_four_ids": 0,
        "listings_with_five_or_more_ids": 0,
    }
    names = list(buckets)
    for count in counts:
        buckets[names[min(count, 5)]] += 1
    return buckets
