from __future__ import annotations

from typing import Any


def _bookkeeping(metadata: dict[str, Any]) -> tuple[list[str], list[dict[str, Any]], list[dict[str, Any]]]:
    if "validated_ids" in metadata or "not_validated_ids" in metadata:
        return (
            list(metadata.get("processed_listing_ids") or []),
            list(metadata.get("validated_ids") or []),
            list(metadata.get("not_validated_ids") or []),
        )

    # Still running: read the per-batch results written so far.
    processed: list[str] = []
    validated: list[dict[str, Any]] = []
    not_validated: list[dict[str, Any]] = []
    batches = metadata.get("reconcile_batches") or {}
    for key in sorted(batches, key=int):
        batch = batches[key]
        processed.extend(batch.get("processed_listing_ids") or [])
        validated.extend(batch.get("validated_ids") or [])
        not_validated.extend(batch.get("not_validated_ids") or [])
    return processed, validated, not_validated


async def describe_reconcile_job(repository: Any, job: dict[str, Any]) -> list[dict[str, Any]]:
    """Extracted identifiers grouped per processed listing, with text and active links."""
    processed, validated, not_validated = _bookkeeping(job.get("metadata") or {})

    extracted_by_listing: dict[str, list[dict[str, Any]]] = {}
    for entry, is_validated in [(item, True) for item in validated] + [(item, False) for item in not_validated]:
        listing_id = entry.get("listing_id")
        extracted_id = entry.get("extracted_id")
        if not isinstance(listing_id, str) or not isinstance(extracted_id, str):
            continue
        extracted_by_listing.setdefault(listing_id, []).append(
            {"extracted_id": extracted_id, "validated": is_validated}
        )

    listing_ids = list(dict.fromkeys(processed + list(extracted_by_listing)))
    if not listing_ids:
        return []

    listings = {row["id"]: row for row in await repository.get_listings(listing_ids)}
    links_by_listing: dict[str, list[dict[str, Any]]] = {}
    for link in await repository.list_links(listing_ids, status="active"):
        links_by_listing.setdefault(link["listing_id"], []).append(
            {
                "catalog_entity_id": link["catalog_entity_id"],
                "identifier": link["identifier"],
                "name": link["name"],
                "nature": link["nature"],
                "potential_year_match": link["potential_year_match"],
            }
        )

    groups: list[dict[str, Any]] = []
    for listing_id in listing_ids:
        listing = listings.get(listing_id, {})
        extracted = sorted(extracted_by_listing.get(listing_id, []), key=lambda item: item["extracted_id"])
        groups.append(
            {
                "listing_id": listing_id,
                "title": listing.get("title"),
                "description": listing.get("description"),
                "sanitized_title": listing.get("sanitized_title"),
                "sanitized_description": listing.get("sanitized_description"),
                "extracted_ids": extracted,
                "links": links_by_listing.get(listing_id, []),
            }
        )
    return groups
