from __future__ import annotations

from typing import Any

from brickyard_api.services.errors import ValidationError
from brickyard_api.services.reconcile.patterns import CURRENT_RECONCILIATION_VERSION, get_pattern


def listing_text(listing: dict[str, Any]) -> str:
    """Title and description joined with a space, preferring sanitized fields."""
    parts: list[str] = []
    for sanitized_key, raw_key in (("sanitized_title", "title"), ("sanitized_description", "description")):
        value = listing.get(sanitized_key)
        if value is None:
            value = listing.get(raw_key)
        if value is None:
            continue
        if not isinstance(value, str):
            raise ValidationError(
                f"listing {listing.get('id')} has non-text {raw_key}: {type(value).__name__}"
            )
        if value:
            parts.append(value)
    return " ".join(parts)


def extract_identifiers(text: str, version: str = CURRENT_RECONCILIATION_VERSION) -> list[str]:
    """Unique catalog identifier candidates in order of first appearance."""
    pattern = get_pattern(version)
    if not text:
        return []
    return list(dict.fromkeys(match.group(0) for match in pattern.finditer(text)))
