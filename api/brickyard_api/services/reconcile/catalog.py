from __future__ import annotations

import re
from typing import Any

_SUFFIX_RE = re.compile(r"^(?P<base>\d+)-(?P<suffix>\d{1,2})$", re.ASCII)
_YEAR_LIKE_RANGE = range(1990, 2051)


def identifier_base(identifier: str) -> str:
    return identifier.split("-", 1)[0]


def is_year_like(identifier: str) -> bool:
    """True when the identifier's base is a 4-digit number between 1990 and 2050."""
    base = identifier_base(identifier)
    return len(base) == 4 and base.isdigit() and int(base) in _YEAR_LIKE_RANGE


def pick_entity(extracted_id: str, entities: list[dict[str, Any]]) -> dict[str, Any] | None:
    """Resolve one extracted identifier against entities sharing its base.

    An exact identifier match wins. A suffix-less extraction such as ``1234`` also
    resolves to a ``1234-N`` variant, taking the lowest suffix.
    """
    for entity in entities:
        if entity["identifier"] == extracted_id:
            return entity
    if "-" in extracted_id:
        return None

    variants: list[tuple[int, dict[str, Any]]] = []
    for entity in entities:
        match = _SUFFIX_RE.match(entity["identifier"])
        if match and match.group("base") == extracted_id:
            variants.append((int(match.group("suffix")), entity))
    if not variants:
        return None
    variants.sort(key=lambda item: item[0])
    return variants[0][1]


class CatalogResolver:
    """Looks up extracted identifiers in the catalog, in pages."""

    def __init__(self, repository: Any, *, page_size: int = 100) -> None:
        self.repository = repository
        self.page_size = max(1, page_size)

    async def resolve(self, extracted_ids: list[str]) -> dict[str, dict[str, Any] | None]:
        unique_ids = list(dict.fromkeys(extracted_ids))
        if not unique_ids:
            return {}

        by_base: dict[str, list[dict[str, Any]]] = {}
        for start in range(0, len(unique_ids), self.page_size):
            page = unique_ids[start : start + self.page_size]
            entities = await self.repository.get_catalog_entities_by_identifiers(page)
            for entity in entities:
                by_base.setdefault(identifier_base(entity["identifier"]), []).append(entity)

        return {
            extracted_id: pick_entity(extracted_id, by_base.get(identifier_base(extracted_id), []))
            for extracted_id in unique_ids
        }

    async def get_entity_by_identifier(self, identifier: str) -> dict[str, Any] | None:
        resolved = await self.resolve([identifier])
        return resolved.get(identifier)
