from __future__ import annotations

import re

from brickyard_api.services.errors import ValidationError

CURRENT_RECONCILIATION_VERSION = "1.2.0"

# Patterns are frozen once released; a change ships as a new version.
#   1.0.0  3-7 digits with an optional -N/-NN suffix
#   1.1.0  also rejects a match followed by "%" ("100%")
#   1.2.0  also rejects a match preceded by digit + "." ("9.344")
_PATTERN_SOURCES: dict[str, str] = {
    "1.0.0": r"\b\d{3,7}(?:-\d{1,2})?\b",
    "1.1.0": r"\b\d{3,7}(?:-\d{1,2})?\b(?!%)",
    "1.2.0": r"(?<!\d\.)\b\d{3,7}(?:-\d{1,2})?\b(?!%)",
}

_COMPILED: dict[str, re.Pattern[str]] = {
    version: re.compile(source, re.ASCII) for version, source in _PATTERN_SOURCES.items()
}


def supported_versions() -> list[str]:
    return list(_PATTERN_SOURCES)


def is_supported_version(version: str) -> bool:
    return version in _COMPILED


def get_pattern(version: str = CURRENT_RECONCILIATION_VERSION) -> re.Pattern[str]:
    pattern = _COMPILED.get(version)
    if pattern is None:
        raise ValidationError(
            f"unknown reconciliation version {version!r}; expected one of {supported_versions()}"
        )
    return pattern


def pattern_source(version: str = CURRENT_RECONCILIATION_VERSION) -> str:
    return get_pattern(version).pattern
