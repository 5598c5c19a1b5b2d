from __future__ import annotations

import re

_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.\-]{0,127}$")


def _clean_non_empty_str(value: str, *, field_name: str) -> str:
    if not isinstance(value, str):
        raise ValueError(f"{field_name} must be a string.")
    cleaned = value.strip()
    if not cleaned:
        raise ValueError(f"{field_name} must be a non-empty string.")
    return cleaned


def _clean_tool_name(value: str, *, field_name: str = "name") -> str:
    cleaned = _clean_non_empty_str(value, field_name=field_name)
    if not _NAME_RE.match(cleaned):
        raise ValueError(f"{field_name} contains unsupported characters: {cleaned!r}")
    return cleaned
