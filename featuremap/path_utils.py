"""Helpers for comparing repository-relative file paths."""
from __future__ import annotations

from typing import Iterable


def normalize_file_path(path: str) -> str:
    value = (path or "").strip().strip("\"'`")
    if not value:
        return ""
    value = value.replace("\\", "/")
    while value.startswith("./"):
        value = value[2:]
    return value


def unique_paths(paths: Iterable[str]) -> list[str]:
    """Normalize and de-duplicate while keeping first-seen order."""
    seen: set[str] = set()
    result: list[str] = []
    for raw in paths:
        path = normalize_file_path(raw)
        if path and path not in seen:
            seen.add(path)
            result.append(path)
    return result
