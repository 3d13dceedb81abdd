"""Field-level deep merge used when two payloads describe the same document."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any, cast


def _dedupe(values: list[Any]) -> list[Any]:
    result: list[Any] = []
    for value in values:
        if value not in result:
            result.append(value)
    return result


def deep_merge(existing: Mapping[str, Any], update: Mapping[str, Any]) -> dict[str, Any]:
    """Return ``existing`` overlaid with ``update`` without mutating either.

    - lists are concatenated with duplicates removed (existing order first)
    - nested mappings are merged recursively
    - a non-null value from ``update`` replaces the existing one
    - a null value from ``update`` never replaces a present value
    """

    result: dict[str, Any] = dict(existing)
    for key, new_value in update.items():
        old_value = existing.get(key)
        if isinstance(new_value, list):
            old_list = cast(list[Any], old_value) if isinstance(old_value, list) else []
            result[key] = _dedupe([*old_list, *cast(list[Any], new_value)])
        elif isinstance(new_value, Mapping):
            base = cast(Mapping[str, Any], old_value) if isinstance(old_value, Mapping) else {}
            result[key] = deep_merge(base, cast(Mapping[str, Any], new_value))
        elif new_value is not None:
            result[key] = new_value
        elif key not in existing:
            result[key] = None
    return result


def fill_missing(existing: Mapping[str, Any], update: Mapping[str, Any]) -> dict[str, Any]:
    """Return ``existing`` plus the keys of ``update`` it does not have yet."""

    result: dict[str, Any] = dict(existing)
    for key, value in update.items():
        result.setdefault(key, value)
    return result
