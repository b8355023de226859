"""Explicit encode/decode contract for nested values stored as JSON text.

Nested structures (option lists, evidence, completion criteria, capability
lists, event details) never get parsed ad hoc at call sites: repositories
route every such column through these helpers, and malformed stored payloads
surface as :class:`PersistenceError` instead of leaking ``json`` exceptions.
"""

from __future__ import annotations

import json
from collections.abc import Mapping, Sequence
from typing import Any

from overseer.errors import PersistenceError


def dump_json(value: object) -> str:
    """Serialize a JSON-compatible value deterministically."""

    return json.dumps(value, ensure_ascii=False, sort_keys=True)


def dump_str_list(values: Sequence[str]) -> str:
    return dump_json([str(item) for item in values])


def load_str_list(raw: str | None, *, field_name: str) -> list[str]:
    """Decode a stored list of strings; ``None`` means empty."""

    if raw is None or raw == "":
        return []
    parsed = _loads(raw, field_name=field_name)
    if not isinstance(parsed, list) or not all(isinstance(item, str) for item in parsed):
        raise PersistenceError(f"Stored {field_name} must be a list of strings.")
    return parsed


def dump_record_list(records: Sequence[Mapping[str, Any]]) -> str:
    return dump_json([dict(record) for record in records])


def load_record_list(
    raw: str | None,
    *,
    field_name: str,
    required_keys: tuple[str, ...] = (),
) -> list[dict[str, Any]]:
    """Decode a stored list of JSON objects, checking required keys."""

    if raw is None or raw == "":
        return []
    parsed = _loads(raw, field_name=field_name)
    if not isinstance(parsed, list):
        raise PersistenceError(f"Stored {field_name} must be a list of objects.")
    records: list[dict[str, Any]] = []
    for index, item in enumerate(parsed):
        if not isinstance(item, dict):
            raise PersistenceError(f"Stored {field_name}[{index}] must be an object.")
        missing = [key for key in required_keys if key not in item]
        if missing:
            raise PersistenceError(
                f"Stored {field_name}[{index}] is missing keys: {', '.join(missing)}",
            )
        records.append(item)
    return records


def load_mapping(raw: str | None, *, field_name: str) -> dict[str, Any]:
    if raw is None or raw == "":
        return {}
    parsed = _loads(raw, field_name=field_name)
    if not isinstance(parsed, dict):
        raise PersistenceError(f"Stored {field_name} must be an object.")
    return parsed


def _loads(raw: str, *, field_name: str) -> Any:
    try:
        return json.loads(raw)
    except json.JSONDecodeError as error:
        raise PersistenceError(f"Stored {field_name} is not valid JSON: {error}") from error
