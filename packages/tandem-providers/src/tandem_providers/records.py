"""Helpers for backends that print JSON documents or NDJSON event streams."""
from __future__ import annotations

import json
from collections.abc import Callable, Sequence
from typing import Any

Record = dict[str, Any]


def parse_json_records(raw: str) -> list[Record]:
    """Parse ``raw`` as one JSON document or as newline-delimited JSON.

    Lines that are not JSON objects are skipped; a top-level JSON array
    contributes each of its object items.
    """
    text = raw.strip()
    if not text:
        return []

    try:
        whole = json.loads(text)
    except json.JSONDecodeError:
        whole = None
    if whole is not None:
        return _objects(whole)

    records: list[Record] = []
    for line in text.splitlines():
        line = line.strip()
        if not line or line[0] not in "{[":
            continue
        try:
            records.extend(_objects(json.loads(line)))
        except json.JSONDecodeError:
            continue
    return records


def last_record(
    records: Sequence[Record],
    predicate: Callable[[Record], bool],
) -> Record | None:
    """The last record satisfying ``predicate``, scanning from the end."""
    for record in reversed(records):
        if predicate(record):
            return record
    return None


def read_str(record: Record | None, *keys: str) -> str | None:
    """First non-empty string among ``record[key]`` for ``keys``."""
    if not isinstance(record, dict):
        return None
    for key in keys:
        value = record.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def as_record(value: Any) -> Record | None:
    return value if isinstance(value, dict) else None


def read_content_text(content: Any) -> str | None:
    """Text of a content field that is a string or a list of text parts."""
    if isinstance(content, str):
        return content.strip() or None
    if isinstance(content, list):
        parts = [
            part.get("text", "")
            for part in content
            if isinstance(part, dict) and isinstance(part.get("text"), str)
        ]
        joined = "".join(parts).strip()
        return joined or None
    return None


def ensure_trailing_newline(text: str) -> str:
    return text if not text or text.endswith("\n") else f"{text}\n"


def _objects(value: Any) -> list[Record]:
    if isinstance(value, dict):
        return [value]
    if isinstance(value, list):
        return [item for item in value if isinstance(item, dict)]
    return []
