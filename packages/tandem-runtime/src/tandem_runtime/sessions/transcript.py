"""JSONL transcript files.

A transcript starts with a ``session`` header record followed by
``message`` and ``compaction`` records, one JSON object per line.
"""
from __future__ import annotations

import json
import re
from pathlib import Path
from typing import Any

from tandem_core.logging import get_logger

from tandem_runtime.sessions.types import SESSION_SCHEMA_VERSION

logger = get_logger("sessions.transcript")

Record = dict[str, Any]

_WHITESPACE = re.compile(r"\s+")
_TRUNCATION_MARKER = "\n...[truncated]...\n"


def header_record(
    *,
    session_id: str,
    session_key: str,
    agent_id: str,
    created_at: int,
    workspace_path: str,
) -> Record:
    return {
        "type": "session",
        "schemaVersion": SESSION_SCHEMA_VERSION,
        "sessionId": session_id,
        "sessionKey": session_key,
        "agentId": agent_id,
        "createdAt": created_at,
        "workspacePath": workspace_path,
    }


def message_record(role: str, content: str, timestamp: int) -> Record:
    return {"type": "message", "role": role, "content": content, "timestamp": timestamp}


def compaction_record(summary: str, compacted: int, kept: int, timestamp: int) -> Record:
    return {
        "type": "compaction",
        "summary": summary,
        "compactedMessages": compacted,
        "keptMessages": kept,
        "timestamp": timestamp,
    }


def is_message(record: Record) -> bool:
    return record.get("type") == "message" and isinstance(record.get("content"), str)


def is_compaction(record: Record) -> bool:
    return record.get("type") == "compaction" and isinstance(record.get("summary"), str)


def read_records(path: Path) -> list[Record]:
    """Valid records of a transcript; a missing file has none."""
    if not path.exists():
        return []
    records: list[Record] = []
    with open(path, encoding="utf-8") as f:
        for lineno, line in enumerate(f, 1):
            line = line.strip()
            if not line:
                continue
            try:
                record = json.loads(line)
            except json.JSONDecodeError:
                logger.warning("Skipping invalid transcript line %s:%d", path, lineno)
                continue
            if isinstance(record, dict) and record.get("type") in ("session", "message", "compaction"):
                records.append(record)
    return records


def write_records(path: Path, records: list[Record]) -> None:
    """Replace the transcript atomically."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(".jsonl.tmp")
    with open(tmp, "w", encoding="utf-8") as f:
        for record in records:
            f.write(json.dumps(record, ensure_ascii=False) + "\n")
    tmp.replace(path)


def append_record(path: Path, record: Record) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "a", encoding="utf-8") as f:
        f.write(json.dumps(record, ensure_ascii=False) + "\n")


def ensure_header(path: Path, header: Record) -> None:
    """Write ``header`` to a transcript that has none yet."""
    records = read_records(path)
    if records and records[0].get("type") == "session":
        return
    write_records(path, [header, *records])


def summarize_messages(messages: list[Record], max_chars: int) -> str:
    """One flattened line per message, clamped to ``max_chars``."""
    lines = ["Compaction summary of earlier messages:"]
    for message in messages:
        flattened = _WHITESPACE.sub(" ", message["content"]).strip()
        if not flattened:
            continue
        lines.append(f"- {message.get('role', 'user')}: {flattened}")
        if len("\n".join(lines)) >= max_chars:
            break
    return clamp_text("\n".join(lines), max_chars)


def clamp_text(value: str, max_chars: int) -> str:
    """Keep the tail of ``value`` when it exceeds ``max_chars``."""
    if len(value) <= max_chars:
        return value
    tail = max(64, max_chars - len(_TRUNCATION_MARKER))
    return f"{value[-tail:].lstrip()}{_TRUNCATION_MARKER}"
