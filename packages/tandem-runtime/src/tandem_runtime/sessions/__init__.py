"""Session store: per-agent session index and JSONL transcripts."""
from __future__ import annotations

from tandem_runtime.sessions.store import (
    SessionStore,
    default_title,
    most_recent_daily_reset,
    normalize_segment,
    normalize_title,
)
from tandem_runtime.sessions.types import (
    SESSION_SCHEMA_VERSION,
    CompactionResult,
    HistoryItem,
    LastAgentAction,
    RemovedSession,
    SessionEntry,
    SessionHistory,
    SessionRunInfo,
    SessionSummary,
)

__all__ = [
    "SESSION_SCHEMA_VERSION",
    "CompactionResult",
    "HistoryItem",
    "LastAgentAction",
    "RemovedSession",
    "SessionEntry",
    "SessionHistory",
    "SessionRunInfo",
    "SessionStore",
    "SessionSummary",
    "default_title",
    "most_recent_daily_reset",
    "normalize_segment",
    "normalize_title",
]
