"""Protocol interfaces the orchestration engine depends on."""
from __future__ import annotations

from tandem_runtime.protocols.session_store import SessionBackend
from tandem_runtime.protocols.trace_store import TraceStore

__all__ = [
    "SessionBackend",
    "TraceStore",
]
