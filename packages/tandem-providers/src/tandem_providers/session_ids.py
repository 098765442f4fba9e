"""Discovery of backend conversation ids in raw provider output."""
from __future__ import annotations

import re

from tandem_core.types import InvocationResult

_PATTERNS = (
    re.compile(r'"(?:sessionID|sessionId|session_id|chatId|thread_id)"\s*:\s*"([^"]+)"'),
    re.compile(r"\bsession(?:[ _]id)?\s*[:=]\s*([A-Za-z0-9._:-]{6,})", re.IGNORECASE),
    re.compile(r"\bchat(?:[ _]id)?\s*[:=]\s*([A-Za-z0-9._:-]{6,})", re.IGNORECASE),
    re.compile(
        r"\b[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}\b",
        re.IGNORECASE,
    ),
)


def extract_backend_session_id(*texts: str) -> str | None:
    """First id found by the patterns above, tried in order over ``texts``."""
    for pattern in _PATTERNS:
        for text in texts:
            if not text:
                continue
            match = pattern.search(text)
            if match:
                return match.group(match.lastindex or 0).strip()
    return None


def attach_backend_session_id(
    result: InvocationResult, explicit: str | None = None
) -> InvocationResult:
    """Set ``backend_session_id`` on ``result``.

    An id the adapter parsed explicitly wins over one discovered by pattern
    matching; an id already present on the result is kept.
    """
    if result.backend_session_id:
        return result
    session_id = explicit or extract_backend_session_id(result.stdout, result.stderr)
    if not session_id:
        return result
    return result.replace(backend_session_id=session_id)
