"""File-backed session store.

Layout per agent::

    <agents>/<agent-id>/sessions/sessions.json    index: session key → entry
    <agents>/<agent-id>/sessions/<session-id>.jsonl  transcript

The store is the only writer of both. Index read-modify-write cycles are
serialized per agent with an ``asyncio.Lock`` and run in a worker thread.
"""
from __future__ import annotations

import asyncio
import contextlib
import json
import re
import time
import uuid
from datetime import datetime, timedelta
from pathlib import Path
from typing import TYPE_CHECKING, Any

from tandem_core.config import SessionsConfig
from tandem_core.errors import (
    SessionBusyError,
    SessionNotFoundError,
    SessionStoreCorruptError,
)
from tandem_core.logging import get_logger

from tandem_runtime.sessions import transcript
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

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Callable

logger = get_logger("sessions")

INDEX_FILENAME = "sessions.json"
TITLE_MAX_CHARS = 120
DEFAULT_IDLE_MINUTES = 60
_SEGMENT_STRIP = re.compile(r"[^a-z0-9-]+")
_RETAINED_COMPACTIONS = 3


def normalize_segment(value: str) -> str:
    return _SEGMENT_STRIP.sub("-", value.strip().lower()).strip("-")


def new_session_id() -> str:
    return str(uuid.uuid4())


def default_title(session_key: str) -> str:
    segment = session_key.rsplit(":", 1)[-1].strip() or "session"
    words = re.sub(r"[-_]+", " ", segment).strip()
    return words[:1].upper() + words[1:] if words else "Session"


def normalize_title(title: str) -> str:
    value = title.strip()
    if not value:
        msg = "Session title cannot be empty"
        raise ValueError(msg)
    if len(value) <= TITLE_MAX_CHARS:
        return value
    return f"{value[:TITLE_MAX_CHARS - 3]}..."


class SessionStore:
    """Per-agent conversation sessions keyed by ``agent:<agent-id>:<segment>``."""

    def __init__(
        self,
        agents_dir: Path,
        config: SessionsConfig | None = None,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._agents_dir = Path(agents_dir)
        self._config = config or SessionsConfig()
        self._clock = clock
        self._locks: dict[str, asyncio.Lock] = {}
        self._active: set[tuple[str, str]] = set()

    @property
    def config(self) -> SessionsConfig:
        return self._config

    # ── Keys ────────────────────────────────────────────────────────

    def sessions_dir(self, agent_id: str) -> Path:
        return self._agents_dir / agent_id / "sessions"

    def main_key(self, agent_id: str) -> str:
        return f"agent:{agent_id}:{normalize_segment(self._config.main_key) or 'main'}"

    def resolve_session_key(
        self,
        agent_id: str,
        session_ref: str | None,
        sessions: dict[str, SessionEntry] | None = None,
    ) -> str:
        """Map a user-facing reference to a session key.

        Empty or ``"main"`` → the main key; a stored key → itself; a stored
        session id → its key; any other ``a:b`` form → itself; anything else
        becomes a named segment under the agent.
        """
        reference = (session_ref or "").strip().lower()
        if not reference or reference == "main":
            return self.main_key(agent_id)

        sessions = sessions or {}
        if reference in sessions:
            return reference
        for key, entry in sessions.items():
            if entry.session_id == reference:
                return key
        if ":" in reference:
            return reference
        return f"agent:{agent_id}:{normalize_segment(reference) or 'main'}"

    # ── Leases ──────────────────────────────────────────────────────

    @contextlib.asynccontextmanager
    async def lease(self, agent_id: str, session_ref: str | None = None) -> AsyncIterator[str]:
        """Hold ``(agent_id, session key)`` for the duration of a run.

        Yields the resolved session key. A second lease on the same key
        raises SessionBusyError instead of waiting.
        """
        async with self._lock(agent_id):
            sessions = await asyncio.to_thread(self._read_index, agent_id)
        key = self.resolve_session_key(agent_id, session_ref, sessions)
        slot = (agent_id, key)
        if slot in self._active:
            raise SessionBusyError(agent_id, key)
        self._active.add(slot)
        try:
            yield key
        finally:
            self._active.discard(slot)

    def is_active(self, agent_id: str, session_key: str | None = None) -> bool:
        if session_key is None:
            return any(active_agent == agent_id for active_agent, _ in self._active)
        return (agent_id, session_key) in self._active

    # ── Runs ────────────────────────────────────────────────────────

    async def prepare_run(
        self,
        agent_id: str,
        *,
        user_message: str,
        session_ref: str | None = None,
        force_new: bool = False,
        provider_id: str | None = None,
        workspace_path: str = "",
    ) -> SessionRunInfo:
        """Open (or start) the session for a run and record the user message."""
        async with self._lock(agent_id):
            return await asyncio.to_thread(
                self._prepare_run_sync,
                agent_id, user_message, session_ref, force_new, provider_id, workspace_path,
            )

    async def record_reply(
        self,
        info: SessionRunInfo,
        content: str,
        *,
        provider_id: str | None = None,
        backend_session_id: str | None = None,
    ) -> CompactionResult:
        """Record the assistant reply and remember the backend conversation id."""
        async with self._lock(info.agent_id):
            return await asyncio.to_thread(
                self._record_reply_sync, info, content, provider_id, backend_session_id,
            )

    async def build_context(self, info: SessionRunInfo) -> str | None:
        """Earlier conversation as a prompt block for providers without memory.

        The newest user message (the one being answered) is excluded; the
        block keeps the most recent text within ``context_max_chars``.
        """
        records = await asyncio.to_thread(transcript.read_records, Path(info.transcript_path))
        lines: list[str] = []
        compactions = [r for r in records if transcript.is_compaction(r)]
        if compactions:
            lines.append(compactions[-1]["summary"])
        messages = [r for r in records if transcript.is_message(r)]
        if messages and messages[-1].get("role") == "user":
            messages = messages[:-1]
        lines.extend(f"{m.get('role', 'user')}: {m['content']}" for m in messages)
        if not lines:
            return None
        body = transcript.clamp_text("\n".join(lines), self._config.context_max_chars)
        return f"Session context (earlier conversation):\n{body}"

    # ── Admin ───────────────────────────────────────────────────────

    async def list_sessions(
        self, agent_id: str, active_minutes: int | None = None
    ) -> list[SessionSummary]:
        sessions = await self._load(agent_id)
        now_ms = self._now_ms()
        window_ms = active_minutes * 60_000 if active_minutes and active_minutes > 0 else None
        summaries = [
            self._summary(agent_id, key, entry)
            for key, entry in sessions.items()
            if window_ms is None or now_ms - entry.updated_at <= window_ms
        ]
        return sorted(summaries, key=lambda s: s.updated_at, reverse=True)

    async def get_history(
        self,
        agent_id: str,
        session_ref: str | None = None,
        *,
        limit: int | None = None,
        include_compaction: bool = False,
    ) -> SessionHistory:
        sessions = await self._load(agent_id)
        key = self.resolve_session_key(agent_id, session_ref, sessions)
        entry = sessions.get(key)
        if entry is None:
            return SessionHistory(session_key=key)

        path = self._transcript_path(agent_id, entry)
        records = await asyncio.to_thread(transcript.read_records, path)
        items: list[HistoryItem] = []
        for record in records:
            if transcript.is_compaction(record):
                if include_compaction:
                    items.append(HistoryItem(
                        type="compaction",
                        content=record["summary"],
                        timestamp=int(record.get("timestamp", 0)),
                    ))
            elif transcript.is_message(record):
                items.append(HistoryItem(
                    type="message",
                    role=record.get("role"),
                    content=record["content"],
                    timestamp=int(record.get("timestamp", 0)),
                ))
        if limit and limit > 0:
            items = items[-limit:]
        return SessionHistory(
            session_key=key,
            session_id=entry.session_id,
            transcript_path=str(path),
            messages=tuple(items),
        )

    async def reset_session(
        self, agent_id: str, session_ref: str | None = None, *, workspace_path: str = ""
    ) -> SessionRunInfo:
        """Start a fresh session id under the same key.

        The previous transcript stays on disk but is no longer referenced;
        stored backend conversation ids are dropped.
        """
        async with self._lock(agent_id):
            return await asyncio.to_thread(self._reset_sync, agent_id, session_ref, workspace_path)

    async def rename_session(
        self, agent_id: str, title: str, session_ref: str | None = None
    ) -> SessionSummary:
        normalized = normalize_title(title)
        async with self._lock(agent_id):
            sessions = await asyncio.to_thread(self._read_index, agent_id)
            key = self._require(agent_id, session_ref, sessions)
            entry = sessions[key]
            entry.title = normalized
            entry.updated_at = self._now_ms()
            await asyncio.to_thread(self._write_index, agent_id, sessions)
        logger.info("Renamed session %s to %r", key, normalized)
        return self._summary(agent_id, key, entry)

    async def remove_session(
        self, agent_id: str, session_ref: str | None = None
    ) -> RemovedSession:
        """Delete a session's index entry and its transcript."""
        async with self._lock(agent_id):
            sessions = await asyncio.to_thread(self._read_index, agent_id)
            key = self._require(agent_id, session_ref, sessions)
            if self.is_active(agent_id, key):
                raise SessionBusyError(agent_id, key)
            entry = sessions.pop(key)
            path = self._transcript_path(agent_id, entry)
            await asyncio.to_thread(self._write_index, agent_id, sessions)
            await asyncio.to_thread(path.unlink, missing_ok=True)
        logger.info("Removed session %s (%s)", key, entry.session_id)
        return RemovedSession(
            session_key=key,
            session_id=entry.session_id,
            title=entry.title or default_title(key),
            transcript_path=str(path),
        )

    async def compact_session(
        self, agent_id: str, session_ref: str | None = None
    ) -> CompactionResult:
        """Force compaction regardless of the automatic triggers."""
        async with self._lock(agent_id):
            sessions = await asyncio.to_thread(self._read_index, agent_id)
            key = self._require(agent_id, session_ref, sessions)
            return await asyncio.to_thread(self._compact_sync, agent_id, sessions, key, True)

    async def get_last_agent_action(self, agent_id: str) -> LastAgentAction | None:
        """Most recent assistant message across all of an agent's sessions."""
        sessions = await self._load(agent_id)
        latest: LastAgentAction | None = None
        for key, entry in sessions.items():
            if entry.output_chars <= 0:
                continue
            path = self._transcript_path(agent_id, entry)
            records = await asyncio.to_thread(transcript.read_records, path)
            for record in records:
                if not transcript.is_message(record) or record.get("role") != "assistant":
                    continue
                timestamp = int(record.get("timestamp", 0))
                if latest is None or timestamp > latest.timestamp:
                    latest = LastAgentAction(
                        agent_id=agent_id,
                        session_key=key,
                        session_id=entry.session_id,
                        transcript_path=str(path),
                        timestamp=timestamp,
                    )
        return latest

    # ── Synchronous internals (run in a worker thread) ─────────────

    def _prepare_run_sync(
        self,
        agent_id: str,
        user_message: str,
        session_ref: str | None,
        force_new: bool,
        provider_id: str | None,
        workspace_path: str,
    ) -> SessionRunInfo:
        sessions = self._read_index(agent_id)
        key = self.resolve_session_key(agent_id, session_ref, sessions)
        existing = sessions.get(key)
        fresh = existing is not None and self._is_fresh(existing.updated_at)
        is_new = force_new or not fresh

        if is_new:
            if existing is not None:
                logger.info("Starting new session for %s (forced=%s)", key, force_new)
            entry = self._new_entry(agent_id, workspace_path)
        else:
            entry = existing
            entry.updated_at = self._now_ms()
            entry.workspace_path = workspace_path or entry.workspace_path
        sessions[key] = entry
        self._write_index(agent_id, sessions)

        path = self._transcript_path(agent_id, entry)
        transcript.ensure_header(path, self._header(agent_id, key, entry))
        compaction = self._compact_sync(agent_id, sessions, key, False)
        self._append_sync(agent_id, sessions, key, "user", user_message)

        return SessionRunInfo(
            agent_id=agent_id,
            session_key=key,
            session_id=entry.session_id,
            transcript_path=str(path),
            workspace_path=entry.workspace_path,
            is_new_session=is_new,
            backend_session_id=entry.backend_sessions.get(provider_id) if provider_id else None,
            compaction_applied=compaction.applied,
        )

    def _record_reply_sync(
        self,
        info: SessionRunInfo,
        content: str,
        provider_id: str | None,
        backend_session_id: str | None,
    ) -> CompactionResult:
        sessions = self._read_index(info.agent_id)
        entry = sessions.get(info.session_key)
        if entry is None or entry.session_id != info.session_id:
            logger.warning(
                "Session %s changed during the run; reply not recorded", info.session_key
            )
            return CompactionResult(
                session_key=info.session_key,
                session_id=info.session_id,
                transcript_path=info.transcript_path,
                applied=False,
            )
        if provider_id and backend_session_id:
            entry.backend_sessions[provider_id] = backend_session_id
        self._append_sync(info.agent_id, sessions, info.session_key, "assistant", content)
        return self._compact_sync(info.agent_id, sessions, info.session_key, False)

    def _reset_sync(self, agent_id: str, session_ref: str | None, workspace_path: str) -> SessionRunInfo:
        sessions = self._read_index(agent_id)
        key = self.resolve_session_key(agent_id, session_ref, sessions)
        previous = sessions.get(key)
        entry = self._new_entry(
            agent_id, workspace_path or (previous.workspace_path if previous else "")
        )
        sessions[key] = entry
        self._write_index(agent_id, sessions)
        path = self._transcript_path(agent_id, entry)
        transcript.ensure_header(path, self._header(agent_id, key, entry))
        logger.info("Reset session %s → %s", key, entry.session_id)
        return SessionRunInfo(
            agent_id=agent_id,
            session_key=key,
            session_id=entry.session_id,
            transcript_path=str(path),
            workspace_path=entry.workspace_path,
            is_new_session=True,
        )

    def _append_sync(
        self,
        agent_id: str,
        sessions: dict[str, SessionEntry],
        key: str,
        role: str,
        content: str,
    ) -> None:
        text = content.strip()
        if not text:
            return
        entry = sessions[key]
        now_ms = self._now_ms()
        transcript.append_record(
            self._transcript_path(agent_id, entry),
            transcript.message_record(role, text, now_ms),
        )
        if role == "assistant":
            entry.output_chars += len(text)
        else:
            entry.input_chars += len(text)
        entry.total_chars = entry.input_chars + entry.output_chars
        entry.updated_at = now_ms
        self._write_index(agent_id, sessions)

    def _compact_sync(
        self,
        agent_id: str,
        sessions: dict[str, SessionEntry],
        key: str,
        force: bool,
    ) -> CompactionResult:
        cfg = self._config
        entry = sessions[key]
        path = self._transcript_path(agent_id, entry)
        skipped = CompactionResult(
            session_key=key,
            session_id=entry.session_id,
            transcript_path=str(path),
            applied=False,
        )
        if not force and not cfg.compaction_enabled:
            return skipped

        records = transcript.read_records(path)
        messages = [r for r in records if transcript.is_message(r)]
        if not force:
            chars = sum(len(m["content"]) for m in messages)
            if (
                len(messages) < cfg.compaction_trigger_messages
                and chars < cfg.compaction_trigger_chars
            ):
                return skipped

        keep = max(1, cfg.compaction_keep_recent)
        if len(messages) <= keep:
            return skipped

        compacted, kept = messages[:-keep], messages[-keep:]
        summary = transcript.summarize_messages(compacted, cfg.summary_max_chars)
        header = next(
            (r for r in records if r.get("type") == "session"),
            self._header(agent_id, key, entry),
        )
        previous = [r for r in records if transcript.is_compaction(r)][-_RETAINED_COMPACTIONS:]
        now_ms = self._now_ms()
        transcript.write_records(path, [
            header,
            *previous,
            transcript.compaction_record(summary, len(compacted), len(kept), now_ms),
            *kept,
        ])

        entry.compaction_count += 1
        entry.updated_at = now_ms
        self._write_index(agent_id, sessions)
        logger.info("Compacted %d message(s) of %s", len(compacted), key)
        return CompactionResult(
            session_key=key,
            session_id=entry.session_id,
            transcript_path=str(path),
            applied=True,
            compacted_messages=len(compacted),
            summary=summary,
        )

    # ── Index I/O ───────────────────────────────────────────────────

    def _index_path(self, agent_id: str) -> Path:
        return self.sessions_dir(agent_id) / INDEX_FILENAME

    def _read_index(self, agent_id: str) -> dict[str, SessionEntry]:
        path = self._index_path(agent_id)
        if not path.exists():
            return {}
        try:
            raw: Any = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            msg = f"Session index {path} is unreadable: {exc}"
            raise SessionStoreCorruptError(msg) from exc

        entries = raw.get("sessions") if isinstance(raw, dict) else None
        if not isinstance(entries, dict):
            msg = f"Session index {path} has no 'sessions' mapping"
            raise SessionStoreCorruptError(msg)

        sessions: dict[str, SessionEntry] = {}
        for key, value in entries.items():
            if not isinstance(value, dict) or not value.get("sessionId"):
                logger.warning("Skipping malformed session entry %s in %s", key, path)
                continue
            try:
                sessions[key] = SessionEntry.from_dict(value)
            except (TypeError, ValueError):
                logger.warning("Skipping malformed session entry %s in %s", key, path)
        return sessions

    def _write_index(self, agent_id: str, sessions: dict[str, SessionEntry]) -> None:
        path = self._index_path(agent_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        payload = {
            "schemaVersion": SESSION_SCHEMA_VERSION,
            "sessions": {key: entry.to_dict() for key, entry in sessions.items()},
        }
        tmp = path.with_suffix(".json.tmp")
        tmp.write_text(json.dumps(payload, indent=2, ensure_ascii=False) + "\n", encoding="utf-8")
        tmp.replace(path)

    async def _load(self, agent_id: str) -> dict[str, SessionEntry]:
        async with self._lock(agent_id):
            return await asyncio.to_thread(self._read_index, agent_id)

    # ── Helpers ─────────────────────────────────────────────────────

    def _lock(self, agent_id: str) -> asyncio.Lock:
        lock = self._locks.get(agent_id)
        if lock is None:
            lock = self._locks[agent_id] = asyncio.Lock()
        return lock

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def _require(
        self, agent_id: str, session_ref: str | None, sessions: dict[str, SessionEntry]
    ) -> str:
        key = self.resolve_session_key(agent_id, session_ref, sessions)
        if key not in sessions:
            msg = f"Session '{session_ref or key}' not found for agent '{agent_id}'"
            raise SessionNotFoundError(msg)
        return key

    def _new_entry(self, agent_id: str, workspace_path: str) -> SessionEntry:
        session_id = new_session_id()
        return SessionEntry(
            session_id=session_id,
            updated_at=self._now_ms(),
            transcript_file=str(self.sessions_dir(agent_id) / f"{session_id}.jsonl"),
            workspace_path=workspace_path,
        )

    def _transcript_path(self, agent_id: str, entry: SessionEntry) -> Path:
        if entry.transcript_file:
            return Path(entry.transcript_file)
        return self.sessions_dir(agent_id) / f"{entry.session_id}.jsonl"

    def _header(self, agent_id: str, key: str, entry: SessionEntry) -> dict[str, Any]:
        return transcript.header_record(
            session_id=entry.session_id,
            session_key=key,
            agent_id=agent_id,
            created_at=self._now_ms(),
            workspace_path=entry.workspace_path,
        )

    def _summary(self, agent_id: str, key: str, entry: SessionEntry) -> SessionSummary:
        return SessionSummary(
            agent_id=agent_id,
            session_key=key,
            session_id=entry.session_id,
            title=entry.title or default_title(key),
            updated_at=entry.updated_at,
            transcript_path=str(self._transcript_path(agent_id, entry)),
            workspace_path=entry.workspace_path,
            input_chars=entry.input_chars,
            output_chars=entry.output_chars,
            total_chars=entry.total_chars,
            compaction_count=entry.compaction_count,
        )

    def _is_fresh(self, updated_at_ms: int) -> bool:
        cfg = self._config
        if cfg.reset_mode == "never":
            return True
        now = self._clock()
        stale_daily = (
            cfg.reset_mode == "daily"
            and updated_at_ms < most_recent_daily_reset(now, cfg.reset_at_hour) * 1000
        )
        idle_minutes = cfg.idle_minutes if cfg.idle_minutes and cfg.idle_minutes > 0 else None
        if idle_minutes is None and cfg.reset_mode == "idle":
            idle_minutes = DEFAULT_IDLE_MINUTES
        stale_idle = (
            idle_minutes is not None
            and now * 1000 > updated_at_ms + idle_minutes * 60_000
        )
        return not (stale_daily or stale_idle)


def most_recent_daily_reset(now: float, at_hour: int) -> float:
    """Epoch seconds of the latest local ``at_hour:00`` not after ``now``."""
    hour = min(23, max(0, int(at_hour)))
    current = datetime.fromtimestamp(now)
    reset = current.replace(hour=hour, minute=0, second=0, microsecond=0)
    if current < reset:
        reset -= timedelta(days=1)
    return reset.timestamp()
