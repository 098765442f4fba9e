from __future__ import annotations

from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from contextlib import AbstractAsyncContextManager

    from tandem_runtime.sessions.types import (
        CompactionResult,
        SessionHistory,
        SessionRunInfo,
        SessionSummary,
    )


@runtime_checkable
class SessionBackend(Protocol):
    """Session persistence used by the orchestration engine."""

    def lease(
        self, agent_id: str, session_ref: str | None = None,
    ) -> AbstractAsyncContextManager[str]: ...
    def is_active(self, agent_id: str, session_key: str | None = None) -> bool: ...
    async def prepare_run(
        self,
        agent_id: str,
        *,
        user_message: str,
        session_ref: str | None = None,
        force_new: bool = False,
        provider_id: str | None = None,
        workspace_path: str = "",
    ) -> SessionRunInfo: ...
    async def record_reply(
        self,
        info: SessionRunInfo,
        content: str,
        *,
        provider_id: str | None = None,
        backend_session_id: str | None = None,
    ) -> CompactionResult: ...
    async def build_context(self, info: SessionRunInfo) -> str | None: ...
    async def list_sessions(
        self, agent_id: str, active_minutes: int | None = None,
    ) -> list[SessionSummary]: ...
    async def get_history(
        self,
        agent_id: str,
        session_ref: str | None = None,
        *,
        limit: int | None = None,
        include_compaction: bool = False,
    ) -> SessionHistory: ...
