"""Session store types."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal

SESSION_SCHEMA_VERSION = 1

HistoryItemType = Literal["message", "compaction"]
MessageRole = Literal["user", "assistant", "system"]


@dataclass(slots=True)
class SessionEntry:
    """One session in an agent's index, keyed by session key."""
    session_id: str
    updated_at: int
    transcript_file: str
    workspace_path: str = ""
    title: str | None = None
    input_chars: int = 0
    output_chars: int = 0
    total_chars: int = 0
    compaction_count: int = 0
    backend_sessions: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "sessionId": self.session_id,
            "updatedAt": self.updated_at,
            "transcriptFile": self.transcript_file,
            "workspacePath": self.workspace_path,
            "inputChars": self.input_chars,
            "outputChars": self.output_chars,
            "totalChars": self.total_chars,
            "compactionCount": self.compaction_count,
        }
        if self.title:
            data["title"] = self.title
        if self.backend_sessions:
            data["backendSessions"] = dict(self.backend_sessions)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SessionEntry:
        backend = data.get("backendSessions")
        return cls(
            session_id=str(data["sessionId"]),
            updated_at=int(data.get("updatedAt", 0)),
            transcript_file=str(data.get("transcriptFile", "")),
            workspace_path=str(data.get("workspacePath", "")),
            title=data.get("title") or None,
            input_chars=int(data.get("inputChars", 0)),
            output_chars=int(data.get("outputChars", 0)),
            total_chars=int(data.get("totalChars", 0)),
            compaction_count=int(data.get("compactionCount", 0)),
            backend_sessions=(
                {str(k): str(v) for k, v in backend.items()}
                if isinstance(backend, dict) else {}
            ),
        )


@dataclass(frozen=True, slots=True)
class SessionSummary:
    agent_id: str
    session_key: str
    session_id: str
    title: str
    updated_at: int
    transcript_path: str
    workspace_path: str
    input_chars: int = 0
    output_chars: int = 0
    total_chars: int = 0
    compaction_count: int = 0


@dataclass(frozen=True, slots=True)
class SessionRunInfo:
    """What a run needs to know about the session it writes to."""
    agent_id: str
    session_key: str
    session_id: str
    transcript_path: str
    workspace_path: str
    is_new_session: bool
    backend_session_id: str | None = None
    compaction_applied: bool = False


@dataclass(frozen=True, slots=True)
class HistoryItem:
    type: HistoryItemType
    content: str
    timestamp: int
    role: MessageRole | None = None


@dataclass(frozen=True, slots=True)
class SessionHistory:
    session_key: str
    session_id: str | None = None
    transcript_path: str | None = None
    messages: tuple[HistoryItem, ...] = ()


@dataclass(frozen=True, slots=True)
class CompactionResult:
    session_key: str
    session_id: str
    transcript_path: str
    applied: bool
    compacted_messages: int = 0
    summary: str | None = None


@dataclass(frozen=True, slots=True)
class RemovedSession:
    session_key: str
    session_id: str
    title: str
    transcript_path: str


@dataclass(frozen=True, slots=True)
class LastAgentAction:
    agent_id: str
    session_key: str
    session_id: str
    transcript_path: str
    timestamp: int
