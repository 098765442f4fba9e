from __future__ import annotations

import dataclasses
import enum
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

OutputSink = Callable[[str], None]

# ── Provider Types ───────────────────────────────────────────────────

class ProviderKind(enum.Enum):
    PROCESS = "process"
    HTTP = "http"


@dataclass(frozen=True, slots=True)
class ProviderCapabilities:
    """What a provider accepts beyond a plain message."""
    agent: bool = False
    model: bool = False
    auth: bool = False
    passthrough: bool = False
    reportees: bool = False
    agent_create: bool = False
    agent_delete: bool = False

    def supports(self, action: str) -> bool:
        return bool(getattr(self, action, False))


@dataclass(frozen=True, slots=True)
class ProviderDescriptor:
    """Static description of a backend provider."""
    id: str
    display_name: str
    kind: ProviderKind
    capabilities: ProviderCapabilities = field(default_factory=ProviderCapabilities)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "displayName": self.display_name,
            "kind": self.kind.value,
            "capabilities": dataclasses.asdict(self.capabilities),
        }


@dataclass(frozen=True, slots=True)
class InvocationRequest:
    """A single call into a backend provider."""
    message: str
    model: str | None = None
    backend_session_id: str | None = None
    passthrough_args: tuple[str, ...] = ()
    env: Mapping[str, str] = field(default_factory=dict)
    agent: str | None = None
    system_prompt: str | None = None
    session_context: str | None = None
    cwd: str | None = None
    timeout_seconds: float | None = None
    on_stdout: OutputSink | None = None
    on_stderr: OutputSink | None = None

    def replace(self, **changes: Any) -> InvocationRequest:
        return dataclasses.replace(self, **changes)


@dataclass(frozen=True, slots=True)
class InvocationResult:
    """Normalized outcome of a provider call."""
    exit_code: int
    stdout: str = ""
    stderr: str = ""
    backend_session_id: str | None = None

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    def replace(self, **changes: Any) -> InvocationResult:
        return dataclasses.replace(self, **changes)


@dataclass(frozen=True, slots=True)
class AgentProvisionRequest:
    """Ask a provider to create or delete a backend-side agent definition."""
    agent_id: str
    description: str = ""
    instructions: str = ""
    model: str | None = None
    env: Mapping[str, str] = field(default_factory=dict)


# ── Run Types ────────────────────────────────────────────────────────

class RunStatus(enum.Enum):
    STARTING = "starting"
    PLANNING = "planning"
    DELEGATING = "delegating"
    FINISHING = "finishing"
    DONE = "done"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in (RunStatus.DONE, RunStatus.FAILED, RunStatus.CANCELLED)


class RunEventType(enum.Enum):
    RUN_STARTED = "run_started"
    PLANNER_STARTED = "planner_started"
    PLANNER_DECISION = "planner_decision"
    DELEGATION_STARTED = "delegation_started"
    INVOCATION_STARTED = "provider_invocation_started"
    INVOCATION_COMPLETED = "provider_invocation_completed"
    RUN_COMPLETED = "run_completed"


@dataclass(frozen=True, slots=True)
class RunStatusEvent:
    """Progress notification emitted while a run executes."""
    type: RunEventType
    run_id: str
    status: RunStatus
    agent_id: str | None = None
    target_agent_id: str | None = None
    provider_id: str | None = None
    step: int | None = None
    exit_code: int | None = None
    detail: str | None = None
    timestamp: float = field(default_factory=time.time)


StatusSink = Callable[[RunStatusEvent], None]
