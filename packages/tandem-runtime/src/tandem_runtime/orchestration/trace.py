"""Run traces: the persisted record of one orchestration run."""
from __future__ import annotations

import asyncio
import json
import time
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any

from tandem_core.errors import TandemError
from tandem_core.logging import get_logger

if TYPE_CHECKING:
    from tandem_core.types import RunStatus

    from tandem_runtime.orchestration.decisions import PlanningDecision

logger = get_logger("orchestration.trace")

TRACE_SCHEMA_VERSION = 1


def iso_now(timestamp: float | None = None) -> str:
    moment = datetime.fromtimestamp(time.time() if timestamp is None else timestamp, UTC)
    return moment.isoformat(timespec="milliseconds").replace("+00:00", "Z")


@dataclass(frozen=True, slots=True)
class InvocationSummary:
    """What one provider call was asked and what it answered."""
    agent_id: str
    provider_id: str
    exit_code: int
    request: str
    response: str
    stderr: str = ""
    session_key: str | None = None
    session_id: str | None = None
    backend_session_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "agentId": self.agent_id,
            "providerId": self.provider_id,
            "code": self.exit_code,
            "request": self.request,
            "response": self.response,
            "stderr": self.stderr,
            "sessionKey": self.session_key,
            "sessionId": self.session_id,
            "backendSessionId": self.backend_session_id,
        }


@dataclass(frozen=True, slots=True)
class OrchestrationStep:
    """One planning turn and what came of it.

    ``sequence`` is assigned when the planner's decision is parsed. A
    delegating step is recorded after the nested loop it started but still
    sorts before that loop's steps.
    """
    sequence: int
    agent_id: str
    depth: int
    decision: PlanningDecision
    invocation: InvocationSummary
    planner_raw_output: str
    agent_call: InvocationSummary | None = None
    note: str | None = None
    timestamp: str = field(default_factory=iso_now)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "step": self.sequence,
            "agentId": self.agent_id,
            "depth": self.depth,
            "timestamp": self.timestamp,
            "plannerRawOutput": self.planner_raw_output,
            "plannerDecision": self.decision.to_dict(),
            "invocation": self.invocation.to_dict(),
        }
        if self.agent_call is not None:
            data["agentCall"] = self.agent_call.to_dict()
        if self.note:
            data["note"] = self.note
        return data


@dataclass(frozen=True, slots=True)
class SessionNode:
    agent_id: str
    provider_id: str | None = None
    session_key: str | None = None
    session_id: str | None = None
    backend_session_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "agentId": self.agent_id,
            "providerId": self.provider_id,
            "sessionKey": self.session_key,
            "sessionId": self.session_id,
            "backendSessionId": self.backend_session_id,
        }


@dataclass(frozen=True, slots=True)
class SessionEdge:
    from_agent_id: str
    to_agent_id: str
    reason: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {"fromAgentId": self.from_agent_id, "toAgentId": self.to_agent_id, "reason": self.reason}


@dataclass(slots=True)
class SessionGraph:
    """Agents touched by a run (nodes) and the delegations between them (edges)."""
    nodes: list[SessionNode] = field(default_factory=list)
    edges: list[SessionEdge] = field(default_factory=list)

    def add_node(self, node: SessionNode) -> None:
        for index, existing in enumerate(self.nodes):
            if (existing.agent_id, existing.session_key) == (node.agent_id, node.session_key):
                if node.backend_session_id and node != existing:
                    self.nodes[index] = node
                return
        self.nodes.append(node)

    def add_edge(self, from_agent_id: str, to_agent_id: str, reason: str = "") -> None:
        self.edges.append(SessionEdge(from_agent_id, to_agent_id, reason))

    @property
    def agent_ids(self) -> list[str]:
        return [node.agent_id for node in self.nodes]

    def to_dict(self) -> dict[str, Any]:
        return {
            "nodes": [node.to_dict() for node in self.nodes],
            "edges": [edge.to_dict() for edge in self.edges],
        }


@dataclass(slots=True)
class RunTrace:
    run_id: str
    mode: str
    entry_agent_id: str
    user_message: str
    status: RunStatus
    started_at: str = field(default_factory=iso_now)
    completed_at: str | None = None
    final_message: str | None = None
    error: dict[str, Any] | None = None
    steps: list[OrchestrationStep] = field(default_factory=list)
    session_graph: SessionGraph = field(default_factory=SessionGraph)

    def ordered_steps(self) -> list[OrchestrationStep]:
        return sorted(self.steps, key=lambda step: step.sequence)

    def to_dict(self) -> dict[str, Any]:
        return {
            "schemaVersion": TRACE_SCHEMA_VERSION,
            "runId": self.run_id,
            "mode": self.mode,
            "status": self.status.value,
            "entryAgentId": self.entry_agent_id,
            "userMessage": self.user_message,
            "startedAt": self.started_at,
            "completedAt": self.completed_at,
            "finalMessage": self.final_message,
            "error": self.error,
            "steps": [step.to_dict() for step in self.ordered_steps()],
            "sessionGraph": self.session_graph.to_dict(),
        }


def error_payload(exc: BaseException) -> dict[str, Any]:
    payload: dict[str, Any] = {"type": type(exc).__name__, "message": str(exc)}
    for attribute in ("agent_id", "provider_id", "action", "max_depth"):
        value = getattr(exc, attribute, None)
        if value is not None:
            payload[attribute] = value
    return payload


class TraceWriter:
    """Writes run traces as ``<runs_dir>/<run_id>.json``."""

    def __init__(self, runs_dir: Path) -> None:
        self._runs_dir = Path(runs_dir)

    @property
    def runs_dir(self) -> Path:
        return self._runs_dir

    def path_for(self, run_id: str) -> Path:
        return self._runs_dir / f"{run_id}.json"

    async def write(self, trace: RunTrace) -> Path:
        path = self.path_for(trace.run_id)
        payload = json.dumps(trace.to_dict(), indent=2, ensure_ascii=False) + "\n"
        await asyncio.to_thread(_write_text, path, payload)
        logger.debug("Wrote trace %s", path)
        return path

    async def load(self, run_id: str) -> dict[str, Any]:
        return await asyncio.to_thread(load_trace, self.path_for(run_id))


def load_trace(path: Path) -> dict[str, Any]:
    """Read a trace file written by :class:`TraceWriter`."""
    try:
        data = json.loads(Path(path).read_text(encoding="utf-8"))
    except FileNotFoundError as exc:
        msg = f"Run trace not found: {path}"
        raise TandemError(msg) from exc
    except json.JSONDecodeError as exc:
        msg = f"Run trace {path} is not valid JSON: {exc}"
        raise TandemError(msg) from exc
    if not isinstance(data, dict):
        msg = f"Run trace {path} is not a JSON object"
        raise TandemError(msg)
    return data


def _write_text(path: Path, payload: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(".json.tmp")
    tmp.write_text(payload, encoding="utf-8")
    tmp.replace(path)
