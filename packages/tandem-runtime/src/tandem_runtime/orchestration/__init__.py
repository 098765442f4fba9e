"""Orchestration engine: planning loop, decisions and run traces."""
from __future__ import annotations

from tandem_runtime.orchestration.decisions import (
    DelegateDecision,
    FinishDecision,
    PlanningDecision,
    parse_decision,
)
from tandem_runtime.orchestration.engine import (
    MODE_AI_LOOP,
    MODE_SINGLE_AGENT,
    OrchestrationEngine,
    RunOptions,
    RunResult,
)
from tandem_runtime.orchestration.planner import (
    PlannerContext,
    build_planner_prompt,
    render_delegate_message,
)
from tandem_runtime.orchestration.trace import (
    InvocationSummary,
    OrchestrationStep,
    RunTrace,
    SessionEdge,
    SessionGraph,
    SessionNode,
    TraceWriter,
    load_trace,
)

__all__ = [
    "MODE_AI_LOOP",
    "MODE_SINGLE_AGENT",
    "DelegateDecision",
    "FinishDecision",
    "InvocationSummary",
    "OrchestrationEngine",
    "OrchestrationStep",
    "PlannerContext",
    "PlanningDecision",
    "RunOptions",
    "RunResult",
    "RunTrace",
    "SessionEdge",
    "SessionGraph",
    "SessionNode",
    "TraceWriter",
    "build_planner_prompt",
    "load_trace",
    "parse_decision",
    "render_delegate_message",
]
