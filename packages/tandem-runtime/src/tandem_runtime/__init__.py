"""Tandem Runtime: session store, orchestration engine and service facade."""
from __future__ import annotations

from tandem_runtime.orchestration import (
    OrchestrationEngine,
    OrchestrationStep,
    RunOptions,
    RunResult,
    SessionGraph,
    TraceWriter,
    load_trace,
)
from tandem_runtime.paths import TandemPaths
from tandem_runtime.protocols import SessionBackend, TraceStore
from tandem_runtime.scenarios import (
    ScenarioResult,
    ScenarioRunner,
    ScenarioSpec,
    load_scenario,
)
from tandem_runtime.service import TandemService
from tandem_runtime.sessions import SessionStore

__all__ = [
    "OrchestrationEngine",
    "OrchestrationStep",
    "RunOptions",
    "RunResult",
    "ScenarioResult",
    "ScenarioRunner",
    "ScenarioSpec",
    "SessionBackend",
    "SessionGraph",
    "SessionStore",
    "TandemPaths",
    "TandemService",
    "TraceStore",
    "TraceWriter",
    "load_scenario",
    "load_trace",
]
