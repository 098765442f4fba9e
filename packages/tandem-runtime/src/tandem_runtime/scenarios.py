"""Scenario runner: replay a multi-agent run and check what came of it.

A scenario is a JSON (or YAML) document naming a user message, the agents
to set up, and assertions about the run. In scripted mode a deterministic
provider answers every agent: the entry agent replays the scenario's
``orchestratorActions`` one decision per planning turn and every other
agent answers from ``agentReplies``. In live mode the message goes
through the service's configured providers unchanged.

Either way the run's result and its persisted trace are checked against
the assertions, and a :class:`ScenarioResult` reports every failure.

Usage:
    scenario = load_scenario("scenarios/pm-dev-qa.json")
    result = await ScenarioRunner().run_scripted(scenario)
    assert result.success, result.failures
"""
from __future__ import annotations

import asyncio
import dataclasses
import json
import tempfile
from collections import defaultdict
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, Literal

import yaml
from tandem_agents.parser import normalize_agent_id
from tandem_core.config import PathsConfig, SessionsConfig, TandemConfig
from tandem_core.errors import ScenarioError
from tandem_core.logging import get_logger
from tandem_core.types import (
    InvocationResult,
    ProviderCapabilities,
    ProviderDescriptor,
    ProviderKind,
)
from tandem_providers.base import BaseProvider
from tandem_providers.registry import ProviderModule, create_default_registry

from tandem_runtime.orchestration.engine import RunOptions
from tandem_runtime.orchestration.trace import load_trace
from tandem_runtime.service import TandemService

if TYPE_CHECKING:
    from tandem_core.types import InvocationRequest

    from tandem_runtime.orchestration.engine import RunResult

logger = get_logger("scenarios")

ScenarioMode = Literal["scripted", "live"]

SCRIPTED_PROVIDER_ID = "scenario-scripted"
SCENARIO_AGENT_PRIORITY = 70


# ── Scenario Definition ──────────────────────────────────────────────

@dataclass(frozen=True, slots=True)
class ScenarioAgent:
    id: str
    name: str
    description: str = ""
    tags: tuple[str, ...] = ("scenario",)
    priority: int = SCENARIO_AGENT_PRIORITY
    can_delegate: bool = False


@dataclass(frozen=True, slots=True)
class ScenarioScript:
    """What the scripted provider answers.

    ``orchestrator_actions`` are planner decisions handed out in order to
    the entry agent. ``agent_replies`` maps an agent id to one reply, or to
    a list of replies given in turn with the last one repeating.
    """
    orchestrator_actions: tuple[dict[str, Any], ...] = ()
    agent_replies: dict[str, tuple[str, ...]] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class ScenarioAssertions:
    must_succeed: bool = True
    stdout_includes: tuple[str, ...] = ()
    delegated_agents: tuple[str, ...] | None = None
    min_steps: int | None = None
    max_steps: int | None = None


@dataclass(frozen=True, slots=True)
class ScenarioSpec:
    name: str
    message: str
    entry_agent_id: str | None = None
    agents: tuple[ScenarioAgent, ...] = ()
    scripted: ScenarioScript | None = None
    assertions: ScenarioAssertions = field(default_factory=ScenarioAssertions)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> ScenarioSpec:
        """Build a scenario from its camelCase document form.

        Raises:
            ScenarioError: When a required field is missing or ill-typed.
        """
        if not isinstance(data, Mapping):
            raise ScenarioError("Scenario must be a JSON object")
        name = _required_str(data, "name")
        message = _required_str(data, "message")
        entry = data.get("entryAgentId")
        if entry is not None and not isinstance(entry, str):
            raise ScenarioError("Scenario 'entryAgentId' must be a string")

        scripted = data.get("scripted")
        return cls(
            name=name,
            message=message,
            entry_agent_id=(entry.strip() or None) if entry else None,
            agents=tuple(_parse_agent(item) for item in _list(data, "agents")),
            scripted=_parse_script(scripted) if scripted is not None else None,
            assertions=_parse_assertions(data.get("assertions") or {}),
        )


def load_scenario(path: Path | str) -> ScenarioSpec:
    """Read a scenario file; ``.yaml``/``.yml`` are parsed as YAML, anything else as JSON."""
    path = Path(path)
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        msg = f"Cannot read scenario {path}: {exc}"
        raise ScenarioError(msg) from exc
    try:
        if path.suffix.lower() in {".yaml", ".yml"}:
            data = yaml.safe_load(text)
        else:
            data = json.loads(text)
    except (json.JSONDecodeError, yaml.YAMLError) as exc:
        msg = f"Scenario {path} is not valid: {exc}"
        raise ScenarioError(msg) from exc
    return ScenarioSpec.from_dict(data)


def _required_str(data: Mapping[str, Any], key: str) -> str:
    value = data.get(key)
    if not isinstance(value, str) or not value.strip():
        msg = f"Scenario '{key}' must be a non-empty string"
        raise ScenarioError(msg)
    return value.strip()


def _list(data: Mapping[str, Any], key: str) -> list[Any]:
    value = data.get(key)
    if value is None:
        return []
    if not isinstance(value, list):
        msg = f"Scenario '{key}' must be a list"
        raise ScenarioError(msg)
    return value


def _parse_agent(item: Any) -> ScenarioAgent:
    if not isinstance(item, Mapping):
        raise ScenarioError("Scenario agents must be objects")
    name = item.get("name") or item.get("id")
    if not isinstance(name, str) or not name.strip():
        raise ScenarioError("Scenario agents need a name or an id")
    agent_id = normalize_agent_id(str(item.get("id") or name))
    if not agent_id:
        msg = f"Cannot derive an agent id from {name!r}"
        raise ScenarioError(msg)
    tags = item.get("tags")
    priority = item.get("priority")
    if isinstance(priority, bool) or not isinstance(priority, int):
        priority = SCENARIO_AGENT_PRIORITY
    return ScenarioAgent(
        id=agent_id,
        name=name.strip(),
        description=str(item.get("description") or ""),
        tags=tuple(str(t) for t in tags) if isinstance(tags, list) else ("scenario",),
        priority=priority,
        can_delegate=bool(item.get("canDelegate", False)),
    )


def _parse_script(data: Any) -> ScenarioScript:
    if not isinstance(data, Mapping):
        raise ScenarioError("Scenario 'scripted' must be an object")
    actions = _list(data, "orchestratorActions")
    for action in actions:
        if not isinstance(action, Mapping):
            raise ScenarioError("Each orchestrator action must be an object")

    replies_raw = data.get("agentReplies") or {}
    if not isinstance(replies_raw, Mapping):
        raise ScenarioError("Scenario 'agentReplies' must be an object")
    replies: dict[str, tuple[str, ...]] = {}
    for agent_id, reply in replies_raw.items():
        if isinstance(reply, str):
            replies[normalize_agent_id(agent_id)] = (reply,)
        elif isinstance(reply, list) and reply and all(isinstance(r, str) for r in reply):
            replies[normalize_agent_id(agent_id)] = tuple(reply)
        else:
            msg = f"Reply for agent '{agent_id}' must be a string or a list of strings"
            raise ScenarioError(msg)
    return ScenarioScript(
        orchestrator_actions=tuple(dict(a) for a in actions),
        agent_replies=replies,
    )


def _parse_assertions(data: Any) -> ScenarioAssertions:
    if not isinstance(data, Mapping):
        raise ScenarioError("Scenario 'assertions' must be an object")
    delegated = data.get("delegatedAgents")
    return ScenarioAssertions(
        must_succeed=data.get("mustSucceed") is not False,
        stdout_includes=tuple(str(f) for f in data.get("stdoutIncludes") or ()),
        delegated_agents=(
            tuple(normalize_agent_id(str(a)) for a in delegated) if delegated is not None else None
        ),
        min_steps=_optional_int(data, "minSteps"),
        max_steps=_optional_int(data, "maxSteps"),
    )


def _optional_int(data: Mapping[str, Any], key: str) -> int | None:
    value = data.get(key)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        msg = f"Scenario '{key}' must be a non-negative integer"
        raise ScenarioError(msg)
    return value


# ── Scripted Provider ────────────────────────────────────────────────

class _Playback:
    """Reply cursor shared by every provider instance of one scripted run."""

    def __init__(self, script: ScenarioScript, planner_agent_id: str) -> None:
        self.script = script
        self.planner_agent_id = planner_agent_id
        self._next_action = 0
        self._reply_counts: dict[str, int] = defaultdict(int)

    def answer(self, agent_id: str) -> InvocationResult:
        if agent_id == self.planner_agent_id:
            actions = self.script.orchestrator_actions
            if self._next_action >= len(actions):
                return InvocationResult(
                    exit_code=1,
                    stderr=f"No scripted orchestrator action left after {len(actions)} turns",
                )
            action = actions[self._next_action]
            self._next_action += 1
            return InvocationResult(exit_code=0, stdout=f"{json.dumps(action, indent=2)}\n")

        replies = self.script.agent_replies.get(agent_id)
        if not replies:
            return InvocationResult(exit_code=0, stdout=f"handled-by:{agent_id}\n")
        index = min(self._reply_counts[agent_id], len(replies) - 1)
        self._reply_counts[agent_id] += 1
        reply = replies[index]
        return InvocationResult(exit_code=0, stdout=reply if reply.endswith("\n") else f"{reply}\n")


class ScriptedScenarioProvider(BaseProvider):
    descriptor = ProviderDescriptor(
        id=SCRIPTED_PROVIDER_ID,
        display_name="Scenario Scripted Provider",
        kind=ProviderKind.HTTP,
        capabilities=ProviderCapabilities(agent=True, model=True),
    )

    def __init__(self, playback: _Playback) -> None:
        self._playback = playback

    async def invoke(self, request: InvocationRequest) -> InvocationResult:
        self.validate_request(request)
        result = self._playback.answer(normalize_agent_id(request.agent or ""))
        if result.stdout and request.on_stdout is not None:
            request.on_stdout(result.stdout)
        if result.stderr and request.on_stderr is not None:
            request.on_stderr(result.stderr)
        return result


# ── Runner ───────────────────────────────────────────────────────────

@dataclass(frozen=True, slots=True)
class ScenarioResult:
    scenario_name: str
    mode: ScenarioMode
    success: bool
    failures: tuple[str, ...]
    trace_path: Path | None
    output: str
    delegated_agents: tuple[str, ...]
    steps: int
    run: RunResult

    def to_dict(self) -> dict[str, Any]:
        return {
            "scenarioName": self.scenario_name,
            "mode": self.mode,
            "success": self.success,
            "failures": list(self.failures),
            "tracePath": str(self.trace_path) if self.trace_path else None,
            "output": self.output,
            "delegatedAgents": list(self.delegated_agents),
            "steps": self.steps,
        }


class ScenarioRunner:
    """Runs scenarios in scripted or live mode and evaluates their assertions.

    Scripted runs get a fresh tandem home each time: under ``home`` when
    given, otherwise in a new temporary directory that is kept so the
    trace stays readable. Settings other than paths and the default
    provider come from ``config``.
    """

    def __init__(self, config: TandemConfig | None = None, *, home: Path | str | None = None) -> None:
        self._config = config or TandemConfig(sessions=SessionsConfig(reset_mode="never"))
        self._home = Path(home) if home is not None else None

    async def run(
        self,
        scenario: ScenarioSpec,
        *,
        mode: ScenarioMode = "scripted",
        service: TandemService | None = None,
    ) -> ScenarioResult:
        if mode == "live":
            return await self.run_live(service or TandemService(self._config), scenario)
        return await self.run_scripted(scenario)

    async def run_live(self, service: TandemService, scenario: ScenarioSpec) -> ScenarioResult:
        await service.initialize()
        logger.info("Scenario %s running live", scenario.name)
        result = await service.run_agent(scenario.entry_agent_id, RunOptions(message=scenario.message))
        return await self._evaluate("live", scenario, result)

    async def run_scripted(self, scenario: ScenarioSpec) -> ScenarioResult:
        if scenario.scripted is None:
            msg = f"Scenario '{scenario.name}' has no 'scripted' section"
            raise ScenarioError(msg)

        home = await asyncio.to_thread(self._make_home)
        config = dataclasses.replace(
            self._config,
            paths=PathsConfig(home=str(home)),
            providers=dataclasses.replace(self._config.providers, default_provider=SCRIPTED_PROVIDER_ID),
        )
        planner_id = self._planner_agent_id(scenario, config)
        playback = _Playback(scenario.scripted, planner_id)
        registry = create_default_registry()
        registry.register(
            SCRIPTED_PROVIDER_ID,
            lambda: ScriptedScenarioProvider(playback),
            ProviderModule(SCRIPTED_PROVIDER_ID, cwd_policy="provider-default"),
        )

        service = TandemService(config, env={}, provider_registry=registry)
        await service.initialize()
        for agent in scenario.agents:
            await service.create_agent(
                agent.name if normalize_agent_id(agent.name) == agent.id else agent.id,
                description=agent.description or None,
                tags=agent.tags,
                priority=agent.priority,
                can_delegate=agent.can_delegate,
            )

        logger.info("Scenario %s running scripted in %s", scenario.name, home)
        result = await service.run_agent(scenario.entry_agent_id, RunOptions(message=scenario.message))
        return await self._evaluate("scripted", scenario, result)

    def _make_home(self) -> Path:
        if self._home is None:
            return Path(tempfile.mkdtemp(prefix="tandem-scenario-"))
        self._home.mkdir(parents=True, exist_ok=True)
        return Path(tempfile.mkdtemp(prefix="run-", dir=self._home))

    @staticmethod
    def _planner_agent_id(scenario: ScenarioSpec, config: TandemConfig) -> str:
        default = normalize_agent_id(config.orchestration.entry_agent)
        requested = normalize_agent_id(scenario.entry_agent_id or "")
        known = {default, *(agent.id for agent in scenario.agents)}
        return requested if requested in known else default

    async def _evaluate(
        self, mode: ScenarioMode, scenario: ScenarioSpec, result: RunResult
    ) -> ScenarioResult:
        trace = None
        if result.trace_path is not None and result.trace_path.exists():
            trace = await asyncio.to_thread(load_trace, result.trace_path)
        delegated, steps = _read_steps(trace, result)

        assertions = scenario.assertions
        failures: list[str] = []
        if assertions.must_succeed and not result.ok:
            failures.append(
                f"Expected success code 0, received {result.exit_code} "
                f"(status {result.status.value})."
            )

        output = result.stdout.strip()
        for fragment in assertions.stdout_includes:
            if fragment not in output:
                failures.append(f'stdout missing required fragment: "{fragment}"')

        if assertions.delegated_agents is not None and delegated != assertions.delegated_agents:
            failures.append(
                f"Expected delegations {list(assertions.delegated_agents)}, got {list(delegated)}."
            )
        if assertions.min_steps is not None and steps < assertions.min_steps:
            failures.append(f"Expected at least {assertions.min_steps} steps, got {steps}.")
        if assertions.max_steps is not None and steps > assertions.max_steps:
            failures.append(f"Expected at most {assertions.max_steps} steps, got {steps}.")

        if failures:
            logger.warning("Scenario %s failed: %s", scenario.name, "; ".join(failures))
        else:
            logger.info("Scenario %s passed", scenario.name)
        return ScenarioResult(
            scenario_name=scenario.name,
            mode=mode,
            success=not failures,
            failures=tuple(failures),
            trace_path=result.trace_path,
            output=output,
            delegated_agents=delegated,
            steps=steps,
            run=result,
        )


def _read_steps(trace: dict[str, Any] | None, result: RunResult) -> tuple[tuple[str, ...], int]:
    """Delegation targets in step order and the step count, preferring the written trace."""
    if trace is None:
        ordered = sorted(result.steps, key=lambda s: s.sequence)
        delegated = tuple(s.agent_call.agent_id for s in ordered if s.agent_call is not None)
        return delegated, len(ordered)

    steps = [s for s in trace.get("steps") or [] if isinstance(s, dict)]
    steps.sort(key=lambda s: s.get("step", 0))
    delegated = tuple(
        s["agentCall"]["agentId"]
        for s in steps
        if isinstance(s.get("agentCall"), dict) and s["agentCall"].get("agentId")
    )
    return delegated, len(steps)
