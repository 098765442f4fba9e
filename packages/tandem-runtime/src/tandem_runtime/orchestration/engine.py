"""Orchestration engine: the planning loop behind every agent run.

A run moves through ``STARTING → PLANNING → {DELEGATING → PLANNING |
FINISHING} → DONE | FAILED | CANCELLED``. Each planning turn asks the
current agent for one JSON decision. ``finish`` ends the loop;
``delegate_to_agent`` hands a sub-task to another agent, which either
plans on its own (agents allowed to delegate) or answers once (workers).

The number of delegations per run is bounded, planner output is parsed
strictly, and every terminal state writes the trace accumulated so far.
"""
from __future__ import annotations

import asyncio
import contextlib
import itertools
import time
import uuid
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from tandem_agents.parser import normalize_agent_id
from tandem_core.config import OrchestrationConfig
from tandem_core.errors import (
    AgentNotFoundError,
    DelegationDepthExceededError,
    DelegationNotAllowedError,
    MalformedPlannerOutputError,
    ProviderRuntimeError,
    RunCancelledError,
    TandemError,
)
from tandem_core.logging import get_logger
from tandem_core.types import (
    InvocationRequest,
    InvocationResult,
    RunEventType,
    RunStatus,
    RunStatusEvent,
)

from tandem_runtime.orchestration.decisions import FinishDecision, parse_decision
from tandem_runtime.orchestration.planner import (
    PlannerContext,
    build_planner_prompt,
    render_delegate_message,
    summarize_text,
)
from tandem_runtime.orchestration.trace import (
    InvocationSummary,
    OrchestrationStep,
    RunTrace,
    SessionGraph,
    SessionNode,
    error_payload,
    iso_now,
)

if TYPE_CHECKING:
    from collections.abc import Awaitable
    from pathlib import Path

    from tandem_agents.registry import AgentRegistry
    from tandem_agents.types import AgentManifest
    from tandem_core.types import OutputSink, StatusSink
    from tandem_providers.runtime import AgentInvocation, ProviderRuntime

    from tandem_runtime.orchestration.decisions import DelegateDecision
    from tandem_runtime.orchestration.trace import TraceWriter
    from tandem_runtime.protocols import SessionBackend
    from tandem_runtime.sessions.types import SessionRunInfo

logger = get_logger("orchestration")

MODE_AI_LOOP = "ai-loop"
MODE_SINGLE_AGENT = "single-agent"

EXIT_FAILED = 1
EXIT_CANCELLED = 130


@dataclass(slots=True)
class RunOptions:
    """What a caller asks of one run."""
    message: str
    session_ref: str | None = None
    force_new_session: bool = False
    disable_session: bool = False
    model: str | None = None
    passthrough_args: tuple[str, ...] = ()
    env: Mapping[str, str] | None = None
    cwd: str | None = None
    on_stdout: OutputSink | None = None
    on_stderr: OutputSink | None = None
    on_status: StatusSink | None = None
    cancel_event: asyncio.Event | None = None


@dataclass(frozen=True, slots=True)
class RunResult:
    run_id: str
    status: RunStatus
    entry_agent_id: str
    mode: str
    exit_code: int
    stdout: str
    stderr: str
    final_message: str | None
    trace_path: Path | None
    steps: tuple[OrchestrationStep, ...] = ()
    session_graph: SessionGraph = field(default_factory=SessionGraph)
    error: dict[str, Any] | None = None

    @property
    def ok(self) -> bool:
        return self.status is RunStatus.DONE and self.exit_code == 0


@dataclass(slots=True)
class _Call:
    """One provider invocation made on behalf of a run."""
    manifest: AgentManifest
    message: str
    invocation: AgentInvocation
    session: SessionRunInfo | None = None

    @property
    def result(self) -> InvocationResult:
        return self.invocation.result

    def summary(self, *, request: str | None = None, response: str | None = None) -> InvocationSummary:
        result = self.result
        return InvocationSummary(
            agent_id=self.manifest.agent_id,
            provider_id=self.invocation.provider_id,
            exit_code=result.exit_code,
            request=self.message if request is None else request,
            response=result.stdout.strip() if response is None else response,
            stderr=result.stderr.strip(),
            session_key=self.session.session_key if self.session else None,
            session_id=self.session.session_id if self.session else None,
            backend_session_id=result.backend_session_id,
        )


@dataclass(slots=True)
class _Run:
    """Mutable state shared by every planning loop of one run."""
    run_id: str
    options: RunOptions
    manifests: dict[str, AgentManifest]
    trace: RunTrace
    root_agent_id: str
    delegations: int = 0
    sequence: itertools.count = field(default_factory=lambda: itertools.count(1))

    @property
    def status(self) -> RunStatus:
        return self.trace.status

    def next_sequence(self) -> int:
        return next(self.sequence)


class OrchestrationEngine:
    """Runs agents, planning and delegating until one of them finishes."""

    def __init__(
        self,
        agents: AgentRegistry,
        providers: ProviderRuntime,
        sessions: SessionBackend,
        traces: TraceWriter,
        config: OrchestrationConfig | None = None,
    ) -> None:
        self._agents = agents
        self._providers = providers
        self._sessions = sessions
        self._traces = traces
        self._config = config or OrchestrationConfig()

    @property
    def config(self) -> OrchestrationConfig:
        return self._config

    async def run(self, agent_id: str | None, options: RunOptions) -> RunResult:
        """Run ``agent_id`` (or the configured entry agent) on ``options.message``."""
        manifests = await asyncio.to_thread(self._agents.list_manifests)
        entry = self.resolve_entry_agent(agent_id, manifests)
        mode = (
            MODE_AI_LOOP
            if entry.agent_id == normalize_agent_id(self._config.entry_agent)
            or entry.descriptor.delegation.can_delegate
            else MODE_SINGLE_AGENT
        )
        run_id = str(uuid.uuid4())
        run = _Run(
            run_id=run_id,
            options=options,
            manifests={m.agent_id: m for m in manifests},
            trace=RunTrace(
                run_id=run_id,
                mode=mode,
                entry_agent_id=entry.agent_id,
                user_message=options.message,
                status=RunStatus.STARTING,
            ),
            root_agent_id=entry.agent_id,
        )
        logger.info(
            "Run %s started for %s (%s)", run_id, entry.agent_id, mode,
            extra={"run_id": run_id, "agent_id": entry.agent_id},
        )
        self._emit(run, RunEventType.RUN_STARTED, agent_id=entry.agent_id, detail=mode)

        final_message: str | None = None
        last_result: InvocationResult | None = None
        error: TandemError | None = None
        try:
            async with self._lease(entry.agent_id, options) as session_ref:
                if mode == MODE_AI_LOOP:
                    final_message, _ = await self._plan(
                        run,
                        entry,
                        depth=0,
                        context=PlannerContext(
                            user_message=options.message,
                            notes_max_chars=self._config.shared_notes_max_chars,
                            events_window=self._config.recent_events_window,
                        ),
                        session_ref=session_ref,
                        force_new=options.force_new_session,
                    )
                else:
                    call = await self._invoke(
                        run,
                        entry,
                        options.message,
                        session_ref=session_ref,
                        force_new=options.force_new_session,
                        silent=False,
                    )
                    last_result = call.result
                    final_message = call.result.stdout
        except RunCancelledError as exc:
            logger.info("Run %s cancelled", run_id, extra={"run_id": run_id})
            run.trace.status = RunStatus.CANCELLED
            run.trace.error = error_payload(exc)
        except TandemError as exc:
            logger.warning(
                "Run %s failed: %s", run_id, exc, exc_info=True, extra={"run_id": run_id},
            )
            error = exc
            run.trace.status = RunStatus.FAILED
            run.trace.error = error_payload(exc)
        except asyncio.CancelledError:
            run.trace.status = RunStatus.CANCELLED
            run.trace.error = {"type": "CancelledError", "message": "Run task was cancelled"}
            await asyncio.shield(self._finish(run))
            raise
        else:
            if last_result is not None and not last_result.ok:
                run.trace.status = RunStatus.FAILED
                run.trace.error = {
                    "type": "ProviderExit",
                    "message": f"Provider exited with code {last_result.exit_code}",
                }
            else:
                run.trace.status = RunStatus.DONE
            run.trace.final_message = final_message

        trace_path = await self._finish(run)
        result = self._result(run, trace_path, final_message, last_result, error)
        if mode == MODE_AI_LOOP and result.ok and options.on_stdout:
            options.on_stdout(result.stdout)
        return result

    def resolve_entry_agent(
        self, agent_id: str | None, manifests: list[AgentManifest]
    ) -> AgentManifest:
        """Explicit agent if registered, else the configured entry agent, else the first agent."""
        by_id = {m.agent_id: m for m in manifests}
        requested = normalize_agent_id(agent_id or "")
        default = normalize_agent_id(self._config.entry_agent)
        for candidate in (requested, default):
            if candidate and candidate in by_id:
                return by_id[candidate]
        if manifests:
            return manifests[0]
        msg = f"Agent '{requested or default}' is not registered"
        raise AgentNotFoundError(msg)

    # ── Planning loop ───────────────────────────────────────────────

    async def _plan(
        self,
        run: _Run,
        manifest: AgentManifest,
        *,
        depth: int,
        context: PlannerContext,
        session_ref: str | None,
        force_new: bool = False,
    ) -> tuple[str, _Call]:
        agent_id = manifest.agent_id
        for turn in itertools.count(1):
            self._set_status(run, RunStatus.PLANNING)
            self._emit(run, RunEventType.PLANNER_STARTED, agent_id=agent_id, step=turn)
            prompt = build_planner_prompt(
                context,
                agent_id=agent_id,
                manifests=list(run.manifests.values()),
                step=turn,
                remaining_delegations=max(0, self._config.max_delegation_depth - run.delegations),
            )
            call = await self._invoke(
                run,
                manifest,
                prompt,
                session_ref=session_ref,
                force_new=force_new and turn == 1,
                silent=True,
            )
            raw = call.result.stdout.strip() or call.result.stderr.strip()
            try:
                decision = parse_decision(raw, agent_id=agent_id)
            except MalformedPlannerOutputError as exc:
                if not call.result.ok:
                    msg = (
                        f"Planner agent '{agent_id}' failed with exit code "
                        f"{call.result.exit_code}: {summarize_text(raw) or '(no output)'}"
                    )
                    raise ProviderRuntimeError(msg, provider_id=call.invocation.provider_id) from exc
                raise

            sequence = run.next_sequence()
            logger.info(
                "Planner %s decided %s", agent_id, decision.type,
                extra={"run_id": run.run_id, "agent_id": agent_id},
            )
            self._emit(
                run, RunEventType.PLANNER_DECISION, agent_id=agent_id, step=sequence,
                target_agent_id=getattr(decision, "target_agent_id", None), detail=decision.type,
            )

            if isinstance(decision, FinishDecision):
                self._set_status(run, RunStatus.FINISHING)
                run.trace.steps.append(OrchestrationStep(
                    sequence=sequence,
                    agent_id=agent_id,
                    depth=depth,
                    decision=decision,
                    invocation=call.summary(),
                    planner_raw_output=raw,
                    note=decision.reason,
                ))
                context.add_event(f"Step {turn}: finish")
                return decision.message, call

            await self._delegate(run, manifest, call, decision, raw, sequence, turn, depth, context)
        raise AssertionError("planning loop exited without a decision")

    async def _delegate(
        self,
        run: _Run,
        manifest: AgentManifest,
        planner_call: _Call,
        decision: DelegateDecision,
        raw: str,
        sequence: int,
        turn: int,
        depth: int,
        context: PlannerContext,
    ) -> None:
        target = self._check_delegation(run, manifest, decision)
        limit = self._config.max_delegation_depth
        if run.delegations >= limit:
            raise DelegationDepthExceededError(limit)
        run.delegations += 1

        self._set_status(run, RunStatus.DELEGATING)
        self._emit(
            run, RunEventType.DELEGATION_STARTED, agent_id=manifest.agent_id,
            target_agent_id=target.agent_id, step=sequence,
        )
        logger.info(
            "Delegating %s → %s (%d/%d)", manifest.agent_id, target.agent_id, run.delegations, limit,
            extra={"run_id": run.run_id, "agent_id": manifest.agent_id},
        )

        delegate_message = render_delegate_message(
            context, step=turn, message=decision.message, expected_output=decision.expected_output,
        )
        delegate_ref = f"agent:{target.agent_id}:delegation:{run.run_id}"
        if target.descriptor.delegation.can_delegate:
            reply, target_call = await self._plan(
                run,
                target,
                depth=depth + 1,
                context=PlannerContext(
                    user_message=delegate_message,
                    notes_max_chars=self._config.shared_notes_max_chars,
                    events_window=self._config.recent_events_window,
                ),
                session_ref=delegate_ref,
            )
        else:
            target_call = await self._invoke(
                run, target, delegate_message, session_ref=delegate_ref, silent=True,
            )
            reply = target_call.result.stdout.strip()
            if not reply and target_call.result.stderr.strip():
                reply = f"[stderr] {target_call.result.stderr.strip()}"

        run.trace.session_graph.add_edge(
            manifest.agent_id, target.agent_id, decision.reason or decision.rationale,
        )
        run.trace.steps.append(OrchestrationStep(
            sequence=sequence,
            agent_id=manifest.agent_id,
            depth=depth,
            decision=decision,
            invocation=planner_call.summary(),
            planner_raw_output=raw,
            agent_call=target_call.summary(request=delegate_message, response=reply),
            note=decision.reason,
        ))
        note = f"Delegated to {target.agent_id}: {summarize_text(reply or '(no response)')}"
        context.add_note(note)
        context.add_event(note)

    def _check_delegation(
        self, run: _Run, manifest: AgentManifest, decision: DelegateDecision
    ) -> AgentManifest:
        source_id = manifest.agent_id
        target_id = normalize_agent_id(decision.target_agent_id)
        if source_id != run.root_agent_id and not manifest.descriptor.delegation.can_delegate:
            raise DelegationNotAllowedError(source_id, target_id, "agent may not delegate")
        target = run.manifests.get(target_id)
        if target is None:
            raise DelegationNotAllowedError(source_id, target_id, "unknown agent")
        if target_id == source_id:
            raise DelegationNotAllowedError(source_id, target_id, "agent cannot delegate to itself")
        if not target.descriptor.discoverable:
            raise DelegationNotAllowedError(source_id, target_id, "agent is not discoverable")
        if not target.descriptor.delegation.can_receive:
            raise DelegationNotAllowedError(source_id, target_id, "agent does not accept delegation")
        return target

    # ── Invocation ──────────────────────────────────────────────────

    async def _invoke(
        self,
        run: _Run,
        manifest: AgentManifest,
        message: str,
        *,
        session_ref: str | None,
        force_new: bool = False,
        silent: bool,
    ) -> _Call:
        options = run.options
        is_root = manifest.agent_id == run.root_agent_id
        session: SessionRunInfo | None = None
        session_context: str | None = None
        if not options.disable_session:
            session = await self._sessions.prepare_run(
                manifest.agent_id,
                user_message=message,
                session_ref=session_ref,
                force_new=force_new,
                provider_id=manifest.provider,
                workspace_path=str(manifest.workspace_dir),
            )
            if not session.backend_session_id and not session.is_new_session:
                session_context = await self._sessions.build_context(session)

        request = InvocationRequest(
            message=message,
            model=options.model if is_root else None,
            backend_session_id=session.backend_session_id if session else None,
            passthrough_args=tuple(options.passthrough_args) if is_root else (),
            env=dict(options.env or {}),
            session_context=session_context,
            cwd=options.cwd,
            on_stdout=None if silent else options.on_stdout,
            on_stderr=None if silent else options.on_stderr,
        )
        self._emit(
            run, RunEventType.INVOCATION_STARTED, agent_id=manifest.agent_id,
            provider_id=manifest.provider,
        )
        started = time.monotonic()
        invocation = await self._cancellable(run, self._providers.invoke_agent(manifest, request))
        result = invocation.result
        logger.debug(
            "%s answered with exit code %d in %.0fms", manifest.agent_id, result.exit_code,
            (time.monotonic() - started) * 1000,
            extra={"run_id": run.run_id, "agent_id": manifest.agent_id},
        )
        self._emit(
            run, RunEventType.INVOCATION_COMPLETED, agent_id=manifest.agent_id,
            provider_id=invocation.provider_id, exit_code=result.exit_code,
        )

        if session is not None:
            await self._sessions.record_reply(
                session,
                _reply_text(result),
                provider_id=invocation.provider_id,
                backend_session_id=result.backend_session_id,
            )
        run.trace.session_graph.add_node(SessionNode(
            agent_id=manifest.agent_id,
            provider_id=invocation.provider_id,
            session_key=session.session_key if session else None,
            session_id=session.session_id if session else None,
            backend_session_id=result.backend_session_id,
        ))
        return _Call(manifest=manifest, message=message, invocation=invocation, session=session)

    async def _cancellable(self, run: _Run, awaitable: Awaitable[AgentInvocation]) -> AgentInvocation:
        """Await ``awaitable`` unless the run's cancel event fires first."""
        task = asyncio.ensure_future(awaitable)
        cancel_event = run.options.cancel_event
        if cancel_event is None:
            return await task
        if cancel_event.is_set():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
            msg = f"Run {run.run_id} cancelled"
            raise RunCancelledError(msg)

        waiter = asyncio.ensure_future(cancel_event.wait())
        try:
            done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            waiter.cancel()

        if task in done:
            return task.result()
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        msg = f"Run {run.run_id} cancelled"
        raise RunCancelledError(msg)

    # ── Bookkeeping ─────────────────────────────────────────────────

    def _lease(self, agent_id: str, options: RunOptions) -> contextlib.AbstractAsyncContextManager[str | None]:
        if options.disable_session:
            return contextlib.nullcontext(options.session_ref)
        return self._sessions.lease(agent_id, options.session_ref)

    def _set_status(self, run: _Run, status: RunStatus) -> None:
        run.trace.status = status

    def _emit(self, run: _Run, event_type: RunEventType, **fields: Any) -> None:
        sink = run.options.on_status
        if sink is None:
            return
        try:
            sink(RunStatusEvent(type=event_type, run_id=run.run_id, status=run.status, **fields))
        except Exception:
            logger.exception("Status sink failed on %s", event_type.value)

    async def _finish(self, run: _Run) -> Path | None:
        run.trace.completed_at = iso_now()
        self._emit(
            run, RunEventType.RUN_COMPLETED, agent_id=run.root_agent_id,
            detail=run.trace.error["type"] if run.trace.error else None,
        )
        try:
            return await self._traces.write(run.trace)
        except OSError:
            logger.exception("Could not write trace for run %s", run.run_id)
            return None

    def _result(
        self,
        run: _Run,
        trace_path: Path | None,
        final_message: str | None,
        last_result: InvocationResult | None,
        error: TandemError | None,
    ) -> RunResult:
        trace = run.trace
        status = trace.status
        if status is RunStatus.DONE and trace.mode == MODE_AI_LOOP:
            exit_code, stdout, stderr = 0, _with_newline(final_message or ""), ""
        elif last_result is not None:
            exit_code, stdout, stderr = last_result.exit_code, last_result.stdout, last_result.stderr
        elif status is RunStatus.CANCELLED:
            exit_code, stdout, stderr = EXIT_CANCELLED, "", "Run cancelled\n"
        else:
            exit_code, stdout, stderr = EXIT_FAILED, "", _with_newline(str(error) if error else "Run failed")
        if status is RunStatus.CANCELLED:
            exit_code = EXIT_CANCELLED
        return RunResult(
            run_id=run.run_id,
            status=status,
            entry_agent_id=run.root_agent_id,
            mode=trace.mode,
            exit_code=exit_code,
            stdout=stdout,
            stderr=stderr,
            final_message=final_message if status is RunStatus.DONE else None,
            trace_path=trace_path,
            steps=tuple(trace.ordered_steps()),
            session_graph=trace.session_graph,
            error=trace.error,
        )


def _reply_text(result: InvocationResult) -> str:
    if result.stdout.strip():
        return result.stdout.strip()
    if result.stderr.strip():
        return f"[Provider error code {result.exit_code}] {result.stderr.strip()}"
    return f"[Provider exited with code {result.exit_code}]"


def _with_newline(value: str) -> str:
    return value if value.endswith("\n") else f"{value}\n"
