from __future__ import annotations

import asyncio
import json

import pytest
from conftest import delegate, finish, hang_until_cancelled
from tandem_core.config import OrchestrationConfig
from tandem_core.types import InvocationResult, RunEventType, RunStatus
from tandem_runtime.orchestration.engine import (
    EXIT_CANCELLED,
    MODE_AI_LOOP,
    MODE_SINGLE_AGENT,
    OrchestrationEngine,
    RunOptions,
)
from tandem_runtime.orchestration.trace import TraceWriter


@pytest.fixture
def team(service):
    agents = service.agents
    agents.create_agent("pm", description="Product manager: writes specs.")
    agents.create_agent("developer", description="Implements features.")
    agents.create_agent("qa", description="Tests features.")
    return service


def engine_with_depth(service, depth: int) -> OrchestrationEngine:
    return OrchestrationEngine(
        service.agents,
        service.providers,
        service.sessions,
        TraceWriter(service.paths.runs_dir),
        OrchestrationConfig(max_delegation_depth=depth),
    )


class TestAiLoop:
    async def test_pm_developer_qa_scenario(self, team, script):
        script.reply(
            "orchestrator",
            delegate("pm", "Write a spec for feature X"),
            delegate("developer", "Implement feature X", expectedOutput="Summary of changes"),
            delegate("qa", "Verify feature X"),
            finish("Feature delivered"),
        )
        script.reply("pm", "Spec: X does Y")
        script.reply("developer", "Implemented X")
        script.reply("qa", "All checks pass")
        out = []

        result = await team.run_agent(None, RunOptions(message="Build feature X", on_stdout=out.append))

        assert result.status is RunStatus.DONE
        assert result.ok
        assert result.mode == MODE_AI_LOOP
        assert result.entry_agent_id == "orchestrator"
        assert result.final_message == "Feature delivered"
        assert "Feature delivered" in result.stdout
        assert out == ["Feature delivered\n"]

        assert len(result.steps) == 4
        assert [s.sequence for s in result.steps] == [1, 2, 3, 4]
        assert [s.decision.type for s in result.steps] == [
            "delegate_to_agent", "delegate_to_agent", "delegate_to_agent", "finish",
        ]
        assert [s.agent_call.agent_id for s in result.steps[:3]] == ["pm", "developer", "qa"]
        assert result.steps[1].agent_call.response == "Implemented X"

        graph = result.session_graph
        assert len(graph.nodes) == 4
        assert set(graph.agent_ids) == {"orchestrator", "pm", "developer", "qa"}
        assert [(e.from_agent_id, e.to_agent_id) for e in graph.edges] == [
            ("orchestrator", "pm"), ("orchestrator", "developer"), ("orchestrator", "qa"),
        ]

    async def test_delegates_receive_context(self, team, script):
        script.reply(
            "orchestrator",
            delegate("pm", "Write a spec"),
            delegate("developer", "Implement it", expectedOutput="A diff"),
            finish("done"),
        )
        script.reply("pm", "Spec ready")
        script.reply("developer", "Diff ready")

        await team.run_agent(None, RunOptions(message="Build feature X"))

        dev_message = script.requests_for("developer")[0].message
        assert "Original user request:\nBuild feature X" in dev_message
        assert "Delegation instruction:\nImplement it" in dev_message
        assert "Expected output:\nA diff" in dev_message
        assert "Delegated to pm: Spec ready" in dev_message

        planner_prompts = [r.message for r in script.requests_for("orchestrator")]
        assert "- pm:" in planner_prompts[0]
        assert "Delegated to developer: Diff ready" in planner_prompts[2]

    async def test_delegation_sessions_are_per_run(self, team, script):
        script.reply("orchestrator", delegate("pm", "Spec it"), finish("ok"))
        script.reply("pm", "Spec")

        result = await team.run_agent(None, RunOptions(message="Go"))

        pm_node = next(n for n in result.session_graph.nodes if n.agent_id == "pm")
        assert pm_node.session_key == f"agent:pm:delegation:{result.run_id}"
        root = next(n for n in result.session_graph.nodes if n.agent_id == "orchestrator")
        assert root.session_key == "agent:orchestrator:main"

    async def test_nested_planner(self, team, script):
        team.agents.create_agent("lead", description="Tech lead", can_delegate=True)
        script.reply("orchestrator", delegate("lead", "Own feature X"), finish("Shipped"))
        script.reply("lead", delegate("developer", "Build X"), finish("Lead: X built"))
        script.reply("developer", "Built X")

        result = await team.run_agent(None, RunOptions(message="Feature X"))

        assert result.status is RunStatus.DONE
        assert [(s.agent_id, s.depth) for s in result.steps] == [
            ("orchestrator", 0), ("lead", 1), ("lead", 1), ("orchestrator", 0),
        ]
        assert result.steps[0].agent_call.response == "Lead: X built"
        assert [(e.from_agent_id, e.to_agent_id) for e in result.session_graph.edges] == [
            ("lead", "developer"), ("orchestrator", "lead"),
        ]

    async def test_depth_limit(self, team, script):
        engine = engine_with_depth(team, 2)
        script.reply(
            "orchestrator",
            delegate("pm", "one"),
            delegate("developer", "two"),
            delegate("qa", "three"),
        )
        script.reply("pm", "1")
        script.reply("developer", "2")
        script.reply("qa", "3")

        result = await engine.run(None, RunOptions(message="Loop forever"))

        assert result.status is RunStatus.FAILED
        assert result.exit_code == 1
        assert result.error["type"] == "DelegationDepthExceededError"
        assert result.error["max_depth"] == 2
        assert len(result.steps) == 2
        assert script.requests_for("qa") == []

    async def test_malformed_planner_output_fails_closed(self, team, script):
        script.reply("orchestrator", delegate("pm", "Spec"), "I think we are done here.")
        script.reply("pm", "Spec")

        result = await team.run_agent(None, RunOptions(message="Go"))

        assert result.status is RunStatus.FAILED
        assert result.error["type"] == "MalformedPlannerOutputError"
        assert result.final_message is None
        assert "Planner output contains no JSON decision" in result.stderr
        assert len(result.steps) == 1

        trace = await team.load_trace(result.run_id)
        assert trace["status"] == "failed"
        assert len(trace["steps"]) == 1
        assert trace["completedAt"] is not None

    async def test_failed_planner_process(self, team, script):
        script.reply("orchestrator", InvocationResult(exit_code=2, stderr="rate limited"))
        result = await team.run_agent(None, RunOptions(message="Go"))
        assert result.status is RunStatus.FAILED
        assert result.error["type"] == "ProviderRuntimeError"
        assert "exit code 2" in result.error["message"]

    @pytest.mark.parametrize("target", ["ghost", "orchestrator"])
    async def test_invalid_delegation_target(self, team, script, target):
        script.reply("orchestrator", delegate(target, "Do it"))
        result = await team.run_agent(None, RunOptions(message="Go"))
        assert result.status is RunStatus.FAILED
        assert result.error["type"] == "DelegationNotAllowedError"
        assert result.steps == ()

    async def test_hidden_or_closed_targets_rejected(self, team, script):
        team.agents.create_agent("hidden", discoverable=False)
        team.agents.create_agent("closed", can_receive=False)
        script.reply("orchestrator", delegate("hidden", "x"))
        script.reply("orchestrator", delegate("closed", "x"))

        for _ in range(2):
            result = await team.run_agent(None, RunOptions(message="Go"))
            assert result.error["type"] == "DelegationNotAllowedError"

    async def test_worker_failure_is_reported_to_planner(self, team, script):
        script.reply("orchestrator", delegate("pm", "Spec"), finish("Gave up"))
        script.reply("pm", InvocationResult(exit_code=1, stderr="pm crashed"))

        result = await team.run_agent(None, RunOptions(message="Go"))

        assert result.status is RunStatus.DONE
        assert result.steps[0].agent_call.response == "[stderr] pm crashed"
        assert "Delegated to pm: [stderr] pm crashed" in script.requests_for("orchestrator")[1].message
        history = await team.get_history("pm", f"agent:pm:delegation:{result.run_id}")
        assert history.messages[-1].content == "[Provider error code 1] pm crashed"


class TestCancellation:
    async def test_cancel_event_stops_run(self, team, script):
        cancel = asyncio.Event()

        async def cancel_mid_call(request):
            cancel.set()
            return await hang_until_cancelled(request)

        script.reply("orchestrator", delegate("pm", "Spec"))
        script.reply("pm", cancel_mid_call)

        result = await team.run_agent(None, RunOptions(message="Go", cancel_event=cancel))

        assert result.status is RunStatus.CANCELLED
        assert result.exit_code == EXIT_CANCELLED
        assert result.steps == ()
        trace = await team.load_trace(result.run_id)
        assert trace["status"] == "cancelled"
        assert trace["steps"] == []
        assert not team.sessions.is_active("orchestrator")

    async def test_already_cancelled(self, team, script):
        cancel = asyncio.Event()
        cancel.set()
        result = await team.run_agent(None, RunOptions(message="Go", cancel_event=cancel))
        assert result.status is RunStatus.CANCELLED
        assert script.requests == []

    async def test_task_cancellation_persists_trace(self, team, script):
        script.reply("orchestrator", hang_until_cancelled)
        task = asyncio.create_task(team.run_agent(None, RunOptions(message="Go")))
        while not script.requests:
            await asyncio.sleep(0.01)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        runs = list(team.paths.runs_dir.glob("*.json"))
        assert len(runs) == 1
        assert json.loads(runs[0].read_text())["status"] == "cancelled"


class TestSingleAgent:
    async def test_direct_invocation_streams(self, team, script):
        script.reply("qa", "Test report")
        out = []
        result = await team.run_agent("qa", RunOptions(message="Test it", on_stdout=out.append))

        assert result.mode == MODE_SINGLE_AGENT
        assert result.status is RunStatus.DONE
        assert result.stdout == "Test report\n"
        assert out == ["Test report\n"]
        assert result.steps == ()
        assert script.requests_for("qa")[0].message == "Test it"

    async def test_nonzero_exit_fails_run(self, team, script):
        script.reply("qa", InvocationResult(exit_code=3, stdout="partial", stderr="boom"))
        result = await team.run_agent("qa", RunOptions(message="Test it"))
        assert result.status is RunStatus.FAILED
        assert result.exit_code == 3
        assert result.stderr == "boom"
        assert result.error["type"] == "ProviderExit"

    async def test_unknown_agent_falls_back_to_entry_agent(self, team, script):
        script.reply("orchestrator", finish("hello"))
        result = await team.run_agent("nobody", RunOptions(message="hi"))
        assert result.entry_agent_id == "orchestrator"
        assert result.mode == MODE_AI_LOOP

    async def test_model_and_passthrough_for_root_only(self, team, script):
        script.reply("orchestrator", delegate("pm", "Spec"), finish("ok"))
        script.reply("pm", "Spec")
        await team.run_agent(
            None, RunOptions(message="Go", model="big", passthrough_args=("--fast",)),
        )
        root = script.requests_for("orchestrator")[0]
        assert root.model == "big"
        assert root.passthrough_args == ("--fast",)
        worker = script.requests_for("pm")[0]
        assert worker.model is None
        assert worker.passthrough_args == ()


class TestSessionThreading:
    async def test_backend_session_id_across_runs(self, team, script):
        script.reply("qa", InvocationResult(exit_code=0, stdout="first\n", backend_session_id="qa-thread"))
        script.reply("qa", "second")

        await team.run_agent("qa", RunOptions(message="one"))
        await team.run_agent("qa", RunOptions(message="two"))

        first, second = script.requests_for("qa")
        assert first.backend_session_id is None
        assert second.backend_session_id == "qa-thread"
        assert second.session_context is None

    async def test_backend_session_id_within_run(self, team, script):
        script.reply(
            "orchestrator",
            InvocationResult(exit_code=0, stdout=delegate("pm", "Spec"), backend_session_id="orc-1"),
            finish("ok"),
        )
        script.reply("pm", "Spec")
        result = await team.run_agent(None, RunOptions(message="Go"))

        second_turn = script.requests_for("orchestrator")[1]
        assert second_turn.backend_session_id == "orc-1"
        root = next(n for n in result.session_graph.nodes if n.agent_id == "orchestrator")
        assert root.backend_session_id == "orc-1"

    async def test_session_context_without_backend_id(self, team, script):
        script.reply("qa", "first answer", "second answer")
        await team.run_agent("qa", RunOptions(message="first question"))
        await team.run_agent("qa", RunOptions(message="second question"))

        second = script.requests_for("qa")[1]
        assert "user: first question" in second.session_context
        assert "assistant: first answer" in second.session_context
        assert second.message == "second question"

    async def test_force_new_session(self, team, script):
        script.reply("qa", "a", "b")
        await team.run_agent("qa", RunOptions(message="one"))
        await team.run_agent("qa", RunOptions(message="two", force_new_session=True))
        assert script.requests_for("qa")[1].session_context is None
        assert len(await team.list_sessions("qa")) == 1

    async def test_disable_session(self, team, script):
        script.reply("qa", "a")
        result = await team.run_agent("qa", RunOptions(message="one", disable_session=True))
        assert result.ok
        assert await team.list_sessions("qa") == []
        assert result.session_graph.nodes[0].session_key is None

    async def test_busy_session(self, team, script):
        async with team.sessions.lease("orchestrator"):
            result = await team.run_agent(None, RunOptions(message="Go"))
        assert result.status is RunStatus.FAILED
        assert result.error["type"] == "SessionBusyError"
        assert script.requests == []

    async def test_named_session(self, team, script):
        script.reply("qa", "a")
        await team.run_agent("qa", RunOptions(message="one", session_ref="release"))
        sessions = await team.list_sessions("qa")
        assert [s.session_key for s in sessions] == ["agent:qa:release"]


class TestTraceAndEvents:
    async def test_trace_file(self, team, script):
        script.reply("orchestrator", delegate("pm", "Spec", reason="needs a spec"), finish("ok"))
        script.reply("pm", "Spec")
        result = await team.run_agent(None, RunOptions(message="Go"))

        assert result.trace_path == team.paths.runs_dir / f"{result.run_id}.json"
        trace = json.loads(result.trace_path.read_text())
        assert trace["schemaVersion"] == 1
        assert trace["runId"] == result.run_id
        assert trace["mode"] == "ai-loop"
        assert trace["status"] == "done"
        assert trace["entryAgentId"] == "orchestrator"
        assert trace["userMessage"] == "Go"
        assert trace["finalMessage"] == "ok"
        assert trace["error"] is None
        first = trace["steps"][0]
        assert first["step"] == 1
        assert first["plannerDecision"]["action"]["targetAgentId"] == "pm"
        assert first["agentCall"]["agentId"] == "pm"
        assert first["note"] == "needs a spec"
        assert trace["sessionGraph"]["edges"] == [
            {"fromAgentId": "orchestrator", "toAgentId": "pm", "reason": "needs a spec"},
        ]

    async def test_status_events(self, team, script):
        script.reply("orchestrator", delegate("pm", "Spec"), finish("ok"))
        script.reply("pm", "Spec")
        events = []
        await team.run_agent(None, RunOptions(message="Go", on_status=events.append))

        types = [e.type for e in events]
        assert types[0] is RunEventType.RUN_STARTED
        assert types[-1] is RunEventType.RUN_COMPLETED
        assert RunEventType.DELEGATION_STARTED in types
        delegation = next(e for e in events if e.type is RunEventType.DELEGATION_STARTED)
        assert delegation.target_agent_id == "pm"
        assert delegation.status is RunStatus.DELEGATING
        assert events[-1].status is RunStatus.DONE

    async def test_failing_status_sink_does_not_break_run(self, team, script):
        script.reply("orchestrator", finish("ok"))

        def explode(event):
            raise RuntimeError("sink broke")

        result = await team.run_agent(None, RunOptions(message="Go", on_status=explode))
        assert result.ok
