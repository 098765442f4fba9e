from __future__ import annotations

import asyncio
import json
import sys

import pytest
from tandem_core.errors import CommandMissingError, UnsupportedProviderActionError
from tandem_core.types import (
    AgentProvisionRequest,
    InvocationRequest,
    InvocationResult,
    ProviderCapabilities,
    ProviderDescriptor,
    ProviderKind,
)
from tandem_providers.adapters import (
    ClaudeCodeProvider,
    CodexProvider,
    CopilotCliProvider,
    CursorProvider,
    GeminiProvider,
    OpenCodeProvider,
)
from tandem_providers.adapters.claude_code import parse_claude_output
from tandem_providers.adapters.codex import parse_codex_events
from tandem_providers.base import ProcessProvider, compose_prompt
from tandem_providers.process import TIMEOUT_EXIT_CODE, run_process
from tandem_providers.records import last_record, parse_json_records, read_content_text
from tandem_providers.session_ids import attach_backend_session_id, extract_backend_session_id


class PythonProvider(ProcessProvider):
    """Runs the request message as a Python program."""

    descriptor = ProviderDescriptor(
        id="python",
        display_name="Python",
        kind=ProviderKind.PROCESS,
        capabilities=ProviderCapabilities(passthrough=True),
    )
    command = sys.executable
    command_env_var = "PYTHON_PROVIDER_CMD"

    def build_args(self, request, command):
        return ["-c", request.message, *request.passthrough_args]


class TestRunProcess:
    async def test_collects_and_streams_output(self):
        chunks = []
        output = await run_process(
            sys.executable,
            ["-c", "import sys; print('out'); print('err', file=sys.stderr); sys.exit(3)"],
            on_stdout=chunks.append,
        )
        assert output.exit_code == 3
        assert output.stdout.strip() == "out"
        assert output.stderr.strip() == "err"
        assert "".join(chunks) == output.stdout
        assert not output.timed_out

    async def test_timeout_kills_child(self):
        output = await run_process(
            sys.executable, ["-c", "import time; time.sleep(30)"], timeout=0.3,
        )
        assert output.timed_out
        assert output.exit_code == TIMEOUT_EXIT_CODE
        assert "timed out after 0.3s" in output.stderr

    async def test_missing_command(self):
        with pytest.raises(FileNotFoundError):
            await run_process("/nonexistent/tandem-missing-command", [])

    async def test_cancellation_propagates(self):
        task = asyncio.create_task(
            run_process(sys.executable, ["-c", "import time; time.sleep(30)"])
        )
        await asyncio.sleep(0.3)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task


class TestProcessProvider:
    async def test_invoke_discovers_session_id(self):
        result = await PythonProvider().invoke(
            InvocationRequest(message="print('session id: sess-424242'); print('done')")
        )
        assert result.ok
        assert result.backend_session_id == "sess-424242"

    async def test_requested_session_id_is_kept(self):
        result = await PythonProvider().invoke(
            InvocationRequest(message="print('plain')", backend_session_id="prev-thread")
        )
        assert result.backend_session_id == "prev-thread"

    async def test_env_reaches_child(self):
        result = await PythonProvider().invoke(
            InvocationRequest(
                message="import os; print(os.environ['TANDEM_MARKER'])",
                env={"TANDEM_MARKER": "marker-value"},
            )
        )
        assert result.stdout.strip() == "marker-value"

    async def test_child_does_not_inherit_ambient_env(self, monkeypatch):
        monkeypatch.setenv("TANDEM_AMBIENT", "leaked")
        for env in ({}, {"TANDEM_MARKER": "1"}):
            result = await PythonProvider().invoke(
                InvocationRequest(
                    message="import os; print(os.environ.get('TANDEM_AMBIENT', 'absent'))",
                    env=env,
                )
            )
            assert result.stdout.strip() == "absent"

    async def test_passthrough_args_reach_child(self):
        result = await PythonProvider().invoke(
            InvocationRequest(
                message="import sys; print(' '.join(sys.argv[1:]))",
                passthrough_args=("--flag", "value"),
            )
        )
        assert result.stdout.strip() == "--flag value"

    async def test_missing_command_names_env_var(self):
        with pytest.raises(CommandMissingError) as excinfo:
            await PythonProvider().invoke(
                InvocationRequest(
                    message="print(1)",
                    env={"PYTHON_PROVIDER_CMD": "/nonexistent/tandem-python"},
                )
            )
        assert excinfo.value.env_var == "PYTHON_PROVIDER_CMD"
        assert "PYTHON_PROVIDER_CMD" in str(excinfo.value)

    async def test_model_rejected_before_spawning(self):
        with pytest.raises(UnsupportedProviderActionError):
            await PythonProvider().invoke(
                InvocationRequest(
                    message="raise SystemExit(9)",
                    model="gpt",
                    env={"PYTHON_PROVIDER_CMD": "/nonexistent/tandem-python"},
                )
            )

    async def test_auth_unsupported(self):
        with pytest.raises(UnsupportedProviderActionError):
            await PythonProvider().invoke_auth(InvocationRequest(message=""))

    def test_compose_prompt(self):
        assert compose_prompt(InvocationRequest(message="hi")) == "hi"
        request = InvocationRequest(message="hi", session_context="Earlier: hello\n")
        assert compose_prompt(request) == "Earlier: hello\n\nhi"


class TestAdapterArguments:
    def test_claude_code(self):
        request = InvocationRequest(
            message="Build it",
            model="opus",
            backend_session_id="abc",
            system_prompt="Be brief",
            passthrough_args=("--verbose",),
        )
        assert ClaudeCodeProvider().build_args(request, "claude") == [
            "-p", "Build it", "--output-format", "json",
            "--resume", "abc", "--model", "opus",
            "--append-system-prompt", "Be brief", "--verbose",
        ]
        assert ClaudeCodeProvider().build_auth_args(request, "claude") == [
            "auth", "login", "--verbose",
        ]

    def test_codex_new_and_resumed(self):
        fresh = InvocationRequest(message="Build it", passthrough_args=("--full-auto",))
        assert CodexProvider().build_args(fresh, "codex") == [
            "exec", "--json", "--skip-git-repo-check", "--full-auto", "Build it",
        ]
        resumed = fresh.replace(backend_session_id="thread-1", model="o3")
        assert CodexProvider().build_args(resumed, "codex") == [
            "exec", "resume", "--json", "--skip-git-repo-check",
            "--model", "o3", "--full-auto", "thread-1", "Build it",
        ]

    def test_cursor_agent_prefix(self):
        request = InvocationRequest(message="Build it", backend_session_id="c1")
        assert CursorProvider().build_args(request, "cursor") == [
            "agent", "--print", "--output-format", "json", "--force",
            "--resume", "c1", "Build it",
        ]
        assert CursorProvider().build_args(request, "/usr/local/bin/cursor-agent")[0] == "--print"
        assert CursorProvider().build_auth_args(request, "cursor") == ["agent", "login"]

    def test_opencode_default_model_from_env(self):
        request = InvocationRequest(
            message="Build it", backend_session_id="ses_1", env={"OPENCODE_MODEL": "anthropic/x"},
        )
        assert OpenCodeProvider().build_args(request, "opencode") == [
            "run", "--session", "ses_1", "--model", "anthropic/x", "Build it",
        ]
        explicit = request.replace(model="openai/y")
        assert "openai/y" in OpenCodeProvider().build_args(explicit, "opencode")

    def test_gemini_approval_mode(self):
        request = InvocationRequest(message="Build it")
        assert GeminiProvider().build_args(request, "gemini") == [
            "--approval-mode", "yolo", "--prompt", "Build it",
        ]
        overridden = request.replace(passthrough_args=("--approval-mode=default",))
        assert GeminiProvider().build_args(overridden, "gemini") == [
            "--approval-mode=default", "--prompt", "Build it",
        ]
        configured = request.replace(env={"GEMINI_APPROVAL_MODE": "auto_edit"}, model="pro")
        assert GeminiProvider().build_args(configured, "gemini")[:4] == [
            "--model", "pro", "--approval-mode", "auto_edit",
        ]

    def test_copilot_autonomy_flag_last(self):
        request = InvocationRequest(message="Build it", passthrough_args=("--foo",))
        assert CopilotCliProvider().build_args(request, "copilot") == [
            "--prompt", "Build it", "--silent", "--foo", "--allow-all",
        ]

    def test_session_context_prefixes_message(self):
        request = InvocationRequest(message="Next step", session_context="Session context:\nuser: hi")
        args = CodexProvider().build_args(request, "codex")
        assert args[-1] == "Session context:\nuser: hi\n\nNext step"

    def test_command_override(self):
        provider = CodexProvider()
        assert provider.resolve_command({"CODEX_CMD": " /opt/codex "}) == "/opt/codex"
        assert provider.resolve_command({}) == "codex"


class TestOutputNormalization:
    def test_claude_json_result(self):
        raw = json.dumps({"type": "result", "result": "All done", "session_id": "s-1"})
        assert parse_claude_output(raw) == ("All done", "s-1")

    def test_claude_stream_uses_last_record(self):
        raw = "\n".join([
            json.dumps({"type": "system", "session_id": "s-2"}),
            json.dumps({"type": "assistant", "message": {"content": [{"type": "text", "text": "Partial"}]}}),
            json.dumps({"type": "result", "result": "Final", "session_id": "s-2"}),
        ])
        assert parse_claude_output(raw) == ("Final", "s-2")

    def test_claude_normalize_keeps_raw_when_unparsable(self):
        result = ClaudeCodeProvider().normalize_output(
            InvocationResult(exit_code=1, stdout="not json"), InvocationRequest(message="x"),
        )
        assert result.stdout == "not json"

    def test_codex_events(self):
        raw = "\n".join([
            json.dumps({"type": "thread.started", "thread_id": "t-9"}),
            json.dumps({"type": "item.completed", "item": {"type": "reasoning", "text": "hmm"}}),
            json.dumps({"type": "item.completed", "item": {"type": "agent_message", "text": "First"}}),
            json.dumps({"type": "item.completed", "item": {"type": "agent_message", "text": "Second"}}),
            "warning: not json",
        ])
        assert parse_codex_events(raw) == ("Second", "t-9")

    def test_codex_normalize(self):
        raw = json.dumps({"type": "thread.started", "thread_id": "t-1"})
        result = CodexProvider().normalize_output(
            InvocationResult(exit_code=0, stdout=raw), InvocationRequest(message="x"),
        )
        assert result.backend_session_id == "t-1"

    def test_parse_json_records(self):
        assert parse_json_records("") == []
        assert parse_json_records('[{"a": 1}, 2, {"b": 2}]') == [{"a": 1}, {"b": 2}]
        assert parse_json_records('noise\n{"a": 1}\n{broken\n') == [{"a": 1}]

    def test_last_record(self):
        records = [{"type": "a", "n": 1}, {"type": "b", "n": 2}, {"type": "a", "n": 3}]
        assert last_record(records, lambda r: r["type"] == "a") == {"type": "a", "n": 3}
        assert last_record(records, lambda r: r["type"] == "c") is None
        assert last_record([], lambda r: True) is None

    def test_codex_skips_empty_trailing_message(self):
        raw = "\n".join([
            json.dumps({"type": "thread.started", "thread_id": "t-3"}),
            json.dumps({"type": "item.completed", "item": {"type": "agent_message", "text": "Kept"}}),
            json.dumps({"type": "item.completed", "item": {"type": "agent_message", "text": "  "}}),
            json.dumps({"type": "thread.started"}),
        ])
        assert parse_codex_events(raw) == ("Kept", "t-3")

    def test_read_content_text(self):
        assert read_content_text("  hi ") == "hi"
        assert read_content_text([{"text": "a"}, {"image": "x"}, {"text": "b"}]) == "ab"
        assert read_content_text(5) is None


class TestSessionIds:
    def test_json_key(self):
        assert extract_backend_session_id('{"sessionID": "ses_abc"}') == "ses_abc"

    def test_text_form(self):
        assert extract_backend_session_id("Session ID: abc-123456") == "abc-123456"

    def test_uuid(self):
        text = "resumed 123e4567-e89b-12d3-a456-426614174000 ok"
        assert extract_backend_session_id(text) == "123e4567-e89b-12d3-a456-426614174000"

    def test_none(self):
        assert extract_backend_session_id("nothing here", "") is None

    def test_explicit_id_wins(self):
        result = InvocationResult(exit_code=0, stdout="session: discovered-1")
        assert attach_backend_session_id(result, "explicit-1").backend_session_id == "explicit-1"
        assert attach_backend_session_id(result).backend_session_id == "discovered-1"

    def test_existing_id_kept(self):
        result = InvocationResult(exit_code=0, backend_session_id="kept")
        assert attach_backend_session_id(result, "other").backend_session_id == "kept"


class TestOpenCodeAgents:
    async def test_create_and_delete_agent_file(self, tmp_path):
        provider = OpenCodeProvider()
        request = AgentProvisionRequest(
            agent_id="reviewer",
            description="Reviews code",
            env={"OPENCODE_CONFIG_DIR": str(tmp_path)},
        )
        created = await provider.create_agent(request)
        path = tmp_path / "agent" / "reviewer.md"
        assert created.ok
        assert "Created" in created.stdout
        text = path.read_text()
        assert 'description: "Reviews code"' in text
        assert "mode: subagent" in text

        again = await provider.create_agent(request)
        assert "already exists" in again.stdout

        removed = await provider.delete_agent(request)
        assert removed.ok
        assert not path.exists()
