"""OpenAI Codex CLI (``codex exec``).

argv: ``exec [resume] --json --skip-git-repo-check [--model <m>]
<passthrough...> [<session-id>] <message>``; passthrough sits before the
positional arguments.
"""
from __future__ import annotations

from typing import TYPE_CHECKING

from tandem_core.types import (
    InvocationResult,
    ProviderCapabilities,
    ProviderDescriptor,
    ProviderKind,
)

from tandem_providers.base import ProcessProvider, compose_prompt
from tandem_providers.records import (
    Record,
    as_record,
    last_record,
    parse_json_records,
    read_content_text,
    read_str,
)
from tandem_providers.session_ids import attach_backend_session_id

if TYPE_CHECKING:
    from tandem_core.types import InvocationRequest


class CodexProvider(ProcessProvider):
    descriptor = ProviderDescriptor(
        id="codex",
        display_name="Codex",
        kind=ProviderKind.PROCESS,
        capabilities=ProviderCapabilities(model=True, auth=True, passthrough=True),
    )
    command = "codex"
    command_env_var = "CODEX_CMD"

    def build_args(self, request: InvocationRequest, command: str) -> list[str]:
        session_id = (request.backend_session_id or "").strip()
        args = ["exec", "resume"] if session_id else ["exec"]
        args += ["--json", "--skip-git-repo-check"]
        if request.model:
            args += ["--model", request.model.strip()]
        args += request.passthrough_args
        if session_id:
            args.append(session_id)
        args.append(compose_prompt(request).strip())
        return args

    def build_auth_args(self, request: InvocationRequest, command: str) -> list[str]:
        return ["login", *request.passthrough_args]

    def normalize_output(
        self, result: InvocationResult, request: InvocationRequest
    ) -> InvocationResult:
        text, session_id = parse_codex_events(result.stdout)
        if text:
            result = result.replace(stdout=text)
        return attach_backend_session_id(result, session_id)


def parse_codex_events(raw: str) -> tuple[str | None, str | None]:
    """Text of the last completed agent message and the thread id."""
    records = parse_json_records(raw)
    started = last_record(
        records,
        lambda r: r.get("type") == "thread.started" and bool(read_str(r, "thread_id", "threadId")),
    )
    completed = last_record(
        records,
        lambda r: r.get("type") == "item.completed" and _agent_message_text(r) is not None,
    )
    session_id = read_str(started, "thread_id", "threadId")
    text = _agent_message_text(completed) if completed else None
    return text, session_id


def _agent_message_text(record: Record) -> str | None:
    item = as_record(record.get("item")) or {}
    if item.get("type") != "agent_message":
        return None
    return read_str(item, "text") or read_content_text(item.get("content"))
