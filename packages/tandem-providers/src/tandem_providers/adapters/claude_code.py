"""Claude Code CLI (``claude``).

argv: ``-p <message> --output-format json [--resume <id>] [--model <m>]
[--append-system-prompt <s>] <passthrough...>``; passthrough goes last.
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


class ClaudeCodeProvider(ProcessProvider):
    descriptor = ProviderDescriptor(
        id="claude-code",
        display_name="Claude Code",
        kind=ProviderKind.PROCESS,
        capabilities=ProviderCapabilities(model=True, auth=True, passthrough=True),
    )
    command = "claude"
    command_env_var = "CLAUDE_CODE_CMD"

    def build_args(self, request: InvocationRequest, command: str) -> list[str]:
        args = ["-p", compose_prompt(request), "--output-format", "json"]
        if request.backend_session_id:
            args += ["--resume", request.backend_session_id.strip()]
        if request.model:
            args += ["--model", request.model.strip()]
        if request.system_prompt and request.system_prompt.strip():
            args += ["--append-system-prompt", request.system_prompt.strip()]
        args += request.passthrough_args
        return args

    def build_auth_args(self, request: InvocationRequest, command: str) -> list[str]:
        return ["auth", "login", *request.passthrough_args]

    def normalize_output(
        self, result: InvocationResult, request: InvocationRequest
    ) -> InvocationResult:
        text, session_id = parse_claude_output(result.stdout)
        if text:
            result = result.replace(stdout=text)
        return attach_backend_session_id(result, session_id)


def parse_claude_output(raw: str) -> tuple[str | None, str | None]:
    """``(text, session_id)`` of the last record carrying either."""
    record = last_record(parse_json_records(raw), lambda r: any(_read_record(r)))
    if record is None:
        return None, None
    return _read_record(record)


def _read_record(record: Record) -> tuple[str | None, str | None]:
    meta = as_record(record.get("meta"))
    session_id = read_str(record, "session_id", "sessionId") or read_str(
        meta, "session_id", "sessionId"
    )
    message = as_record(record.get("message")) or {}
    text = (
        read_str(record, "result")
        or read_content_text(message.get("content"))
        or read_content_text(record.get("content"))
    )
    return text, session_id
