"""Cursor agent CLI.

argv: ``[agent] --print --output-format json --force [--resume <id>]
[--model <m>] <passthrough...> <message>``. The ``agent`` prefix is
omitted when the configured command already is ``cursor-agent``/``agent``.
"""
from __future__ import annotations

import os
from typing import TYPE_CHECKING

from tandem_core.types import (
    InvocationResult,
    ProviderCapabilities,
    ProviderDescriptor,
    ProviderKind,
)

from tandem_providers.adapters.claude_code import parse_claude_output
from tandem_providers.base import ProcessProvider, compose_prompt
from tandem_providers.session_ids import attach_backend_session_id

if TYPE_CHECKING:
    from tandem_core.types import InvocationRequest

_STANDALONE_COMMANDS = frozenset({"cursor-agent", "agent"})


def agent_prefix(command: str) -> list[str]:
    name = os.path.basename(command).lower()
    name = name.removesuffix(".exe").removesuffix(".cmd")
    return [] if name in _STANDALONE_COMMANDS else ["agent"]


class CursorProvider(ProcessProvider):
    descriptor = ProviderDescriptor(
        id="cursor",
        display_name="Cursor",
        kind=ProviderKind.PROCESS,
        capabilities=ProviderCapabilities(model=True, auth=True, passthrough=True),
    )
    command = "cursor"
    command_env_var = "CURSOR_CMD"

    def build_args(self, request: InvocationRequest, command: str) -> list[str]:
        args = [*agent_prefix(command), "--print", "--output-format", "json", "--force"]
        if request.backend_session_id:
            args += ["--resume", request.backend_session_id.strip()]
        if request.model:
            args += ["--model", request.model.strip()]
        args += request.passthrough_args
        args.append(compose_prompt(request).strip())
        return args

    def build_auth_args(self, request: InvocationRequest, command: str) -> list[str]:
        return [*agent_prefix(command), "login", *request.passthrough_args]

    def normalize_output(
        self, result: InvocationResult, request: InvocationRequest
    ) -> InvocationResult:
        # Same record shape as Claude Code's json output.
        text, session_id = parse_claude_output(result.stdout)
        if text:
            result = result.replace(stdout=text)
        return attach_backend_session_id(result, session_id)
