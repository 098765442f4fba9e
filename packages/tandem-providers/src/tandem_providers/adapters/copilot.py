"""GitHub Copilot CLI.

argv: ``--prompt <message> --silent [--resume <id>] [--model <m>]
<passthrough...> --allow-all``; the autonomy flag always comes last.
"""
from __future__ import annotations

from typing import TYPE_CHECKING

from tandem_core.types import ProviderCapabilities, ProviderDescriptor, ProviderKind

from tandem_providers.base import ProcessProvider, compose_prompt

if TYPE_CHECKING:
    from tandem_core.types import InvocationRequest

AUTONOMY_FLAGS = ("--allow-all",)


class CopilotCliProvider(ProcessProvider):
    descriptor = ProviderDescriptor(
        id="copilot-cli",
        display_name="GitHub Copilot CLI",
        kind=ProviderKind.PROCESS,
        capabilities=ProviderCapabilities(model=True, passthrough=True),
    )
    command = "copilot"
    command_env_var = "COPILOT_CLI_CMD"

    def build_args(self, request: InvocationRequest, command: str) -> list[str]:
        args = ["--prompt", compose_prompt(request).strip(), "--silent"]
        if request.backend_session_id:
            args += ["--resume", request.backend_session_id.strip()]
        if request.model:
            args += ["--model", request.model.strip()]
        args += request.passthrough_args
        args += AUTONOMY_FLAGS
        return args
