"""Gemini CLI.

argv: ``[--model <m>] [--approval-mode <mode>] <passthrough...> --prompt
<message>``. The approval mode (``GEMINI_APPROVAL_MODE``, default
``yolo``) is skipped when passthrough already sets one.
"""
from __future__ import annotations

from typing import TYPE_CHECKING

from tandem_core.types import ProviderCapabilities, ProviderDescriptor, ProviderKind

from tandem_providers.base import ProcessProvider, compose_prompt

if TYPE_CHECKING:
    from collections.abc import Sequence

    from tandem_core.types import InvocationRequest


def has_approval_override(args: Sequence[str]) -> bool:
    return any(
        arg in ("--yolo", "-y", "--approval-mode") or arg.startswith("--approval-mode=")
        for arg in args
    )


class GeminiProvider(ProcessProvider):
    descriptor = ProviderDescriptor(
        id="gemini",
        display_name="Gemini CLI",
        kind=ProviderKind.PROCESS,
        capabilities=ProviderCapabilities(model=True, passthrough=True),
    )
    command = "gemini"
    command_env_var = "GEMINI_CMD"

    def build_args(self, request: InvocationRequest, command: str) -> list[str]:
        args: list[str] = []
        model = (request.model or request.env.get("GEMINI_MODEL") or "").strip()
        if model:
            args += ["--model", model]
        if not has_approval_override(request.passthrough_args):
            mode = (request.env.get("GEMINI_APPROVAL_MODE") or "").strip() or "yolo"
            args += ["--approval-mode", mode]
        args += request.passthrough_args
        args += ["--prompt", compose_prompt(request)]
        return args
