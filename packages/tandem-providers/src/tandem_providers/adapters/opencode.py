"""OpenCode CLI (``opencode run``).

argv: ``run [--session <id>] [--model <m>] <passthrough...> <message>``.
The default model comes from ``OPENCODE_MODEL``. Agents are provisioned as
markdown files in OpenCode's config directory.
"""
from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import TYPE_CHECKING

from tandem_core.types import (
    InvocationResult,
    ProviderCapabilities,
    ProviderDescriptor,
    ProviderKind,
)

from tandem_providers.base import ProcessProvider, compose_prompt

if TYPE_CHECKING:
    from collections.abc import Mapping

    from tandem_core.types import AgentProvisionRequest, InvocationRequest


def config_dir(env: Mapping[str, str]) -> Path:
    """``OPENCODE_CONFIG_DIR``, else ``$XDG_CONFIG_HOME/opencode``, else ``~/.config/opencode``."""
    explicit = (env.get("OPENCODE_CONFIG_DIR") or "").strip()
    if explicit:
        return Path(explicit)
    xdg = (env.get("XDG_CONFIG_HOME") or "").strip()
    if xdg:
        return Path(xdg) / "opencode"
    home = (env.get("HOME") or "").strip()
    return (Path(home) if home else Path.home()) / ".config" / "opencode"


def agent_file_path(agent_id: str, env: Mapping[str, str]) -> Path:
    return config_dir(env) / "agent" / f"{agent_id}.md"


def render_agent_definition(request: AgentProvisionRequest) -> str:
    description = request.description or f"{request.agent_id} agent managed by Tandem"
    instructions = request.instructions.strip() or (
        f"You are {request.agent_id}, an agent managed by Tandem.\n"
        "Follow instructions from Tandem and the user."
    )
    lines = [
        "---",
        f"description: {json.dumps(description)}",
        "mode: subagent",
    ]
    if request.model:
        lines.append(f"model: {request.model}")
    lines += ["---", "", instructions, ""]
    return "\n".join(lines)


class OpenCodeProvider(ProcessProvider):
    descriptor = ProviderDescriptor(
        id="opencode",
        display_name="OpenCode",
        kind=ProviderKind.PROCESS,
        capabilities=ProviderCapabilities(
            model=True,
            auth=True,
            passthrough=True,
            agent_create=True,
            agent_delete=True,
        ),
    )
    command = "opencode"
    command_env_var = "OPENCODE_CMD"

    def build_args(self, request: InvocationRequest, command: str) -> list[str]:
        args = ["run"]
        if request.backend_session_id:
            args += ["--session", request.backend_session_id.strip()]
        model = (request.model or request.env.get("OPENCODE_MODEL") or "").strip()
        if model:
            args += ["--model", model]
        args += request.passthrough_args
        args.append(compose_prompt(request))
        return args

    def build_auth_args(self, request: InvocationRequest, command: str) -> list[str]:
        return ["auth", "login", *request.passthrough_args]

    async def create_agent(self, request: AgentProvisionRequest) -> InvocationResult:
        path = agent_file_path(request.agent_id, request.env)
        try:
            created = await asyncio.to_thread(
                _write_exclusive, path, render_agent_definition(request)
            )
        except OSError as exc:
            return InvocationResult(
                exit_code=1,
                stderr=f"Failed to create OpenCode agent '{request.agent_id}': {exc}\n",
            )
        if not created:
            return InvocationResult(
                exit_code=0,
                stdout=f"OpenCode agent '{request.agent_id}' already exists at {path}\n",
            )
        return InvocationResult(
            exit_code=0,
            stdout=f"Created OpenCode agent '{request.agent_id}' at {path}\n",
        )

    async def delete_agent(self, request: AgentProvisionRequest) -> InvocationResult:
        path = agent_file_path(request.agent_id, request.env)
        try:
            await asyncio.to_thread(path.unlink, missing_ok=True)
        except OSError as exc:
            return InvocationResult(
                exit_code=1,
                stderr=f"Failed to delete OpenCode agent '{request.agent_id}': {exc}\n",
            )
        return InvocationResult(
            exit_code=0,
            stdout=f"Removed OpenCode agent '{request.agent_id}' from {path}\n",
        )


def _write_exclusive(path: Path, text: str) -> bool:
    """Write ``text`` unless ``path`` exists; return whether it was written."""
    path.parent.mkdir(parents=True, exist_ok=True)
    try:
        with open(path, "x", encoding="utf-8") as f:
            f.write(text)
    except FileExistsError:
        return False
    return True
