"""Provider base classes.

Two structural bases exist. :class:`ProcessProvider` drives a local CLI
tool and :class:`~tandem_providers.http.HttpProvider` talks to a remote
API. Both own the invocation lifecycle; a concrete adapter only says how
to build its arguments or payload and how to read its output.
"""
from __future__ import annotations

import abc
import os
from typing import TYPE_CHECKING, ClassVar

from tandem_core.errors import (
    CommandMissingError,
    ProviderRuntimeError,
    UnsupportedProviderActionError,
)
from tandem_core.logging import get_logger
from tandem_core.types import InvocationResult

from tandem_providers.process import run_process
from tandem_providers.session_ids import attach_backend_session_id

if TYPE_CHECKING:
    from collections.abc import Mapping

    from tandem_core.types import (
        AgentProvisionRequest,
        InvocationRequest,
        ProviderCapabilities,
        ProviderDescriptor,
        ProviderKind,
    )

logger = get_logger("providers")


class BaseProvider(abc.ABC):
    """Uniform contract shared by every backend provider."""

    descriptor: ClassVar[ProviderDescriptor]

    @property
    def id(self) -> str:
        return self.descriptor.id

    @property
    def kind(self) -> ProviderKind:
        return self.descriptor.kind

    @property
    def capabilities(self) -> ProviderCapabilities:
        return self.descriptor.capabilities

    def validate_request(self, request: InvocationRequest) -> None:
        """Reject options the provider did not declare, before any I/O."""
        caps = self.capabilities
        if request.agent and not caps.agent:
            raise UnsupportedProviderActionError(self.id, "agent", "agent selection")
        if request.model and not caps.model:
            raise UnsupportedProviderActionError(self.id, "model", "model override")
        if request.passthrough_args and not caps.passthrough:
            raise UnsupportedProviderActionError(self.id, "passthrough", "passthrough arguments")

    @abc.abstractmethod
    async def invoke(self, request: InvocationRequest) -> InvocationResult:
        """Send one message to the backend and return its normalized output."""

    async def invoke_auth(self, request: InvocationRequest) -> InvocationResult:
        raise UnsupportedProviderActionError(self.id, "auth")

    async def create_agent(self, request: AgentProvisionRequest) -> InvocationResult:
        raise UnsupportedProviderActionError(self.id, "agent_create")

    async def delete_agent(self, request: AgentProvisionRequest) -> InvocationResult:
        raise UnsupportedProviderActionError(self.id, "agent_delete")


class ProcessProvider(BaseProvider):
    """Backend reached by running a local command.

    Subclasses set ``command`` (and usually ``command_env_var``, which lets
    users point at a different executable) and implement
    :meth:`build_args`. They may override :meth:`build_auth_args` and
    :meth:`normalize_output`.
    """

    command: ClassVar[str]
    command_env_var: ClassVar[str | None] = None

    def resolve_command(self, env: Mapping[str, str]) -> str:
        if self.command_env_var:
            override = (env.get(self.command_env_var) or "").strip()
            if override:
                return override
        return self.command

    @abc.abstractmethod
    def build_args(self, request: InvocationRequest, command: str) -> list[str]:
        """Arguments following the command for a message invocation."""

    def build_auth_args(self, request: InvocationRequest, command: str) -> list[str]:
        raise UnsupportedProviderActionError(self.id, "auth")

    def normalize_output(
        self, result: InvocationResult, request: InvocationRequest
    ) -> InvocationResult:
        """Turn raw process output into the text a caller should see."""
        return attach_backend_session_id(result)

    async def invoke(self, request: InvocationRequest) -> InvocationResult:
        self.validate_request(request)
        command = self.resolve_command(request.env)
        result = await self._execute(command, self.build_args(request, command), request)
        result = self.normalize_output(result, request)
        if not result.backend_session_id and request.backend_session_id:
            result = result.replace(backend_session_id=request.backend_session_id)
        return result

    async def invoke_auth(self, request: InvocationRequest) -> InvocationResult:
        if not self.capabilities.auth:
            raise UnsupportedProviderActionError(self.id, "auth")
        self.validate_request(request.replace(model=None, agent=None))
        command = self.resolve_command(request.env)
        return await self._execute(command, self.build_auth_args(request, command), request)

    async def _execute(
        self, command: str, args: list[str], request: InvocationRequest
    ) -> InvocationResult:
        logger.info(
            "Invoking %s via %s", self.id, os.path.basename(command),
            extra={"provider_id": self.id},
        )
        logger.debug("argv: %r", [command, *args])
        try:
            output = await run_process(
                command,
                args,
                env=dict(request.env),
                cwd=request.cwd,
                timeout=request.timeout_seconds,
                on_stdout=request.on_stdout,
                on_stderr=request.on_stderr,
            )
        except FileNotFoundError as exc:
            raise CommandMissingError(self.id, command, self.command_env_var) from exc
        except PermissionError as exc:
            msg = f"Command '{command}' for provider '{self.id}' is not executable: {exc}"
            raise ProviderRuntimeError(msg, provider_id=self.id) from exc

        logger.info(
            "%s exited with code %d in %.0fms", self.id, output.exit_code, output.duration_ms,
            extra={"provider_id": self.id},
        )
        return InvocationResult(
            exit_code=output.exit_code,
            stdout=output.stdout,
            stderr=output.stderr,
        )


def compose_prompt(request: InvocationRequest) -> str:
    """Message prefixed with the session context block, when present."""
    if not request.session_context:
        return request.message
    return f"{request.session_context.strip()}\n\n{request.message}"
