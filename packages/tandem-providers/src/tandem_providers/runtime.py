"""Provider runtime: the single entry point the rest of the system uses.

Every call resolves the provider, checks the request against its declared
capabilities before any I/O, merges the environment (process snapshot ←
``[providers.<id>.env]`` ← request overrides) and classifies anything
unexpected raised by an adapter as :class:`ProviderRuntimeError`.
"""
from __future__ import annotations

import json
from collections.abc import Mapping
from dataclasses import dataclass
from typing import TYPE_CHECKING

import httpx
from tandem_core.config import ProvidersConfig
from tandem_core.errors import ProviderRuntimeError, TandemError, UnsupportedProviderActionError
from tandem_core.logging import get_logger
from tandem_core.types import AgentProvisionRequest, InvocationRequest, ProviderKind

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable
    from pathlib import Path

    from tandem_agents.types import AgentManifest
    from tandem_core.types import InvocationResult, ProviderDescriptor

    from tandem_providers.base import BaseProvider
    from tandem_providers.registry import ProviderRegistry

logger = get_logger("providers.runtime")

# Request options that need a capability of the same name.
_OPTION_CAPABILITIES = (
    ("agent", "agent"),
    ("model", "model"),
    ("passthrough_args", "passthrough"),
)


@dataclass(frozen=True, slots=True)
class AgentInvocation:
    """Result of invoking an agent through its bound provider."""
    agent_id: str
    provider_id: str
    request: InvocationRequest
    result: InvocationResult


class ProviderRuntime:
    """Invokes providers on behalf of agents and collaborators."""

    def __init__(
        self,
        registry: ProviderRegistry,
        config: ProvidersConfig | None = None,
        base_env: Mapping[str, str] | None = None,
    ) -> None:
        self._registry = registry
        self._config = config or ProvidersConfig()
        self._base_env = dict(base_env or {})

    @property
    def registry(self) -> ProviderRegistry:
        return self._registry

    def list_providers(self) -> list[ProviderDescriptor]:
        return self._registry.list_providers()

    def describe(self, provider_id: str) -> ProviderDescriptor:
        return self._registry.describe(provider_id)

    def require_capability(self, provider_id: str, action: str) -> ProviderDescriptor:
        """Raise UnsupportedProviderActionError unless ``action`` is declared."""
        descriptor = self.describe(provider_id)
        if not descriptor.capabilities.supports(action):
            raise UnsupportedProviderActionError(descriptor.id, action)
        return descriptor

    def check_request(self, provider_id: str, request: InvocationRequest) -> ProviderDescriptor:
        descriptor = self.describe(provider_id)
        for option, capability in _OPTION_CAPABILITIES:
            if getattr(request, option) and not descriptor.capabilities.supports(capability):
                raise UnsupportedProviderActionError(descriptor.id, capability)
        return descriptor

    def resolve_env(self, provider_id: str, overrides: Mapping[str, str] | None = None) -> dict[str, str]:
        env = dict(self._base_env)
        env.update(self._config.for_provider(self.describe(provider_id).id).env)
        if overrides:
            env.update(overrides)
        return env

    # ── Invocation ──────────────────────────────────────────────────

    async def invoke(self, provider_id: str, request: InvocationRequest) -> InvocationResult:
        descriptor = self.check_request(provider_id, request)
        prepared = self._prepare(descriptor, request)
        provider = self._registry.create(descriptor.id)
        return await self._guard(descriptor.id, lambda: provider.invoke(prepared))

    async def invoke_auth(
        self, provider_id: str, request: InvocationRequest | None = None
    ) -> InvocationResult:
        descriptor = self.require_capability(provider_id, "auth")
        request = request or InvocationRequest(message="")
        if request.passthrough_args and not descriptor.capabilities.passthrough:
            raise UnsupportedProviderActionError(descriptor.id, "passthrough")
        prepared = self._prepare(descriptor, request)
        provider = self._registry.create(descriptor.id)
        return await self._guard(descriptor.id, lambda: provider.invoke_auth(prepared))

    async def invoke_agent(
        self, manifest: AgentManifest, request: InvocationRequest
    ) -> AgentInvocation:
        """Invoke ``manifest``'s provider with the agent's defaults applied.

        The agent id is passed through only to providers that accept agent
        selection; process providers run inside the agent workspace unless
        their module says otherwise.
        """
        provider_id = manifest.descriptor.provider
        descriptor = self.describe(provider_id)
        if descriptor.capabilities.agent and not request.agent:
            request = request.replace(agent=manifest.agent_id)
        if request.cwd is None and self._registry.get_module(descriptor.id).cwd_policy == "agent-workspace":
            request = request.replace(cwd=str(_ensure_dir(manifest.workspace_dir)))

        logger.info(
            "Invoking agent %s via %s", manifest.agent_id, descriptor.id,
            extra={"agent_id": manifest.agent_id, "provider_id": descriptor.id},
        )
        result = await self.invoke(descriptor.id, request)
        return AgentInvocation(
            agent_id=manifest.agent_id,
            provider_id=descriptor.id,
            request=request,
            result=result,
        )

    async def create_agent(
        self, provider_id: str, request: AgentProvisionRequest
    ) -> InvocationResult:
        descriptor = self.require_capability(provider_id, "agent_create")
        provider = self._registry.create(descriptor.id)
        prepared = _with_env(request, self.resolve_env(descriptor.id, request.env))
        return await self._guard(descriptor.id, lambda: provider.create_agent(prepared))

    async def delete_agent(
        self, provider_id: str, request: AgentProvisionRequest
    ) -> InvocationResult:
        descriptor = self.require_capability(provider_id, "agent_delete")
        provider = self._registry.create(descriptor.id)
        prepared = _with_env(request, self.resolve_env(descriptor.id, request.env))
        return await self._guard(descriptor.id, lambda: provider.delete_agent(prepared))

    # ── Internal helpers ────────────────────────────────────────────

    def _prepare(self, descriptor: ProviderDescriptor, request: InvocationRequest) -> InvocationRequest:
        env = self.resolve_env(descriptor.id, request.env)
        timeout = request.timeout_seconds
        if timeout is None:
            settings = self._config.for_provider(descriptor.id)
            if descriptor.kind is ProviderKind.PROCESS:
                timeout = self._config.timeout_for(descriptor.id)
            else:
                timeout = settings.timeout_seconds
        return request.replace(env=env, timeout_seconds=timeout)

    async def _guard(
        self,
        provider_id: str,
        call: Callable[[], Awaitable[InvocationResult]],
    ) -> InvocationResult:
        try:
            return await call()
        except TandemError:
            raise
        except (httpx.HTTPError, OSError, json.JSONDecodeError, UnicodeError) as exc:
            logger.warning("Provider %s failed: %s", provider_id, exc, exc_info=True)
            msg = f"Provider '{provider_id}' failed: {exc}"
            raise ProviderRuntimeError(msg, provider_id=provider_id) from exc


def _ensure_dir(path: Path) -> Path:
    path.mkdir(parents=True, exist_ok=True)
    return path


def _with_env(request: AgentProvisionRequest, env: dict[str, str]) -> AgentProvisionRequest:
    return AgentProvisionRequest(
        agent_id=request.agent_id,
        description=request.description,
        instructions=request.instructions,
        model=request.model,
        env=env,
    )
