"""Service facade: the calls command-line and editor front ends make.

Wires the agent registry, provider runtime, session store and
orchestration engine together from one :class:`TandemConfig`. The process
environment is captured once here and handed down explicitly.

Usage:
    service = TandemService(TandemConfig.load())
    await service.initialize()
    result = await service.run_agent(None, RunOptions(message="Build X"))
"""
from __future__ import annotations

import asyncio
import os
import time
from typing import TYPE_CHECKING, Any

from tandem_agents.parser import normalize_agent_id
from tandem_agents.registry import AgentRegistry
from tandem_agents.routing import RoutingService
from tandem_core.config import TandemConfig
from tandem_core.errors import AgentInUseError
from tandem_core.logging import get_logger
from tandem_core.types import AgentProvisionRequest
from tandem_providers.registry import create_default_registry
from tandem_providers.runtime import ProviderRuntime

from tandem_runtime.orchestration.engine import OrchestrationEngine
from tandem_runtime.orchestration.trace import TraceWriter
from tandem_runtime.paths import TandemPaths
from tandem_runtime.sessions.store import SessionStore

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable, Mapping

    from tandem_agents.routing import RoutingDecision
    from tandem_agents.types import AgentManifest
    from tandem_core.types import InvocationRequest, InvocationResult, ProviderDescriptor
    from tandem_providers.registry import ProviderRegistry

    from tandem_runtime.orchestration.engine import RunOptions, RunResult
    from tandem_runtime.sessions.types import (
        CompactionResult,
        LastAgentAction,
        RemovedSession,
        SessionHistory,
        SessionRunInfo,
        SessionSummary,
    )

logger = get_logger("service")


class TandemService:
    """Entry points into the orchestration runtime."""

    def __init__(
        self,
        config: TandemConfig | None = None,
        *,
        env: Mapping[str, str] | None = None,
        provider_registry: ProviderRegistry | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._config = config or TandemConfig()
        self._env = dict(os.environ if env is None else env)
        self._paths = TandemPaths.from_config(self._config)

        self._provider_registry = provider_registry or create_default_registry()
        self._providers = ProviderRuntime(
            self._provider_registry, self._config.providers, base_env=self._env,
        )
        self._agents = AgentRegistry(
            self._paths.workspaces_dir,
            default_provider=self._config.providers.default_provider,
            default_agent_id=self._config.orchestration.entry_agent,
            known_providers=self._provider_registry.list_provider_ids,
        )
        self._sessions = SessionStore(self._paths.agents_dir, self._config.sessions, clock=clock)
        self._traces = TraceWriter(self._paths.runs_dir)
        self._routing = RoutingService(self._config.orchestration.entry_agent)
        self._engine = OrchestrationEngine(
            self._agents,
            self._providers,
            self._sessions,
            self._traces,
            self._config.orchestration,
        )

    @property
    def config(self) -> TandemConfig:
        return self._config

    @property
    def paths(self) -> TandemPaths:
        return self._paths

    @property
    def agents(self) -> AgentRegistry:
        return self._agents

    @property
    def providers(self) -> ProviderRuntime:
        return self._providers

    @property
    def sessions(self) -> SessionStore:
        return self._sessions

    @property
    def engine(self) -> OrchestrationEngine:
        return self._engine

    async def initialize(self) -> AgentManifest:
        """Create the home layout and the default agent's workspace."""
        await asyncio.to_thread(self._paths.ensure)
        manifest = await asyncio.to_thread(self._agents.ensure_default_agent)
        logger.info("Initialized tandem home at %s", self._paths.home_dir)
        return manifest

    # ── Runs ────────────────────────────────────────────────────────

    async def run_agent(self, agent_id: str | None, options: RunOptions) -> RunResult:
        return await self._engine.run(agent_id, options)

    async def route_message(self, agent_id: str | None, message: str) -> RoutingDecision:
        manifests = await asyncio.to_thread(self._agents.list_manifests)
        entry = self._engine.resolve_entry_agent(agent_id, manifests)
        return self._routing.decide(entry.agent_id, message, manifests)

    async def load_trace(self, run_id: str) -> dict[str, Any]:
        return await self._traces.load(run_id)

    # ── Agents ──────────────────────────────────────────────────────

    async def list_agents(self) -> list[AgentManifest]:
        return await asyncio.to_thread(self._agents.list_manifests)

    async def create_agent(
        self,
        name: str,
        *,
        provider: str | None = None,
        description: str | None = None,
        tags: Iterable[str] = (),
        discoverable: bool = True,
        can_receive: bool = True,
        can_delegate: bool | None = None,
        priority: int | None = None,
        instructions: str = "",
    ) -> AgentManifest:
        """Create an agent and, where its provider supports it, the backend-side agent."""
        if provider:
            self._providers.describe(provider)
        manifest = await asyncio.to_thread(
            lambda: self._agents.create_agent(
                name,
                provider=provider,
                description=description,
                tags=tags,
                discoverable=discoverable,
                can_receive=can_receive,
                can_delegate=can_delegate,
                priority=priority,
                instructions=instructions,
            )
        )
        descriptor = self._providers.describe(manifest.provider)
        if descriptor.capabilities.agent_create:
            result = await self._providers.create_agent(
                descriptor.id,
                AgentProvisionRequest(
                    agent_id=manifest.agent_id,
                    description=manifest.descriptor.description,
                    instructions=manifest.body,
                ),
            )
            if not result.ok:
                logger.warning(
                    "Provider %s could not create agent %s: %s",
                    descriptor.id, manifest.agent_id, result.stderr.strip(),
                )
        return manifest

    async def remove_agent(self, agent_id: str) -> None:
        """Delete an agent unless one of its sessions is running."""
        normalized = normalize_agent_id(agent_id)
        if self._sessions.is_active(normalized):
            msg = f"Agent '{normalized}' has an active run and cannot be removed"
            raise AgentInUseError(msg)
        manifest = await asyncio.to_thread(self._agents.get_manifest, normalized)
        descriptor = self._providers.describe(manifest.provider)
        if descriptor.capabilities.agent_delete:
            result = await self._providers.delete_agent(
                descriptor.id, AgentProvisionRequest(agent_id=manifest.agent_id),
            )
            if not result.ok:
                logger.warning(
                    "Provider %s could not delete agent %s: %s",
                    descriptor.id, manifest.agent_id, result.stderr.strip(),
                )
        await asyncio.to_thread(self._agents.remove_agent, normalized)

    async def set_agent_provider(self, agent_id: str, provider_id: str) -> AgentManifest:
        descriptor = self._providers.describe(provider_id)
        return await asyncio.to_thread(self._agents.set_provider, agent_id, descriptor.id)

    async def get_last_agent_action(self, agent_id: str | None = None) -> LastAgentAction | None:
        return await self._sessions.get_last_agent_action(self._agent_id(agent_id))

    # ── Providers ───────────────────────────────────────────────────

    def list_providers(self) -> list[ProviderDescriptor]:
        return self._providers.list_providers()

    async def invoke_provider_auth(
        self, provider_id: str, request: InvocationRequest | None = None
    ) -> InvocationResult:
        return await self._providers.invoke_auth(provider_id, request)

    # ── Sessions ────────────────────────────────────────────────────

    async def list_sessions(
        self, agent_id: str | None = None, *, active_minutes: int | None = None
    ) -> list[SessionSummary]:
        return await self._sessions.list_sessions(self._agent_id(agent_id), active_minutes)

    async def get_history(
        self,
        agent_id: str | None = None,
        session_ref: str | None = None,
        *,
        limit: int | None = None,
        include_compaction: bool = False,
    ) -> SessionHistory:
        return await self._sessions.get_history(
            self._agent_id(agent_id),
            session_ref,
            limit=limit,
            include_compaction=include_compaction,
        )

    async def reset_session(
        self, agent_id: str | None = None, session_ref: str | None = None
    ) -> SessionRunInfo:
        agent = self._agent_id(agent_id)
        manifest = await asyncio.to_thread(self._agents.get_manifest, agent)
        return await self._sessions.reset_session(
            agent, session_ref, workspace_path=str(manifest.workspace_dir),
        )

    async def rename_session(
        self, title: str, agent_id: str | None = None, session_ref: str | None = None
    ) -> SessionSummary:
        return await self._sessions.rename_session(self._agent_id(agent_id), title, session_ref)

    async def remove_session(
        self, agent_id: str | None = None, session_ref: str | None = None
    ) -> RemovedSession:
        return await self._sessions.remove_session(self._agent_id(agent_id), session_ref)

    async def compact_session(
        self, agent_id: str | None = None, session_ref: str | None = None
    ) -> CompactionResult:
        return await self._sessions.compact_session(self._agent_id(agent_id), session_ref)

    def _agent_id(self, agent_id: str | None) -> str:
        return normalize_agent_id(agent_id or "") or self._agents.default_agent_id
