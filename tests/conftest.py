from __future__ import annotations

import asyncio
import json
from collections import defaultdict, deque
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any

import pytest
import pytest_asyncio
from tandem_core.config import (
    OrchestrationConfig,
    PathsConfig,
    ProvidersConfig,
    SessionsConfig,
    TandemConfig,
)
from tandem_core.types import (
    InvocationRequest,
    InvocationResult,
    ProviderCapabilities,
    ProviderDescriptor,
    ProviderKind,
)
from tandem_providers.base import BaseProvider
from tandem_providers.registry import ProviderModule, create_default_registry

Reply = str | InvocationResult | Callable[[InvocationRequest], Awaitable[InvocationResult]]


class ProviderScript:
    """Queued replies per agent, plus every request the provider received."""

    def __init__(self) -> None:
        self._replies: dict[str, deque[Reply]] = defaultdict(deque)
        self.requests: list[InvocationRequest] = []

    def reply(self, agent_id: str, *replies: Reply) -> None:
        self._replies[agent_id].extend(replies)

    def requests_for(self, agent_id: str) -> list[InvocationRequest]:
        return [r for r in self.requests if r.agent == agent_id]

    def pending(self, agent_id: str) -> int:
        return len(self._replies[agent_id])

    async def answer(self, request: InvocationRequest) -> InvocationResult:
        self.requests.append(request)
        queue = self._replies[request.agent or ""]
        if not queue:
            return InvocationResult(exit_code=1, stderr=f"no scripted reply for {request.agent}")
        reply = queue.popleft()
        if isinstance(reply, str):
            return InvocationResult(exit_code=0, stdout=f"{reply}\n")
        if isinstance(reply, InvocationResult):
            return reply
        return await reply(request)


class ScriptedProvider(BaseProvider):
    descriptor = ProviderDescriptor(
        id="scripted",
        display_name="Scripted",
        kind=ProviderKind.PROCESS,
        capabilities=ProviderCapabilities(agent=True, model=True, passthrough=True),
    )

    def __init__(self, script: ProviderScript) -> None:
        self._script = script

    async def invoke(self, request: InvocationRequest) -> InvocationResult:
        self.validate_request(request)
        result = await self._script.answer(request)
        if result.stdout and request.on_stdout is not None:
            request.on_stdout(result.stdout)
        if result.stderr and request.on_stderr is not None:
            request.on_stderr(result.stderr)
        return result


def delegate(target: str, message: str, **extra: Any) -> str:
    action = {"type": "delegate_to_agent", "targetAgentId": target, "message": message, **extra}
    return json.dumps({"rationale": f"{target} should handle this", "action": action})


def finish(message: str) -> str:
    return json.dumps({"rationale": "done", "action": {"type": "finish", "message": message}})


async def hang_until_cancelled(request: InvocationRequest) -> InvocationResult:
    await asyncio.sleep(3600)
    return InvocationResult(exit_code=0)


@pytest.fixture
def tandem_home(tmp_path: Path) -> Path:
    return tmp_path / "tandem-home"


@pytest.fixture
def config(tandem_home: Path) -> TandemConfig:
    return TandemConfig(
        paths=PathsConfig(home=str(tandem_home)),
        orchestration=OrchestrationConfig(max_delegation_depth=8),
        sessions=SessionsConfig(reset_mode="never"),
        providers=ProvidersConfig(default_provider="scripted"),
    )


@pytest.fixture
def script() -> ProviderScript:
    return ProviderScript()


@pytest.fixture
def provider_registry(script: ProviderScript):
    registry = create_default_registry()
    registry.register(
        "scripted",
        lambda: ScriptedProvider(script),
        ProviderModule("scripted", cwd_policy="provider-default"),
    )
    return registry


@pytest_asyncio.fixture
async def service(config: TandemConfig, provider_registry):
    from tandem_runtime.service import TandemService

    svc = TandemService(config, env={}, provider_registry=provider_registry)
    await svc.initialize()
    return svc
