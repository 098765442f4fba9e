from __future__ import annotations

import pytest
from tandem_agents.registry import AgentRegistry
from tandem_core.config import ProvidersConfig, ProviderSettings
from tandem_core.errors import (
    ProviderNotFoundError,
    ProviderRuntimeError,
    UnsupportedProviderActionError,
)
from tandem_core.types import (
    AgentProvisionRequest,
    InvocationRequest,
    InvocationResult,
    ProviderCapabilities,
    ProviderDescriptor,
    ProviderKind,
)
from tandem_providers.base import BaseProvider
from tandem_providers.registry import ProviderModule, ProviderRegistry
from tandem_providers.runtime import ProviderRuntime


class RecordingProvider(BaseProvider):
    """Records requests; never does any I/O."""

    descriptor = ProviderDescriptor(
        id="recording",
        display_name="Recording",
        kind=ProviderKind.PROCESS,
        capabilities=ProviderCapabilities(agent=True, auth=True),
    )
    seen: list[InvocationRequest] = []

    async def invoke(self, request):
        self.seen.append(request)
        return InvocationResult(exit_code=0, stdout="ok\n")

    async def invoke_auth(self, request):
        self.seen.append(request)
        return InvocationResult(exit_code=0)


class PlainProvider(BaseProvider):
    descriptor = ProviderDescriptor(
        id="plain", display_name="Plain", kind=ProviderKind.HTTP,
    )
    seen: list[InvocationRequest] = []

    async def invoke(self, request):
        self.seen.append(request)
        return InvocationResult(exit_code=0, stdout="plain\n")


class BrokenProvider(BaseProvider):
    descriptor = ProviderDescriptor(id="broken", display_name="Broken", kind=ProviderKind.PROCESS)

    async def invoke(self, request):
        raise OSError("disk on fire")


@pytest.fixture(autouse=True)
def _reset_seen():
    RecordingProvider.seen = []
    PlainProvider.seen = []


@pytest.fixture
def runtime():
    registry = ProviderRegistry()
    registry.register("recording", RecordingProvider)
    registry.register("plain", PlainProvider, ProviderModule("plain", cwd_policy="provider-default"))
    registry.register("broken", BrokenProvider)
    config = ProvidersConfig(
        default_timeout_seconds=90,
        settings={
            "recording": ProviderSettings(env={"SHARED": "provider", "ONLY_PROVIDER": "1"}),
            "plain": ProviderSettings(timeout_seconds=15),
        },
    )
    return ProviderRuntime(registry, config, base_env={"SHARED": "base", "HOME": "/home/test"})


class TestCapabilityChecks:
    @pytest.mark.parametrize("option", [
        {"model": "big"},
        {"agent": "someone"},
        {"passthrough_args": ("--x",)},
    ])
    async def test_rejected_before_any_call(self, runtime, option):
        with pytest.raises(UnsupportedProviderActionError):
            await runtime.invoke("plain", InvocationRequest(message="hi", **option))
        assert PlainProvider.seen == []

    async def test_auth_requires_capability(self, runtime):
        with pytest.raises(UnsupportedProviderActionError, match="auth"):
            await runtime.invoke_auth("plain")
        result = await runtime.invoke_auth("recording")
        assert result.ok

    async def test_provisioning_requires_capability(self, runtime):
        with pytest.raises(UnsupportedProviderActionError, match="agent_create"):
            await runtime.create_agent("recording", AgentProvisionRequest(agent_id="dev"))
        with pytest.raises(UnsupportedProviderActionError, match="agent_delete"):
            await runtime.delete_agent("recording", AgentProvisionRequest(agent_id="dev"))

    def test_require_capability(self, runtime):
        assert runtime.require_capability("recording", "auth").id == "recording"
        with pytest.raises(UnsupportedProviderActionError):
            runtime.require_capability("plain", "auth")

    async def test_unknown_provider(self, runtime):
        with pytest.raises(ProviderNotFoundError):
            await runtime.invoke("ghost", InvocationRequest(message="hi"))


class TestEnvironmentAndTimeouts:
    async def test_env_merge_order(self, runtime):
        await runtime.invoke(
            "recording", InvocationRequest(message="hi", env={"SHARED": "request", "EXTRA": "x"}),
        )
        env = RecordingProvider.seen[0].env
        assert env == {
            "SHARED": "request",
            "HOME": "/home/test",
            "ONLY_PROVIDER": "1",
            "EXTRA": "x",
        }

    def test_resolve_env_without_overrides(self, runtime):
        assert runtime.resolve_env("recording")["SHARED"] == "provider"
        assert runtime.resolve_env("plain")["SHARED"] == "base"

    async def test_process_default_timeout(self, runtime):
        await runtime.invoke("recording", InvocationRequest(message="hi"))
        assert RecordingProvider.seen[0].timeout_seconds == 90

    async def test_http_timeout_only_when_configured(self, runtime):
        await runtime.invoke("plain", InvocationRequest(message="hi"))
        assert PlainProvider.seen[0].timeout_seconds == 15

    async def test_request_timeout_wins(self, runtime):
        await runtime.invoke("recording", InvocationRequest(message="hi", timeout_seconds=3))
        assert RecordingProvider.seen[0].timeout_seconds == 3

    async def test_unexpected_errors_are_classified(self, runtime):
        with pytest.raises(ProviderRuntimeError, match="disk on fire") as excinfo:
            await runtime.invoke("broken", InvocationRequest(message="hi"))
        assert excinfo.value.provider_id == "broken"


class TestInvokeAgent:
    @pytest.fixture
    def agents(self, tmp_path):
        registry = AgentRegistry(tmp_path / "workspaces", default_provider="recording")
        registry.create_agent("dev")
        registry.create_agent("api", provider="plain")
        return registry

    async def test_agent_capable_provider_gets_agent_and_workspace(self, runtime, agents):
        manifest = agents.get_manifest("dev")
        invocation = await runtime.invoke_agent(manifest, InvocationRequest(message="hi"))
        assert invocation.agent_id == "dev"
        assert invocation.provider_id == "recording"
        assert invocation.result.stdout == "ok\n"
        sent = RecordingProvider.seen[0]
        assert sent.agent == "dev"
        assert sent.cwd == str(manifest.workspace_dir)

    async def test_plain_provider_keeps_request_untouched(self, runtime, agents):
        manifest = agents.get_manifest("api")
        await runtime.invoke_agent(manifest, InvocationRequest(message="hi"))
        sent = PlainProvider.seen[0]
        assert sent.agent is None
        assert sent.cwd is None

    async def test_explicit_cwd_wins(self, runtime, agents, tmp_path):
        manifest = agents.get_manifest("dev")
        await runtime.invoke_agent(manifest, InvocationRequest(message="hi", cwd=str(tmp_path)))
        assert RecordingProvider.seen[0].cwd == str(tmp_path)
