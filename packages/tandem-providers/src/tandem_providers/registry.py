"""Provider registry: id → factory, plus per-provider module metadata."""
from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Literal

from tandem_core.errors import ProviderNotFoundError
from tandem_core.logging import get_logger
from tandem_core.types import ProviderDescriptor

from tandem_providers.base import BaseProvider

logger = get_logger("providers.registry")

ProviderFactory = Callable[[], BaseProvider]
CwdPolicy = Literal["provider-default", "agent-workspace"]


@dataclass(frozen=True, slots=True)
class ProviderModule:
    """Metadata used around a provider rather than by it.

    ``env_fields`` lists the environment variables a user may configure
    for the provider; ``cwd_policy`` says whether invocations run in the
    calling directory or in the agent's workspace.
    """
    id: str
    env_fields: tuple[str, ...] = ()
    cwd_policy: CwdPolicy = "agent-workspace"
    description: str = ""


@dataclass(slots=True)
class _Entry:
    factory: ProviderFactory
    module: ProviderModule
    descriptor: ProviderDescriptor | None = field(default=None)


def normalize_provider_id(provider_id: str) -> str:
    return provider_id.strip().lower()


class ProviderRegistry:
    """Maps provider ids to factories; every ``create`` builds a fresh instance."""

    def __init__(self) -> None:
        self._entries: dict[str, _Entry] = {}

    def register(
        self,
        provider_id: str,
        factory: ProviderFactory,
        module: ProviderModule | None = None,
    ) -> None:
        key = normalize_provider_id(provider_id)
        if not key:
            msg = "Provider id cannot be empty"
            raise ValueError(msg)
        if key in self._entries:
            logger.debug("Replacing provider registration '%s'", key)
        self._entries[key] = _Entry(
            factory=factory,
            module=module or ProviderModule(id=key),
        )

    def list_provider_ids(self) -> list[str]:
        return sorted(self._entries)

    def has(self, provider_id: str) -> bool:
        return normalize_provider_id(provider_id) in self._entries

    def create(self, provider_id: str) -> BaseProvider:
        return self._entry(provider_id).factory()

    def describe(self, provider_id: str) -> ProviderDescriptor:
        entry = self._entry(provider_id)
        if entry.descriptor is None:
            entry.descriptor = entry.factory().descriptor
        return entry.descriptor

    def list_providers(self) -> list[ProviderDescriptor]:
        return [self.describe(provider_id) for provider_id in self.list_provider_ids()]

    def get_module(self, provider_id: str) -> ProviderModule:
        return self._entry(provider_id).module

    def _entry(self, provider_id: str) -> _Entry:
        key = normalize_provider_id(provider_id)
        entry = self._entries.get(key)
        if entry is None:
            raise ProviderNotFoundError(key, self.list_provider_ids())
        return entry


def create_default_registry() -> ProviderRegistry:
    """Registry with every built-in adapter."""
    from tandem_providers.adapters import (
        ClaudeCodeProvider,
        CodexProvider,
        CopilotCliProvider,
        CursorProvider,
        GeminiProvider,
        OpenAIProvider,
        OpenCodeProvider,
        OpenRouterProvider,
    )

    registry = ProviderRegistry()
    registry.register(
        "claude-code", ClaudeCodeProvider,
        ProviderModule("claude-code", env_fields=("CLAUDE_CODE_CMD",)),
    )
    registry.register(
        "codex", CodexProvider,
        ProviderModule("codex", env_fields=("CODEX_CMD",)),
    )
    registry.register(
        "cursor", CursorProvider,
        ProviderModule("cursor", env_fields=("CURSOR_CMD",)),
    )
    registry.register(
        "opencode", OpenCodeProvider,
        ProviderModule(
            "opencode", env_fields=("OPENCODE_CMD", "OPENCODE_MODEL", "OPENCODE_CONFIG_DIR"),
        ),
    )
    registry.register(
        "gemini", GeminiProvider,
        ProviderModule(
            "gemini", env_fields=("GEMINI_CMD", "GEMINI_MODEL", "GEMINI_APPROVAL_MODE"),
        ),
    )
    registry.register(
        "copilot-cli", CopilotCliProvider,
        ProviderModule("copilot-cli", env_fields=("COPILOT_CLI_CMD",)),
    )
    registry.register(
        "openai", OpenAIProvider,
        ProviderModule(
            "openai",
            env_fields=(
                "OPENAI_API_KEY", "OPENAI_BASE_URL", "OPENAI_ENDPOINT",
                "OPENAI_ENDPOINT_PATH", "OPENAI_API_STYLE", "OPENAI_MODEL",
                "OPENAI_REQUEST_TIMEOUT_MS",
            ),
            cwd_policy="provider-default",
        ),
    )
    registry.register(
        "openrouter", OpenRouterProvider,
        ProviderModule(
            "openrouter",
            env_fields=(
                "OPENROUTER_API_KEY", "OPENROUTER_ENDPOINT", "OPENROUTER_MODEL",
                "OPENROUTER_HTTP_REFERER", "OPENROUTER_X_TITLE",
            ),
            cwd_policy="provider-default",
        ),
    )
    return registry
