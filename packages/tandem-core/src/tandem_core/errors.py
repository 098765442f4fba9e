from __future__ import annotations

from collections.abc import Iterable


class TandemError(Exception):
    """Base exception for all Tandem errors."""


# ── Provider Errors ──────────────────────────────────────────────────

class ProviderError(TandemError):
    """Base for backend provider errors."""

    def __init__(self, message: str, *, provider_id: str | None = None) -> None:
        super().__init__(message)
        self.provider_id = provider_id


class ProviderNotFoundError(ProviderError):
    """Provider id is not registered."""

    def __init__(self, provider_id: str, available: Iterable[str] = ()) -> None:
        self.available = tuple(available)
        listing = ", ".join(self.available) or "none"
        super().__init__(
            f"Unknown provider '{provider_id}'. Available: {listing}",
            provider_id=provider_id,
        )


class ProviderAuthenticationError(ProviderError):
    """Required credentials are missing for an HTTP provider."""


class UnsupportedProviderActionError(ProviderError):
    """The provider does not declare the capability the request needs."""

    def __init__(self, provider_id: str, action: str, detail: str | None = None) -> None:
        self.action = action
        message = f"Provider '{provider_id}' does not support {action}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message, provider_id=provider_id)


class ProviderRuntimeError(ProviderError):
    """Backend was reached but produced unusable output or failed unexpectedly."""


class CommandMissingError(ProviderError):
    """The executable backing a process provider could not be found."""

    def __init__(self, provider_id: str, command: str, env_var: str | None = None) -> None:
        self.command = command
        self.env_var = env_var
        hint = f"install it or set {env_var} to its path" if env_var else "install it"
        super().__init__(
            f"Command '{command}' for provider '{provider_id}' was not found; {hint}.",
            provider_id=provider_id,
        )


# ── Agent Errors ─────────────────────────────────────────────────────

class AgentError(TandemError):
    """Base for agent-related errors."""


class AgentNotFoundError(AgentError):
    """Agent not found in the registry."""


class AgentValidationError(AgentError):
    """Agent manifest or agent operation is invalid."""


class AgentInUseError(AgentError):
    """Agent is referenced by an active session run."""


# ── Session Errors ───────────────────────────────────────────────────

class SessionError(TandemError):
    """Base for session-related errors."""


class SessionNotFoundError(SessionError):
    """Session reference does not resolve to a stored session."""


class SessionBusyError(SessionError):
    """Another run already holds the session key."""

    def __init__(self, agent_id: str, session_key: str) -> None:
        self.agent_id = agent_id
        self.session_key = session_key
        super().__init__(f"Session '{session_key}' of agent '{agent_id}' is already running")


class SessionStoreCorruptError(SessionError):
    """Session index or transcript could not be parsed."""


# ── Orchestration Errors ─────────────────────────────────────────────

class OrchestrationError(TandemError):
    """Base for orchestration loop failures."""


class MalformedPlannerOutputError(OrchestrationError):
    """Planner output did not contain a valid decision."""

    def __init__(self, message: str, *, agent_id: str | None = None, raw_output: str = "") -> None:
        super().__init__(message)
        self.agent_id = agent_id
        self.raw_output = raw_output


class DelegationDepthExceededError(OrchestrationError):
    """A run tried to delegate more times than allowed."""

    def __init__(self, max_depth: int) -> None:
        self.max_depth = max_depth
        super().__init__(f"Delegation limit of {max_depth} reached")


class DelegationNotAllowedError(OrchestrationError):
    """Delegation target is unknown or not eligible, or the caller may not delegate."""

    def __init__(self, from_agent_id: str, to_agent_id: str, reason: str) -> None:
        self.from_agent_id = from_agent_id
        self.to_agent_id = to_agent_id
        super().__init__(f"Agent '{from_agent_id}' cannot delegate to '{to_agent_id}': {reason}")


# ── Run Control ──────────────────────────────────────────────────────

class RunCancelledError(TandemError):
    """The run was cancelled by its caller."""


# ── Scenario Errors ──────────────────────────────────────────────────

class ScenarioError(TandemError):
    """A scenario definition is missing, unreadable or malformed."""


# ── Config Errors ────────────────────────────────────────────────────

class ConfigError(TandemError):
    """Invalid or missing configuration."""
