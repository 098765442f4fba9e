"""Tandem Core: shared types, config, errors, and logging."""
from __future__ import annotations

from tandem_core._version import __version__
from tandem_core.config import (
    OrchestrationConfig,
    PathsConfig,
    ProvidersConfig,
    ProviderSettings,
    SessionsConfig,
    TandemConfig,
)
from tandem_core.errors import (
    AgentError,
    AgentInUseError,
    AgentNotFoundError,
    AgentValidationError,
    CommandMissingError,
    ConfigError,
    DelegationDepthExceededError,
    DelegationNotAllowedError,
    MalformedPlannerOutputError,
    OrchestrationError,
    ProviderAuthenticationError,
    ProviderError,
    ProviderNotFoundError,
    ProviderRuntimeError,
    RunCancelledError,
    ScenarioError,
    SessionBusyError,
    SessionError,
    SessionNotFoundError,
    SessionStoreCorruptError,
    TandemError,
    UnsupportedProviderActionError,
)
from tandem_core.logging import get_logger, setup_logging
from tandem_core.types import (
    AgentProvisionRequest,
    InvocationRequest,
    InvocationResult,
    OutputSink,
    ProviderCapabilities,
    ProviderDescriptor,
    ProviderKind,
    RunEventType,
    RunStatus,
    RunStatusEvent,
    StatusSink,
)

__all__ = [
    # Errors
    "AgentError",
    "AgentInUseError",
    "AgentNotFoundError",
    # Types
    "AgentProvisionRequest",
    "AgentValidationError",
    "CommandMissingError",
    "ConfigError",
    "DelegationDepthExceededError",
    "DelegationNotAllowedError",
    "InvocationRequest",
    "InvocationResult",
    "MalformedPlannerOutputError",
    "OrchestrationConfig",
    "OrchestrationError",
    "OutputSink",
    # Config
    "PathsConfig",
    "ProviderAuthenticationError",
    "ProviderCapabilities",
    "ProviderDescriptor",
    "ProviderError",
    "ProviderKind",
    "ProviderNotFoundError",
    "ProviderRuntimeError",
    "ProviderSettings",
    "ProvidersConfig",
    "RunCancelledError",
    "RunEventType",
    "RunStatus",
    "RunStatusEvent",
    "ScenarioError",
    "SessionBusyError",
    "SessionError",
    "SessionNotFoundError",
    "SessionStoreCorruptError",
    "SessionsConfig",
    "StatusSink",
    "TandemConfig",
    "TandemError",
    "UnsupportedProviderActionError",
    "__version__",
    # Logging
    "get_logger",
    "setup_logging",
]
