"""Backend provider runtime: process and HTTP adapters behind one contract."""
from __future__ import annotations

from tandem_providers.base import BaseProvider, ProcessProvider, compose_prompt
from tandem_providers.http import HttpProvider, HttpTarget
from tandem_providers.process import ProcessOutput, run_process
from tandem_providers.registry import (
    ProviderModule,
    ProviderRegistry,
    create_default_registry,
    normalize_provider_id,
)
from tandem_providers.runtime import AgentInvocation, ProviderRuntime
from tandem_providers.session_ids import (
    attach_backend_session_id,
    extract_backend_session_id,
)

__all__ = [
    "AgentInvocation",
    "BaseProvider",
    "HttpProvider",
    "HttpTarget",
    "ProcessOutput",
    "ProcessProvider",
    "ProviderModule",
    "ProviderRegistry",
    "ProviderRuntime",
    "attach_backend_session_id",
    "compose_prompt",
    "create_default_registry",
    "extract_backend_session_id",
    "normalize_provider_id",
    "run_process",
]
