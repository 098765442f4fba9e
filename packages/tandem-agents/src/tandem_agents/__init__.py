"""Agent manifests: AGENTS.md parsing, loading, validation, registry and routing."""
from __future__ import annotations

from tandem_agents.loader import ManifestLoader
from tandem_agents.parser import (
    format_manifest,
    normalize_agent_id,
    normalize_metadata,
    parse_manifest,
)
from tandem_agents.registry import AgentRegistry
from tandem_agents.routing import (
    RoutingCandidate,
    RoutingDecision,
    RoutingService,
    delegation_candidates,
    score_candidate,
)
from tandem_agents.types import (
    DEFAULT_AGENT_ID,
    DEFAULT_PRIORITY,
    MANIFEST_FILENAME,
    AgentDescriptor,
    AgentManifest,
    DelegationPolicy,
    ParsedManifest,
)
from tandem_agents.validator import AgentValidator

__all__ = [
    "DEFAULT_AGENT_ID",
    "DEFAULT_PRIORITY",
    "MANIFEST_FILENAME",
    "AgentDescriptor",
    "AgentManifest",
    "AgentRegistry",
    "AgentValidator",
    "DelegationPolicy",
    "ManifestLoader",
    "ParsedManifest",
    "RoutingCandidate",
    "RoutingDecision",
    "RoutingService",
    "delegation_candidates",
    "format_manifest",
    "normalize_agent_id",
    "normalize_metadata",
    "parse_manifest",
    "score_candidate",
]
