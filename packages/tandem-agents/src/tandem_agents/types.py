"""Agent manifest types for the AGENTS.md system."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Literal

if TYPE_CHECKING:
    from pathlib import Path

DEFAULT_AGENT_ID = "orchestrator"
DEFAULT_PRIORITY = 50
MANIFEST_FILENAME = "AGENTS.md"

ManifestSource = Literal["frontmatter", "derived"]


@dataclass(frozen=True, slots=True)
class DelegationPolicy:
    """Whether an agent may be delegated to, and whether it may delegate."""

    can_receive: bool = True
    can_delegate: bool = False


@dataclass(frozen=True, slots=True)
class AgentDescriptor:
    """Normalized metadata of one agent.

    ``id`` is a lowercase slug and the stable key everywhere else in the
    system (session keys, trace nodes, workspace directory names).
    """

    id: str
    name: str
    description: str
    provider: str
    discoverable: bool = True
    tags: tuple[str, ...] = ()
    delegation: DelegationPolicy = field(default_factory=DelegationPolicy)
    priority: int = DEFAULT_PRIORITY

    @property
    def display_name(self) -> str:
        return self.name

    @property
    def eligible_for_delegation(self) -> bool:
        """Discoverable agents that accept work may appear as delegation targets."""
        return self.discoverable and self.delegation.can_receive

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "provider": self.provider,
            "discoverable": self.discoverable,
            "tags": list(self.tags),
            "delegation": {
                "canReceive": self.delegation.can_receive,
                "canDelegate": self.delegation.can_delegate,
            },
            "priority": self.priority,
        }


@dataclass(frozen=True, slots=True)
class ParsedManifest:
    """Raw result of reading a manifest document.

    ``data`` only holds recognized keys that were present and well-typed;
    defaults are applied later by :func:`normalize_metadata`.
    """

    data: dict[str, Any] = field(default_factory=dict)
    body: str = ""
    has_front_matter: bool = False


@dataclass(frozen=True, slots=True)
class AgentManifest:
    """An agent's descriptor together with where it lives on disk."""

    agent_id: str
    descriptor: AgentDescriptor
    file_path: Path
    workspace_dir: Path
    body: str = ""
    source: ManifestSource = "derived"

    @property
    def provider(self) -> str:
        return self.descriptor.provider
