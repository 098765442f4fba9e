"""Agent registry: the only writer of agent manifests."""
from __future__ import annotations

import dataclasses
import shutil
from collections.abc import Callable, Iterable
from typing import TYPE_CHECKING, Any

from tandem_core.errors import AgentNotFoundError, AgentValidationError
from tandem_core.logging import get_logger

from tandem_agents.loader import ManifestLoader
from tandem_agents.parser import format_manifest, normalize_agent_id, normalize_metadata
from tandem_agents.types import DEFAULT_AGENT_ID, AgentManifest, DelegationPolicy
from tandem_agents.validator import AgentValidator

if TYPE_CHECKING:
    from pathlib import Path

    from tandem_agents.types import AgentDescriptor

logger = get_logger("agents.registry")

_DESCRIPTOR_FIELDS = frozenset(
    f.name for f in dataclasses.fields(DelegationPolicy)
) | {"name", "description", "provider", "discoverable", "tags", "priority"}


class AgentRegistry:
    """Lists, creates, edits and removes agents under a workspaces directory.

    The configured default agent always exists: it is listed even when its
    workspace has not been written yet, and it cannot be removed.
    """

    def __init__(
        self,
        workspaces_dir: Path,
        *,
        default_provider: str,
        default_agent_id: str = DEFAULT_AGENT_ID,
        known_providers: Callable[[], Iterable[str]] | None = None,
    ) -> None:
        self._default_agent_id = normalize_agent_id(default_agent_id)
        self._default_provider = default_provider
        self._known_providers = known_providers
        self._loader = ManifestLoader(
            workspaces_dir,
            default_provider=default_provider,
            default_agent_id=self._default_agent_id,
        )

    @property
    def default_agent_id(self) -> str:
        return self._default_agent_id

    @property
    def loader(self) -> ManifestLoader:
        return self._loader

    def has_agent(self, agent_id: str) -> bool:
        normalized = normalize_agent_id(agent_id)
        return (
            normalized == self._default_agent_id
            or self._loader.workspace_dir(normalized).is_dir()
        )

    def list_manifests(self) -> list[AgentManifest]:
        manifests = {m.agent_id: m for m in self._loader.discover()}
        if self._default_agent_id not in manifests:
            manifests[self._default_agent_id] = self._loader.load(self._default_agent_id)
        return [manifests[key] for key in sorted(manifests)]

    def get_manifest(self, agent_id: str) -> AgentManifest:
        normalized = normalize_agent_id(agent_id)
        if not normalized or not self.has_agent(normalized):
            msg = f"Agent '{agent_id}' is not registered"
            raise AgentNotFoundError(msg)
        return self._loader.load(normalized)

    def ensure_default_agent(self) -> AgentManifest:
        """Write the default agent's manifest when it does not exist yet."""
        manifest = self._loader.load(self._default_agent_id)
        if not manifest.file_path.exists():
            self._write(manifest.descriptor, manifest.body)
            manifest = self._loader.load(self._default_agent_id)
        return manifest

    def create_agent(
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
        """Create an agent workspace and manifest.

        Creating an agent that already exists returns its current manifest
        unchanged.
        """
        agent_id = normalize_agent_id(name)
        if not agent_id:
            msg = f"Cannot derive an agent id from {name!r}"
            raise AgentValidationError(msg)
        if self._loader.manifest_path(agent_id).exists():
            logger.info("Agent '%s' already exists", agent_id)
            return self._loader.load(agent_id)

        data: dict[str, Any] = {"tags": list(tags), "discoverable": discoverable}
        if description:
            data["description"] = description
        if provider:
            data["provider"] = provider.strip().lower()
        if priority is not None:
            data["priority"] = priority
        delegation: dict[str, bool] = {"can_receive": can_receive}
        if can_delegate is not None:
            delegation["can_delegate"] = can_delegate
        data["delegation"] = delegation

        descriptor = normalize_metadata(
            agent_id,
            self._default_provider,
            data,
            display_name=name.strip(),
            default_agent_id=self._default_agent_id,
        )
        self._write(descriptor, instructions)
        logger.info("Created agent '%s' (provider=%s)", agent_id, descriptor.provider)
        return self._loader.load(agent_id)

    def update_metadata(self, agent_id: str, **changes: Any) -> AgentManifest:
        """Apply field changes to an agent's manifest and rewrite it.

        Accepts descriptor fields plus ``can_receive`` / ``can_delegate``.
        """
        unknown = set(changes) - _DESCRIPTOR_FIELDS
        if unknown:
            msg = f"Unknown agent fields: {', '.join(sorted(unknown))}"
            raise AgentValidationError(msg)

        manifest = self.get_manifest(agent_id)
        descriptor = manifest.descriptor
        delegation = dataclasses.replace(
            descriptor.delegation,
            **{k: changes.pop(k) for k in ("can_receive", "can_delegate") if k in changes},
        )
        if "tags" in changes:
            changes["tags"] = tuple(
                t for t in (normalize_agent_id(tag) for tag in changes["tags"]) if t
            )
        if "provider" in changes:
            changes["provider"] = str(changes["provider"]).strip().lower()
        updated = dataclasses.replace(descriptor, delegation=delegation, **changes)

        self._write(updated, manifest.body)
        logger.info("Updated agent '%s'", updated.id)
        return self._loader.load(updated.id)

    def set_provider(self, agent_id: str, provider_id: str) -> AgentManifest:
        return self.update_metadata(agent_id, provider=provider_id)

    def remove_agent(self, agent_id: str) -> None:
        """Delete an agent's workspace. The default agent cannot be removed."""
        normalized = normalize_agent_id(agent_id)
        if normalized == self._default_agent_id:
            msg = f"The default agent '{normalized}' cannot be removed"
            raise AgentValidationError(msg)
        workspace = self._loader.workspace_dir(normalized)
        if not workspace.is_dir():
            msg = f"Agent '{agent_id}' is not registered"
            raise AgentNotFoundError(msg)
        shutil.rmtree(workspace)
        logger.info("Removed agent '%s'", normalized)

    def _write(self, descriptor: AgentDescriptor, body: str) -> None:
        known = self._known_providers() if self._known_providers else None
        AgentValidator(known).validate_strict(descriptor)
        path = self._loader.manifest_path(descriptor.id)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(".md.tmp")
        tmp.write_text(format_manifest(descriptor, body), encoding="utf-8")
        tmp.replace(path)
