"""Agent manifest discovery and loading from the workspaces directory."""
from __future__ import annotations

from pathlib import Path

from tandem_core.logging import get_logger

from tandem_agents.parser import normalize_agent_id, normalize_metadata, parse_manifest
from tandem_agents.types import DEFAULT_AGENT_ID, MANIFEST_FILENAME, AgentManifest

logger = get_logger("agents.loader")


class ManifestLoader:
    """Reads ``<workspaces>/<agent-id>/AGENTS.md`` files.

    Every directory directly under the workspaces root is an agent
    workspace. The manifest inside it is optional: a workspace without one
    still yields an agent whose metadata is derived from defaults.
    """

    def __init__(
        self,
        workspaces_dir: Path,
        *,
        default_provider: str,
        default_agent_id: str = DEFAULT_AGENT_ID,
    ) -> None:
        self._workspaces_dir = Path(workspaces_dir)
        self._default_provider = default_provider
        self._default_agent_id = normalize_agent_id(default_agent_id)

    @property
    def workspaces_dir(self) -> Path:
        return self._workspaces_dir

    def workspace_dir(self, agent_id: str) -> Path:
        return self._workspaces_dir / normalize_agent_id(agent_id)

    def manifest_path(self, agent_id: str) -> Path:
        return self.workspace_dir(agent_id) / MANIFEST_FILENAME

    def discover(self) -> list[AgentManifest]:
        """Load every agent workspace, sorted by id.

        Workspaces that fail to load are logged and skipped.
        """
        if not self._workspaces_dir.is_dir():
            logger.debug("Skipping non-existent path: %s", self._workspaces_dir)
            return []

        manifests: list[AgentManifest] = []
        for workspace in sorted(self._workspaces_dir.iterdir()):
            if not workspace.is_dir() or not normalize_agent_id(workspace.name):
                continue
            try:
                manifests.append(self.load(workspace.name))
            except (OSError, UnicodeDecodeError):
                logger.warning(
                    "Failed to load agent manifest from %s",
                    workspace,
                    exc_info=True,
                )

        logger.debug("Discovered %d agent manifest(s)", len(manifests))
        return manifests

    def load(self, agent_id: str) -> AgentManifest:
        """Load one agent; a missing manifest file yields derived metadata."""
        normalized = normalize_agent_id(agent_id)
        path = self.manifest_path(normalized)

        if path.is_file():
            parsed = parse_manifest(path.read_text(encoding="utf-8"))
        else:
            parsed = None

        data = parsed.data if parsed else {}
        declared_id = data.get("id")
        if declared_id and declared_id != normalized:
            logger.warning(
                "Manifest %s declares id '%s'; using directory id '%s'",
                path,
                declared_id,
                normalized,
            )

        descriptor = normalize_metadata(
            normalized,
            self._default_provider,
            data,
            default_agent_id=self._default_agent_id,
        )
        return AgentManifest(
            agent_id=normalized,
            descriptor=descriptor,
            file_path=path,
            workspace_dir=self.workspace_dir(normalized),
            body=parsed.body if parsed else "",
            source="frontmatter" if parsed and parsed.has_front_matter else "derived",
        )
