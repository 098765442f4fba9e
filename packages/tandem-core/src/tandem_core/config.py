from __future__ import annotations

import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from tandem_core.errors import ConfigError
from tandem_core.logging import get_logger

logger = get_logger("config")

RESET_MODES = ("daily", "idle", "never")


def _load_toml(path: Path) -> dict:
    """Load a TOML file, returning empty dict if missing or unreadable."""
    if not path.exists():
        return {}
    try:
        with open(path, "rb") as f:
            return tomllib.load(f)
    except (OSError, tomllib.TOMLDecodeError) as exc:
        logger.warning("Ignoring unreadable config %s: %s", path, exc)
        return {}


def _deep_merge(base: dict, override: dict) -> dict:
    """Merge override into base (1 level deep for TOML sections)."""
    merged = dict(base)
    for key, val in override.items():
        if (
            key in merged
            and isinstance(merged[key], dict)
            and isinstance(val, dict)
        ):
            merged[key] = {**merged[key], **val}
        else:
            merged[key] = val
    return merged


def _pick(section: dict, dc: type) -> dict:
    fields = dc.__dataclass_fields__
    return {k: v for k, v in section.items() if k in fields}


@dataclass(frozen=True, slots=True)
class PathsConfig:
    home: str = "~/.tandem"

    @property
    def home_dir(self) -> Path:
        return Path(self.home).expanduser()


@dataclass(frozen=True, slots=True)
class OrchestrationConfig:
    entry_agent: str = "orchestrator"
    max_delegation_depth: int = 8
    shared_notes_max_chars: int = 12_000
    recent_events_window: int = 10


@dataclass(frozen=True, slots=True)
class SessionsConfig:
    main_key: str = "main"
    context_max_chars: int = 12_000
    reset_mode: str = "daily"  # daily | idle | never
    reset_at_hour: int = 4
    idle_minutes: int | None = None
    compaction_enabled: bool = True
    compaction_trigger_messages: int = 80
    compaction_trigger_chars: int = 32_000
    compaction_keep_recent: int = 20
    summary_max_chars: int = 4_000


@dataclass(frozen=True, slots=True)
class ProviderSettings:
    timeout_seconds: float | None = None
    env: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class ProvidersConfig:
    default_provider: str = "codex"
    default_timeout_seconds: float = 600.0
    settings: dict[str, ProviderSettings] = field(default_factory=dict)

    def for_provider(self, provider_id: str) -> ProviderSettings:
        return self.settings.get(provider_id, ProviderSettings())

    def timeout_for(self, provider_id: str) -> float:
        timeout = self.for_provider(provider_id).timeout_seconds
        return self.default_timeout_seconds if timeout is None else timeout


@dataclass(frozen=True, slots=True)
class TandemConfig:
    """Top-level configuration, parsed from tandem.toml."""
    project_name: str = "tandem-project"
    paths: PathsConfig = field(default_factory=PathsConfig)
    orchestration: OrchestrationConfig = field(default_factory=OrchestrationConfig)
    sessions: SessionsConfig = field(default_factory=SessionsConfig)
    providers: ProvidersConfig = field(default_factory=ProvidersConfig)

    @classmethod
    def from_toml(
        cls, path: Path | str = "tandem.toml"
    ) -> TandemConfig:
        path = Path(path)
        raw = _load_toml(path)
        return cls._from_raw(raw)

    @classmethod
    def load(
        cls, project_dir: Path | str | None = None
    ) -> TandemConfig:
        """Load config with global → project layering.

        Resolution order (later wins):
        1. Built-in defaults
        2. ~/.tandem/config.toml (global)
        3. .tandem/config.toml or tandem.toml (project)
        """
        global_path = Path.home() / ".tandem" / "config.toml"

        project_dir = (
            Path.cwd() if project_dir is None else Path(project_dir)
        )

        project_path = project_dir / ".tandem" / "config.toml"
        if not project_path.exists():
            project_path = project_dir / "tandem.toml"

        global_raw = _load_toml(global_path)
        project_raw = _load_toml(project_path)
        merged = _deep_merge(global_raw, project_raw)

        return cls._from_raw(merged)

    @classmethod
    def _from_raw(cls, raw: dict) -> TandemConfig:
        """Build TandemConfig from a raw TOML dict."""
        sessions = SessionsConfig(**_pick(raw.get("sessions", {}), SessionsConfig))
        if sessions.reset_mode not in RESET_MODES:
            raise ConfigError(
                f"sessions.reset_mode must be one of {', '.join(RESET_MODES)}, "
                f"got {sessions.reset_mode!r}"
            )
        orchestration = OrchestrationConfig(
            **_pick(raw.get("orchestration", {}), OrchestrationConfig)
        )
        if orchestration.max_delegation_depth < 1:
            raise ConfigError("orchestration.max_delegation_depth must be at least 1")

        return cls(
            project_name=raw.get("project", {}).get(
                "name", "tandem-project"
            ),
            paths=PathsConfig(**_pick(raw.get("paths", {}), PathsConfig)),
            orchestration=orchestration,
            sessions=sessions,
            providers=_providers_from_raw(raw.get("providers", {})),
        )


def _providers_from_raw(section: dict[str, Any]) -> ProvidersConfig:
    """Split ``[providers]`` scalars from ``[providers.<id>]`` tables."""
    settings: dict[str, ProviderSettings] = {}
    scalars: dict[str, Any] = {}
    for key, value in section.items():
        if isinstance(value, dict):
            picked = _pick(value, ProviderSettings)
            env = picked.get("env", {})
            if not isinstance(env, dict):
                raise ConfigError(f"providers.{key}.env must be a table")
            picked["env"] = {str(k): str(v) for k, v in env.items()}
            settings[key.strip().lower()] = ProviderSettings(**picked)
        else:
            scalars[key] = value
    scalars.pop("settings", None)
    return ProvidersConfig(
        **_pick(scalars, ProvidersConfig), settings=settings
    )
