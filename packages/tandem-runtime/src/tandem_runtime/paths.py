from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from tandem_core.config import TandemConfig


@dataclass(frozen=True, slots=True)
class TandemPaths:
    """On-disk layout under the tandem home directory."""

    home_dir: Path

    @classmethod
    def from_config(cls, config: TandemConfig) -> TandemPaths:
        return cls(home_dir=config.paths.home_dir)

    @property
    def workspaces_dir(self) -> Path:
        return self.home_dir / "workspaces"

    @property
    def agents_dir(self) -> Path:
        return self.home_dir / "agents"

    @property
    def runs_dir(self) -> Path:
        return self.home_dir / "runs"

    def ensure(self) -> None:
        for directory in (self.workspaces_dir, self.agents_dir, self.runs_dir):
            directory.mkdir(parents=True, exist_ok=True)
