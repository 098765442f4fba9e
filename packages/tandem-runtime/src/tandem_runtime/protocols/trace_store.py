from __future__ import annotations

from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from pathlib import Path

    from tandem_runtime.orchestration.trace import RunTrace


@runtime_checkable
class TraceStore(Protocol):
    """Durable storage for orchestration run traces."""

    async def write(self, trace: RunTrace) -> Path: ...
    async def load(self, run_id: str) -> dict[str, Any]: ...
