"""Per-pass collaborators, passed explicitly instead of read from globals."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from pathlib import Path

from .client import ClusterClient
from .config import Config


@dataclass(frozen=True)
class ReconcileContext:
    """Shared, read-only state for one reconciliation target.

    The client is shared by every worker; the only thing anyone may signal
    through the context is cancellation.
    """

    config: Config
    client: ClusterClient
    working_dir: Path = field(default_factory=Path.cwd)
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def cancel(self) -> None:
        """Stop new actions from starting; in-flight calls run to completion."""
        self.cancel_event.set()
