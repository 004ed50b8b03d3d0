"""Repository abstraction for checkpoints and the execution index."""

from __future__ import annotations

from typing import Optional, Protocol

from .models import RegistryEntry


class ExecutionRepository(Protocol):
    """Protocol for execution persistence backends.

    Checkpoints are opaque serialized payloads keyed by execution id. Saving
    one must atomically replace the previous payload for that id.
    """

    async def save_checkpoint(self, execution_id: str, payload: str) -> None:
        """Store ``payload`` as the only checkpoint of ``execution_id``."""

    async def load_checkpoint(self, execution_id: str) -> Optional[str]:
        """Return the latest checkpoint payload or ``None``."""

    async def delete_checkpoint(self, execution_id: str) -> None:
        """Remove the checkpoint if present."""

    async def upsert_entry(self, entry: RegistryEntry) -> None:
        """Insert or replace an index entry."""

    async def get_entry(self, execution_id: str) -> Optional[RegistryEntry]:
        """Return one index entry or ``None``."""

    async def list_entries(self) -> list[RegistryEntry]:
        """Return every index entry."""

    async def delete_entry(self, execution_id: str) -> None:
        """Remove an index entry if present."""
