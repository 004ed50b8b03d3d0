"""In-memory execution repository."""

from __future__ import annotations

from typing import Dict, Optional

from .models import RegistryEntry
from .repository import ExecutionRepository


class InMemoryExecutionRepository(ExecutionRepository):
    """Simple in-memory store for tests and single-process use."""

    def __init__(self) -> None:
        self._checkpoints: Dict[str, str] = {}
        self._entries: Dict[str, RegistryEntry] = {}

    async def save_checkpoint(self, execution_id: str, payload: str) -> None:
        self._checkpoints[execution_id] = payload

    async def load_checkpoint(self, execution_id: str) -> Optional[str]:
        return self._checkpoints.get(execution_id)

    async def delete_checkpoint(self, execution_id: str) -> None:
        self._checkpoints.pop(execution_id, None)

    async def upsert_entry(self, entry: RegistryEntry) -> None:
        self._entries[entry.execution_id] = entry.model_copy(deep=True)

    async def get_entry(self, execution_id: str) -> Optional[RegistryEntry]:
        entry = self._entries.get(execution_id)
        return entry.model_copy(deep=True) if entry else None

    async def list_entries(self) -> list[RegistryEntry]:
        return [entry.model_copy(deep=True) for entry in self._entries.values()]

    async def delete_entry(self, execution_id: str) -> None:
        self._entries.pop(execution_id, None)
