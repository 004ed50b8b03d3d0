"""Index of executions by id and owner, backed by a durable repository."""

from __future__ import annotations

import logging
from collections import defaultdict
from typing import Any, Dict, List, Optional, Set

from .models import ExecutionStatus, utcnow
from .persistence import ExecutionRepository, RegistryEntry

logger = logging.getLogger(__name__)


class ExecutionRegistry:
    """Tracks every execution for listing, resuming and crash recovery.

    Construct one per process and hand it to the engine and to whatever
    serves the external API. Reads are served from the in-memory index;
    every mutation is written through to the repository.
    """

    def __init__(self, repository: ExecutionRepository) -> None:
        self._repository = repository
        self._entries: Dict[str, RegistryEntry] = {}
        self._by_owner: Dict[str, Set[str]] = defaultdict(set)
        self.loaded = False

    async def load(self) -> int:
        """Rebuild the in-memory index from the repository."""
        self._entries.clear()
        self._by_owner.clear()
        for entry in await self._repository.list_entries():
            self._index(entry)
        self.loaded = True
        logger.info(f"Execution registry loaded with {len(self._entries)} entries")
        return len(self._entries)

    def _index(self, entry: RegistryEntry) -> None:
        self._entries[entry.execution_id] = entry
        self._by_owner[entry.owner_id].add(entry.execution_id)

    async def register(
        self,
        execution_id: str,
        owner_id: str,
        workflow_id: str,
        workflow_name: str = "",
        status: ExecutionStatus = ExecutionStatus.PENDING,
    ) -> RegistryEntry:
        entry = RegistryEntry(
            execution_id=execution_id,
            owner_id=owner_id,
            workflow_id=workflow_id,
            workflow_name=workflow_name,
            status=status,
        )
        await self._repository.upsert_entry(entry)
        self._index(entry)
        logger.debug(f"Registered execution {execution_id} for owner {owner_id}")
        return entry

    async def update(
        self,
        execution_id: str,
        status: Optional[ExecutionStatus] = None,
        **fields: Any,
    ) -> Optional[RegistryEntry]:
        """Apply changes to an entry; returns ``None`` for unknown ids."""
        current = self._entries.get(execution_id)
        if current is None:
            logger.warning(f"Registry update for unknown execution {execution_id}")
            return None
        changes: Dict[str, Any] = dict(fields)
        changes["updated_at"] = utcnow()
        if status is not None:
            changes["status"] = status
            if status.is_terminal:
                changes.setdefault("completed_at", changes["updated_at"])
                changes.setdefault("pending_checkpoint_id", None)
        entry = current.model_copy(update=changes)
        await self._repository.upsert_entry(entry)
        self._index(entry)
        return entry

    def get(self, execution_id: str) -> Optional[RegistryEntry]:
        return self._entries.get(execution_id)

    def list_by_owner(
        self,
        owner_id: str,
        status: Optional[ExecutionStatus] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[RegistryEntry]:
        """Entries of one owner, newest first, optionally filtered and paginated."""
        entries = [self._entries[eid] for eid in self._by_owner.get(owner_id, ())]
        if status is not None:
            entries = [entry for entry in entries if entry.status == status]
        entries.sort(key=lambda entry: entry.created_at, reverse=True)
        entries = entries[offset:]
        return entries[:limit] if limit is not None else entries

    def active(self) -> List[RegistryEntry]:
        return [
            entry
            for entry in self._entries.values()
            if entry.status in (ExecutionStatus.PENDING, ExecutionStatus.RUNNING)
        ]

    def pending_checkpoints(self, owner_id: str) -> List[RegistryEntry]:
        """Paused executions of ``owner_id`` that are waiting on a human response."""
        return [
            entry
            for entry in self.list_by_owner(owner_id, status=ExecutionStatus.PAUSED)
            if entry.pending_checkpoint_id
        ]

    async def remove(self, execution_id: str) -> bool:
        entry = self._entries.pop(execution_id, None)
        if entry is None:
            return False
        self._by_owner[entry.owner_id].discard(execution_id)
        await self._repository.delete_entry(execution_id)
        return True

    async def recover_interrupted(self) -> List[RegistryEntry]:
        """Fail every entry left ``running`` or ``pending`` by a dead process.

        Paused entries are untouched; their checkpoints are clean suspension
        points and stay resumable.
        """
        if not self.loaded:
            await self.load()
        recovered: List[RegistryEntry] = []
        for entry in list(self._entries.values()):
            if entry.status not in (ExecutionStatus.RUNNING, ExecutionStatus.PENDING):
                continue
            updated = await self.update(
                entry.execution_id,
                status=ExecutionStatus.FAILED,
                error_code="INTERRUPTED",
                error_node_id=entry.current_node,
            )
            if updated is not None:
                recovered.append(updated)
                logger.warning(
                    f"Execution {entry.execution_id} was {entry.status.value} at startup; marked failed"
                )
        return recovered

    def stats(self) -> Dict[str, Any]:
        by_status: Dict[str, int] = defaultdict(int)
        for entry in self._entries.values():
            by_status[entry.status.value] += 1
        return {
            "total": len(self._entries),
            "owners": len([owner for owner, ids in self._by_owner.items() if ids]),
            "by_status": dict(by_status),
        }


__all__ = ["ExecutionRegistry"]
