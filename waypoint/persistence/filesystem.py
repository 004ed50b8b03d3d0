"""JSON-file implementation of the execution repository.

Layout under ``root``::

    <execution_id>/checkpoint.json
    <execution_id>/entry.json

Every write goes to a temporary file in the same directory and is moved into
place with ``os.replace`` so readers only ever see a complete snapshot.
"""

from __future__ import annotations

import asyncio
import os
import re
import shutil
import tempfile
from pathlib import Path
from typing import Optional

from .models import RegistryEntry
from .repository import ExecutionRepository

_SAFE_ID = re.compile(r"^[A-Za-z0-9._-]+$")
CHECKPOINT_FILE = "checkpoint.json"
ENTRY_FILE = "entry.json"


def _atomic_write(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(content)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_path, path)
    except BaseException:
        if os.path.exists(tmp_path):
            os.unlink(tmp_path)
        raise


def _read(path: Path) -> Optional[str]:
    try:
        return path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return None


class FileExecutionRepository(ExecutionRepository):
    """Persist checkpoints and index entries as JSON files."""

    def __init__(self, root: str | Path):
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def _dir(self, execution_id: str) -> Path:
        if not _SAFE_ID.match(execution_id):
            raise ValueError(f"Invalid execution id: {execution_id!r}")
        return self.root / execution_id

    def _remove(self, execution_id: str, name: str) -> None:
        directory = self._dir(execution_id)
        (directory / name).unlink(missing_ok=True)
        if directory.exists() and not any(directory.iterdir()):
            shutil.rmtree(directory, ignore_errors=True)

    # ------------------------------------------------------------------
    # Repository API
    async def save_checkpoint(self, execution_id: str, payload: str) -> None:
        await asyncio.to_thread(_atomic_write, self._dir(execution_id) / CHECKPOINT_FILE, payload)

    async def load_checkpoint(self, execution_id: str) -> Optional[str]:
        return await asyncio.to_thread(_read, self._dir(execution_id) / CHECKPOINT_FILE)

    async def delete_checkpoint(self, execution_id: str) -> None:
        await asyncio.to_thread(self._remove, execution_id, CHECKPOINT_FILE)

    async def upsert_entry(self, entry: RegistryEntry) -> None:
        await asyncio.to_thread(
            _atomic_write, self._dir(entry.execution_id) / ENTRY_FILE, entry.model_dump_json()
        )

    async def get_entry(self, execution_id: str) -> Optional[RegistryEntry]:
        raw = await asyncio.to_thread(_read, self._dir(execution_id) / ENTRY_FILE)
        return RegistryEntry.model_validate_json(raw) if raw else None

    async def list_entries(self) -> list[RegistryEntry]:
        def _scan() -> list[str]:
            return [
                raw
                for raw in (_read(path) for path in self.root.glob(f"*/{ENTRY_FILE}"))
                if raw
            ]

        raws = await asyncio.to_thread(_scan)
        entries = [RegistryEntry.model_validate_json(raw) for raw in raws]
        return sorted(entries, key=lambda entry: entry.created_at, reverse=True)

    async def delete_entry(self, execution_id: str) -> None:
        await asyncio.to_thread(self._remove, execution_id, ENTRY_FILE)
