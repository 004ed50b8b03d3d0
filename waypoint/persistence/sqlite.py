"""SQLite implementation of the execution repository."""

from __future__ import annotations

import asyncio
import sqlite3
from pathlib import Path
from typing import Any, Optional

from .models import RegistryEntry
from .repository import ExecutionRepository


class SQLiteExecutionRepository(ExecutionRepository):
    """Persist checkpoints and the execution index using SQLite."""

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        cur = self._conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS checkpoints (
                execution_id TEXT PRIMARY KEY,
                payload TEXT NOT NULL,
                saved_at TEXT DEFAULT CURRENT_TIMESTAMP
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS executions (
                execution_id TEXT PRIMARY KEY,
                owner_id TEXT NOT NULL,
                status TEXT NOT NULL,
                created_at TEXT NOT NULL,
                entry TEXT NOT NULL
            )
            """
        )
        cur.execute("CREATE INDEX IF NOT EXISTS idx_executions_owner ON executions (owner_id)")
        self._conn.commit()

    # ------------------------------------------------------------------
    # Helper methods
    def _execute(self, query: str, *params: Any) -> None:
        with self._conn:
            self._conn.execute(query, params)

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        cur = self._conn.cursor()
        cur.execute(query, params)
        return cur.fetchone()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        cur = self._conn.cursor()
        cur.execute(query, params)
        return cur.fetchall()

    # ------------------------------------------------------------------
    # Repository API
    async def save_checkpoint(self, execution_id: str, payload: str) -> None:
        await asyncio.to_thread(
            self._execute,
            """
            INSERT INTO checkpoints (execution_id, payload, saved_at)
            VALUES (?, ?, CURRENT_TIMESTAMP)
            ON CONFLICT(execution_id) DO UPDATE
            SET payload = excluded.payload, saved_at = excluded.saved_at
            """,
            execution_id,
            payload,
        )

    async def load_checkpoint(self, execution_id: str) -> Optional[str]:
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT payload FROM checkpoints WHERE execution_id = ?",
            execution_id,
        )
        return row["payload"] if row else None

    async def delete_checkpoint(self, execution_id: str) -> None:
        await asyncio.to_thread(
            self._execute, "DELETE FROM checkpoints WHERE execution_id = ?", execution_id
        )

    async def upsert_entry(self, entry: RegistryEntry) -> None:
        await asyncio.to_thread(
            self._execute,
            """
            INSERT INTO executions (execution_id, owner_id, status, created_at, entry)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(execution_id) DO UPDATE
            SET owner_id = excluded.owner_id, status = excluded.status, entry = excluded.entry
            """,
            entry.execution_id,
            entry.owner_id,
            entry.status.value,
            entry.created_at.isoformat(),
            entry.model_dump_json(),
        )

    async def get_entry(self, execution_id: str) -> Optional[RegistryEntry]:
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT entry FROM executions WHERE execution_id = ?",
            execution_id,
        )
        return RegistryEntry.model_validate_json(row["entry"]) if row else None

    async def list_entries(self) -> list[RegistryEntry]:
        rows = await asyncio.to_thread(
            self._fetchall, "SELECT entry FROM executions ORDER BY created_at DESC"
        )
        return [RegistryEntry.model_validate_json(row["entry"]) for row in rows]

    async def delete_entry(self, execution_id: str) -> None:
        await asyncio.to_thread(
            self._execute, "DELETE FROM executions WHERE execution_id = ?", execution_id
        )

    def close(self) -> None:
        self._conn.close()
