"""PostgreSQL implementation of the execution repository."""

from __future__ import annotations

from typing import Optional

import asyncpg

from .models import RegistryEntry
from .repository import ExecutionRepository


class PostgresExecutionRepository(ExecutionRepository):
    """Persist checkpoints and the execution index using PostgreSQL."""

    def __init__(self, dsn: str):
        self._dsn = dsn
        self._initialized = False

    async def _connect(self) -> asyncpg.Connection:
        conn = await asyncpg.connect(self._dsn)
        if not self._initialized:
            await self._ensure_schema(conn)
            self._initialized = True
        return conn

    async def _ensure_schema(self, conn: asyncpg.Connection) -> None:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS execution_checkpoints (
                execution_id TEXT PRIMARY KEY,
                payload TEXT NOT NULL,
                saved_at TIMESTAMPTZ NOT NULL DEFAULT now()
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS execution_index (
                execution_id TEXT PRIMARY KEY,
                owner_id TEXT NOT NULL,
                status TEXT NOT NULL,
                created_at TIMESTAMPTZ NOT NULL,
                entry JSONB NOT NULL
            )
            """
        )
        await conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_execution_index_owner ON execution_index (owner_id)"
        )

    # ------------------------------------------------------------------
    async def save_checkpoint(self, execution_id: str, payload: str) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                """
                INSERT INTO execution_checkpoints (execution_id, payload, saved_at)
                VALUES ($1, $2, now())
                ON CONFLICT (execution_id) DO UPDATE
                SET payload = EXCLUDED.payload, saved_at = EXCLUDED.saved_at
                """,
                execution_id,
                payload,
            )
        finally:
            await conn.close()

    async def load_checkpoint(self, execution_id: str) -> Optional[str]:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                "SELECT payload FROM execution_checkpoints WHERE execution_id = $1",
                execution_id,
            )
        finally:
            await conn.close()
        return row["payload"] if row else None

    async def delete_checkpoint(self, execution_id: str) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                "DELETE FROM execution_checkpoints WHERE execution_id = $1", execution_id
            )
        finally:
            await conn.close()

    async def upsert_entry(self, entry: RegistryEntry) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                """
                INSERT INTO execution_index (execution_id, owner_id, status, created_at, entry)
                VALUES ($1, $2, $3, $4, $5)
                ON CONFLICT (execution_id) DO UPDATE
                SET owner_id = EXCLUDED.owner_id, status = EXCLUDED.status, entry = EXCLUDED.entry
                """,
                entry.execution_id,
                entry.owner_id,
                entry.status.value,
                entry.created_at,
                entry.model_dump_json(),
            )
        finally:
            await conn.close()

    async def get_entry(self, execution_id: str) -> Optional[RegistryEntry]:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                "SELECT entry FROM execution_index WHERE execution_id = $1", execution_id
            )
        finally:
            await conn.close()
        return RegistryEntry.model_validate_json(row["entry"]) if row else None

    async def list_entries(self) -> list[RegistryEntry]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                "SELECT entry FROM execution_index ORDER BY created_at DESC"
            )
        finally:
            await conn.close()
        return [RegistryEntry.model_validate_json(r["entry"]) for r in rows]

    async def delete_entry(self, execution_id: str) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                "DELETE FROM execution_index WHERE execution_id = $1", execution_id
            )
        finally:
            await conn.close()
