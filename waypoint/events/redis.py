"""Redis event bus for cross-process streaming."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator, List, Optional

try:
    import redis.asyncio as redis
except ImportError:
    redis = None

from ..constants import DEFAULT_EVENT_BACKLOG
from .base import BaseEventBus
from .models import WorkflowEvent

logger = logging.getLogger(__name__)


class RedisEventBus(BaseEventBus):
    """Publishes over Redis pub/sub and keeps a capped backlog list per execution."""

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: Optional[str] = None,
        backlog_size: int = DEFAULT_EVENT_BACKLOG,
        backlog_ttl: float = 24 * 3600,
    ) -> None:
        if redis is None:
            raise ImportError("redis package is required for RedisEventBus")

        self.host = host
        self.port = port
        self.db = db
        self.password = password
        self.backlog_size = backlog_size
        self.backlog_ttl = backlog_ttl
        self._redis: Optional[Any] = None

    @staticmethod
    def channel(execution_id: str) -> str:
        return f"waypoint:events:{execution_id}"

    @staticmethod
    def backlog_key(execution_id: str) -> str:
        return f"waypoint:events-log:{execution_id}"

    async def connect(self) -> None:
        """Connect to Redis."""
        self._redis = redis.Redis(
            host=self.host,
            port=self.port,
            db=self.db,
            password=self.password,
            decode_responses=True,
        )
        await self._redis.ping()

    async def disconnect(self) -> None:
        """Disconnect from Redis."""
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    async def publish(self, event: WorkflowEvent) -> None:
        if not self._redis:
            await self.connect()

        payload = event.to_json()
        if self.backlog_size:
            key = self.backlog_key(event.execution_id)
            await self._redis.rpush(key, payload)
            await self._redis.ltrim(key, -self.backlog_size, -1)
            await self._redis.expire(key, max(int(self.backlog_ttl), 1))
        await self._redis.publish(self.channel(event.execution_id), payload)

    async def subscribe(
        self,
        execution_id: str,
        keepalive_interval: Optional[float] = None,
        replay: bool = True,
    ) -> AsyncIterator[WorkflowEvent]:
        if not self._redis:
            await self.connect()

        pubsub = self._redis.pubsub()
        await pubsub.subscribe(self.channel(execution_id))
        loop = asyncio.get_running_loop()
        last_sequence = -1
        try:
            if replay:
                for raw in await self._redis.lrange(self.backlog_key(execution_id), 0, -1):
                    event = WorkflowEvent.from_json(raw)
                    last_sequence = max(last_sequence, event.sequence)
                    yield event
                    if event.is_terminal:
                        return

            last_activity = loop.time()
            while True:
                message = await pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
                if message is None:
                    if keepalive_interval and loop.time() - last_activity >= keepalive_interval:
                        last_activity = loop.time()
                        yield WorkflowEvent.keepalive(execution_id)
                    continue
                try:
                    event = WorkflowEvent.from_json(message["data"])
                except ValueError as e:
                    logger.warning(f"Failed to parse event for {execution_id}: {e}")
                    continue
                # Skip live copies of events already delivered from the backlog.
                if event.sequence <= last_sequence:
                    continue
                last_sequence = event.sequence
                last_activity = loop.time()
                yield event
                if event.is_terminal:
                    return
        finally:
            await pubsub.unsubscribe(self.channel(execution_id))
            await pubsub.aclose()

    async def backlog(self, execution_id: str) -> List[WorkflowEvent]:
        if not self._redis:
            await self.connect()
        raw_events = await self._redis.lrange(self.backlog_key(execution_id), 0, -1)
        return [WorkflowEvent.from_json(raw) for raw in raw_events]

    async def clear(self, execution_id: str) -> None:
        if not self._redis:
            await self.connect()
        await self._redis.delete(self.backlog_key(execution_id))
