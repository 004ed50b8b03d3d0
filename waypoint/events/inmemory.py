"""In-process event bus."""

from __future__ import annotations

import asyncio
from collections import defaultdict, deque
from typing import AsyncIterator, Deque, Dict, List, Optional

from ..constants import DEFAULT_EVENT_BACKLOG, DEFAULT_EVENT_BACKLOG_TTL
from .base import BaseEventBus
from .models import WorkflowEvent


class InMemoryEventBus(BaseEventBus):
    """Fans events out to one asyncio queue per subscriber.

    The backlog of an execution is dropped ``backlog_ttl`` seconds after
    its terminal event.
    """

    def __init__(
        self,
        backlog_size: int = DEFAULT_EVENT_BACKLOG,
        backlog_ttl: float = DEFAULT_EVENT_BACKLOG_TTL,
    ) -> None:
        self.backlog_ttl = backlog_ttl
        self._subscribers: Dict[str, List[asyncio.Queue]] = defaultdict(list)
        self._backlog: Dict[str, Deque[WorkflowEvent]] = defaultdict(
            lambda: deque(maxlen=backlog_size)
        )
        self._lock = asyncio.Lock()

    async def publish(self, event: WorkflowEvent) -> None:
        async with self._lock:
            self._backlog[event.execution_id].append(event)
            for queue in self._subscribers.get(event.execution_id, []):
                queue.put_nowait(event)
        if event.is_terminal:
            asyncio.get_running_loop().call_later(
                self.backlog_ttl, self._expire, event.execution_id
            )

    async def subscribe(
        self,
        execution_id: str,
        keepalive_interval: Optional[float] = None,
        replay: bool = True,
    ) -> AsyncIterator[WorkflowEvent]:
        queue: asyncio.Queue = asyncio.Queue()
        async with self._lock:
            backlog = list(self._backlog.get(execution_id, ())) if replay else []
            self._subscribers[execution_id].append(queue)
        try:
            for event in backlog:
                yield event
                if event.is_terminal:
                    return
            while True:
                try:
                    event = await asyncio.wait_for(queue.get(), timeout=keepalive_interval)
                except asyncio.TimeoutError:
                    yield WorkflowEvent.keepalive(execution_id)
                    continue
                yield event
                if event.is_terminal:
                    return
        finally:
            subscribers = self._subscribers.get(execution_id, [])
            if queue in subscribers:
                subscribers.remove(queue)
            if not subscribers:
                self._subscribers.pop(execution_id, None)

    async def backlog(self, execution_id: str) -> List[WorkflowEvent]:
        async with self._lock:
            return list(self._backlog.get(execution_id, ()))

    def subscriber_count(self, execution_id: str) -> int:
        return len(self._subscribers.get(execution_id, []))

    def retained(self) -> List[str]:
        """Execution ids that still hold a backlog or subscribers."""
        return sorted(set(self._backlog) | set(self._subscribers))

    def _expire(self, execution_id: str) -> None:
        self._backlog.pop(execution_id, None)
        if not self._subscribers.get(execution_id):
            self._subscribers.pop(execution_id, None)

    async def clear(self, execution_id: str) -> None:
        async with self._lock:
            self._backlog.pop(execution_id, None)
