"""Base event bus interface."""

from __future__ import annotations

import abc
from typing import AsyncIterator, List, Optional

from .models import WorkflowEvent


class BaseEventBus(metaclass=abc.ABCMeta):
    """Per-execution publish/subscribe with fan-out to every subscriber."""

    async def connect(self) -> None:
        """Open connection to the backend (no-op by default)."""
        pass

    async def disconnect(self) -> None:
        """Close connection to the backend (no-op by default)."""
        pass

    @abc.abstractmethod
    async def publish(self, event: WorkflowEvent) -> None:
        """Deliver ``event`` to every subscriber of its execution."""
        raise NotImplementedError

    @abc.abstractmethod
    def subscribe(
        self,
        execution_id: str,
        keepalive_interval: Optional[float] = None,
        replay: bool = True,
    ) -> AsyncIterator[WorkflowEvent]:
        """Yield events of one execution in order.

        Args:
            execution_id: Execution to follow
            keepalive_interval: Seconds of silence after which a keep-alive
                event is yielded. ``None`` disables keep-alives.
            replay: Yield the retained backlog before live events.

        The iterator ends after a terminal event.
        """
        raise NotImplementedError

    async def backlog(self, execution_id: str) -> List[WorkflowEvent]:
        """Retained events of ``execution_id`` in order (none by default)."""
        return []

    async def clear(self, execution_id: str) -> None:
        """Drop retained events for ``execution_id`` (no-op by default)."""
        pass
