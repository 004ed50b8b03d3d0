"""Event bus factory and event contract."""

from __future__ import annotations

import os
from typing import Optional

from ..config import WaypointConfig, load_config
from .base import BaseEventBus
from .inmemory import InMemoryEventBus
from .models import (
    TERMINAL_EVENTS,
    EventType,
    WorkflowEvent,
    sanitize_payload,
    summarize_value,
)


def get_event_bus(
    backend: Optional[str] = None, config: Optional[WaypointConfig] = None
) -> BaseEventBus:
    """Factory function to get the configured event bus."""

    config = config or load_config()
    backend = (
        backend
        or os.getenv("WAYPOINT_EVENT_BACKEND")
        or config.events.backend
    ).lower()

    if backend == "inmemory":
        return InMemoryEventBus(
            backlog_size=config.events.backlog_size,
            backlog_ttl=config.events.backlog_ttl,
        )
    elif backend == "redis":
        from .redis import RedisEventBus

        redis_conf = config.events.redis
        return RedisEventBus(
            host=redis_conf.host,
            port=redis_conf.port,
            db=redis_conf.db,
            password=redis_conf.password,
            backlog_size=config.events.backlog_size,
            backlog_ttl=config.events.backlog_ttl,
        )
    else:
        raise ValueError(f"Unsupported event backend: {backend}")


__all__ = [
    "BaseEventBus",
    "EventType",
    "InMemoryEventBus",
    "TERMINAL_EVENTS",
    "WorkflowEvent",
    "get_event_bus",
    "sanitize_payload",
    "summarize_value",
]
