"""Lifecycle event contract streamed to execution subscribers."""

from __future__ import annotations

import json
import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Mapping, Optional

from pydantic import BaseModel, Field

from ..constants import EVENT_VALUE_LIMIT
from ..models import utcnow


class EventType(str, Enum):
    STARTED = "started"
    NODE_STARTED = "node.started"
    NODE_COMPLETED = "node.completed"
    NODE_FAILED = "node.failed"
    PAUSED = "paused"
    RESUMED = "resumed"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    CHECKPOINT_SAVED = "checkpoint.saved"
    KEEPALIVE = "keepalive"


TERMINAL_EVENTS = frozenset({EventType.COMPLETED, EventType.FAILED, EventType.CANCELLED})


class WorkflowEvent(BaseModel):
    """One entry of an execution's ordered event sequence."""

    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    execution_id: str
    type: EventType
    sequence: int = 0
    node_id: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)
    data: Dict[str, Any] = Field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.type in TERMINAL_EVENTS

    @classmethod
    def keepalive(cls, execution_id: str) -> "WorkflowEvent":
        return cls(execution_id=execution_id, type=EventType.KEEPALIVE, sequence=-1)

    def to_json(self) -> str:
        return self.model_dump_json()

    @classmethod
    def from_json(cls, data: str | bytes) -> "WorkflowEvent":
        return cls.model_validate_json(data)


def _type_name(value: Any) -> str:
    if isinstance(value, dict):
        return "object"
    if isinstance(value, (list, tuple)):
        return "array"
    if isinstance(value, str):
        return "string"
    return type(value).__name__


def summarize_value(value: Any, limit: int = EVENT_VALUE_LIMIT) -> Any:
    """Replace values whose JSON form exceeds ``limit`` characters with a summary."""
    encoded = json.dumps(value, default=str, ensure_ascii=False)
    if len(encoded) <= limit:
        return value
    return {
        "_truncated": True,
        "_type": _type_name(value),
        "_size": len(encoded),
        "_preview": encoded[:200],
    }


def sanitize_payload(data: Optional[Mapping[str, Any]], limit: int = EVENT_VALUE_LIMIT) -> Dict[str, Any]:
    return {key: summarize_value(value, limit) for key, value in (data or {}).items()}
