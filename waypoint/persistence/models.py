"""Data models for the persisted execution index."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field

from ..models import ExecutionStatus, utcnow


class RegistryEntry(BaseModel):
    """Lightweight index row for one execution.

    Kept apart from the checkpoint so listing executions never has to load
    full variable state.
    """

    execution_id: str
    owner_id: str
    workflow_id: str
    workflow_name: str = ""
    status: ExecutionStatus = ExecutionStatus.PENDING
    current_node: Optional[str] = None
    pending_checkpoint_id: Optional[str] = None
    error_code: Optional[str] = None
    error_node_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
