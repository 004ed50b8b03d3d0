"""Execution-time models: status, state snapshot and creation options."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from .contracts import CheckpointMode, NodeStatus, PendingCheckpoint


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ExecutionStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (
            ExecutionStatus.COMPLETED,
            ExecutionStatus.FAILED,
            ExecutionStatus.CANCELLED,
        )


class NodeOutput(BaseModel):
    """Entry in the per-node output map."""

    status: NodeStatus
    output: Any = None
    branch: Optional[str] = None
    error: Optional[Dict[str, Any]] = None
    iteration: int = 1
    completed_at: datetime = Field(default_factory=utcnow)


class StepRecord(BaseModel):
    """One executed step, kept in the execution history."""

    step: int
    node_id: str
    node_type: str
    status: NodeStatus
    attempts: int = 1
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class ExecutionErrorInfo(BaseModel):
    code: str
    message: str
    node_id: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)


class ExecutionOptions(BaseModel):
    """Caller options given to ``create_execution``."""

    model_id: Optional[str] = None
    language: str = "en"
    checkpoint_mode: Optional[CheckpointMode] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class ExecutionState(BaseModel):
    """Full mutable state of one execution.

    This is exactly what gets serialized into the single latest checkpoint.
    """

    execution_id: str
    workflow_id: str
    workflow_name: str = ""
    owner_id: str
    status: ExecutionStatus = ExecutionStatus.PENDING
    options: ExecutionOptions = Field(default_factory=ExecutionOptions)

    initial_data: Dict[str, Any] = Field(default_factory=dict)
    variables: Dict[str, Any] = Field(default_factory=dict)
    outputs: Dict[str, NodeOutput] = Field(default_factory=dict)
    history: List[StepRecord] = Field(default_factory=list)

    current_node: Optional[str] = None
    step: int = 0
    iterations: Dict[str, int] = Field(default_factory=dict)

    pending_checkpoint: Optional[PendingCheckpoint] = None
    pause_reason: Optional[str] = None
    final_output: Any = None
    result_status: Optional[str] = None
    error: Optional[ExecutionErrorInfo] = None

    elapsed: float = 0.0
    event_sequence: int = 0
    created_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    updated_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None

    def iteration_count(self, node_id: str) -> int:
        return self.iterations.get(node_id, 0)

    def last_output(self) -> Optional[NodeOutput]:
        if self.current_node is None:
            return None
        return self.outputs.get(self.current_node)

    def output_values(self) -> Dict[str, Any]:
        """Node id to raw output, the shape exposed to templates and expressions."""
        return {node_id: record.output for node_id, record in self.outputs.items()}


class CheckpointInfo(BaseModel):
    """Receipt for a persisted checkpoint."""

    execution_id: str
    step: int
    current_node: Optional[str] = None
    size_bytes: int
    saved_at: datetime = Field(default_factory=utcnow)
