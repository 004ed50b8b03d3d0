"""Execution state transitions and checkpoint persistence."""

from __future__ import annotations

import logging
import uuid
from typing import Any, Dict, Mapping, Optional

from .constants import MAX_CHECKPOINT_BYTES
from .contracts import NodeResult, PendingCheckpoint, WorkflowDefinition
from .errors import CheckpointSizeExceeded, ExecutionNotFoundError, WaypointError
from .models import (
    CheckpointInfo,
    ExecutionErrorInfo,
    ExecutionOptions,
    ExecutionState,
    ExecutionStatus,
    NodeOutput,
    StepRecord,
    utcnow,
)
from .persistence import ExecutionRepository

logger = logging.getLogger(__name__)


class StateManager:
    """Owns state transitions and the single latest checkpoint per execution.

    Transition helpers (``apply_node_result``, ``with_status`` and friends)
    are pure: they return a new ``ExecutionState`` and leave the input
    untouched. Only the ``*_checkpoint`` coroutines perform I/O.
    """

    def __init__(
        self,
        repository: ExecutionRepository,
        max_checkpoint_bytes: int = MAX_CHECKPOINT_BYTES,
    ) -> None:
        self._repository = repository
        self.max_checkpoint_bytes = max_checkpoint_bytes

    # ------------------------------------------------------------------
    # Construction and pure transitions
    def create_state(
        self,
        workflow: WorkflowDefinition,
        owner_id: str,
        initial_data: Optional[Mapping[str, Any]] = None,
        options: Optional[ExecutionOptions] = None,
        execution_id: Optional[str] = None,
    ) -> ExecutionState:
        return ExecutionState(
            execution_id=execution_id or f"exec-{uuid.uuid4()}",
            workflow_id=workflow.id,
            workflow_name=workflow.display_name((options or ExecutionOptions()).language),
            owner_id=owner_id,
            options=options or ExecutionOptions(),
            initial_data=dict(initial_data or {}),
        )

    def apply_node_result(
        self,
        state: ExecutionState,
        node_id: str,
        result: NodeResult,
        node_type: str = "",
        attempts: int = 1,
        started_at: Any = None,
    ) -> ExecutionState:
        """Merge ``result`` into a copy of ``state``.

        State updates are shallow-merged into the variables, the output is
        recorded under ``node_id``, and the step and per-node iteration
        counters advance by one.
        """
        new_state = state.model_copy(deep=True)
        new_state.variables.update(result.state_updates)
        iteration = new_state.iteration_count(node_id) + 1
        new_state.iterations[node_id] = iteration
        new_state.step += 1
        new_state.current_node = node_id
        now = utcnow()
        new_state.outputs[node_id] = NodeOutput(
            status=result.status,
            output=result.output,
            branch=result.branch,
            error=result.error,
            iteration=iteration,
            completed_at=now,
        )
        new_state.history.append(
            StepRecord(
                step=new_state.step,
                node_id=node_id,
                node_type=node_type,
                status=result.status,
                attempts=attempts,
                started_at=started_at,
                completed_at=now,
            )
        )
        new_state.updated_at = now
        return new_state

    def with_status(self, state: ExecutionState, status: ExecutionStatus) -> ExecutionState:
        new_state = state.model_copy(deep=True)
        now = utcnow()
        new_state.status = status
        new_state.updated_at = now
        if status == ExecutionStatus.RUNNING and new_state.started_at is None:
            new_state.started_at = now
        if status.is_terminal:
            new_state.completed_at = now
        if status != ExecutionStatus.PAUSED:
            new_state.pause_reason = None
        return new_state

    def pause(self, state: ExecutionState, node_id: str, checkpoint: PendingCheckpoint) -> ExecutionState:
        """Record the pending human checkpoint; the node itself is not yet complete."""
        new_state = self.with_status(state, ExecutionStatus.PAUSED)
        new_state.pending_checkpoint = checkpoint.model_copy(deep=True)
        new_state.current_node = node_id
        return new_state

    def hold(self, state: ExecutionState, reason: str) -> ExecutionState:
        """Pause on request between nodes; no checkpoint is pending."""
        new_state = self.with_status(state, ExecutionStatus.PAUSED)
        new_state.pause_reason = reason
        return new_state

    def clear_pause(self, state: ExecutionState) -> ExecutionState:
        new_state = self.with_status(state, ExecutionStatus.RUNNING)
        new_state.pending_checkpoint = None
        return new_state

    def complete(
        self, state: ExecutionState, output: Any, result_status: Optional[str] = None
    ) -> ExecutionState:
        new_state = self.with_status(state, ExecutionStatus.COMPLETED)
        new_state.final_output = output
        new_state.result_status = result_status
        return new_state

    def fail(self, state: ExecutionState, error: WaypointError) -> ExecutionState:
        new_state = self.with_status(state, ExecutionStatus.FAILED)
        new_state.pending_checkpoint = None
        new_state.error = ExecutionErrorInfo(
            code=error.code,
            message=error.message,
            node_id=error.node_id,
        )
        return new_state

    def cancel(self, state: ExecutionState, reason: str = "") -> ExecutionState:
        new_state = self.with_status(state, ExecutionStatus.CANCELLED)
        new_state.pending_checkpoint = None
        if reason:
            new_state.error = ExecutionErrorInfo(
                code="CANCELLED", message=reason, node_id=state.current_node
            )
        return new_state

    def add_elapsed(self, state: ExecutionState, seconds: float) -> ExecutionState:
        new_state = state.model_copy()
        new_state.elapsed = state.elapsed + max(seconds, 0.0)
        return new_state

    # ------------------------------------------------------------------
    # Template scope
    def template_scope(
        self, state: ExecutionState, workflow: WorkflowDefinition, node_id: str
    ) -> Dict[str, Any]:
        """Variables plus reserved counters, as seen by prompt templates."""
        scope: Dict[str, Any] = dict(state.variables)
        scope.setdefault("data", state.variables)
        scope.setdefault("outputs", state.output_values())
        scope.setdefault("input", state.initial_data)
        scope.update(
            {
                "_currentStep": state.step + 1,
                "_currentNodeIteration": state.iteration_count(node_id) + 1,
                "_totalNodes": len(workflow.nodes),
                "_executionId": state.execution_id,
            }
        )
        return scope

    # ------------------------------------------------------------------
    # Checkpoints
    def serialize(self, state: ExecutionState) -> str:
        payload = state.model_dump_json()
        size = len(payload.encode("utf-8"))
        if size > self.max_checkpoint_bytes:
            raise CheckpointSizeExceeded(
                f"Checkpoint for {state.execution_id} is {size} bytes, "
                f"over the {self.max_checkpoint_bytes} byte limit",
                node_id=state.current_node,
                details={"size": size, "limit": self.max_checkpoint_bytes},
            )
        return payload

    async def save_checkpoint(self, state: ExecutionState) -> CheckpointInfo:
        """Persist ``state`` as the execution's only checkpoint.

        Raises ``CheckpointSizeExceeded`` without writing anything when the
        ceiling would be crossed, so the previous checkpoint stays intact.
        """
        payload = self.serialize(state)
        await self._repository.save_checkpoint(state.execution_id, payload)
        logger.debug(f"Checkpoint saved for {state.execution_id} at step {state.step}")
        return CheckpointInfo(
            execution_id=state.execution_id,
            step=state.step,
            current_node=state.current_node,
            size_bytes=len(payload.encode("utf-8")),
        )

    async def load_checkpoint(self, execution_id: str) -> ExecutionState:
        payload = await self._repository.load_checkpoint(execution_id)
        if payload is None:
            raise ExecutionNotFoundError(f"No checkpoint for execution {execution_id}")
        return ExecutionState.model_validate_json(payload)

    async def delete_checkpoint(self, execution_id: str) -> None:
        await self._repository.delete_checkpoint(execution_id)


__all__ = ["StateManager"]
