"""Workflow engine: run loop, pause/resume, cancellation and the caller-facing operations."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

from .catalog import WorkflowCatalog
from .config import WaypointConfig, load_config
from .contracts import (
    HumanResponse,
    NodeResult,
    NodeStatus,
    PendingCheckpoint,
    WorkflowDefinition,
)
from .errors import (
    CheckpointSizeExceeded,
    ExecutionCancelled,
    ExecutionFailed,
    ExecutionNotFoundError,
    ExecutionTimeoutError,
    InvalidStateForPause,
    InvalidStateForResume,
    NodeTimeoutError,
    PermanentExecutionError,
    TransientExecutionError,
    UnknownNodeTypeError,
    WaypointError,
    WorkflowValidationError,
    is_transient,
)
from .events import BaseEventBus, EventType, WorkflowEvent, get_event_bus, sanitize_payload
from .executors import ExecutionContext, NodeExecutor, default_executors, prepare_inputs
from .models import ExecutionOptions, ExecutionState, ExecutionStatus, utcnow
from .persistence import ExecutionRepository, RegistryEntry, get_repository
from .registry import ExecutionRegistry
from .scheduler import DAGScheduler
from .services import NodeServices
from .state import StateManager
from .utils.retry import compute_delay

logger = logging.getLogger(__name__)


@dataclass
class _ExecutionHandle:
    """In-process bookkeeping for one execution."""

    workflow: WorkflowDefinition
    context: ExecutionContext
    state: ExecutionState
    sequence: int = 0
    task: Optional[asyncio.Task] = None
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)
    pause_event: asyncio.Event = field(default_factory=asyncio.Event)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    cancel_reason: str = ""
    pause_reason: str = ""
    segment_start: Optional[float] = None
    # False once a final checkpoint could not be written.
    persisted: bool = True

    @property
    def execution_id(self) -> str:
        return self.state.execution_id


class WorkflowEngine:
    """Drives executions from creation to a terminal state.

    Each execution gets its own run loop task. The loop holds the
    execution's lock while it runs, so ``respond`` and ``cancel`` never
    interleave with a step. Pausing at a human node ends the task; a
    later ``respond`` starts a new one from the persisted state.
    ``pause`` does the same between nodes and ``resume`` picks it up.

    Handles of finished executions are dropped once their final state is
    checkpointed; reads then go to the repository.
    """

    def __init__(
        self,
        catalog: WorkflowCatalog,
        repository: Optional[ExecutionRepository] = None,
        *,
        registry: Optional[ExecutionRegistry] = None,
        state_manager: Optional[StateManager] = None,
        scheduler: Optional[DAGScheduler] = None,
        executors: Optional[Dict[Any, NodeExecutor]] = None,
        event_bus: Optional[BaseEventBus] = None,
        services: Optional[NodeServices] = None,
        config: Optional[WaypointConfig] = None,
    ) -> None:
        self.config = config or load_config()
        self.catalog = catalog
        self.repository = repository or get_repository(config=self.config)
        self.registry = registry or ExecutionRegistry(self.repository)
        self.state_manager = state_manager or StateManager(
            self.repository, self.config.engine.max_checkpoint_bytes
        )
        self.scheduler = scheduler or catalog.scheduler
        self.executors = executors or default_executors()
        self.event_bus = event_bus or get_event_bus(config=self.config)
        self.services = services or NodeServices()
        self._handles: Dict[str, _ExecutionHandle] = {}

    # ------------------------------------------------------------------
    # Lifecycle
    async def start(self) -> List[RegistryEntry]:
        """Load the registry and fail executions orphaned by a previous process."""
        await self.registry.load()
        return await self.recover()

    async def recover(self) -> List[RegistryEntry]:
        recovered = await self.registry.recover_interrupted()
        for entry in recovered:
            try:
                state = await self.state_manager.load_checkpoint(entry.execution_id)
            except ExecutionNotFoundError:
                logger.warning(f"No checkpoint to patch for interrupted execution {entry.execution_id}")
                continue
            if state.status.is_terminal:
                continue
            failed = self.state_manager.fail(
                state,
                WaypointError(
                    "Execution was interrupted by a process restart",
                    code="INTERRUPTED",
                    node_id=entry.current_node,
                ),
            )
            await self.state_manager.save_checkpoint(failed)
        if recovered:
            logger.info(f"Recovered {len(recovered)} interrupted execution(s)")
        return recovered

    async def shutdown(self) -> None:
        """Stop every running loop; their entries stay ``running`` for the next recovery."""
        tasks = [
            handle.task
            for handle in self._handles.values()
            if handle.task is not None and not handle.task.done()
        ]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.info(f"Stopped {len(tasks)} running execution(s)")
        self._handles.clear()
        await self.event_bus.disconnect()

    # ------------------------------------------------------------------
    # Caller operations
    async def create_execution(
        self,
        workflow_id: str,
        initial_data: Optional[Dict[str, Any]] = None,
        *,
        owner_id: str = "anonymous",
        options: Optional[ExecutionOptions] = None,
    ) -> str:
        """Validate the initial data, persist a pending execution and start its loop."""
        workflow = self.catalog.get(workflow_id)
        if not workflow.enabled:
            raise WorkflowValidationError(f"Workflow '{workflow_id}' is disabled")
        initial_data = dict(initial_data or {})
        start = workflow.start_node
        prepare_inputs(start.config, initial_data, start.id)

        state = self.state_manager.create_state(workflow, owner_id, initial_data, options)
        await self.state_manager.save_checkpoint(state)
        await self.registry.register(
            state.execution_id, owner_id, workflow.id, state.workflow_name
        )
        handle = self._new_handle(workflow, state)
        self._handles[state.execution_id] = handle
        handle.task = asyncio.create_task(self._drive(handle))
        logger.info(f"Created execution {state.execution_id} of workflow {workflow.id} for {owner_id}")
        return state.execution_id

    async def get_execution(self, execution_id: str) -> ExecutionState:
        handle = self._handles.get(execution_id)
        if handle is not None:
            return handle.state.model_copy(deep=True)
        return await self.state_manager.load_checkpoint(execution_id)

    def list_executions(
        self,
        owner_id: str,
        status: Optional[ExecutionStatus] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[RegistryEntry]:
        return self.registry.list_by_owner(owner_id, status=status, limit=limit, offset=offset)

    async def stream_events(
        self, execution_id: str, replay: bool = True
    ) -> AsyncIterator[WorkflowEvent]:
        """Ordered lifecycle events of one execution, ending after a terminal event."""
        if execution_id not in self._handles:
            entry = self.registry.get(execution_id)
            if entry is None:
                raise ExecutionNotFoundError(f"Execution {execution_id} not found")
            if entry.status.is_terminal:
                # Finished: only what the bus still retains.
                if replay:
                    for event in await self.event_bus.backlog(execution_id):
                        yield event
                return
        async for event in self.event_bus.subscribe(
            execution_id,
            keepalive_interval=self.config.events.keepalive_interval,
            replay=replay,
        ):
            yield event

    async def respond(
        self,
        execution_id: str,
        checkpoint_id: str,
        response: str,
        data: Optional[Dict[str, Any]] = None,
    ) -> ExecutionState:
        """Answer the pending human checkpoint and continue the run loop.

        Raises ``InvalidStateForResume`` when the execution is not paused or
        ``checkpoint_id`` is stale, and ``InvalidResponseError`` when the
        answer does not fit the checkpoint. The state is untouched in both cases.
        """
        handle = await self._handle_for(execution_id)
        async with handle.lock:
            state = handle.state
            pending = state.pending_checkpoint
            if state.status != ExecutionStatus.PAUSED or pending is None:
                raise InvalidStateForResume(
                    f"Execution {execution_id} is {state.status.value}, not paused",
                    node_id=state.current_node,
                )
            if pending.id != checkpoint_id:
                raise InvalidStateForResume(
                    f"Checkpoint {checkpoint_id} is not the pending checkpoint of {execution_id}",
                    node_id=pending.node_id,
                )
            node = handle.workflow.node(pending.node_id)
            executor = self.executors.get(node.node_type)
            resume = getattr(executor, "resume", None)
            if resume is None:
                raise InvalidStateForResume(
                    f"Node '{node.id}' cannot be resumed", node_id=node.id
                )
            result = resume(
                node,
                state,
                HumanResponse(checkpoint_id=checkpoint_id, response=response, data=data or {}),
            )

            answered = self.state_manager.apply_node_result(
                self.state_manager.clear_pause(state), node.id, result, node.node_type.value
            )
            await self._emit(
                handle, EventType.RESUMED, node.id, {"checkpoint_id": checkpoint_id, "response": response}
            )
            await self._emit(handle, EventType.NODE_COMPLETED, node.id, self._node_payload(node, result))
            try:
                await self._checkpoint(handle, answered)
            except CheckpointSizeExceeded as exc:
                exc.node_id = exc.node_id or node.id
                await self._finish_failed(handle, exc)
                self._release(handle)
                return handle.state.model_copy(deep=True)
            await self.registry.update(
                execution_id,
                status=ExecutionStatus.RUNNING,
                current_node=node.id,
                pending_checkpoint_id=None,
            )
            logger.info(f"Execution {execution_id} resumed at {node.id} with '{response}'")
            handle.task = asyncio.create_task(self._drive(handle))
            return handle.state.model_copy(deep=True)

    async def cancel(self, execution_id: str, reason: str = "Cancelled by request") -> ExecutionState:
        """Cancel a running or paused execution; terminal executions are returned as they are."""
        handle = await self._handle_for(execution_id)
        if handle.state.status.is_terminal:
            return handle.state.model_copy(deep=True)

        handle.cancel_reason = reason
        task = handle.task
        if task is not None and not task.done():
            handle.cancel_event.set()
            await asyncio.gather(task, return_exceptions=True)
        async with handle.lock:
            if not handle.state.status.is_terminal:
                await self._finish_cancelled(handle)
            self._release(handle)
        return handle.state.model_copy(deep=True)

    async def pause(self, execution_id: str, reason: str = "Paused by request") -> ExecutionState:
        """Stop a running execution before its next node.

        The node in flight finishes first. Pausing an already paused
        execution returns it unchanged; anything not running raises
        ``InvalidStateForPause``. The execution may also reach a terminal
        state or a human checkpoint before the request is seen.
        """
        handle = await self._handle_for(execution_id)
        if handle.state.status == ExecutionStatus.PAUSED:
            return handle.state.model_copy(deep=True)
        task = handle.task
        if task is None or task.done():
            raise InvalidStateForPause(
                f"Execution {execution_id} is {handle.state.status.value}, not running",
                node_id=handle.state.current_node,
            )
        handle.pause_reason = reason
        handle.pause_event.set()
        try:
            await asyncio.wait({task})
        finally:
            handle.pause_event.clear()
        return handle.state.model_copy(deep=True)

    async def resume(self, execution_id: str) -> ExecutionState:
        """Continue an execution stopped by ``pause``.

        Executions waiting on a human checkpoint are answered through
        ``respond`` instead and raise ``InvalidStateForResume`` here.
        """
        handle = await self._handle_for(execution_id)
        async with handle.lock:
            state = handle.state
            if state.status != ExecutionStatus.PAUSED:
                raise InvalidStateForResume(
                    f"Execution {execution_id} is {state.status.value}, not paused",
                    node_id=state.current_node,
                )
            if state.pending_checkpoint is not None:
                raise InvalidStateForResume(
                    f"Execution {execution_id} waits on checkpoint {state.pending_checkpoint.id}",
                    node_id=state.pending_checkpoint.node_id,
                )
            reason = state.pause_reason
            handle.state = self.state_manager.with_status(state, ExecutionStatus.RUNNING)
            await self._emit(handle, EventType.RESUMED, state.current_node, {"reason": reason})
            await self._checkpoint(handle)
            await self.registry.update(execution_id, status=ExecutionStatus.RUNNING)
            logger.info(f"Execution {execution_id} resumed at {state.current_node}")
            handle.task = asyncio.create_task(self._drive(handle))
            return handle.state.model_copy(deep=True)

    async def wait(self, execution_id: str, timeout: Optional[float] = None) -> ExecutionState:
        """Wait until the current run loop stops (terminal or paused)."""
        handle = self._handles.get(execution_id)
        if handle is not None and handle.task is not None:
            await asyncio.wait_for(asyncio.shield(handle.task), timeout)
        return await self.get_execution(execution_id)

    # ------------------------------------------------------------------
    # Handles
    def _new_handle(self, workflow: WorkflowDefinition, state: ExecutionState) -> _ExecutionHandle:
        context = ExecutionContext(
            execution_id=state.execution_id,
            workflow=workflow,
            state_manager=self.state_manager,
            services=self.services,
            owner_id=state.owner_id,
            language=state.options.language,
            user_model_id=state.options.model_id,
            default_model_id=self.config.engine.default_model_id,
            platform_model_id=self.config.engine.platform_model_id,
        )
        return _ExecutionHandle(
            workflow=workflow, context=context, state=state, sequence=state.event_sequence
        )

    async def _handle_for(self, execution_id: str) -> _ExecutionHandle:
        handle = self._handles.get(execution_id)
        if handle is not None:
            return handle
        state = await self.state_manager.load_checkpoint(execution_id)
        handle = self._new_handle(self.catalog.get(state.workflow_id), state)
        if not state.status.is_terminal:
            self._handles[execution_id] = handle
        return handle

    # ------------------------------------------------------------------
    # Run loop
    async def _drive(self, handle: _ExecutionHandle) -> None:
        async with handle.lock:
            try:
                await self._run_loop(handle)
            except ExecutionCancelled:
                await self._finish_cancelled(handle)
            except WaypointError as exc:
                await self._finish_failed(handle, exc)
            except asyncio.CancelledError:
                logger.warning(f"Run loop of {handle.execution_id} stopped at {handle.state.current_node}")
                raise
            except Exception as exc:
                logger.exception(f"Unexpected error in execution {handle.execution_id}")
                await self._finish_failed(
                    handle,
                    PermanentExecutionError(
                        str(exc) or type(exc).__name__,
                        code="INTERNAL_ERROR",
                        node_id=handle.state.current_node,
                    ),
                )
            self._release(handle)

    async def _run_loop(self, handle: _ExecutionHandle) -> None:
        workflow = handle.workflow
        handle.segment_start = asyncio.get_running_loop().time()

        if handle.state.status != ExecutionStatus.RUNNING:
            handle.state = self.state_manager.with_status(handle.state, ExecutionStatus.RUNNING)
            await self.registry.update(handle.execution_id, status=ExecutionStatus.RUNNING)
            await self._emit(
                handle,
                EventType.STARTED,
                data={"workflow_id": workflow.id, "workflow_name": handle.state.workflow_name},
            )
            logger.info(f"Execution {handle.execution_id} started")

        while True:
            self._check_cancelled(handle)
            if handle.pause_event.is_set():
                await self._hold(handle)
                return
            self._check_budget(handle)

            node_id = self.scheduler.next_node(workflow, handle.state)
            if node_id is None:
                raise PermanentExecutionError(
                    "Workflow ran out of edges without reaching an end node",
                    code="NO_END_REACHED",
                    node_id=handle.state.current_node,
                )
            node = workflow.node(node_id)
            executor = self.executors.get(node.node_type)
            if executor is None:
                raise UnknownNodeTypeError(
                    f"No executor for node type '{node.node_type.value}'", node_id=node.id
                )
            self.scheduler.check_iteration_limit(workflow, node, handle.state)

            await self.registry.update(handle.execution_id, current_node=node.id)
            await self._emit(
                handle,
                EventType.NODE_STARTED,
                node.id,
                {
                    "type": node.node_type.value,
                    "name": node.display_name(handle.context.language),
                    "iteration": handle.state.iteration_count(node.id) + 1,
                },
            )
            started_at = utcnow()
            result, attempts = await self._execute_with_policy(handle, node, executor)

            if result.paused:
                await self._pause(handle, node, result.checkpoint)
                return

            handle.state = self.state_manager.apply_node_result(
                handle.state, node.id, result, node.node_type.value, attempts, started_at
            )
            if result.status == NodeStatus.FAILED:
                await self._emit(
                    handle,
                    EventType.NODE_FAILED,
                    node.id,
                    {"error": result.error, "optional": node.is_optional, "attempts": attempts},
                )
            else:
                await self._emit(handle, EventType.NODE_COMPLETED, node.id, self._node_payload(node, result))

            if result.is_terminal:
                await self._complete(handle, node, result)
                return
            if self._checkpoint_mode(handle) == "every_node" or node.execution.checkpoint:
                await self._checkpoint(handle)

    async def _execute_with_policy(
        self, handle: _ExecutionHandle, node: Any, executor: NodeExecutor
    ) -> Tuple[NodeResult, int]:
        """Run ``executor`` under the node's timeout and retry policy.

        Returns the result and the number of attempts made. A ``failed``
        result counts as an error, transient when it is ``retryable``.
        Transient failures are retried after ``retry_delay`` grown by
        ``retry_backoff``; once retries run out an optional node gets a
        recorded failure result and anything else raises ``ExecutionFailed``.
        """
        policy = node.execution
        node_timeout = policy.timeout or self.config.engine.default_node_timeout
        attempts = 0
        while True:
            attempts += 1
            failed: Optional[NodeResult] = None
            remaining = self._remaining(handle)
            if remaining <= 0:
                raise self._budget_error(handle, node.id)
            timeout = min(node_timeout, remaining)
            try:
                result = await self._call(handle, executor, node, timeout)
                if result.status != NodeStatus.FAILED:
                    return result, attempts
                failed = result
                raise self._result_error(node, result)
            except ExecutionCancelled:
                raise
            except NodeTimeoutError as exc:
                if remaining <= node_timeout:
                    raise self._budget_error(handle, node.id) from exc
                error: WaypointError = exc
            except WaypointError as exc:
                if not is_transient(exc):
                    exc.node_id = exc.node_id or node.id
                    raise
                error = exc
            except Exception as exc:
                if not is_transient(exc):
                    raise PermanentExecutionError(
                        f"Node '{node.id}' failed: {exc}", node_id=node.id
                    ) from exc
                error = TransientExecutionError(str(exc) or type(exc).__name__, node_id=node.id)

            error.node_id = error.node_id or node.id
            if attempts > policy.retries:
                break
            delay = compute_delay(attempts, policy.retry_delay, policy.retry_backoff)
            logger.warning(
                f"Node {node.id} of {handle.execution_id} failed with {error.code} "
                f"(attempt {attempts}/{policy.retries + 1}), retrying in {delay}s"
            )
            await self._sleep(handle, delay)

        if node.is_optional:
            logger.warning(
                f"Optional node {node.id} of {handle.execution_id} failed after {attempts} attempt(s), continuing"
            )
            return failed or executor.failure_result(node, error), attempts
        raise ExecutionFailed(
            f"Node '{node.id}' failed after {attempts} attempt(s): {error.message}",
            node_id=node.id,
            cause=error,
            details={"attempts": attempts, "cause": error.code},
        )

    async def _call(
        self, handle: _ExecutionHandle, executor: NodeExecutor, node: Any, timeout: float
    ) -> NodeResult:
        """Race one executor call against its timeout and the cancel signal."""
        call = asyncio.ensure_future(executor.execute(node, handle.state, handle.context))
        cancelled = asyncio.ensure_future(handle.cancel_event.wait())
        try:
            done, _ = await asyncio.wait(
                {call, cancelled}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            cancelled.cancel()
            if not call.done():
                call.cancel()
                await asyncio.gather(call, return_exceptions=True)
        if call in done:
            return call.result()
        if handle.cancel_event.is_set():
            raise ExecutionCancelled(handle.cancel_reason or "Cancelled", node_id=node.id)
        raise NodeTimeoutError(f"Node '{node.id}' timed out after {timeout:g}s", node_id=node.id)

    async def _sleep(self, handle: _ExecutionHandle, delay: float) -> None:
        delay = min(delay, max(self._remaining(handle), 0.0))
        if delay <= 0:
            return
        try:
            await asyncio.wait_for(handle.cancel_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return
        raise ExecutionCancelled(handle.cancel_reason or "Cancelled", node_id=handle.state.current_node)

    # ------------------------------------------------------------------
    # Transitions
    async def _pause(self, handle: _ExecutionHandle, node: Any, checkpoint: PendingCheckpoint) -> None:
        self._fold_elapsed(handle)
        handle.state = self.state_manager.pause(handle.state, node.id, checkpoint)
        await self._emit(
            handle, EventType.PAUSED, node.id, {"checkpoint": checkpoint.model_dump(mode="json")}
        )
        await self._checkpoint(handle)
        await self.registry.update(
            handle.execution_id,
            status=ExecutionStatus.PAUSED,
            current_node=node.id,
            pending_checkpoint_id=checkpoint.id,
        )
        logger.info(f"Execution {handle.execution_id} paused at {node.id} awaiting {checkpoint.id}")

    async def _hold(self, handle: _ExecutionHandle) -> None:
        self._fold_elapsed(handle)
        reason = handle.pause_reason or "Paused by request"
        handle.state = self.state_manager.hold(handle.state, reason)
        await self._emit(
            handle, EventType.PAUSED, handle.state.current_node, {"reason": reason, "requested": True}
        )
        await self._checkpoint(handle)
        await self.registry.update(
            handle.execution_id, status=ExecutionStatus.PAUSED, pending_checkpoint_id=None
        )
        logger.info(f"Execution {handle.execution_id} paused after {handle.state.current_node}: {reason}")

    async def _complete(self, handle: _ExecutionHandle, node: Any, result: NodeResult) -> None:
        self._fold_elapsed(handle)
        handle.state = self.state_manager.complete(
            handle.state, result.output, getattr(node.config, "status", None)
        )
        await self._checkpoint(handle)
        await self.registry.update(
            handle.execution_id, status=ExecutionStatus.COMPLETED, current_node=node.id
        )
        await self._emit(
            handle,
            EventType.COMPLETED,
            node.id,
            {
                "output": result.output,
                "result_status": handle.state.result_status,
                "steps": handle.state.step,
            },
        )
        logger.info(f"Execution {handle.execution_id} completed in {handle.state.step} steps")

    async def _finish_failed(self, handle: _ExecutionHandle, error: WaypointError) -> None:
        self._fold_elapsed(handle)
        handle.state = self.state_manager.fail(handle.state, error)
        await self._checkpoint_final(handle)
        await self.registry.update(
            handle.execution_id,
            status=ExecutionStatus.FAILED,
            error_code=error.code,
            error_node_id=error.node_id,
        )
        await self._emit(handle, EventType.FAILED, error.node_id, {"error": error.to_dict()})
        logger.error(
            f"Execution {handle.execution_id} failed at {error.node_id}: [{error.code}] {error.message}"
        )

    async def _finish_cancelled(self, handle: _ExecutionHandle) -> None:
        self._fold_elapsed(handle)
        reason = handle.cancel_reason or "Cancelled"
        handle.state = self.state_manager.cancel(handle.state, reason)
        await self._checkpoint_final(handle)
        await self.registry.update(handle.execution_id, status=ExecutionStatus.CANCELLED)
        await self._emit(handle, EventType.CANCELLED, handle.state.current_node, {"reason": reason})
        logger.info(f"Execution {handle.execution_id} cancelled: {reason}")

    async def _checkpoint(
        self, handle: _ExecutionHandle, state: Optional[ExecutionState] = None
    ) -> None:
        """Persist ``state`` (default: the handle's) and make it the handle's state.

        On ``CheckpointSizeExceeded`` the handle keeps its previous state.
        """
        state = state or handle.state
        # The snapshot records the sequence of its own checkpoint.saved event.
        snapshot = state.model_copy(
            update={"event_sequence": handle.sequence + 1, "elapsed": self._elapsed(handle)}
        )
        info = await self.state_manager.save_checkpoint(snapshot)
        handle.state = state.model_copy(update={"event_sequence": handle.sequence + 1})
        await self._emit(
            handle,
            EventType.CHECKPOINT_SAVED,
            handle.state.current_node,
            {"step": info.step, "size_bytes": info.size_bytes},
        )

    async def _checkpoint_final(self, handle: _ExecutionHandle) -> None:
        try:
            await self._checkpoint(handle)
        except CheckpointSizeExceeded as exc:
            handle.persisted = False
            logger.error(f"Final state of {handle.execution_id} not checkpointed: {exc.message}")

    def _release(self, handle: _ExecutionHandle) -> None:
        """Forget a finished execution whose final state is on disk."""
        if handle.state.status.is_terminal and handle.persisted:
            self._handles.pop(handle.execution_id, None)

    # ------------------------------------------------------------------
    # Helpers
    async def _emit(
        self,
        handle: _ExecutionHandle,
        event_type: EventType,
        node_id: Optional[str] = None,
        data: Optional[Dict[str, Any]] = None,
    ) -> None:
        handle.sequence += 1
        await self.event_bus.publish(
            WorkflowEvent(
                execution_id=handle.execution_id,
                type=event_type,
                sequence=handle.sequence,
                node_id=node_id,
                data=sanitize_payload(data),
            )
        )

    @staticmethod
    def _node_payload(node: Any, result: NodeResult) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "type": node.node_type.value,
            "status": result.status.value,
            "output": result.output,
        }
        if result.branch is not None:
            payload["branch"] = result.branch
        return payload

    def _checkpoint_mode(self, handle: _ExecutionHandle) -> str:
        return (
            handle.state.options.checkpoint_mode
            or handle.workflow.config.checkpoint_mode
            or self.config.engine.checkpoint_mode
        )

    def _elapsed(self, handle: _ExecutionHandle) -> float:
        if handle.segment_start is None:
            return handle.state.elapsed
        return handle.state.elapsed + asyncio.get_running_loop().time() - handle.segment_start

    def _remaining(self, handle: _ExecutionHandle) -> float:
        return handle.workflow.config.max_execution_time - self._elapsed(handle)

    def _fold_elapsed(self, handle: _ExecutionHandle) -> None:
        if handle.segment_start is None:
            return
        handle.state = self.state_manager.add_elapsed(
            handle.state, asyncio.get_running_loop().time() - handle.segment_start
        )
        handle.segment_start = None

    def _check_cancelled(self, handle: _ExecutionHandle) -> None:
        if handle.cancel_event.is_set():
            raise ExecutionCancelled(
                handle.cancel_reason or "Cancelled", node_id=handle.state.current_node
            )

    def _check_budget(self, handle: _ExecutionHandle) -> None:
        if self._remaining(handle) <= 0:
            raise self._budget_error(handle, handle.state.current_node)

    @staticmethod
    def _result_error(node: Any, result: NodeResult) -> WaypointError:
        info = result.error or {}
        error_type = TransientExecutionError if result.retryable else PermanentExecutionError
        return error_type(
            info.get("message") or f"Node '{node.id}' reported a failure",
            code=info.get("code") or None,
            node_id=node.id,
            details=info.get("details"),
        )

    @staticmethod
    def _budget_error(handle: _ExecutionHandle, node_id: Optional[str]) -> ExecutionTimeoutError:
        limit = handle.workflow.config.max_execution_time
        return ExecutionTimeoutError(
            f"Execution exceeded its time budget of {limit:g}s",
            node_id=node_id,
            details={"max_execution_time": limit},
        )


__all__ = ["WorkflowEngine"]
