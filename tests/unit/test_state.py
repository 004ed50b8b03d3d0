import pytest

from tests.fixtures.workflows import human_workflow, linear_workflow
from waypoint.catalog import parse_workflow
from waypoint.contracts import NodeResult, NodeStatus, PendingCheckpoint
from waypoint.errors import CheckpointSizeExceeded, ExecutionNotFoundError, WaypointError
from waypoint.models import ExecutionOptions, ExecutionStatus
from waypoint.persistence import InMemoryExecutionRepository
from waypoint.state import StateManager


@pytest.fixture
def manager():
    return StateManager(InMemoryExecutionRepository())


@pytest.fixture
def workflow():
    return parse_workflow(linear_workflow())


def test_apply_node_result_is_pure(manager, workflow):
    state = manager.create_state(workflow, "alice", {"msg": "hi"})
    result = NodeResult(output={"x": 1}, state_updates={"x": 1}, branch="ok")

    updated = manager.apply_node_result(state, "echo", result, "tool", attempts=2)

    assert state.variables == {}
    assert state.step == 0
    assert updated.variables == {"x": 1}
    assert updated.step == 1
    assert updated.current_node == "echo"
    assert updated.iterations == {"echo": 1}
    assert updated.outputs["echo"].branch == "ok"
    assert updated.history[0].attempts == 2
    assert updated.history[0].node_type == "tool"

    again = manager.apply_node_result(updated, "echo", result)
    assert again.iterations["echo"] == 2
    assert again.outputs["echo"].iteration == 2
    assert [record.step for record in again.history] == [1, 2]


def test_state_updates_shallow_merge(manager, workflow):
    state = manager.create_state(workflow, "alice")
    state = manager.apply_node_result(
        state, "a", NodeResult(state_updates={"user": {"name": "Ada"}, "keep": 1})
    )
    state = manager.apply_node_result(state, "b", NodeResult(state_updates={"user": {"age": 36}}))

    assert state.variables == {"user": {"age": 36}, "keep": 1}


def test_pause_and_clear(manager, workflow):
    state = manager.with_status(manager.create_state(workflow, "alice"), ExecutionStatus.RUNNING)
    checkpoint = PendingCheckpoint(node_id="review", message="ok?")

    paused = manager.pause(state, "review", checkpoint)
    assert paused.status == ExecutionStatus.PAUSED
    assert paused.pending_checkpoint.id == checkpoint.id
    assert paused.current_node == "review"
    assert paused.step == state.step

    resumed = manager.clear_pause(paused)
    assert resumed.status == ExecutionStatus.RUNNING
    assert resumed.pending_checkpoint is None
    assert paused.pending_checkpoint is not None


def test_terminal_transitions(manager, workflow):
    state = manager.with_status(manager.create_state(workflow, "alice"), ExecutionStatus.RUNNING)
    assert state.started_at is not None

    done = manager.complete(state, {"answer": 42}, "success")
    assert done.status == ExecutionStatus.COMPLETED
    assert done.final_output == {"answer": 42}
    assert done.result_status == "success"
    assert done.completed_at is not None

    failed = manager.fail(state, WaypointError("boom", code="TOOL_FAILED", node_id="echo"))
    assert failed.error.code == "TOOL_FAILED"
    assert failed.error.node_id == "echo"

    cancelled = manager.cancel(state, "stop")
    assert cancelled.status == ExecutionStatus.CANCELLED
    assert cancelled.error.code == "CANCELLED"


def test_template_scope_has_reserved_counters(manager):
    workflow = parse_workflow(human_workflow())
    state = manager.create_state(workflow, "alice", options=ExecutionOptions(language="de"))
    state = manager.apply_node_result(state, "draft", NodeResult(state_updates={"summary": "s"}))

    scope = manager.template_scope(state, workflow, "draft")

    assert scope["summary"] == "s"
    assert scope["_currentStep"] == 2
    assert scope["_currentNodeIteration"] == 2
    assert scope["_totalNodes"] == 4
    assert scope["_executionId"] == state.execution_id


@pytest.mark.asyncio
async def test_checkpoint_round_trip(manager, workflow):
    state = manager.create_state(workflow, "alice", {"msg": "hi"})
    state = manager.apply_node_result(
        state, "start", NodeResult(output={"msg": "hi"}, state_updates={"msg": "hi"}), "start"
    )

    info = await manager.save_checkpoint(state)
    loaded = await manager.load_checkpoint(state.execution_id)

    assert info.step == 1
    assert info.size_bytes > 0
    assert loaded == state
    assert loaded.outputs["start"].status == NodeStatus.COMPLETED


@pytest.mark.asyncio
async def test_only_latest_checkpoint_is_kept(manager, workflow):
    state = manager.create_state(workflow, "alice")
    await manager.save_checkpoint(state)
    later = manager.apply_node_result(state, "start", NodeResult())
    await manager.save_checkpoint(later)

    assert (await manager.load_checkpoint(state.execution_id)).step == 1

    await manager.delete_checkpoint(state.execution_id)
    with pytest.raises(ExecutionNotFoundError):
        await manager.load_checkpoint(state.execution_id)


@pytest.mark.asyncio
async def test_oversized_checkpoint_leaves_previous_one(workflow):
    manager = StateManager(InMemoryExecutionRepository(), max_checkpoint_bytes=4_000)
    state = manager.create_state(workflow, "alice")
    await manager.save_checkpoint(state)

    huge = manager.apply_node_result(state, "echo", NodeResult(state_updates={"blob": "x" * 10_000}))
    with pytest.raises(CheckpointSizeExceeded) as exc_info:
        await manager.save_checkpoint(huge)

    assert exc_info.value.details["limit"] == 4_000
    stored = await manager.load_checkpoint(state.execution_id)
    assert stored.step == 0
    assert "blob" not in stored.variables
