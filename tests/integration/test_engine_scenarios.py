"""End-to-end runs of the engine over small workflows."""

import asyncio
import time

import pytest

from tests.fixtures.workflows import (
    FlakyTool,
    ScriptedLLM,
    branch_workflow,
    cycle_workflow,
    human_workflow,
    linear_workflow,
    make_engine,
    make_services,
    optional_tool_workflow,
    slow_workflow,
)
from waypoint.config import EngineConfig, WaypointConfig
from waypoint.contracts import NodeResult, NodeStatus, NodeType
from waypoint.engine import WorkflowEngine
from waypoint.errors import (
    InvalidResponseError,
    InvalidStateForResume,
    MissingRequiredInputError,
    WorkflowNotFoundError,
)
from waypoint.events import EventType, InMemoryEventBus
from waypoint.executors import NodeExecutor, default_executors
from waypoint.models import ExecutionOptions, ExecutionStatus


async def collect_events(engine, execution_id):
    return [event async for event in engine.stream_events(execution_id)]


class RejectingToolExecutor(NodeExecutor):
    """Reports a failed result instead of raising."""

    node_type = NodeType.TOOL

    def __init__(self, retryable):
        self.retryable = retryable
        self.calls = 0

    async def execute(self, node, state, context):
        self.calls += 1
        return NodeResult(
            status=NodeStatus.FAILED,
            output={"rejected": True},
            error={"code": "UPSTREAM_REJECTED", "message": "upstream said no"},
            retryable=self.retryable,
        )


def with_tool_executor(executor):
    executors = default_executors()
    executors[NodeType.TOOL] = executor
    return executors


@pytest.mark.asyncio
async def test_linear_workflow_echoes_input():
    engine = make_engine(linear_workflow())

    execution_id = await engine.create_execution("linear", {"msg": "hi"}, owner_id="alice")
    state = await engine.wait(execution_id)

    assert state.status == ExecutionStatus.COMPLETED
    assert state.final_output == {"msg": "hi"}
    assert state.outputs["echo"].output == {"msg": "hi"}

    events = await collect_events(engine, execution_id)
    completed = [event.node_id for event in events if event.type == EventType.NODE_COMPLETED]
    assert completed == ["start", "echo", "end"]
    assert events[0].type == EventType.STARTED
    assert events[-1].type == EventType.COMPLETED
    sequences = [event.sequence for event in events]
    assert sequences == sorted(sequences)
    assert len(set(sequences)) == len(sequences)


@pytest.mark.asyncio
async def test_branch_workflow_takes_high_path():
    engine = make_engine(branch_workflow())

    execution_id = await engine.create_execution("branch", {"value": 15})
    state = await engine.wait(execution_id)

    assert state.status == ExecutionStatus.COMPLETED
    assert state.outputs["check"].output["branch"] == "true"
    assert state.outputs["check"].branch == "true"
    assert "high" in state.outputs
    assert "low" not in state.outputs
    assert state.variables["route"] == {"path": "high"}


@pytest.mark.asyncio
async def test_branch_workflow_takes_low_path():
    engine = make_engine(branch_workflow())

    execution_id = await engine.create_execution("branch", {"value": 3})
    state = await engine.wait(execution_id)

    assert state.outputs["check"].output["branch"] == "false"
    assert state.variables["route"] == {"path": "low"}


@pytest.mark.asyncio
async def test_human_checkpoint_pauses_and_resumes():
    llm = ScriptedLLM(["A short summary"])
    engine = make_engine(human_workflow(), services=make_services(llm))

    execution_id = await engine.create_execution("review", {"topic": "pricing"}, owner_id="bob")
    state = await engine.wait(execution_id)

    assert state.status == ExecutionStatus.PAUSED
    pending = state.pending_checkpoint
    assert pending is not None
    assert pending.node_id == "review"
    assert pending.message == "Approve the summary: A short summary"
    assert pending.display_data == {"summary": "A short summary"}
    assert llm.requests[0].messages[-1]["content"] == "Summarize pricing"

    entry = engine.registry.get(execution_id)
    assert entry.status == ExecutionStatus.PAUSED
    assert entry.pending_checkpoint_id == pending.id
    assert [e.execution_id for e in engine.registry.pending_checkpoints("bob")] == [execution_id]

    resumed = await engine.respond(execution_id, pending.id, "approve", {"note": "looks good"})
    assert resumed.status == ExecutionStatus.RUNNING
    assert resumed.pending_checkpoint is None

    state = await engine.wait(execution_id)
    assert state.status == ExecutionStatus.COMPLETED
    assert state.final_output["summary"] == "A short summary"
    assert state.final_output["decision"]["response"] == "approve"
    assert state.variables["human_response_review"]["data"] == {"note": "looks good"}

    types = [event.type for event in await collect_events(engine, execution_id)]
    assert types.index(EventType.PAUSED) < types.index(EventType.RESUMED) < types.index(EventType.COMPLETED)


@pytest.mark.asyncio
async def test_human_revise_loops_back_to_agent():
    llm = ScriptedLLM(["first draft", "second draft"])
    engine = make_engine(human_workflow(), services=make_services(llm))

    execution_id = await engine.create_execution("review", {"topic": "pricing"})
    first = (await engine.wait(execution_id)).pending_checkpoint

    await engine.respond(execution_id, first.id, "revise")
    state = await engine.wait(execution_id)

    assert state.status == ExecutionStatus.PAUSED
    assert state.pending_checkpoint.id != first.id
    assert state.variables["summary"] == "second draft"
    assert state.iterations["draft"] == 2
    assert len(llm.requests) == 2


@pytest.mark.asyncio
async def test_stale_checkpoint_is_rejected_and_state_untouched():
    engine = make_engine(human_workflow(), services=make_services(ScriptedLLM(["s"])))
    execution_id = await engine.create_execution("review", {"topic": "t"})
    before = await engine.wait(execution_id)

    with pytest.raises(InvalidStateForResume):
        await engine.respond(execution_id, "ckpt-stale", "approve")

    after = await engine.get_execution(execution_id)
    assert after.status == ExecutionStatus.PAUSED
    assert after.model_dump() == before.model_dump()
    assert engine.registry.get(execution_id).status == ExecutionStatus.PAUSED


@pytest.mark.asyncio
async def test_invalid_option_is_rejected():
    engine = make_engine(human_workflow(), services=make_services(ScriptedLLM(["s"])))
    execution_id = await engine.create_execution("review", {"topic": "t"})
    state = await engine.wait(execution_id)

    with pytest.raises(InvalidResponseError):
        await engine.respond(execution_id, state.pending_checkpoint.id, "maybe")

    assert (await engine.get_execution(execution_id)).status == ExecutionStatus.PAUSED


@pytest.mark.asyncio
async def test_respond_to_completed_execution_is_rejected():
    engine = make_engine(linear_workflow())
    execution_id = await engine.create_execution("linear", {"msg": "hi"})
    await engine.wait(execution_id)

    with pytest.raises(InvalidStateForResume):
        await engine.respond(execution_id, "ckpt-anything", "continue")


@pytest.mark.asyncio
async def test_optional_tool_failure_is_recorded_and_run_continues():
    flaky = FlakyTool()
    engine = make_engine(optional_tool_workflow(), services=make_services(flaky=flaky))

    execution_id = await engine.create_execution("optional", {})
    state = await engine.wait(execution_id)

    assert state.status == ExecutionStatus.COMPLETED
    assert flaky.calls == 3
    fetch = state.outputs["fetch"]
    assert fetch.status == NodeStatus.FAILED
    assert fetch.output["error"] is True
    assert fetch.output["tool_id"] == "flaky"
    assert state.variables["fetched"]["error"] is True
    assert state.history[1].attempts == 3

    events = await collect_events(engine, execution_id)
    assert [e.node_id for e in events if e.type == EventType.NODE_FAILED] == ["fetch"]


@pytest.mark.asyncio
async def test_required_tool_failure_exhausts_retries():
    flaky = FlakyTool()
    engine = make_engine(
        optional_tool_workflow(optional=False), services=make_services(flaky=flaky)
    )

    execution_id = await engine.create_execution("optional", {})
    state = await engine.wait(execution_id)

    assert state.status == ExecutionStatus.FAILED
    assert state.error.code == "RETRIES_EXHAUSTED"
    assert state.error.node_id == "fetch"
    assert flaky.calls == 3
    entry = engine.registry.get(execution_id)
    assert entry.error_code == "RETRIES_EXHAUSTED"
    assert entry.error_node_id == "fetch"


@pytest.mark.asyncio
async def test_transient_failure_recovers_within_retries():
    flaky = FlakyTool(failures=1, result={"value": 42})
    engine = make_engine(
        optional_tool_workflow(optional=False), services=make_services(flaky=flaky)
    )

    execution_id = await engine.create_execution("optional", {})
    state = await engine.wait(execution_id)

    assert state.status == ExecutionStatus.COMPLETED
    assert state.variables["fetched"] == {"value": 42}
    assert state.history[1].attempts == 2


@pytest.mark.asyncio
async def test_cycle_stops_at_iteration_limit():
    engine = make_engine(cycle_workflow(max_iterations=3))

    execution_id = await engine.create_execution("cycle", {})
    state = await engine.wait(execution_id)

    assert state.status == ExecutionStatus.FAILED
    assert state.error.code == "ITERATION_LIMIT_EXCEEDED"
    assert state.error.node_id == "a"
    assert state.iterations == {"start": 1, "a": 3, "b": 3}


@pytest.mark.asyncio
async def test_identical_runs_are_deterministic():
    async def run_once():
        engine = make_engine(branch_workflow())
        execution_id = await engine.create_execution("branch", {"value": 11})
        return await engine.wait(execution_id)

    first, second = await run_once(), await run_once()

    assert first.status == second.status == ExecutionStatus.COMPLETED
    assert first.output_values() == second.output_values()
    assert first.final_output == second.final_output


@pytest.mark.asyncio
async def test_missing_required_input_is_rejected_at_creation():
    engine = make_engine(linear_workflow())

    with pytest.raises(MissingRequiredInputError):
        await engine.create_execution("linear", {}, owner_id="alice")

    assert engine.list_executions("alice") == []


@pytest.mark.asyncio
async def test_unknown_workflow_is_rejected():
    engine = make_engine(linear_workflow())

    with pytest.raises(WorkflowNotFoundError):
        await engine.create_execution("missing", {})


@pytest.mark.asyncio
async def test_node_timeout_fails_after_retries():
    async def slow(**kwargs):
        await asyncio.sleep(5)

    engine = make_engine(slow_workflow(timeout=0.05), services=make_services(slow=slow))

    execution_id = await engine.create_execution("slow", {})
    state = await engine.wait(execution_id, timeout=5)

    assert state.status == ExecutionStatus.FAILED
    assert state.error.code == "RETRIES_EXHAUSTED"
    assert "timed out" in state.error.message


@pytest.mark.asyncio
async def test_workflow_time_budget_fails_execution():
    async def slow(**kwargs):
        await asyncio.sleep(5)

    workflow = slow_workflow(timeout=10)
    workflow["config"] = {"max_execution_time": 0.1}
    engine = make_engine(workflow, services=make_services(slow=slow))

    execution_id = await engine.create_execution("slow", {})
    state = await engine.wait(execution_id, timeout=5)

    assert state.status == ExecutionStatus.FAILED
    assert state.error.code == "EXECUTION_TIMEOUT"


@pytest.mark.asyncio
async def test_oversized_checkpoint_fails_and_keeps_previous_checkpoint():
    async def big(**kwargs):
        return "x" * 20_000

    workflow = optional_tool_workflow(optional=False)
    workflow["nodes"][1]["config"]["tool_id"] = "big"
    config = WaypointConfig(engine=EngineConfig(max_checkpoint_bytes=8_000))
    engine = make_engine(workflow, services=make_services(big=big), config=config)

    execution_id = await engine.create_execution("optional", {})
    state = await engine.wait(execution_id)

    assert state.status == ExecutionStatus.FAILED
    assert state.error.code == "CHECKPOINT_SIZE_EXCEEDED"
    stored = await engine.state_manager.load_checkpoint(execution_id)
    assert stored.step == 1
    assert stored.status == ExecutionStatus.RUNNING
    assert engine.registry.get(execution_id).error_code == "CHECKPOINT_SIZE_EXCEEDED"


@pytest.mark.asyncio
async def test_oversized_human_response_fails_execution():
    config = WaypointConfig(engine=EngineConfig(max_checkpoint_bytes=20_000))
    engine = make_engine(human_workflow(), services=make_services(ScriptedLLM(["draft"])), config=config)
    execution_id = await engine.create_execution("review", {"topic": "t"})
    paused = await engine.wait(execution_id)
    checkpoint_id = paused.pending_checkpoint.id

    state = await engine.respond(execution_id, checkpoint_id, "approve", {"blob": "x" * 50_000})

    assert state.status == ExecutionStatus.FAILED
    assert state.error.code == "CHECKPOINT_SIZE_EXCEEDED"
    assert state.error.node_id == "review"
    assert state.pending_checkpoint is None
    entry = engine.registry.get(execution_id)
    assert entry.status == ExecutionStatus.FAILED
    assert entry.error_code == "CHECKPOINT_SIZE_EXCEEDED"
    assert entry.pending_checkpoint_id is None
    stored = await engine.state_manager.load_checkpoint(execution_id)
    assert stored.status == ExecutionStatus.FAILED
    assert "review" not in stored.outputs
    assert (await engine.get_execution(execution_id)).status == ExecutionStatus.FAILED

    events = await collect_events(engine, execution_id)
    assert events[-1].type == EventType.FAILED
    with pytest.raises(InvalidStateForResume):
        await engine.respond(execution_id, checkpoint_id, "approve")


@pytest.mark.asyncio
async def test_boundary_checkpoint_mode_skips_intermediate_checkpoints():
    engine = make_engine(linear_workflow())

    execution_id = await engine.create_execution(
        "linear", {"msg": "hi"}, options=ExecutionOptions(checkpoint_mode="boundaries")
    )
    await engine.wait(execution_id)

    events = await collect_events(engine, execution_id)
    saved = [event for event in events if event.type == EventType.CHECKPOINT_SAVED]
    assert len(saved) == 1
    assert saved[0].data["step"] == 3


@pytest.mark.asyncio
async def test_list_executions_by_owner_and_status():
    engine = make_engine(linear_workflow(), human_workflow(), services=make_services(ScriptedLLM(["s"])))

    done = await engine.create_execution("linear", {"msg": "a"}, owner_id="carol")
    paused = await engine.create_execution("review", {"topic": "b"}, owner_id="carol")
    await engine.create_execution("linear", {"msg": "c"}, owner_id="dave")
    await engine.wait(done)
    await engine.wait(paused)

    ids = {entry.execution_id for entry in engine.list_executions("carol")}
    assert ids == {done, paused}
    only_paused = engine.list_executions("carol", status=ExecutionStatus.PAUSED)
    assert [entry.execution_id for entry in only_paused] == [paused]
    assert len(engine.list_executions("carol", limit=1)) == 1


@pytest.mark.asyncio
async def test_blocking_sync_tool_times_out_without_stalling_the_loop():
    def blocking(**kwargs):
        time.sleep(0.5)
        return {"late": True}

    ticks = 0

    async def tick():
        nonlocal ticks
        while True:
            ticks += 1
            await asyncio.sleep(0.01)

    engine = make_engine(slow_workflow(timeout=0.1), services=make_services(slow=blocking))
    ticker = asyncio.create_task(tick())
    execution_id = await engine.create_execution("slow", {})
    state = await engine.wait(execution_id, timeout=5)
    ticker.cancel()

    assert state.status == ExecutionStatus.FAILED
    assert state.error.code == "RETRIES_EXHAUSTED"
    assert "timed out" in state.error.message
    assert ticks >= 5
    failed = (await collect_events(engine, execution_id))[-1]
    assert failed.data["error"]["details"]["cause"] == "NODE_TIMEOUT"


@pytest.mark.asyncio
async def test_failed_result_on_required_node_fails_execution():
    executor = RejectingToolExecutor(retryable=False)
    engine = make_engine(
        optional_tool_workflow(optional=False), executors=with_tool_executor(executor)
    )

    execution_id = await engine.create_execution("optional", {})
    state = await engine.wait(execution_id)

    assert state.status == ExecutionStatus.FAILED
    assert state.error.code == "UPSTREAM_REJECTED"
    assert state.error.node_id == "fetch"
    assert state.error.message == "upstream said no"
    assert executor.calls == 1


@pytest.mark.asyncio
async def test_retryable_failed_result_is_retried_until_exhausted():
    executor = RejectingToolExecutor(retryable=True)
    engine = make_engine(
        optional_tool_workflow(optional=False), executors=with_tool_executor(executor)
    )

    execution_id = await engine.create_execution("optional", {})
    state = await engine.wait(execution_id)

    assert state.status == ExecutionStatus.FAILED
    assert state.error.code == "RETRIES_EXHAUSTED"
    assert "upstream said no" in state.error.message
    assert executor.calls == 3


@pytest.mark.asyncio
async def test_retryable_failed_result_on_optional_node_is_recorded():
    executor = RejectingToolExecutor(retryable=True)
    engine = make_engine(optional_tool_workflow(), executors=with_tool_executor(executor))

    execution_id = await engine.create_execution("optional", {})
    state = await engine.wait(execution_id)

    assert state.status == ExecutionStatus.COMPLETED
    assert executor.calls == 3
    assert state.outputs["fetch"].status == NodeStatus.FAILED
    assert state.outputs["fetch"].output == {"rejected": True}
    failed = [e for e in await collect_events(engine, execution_id) if e.type == EventType.NODE_FAILED]
    assert failed[0].data["optional"] is True
    assert failed[0].data["attempts"] == 3


@pytest.mark.asyncio
async def test_retry_delay_grows_with_backoff(monkeypatch):
    delays = []

    async def record_sleep(self, handle, delay):
        delays.append(delay)

    monkeypatch.setattr(WorkflowEngine, "_sleep", record_sleep)
    workflow = optional_tool_workflow(optional=False)
    workflow["nodes"][1]["execution"].update({"retries": 3, "retry_delay": 0.5, "retry_backoff": 2})
    flaky = FlakyTool()
    engine = make_engine(workflow, services=make_services(flaky=flaky))

    execution_id = await engine.create_execution("optional", {})
    state = await engine.wait(execution_id)

    assert state.status == ExecutionStatus.FAILED
    assert flaky.calls == 4
    assert delays == [0.5, 1.0, 2.0]


@pytest.mark.asyncio
async def test_finished_executions_are_read_back_from_storage():
    engine = make_engine(linear_workflow(), human_workflow(), services=make_services(ScriptedLLM(["s"])))
    done = await engine.create_execution("linear", {"msg": "hi"})
    waiting = await engine.create_execution("review", {"topic": "t"})
    await engine.wait(done)
    await engine.wait(waiting)

    assert done not in engine._handles
    assert waiting in engine._handles
    state = await engine.get_execution(done)
    assert state.status == ExecutionStatus.COMPLETED
    assert state.final_output == {"msg": "hi"}
    events = await collect_events(engine, done)
    assert events[0].type == EventType.STARTED
    assert events[-1].type == EventType.COMPLETED


@pytest.mark.asyncio
async def test_finished_execution_events_expire_from_the_bus():
    bus = InMemoryEventBus(backlog_ttl=0.01)
    engine = make_engine(linear_workflow(), event_bus=bus)
    execution_id = await engine.create_execution("linear", {"msg": "hi"})
    await engine.wait(execution_id)

    await asyncio.sleep(0.05)

    assert bus.retained() == []
    assert await collect_events(engine, execution_id) == []
    assert engine.registry.get(execution_id).status == ExecutionStatus.COMPLETED
