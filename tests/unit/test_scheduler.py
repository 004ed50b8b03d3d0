import pytest

from tests.fixtures.workflows import branch_workflow, cycle_workflow, human_workflow, linear_workflow
from waypoint.catalog import parse_workflow
from waypoint.contracts import EdgeCondition, NodeResult
from waypoint.errors import IterationLimitExceeded, NoMatchingEdgeError, WorkflowValidationError
from waypoint.models import ExecutionState
from waypoint.persistence import InMemoryExecutionRepository
from waypoint.scheduler import DAGScheduler
from waypoint.state import StateManager

scheduler = DAGScheduler()
states = StateManager(InMemoryExecutionRepository())


def new_state(workflow):
    return states.create_state(workflow, "tester", {})


def advance(state, node_id, output=None, branch=None, updates=None):
    result = NodeResult(output=output, branch=branch, state_updates=updates or {})
    return states.apply_node_result(state, node_id, result)


def test_starts_at_start_node_and_follows_edges():
    workflow = parse_workflow(linear_workflow())
    state = new_state(workflow)

    assert scheduler.next_node(workflow, state) == "start"
    state = advance(state, "start")
    assert scheduler.next_node(workflow, state) == "echo"
    state = advance(state, "echo")
    assert scheduler.next_node(workflow, state) == "end"
    state = advance(state, "end")
    assert scheduler.next_node(workflow, state) is None


def test_branch_edges_follow_the_node_branch():
    workflow = parse_workflow(branch_workflow())
    state = advance(new_state(workflow), "start")

    assert scheduler.next_node(workflow, advance(state, "check", branch="true")) == "high"
    assert scheduler.next_node(workflow, advance(state, "check", branch="false")) == "low"


def _conditional_workflow(default=True):
    edges = [
        {"source": "start", "target": "route"},
        {
            "source": "route",
            "target": "big",
            "condition": {"type": "expression", "expression": "amount > 100"},
        },
        {
            "source": "route",
            "target": "vip",
            "condition": {"type": "equals", "field": "$.tier", "value": "gold"},
        },
    ]
    if default:
        edges.append({"source": "route", "target": "small", "default": True})
    return parse_workflow(
        {
            "id": "conditional",
            "nodes": [
                {"id": "start", "type": "start"},
                {"id": "route", "type": "tool", "config": {"tool_id": "echo"}},
                {"id": "big", "type": "end"},
                {"id": "vip", "type": "end"},
                {"id": "small", "type": "end"},
            ],
            "edges": edges,
        }
    )


def test_first_matching_edge_wins_and_default_is_fallback():
    workflow = _conditional_workflow()
    base = advance(new_state(workflow), "start")

    both = advance(base, "route", updates={"amount": 500, "tier": "gold"})
    assert scheduler.next_nodes(workflow, both) == ["big", "vip"]
    assert scheduler.next_node(workflow, both) == "big"

    vip = advance(base, "route", updates={"amount": 5, "tier": "gold"})
    assert scheduler.next_node(workflow, vip) == "vip"

    neither = advance(base, "route", updates={"amount": 5})
    assert scheduler.next_node(workflow, neither) == "small"


def test_no_matching_edge_raises():
    workflow = _conditional_workflow(default=False)
    state = advance(advance(new_state(workflow), "start"), "route", updates={"amount": 1})

    with pytest.raises(NoMatchingEdgeError) as exc_info:
        scheduler.next_node(workflow, state)
    assert exc_info.value.node_id == "route"


def test_exists_and_contains_conditions():
    scope = {"user": {"name": "Ada"}, "tags": ["vip"], "note": "urgent request"}

    assert scheduler.evaluate_condition(EdgeCondition(type="exists", field="user.name"), scope)
    assert not scheduler.evaluate_condition(EdgeCondition(type="exists", field="user.age"), scope)
    assert scheduler.evaluate_condition(EdgeCondition(type="contains", field="tags", value="vip"), scope)
    assert scheduler.evaluate_condition(EdgeCondition(type="contains", field="note", value="urgent"), scope)
    assert not scheduler.evaluate_condition(EdgeCondition(type="contains", field="nope", value="x"), scope)
    assert not scheduler.evaluate_condition(EdgeCondition(type="never"), scope)


def test_iteration_limit():
    workflow = parse_workflow(cycle_workflow(max_iterations=2))
    node = workflow.node("a")
    state = new_state(workflow)
    state = advance(state, "a")
    scheduler.check_iteration_limit(workflow, node, state)
    state = advance(state, "a")

    with pytest.raises(IterationLimitExceeded) as exc_info:
        scheduler.check_iteration_limit(workflow, node, state)
    assert exc_info.value.node_id == "a"


def test_valid_workflows_have_no_issues():
    for builder in (linear_workflow, branch_workflow, human_workflow, cycle_workflow):
        assert scheduler.validate(parse_workflow(builder())) == []


def test_validation_reports_structural_problems():
    workflow = parse_workflow(
        {
            "id": "broken",
            "nodes": [
                {"id": "start", "type": "start"},
                {"id": "check", "type": "decision", "config": {"expression": "x >"}},
                {"id": "orphan", "type": "tool", "config": {"tool_id": "echo", "parameters": {"p": "{{#if}}"}}},
                {"id": "end", "type": "end"},
            ],
            "edges": [
                {"source": "start", "target": "check"},
                {"source": "check", "target": "end", "branch": "true"},
                {"source": "check", "target": "ghost", "branch": "maybe"},
                {"source": "orphan", "target": "end"},
            ],
        }
    )
    issues = "\n".join(scheduler.validate(workflow))

    assert "unknown target node 'ghost'" in issues
    assert "undeclared branch 'maybe'" in issues
    assert "branch 'false' has no matching edge" in issues
    assert "'orphan' is not reachable" in issues
    assert "Node 'check'" in issues
    assert "Node 'orphan'" in issues

    with pytest.raises(WorkflowValidationError) as exc_info:
        scheduler.ensure_valid(workflow)
    assert exc_info.value.issues


def test_cycles_rejected_when_disabled():
    definition = cycle_workflow()
    definition["config"]["allow_cycles"] = False
    workflow = parse_workflow(definition)

    assert scheduler.find_cycle(workflow) == ["a", "b", "a"]
    assert any("Cycle detected" in issue for issue in scheduler.validate(workflow))


def test_missing_start_and_end_nodes():
    workflow = parse_workflow(
        {"id": "empty", "nodes": [{"id": "t", "type": "tool", "config": {"tool_id": "x"}}]}
    )
    issues = scheduler.validate(workflow)
    assert "Workflow must have exactly one start node, found 0" in issues
    assert "Workflow must have at least one end node" in issues


def test_state_without_current_node_and_no_start():
    workflow = parse_workflow(
        {"id": "headless", "nodes": [{"id": "end", "type": "end"}]}
    )
    state = ExecutionState(execution_id="e", workflow_id="headless", owner_id="o")
    assert scheduler.next_node(workflow, state) is None
