"""Graph scheduling: next-node selection, edge conditions and load-time validation."""

from __future__ import annotations

import ast
import logging
from collections import deque
from typing import Any, Dict, List, Optional

from .contracts import (
    ConditionType,
    DecisionNode,
    EdgeCondition,
    EdgeSpec,
    HumanNode,
    NodeType,
    WorkflowDefinition,
)
from .errors import (
    ExpressionError,
    IterationLimitExceeded,
    NoMatchingEdgeError,
    TemplateError,
    WorkflowValidationError,
)
from .expressions import MISSING, compare, compile_expression, evaluate_bool, resolve_reference
from .models import ExecutionState
from .templates import validate_value

logger = logging.getLogger(__name__)


def condition_scope(state: ExecutionState) -> Dict[str, Any]:
    """Names visible to edge conditions.

    Variables are reachable directly and under ``data``; the most recent
    node's output is ``result`` and its branch label ``branch``.
    """
    last = state.last_output()
    scope: Dict[str, Any] = dict(state.variables)
    scope.update(
        {
            "data": state.variables,
            "result": last.output if last else None,
            "branch": last.branch if last else None,
            "outputs": state.output_values(),
            "input": state.initial_data,
        }
    )
    return scope


class DAGScheduler:
    """Selects the next node of a sequential-with-branching workflow."""

    # ------------------------------------------------------------------
    # Run-time selection
    def next_node(self, workflow: WorkflowDefinition, state: ExecutionState) -> Optional[str]:
        """Return the id of the next node, or ``None`` when the graph is exhausted.

        Raises ``NoMatchingEdgeError`` when the current node has outbound
        edges but none of them match.
        """
        targets = self.next_nodes(workflow, state)
        return targets[0] if targets else None

    def next_nodes(self, workflow: WorkflowDefinition, state: ExecutionState) -> List[str]:
        """All eligible targets in declaration order.

        The engine only ever follows the first one.
        """
        if state.current_node is None:
            start = workflow.start_node
            return [start.id] if start else []
        edges = workflow.outgoing(state.current_node)
        if not edges:
            return []
        matched = self.matching_edges(edges, state)
        if not matched:
            raise NoMatchingEdgeError(
                f"No outgoing edge of '{state.current_node}' matched",
                node_id=state.current_node,
            )
        return [edge.target for edge in matched]

    def matching_edges(self, edges: List[EdgeSpec], state: ExecutionState) -> List[EdgeSpec]:
        scope = condition_scope(state)
        matched = [
            edge
            for edge in edges
            if not edge.default and self.evaluate_condition(edge.condition, scope)
        ]
        if matched:
            return matched
        return [edge for edge in edges if edge.default][:1]

    def evaluate_condition(self, condition: EdgeCondition, scope: Dict[str, Any]) -> bool:
        kind = condition.type
        if kind == ConditionType.ALWAYS:
            return True
        if kind == ConditionType.NEVER:
            return False
        if kind == ConditionType.BRANCH:
            branch = scope.get("branch")
            return branch is not None and str(branch) == str(condition.branch)
        if kind == ConditionType.EXPRESSION:
            return evaluate_bool(condition.expression or "", scope)

        value = resolve_reference(condition.field or "", scope, MISSING)
        if kind == ConditionType.EXISTS:
            return value is not MISSING and value is not None
        if value is MISSING:
            return False
        if kind == ConditionType.EQUALS:
            return compare(ast.Eq(), value, condition.value)
        if kind == ConditionType.CONTAINS:
            if isinstance(value, str):
                return str(condition.value) in value
            if isinstance(value, (list, tuple, dict)):
                return condition.value in value
            return False
        return False

    def check_iteration_limit(self, workflow: WorkflowDefinition, node: Any, state: ExecutionState) -> None:
        limit = node.execution.max_iterations or workflow.config.max_iterations
        count = state.iteration_count(node.id)
        if count >= limit:
            raise IterationLimitExceeded(
                f"Node '{node.id}' reached its iteration limit of {limit}",
                node_id=node.id,
                details={"iterations": count, "limit": limit},
            )

    # ------------------------------------------------------------------
    # Load-time validation
    def validate(self, workflow: WorkflowDefinition) -> List[str]:
        """Return a list of structural problems; empty when the graph is sound."""
        issues: List[str] = []
        ids = [node.id for node in workflow.nodes]
        seen = set()
        for node_id in ids:
            if node_id in seen:
                issues.append(f"Duplicate node id '{node_id}'")
            seen.add(node_id)

        if len(ids) > workflow.config.max_nodes:
            issues.append(
                f"Workflow has {len(ids)} nodes, more than the allowed {workflow.config.max_nodes}"
            )

        starts = workflow.nodes_of_type(NodeType.START)
        if len(starts) != 1:
            issues.append(f"Workflow must have exactly one start node, found {len(starts)}")
        if not workflow.nodes_of_type(NodeType.END):
            issues.append("Workflow must have at least one end node")

        for edge in workflow.edges:
            for end in ("source", "target"):
                ref = getattr(edge, end)
                if ref not in seen:
                    issues.append(f"Edge {edge.source}->{edge.target} references unknown {end} node '{ref}'")

        for node in workflow.nodes:
            outgoing = workflow.outgoing(node.id)
            if node.node_type == NodeType.END:
                if outgoing:
                    issues.append(f"End node '{node.id}' cannot have outgoing edges")
            elif not outgoing:
                issues.append(f"Node '{node.id}' has no outgoing edges")
            if len([edge for edge in outgoing if edge.default]) > 1:
                issues.append(f"Node '{node.id}' has more than one default edge")
            issues.extend(self._check_branches(node, outgoing))
            issues.extend(self._check_expressions(node, outgoing))

        if len(starts) == 1:
            reachable = self.reachable(workflow)
            unreachable = [node_id for node_id in ids if node_id not in reachable]
            for node_id in unreachable:
                issues.append(f"Node '{node_id}' is not reachable from the start node")

        if not workflow.config.allow_cycles:
            cycle = self.find_cycle(workflow)
            if cycle:
                issues.append(f"Cycle detected but cycles are disabled: {' -> '.join(cycle)}")
        return issues

    def ensure_valid(self, workflow: WorkflowDefinition) -> None:
        issues = self.validate(workflow)
        if issues:
            raise WorkflowValidationError(
                f"Workflow '{workflow.id}' is invalid: {'; '.join(issues)}",
                issues=issues,
            )

    def _check_branches(self, node: Any, outgoing: List[EdgeSpec]) -> List[str]:
        issues: List[str] = []
        labels = [
            edge.condition.branch
            for edge in outgoing
            if edge.condition.type == ConditionType.BRANCH
        ]
        has_default = any(edge.default for edge in outgoing)

        if isinstance(node, DecisionNode):
            declared = node.config.declared_branches()
            for label in labels:
                if label not in declared:
                    issues.append(f"Edge from decision '{node.id}' uses undeclared branch '{label}'")
            if not has_default:
                for branch in declared:
                    if branch not in labels:
                        issues.append(f"Decision '{node.id}' branch '{branch}' has no matching edge")
        elif isinstance(node, HumanNode):
            values = [option.value for option in node.config.options]
            for label in labels:
                if label not in values:
                    issues.append(f"Edge from human node '{node.id}' uses unknown option '{label}'")
        elif labels:
            issues.append(f"Branch edges are only allowed from decision or human nodes ('{node.id}')")
        return issues

    def _check_expressions(self, node: Any, outgoing: List[EdgeSpec]) -> List[str]:
        issues: List[str] = []
        sources: List[str] = [
            edge.condition.expression
            for edge in outgoing
            if edge.condition.type == ConditionType.EXPRESSION and edge.condition.expression
        ]
        if isinstance(node, DecisionNode) and node.config.expression:
            sources.append(node.config.expression)
        for source in sources:
            try:
                compile_expression(source)
            except ExpressionError as exc:
                issues.append(f"Node '{node.id}': {exc.message}")

        templates: List[Any] = []
        node_type = node.node_type
        if node_type == NodeType.AGENT:
            templates = [node.config.system, node.config.prompt]
        elif node_type == NodeType.TOOL:
            templates = [node.config.parameters]
        elif node_type == NodeType.HUMAN:
            templates = [node.config.message]
        for template in templates:
            try:
                validate_value(template)
            except TemplateError as exc:
                issues.append(f"Node '{node.id}': {exc.message}")
        return issues

    def reachable(self, workflow: WorkflowDefinition) -> set:
        start = workflow.start_node
        if start is None:
            return set()
        visited = {start.id}
        queue = deque([start.id])
        while queue:
            current = queue.popleft()
            for edge in workflow.outgoing(current):
                if edge.target not in visited:
                    visited.add(edge.target)
                    queue.append(edge.target)
        return visited

    def find_cycle(self, workflow: WorkflowDefinition) -> Optional[List[str]]:
        """Return one cycle as a node path, or ``None`` for an acyclic graph."""
        adjacency: Dict[str, List[str]] = {node.id: [] for node in workflow.nodes}
        for edge in workflow.edges:
            adjacency.setdefault(edge.source, []).append(edge.target)

        white, grey, black = 0, 1, 2
        colour = {node_id: white for node_id in adjacency}
        path: List[str] = []

        def visit(node_id: str) -> Optional[List[str]]:
            colour[node_id] = grey
            path.append(node_id)
            for target in adjacency.get(node_id, []):
                if colour.get(target, white) == grey:
                    return path[path.index(target):] + [target]
                if colour.get(target, white) == white:
                    found = visit(target)
                    if found:
                        return found
            path.pop()
            colour[node_id] = black
            return None

        for node_id in adjacency:
            if colour[node_id] == white:
                found = visit(node_id)
                if found:
                    return found
        return None


__all__ = ["DAGScheduler", "condition_scope"]
