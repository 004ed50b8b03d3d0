"""Conditional branch node."""

from __future__ import annotations

import ast
import re
from typing import Any, Optional

from ..contracts import DecisionNode, NodeResult, NodeType, SwitchCondition
from ..errors import ExpressionError
from ..expressions import compare, evaluate, resolve_reference, truthy
from ..models import ExecutionState
from .base import ExecutionContext, NodeExecutor


def _as_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def match_condition(condition: SwitchCondition, value: Any) -> bool:
    operator, operand = condition.operator, condition.operand
    if operator == "equals":
        return compare(ast.Eq(), value, operand)
    if operator == "not_equals":
        return compare(ast.NotEq(), value, operand)
    if operator in ("greater_than", "less_than", "greater_than_or_equal", "less_than_or_equal"):
        number = _as_number(value)
        if number is None:
            return False
        return {
            "greater_than": number > operand,
            "less_than": number < operand,
            "greater_than_or_equal": number >= operand,
            "less_than_or_equal": number <= operand,
        }[operator]
    if operator == "contains":
        if isinstance(value, str):
            return str(operand) in value
        if isinstance(value, (list, tuple, dict)):
            return operand in value
        return False
    if operator == "matches":
        try:
            return value is not None and re.search(operand, str(value)) is not None
        except re.error as exc:
            raise ExpressionError(f"Invalid pattern '{operand}': {exc}") from exc
    if operator == "in_":
        return value in operand
    if operator == "not_in":
        return value not in operand
    return False


class DecisionExecutor(NodeExecutor):
    """Picks a branch label; never changes variables."""

    node_type = NodeType.DECISION

    async def execute(
        self, node: DecisionNode, state: ExecutionState, context: ExecutionContext
    ) -> NodeResult:
        cfg = node.config
        scope = context.scope(state, node.id)

        if cfg.mode == "expression":
            try:
                outcome = truthy(evaluate(cfg.expression or "", scope))
            except ExpressionError as exc:
                exc.node_id = node.id
                raise
            branch = "true" if outcome else "false"
            return NodeResult(
                output={"branch": branch, "value": outcome, "expression": cfg.expression},
                branch=branch,
            )

        value = resolve_reference(cfg.variable or "", scope)
        branch, matched = cfg.default_branch, None
        for index, condition in enumerate(cfg.conditions):
            if match_condition(condition, value):
                branch, matched = condition.branch, index
                break
        return NodeResult(
            output={"branch": branch, "value": value, "matched_condition": matched},
            branch=branch,
        )
