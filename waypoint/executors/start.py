"""Entry node: turns the caller's initial payload into workflow variables."""

from __future__ import annotations

from typing import Any, Dict, List, Mapping

from ..contracts import NodeResult, NodeType, StartConfig, StartNode
from ..errors import MissingRequiredInputError, WorkflowValidationError
from ..expressions import resolve_reference
from ..models import ExecutionState
from .base import ExecutionContext, NodeExecutor, matches_type


def prepare_inputs(config: StartConfig, data: Mapping[str, Any], node_id: str = "") -> Dict[str, Any]:
    """Map, default and validate the initial payload.

    Raises ``MissingRequiredInputError`` for absent required inputs and
    ``WorkflowValidationError`` for values of the wrong declared type.
    """
    if config.input_mapping:
        scope = {**data, "input": data, "data": data}
        variables = {
            name: resolve_reference(reference, scope)
            for name, reference in config.input_mapping.items()
        }
    else:
        variables = dict(data)

    for spec in config.inputs:
        if variables.get(spec.name) is None and spec.default is not None:
            variables[spec.name] = spec.default

    missing: List[str] = [
        spec.name
        for spec in config.inputs
        if spec.required and variables.get(spec.name) in (None, "")
    ]
    if missing:
        raise MissingRequiredInputError(
            f"Missing required input(s): {', '.join(missing)}",
            node_id=node_id or None,
            details={"missing": missing},
        )

    wrong = [
        f"{spec.name} (expected {spec.type})"
        for spec in config.inputs
        if variables.get(spec.name) is not None and not matches_type(variables[spec.name], spec.type)
    ]
    if wrong:
        raise WorkflowValidationError(
            f"Input type mismatch: {', '.join(wrong)}",
            node_id=node_id or None,
            issues=wrong,
        )
    return variables


class StartExecutor(NodeExecutor):
    node_type = NodeType.START

    async def execute(
        self, node: StartNode, state: ExecutionState, context: ExecutionContext
    ) -> NodeResult:
        variables = prepare_inputs(node.config, state.initial_data, node.id)
        return NodeResult(output=variables, state_updates=variables)
