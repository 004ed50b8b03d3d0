"""Exit node: projects state into the execution's final output."""

from __future__ import annotations

import json
from typing import Any, Dict

from ..contracts import EndNode, NodeResult, NodeType
from ..expressions import resolve_reference
from ..models import ExecutionState, utcnow
from ..templates import stringify
from .base import ExecutionContext, NodeExecutor


class EndExecutor(NodeExecutor):
    node_type = NodeType.END

    async def execute(
        self, node: EndNode, state: ExecutionState, context: ExecutionContext
    ) -> NodeResult:
        cfg = node.config
        variables = state.variables

        if cfg.output_mapping:
            scope = context.scope(state, node.id)
            output: Dict[str, Any] = {
                key: resolve_reference(reference, scope)
                for key, reference in cfg.output_mapping.items()
            }
        elif cfg.include_fields or cfg.output_variables:
            selected = list(dict.fromkeys([*cfg.include_fields, *cfg.output_variables]))
            output = {key: variables[key] for key in selected if key in variables}
        else:
            output = {key: value for key, value in variables.items() if not key.startswith("_")}

        for key in cfg.exclude_fields:
            output.pop(key, None)

        if cfg.include_node_outputs:
            output["node_outputs"] = state.output_values()
        if cfg.include_metadata:
            output["metadata"] = {
                "execution_id": state.execution_id,
                "workflow_id": state.workflow_id,
                "steps": state.step + 1,
                "started_at": state.started_at.isoformat() if state.started_at else None,
                "completed_at": utcnow().isoformat(),
            }

        return NodeResult(output=self._format(output, cfg.output_format), is_terminal=True)

    @staticmethod
    def _format(output: Dict[str, Any], output_format: str) -> Any:
        if output_format == "text":
            if len(output) == 1:
                return stringify(next(iter(output.values())))
            return json.dumps(output, indent=2, ensure_ascii=False, default=str)
        if output_format == "raw" and len(output) == 1:
            return next(iter(output.values()))
        return output
