"""Direct tool invocation node."""

from __future__ import annotations

from typing import Any, Dict

from ..contracts import NodeResult, NodeStatus, NodeType, ToolNode
from ..errors import (
    PermanentExecutionError,
    TransientExecutionError,
    WaypointError,
    is_transient,
)
from ..models import ExecutionState
from ..templates import resolve_value
from .base import ExecutionContext, NodeExecutor


class ToolExecutor(NodeExecutor):
    node_type = NodeType.TOOL

    async def execute(
        self, node: ToolNode, state: ExecutionState, context: ExecutionContext
    ) -> NodeResult:
        cfg = node.config
        tools = context.services.tools
        if tools is None:
            raise PermanentExecutionError(
                "No tool service configured", code="TOOL_SERVICE_UNAVAILABLE", node_id=node.id
            )

        parameters = resolve_value(cfg.parameters, context.scope(state, node.id))
        try:
            result = await tools.invoke(cfg.tool_id, parameters)
        except WaypointError as exc:
            exc.node_id = exc.node_id or node.id
            raise
        except Exception as exc:
            if is_transient(exc):
                raise TransientExecutionError(
                    f"Tool '{cfg.tool_id}' failed: {exc}", node_id=node.id
                ) from exc
            raise PermanentExecutionError(
                f"Tool '{cfg.tool_id}' failed: {exc}", code="TOOL_FAILED", node_id=node.id
            ) from exc

        updates = {cfg.output_variable: result} if cfg.output_variable else {}
        return NodeResult(output=result, state_updates=updates)

    def failure_result(self, node: ToolNode, error: WaypointError) -> NodeResult:
        mapping = node.config.error_mapping
        message = mapping.message if mapping and mapping.message else error.message
        output: Dict[str, Any] = {
            "error": True,
            "message": message,
            "tool_id": node.config.tool_id,
            "code": error.code,
        }
        updates: Dict[str, Any] = {}
        if node.config.output_variable:
            fallback = mapping.default if mapping and mapping.default is not None else output
            updates[node.config.output_variable] = fallback
        return NodeResult(
            status=NodeStatus.FAILED,
            output=output,
            state_updates=updates,
            error=error.to_dict(),
        )
