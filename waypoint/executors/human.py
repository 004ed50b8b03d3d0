"""Human-in-the-loop checkpoint node."""

from __future__ import annotations

import logging
from typing import Any, Dict, List

from ..constants import HUMAN_RESPONSE_PREFIX
from ..contracts import (
    HumanNode,
    HumanResponse,
    NodeResult,
    NodeStatus,
    NodeType,
    PendingCheckpoint,
)
from ..errors import InvalidResponseError
from ..expressions import resolve_reference
from ..models import ExecutionState, utcnow
from .base import ExecutionContext, NodeExecutor, matches_type

logger = logging.getLogger(__name__)


class HumanExecutor(NodeExecutor):
    """Produces a pending checkpoint and later turns the answer into a result."""

    node_type = NodeType.HUMAN

    async def execute(
        self, node: HumanNode, state: ExecutionState, context: ExecutionContext
    ) -> NodeResult:
        cfg = node.config
        scope = context.scope(state, node.id)
        display = None
        if cfg.show_data:
            display = {
                path.removeprefix("$."): resolve_reference(path, scope) for path in cfg.show_data
            }
        checkpoint = PendingCheckpoint(
            node_id=node.id,
            node_name=node.display_name(context.language),
            message=self.render(cfg.message, scope),
            options=cfg.options,
            input_schema=cfg.input_schema,
            display_data=display,
        )
        return NodeResult(
            status=NodeStatus.PAUSED,
            output={"checkpoint_id": checkpoint.id, "awaiting_response": True},
            checkpoint=checkpoint,
        )

    def resume(self, node: HumanNode, state: ExecutionState, response: HumanResponse) -> NodeResult:
        """Validate ``response`` and build the node's completed result."""
        cfg = node.config
        allowed = [option.value for option in cfg.options]
        if allowed and response.response not in allowed:
            raise InvalidResponseError(
                f"Response '{response.response}' is not one of {allowed}",
                node_id=node.id,
            )
        issues = self._schema_issues(cfg.input_schema or {}, response.data)
        if issues:
            raise InvalidResponseError(
                f"Response data is invalid: {'; '.join(issues)}",
                node_id=node.id,
                issues=issues,
            )

        payload = {
            "checkpoint_id": response.checkpoint_id,
            "response": response.response,
            "data": response.data,
            "responded_at": utcnow().isoformat(),
        }
        updates: Dict[str, Any] = {f"{HUMAN_RESPONSE_PREFIX}{node.id}": payload}
        if cfg.output_variable:
            updates[cfg.output_variable] = payload
        logger.info(f"Human node {node.id} answered with '{response.response}'")
        return NodeResult(output=payload, state_updates=updates, branch=response.response)

    @staticmethod
    def _schema_issues(schema: Dict[str, Any], data: Dict[str, Any]) -> List[str]:
        issues = [
            f"'{key}' is required"
            for key in schema.get("required", [])
            if data.get(key) in (None, "")
        ]
        for key, prop in (schema.get("properties") or {}).items():
            if key in data and data[key] is not None and not matches_type(data[key], prop.get("type")):
                issues.append(f"'{key}' should be of type {prop.get('type')}")
        return issues
