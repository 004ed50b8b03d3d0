"""Executor contract shared by every node type."""

from __future__ import annotations

import abc
import logging
from dataclasses import dataclass, field
from typing import Any, ClassVar, Dict, Optional

from ..constants import DEFAULT_PLATFORM_MODEL
from ..contracts import NodeResult, NodeStatus, NodeType, WorkflowDefinition
from ..errors import WaypointError
from ..models import ExecutionState
from ..services import NodeServices, SourceCache
from ..state import StateManager
from ..templates import render_template

logger = logging.getLogger(__name__)

_JSON_TYPES: Dict[str, Any] = {
    "string": str,
    "number": (int, float),
    "integer": int,
    "boolean": bool,
    "object": dict,
    "array": list,
}


def matches_type(value: Any, type_name: Optional[str]) -> bool:
    """JSON-schema style primitive type check; unknown type names always match."""
    if not type_name or type_name not in _JSON_TYPES:
        return True
    if type_name in ("number", "integer") and isinstance(value, bool):
        return False
    return isinstance(value, _JSON_TYPES[type_name])


@dataclass
class ExecutionContext:
    """Read-only run-time context handed to executors alongside the state."""

    execution_id: str
    workflow: WorkflowDefinition
    state_manager: StateManager
    services: NodeServices = field(default_factory=NodeServices)
    sources: Optional[SourceCache] = None
    owner_id: str = ""
    language: str = "en"
    user_model_id: Optional[str] = None
    default_model_id: Optional[str] = None
    platform_model_id: str = DEFAULT_PLATFORM_MODEL

    def __post_init__(self) -> None:
        if self.sources is None:
            self.sources = SourceCache(self.services.sources)

    def scope(self, state: ExecutionState, node_id: str) -> Dict[str, Any]:
        return self.state_manager.template_scope(state, self.workflow, node_id)


class NodeExecutor(abc.ABC):
    """Strategy for one node type.

    ``execute`` must not mutate ``state``; all changes travel back through
    ``NodeResult.state_updates``. Raise ``TransientExecutionError`` for
    failures worth retrying and any other ``WaypointError`` for the rest.
    """

    node_type: ClassVar[NodeType]

    @abc.abstractmethod
    async def execute(
        self, node: Any, state: ExecutionState, context: ExecutionContext
    ) -> NodeResult:
        raise NotImplementedError

    def failure_result(self, node: Any, error: WaypointError) -> NodeResult:
        """Recorded output for an optional node whose retries ran out."""
        return NodeResult(
            status=NodeStatus.FAILED,
            output={"error": True, "message": error.message, "code": error.code},
            error=error.to_dict(),
        )

    @staticmethod
    def render(template: str, scope: Dict[str, Any]) -> str:
        return render_template(template, scope)
