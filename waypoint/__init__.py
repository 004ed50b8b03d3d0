"""Waypoint: durable agentic workflow execution."""

from .catalog import WorkflowCatalog, load_workflow
from .config import WaypointConfig, load_config
from .contracts import HumanResponse, NodeResult, NodeType, WorkflowDefinition
from .engine import WorkflowEngine
from .events import WorkflowEvent, get_event_bus
from .models import ExecutionOptions, ExecutionState, ExecutionStatus
from .persistence import get_repository
from .registry import ExecutionRegistry
from .scheduler import DAGScheduler
from .services import LocalToolService, NodeServices
from .state import StateManager

__version__ = "0.1.0"
__all__ = [
    "DAGScheduler",
    "ExecutionOptions",
    "ExecutionRegistry",
    "ExecutionState",
    "ExecutionStatus",
    "HumanResponse",
    "LocalToolService",
    "NodeResult",
    "NodeServices",
    "NodeType",
    "StateManager",
    "WaypointConfig",
    "WorkflowCatalog",
    "WorkflowDefinition",
    "WorkflowEngine",
    "WorkflowEvent",
    "get_event_bus",
    "get_repository",
    "load_config",
    "load_workflow",
]
