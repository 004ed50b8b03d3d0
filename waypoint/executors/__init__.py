"""Node executors, one per ``NodeType``."""

from __future__ import annotations

from typing import Dict, Type

from ..contracts import NodeType
from .agent import AgentExecutor, resolve_model_id
from .base import ExecutionContext, NodeExecutor
from .decision import DecisionExecutor
from .end import EndExecutor
from .human import HumanExecutor
from .start import StartExecutor, prepare_inputs
from .tool import ToolExecutor

EXECUTOR_TYPES: Dict[NodeType, Type[NodeExecutor]] = {
    NodeType.START: StartExecutor,
    NodeType.END: EndExecutor,
    NodeType.AGENT: AgentExecutor,
    NodeType.TOOL: ToolExecutor,
    NodeType.DECISION: DecisionExecutor,
    NodeType.HUMAN: HumanExecutor,
}


def default_executors() -> Dict[NodeType, NodeExecutor]:
    """A fresh executor instance for every node type."""
    return {node_type: cls() for node_type, cls in EXECUTOR_TYPES.items()}


__all__ = [
    "AgentExecutor",
    "DecisionExecutor",
    "EXECUTOR_TYPES",
    "EndExecutor",
    "ExecutionContext",
    "HumanExecutor",
    "NodeExecutor",
    "StartExecutor",
    "ToolExecutor",
    "default_executors",
    "prepare_inputs",
    "resolve_model_id",
]
