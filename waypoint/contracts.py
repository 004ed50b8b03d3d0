"""Workflow definition contracts and the node result returned by executors."""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from enum import Enum
from functools import cached_property
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .constants import (
    DEFAULT_AGENT_MAX_ITERATIONS,
    DEFAULT_AGENT_TEMPERATURE,
    DEFAULT_MAX_EXECUTION_TIME,
    DEFAULT_MAX_ITERATIONS,
    DEFAULT_MAX_NODES,
    DEFAULT_RETRY_DELAY,
    MAX_NODE_RETRIES,
    MAX_NODE_TIMEOUT,
)

logger = logging.getLogger(__name__)

CheckpointMode = Literal["every_node", "boundaries"]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class NodeType(str, Enum):
    """Closed set of node types the engine can dispatch."""

    START = "start"
    END = "end"
    AGENT = "agent"
    TOOL = "tool"
    DECISION = "decision"
    HUMAN = "human"


class ExecutionPolicy(BaseModel):
    """Timeout and retry policy applied by the engine around a node call."""

    timeout: Optional[float] = Field(default=None, gt=0, le=MAX_NODE_TIMEOUT)
    retries: int = Field(default=0, ge=0, le=MAX_NODE_RETRIES)
    retry_delay: float = Field(default=DEFAULT_RETRY_DELAY, ge=0, le=60)
    retry_backoff: float = Field(default=1.0, ge=1, le=10)
    optional: bool = False
    checkpoint: bool = False
    max_iterations: Optional[int] = Field(default=None, ge=1)


# ----------------------------------------------------------------------
# Per-type node configuration
class _NodeConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)


class InputVariable(_NodeConfig):
    name: str
    required: bool = False
    default: Any = None
    type: Optional[Literal["string", "number", "boolean", "object", "array"]] = None
    description: str = ""


class StartConfig(_NodeConfig):
    inputs: List[InputVariable] = Field(default_factory=list)
    input_mapping: Dict[str, str] = Field(default_factory=dict)


class EndConfig(_NodeConfig):
    output_mapping: Dict[str, str] = Field(default_factory=dict)
    include_fields: List[str] = Field(default_factory=list)
    exclude_fields: List[str] = Field(default_factory=list)
    output_variables: List[str] = Field(default_factory=list)
    include_node_outputs: bool = False
    include_metadata: bool = False
    output_format: Literal["json", "text", "raw"] = "json"
    status: Optional[str] = None


class AgentConfig(_NodeConfig):
    system: str = ""
    prompt: str = ""
    tools: List[str] = Field(default_factory=list)
    model_id: Optional[str] = None
    temperature: float = Field(default=DEFAULT_AGENT_TEMPERATURE, ge=0, le=2)
    max_tokens: Optional[int] = Field(default=None, gt=0)
    max_iterations: int = Field(default=DEFAULT_AGENT_MAX_ITERATIONS, ge=1, le=50)
    output_schema: Optional[Dict[str, Any]] = None
    output_variable: Optional[str] = None
    sources: List[str] = Field(default_factory=list)
    include_history: bool = False


class ErrorMapping(_NodeConfig):
    message: Optional[str] = None
    default: Any = None


class ToolConfig(_NodeConfig):
    tool_id: str = Field(min_length=1)
    parameters: Dict[str, Any] = Field(default_factory=dict)
    output_variable: Optional[str] = None
    optional: bool = False
    error_mapping: Optional[ErrorMapping] = None


SWITCH_OPERATORS = (
    "equals",
    "not_equals",
    "greater_than",
    "less_than",
    "greater_than_or_equal",
    "less_than_or_equal",
    "contains",
    "matches",
    "in_",
    "not_in",
)


class SwitchCondition(_NodeConfig):
    """One ``switch`` case; exactly one operator field must be set."""

    branch: str
    equals: Any = None
    not_equals: Any = None
    greater_than: Optional[float] = None
    less_than: Optional[float] = None
    greater_than_or_equal: Optional[float] = None
    less_than_or_equal: Optional[float] = None
    contains: Any = None
    matches: Optional[str] = None
    in_: Optional[List[Any]] = Field(default=None, alias="in")
    not_in: Optional[List[Any]] = None

    @model_validator(mode="after")
    def _one_operator(self) -> "SwitchCondition":
        if len(self.operators) != 1:
            raise ValueError(
                f"switch condition for branch '{self.branch}' must set exactly one operator"
            )
        return self

    @property
    def operators(self) -> List[str]:
        return [name for name in SWITCH_OPERATORS if name in self.model_fields_set]

    @property
    def operator(self) -> str:
        return self.operators[0]

    @property
    def operand(self) -> Any:
        return getattr(self, self.operator)


class DecisionConfig(_NodeConfig):
    mode: Literal["expression", "switch"] = "expression"
    expression: Optional[str] = None
    variable: Optional[str] = None
    conditions: List[SwitchCondition] = Field(default_factory=list)
    default_branch: str = "default"

    @model_validator(mode="after")
    def _check_mode(self) -> "DecisionConfig":
        if self.mode == "expression" and not self.expression:
            raise ValueError("expression decisions require 'expression'")
        if self.mode == "switch" and not self.variable:
            raise ValueError("switch decisions require 'variable'")
        return self

    def declared_branches(self) -> List[str]:
        if self.mode == "expression":
            return ["true", "false"]
        branches = [c.branch for c in self.conditions]
        if self.default_branch not in branches:
            branches.append(self.default_branch)
        return branches


class HumanOption(_NodeConfig):
    value: str
    label: Optional[str] = None
    style: str = "primary"

    @model_validator(mode="after")
    def _default_label(self) -> "HumanOption":
        if self.label is None:
            self.label = self.value
        return self


def _default_options() -> List[HumanOption]:
    return [HumanOption(value="continue", label="Continue", style="primary")]


class HumanConfig(_NodeConfig):
    message: str = "Please review and continue."
    options: List[HumanOption] = Field(default_factory=_default_options)
    input_schema: Optional[Dict[str, Any]] = None
    show_data: List[str] = Field(default_factory=list)
    output_variable: Optional[str] = None


# ----------------------------------------------------------------------
# Nodes
class _NodeBase(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str = Field(min_length=1)
    name: Union[str, Dict[str, str]] = ""
    description: str = ""
    execution: ExecutionPolicy = Field(default_factory=ExecutionPolicy)

    @property
    def node_type(self) -> NodeType:
        return NodeType(self.type)  # type: ignore[attr-defined]

    @property
    def is_optional(self) -> bool:
        return self.execution.optional

    def display_name(self, language: str = "en") -> str:
        """Return the localized name, falling back to English then the id."""
        if isinstance(self.name, dict):
            return self.name.get(language) or self.name.get("en") or self.id
        return self.name or self.id


class StartNode(_NodeBase):
    type: Literal["start"] = "start"
    config: StartConfig = Field(default_factory=StartConfig)


class EndNode(_NodeBase):
    type: Literal["end"] = "end"
    config: EndConfig = Field(default_factory=EndConfig)


class AgentNode(_NodeBase):
    type: Literal["agent"] = "agent"
    config: AgentConfig = Field(default_factory=AgentConfig)


class ToolNode(_NodeBase):
    type: Literal["tool"] = "tool"
    config: ToolConfig

    @property
    def is_optional(self) -> bool:
        return self.execution.optional or self.config.optional


class DecisionNode(_NodeBase):
    type: Literal["decision"] = "decision"
    config: DecisionConfig


class HumanNode(_NodeBase):
    type: Literal["human"] = "human"
    config: HumanConfig = Field(default_factory=HumanConfig)


Node = Annotated[
    Union[StartNode, EndNode, AgentNode, ToolNode, DecisionNode, HumanNode],
    Field(discriminator="type"),
]


# ----------------------------------------------------------------------
# Edges
class ConditionType(str, Enum):
    ALWAYS = "always"
    NEVER = "never"
    EXPRESSION = "expression"
    EQUALS = "equals"
    CONTAINS = "contains"
    EXISTS = "exists"
    BRANCH = "branch"


class EdgeCondition(BaseModel):
    type: ConditionType = ConditionType.ALWAYS
    expression: Optional[str] = None
    field: Optional[str] = None
    value: Any = None
    branch: Optional[str] = None

    @model_validator(mode="after")
    def _check_operands(self) -> "EdgeCondition":
        if self.type == ConditionType.EXPRESSION and not self.expression:
            raise ValueError("expression conditions require 'expression'")
        if self.type in (ConditionType.EQUALS, ConditionType.CONTAINS, ConditionType.EXISTS) and not self.field:
            raise ValueError(f"{self.type.value} conditions require 'field'")
        if self.type == ConditionType.BRANCH and self.branch is None:
            raise ValueError("branch conditions require 'branch'")
        return self


class EdgeSpec(BaseModel):
    """Directed edge; ``default`` edges match only when nothing else does."""

    id: Optional[str] = None
    source: str
    target: str
    condition: EdgeCondition = Field(default_factory=EdgeCondition)
    default: bool = False
    label: str = ""

    @model_validator(mode="before")
    @classmethod
    def _shorthand(cls, data: Any) -> Any:
        # Accept ``branch: "x"`` and ``condition: "always"`` shorthands.
        if not isinstance(data, dict):
            return data
        data = dict(data)
        if "branch" in data and "condition" not in data:
            data["condition"] = {"type": "branch", "branch": str(data.pop("branch"))}
        elif isinstance(data.get("condition"), str):
            data["condition"] = {"type": data["condition"]}
        return data


# ----------------------------------------------------------------------
# Workflow
class WorkflowSettings(BaseModel):
    max_execution_time: float = Field(default=DEFAULT_MAX_EXECUTION_TIME, gt=0)
    default_model_id: Optional[str] = None
    max_iterations: int = Field(default=DEFAULT_MAX_ITERATIONS, ge=1, le=1000)
    allow_cycles: bool = True
    max_nodes: int = Field(default=DEFAULT_MAX_NODES, ge=2)
    checkpoint_mode: Optional[CheckpointMode] = None


class WorkflowDefinition(BaseModel):
    """A loaded workflow graph. Treated as immutable once registered."""

    id: str = Field(min_length=1)
    name: Union[str, Dict[str, str]] = ""
    description: str = ""
    version: str = "1.0.0"
    enabled: bool = True
    config: WorkflowSettings = Field(default_factory=WorkflowSettings)
    nodes: List[Node] = Field(min_length=1)
    edges: List[EdgeSpec] = Field(default_factory=list)
    sources: List[str] = Field(default_factory=list)

    @field_validator("id")
    @classmethod
    def _id_chars(cls, value: str) -> str:
        if not all(ch.isalnum() or ch in "-_." for ch in value):
            raise ValueError("workflow id may only contain letters, digits, '-', '_' and '.'")
        return value

    @cached_property
    def node_index(self) -> Dict[str, Any]:
        return {node.id: node for node in self.nodes}

    def node(self, node_id: str) -> Optional[Any]:
        return self.node_index.get(node_id)

    def nodes_of_type(self, node_type: NodeType) -> List[Any]:
        return [node for node in self.nodes if node.node_type == node_type]

    @property
    def start_node(self) -> Any:
        starts = self.nodes_of_type(NodeType.START)
        return starts[0] if starts else None

    def outgoing(self, node_id: str) -> List[EdgeSpec]:
        """Outbound edges of ``node_id`` in declaration order."""
        return [edge for edge in self.edges if edge.source == node_id]

    def display_name(self, language: str = "en") -> str:
        if isinstance(self.name, dict):
            return self.name.get(language) or self.name.get("en") or self.id
        return self.name or self.id


# ----------------------------------------------------------------------
# Executor results
class NodeStatus(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    PAUSED = "paused"


class PendingCheckpoint(BaseModel):
    """Question a human node is waiting on, plus the correlation id to answer it."""

    id: str = Field(default_factory=lambda: f"ckpt-{uuid.uuid4()}")
    node_id: str
    node_name: str = ""
    type: Literal["human_input"] = "human_input"
    message: str = ""
    options: List[HumanOption] = Field(default_factory=_default_options)
    input_schema: Optional[Dict[str, Any]] = None
    display_data: Optional[Dict[str, Any]] = None
    created_at: datetime = Field(default_factory=_utcnow)


class NodeResult(BaseModel):
    """Outcome of a single executor call.

    Executors never touch execution state; everything they want changed is
    expressed through ``state_updates`` and merged by the state manager.
    """

    status: NodeStatus = NodeStatus.COMPLETED
    output: Any = None
    state_updates: Dict[str, Any] = Field(default_factory=dict)
    is_terminal: bool = False
    branch: Optional[str] = None
    error: Optional[Dict[str, Any]] = None
    retryable: bool = False
    checkpoint: Optional[PendingCheckpoint] = None

    @property
    def paused(self) -> bool:
        return self.status == NodeStatus.PAUSED


class HumanResponse(BaseModel):
    """Payload presented back to resume a paused execution."""

    checkpoint_id: str
    response: str
    data: Dict[str, Any] = Field(default_factory=dict)
