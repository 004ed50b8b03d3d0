"""LLM agent node with a bounded tool-calling loop."""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Dict, List, Optional

from ..contracts import AgentNode, NodeResult, NodeType
from ..errors import PermanentExecutionError, WaypointError, is_transient
from ..models import ExecutionState
from ..services import LLMRequest, LLMResponse
from ..templates import stringify
from .base import ExecutionContext, NodeExecutor, matches_type

logger = logging.getLogger(__name__)

_FENCE = re.compile(r"^```(?:json)?\s*(.*?)\s*```$", re.DOTALL)


def resolve_model_id(node_model: Optional[str], context: ExecutionContext) -> str:
    """Node override, then user selection, workflow, context and platform defaults."""
    return (
        node_model
        or context.user_model_id
        or context.workflow.config.default_model_id
        or context.default_model_id
        or context.platform_model_id
    )


def parse_structured(content: str, schema: Dict[str, Any], node_id: str) -> Any:
    """Parse a JSON reply and check it against the top level of ``schema``."""
    text = content.strip()
    fenced = _FENCE.match(text)
    if fenced:
        text = fenced.group(1)
    try:
        value = json.loads(text)
    except json.JSONDecodeError:
        start, end = text.find("{"), text.rfind("}")
        if start == -1 or end <= start:
            raise PermanentExecutionError(
                "Agent reply is not valid JSON", code="INVALID_STRUCTURED_OUTPUT", node_id=node_id
            )
        try:
            value = json.loads(text[start:end + 1])
        except json.JSONDecodeError as exc:
            raise PermanentExecutionError(
                f"Agent reply is not valid JSON: {exc.msg}",
                code="INVALID_STRUCTURED_OUTPUT",
                node_id=node_id,
            ) from exc

    if not matches_type(value, schema.get("type")):
        raise PermanentExecutionError(
            f"Agent reply should be of type {schema.get('type')}",
            code="INVALID_STRUCTURED_OUTPUT",
            node_id=node_id,
        )
    if isinstance(value, dict):
        missing = [key for key in schema.get("required", []) if key not in value]
        if missing:
            raise PermanentExecutionError(
                f"Agent reply is missing required field(s): {', '.join(missing)}",
                code="INVALID_STRUCTURED_OUTPUT",
                node_id=node_id,
            )
    return value


class AgentExecutor(NodeExecutor):
    node_type = NodeType.AGENT

    async def execute(
        self, node: AgentNode, state: ExecutionState, context: ExecutionContext
    ) -> NodeResult:
        cfg = node.config
        llm = context.services.llm
        if llm is None:
            raise PermanentExecutionError(
                "No LLM service configured", code="LLM_UNAVAILABLE", node_id=node.id
            )

        scope = context.scope(state, node.id)
        system = self.render(cfg.system, scope)
        prompt = self.render(cfg.prompt, scope) or stringify(state.variables)

        source_ids = list(dict.fromkeys([*context.workflow.sources, *cfg.sources]))
        if source_ids and context.sources is not None:
            sources = await context.sources.get(source_ids)
            if sources:
                blocks = [f'<source id="{sid}">\n{text}\n</source>' for sid, text in sources.items()]
                system = "\n\n".join(filter(None, [system, *blocks]))
        if cfg.output_schema:
            system = "\n\n".join(
                filter(
                    None,
                    [
                        system,
                        "Respond only with JSON matching this schema:\n"
                        + json.dumps(cfg.output_schema, indent=2),
                    ],
                )
            )

        tools = []
        if cfg.tools:
            if context.services.tools is None:
                raise PermanentExecutionError(
                    "Agent declares tools but no tool service is configured",
                    code="TOOL_SERVICE_UNAVAILABLE",
                    node_id=node.id,
                )
            tools = await context.services.tools.describe(cfg.tools)

        history_key = f"_agent_history_{node.id}"
        messages: List[Dict[str, Any]] = []
        if system:
            messages.append({"role": "system", "content": system})
        if cfg.include_history:
            messages.extend(state.variables.get(history_key, []))
        messages.append({"role": "user", "content": prompt})

        model_id = resolve_model_id(cfg.model_id, context)
        usage: Dict[str, int] = {}
        tool_log: List[Dict[str, Any]] = []
        response = LLMResponse()
        iterations = 0
        while iterations < cfg.max_iterations:
            iterations += 1
            response = await llm.complete(
                LLMRequest(
                    model_id=model_id,
                    messages=messages,
                    tools=tools,
                    temperature=cfg.temperature,
                    max_tokens=cfg.max_tokens,
                    output_schema=cfg.output_schema,
                )
            )
            for key, count in response.usage.items():
                usage[key] = usage.get(key, 0) + count
            if not response.tool_calls:
                break
            messages.append(
                {
                    "role": "assistant",
                    "content": response.content,
                    "tool_calls": [call.model_dump() for call in response.tool_calls],
                }
            )
            for call in response.tool_calls:
                result = await self._call_tool(node, context, call.name, call.arguments)
                tool_log.append({"tool": call.name, "arguments": call.arguments, "result": result})
                messages.append(
                    {
                        "role": "tool",
                        "tool_call_id": call.id,
                        "name": call.name,
                        "content": stringify(result),
                    }
                )
        else:
            logger.warning(
                f"Agent node {node.id} hit its limit of {cfg.max_iterations} iterations with tool calls pending"
            )

        content = response.content
        output: Dict[str, Any] = {
            "content": content,
            "model_id": model_id,
            "iterations": iterations,
            "tool_calls": tool_log,
            "usage": usage,
        }
        value: Any = content
        if cfg.output_schema:
            value = parse_structured(content, cfg.output_schema, node.id)
            output["data"] = value

        updates: Dict[str, Any] = {}
        if cfg.output_variable:
            updates[cfg.output_variable] = value
        if cfg.include_history:
            updates[history_key] = [
                *state.variables.get(history_key, []),
                {"role": "user", "content": prompt},
                {"role": "assistant", "content": content},
            ]
        return NodeResult(output=output, state_updates=updates)

    async def _call_tool(
        self, node: AgentNode, context: ExecutionContext, name: str, arguments: Dict[str, Any]
    ) -> Any:
        if name not in node.config.tools:
            return {"error": True, "message": f"Tool '{name}' is not available to this agent"}
        try:
            return await context.services.tools.invoke(name, arguments)
        except Exception as exc:
            if is_transient(exc):
                raise
            # The model gets to see non-retryable tool errors and may recover.
            message = exc.message if isinstance(exc, WaypointError) else str(exc)
            logger.warning(f"Tool {name} failed inside agent node {node.id}: {message}")
            return {"error": True, "message": message}
