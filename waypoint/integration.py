"""Pydantic-AI integration: the default LLM service for agent nodes."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from pydantic_ai.direct import model_request
from pydantic_ai.exceptions import ModelHTTPError, UnexpectedModelBehavior
from pydantic_ai.messages import (
    ModelMessage,
    ModelRequest,
    ModelResponse,
    SystemPromptPart,
    TextPart,
    ToolCallPart,
    ToolReturnPart,
    UserPromptPart,
)
from pydantic_ai.models import ModelRequestParameters
from pydantic_ai.settings import ModelSettings
from pydantic_ai.tools import ToolDefinition

from .errors import PermanentExecutionError, TransientExecutionError
from .services import LLMRequest, LLMResponse, ToolCall, ToolSpec

logger = logging.getLogger(__name__)

RETRYABLE_STATUS = {408, 409, 429}


def to_model_messages(messages: List[Dict[str, Any]]) -> List[ModelMessage]:
    """Convert chat-style message dicts into pydantic-ai request/response messages."""
    converted: List[ModelMessage] = []
    pending: List[Any] = []

    def flush() -> None:
        if pending:
            converted.append(ModelRequest(parts=list(pending)))
            pending.clear()

    for message in messages:
        role = message.get("role")
        content = message.get("content") or ""
        if role == "system":
            pending.append(SystemPromptPart(content=content))
        elif role == "user":
            pending.append(UserPromptPart(content=content))
        elif role == "tool":
            part = ToolReturnPart(tool_name=message.get("name", ""), content=content)
            if message.get("tool_call_id"):
                part.tool_call_id = message["tool_call_id"]
            pending.append(part)
        elif role == "assistant":
            flush()
            parts: List[Any] = [TextPart(content=content)] if content else []
            for call in message.get("tool_calls", []):
                parts.append(
                    ToolCallPart(
                        tool_name=call["name"],
                        args=call.get("arguments", {}),
                        tool_call_id=call["id"],
                    )
                )
            converted.append(ModelResponse(parts=parts))
    flush()
    return converted


def to_tool_definition(spec: ToolSpec) -> ToolDefinition:
    return ToolDefinition(
        name=spec.name,
        description=spec.description,
        parameters_json_schema=spec.parameters,
    )


def _usage(response: ModelResponse) -> Dict[str, int]:
    usage = response.usage
    input_tokens = getattr(usage, "input_tokens", None) or getattr(usage, "request_tokens", 0) or 0
    output_tokens = getattr(usage, "output_tokens", None) or getattr(usage, "response_tokens", 0) or 0
    return {
        "input_tokens": input_tokens,
        "output_tokens": output_tokens,
        "total_tokens": input_tokens + output_tokens,
    }


class PydanticAIChatService:
    """``LLMService`` backed by ``pydantic_ai.direct.model_request``.

    Model ids use pydantic-ai's ``provider:model`` notation, for example
    ``openai:gpt-4o-mini``.
    """

    def __init__(self, default_model: Optional[str] = None) -> None:
        self.default_model = default_model

    async def complete(self, request: LLMRequest) -> LLMResponse:
        model = request.model_id or self.default_model
        settings: ModelSettings = {}
        if request.temperature is not None:
            settings["temperature"] = request.temperature
        if request.max_tokens is not None:
            settings["max_tokens"] = request.max_tokens
        parameters = ModelRequestParameters(
            function_tools=[to_tool_definition(spec) for spec in request.tools],
            allow_text_output=True,
        )

        try:
            response = await model_request(
                model,
                to_model_messages(request.messages),
                model_settings=settings or None,
                model_request_parameters=parameters,
            )
        except ModelHTTPError as e:
            if e.status_code >= 500 or e.status_code in RETRYABLE_STATUS:
                raise TransientExecutionError(
                    f"Model {model} returned HTTP {e.status_code}"
                ) from e
            raise PermanentExecutionError(
                f"Model {model} rejected the request with HTTP {e.status_code}",
                code="LLM_REQUEST_REJECTED",
            ) from e
        except UnexpectedModelBehavior as e:
            raise PermanentExecutionError(
                f"Model {model} behaved unexpectedly: {e.message}", code="LLM_UNEXPECTED"
            ) from e

        text: List[str] = []
        calls: List[ToolCall] = []
        for part in response.parts:
            if isinstance(part, TextPart):
                text.append(part.content)
            elif isinstance(part, ToolCallPart):
                calls.append(
                    ToolCall(id=part.tool_call_id, name=part.tool_name, arguments=part.args_as_dict())
                )
        logger.debug(f"Model {model} replied with {len(calls)} tool call(s)")
        return LLMResponse(
            content="".join(text),
            tool_calls=calls,
            usage=_usage(response),
            model_id=response.model_name or model,
        )

