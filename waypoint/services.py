"""Interfaces of the external collaborators used by agent and tool nodes."""

from __future__ import annotations

import asyncio
import inspect
import logging
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional, Protocol, Sequence

from pydantic import BaseModel, Field

from .errors import PermanentExecutionError

logger = logging.getLogger(__name__)


class ToolSpec(BaseModel):
    """Tool description offered to the model."""

    name: str
    description: str = ""
    parameters: Dict[str, Any] = Field(
        default_factory=lambda: {"type": "object", "properties": {}}
    )


class ToolCall(BaseModel):
    id: str = Field(default_factory=lambda: f"call-{uuid.uuid4().hex[:12]}")
    name: str
    arguments: Dict[str, Any] = Field(default_factory=dict)


class LLMRequest(BaseModel):
    model_id: str
    messages: List[Dict[str, Any]]
    tools: List[ToolSpec] = Field(default_factory=list)
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    output_schema: Optional[Dict[str, Any]] = None


class LLMResponse(BaseModel):
    content: str = ""
    tool_calls: List[ToolCall] = Field(default_factory=list)
    usage: Dict[str, int] = Field(default_factory=dict)
    model_id: Optional[str] = None


class LLMService(Protocol):
    """Chat completion with optional tool calls."""

    async def complete(self, request: LLMRequest) -> LLMResponse:
        """Run one model turn and return its reply."""


class ToolService(Protocol):
    """Named-tool invocation."""

    async def invoke(self, tool_id: str, parameters: Dict[str, Any]) -> Any:
        """Invoke ``tool_id`` and return its structured result."""

    async def describe(self, tool_ids: Sequence[str]) -> List[ToolSpec]:
        """Return model-facing descriptions of ``tool_ids``."""


class SourceProvider(Protocol):
    """Reference content for agent prompts."""

    async def load(self, source_ids: Sequence[str]) -> Dict[str, str]:
        """Return the text of every known id in ``source_ids``."""


@dataclass
class NodeServices:
    """Collaborators handed to executors. Any of them may be absent."""

    llm: Optional[LLMService] = None
    tools: Optional[ToolService] = None
    sources: Optional[SourceProvider] = None


class SourceCache:
    """Per-execution cache in front of a ``SourceProvider``."""

    def __init__(self, provider: Optional[SourceProvider]) -> None:
        self._provider = provider
        self._cache: Dict[str, str] = {}
        self._lock = asyncio.Lock()

    async def get(self, source_ids: Sequence[str]) -> Dict[str, str]:
        async with self._lock:
            missing = [sid for sid in dict.fromkeys(source_ids) if sid not in self._cache]
            if missing and self._provider is not None:
                loaded = await self._provider.load(missing)
                self._cache.update(loaded)
                unknown = [sid for sid in missing if sid not in loaded]
                if unknown:
                    logger.warning(f"Sources not found: {unknown}")
        return {sid: self._cache[sid] for sid in source_ids if sid in self._cache}

    def __len__(self) -> int:
        return len(self._cache)


class StaticSourceProvider:
    """Serves sources from a fixed mapping."""

    def __init__(self, sources: Mapping[str, str]) -> None:
        self._sources = dict(sources)
        self.loads = 0

    async def load(self, source_ids: Sequence[str]) -> Dict[str, str]:
        self.loads += 1
        return {sid: self._sources[sid] for sid in source_ids if sid in self._sources}


@dataclass
class _LocalTool:
    func: Callable[..., Any]
    spec: ToolSpec


def _is_async(func: Callable[..., Any]) -> bool:
    return inspect.iscoroutinefunction(func) or inspect.iscoroutinefunction(
        getattr(func, "__call__", None)
    )


class LocalToolService:
    """In-process tools backed by plain or async Python callables."""

    def __init__(self) -> None:
        self._tools: Dict[str, _LocalTool] = {}

    def register(
        self,
        name: str,
        func: Optional[Callable[..., Any]] = None,
        *,
        description: str = "",
        parameters: Optional[Dict[str, Any]] = None,
    ) -> Any:
        """Register ``func`` as ``name``; usable as a decorator when ``func`` is omitted."""

        def decorator(target: Callable[..., Any]) -> Callable[..., Any]:
            spec = ToolSpec(
                name=name,
                description=description or (inspect.getdoc(target) or "").split("\n")[0],
            )
            if parameters is not None:
                spec.parameters = parameters
            self._tools[name] = _LocalTool(func=target, spec=spec)
            return target

        if func is not None:
            return decorator(func)
        return decorator

    def __contains__(self, name: str) -> bool:
        return name in self._tools

    async def invoke(self, tool_id: str, parameters: Dict[str, Any]) -> Any:
        tool = self._tools.get(tool_id)
        if tool is None:
            raise PermanentExecutionError(f"Unknown tool '{tool_id}'", code="UNKNOWN_TOOL")
        if _is_async(tool.func):
            return await tool.func(**parameters)
        # Plain callables run in a worker thread so a blocking tool cannot
        # stall the event loop or outlive its node timeout there.
        result = await asyncio.to_thread(tool.func, **parameters)
        if inspect.isawaitable(result):
            result = await result
        return result

    async def describe(self, tool_ids: Sequence[str]) -> List[ToolSpec]:
        return [self._tools[tid].spec for tid in tool_ids if tid in self._tools]


__all__ = [
    "LLMRequest",
    "LLMResponse",
    "LLMService",
    "LocalToolService",
    "NodeServices",
    "SourceCache",
    "SourceProvider",
    "StaticSourceProvider",
    "ToolCall",
    "ToolService",
    "ToolSpec",
]
