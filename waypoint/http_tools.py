"""Named-tool invocation over HTTP."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Sequence

import httpx

from .errors import PermanentExecutionError, TransientExecutionError
from .services import ToolSpec

logger = logging.getLogger(__name__)


class HttpToolService:
    """``ToolService`` talking to a remote tool server.

    ``POST {base_url}/tools/{tool_id}/invoke`` with ``{"parameters": ...}``
    returns ``{"result": ...}``; ``GET {base_url}/tools/{tool_id}`` returns
    the tool description. Server errors and transport failures are
    transient, client errors are permanent.
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._client = client

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers={"Content-Type": "application/json"},
                timeout=self.timeout,
            )
        return self._client

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        client = await self._get_client()
        try:
            response = await client.request(method, path, **kwargs)
        except httpx.TransportError as e:
            raise TransientExecutionError(f"Tool server unreachable: {e}") from e

        if response.status_code >= 500 or response.status_code == 429:
            raise TransientExecutionError(
                f"Tool server returned {response.status_code} for {path}"
            )
        if response.status_code >= 400:
            raise PermanentExecutionError(
                f"Tool server rejected {path}: {response.status_code} - {response.text}",
                code="TOOL_FAILED",
            )
        return response

    async def invoke(self, tool_id: str, parameters: Dict[str, Any]) -> Any:
        response = await self._request(
            "POST", f"/tools/{tool_id}/invoke", json={"parameters": parameters}
        )
        body = response.json()
        if isinstance(body, dict) and "result" in body:
            return body["result"]
        return body

    async def describe(self, tool_ids: Sequence[str]) -> List[ToolSpec]:
        specs = []
        for tool_id in tool_ids:
            response = await self._request("GET", f"/tools/{tool_id}")
            data = response.json()
            specs.append(
                ToolSpec(
                    name=data.get("name", tool_id),
                    description=data.get("description", ""),
                    parameters=data.get("parameters") or {"type": "object", "properties": {}},
                )
            )
        logger.debug(f"Described {len(specs)} remote tool(s)")
        return specs
