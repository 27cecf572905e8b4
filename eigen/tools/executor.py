import logging
from typing import Any, Dict, Optional

import httpx

from . import calculator, filesystem, shell, web_search, wikipedia
from .types import ToolCallRequest, ToolCallResult

logger = logging.getLogger("uvicorn.error")


class ToolExecutor:
    """Runs built-in tools by id. Every outcome, including failures, is a :class:`ToolCallResult`."""

    def __init__(self, client: Optional[httpx.AsyncClient] = None):
        self.client = client or httpx.AsyncClient(
            timeout=30,
            follow_redirects=True,
            headers={"User-Agent": "EigenAgent/1.0"},
            limits=httpx.Limits(max_connections=8, max_keepalive_connections=4),
        )

    async def _dispatch(self, request: ToolCallRequest) -> ToolCallResult:
        if request.tool_id == "calculator":
            return calculator.execute(request)
        if request.tool_id == "filesystem":
            return filesystem.execute(request)
        if request.tool_id == "shell":
            return await shell.execute(request)
        if request.tool_id == "wikipedia":
            return await wikipedia.execute(request, self.client)
        if request.tool_id == "web_search":
            return await web_search.execute(request, self.client)
        return ToolCallResult.fail(request.call_id, f"Unknown tool: {request.tool_id}")

    async def execute(self, tool_id: str, call_id: str, arguments: Dict[str, Any]) -> ToolCallResult:
        request = ToolCallRequest(tool_id=tool_id, call_id=call_id, arguments=dict(arguments or {}))
        try:
            return await self._dispatch(request)
        except Exception as exc:
            logger.exception("Tool %s failed", tool_id)
            return ToolCallResult.fail(call_id, f"Tool execution failed: {exc}")

    async def close(self) -> None:
        if not self.client.is_closed:
            await self.client.aclose()
