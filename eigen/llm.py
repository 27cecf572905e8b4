import json
import logging
from typing import Any, AsyncGenerator, Dict, Optional

import httpx

from .errors import ProtocolError, TransportError

logger = logging.getLogger("uvicorn.error")

CHAT_MODEL = "qwen3-vl"
TITLE_MODEL = "default"


def parse_sse_line(line: str) -> Optional[Dict[str, Any]]:
    """Return the first choice's ``delta`` for one ``data:`` line.

    ``None`` means the line carries nothing usable (comment, keep-alive or an
    event that fails to parse). The ``[DONE]`` sentinel is handled by callers.
    """
    if not line.startswith("data:"):
        return None
    chunk = line[len("data:"):].strip()
    if not chunk or chunk == "[DONE]":
        return None
    try:
        data = json.loads(chunk)
        delta = (data.get("choices") or [{}])[0].get("delta") or {}
    except Exception:
        logger.debug("Skipping unparsable stream event: %s", chunk[:200])
        return None
    if not isinstance(delta, dict):
        return None
    return delta


class LlamaServerClient:
    def __init__(self, base_url: str, timeout: Optional[httpx.Timeout] = None):
        self.base_url = base_url.rstrip("/")
        self.client = httpx.AsyncClient(timeout=timeout or httpx.Timeout(600.0, connect=10.0))

    def _extract_error_detail(self, response: httpx.Response) -> str:
        try:
            data = response.json()
            if isinstance(data, dict):
                error = data.get("error")
                if isinstance(error, dict) and error.get("message"):
                    return str(error["message"])
                return json.dumps(data, ensure_ascii=True)
        except Exception:
            pass
        try:
            return response.text
        except Exception:
            return ""

    async def health(self) -> bool:
        try:
            resp = await self.client.get(f"{self.base_url}/health", timeout=5.0)
        except httpx.HTTPError:
            return False
        return resp.is_success

    async def stream_chat(self, payload: Dict[str, Any]) -> AsyncGenerator[Dict[str, Any], None]:
        """Stream ``/v1/chat/completions`` and yield each event's delta object.

        Failing to open the stream raises :class:`TransportError`. A transport
        error after the stream is open only ends it; whatever was yielded so far
        stands.
        """
        url = f"{self.base_url}/v1/chat/completions"
        body = {**payload, "stream": True}
        try:
            async with self.client.stream("POST", url, json=body) as response:
                if not response.is_success:
                    await response.aread()
                    detail = self._extract_error_detail(response)
                    raise TransportError(f"Request failed ({response.status_code}): {detail}")
                try:
                    async for line in response.aiter_lines():
                        if line.startswith("data:") and line[len("data:"):].strip() == "[DONE]":
                            break
                        delta = parse_sse_line(line)
                        if delta is not None:
                            yield delta
                except httpx.HTTPError as exc:
                    logger.warning("Stream interrupted: %s", exc)
        except httpx.HTTPError as exc:
            raise TransportError(f"Request failed: {exc}") from exc

    async def chat_completion(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        url = f"{self.base_url}/v1/chat/completions"
        body = {**payload, "stream": False}
        try:
            resp = await self.client.post(url, json=body)
        except httpx.HTTPError as exc:
            raise TransportError(f"Request failed: {exc}") from exc
        if not resp.is_success:
            raise TransportError(f"Request failed ({resp.status_code}): {self._extract_error_detail(resp)}")
        try:
            data = resp.json()
        except ValueError as exc:
            raise ProtocolError(f"Invalid completion response: {exc}") from exc
        if not isinstance(data, dict):
            raise ProtocolError("Invalid completion response: expected a JSON object")
        return data

    async def close(self) -> None:
        await self.client.aclose()
