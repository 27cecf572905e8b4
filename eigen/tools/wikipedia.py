import re
from typing import Any, Dict

import httpx

from .types import ToolCallRequest, ToolCallResult

API_URL = "https://en.wikipedia.org/w/api.php"
_TAG_RE = re.compile(r"<[^>]*>")


def strip_html_tags(text: str) -> str:
    return _TAG_RE.sub("", text)


async def execute(request: ToolCallRequest, client: httpx.AsyncClient) -> ToolCallResult:
    query = request.get_str("query")
    if query is None:
        return ToolCallResult.fail(request.call_id, "Missing required parameter: query")

    search_params: Dict[str, Any] = {
        "action": "query",
        "list": "search",
        "srsearch": query,
        "format": "json",
        "srlimit": 3,
    }
    try:
        resp = await client.get(API_URL, params=search_params)
    except httpx.HTTPError as exc:
        return ToolCallResult.fail(request.call_id, f"Failed to search Wikipedia: {exc}")
    try:
        results = (resp.json().get("query") or {}).get("search") or []
    except ValueError as exc:
        return ToolCallResult.fail(request.call_id, f"Failed to parse Wikipedia search response: {exc}")
    if not results:
        return ToolCallResult.ok(request.call_id, f"No Wikipedia articles found for '{query}'")

    page_title = results[0].get("title", "")
    content_params: Dict[str, Any] = {
        "action": "query",
        "titles": page_title,
        "prop": "extracts",
        "exintro": "true",
        "explaintext": "true",
        "format": "json",
    }
    try:
        resp = await client.get(API_URL, params=content_params)
    except httpx.HTTPError as exc:
        return ToolCallResult.fail(request.call_id, f"Failed to fetch Wikipedia article: {exc}")
    try:
        pages = (resp.json().get("query") or {}).get("pages") or {}
    except ValueError as exc:
        return ToolCallResult.fail(request.call_id, f"Failed to parse Wikipedia content response: {exc}")
    extract = next((page.get("extract") for page in pages.values() if page.get("extract")), None)

    output = f"# {page_title}\n\n{extract or 'No content available'}\n\n"
    if len(results) > 1:
        output += "## Related articles:\n"
        for result in results[1:]:
            output += f"- **{result.get('title', '')}**: {strip_html_tags(result.get('snippet', ''))}\n"
    return ToolCallResult.ok(request.call_id, output)
