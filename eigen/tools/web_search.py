import httpx

from .types import ToolCallRequest, ToolCallResult

API_URL = "https://api.duckduckgo.com/"


def format_instant_answer(query: str, data: dict) -> str:
    output = ""
    abstract = data.get("AbstractText") or ""
    if abstract:
        output += f"# {data.get('Heading') or ''}\n\n{abstract}\n\n"
        if data.get("AbstractURL"):
            output += f"Source: {data.get('AbstractSource') or ''} ({data['AbstractURL']})\n\n"

    results = [r for r in (data.get("Results") or [])[:5] if isinstance(r, dict) and r.get("Text")]
    if data.get("Results"):
        output += "## Results:\n"
        for result in results:
            output += f"- {result['Text']}\n"
            if result.get("FirstURL"):
                output += f"  URL: {result['FirstURL']}\n"
        output += "\n"

    if data.get("RelatedTopics"):
        output += "## Related:\n"
        for topic in (data.get("RelatedTopics") or [])[:5]:
            if isinstance(topic, dict) and topic.get("Text"):
                output += f"- {topic['Text']}\n"

    if not output:
        output = (
            f"No instant answer available for '{query}'. "
            "Try a more specific query or use Wikipedia for detailed information."
        )
    return output


async def execute(request: ToolCallRequest, client: httpx.AsyncClient) -> ToolCallResult:
    query = request.get_str("query")
    if query is None:
        return ToolCallResult.fail(request.call_id, "Missing required parameter: query")
    params = {"q": query, "format": "json", "no_html": "1", "skip_disambig": "1"}
    try:
        resp = await client.get(API_URL, params=params)
    except httpx.HTTPError as exc:
        return ToolCallResult.fail(request.call_id, f"Failed to perform web search: {exc}")
    try:
        data = resp.json()
    except ValueError as exc:
        return ToolCallResult.fail(request.call_id, f"Failed to parse search response: {exc}")
    if not isinstance(data, dict):
        return ToolCallResult.fail(request.call_id, "Failed to parse search response: unexpected payload")
    return ToolCallResult.ok(request.call_id, format_instant_answer(query, data))
