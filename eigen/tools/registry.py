from typing import Iterable, List, Optional

from .types import ToolDefinition


def _query_schema(description: str) -> dict:
    return {
        "type": "object",
        "properties": {"query": {"type": "string", "description": description}},
        "required": ["query"],
    }


BUILT_IN_TOOLS: List[ToolDefinition] = [
    ToolDefinition(
        id="wikipedia",
        name="Wikipedia",
        description="Search and retrieve Wikipedia articles",
        icon="book",
        category="search",
        parameters=_query_schema("The search query to find Wikipedia articles"),
    ),
    ToolDefinition(
        id="web_search",
        name="Web Search",
        description="Search the web using DuckDuckGo",
        icon="globe",
        category="web",
        parameters=_query_schema("The search query"),
    ),
    ToolDefinition(
        id="filesystem",
        name="File System",
        description="Read, write, and list files on your computer",
        icon="folder",
        category="filesystem",
        requires_confirmation=True,
        parameters={
            "type": "object",
            "properties": {
                "operation": {
                    "type": "string",
                    "enum": ["read", "write", "list"],
                    "description": "The file operation to perform",
                },
                "path": {"type": "string", "description": "The file or directory path"},
                "content": {"type": "string", "description": "Content to write (only for write operation)"},
            },
            "required": ["operation", "path"],
        },
    ),
    ToolDefinition(
        id="shell",
        name="Shell",
        description="Execute shell commands",
        icon="terminal",
        category="system",
        requires_confirmation=True,
        parameters={
            "type": "object",
            "properties": {"command": {"type": "string", "description": "The shell command to execute"}},
            "required": ["command"],
        },
    ),
    ToolDefinition(
        id="calculator",
        name="Calculator",
        description="Evaluate mathematical expressions",
        icon="calculator",
        category="system",
        parameters={
            "type": "object",
            "properties": {
                "expression": {
                    "type": "string",
                    "description": "The mathematical expression to evaluate (e.g., '2 + 2 * 3', 'sqrt(16)', 'sin(pi/2)')",
                }
            },
            "required": ["expression"],
        },
    ),
]


def get_all_tools() -> List[ToolDefinition]:
    return list(BUILT_IN_TOOLS)


def get_tool_by_id(tool_id: str) -> Optional[ToolDefinition]:
    for tool in BUILT_IN_TOOLS:
        if tool.id == tool_id:
            return tool
    return None


def get_enabled_tools(enabled_ids: Iterable[str]) -> List[ToolDefinition]:
    """Built-in tools whose ids are enabled, in registry order; unknown ids are ignored."""
    wanted = set(enabled_ids)
    return [tool for tool in BUILT_IN_TOOLS if tool.id in wanted]
