from .executor import ToolExecutor
from .openai_format import tools_to_openai_format
from .registry import get_all_tools, get_enabled_tools, get_tool_by_id
from .types import ToolCallRequest, ToolCallResult, ToolDefinition

__all__ = [
    "ToolCallRequest",
    "ToolCallResult",
    "ToolDefinition",
    "ToolExecutor",
    "get_all_tools",
    "get_enabled_tools",
    "get_tool_by_id",
    "tools_to_openai_format",
]
