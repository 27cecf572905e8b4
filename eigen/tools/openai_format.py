from typing import Any, Dict, List, Sequence

from .types import ToolDefinition


def tools_to_openai_format(tools: Sequence[ToolDefinition]) -> List[Dict[str, Any]]:
    """Function-calling schema for ``/v1/chat/completions``; the tool id is the function name."""
    return [
        {
            "type": "function",
            "function": {
                "name": tool.id,
                "description": tool.description,
                "parameters": tool.parameters,
            },
        }
        for tool in tools
    ]
