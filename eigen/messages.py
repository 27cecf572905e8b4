import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Union

logger = logging.getLogger("uvicorn.error")

HISTORY_LIMIT = 20
TEXT_ROLES = {"system", "user", "assistant"}


def image_data_url(image: str) -> str:
    if image.startswith("data:"):
        return image
    return f"data:image/jpeg;base64,{image}"


@dataclass
class TextMessage:
    role: str
    content: str
    images: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        if not self.images:
            return {"role": self.role, "content": self.content}
        parts: List[Dict[str, Any]] = [{"type": "text", "text": self.content}]
        for image in self.images:
            parts.append({"type": "image_url", "image_url": {"url": image_data_url(image)}})
        return {"role": self.role, "content": parts}


@dataclass
class ToolCall:
    id: str
    name: str
    arguments: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": self.arguments},
        }


@dataclass
class AssistantToolCallsMessage:
    tool_calls: List[ToolCall]
    content: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "role": "assistant",
            "content": self.content,
            "tool_calls": [call.to_dict() for call in self.tool_calls],
        }


@dataclass
class ToolResultMessage:
    tool_call_id: str
    content: str

    def to_dict(self) -> Dict[str, Any]:
        return {"role": "tool", "tool_call_id": self.tool_call_id, "content": self.content}


ChatMessage = Union[TextMessage, AssistantToolCallsMessage, ToolResultMessage]


@dataclass
class AccumulatedToolCall:
    id: str = ""
    name: str = ""
    arguments: str = ""

    def to_tool_call(self) -> ToolCall:
        return ToolCall(id=self.id, name=self.name, arguments=self.arguments)


def merge_tool_call_deltas(calls: List[AccumulatedToolCall], deltas: Sequence[Dict[str, Any]]) -> None:
    """Fold streamed tool-call fragments into ``calls`` by their ``index``.

    The list grows to the highest index seen. Ids and names replace what was
    there; argument fragments are appended in arrival order.
    """
    for delta in deltas:
        if not isinstance(delta, dict):
            continue
        try:
            index = int(delta.get("index", 0))
        except (TypeError, ValueError):
            continue
        if index < 0:
            continue
        while len(calls) <= index:
            calls.append(AccumulatedToolCall())
        entry = calls[index]
        if delta.get("id"):
            entry.id = str(delta["id"])
        function = delta.get("function") or {}
        if function.get("name"):
            entry.name = str(function["name"])
        if function.get("arguments"):
            entry.arguments += str(function["arguments"])


def parse_tool_arguments(raw: str) -> Dict[str, Any]:
    if not raw or not raw.strip():
        return {}
    try:
        value = json.loads(raw)
    except Exception as exc:
        logger.warning("Tool arguments are not valid JSON, using {}: %s", exc)
        return {}
    return value if isinstance(value, dict) else {}


def build_conversation(system_prompt: str, history: Sequence[Dict[str, Any]]) -> List[ChatMessage]:
    """System message followed by the stored history, oldest first."""
    messages: List[ChatMessage] = [TextMessage(role="system", content=system_prompt)]
    for row in list(history)[-HISTORY_LIMIT:]:
        role = row.get("role")
        if role not in TEXT_ROLES:
            continue
        messages.append(
            TextMessage(
                role=role,
                content=row.get("content") or "",
                images=list(row.get("images") or []),
            )
        )
    return messages


def serialize_messages(messages: Sequence[ChatMessage]) -> List[Dict[str, Any]]:
    return [message.to_dict() for message in messages]
