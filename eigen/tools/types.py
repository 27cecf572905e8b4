from dataclasses import dataclass, field
from typing import Any, Dict, Optional


@dataclass
class ToolDefinition:
    id: str
    name: str
    description: str
    icon: str
    category: str
    requires_confirmation: bool = False
    parameters: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "icon": self.icon,
            "category": self.category,
            "requires_confirmation": self.requires_confirmation,
            "parameters": self.parameters,
        }


@dataclass
class ToolCallRequest:
    tool_id: str
    call_id: str
    arguments: Dict[str, Any] = field(default_factory=dict)

    def get_str(self, key: str) -> Optional[str]:
        value = self.arguments.get(key)
        return value if isinstance(value, str) else None


@dataclass
class ToolCallResult:
    call_id: str
    success: bool
    output: str = ""
    error: Optional[str] = None

    @classmethod
    def ok(cls, call_id: str, output: str) -> "ToolCallResult":
        return cls(call_id=call_id, success=True, output=output)

    @classmethod
    def fail(cls, call_id: str, error: str) -> "ToolCallResult":
        return cls(call_id=call_id, success=False, output="", error=error)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "call_id": self.call_id,
            "success": self.success,
            "output": self.output,
            "error": self.error,
        }
