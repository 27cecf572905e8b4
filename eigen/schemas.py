from typing import List, Optional

from pydantic import BaseModel, Field


class ChatTurnRequest(BaseModel):
    prompt: str
    images: List[str] = Field(default_factory=list)


class RenameChatRequest(BaseModel):
    title: str


class CancelGenerationRequest(BaseModel):
    chat_id: Optional[str] = None


class ServerStatus(BaseModel):
    ready: bool
    current_model_id: Optional[str] = None
    downloads: dict = Field(default_factory=dict)

    model_config = {"protected_namespaces": ()}
