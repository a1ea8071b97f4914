from typing import Dict, Any, List, Literal, Optional
from pydantic import BaseModel, Field
from datetime import datetime


class ChatMessage(BaseModel):
    role: Literal["user", "assistant", "system"] = "user"
    content: str = Field(min_length=1)


class ChatRequest(BaseModel):
    """Chat request, OpenAI-style message list"""
    messages: List[ChatMessage] = Field(min_length=1)
    conversation_id: Optional[str] = None
    user_id: Optional[str] = None
    model: Optional[str] = None
    stream: bool = True

    def latest_user_content(self) -> Optional[str]:
        for message in reversed(self.messages):
            if message.role == "user":
                return message.content
        return None


class ChatResponse(BaseModel):
    conversation_id: str
    response: str
    model: str
    warning: Optional[str] = None


class ConversationMessages(BaseModel):
    conversation_id: str
    messages: List[Dict[str, str]]


class HealthResponse(BaseModel):
    status: Literal["ok"] = "ok"
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    services: Dict[str, Any] = Field(default_factory=dict)
    tools: Dict[str, bool] = Field(default_factory=dict)
    active_conversations: int = 0
