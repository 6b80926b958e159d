from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, Field

from agent.models import ChatMessage, MessageRole


class HistoryMessage(BaseModel):
    role: Literal["user", "assistant"]
    content: str

    def to_chat_message(self) -> ChatMessage:
        return ChatMessage(role=MessageRole(self.role), content=self.content)


class ChatRequest(BaseModel):
    message: str = Field(..., min_length=1, description="The user's message")
    history: List[HistoryMessage] = Field(
        default_factory=list, description="Earlier turns of this conversation"
    )
    use_rag: bool = Field(default=True, description="Augment with knowledge base context")
    conversation_id: Optional[str] = None


class PromptRequest(BaseModel):
    arguments: Dict[str, str] = Field(default_factory=dict)


class ResourceReadRequest(BaseModel):
    uri: str


class CancelResponse(BaseModel):
    conversation_id: str
    cancelled: bool
