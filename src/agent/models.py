import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Literal, Mapping, Optional, Union

from pydantic import BaseModel, Field

from mcp_hub.errors import InvalidTransitionError
from mcp_hub.models import ToolExecutionResponse


class MessageRole(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


class ToolCallRequest(BaseModel):
    """A structured tool call issued by the model."""

    id: str = Field(default_factory=lambda: f"call_{uuid.uuid4().hex[:12]}")
    name: str
    arguments: Dict[str, Any] = Field(default_factory=dict)


class ChatMessage(BaseModel):
    """One message in a conversation."""

    role: MessageRole
    content: str = ""
    tool_calls: List[ToolCallRequest] = Field(default_factory=list)
    tool_call_id: Optional[str] = None
    name: Optional[str] = None


class ConversationState(BaseModel):
    """Ordered messages for a single request. Never shared across conversations."""

    messages: List[ChatMessage] = Field(default_factory=list)

    def add_system(self, content: str) -> ChatMessage:
        return self.append(ChatMessage(role=MessageRole.SYSTEM, content=content))

    def add_user(self, content: str) -> ChatMessage:
        return self.append(ChatMessage(role=MessageRole.USER, content=content))

    def add_assistant(
        self, content: str, tool_calls: Optional[List[ToolCallRequest]] = None
    ) -> ChatMessage:
        return self.append(
            ChatMessage(
                role=MessageRole.ASSISTANT,
                content=content,
                tool_calls=list(tool_calls or []),
            )
        )

    def add_tool_result(self, tool_call_id: str, name: str, content: str) -> ChatMessage:
        return self.append(
            ChatMessage(
                role=MessageRole.TOOL,
                content=content,
                tool_call_id=tool_call_id,
                name=name,
            )
        )

    def append(self, message: ChatMessage) -> ChatMessage:
        self.messages.append(message)
        return message

    def __len__(self) -> int:
        return len(self.messages)


class InvocationStatus(str, Enum):
    PENDING = "pending"
    ROUTED = "routed"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"


_TRANSITIONS: Mapping[InvocationStatus, FrozenSet[InvocationStatus]] = {
    InvocationStatus.PENDING: frozenset(
        {InvocationStatus.ROUTED, InvocationStatus.FAILED}
    ),
    InvocationStatus.ROUTED: frozenset(
        {InvocationStatus.EXECUTING, InvocationStatus.FAILED}
    ),
    InvocationStatus.EXECUTING: frozenset(
        {InvocationStatus.COMPLETED, InvocationStatus.FAILED}
    ),
    InvocationStatus.COMPLETED: frozenset(),
    InvocationStatus.FAILED: frozenset(),
}


class ToolInvocation(BaseModel):
    """Lifecycle of one tool call within a batch."""

    id: str
    tool_name: str
    arguments: Dict[str, Any] = Field(default_factory=dict)
    status: InvocationStatus = InvocationStatus.PENDING
    server_id: Optional[str] = None
    result: Optional[ToolExecutionResponse] = None
    error: Optional[str] = None
    error_kind: Optional[str] = None

    created_at: datetime = Field(default_factory=datetime.now)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @classmethod
    def from_request(cls, request: ToolCallRequest) -> "ToolInvocation":
        return cls(id=request.id, tool_name=request.name, arguments=request.arguments)

    @property
    def is_terminal(self) -> bool:
        return self.status in (InvocationStatus.COMPLETED, InvocationStatus.FAILED)

    def _advance(self, target: InvocationStatus) -> None:
        if target not in _TRANSITIONS[self.status]:
            raise InvalidTransitionError(
                f"Invocation {self.id}: cannot move from {self.status.value} to {target.value}"
            )
        self.status = target

    def mark_routed(self, server_id: str) -> None:
        self._advance(InvocationStatus.ROUTED)
        self.server_id = server_id

    def mark_executing(self) -> None:
        self._advance(InvocationStatus.EXECUTING)
        self.started_at = datetime.now()

    def finish(self, response: ToolExecutionResponse) -> None:
        """Record the uniform call result as either completed or failed."""
        if response.success:
            self._advance(InvocationStatus.COMPLETED)
        else:
            self._advance(InvocationStatus.FAILED)
            self.error = response.error
            self.error_kind = response.error_kind
        self.result = response
        self.completed_at = datetime.now()

    def fail(self, error: str, error_kind: str) -> None:
        self._advance(InvocationStatus.FAILED)
        self.error = error
        self.error_kind = error_kind
        self.result = ToolExecutionResponse(
            success=False,
            tool_name=self.tool_name,
            server_id=self.server_id,
            error=error,
            error_kind=error_kind,
        )
        self.completed_at = datetime.now()


# Model output, consumed incrementally by the agent loop


class ThinkingChunk(BaseModel):
    type: Literal["thinking"] = "thinking"
    text: str


class TokenChunk(BaseModel):
    type: Literal["token"] = "token"
    text: str


class ToolCallChunk(BaseModel):
    type: Literal["tool_call"] = "tool_call"
    id: Optional[str] = None
    name: str
    arguments: Dict[str, Any] = Field(default_factory=dict)


ModelChunk = Union[ThinkingChunk, TokenChunk, ToolCallChunk]
