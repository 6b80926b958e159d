"""
Agent layer: conversation models, prompts, metrics and the ReAct loop.

The loop itself lives in agent.loop and is imported from there; the
model backends in engine depend on the models exported here.
"""

from .metrics import TokenCounter, TurnMetrics
from .models import (
    ChatMessage,
    ConversationState,
    InvocationStatus,
    MessageRole,
    ModelChunk,
    ThinkingChunk,
    TokenChunk,
    ToolCallChunk,
    ToolCallRequest,
    ToolInvocation,
)

__all__ = [
    "ChatMessage",
    "ConversationState",
    "InvocationStatus",
    "MessageRole",
    "ModelChunk",
    "ThinkingChunk",
    "TokenChunk",
    "ToolCallChunk",
    "ToolCallRequest",
    "ToolInvocation",
    "TokenCounter",
    "TurnMetrics",
]
