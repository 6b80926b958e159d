from abc import ABC, abstractmethod
from typing import Any, AsyncIterator, Dict, List, Tuple

from agent.models import ChatMessage, MessageRole, ModelChunk


class BaseEngine(ABC):
    model_name: str = ""

    @abstractmethod
    def stream_turn(
        self, messages: List[ChatMessage], tools: List[Dict[str, Any]]
    ) -> AsyncIterator[ModelChunk]:
        """
        Stream one model turn.

        Args:
            messages: Full conversation, system messages included.
            tools: Provider-neutral tool specs (name, description, input_schema).

        Yields:
            Thinking and token chunks as they arrive, and one ToolCallChunk
            per complete tool call.

        Raises:
            ModelError: The backend is unreachable or the turn is malformed.
        """

    async def close(self) -> None:
        pass


def split_system(messages: List[ChatMessage]) -> Tuple[str, List[ChatMessage]]:
    """Separate system prompts from the rest of the conversation."""
    system = "\n\n".join(m.content for m in messages if m.role == MessageRole.SYSTEM)
    rest = [m for m in messages if m.role != MessageRole.SYSTEM]
    return system, rest
