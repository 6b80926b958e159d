import logging
from typing import Any, AsyncIterator, Dict, List, Optional

import anthropic
from anthropic import AsyncAnthropic

from agent.models import (
    ChatMessage,
    MessageRole,
    ModelChunk,
    ThinkingChunk,
    TokenChunk,
    ToolCallChunk,
)
from engine.base import BaseEngine, split_system
from mcp_hub.errors import ModelError


class AnthropicEngine(BaseEngine):
    def __init__(self, config: Dict[str, Any], client: Optional[AsyncAnthropic] = None):
        self.api_key = config.get("api_key")
        self.model_name = config.get("llm_model", "claude-3-7-sonnet-20250219")
        self.max_tokens = config.get("max_tokens", 1000)
        self.temperature = config.get("temperature")
        self.logger = logging.getLogger("AnthropicEngine")

        self.client = client or AsyncAnthropic(api_key=self.api_key)

    def _convert_messages(self, messages: List[ChatMessage]) -> List[Dict[str, Any]]:
        """Map chat messages onto Anthropic's alternating user/assistant turns."""
        converted: List[Dict[str, Any]] = []
        for message in messages:
            if message.role == MessageRole.USER:
                blocks = [{"type": "text", "text": message.content}]
                role = "user"
            elif message.role == MessageRole.TOOL:
                blocks = [
                    {
                        "type": "tool_result",
                        "tool_use_id": message.tool_call_id,
                        "content": message.content,
                    }
                ]
                role = "user"
            else:
                blocks = []
                if message.content:
                    blocks.append({"type": "text", "text": message.content})
                for call in message.tool_calls:
                    blocks.append(
                        {
                            "type": "tool_use",
                            "id": call.id,
                            "name": call.name,
                            "input": call.arguments,
                        }
                    )
                role = "assistant"

            if not blocks:
                continue
            # Consecutive tool results travel together in one user turn
            if converted and converted[-1]["role"] == role:
                converted[-1]["content"].extend(blocks)
            else:
                converted.append({"role": role, "content": blocks})
        return converted

    async def stream_turn(
        self, messages: List[ChatMessage], tools: List[Dict[str, Any]]
    ) -> AsyncIterator[ModelChunk]:
        system, conversation = split_system(messages)
        request: Dict[str, Any] = {
            "model": self.model_name,
            "max_tokens": self.max_tokens,
            "messages": self._convert_messages(conversation),
        }
        if system:
            request["system"] = system
        if tools:
            request["tools"] = tools
        if self.temperature is not None:
            request["temperature"] = self.temperature

        try:
            async with self.client.messages.stream(**request) as stream:
                async for event in stream:
                    if event.type == "content_block_delta":
                        if event.delta.type == "text_delta":
                            yield TokenChunk(text=event.delta.text)
                        elif event.delta.type == "thinking_delta":
                            yield ThinkingChunk(text=event.delta.thinking)
                    elif event.type == "content_block_stop":
                        block = event.content_block
                        if block.type == "tool_use":
                            if not isinstance(block.input, dict):
                                raise ModelError(
                                    f"Tool call {block.name} has non-object input"
                                )
                            yield ToolCallChunk(
                                id=block.id, name=block.name, arguments=block.input
                            )
        except anthropic.APIError as e:
            self.logger.error(f"Anthropic request failed: {e}")
            raise ModelError(f"Anthropic request failed: {e}") from e

    async def close(self) -> None:
        await self.client.close()
