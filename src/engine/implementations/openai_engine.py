import json
import logging
from typing import Any, AsyncIterator, Dict, List, Optional

import openai
from openai import AsyncOpenAI

from agent.models import (
    ChatMessage,
    MessageRole,
    ModelChunk,
    ThinkingChunk,
    TokenChunk,
    ToolCallChunk,
)
from engine.base import BaseEngine
from mcp_hub.errors import ModelError


class OpenAIEngine(BaseEngine):
    """OpenAI chat completions, also used for Ollama's compatible endpoint."""

    def __init__(self, config: Dict[str, Any], client: Optional[AsyncOpenAI] = None):
        self.api_key = config.get("api_key")
        self.base_url = config.get("base_url")
        self.model_name = config.get("llm_model", "gpt-4")
        self.max_tokens = config.get("max_tokens", 1000)
        self.temperature = config.get("temperature")
        self.logger = logging.getLogger("OpenAIEngine")

        self.client = client or AsyncOpenAI(api_key=self.api_key, base_url=self.base_url)

    def _convert_messages(self, messages: List[ChatMessage]) -> List[Dict[str, Any]]:
        converted = []
        for message in messages:
            if message.role == MessageRole.TOOL:
                converted.append(
                    {
                        "role": "tool",
                        "tool_call_id": message.tool_call_id,
                        "content": message.content,
                    }
                )
            elif message.role == MessageRole.ASSISTANT and message.tool_calls:
                converted.append(
                    {
                        "role": "assistant",
                        "content": message.content or None,
                        "tool_calls": [
                            {
                                "id": call.id,
                                "type": "function",
                                "function": {
                                    "name": call.name,
                                    "arguments": json.dumps(call.arguments),
                                },
                            }
                            for call in message.tool_calls
                        ],
                    }
                )
            else:
                converted.append({"role": message.role.value, "content": message.content})
        return converted

    @staticmethod
    def _convert_tools(tools: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        return [
            {
                "type": "function",
                "function": {
                    "name": tool["name"],
                    "description": tool.get("description", ""),
                    "parameters": tool.get("input_schema") or {"type": "object", "properties": {}},
                },
            }
            for tool in tools
        ]

    async def stream_turn(
        self, messages: List[ChatMessage], tools: List[Dict[str, Any]]
    ) -> AsyncIterator[ModelChunk]:
        request: Dict[str, Any] = {
            "model": self.model_name,
            "messages": self._convert_messages(messages),
            "max_tokens": self.max_tokens,
            "stream": True,
        }
        if tools:
            request["tools"] = self._convert_tools(tools)
        if self.temperature is not None:
            request["temperature"] = self.temperature

        # Tool call fragments arrive spread over many chunks, keyed by index
        pending: Dict[int, Dict[str, str]] = {}
        try:
            stream = await self.client.chat.completions.create(**request)
            async for chunk in stream:
                if not chunk.choices:
                    continue
                delta = chunk.choices[0].delta

                reasoning = getattr(delta, "reasoning_content", None) or getattr(
                    delta, "reasoning", None
                )
                if reasoning:
                    yield ThinkingChunk(text=reasoning)
                if delta.content:
                    yield TokenChunk(text=delta.content)

                for fragment in delta.tool_calls or []:
                    entry = pending.setdefault(
                        fragment.index, {"id": "", "name": "", "arguments": ""}
                    )
                    if fragment.id:
                        entry["id"] = fragment.id
                    if fragment.function:
                        entry["name"] += fragment.function.name or ""
                        entry["arguments"] += fragment.function.arguments or ""
        except openai.APIError as e:
            self.logger.error(f"OpenAI request failed: {e}")
            raise ModelError(f"OpenAI request failed: {e}") from e

        for index in sorted(pending):
            yield self._finish_tool_call(pending[index])

    @staticmethod
    def _finish_tool_call(entry: Dict[str, str]) -> ToolCallChunk:
        if not entry["name"]:
            raise ModelError("Model produced a tool call without a name")
        try:
            arguments = json.loads(entry["arguments"]) if entry["arguments"].strip() else {}
        except json.JSONDecodeError as e:
            raise ModelError(
                f"Malformed arguments for tool call {entry['name']}: {e}"
            ) from e
        if not isinstance(arguments, dict):
            raise ModelError(f"Arguments for tool call {entry['name']} are not an object")
        return ToolCallChunk(id=entry["id"] or None, name=entry["name"], arguments=arguments)

    async def close(self) -> None:
        await self.client.close()
