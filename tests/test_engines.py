"""
Test model backends with mocked provider clients
"""

import json
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import httpx
import openai
import pytest

from agent.models import (
    ChatMessage,
    ConversationState,
    MessageRole,
    ThinkingChunk,
    TokenChunk,
    ToolCallChunk,
    ToolCallRequest,
)
from conftest import collect
from engine import EngineFactory
from engine.base import split_system
from engine.implementations import AnthropicEngine, OpenAIEngine
from mcp_hub.errors import ModelError


async def aiter_of(items):
    for item in items:
        yield item


def openai_chunk(content=None, tool_calls=None, reasoning_content=None):
    delta = SimpleNamespace(
        content=content, tool_calls=tool_calls, reasoning_content=reasoning_content
    )
    return SimpleNamespace(choices=[SimpleNamespace(delta=delta)])


def openai_fragment(index, id=None, name=None, arguments=None):
    return SimpleNamespace(
        index=index, id=id, function=SimpleNamespace(name=name, arguments=arguments)
    )


def conversation_with_tool_round() -> list:
    state = ConversationState()
    state.add_system("be helpful")
    state.add_user("what is x?")
    state.add_assistant("", [ToolCallRequest(id="c1", name="list_x", arguments={"a": 1})])
    state.add_tool_result("c1", "list_x", "x1")
    state.add_tool_result("c2", "list_x", "x2")
    return state.messages


def test_split_system():
    system, rest = split_system(conversation_with_tool_round())

    assert system == "be helpful"
    assert all(m.role != MessageRole.SYSTEM for m in rest)


def test_factory_creates_engines():
    anthropic_engine = EngineFactory.create_engine(
        "anthropic", {"api_key": "test", "llm_model": "claude-test"}
    )
    ollama_engine = EngineFactory.create_engine(
        "Ollama", {"api_key": "ollama", "base_url": "http://localhost:11434/v1", "llm_model": "llama3.1"}
    )

    assert isinstance(anthropic_engine, AnthropicEngine)
    assert anthropic_engine.model_name == "claude-test"
    assert isinstance(ollama_engine, OpenAIEngine)
    with pytest.raises(ValueError):
        EngineFactory.create_engine("unknown", {})


class TestOpenAIEngine:
    def make_engine(self, chunks=None, error=None):
        client = MagicMock()
        if error is not None:
            client.chat.completions.create = AsyncMock(side_effect=error)
        else:
            client.chat.completions.create = AsyncMock(return_value=aiter_of(chunks or []))
        client.close = AsyncMock()
        return OpenAIEngine({"api_key": "test", "llm_model": "gpt-test"}, client=client), client

    def test_convert_messages(self):
        engine, _ = self.make_engine()

        converted = engine._convert_messages(conversation_with_tool_round())

        assert [m["role"] for m in converted] == ["system", "user", "assistant", "tool", "tool"]
        call = converted[2]["tool_calls"][0]
        assert call["id"] == "c1"
        assert json.loads(call["function"]["arguments"]) == {"a": 1}
        assert converted[2]["content"] is None
        assert converted[3]["tool_call_id"] == "c1"

    def test_convert_tools(self):
        tools = OpenAIEngine._convert_tools(
            [{"name": "list_x", "description": "List x", "input_schema": {}}]
        )

        assert tools == [
            {
                "type": "function",
                "function": {
                    "name": "list_x",
                    "description": "List x",
                    "parameters": {"type": "object", "properties": {}},
                },
            }
        ]

    @pytest.mark.asyncio
    async def test_stream_turn_assembles_tool_calls(self):
        engine, client = self.make_engine(
            [
                openai_chunk(reasoning_content="thinking..."),
                openai_chunk(content="Let me check"),
                openai_chunk(tool_calls=[openai_fragment(0, id="call_a", name="list_x", arguments='{"li')]),
                openai_chunk(tool_calls=[openai_fragment(1, id="call_b", name="get_y_detail", arguments="")]),
                openai_chunk(tool_calls=[openai_fragment(0, arguments='mit": 2}')]),
                openai_chunk(tool_calls=[openai_fragment(1, arguments='{"id": "y"}')]),
                SimpleNamespace(choices=[]),
            ]
        )

        chunks = await collect(
            engine.stream_turn(
                [ChatMessage(role=MessageRole.USER, content="hi")],
                [{"name": "list_x", "description": "", "input_schema": {}}],
            )
        )

        assert chunks == [
            ThinkingChunk(text="thinking..."),
            TokenChunk(text="Let me check"),
            ToolCallChunk(id="call_a", name="list_x", arguments={"limit": 2}),
            ToolCallChunk(id="call_b", name="get_y_detail", arguments={"id": "y"}),
        ]
        request = client.chat.completions.create.call_args.kwargs
        assert request["stream"] is True
        assert request["model"] == "gpt-test"
        assert request["tools"][0]["function"]["name"] == "list_x"

    @pytest.mark.asyncio
    async def test_api_error_becomes_model_error(self):
        error = openai.APIConnectionError(request=httpx.Request("POST", "http://llm.test"))
        engine, _ = self.make_engine(error=error)

        with pytest.raises(ModelError):
            await collect(engine.stream_turn([ChatMessage(role=MessageRole.USER, content="hi")], []))

    def test_finish_tool_call_validation(self):
        assert OpenAIEngine._finish_tool_call(
            {"id": "", "name": "list_x", "arguments": ""}
        ) == ToolCallChunk(id=None, name="list_x", arguments={})

        with pytest.raises(ModelError, match="without a name"):
            OpenAIEngine._finish_tool_call({"id": "c", "name": "", "arguments": "{}"})
        with pytest.raises(ModelError, match="Malformed arguments"):
            OpenAIEngine._finish_tool_call({"id": "c", "name": "t", "arguments": "{oops"})
        with pytest.raises(ModelError, match="not an object"):
            OpenAIEngine._finish_tool_call({"id": "c", "name": "t", "arguments": "[1, 2]"})


class FakeAnthropicStream:
    def __init__(self, events):
        self.events = events

    async def __aenter__(self):
        return aiter_of(self.events)

    async def __aexit__(self, *exc_info):
        return False


class TestAnthropicEngine:
    def make_engine(self, events):
        client = MagicMock()
        client.messages.stream = MagicMock(return_value=FakeAnthropicStream(events))
        return AnthropicEngine({"api_key": "test", "llm_model": "claude-test"}, client=client), client

    def test_convert_messages_groups_tool_results(self):
        engine, _ = self.make_engine([])
        _, rest = split_system(conversation_with_tool_round())

        converted = engine._convert_messages(rest)

        assert [m["role"] for m in converted] == ["user", "assistant", "user"]
        assert converted[1]["content"] == [
            {"type": "tool_use", "id": "c1", "name": "list_x", "input": {"a": 1}}
        ]
        assert [b["tool_use_id"] for b in converted[2]["content"]] == ["c1", "c2"]

    @pytest.mark.asyncio
    async def test_stream_turn_maps_events(self):
        events = [
            SimpleNamespace(
                type="content_block_delta",
                delta=SimpleNamespace(type="thinking_delta", thinking="hmm"),
            ),
            SimpleNamespace(
                type="content_block_delta",
                delta=SimpleNamespace(type="text_delta", text="Checking"),
            ),
            SimpleNamespace(
                type="content_block_stop", content_block=SimpleNamespace(type="text")
            ),
            SimpleNamespace(
                type="content_block_stop",
                content_block=SimpleNamespace(
                    type="tool_use", id="toolu_1", name="list_x", input={"limit": 1}
                ),
            ),
            SimpleNamespace(type="message_stop"),
        ]
        engine, client = self.make_engine(events)

        chunks = await collect(
            engine.stream_turn(
                [
                    ChatMessage(role=MessageRole.SYSTEM, content="sys"),
                    ChatMessage(role=MessageRole.USER, content="hi"),
                ],
                [{"name": "list_x", "description": "d", "input_schema": {}}],
            )
        )

        assert chunks == [
            ThinkingChunk(text="hmm"),
            TokenChunk(text="Checking"),
            ToolCallChunk(id="toolu_1", name="list_x", arguments={"limit": 1}),
        ]
        request = client.messages.stream.call_args.kwargs
        assert request["system"] == "sys"
        assert request["tools"][0]["name"] == "list_x"
        assert "temperature" not in request
