"""
Pytest configuration and fixtures for MCP Hub testing

Capability servers are replaced by in-process fake client sessions that
answer with real mcp.types models; the model backend is replaced by a
scripted engine.
"""

import asyncio
import sys
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

import pytest
import pytest_asyncio
from mcp import types

# Add the src directory to the path
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

from agent.models import ChatMessage, ModelChunk, TokenChunk, ToolCallChunk  # noqa: E402
from engine.base import BaseEngine  # noqa: E402
from mcp_hub.aggregator import CapabilityAggregator  # noqa: E402
from mcp_hub.errors import ModelError  # noqa: E402
from mcp_hub.models import ServerConfig, TransportKind  # noqa: E402
from mcp_hub.router import ToolRouter  # noqa: E402
from mcp_hub.session import SessionManager  # noqa: E402

ToolHandler = Callable[[Dict[str, Any]], Awaitable[Union[str, types.CallToolResult]]]


def text_handler(text: str, delay: float = 0.0) -> ToolHandler:
    async def handler(arguments: Dict[str, Any]) -> str:
        if delay:
            await asyncio.sleep(delay)
        return text

    return handler


class FakeServer:
    """Behaviour of one capability server, shared by all its fake sessions."""

    def __init__(
        self,
        server_id: str,
        tools: Optional[Dict[str, ToolHandler]] = None,
        resources: Optional[Dict[str, str]] = None,
        prompts: Optional[Dict[str, str]] = None,
        page_size: Optional[int] = None,
        tool_schemas: Optional[Dict[str, Dict[str, Any]]] = None,
    ):
        self.server_id = server_id
        self.tools = tools or {}
        self.resources = resources or {}
        self.prompts = prompts or {}
        self.page_size = page_size
        self.tool_schemas = tool_schemas or {}

        self.reachable = True
        self.initialize_delay = 0.0
        self.list_error: Optional[BaseException] = None
        self.connect_attempts = 0
        self.open_sessions = 0
        self.closed_sessions = 0
        self.calls: List[Dict[str, Any]] = []
        self.completed_calls: List[str] = []

    def _page(self, items: List[Any], cursor: Optional[str]):
        start = int(cursor) if cursor else 0
        if not self.page_size:
            return items[start:], None
        end = start + self.page_size
        return items[start:end], (str(end) if end < len(items) else None)


class FakeClientSession:
    """Stands in for mcp.ClientSession."""

    def __init__(self, server: FakeServer):
        self.server = server
        self.initialized = False

    async def initialize(self) -> types.InitializeResult:
        if self.server.initialize_delay:
            await asyncio.sleep(self.server.initialize_delay)
        self.initialized = True
        return types.InitializeResult(
            protocolVersion="2025-03-26",
            capabilities=types.ServerCapabilities(
                tools=types.ToolsCapability() if self.server.tools else None,
                resources=types.ResourcesCapability() if self.server.resources else None,
                prompts=types.PromptsCapability() if self.server.prompts else None,
            ),
            serverInfo=types.Implementation(name=f"{self.server.server_id}-server", version="1.0.0"),
        )

    def _check(self) -> None:
        if self.server.list_error is not None:
            raise self.server.list_error

    async def list_tools(self, cursor: Optional[str] = None) -> types.ListToolsResult:
        self._check()
        tools = [
            types.Tool(
                name=name,
                description=f"{name} on {self.server.server_id}",
                inputSchema=self.server.tool_schemas.get(
                    name, {"type": "object", "properties": {"id": {"type": "string"}}, "required": ["id"]}
                ),
            )
            for name in self.server.tools
        ]
        page, next_cursor = self.server._page(tools, cursor)
        return types.ListToolsResult(tools=page, nextCursor=next_cursor)

    async def list_resources(self, cursor: Optional[str] = None) -> types.ListResourcesResult:
        self._check()
        resources = [
            types.Resource(uri=uri, name=uri.rsplit("/", 1)[-1], mimeType="text/plain")
            for uri in self.server.resources
        ]
        page, next_cursor = self.server._page(resources, cursor)
        return types.ListResourcesResult(resources=page, nextCursor=next_cursor)

    async def list_prompts(self, cursor: Optional[str] = None) -> types.ListPromptsResult:
        self._check()
        prompts = [
            types.Prompt(
                name=name,
                description=f"{name} prompt",
                arguments=[types.PromptArgument(name="topic", required=False)],
            )
            for name in self.server.prompts
        ]
        page, next_cursor = self.server._page(prompts, cursor)
        return types.ListPromptsResult(prompts=page, nextCursor=next_cursor)

    async def call_tool(
        self, name: str, arguments: Optional[Dict[str, Any]] = None
    ) -> types.CallToolResult:
        self.server.calls.append({"name": name, "arguments": arguments or {}})
        handler = self.server.tools[name]
        result = await handler(arguments or {})
        self.server.completed_calls.append(name)
        if isinstance(result, types.CallToolResult):
            return result
        return types.CallToolResult(content=[types.TextContent(type="text", text=result)])

    async def read_resource(self, uri: Any) -> types.ReadResourceResult:
        text = self.server.resources[str(uri)]
        return types.ReadResourceResult(
            contents=[types.TextResourceContents(uri=str(uri), text=text, mimeType="text/plain")]
        )

    async def get_prompt(
        self, name: str, arguments: Optional[Dict[str, str]] = None
    ) -> types.GetPromptResult:
        template = self.server.prompts[name]
        text = template.format(**(arguments or {}))
        return types.GetPromptResult(
            description=f"{name} prompt",
            messages=[
                types.PromptMessage(role="user", content=types.TextContent(type="text", text=text))
            ],
        )


class FakeServerRegistry:
    """Session factory handing out fake sessions for registered servers."""

    def __init__(self, *servers: FakeServer):
        self.servers: Dict[str, FakeServer] = {s.server_id: s for s in servers}

    def configs(self) -> List[ServerConfig]:
        return [
            ServerConfig(
                id=server_id,
                transport=TransportKind.STREAMABLE_HTTP,
                url=f"http://{server_id}.test/mcp",
            )
            for server_id in self.servers
        ]

    @asynccontextmanager
    async def factory(self, config: ServerConfig):
        server = self.servers[config.id]
        server.connect_attempts += 1
        if not server.reachable:
            raise OSError(f"{config.id} refused the connection")
        attempt = server.connect_attempts
        server.open_sessions += 1
        try:
            yield FakeClientSession(server), (lambda: f"{config.id}-token-{attempt}")
        finally:
            server.open_sessions -= 1
            server.closed_sessions += 1


class ScriptedEngine(BaseEngine):
    """
    Model backend that replays scripted turns.

    Each turn is a list of chunks, or an exception to raise. Once the
    script runs out the last turn repeats when ``repeat_last`` is set.
    """

    model_name = "scripted"

    def __init__(self, turns: List[Union[List[ModelChunk], BaseException]], repeat_last: bool = False):
        self.turns = list(turns)
        self.repeat_last = repeat_last
        self.requests: List[Dict[str, Any]] = []
        self.closed = False

    async def stream_turn(self, messages: List[ChatMessage], tools: List[Dict[str, Any]]):
        index = len(self.requests)
        self.requests.append({"messages": list(messages), "tools": list(tools)})
        if index >= len(self.turns):
            if not self.repeat_last:
                raise ModelError("Script exhausted")
            index = len(self.turns) - 1
        turn = self.turns[index]
        if isinstance(turn, BaseException):
            raise turn
        for chunk in turn:
            await asyncio.sleep(0)
            yield chunk

    async def close(self) -> None:
        self.closed = True


def tool_call(name: str, call_id: Optional[str] = None, **arguments: Any) -> ToolCallChunk:
    return ToolCallChunk(id=call_id, name=name, arguments=arguments)


def tokens(*parts: str) -> List[TokenChunk]:
    return [TokenChunk(text=part) for part in parts]


async def collect(events) -> List[Any]:
    return [event async for event in events]


@pytest.fixture
def server_a() -> FakeServer:
    return FakeServer(
        "alpha",
        tools={"list_x": text_handler("x1, x2, x3"), "shared_tool": text_handler("alpha wins")},
        resources={"docs://alpha/readme": "Alpha readme"},
        prompts={"summarize": "Summarize {topic}"},
    )


@pytest.fixture
def server_b() -> FakeServer:
    return FakeServer(
        "beta",
        tools={"get_y_detail": text_handler("detail for y"), "shared_tool": text_handler("beta wins")},
    )


@pytest.fixture
def registry(server_a, server_b) -> FakeServerRegistry:
    return FakeServerRegistry(server_a, server_b)


@pytest_asyncio.fixture
async def session_manager(registry):
    manager = SessionManager(
        registry.configs(),
        session_factory=registry.factory,
        connect_timeout=1.0,
        default_timeout=1.0,
    )
    yield manager
    await manager.close_all()


@pytest_asyncio.fixture
async def hub(session_manager):
    """Connected sessions, refreshed directory and a router."""
    await session_manager.connect_all()
    aggregator = CapabilityAggregator(session_manager)
    await aggregator.refresh()
    router = ToolRouter(session_manager, aggregator, default_timeout=1.0)
    return session_manager, aggregator, router
