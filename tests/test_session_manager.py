"""
Test SessionManager lifecycle, discovery and invocation
"""

import asyncio
from contextlib import asynccontextmanager

import anyio
import httpx
import pytest
from mcp import types
from mcp.shared.exceptions import McpError
from pydantic import ValidationError

from conftest import FakeServer, FakeServerRegistry, text_handler
from mcp_hub.errors import (
    ProtocolError,
    RemoteExecutionError,
    RoutingError,
    ServerConnectionError,
)
from mcp_hub.models import CapabilityKind, ServerConfig, SessionState, TransportKind
from mcp_hub.session import SessionManager


@pytest.mark.asyncio
async def test_connect_activates_session(session_manager, server_a):
    """Test connect performs the handshake and records an active session"""
    session = await session_manager.connect("alpha")

    assert session.state == SessionState.ACTIVE
    assert session.token == "alpha-token-1"
    assert session.generation == 1
    assert session.server_name == "alpha-server"
    assert session.protocol_version == "2025-03-26"
    assert server_a.open_sessions == 1


@pytest.mark.asyncio
async def test_connect_all_isolates_failures(session_manager, server_b):
    """Test one unreachable server does not stop the others"""
    server_b.reachable = False

    results = await session_manager.connect_all()

    assert results == {"alpha": True, "beta": False}
    assert session_manager.get_session("alpha").state == SessionState.ACTIVE
    beta = session_manager.get_session("beta")
    assert beta.state == SessionState.DEGRADED
    assert "refused" in beta.last_error


@pytest.mark.asyncio
async def test_connect_timeout_degrades():
    """Test a handshake that never completes is bounded by connect_timeout"""
    slow = FakeServer("slow", tools={"noop": text_handler("ok")})
    slow.initialize_delay = 5.0
    registry = FakeServerRegistry(slow)
    manager = SessionManager(
        registry.configs(), session_factory=registry.factory, connect_timeout=0.05
    )

    with pytest.raises(ServerConnectionError) as exc_info:
        await manager.connect("slow")

    assert "Timed out" in str(exc_info.value)
    assert manager.get_session("slow").state == SessionState.DEGRADED
    assert slow.open_sessions == 0
    await manager.close_all()


@pytest.mark.asyncio
async def test_unknown_server_raises_routing_error(session_manager):
    with pytest.raises(RoutingError):
        await session_manager.connect("gamma")


def test_duplicate_server_ids_keep_first():
    configs = [
        ServerConfig(id="dup", transport=TransportKind.STREAMABLE_HTTP, url="http://a/mcp"),
        ServerConfig(id="dup", transport=TransportKind.STREAMABLE_HTTP, url="http://b/mcp"),
    ]
    manager = SessionManager(configs)

    assert manager.server_ids == ["dup"]
    assert manager.get_config("dup").url == "http://a/mcp"


@pytest.mark.asyncio
async def test_list_capabilities_follows_pagination():
    """Test every page of every advertised family is collected"""
    server = FakeServer(
        "paged",
        tools={f"tool_{i}": text_handler(str(i)) for i in range(5)},
        resources={"docs://paged/a": "A", "docs://paged/b": "B", "docs://paged/c": "C"},
        page_size=2,
    )
    registry = FakeServerRegistry(server)
    manager = SessionManager(registry.configs(), session_factory=registry.factory)

    records = await manager.list_capabilities("paged")

    tools = [r.name for r in records if r.kind == CapabilityKind.TOOL]
    resources = [r.name for r in records if r.kind == CapabilityKind.RESOURCE]
    assert tools == [f"tool_{i}" for i in range(5)]
    assert resources == ["docs://paged/a", "docs://paged/b", "docs://paged/c"]
    # No prompts capability was advertised
    assert not [r for r in records if r.kind == CapabilityKind.PROMPT]
    await manager.close_all()


@pytest.mark.asyncio
async def test_list_capabilities_connects_lazily(session_manager, server_a):
    records = await session_manager.list_capabilities("alpha")

    assert server_a.connect_attempts == 1
    assert {r.kind for r in records} == {
        CapabilityKind.TOOL,
        CapabilityKind.RESOURCE,
        CapabilityKind.PROMPT,
    }
    prompt = next(r for r in records if r.kind == CapabilityKind.PROMPT)
    assert prompt.arguments == [{"name": "topic", "required": False}]


@pytest.mark.asyncio
async def test_malformed_listing_is_protocol_error(session_manager, server_a):
    await session_manager.connect("alpha")
    # The SDK raises pydantic ValidationError for schema violations
    with pytest.raises(ValidationError) as exc_info:
        types.Tool.model_validate({"description": "missing name"})
    server_a.list_error = exc_info.value

    with pytest.raises(ProtocolError):
        await session_manager.list_capabilities("alpha")

    # Malformed data does not mean the connection is broken
    assert session_manager.get_session("alpha").state == SessionState.ACTIVE


@pytest.mark.asyncio
async def test_invoke_success(hub, server_b):
    session_manager, _, _ = hub

    response = await session_manager.invoke("beta", "get_y_detail", {"id": "y"})

    assert response.success
    assert response.server_id == "beta"
    assert response.content == "detail for y"
    assert response.raw_content == [{"type": "text", "text": "detail for y"}]
    assert server_b.calls == [{"name": "get_y_detail", "arguments": {"id": "y"}}]


@pytest.mark.asyncio
async def test_invoke_tool_error_is_remote_execution_error(hub, server_a):
    session_manager, _, _ = hub

    async def failing(arguments):
        return types.CallToolResult(
            content=[types.TextContent(type="text", text="no such item")], isError=True
        )

    server_a.tools["list_x"] = failing

    response = await session_manager.invoke("alpha", "list_x", {})

    assert not response.success
    assert response.error_kind == RemoteExecutionError.kind
    assert response.error == "no such item"
    assert session_manager.get_session("alpha").state == SessionState.ACTIVE


@pytest.mark.asyncio
async def test_invoke_mcp_error_is_remote_execution_error(hub, server_a):
    session_manager, _, _ = hub

    async def rejecting(arguments):
        raise McpError(types.ErrorData(code=types.INVALID_PARAMS, message="bad id"))

    server_a.tools["list_x"] = rejecting

    response = await session_manager.invoke("alpha", "list_x", {})

    assert not response.success
    assert response.error_kind == "RemoteExecutionError"
    assert "bad id" in response.error


@pytest.mark.asyncio
async def test_invoke_timeout(hub, server_a):
    session_manager, _, _ = hub
    server_a.tools["list_x"] = text_handler("late", delay=1.0)

    response = await session_manager.invoke("alpha", "list_x", {}, timeout=0.05)

    assert not response.success
    assert response.error_kind == "TimeoutError"
    assert response.execution_time_seconds < 1.0
    # A slow tool does not degrade the session
    assert session_manager.get_session("alpha").state == SessionState.ACTIVE


@pytest.mark.asyncio
async def test_connection_failure_degrades_then_reconnects(hub, server_a):
    """Test a broken transport degrades the session and the next call reconnects"""
    session_manager, _, _ = hub

    async def broken(arguments):
        raise ConnectionResetError("stream reset")

    original = server_a.tools["list_x"]
    server_a.tools["list_x"] = broken

    response = await session_manager.invoke("alpha", "list_x", {})

    assert not response.success
    assert response.error_kind == ServerConnectionError.kind
    degraded = session_manager.get_session("alpha")
    assert degraded.state == SessionState.DEGRADED
    assert degraded.generation == 1

    server_a.tools["list_x"] = original
    response = await session_manager.invoke("alpha", "list_x", {})

    assert response.success
    session = session_manager.get_session("alpha")
    assert session.state == SessionState.ACTIVE
    assert session.generation == 2
    assert session.token == "alpha-token-2"
    assert server_a.open_sessions == 1


@pytest.mark.asyncio
async def test_stale_failure_does_not_degrade_newer_session(hub, server_a):
    """Test a failure from an older generation leaves a reconnected session alone"""
    session_manager, _, _ = hub
    release = asyncio.Event()

    async def slow_then_broken(arguments):
        await release.wait()
        raise ConnectionResetError("old stream died")

    server_a.tools["list_x"] = slow_then_broken
    pending = asyncio.create_task(session_manager.invoke("alpha", "list_x", {}))
    await asyncio.sleep(0.01)

    # Reconnect while the old call is still in flight
    await session_manager.connect("alpha")
    assert session_manager.get_session("alpha").generation == 2

    release.set()
    response = await pending

    assert not response.success
    session = session_manager.get_session("alpha")
    assert session.state == SessionState.ACTIVE
    assert session.generation == 2


@pytest.mark.asyncio
async def test_closed_session_is_not_reopened(hub, server_a):
    session_manager, _, _ = hub

    await session_manager.close("alpha")
    response = await session_manager.invoke("alpha", "list_x", {})

    assert session_manager.get_session("alpha").state == SessionState.CLOSED
    assert not response.success
    assert response.error_kind == ServerConnectionError.kind
    assert server_a.connect_attempts == 1
    assert server_a.open_sessions == 0


@pytest.mark.asyncio
async def test_invoke_unknown_server_never_raises(session_manager):
    response = await session_manager.invoke("gamma", "anything", {})

    assert not response.success
    assert response.error_kind == RoutingError.kind


@pytest.mark.asyncio
async def test_read_resource_and_get_prompt(hub):
    session_manager, _, _ = hub

    resource = await session_manager.read_resource("alpha", "docs://alpha/readme")
    prompt = await session_manager.get_prompt("alpha", "summarize", {"topic": "x"})

    assert resource.contents[0].text == "Alpha readme"
    assert prompt.messages[0].content.text == "Summarize x"


@pytest.mark.asyncio
async def test_status_reports_every_server(hub):
    session_manager, _, _ = hub
    await session_manager.close("beta")

    status = session_manager.status()

    assert [s["id"] for s in status] == ["alpha", "beta"]
    assert status[0]["state"] == "active"
    assert status[0]["endpoint"] == "http://alpha.test/mcp"
    assert status[0]["connected_at"] is not None
    assert status[1]["state"] == "closed"


@pytest.mark.asyncio
async def test_close_all_releases_transports(registry, server_a, server_b):
    manager = SessionManager(registry.configs(), session_factory=registry.factory)
    await manager.connect_all()

    await manager.close_all()

    assert server_a.open_sessions == 0
    assert server_b.open_sessions == 0
    assert server_a.closed_sessions == 1


class DyingTransportRegistry(FakeServerRegistry):
    """
    Fake sessions whose transport runs in a task group, like the HTTP
    client does, and can be killed with an error while calls are pending.
    """

    def __init__(self, *servers: FakeServer):
        super().__init__(*servers)
        self.transport_error = None
        self._broken = []

    def kill_transports(self, error: BaseException) -> None:
        self.transport_error = error
        for broken in self._broken:
            broken.set()

    async def _watch(self, broken: asyncio.Event) -> None:
        await broken.wait()
        raise self.transport_error

    @asynccontextmanager
    async def factory(self, config: ServerConfig):
        broken = asyncio.Event()
        self._broken.append(broken)
        try:
            async with super().factory(config) as opened:
                async with anyio.create_task_group() as tg:
                    tg.start_soon(self._watch, broken)
                    yield opened
                    tg.cancel_scope.cancel()
        finally:
            self._broken.remove(broken)


def http_503(url: str) -> httpx.HTTPStatusError:
    request = httpx.Request("POST", url)
    return httpx.HTTPStatusError(
        "Server error '503 Service Unavailable'",
        request=request,
        response=httpx.Response(503, request=request),
    )


@pytest.mark.asyncio
async def test_transport_death_mid_call_degrades_immediately():
    """Test a 5xx that kills the transport fails the pending call and degrades the session"""
    stuck = asyncio.Event()

    async def never_answers(arguments):
        await stuck.wait()
        return "unreachable"

    server = FakeServer("web", tools={"fetch": never_answers, "ping": text_handler("pong")})
    registry = DyingTransportRegistry(server)
    manager = SessionManager(
        registry.configs(), session_factory=registry.factory, default_timeout=5.0
    )
    await manager.connect("web")

    pending = asyncio.create_task(manager.invoke("web", "fetch", {}))
    await asyncio.sleep(0.01)
    registry.kill_transports(http_503("http://web.test/mcp"))
    response = await asyncio.wait_for(pending, timeout=1.0)

    assert not response.success
    assert response.error_kind == ServerConnectionError.kind
    assert "503" in response.error
    assert response.execution_time_seconds < 1.0
    session = manager.get_session("web")
    assert session.state == SessionState.DEGRADED
    assert session.generation == 1
    assert server.open_sessions == 0

    # The next call reconnects instead of failing against the dead client
    response = await manager.invoke("web", "ping", {})

    assert response.success
    assert response.content == "pong"
    assert manager.get_session("web").generation == 2
    assert server.connect_attempts == 2
    await manager.close_all()


@pytest.mark.asyncio
async def test_idle_transport_death_degrades_session():
    server = FakeServer("web", tools={"ping": text_handler("pong")})
    registry = DyingTransportRegistry(server)
    manager = SessionManager(registry.configs(), session_factory=registry.factory)
    await manager.connect("web")

    registry.kill_transports(http_503("http://web.test/mcp"))
    await asyncio.sleep(0.01)

    session = manager.get_session("web")
    assert session.state == SessionState.DEGRADED
    assert "HTTP 503" in session.last_error
    await manager.close_all()


@pytest.mark.asyncio
async def test_concurrent_calls_on_degraded_session_reconnect_once(hub, server_a):
    """Test callers racing on a degraded session share a single reconnect"""
    session_manager, _, _ = hub
    original = server_a.tools["list_x"]

    async def broken(arguments):
        raise ConnectionResetError("stream reset")

    server_a.tools["list_x"] = broken
    await session_manager.invoke("alpha", "list_x", {})
    assert session_manager.get_session("alpha").state == SessionState.DEGRADED
    server_a.tools["list_x"] = original

    responses = await asyncio.gather(
        *(session_manager.invoke("alpha", "list_x", {}) for _ in range(5))
    )

    assert all(r.success for r in responses)
    assert server_a.connect_attempts == 2
    assert server_a.open_sessions == 1
    assert session_manager.get_session("alpha").generation == 2
