import asyncio
import logging
import time
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import (
    Any,
    AsyncContextManager,
    AsyncIterator,
    Awaitable,
    Callable,
    Dict,
    List,
    Optional,
    Sequence,
    Tuple,
    TypeVar,
)

import anyio
import httpx
import logfire
from langchain_mcp_adapters.sessions import create_session
from mcp import ClientSession, types
from mcp.client.streamable_http import streamablehttp_client
from mcp.shared.exceptions import McpError
from pydantic import ValidationError

from .errors import (
    HubError,
    ProtocolError,
    RemoteExecutionError,
    RoutingError,
    ServerConnectionError,
    ToolTimeoutError,
)
from .models import (
    CapabilityKind,
    CapabilityRecord,
    ServerConfig,
    Session,
    SessionState,
    ToolExecutionResponse,
    TransportKind,
    render_content,
)

T = TypeVar("T")

TokenGetter = Optional[Callable[[], Optional[str]]]
SessionFactory = Callable[
    [ServerConfig], AsyncContextManager[Tuple[ClientSession, TokenGetter]]
]

# JSON-RPC error code the SDK raises for requests pending when a stream closes
CONNECTION_CLOSED = -32000

CONNECTION_FAILURES = (
    httpx.TransportError,
    OSError,
    anyio.ClosedResourceError,
    anyio.BrokenResourceError,
    anyio.EndOfStream,
)


@asynccontextmanager
async def open_mcp_session(
    config: ServerConfig,
) -> AsyncIterator[Tuple[ClientSession, TokenGetter]]:
    """
    Open an uninitialized client session for a server.

    Streamable HTTP is opened directly so the server-assigned Mcp-Session-Id
    can be read back; every other transport goes through langchain_mcp_adapters.
    """
    if config.transport == TransportKind.STREAMABLE_HTTP:
        async with streamablehttp_client(
            config.url, headers=dict(config.headers) or None
        ) as (read_stream, write_stream, get_session_id):
            async with ClientSession(read_stream, write_stream) as session:
                yield session, get_session_id
    else:
        async with create_session(config.to_connection()) as session:
            yield session, None


@dataclass
class _SessionSlot:
    """Internal per-server bookkeeping; never shared outside the manager."""

    config: ServerConfig
    session: Session
    lock: asyncio.Lock
    client: Optional[ClientSession] = None
    capabilities: Optional[types.ServerCapabilities] = None
    holder: Optional[asyncio.Task] = None
    release: Optional[asyncio.Event] = None


class SessionManager:
    """
    Owns one logical connection per configured capability server.

    Each connection lives inside its own holder task so the transport's
    context managers are entered and exited by the same task. State
    transitions for a server are serialized by that server's lock; a
    failure observed on an older connection (lower generation) never
    degrades a newer one.
    """

    def __init__(
        self,
        configs: Sequence[ServerConfig],
        session_factory: Optional[SessionFactory] = None,
        connect_timeout: float = 10.0,
        default_timeout: float = 30.0,
        close_timeout: float = 5.0,
        logger: Optional[logging.Logger] = None,
    ):
        self.logger = logger or logging.getLogger("SessionManager")
        self.session_factory = session_factory or open_mcp_session
        self.connect_timeout = connect_timeout
        self.default_timeout = default_timeout
        self.close_timeout = close_timeout

        self._slots: Dict[str, _SessionSlot] = {}
        for config in configs:
            if config.id in self._slots:
                self.logger.warning(f"Duplicate server id {config.id} ignored")
                continue
            self._slots[config.id] = _SessionSlot(
                config=config,
                session=Session(server_id=config.id),
                lock=asyncio.Lock(),
            )

    @property
    def server_ids(self) -> List[str]:
        """Server ids in registration order."""
        return list(self._slots.keys())

    def get_config(self, server_id: str) -> ServerConfig:
        return self._get_slot(server_id).config

    def get_session(self, server_id: str) -> Session:
        return self._get_slot(server_id).session.model_copy()

    def _get_slot(self, server_id: str) -> _SessionSlot:
        slot = self._slots.get(server_id)
        if slot is None:
            raise RoutingError(f"Unknown server: {server_id}", server_id=server_id)
        return slot

    # Lifecycle

    async def connect(self, server_id: str) -> Session:
        """
        Establish (or re-establish) the session for a server.

        Args:
            server_id: Configured server identifier.

        Returns:
            A snapshot of the now-active session.

        Raises:
            ServerConnectionError: The server is unreachable or the
                initialize handshake failed or timed out.
        """
        slot = self._get_slot(server_id)
        with logfire.span("session_manager.connect", server_id=server_id):
            async with slot.lock:
                await self._open(slot)
                return slot.session.model_copy()

    async def connect_all(self) -> Dict[str, bool]:
        """Connect every enabled server concurrently; failures stay isolated."""
        server_ids = [sid for sid, slot in self._slots.items() if slot.config.enabled]

        async def attempt(server_id: str) -> bool:
            try:
                await self.connect(server_id)
                return True
            except HubError as e:
                self.logger.warning(f"Failed to connect to {server_id}: {e}")
                return False

        results = await asyncio.gather(*(attempt(sid) for sid in server_ids))
        connected = dict(zip(server_ids, results))
        self.logger.info(
            f"Connected to {sum(connected.values())}/{len(connected)} MCP servers"
        )
        return connected

    async def close(self, server_id: str) -> None:
        """Release the connection; a closed session is never reopened lazily."""
        slot = self._get_slot(server_id)
        async with slot.lock:
            if slot.session.state == SessionState.CLOSED and slot.holder is None:
                return
            await self._release(slot)
            slot.session.state = SessionState.CLOSED
            self.logger.info(f"Closed session for {server_id}")

    async def close_all(self) -> None:
        await asyncio.gather(*(self.close(sid) for sid in self.server_ids))

    def status(self) -> List[Dict[str, Any]]:
        """Per-server status report in registration order."""
        report = []
        for server_id, slot in self._slots.items():
            session = slot.session
            report.append(
                {
                    "id": server_id,
                    "transport": slot.config.transport.value,
                    "endpoint": slot.config.endpoint,
                    "enabled": slot.config.enabled,
                    "state": session.state.value,
                    "token": session.token,
                    "generation": session.generation,
                    "last_error": session.last_error,
                    "server_name": session.server_name,
                    "protocol_version": session.protocol_version,
                    "connected_at": (
                        session.connected_at.isoformat() if session.connected_at else None
                    ),
                }
            )
        return report

    async def _open(self, slot: _SessionSlot) -> None:
        """Start a holder task and wait for its handshake. Caller holds slot.lock."""
        server_id = slot.config.id
        await self._release(slot)
        slot.session.state = SessionState.CONNECTING

        ready: asyncio.Future = asyncio.get_running_loop().create_future()
        release = asyncio.Event()
        holder = asyncio.create_task(
            self._hold(slot, ready, release), name=f"mcp-session-{server_id}"
        )

        try:
            client, init_result, token = await asyncio.wait_for(
                ready, timeout=self.connect_timeout
            )
        except asyncio.CancelledError:
            holder.cancel()
            raise
        except Exception as e:
            holder.cancel()
            await asyncio.gather(holder, return_exceptions=True)
            if isinstance(e, TimeoutError):
                message = f"Timed out connecting to {server_id} after {self.connect_timeout}s"
            else:
                message = f"Failed to connect to {server_id}: {e}"
            slot.session.state = SessionState.DEGRADED
            slot.session.last_error = message
            self.logger.error(message)
            raise ServerConnectionError(message, server_id=server_id) from e

        slot.client = client
        slot.holder = holder
        slot.release = release
        slot.capabilities = init_result.capabilities
        slot.session = Session(
            server_id=server_id,
            token=token or uuid.uuid4().hex,
            state=SessionState.ACTIVE,
            generation=slot.session.generation + 1,
            server_name=init_result.serverInfo.name,
            protocol_version=str(init_result.protocolVersion),
            connected_at=datetime.now(),
        )
        self.logger.info(
            f"Connected to {server_id} ({init_result.serverInfo.name}, "
            f"generation {slot.session.generation})"
        )

    async def _hold(
        self, slot: _SessionSlot, ready: asyncio.Future, release: asyncio.Event
    ) -> None:
        config = slot.config
        try:
            async with self.session_factory(config) as (client, get_token):
                init_result = await client.initialize()
                token = get_token() if get_token else None
                if ready.done():
                    return
                ready.set_result((client, init_result, token))
                await release.wait()
        except Exception as e:
            if not ready.done():
                ready.set_exception(e)
                return
            self.logger.warning(f"Session for {config.id} ended with error: {e}")
            self._holder_lost(slot, self._classify(e, config.id, "session"))

    def _holder_lost(self, slot: _SessionSlot, error: HubError) -> None:
        """
        Degrade the slot when its live transport dies underneath it.

        Runs inside the dying holder task. Only the holder currently
        installed on the slot may degrade it, so a stale transport never
        touches a reconnected session.
        """
        if slot.holder is not asyncio.current_task():
            return
        if slot.session.state != SessionState.ACTIVE:
            return
        slot.session.state = SessionState.DEGRADED
        slot.session.last_error = str(error)
        self.logger.warning(f"Session for {slot.config.id} degraded: {error}")

    async def _release(self, slot: _SessionSlot) -> None:
        holder, release = slot.holder, slot.release
        slot.client = None
        slot.capabilities = None
        slot.holder = None
        slot.release = None
        if holder is None or holder.done():
            return

        release.set()
        try:
            await asyncio.wait_for(holder, timeout=self.close_timeout)
        except TimeoutError:
            self.logger.warning(
                f"Session for {slot.config.id} did not close within {self.close_timeout}s"
            )

    async def _ensure_active(
        self, slot: _SessionSlot
    ) -> Tuple[ClientSession, asyncio.Task, int]:
        """Return a live client, reconnecting lazily if the session is not active."""
        async with slot.lock:
            if slot.session.state == SessionState.CLOSED:
                raise ServerConnectionError(
                    f"Session for {slot.config.id} is closed", server_id=slot.config.id
                )
            if slot.session.state != SessionState.ACTIVE or slot.client is None:
                self.logger.info(
                    f"Opening session for {slot.config.id} "
                    f"(state: {slot.session.state.value})"
                )
                await self._open(slot)
            return slot.client, slot.holder, slot.session.generation

    async def _degrade(self, slot: _SessionSlot, generation: int, error: HubError) -> None:
        async with slot.lock:
            if (
                slot.session.generation != generation
                or slot.session.state != SessionState.ACTIVE
            ):
                return
            slot.session.state = SessionState.DEGRADED
            slot.session.last_error = str(error)
            self.logger.warning(f"Session for {slot.config.id} degraded: {error}")

    def _classify(self, exc: BaseException, server_id: str, operation: str) -> HubError:
        """Map a transport or protocol exception onto the hub taxonomy."""
        if isinstance(exc, HubError):
            return exc
        if isinstance(exc, BaseExceptionGroup) and exc.exceptions:
            return self._classify(exc.exceptions[0], server_id, operation)
        if isinstance(exc, TimeoutError):
            return ToolTimeoutError(f"{operation} on {server_id} timed out", server_id)
        if isinstance(exc, ValidationError):
            return ProtocolError(
                f"Malformed response from {server_id} for {operation}: {exc}", server_id
            )
        if isinstance(exc, McpError):
            if exc.error.code == CONNECTION_CLOSED:
                return ServerConnectionError(
                    f"Connection to {server_id} closed: {exc.error.message}", server_id
                )
            return RemoteExecutionError(
                f"{operation} failed on {server_id}: {exc.error.message}", server_id
            )
        if isinstance(exc, httpx.HTTPStatusError):
            if exc.response.status_code >= 500:
                return ServerConnectionError(
                    f"{server_id} returned HTTP {exc.response.status_code}", server_id
                )
            return RemoteExecutionError(
                f"{server_id} rejected {operation} with HTTP {exc.response.status_code}",
                server_id,
            )
        if isinstance(exc, CONNECTION_FAILURES):
            return ServerConnectionError(f"{server_id} unreachable: {exc}", server_id)
        return ServerConnectionError(
            f"{operation} on {server_id} failed: {type(exc).__name__}: {exc}", server_id
        )

    async def _request(
        self,
        server_id: str,
        operation: str,
        call: Callable[[ClientSession], Awaitable[T]],
        timeout: Optional[float] = None,
    ) -> T:
        slot = self._get_slot(server_id)
        client, holder, generation = await self._ensure_active(slot)
        try:
            return await self._race_transport(
                slot, holder, call(client), timeout or self.default_timeout
            )
        except Exception as e:
            error = self._classify(e, server_id, operation)
            if isinstance(error, ServerConnectionError):
                await self._degrade(slot, generation, error)
            raise error from e

    async def _race_transport(
        self,
        slot: _SessionSlot,
        holder: asyncio.Task,
        request: Awaitable[T],
        timeout: float,
    ) -> T:
        """
        Await a request unless its transport dies or the timeout expires first.

        A dead holder means pending requests will never be answered, so
        they fail as a connection error straight away instead of waiting
        out their timeout.
        """
        call_task = asyncio.ensure_future(request)
        try:
            done, _ = await asyncio.wait(
                {call_task, holder}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            if not call_task.done():
                call_task.cancel()

        if call_task in done:
            return call_task.result()
        if holder in done:
            raise ServerConnectionError(
                slot.session.last_error or f"Connection to {slot.config.id} was lost",
                server_id=slot.config.id,
            )
        raise TimeoutError()

    # Protocol operations

    async def list_capabilities(self, server_id: str) -> List[CapabilityRecord]:
        """
        Discover the tools, resources and prompts a server exposes.

        Only the capability families advertised during initialize are
        queried; every family is followed through all of its pages.

        Raises:
            ServerConnectionError: The server could not be reached.
            ProtocolError: A discovery response was malformed.
        """
        with logfire.span("session_manager.list_capabilities", server_id=server_id):
            slot = self._get_slot(server_id)
            await self._ensure_active(slot)
            advertised = slot.capabilities

            records: List[CapabilityRecord] = []
            if advertised is None or advertised.tools is not None:
                tools = await self._collect_pages(server_id, "tools/list", "tools")
                for tool in tools:
                    self._require_name(server_id, tool.name, "tool")
                    records.append(
                        CapabilityRecord(
                            kind=CapabilityKind.TOOL,
                            name=tool.name,
                            server_id=server_id,
                            description=tool.description or "",
                            input_schema=tool.inputSchema or {},
                            title=getattr(tool, "title", None),
                        )
                    )

            if advertised is None or advertised.resources is not None:
                resources = await self._collect_pages(
                    server_id, "resources/list", "resources"
                )
                for resource in resources:
                    self._require_name(server_id, str(resource.uri), "resource")
                    records.append(
                        CapabilityRecord(
                            kind=CapabilityKind.RESOURCE,
                            name=str(resource.uri),
                            server_id=server_id,
                            description=resource.description or "",
                            title=resource.name,
                            mime_type=resource.mimeType,
                        )
                    )

            if advertised is None or advertised.prompts is not None:
                prompts = await self._collect_pages(server_id, "prompts/list", "prompts")
                for prompt in prompts:
                    self._require_name(server_id, prompt.name, "prompt")
                    records.append(
                        CapabilityRecord(
                            kind=CapabilityKind.PROMPT,
                            name=prompt.name,
                            server_id=server_id,
                            description=prompt.description or "",
                            arguments=[
                                arg.model_dump(exclude_none=True)
                                for arg in prompt.arguments or []
                            ],
                        )
                    )

            self.logger.info(f"Discovered {len(records)} capabilities on {server_id}")
            return records

    async def _collect_pages(self, server_id: str, operation: str, field: str) -> List[Any]:
        fetchers = {
            "tools": lambda client, cursor: client.list_tools(cursor=cursor),
            "resources": lambda client, cursor: client.list_resources(cursor=cursor),
            "prompts": lambda client, cursor: client.list_prompts(cursor=cursor),
        }
        fetch = fetchers[field]
        items: List[Any] = []
        seen_cursors = set()
        cursor: Optional[str] = None
        while True:
            page = await self._request(
                server_id, operation, lambda client: fetch(client, cursor)
            )
            items.extend(getattr(page, field))
            cursor = page.nextCursor
            if not cursor:
                return items
            if cursor in seen_cursors:
                raise ProtocolError(
                    f"{server_id} repeated pagination cursor for {operation}", server_id
                )
            seen_cursors.add(cursor)

    @staticmethod
    def _require_name(server_id: str, name: Optional[str], kind: str) -> None:
        if not name:
            raise ProtocolError(f"{server_id} advertised a {kind} without a name", server_id)

    async def invoke(
        self,
        server_id: str,
        name: str,
        arguments: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> ToolExecutionResponse:
        """
        Call a tool on a server, bounded by a timeout.

        Never raises: every outcome, including connection failures,
        timeouts and tool-reported errors, is returned as a response.
        """
        start_time = time.time()
        with logfire.span("session_manager.invoke", server_id=server_id, tool_name=name):
            try:
                result = await self._request(
                    server_id,
                    f"tools/call {name}",
                    lambda client: client.call_tool(name, arguments or {}),
                    timeout=timeout,
                )
                content = render_content(result.content)
                if result.isError:
                    raise RemoteExecutionError(
                        content or f"Tool {name} reported an error", server_id
                    )
                response = ToolExecutionResponse(
                    success=True,
                    tool_name=name,
                    server_id=server_id,
                    content=content,
                    raw_content=[
                        block.model_dump(mode="json", exclude_none=True)
                        for block in result.content
                    ],
                    execution_time_seconds=time.time() - start_time,
                )
                structured = getattr(result, "structuredContent", None)
                if structured is not None:
                    response.metadata["structured_content"] = structured
                return response
            except HubError as e:
                self.logger.warning(f"Tool {name} on {server_id} failed: {e}")
                return ToolExecutionResponse(
                    success=False,
                    tool_name=name,
                    server_id=server_id,
                    error=str(e),
                    error_kind=e.kind,
                    execution_time_seconds=time.time() - start_time,
                )

    async def read_resource(
        self, server_id: str, uri: str, timeout: Optional[float] = None
    ) -> types.ReadResourceResult:
        with logfire.span("session_manager.read_resource", server_id=server_id, uri=uri):
            return await self._request(
                server_id,
                f"resources/read {uri}",
                lambda client: client.read_resource(uri),
                timeout=timeout,
            )

    async def get_prompt(
        self,
        server_id: str,
        name: str,
        arguments: Optional[Dict[str, str]] = None,
        timeout: Optional[float] = None,
    ) -> types.GetPromptResult:
        with logfire.span("session_manager.get_prompt", server_id=server_id, prompt=name):
            return await self._request(
                server_id,
                f"prompts/get {name}",
                lambda client: client.get_prompt(name, arguments or {}),
                timeout=timeout,
            )
