import asyncio
import json
import logging
import os
import uuid
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

import logfire
import uvicorn
from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.websockets import WebSocketState
from pydantic import TypeAdapter, ValidationError

from agent.models import ChatMessage
from api.app import create_app
from api.models.schemas import HistoryMessage
from app.coordinator import AppCoordinator
from app.events import to_message
from app.streaming import EventStream
from config import Settings
from engine import BaseEngine, EngineFactory
from mcp_hub.errors import ConversationConflictError
from mcp_hub.models import ServerConfig
from mcp_hub.session import SessionManager
from rag import HttpRetriever, Retriever

history_adapter: TypeAdapter = TypeAdapter(List[HistoryMessage])


def safe_json_serialize(obj):
    """Custom JSON serializer that handles datetime objects."""
    if isinstance(obj, datetime):
        return obj.isoformat()
    raise TypeError(f"Object of type {type(obj)} is not JSON serializable")


def load_server_configs(
    mcp_file_path: Path, logger: Optional[logging.Logger] = None
) -> List[ServerConfig]:
    """
    Read the MCP settings file, creating an empty one if missing.

    Format: {"servers": [{"id": "...", "config": <url | script path | dict>}]}.
    Invalid entries are logged and skipped.
    """
    logger = logger or logging.getLogger("mcp-hub")
    if not mcp_file_path.exists():
        mcp_file_path.parent.mkdir(parents=True, exist_ok=True)
        with open(mcp_file_path, "w") as f:
            json.dump({"servers": []}, f, indent=2)
        return []

    try:
        with open(mcp_file_path, "r") as f:
            settings = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        logger.error(f"Error loading MCP settings: {e}")
        return []

    configs = []
    for entry in settings.get("servers", []):
        server_id = entry.get("id")
        value = entry.get("config") or entry.get("path") or entry.get("url")
        if not server_id or not value:
            logger.error(f"Skipping MCP server entry without id/config: {entry}")
            continue
        try:
            configs.append(ServerConfig.parse(server_id, value))
        except ValueError as e:
            logger.error(f"Invalid config for MCP server {server_id}: {e}")
    return configs


class HubServer:
    def __init__(
        self,
        logger: logging.Logger,
        settings: Settings,
        mcp_file_path: Path,
        engine: Optional[BaseEngine] = None,
        session_manager: Optional[SessionManager] = None,
        retriever: Optional[Retriever] = None,
    ) -> None:
        self.logger = logger
        self.settings = settings
        self.mcp_file_path = mcp_file_path
        self.host = settings.host
        self.port = settings.port

        if session_manager is None:
            session_manager = SessionManager(
                load_server_configs(mcp_file_path, logger),
                connect_timeout=settings.connect_timeout_seconds,
                default_timeout=settings.tool_timeout_seconds,
                logger=logger,
            )
        if engine is None:
            engine = EngineFactory.create_engine(
                settings.engine_type, settings.get_llm_config()
            )
        if retriever is None and settings.rag_enabled and settings.retrieval_url:
            retriever = HttpRetriever(
                settings.retrieval_url,
                top_k=settings.rag_top_k,
                timeout=settings.retrieval_timeout_seconds,
                logger=logger,
            )

        self.app_coordinator = AppCoordinator.from_settings(
            settings, session_manager, engine, retriever, logger=logger
        )
        self.connected_clients: Dict[str, WebSocket] = {}

        self.app = create_app(
            coordinator=self.app_coordinator, settings=settings, lifespan=self._lifespan
        )

        @self.app.websocket("/ws")
        async def websocket_endpoint(websocket: WebSocket):
            await self.websocket_handler(websocket)

    @asynccontextmanager
    async def _lifespan(self, app: FastAPI):
        await self.start()
        try:
            yield
        finally:
            await self.shutdown()

    async def _safe_send_json(
        self, websocket: WebSocket, message: Dict[str, Any]
    ) -> bool:
        """Safely send JSON message to websocket, return True if successful."""
        try:
            if websocket.client_state != WebSocketState.CONNECTED:
                return False
            await websocket.send_text(json.dumps(message, default=safe_json_serialize))
            return True
        except Exception as e:
            if self.logger.isEnabledFor(logging.DEBUG):
                self.logger.debug(f"Failed to send message to websocket: {e}")
            return False

    async def websocket_handler(self, websocket: WebSocket) -> None:
        """Handle one WebSocket client; at most one conversation runs at a time."""
        await websocket.accept()
        client_id = str(uuid.uuid4())
        self.connected_clients[client_id] = websocket

        with logfire.span("hub_server.websocket_connection", client_id=client_id):
            await self._handle_websocket_session(websocket, client_id)

    async def _handle_websocket_session(self, websocket: WebSocket, client_id: str) -> None:
        active: Dict[str, Any] = {"stream": None, "task": None}
        try:
            await self._safe_send_json(
                websocket,
                {
                    "type": "status",
                    "client_id": client_id,
                    "servers": self.app_coordinator.session_manager.status(),
                },
            )

            while True:
                message = await websocket.receive_text()
                try:
                    data = json.loads(message)
                except json.JSONDecodeError:
                    await self._safe_send_json(
                        websocket, {"type": "error", "error": "Invalid JSON message"}
                    )
                    continue

                with logfire.span(
                    "hub_server.process_command",
                    command=data.get("command", "unknown"),
                    client_id=client_id,
                ):
                    await self.process_command(websocket, data, active)

        except WebSocketDisconnect:
            # Normal client disconnect
            pass
        except Exception:
            self.logger.exception("Unhandled error in websocket_handler")
        finally:
            if active["stream"] is not None:
                active["stream"].cancel()
            self.connected_clients.pop(client_id, None)

    async def process_command(
        self, websocket: WebSocket, data: Dict[str, Any], active: Dict[str, Any]
    ) -> None:
        """Process incoming WebSocket commands."""
        command = data.get("command")

        if command == "chat":
            message = data.get("message")
            if not message:
                await self._safe_send_json(
                    websocket, {"type": "error", "error": "Missing message"}
                )
                return
            task = active["task"]
            if task is not None and not task.done():
                await self._safe_send_json(
                    websocket,
                    {"type": "error", "error": "A conversation is already running"},
                )
                return

            try:
                history = [
                    m.to_chat_message()
                    for m in history_adapter.validate_python(data.get("history") or [])
                ]
            except ValidationError as e:
                await self._safe_send_json(
                    websocket,
                    {"type": "error", "error": f"Invalid history: {e.error_count()} bad entries"},
                )
                return
            try:
                stream = self.app_coordinator.create_stream(data.get("conversation_id"))
            except ConversationConflictError as e:
                await self._safe_send_json(websocket, {"type": "error", "error": str(e)})
                return
            active["stream"] = stream
            active["task"] = asyncio.create_task(
                self._forward_events(websocket, stream, message, history, data.get("use_rag", True))
            )
        elif command == "cancel":
            stream = active["stream"]
            cancelled = stream is not None and not stream.finished
            if cancelled:
                stream.cancel()
            await self._safe_send_json(
                websocket,
                {
                    "type": "cancelled",
                    "conversation_id": stream.conversation_id if stream else None,
                    "cancelled": cancelled,
                },
            )
        elif command == "get_servers":
            await self._safe_send_json(
                websocket,
                {"type": "servers", "servers": self.app_coordinator.session_manager.status()},
            )
        elif command == "get_all_tools":
            await self._safe_send_json(
                websocket,
                {
                    "type": "tools",
                    "tools": self.app_coordinator.directory.tool_specs(),
                },
            )
        else:
            await self._safe_send_json(
                websocket, {"type": "error", "error": f"Unknown command: {command}"}
            )

    async def _forward_events(
        self,
        websocket: WebSocket,
        stream: EventStream,
        message: str,
        history: List[ChatMessage],
        use_rag: bool,
    ) -> None:
        try:
            async for event in self.app_coordinator.stream_chat(
                message, history, use_rag, stream=stream
            ):
                if not await self._safe_send_json(websocket, to_message(event)):
                    stream.cancel()
        except ConversationConflictError as e:
            await self._safe_send_json(websocket, {"type": "error", "error": str(e)})

    async def listen(self):
        """Start the server and listen for connections."""
        self.logger.info("Starting MCP Hub server")
        config = uvicorn.Config(
            app=self.app,
            host=self.host,
            port=self.port,
            log_level="info" if self.settings.debug else "warning",
        )
        server = uvicorn.Server(config)

        self.logger.info(f"MCP Hub server running on http://{self.host}:{self.port}")
        await server.serve()

    async def start(self):
        """Connect configured servers and build the capability directory."""
        self.logger.info("Initializing application layer...")
        await self.app_coordinator.initialize()

        directory = self.app_coordinator.directory
        self.logger.info("MCP Hub initialization complete:")
        for status in self.app_coordinator.session_manager.status():
            self.logger.info(f"  - {status['id']}: {status['state']}")
        self.logger.info(
            f"  - {len(directory.tools())} tools, {len(directory.resources())} resources, "
            f"{len(directory.prompts())} prompts"
        )
        self.logger.info(f"MCP Hub server started with PID {os.getpid()}")

    async def shutdown(self):
        """Shutdown the server and cleanup resources."""
        self.logger.info("Shutting down MCP Hub server...")
        try:
            for client_id, client in list(self.connected_clients.items()):
                try:
                    await client.close()
                except RuntimeError as e:
                    self.logger.debug(f"Client {client_id} already closed: {e}")
            self.connected_clients.clear()

            await self.app_coordinator.shutdown()
            self.logger.info("MCP Hub server shutdown completed")
        except Exception as e:
            self.logger.error(f"Shutdown error: {e}")
