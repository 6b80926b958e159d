"""
Data models shared by the session, aggregation and routing layers.
"""

import os
import sys
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Union

from mcp import types
from pydantic import BaseModel, ConfigDict, Field, model_validator


class TransportKind(str, Enum):
    """How the hub reaches a capability server."""

    STREAMABLE_HTTP = "streamable_http"
    SSE = "sse"
    STDIO = "stdio"
    WEBSOCKET = "websocket"


REMOTE_TRANSPORTS = (
    TransportKind.STREAMABLE_HTTP,
    TransportKind.SSE,
    TransportKind.WEBSOCKET,
)


class ServerConfig(BaseModel):
    """Immutable connection settings for one capability server."""

    model_config = ConfigDict(frozen=True)

    id: str
    transport: TransportKind
    url: Optional[str] = None
    command: Optional[str] = None
    args: List[str] = Field(default_factory=list)
    env: Dict[str, str] = Field(default_factory=dict)
    headers: Dict[str, str] = Field(default_factory=dict)
    enabled: bool = True

    @model_validator(mode="after")
    def _check_endpoint(self) -> "ServerConfig":
        if self.transport in REMOTE_TRANSPORTS and not self.url:
            raise ValueError(
                f"Server {self.id} uses {self.transport.value} and needs a 'url'"
            )
        if self.transport == TransportKind.STDIO and not self.command:
            raise ValueError(f"Server {self.id} uses stdio and needs a 'command'")
        return self

    @property
    def endpoint(self) -> str:
        if self.transport == TransportKind.STDIO:
            return " ".join([self.command or ""] + list(self.args))
        return self.url or ""

    @classmethod
    def parse(cls, server_id: str, value: Union[str, Dict[str, Any]]) -> "ServerConfig":
        """
        Build a ServerConfig from a settings-file entry.

        Args:
            server_id: Unique identifier for the server.
            value: An http(s) URL (streamable HTTP), a path to a Python
                   server script (stdio, run with the current interpreter)
                   or a dict naming its 'transport'.

        Returns:
            The validated configuration.
        """
        if isinstance(value, str):
            if value.startswith("http://") or value.startswith("https://"):
                return cls(id=server_id, transport=TransportKind.STREAMABLE_HTTP, url=value)
            return cls(
                id=server_id,
                transport=TransportKind.STDIO,
                command=sys.executable,
                args=[os.path.abspath(value)],
                env={"PYTHONPATH": os.environ.get("PYTHONPATH", "")},
            )

        if not isinstance(value, dict):
            raise ValueError(f"Unsupported config for server {server_id}: {value!r}")
        if "transport" not in value:
            raise ValueError(
                f"Server config dictionary for {server_id} must specify a 'transport' key."
            )

        data = dict(value)
        data.pop("id", None)
        if data["transport"] == TransportKind.STDIO.value and data.get(
            "command", "python"
        ) == "python":
            data["command"] = sys.executable
            data["args"] = [
                os.path.abspath(arg)
                if isinstance(arg, str) and (arg.endswith(".py") or os.sep in arg)
                else arg
                for arg in data.get("args", [])
            ]
        return cls(id=server_id, **data)

    def to_connection(self) -> Dict[str, Any]:
        """Connection mapping understood by langchain_mcp_adapters.create_session."""
        if self.transport == TransportKind.STDIO:
            return {
                "transport": "stdio",
                "command": self.command,
                "args": list(self.args),
                "env": dict(self.env) or None,
            }
        if self.transport == TransportKind.WEBSOCKET:
            return {"transport": "websocket", "url": self.url}
        return {
            "transport": self.transport.value,
            "url": self.url,
            "headers": dict(self.headers) or None,
        }


class SessionState(str, Enum):
    CONNECTING = "connecting"
    ACTIVE = "active"
    DEGRADED = "degraded"
    CLOSED = "closed"


class Session(BaseModel):
    """Observable state of the connection to one server."""

    server_id: str
    token: Optional[str] = None
    state: SessionState = SessionState.CONNECTING
    last_error: Optional[str] = None
    generation: int = 0
    server_name: Optional[str] = None
    protocol_version: Optional[str] = None
    connected_at: Optional[datetime] = None


class CapabilityKind(str, Enum):
    TOOL = "tool"
    RESOURCE = "resource"
    PROMPT = "prompt"


class CapabilityRecord(BaseModel):
    """One tool, resource or prompt as advertised by its owning server."""

    model_config = ConfigDict(frozen=True)

    kind: CapabilityKind
    name: str  # tool/prompt name, or resource URI
    server_id: str
    description: str = ""
    input_schema: Dict[str, Any] = Field(default_factory=dict)
    title: Optional[str] = None
    mime_type: Optional[str] = None
    arguments: List[Dict[str, Any]] = Field(default_factory=list)


class Collision(BaseModel):
    """A duplicate name that lost to the first registered owner."""

    model_config = ConfigDict(frozen=True)

    kind: CapabilityKind
    name: str
    owner: str
    rejected: str


class ToolExecutionResponse(BaseModel):
    """Uniform outcome of a tool call, successful or not."""

    success: bool
    tool_name: str
    server_id: Optional[str] = None
    content: str = ""
    raw_content: List[Dict[str, Any]] = Field(default_factory=list)
    error: Optional[str] = None
    error_kind: Optional[str] = None
    execution_time_seconds: float = 0.0
    metadata: Dict[str, Any] = Field(default_factory=dict)


def render_content(blocks: Sequence[Any]) -> str:
    """Flatten MCP content blocks into the text the model reads."""
    parts: List[str] = []
    for block in blocks:
        if isinstance(block, types.TextContent):
            parts.append(block.text)
        elif isinstance(block, types.ImageContent):
            parts.append(f"[image: {block.mimeType}]")
        elif isinstance(block, types.AudioContent):
            parts.append(f"[audio: {block.mimeType}]")
        elif isinstance(block, types.EmbeddedResource):
            resource = block.resource
            if isinstance(resource, types.TextResourceContents):
                parts.append(resource.text)
            else:
                parts.append(f"[resource: {resource.uri}]")
        else:
            parts.append(block.model_dump_json(exclude_none=True))
    return "\n".join(parts)
