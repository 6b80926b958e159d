"""
Error taxonomy for the hub core.

Every failure that crosses a component boundary is one of these. Tool-level
failures are converted into ToolExecutionResponse values by SessionManager
and ToolRouter; only model failures terminate a conversation.
"""

from typing import Optional


class HubError(Exception):
    """Base class for all hub failures."""

    kind = "HubError"

    def __init__(self, message: str, server_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.server_id = server_id

    def __str__(self) -> str:
        return self.message


class ServerConnectionError(HubError, ConnectionError):
    """Server unreachable, transport broken or handshake failed."""

    kind = "ConnectionError"


class ProtocolError(HubError):
    """Malformed or schema-violating response from a server."""

    kind = "ProtocolError"


class RoutingError(HubError):
    """No server owns the requested tool, prompt or resource."""

    kind = "RoutingError"


class ToolTimeoutError(HubError, TimeoutError):
    """A remote call exceeded its time bound."""

    kind = "TimeoutError"


class RemoteExecutionError(HubError):
    """The server executed the request but reported a failure."""

    kind = "RemoteExecutionError"


class ModelError(HubError):
    """Model backend unreachable or produced an unusable turn."""

    kind = "ModelError"


class IterationLimitExceeded(HubError):
    """The per-conversation cycle cap was reached."""

    kind = "IterationLimitExceeded"


class ConversationConflictError(HubError):
    """A conversation with the same id is already running."""

    kind = "ConversationConflict"


class InvalidTransitionError(ValueError):
    """A ToolInvocation was moved backwards or out of a terminal state."""
