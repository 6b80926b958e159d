from .aggregator import CapabilityAggregator, CapabilityDirectory, merge_capabilities
from .errors import (
    ConversationConflictError,
    HubError,
    InvalidTransitionError,
    IterationLimitExceeded,
    ModelError,
    ProtocolError,
    RemoteExecutionError,
    RoutingError,
    ServerConnectionError,
    ToolTimeoutError,
)
from .models import (
    CapabilityKind,
    CapabilityRecord,
    Collision,
    ServerConfig,
    Session,
    SessionState,
    ToolExecutionResponse,
    TransportKind,
)
from .router import ToolRouter
from .session import SessionManager, open_mcp_session

__all__ = [
    "CapabilityAggregator",
    "CapabilityDirectory",
    "CapabilityKind",
    "CapabilityRecord",
    "Collision",
    "ConversationConflictError",
    "HubError",
    "InvalidTransitionError",
    "IterationLimitExceeded",
    "ModelError",
    "ProtocolError",
    "RemoteExecutionError",
    "RoutingError",
    "ServerConfig",
    "ServerConnectionError",
    "Session",
    "SessionManager",
    "SessionState",
    "ToolExecutionResponse",
    "ToolRouter",
    "ToolTimeoutError",
    "TransportKind",
    "merge_capabilities",
    "open_mcp_session",
]
