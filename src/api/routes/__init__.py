from .chat import router as chat_router
from .info import health_check
from .info import router as info_router
from .mcp import router as mcp_router

__all__ = ["chat_router", "health_check", "info_router", "mcp_router"]
