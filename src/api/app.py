import logging
from typing import Any, Callable, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from api.routes import chat_router, health_check, info_router, mcp_router
from app.coordinator import AppCoordinator
from config import Settings
from mcp_hub.errors import (
    ConversationConflictError,
    HubError,
    ProtocolError,
    RemoteExecutionError,
    RoutingError,
    ServerConnectionError,
    ToolTimeoutError,
)

logger = logging.getLogger("api")

HUB_ERROR_STATUS = (
    (ServerConnectionError, 503),
    (RoutingError, 404),
    (ToolTimeoutError, 504),
    (RemoteExecutionError, 502),
    (ProtocolError, 502),
    (ConversationConflictError, 409),
)


def status_for(error: HubError) -> int:
    for error_type, status_code in HUB_ERROR_STATUS:
        if isinstance(error, error_type):
            return status_code
    return 500


async def hub_error_handler(request: Request, exc: HubError) -> JSONResponse:
    status_code = status_for(exc)
    logger.warning(f"{request.method} {request.url.path} -> {status_code}: {exc}")
    return JSONResponse(
        status_code=status_code,
        content={"error": str(exc), "kind": exc.kind, "server_id": exc.server_id},
    )


def create_app(
    coordinator: Optional[AppCoordinator] = None,
    settings: Optional[Settings] = None,
    lifespan: Optional[Callable[[FastAPI], Any]] = None,
) -> FastAPI:
    app = FastAPI(
        title="MCP Hub",
        description="Aggregates MCP servers behind one tool namespace and \
        streams a ReAct agent loop over them",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # In production, specify exact origins
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.coordinator = coordinator
    app.state.settings = settings

    app.add_exception_handler(HubError, hub_error_handler)

    app.include_router(chat_router, prefix="/chat", tags=["Chat"])
    app.include_router(mcp_router, prefix="/mcp", tags=["MCP"])
    app.include_router(info_router, prefix="/info", tags=["System Info"])
    app.add_api_route(
        "/health", health_check, methods=["GET"], summary="Health check endpoint"
    )

    return app
