import logging
from typing import Any, Dict, List, Optional, Tuple

import logfire
from mcp import types

from .aggregator import CapabilityAggregator
from .errors import RoutingError
from .models import CapabilityKind, ToolExecutionResponse
from .session import SessionManager


class ToolRouter:
    """
    Resolves capability names to their owning server and calls them.

    Tool calls never raise: unknown names, remote errors, timeouts and
    connection failures all come back as a failed ToolExecutionResponse.
    """

    def __init__(
        self,
        session_manager: SessionManager,
        aggregator: CapabilityAggregator,
        default_timeout: Optional[float] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.session_manager = session_manager
        self.aggregator = aggregator
        self.default_timeout = default_timeout
        self.logger = logger or logging.getLogger("ToolRouter")

    def route(self, name: str) -> Optional[str]:
        """Owning server id for a tool, or None if no server exposes it."""
        return self.aggregator.directory.owner_of(name)

    def tool_specs(self) -> List[Dict[str, Any]]:
        return self.aggregator.directory.tool_specs()

    async def call(
        self,
        name: str,
        arguments: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
        server_id: Optional[str] = None,
    ) -> ToolExecutionResponse:
        """
        Call a tool on its owning server.

        Args:
            server_id: An owner already resolved by the caller; when given
                the directory is not consulted again, so the call reaches
                the server the caller recorded even if a refresh lands in
                between.
        """
        with logfire.span("tool_router.call", tool_name=name):
            server_id = server_id or self.route(name)
            if server_id is None:
                self.logger.warning(f"No server exposes tool {name}")
                error = RoutingError(f"Unknown tool: {name}")
                return ToolExecutionResponse(
                    success=False,
                    tool_name=name,
                    error=str(error),
                    error_kind=error.kind,
                )

            self.logger.info(f"Routing {name} to {server_id}")
            return await self.session_manager.invoke(
                server_id, name, arguments, timeout=timeout or self.default_timeout
            )

    def _resolve(self, kind: CapabilityKind, name: str) -> str:
        record = self.aggregator.directory.lookup(kind, name)
        if record is None:
            raise RoutingError(f"Unknown {kind.value}: {name}")
        return record.server_id

    async def read_resource(self, uri: str) -> Tuple[str, types.ReadResourceResult]:
        """
        Read a resource from the server that advertised it.

        Raises:
            RoutingError: No server advertised the URI.
            HubError: The owning server failed the read.
        """
        server_id = self._resolve(CapabilityKind.RESOURCE, uri)
        result = await self.session_manager.read_resource(server_id, uri)
        return server_id, result

    async def get_prompt(
        self, name: str, arguments: Optional[Dict[str, str]] = None
    ) -> Tuple[str, types.GetPromptResult]:
        server_id = self._resolve(CapabilityKind.PROMPT, name)
        result = await self.session_manager.get_prompt(server_id, name, arguments)
        return server_id, result
