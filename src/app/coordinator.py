import logging
import uuid
from collections import deque
from typing import Any, AsyncIterator, Deque, Dict, List, Optional

from agent.loop import AgentLoop
from agent.metrics import TokenCounter, TurnMetrics, summarize_metrics
from agent.models import ChatMessage
from agent.prompts import DEFAULT_SYSTEM_PROMPT
from config import Settings
from engine import BaseEngine
from mcp_hub.aggregator import CapabilityAggregator, CapabilityDirectory
from mcp_hub.errors import ConversationConflictError
from mcp_hub.router import ToolRouter
from mcp_hub.session import SessionManager
from rag import Retriever

from .events import StreamEvent
from .streaming import EventStream


class AppCoordinator:
    """
    Wires the session, routing, model and retrieval layers together.

    Owns the shared, long-lived pieces (sessions, capability directory,
    engine) and creates one AgentLoop and EventStream per conversation.
    """

    def __init__(
        self,
        session_manager: SessionManager,
        engine: BaseEngine,
        retriever: Optional[Retriever] = None,
        system_prompt: str = DEFAULT_SYSTEM_PROMPT,
        max_iterations: int = 8,
        max_parallel_tools: int = 4,
        tool_timeout: float = 30.0,
        args_summary_max_chars: int = 400,
        final_answer_on_truncation: bool = True,
        rag_top_k: int = 5,
        rag_min_score: float = 0.3,
        token_counter: Optional[TokenCounter] = None,
        metrics_history_size: int = 1000,
        logger: Optional[logging.Logger] = None,
    ):
        self.session_manager = session_manager
        self.engine = engine
        self.retriever = retriever
        self.logger = logger or logging.getLogger("AppCoordinator")

        self.aggregator = CapabilityAggregator(session_manager, logger=self.logger)
        self.router = ToolRouter(
            session_manager, self.aggregator, default_timeout=tool_timeout, logger=self.logger
        )

        self.loop_options: Dict[str, Any] = {
            "system_prompt": system_prompt,
            "max_iterations": max_iterations,
            "max_parallel_tools": max_parallel_tools,
            "tool_timeout": tool_timeout,
            "args_summary_max_chars": args_summary_max_chars,
            "final_answer_on_truncation": final_answer_on_truncation,
            "rag_top_k": rag_top_k,
            "rag_min_score": rag_min_score,
        }
        self.token_counter = token_counter

        self.active_streams: Dict[str, EventStream] = {}
        # Most recent turns only
        self.metrics_history: Deque[TurnMetrics] = deque(maxlen=metrics_history_size)
        self._initialized = False

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        session_manager: SessionManager,
        engine: BaseEngine,
        retriever: Optional[Retriever] = None,
        logger: Optional[logging.Logger] = None,
    ) -> "AppCoordinator":
        return cls(
            session_manager=session_manager,
            engine=engine,
            retriever=retriever,
            system_prompt=settings.system_prompt or DEFAULT_SYSTEM_PROMPT,
            max_iterations=settings.max_iterations,
            max_parallel_tools=settings.max_parallel_tools,
            tool_timeout=settings.tool_timeout_seconds,
            args_summary_max_chars=settings.args_summary_max_chars,
            final_answer_on_truncation=settings.final_answer_on_truncation,
            rag_top_k=settings.rag_top_k,
            rag_min_score=settings.rag_min_score,
            token_counter=TokenCounter(settings.llm_model or "gpt-4", logger=logger),
            logger=logger,
        )

    @property
    def directory(self) -> CapabilityDirectory:
        return self.aggregator.directory

    def is_initialized(self) -> bool:
        return self._initialized

    async def initialize(self) -> None:
        """Connect every configured server and build the first directory."""
        if self._initialized:
            return

        self.logger.info("Initializing application coordinator...")
        await self.session_manager.connect_all()
        await self.aggregator.refresh()
        self._initialized = True
        self.logger.info("Application coordinator initialization completed")

    async def refresh_capabilities(self) -> CapabilityDirectory:
        return await self.aggregator.refresh()

    def _check_available(self, conversation_id: str) -> None:
        if conversation_id in self.active_streams:
            raise ConversationConflictError(
                f"Conversation {conversation_id} is already running"
            )

    def create_stream(self, conversation_id: Optional[str] = None) -> EventStream:
        """
        Build the loop and stream for one conversation turn.

        Raises:
            ConversationConflictError: A conversation with this id is running.
        """
        if conversation_id:
            self._check_available(conversation_id)
        loop = AgentLoop(
            engine=self.engine,
            router=self.router,
            retriever=self.retriever,
            conversation_id=conversation_id or str(uuid.uuid4()),
            token_counter=self.token_counter,
            logger=self.logger,
            **self.loop_options,
        )
        return EventStream(loop, logger=self.logger)

    async def stream_chat(
        self,
        message: str,
        history: Optional[List[ChatMessage]] = None,
        use_rag: bool = True,
        stream: Optional[EventStream] = None,
    ) -> AsyncIterator[StreamEvent]:
        """
        Run one conversation turn and yield its sequenced events.

        Args:
            message: The user's message.
            history: Earlier messages supplied by the client.
            use_rag: Consult the retriever for this turn (if one is configured).
            stream: A stream created with create_stream, so the caller can
                    cancel it; a new one is created when omitted.

        Raises:
            ConversationConflictError: Another stream with the same
                conversation id started first. Raised before any event.
        """
        stream = stream or self.create_stream()
        conversation_id = stream.conversation_id
        self._check_available(conversation_id)
        self.active_streams[conversation_id] = stream
        try:
            async for event in stream.events(message, history, use_rag):
                yield event
        finally:
            if self.active_streams.get(conversation_id) is stream:
                del self.active_streams[conversation_id]
            self.metrics_history.append(stream.loop.metrics)

    def cancel(self, conversation_id: str) -> bool:
        stream = self.active_streams.get(conversation_id)
        if stream is None:
            return False
        stream.cancel()
        return True

    def get_metrics_summary(self) -> Dict[str, Any]:
        summary = summarize_metrics(self.metrics_history)
        summary["active_conversations"] = len(self.active_streams)
        return summary

    async def shutdown(self) -> None:
        self.logger.info("Shutting down application coordinator...")
        for stream in list(self.active_streams.values()):
            stream.cancel()
        await self.session_manager.close_all()
        try:
            await self.engine.close()
        except Exception as e:
            self.logger.warning(f"Error closing engine: {e}")
        retriever_close = getattr(self.retriever, "close", None)
        if retriever_close is not None:
            await retriever_close()
        self._initialized = False
        self.logger.info("Application coordinator shutdown completed")
