import asyncio
import logging
import uuid
from contextlib import aclosing
from dataclasses import dataclass, field
from enum import Enum
from typing import AsyncIterator, Dict, List, Optional, Set, Tuple

import logfire

from app.events import (
    DoneEvent,
    ErrorEvent,
    ObservationEvent,
    RagContextEvent,
    StreamEvent,
    ThinkingEvent,
    TokenEvent,
    ToolCallEvent,
    ToolResultEvent,
)
from engine.base import BaseEngine
from mcp_hub.errors import IterationLimitExceeded, ModelError, RoutingError
from mcp_hub.router import ToolRouter
from rag import RetrievedChunk, Retriever, create_rag_system_prompt, filter_chunks, format_context

from .metrics import TokenCounter, TurnMetrics, log_metrics
from .models import (
    ChatMessage,
    ConversationState,
    MessageRole,
    ThinkingChunk,
    TokenChunk,
    ToolCallChunk,
    ToolCallRequest,
    ToolInvocation,
)
from .prompts import (
    ANALYZING_MESSAGE,
    DEFAULT_SYSTEM_PROMPT,
    FINAL_ANSWER_INSTRUCTION,
    RETRIEVAL_FAILED_MESSAGE,
    SUFFICIENT_INFO_MESSAGE,
    create_react_system_prompt,
    cycle_marker,
    format_action,
    format_observation,
    format_tool_message,
    summarize_arguments,
    truncation_notice,
)

# Tool tasks abandoned by a cancelled conversation; kept referenced until they finish
_DETACHED_TASKS: Set[asyncio.Task] = set()


class LoopState(str, Enum):
    AWAITING_MODEL = "awaiting_model"
    AWAITING_TOOLS = "awaiting_tools"
    RESPONDING = "responding"
    DONE = "done"
    FAILED = "failed"


@dataclass
class _TurnOutput:
    text: List[str] = field(default_factory=list)
    calls: List[ToolCallRequest] = field(default_factory=list)

    @property
    def content(self) -> str:
        return "".join(self.text)


class AgentLoop:
    """
    Reasoning-and-acting loop for a single conversation turn.

    Alternates streamed model turns with concurrent tool batches. Every
    batch is awaited as a whole (a barrier) and its observations are
    reinjected in the order the model issued the calls. Cancellation is
    observed before each model call and each tool batch; tools already
    dispatched keep running and their results are discarded.
    """

    def __init__(
        self,
        engine: BaseEngine,
        router: ToolRouter,
        retriever: Optional[Retriever] = None,
        conversation_id: Optional[str] = None,
        system_prompt: str = DEFAULT_SYSTEM_PROMPT,
        max_iterations: int = 8,
        max_parallel_tools: int = 4,
        tool_timeout: Optional[float] = 30.0,
        args_summary_max_chars: Optional[int] = 400,
        final_answer_on_truncation: bool = True,
        rag_top_k: int = 5,
        rag_min_score: float = 0.3,
        token_counter: Optional[TokenCounter] = None,
        logger: Optional[logging.Logger] = None,
    ):
        if max_iterations < 1:
            raise ValueError("max_iterations must be at least 1")
        if max_parallel_tools < 1:
            raise ValueError("max_parallel_tools must be at least 1")

        self.engine = engine
        self.router = router
        self.retriever = retriever
        self.conversation_id = conversation_id or str(uuid.uuid4())
        self.system_prompt = system_prompt
        self.max_iterations = max_iterations
        self.max_parallel_tools = max_parallel_tools
        self.tool_timeout = tool_timeout
        self.args_summary_max_chars = args_summary_max_chars
        self.final_answer_on_truncation = final_answer_on_truncation
        self.rag_top_k = rag_top_k
        self.rag_min_score = rag_min_score
        self.token_counter = token_counter
        self.logger = logger or logging.getLogger("AgentLoop")

        self.state = LoopState.AWAITING_MODEL
        self.conversation = ConversationState()
        self.invocations: List[ToolInvocation] = []
        self.metrics = TurnMetrics(conversation_id=self.conversation_id, query="")
        self._inflight: Set[asyncio.Task] = set()
        self._started = False

    @property
    def inflight(self) -> Set[asyncio.Task]:
        return set(self._inflight)

    async def run(
        self,
        user_message: str,
        history: Optional[List[ChatMessage]] = None,
        use_rag: bool = True,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> AsyncIterator[StreamEvent]:
        """
        Drive the conversation to completion, yielding unsequenced events.

        Args:
            user_message: The new user message.
            history: Earlier user/assistant messages supplied by the client.
            use_rag: Whether to consult the retriever for this turn.
            cancel_event: Set by the consumer to stop at the next suspension point.

        Yields:
            Stream events; the last one is DoneEvent or ErrorEvent unless
            the conversation was cancelled.
        """
        if self._started:
            raise RuntimeError("An AgentLoop runs exactly one conversation")
        self._started = True
        cancel_event = cancel_event or asyncio.Event()
        self.metrics = TurnMetrics(conversation_id=self.conversation_id, query=user_message)
        self.logger.info(f"Conversation {self.conversation_id} started")

        try:
            if cancel_event.is_set():
                return

            chunks: List[RetrievedChunk] = []
            if use_rag and self.retriever is not None:
                chunks, failed = await self._retrieve(user_message)
                if failed:
                    yield ThinkingEvent(token=RETRIEVAL_FAILED_MESSAGE, kind="system_message")
                if chunks:
                    yield RagContextEvent(chunks=[chunk.model_dump() for chunk in chunks])

            # One snapshot of the tool namespace for the whole turn
            tools = self.router.tool_specs()
            self._seed(user_message, history or [], chunks, bool(tools))

            for cycle in range(1, self.max_iterations + 1):
                if cancel_event.is_set():
                    self.logger.info(
                        f"Conversation {self.conversation_id} cancelled before cycle {cycle}"
                    )
                    return

                self.state = LoopState.AWAITING_MODEL
                self.metrics.cycles = cycle
                if tools:
                    yield ThinkingEvent(
                        token=cycle_marker(cycle, self.max_iterations), kind="system_message"
                    )

                output = _TurnOutput()
                async with aclosing(self._model_turn(tools, output)) as turn:
                    async for event in turn:
                        yield event

                if not output.calls:
                    self.state = LoopState.RESPONDING
                    self.conversation.add_assistant(output.content)
                    if tools:
                        yield ThinkingEvent(token=SUFFICIENT_INFO_MESSAGE, kind="system_message")
                    self.state = LoopState.DONE
                    yield DoneEvent()
                    return

                self.conversation.add_assistant(output.content, output.calls)
                if cancel_event.is_set():
                    self.logger.info(
                        f"Conversation {self.conversation_id} cancelled before tool batch"
                    )
                    return

                self.state = LoopState.AWAITING_TOOLS
                for call in output.calls:
                    yield ToolCallEvent(
                        id=call.id,
                        name=call.name,
                        args_summary=format_action(
                            call.name, call.arguments, self.args_summary_max_chars
                        ),
                    )

                invocations = await self._dispatch(output.calls, cancel_event)
                if invocations is None:
                    return

                for invocation in invocations:
                    response = invocation.result
                    yield ToolResultEvent(
                        id=invocation.id,
                        name=invocation.tool_name,
                        payload=response.content if response.success else (response.error or ""),
                        is_error=not response.success,
                        error_kind=response.error_kind,
                    )
                    yield ObservationEvent(
                        id=invocation.id, formatted_text=format_observation(response)
                    )
                    self.conversation.add_tool_result(
                        invocation.id, invocation.tool_name, format_tool_message(response)
                    )

                if cycle == self.max_iterations:
                    async with aclosing(self._truncate(tools, cancel_event)) as tail:
                        async for event in tail:
                            yield event
                    return
                yield ThinkingEvent(token=ANALYZING_MESSAGE, kind="system_message")

        except ModelError as e:
            self.state = LoopState.FAILED
            self.logger.error(f"Conversation {self.conversation_id} failed: {e}")
            yield ErrorEvent(message=str(e), kind=e.kind)
        finally:
            if self.state == LoopState.DONE:
                outcome = "truncated" if self.metrics.truncated else "done"
            elif self.state == LoopState.FAILED:
                outcome = "failed"
            else:
                outcome = "cancelled"
            self.metrics.finish(outcome)
            log_metrics(self.logger, self.metrics)

    def _seed(
        self,
        user_message: str,
        history: List[ChatMessage],
        chunks: List[RetrievedChunk],
        has_tools: bool,
    ) -> None:
        prompt = self.system_prompt
        if chunks:
            prompt = create_rag_system_prompt(prompt, format_context(chunks))
        if has_tools:
            prompt = create_react_system_prompt(prompt)
        self.conversation.add_system(prompt)

        for message in history:
            if message.role in (MessageRole.USER, MessageRole.ASSISTANT) and message.content:
                self.conversation.append(
                    ChatMessage(role=message.role, content=message.content)
                )
        self.conversation.add_user(user_message)

    async def _retrieve(self, query: str) -> Tuple[List[RetrievedChunk], bool]:
        """Retrieval failures degrade to an unaugmented turn."""
        try:
            chunks = await self.retriever.retrieve(query)
        except Exception as e:
            self.logger.warning(f"Retrieval failed, continuing without context: {e}")
            return [], True
        return filter_chunks(chunks, self.rag_top_k, self.rag_min_score), False

    async def _model_turn(
        self, tools: List[Dict], output: _TurnOutput, allow_tools: bool = True
    ) -> AsyncIterator[StreamEvent]:
        if self.token_counter:
            self.metrics.input_tokens += self.token_counter.count_messages(
                self.conversation.messages
            )

        seen_ids = {inv.id for inv in self.invocations}
        stream = self.engine.stream_turn(list(self.conversation.messages), tools)
        try:
            async with aclosing(stream):
                async for chunk in stream:
                    if isinstance(chunk, TokenChunk):
                        output.text.append(chunk.text)
                        yield TokenEvent(text=chunk.text)
                    elif isinstance(chunk, ThinkingChunk):
                        yield ThinkingEvent(token=chunk.text, kind="llm_reasoning")
                    elif isinstance(chunk, ToolCallChunk):
                        if not allow_tools:
                            self.logger.debug(f"Ignoring tool call {chunk.name} in final answer")
                            continue
                        output.calls.append(self._to_request(chunk, seen_ids))
        except ModelError:
            raise
        except Exception as e:
            raise ModelError(f"Model backend failed: {type(e).__name__}: {e}") from e

        if self.token_counter:
            self.metrics.output_tokens += self.token_counter.count(output.content)

    @staticmethod
    def _to_request(chunk: ToolCallChunk, seen_ids: Set[str]) -> ToolCallRequest:
        call_id = chunk.id
        if not call_id or call_id in seen_ids:
            call_id = f"call_{uuid.uuid4().hex[:12]}"
        seen_ids.add(call_id)
        return ToolCallRequest(id=call_id, name=chunk.name, arguments=chunk.arguments)

    async def _truncate(
        self, tools: List[Dict], cancel_event: asyncio.Event
    ) -> AsyncIterator[StreamEvent]:
        """Close a conversation whose last permitted cycle still asked for tools."""
        self.metrics.truncated = True
        limit = IterationLimitExceeded(
            f"Conversation {self.conversation_id} reached {self.max_iterations} cycles"
        )
        self.logger.warning(str(limit))
        yield ThinkingEvent(token=truncation_notice(self.max_iterations), kind="system_message")

        if cancel_event.is_set():
            return
        if self.final_answer_on_truncation:
            self.state = LoopState.RESPONDING
            self.conversation.add_user(FINAL_ANSWER_INSTRUCTION)
            final = _TurnOutput()
            async with aclosing(self._model_turn(tools, final, allow_tools=False)) as turn:
                async for event in turn:
                    yield event
            self.conversation.add_assistant(final.content)

        self.state = LoopState.DONE
        yield DoneEvent(truncated=True)

    async def _dispatch(
        self, calls: List[ToolCallRequest], cancel_event: asyncio.Event
    ) -> Optional[List[ToolInvocation]]:
        """
        Run one batch of tool calls concurrently and wait for all of them.

        Returns:
            Invocations in issue order, or None when the conversation was
            cancelled while the batch was running.
        """
        invocations = [ToolInvocation.from_request(call) for call in calls]
        self.invocations.extend(invocations)
        semaphore = asyncio.Semaphore(self.max_parallel_tools)

        with logfire.span(
            "agent_loop.tool_batch",
            conversation_id=self.conversation_id,
            size=len(invocations),
        ):
            tasks = [
                asyncio.create_task(
                    self._execute(invocation, semaphore), name=f"tool-{invocation.id}"
                )
                for invocation in invocations
            ]
            for task in tasks:
                self._inflight.add(task)
                task.add_done_callback(self._inflight.discard)

            batch = asyncio.gather(*tasks)
            cancel_wait = asyncio.create_task(cancel_event.wait())
            try:
                done, _ = await asyncio.wait(
                    {batch, cancel_wait}, return_when=asyncio.FIRST_COMPLETED
                )
            finally:
                cancel_wait.cancel()
                if not batch.done():
                    self._detach(tasks)

            if batch not in done:
                self.logger.info(
                    f"Conversation {self.conversation_id} cancelled with "
                    f"{sum(1 for t in tasks if not t.done())} tool calls still running"
                )
                return None
            return invocations

    def _detach(self, tasks: List[asyncio.Task]) -> None:
        for task in tasks:
            if not task.done():
                _DETACHED_TASKS.add(task)
                task.add_done_callback(_DETACHED_TASKS.discard)

    async def _execute(
        self, invocation: ToolInvocation, semaphore: asyncio.Semaphore
    ) -> ToolInvocation:
        async with semaphore:
            with logfire.span(
                "agent_loop.tool_call",
                tool_name=invocation.tool_name,
                invocation_id=invocation.id,
            ):
                try:
                    server_id = self.router.route(invocation.tool_name)
                    if server_id is None:
                        error = RoutingError(f"Unknown tool: {invocation.tool_name}")
                        invocation.fail(str(error), error.kind)
                    else:
                        invocation.mark_routed(server_id)
                        invocation.mark_executing()
                        self.logger.info(
                            f"Calling {invocation.tool_name} on {server_id} with "
                            f"{summarize_arguments(invocation.arguments, self.args_summary_max_chars)}"
                        )
                        response = await self.router.call(
                            invocation.tool_name,
                            invocation.arguments,
                            timeout=self.tool_timeout,
                            server_id=server_id,
                        )
                        invocation.finish(response)
                except Exception as e:
                    self.logger.error(
                        f"Unexpected failure running {invocation.tool_name}: {e}",
                        exc_info=True,
                    )
                    if not invocation.is_terminal:
                        invocation.fail(f"{type(e).__name__}: {e}", "InternalError")

        response = invocation.result
        self.metrics.record_tool_call(
            invocation.tool_name,
            response.execution_time_seconds,
            response.success,
            response.error_kind,
        )
        return invocation
