import asyncio
import logging
from typing import AsyncIterator, List, Optional

from agent.loop import AgentLoop
from agent.models import ChatMessage

from .events import ErrorEvent, StreamEvent, is_terminal


class EventStream:
    """
    Ordered, single-consumer event sequence for one conversation.

    Stamps every event from the AgentLoop with a strictly increasing
    sequence number (starting at 1) and the conversation id, and makes
    sure exactly one terminal event (done or error) ends the stream.
    After cancel() nothing further is delivered.
    """

    def __init__(self, loop: AgentLoop, logger: Optional[logging.Logger] = None):
        self.loop = loop
        self.conversation_id = loop.conversation_id
        self.logger = logger or logging.getLogger("EventStream")
        self._cancel_event = asyncio.Event()
        self._seq = 0
        self._started = False
        self._terminated = False

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    @property
    def finished(self) -> bool:
        return self._terminated

    @property
    def last_seq(self) -> int:
        return self._seq

    def cancel(self) -> None:
        if not self._cancel_event.is_set():
            self.logger.info(f"Cancelling conversation {self.conversation_id}")
            self._cancel_event.set()

    def _stamp(self, event: StreamEvent) -> StreamEvent:
        self._seq += 1
        stamped = event.model_copy(
            update={"seq": self._seq, "conversation_id": self.conversation_id}
        )
        if is_terminal(stamped):
            self._terminated = True
        return stamped

    async def events(
        self,
        user_message: str,
        history: Optional[List[ChatMessage]] = None,
        use_rag: bool = True,
    ) -> AsyncIterator[StreamEvent]:
        if self._started:
            raise RuntimeError("EventStream can only be consumed once")
        self._started = True

        source = self.loop.run(user_message, history, use_rag, self._cancel_event)
        try:
            async for event in source:
                if self.cancelled:
                    break
                yield self._stamp(event)
                if self._terminated:
                    break
            else:
                if not self.cancelled and not self._terminated:
                    yield self._stamp(
                        ErrorEvent(message="Conversation ended without a result")
                    )
        except Exception as e:
            self.logger.error(
                f"Unexpected failure in conversation {self.conversation_id}: {e}",
                exc_info=True,
            )
            if not self.cancelled and not self._terminated:
                yield self._stamp(ErrorEvent(message=f"Internal error: {e}"))
        finally:
            await source.aclose()
