import logging
from typing import Any, AsyncGenerator, Dict, Optional

from fastapi import APIRouter, Depends
from sse_starlette.sse import EventSourceResponse

from api.dependencies import get_coordinator
from api.models.schemas import CancelResponse, ChatRequest
from app.coordinator import AppCoordinator
from app.events import ErrorEvent, to_sse
from app.streaming import EventStream
from mcp_hub.errors import ConversationConflictError

router = APIRouter()
logger = logging.getLogger("api.chat")


async def stream_chat_events(
    request: ChatRequest,
    coordinator: AppCoordinator,
    stream: Optional[EventStream] = None,
) -> AsyncGenerator[Dict[str, Any], None]:
    stream = stream or coordinator.create_stream(request.conversation_id)
    history = [message.to_chat_message() for message in request.history]
    try:
        async for event in coordinator.stream_chat(
            request.message, history, request.use_rag, stream=stream
        ):
            yield to_sse(event)
    except ConversationConflictError as e:
        # Lost the race for the id after the response had already started
        logger.warning(str(e))
        yield to_sse(
            ErrorEvent(message=str(e), kind=e.kind, conversation_id=stream.conversation_id)
        )
    finally:
        # Client went away mid-turn; stop at the next suspension point
        if not stream.finished:
            stream.cancel()


@router.post("", summary="Stream one conversation turn as server-sent events")
async def chat(
    request: ChatRequest,
    coordinator: AppCoordinator = Depends(get_coordinator),
):
    logger.info(f"Chat request ({len(request.history)} history messages)")
    # Raises ConversationConflictError (409) before the stream starts
    stream = coordinator.create_stream(request.conversation_id)
    return EventSourceResponse(stream_chat_events(request, coordinator, stream))


@router.post(
    "/{conversation_id}/cancel",
    response_model=CancelResponse,
    summary="Cancel a running conversation",
)
async def cancel_chat(
    conversation_id: str,
    coordinator: AppCoordinator = Depends(get_coordinator),
) -> CancelResponse:
    return CancelResponse(
        conversation_id=conversation_id,
        cancelled=coordinator.cancel(conversation_id),
    )
