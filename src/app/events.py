"""
Stream events delivered to the presentation layer.

StreamEvent is a closed tagged union; renderers match on every variant
and finish with assert_never so a new event kind cannot be dropped
silently.
"""

import json
from typing import Annotated, Any, Dict, List, Literal, Optional, Union, assert_never

from pydantic import BaseModel, Field, TypeAdapter


class EventBase(BaseModel):
    seq: int = 0
    conversation_id: str = ""


class ThinkingEvent(EventBase):
    type: Literal["thinking"] = "thinking"
    token: str
    kind: Literal["llm_reasoning", "system_message"] = "llm_reasoning"


class TokenEvent(EventBase):
    type: Literal["token"] = "token"
    text: str


class ToolCallEvent(EventBase):
    type: Literal["tool_call"] = "tool_call"
    id: str
    name: str
    args_summary: str


class ToolResultEvent(EventBase):
    type: Literal["tool_result"] = "tool_result"
    id: str
    name: str
    payload: str
    is_error: bool = False
    error_kind: Optional[str] = None


class ObservationEvent(EventBase):
    type: Literal["observation"] = "observation"
    id: str
    formatted_text: str


class RagContextEvent(EventBase):
    type: Literal["rag_context"] = "rag_context"
    chunks: List[Dict[str, Any]] = Field(default_factory=list)


class DoneEvent(EventBase):
    type: Literal["done"] = "done"
    truncated: bool = False


class ErrorEvent(EventBase):
    type: Literal["error"] = "error"
    message: str
    kind: Optional[str] = None


StreamEvent = Annotated[
    Union[
        ThinkingEvent,
        TokenEvent,
        ToolCallEvent,
        ToolResultEvent,
        ObservationEvent,
        RagContextEvent,
        DoneEvent,
        ErrorEvent,
    ],
    Field(discriminator="type"),
]

stream_event_adapter: TypeAdapter = TypeAdapter(StreamEvent)

TERMINAL_EVENTS = (DoneEvent, ErrorEvent)


def is_terminal(event: StreamEvent) -> bool:
    return isinstance(event, TERMINAL_EVENTS)


def event_body(event: StreamEvent) -> Dict[str, Any]:
    """Variant-specific payload, without the envelope fields."""
    match event:
        case ThinkingEvent():
            return {"token": event.token, "kind": event.kind}
        case TokenEvent():
            return {"text": event.text}
        case ToolCallEvent():
            return {"id": event.id, "name": event.name, "args_summary": event.args_summary}
        case ToolResultEvent():
            return {
                "id": event.id,
                "name": event.name,
                "payload": event.payload,
                "is_error": event.is_error,
                "error_kind": event.error_kind,
            }
        case ObservationEvent():
            return {"id": event.id, "formatted_text": event.formatted_text}
        case RagContextEvent():
            return {"chunks": event.chunks}
        case DoneEvent():
            return {"truncated": event.truncated}
        case ErrorEvent():
            return {"message": event.message, "kind": event.kind}
        case _:
            assert_never(event)


def to_sse(event: StreamEvent) -> Dict[str, Any]:
    """Render an event as a dict understood by sse_starlette."""
    body = event_body(event)
    body["conversation_id"] = event.conversation_id
    body["seq"] = event.seq
    return {"event": event.type, "id": str(event.seq), "data": json.dumps(body)}


def to_message(event: StreamEvent) -> Dict[str, Any]:
    """Render an event as a WebSocket JSON frame."""
    body = event_body(event)
    return {
        "type": event.type,
        "seq": event.seq,
        "conversation_id": event.conversation_id,
        **body,
    }
