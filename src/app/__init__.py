"""
Application Coordination Package

Turns one user request into one ordered event stream:
- events: the StreamEvent tagged union and its wire renderings
- streaming: EventStream, sequencing and cancellation for one conversation
- coordinator: AppCoordinator, wiring sessions, routing, model and retrieval

Only the event types are re-exported here; the coordinator imports the
agent layer, which itself imports these events.
"""

from .events import (
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

__all__ = [
    "DoneEvent",
    "ErrorEvent",
    "ObservationEvent",
    "RagContextEvent",
    "StreamEvent",
    "ThinkingEvent",
    "TokenEvent",
    "ToolCallEvent",
    "ToolResultEvent",
]
