"""Server-Sent Events helpers shared by the HTTP adapters."""

import json
from typing import Any, AsyncIterator, Optional

from agent.models import EventType, StreamEvent

# Events after which an adapter stops reading a turn's subscription.
TURN_END_EVENTS = frozenset({
    EventType.TURN_COMPLETED,
    EventType.CONVERSATION_ENDED,
    EventType.SUBSCRIBER_DROPPED,
})


def sse_event(data: Any, event: Optional[str] = None) -> str:
    payload = data if isinstance(data, str) else json.dumps(data, ensure_ascii=False)
    if event:
        return f"event: {event}\ndata: {payload}\n\n"
    return f"data: {payload}\n\n"


def sse_done() -> str:
    return "data: [DONE]\n\n"


def is_terminal(event: StreamEvent) -> bool:
    """True when *event* ends the current turn for a reader."""
    return event.type in TURN_END_EVENTS


async def iter_turn(handle) -> AsyncIterator[StreamEvent]:
    """Yield the events of one turn, ending with the event that closes it."""
    async for event in handle.subscription:
        yield event
        if is_terminal(event):
            break
