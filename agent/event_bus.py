"""Per-conversation streaming event bus.

One producer (the conversation) and any number of subscribers (protocol
adapters). Guarantees:

  - every event gets a sequence number, strictly increasing per bus
  - each subscriber sees events in sequence order through its own buffer,
    so adapters never lock anything themselves
  - subscribers attach live (no replay) unless they ask for events after a
    known sequence number, which is served from a bounded trailing window
  - a subscriber that falls ``subscriber_buffer`` events behind is dropped
    (the conversation is not blocked); it still drains what it had
    buffered and then receives a ``subscriber-dropped`` marker
  - ``conversation-ended`` is the last event; afterwards publish() is
    refused and all subscribers finish

Subscriptions keep only a weak reference to their bus so a stalled HTTP
client cannot keep a finished conversation alive.
"""

import asyncio
import logging
import threading
import weakref
from collections import deque
from typing import Any, Deque, Dict, List, Optional, Set

from agent.models import EventType, StreamEvent

logger = logging.getLogger(__name__)

DEFAULT_EVENT_WINDOW = 256
DEFAULT_SUBSCRIBER_BUFFER = 1024


class Subscription:
    """Ordered, bounded channel from one bus to one consumer.

    Iterate with ``async for event in subscription``. Iteration ends after
    the conversation ends, after ``close()``, or after the drop marker.
    """

    def __init__(self, bus: "EventBus", maxsize: int, replay: List[StreamEvent]):
        self._bus_ref = weakref.ref(bus)
        self.conversation_id = bus.conversation_id
        self._maxsize = maxsize
        self._buffer: Deque[StreamEvent] = deque(replay)
        self._wakeup = asyncio.Event()
        self._finished = False
        self._dropped = False
        self._marker_sent = False
        self.last_seq: Optional[int] = replay[-1].seq if replay else None

    @property
    def dropped(self) -> bool:
        return self._dropped

    @property
    def finished(self) -> bool:
        return self._finished and not self._buffer

    def _push(self, event: StreamEvent) -> bool:
        if self._finished:
            return False
        if len(self._buffer) >= self._maxsize:
            self._dropped = True
            self._finished = True
            self._wakeup.set()
            return False
        self._buffer.append(event)
        self._wakeup.set()
        return True

    def _finish(self) -> None:
        self._finished = True
        self._wakeup.set()

    def close(self) -> None:
        """Detach from the bus. Already-buffered events are discarded."""
        bus = self._bus_ref()
        if bus is not None:
            bus._detach(self)
        self._buffer.clear()
        self._finish()

    def __aiter__(self):
        return self

    async def __anext__(self) -> StreamEvent:
        while True:
            if self._buffer:
                event = self._buffer.popleft()
                self.last_seq = event.seq
                return event
            if self._finished:
                if self._dropped and not self._marker_sent:
                    self._marker_sent = True
                    return StreamEvent(
                        seq=self.last_seq or 0,
                        type=EventType.SUBSCRIBER_DROPPED,
                        conversation_id=self.conversation_id,
                        data={"reason": "subscriber buffer overflow"},
                    )
                raise StopAsyncIteration
            self._wakeup.clear()
            await self._wakeup.wait()


class EventBus:
    def __init__(
        self,
        conversation_id: str,
        window: int = DEFAULT_EVENT_WINDOW,
        subscriber_buffer: int = DEFAULT_SUBSCRIBER_BUFFER,
    ):
        self.conversation_id = conversation_id
        self._lock = threading.Lock()
        self._seq = 0
        self._window: Deque[StreamEvent] = deque(maxlen=max(1, window))
        self._subscriber_buffer = max(1, subscriber_buffer)
        self._subscribers: Set[Subscription] = set()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def last_seq(self) -> int:
        return self._seq

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def publish(self, event_type: EventType, data: Optional[Dict[str, Any]] = None) -> Optional[StreamEvent]:
        """Append an event and fan it out. Returns None once the bus is closed."""
        with self._lock:
            if self._closed:
                logger.debug(
                    "[%s] Dropping %s published after conversation-ended",
                    self.conversation_id, event_type.value,
                )
                return None
            self._seq += 1
            event = StreamEvent(
                seq=self._seq,
                type=event_type,
                conversation_id=self.conversation_id,
                data=data or {},
            )
            self._window.append(event)
            overflowed = [sub for sub in self._subscribers if not sub._push(event)]
            for sub in overflowed:
                self._subscribers.discard(sub)
            if event.type == EventType.CONVERSATION_ENDED:
                self._closed = True
                for sub in self._subscribers:
                    sub._finish()
                self._subscribers.clear()

        for sub in overflowed:
            if sub.dropped:
                logger.warning(
                    "[%s] Subscriber fell %d events behind, dropped at seq %d",
                    self.conversation_id, self._subscriber_buffer, event.seq,
                )
        return event

    def subscribe(self, after_seq: Optional[int] = None) -> Subscription:
        """Attach a subscriber.

        With *after_seq* the retained events newer than it are replayed
        first; a gap between *after_seq* and the oldest retained event is
        visible to the caller through the sequence numbers.
        """
        with self._lock:
            replay = self._events_after_locked(after_seq) if after_seq is not None else []
            sub = Subscription(self, self._subscriber_buffer + len(replay), replay)
            if self._closed:
                sub._finish()
            else:
                self._subscribers.add(sub)
            return sub

    def events_after(self, seq: int) -> List[StreamEvent]:
        with self._lock:
            return self._events_after_locked(seq)

    def _events_after_locked(self, seq: int) -> List[StreamEvent]:
        return [e for e in self._window if e.seq > seq]

    def _detach(self, sub: Subscription) -> None:
        with self._lock:
            self._subscribers.discard(sub)
