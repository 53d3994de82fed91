"""Tests for agent.event_bus -- ordering, replay window, slow subscribers."""

import asyncio
import random

import pytest

from agent.event_bus import EventBus
from agent.models import EventType


async def _drain(sub, limit=None):
    events = []
    async for event in sub:
        events.append(event)
        if limit is not None and len(events) >= limit:
            break
    return events


# ---------------------------------------------------------------------------
# Ordering
# ---------------------------------------------------------------------------

class TestOrdering:
    @pytest.mark.asyncio
    async def test_sequence_numbers_strictly_increase(self):
        bus = EventBus("c1")
        sub = bus.subscribe()
        for i in range(5):
            bus.publish(EventType.TEXT_DELTA, {"text": str(i)})
        bus.publish(EventType.CONVERSATION_ENDED, {"status": "completed"})
        events = await _drain(sub)
        assert [e.seq for e in events] == [1, 2, 3, 4, 5, 6]
        assert events[-1].type == EventType.CONVERSATION_ENDED

    @pytest.mark.asyncio
    async def test_monotonic_under_random_interleaving(self):
        rng = random.Random(1234)
        bus = EventBus("c1", subscriber_buffer=10_000)
        subs = [bus.subscribe() for _ in range(3)]

        async def producer(n):
            for _ in range(n):
                await asyncio.sleep(rng.random() / 1000)
                bus.publish(EventType.TEXT_DELTA, {"text": "x"})

        await asyncio.gather(*(producer(20) for _ in range(4)))
        bus.publish(EventType.CONVERSATION_ENDED, {})
        for sub in subs:
            seqs = [e.seq for e in await _drain(sub)]
            assert seqs == sorted(seqs)
            assert len(seqs) == len(set(seqs)) == 81

    @pytest.mark.asyncio
    async def test_live_subscriber_sees_no_history(self):
        bus = EventBus("c1")
        bus.publish(EventType.TEXT_DELTA, {"text": "old"})
        sub = bus.subscribe()
        bus.publish(EventType.TEXT_DELTA, {"text": "new"})
        events = await _drain(sub, limit=1)
        assert events[0].data["text"] == "new"


# ---------------------------------------------------------------------------
# Replay and termination
# ---------------------------------------------------------------------------

class TestReplay:
    @pytest.mark.asyncio
    async def test_replay_after_seq(self):
        bus = EventBus("c1")
        for i in range(4):
            bus.publish(EventType.TEXT_DELTA, {"text": str(i)})
        sub = bus.subscribe(after_seq=2)
        bus.publish(EventType.CONVERSATION_ENDED, {})
        assert [e.seq for e in await _drain(sub)] == [3, 4, 5]

    def test_window_is_bounded(self):
        bus = EventBus("c1", window=3)
        for _ in range(10):
            bus.publish(EventType.TEXT_DELTA, {})
        assert [e.seq for e in bus.events_after(0)] == [8, 9, 10]

    @pytest.mark.asyncio
    async def test_subscribe_to_closed_bus_yields_replay_then_ends(self):
        bus = EventBus("c1")
        bus.publish(EventType.TEXT_DELTA, {})
        bus.publish(EventType.CONVERSATION_ENDED, {})
        assert bus.closed
        assert await _drain(bus.subscribe()) == []
        assert [e.seq for e in await _drain(bus.subscribe(after_seq=0))] == [1, 2]

    def test_publish_after_end_is_refused(self):
        bus = EventBus("c1")
        bus.publish(EventType.CONVERSATION_ENDED, {})
        assert bus.publish(EventType.TEXT_DELTA, {}) is None
        assert bus.last_seq == 1


# ---------------------------------------------------------------------------
# Slow subscribers
# ---------------------------------------------------------------------------

class TestSlowSubscriber:
    @pytest.mark.asyncio
    async def test_overflow_drops_only_that_subscriber(self):
        bus = EventBus("c1", subscriber_buffer=3)
        slow = bus.subscribe()
        fast = bus.subscribe()
        fast_events = []

        for i in range(5):
            bus.publish(EventType.TEXT_DELTA, {"text": str(i)})
            fast_events.extend(await _drain(fast, limit=1))

        assert slow.dropped
        assert bus.subscriber_count == 1
        events = await _drain(slow)
        # buffered events are still delivered, then the marker
        assert [e.seq for e in events[:-1]] == [1, 2, 3]
        assert events[-1].type == EventType.SUBSCRIBER_DROPPED
        assert [e.seq for e in fast_events] == [1, 2, 3, 4, 5]

    @pytest.mark.asyncio
    async def test_drop_marker_is_not_in_the_log(self):
        bus = EventBus("c1", subscriber_buffer=1)
        bus.subscribe()
        bus.publish(EventType.TEXT_DELTA, {})
        bus.publish(EventType.TEXT_DELTA, {})
        assert all(e.type != EventType.SUBSCRIBER_DROPPED for e in bus.events_after(0))

    def test_close_detaches(self):
        bus = EventBus("c1")
        sub = bus.subscribe()
        assert bus.subscriber_count == 1
        sub.close()
        assert bus.subscriber_count == 0
        assert sub.finished
