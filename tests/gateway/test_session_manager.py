"""Tests for gateway.session -- session tables, turn locking, teardown."""

import asyncio
import time

import pytest

from agent.errors import InvalidRequest, SessionLimitReached, SessionNotFound
from agent.models import AgentConfig, ConversationStatus, EventType, SessionMode
from agent.runtime import AgentRuntime
from gateway.config import ServerConfig
from gateway.session import SessionManager
from tests.fakes.scripted_provider import Block, ScriptedProvider
from tools.registry import ToolRegistry


def _manager(script=(), chunk_delay=0.0, **server):
    defaults = dict(max_sessions=10, idle_timeout=60, grace_period=1.0)
    defaults.update(server)
    runtime = AgentRuntime(
        provider_factory=ScriptedProvider(list(script), chunk_delay=chunk_delay),
        registry=ToolRegistry(),
    )
    return SessionManager(ServerConfig(**defaults), runtime, AgentConfig(model="m", max_turns=3))


class _SlowRuntime:
    """Runtime whose build yields to the loop, like MCP discovery does."""

    def __init__(self, runtime):
        self._runtime = runtime
        self.builds = 0

    async def build(self, config, **kwargs):
        self.builds += 1
        await asyncio.sleep(0.01)
        return await self._runtime.build(config, **kwargs)

    async def release(self, conversation):
        await self._runtime.release(conversation)

    async def aclose(self):
        await self._runtime.aclose()


class TestTables:
    @pytest.mark.asyncio
    async def test_create_and_get(self):
        manager = _manager()
        sid = await manager.create()
        session = manager.get(sid)
        assert session.mode == SessionMode.PERSISTENT
        assert session.conversation.id == sid
        assert [s["id"] for s in manager.list()] == [sid]

    @pytest.mark.asyncio
    async def test_explicit_id_and_duplicate(self):
        manager = _manager()
        assert await manager.create(session_id="mine") == "mine"
        with pytest.raises(InvalidRequest):
            await manager.create(session_id="mine")

    @pytest.mark.asyncio
    async def test_unknown_session(self):
        with pytest.raises(SessionNotFound):
            _manager().get("nope")

    @pytest.mark.asyncio
    async def test_limit_counts_ephemeral_sessions(self):
        manager = _manager(max_sessions=2)
        await manager.create()
        async with manager.ephemeral():
            with pytest.raises(SessionLimitReached):
                await manager.create()
        # released again once the request is over
        await manager.create()
        assert manager.count == 2

    @pytest.mark.asyncio
    async def test_ephemeral_is_not_addressable(self):
        manager = _manager()
        async with manager.ephemeral() as session:
            assert session.mode == SessionMode.EPHEMERAL
            with pytest.raises(SessionNotFound):
                manager.get(session.id)
            assert manager.list() == []
        assert session.conversation.status == ConversationStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_get_or_create(self):
        manager = _manager()
        first = await manager.get_or_create("abc")
        assert await manager.get_or_create("abc") is first

    @pytest.mark.asyncio
    async def test_concurrent_get_or_create_shares_one_session(self):
        manager = _manager()
        manager.runtime = _SlowRuntime(manager.runtime)
        a, b = await asyncio.gather(manager.get_or_create("s1"), manager.get_or_create("s1"))
        assert a is b
        assert manager.runtime.builds == 1
        assert manager.count == 1
        assert manager.cancel("s1")
        assert a.conversation.status == ConversationStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_create_refuses_an_id_being_built(self):
        manager = _manager()
        manager.runtime = _SlowRuntime(manager.runtime)
        building = asyncio.ensure_future(manager.create(session_id="s1"))
        await asyncio.sleep(0)
        with pytest.raises(InvalidRequest):
            await manager.create(session_id="s1")
        assert await building == "s1"


class TestTurns:
    @pytest.mark.asyncio
    async def test_turn_events_reach_subscription(self):
        manager = _manager(["hello there"])
        session = manager.get(await manager.create())
        handle = await manager.start_turn(session, "hi")
        outcome = await handle.result()
        assert outcome.ok
        types = [e.type for e in session.conversation.bus.events_after(0)]
        assert types == [EventType.TEXT_DELTA, EventType.TEXT_DELTA, EventType.TURN_COMPLETED]
        handle.close()
        assert not session.busy

    @pytest.mark.asyncio
    async def test_second_turn_queues_behind_the_first(self):
        manager = _manager(["first answer", "second answer"], chunk_delay=0.05)
        session = manager.get(await manager.create())
        first = await manager.start_turn(session, "one")
        second_start = asyncio.ensure_future(manager.start_turn(session, "two"))
        await asyncio.sleep(0.02)
        assert not second_start.done()
        assert session.busy

        await first.result()
        second = await second_start
        assert (await second.result()).ok
        assert session.conversation.final_text == "second answer"
        assert session.conversation.turn_count == 2

    @pytest.mark.asyncio
    async def test_ended_session_refuses_new_turns(self):
        manager = _manager()
        session = manager.get(await manager.create())
        session.conversation.cancel("done")
        with pytest.raises(InvalidRequest):
            await manager.start_turn(session, "hi")
        assert not session.busy


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancel_running_turn_is_idempotent(self):
        block = Block()
        manager = _manager([block])
        sid = await manager.create()
        handle = await manager.start_turn(manager.get(sid), "hi")
        await block.reached.wait()
        assert manager.cancel(sid, "user") is True
        outcome = await handle.result()
        assert outcome.cancelled
        assert manager.cancel(sid, "user") is False
        assert manager.cancel("unknown") is False

    @pytest.mark.asyncio
    async def test_delete_cancels_running_turn(self):
        block = Block()
        manager = _manager([block])
        sid = await manager.create()
        handle = await manager.start_turn(manager.get(sid), "hi")
        await block.reached.wait()
        assert await manager.delete(sid) is True
        assert handle.task.done()
        assert (await handle.result()).cancelled
        assert await manager.delete(sid) is False

    @pytest.mark.asyncio
    async def test_leaving_ephemeral_mid_turn_cancels_it(self):
        block = Block()
        manager = _manager([block])
        async with manager.ephemeral() as session:
            handle = await manager.start_turn(session, "hi")
            await block.reached.wait()
        outcome = await handle.result()
        assert outcome.cancelled
        assert session.conversation.status == ConversationStatus.CANCELLED
        assert manager.count == 0


class TestEvictionAndShutdown:
    @pytest.mark.asyncio
    async def test_evict_idle_skips_busy_sessions(self):
        block = Block()
        manager = _manager([block], idle_timeout=10)
        idle = await manager.create()
        busy = await manager.create()
        handle = await manager.start_turn(manager.get(busy), "hi")
        await block.reached.wait()

        assert manager.evict_idle(now=time.time() + 5) == []
        assert manager.evict_idle(now=time.time() + 60) == [idle]
        assert manager.get(busy)
        manager.cancel(busy)
        await handle.result()

    @pytest.mark.asyncio
    async def test_shutdown_cancels_stragglers_and_refuses_new_sessions(self):
        block = Block()
        manager = _manager([block])
        await manager.start()
        sid = await manager.create()
        handle = await manager.start_turn(manager.get(sid), "hi")
        await block.reached.wait()

        await manager.shutdown(grace=0.05)
        assert (await handle.result()).cancelled
        assert manager.count == 0
        with pytest.raises(InvalidRequest):
            await manager.create()
