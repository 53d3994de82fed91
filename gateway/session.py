"""Session manager.

A Session wraps one Conversation for a serving surface. Two lifecycles:

  persistent  addressable by id across requests; the turn keeps running in
              the background when a streaming client goes away
  ephemeral   private to one request (``ephemeral()`` context manager);
              never resolvable by ``get`` and torn down when the request
              ends, cancelling its turn if it is still running

Each session has an exclusive lock held for the whole of a turn, so two
requests on the same session never interleave. The idle sweeper only
evicts sessions whose lock is free and whose conversation is idle or
already ended.
"""

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncIterator, Dict, List, Optional, Set

from agent.cancellation import CancellationController, CancellationToken
from agent.conversation import Conversation, TurnOutcome
from agent.errors import InvalidRequest, SessionLimitReached, SessionNotFound
from agent.event_bus import EventBus, Subscription
from agent.models import AgentConfig, SessionMode, new_id
from agent.runtime import AgentRuntime
from gateway.config import ServerConfig

logger = logging.getLogger(__name__)


@dataclass
class Session:
    id: str
    mode: SessionMode
    conversation: Conversation
    created_at: float = field(default_factory=time.time)
    last_activity: float = field(default_factory=time.time)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    task: Optional[asyncio.Task] = None

    @property
    def busy(self) -> bool:
        return self.lock.locked()

    def touch(self) -> None:
        self.last_activity = time.time()

    def summary(self) -> Dict:
        data = self.conversation.snapshot()
        data.update({
            "id": self.id,
            "conversation_id": self.conversation.id,
            "mode": self.mode.value,
            "busy": self.busy,
            "created_at": self.created_at,
            "last_activity": self.last_activity,
        })
        return data


@dataclass
class TurnHandle:
    """A running turn: its task and a subscription opened before it started."""

    session: Session
    subscription: Subscription
    task: asyncio.Task

    async def result(self) -> TurnOutcome:
        return await self.task

    def close(self) -> None:
        self.subscription.close()


class SessionManager:
    def __init__(
        self,
        config: ServerConfig,
        runtime: AgentRuntime,
        agent_config: AgentConfig,
        controller: Optional[CancellationController] = None,
    ):
        self.config = config
        self.runtime = runtime
        self.agent_config = agent_config
        self.controller = controller or CancellationController()
        self._sessions: Dict[str, Session] = {}
        self._ephemeral: Dict[str, Session] = {}
        self._pending: Dict[str, asyncio.Future] = {}
        self._tasks: Set[asyncio.Task] = set()
        self._sweeper: Optional[asyncio.Task] = None
        self._closing = False

    # ------------------------------------------------------------------
    # Creation and lookup
    # ------------------------------------------------------------------

    @property
    def count(self) -> int:
        return len(self._sessions) + len(self._ephemeral)

    @property
    def persistent_allowed(self) -> bool:
        return not self.config.ephemeral

    async def _build(self, mode: SessionMode, config: Optional[AgentConfig], session_id: Optional[str]) -> Session:
        if self._closing:
            raise InvalidRequest("Server is shutting down")
        if self.count + len(self._pending) >= self.config.max_sessions:
            logger.warning("Session limit reached (%d)", self.config.max_sessions)
            raise SessionLimitReached(self.config.max_sessions)
        session_id = session_id or new_id("sess_")
        if session_id in self._sessions or session_id in self._ephemeral or session_id in self._pending:
            raise InvalidRequest(f"Session already exists: {session_id}")

        # the id stays reserved while the conversation is built
        pending = asyncio.get_running_loop().create_future()
        self._pending[session_id] = pending
        try:
            token = CancellationToken()
            bus = EventBus(
                session_id,
                window=self.config.event_window,
                subscriber_buffer=self.config.subscriber_buffer,
            )
            conversation = await self.runtime.build(
                config or self.agent_config,
                conversation_id=session_id,
                bus=bus,
                token=token,
            )
            if self._closing:
                conversation.close()
                await self.runtime.release(conversation)
                raise InvalidRequest("Server is shutting down")

            session = Session(id=session_id, mode=mode, conversation=conversation)
            table = self._ephemeral if mode == SessionMode.EPHEMERAL else self._sessions
            table[session_id] = session
            self.controller.register(token, session_id)
        finally:
            del self._pending[session_id]
            pending.set_result(None)

        logger.info("[%s] Session created (%s, model=%s)", session_id, mode.value, conversation.config.model)
        return session

    async def create(
        self,
        mode: SessionMode = SessionMode.PERSISTENT,
        config: Optional[AgentConfig] = None,
        session_id: Optional[str] = None,
    ) -> str:
        session = await self._build(mode, config, session_id)
        return session.id

    def get(self, session_id: str) -> Session:
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFound(session_id)
        return session

    async def get_or_create(self, session_id: str, config: Optional[AgentConfig] = None) -> Session:
        """Existing session *session_id*, or a new one; concurrent callers share one."""
        while True:
            session = self._sessions.get(session_id)
            if session is not None:
                return session
            pending = self._pending.get(session_id)
            if pending is None:
                return await self._build(SessionMode.PERSISTENT, config, session_id)
            await asyncio.wait({pending})

    def list(self) -> List[Dict]:
        return [s.summary() for s in self._sessions.values()]

    def cancel(self, session_id: str, reason: str = "cancelled") -> bool:
        """Cancel the session's conversation. False if unknown or already ended."""
        session = self._sessions.get(session_id) or self._ephemeral.get(session_id)
        if session is None:
            return False
        return session.conversation.cancel(reason)

    async def delete(self, session_id: str) -> bool:
        session = self._sessions.pop(session_id, None)
        if session is None:
            return False
        self.controller.release(session_id)
        await self._teardown(session, "session deleted")
        logger.info("[%s] Session deleted", session_id)
        return True

    async def _teardown(self, session: Session, reason: str) -> None:
        conv = session.conversation
        if conv.is_busy:
            conv.cancel(reason)
        task = session.task
        if task is not None and not task.done():
            done, _ = await asyncio.wait({task}, timeout=self.config.grace_period)
            if not done:
                logger.warning("[%s] Turn did not stop within %.1fs, cancelling task",
                               session.id, self.config.grace_period)
                task.cancel()
                await asyncio.wait({task})
        conv.close()
        await self.runtime.release(conv)

    def spawn(self, coro) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    @asynccontextmanager
    async def ephemeral(self, config: Optional[AgentConfig] = None) -> AsyncIterator[Session]:
        """Private session for one request; torn down on exit whatever the outcome."""
        session = await self._build(SessionMode.EPHEMERAL, config, None)
        try:
            yield session
        finally:
            self._ephemeral.pop(session.id, None)
            self.controller.release(session.id)
            conv = session.conversation
            if conv.is_busy:
                # the caller went away mid-turn
                conv.cancel("client disconnected")
            # may run under a cancelled scope; finish cleanup off this task
            if session.task is not None and not session.task.done():
                self.spawn(self._teardown(session, "client disconnected"))
            else:
                conv.close()
                self.spawn(self.runtime.release(conv))
            logger.debug("[%s] Ephemeral session released", session.id)

    # ------------------------------------------------------------------
    # Turns
    # ------------------------------------------------------------------

    async def start_turn(self, session: Session, text: str) -> TurnHandle:
        """Run one user turn on *session* in the background.

        Waits for the session lock, so a second request on a busy session
        queues behind the running turn.
        """
        await session.lock.acquire()
        try:
            conv = session.conversation
            if conv.is_terminal:
                raise InvalidRequest(
                    f"Session {session.id} has ended ({conv.status.value}); start a new one"
                )
            subscription = conv.bus.subscribe()
            session.touch()
            task = self.spawn(self._run_turn(session, text))
        except BaseException:
            session.lock.release()
            raise
        session.task = task
        return TurnHandle(session=session, subscription=subscription, task=task)

    async def _run_turn(self, session: Session, text: str) -> TurnOutcome:
        try:
            return await session.conversation.submit(text)
        finally:
            session.touch()
            session.lock.release()

    # ------------------------------------------------------------------
    # Eviction and shutdown
    # ------------------------------------------------------------------

    def evict_idle(self, now: Optional[float] = None) -> List[str]:
        now = time.time() if now is None else now
        evicted = []
        for session_id, session in list(self._sessions.items()):
            if session.busy or session.conversation.is_busy:
                continue
            if now - session.last_activity < self.config.idle_timeout:
                continue
            self._sessions.pop(session_id, None)
            self.controller.release(session_id)
            session.conversation.close()
            self.spawn(self.runtime.release(session.conversation))
            evicted.append(session_id)
        if evicted:
            logger.info("Evicted %d idle session(s): %s", len(evicted), ", ".join(evicted))
        return evicted

    async def _sweep(self) -> None:
        while True:
            await asyncio.sleep(self.config.sweep_interval)
            self.evict_idle()

    async def start(self) -> None:
        if self._sweeper is None and self.config.idle_timeout > 0:
            self._sweeper = asyncio.get_running_loop().create_task(self._sweep())

    async def shutdown(self, grace: Optional[float] = None) -> None:
        """Stop accepting sessions, let running turns finish for *grace* seconds, cancel the rest."""
        grace = self.config.grace_period if grace is None else grace
        self._closing = True
        if self._sweeper is not None:
            self._sweeper.cancel()
            await asyncio.gather(self._sweeper, return_exceptions=True)
            self._sweeper = None

        pending = {t for t in self._tasks if not t.done()}
        if pending:
            logger.info("Draining %d in-flight task(s) (grace %.1fs)", len(pending), grace)
            _, pending = await asyncio.wait(pending, timeout=grace)
        if pending:
            for session in list(self._sessions.values()) + list(self._ephemeral.values()):
                session.conversation.cancel("shutdown")
            _, pending = await asyncio.wait(pending, timeout=1.0)
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)

        for session in list(self._sessions.values()) + list(self._ephemeral.values()):
            self.controller.release(session.id)
            session.conversation.close()
        self._sessions.clear()
        self._ephemeral.clear()
        await self.runtime.aclose()
        logger.info("Session manager stopped")
