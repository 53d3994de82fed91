"""Cooperative cancellation.

A CancellationToken is threaded explicitly through every awaited operation
of a conversation (provider stream, retry sleeps, tool calls). Nothing is
interrupted by force: code checks the token at its suspension points, or
races the awaited operation against it with ``token.race()``.

The CancellationController maps external identifiers (session ids,
response ids) to tokens so any surface can stop a conversation it does not
own -- an HTTP cancel call, a terminal interrupt, a closed pipe.
"""

import asyncio
import logging
import threading
from typing import Awaitable, Dict, Optional, TypeVar

from agent.errors import CancellationRequested

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CancellationToken:
    """One-shot stop flag. ``cancel()`` is idempotent; the first reason wins."""

    def __init__(self):
        self._event = asyncio.Event()
        self._reason: Optional[str] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        try:
            self._loop = asyncio.get_running_loop()
        except RuntimeError:
            pass

    @property
    def cancelled(self) -> bool:
        return self._reason is not None

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    def cancel(self, reason: str = "cancelled") -> bool:
        """Fire the token. Returns False if it had already fired."""
        if self._reason is not None:
            return False
        self._reason = reason
        loop = self._loop
        if loop is not None and loop.is_running() and not _on_loop_thread(loop):
            # signal handlers / foreign threads
            loop.call_soon_threadsafe(self._event.set)
        else:
            self._event.set()
        return True

    def raise_if_cancelled(self) -> None:
        if self._reason is not None:
            raise CancellationRequested(self._reason)

    async def wait(self) -> str:
        self._loop = asyncio.get_running_loop()
        await self._event.wait()
        return self._reason or "cancelled"

    async def race(self, awaitable: Awaitable[T]) -> T:
        """Await *awaitable* unless the token fires first.

        On cancellation the pending operation is cancelled and
        CancellationRequested is raised.
        """
        if self._reason is not None:
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            elif isinstance(awaitable, asyncio.Future):
                awaitable.cancel()
            raise CancellationRequested(self._reason)
        self._loop = asyncio.get_running_loop()
        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            done, _ = await asyncio.wait(
                {task, waiter}, return_when=asyncio.FIRST_COMPLETED
            )
        except asyncio.CancelledError:
            task.cancel()
            waiter.cancel()
            raise
        if task in done:
            waiter.cancel()
            return task.result()
        task.cancel()
        try:
            await task
        except (asyncio.CancelledError, Exception):
            # cancellation wins over the operation's own failure
            pass
        raise CancellationRequested(self._reason or "cancelled")

    async def sleep(self, delay: float) -> None:
        """Cancellable sleep used for retry backoff."""
        await self.race(asyncio.sleep(delay))


def _on_loop_thread(loop: asyncio.AbstractEventLoop) -> bool:
    try:
        return asyncio.get_running_loop() is loop
    except RuntimeError:
        return False


class CancellationController:
    """Maps external identifiers to conversation tokens.

    Several keys may point at the same token (a session id and the ids of
    the responses created on it). Cancelling an unknown or already-fired
    key is a no-op that returns False.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._tokens: Dict[str, CancellationToken] = {}

    def register(self, token: CancellationToken, *keys: str) -> None:
        with self._lock:
            for key in keys:
                self._tokens[key] = token

    def release(self, *keys: str) -> None:
        with self._lock:
            for key in keys:
                self._tokens.pop(key, None)

    def is_registered(self, key: str) -> bool:
        with self._lock:
            return key in self._tokens

    def get(self, key: str) -> Optional[CancellationToken]:
        with self._lock:
            return self._tokens.get(key)

    def cancel(self, key: str, reason: str = "cancelled") -> bool:
        token = self.get(key)
        if token is None:
            logger.debug("Cancel for unknown key %s ignored", key)
            return False
        fired = token.cancel(reason)
        if fired:
            logger.info("[%s] Cancellation requested: %s", key, reason)
        return fired
