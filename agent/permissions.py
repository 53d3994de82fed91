"""Per-call permission gate for tools that change things.

Tools flagged ``needs_permission`` (shell, file writes and edits, remote
MCP tools) are confirmed one call at a time through an ``ask`` coroutine
supplied by the surface. The answer is one of:

  allow         run this call
  allow-always  run it and stop asking for this tool name
  deny          report the call as failed with reason ``denied``

Questions are serialized, so concurrent calls from one assistant message
are confirmed one after the other. An executor built without a gate runs
every tool unasked (the HTTP gateway and headless runs work that way).
"""

import asyncio
import logging
from enum import Enum
from typing import Awaitable, Callable, Iterable, Set

from agent.models import ToolCall

logger = logging.getLogger(__name__)


class Permission(str, Enum):
    ALLOW = "allow"
    ALLOW_ALWAYS = "allow-always"
    DENY = "deny"


Asker = Callable[[ToolCall], Awaitable[Permission]]


class PermissionGate:
    def __init__(self, ask: Asker, always_allowed: Iterable[str] = ()):
        self._ask = ask
        self._always: Set[str] = set(always_allowed)
        self._lock = asyncio.Lock()

    @property
    def always_allowed(self) -> Set[str]:
        return set(self._always)

    def forget(self) -> None:
        self._always.clear()

    async def check(self, call: ToolCall, spec) -> bool:
        """True when *call* may run."""
        if not spec.needs_permission or call.name in self._always:
            return True
        async with self._lock:
            # answered "always" while this call was queued
            if call.name in self._always:
                return True
            answer = Permission(await self._ask(call))
        if answer == Permission.ALLOW_ALWAYS:
            self._always.add(call.name)
            logger.info("Tool %s allowed for the rest of the session", call.name)
        elif answer == Permission.DENY:
            logger.info("Tool call %s (%s) denied", call.name, call.id)
        return answer != Permission.DENY
