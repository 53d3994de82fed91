"""Shell hook: suggestions for a command that just failed.

The shell integration (installed separately) calls::

    shai hook --command "$cmd" --exit-code $? --output "$(tail -n 50 log)"

The event becomes a synthetic user turn in a dedicated ephemeral session
that is torn down as soon as the suggestion is out. The session gets no
tools: the suggestion is advice, never an action taken on the user's
behalf.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Callable, Optional

from agent.models import AgentConfig
from agent.provider import ProviderGateway
from agent.runtime import AgentRuntime
from gateway.config import ServerConfig
from gateway.session import SessionManager
from tools.registry import ToolRegistry

logger = logging.getLogger(__name__)

MAX_HOOK_OUTPUT_CHARS = 4000

HOOK_SYSTEM_PROMPT = (
    "You help a user whose shell command just failed. Reply with a short "
    "explanation of the likely cause and, when you can, the corrected command "
    "on its own line. Be brief."
)


@dataclass
class ShellHookEvent:
    command: str
    exit_code: int
    output: str = ""

    def to_prompt(self, limit: int = MAX_HOOK_OUTPUT_CHARS) -> str:
        output = self.output or ""
        if len(output) > limit:
            output = "...\n" + output[-limit:]
        return (
            f"The command `{self.command}` exited with status {self.exit_code}.\n"
            f"Recent terminal output:\n```\n{output.rstrip()}\n```\n"
            "What went wrong and what should I run instead?"
        )


async def suggest(
    event: ShellHookEvent,
    config: AgentConfig,
    provider_factory: Optional[Callable[[AgentConfig], ProviderGateway]] = None,
) -> Optional[str]:
    """Return the suggestion text, or None when the turn did not produce one."""
    if event.exit_code == 0:
        return None
    config = config.with_changes(
        system_context=HOOK_SYSTEM_PROMPT,
        tools=(),
        mcp_servers=(),
        max_turns=1,
    )
    manager = SessionManager(
        ServerConfig(max_sessions=1, idle_timeout=0),
        AgentRuntime(provider_factory=provider_factory, registry=ToolRegistry()),
        config,
    )
    try:
        async with manager.ephemeral() as session:
            handle = await manager.start_turn(session, event.to_prompt())
            handle.close()
            outcome = await handle.result()
    finally:
        await manager.shutdown(grace=0)

    if not outcome.ok:
        logger.warning("Shell hook turn ended %s: %s", outcome.status.value,
                       outcome.error.message if outcome.error else "")
        return None
    return outcome.text.strip() or None


def run_hook(config: AgentConfig, command: str, exit_code: int, output: str = "") -> int:
    event = ShellHookEvent(command=command, exit_code=int(exit_code), output=output)
    text = asyncio.run(suggest(event, config))
    if text:
        print(f"💡 {text}")
    return 0
