"""Interactive terminal loop.

One in-process conversation per session; every line is a user turn whose
answer streams to the terminal. Ctrl-C cancels the turn in flight (the
conversation ends as cancelled) and the next prompt continues in a fresh
conversation seeded with what was said so far. Tools that change things
(shell, file writes, MCP tools) ask first unless the loop runs with ``sudo``.

Slash commands::

    /help            list commands
    /exit, /quit     leave
    /new             start over with an empty conversation
    /status          conversation state and counters
    /tokens          tokens used so far
    /trace [FILE]    message counts, or save the trace to FILE
"""

import asyncio
import logging
import signal
import sys
from typing import Any, Dict, List, Optional, TextIO

from agent.models import AgentConfig, EventType, ToolCall
from agent.permissions import Permission, PermissionGate
from agent.runtime import AgentRuntime
from agent.trace import save_trace, trace_summary

logger = logging.getLogger(__name__)

COMMANDS = {
    "/help": "list commands",
    "/exit": "leave the loop",
    "/quit": "leave the loop",
    "/new": "start a new, empty conversation",
    "/status": "show conversation state and counters",
    "/tokens": "show tokens used by this conversation",
    "/trace": "show message counts, or /trace FILE to save the trace",
}


async def _read_choice() -> str:
    return await asyncio.to_thread(input, "      Choice [o/a/D]: ")


def resumable_prefix(messages: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Longest prefix of *messages* with no unanswered tool calls."""
    pending = set()
    cut = 0
    for i, msg in enumerate(messages):
        for tc in msg.get("tool_calls") or ():
            pending.add(tc.get("id"))
        if msg.get("role") == "tool":
            pending.discard(msg.get("tool_call_id"))
        if not pending:
            cut = i + 1
    return messages[:cut]


class Repl:
    def __init__(
        self,
        config: AgentConfig,
        runtime: Optional[AgentRuntime] = None,
        out: TextIO = sys.stdout,
        sudo: bool = False,
    ):
        self.config = config
        self.runtime = runtime or AgentRuntime(shared_mcp_servers=config.mcp_servers)
        self.out = out
        self.permission = None if sudo else PermissionGate(self._ask_permission)
        self._read_line = None
        self.conversation = None
        self._turn: Optional[asyncio.Task] = None
        self.exit = False

    def _print(self, text: str = "", end: str = "\n") -> None:
        print(text, end=end, file=self.out, flush=True)

    async def new_conversation(self, history=None) -> None:
        previous = self.conversation
        if previous is not None:
            if not previous.is_terminal:
                previous.close()
            await self.runtime.release(previous)
        self.conversation = await self.runtime.build(
            self.config, history=history, permission=self.permission)

    async def _ask_permission(self, call: ToolCall) -> Permission:
        self._print()
        self._print(f"  🔐 {call.name} wants to run")
        self._print(f"      {call.arguments[:80]}{'...' if len(call.arguments) > 80 else ''}")
        self._print("      [o]nce  |  [a]lways  |  [d]eny")
        try:
            choice = (await (self._read_line or _read_choice)()).strip().lower()
        except EOFError:
            choice = ""
        if choice in ("o", "once", "y", "yes"):
            self._print("      ✓ Allowed once")
            return Permission.ALLOW
        if choice in ("a", "always"):
            self._print(f"      ✓ {call.name} allowed for this session")
            return Permission.ALLOW_ALWAYS
        self._print("      ✗ Denied")
        return Permission.DENY

    def interrupt(self) -> None:
        if self._turn is not None and not self._turn.done():
            self.conversation.cancel("interrupted")
        else:
            self._print("\n(type /exit to quit)")

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    async def handle_command(self, line: str) -> None:
        parts = line.split()
        cmd, args = parts[0], parts[1:]
        if cmd in ("/exit", "/quit"):
            self.exit = True
        elif cmd == "/help":
            for name, desc in COMMANDS.items():
                self._print(f"  {name:<10} {desc}")
        elif cmd == "/new":
            await self.new_conversation()
            self._print("🆕 New conversation")
        elif cmd == "/status":
            snap = self.conversation.snapshot()
            self._print(
                f"📊 {snap['status']} | model {snap['model']} | {snap['messages']} messages | "
                f"{snap['turns']} turns | last seq {snap['last_seq']} | "
                f"{snap['usage']['total_tokens']} tokens"
            )
        elif cmd == "/tokens":
            usage = self.conversation.usage
            self._print(
                f"🔢 Tokens - input: {usage['input_tokens']}, output: {usage['output_tokens']}, "
                f"total: {usage['total_tokens']}"
            )
        elif cmd == "/trace":
            if args:
                save_trace(self.conversation, args[0])
                self._print(f"💾 Trace saved to {args[0]}")
            else:
                counts = trace_summary(self.conversation.to_trace())
                self._print("📜 " + (", ".join(f"{k}: {v}" for k, v in counts.items()) or "empty"))
        else:
            self._print("command unknown (try /help)")

    # ------------------------------------------------------------------
    # Turns
    # ------------------------------------------------------------------

    async def _render(self, subscription) -> None:
        streaming = False
        async for event in subscription:
            if event.type == EventType.TEXT_DELTA:
                self._print(event.data.get("text", ""), end="")
                streaming = True
            elif event.type == EventType.TOOL_CALL_STARTED:
                if streaming:
                    self._print()
                    streaming = False
                self._print(f"🔧 {event.data['name']}")
            elif event.type == EventType.TOOL_CALL_FINISHED:
                ok = event.data.get("status") == "succeeded"
                self._print(f"  {'✅' if ok else '❌'} {event.data.get('error') or ''}".rstrip())
            elif event.type == EventType.ERROR:
                self._print(f"\n❌ {event.data.get('kind')}: {event.data.get('message')}")
            if event.type in (EventType.TURN_COMPLETED, EventType.CONVERSATION_ENDED):
                break
        if streaming:
            self._print()

    async def ask(self, text: str) -> None:
        if self.conversation.is_terminal:
            await self.new_conversation(resumable_prefix(self.conversation.to_trace()))
        conv = self.conversation
        subscription = conv.bus.subscribe()
        self._turn = asyncio.ensure_future(conv.submit(text))
        try:
            await self._render(subscription)
            outcome = await self._turn
        finally:
            subscription.close()
            self._turn = None
        if outcome.cancelled:
            self._print("⚡ Interrupted. The next message continues from here.")

    async def main(self, read_line=None) -> None:
        self._read_line = read_line
        read_line = read_line or (lambda: asyncio.to_thread(input, "❯ "))
        await self.new_conversation()
        self._print(f"🤖 shai ({self.config.model}). /help for commands, Ctrl-C cancels a turn.")
        try:
            while not self.exit:
                try:
                    line = (await read_line()).strip()
                except EOFError:
                    break
                if not line:
                    continue
                if line.startswith("/"):
                    await self.handle_command(line)
                else:
                    await self.ask(line)
        finally:
            if self.conversation is not None:
                self.conversation.close()
                await self.runtime.release(self.conversation)
            await self.runtime.aclose()


def run_repl(config: AgentConfig, sudo: bool = False) -> int:
    repl = Repl(config, sudo=sudo)

    async def _run():
        loop = asyncio.get_running_loop()
        try:
            loop.add_signal_handler(signal.SIGINT, repl.interrupt)
        except (NotImplementedError, RuntimeError):
            logger.debug("SIGINT handler unavailable on this platform")
        await repl.main()

    try:
        asyncio.run(_run())
    except KeyboardInterrupt:
        return 130
    return 0
