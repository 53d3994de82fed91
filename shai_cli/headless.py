"""Headless (pipe) mode.

    $ git diff | shai run "review this change"
    $ shai run --trace "list the failing tests" | shai run --trace "fix the first one"

stdin becomes the user turn, or, when it holds a trace from a previous
run, the context the prompt argument continues. The live event stream
(answer text as it is generated, tool progress, errors) goes to stderr.
stdout is written only with ``trace=True``: the whole conversation as a
trace, ready to be piped into the next invocation.

Exit codes: 0 answer produced, 1 conversation failed, 2 nothing to ask,
130 interrupted (SIGINT), 141 an output stream was closed by its reader.
"""

import asyncio
import logging
import signal
import sys
from typing import Optional, TextIO

from agent.models import AgentConfig, EventType
from agent.runtime import AgentRuntime
from agent.trace import dump_trace, load_trace

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_USAGE = 2
EXIT_INTERRUPTED = 130
EXIT_BROKEN_PIPE = 141


def _preview(text: str, limit: int = 60) -> str:
    text = " ".join((text or "").split())
    return text if len(text) <= limit else text[: limit - 3] + "..."


def compose_prompt(stdin_text: Optional[str], prompt: Optional[str]):
    """Return ``(history, prompt)`` from piped input and the prompt argument."""
    stdin_text = stdin_text or ""
    history = load_trace(stdin_text)
    if history is not None:
        return history, (prompt or "").strip()
    parts = [p for p in ((prompt or "").strip(), stdin_text.strip()) if p]
    return [], "\n\n".join(parts)


class HeadlessRun:
    """One headless turn: a conversation, its progress printer and its exit code."""

    def __init__(
        self,
        config: AgentConfig,
        runtime: Optional[AgentRuntime] = None,
        out: TextIO = sys.stdout,
        err: TextIO = sys.stderr,
        trace: bool = False,
        quiet: bool = False,
    ):
        self.config = config
        self.runtime = runtime or AgentRuntime(shared_mcp_servers=config.mcp_servers)
        self.out = out
        self.err = err
        self.trace = trace
        self.quiet = quiet
        self.conversation = None
        self.broken_pipe = False
        self.interrupted = False

    def _write(self, stream: TextIO, text: str) -> None:
        if self.broken_pipe:
            return
        try:
            stream.write(text)
            stream.flush()
        except BrokenPipeError:
            self.broken_pipe = True
            logger.debug("Output stream closed by reader, cancelling")
            if self.conversation is not None:
                self.conversation.cancel("output closed")

    def _progress(self, line: str) -> None:
        if not self.quiet:
            self._write(self.err, line + "\n")

    def interrupt(self) -> None:
        self.interrupted = True
        if self.conversation is not None:
            self.conversation.cancel("interrupted")

    async def _pump(self, subscription) -> None:
        streaming = False
        async for event in subscription:
            if event.type == EventType.TEXT_DELTA:
                self._write(self.err, event.data.get("text", ""))
                streaming = True
                continue
            if streaming:
                self._write(self.err, "\n")
                streaming = False
            if event.type == EventType.TOOL_CALL_STARTED:
                self._progress(f"🔧 {event.data['name']} {_preview(event.data.get('arguments', ''))}")
            elif event.type == EventType.TOOL_CALL_FINISHED:
                mark = "✅" if event.data.get("status") == "succeeded" else "❌"
                detail = event.data.get("error") or ""
                self._progress(f"  {mark} {event.data.get('name', '')} "
                               f"({event.data.get('duration', 0):.1f}s) {_preview(detail)}".rstrip())
            elif event.type == EventType.ERROR:
                self._progress(f"❌ {event.data.get('kind')}: {event.data.get('message')}")
            if event.type in (EventType.TURN_COMPLETED, EventType.CONVERSATION_ENDED):
                break

    async def run(self, stdin_text: Optional[str], prompt: Optional[str] = None) -> int:
        history, text = compose_prompt(stdin_text, prompt)
        if not text:
            self._write(self.err, "shai: nothing to ask (pipe input or pass a prompt)\n")
            return EXIT_USAGE

        self.conversation = await self.runtime.build(self.config, history=history)
        conv = self.conversation
        if history:
            self._progress(f"📎 continuing trace with {len(history)} message(s)")
        if self.interrupted:
            await self.runtime.aclose()
            return EXIT_INTERRUPTED

        subscription = conv.bus.subscribe()
        pump = asyncio.ensure_future(self._pump(subscription))
        try:
            outcome = await conv.submit(text)
            await pump
        finally:
            subscription.close()
            if not pump.done():
                pump.cancel()
            await self.runtime.aclose()

        if outcome.ok:
            if self.trace:
                self._write(self.out, dump_trace(conv) + "\n")
            conv.close()

        if self.broken_pipe:
            return EXIT_BROKEN_PIPE
        if outcome.cancelled:
            self._progress("⚡ interrupted")
            return EXIT_INTERRUPTED
        if not outcome.ok:
            return EXIT_FAILED
        return EXIT_OK


def _install_sigint(run: HeadlessRun) -> bool:
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, run.interrupt)
    except (NotImplementedError, RuntimeError):
        logger.debug("SIGINT handler unavailable on this platform")
        return False
    return True


async def _main(run: HeadlessRun, stdin_text: Optional[str], prompt: Optional[str]) -> int:
    installed = _install_sigint(run)
    try:
        return await run.run(stdin_text, prompt)
    finally:
        if installed:
            asyncio.get_running_loop().remove_signal_handler(signal.SIGINT)


def run_headless(
    config: AgentConfig,
    prompt: Optional[str] = None,
    *,
    trace: bool = False,
    quiet: bool = False,
    stdin: TextIO = sys.stdin,
) -> int:
    stdin_text = None if stdin.isatty() else stdin.read()
    run = HeadlessRun(config, trace=trace, quiet=quiet)
    try:
        return asyncio.run(_main(run, stdin_text, prompt))
    except KeyboardInterrupt:
        return EXIT_INTERRUPTED
