"""Terminal tool: run a shell command on the host.

The command runs in its own process group so that a timeout or a
cancellation can take down everything the shell spawned, not just the
shell itself.
"""

import asyncio
import logging
import os
import platform
import signal
from typing import Any, Dict, Optional

from agent.errors import ToolExecutionFailed
from tools.registry import ToolSpec

logger = logging.getLogger(__name__)

_IS_WINDOWS = platform.system() == "Windows"

# Grace period between SIGTERM and SIGKILL for a cancelled command.
KILL_GRACE_SECONDS = 1.0

_SHELL_NOISE = frozenset({
    "bash: no job control in this shell",
    "no job control in this shell",
})


def _clean_shell_noise(output: str) -> str:
    lines = output.split("\n", 1)
    if lines and lines[0].strip() in _SHELL_NOISE:
        return lines[1] if len(lines) > 1 else ""
    return output


def _kill_process_group(proc: asyncio.subprocess.Process, *, force: bool = False) -> None:
    """Signal the command's whole process group (SIGKILL when *force*)."""
    if proc.returncode is not None:
        return
    if _IS_WINDOWS:
        try:
            proc.kill()
        except (ProcessLookupError, PermissionError, OSError):
            pass
        return

    sig = signal.SIGKILL if force else signal.SIGTERM
    try:
        os.killpg(os.getpgid(proc.pid), sig)
    except (ProcessLookupError, PermissionError, OSError):
        try:
            proc.kill() if force else proc.terminate()
        except (ProcessLookupError, PermissionError, OSError):
            pass


async def _stop(proc: asyncio.subprocess.Process) -> None:
    _kill_process_group(proc)
    try:
        await asyncio.wait_for(proc.wait(), KILL_GRACE_SECONDS)
    except asyncio.TimeoutError:
        _kill_process_group(proc, force=True)
        await proc.wait()


async def run_command(command: str, workdir: Optional[str] = None) -> Dict[str, Any]:
    """Run *command* through the shell and return ``{"output", "returncode"}``.

    Cancelling the awaiting task kills the process group before the
    CancelledError propagates.
    """
    proc = await asyncio.create_subprocess_shell(
        command,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.STDOUT,
        cwd=workdir or None,
        start_new_session=not _IS_WINDOWS,
    )
    try:
        stdout, _ = await proc.communicate()
    except asyncio.CancelledError:
        logger.info("Killing command (pid %s): %s", proc.pid, command[:80])
        await _stop(proc)
        raise
    output = _clean_shell_noise(stdout.decode("utf-8", errors="replace"))
    return {"output": output, "returncode": proc.returncode}


async def terminal_handler(args: Dict[str, Any], token) -> str:
    command = args.get("command")
    if not isinstance(command, str) or not command.strip():
        raise ToolExecutionFailed("Missing required argument: command")
    workdir = args.get("workdir")
    if workdir is not None and not os.path.isdir(workdir):
        raise ToolExecutionFailed(f"Working directory does not exist: {workdir}")

    logger.debug("$ %s", command[:200])
    result = await run_command(command, workdir)
    if result["returncode"] != 0:
        raise ToolExecutionFailed(
            f"Command exited with code {result['returncode']}",
            output=result["output"],
            metadata={"exit_code": result["returncode"]},
        )
    return result["output"]


TERMINAL_TOOL = ToolSpec(
    name="terminal",
    description=(
        "Execute a shell command on the local machine and return its combined "
        "stdout/stderr. A non-zero exit status is reported as a failure together "
        "with the output."
    ),
    parameters={
        "command": {"type": "string", "description": "The shell command to run"},
        "workdir": {
            "type": "string",
            "description": "Working directory for the command (defaults to the current directory)",
        },
    },
    required=["command"],
    handler=terminal_handler,
    needs_permission=True,
)
