"""Tool call execution.

Runs the tool calls of one assistant message. Every call produces exactly
one ToolResult, whatever happens to it: unknown tool, malformed
arguments, a denied permission, handler failure, timeout or cancellation
all come back as results so the model can see them. Only cancellation of
the caller's own task propagates.
"""

import asyncio
import json
import logging
import time
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from shai_constants import DEFAULT_TOOL_TIMEOUT
from agent.cancellation import CancellationToken
from agent.errors import CancellationRequested, ToolExecutionFailed, ToolTimeout
from agent.models import ToolCall, ToolCallStatus, ToolResult
from agent.permissions import PermissionGate

logger = logging.getLogger(__name__)

MAX_TOOL_RESULT_CHARS = 100_000


def truncate_output(text: str, limit: int = MAX_TOOL_RESULT_CHARS) -> str:
    # 100K chars ~ 25K tokens
    if len(text) <= limit:
        return text
    return (
        text[:limit]
        + f"\n\n[Truncated: tool response was {len(text):,} chars, "
        f"exceeding the {limit:,} char limit]"
    )


def normalize_tool_args(tool_name: str, raw: Any) -> Tuple[Optional[Dict[str, Any]], Optional[str]]:
    """Normalize model-produced arguments into a dict.

    Returns ``(args, None)`` on success or ``(None, error)``. Tolerates
    double-encoded JSON, and a bare string for ``terminal`` is taken as the
    command.
    """
    if raw is None or raw == "":
        return {}, None
    if isinstance(raw, dict):
        return raw, None
    if not isinstance(raw, str):
        return None, f"Arguments must be a JSON object, got {type(raw).__name__}"

    try:
        decoded = json.loads(raw)
    except json.JSONDecodeError as e:
        if tool_name == "terminal":
            return {"command": raw}, None
        return None, f"Arguments are not valid JSON: {e}"

    if isinstance(decoded, dict):
        if tool_name == "terminal" and not decoded.get("command") and isinstance(decoded.get("input"), str):
            return {"command": decoded["input"]}, None
        return decoded, None

    if isinstance(decoded, str):
        s = decoded.strip()
        if s.startswith("{") and s.endswith("}"):
            try:
                decoded2 = json.loads(s)
            except json.JSONDecodeError:
                decoded2 = None
            if isinstance(decoded2, dict):
                return decoded2, None
        if tool_name == "terminal":
            return {"command": decoded}, None

    return None, f"Arguments must be a JSON object, got {type(decoded).__name__}"


class ToolExecutor:
    """Executes tool calls against a ToolRegistry with a per-call timeout."""

    def __init__(
        self,
        registry,
        timeout: float = DEFAULT_TOOL_TIMEOUT,
        max_result_chars: int = MAX_TOOL_RESULT_CHARS,
        permission: Optional[PermissionGate] = None,
    ):
        self.registry = registry
        self.timeout = timeout
        self.max_result_chars = max_result_chars
        self.permission = permission
        self._inflight: Dict[str, asyncio.Task] = {}
        self._cancelled: Dict[str, str] = {}

    @property
    def inflight(self) -> List[str]:
        return list(self._inflight)

    def cancel(self, call_id: str, reason: str = "cancelled") -> bool:
        """Cancel one in-flight call. Unknown or finished calls are a no-op."""
        task = self._inflight.get(call_id)
        if task is None or task.done():
            return False
        self._cancelled.setdefault(call_id, reason)
        task.cancel()
        return True

    def cancel_all(self, reason: str = "cancelled") -> int:
        count = 0
        for call_id in list(self._inflight):
            if self.cancel(call_id, reason):
                count += 1
        if count:
            logger.info("Cancelled %d in-flight tool call(s): %s", count, reason)
        return count

    def _finish(self, call: ToolCall, status: ToolCallStatus, started: float, **fields) -> ToolResult:
        call.transition(status)
        output = fields.pop("output", "") or ""
        return ToolResult(
            call_id=call.id,
            status=status,
            output=truncate_output(output, self.max_result_chars),
            duration=time.monotonic() - started,
            **fields,
        )

    async def execute(self, call: ToolCall, token: CancellationToken) -> ToolResult:
        started = time.monotonic()

        if token.cancelled:
            return self._finish(
                call, ToolCallStatus.CANCELLED, started,
                error="Tool execution cancelled", reason=token.reason,
            )

        spec = self.registry.get(call.name)
        if spec is None or spec.handler is None:
            logger.warning("Model requested unknown tool %s", call.name)
            return self._finish(
                call, ToolCallStatus.FAILED, started,
                error=f"Unknown tool: {call.name}", reason="unknown_tool",
            )

        args, arg_error = normalize_tool_args(call.name, call.arguments)
        if arg_error is None:
            missing = [k for k in spec.required if k not in args]
            if missing:
                arg_error = f"Missing required argument(s): {', '.join(missing)}"
        if arg_error is not None:
            return self._finish(
                call, ToolCallStatus.FAILED, started,
                error=arg_error, reason="invalid_arguments",
            )

        if self.permission is not None:
            try:
                allowed = await token.race(self.permission.check(call, spec))
            except CancellationRequested as e:
                return self._finish(
                    call, ToolCallStatus.CANCELLED, started,
                    error="Tool execution cancelled", reason=e.reason,
                )
            if not allowed:
                return self._finish(
                    call, ToolCallStatus.FAILED, started,
                    error=f"Permission denied: the user refused to run {call.name}",
                    reason="denied",
                )

        call.transition(ToolCallStatus.RUNNING)
        task = asyncio.ensure_future(asyncio.wait_for(spec.handler(args, token), self.timeout))
        self._inflight[call.id] = task
        try:
            output = await token.race(task)
        except CancellationRequested as e:
            return self._finish(
                call, ToolCallStatus.CANCELLED, started,
                error="Tool execution cancelled", reason=e.reason,
            )
        except asyncio.CancelledError:
            if call.id not in self._cancelled:
                raise
            return self._finish(
                call, ToolCallStatus.CANCELLED, started,
                error="Tool execution cancelled", reason=self._cancelled[call.id],
            )
        except asyncio.TimeoutError:
            err = ToolTimeout(f"{call.name} timed out after {self.timeout:g}s")
            logger.warning("Tool %s (%s) timed out after %.1fs", call.name, call.id, self.timeout)
            return self._finish(
                call, ToolCallStatus.FAILED, started, error=err.message, reason="timeout",
            )
        except ToolExecutionFailed as e:
            return self._finish(
                call, ToolCallStatus.FAILED, started,
                error=e.message, output=e.output, metadata=e.metadata,
            )
        except Exception as e:
            logger.warning("Tool %s raised %s: %s", call.name, type(e).__name__, e, exc_info=True)
            return self._finish(
                call, ToolCallStatus.FAILED, started,
                error=f"{type(e).__name__}: {e}", reason="exception",
            )
        finally:
            self._inflight.pop(call.id, None)
            self._cancelled.pop(call.id, None)

        if not isinstance(output, str):
            output = json.dumps(output, ensure_ascii=False, default=str)
        result = self._finish(call, ToolCallStatus.SUCCEEDED, started, output=output)
        logger.debug("Tool %s completed in %.2fs (%d chars)", call.name, result.duration, len(result.output))
        return result

    async def execute_all(
        self,
        calls: Sequence[ToolCall],
        token: CancellationToken,
        on_start: Optional[Callable[[ToolCall], None]] = None,
        on_finish: Optional[Callable[[ToolCall, ToolResult], None]] = None,
    ) -> List[ToolResult]:
        """Run *calls* concurrently; results come back in issue order."""

        async def _run(call: ToolCall) -> ToolResult:
            if on_start is not None:
                on_start(call)
            result = await self.execute(call, token)
            if on_finish is not None:
                on_finish(call, result)
            return result

        return list(await asyncio.gather(*(_run(c) for c in calls)))
