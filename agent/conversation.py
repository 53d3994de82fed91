"""Conversation state machine.

One Conversation owns an ordered message log, a cancellation token and an
event bus. A user turn drives it through::

    idle -> running -> awaiting-model -> (awaiting-tool -> awaiting-model)* -> idle

and from any non-terminal state it may end as ``completed`` (``close()``),
``cancelled`` or ``failed``. Terminal states are reached at most once and
``conversation-ended`` is always the last event published.

Rules enforced here:
  - the user message and every tool result are appended before the next
    model call sees the log; results are appended in issue order
  - ``max_turns`` bounds the model calls of one user turn; the call after
    the last allowed one fails the conversation with TurnBudgetExceeded
    without reaching the provider
  - retryable provider errors are retried with capped exponential backoff,
    but only while nothing from that model call has been published
  - cancellation is checked before the budget at every checkpoint
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

from agent.cancellation import CancellationToken
from agent.errors import (
    AgentError,
    CancellationRequested,
    InvalidRequest,
    ProviderRateLimited,
    TurnBudgetExceeded,
)
from agent.event_bus import EventBus
from agent.models import (
    AgentConfig,
    ConversationStatus,
    EventType,
    Message,
    Role,
    ToolCall,
    ToolResult,
    messages_to_openai,
    new_id,
)

logger = logging.getLogger(__name__)


@dataclass
class TurnOutcome:
    """What one ``submit()`` call ended with."""

    status: ConversationStatus
    text: str = ""
    error: Optional[AgentError] = None
    round_trips: int = 0
    tool_results: List[ToolResult] = field(default_factory=list)
    usage: Dict[str, int] = field(default_factory=dict)  # tokens spent by this turn

    @property
    def ok(self) -> bool:
        return self.status == ConversationStatus.IDLE

    @property
    def cancelled(self) -> bool:
        return self.status == ConversationStatus.CANCELLED


class Conversation:
    def __init__(
        self,
        config: AgentConfig,
        provider,
        executor,
        *,
        conversation_id: Optional[str] = None,
        bus: Optional[EventBus] = None,
        token: Optional[CancellationToken] = None,
        history: Optional[Iterable[Union[Message, Dict[str, Any]]]] = None,
    ):
        self.id = conversation_id or new_id("conv_")
        self.config = config
        self.provider = provider
        self.executor = executor
        self.bus = bus or EventBus(self.id)
        self.token = token or CancellationToken()
        self.created_at = time.time()

        self._messages: List[Message] = []
        self._next_seq = 1
        self._status = ConversationStatus.IDLE
        self._turn_count = 0
        self._round_trips = 0
        self._final_text = ""
        self._usage = {"input_tokens": 0, "output_tokens": 0}
        self._turn_usage = dict(self._usage)
        self._error: Optional[AgentError] = None
        self._end_reason: Optional[str] = None

        if history:
            self.seed(history)

    # ------------------------------------------------------------------
    # Read-only views
    # ------------------------------------------------------------------

    @property
    def status(self) -> ConversationStatus:
        return self._status

    @property
    def messages(self) -> Tuple[Message, ...]:
        return tuple(self._messages)

    @property
    def turn_count(self) -> int:
        return self._turn_count

    @property
    def round_trips(self) -> int:
        return self._round_trips

    @property
    def usage(self) -> Dict[str, int]:
        """Token counts reported by the backend so far."""
        data = dict(self._usage)
        data["total_tokens"] = data["input_tokens"] + data["output_tokens"]
        return data

    @property
    def final_text(self) -> str:
        return self._final_text

    @property
    def error(self) -> Optional[AgentError]:
        return self._error

    @property
    def is_terminal(self) -> bool:
        return self._status.is_terminal

    @property
    def is_busy(self) -> bool:
        return self._status in (
            ConversationStatus.RUNNING,
            ConversationStatus.AWAITING_MODEL,
            ConversationStatus.AWAITING_TOOL,
        )

    # ------------------------------------------------------------------
    # Log management
    # ------------------------------------------------------------------

    def _append(self, role: Role, content: str = "", **kwargs) -> Message:
        msg = Message(seq=self._next_seq, role=role, content=content, **kwargs)
        self._next_seq += 1
        self._messages.append(msg)
        return msg

    def seed(self, messages: Iterable[Union[Message, Dict[str, Any]]]) -> int:
        """Load prior context (a trace or API history) into an idle conversation.

        Sequence numbers are reassigned; system messages are skipped since
        the system context comes from the config.
        """
        if self._status != ConversationStatus.IDLE:
            raise InvalidRequest(f"Cannot seed conversation {self.id} while {self._status.value}")
        count = 0
        for item in messages:
            if isinstance(item, dict):
                if item.get("role") in ("system", "developer"):
                    continue
                item = Message.from_openai(item)
            self._append(
                item.role,
                item.content,
                tool_calls=tuple(
                    ToolCall(id=tc.id, name=tc.name, arguments=tc.arguments, message_seq=self._next_seq)
                    for tc in item.tool_calls
                ),
                tool_call_id=item.tool_call_id,
                name=item.name,
            )
            count += 1
        return count

    def _provider_messages(self) -> List[Dict[str, Any]]:
        messages = messages_to_openai(self._messages)
        if self.config.system_context:
            messages.insert(0, {"role": "system", "content": self.config.system_context})
        return messages

    def _tool_schemas(self) -> List[Dict[str, Any]]:
        registry = self.executor.registry
        if not self.config.tools:
            return registry.schemas()
        # remote tools come from servers attached to this config; always offered
        names = list(self.config.tools) + [
            n for n in registry.names(kind="mcp") if n not in self.config.tools
        ]
        return registry.schemas(names)

    # ------------------------------------------------------------------
    # Turn loop
    # ------------------------------------------------------------------

    async def submit(self, user_text: str) -> TurnOutcome:
        """Run one user turn to completion, cancellation or failure."""
        if self._status != ConversationStatus.IDLE:
            raise InvalidRequest(
                f"Conversation {self.id} is {self._status.value}; cannot accept a new turn"
            )
        self._status = ConversationStatus.RUNNING
        self._append(Role.USER, user_text)
        self._round_trips = 0
        tool_results: List[ToolResult] = []
        self._turn_usage = dict(self._usage)
        logger.info("[%s] Turn %d started", self.id, self._turn_count + 1)

        try:
            while True:
                self.token.raise_if_cancelled()
                if self._round_trips >= self.config.max_turns:
                    raise TurnBudgetExceeded(self.config.max_turns)
                self._round_trips += 1
                self._status = ConversationStatus.AWAITING_MODEL

                text, calls = await self._call_model()
                assistant = self._append(Role.ASSISTANT, text, tool_calls=tuple(calls))
                for call in calls:
                    call.message_seq = assistant.seq

                if not calls:
                    return self._complete_turn(text, tool_results)

                self.token.raise_if_cancelled()
                self._status = ConversationStatus.AWAITING_TOOL
                results = await self.executor.execute_all(
                    calls, self.token,
                    on_start=self._on_tool_start,
                    on_finish=self._on_tool_finish,
                )
                for call, result in zip(calls, results):
                    self._append(
                        Role.TOOL,
                        result.content_for_model(),
                        tool_call_id=call.id,
                        name=call.name,
                    )
                tool_results.extend(results)

        except CancellationRequested as e:
            self.executor.cancel_all(e.reason)
            self._end(ConversationStatus.CANCELLED, reason=e.reason)
            return TurnOutcome(ConversationStatus.CANCELLED, round_trips=self._round_trips,
                               tool_results=tool_results)
        except AgentError as e:
            logger.warning("[%s] Turn failed: %s: %s", self.id, e.kind, e.message)
            self._end(ConversationStatus.FAILED, error=e)
            return TurnOutcome(ConversationStatus.FAILED, error=e, round_trips=self._round_trips,
                               tool_results=tool_results)
        except asyncio.CancelledError:
            # the task driving this turn was cancelled (server shutdown)
            self.token.cancel("shutdown")
            self.executor.cancel_all("shutdown")
            self._end(ConversationStatus.CANCELLED, reason="shutdown")
            raise
        except Exception as e:
            logger.exception("[%s] Unexpected error during turn", self.id)
            err = AgentError(f"{type(e).__name__}: {e}")
            self._end(ConversationStatus.FAILED, error=err)
            return TurnOutcome(ConversationStatus.FAILED, error=err, round_trips=self._round_trips,
                               tool_results=tool_results)

    def _complete_turn(self, text: str, tool_results: List[ToolResult]) -> TurnOutcome:
        self._final_text = text
        self._turn_count += 1
        self._status = ConversationStatus.IDLE
        self.bus.publish(EventType.TURN_COMPLETED, {
            "text": text,
            "turn": self._turn_count,
            "round_trips": self._round_trips,
        })
        logger.info("[%s] Turn %d completed after %d model call(s)",
                    self.id, self._turn_count, self._round_trips)
        spent = {k: v - self._turn_usage[k] for k, v in self._usage.items()}
        spent["total_tokens"] = spent["input_tokens"] + spent["output_tokens"]
        return TurnOutcome(ConversationStatus.IDLE, text=text, round_trips=self._round_trips,
                           tool_results=tool_results, usage=spent)

    async def _call_model(self) -> Tuple[str, List[ToolCall]]:
        """One model round-trip, retried while nothing has been published."""
        messages = self._provider_messages()
        tools = self._tool_schemas()
        attempt = 0
        while True:
            published = False
            parts: List[str] = []
            calls: List[ToolCall] = []
            try:
                async for event in self.provider.stream(messages, tools, self.config, self.token):
                    if event.kind == "text" and event.text:
                        parts.append(event.text)
                        self.bus.publish(EventType.TEXT_DELTA, {
                            "text": event.text,
                            "round_trip": self._round_trips,
                        })
                        published = True
                    elif event.kind == "tool_call" and event.tool_call is not None:
                        calls.append(event.tool_call)
                    elif event.kind == "usage":
                        self._usage["input_tokens"] += event.input_tokens
                        self._usage["output_tokens"] += event.output_tokens
                    elif event.kind == "finish":
                        logger.debug("[%s] Model call finished: %s", self.id, event.finish_reason)
                return "".join(parts), calls
            except CancellationRequested:
                raise
            except AgentError as e:
                if not e.retryable or published or attempt >= self.config.max_retries:
                    raise
                delay = min(self.config.retry_base_delay * (2 ** attempt), self.config.retry_max_delay)
                if isinstance(e, ProviderRateLimited) and e.retry_after:
                    delay = max(delay, e.retry_after)
                attempt += 1
                logger.warning(
                    "[%s] %s (attempt %d/%d), retrying in %.1fs: %s",
                    self.id, e.kind, attempt, self.config.max_retries, delay, e.message,
                )
                await self.token.sleep(delay)

    def _on_tool_start(self, call: ToolCall) -> None:
        logger.info("[%s] Tool %s (%s) started", self.id, call.name, call.id)
        self.bus.publish(EventType.TOOL_CALL_STARTED, {
            "call_id": call.id,
            "name": call.name,
            "arguments": call.arguments_json,
        })

    def _on_tool_finish(self, call: ToolCall, result: ToolResult) -> None:
        logger.info("[%s] Tool %s (%s) %s in %.2fs",
                    self.id, call.name, call.id, result.status.value, result.duration)
        data = result.to_dict()
        data["name"] = call.name
        self.bus.publish(EventType.TOOL_CALL_FINISHED, data)

    # ------------------------------------------------------------------
    # Termination
    # ------------------------------------------------------------------

    def _end(
        self,
        status: ConversationStatus,
        reason: Optional[str] = None,
        error: Optional[AgentError] = None,
    ) -> None:
        if self._status.is_terminal:
            return
        self._status = status
        self._error = error
        self._end_reason = reason
        if error is not None:
            self.bus.publish(EventType.ERROR, error.to_dict())
        data: Dict[str, Any] = {"status": status.value}
        if reason:
            data["reason"] = reason
        if error is not None:
            data["error"] = error.to_dict()
        self.bus.publish(EventType.CONVERSATION_ENDED, data)
        logger.info("[%s] Conversation ended: %s%s", self.id, status.value,
                    f" ({reason})" if reason else "")

    def cancel(self, reason: str = "cancelled") -> bool:
        """Request cancellation. No-op (False) on a terminal conversation."""
        if self._status.is_terminal:
            return False
        fired = self.token.cancel(reason)
        if self._status == ConversationStatus.IDLE:
            self._end(ConversationStatus.CANCELLED, reason=self.token.reason)
            return True
        self.executor.cancel_all(reason)
        return fired

    def close(self) -> bool:
        """End an idle conversation as completed. Running or terminal: no-op."""
        if self._status != ConversationStatus.IDLE:
            if self.is_busy:
                logger.debug("[%s] close() ignored while %s", self.id, self._status.value)
            return False
        self._end(ConversationStatus.COMPLETED)
        return True

    # ------------------------------------------------------------------
    # Export
    # ------------------------------------------------------------------

    def to_trace(self) -> List[Dict[str, Any]]:
        return messages_to_openai(self._messages)

    def snapshot(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "id": self.id,
            "status": self._status.value,
            "model": self.config.model,
            "messages": len(self._messages),
            "turns": self._turn_count,
            "round_trips": self._round_trips,
            "usage": self.usage,
            "last_seq": self.bus.last_seq,
            "created_at": self.created_at,
        }
        if self._end_reason:
            data["reason"] = self._end_reason
        if self._error is not None:
            data["error"] = self._error.to_dict()
        return data
