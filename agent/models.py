"""Core data model: messages, tool calls, stream events and agent config.

Messages are stored in OpenAI chat format on the wire (``to_openai``) so the
same list can be handed to the provider, dumped as a trace, or returned by
the HTTP adapters without another conversion layer.
"""

import json
import time
import uuid
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from agent.errors import InvalidRequest


class SessionMode(str, Enum):
    EPHEMERAL = "ephemeral"
    PERSISTENT = "persistent"


class ConversationStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    AWAITING_MODEL = "awaiting-model"
    AWAITING_TOOL = "awaiting-tool"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_STATUSES


_TERMINAL_STATUSES = frozenset({
    ConversationStatus.COMPLETED,
    ConversationStatus.CANCELLED,
    ConversationStatus.FAILED,
})


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


class ToolCallStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


# Forward-only lifecycle. A call rejected before it starts (unknown tool,
# cancelled while queued) may jump straight from pending to a final state.
_TOOL_TRANSITIONS = {
    ToolCallStatus.PENDING: {
        ToolCallStatus.RUNNING, ToolCallStatus.FAILED, ToolCallStatus.CANCELLED,
    },
    ToolCallStatus.RUNNING: {
        ToolCallStatus.SUCCEEDED, ToolCallStatus.FAILED, ToolCallStatus.CANCELLED,
    },
    ToolCallStatus.SUCCEEDED: set(),
    ToolCallStatus.FAILED: set(),
    ToolCallStatus.CANCELLED: set(),
}


class EventType(str, Enum):
    TEXT_DELTA = "text-delta"
    TOOL_CALL_STARTED = "tool-call-started"
    TOOL_CALL_FINISHED = "tool-call-finished"
    TURN_COMPLETED = "turn-completed"
    ERROR = "error"
    CONVERSATION_ENDED = "conversation-ended"
    # Delivered to one subscriber only, never stored in the bus log.
    SUBSCRIBER_DROPPED = "subscriber-dropped"


def new_id(prefix: str = "") -> str:
    return f"{prefix}{uuid.uuid4().hex}" if prefix else str(uuid.uuid4())


@dataclass
class ToolCall:
    """One tool invocation requested by an assistant message."""

    id: str
    name: str
    arguments: Any = field(default_factory=dict)
    message_seq: Optional[int] = None
    status: ToolCallStatus = ToolCallStatus.PENDING

    def transition(self, new_status: ToolCallStatus) -> None:
        if new_status not in _TOOL_TRANSITIONS[self.status]:
            raise ValueError(
                f"Illegal tool call transition {self.status.value} -> {new_status.value} "
                f"for {self.id}"
            )
        self.status = new_status

    @property
    def arguments_json(self) -> str:
        if isinstance(self.arguments, str):
            return self.arguments
        return json.dumps(self.arguments, ensure_ascii=False)

    def to_openai(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": self.arguments_json},
        }

    @classmethod
    def from_openai(cls, data: Dict[str, Any]) -> "ToolCall":
        fn = data.get("function") or {}
        return cls(
            id=data.get("id") or new_id("call_"),
            name=fn.get("name", ""),
            arguments=fn.get("arguments", "{}"),
        )


@dataclass
class ToolResult:
    """Outcome of exactly one ToolCall."""

    call_id: str
    status: ToolCallStatus
    output: str = ""
    error: Optional[str] = None
    duration: float = 0.0
    reason: Optional[str] = None  # "timeout", "cancelled", "unknown_tool", ...
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.status == ToolCallStatus.SUCCEEDED

    def content_for_model(self) -> str:
        """Render the text appended as the ``tool`` message."""
        if self.ok:
            return self.output
        payload: Dict[str, Any] = {"error": self.error or self.status.value}
        if self.reason:
            payload["reason"] = self.reason
        if self.output:
            payload["output"] = self.output
        if "exit_code" in self.metadata:
            payload["exit_code"] = self.metadata["exit_code"]
        return json.dumps(payload, ensure_ascii=False)

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "call_id": self.call_id,
            "status": self.status.value,
            "output": self.output,
            "error": self.error,
            "duration": round(self.duration, 3),
        }
        if self.reason:
            data["reason"] = self.reason
        if self.metadata:
            data["metadata"] = dict(self.metadata)
        return data


@dataclass
class Message:
    seq: int
    role: Role
    content: str = ""
    tool_calls: Tuple[ToolCall, ...] = ()
    tool_call_id: Optional[str] = None
    name: Optional[str] = None

    def to_openai(self) -> Dict[str, Any]:
        msg: Dict[str, Any] = {"role": self.role.value, "content": self.content}
        if self.tool_calls:
            msg["tool_calls"] = [tc.to_openai() for tc in self.tool_calls]
        if self.tool_call_id:
            msg["tool_call_id"] = self.tool_call_id
        if self.name:
            msg["name"] = self.name
        return msg

    @classmethod
    def from_openai(cls, data: Dict[str, Any], seq: int = 0) -> "Message":
        raw_role = data.get("role", "user")
        try:
            role = Role(raw_role)
        except ValueError:
            raise InvalidRequest(
                f"Unsupported message role {raw_role!r}; expected one of: "
                + ", ".join(r.value for r in Role)
            ) from None
        content = data.get("content")
        if isinstance(content, list):
            # content parts: keep the text ones
            content = "\n".join(
                part.get("text", "") for part in content
                if isinstance(part, dict) and part.get("type") in ("text", "input_text", "output_text")
            )
        tool_calls = tuple(ToolCall.from_openai(tc) for tc in data.get("tool_calls") or ())
        return cls(
            seq=seq,
            role=role,
            content=content or "",
            tool_calls=tool_calls,
            tool_call_id=data.get("tool_call_id"),
            name=data.get("name"),
        )


@dataclass(frozen=True)
class StreamEvent:
    seq: int
    type: EventType
    conversation_id: str
    data: Dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)

    @property
    def is_terminal(self) -> bool:
        return self.type == EventType.CONVERSATION_ENDED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "seq": self.seq,
            "type": self.type.value,
            "conversation_id": self.conversation_id,
            "data": self.data,
            "timestamp": self.timestamp,
        }


@dataclass(frozen=True)
class McpServerConfig:
    name: str
    url: str
    headers: Tuple[Tuple[str, str], ...] = ()
    token: Optional[str] = None
    token_env: Optional[str] = None
    timeout: float = 60.0


@dataclass(frozen=True)
class AgentConfig:
    """Per-conversation configuration, resolved once and never mutated.

    A different configuration means a new Conversation: use ``with_changes``
    to derive one.
    """

    model: str
    provider: str = "openai"
    base_url: Optional[str] = None
    api_key: Optional[str] = None
    tools: Tuple[str, ...] = ()
    system_context: Optional[str] = None
    max_turns: int = 30
    tool_timeout: float = 120.0
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    max_retries: int = 3
    retry_base_delay: float = 1.0
    retry_max_delay: float = 30.0
    mcp_servers: Tuple[McpServerConfig, ...] = ()

    def with_changes(self, **changes) -> "AgentConfig":
        if "tools" in changes and changes["tools"] is not None:
            changes["tools"] = tuple(changes["tools"])
        if "mcp_servers" in changes and changes["mcp_servers"] is not None:
            changes["mcp_servers"] = tuple(changes["mcp_servers"])
        return replace(self, **changes)

    def describe(self) -> Dict[str, Any]:
        """Config summary safe to log or return over HTTP (no secrets)."""
        return {
            "model": self.model,
            "provider": self.provider,
            "tools": list(self.tools),
            "max_turns": self.max_turns,
            "tool_timeout": self.tool_timeout,
            "mcp_servers": [s.name for s in self.mcp_servers],
        }


def messages_to_openai(messages: List[Message]) -> List[Dict[str, Any]]:
    return [m.to_openai() for m in messages]
