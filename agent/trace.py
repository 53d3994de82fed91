"""Conversation traces for chaining headless runs.

A trace is the message log of a conversation in OpenAI chat format::

    {
        "version": 1,
        "model": "gpt-4.1-mini",
        "status": "idle",
        "timestamp": "2026-01-01T00:00:00",
        "messages": [
            {"role": "user", "content": "..."},
            {"role": "assistant", "content": "", "tool_calls": [...]},
            {"role": "tool", "content": "...", "tool_call_id": "..."}
        ]
    }

``load_trace`` also accepts a bare JSON list of messages, so the output of
another OpenAI-compatible tool can be piped in directly.
"""

import json
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from agent.models import Message, Role

logger = logging.getLogger(__name__)

TRACE_VERSION = 1

_ROLES = {r.value for r in Role}


def dump_trace(conversation) -> str:
    entry = {
        "version": TRACE_VERSION,
        "model": conversation.config.model,
        "status": conversation.status.value,
        "timestamp": datetime.now().isoformat(),
        "messages": conversation.to_trace(),
    }
    return json.dumps(entry, ensure_ascii=False)


def save_trace(conversation, filename: str) -> None:
    with open(filename, "w", encoding="utf-8") as f:
        f.write(dump_trace(conversation))
        f.write("\n")
    logger.info("Trace saved to %s", filename)


def _looks_like_message(item: Any) -> bool:
    return isinstance(item, dict) and item.get("role") in _ROLES | {"system"}


def load_trace(text: str) -> Optional[List[Message]]:
    """Parse a trace; returns None when *text* is not one (e.g. a plain prompt)."""
    stripped = text.strip() if text else ""
    if not stripped or stripped[0] not in "[{":
        return None
    try:
        data = json.loads(stripped)
    except json.JSONDecodeError:
        return None

    if isinstance(data, dict):
        raw: Any = data.get("messages")
        if data.get("version") not in (None, TRACE_VERSION):
            logger.warning("Trace version %s is newer than supported (%d)",
                           data.get("version"), TRACE_VERSION)
    else:
        raw = data
    if not isinstance(raw, list) or not all(_looks_like_message(m) for m in raw):
        return None

    messages: List[Message] = []
    for item in raw:
        if item.get("role") == "system":
            continue
        messages.append(Message.from_openai(item, seq=len(messages) + 1))
    return messages


def trace_summary(messages: List[Dict[str, Any]]) -> Dict[str, int]:
    counts: Dict[str, int] = {}
    for msg in messages:
        counts[msg.get("role", "?")] = counts.get(msg.get("role", "?"), 0) + 1
    return counts
