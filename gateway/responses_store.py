"""In-memory store of Responses API records.

Records outlive the sessions that produced them (an ephemeral response can
still be fetched by id after its session was torn down) but not the
process, and expire after ``ttl`` seconds. The store is bounded; the
oldest records go first.
"""

import logging
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from agent.models import new_id

logger = logging.getLogger(__name__)

TERMINAL_RESPONSE_STATUSES = frozenset({"completed", "failed", "cancelled", "incomplete"})


@dataclass
class ResponseRecord:
    model: str
    id: str = field(default_factory=lambda: new_id("resp_"))
    session_id: Optional[str] = None
    store: bool = False
    background: bool = False
    status: str = "queued"
    created_at: float = field(default_factory=time.time)
    output_text: str = ""
    error: Optional[Dict[str, Any]] = None
    previous_response_id: Optional[str] = None
    instructions: Optional[str] = None
    message_id: str = field(default_factory=lambda: new_id("msg_"))
    usage: Optional[Dict[str, int]] = None

    @property
    def done(self) -> bool:
        return self.status in TERMINAL_RESPONSE_STATUSES

    def output_items(self) -> List[Dict[str, Any]]:
        if not self.output_text and self.status != "completed":
            return []
        return [{
            "type": "message",
            "id": self.message_id,
            "status": "completed" if self.status == "completed" else "incomplete",
            "role": "assistant",
            "content": [{"type": "output_text", "text": self.output_text, "annotations": []}],
        }]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "object": "response",
            "created_at": int(self.created_at),
            "status": self.status,
            "model": self.model,
            "output": self.output_items(),
            "output_text": self.output_text,
            "error": self.error,
            "store": self.store,
            "background": self.background,
            "previous_response_id": self.previous_response_id,
            "instructions": self.instructions,
            "metadata": {"session_id": self.session_id} if self.session_id else {},
            "usage": self.usage,
        }


class ResponseStore:
    def __init__(self, ttl: float = 3600.0, max_entries: int = 1000):
        self.ttl = ttl
        self.max_entries = max(1, max_entries)
        self._lock = threading.Lock()
        self._records: "OrderedDict[str, ResponseRecord]" = OrderedDict()

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def put(self, record: ResponseRecord) -> ResponseRecord:
        with self._lock:
            self._purge_locked(time.time())
            self._records[record.id] = record
            self._records.move_to_end(record.id)
            while len(self._records) > self.max_entries:
                old_id, _ = self._records.popitem(last=False)
                logger.debug("Response store full, dropped %s", old_id)
        return record

    def get(self, response_id: str) -> Optional[ResponseRecord]:
        with self._lock:
            record = self._records.get(response_id)
            if record is None:
                return None
            if self._expired(record, time.time()):
                del self._records[response_id]
                return None
            return record

    def purge_expired(self, now: Optional[float] = None) -> int:
        with self._lock:
            return self._purge_locked(time.time() if now is None else now)

    def _expired(self, record: ResponseRecord, now: float) -> bool:
        # in-flight records never expire
        return record.done and self.ttl > 0 and now - record.created_at > self.ttl

    def _purge_locked(self, now: float) -> int:
        expired = [rid for rid, rec in self._records.items() if self._expired(rec, now)]
        for rid in expired:
            del self._records[rid]
        return len(expired)
