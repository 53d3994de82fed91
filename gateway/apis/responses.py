"""OpenAI Responses adapter.

  POST /v1/responses               create (optionally stream / background)
  GET  /v1/responses/{id}          fetch a response record
  POST /v1/responses/{id}/cancel   cancel an in-flight response

``store=true`` (the default) runs the turn on a persistent session that a
later request can continue with ``previous_response_id``; ``store=false``
uses an ephemeral session. When the server runs in ephemeral mode every
response is ephemeral and cannot be continued.
"""

import asyncio
import logging
import re
from contextlib import AsyncExitStack
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple, Union

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, ConfigDict

from agent.errors import InvalidRequest
from agent.models import ConversationStatus, EventType, McpServerConfig, SessionMode
from gateway.apis.common import get_manager, get_store, request_config
from gateway.errors import error_body
from gateway.responses_store import ResponseRecord
from gateway.streaming import iter_turn, sse_event

logger = logging.getLogger(__name__)

router = APIRouter()


class ResponseCreateRequest(BaseModel):
    model_config = ConfigDict(extra="allow")

    model: str = ""
    input: Union[str, List[Dict[str, Any]]]
    instructions: Optional[str] = None
    stream: bool = False
    store: bool = True
    background: bool = False
    previous_response_id: Optional[str] = None
    temperature: Optional[float] = None
    max_output_tokens: Optional[int] = None
    tools: Optional[List[Dict[str, Any]]] = None


def _item_text(content) -> str:
    if isinstance(content, list):
        return "\n".join(
            p.get("text", "") for p in content
            if isinstance(p, dict) and p.get("type") in ("input_text", "output_text", "text")
        )
    return content or ""


def split_input(value) -> Tuple[List[Dict[str, Any]], str]:
    """Return ``(history, prompt)`` from a Responses ``input``."""
    if isinstance(value, str):
        if not value.strip():
            raise InvalidRequest("input must not be empty")
        return [], value
    messages = []
    for item in value:
        item_type = item.get("type", "message")
        if item_type != "message" or item.get("role") not in ("user", "assistant"):
            logger.debug("Skipping unsupported input item of type %s", item_type)
            continue
        messages.append({"role": item["role"], "content": _item_text(item.get("content"))})
    if not messages or messages[-1]["role"] != "user":
        raise InvalidRequest("input must end with a user message")
    return messages[:-1], messages[-1]["content"]


def mcp_tools_from(tools: Optional[List[Dict[str, Any]]]) -> List[McpServerConfig]:
    servers = []
    for tool in tools or []:
        if tool.get("type") != "mcp":
            logger.debug("Ignoring tool of type %s", tool.get("type"))
            continue
        url = tool.get("server_url")
        if not url:
            raise InvalidRequest("mcp tools need a server_url")
        label = tool.get("server_label") or re.sub(r"\W+", "_", url.split("//")[-1]).strip("_")
        servers.append(McpServerConfig(
            name=label,
            url=url,
            headers=tuple((tool.get("headers") or {}).items()),
        ))
    return servers


# ---------------------------------------------------------------------------
# Turn -> Responses events
# ---------------------------------------------------------------------------

def _finalize(record: ResponseRecord, outcome) -> Tuple[str, Dict[str, Any]]:
    if outcome.status == ConversationStatus.FAILED:
        record.status = "failed"
        err = outcome.error
        record.error = {"code": err.kind, "message": err.message} if err else {"code": "error", "message": "failed"}
        return "response.failed", record.to_dict()
    if outcome.status == ConversationStatus.CANCELLED:
        record.status = "cancelled"
        return "response.cancelled", record.to_dict()
    record.status = "completed"
    record.output_text = outcome.text
    if outcome.usage:
        record.usage = dict(outcome.usage)
    return "response.completed", record.to_dict()


async def response_events(handle, record: ResponseRecord) -> AsyncIterator[Tuple[str, Dict[str, Any]]]:
    """Translate one turn into Responses stream events, updating *record*."""
    record.status = "in_progress"
    yield "response.created", {"response": record.to_dict()}
    yield "response.in_progress", {"response": record.to_dict()}
    yield "response.output_item.added", {
        "output_index": 0,
        "item": {"type": "message", "id": record.message_id, "status": "in_progress",
                 "role": "assistant", "content": []},
    }
    streamed: List[str] = []
    async for event in iter_turn(handle):
        if event.type == EventType.TEXT_DELTA:
            delta = event.data.get("text", "")
            streamed.append(delta)
            record.output_text = "".join(streamed)
            yield "response.output_text.delta", {
                "item_id": record.message_id, "output_index": 0, "content_index": 0, "delta": delta,
            }
        elif event.type == EventType.SUBSCRIBER_DROPPED:
            logger.warning("[%s] Stream consumer too slow; waiting for the turn to finish", record.id)

    outcome = await handle.result()
    final_type, final = _finalize(record, outcome)
    if record.status == "completed":
        yield "response.output_text.done", {
            "item_id": record.message_id, "output_index": 0, "content_index": 0,
            "text": record.output_text,
        }
    yield "response.output_item.done", {"output_index": 0, "item": (record.output_items() or [None])[0]}
    yield final_type, {"response": final}


def _frame(event_type: str, payload: Dict[str, Any], seq: int) -> str:
    data = {"type": event_type, "sequence_number": seq}
    data.update(payload)
    return sse_event(data, event=event_type)


# ---------------------------------------------------------------------------
# Handlers
# ---------------------------------------------------------------------------

@router.post("/v1/responses")
async def create_response(body: ResponseCreateRequest, request: Request):
    manager = get_manager(request)
    store = get_store(request)
    history, prompt = split_input(body.input)
    config = request_config(
        request, body.model,
        temperature=body.temperature, max_tokens=body.max_output_tokens,
        system=body.instructions, mcp_servers=mcp_tools_from(body.tools),
    )

    stack = AsyncExitStack()
    session = None
    if body.previous_response_id:
        previous = store.get(body.previous_response_id)
        if previous is None:
            raise InvalidRequest(f"Unknown previous_response_id: {body.previous_response_id}")
        if not previous.session_id:
            raise InvalidRequest(
                f"Response {previous.id} was not stored and cannot be continued"
            )
        session = manager.get(previous.session_id)
    elif body.store and manager.persistent_allowed:
        session = manager.get(await manager.create(SessionMode.PERSISTENT, config))
    else:
        session = await stack.enter_async_context(manager.ephemeral(config))

    persistent = session.mode == SessionMode.PERSISTENT
    record = store.put(ResponseRecord(
        model=session.conversation.config.model,
        session_id=session.id if persistent else None,
        store=persistent,
        background=body.background,
        previous_response_id=body.previous_response_id,
        instructions=body.instructions,
    ))
    try:
        if history and session.conversation.turn_count == 0 and not session.conversation.messages:
            session.conversation.seed(history)
        handle = await manager.start_turn(session, prompt)
    except BaseException:
        await stack.aclose()
        record.status = "failed"
        raise
    manager.controller.register(session.conversation.token, record.id)
    logger.info("[%s] [%s] POST /v1/responses model=%s stream=%s background=%s",
                record.id, session.id, record.model, body.stream, body.background)

    async def drive():
        try:
            async for _ in response_events(handle, record):
                pass
        finally:
            handle.close()
            manager.controller.release(record.id)
            await stack.aclose()

    if body.background:
        record.status = "queued"
        manager.spawn(drive())
        return record.to_dict()

    if not body.stream:
        await drive()
        return record.to_dict()

    async def generate():
        seq = 0
        try:
            async for event_type, payload in response_events(handle, record):
                yield _frame(event_type, payload, seq)
                seq += 1
        finally:
            handle.close()
            manager.controller.release(record.id)
            await stack.aclose()

    return StreamingResponse(generate(), media_type="text/event-stream")


@router.get("/v1/responses/{response_id}")
async def get_response(response_id: str, request: Request):
    record = get_store(request).get(response_id)
    if record is None:
        return JSONResponse(status_code=404, content=error_body(f"Response not found: {response_id}", "not_found"))
    return record.to_dict()


@router.post("/v1/responses/{response_id}/cancel")
async def cancel_response(response_id: str, request: Request):
    record = get_store(request).get(response_id)
    if record is None:
        return JSONResponse(status_code=404, content=error_body(f"Response not found: {response_id}", "not_found"))
    if not record.done:
        get_manager(request).controller.cancel(response_id, "cancelled via API")
        # wait briefly for the turn to observe the cancel
        for _ in range(20):
            if record.done:
                break
            await asyncio.sleep(0.05)
    return record.to_dict()
