"""OpenAI Chat Completions adapter (``POST /v1/chat/completions``).

Stateless: every request gets an ephemeral session seeded with all but the
last user message, which becomes the turn. Tool calls run server-side and
only the assistant's text reaches the client.
"""

import logging
import time
from contextlib import AsyncExitStack
from typing import Any, Dict, List, Optional, Union

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, ConfigDict

from agent.errors import InvalidRequest
from agent.models import ConversationStatus, EventType, new_id
from gateway.apis.common import get_manager, request_config
from gateway.errors import error_body, error_response, agent_error_body
from gateway.streaming import iter_turn, sse_done, sse_event

logger = logging.getLogger(__name__)

router = APIRouter()


class ChatMessageIn(BaseModel):
    model_config = ConfigDict(extra="allow")

    role: str
    content: Optional[Union[str, List[Dict[str, Any]]]] = None
    tool_calls: Optional[List[Dict[str, Any]]] = None
    tool_call_id: Optional[str] = None
    name: Optional[str] = None


class ChatCompletionRequest(BaseModel):
    model_config = ConfigDict(extra="allow")

    model: str = ""
    messages: List[ChatMessageIn]
    stream: bool = False
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None


def _text_of(content) -> str:
    if isinstance(content, list):
        return "\n".join(
            p.get("text", "") for p in content
            if isinstance(p, dict) and p.get("type") in ("text", "input_text")
        )
    return content or ""


def split_messages(messages: List[ChatMessageIn]):
    """Return ``(system_text, history, prompt)`` for a request."""
    system_parts = [_text_of(m.content) for m in messages if m.role in ("system", "developer")]
    convo = [m for m in messages if m.role not in ("system", "developer")]
    if not convo or convo[-1].role != "user":
        raise InvalidRequest("The last message must have role 'user'")
    history = [m.model_dump(exclude_none=True) for m in convo[:-1]]
    return "\n\n".join(p for p in system_parts if p), history, _text_of(convo[-1].content)


def _chunk(completion_id: str, model: str, created: int, delta: Dict[str, Any],
           finish_reason: Optional[str] = None) -> Dict[str, Any]:
    return {
        "id": completion_id,
        "object": "chat.completion.chunk",
        "created": created,
        "model": model,
        "choices": [{"index": 0, "delta": delta, "finish_reason": finish_reason}],
    }


@router.post("/v1/chat/completions")
async def create_chat_completion(body: ChatCompletionRequest, request: Request):
    manager = get_manager(request)
    system, history, prompt = split_messages(body.messages)
    config = request_config(
        request, body.model,
        temperature=body.temperature, max_tokens=body.max_tokens, system=system,
    )
    completion_id = new_id("chatcmpl-")
    created = int(time.time())
    logger.info("[%s] POST /v1/chat/completions model=%s stream=%s",
                completion_id, config.model, body.stream)

    stack = AsyncExitStack()
    try:
        session = await stack.enter_async_context(manager.ephemeral(config))
        session.conversation.seed(history)
        handle = await manager.start_turn(session, prompt)
    except BaseException:
        await stack.aclose()
        raise

    if not body.stream:
        try:
            handle.close()
            outcome = await handle.result()
        finally:
            await stack.aclose()
        if outcome.status == ConversationStatus.FAILED:
            return error_response(outcome.error)
        if outcome.status == ConversationStatus.CANCELLED:
            return JSONResponse(status_code=499, content=error_body("Request cancelled", "cancelled"))
        return {
            "id": completion_id,
            "object": "chat.completion",
            "created": created,
            "model": config.model,
            "choices": [{
                "index": 0,
                "message": {"role": "assistant", "content": outcome.text},
                "finish_reason": "stop",
            }],
            "usage": {
                "prompt_tokens": outcome.usage.get("input_tokens", 0),
                "completion_tokens": outcome.usage.get("output_tokens", 0),
                "total_tokens": outcome.usage.get("total_tokens", 0),
            },
        }

    async def generate():
        try:
            yield sse_event(_chunk(completion_id, config.model, created, {"role": "assistant", "content": ""}))
            async for event in iter_turn(handle):
                if event.type == EventType.TEXT_DELTA:
                    yield sse_event(_chunk(completion_id, config.model, created,
                                           {"content": event.data.get("text", "")}))
                elif event.type == EventType.SUBSCRIBER_DROPPED:
                    logger.warning("[%s] Stream consumer too slow, dropped", completion_id)
                    yield sse_event(error_body("Stream consumer fell too far behind", "stream_dropped"))
                    return
            outcome = await handle.result()
            if outcome.status == ConversationStatus.FAILED:
                yield sse_event(agent_error_body(outcome.error))
            elif outcome.status == ConversationStatus.CANCELLED:
                yield sse_event(error_body("Request cancelled", "cancelled"))
            else:
                yield sse_event(_chunk(completion_id, config.model, created, {}, finish_reason="stop"))
            yield sse_done()
        finally:
            handle.close()
            await stack.aclose()

    return StreamingResponse(generate(), media_type="text/event-stream")
