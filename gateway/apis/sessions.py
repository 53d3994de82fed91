"""Session administration and health.

  GET    /health
  GET    /v1/sessions
  POST   /v1/sessions                   create a persistent session
  GET    /v1/sessions/{id}
  DELETE /v1/sessions/{id}
  POST   /v1/sessions/{id}/cancel
  GET    /v1/sessions/{id}/events?after=N   SSE: replay after N, then live
"""

import logging
import time
from typing import Optional

from fastapi import APIRouter, Request
from fastapi.responses import StreamingResponse
from pydantic import BaseModel

from agent.errors import InvalidRequest, SessionNotFound
from agent.models import SessionMode
from gateway.apis.common import get_manager, request_config
from gateway.streaming import sse_event

logger = logging.getLogger(__name__)

router = APIRouter()

_STARTED = time.time()


class SessionCreateRequest(BaseModel):
    model: str = ""
    system: Optional[str] = None
    session_id: Optional[str] = None


@router.get("/health")
async def health(request: Request):
    manager = get_manager(request)
    return {
        "status": "ok",
        "sessions": manager.count,
        "ephemeral_only": not manager.persistent_allowed,
        "uptime": round(time.time() - _STARTED, 1),
    }


@router.get("/v1/sessions")
async def list_sessions(request: Request):
    sessions = get_manager(request).list()
    return {"object": "list", "data": sessions}


@router.post("/v1/sessions")
async def create_session(request: Request, body: Optional[SessionCreateRequest] = None):
    manager = get_manager(request)
    if not manager.persistent_allowed:
        raise InvalidRequest("Server runs in ephemeral mode; persistent sessions are disabled")
    body = body or SessionCreateRequest()
    config = request_config(request, body.model, system=body.system)
    session_id = await manager.create(SessionMode.PERSISTENT, config, body.session_id)
    return manager.get(session_id).summary()


@router.get("/v1/sessions/{session_id}")
async def get_session(session_id: str, request: Request):
    return get_manager(request).get(session_id).summary()


@router.delete("/v1/sessions/{session_id}")
async def delete_session(session_id: str, request: Request):
    if not await get_manager(request).delete(session_id):
        raise SessionNotFound(session_id)
    return {"id": session_id, "deleted": True}


@router.post("/v1/sessions/{session_id}/cancel")
async def cancel_session(session_id: str, request: Request):
    manager = get_manager(request)
    session = manager.get(session_id)
    cancelled = manager.cancel(session_id, "cancelled via API")
    return {"id": session_id, "cancelled": cancelled, "status": session.conversation.status.value}


@router.get("/v1/sessions/{session_id}/events")
async def session_events(session_id: str, request: Request, after: Optional[int] = None):
    session = get_manager(request).get(session_id)
    subscription = session.conversation.bus.subscribe(after_seq=after)
    logger.debug("[%s] Event stream attached (after=%s)", session_id, after)

    async def generate():
        try:
            async for event in subscription:
                yield sse_event(event.to_dict(), event=event.type.value)
        finally:
            subscription.close()

    return StreamingResponse(generate(), media_type="text/event-stream")
