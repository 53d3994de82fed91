"""Multimodal query API.

  POST /v1/multimodal               one-shot, ephemeral session
  POST /v1/multimodal/{session_id}  persistent session, created on first use

The request carries a trace of prior messages (``{"message"}`` from the
user, ``{"assistant"}`` replies and ``{"call", "result"}`` pairs for tool
calls already made) whose last user message is the new turn. Streaming
answers are SSE frames ``{id, model, assistant?, call?, result?}``: one
``assistant`` frame per model reply, and a ``call`` frame when a tool
starts plus a ``call``+``result`` frame when it finishes.

Tools of type ``mcp`` attach that server's tools to the session's
configuration; ``capability`` and ``openai`` entries are accepted and
ignored.
"""

import json
import logging
import re
from contextlib import AsyncExitStack
from typing import Any, Dict, List, Optional, Tuple, Union

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, ConfigDict, Field

from agent.errors import InvalidRequest
from agent.models import ConversationStatus, EventType, McpServerConfig, new_id
from gateway.apis.common import get_manager, request_config
from gateway.errors import agent_error_body, error_body, error_response
from gateway.streaming import iter_turn, sse_event

logger = logging.getLogger(__name__)

router = APIRouter()


class ToolCallOut(BaseModel):
    tool: str
    args: Dict[str, str] = Field(default_factory=dict)
    output: Optional[str] = None


class ToolCallResult(BaseModel):
    model_config = ConfigDict(extra="allow")

    text: Optional[str] = None
    error: Optional[str] = None


class UserMessage(BaseModel):
    message: str
    attached_files: Optional[Dict[str, str]] = None


class AssistantMessage(BaseModel):
    assistant: str


class PreviousCall(BaseModel):
    call: ToolCallOut
    result: ToolCallResult


class AgentTool(BaseModel):
    model_config = ConfigDict(extra="allow")

    type: str
    url: Optional[str] = None
    name: Optional[str] = None


class MultiModalQuery(BaseModel):
    model: str = ""
    stream: bool = False
    messages: Optional[List[Union[UserMessage, AssistantMessage, PreviousCall]]] = None
    tools: Optional[List[AgentTool]] = None


def parameters_to_args(params: Any) -> Dict[str, str]:
    """Flatten tool parameters to string key/value pairs."""
    if isinstance(params, str):
        try:
            params = json.loads(params) if params else {}
        except json.JSONDecodeError:
            return {"params": params}
    if not isinstance(params, dict):
        return {"params": json.dumps(params)}
    return {
        k: v if isinstance(v, str) else json.dumps(v, ensure_ascii=False)
        for k, v in params.items()
    }


def build_trace(query: MultiModalQuery) -> Tuple[List[Dict[str, Any]], str]:
    """Return ``(history, prompt)`` in OpenAI message form."""
    trace: List[Dict[str, Any]] = []
    for msg in query.messages or []:
        if isinstance(msg, UserMessage):
            trace.append({"role": "user", "content": msg.message})
        elif isinstance(msg, AssistantMessage):
            trace.append({"role": "assistant", "content": msg.assistant})
        else:
            call_id = new_id("call_")
            trace.append({
                "role": "assistant",
                "content": "",
                "tool_calls": [{
                    "id": call_id,
                    "type": "function",
                    "function": {"name": msg.call.tool, "arguments": json.dumps(msg.call.args)},
                }],
            })
            trace.append({
                "role": "tool",
                "tool_call_id": call_id,
                "content": msg.result.text or msg.result.error or "No result",
            })
    if not trace or trace[-1]["role"] != "user":
        raise InvalidRequest("messages must end with a user message")
    return trace[:-1], trace[-1]["content"]


def mcp_servers_from(tools: Optional[List[AgentTool]]) -> List[McpServerConfig]:
    servers = []
    for tool in tools or []:
        if tool.type != "mcp":
            logger.debug("Ignoring %s tool entry", tool.type)
            continue
        if not tool.url:
            raise InvalidRequest("mcp tools need a url")
        name = tool.name or re.sub(r"\W+", "_", tool.url.split("//")[-1]).strip("_")
        servers.append(McpServerConfig(name=name, url=tool.url))
    return servers


async def multimodal_frames(handle, response_id: str, model: str):
    """Yield response frames for one turn (without ``id``/``model``)."""
    text: List[str] = []
    calls: Dict[str, Dict[str, Any]] = {}
    async for event in iter_turn(handle):
        if event.type == EventType.TEXT_DELTA:
            text.append(event.data.get("text", ""))
        elif event.type == EventType.TOOL_CALL_STARTED:
            if text:
                yield {"assistant": "".join(text)}
                text = []
            call = {"tool": event.data["name"], "args": parameters_to_args(event.data.get("arguments"))}
            calls[event.data["call_id"]] = call
            yield {"call": call}
        elif event.type == EventType.TOOL_CALL_FINISHED:
            call = dict(calls.get(event.data["call_id"]) or {"tool": event.data.get("name", ""), "args": {}})
            ok = event.data.get("status") == "succeeded"
            call["output"] = event.data.get("output", "") if ok else ""
            result = {"text": event.data.get("output", "")} if ok else {"error": event.data.get("error") or "failed"}
            yield {"call": call, "result": result}
        elif event.type == EventType.TURN_COMPLETED:
            final = event.data.get("text", "")
            if final or text:
                yield {"assistant": final or "".join(text)}
        elif event.type == EventType.SUBSCRIBER_DROPPED:
            logger.warning("[%s] Stream consumer too slow, dropped", response_id)


async def _run(request: Request, query: MultiModalQuery, session_id: Optional[str]):
    manager = get_manager(request)
    history, prompt = build_trace(query)
    config = request_config(request, query.model, mcp_servers=mcp_servers_from(query.tools))

    stack = AsyncExitStack()
    if session_id is None:
        session = await stack.enter_async_context(manager.ephemeral(config))
    else:
        session = await manager.get_or_create(session_id, config)
    response_id = session.id
    model = session.conversation.config.model
    try:
        if history and not session.conversation.messages:
            session.conversation.seed(history)
        handle = await manager.start_turn(session, prompt)
    except BaseException:
        await stack.aclose()
        raise
    logger.info("[%s] MultiModal query received (model: %s, stream: %s)", response_id, model, query.stream)

    if not query.stream:
        results: List[Dict[str, Any]] = []
        try:
            async for frame in multimodal_frames(handle, response_id, model):
                if "result" in frame:
                    results.append({"call": frame["call"], "result": frame["result"]})
                elif "assistant" in frame:
                    results.append(frame)
            outcome = await handle.result()
        finally:
            handle.close()
            await stack.aclose()
        if outcome.status == ConversationStatus.FAILED:
            return error_response(outcome.error)
        if outcome.status == ConversationStatus.CANCELLED:
            return JSONResponse(status_code=499, content=error_body("Request cancelled", "cancelled"))
        return {"id": response_id, "model": model, "result": results}

    async def generate():
        try:
            async for frame in multimodal_frames(handle, response_id, model):
                yield sse_event({"id": response_id, "model": model, **frame})
            outcome = await handle.result()
            if outcome.status == ConversationStatus.FAILED:
                yield sse_event(agent_error_body(outcome.error))
        finally:
            handle.close()
            await stack.aclose()

    return StreamingResponse(generate(), media_type="text/event-stream")


@router.post("/v1/multimodal")
async def multimodal_query(query: MultiModalQuery, request: Request):
    return await _run(request, query, None)


@router.post("/v1/multimodal/{session_id}")
async def multimodal_session_query(session_id: str, query: MultiModalQuery, request: Request):
    return await _run(request, query, session_id)
