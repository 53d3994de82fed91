"""OpenAI-style error bodies for the HTTP surface.

Every failure leaves the server as::

    {"error": {"message": "...", "type": "...", "code": "..."}}

with a status derived from the error kind.
"""

import logging
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from agent.errors import AgentError

logger = logging.getLogger(__name__)

# kind -> (HTTP status, error type)
_STATUS_BY_KIND = {
    "InvalidRequest": (400, "invalid_request"),
    "SessionNotFound": (404, "not_found"),
    "SessionLimitReached": (429, "rate_limit_exceeded"),
    "ProviderRateLimited": (429, "rate_limit_exceeded"),
    "ProviderUnavailable": (502, "upstream_error"),
    "MalformedUpstreamResponse": (502, "upstream_error"),
    "TurnBudgetExceeded": (500, "turn_budget_exceeded"),
    "CancellationRequested": (499, "cancelled"),
}


def error_body(message: str, error_type: str, code: Optional[str] = None) -> Dict[str, Any]:
    body: Dict[str, Any] = {"message": message, "type": error_type}
    if code:
        body["code"] = code
    return {"error": body}


def agent_error_body(exc: AgentError) -> Dict[str, Any]:
    _, error_type = _STATUS_BY_KIND.get(exc.kind, (500, "internal_error"))
    return error_body(exc.message, error_type, exc.kind)


def status_for(exc: AgentError) -> int:
    return _STATUS_BY_KIND.get(exc.kind, (500, "internal_error"))[0]


def error_response(exc: AgentError) -> JSONResponse:
    return JSONResponse(status_code=status_for(exc), content=agent_error_body(exc))


def install_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(AgentError)
    async def _agent_error(request: Request, exc: AgentError):
        logger.warning("%s %s -> %s: %s", request.method, request.url.path, exc.kind, exc.message)
        return error_response(exc)

    @app.exception_handler(RequestValidationError)
    async def _validation_error(request: Request, exc: RequestValidationError):
        message = "; ".join(
            f"{'.'.join(str(p) for p in err.get('loc', ()))}: {err.get('msg')}" for err in exc.errors()
        )
        logger.warning("JSON deserialization error: %s", message)
        return JSONResponse(status_code=400, content=error_body(message, "invalid_request"))
