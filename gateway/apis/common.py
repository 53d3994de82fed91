"""Request plumbing shared by the API modules."""

import logging
from typing import Iterable, Optional

from fastapi import Request

from agent.models import AgentConfig, McpServerConfig

logger = logging.getLogger(__name__)


def get_manager(request: Request):
    return request.app.state.sessions


def get_store(request: Request):
    return request.app.state.responses


def request_config(
    request: Request,
    model: Optional[str] = None,
    *,
    temperature: Optional[float] = None,
    max_tokens: Optional[int] = None,
    system: Optional[str] = None,
    mcp_servers: Iterable[McpServerConfig] = (),
) -> AgentConfig:
    """Derive the per-request AgentConfig from the server default."""
    base: AgentConfig = request.app.state.agent_config
    changes = {}
    if model:
        changes["model"] = model
    if temperature is not None:
        changes["temperature"] = temperature
    if max_tokens is not None:
        changes["max_tokens"] = max_tokens
    if system:
        changes["system_context"] = f"{base.system_context}\n\n{system}" if base.system_context else system
    extra = tuple(mcp_servers)
    if extra:
        known = {s.name for s in base.mcp_servers}
        changes["mcp_servers"] = base.mcp_servers + tuple(s for s in extra if s.name not in known)
    return base.with_changes(**changes) if changes else base
