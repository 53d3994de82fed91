"""Configuration loading for every shai surface.

Precedence, lowest first: built-in defaults, ``~/.shai/config.yaml``,
environment (``~/.shai/.env``, then a project ``.env``, then the real
environment), then explicit command-line overrides.

Example config.yaml::

    model: gpt-4.1-mini
    provider: openai
    agent:
      max_turns: 30
      tool_timeout: 120
      system_prompt: "You are a careful shell assistant."
      tools: [terminal, read_file]
    server:
      port: 8080
      ephemeral: false
    mcp_servers:
      docs:
        url: https://example.com/mcp
        token_env: DOCS_MCP_TOKEN
"""

import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from dotenv import load_dotenv

from agent.models import AgentConfig, McpServerConfig
from agent.provider import normalize_provider_id, resolve_provider_api_key, resolve_provider_base_url
from gateway.config import ServerConfig
from shai_constants import DEFAULT_MAX_TURNS, DEFAULT_MODEL, DEFAULT_PROVIDER, DEFAULT_TOOL_TIMEOUT

logger = logging.getLogger(__name__)


def shai_home() -> Path:
    return Path(os.getenv("SHAI_HOME", Path.home() / ".shai"))


def _load_env_file(path: Path) -> None:
    try:
        load_dotenv(dotenv_path=path, encoding="utf-8")
    except UnicodeDecodeError:
        load_dotenv(dotenv_path=path, encoding="latin-1")


def load_env(project_dir: Optional[Path] = None) -> None:
    """Load ``~/.shai/.env`` first, then the project ``.env`` as fallback."""
    user_env = shai_home() / ".env"
    if user_env.exists():
        _load_env_file(user_env)
    project_env = (project_dir or Path.cwd()) / ".env"
    if project_env.exists():
        _load_env_file(project_env)


def load_config(path: Optional[Path] = None) -> Dict[str, Any]:
    """Read config.yaml; a missing file is an empty config."""
    path = Path(path) if path else shai_home() / "config.yaml"
    if not path.exists():
        return {}
    with open(path, encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"{path}: expected a mapping at the top level")
    logger.debug("Loaded config from %s", path)
    return data


def _env_number(name: str, cast):
    value = os.getenv(name)
    if value is None or not value.strip():
        return None
    try:
        return cast(value)
    except ValueError:
        logger.warning("Ignoring %s=%r: not a valid %s", name, value, cast.__name__)
        return None


def parse_mcp_servers(data: Any) -> List[McpServerConfig]:
    """``{name: {url, headers, token, token_env, timeout}}`` or a list with ``name`` keys."""
    if not data:
        return []
    if isinstance(data, list):
        data = {item["name"]: item for item in data}
    servers = []
    for name, entry in data.items():
        if isinstance(entry, str):
            entry = {"url": entry}
        if not entry.get("url"):
            raise ValueError(f"mcp_servers.{name}: url is required")
        servers.append(McpServerConfig(
            name=name,
            url=entry["url"],
            headers=tuple((entry.get("headers") or {}).items()),
            token=entry.get("token"),
            token_env=entry.get("token_env"),
            timeout=float(entry.get("timeout", 60.0)),
        ))
    return servers


def build_agent_config(cfg: Optional[Dict[str, Any]] = None, **overrides) -> AgentConfig:
    """Resolve an AgentConfig from config.yaml data, env, then *overrides*.

    ``None`` overrides are ignored, so CLI flags can be passed straight through.
    """
    cfg = cfg or {}
    agent_cfg = cfg.get("agent") or {}

    provider = normalize_provider_id(
        overrides.get("provider") or os.getenv("SHAI_PROVIDER") or cfg.get("provider"),
        default=DEFAULT_PROVIDER,
    )
    model = overrides.get("model") or os.getenv("SHAI_MODEL") or cfg.get("model") or DEFAULT_MODEL
    base_url = resolve_provider_base_url(
        provider,
        explicit_base_url=overrides.get("base_url") or os.getenv("SHAI_BASE_URL") or cfg.get("base_url"),
    )
    api_key = resolve_provider_api_key(
        provider, explicit_api_key=overrides.get("api_key") or cfg.get("api_key"),
    )

    max_turns = _env_number("SHAI_MAX_TURNS", int) or agent_cfg.get("max_turns") or DEFAULT_MAX_TURNS
    tool_timeout = _env_number("SHAI_TOOL_TIMEOUT", float) or agent_cfg.get("tool_timeout") or DEFAULT_TOOL_TIMEOUT
    tools = overrides.get("tools")
    if tools is None:
        tools = agent_cfg.get("tools") or ()
    if isinstance(tools, str):
        tools = [t.strip() for t in tools.split(",") if t.strip()]

    config = AgentConfig(
        model=model,
        provider=provider,
        base_url=base_url,
        api_key=api_key,
        tools=tuple(tools),
        system_context=overrides.get("system_prompt") or agent_cfg.get("system_prompt"),
        max_turns=int(overrides.get("max_turns") or max_turns),
        tool_timeout=float(overrides.get("tool_timeout") or tool_timeout),
        temperature=agent_cfg.get("temperature"),
        max_tokens=agent_cfg.get("max_tokens"),
        max_retries=int(agent_cfg.get("max_retries", 3)),
        mcp_servers=tuple(parse_mcp_servers(cfg.get("mcp_servers"))),
    )
    logger.debug("Agent config: %s", config.describe())
    return config


def build_server_config(cfg: Optional[Dict[str, Any]] = None, **overrides) -> ServerConfig:
    data = dict((cfg or {}).get("server") or {})
    host = os.getenv("SHAI_HTTP_HOST")
    port = _env_number("SHAI_HTTP_PORT", int)
    if host:
        data["host"] = host
    if port:
        data["port"] = port
    origins = os.getenv("SHAI_CORS_ORIGINS")
    if origins:
        data["cors_origins"] = origins
    data.update({k: v for k, v in overrides.items() if v is not None})
    return ServerConfig.from_dict(data)
