"""FastAPI application for the shai gateway.

Mounts the three API families (Chat Completions, Responses, multimodal)
plus session administration on one app whose lifespan owns the
SessionManager: the idle sweeper starts with the app, and shutdown drains
in-flight turns for the configured grace period before cancelling them.

Run with ``shai serve`` or::

    uvicorn gateway.server:create_default_app --factory
"""

import logging
from contextlib import asynccontextmanager
from typing import Callable, Optional

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from agent.cancellation import CancellationController
from agent.models import AgentConfig
from agent.provider import ProviderGateway
from agent.runtime import AgentRuntime
from gateway.apis import chat_completions, multimodal, responses, sessions
from gateway.config import ServerConfig
from gateway.errors import install_exception_handlers
from gateway.responses_store import ResponseStore
from gateway.session import SessionManager
from shai_constants import DEFAULT_MODEL
from tools.registry import ToolRegistry

logger = logging.getLogger(__name__)

__version__ = "0.1.0"


def create_app(
    server_config: Optional[ServerConfig] = None,
    agent_config: Optional[AgentConfig] = None,
    provider_factory: Optional[Callable[[AgentConfig], ProviderGateway]] = None,
    registry: Optional[ToolRegistry] = None,
) -> FastAPI:
    server_config = server_config or ServerConfig()
    agent_config = agent_config or AgentConfig(model=DEFAULT_MODEL)
    runtime = AgentRuntime(
        provider_factory=provider_factory,
        registry=registry,
        shared_mcp_servers=agent_config.mcp_servers,
    )
    manager = SessionManager(server_config, runtime, agent_config, CancellationController())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await manager.start()
        logger.info("Gateway ready (model=%s, max_sessions=%d, ephemeral=%s)",
                    agent_config.model, server_config.max_sessions, server_config.ephemeral)
        try:
            yield
        finally:
            await manager.shutdown()

    app = FastAPI(
        title="shai gateway",
        description="OpenAI-compatible agent server with server-side tool execution",
        version=__version__,
        lifespan=lifespan,
    )
    if server_config.cors_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=list(server_config.cors_origins),
            allow_credentials=False,
            allow_methods=["GET", "POST", "DELETE"],
            allow_headers=["*"],
        )
    install_exception_handlers(app)

    app.state.server_config = server_config
    app.state.agent_config = agent_config
    app.state.sessions = manager
    app.state.responses = ResponseStore(server_config.response_ttl, server_config.max_responses)

    for module in (sessions, chat_completions, responses, multimodal):
        app.include_router(module.router)
    return app


def create_default_app() -> FastAPI:
    """App factory that reads ``~/.shai`` config, for ``uvicorn --factory``."""
    from shai_cli.config import build_agent_config, build_server_config, load_config, load_env

    load_env()
    cfg = load_config()
    return create_app(build_server_config(cfg), build_agent_config(cfg))


def start_server(
    server_config: ServerConfig,
    agent_config: AgentConfig,
    provider_factory: Optional[Callable[[AgentConfig], ProviderGateway]] = None,
) -> None:
    app = create_app(server_config, agent_config, provider_factory)
    base = server_config.base_url
    print("🚀 shai gateway")
    print("=" * 50)
    print(f"🤖 Model: {agent_config.model} ({agent_config.provider})")
    print(f"🌐 Listening on {base}")
    print(f"   POST {base}/v1/chat/completions")
    print(f"   POST {base}/v1/responses")
    print(f"   POST {base}/v1/multimodal")
    print(f"   GET  {base}/v1/sessions")
    print(f"🔒 Sessions: {'ephemeral only' if server_config.ephemeral else 'persistent allowed'}"
          f" (max {server_config.max_sessions})")
    print("=" * 50)

    uvicorn.run(
        app,
        host=server_config.host,
        port=server_config.port,
        log_level="info",
        timeout_graceful_shutdown=int(server_config.grace_period) + 1,
    )
