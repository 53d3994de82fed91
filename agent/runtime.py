"""Builds ready-to-run Conversations.

The runtime owns what conversations share: the built-in tool registry, the
MCP connections of the configured servers and the provider factory. Each
conversation gets its own registry holding only the tools its config
names (all built-ins when it names none) plus the tools of its MCP
servers, and its own ToolExecutor, so a model can only run what it was
offered.

MCP servers outside ``shared_mcp_servers`` (for instance ones named by a
single HTTP request) get a private connection cache that lives as long as
the conversation; ``release`` closes it.
"""

import logging
from typing import Callable, Dict, Iterable, Optional

from agent.cancellation import CancellationToken
from agent.conversation import Conversation
from agent.event_bus import EventBus
from agent.models import AgentConfig, McpServerConfig
from agent.permissions import PermissionGate
from agent.provider import ProviderGateway, build_provider
from agent.tool_executor import ToolExecutor
from tools.mcp_tool import McpConnections
from tools.registry import ToolRegistry, default_registry

logger = logging.getLogger(__name__)


class AgentRuntime:
    def __init__(
        self,
        provider_factory: Optional[Callable[[AgentConfig], ProviderGateway]] = None,
        registry: Optional[ToolRegistry] = None,
        mcp: Optional[McpConnections] = None,
        shared_mcp_servers: Iterable[McpServerConfig] = (),
    ):
        self.provider_factory = provider_factory or build_provider
        self.registry = registry if registry is not None else default_registry()
        self.mcp = mcp or McpConnections()
        self.shared_mcp_servers = frozenset(shared_mcp_servers)
        self._scoped: Dict[str, McpConnections] = {}

    def tool_registry(self, config: AgentConfig) -> ToolRegistry:
        if config.tools:
            return self.registry.subset(config.tools)
        return self.registry.copy()

    async def build(
        self,
        config: AgentConfig,
        *,
        conversation_id: Optional[str] = None,
        bus: Optional[EventBus] = None,
        token: Optional[CancellationToken] = None,
        history=None,
        permission: Optional[PermissionGate] = None,
    ) -> Conversation:
        registry = self.tool_registry(config)
        shared = [s for s in config.mcp_servers if s in self.shared_mcp_servers]
        private = [s for s in config.mcp_servers if s not in self.shared_mcp_servers]
        scoped = None
        try:
            if shared:
                attached = await self.mcp.attach(registry, shared)
                logger.debug("Attached %d shared MCP tool(s)", len(attached))
            if private:
                scoped = self.mcp.fresh()
                attached = await scoped.attach(registry, private)
                logger.debug("Attached %d request MCP tool(s)", len(attached))
            executor = ToolExecutor(registry, timeout=config.tool_timeout, permission=permission)
            conversation = Conversation(
                config,
                self.provider_factory(config),
                executor,
                conversation_id=conversation_id,
                bus=bus,
                token=token,
                history=history,
            )
        except BaseException:
            if scoped is not None:
                await scoped.aclose()
            raise
        if scoped is not None:
            self._scoped[conversation.id] = scoped
        return conversation

    async def release(self, conversation: Conversation) -> None:
        """Close the private MCP connections of *conversation*, if any."""
        scoped = self._scoped.pop(conversation.id, None)
        if scoped is not None:
            await scoped.aclose()

    async def aclose(self) -> None:
        scoped, self._scoped = self._scoped, {}
        for connections in scoped.values():
            await connections.aclose()
        await self.mcp.aclose()
