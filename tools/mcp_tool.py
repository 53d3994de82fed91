"""
MCP tool bridge -- exposes tools of remote MCP servers as registry tools.

Discovered tools are registered as ``mcp_<server>_<tool>`` specs of kind
``mcp``. A client and its discovered tools are cached per server config
until ``refresh``, ``release`` or ``aclose``. The runtime keeps the
configured servers in one long-lived cache and gives servers named by a
single request a cache of their own, released with the conversation.

A server that cannot be reached at attach time is skipped with a warning,
so its tools are simply absent for that conversation. A server that goes
away later surfaces as failed ToolResults.
"""

import asyncio
import copy
import json
import logging
import os
import re
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from agent.errors import ToolExecutionFailed
from agent.models import McpServerConfig
from tools.mcp_client import MCPClient, MCPProtocolError, MCPTransportError, sanitize_error
from tools.registry import ToolRegistry, ToolSpec

logger = logging.getLogger(__name__)

ClientFactory = Callable[[McpServerConfig], MCPClient]


# ---------------------------------------------------------------------------
# Tool name helpers
# ---------------------------------------------------------------------------

def _sanitize_name(name: str) -> str:
    """Convert a string to a valid tool name component (lowercase, underscores)."""
    name = re.sub(r"[^a-zA-Z0-9_]", "_", name.lower())
    name = re.sub(r"_+", "_", name).strip("_")
    return name


def make_tool_name(server_name: str, tool_name: str) -> str:
    return f"mcp_{_sanitize_name(server_name)}_{_sanitize_name(tool_name)}"


# ---------------------------------------------------------------------------
# Schema conversion
# ---------------------------------------------------------------------------

def _dereference_schema(schema: dict) -> dict:
    """Inline ``$ref`` definitions; models handle flat schemas better."""
    defs = schema.get("$defs", schema.get("definitions", {}))
    if not defs:
        return copy.deepcopy(schema)

    def _resolve(obj, depth=0):
        if depth > 20:
            return obj
        if isinstance(obj, dict):
            ref = obj.get("$ref")
            if isinstance(ref, str):
                for prefix in ("#/$defs/", "#/definitions/"):
                    if ref.startswith(prefix) and ref[len(prefix):] in defs:
                        return _resolve(copy.deepcopy(defs[ref[len(prefix):]]), depth + 1)
                return obj
            return {k: _resolve(v, depth) for k, v in obj.items()}
        if isinstance(obj, list):
            return [_resolve(item, depth) for item in obj]
        return obj

    result = _resolve(copy.deepcopy(schema))
    result.pop("$defs", None)
    result.pop("definitions", None)
    return result


def convert_mcp_schema(mcp_tool: dict) -> Tuple[Dict[str, Any], List[str]]:
    """Return ``(properties, required)`` from an MCP ``inputSchema``."""
    schema = _dereference_schema(mcp_tool.get("inputSchema") or {})
    properties = schema.get("properties") or {}
    required = [r for r in schema.get("required") or [] if r in properties]
    return properties, required


def format_tool_result(result: dict) -> str:
    """Flatten MCP content blocks to text; ``isError`` results raise."""
    texts = []
    for block in result.get("content") or []:
        if block.get("type") == "text":
            texts.append(block.get("text", ""))
        elif block.get("type") == "resource":
            texts.append(json.dumps(block.get("resource", {}), ensure_ascii=False))
        else:
            texts.append(json.dumps(block, ensure_ascii=False))
    if not texts and result.get("structuredContent") is not None:
        texts.append(json.dumps(result["structuredContent"], ensure_ascii=False))
    output = "\n".join(texts)
    if result.get("isError"):
        raise ToolExecutionFailed(output or "MCP tool reported an error", output=output)
    return output


# ---------------------------------------------------------------------------
# Connections
# ---------------------------------------------------------------------------

def _default_client(server: McpServerConfig) -> MCPClient:
    token_provider = None
    if server.token_env:
        env_name = server.token_env

        async def token_provider(refresh: bool) -> Optional[str]:
            return os.getenv(env_name)

    return MCPClient(
        server.url,
        headers=dict(server.headers),
        token=server.token,
        token_provider=token_provider,
        timeout=server.timeout,
    )


class McpConnections:
    """MCP clients and their discovered tool specs, keyed by server config.

    Two configs that differ in anything (url, headers, token) get separate
    clients, even when they share a name.
    """

    def __init__(self, client_factory: Optional[ClientFactory] = None):
        self._client_factory = client_factory or _default_client
        self._clients: Dict[McpServerConfig, MCPClient] = {}
        self._specs: Dict[McpServerConfig, List[ToolSpec]] = {}
        self._locks: Dict[McpServerConfig, asyncio.Lock] = {}

    def fresh(self) -> "McpConnections":
        """New, empty cache built with the same client factory."""
        return McpConnections(self._client_factory)

    def __len__(self) -> int:
        return len(self._clients)

    def __contains__(self, server: McpServerConfig) -> bool:
        return server in self._clients

    def client(self, server: McpServerConfig) -> MCPClient:
        client = self._clients.get(server)
        if client is None:
            client = self._client_factory(server)
            self._clients[server] = client
        return client

    def _make_spec(self, server: McpServerConfig, mcp_tool: dict) -> ToolSpec:
        remote_name = mcp_tool["name"]
        properties, required = convert_mcp_schema(mcp_tool)
        client = self.client(server)

        async def handler(args: Dict[str, Any], token) -> str:
            try:
                result = await client.call_tool(remote_name, args, timeout=server.timeout)
            except MCPProtocolError as e:
                raise ToolExecutionFailed(f"MCP server {server.name}: {e.error_message}")
            except MCPTransportError as e:
                raise ToolExecutionFailed(
                    f"MCP server {server.name} unreachable: {sanitize_error(str(e))}"
                )
            return format_tool_result(result)

        return ToolSpec(
            name=make_tool_name(server.name, remote_name),
            description=f"[MCP:{server.name}] {mcp_tool.get('description') or remote_name}",
            parameters=properties,
            required=required,
            kind="mcp",
            handler=handler,
            needs_permission=True,
        )

    async def tools_for(self, server: McpServerConfig) -> List[ToolSpec]:
        lock = self._locks.setdefault(server, asyncio.Lock())
        async with lock:
            if server not in self._specs:
                mcp_tools = await self.client(server).list_tools()
                self._specs[server] = [
                    self._make_spec(server, t) for t in mcp_tools if t.get("name")
                ]
                logger.info("MCP server %s: %d tool(s) discovered",
                            server.name, len(self._specs[server]))
            return self._specs[server]

    async def attach(self, registry: ToolRegistry, servers: Iterable[McpServerConfig]) -> List[str]:
        """Register the tools of *servers* into *registry*; returns their names."""
        names: List[str] = []
        for server in servers:
            try:
                specs = await self.tools_for(server)
            except (MCPTransportError, MCPProtocolError) as e:
                logger.warning("MCP server %s unavailable, skipping its tools: %s",
                               server.name, sanitize_error(str(e)))
                continue
            for spec in specs:
                registry.register(spec)
                names.append(spec.name)
        return names

    def refresh(self, server_name: str) -> None:
        """Forget discovered tools of every server called *server_name*."""
        for server in [s for s in self._specs if s.name == server_name]:
            del self._specs[server]

    async def release(self, servers: Iterable[McpServerConfig]) -> None:
        """Close the clients of *servers* and drop everything cached for them."""
        for server in servers:
            self._specs.pop(server, None)
            self._locks.pop(server, None)
            client = self._clients.pop(server, None)
            if client is not None:
                await client.aclose()

    async def aclose(self) -> None:
        await self.release(list(self._clients))
        self._specs.clear()
        self._locks.clear()
