"""Tests for agent.runtime -- per-conversation tool sets and MCP scoping."""

import pytest

from agent.models import AgentConfig, McpServerConfig, ToolCallStatus
from agent.permissions import Permission, PermissionGate
from agent.runtime import AgentRuntime
from tests.fakes.fake_mcp_server import FakeMcpServer
from tests.fakes.scripted_provider import ScriptedProvider, tool
from tools.mcp_client import MCPClient
from tools.mcp_tool import McpConnections
from tools.registry import ToolRegistry, ToolSpec

SHARED = McpServerConfig(name="docs", url="http://docs.test/mcp")
PER_REQUEST = McpServerConfig(name="scratch", url="http://scratch.test/mcp")


def _registry(ran):
    async def echo(args, token):
        ran.append("echo")
        return "echoed"

    async def danger(args, token):
        ran.append("danger")
        return "rm -rf done"

    reg = ToolRegistry()
    reg.register(ToolSpec(name="echo", description="", handler=echo))
    reg.register(ToolSpec(name="danger", description="", handler=danger, needs_permission=True))
    return reg


class TestToolWhitelist:
    @pytest.mark.asyncio
    async def test_tools_outside_the_config_cannot_run(self):
        ran = []
        provider = ScriptedProvider([[tool("danger")], "ok"])
        runtime = AgentRuntime(provider_factory=provider, registry=_registry(ran))
        conv = await runtime.build(AgentConfig(model="m", tools=("echo",)))

        outcome = await conv.submit("clean up")
        assert outcome.ok
        assert ran == []
        assert outcome.tool_results[0].status == ToolCallStatus.FAILED
        assert outcome.tool_results[0].reason == "unknown_tool"
        offered = [t["function"]["name"] for t in provider.calls[0]["tools"]]
        assert offered == ["echo"]

    @pytest.mark.asyncio
    async def test_no_tool_list_means_every_builtin(self):
        ran = []
        runtime = AgentRuntime(provider_factory=ScriptedProvider([]), registry=_registry(ran))
        conv = await runtime.build(AgentConfig(model="m"))
        assert conv.executor.registry.names() == ["danger", "echo"]

    @pytest.mark.asyncio
    async def test_permission_gate_reaches_the_executor(self):
        ran = []
        asked = []

        async def deny(call):
            asked.append(call.name)
            return Permission.DENY

        provider = ScriptedProvider([[tool("danger"), tool("echo")], "ok"])
        runtime = AgentRuntime(provider_factory=provider, registry=_registry(ran))
        conv = await runtime.build(AgentConfig(model="m"), permission=PermissionGate(deny))
        outcome = await conv.submit("go")
        assert asked == ["danger"]
        assert ran == ["echo"]
        assert outcome.tool_results[0].reason == "denied"


class TestMcpScoping:
    def _runtime(self):
        servers = {
            SHARED.url: FakeMcpServer(tools=[{"name": "lookup"}]),
            PER_REQUEST.url: FakeMcpServer(tools=[{"name": "note"}]),
        }
        made = []

        def factory(config):
            client = MCPClient(config.url, http_client=servers[config.url].client())
            made.append((config, client))
            return client

        runtime = AgentRuntime(
            provider_factory=ScriptedProvider([]),
            registry=ToolRegistry(),
            mcp=McpConnections(client_factory=factory),
            shared_mcp_servers=[SHARED],
        )
        return runtime, made

    @pytest.mark.asyncio
    async def test_request_servers_stay_out_of_the_shared_cache(self):
        runtime, made = self._runtime()
        config = AgentConfig(model="m", mcp_servers=(SHARED, PER_REQUEST))
        conv = await runtime.build(config)
        assert conv.executor.registry.names(kind="mcp") == ["mcp_docs_lookup", "mcp_scratch_note"]
        assert SHARED in runtime.mcp
        assert PER_REQUEST not in runtime.mcp

        await runtime.release(conv)
        clients = {config: client for config, client in made}
        assert not clients[PER_REQUEST].is_connected
        assert clients[SHARED].is_connected

    @pytest.mark.asyncio
    async def test_each_conversation_gets_a_fresh_request_client(self):
        runtime, made = self._runtime()
        config = AgentConfig(model="m", mcp_servers=(SHARED, PER_REQUEST))
        first = await runtime.build(config)
        second = await runtime.build(config)
        assert [c for c, _ in made].count(SHARED) == 1
        assert [c for c, _ in made].count(PER_REQUEST) == 2

        await runtime.aclose()
        assert not any(client.is_connected for _, client in made)
        await runtime.release(first)
        await runtime.release(second)
