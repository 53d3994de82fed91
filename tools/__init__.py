"""Tools the agent can call.

  registry      ToolSpec / ToolRegistry, the built-in tool set
  shell_tool    ``terminal``: shell commands in their own process group
  file_tools    ``read_file``, ``write_file``, ``edit_file``, ``list_directory``
  mcp_client    async MCP client over Streamable HTTP
  mcp_tool      MCP server tools bridged into a registry

Every handler is ``async handler(args, token) -> str``; failures are
raised and turned into tool results by ``agent.tool_executor``.
"""

from tools.registry import ToolRegistry, ToolSpec, default_registry

__all__ = ["ToolRegistry", "ToolSpec", "default_registry"]
