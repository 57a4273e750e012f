"""
MCP Manager Tool — lets the model (and the CLI) inspect and manage MCP servers.

Actions:
  list     configured servers with status, transport and command
  status   per-server status, last error and capability counts
  tools    tools, resources and prompts across live servers
  add      add or replace a server (server_name + server_config)
  remove   remove a server
  enable   enable and connect a server
  disable  disable and disconnect a server
  call     call a tool on a server (server_name + tool_name + arguments)

Every action returns a markdown report in ToolResult.content.
"""

import logging
from typing import Any, Dict

from amai_code.tools.base_tool import BaseTool, ToolResult
from amai_code.tools.mcp.mcp_config import MCPServerConfig
from amai_code.tools.mcp.mcp_errors import MCPClientError
from amai_code.tools.mcp.mcp_tool_adapter import format_content_blocks

logger = logging.getLogger(__name__)

ACTIONS = ["list", "status", "tools", "add", "remove", "enable", "disable", "call"]

STATUS_ICONS = {
    "connected": "🟢",
    "connecting": "🟡",
    "error": "🔴",
    "disconnected": "⚪",
    "disabled": "⏸️",
}


class MCPManagerTool(BaseTool):
    """Markdown front end over an MCPManager."""

    name = "mcp_manager"
    display_name = "MCP Manager"
    description = (
        "Manage MCP (Model Context Protocol) servers: list, add, remove, "
        "enable/disable servers, inspect their tools and call a tool."
    )
    category = "builtin"

    def __init__(self, manager: Any):
        """
        Args:
            manager: MCPManager to operate on (avoid circular import)
        """
        self.manager = manager

    @property
    def parameters_schema(self) -> Dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "action": {
                    "type": "string",
                    "description": "Action to perform",
                    "enum": ACTIONS,
                },
                "server_name": {
                    "type": "string",
                    "description": "MCP server name (add/remove/enable/disable/call)",
                },
                "server_config": {
                    "type": "object",
                    "description": "Server configuration for add (transport, command, args, env, url, headers, description, enabled)",
                },
                "tool_name": {
                    "type": "string",
                    "description": "Tool to call (call action)",
                },
                "arguments": {
                    "type": "object",
                    "description": "Tool arguments (call action)",
                },
            },
            "required": ["action"],
        }

    async def execute(self, **kwargs) -> ToolResult:
        action = kwargs.get("action")
        server_name = kwargs.get("server_name")

        if action not in ACTIONS:
            return self._error(f"Unknown action '{action}'. Available actions: {', '.join(ACTIONS)}")

        if action in ("add", "remove", "enable", "disable", "call") and not server_name:
            return self._error(f"server_name is required for {action} action")

        try:
            if action == "list":
                content = self._list_servers()
            elif action == "status":
                content = self._status()
            elif action == "tools":
                content = self._list_capabilities()
            elif action == "add":
                server_config = kwargs.get("server_config")
                if not isinstance(server_config, dict):
                    return self._error("server_config is required for add action")
                content = await self._add_server(server_name, server_config)
            elif action == "remove":
                await self.manager.remove_server(server_name)
                content = f"✅ Removed MCP server '{server_name}'."
            elif action == "enable":
                await self.manager.enable_server(server_name)
                content = f"✅ Enabled MCP server '{server_name}'. Connected."
            elif action == "disable":
                await self.manager.disable_server(server_name)
                content = f"✅ Disabled MCP server '{server_name}'. Disconnected."
            else:
                tool_name = kwargs.get("tool_name")
                if not tool_name:
                    return self._error("tool_name is required for call action")
                return await self._call_tool(server_name, tool_name, kwargs.get("arguments") or {})

        except (MCPClientError, ValueError) as e:
            logger.error(f"MCP manager action '{action}' failed: {e}")
            return self._error(f"Error managing MCP servers: {e}")

        return ToolResult(tool_name=self.name, success=True, content=content)

    def _error(self, message: str) -> ToolResult:
        return ToolResult(tool_name=self.name, success=False, content=f"Error: {message}", error=message)

    # ---- Reports ----

    def _list_servers(self) -> str:
        servers = self.manager.get_servers()
        if not servers:
            return "# 📦 MCP Servers\n\nNo MCP servers configured."

        statuses = self.manager.get_server_status()
        output = ["# 📦 MCP Servers", ""]

        for server in servers:
            info = statuses.get(server.name, {})
            state = info.get("status", "disconnected")
            output.append(f"## {STATUS_ICONS.get(state, '❓')} {server.name}")
            output.append(f"**Status:** {state}")
            output.append(f"**Transport:** {server.transport}")
            if server.description:
                output.append(f"**Description:** {server.description}")
            if server.transport == "stdio":
                output.append(f"**Command:** {' '.join([server.command] + server.args)}")
            else:
                output.append(f"**URL:** {server.url}")
            if info.get("tools"):
                output.append(f"**Tools:** {info['tools']} available")
            output.append("")

        total_tools = sum(info.get("tools", 0) for info in statuses.values())
        output.append(
            f"**Summary:** {len(servers)} server(s) configured, "
            f"{self.manager.connected_count} connected, {total_tools} total tools available"
        )
        return "\n".join(output)

    def _status(self) -> str:
        statuses = self.manager.get_server_status()
        if not statuses:
            return "# 🔌 MCP Server Status\n\nNo MCP servers configured."

        output = ["# 🔌 MCP Server Status", ""]
        for name, info in statuses.items():
            state = info["status"]
            output.append(f"{STATUS_ICONS.get(state, '❓')} **{name}**: {state}")
            if info.get("error"):
                output.append(f"  ❌ Error: {info['error']}")
            if state == "connected":
                output.append(f"  🔧 Tools: {info['tools']}")
                output.append(f"  📄 Resources: {info['resources']}")
                output.append(f"  💬 Prompts: {info['prompts']}")
            output.append("")
        return "\n".join(output).rstrip() + "\n"

    def _list_capabilities(self) -> str:
        tools = self.manager.get_all_tools()
        resources = self.manager.get_all_resources()
        prompts = self.manager.get_all_prompts()

        if not tools and not resources and not prompts:
            return (
                "# 🛠️ MCP Capabilities\n\n"
                "No tools, resources, or prompts available. Connect some MCP servers first."
            )

        output = ["# 🛠️ MCP Capabilities", ""]

        if tools:
            output.append("## 🔧 Tools")
            for tool in tools:
                output.append(f"- **{tool.name}** ({tool.server}): {tool.description}")
            output.append("")

        if resources:
            output.append("## 📄 Resources")
            for resource in resources:
                output.append(f"- **{resource.name}** ({resource.server}): {resource.uri}")
                if resource.description:
                    output.append(f"  {resource.description}")
            output.append("")

        if prompts:
            output.append("## 💬 Prompts")
            for prompt in prompts:
                output.append(f"- **{prompt.name}** ({prompt.server})")
                if prompt.description:
                    output.append(f"  {prompt.description}")
            output.append("")

        output.append(f"**Total:** {len(tools)} tools, {len(resources)} resources, {len(prompts)} prompts")
        return "\n".join(output)

    # ---- Mutations ----

    async def _add_server(self, name: str, server_config: Dict[str, Any]) -> str:
        config = MCPServerConfig.from_dict(name, server_config)
        await self.manager.add_server(config)
        if not config.enabled:
            return f"✅ Added MCP server '{name}' (disabled)."
        return f"✅ Added MCP server '{name}'. Connected."

    async def _call_tool(self, server_name: str, tool_name: str, arguments: Dict[str, Any]) -> ToolResult:
        try:
            result = await self.manager.call_tool(server_name, tool_name, arguments) or {}
        except MCPClientError as e:
            logger.error(f"MCP tool call {server_name}/{tool_name} failed: {e}")
            return self._error(str(e))

        content = format_content_blocks(result.get("content", []))
        if result.get("isError"):
            return ToolResult(
                tool_name=self.name,
                success=False,
                content=content,
                raw=result,
                error=content or f"Tool '{tool_name}' reported an error",
            )
        return ToolResult(tool_name=self.name, success=True, content=content, raw=result)
