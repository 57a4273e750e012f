"""
MCP Tool Adapter — wraps one MCP tool descriptor as a BaseTool.

Each MCP server exposes multiple tools via tools/list. MCPToolAdapter
wraps one such tool so it can be registered in the ToolRegistry and
used like any built-in tool. Calls always go through the manager by
(server, tool) pair, so two servers offering the same tool name never
shadow each other.

Name convention: mcp_{server_name}_{tool_name}
Category: "mcp"
"""

import logging
from typing import Any, Dict, List

from amai_code.tools.base_tool import BaseTool, ToolResult
from amai_code.tools.mcp.mcp_protocol import MCPTool

logger = logging.getLogger(__name__)


def format_content_blocks(blocks: List[Dict[str, Any]]) -> str:
    """Flatten MCP content blocks (text, image, resource) into text."""
    text_parts = []
    for block in blocks or []:
        if not isinstance(block, dict):
            text_parts.append(str(block))
            continue
        block_type = block.get("type", "text")
        if block_type == "text":
            text_parts.append(block.get("text", ""))
        elif block_type == "image":
            text_parts.append(f"[Image: {block.get('mimeType', 'image')}]")
        elif block_type == "resource":
            resource = block.get("resource", {})
            text_parts.append(
                f"[Resource: {resource.get('uri', 'unknown')}]\n"
                f"{resource.get('text', '')}"
            )
        else:
            text_parts.append(f"[{block_type}: {block}]")
    return "\n".join(text_parts)


class MCPToolAdapter(BaseTool):
    """Adapts a single MCP tool (from tools/list) to the BaseTool interface.

    Attributes:
        name: "mcp_{server_name}_{tool_name}"
        display_name: "[server] tool"
        description: Tool description from the MCP server
        category: Always "mcp"
        server_name: Name of the MCP server this tool belongs to
        mcp_tool_name: Original tool name from the MCP server
    """

    category = "mcp"

    def __init__(self, server_name: str, tool: MCPTool, manager: Any):
        """
        Args:
            server_name: MCP server name (from config)
            tool: Tool descriptor from discovery
            manager: MCPManager routing the call (avoid circular import)
        """
        self.name = f"mcp_{server_name}_{tool.name}"
        self.display_name = f"[{server_name}] {tool.name}"
        self.description = tool.description or f"MCP tool: {tool.name}"
        self.server_name = server_name
        self.mcp_tool_name = tool.name
        self._input_schema = tool.input_schema or {"type": "object", "properties": {}}
        self._manager = manager

    @property
    def parameters_schema(self) -> Dict[str, Any]:
        """Return the MCP server's inputSchema for this tool."""
        return self._input_schema

    async def execute(self, **kwargs) -> ToolResult:
        """Call the tool on its server and convert the content blocks.

        A result flagged isError by the server becomes a failed ToolResult
        carrying the server's text.
        """
        try:
            result = await self._manager.call_tool(self.server_name, self.mcp_tool_name, kwargs)
        except Exception as e:
            logger.error(f"MCP tool '{self.name}' execution failed: {e}")
            return ToolResult(tool_name=self.name, success=False, error=str(e))

        result = result or {}
        content = format_content_blocks(result.get("content", []))

        if result.get("isError"):
            logger.warning(f"MCP tool '{self.name}' reported an error")
            return ToolResult(
                tool_name=self.name,
                success=False,
                content=content,
                raw=result,
                error=content or "Tool reported an error",
            )

        return ToolResult(tool_name=self.name, success=True, content=content, raw=result)

    async def health_check(self) -> bool:
        """Check if the owning server still has a Ready session."""
        client = self._manager.get_client(self.server_name)
        return client is not None and client.connected
