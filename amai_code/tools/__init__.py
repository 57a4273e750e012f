"""
Tool architecture for amai-code.

Provides the BaseTool ABC, ToolResult and the ToolRegistry that MCP tools
are registered in.
"""

from amai_code.tools.base_tool import BaseTool, ToolResult
from amai_code.tools.tool_registry import ToolRegistry

__all__ = [
    "BaseTool",
    "ToolResult",
    "ToolRegistry",
]
