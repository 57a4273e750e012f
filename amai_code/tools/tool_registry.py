"""
Tool Registry — single source of truth for the tools offered to the model.

MCP adapters come and go with their servers; the MCPManager registers and
unregisters them here as sessions connect, refresh and drop.
"""

import logging
from typing import Dict, List, Optional

from amai_code.tools.base_tool import BaseTool

logger = logging.getLogger(__name__)


class ToolRegistry:
    """Registry of available tools keyed by name."""

    def __init__(self):
        self.tools: Dict[str, BaseTool] = {}

    def register(self, tool: BaseTool):
        """Register a tool. Overwrites on name collision (MCP reconnects)."""
        if tool.name in self.tools:
            logger.warning(f"Overwriting existing tool: {tool.name}")
        self.tools[tool.name] = tool
        logger.info(f"Registered tool: {tool.name} (category={tool.category})")

    def unregister(self, tool_name: str) -> bool:
        """Unregister a tool.

        Returns:
            True if the tool was found and removed
        """
        if tool_name in self.tools:
            del self.tools[tool_name]
            logger.info(f"Unregistered tool: {tool_name}")
            return True
        return False

    def get(self, tool_name: str) -> Optional[BaseTool]:
        return self.tools.get(tool_name)

    def list_tools(self, category: Optional[str] = None) -> List[BaseTool]:
        """List tools, optionally filtered by category ("builtin", "mcp")."""
        result = list(self.tools.values())
        if category:
            result = [t for t in result if t.category == category]
        return result

    def get_function_specs(self) -> List[dict]:
        """Function-calling specs for every registered tool."""
        return [tool.to_function_spec() for tool in self.tools.values()]

    def get_prompt_descriptions(self) -> str:
        """Plaintext descriptions of every registered tool."""
        return "\n\n".join(tool.to_prompt_description() for tool in self.tools.values())

    def __contains__(self, tool_name: str) -> bool:
        return tool_name in self.tools

    def __len__(self) -> int:
        return len(self.tools)
