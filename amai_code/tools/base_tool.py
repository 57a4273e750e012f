"""
Base tool interfaces shared by built-in tools and MCP adapters.

Provides:
- ToolResult: Structured result from tool execution
- BaseTool: Abstract base every registered tool implements
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


@dataclass
class ToolResult:
    """Structured result from a tool execution.

    Attributes:
        tool_name: Name of the tool that produced this result
        success: Whether the tool executed successfully
        content: Human/LLM-readable result text
        raw: Raw result data (for programmatic use)
        error: Error description if success=False
        executed_at: ISO timestamp of execution
    """

    tool_name: str
    success: bool
    content: str = ""
    raw: Any = None
    error: Optional[str] = None
    executed_at: str = field(default_factory=lambda: datetime.now().isoformat())

    def to_context_string(self) -> str:
        """Format the result for insertion into the model conversation."""
        if not self.success:
            return f"[Tool: {self.tool_name}] ERROR: {self.error}"
        return f"[Tool: {self.tool_name}]\n{self.content}"


class BaseTool(ABC):
    """Abstract base class for every tool the assistant can call.

    Attributes:
        name: Unique slug (e.g. "mcp_manager", "mcp_git_git_status")
        display_name: Human-readable name for listings
        description: Model-facing description
        category: "builtin" or "mcp"
    """

    name: str = ""
    display_name: str = ""
    description: str = ""
    category: str = "builtin"

    @property
    @abstractmethod
    def parameters_schema(self) -> Dict[str, Any]:
        """JSON Schema for tool parameters.

        Example:
            {
                "type": "object",
                "properties": {
                    "action": {"type": "string", "enum": ["list", "status"]}
                },
                "required": ["action"]
            }
        """
        ...

    @abstractmethod
    async def execute(self, **kwargs) -> ToolResult:
        """Execute the tool with the given parameters.

        Returns:
            ToolResult with success/failure and content
        """
        ...

    async def health_check(self) -> bool:
        return True

    def to_function_spec(self) -> Dict[str, Any]:
        """OpenAI-style function-calling spec (OpenAI, OpenRouter, Ollama providers)."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters_schema,
            },
        }

    def to_prompt_description(self) -> str:
        """Plaintext description for providers without native tool calling."""
        schema = self.parameters_schema
        props = schema.get("properties", {})
        required = set(schema.get("required", []))

        params_desc = []
        for param_name, param_info in props.items():
            req_marker = "required" if param_name in required else "optional"
            enum_vals = param_info.get("enum")
            enum_str = f"[one of: {', '.join(str(v) for v in enum_vals)}]" if enum_vals else ""
            detail = " ".join(part for part in (param_info.get("description", ""), enum_str) if part)
            params_desc.append(
                f"  - {param_name} ({param_info.get('type', 'string')}, {req_marker}): {detail}"
            )

        params_block = "\n".join(params_desc) if params_desc else "  (no parameters)"
        return f"- **{self.name}**: {self.description}\n  Parameters:\n{params_block}"

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} name={self.name!r} category={self.category!r}>"
