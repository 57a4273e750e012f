"""MCP (Model Context Protocol) integration for amai-code.

Provides:
- MCPClient: JSON-RPC session with one server (handshake, discovery, calls)
- StdioTransport / HttpTransport: byte channels (stdio, http, sse)
- MCPManager: Multi-server registry, lifecycle and routed calls
- MCPToolAdapter: Wraps MCP tools as BaseTool instances
- MCPManagerTool: Markdown management tool over the manager
- MCPServerConfig: Server descriptor with JSON persistence
"""

from amai_code.tools.mcp.mcp_client import MCPClient, SessionState
from amai_code.tools.mcp.mcp_config import MCPServerConfig, load_mcp_config, save_mcp_config
from amai_code.tools.mcp.mcp_errors import (
    MCPClientError,
    MCPConnectionError,
    MCPLaunchError,
    MCPNotInitializedError,
    MCPProtocolError,
    MCPServerNotConnectedError,
    MCPServerNotFoundError,
    MCPTimeoutError,
    MCPToolCallError,
)
from amai_code.tools.mcp.mcp_manager import MCPManager
from amai_code.tools.mcp.mcp_manager_tool import MCPManagerTool
from amai_code.tools.mcp.mcp_protocol import (
    MCPEvent,
    MCPEventKind,
    MCPPrompt,
    MCPResource,
    MCPTool,
    NotificationKind,
)
from amai_code.tools.mcp.mcp_tool_adapter import MCPToolAdapter
from amai_code.tools.mcp.mcp_transport import HttpTransport, StdioTransport

__all__ = [
    "HttpTransport",
    "MCPClient",
    "MCPClientError",
    "MCPConnectionError",
    "MCPEvent",
    "MCPEventKind",
    "MCPLaunchError",
    "MCPManager",
    "MCPManagerTool",
    "MCPNotInitializedError",
    "MCPPrompt",
    "MCPProtocolError",
    "MCPResource",
    "MCPServerConfig",
    "MCPServerNotConnectedError",
    "MCPServerNotFoundError",
    "MCPTimeoutError",
    "MCPTool",
    "MCPToolAdapter",
    "MCPToolCallError",
    "NotificationKind",
    "SessionState",
    "StdioTransport",
    "load_mcp_config",
    "save_mcp_config",
]
