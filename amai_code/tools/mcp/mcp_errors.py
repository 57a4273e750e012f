"""
Exceptions raised by the MCP client, transports and manager.
"""

from typing import Any, Optional


class MCPClientError(Exception):
    """Base exception for MCP client errors."""

    pass


class MCPConnectionError(MCPClientError):
    """Failed to connect to or communicate with MCP server."""

    pass


class MCPLaunchError(MCPConnectionError):
    """Transport could not be started (missing command, exec failure, no URL)."""

    pass


class MCPServerNotConnectedError(MCPConnectionError):
    """A routed call named a server that has no live client."""

    def __init__(self, server_name: str):
        self.server_name = server_name
        super().__init__(f"Server '{server_name}' not connected")


class MCPNotInitializedError(MCPClientError):
    """An operation was attempted before the session reached Ready."""

    pass


class MCPProtocolError(MCPClientError):
    """The server answered with a JSON-RPC error object."""

    def __init__(self, code: int, message: str, data: Optional[Any] = None):
        self.code = code
        self.message = message
        self.data = data
        super().__init__(f"MCP error {code}: {message}")


class MCPTimeoutError(MCPClientError):
    """No response arrived within the request timeout."""

    def __init__(self, method: str, request_id: int, timeout: float):
        self.method = method
        self.request_id = request_id
        self.timeout = timeout
        super().__init__(
            f"Request timeout: {method} (id={request_id}) got no response in {timeout:g}s"
        )


class MCPToolCallError(MCPClientError):
    """Error executing an MCP tool call."""

    pass


class MCPServerNotFoundError(MCPClientError):
    """A registry operation named a server that is not configured."""

    def __init__(self, server_name: str):
        self.server_name = server_name
        super().__init__(f"Server '{server_name}' not found")
