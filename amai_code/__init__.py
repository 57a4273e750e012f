"""amai-code: MCP client, transports and server manager for the amai-code assistant."""

__version__ = "1.0.0"
