"""
Integration Tests - MCP over real child processes

Tests spawn tests/fixtures/echo_mcp_server.py with the current interpreter
and drive it through MCPClient and MCPManager.

Test files:
- test_mcp_stdio.py: Handshake, routed calls, timeouts, list changes, crashes
"""
