"""
Integration test: MCP over stdio against a real child process.

Spawns tests/fixtures/echo_mcp_server.py and validates the handshake,
routed tool calls, launch failures, timeouts, list_changed refreshes,
crash handling and removal of a server that is still connecting.
"""

import asyncio

import pytest

from amai_code.tools.mcp.mcp_client import MCPClient
from amai_code.tools.mcp.mcp_config import MCPServerConfig
from amai_code.tools.mcp.mcp_errors import (
    MCPClientError,
    MCPConnectionError,
    MCPLaunchError,
    MCPTimeoutError,
)
from amai_code.tools.mcp.mcp_manager import MCPManager
from amai_code.tools.mcp.mcp_protocol import MCPEventKind
from amai_code.tools.tool_registry import ToolRegistry
from mcp_fakes import wait_for

pytestmark = pytest.mark.integration


@pytest.fixture
def manager(config_path):
    return MCPManager(config_path=config_path, registry=ToolRegistry(), request_timeout=5.0)


async def _next_event(manager, kind, timeout=5.0):
    """Consume manager events until one of `kind` arrives."""

    async def consume():
        while True:
            event = await manager.events.get()
            if event.kind is kind:
                return event

    return await asyncio.wait_for(consume(), timeout)


class TestEchoRoundTrip:
    @pytest.mark.asyncio
    async def test_handshake_and_discovery(self, echo_config):
        client = MCPClient(echo_config())
        await client.connect()
        try:
            assert client.status == "connected"
            assert client.server_info == {"name": "echo-server", "version": "1.0.0"}
            assert [t.name for t in client.list_tools()] == ["echo", "hang", "grow", "crash"]
            # Unsupported lists fail in isolation
            assert client.list_resources() == []
            assert client.list_prompts() == []
        finally:
            await client.disconnect()

        assert client.status == "disconnected"
        assert client.pending_count == 0

    @pytest.mark.asyncio
    async def test_call_echo_round_trips_text(self, echo_config):
        client = MCPClient(echo_config())
        await client.connect()
        try:
            result = await client.call_tool("echo", {"text": "hi"})
        finally:
            await client.disconnect()

        assert result["content"] == [{"type": "text", "text": "hi"}]


class TestLaunchFailure:
    @pytest.mark.asyncio
    async def test_empty_command(self):
        client = MCPClient(MCPServerConfig(name="bad", command=""))
        with pytest.raises(MCPLaunchError):
            await client.connect()
        assert client.status == "error"

    @pytest.mark.asyncio
    async def test_manager_reports_error(self, manager, echo_config):
        await manager.add_server(echo_config())
        with pytest.raises(MCPLaunchError):
            await manager.add_server(MCPServerConfig(name="bad", command=""))

        status = manager.get_server_status()
        assert status["echo"]["status"] == "connected"
        assert status["bad"]["status"] == "error"
        assert manager.get_connected_servers() == ["echo"]
        await manager.shutdown()


class TestTimeout:
    @pytest.mark.asyncio
    async def test_unanswered_request_times_out(self, echo_config):
        client = MCPClient(echo_config(), request_timeout=2.0)
        await client.connect()
        try:
            with pytest.raises(MCPTimeoutError, match="Request timeout: tools/call"):
                await client.call_tool("hang")
            assert client.pending_count == 0

            # Session still usable
            result = await client.call_tool("echo", {"text": "after"})
            assert result["content"][0]["text"] == "after"
        finally:
            await client.disconnect()


class TestListChanged:
    @pytest.mark.asyncio
    async def test_tools_updated_reaches_manager(self, manager, echo_config):
        await manager.add_server(echo_config())
        try:
            while not manager.events.empty():
                manager.events.get_nowait()

            await manager.call_tool("echo", "grow")
            event = await _next_event(manager, MCPEventKind.TOOLS_UPDATED)

            assert event.server == "echo"
            assert "reverse" in [t.name for t in event.payload]
            assert "mcp_echo_reverse" in manager.registry

            result = await manager.call_tool("echo", "reverse", {"text": "abc"})
            assert result["content"][0]["text"] == "cba"
        finally:
            await manager.shutdown()


class TestCrash:
    @pytest.mark.asyncio
    async def test_crash_rejects_pending_and_reports_error(self, manager, echo_config):
        await manager.add_server(echo_config())

        with pytest.raises(MCPConnectionError, match="exited with code 3"):
            await manager.call_tool("echo", "crash")

        await wait_for(lambda: manager.get_client("echo") is None)
        assert manager.get_server_status()["echo"]["status"] == "error"
        assert "mcp_echo_echo" not in manager.registry


class TestRemoveWhileConnecting:
    @pytest.mark.asyncio
    async def test_no_dangling_process(self, manager, echo_config):
        add_task = asyncio.create_task(
            manager.add_server(echo_config("slow", extra_args=["--init-delay", "1"]))
        )

        def spawned():
            client = manager.get_client("slow")
            return client is not None and client.transport is not None and client.transport.pid is not None

        await wait_for(spawned, timeout=5.0)
        transport = manager.get_client("slow").transport

        await manager.remove_server("slow")

        assert not transport.running
        assert manager.get_server_config("slow") is None
        assert manager.get_servers() == []
        with pytest.raises(MCPClientError):
            await add_task
        assert manager.get_client("slow") is None
