"""
Unit tests for MCP Manager — multi-server registry and lifecycle.

Servers are FakeMCPServer instances registered by command name; a command
with no registered fake fails to launch like a missing binary.
"""

import asyncio
import json

import pytest

from amai_code.tools.mcp.mcp_config import MCPServerConfig
from amai_code.tools.mcp.mcp_errors import (
    MCPConnectionError,
    MCPLaunchError,
    MCPServerNotConnectedError,
    MCPServerNotFoundError,
)
from amai_code.tools.mcp.mcp_manager import MCPManager
from amai_code.tools.mcp.mcp_protocol import MCPEventKind
from amai_code.tools.mcp.mcp_tool_adapter import MCPToolAdapter
from amai_code.tools.tool_registry import ToolRegistry
from mcp_fakes import FakeMCPServer, wait_for, write_config


# ---- Fixtures ----


@pytest.fixture
def servers(fake_servers):
    """Two healthy fake servers: alpha and beta."""
    for name in ("alpha", "beta"):
        fake_servers[f"{name}-cmd"] = FakeMCPServer(name=f"{name}-server")
    return fake_servers


@pytest.fixture
def three_server_config(config_path, servers):
    """alpha + beta healthy, broken has no binary, off is disabled."""
    return write_config(config_path, {
        "alpha": {"command": "alpha-cmd"},
        "beta": {"command": "beta-cmd"},
        "broken": {"command": "does-not-exist"},
        "off": {"command": "alpha-cmd", "enabled": False},
    })


@pytest.fixture
def registry():
    return ToolRegistry()


@pytest.fixture
def manager(config_path, registry):
    return MCPManager(config_path=config_path, registry=registry, request_timeout=0.5)


def _drain(manager):
    events = []
    while not manager.events.empty():
        events.append(manager.events.get_nowait())
    return events


def _saved(config_path):
    with open(config_path) as f:
        return json.load(f)["mcpServers"]


# ---- Tests ----


@pytest.mark.unit
class TestInitialize:
    @pytest.mark.asyncio
    async def test_missing_config_is_empty(self, manager):
        await manager.initialize()
        assert manager.get_servers() == []
        assert manager.get_server_status() == {}
        assert manager.connected_count == 0

    @pytest.mark.asyncio
    async def test_failed_server_does_not_block_others(self, manager, three_server_config, servers):
        await manager.initialize()

        status = manager.get_server_status()
        assert status["alpha"]["status"] == "connected"
        assert status["beta"]["status"] == "connected"
        assert status["broken"]["status"] == "error"
        assert "does-not-exist" in status["broken"]["error"]
        assert status["off"]["status"] == "disabled"
        assert sorted(manager.get_connected_servers()) == ["alpha", "beta"]
        assert manager.connected_count == 2

        await manager.shutdown()

    @pytest.mark.asyncio
    async def test_disabled_server_not_spawned(self, manager, three_server_config, servers):
        await manager.initialize()
        assert len(servers["alpha-cmd"].spawns) == 1  # alpha only, not "off"
        await manager.shutdown()

    @pytest.mark.asyncio
    async def test_shutdown_disconnects_all(self, manager, three_server_config, servers):
        await manager.initialize()

        await manager.shutdown()

        assert manager.connected_count == 0
        assert servers["alpha-cmd"].process.returncode == 0
        assert servers["beta-cmd"].process.returncode == 0
        assert manager.get_server_status()["alpha"]["status"] == "disconnected"


@pytest.mark.unit
class TestRoutedCalls:
    @pytest.mark.asyncio
    async def test_call_tool_routes_by_server(self, manager, three_server_config, servers):
        await manager.initialize()

        result = await manager.call_tool("beta", "echo", {"text": "to beta"})

        assert result["content"][0]["text"] == "to beta"
        assert servers["beta-cmd"].requests_for("tools/call")
        assert not servers["alpha-cmd"].requests_for("tools/call")

        await manager.shutdown()

    @pytest.mark.asyncio
    async def test_unknown_server_not_connected(self, manager):
        await manager.initialize()

        with pytest.raises(MCPServerNotConnectedError, match="Server 'nonexistent-server' not connected"):
            await manager.call_tool("nonexistent-server", "x", {})

    @pytest.mark.asyncio
    async def test_disabled_and_failed_look_the_same(self, manager, three_server_config, servers):
        await manager.initialize()

        for name in ("off", "broken"):
            with pytest.raises(MCPServerNotConnectedError):
                await manager.call_tool(name, "echo", {})
            with pytest.raises(MCPServerNotConnectedError):
                await manager.get_resource(name, "file:///x")
            with pytest.raises(MCPServerNotConnectedError):
                await manager.get_prompt(name, "review")

        await manager.shutdown()

    @pytest.mark.asyncio
    async def test_get_resource_and_prompt(self, manager, three_server_config, servers):
        await manager.initialize()

        resource = await manager.get_resource("alpha", "file:///README.md")
        prompt = await manager.get_prompt("alpha", "review", {"path": "a.py"})

        assert resource["contents"][0]["uri"] == "file:///README.md"
        assert "a.py" in prompt["messages"][0]["content"]["text"]

        await manager.shutdown()


@pytest.mark.unit
class TestAggregation:
    @pytest.mark.asyncio
    async def test_collisions_kept_with_server_tag(self, manager, three_server_config, servers):
        await manager.initialize()

        tools = manager.get_all_tools()

        echoes = [t for t in tools if t.name == "echo"]
        assert sorted(t.server for t in echoes) == ["alpha", "beta"]
        assert len(tools) == 4
        assert len(manager.get_all_resources()) == 2
        assert len(manager.get_all_prompts()) == 2

        await manager.shutdown()


@pytest.mark.unit
class TestRegistry:
    @pytest.mark.asyncio
    async def test_add_server_persists_and_connects(self, manager, config_path, servers):
        await manager.initialize()

        await manager.add_server(MCPServerConfig(name="alpha", command="alpha-cmd", description="A"))

        assert _saved(config_path) == {
            "alpha": {"transport": "stdio", "command": "alpha-cmd", "args": [], "description": "A"}
        }
        assert manager.get_connected_servers() == ["alpha"]
        assert _drain(manager)[0].kind is MCPEventKind.SERVER_ADDED

        await manager.shutdown()

    @pytest.mark.asyncio
    async def test_add_disabled_server_does_not_connect(self, manager, config_path, servers):
        await manager.add_server(MCPServerConfig(name="alpha", command="alpha-cmd", enabled=False))

        assert manager.connected_count == 0
        assert servers["alpha-cmd"].spawns == []
        assert _saved(config_path)["alpha"]["enabled"] is False

    @pytest.mark.asyncio
    async def test_add_failing_server_still_persisted(self, manager, config_path, servers):
        with pytest.raises(MCPLaunchError):
            await manager.add_server(MCPServerConfig(name="ghost", command="does-not-exist"))

        assert "ghost" in _saved(config_path)
        assert manager.get_server_status()["ghost"]["status"] == "error"

    @pytest.mark.asyncio
    async def test_add_replaces_live_session(self, manager, servers):
        await manager.add_server(MCPServerConfig(name="alpha", command="alpha-cmd"))
        first = servers["alpha-cmd"].process

        await manager.add_server(MCPServerConfig(name="alpha", command="alpha-cmd", args=["--v2"]))

        assert first.returncode == 0
        assert len(servers["alpha-cmd"].spawns) == 2
        assert manager.connected_count == 1

        await manager.shutdown()

    @pytest.mark.asyncio
    async def test_remove_server(self, manager, three_server_config, config_path, servers):
        await manager.initialize()
        _drain(manager)

        await manager.remove_server("alpha")

        assert "alpha" not in _saved(config_path)
        assert "alpha" not in manager.get_server_status()
        assert servers["alpha-cmd"].process.returncode == 0
        kinds = [e.kind for e in _drain(manager)]
        assert MCPEventKind.DISCONNECTED in kinds
        assert kinds[-1] is MCPEventKind.SERVER_REMOVED

        await manager.shutdown()

    @pytest.mark.asyncio
    async def test_unknown_names_rejected(self, manager):
        await manager.initialize()

        with pytest.raises(MCPServerNotFoundError, match="Server 'nope' not found"):
            await manager.remove_server("nope")
        with pytest.raises(MCPServerNotFoundError):
            await manager.enable_server("nope")
        with pytest.raises(MCPServerNotFoundError):
            await manager.disable_server("nope")
        with pytest.raises(MCPServerNotFoundError):
            await manager.connect_server("nope")

    @pytest.mark.asyncio
    async def test_disable_then_enable_single_session(self, manager, three_server_config, config_path, servers):
        await manager.initialize()
        before = manager.connected_count

        await manager.disable_server("alpha")
        assert manager.get_server_status()["alpha"]["status"] == "disabled"
        assert _saved(config_path)["alpha"]["enabled"] is False
        assert manager.connected_count == before - 1

        await manager.enable_server("alpha")
        assert manager.get_server_status()["alpha"]["status"] == "connected"
        assert "enabled" not in _saved(config_path)["alpha"]
        assert manager.connected_count == before

        live = [p for p in servers["alpha-cmd"].processes if p.returncode is None]
        assert len(live) == 1

        await manager.shutdown()

    @pytest.mark.asyncio
    async def test_enable_twice_single_session(self, manager, three_server_config, servers):
        await manager.initialize()

        await manager.enable_server("alpha")
        await manager.enable_server("alpha")

        live = [p for p in servers["alpha-cmd"].processes if p.returncode is None]
        assert len(live) == 1
        assert manager.connected_count == 2

        await manager.shutdown()

    @pytest.mark.asyncio
    async def test_disable_while_connecting_leaves_no_error(self, manager, three_server_config, servers):
        manager.load_config()
        servers["alpha-cmd"].silent_methods.add("initialize")

        connecting = asyncio.create_task(manager.connect_server("alpha"))
        await wait_for(lambda: servers["alpha-cmd"].requests_for("initialize"))
        await manager.disable_server("alpha")

        with pytest.raises(MCPConnectionError):
            await connecting

        status = manager.get_server_status()["alpha"]
        assert status["status"] == "disabled"
        assert status["error"] is None

    @pytest.mark.asyncio
    async def test_remove_while_connecting_leaves_no_error(self, manager, three_server_config, servers):
        manager.load_config()
        servers["alpha-cmd"].silent_methods.add("initialize")

        connecting = asyncio.create_task(manager.connect_server("alpha"))
        await wait_for(lambda: servers["alpha-cmd"].requests_for("initialize"))
        await manager.remove_server("alpha")

        with pytest.raises(MCPConnectionError):
            await connecting

        assert "alpha" not in manager.get_server_status()
        assert "alpha" not in manager._errors
        assert servers["alpha-cmd"].process.returncode is not None

    @pytest.mark.asyncio
    async def test_concurrent_connects_single_session(self, manager, three_server_config, servers):
        manager.load_config()

        await asyncio.gather(
            manager.connect_server("alpha"),
            manager.connect_server("alpha"),
            return_exceptions=True,
        )

        live = [p for p in servers["alpha-cmd"].processes if p.returncode is None]
        assert len(live) == 1
        assert manager.get_connected_servers() == ["alpha"]

        await manager.shutdown()

    @pytest.mark.asyncio
    async def test_reconnect_server(self, manager, three_server_config, servers):
        await manager.initialize()

        await manager.reconnect_server("beta")

        assert len(servers["beta-cmd"].spawns) == 2
        assert manager.get_server_status()["beta"]["status"] == "connected"

        await manager.shutdown()


@pytest.mark.unit
class TestLifecycleEvents:
    @pytest.mark.asyncio
    async def test_events_tagged_with_server(self, manager, three_server_config, servers):
        await manager.initialize()

        events = _drain(manager)

        connected = {e.server for e in events if e.kind is MCPEventKind.CONNECTED}
        assert connected == {"alpha", "beta"}
        errors = [e for e in events if e.kind is MCPEventKind.ERROR]
        assert [e.server for e in errors] == ["broken"]

        await manager.shutdown()

    @pytest.mark.asyncio
    async def test_crashed_server_removed(self, manager, three_server_config, servers):
        await manager.initialize()

        servers["alpha-cmd"].exit(2)
        await wait_for(lambda: "alpha" not in manager.get_connected_servers())

        status = manager.get_server_status()["alpha"]
        assert status["status"] == "error"
        assert "exited with code 2" in status["error"]
        with pytest.raises(MCPServerNotConnectedError):
            await manager.call_tool("alpha", "echo", {})

        await manager.shutdown()

    @pytest.mark.asyncio
    async def test_event_queue_drops_oldest(self, config_path, servers):
        manager = MCPManager(config_path=config_path, event_queue_size=2)

        await manager.add_server(MCPServerConfig(name="alpha", command="alpha-cmd"))

        events = _drain(manager)
        assert len(events) == 2
        assert events[-1].kind is MCPEventKind.CONNECTED

        await manager.shutdown()


@pytest.mark.unit
class TestToolRegistration:
    @pytest.mark.asyncio
    async def test_adapters_registered(self, manager, registry, three_server_config, servers):
        await manager.initialize()

        names = sorted(t.name for t in registry.list_tools(category="mcp"))
        assert names == ["mcp_alpha_add", "mcp_alpha_echo", "mcp_beta_add", "mcp_beta_echo"]
        adapter = registry.get("mcp_beta_echo")
        assert isinstance(adapter, MCPToolAdapter)
        assert adapter.server_name == "beta"

        await manager.shutdown()
        assert len(registry) == 0

    @pytest.mark.asyncio
    async def test_adapters_follow_list_changes(self, manager, registry, three_server_config, servers):
        await manager.initialize()

        servers["alpha-cmd"].tools = [{"name": "status"}]
        servers["alpha-cmd"].notify("notifications/tools/list_changed")
        await wait_for(lambda: "mcp_alpha_status" in registry)

        assert "mcp_alpha_echo" not in registry
        assert "mcp_beta_echo" in registry

        await manager.shutdown()

    @pytest.mark.asyncio
    async def test_adapters_removed_on_disable_and_crash(self, manager, registry, three_server_config, servers):
        await manager.initialize()

        await manager.disable_server("alpha")
        assert "mcp_alpha_echo" not in registry

        servers["beta-cmd"].exit(1)
        await wait_for(lambda: "mcp_beta_echo" not in registry)
        assert len(registry) == 0

        await manager.shutdown()

    @pytest.mark.asyncio
    async def test_adapter_executes_through_manager(self, manager, registry, three_server_config, servers):
        await manager.initialize()

        result = await registry.get("mcp_alpha_echo").execute(text="via adapter")

        assert result.success
        assert result.content == "via adapter"
        assert servers["alpha-cmd"].last_request("tools/call")["params"]["name"] == "echo"

        await manager.shutdown()
