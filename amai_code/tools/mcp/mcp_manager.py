"""
MCP Manager — lifecycle management for MCP servers.

Handles the full lifecycle of MCP server connections:
- Load the server registry (missing file = empty registry)
- Connect enabled servers concurrently, each failure isolated
- Add / remove / enable / disable servers, persisting every change
- Route calls to the live client of a named server
- Aggregate tools, resources and prompts across live clients
- Register discovered tools in the ToolRegistry (optional)
- Publish lifecycle events tagged with the server name on `events`

At most one live client exists per server name: connecting a name that
already has a client disconnects and discards the old one first.

Usage:
    manager = MCPManager(registry=tool_registry)
    await manager.initialize()
    result = await manager.call_tool("git", "git_status", {"repo_path": "."})
    await manager.shutdown()
"""

import asyncio
import functools
import logging
from typing import Any, Dict, List, Optional

from amai_code.tools.mcp.mcp_client import REQUEST_TIMEOUT, MCPClient
from amai_code.tools.mcp.mcp_config import MCPServerConfig, load_mcp_config, save_mcp_config
from amai_code.tools.mcp.mcp_errors import (
    MCPClientError,
    MCPConnectionError,
    MCPServerNotConnectedError,
    MCPServerNotFoundError,
)
from amai_code.tools.mcp.mcp_protocol import MCPEvent, MCPEventKind, MCPPrompt, MCPResource, MCPTool
from amai_code.tools.mcp.mcp_tool_adapter import MCPToolAdapter
from amai_code.tools.tool_registry import ToolRegistry

logger = logging.getLogger(__name__)

EVENT_QUEUE_SIZE = 1000


class MCPManager:
    """Manages the lifecycle of all MCP server connections.

    Attributes:
        config_path: Registry file path (None = default location)
        registry: ToolRegistry for registering/unregistering MCP tools (optional)
        request_timeout: Per-request timeout handed to every client
        events: Queue of MCPEvent for every client and registry change
        _configs: Server configurations by name
        _clients: Live MCPClient instances by server name
        _errors: Last connection error per server name
        _tool_names: Adapter names registered per server (for cleanup)
    """

    def __init__(
        self,
        config_path: Optional[str] = None,
        registry: Optional[ToolRegistry] = None,
        request_timeout: float = REQUEST_TIMEOUT,
        event_queue_size: int = EVENT_QUEUE_SIZE,
    ):
        self.config_path = config_path
        self.registry = registry
        self.request_timeout = request_timeout
        self.events: "asyncio.Queue[MCPEvent]" = asyncio.Queue(maxsize=event_queue_size)

        self._configs: Dict[str, MCPServerConfig] = {}
        self._clients: Dict[str, MCPClient] = {}
        self._errors: Dict[str, str] = {}
        self._tool_names: Dict[str, List[str]] = {}  # server_name → [adapter names]

    # ---- Lifecycle ----

    def load_config(self) -> Dict[str, MCPServerConfig]:
        """Load the server registry without connecting anything."""
        self._configs = load_mcp_config(self.config_path)
        return self._configs

    async def initialize(self) -> None:
        """Load configs and connect all enabled MCP servers.

        Servers connect concurrently. A failure is logged and recorded for
        that server only; the others keep connecting.
        """
        self.load_config()

        if not self._configs:
            logger.info("No MCP servers configured")
            return

        logger.info(f"Loaded {len(self._configs)} MCP server configs")

        enabled = [name for name, config in self._configs.items() if config.enabled]
        for name in self._configs:
            if name not in enabled:
                logger.debug(f"MCP server '{name}' is disabled, skipping")

        results = await asyncio.gather(
            *(self.connect_server(name) for name in enabled),
            return_exceptions=True,
        )
        for name, result in zip(enabled, results):
            if isinstance(result, BaseException):
                logger.warning(f"Failed to start MCP server '{name}': {result}")

        logger.info(f"MCP servers connected: {self.connected_count}/{len(enabled)}")

    async def shutdown(self) -> None:
        """Disconnect all MCP servers and unregister their tools."""
        names = list(self._clients.keys())
        results = await asyncio.gather(
            *(self.disconnect_server(name) for name in names),
            return_exceptions=True,
        )
        for name, result in zip(names, results):
            if isinstance(result, BaseException):
                logger.error(f"Error disconnecting MCP server '{name}': {result}")

    async def connect_server(self, name: str) -> None:
        """Connect to a configured server, replacing any existing client.

        Args:
            name: Server name from config

        Raises:
            MCPServerNotFoundError: If the server is not configured
            MCPClientError: If the connection fails (also recorded for status)
        """
        config = self._configs.get(name)
        if config is None:
            raise MCPServerNotFoundError(name)

        # Never two live sessions for one name
        while name in self._clients:
            await self.disconnect_server(name)

        client = MCPClient(config, request_timeout=self.request_timeout)
        client.on_event = functools.partial(self._on_client_event, client)
        self._clients[name] = client
        self._errors.pop(name, None)

        try:
            await client.connect()
        except MCPClientError as e:
            if self._clients.get(name) is client:
                del self._clients[name]
            # Removed or disabled meanwhile: nothing to report
            current = self._configs.get(name)
            if name not in self._clients and current is not None and current.enabled:
                self._errors[name] = str(e)
            raise

        if self._clients.get(name) is not client:
            await client.disconnect()
            raise MCPConnectionError(f"MCP server '{name}' was replaced while connecting")

        logger.info(f"MCP server '{name}' connected with {len(client.list_tools())} tools")

    async def disconnect_server(self, name: str) -> None:
        """Disconnect from a server and unregister its tools.

        No-op if the server has no live client.
        """
        client = self._clients.pop(name, None)
        self._unregister_tools(name)

        if client is None:
            logger.debug(f"MCP server '{name}' has no live client")
            return

        try:
            await client.disconnect()
        except Exception as e:
            logger.warning(f"Error disconnecting MCP client '{name}': {e}")

        logger.info(f"MCP server '{name}' disconnected")

    async def reconnect_server(self, name: str) -> None:
        """Reconnect to a server (disconnect then connect)."""
        await self.disconnect_server(name)
        await self.connect_server(name)

    # ---- Registry ----

    async def add_server(self, config: MCPServerConfig) -> None:
        """Insert or overwrite a server, persist, and connect it if enabled.

        The descriptor is persisted even when the connection then fails.

        Raises:
            MCPClientError: If the server is enabled and fails to connect
        """
        replaced = config.name in self._configs
        self._configs[config.name] = config
        self._save()

        logger.info(f"MCP server {'updated' if replaced else 'added'}: {config.name}")
        self._publish(MCPEvent(kind=MCPEventKind.SERVER_ADDED, server=config.name))

        if config.enabled:
            await self.connect_server(config.name)
        else:
            await self.disconnect_server(config.name)

    async def remove_server(self, name: str) -> None:
        """Disconnect (if live), delete and persist.

        Raises:
            MCPServerNotFoundError: If the server is not configured
        """
        if name not in self._configs:
            raise MCPServerNotFoundError(name)

        await self.disconnect_server(name)
        del self._configs[name]
        self._errors.pop(name, None)
        self._save()

        logger.info(f"MCP server removed: {name}")
        self._publish(MCPEvent(kind=MCPEventKind.SERVER_REMOVED, server=name))

    async def enable_server(self, name: str) -> None:
        """Mark a server enabled, persist, and connect it.

        Raises:
            MCPServerNotFoundError: If the server is not configured
            MCPClientError: If the connection fails
        """
        config = self._configs.get(name)
        if config is None:
            raise MCPServerNotFoundError(name)

        config.enabled = True
        self._save()
        logger.info(f"MCP server enabled: {name}")
        self._publish(MCPEvent(kind=MCPEventKind.SERVER_ENABLED, server=name))

        await self.connect_server(name)

    async def disable_server(self, name: str) -> None:
        """Mark a server disabled, persist, and disconnect it.

        Raises:
            MCPServerNotFoundError: If the server is not configured
        """
        config = self._configs.get(name)
        if config is None:
            raise MCPServerNotFoundError(name)

        config.enabled = False
        self._save()
        self._errors.pop(name, None)
        logger.info(f"MCP server disabled: {name}")
        self._publish(MCPEvent(kind=MCPEventKind.SERVER_DISABLED, server=name))

        await self.disconnect_server(name)

    def get_servers(self) -> List[MCPServerConfig]:
        """All configured servers, enabled or not."""
        return list(self._configs.values())

    def get_server_config(self, name: str) -> Optional[MCPServerConfig]:
        return self._configs.get(name)

    def get_client(self, name: str) -> Optional[MCPClient]:
        """Live client for a server, if any."""
        return self._clients.get(name)

    def get_connected_servers(self) -> List[str]:
        """Names of servers whose session is Ready."""
        return [name for name, client in self._clients.items() if client.connected]

    @property
    def connected_count(self) -> int:
        return len(self.get_connected_servers())

    # ---- Aggregation ----

    def get_all_tools(self) -> List[MCPTool]:
        """Tools of every live client. Name collisions are kept, told apart by `server`."""
        return [tool for client in self._clients.values() for tool in client.list_tools()]

    def get_all_resources(self) -> List[MCPResource]:
        return [resource for client in self._clients.values() for resource in client.list_resources()]

    def get_all_prompts(self) -> List[MCPPrompt]:
        return [prompt for client in self._clients.values() for prompt in client.list_prompts()]

    # ---- Routed calls ----

    async def call_tool(
        self,
        server: str,
        tool: str,
        arguments: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Call a tool on a named server.

        Raises:
            MCPServerNotConnectedError: If the server has no live client
        """
        return await self._require_client(server).call_tool(tool, arguments)

    async def get_resource(self, server: str, uri: str) -> Dict[str, Any]:
        """Read a resource from a named server."""
        return await self._require_client(server).read_resource(uri)

    async def get_prompt(
        self,
        server: str,
        name: str,
        arguments: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Fetch a prompt from a named server."""
        return await self._require_client(server).get_prompt(name, arguments)

    def _require_client(self, server: str) -> MCPClient:
        client = self._clients.get(server)
        if client is None:
            raise MCPServerNotConnectedError(server)
        return client

    # ---- Status ----

    def get_server_status(self) -> Dict[str, Dict[str, Any]]:
        """Get status of all configured MCP servers.

        Returns:
            Dict of server_name → {status, enabled, transport, description,
            tools, resources, prompts, error}. status is one of
            disabled | connecting | connected | disconnected | error.
        """
        status = {}
        for name, config in self._configs.items():
            client = self._clients.get(name)

            if not config.enabled:
                state = "disabled"
            elif client is not None:
                state = client.status
            elif name in self._errors:
                state = "error"
            else:
                state = "disconnected"

            status[name] = {
                "status": state,
                "enabled": config.enabled,
                "transport": config.transport,
                "description": config.description,
                "tools": len(client.list_tools()) if client else 0,
                "resources": len(client.list_resources()) if client else 0,
                "prompts": len(client.list_prompts()) if client else 0,
                "error": self._errors.get(name),
            }
        return status

    # ---- Events / tool registration ----

    def _on_client_event(self, client: MCPClient, event: MCPEvent) -> None:
        """Sink for one client's events. Stale clients only get forwarded."""
        name = event.server
        current = self._clients.get(name) is client

        if event.kind in (MCPEventKind.DISCONNECTED, MCPEventKind.ERROR):
            if current:
                del self._clients[name]
                self._unregister_tools(name)
                if event.kind is MCPEventKind.ERROR:
                    self._errors[name] = event.error or "unknown error"
        elif event.kind is MCPEventKind.TOOLS_UPDATED and current:
            self._register_tools(name, event.payload or [])

        self._publish(event)

    def _publish(self, event: MCPEvent) -> None:
        if self.events.full():
            self.events.get_nowait()
            logger.debug("MCP event queue full, dropped oldest event")
        self.events.put_nowait(event)

    def _register_tools(self, server_name: str, mcp_tools: List[MCPTool]) -> int:
        """Register MCP tools in the ToolRegistry, replacing the server's previous set.

        Returns:
            Number of tools registered
        """
        if self.registry is None:
            return 0

        self._unregister_tools(server_name)

        tool_names = []
        for tool in mcp_tools:
            adapter = MCPToolAdapter(server_name=server_name, tool=tool, manager=self)
            self.registry.register(adapter)
            tool_names.append(adapter.name)
            logger.debug(f"Registered MCP tool: {adapter.name}")

        self._tool_names[server_name] = tool_names
        return len(tool_names)

    def _unregister_tools(self, server_name: str) -> None:
        tool_names = self._tool_names.pop(server_name, [])
        if self.registry is None or not tool_names:
            return
        for tool_name in tool_names:
            self.registry.unregister(tool_name)
        logger.debug(f"Unregistered {len(tool_names)} tools from MCP server '{server_name}'")

    def _save(self) -> None:
        save_mcp_config(self._configs, self.config_path)
