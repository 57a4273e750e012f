"""
MCP Client — one JSON-RPC session with one MCP server.

Protocol flow:
  → initialize(protocolVersion, capabilities, clientInfo)
  ← result {capabilities, serverInfo}
  → notifications/initialized
  → tools/list, resources/list, prompts/list   (concurrently)
  ← {tools: [...]}, {resources: [...]}, {prompts: [...]}
  → tools/call | resources/read | prompts/get
  ← result

States:
  DISCONNECTED → CONNECTING → INITIALIZING → READY → (DISCONNECTED | FAILED)

Requests are correlated by a strictly increasing integer id. Each pending
request holds a future and a cancellable timeout; whichever of response,
timeout or disconnect comes first settles it, and the entry is popped in the
same step so nothing can settle it twice. A background reader task drains
the transport and dispatches responses, server requests and notifications.

Lifecycle: connect() → call_tool() / read_resource() / get_prompt() → disconnect()
"""

import asyncio
import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set

from amai_code.tools.mcp.mcp_config import MCPServerConfig
from amai_code.tools.mcp.mcp_errors import (
    MCPClientError,
    MCPConnectionError,
    MCPNotInitializedError,
    MCPProtocolError,
    MCPTimeoutError,
    MCPToolCallError,
)
from amai_code.tools.mcp.mcp_protocol import (
    ErrorCodes,
    MCPEvent,
    MCPEventKind,
    MCPPrompt,
    MCPResource,
    MCPTool,
    NotificationKind,
    initialize_params,
    is_notification,
    is_request,
    is_response,
    make_error_response,
    make_notification,
    make_request,
    make_response,
)
from amai_code.tools.mcp.mcp_transport import MCPTransport, create_transport

logger = logging.getLogger(__name__)

REQUEST_TIMEOUT = 30.0

# How long to wait for an exit code once the server closed stdout
EXIT_WAIT_TIMEOUT = 2.0

_SERVER_LOG_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "notice": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "critical": logging.CRITICAL,
    "alert": logging.CRITICAL,
    "emergency": logging.CRITICAL,
}


class SessionState(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    INITIALIZING = "initializing"
    READY = "ready"
    FAILED = "failed"

    @property
    def status(self) -> str:
        """Externally reported status: connecting | connected | disconnected | error."""
        return _STATUS_BY_STATE[self]


_STATUS_BY_STATE = {
    SessionState.DISCONNECTED: "disconnected",
    SessionState.CONNECTING: "connecting",
    SessionState.INITIALIZING: "connecting",
    SessionState.READY: "connected",
    SessionState.FAILED: "error",
}


@dataclass
class _PendingRequest:
    method: str
    future: asyncio.Future
    timer: asyncio.TimerHandle


class MCPClient:
    """JSON-RPC client for a single MCP server.

    Usage:
        client = MCPClient(MCPServerConfig(name="git", command="uvx", args=["mcp-server-git"]))
        await client.connect()
        tools = client.list_tools()
        result = await client.call_tool("git_status", {"repo_path": "."})
        await client.disconnect()

    Attributes:
        config: Server configuration this session was built from
        name: Server name, stamped on every descriptor and event
        on_event: Sink receiving MCPEvent objects (set by the owning manager)
        request_timeout: Seconds before a pending request is rejected
    """

    def __init__(
        self,
        config: MCPServerConfig,
        on_event: Optional[Callable[[MCPEvent], None]] = None,
        request_timeout: float = REQUEST_TIMEOUT,
    ):
        self.config = config
        self.name = config.name
        self.on_event = on_event
        self.request_timeout = request_timeout

        self._state = SessionState.DISCONNECTED
        self._transport: Optional[MCPTransport] = None
        self._reader_task: Optional[asyncio.Task] = None
        self._tasks: Set[asyncio.Task] = set()

        self._request_id: int = 0
        self._pending: Dict[int, _PendingRequest] = {}

        self._server_capabilities: Dict[str, Any] = {}
        self._server_info: Dict[str, Any] = {}
        self._last_error: Optional[str] = None

        self._tools: List[MCPTool] = []
        self._resources: List[MCPResource] = []
        self._prompts: List[MCPPrompt] = []

    # ---- State ----

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def status(self) -> str:
        return self._state.status

    @property
    def connected(self) -> bool:
        """Whether the session is Ready."""
        return self._state is SessionState.READY

    @property
    def server_capabilities(self) -> Dict[str, Any]:
        return self._server_capabilities

    @property
    def server_info(self) -> Dict[str, Any]:
        return self._server_info

    @property
    def last_error(self) -> Optional[str]:
        return self._last_error

    @property
    def pending_count(self) -> int:
        """Number of requests still awaiting a response."""
        return len(self._pending)

    @property
    def transport(self) -> Optional[MCPTransport]:
        return self._transport

    # ---- Lifecycle ----

    async def connect(self) -> None:
        """Open the transport, run the handshake and discover capabilities.

        Raises:
            MCPLaunchError: If the transport cannot be started
            MCPConnectionError: If the handshake fails or the session is torn down meanwhile
            MCPTimeoutError: If initialize gets no response in time
            MCPProtocolError: If initialize is rejected by the server
        """
        if self._state in (SessionState.CONNECTING, SessionState.INITIALIZING, SessionState.READY):
            logger.warning(f"MCP client '{self.name}' already connected")
            return

        self._last_error = None
        self._set_state(SessionState.CONNECTING)
        logger.info(f"Connecting to MCP server: {self.name} ({self.config.transport})")

        try:
            transport = create_transport(self.config)
            self._transport = transport
            await transport.start()

            if self._transport is not transport:
                # disconnect() ran while the transport was starting
                await transport.close()
                raise MCPConnectionError(f"MCP client '{self.name}' disconnected during startup")

            self._reader_task = asyncio.create_task(self._read_loop(transport))
            self._set_state(SessionState.INITIALIZING)

            init_result = await self._send_request("initialize", initialize_params())
            if not isinstance(init_result, dict):
                init_result = {}
            self._server_capabilities = init_result.get("capabilities") or {}
            self._server_info = init_result.get("serverInfo") or {}

            # Send initialized notification (no response expected)
            await self._send_notification("notifications/initialized")
            self._set_state(SessionState.READY)

            await self._discover_capabilities()

            if self._transport is not transport:
                raise MCPConnectionError(f"MCP client '{self.name}' disconnected during startup")

        except asyncio.CancelledError:
            await self._teardown()
            raise
        except Exception as e:
            await self._teardown(error=e)
            if isinstance(e, MCPClientError):
                raise
            raise MCPConnectionError(f"Failed to connect to MCP server '{self.name}': {e}") from e

        logger.info(
            f"MCP server initialized: {self._server_info.get('name', self.name)} "
            f"v{self._server_info.get('version', '?')} — {len(self._tools)} tools, "
            f"{len(self._resources)} resources, {len(self._prompts)} prompts"
        )
        self._emit(MCPEventKind.CONNECTED)

    async def disconnect(self) -> None:
        """Stop the server and reject every request still in flight.

        No-op when already disconnected.
        """
        await self._teardown()

    # ---- Public operations ----

    def list_tools(self) -> List[MCPTool]:
        """Cached tool snapshot (no round trip)."""
        return list(self._tools)

    def list_resources(self) -> List[MCPResource]:
        return list(self._resources)

    def list_prompts(self) -> List[MCPPrompt]:
        return list(self._prompts)

    async def call_tool(self, name: str, arguments: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Call a tool advertised by this server.

        Args:
            name: Tool name (must be in the cached tool list)
            arguments: Tool arguments

        Returns:
            Raw tools/call result ({content: [...], isError?: bool})

        Raises:
            MCPNotInitializedError: If the session is not Ready
            MCPToolCallError: If the server does not advertise the tool
            MCPProtocolError / MCPTimeoutError / MCPConnectionError: From the round trip
        """
        self._ensure_ready()

        if not any(tool.name == name for tool in self._tools):
            raise MCPToolCallError(f"Tool '{name}' not found on server '{self.name}'")

        try:
            result = await self._send_request(
                "tools/call",
                {"name": name, "arguments": arguments or {}},
            )
        except MCPClientError as e:
            logger.error(f"MCP tool call failed: {name} on '{self.name}': {e}")
            raise

        logger.info(
            f"MCP tool call successful: {name} on '{self.name}' "
            f"({len(json.dumps(result, default=str))} bytes)"
        )
        return result

    async def read_resource(self, uri: str) -> Dict[str, Any]:
        """Read a resource by URI. Returns the raw resources/read result."""
        self._ensure_ready()
        try:
            return await self._send_request("resources/read", {"uri": uri})
        except MCPClientError as e:
            logger.error(f"MCP resource read failed: {uri} on '{self.name}': {e}")
            raise

    async def get_prompt(self, name: str, arguments: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Fetch a prompt. Returns the raw prompts/get result."""
        self._ensure_ready()
        params: Dict[str, Any] = {"name": name}
        if arguments is not None:
            params["arguments"] = arguments
        try:
            return await self._send_request("prompts/get", params)
        except MCPClientError as e:
            logger.error(f"MCP prompt get failed: {name} on '{self.name}': {e}")
            raise

    def get_server_info(self) -> Dict[str, Any]:
        """Snapshot of this session for status displays."""
        return {
            "name": self.name,
            "status": self.status,
            "transport": self.config.transport,
            "server_info": dict(self._server_info),
            "capabilities": dict(self._server_capabilities),
            "tools": self.list_tools(),
            "resources": self.list_resources(),
            "prompts": self.list_prompts(),
            "error": self._last_error,
        }

    # ---- Request correlation ----

    def _ensure_ready(self) -> None:
        """Raise unless the session is Ready."""
        if self._state is not SessionState.READY:
            raise MCPNotInitializedError(f"MCP client '{self.name}' not initialized")

    async def _send_request(self, method: str, params: Optional[Dict[str, Any]] = None) -> Any:
        """Send a JSON-RPC request and wait for its correlated response.

        Returns:
            The response's result

        Raises:
            MCPConnectionError: If not connected, on write failure or on disconnect
            MCPProtocolError: If the response carries an error object
            MCPTimeoutError: If no response arrives within request_timeout
        """
        transport = self._transport
        if transport is None:
            raise MCPConnectionError(f"MCP client '{self.name}' not connected")

        self._request_id += 1
        request_id = self._request_id

        loop = asyncio.get_running_loop()
        future = loop.create_future()
        timer = loop.call_later(self.request_timeout, self._expire_request, request_id)
        self._pending[request_id] = _PendingRequest(method, future, timer)

        try:
            await transport.send(make_request(request_id, method, params))
            return await future
        finally:
            # No-op once settled; otherwise a failed send or a cancelled caller
            self._discard_request(request_id)

    async def _send_notification(self, method: str, params: Optional[Dict[str, Any]] = None) -> None:
        """Send a JSON-RPC notification (no response expected)."""
        transport = self._transport
        if transport is None:
            raise MCPConnectionError(f"MCP client '{self.name}' not connected")
        await transport.send(make_notification(method, params))

    def _settle(self, request_id: Any, result: Any = None, error: Optional[BaseException] = None) -> bool:
        """Resolve or reject a pending request exactly once.

        Returns:
            True if a waiting caller received the outcome
        """
        pending = self._pending.pop(request_id, None) if type(request_id) is int else None
        if pending is None:
            return False

        pending.timer.cancel()
        if pending.future.done():
            return False

        if error is not None:
            pending.future.set_exception(error)
        else:
            pending.future.set_result(result)
        return True

    def _discard_request(self, request_id: int) -> None:
        pending = self._pending.pop(request_id, None)
        if pending is not None:
            pending.timer.cancel()
            if not pending.future.done():
                pending.future.cancel()

    def _expire_request(self, request_id: int) -> None:
        pending = self._pending.get(request_id)
        if pending is None:
            return
        logger.warning(
            f"MCP request to '{self.name}' timed out: {pending.method} (id={request_id})"
        )
        self._settle(
            request_id,
            error=MCPTimeoutError(pending.method, request_id, self.request_timeout),
        )

    def _reject_all_pending(self, error: Optional[BaseException]) -> None:
        """Cancellation sweep: every waiter gets an error, none is left hanging."""
        pending, self._pending = self._pending, {}
        reason = f"connection lost ({error})" if error is not None else "disconnected"
        for request_id, entry in pending.items():
            entry.timer.cancel()
            if not entry.future.done():
                entry.future.set_exception(
                    MCPConnectionError(
                        f"MCP client '{self.name}' {reason} before "
                        f"{entry.method} (id={request_id}) completed"
                    )
                )
        if pending:
            logger.debug(f"Rejected {len(pending)} pending MCP requests for '{self.name}'")

    # ---- Inbound dispatch ----

    async def _read_loop(self, transport: MCPTransport) -> None:
        """Drain the transport until it ends, then tear the session down."""
        try:
            async for message in transport.messages():
                self._handle_message(message)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"MCP read error from '{self.name}': {e}")

        if self._transport is not transport:
            return  # disconnect() already owns the teardown

        returncode = await transport.wait(timeout=EXIT_WAIT_TIMEOUT)
        if self._transport is not transport:
            return

        if returncode == 0:
            logger.info(f"MCP server '{self.name}' exited cleanly")
            await self._teardown()
        elif returncode is None:
            await self._teardown(error=MCPConnectionError(f"MCP server '{self.name}' closed its output stream"))
        else:
            await self._teardown(error=MCPConnectionError(f"MCP server '{self.name}' exited with code {returncode}"))

    def _handle_message(self, message: Dict[str, Any]) -> None:
        if is_response(message):
            self._handle_response(message)
            return

        method = message.get("method")
        if not isinstance(method, str):
            logger.warning(f"MCP: Ignoring message without method or id from '{self.name}'")
            return

        if is_request(message):
            self._handle_server_request(method, message["id"])
        elif is_notification(message):
            params = message.get("params")
            self._handle_notification(method, params if isinstance(params, dict) else {})

    def _handle_response(self, message: Dict[str, Any]) -> None:
        request_id = message.get("id")
        error = message.get("error")

        if error is not None:
            if not isinstance(error, dict):
                error = {"message": str(error)}
            settled = self._settle(
                request_id,
                error=MCPProtocolError(
                    error.get("code", -1),
                    error.get("message", "Unknown error"),
                    error.get("data"),
                ),
            )
        else:
            settled = self._settle(request_id, result=message.get("result"))

        if settled:
            logger.debug(f"MCP ← response for id={request_id}: {'error' if error is not None else 'result'}")
        else:
            logger.debug(f"MCP: Ignoring response for unknown or settled id={request_id}")

    def _handle_server_request(self, method: str, request_id: Any) -> None:
        """Answer server-initiated requests: ping succeeds, the rest are unsupported."""
        if method == "ping":
            reply = make_response(request_id, {})
        else:
            logger.debug(f"MCP server '{self.name}' sent unsupported request: {method}")
            reply = make_error_response(
                request_id, ErrorCodes.METHOD_NOT_FOUND, f"Method not found: {method}"
            )
        self._spawn(self._send_reply(reply))

    async def _send_reply(self, reply: Dict[str, Any]) -> None:
        transport = self._transport
        if transport is None:
            return
        try:
            await transport.send(reply)
        except MCPConnectionError as e:
            logger.warning(f"Failed to answer MCP server '{self.name}': {e}")

    def _handle_notification(self, method: str, params: Dict[str, Any]) -> None:
        kind = NotificationKind.from_method(method)

        if kind is NotificationKind.TOOLS_LIST_CHANGED:
            self._refresh(self._discover_tools)
        elif kind is NotificationKind.RESOURCES_LIST_CHANGED:
            self._refresh(self._discover_resources)
        elif kind is NotificationKind.PROMPTS_LIST_CHANGED:
            self._refresh(self._discover_prompts)
        elif kind is NotificationKind.LOG_MESSAGE:
            level = _SERVER_LOG_LEVELS.get(str(params.get("level", "info")), logging.INFO)
            logger.log(level, f"MCP server log ({self.name}): {params.get('data')}")
        else:
            logger.debug(f"MCP notification ignored: {method}")

    def _refresh(self, discover: Callable) -> None:
        if self._state is not SessionState.READY:
            logger.debug(f"MCP list change from '{self.name}' before ready, skipping refresh")
            return
        self._spawn(discover())

    def _spawn(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    # ---- Discovery ----

    async def _discover_capabilities(self) -> None:
        """Fetch all three lists concurrently; each failure is isolated."""
        await asyncio.gather(
            self._discover_tools(),
            self._discover_resources(),
            self._discover_prompts(),
        )

    async def _discover_tools(self) -> None:
        try:
            items = await self._list_all("tools/list", "tools")
        except MCPClientError as e:
            logger.warning(f"Failed to discover tools from '{self.name}': {e}")
            return

        self._tools = [MCPTool.from_dict(d, self.name) for d in items if d.get("name")]
        logger.info(f"MCP server '{self.name}' offers {len(self._tools)} tools")
        for tool in self._tools:
            logger.debug(f"  MCP tool: {tool.name}")
        self._emit(MCPEventKind.TOOLS_UPDATED, payload=list(self._tools))

    async def _discover_resources(self) -> None:
        try:
            items = await self._list_all("resources/list", "resources")
        except MCPClientError as e:
            logger.warning(f"Failed to discover resources from '{self.name}': {e}")
            return

        self._resources = [MCPResource.from_dict(d, self.name) for d in items if d.get("uri")]
        logger.info(f"MCP server '{self.name}' offers {len(self._resources)} resources")
        self._emit(MCPEventKind.RESOURCES_UPDATED, payload=list(self._resources))

    async def _discover_prompts(self) -> None:
        try:
            items = await self._list_all("prompts/list", "prompts")
        except MCPClientError as e:
            logger.warning(f"Failed to discover prompts from '{self.name}': {e}")
            return

        self._prompts = [MCPPrompt.from_dict(d, self.name) for d in items if d.get("name")]
        logger.info(f"MCP server '{self.name}' offers {len(self._prompts)} prompts")
        self._emit(MCPEventKind.PROMPTS_UPDATED, payload=list(self._prompts))

    async def _list_all(self, method: str, key: str) -> List[Dict[str, Any]]:
        """Collect every page of a */list method, following nextCursor."""
        items: List[Dict[str, Any]] = []
        seen_cursors: Set[str] = set()
        cursor = None

        while True:
            result = await self._send_request(method, {"cursor": cursor} if cursor else None)
            if result is None:
                result = {}
            if not isinstance(result, dict):
                raise MCPProtocolError(ErrorCodes.INTERNAL_ERROR, f"Malformed {method} result")

            page = result.get(key) or []
            if not isinstance(page, list):
                raise MCPProtocolError(ErrorCodes.INTERNAL_ERROR, f"Malformed {method} result")
            items.extend(d for d in page if isinstance(d, dict))

            cursor = result.get("nextCursor")
            if not cursor:
                return items
            if cursor in seen_cursors:
                logger.warning(f"MCP server '{self.name}' repeated cursor on {method}, stopping")
                return items
            seen_cursors.add(cursor)

    # ---- Teardown / events ----

    async def _teardown(self, error: Optional[BaseException] = None) -> None:
        """The single teardown path: stop tasks, reject pending, close transport.

        Safe to call repeatedly; only the first call after a connect does work.
        """
        transport = self._transport
        if transport is None and self._state in (SessionState.DISCONNECTED, SessionState.FAILED):
            return

        self._transport = None
        self._set_state(SessionState.FAILED if error is not None else SessionState.DISCONNECTED)
        if error is not None:
            self._last_error = str(error)

        current = asyncio.current_task()
        tasks = [
            task
            for task in (self._reader_task, *self._tasks)
            if task is not None and task is not current and not task.done()
        ]
        self._reader_task = None
        for task in tasks:
            task.cancel()

        self._reject_all_pending(error)

        if transport is not None:
            try:
                await transport.close()
            except Exception as e:
                logger.warning(f"Error closing MCP transport for '{self.name}': {e}")

        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        self._tools, self._resources, self._prompts = [], [], []

        if error is not None:
            logger.error(f"MCP server '{self.name}' failed: {error}")
            self._emit(MCPEventKind.ERROR, error=str(error))
        else:
            logger.info(f"MCP server disconnected: {self.name}")
            self._emit(MCPEventKind.DISCONNECTED)

    def _set_state(self, state: SessionState) -> None:
        if state is not self._state:
            logger.debug(f"MCP client '{self.name}': {self._state.value} → {state.value}")
            self._state = state

    def _emit(self, kind: MCPEventKind, payload: Any = None, error: Optional[str] = None) -> None:
        if self.on_event is None:
            return
        try:
            self.on_event(MCPEvent(kind=kind, server=self.name, payload=payload, error=error))
        except Exception as e:
            logger.error(f"MCP event handler failed for '{self.name}' ({kind.value}): {e}")
