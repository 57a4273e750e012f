"""
MCP protocol shapes — JSON-RPC 2.0 messages, notification kinds, lifecycle
events and capability descriptors.

Messages stay plain dicts on the wire side:

    {"jsonrpc": "2.0", "id"?: int|str, "method"?: str, "params"?: any,
     "result"?: any, "error"?: {"code": int, "message": str, "data"?: any}}

Classification:
  - response:      has "id", no "method"
  - request:       has "id" and "method" (server-initiated)
  - notification:  has "method", no "id"
"""

import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

JSONRPC_VERSION = "2.0"
MCP_PROTOCOL_VERSION = "2024-11-05"
CLIENT_NAME = "amai-code"
CLIENT_VERSION = "1.0.0"

# Capabilities we declare during the initialize handshake
CLIENT_CAPABILITIES: Dict[str, Any] = {
    "tools": {},
    "resources": {"subscribe": True},
    "prompts": {},
}


class ErrorCodes:
    """Standard JSON-RPC 2.0 error codes."""

    PARSE_ERROR = -32700
    INVALID_REQUEST = -32600
    METHOD_NOT_FOUND = -32601
    INVALID_PARAMS = -32602
    INTERNAL_ERROR = -32603


class NotificationKind(Enum):
    """Server-initiated notifications the client understands."""

    TOOLS_LIST_CHANGED = "notifications/tools/list_changed"
    RESOURCES_LIST_CHANGED = "notifications/resources/list_changed"
    PROMPTS_LIST_CHANGED = "notifications/prompts/list_changed"
    LOG_MESSAGE = "notifications/message"
    UNKNOWN = ""

    @classmethod
    def from_method(cls, method: str) -> "NotificationKind":
        try:
            return cls(method)
        except ValueError:
            return cls.UNKNOWN


class MCPEventKind(Enum):
    """Lifecycle events published by clients and the manager."""

    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    ERROR = "error"
    TOOLS_UPDATED = "tools_updated"
    RESOURCES_UPDATED = "resources_updated"
    PROMPTS_UPDATED = "prompts_updated"
    SERVER_ADDED = "server_added"
    SERVER_REMOVED = "server_removed"
    SERVER_ENABLED = "server_enabled"
    SERVER_DISABLED = "server_disabled"


@dataclass(frozen=True)
class MCPEvent:
    """A lifecycle event tagged with the server it concerns.

    Attributes:
        kind: What happened
        server: Server name
        payload: Refreshed descriptor list for *_updated events
        error: Error text for ERROR events
    """

    kind: MCPEventKind
    server: str
    payload: Any = None
    error: Optional[str] = None


@dataclass
class MCPTool:
    """A tool advertised by an MCP server."""

    name: str
    description: str = ""
    input_schema: Dict[str, Any] = field(default_factory=dict)
    server: str = ""

    @classmethod
    def from_dict(cls, d: Dict[str, Any], server: str = "") -> "MCPTool":
        return cls(
            name=d.get("name", ""),
            description=d.get("description", "") or "",
            input_schema=d.get("inputSchema") or {"type": "object", "properties": {}},
            server=server,
        )


@dataclass
class MCPResource:
    """A resource advertised by an MCP server."""

    uri: str
    name: str = ""
    description: str = ""
    mime_type: Optional[str] = None
    server: str = ""

    @classmethod
    def from_dict(cls, d: Dict[str, Any], server: str = "") -> "MCPResource":
        return cls(
            uri=d.get("uri", ""),
            name=d.get("name", "") or d.get("uri", ""),
            description=d.get("description", "") or "",
            mime_type=d.get("mimeType"),
            server=server,
        )


@dataclass
class MCPPrompt:
    """A prompt template advertised by an MCP server."""

    name: str
    description: str = ""
    arguments: List[Dict[str, Any]] = field(default_factory=list)
    server: str = ""

    @classmethod
    def from_dict(cls, d: Dict[str, Any], server: str = "") -> "MCPPrompt":
        return cls(
            name=d.get("name", ""),
            description=d.get("description", "") or "",
            arguments=list(d.get("arguments") or []),
            server=server,
        )


# ---- Message builders ----


def make_request(request_id: int, method: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Build a JSON-RPC request. Params are omitted when None."""
    message: Dict[str, Any] = {"jsonrpc": JSONRPC_VERSION, "id": request_id, "method": method}
    if params is not None:
        message["params"] = params
    return message


def make_notification(method: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Build a JSON-RPC notification (no id, no reply expected)."""
    message: Dict[str, Any] = {"jsonrpc": JSONRPC_VERSION, "method": method}
    if params is not None:
        message["params"] = params
    return message


def make_response(request_id: Any, result: Any) -> Dict[str, Any]:
    return {"jsonrpc": JSONRPC_VERSION, "id": request_id, "result": result}


def make_error_response(request_id: Any, code: int, message: str) -> Dict[str, Any]:
    return {
        "jsonrpc": JSONRPC_VERSION,
        "id": request_id,
        "error": {"code": code, "message": message},
    }


def initialize_params() -> Dict[str, Any]:
    """Params for the initialize handshake request."""
    return {
        "protocolVersion": MCP_PROTOCOL_VERSION,
        "capabilities": CLIENT_CAPABILITIES,
        "clientInfo": {"name": CLIENT_NAME, "version": CLIENT_VERSION},
    }


# ---- Parsing / classification ----


def parse_message(line: str) -> Optional[Dict[str, Any]]:
    """Parse one line of inbound text as a JSON-RPC message.

    Returns None (with a warning) for anything that is not a JSON object, so a
    server mixing debug prints into stdout cannot stall the stream.
    """
    try:
        message = json.loads(line)
    except json.JSONDecodeError as e:
        logger.warning(f"MCP: Invalid JSON from server: {e} (line: {line[:200]!r})")
        return None

    if not isinstance(message, dict):
        logger.warning(f"MCP: Ignoring non-object JSON message: {line[:200]!r}")
        return None

    return message


def is_response(message: Dict[str, Any]) -> bool:
    return "id" in message and "method" not in message


def is_request(message: Dict[str, Any]) -> bool:
    return "id" in message and "method" in message


def is_notification(message: Dict[str, Any]) -> bool:
    return "method" in message and "id" not in message
