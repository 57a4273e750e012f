"""
MCP Server configuration — load and save the server registry file.

Default location: ~/.amai-code/mcp.json (override with AMAI_MCP_CONFIG)

Schema:
    {
        "mcpServers": {
            "<name>": {
                "transport": "stdio" | "http" | "sse",
                "command": "npx", "args": [...], "env": {...},   # stdio
                "url": "...", "headers": {...},                   # http / sse
                "description": "...",
                "enabled": false                                  # only written when false
            }
        }
    }
"""

import json
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

CONFIG_ENV_VAR = "AMAI_MCP_CONFIG"
DEFAULT_CONFIG_PATH = os.path.join("~", ".amai-code", "mcp.json")

TRANSPORTS = ("stdio", "http", "sse")


@dataclass
class MCPServerConfig:
    """Configuration for a single MCP server."""

    name: str
    transport: str = "stdio"  # "stdio", "http" or "sse"
    command: str = ""  # For stdio transport
    args: List[str] = field(default_factory=list)  # For stdio transport
    env: Dict[str, str] = field(default_factory=dict)  # For stdio transport
    url: str = ""  # For http/sse transport
    headers: Dict[str, str] = field(default_factory=dict)  # For http/sse transport
    enabled: bool = True
    description: str = ""

    @classmethod
    def from_dict(cls, name: str, data: Dict[str, Any]) -> "MCPServerConfig":
        """Build a config from one persisted entry.

        Raises:
            ValueError: If the entry names an unknown transport
        """
        transport = data.get("transport", data.get("type", "stdio"))
        if transport not in TRANSPORTS:
            raise ValueError(f"Unknown transport '{transport}' for MCP server '{name}'")

        return cls(
            name=name,
            transport=transport,
            command=data.get("command", "") or "",
            args=[str(a) for a in data.get("args", []) or []],
            env={k: str(v) for k, v in (data.get("env") or {}).items()},
            url=data.get("url", "") or "",
            headers={k: str(v) for k, v in (data.get("headers") or {}).items()},
            enabled=data.get("enabled", True) is not False,
            description=data.get("description", "") or "",
        )

    def to_dict(self) -> Dict[str, Any]:
        """Persisted entry: everything but the name, enabled only when false."""
        data: Dict[str, Any] = {"transport": self.transport}
        if self.transport == "stdio":
            data["command"] = self.command
            data["args"] = list(self.args)
            if self.env:
                data["env"] = dict(self.env)
        else:
            data["url"] = self.url
            if self.headers:
                data["headers"] = dict(self.headers)
        if self.description:
            data["description"] = self.description
        if not self.enabled:
            data["enabled"] = False
        return data


def get_config_path(path: Optional[str] = None) -> str:
    """Resolve the registry file path: explicit > $AMAI_MCP_CONFIG > default."""
    return os.path.expanduser(path or os.getenv(CONFIG_ENV_VAR) or DEFAULT_CONFIG_PATH)


def load_mcp_config(path: Optional[str] = None) -> Dict[str, MCPServerConfig]:
    """Load MCP server configurations.

    A missing file is an empty registry, not an error. Unreadable files and
    malformed entries are logged and skipped.

    Args:
        path: Config file path (default: see get_config_path)

    Returns:
        Dict of server name → MCPServerConfig
    """
    path = get_config_path(path)

    if not os.path.exists(path):
        logger.info(f"No MCP config found at {path}, starting with empty configuration")
        return {}

    try:
        with open(path, "r", encoding="utf-8") as f:
            raw = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        logger.warning(f"Failed to load MCP config {path}: {e}")
        return {}

    servers = raw.get("mcpServers", {}) if isinstance(raw, dict) else {}
    if not isinstance(servers, dict):
        logger.warning(f"MCP config {path} has no usable 'mcpServers' object")
        return {}

    configs = {}
    for name, server_data in servers.items():
        if not isinstance(server_data, dict):
            logger.warning(f"Skipping MCP server '{name}': entry is not an object")
            continue
        try:
            configs[name] = MCPServerConfig.from_dict(name, server_data)
        except ValueError as e:
            logger.warning(f"Skipping MCP server '{name}': {e}")

    return configs


def save_mcp_config(configs: Dict[str, MCPServerConfig], path: Optional[str] = None) -> str:
    """Persist server configurations.

    The file holds env values that may be tokens, so it is written 0600.

    Args:
        configs: Server name → MCPServerConfig
        path: Config file path (default: see get_config_path)

    Returns:
        The path written
    """
    path = get_config_path(path)
    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, exist_ok=True)

    data = {"mcpServers": {name: config.to_dict() for name, config in configs.items()}}
    with open(path, "w", encoding="utf-8") as f:
        json.dump(data, f, indent=2)
    os.chmod(path, 0o600)

    logger.info(f"MCP configuration saved ({len(configs)} servers) to {path}")
    return path
