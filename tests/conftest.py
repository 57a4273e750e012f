"""
Core pytest fixtures for the amai-code test suite.

Subprocess I/O is faked: `asyncio.create_subprocess_exec` is patched so that
registered command names spawn in-memory FakeMCPServer processes (see
mcp_fakes.py). Unregistered commands fail like a missing binary.
"""

import sys
from pathlib import Path

# tests/ for the shared fakes (mcp_fakes)
sys.path.insert(0, str(Path(__file__).parent))

import asyncio
from typing import Dict

import pytest

from amai_code.tools.mcp.mcp_config import MCPServerConfig
from mcp_fakes import FAKE_COMMAND, FakeMCPServer


# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def fake_servers(monkeypatch) -> Dict[str, FakeMCPServer]:
    """Command name → FakeMCPServer. Unregistered commands fail like a missing binary."""
    servers: Dict[str, FakeMCPServer] = {}

    async def fake_create_subprocess_exec(command, *args, **kwargs):
        server = servers.get(command)
        if server is None:
            raise FileNotFoundError(2, "No such file or directory", command)
        return server.spawn(command, args, kwargs)

    monkeypatch.setattr(asyncio, "create_subprocess_exec", fake_create_subprocess_exec)
    return servers


@pytest.fixture
def fake_server(fake_servers) -> FakeMCPServer:
    """A single fake server reachable as the `fake-mcp` command."""
    server = FakeMCPServer()
    fake_servers[FAKE_COMMAND] = server
    return server


@pytest.fixture
def server_config() -> MCPServerConfig:
    """stdio config pointing at the fake-mcp command."""
    return MCPServerConfig(name="fake", command=FAKE_COMMAND, args=["--stdio"])


@pytest.fixture
def config_path(tmp_path) -> str:
    """Registry file path inside tmp_path (not created)."""
    return str(tmp_path / "mcp.json")


