"""
Integration test configuration and fixtures.

Provides server configs that launch the real echo MCP server fixture as a
child process of the current interpreter.
"""

import sys
from pathlib import Path
from typing import List, Optional

import pytest

from amai_code.tools.mcp.mcp_config import MCPServerConfig

ECHO_SERVER = Path(__file__).parent.parent / "fixtures" / "echo_mcp_server.py"


@pytest.fixture
def echo_config():
    """Factory for stdio configs running echo_mcp_server.py."""

    def make(name: str = "echo", extra_args: Optional[List[str]] = None, **kwargs) -> MCPServerConfig:
        return MCPServerConfig(
            name=name,
            command=sys.executable,
            args=[str(ECHO_SERVER)] + list(extra_args or []),
            **kwargs,
        )

    return make
