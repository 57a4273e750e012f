#!/usr/bin/env python3
"""
amai-mcp - Manage MCP servers from the shell.

Usage:
    amai-mcp list
    amai-mcp status
    amai-mcp tools
    amai-mcp add git --command uvx --arg mcp-server-git
    amai-mcp add docs --transport sse --url http://localhost:8080/sse
    amai-mcp remove git
    amai-mcp enable git
    amai-mcp disable git
    amai-mcp call git git_status --args '{"repo_path": "."}'

Options:
    --config PATH   Server registry file (default: $AMAI_MCP_CONFIG or ~/.amai-code/mcp.json)
    --verbose, -v   Debug logging
"""

import argparse
import asyncio
import json
import logging
import sys
from typing import Dict, List, Optional

from amai_code.tools.mcp.mcp_config import TRANSPORTS
from amai_code.tools.mcp.mcp_manager import MCPManager
from amai_code.tools.mcp.mcp_manager_tool import MCPManagerTool

logger = logging.getLogger(__name__)

# Read-only reports need live sessions; mutations only need the registry
CONNECTING_COMMANDS = ("list", "status", "tools", "call")


def parse_pairs(values: Optional[List[str]], option: str) -> Dict[str, str]:
    """Turn repeated KEY=VALUE options into a dict.

    Raises:
        ValueError: If an entry has no '='
    """
    pairs = {}
    for item in values or []:
        key, sep, value = item.partition("=")
        if not sep or not key:
            raise ValueError(f"{option} expects KEY=VALUE, got '{item}'")
        pairs[key] = value
    return pairs


def build_tool_arguments(args: argparse.Namespace) -> Dict[str, object]:
    """Map parsed CLI arguments onto MCPManagerTool parameters."""
    params: Dict[str, object] = {"action": args.command}

    if args.command in ("add", "remove", "enable", "disable"):
        params["server_name"] = args.name

    if args.command == "add":
        server_config: Dict[str, object] = {
            "transport": args.transport,
            "description": args.description or "",
        }
        if args.transport == "stdio":
            server_config["command"] = args.cmd or ""
            server_config["args"] = list(args.arg or [])
            server_config["env"] = parse_pairs(args.env, "--env")
        else:
            server_config["url"] = args.url or ""
            server_config["headers"] = parse_pairs(args.header, "--header")
        if args.disabled:
            server_config["enabled"] = False
        params["server_config"] = server_config

    if args.command == "call":
        params["server_name"] = args.server
        params["tool_name"] = args.tool
        try:
            params["arguments"] = json.loads(args.args) if args.args else {}
        except json.JSONDecodeError as e:
            raise ValueError(f"--args is not valid JSON: {e}") from e
        if not isinstance(params["arguments"], dict):
            raise ValueError("--args must be a JSON object")

    return params


async def run(args: argparse.Namespace) -> int:
    """Run one command against a fresh manager and shut it down."""
    try:
        params = build_tool_arguments(args)
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 2

    manager = MCPManager(config_path=args.config)
    tool = MCPManagerTool(manager)

    try:
        if args.command in CONNECTING_COMMANDS:
            await manager.initialize()
        else:
            manager.load_config()

        result = await tool.execute(**params)
    finally:
        await manager.shutdown()

    if result.success:
        print(result.content)
        return 0

    print(result.content or f"Error: {result.error}", file=sys.stderr)
    return 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="amai-mcp",
        description="Manage MCP (Model Context Protocol) servers.",
    )
    parser.add_argument("--config", help="Server registry file path.")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging.")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("list", help="List configured servers.")
    subparsers.add_parser("status", help="Show connection status of every server.")
    subparsers.add_parser("tools", help="List tools, resources and prompts of live servers.")

    # add
    p = subparsers.add_parser("add", help="Add or replace a server.")
    p.add_argument("name", help="Server name.")
    p.add_argument("--transport", choices=TRANSPORTS, default="stdio", help="Transport kind.")
    p.add_argument("--command", dest="cmd", help="Executable for stdio servers.")
    p.add_argument("--arg", action="append", help="Argument for the command (repeatable).")
    p.add_argument("--env", action="append", help="KEY=VALUE environment entry (repeatable).")
    p.add_argument("--url", help="Endpoint for http/sse servers.")
    p.add_argument("--header", action="append", help="KEY=VALUE HTTP header (repeatable).")
    p.add_argument("--description", help="Free-form description.")
    p.add_argument("--disabled", action="store_true", help="Save without connecting.")

    for command, help_text in (
        ("remove", "Remove a server."),
        ("enable", "Enable and connect a server."),
        ("disable", "Disable and disconnect a server."),
    ):
        p = subparsers.add_parser(command, help=help_text)
        p.add_argument("name", help="Server name.")

    # call
    p = subparsers.add_parser("call", help="Call a tool on a server.")
    p.add_argument("server", help="Server name.")
    p.add_argument("tool", help="Tool name.")
    p.add_argument("--args", help="Tool arguments as a JSON object.")

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="[%(asctime)s] %(levelname)s - %(name)s: %(message)s",
    )

    try:
        return asyncio.run(run(args))
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
