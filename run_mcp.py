"""
Run MCP — connect tool servers from a config file and drive them.

This script exercises the whole stack from the command line. It:
1. Loads server configs (``mcpServers`` JSON)
2. Registers them with an MCPManager
3. Connects them (all, or only the ones named with --servers)
4. Lists tools, prints the LLM prompt section, or runs one action

Usage:
    # Connect and list every tool
    python run_mcp.py --config mcp_servers.json --list

    # Run one action (servers connect lazily when not yet connected)
    python run_mcp.py --config mcp_servers.json --call mcp_calc_add --params '{"a": 2, "b": 3}'

    # Show the prompt fragment the agent would get
    python run_mcp.py --config mcp_servers.json --prompt

Without --config the bundled calculator and echo servers are used.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import signal
import sys
from pathlib import Path

# Ensure project root is on path
PROJECT_ROOT = Path(__file__).parent.resolve()
sys.path.insert(0, str(PROJECT_ROOT))

from forge_mcp.config import ClientSettings, ServerConfig, load_server_configs
from forge_mcp.errors import MCPError
from forge_mcp.manager import MCPManager

logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(message)s")
logger = logging.getLogger(__name__)


# ============================================================
# DEFAULT SERVER DEFINITIONS
# ============================================================

DEFAULT_SERVERS = [
    ServerConfig(
        name="calc",
        command=sys.executable,
        args=["-m", "forge_mcp.servers.calculator"],
        description="Arithmetic and unit conversion",
    ),
    ServerConfig(
        name="echo",
        command=sys.executable,
        args=["-m", "forge_mcp.servers.echo"],
        description="Echo, sleep and a sample resource/prompt",
    ),
]


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Connect MCP tool servers and run actions against them.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python run_mcp.py --list
  python run_mcp.py --call mcp_calc_add --params '{"a": 2, "b": 3}'
  python run_mcp.py --config mcp_servers.json --servers calc --prompt
        """,
    )
    parser.add_argument("--config", "-c", type=Path, default=None, help="JSON file with an mcpServers mapping")
    parser.add_argument("--servers", type=str, nargs="*", default=None, help="Which servers to connect up front (default: all)")
    parser.add_argument("--list", action="store_true", help="Connect and list servers and tools")
    parser.add_argument("--prompt", action="store_true", help="Print the MCP tools prompt section")
    parser.add_argument("--call", type=str, default=None, help="Action to execute, e.g. mcp_calc_add")
    parser.add_argument("--params", type=str, default="{}", help="JSON object with action parameters")
    parser.add_argument("--role", type=str, default="Agent", help="Role used for permission checks")
    parser.add_argument("--verbose", "-v", action="store_true", help="Show debug output")
    return parser


def print_servers(manager: MCPManager) -> None:
    summary = manager.get_connected_servers_summary()
    print(f"\nConnected servers ({len(summary)}):\n")
    for server in summary:
        info = server["server_info"]
        print(f"  {server['name']:<20} {info.get('name') or '?'} {info.get('version') or ''}"
              f"  tools={server['tools']} resources={server['resources']} prompts={server['prompts']}")

    tools = manager.get_mcp_tools_for_prompt()
    print(f"\nActions ({len(tools)}):\n")
    for tool in tools:
        print(f"  {tool['name']:<35} {tool['description']}")
    print()


async def run(args: argparse.Namespace) -> int:
    configs = load_server_configs(args.config) if args.config else DEFAULT_SERVERS

    manager = MCPManager(settings=ClientSettings.from_env())
    await manager.initialize()
    manager.register_server_configs("cli", configs)

    # Graceful shutdown on Ctrl+C
    loop = asyncio.get_running_loop()
    stop = asyncio.Event()
    try:
        loop.add_signal_handler(signal.SIGINT, stop.set)
    except NotImplementedError:
        pass

    try:
        if args.servers is None:
            await manager.connect_all_servers()
        else:
            for name in args.servers:
                result = await manager.start_server(name)
                if not result["success"]:
                    print(f"Error: {result['error']}")

        if args.list:
            print_servers(manager)

        if args.prompt:
            print(manager.generate_mcp_tools_prompt_section() or "(no MCP tools available)")

        if args.call:
            try:
                params = json.loads(args.params)
            except json.JSONDecodeError as e:
                print(f"Error: --params is not valid JSON: {e}")
                return 2

            action = asyncio.ensure_future(manager.execute_mcp_tool(args.call, params, args.role))
            interrupted = asyncio.ensure_future(stop.wait())
            done, _ = await asyncio.wait({action, interrupted}, return_when=asyncio.FIRST_COMPLETED)
            if action not in done:
                action.cancel()
                print("\nInterrupted.")
                return 130
            interrupted.cancel()

            try:
                result = action.result()
            except MCPError as e:
                print(f"Error: {e}")
                return 1
            print(json.dumps(result, indent=2, default=str))

        return 0
    finally:
        print("Shutting down MCP servers...")
        await manager.cleanup()


def main() -> None:
    args = build_parser().parse_args()

    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    if not (args.list or args.prompt or args.call):
        args.list = True

    sys.exit(asyncio.run(run(args)))


if __name__ == "__main__":
    main()
