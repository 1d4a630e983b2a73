"""
Run Gateway — end-to-end: upstream processes → Gateway → tool call.

This script exercises the whole stack from a terminal. It:
1. Loads settings from the environment / .env
2. Builds the gateway (Redis, PostgreSQL, one bridge per upstream)
3. Starts every upstream and waits for readiness
4. Lists the aggregated catalog or calls one tool
5. Shuts everything down

Usage:
    # List every tool (upstream + gateway-local)
    python run_gateway.py --list

    # Call a tool as a given caller
    python run_gateway.py --call pg.list_schemas --caller user-1

    # Pass arguments as JSON
    python run_gateway.py --call get_company_profile --args '{"companyId": "c1"}'

    # Only start some upstreams
    python run_gateway.py --list --upstreams postgres
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import signal
import sys

from mcp_gateway.config import GatewaySettings
from mcp_gateway.credentials import StaticCredentialProvider
from mcp_gateway.errors import GatewayError
from mcp_gateway.factory import create_gateway
from mcp_gateway.gateway import Gateway
from mcp_gateway.messages import ToolCall
from mcp_gateway.registry import build_descriptors

logger = logging.getLogger(__name__)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Start the gateway's upstreams and list or call tools.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python run_gateway.py --list
  python run_gateway.py --call get_company_profile --args '{"companyId": "c1"}'
  python run_gateway.py --call ads.get_campaigns --args '{"account_id": "act_1"}' --token ads:EAAB...
        """,
    )
    parser.add_argument("--list", action="store_true", help="List available tools and exit")
    parser.add_argument("--call", type=str, help="Tool name to call")
    parser.add_argument("--args", type=str, default="{}", help="Tool arguments as a JSON object")
    parser.add_argument("--caller", type=str, default="cli", help="Caller identity (default: cli)")
    parser.add_argument("--token", type=str, action="append", default=[],
                        help="Delegated token as UPSTREAM:TOKEN (repeatable)")
    parser.add_argument("--upstreams", type=str, nargs="*", default=None,
                        help="Which upstreams to start (default: all)")
    parser.add_argument("--verbose", "-v", action="store_true", help="Show debug output")
    return parser.parse_args(argv)


def build(args: argparse.Namespace, settings: GatewaySettings) -> Gateway:
    descriptors = build_descriptors(settings)
    if args.upstreams is not None:
        unknown = set(args.upstreams) - {d.name for d in descriptors}
        if unknown:
            raise SystemExit(f"Unknown upstream(s): {sorted(unknown)}")
        descriptors = [d for d in descriptors if d.name in args.upstreams]
    logger.debug(f"Selected upstreams: {[d.name for d in descriptors]}")

    credentials = None
    if args.token:
        delegated = {}
        for entry in args.token:
            upstream, _, token = entry.partition(":")
            if not token:
                raise SystemExit(f"--token must be UPSTREAM:TOKEN, got {entry!r}")
            delegated[(args.caller, upstream)] = token
        credentials = StaticCredentialProvider(settings.GATEWAY_API_KEYS, delegated)

    return create_gateway(settings, upstreams=descriptors, credentials=credentials)


async def run(args: argparse.Namespace, settings: GatewaySettings) -> int:
    gateway = build(args, settings)

    loop = asyncio.get_running_loop()
    main_task = asyncio.current_task()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, main_task.cancel)

    try:
        print("Starting upstreams...")
        await gateway.initialize()
        print(f"Upstreams: {gateway.manager.list_upstreams()}\n")

        if args.list:
            tools = await gateway.list_tools()
            print(f"Available tools ({len(tools)}):\n")
            for tool in tools:
                print(f"  {tool['name']:<35} {tool.get('description', '')}")
            return 0

        try:
            arguments = json.loads(args.args)
        except json.JSONDecodeError as e:
            print(f"Error: --args is not valid JSON: {e}")
            return 2
        if not isinstance(arguments, dict):
            print("Error: --args must be a JSON object")
            return 2

        result = await gateway.call_tool(ToolCall(args.call, arguments), args.caller)
        print("=" * 60)
        print(result.text)
        print("=" * 60)
        return 1 if result.is_error else 0
    except GatewayError as e:
        print(f"Gateway failed to start: {e}")
        return 1
    except asyncio.CancelledError:
        print("\nInterrupted.")
        return 130
    finally:
        await gateway.shutdown()
        print("\nUpstreams stopped.")


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    settings = GatewaySettings()

    level = logging.DEBUG if args.verbose else getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO)
    logging.basicConfig(level=level, format="%(levelname)s: %(message)s")

    if not args.list and not args.call:
        print("Error: --call NAME is required (or use --list)")
        return 2

    return asyncio.run(run(args, settings))


if __name__ == "__main__":
    sys.exit(main())
