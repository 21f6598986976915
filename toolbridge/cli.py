from __future__ import annotations

import argparse
import asyncio
import json
import logging
import signal
import sys
from typing import Optional, Sequence

from toolbridge import __version__
from toolbridge.bridge import ToolBridge
from toolbridge.errors import BridgeError
from toolbridge.events import AuthReconnectComplete, Event, LogChunk, StatusChanged
from toolbridge.settings import get_settings
from toolbridge.utils import setup_context_logging

logger = logging.getLogger("toolbridge.cli")


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="toolbridge", description="MCP tool server connection manager")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--config", help="Server definitions file (YAML or JSON)")
    parser.add_argument("--log-level", default=None, help="Logging level (default from settings)")

    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("tools", help="Connect enabled servers, list their tools and exit")

    run = sub.add_parser("run", help="Connect enabled servers and keep them alive")
    run.add_argument("--show-logs", action="store_true", help="Echo server stderr")

    auth = sub.add_parser("authorize", help="Run the browser authorization flow for a remote server")
    auth.add_argument("server_id")
    auth.add_argument("--url", default=None, help="Server URL (default: configured URL)")
    auth.add_argument("--timeout", type=float, default=300.0, help="Seconds to wait for the browser round trip")

    call = sub.add_parser("call", help="Call a tool on whichever server offers it")
    call.add_argument("tool")
    call.add_argument("--args", default="{}", help="Tool arguments as JSON")

    return parser.parse_args(argv)


def _print_tools(bridge: ToolBridge) -> None:
    tools = bridge.get_tools()
    if not tools:
        print("No tools available")
        return
    for tool in tools:
        print(f"{tool.server_id:<20} {tool.name:<30} {tool.description}")


async def _cmd_tools(bridge: ToolBridge, args: argparse.Namespace) -> int:
    results = await bridge.startup()
    _print_tools(bridge)
    for failure in results["failed"]:
        print(f"failed: {failure['server_id']}: {failure['error']['message']}", file=sys.stderr)
    for server_id in results["authorization_required"]:
        print(f"authorization required: {server_id}", file=sys.stderr)
    return 1 if results["failed"] else 0


async def _cmd_run(bridge: ToolBridge, args: argparse.Namespace) -> int:
    def on_event(event: Event) -> None:
        if isinstance(event, StatusChanged):
            logger.info(f"Connected: {', '.join(event.connected_ids) or 'none'} ({len(event.tools)} tools)")
        elif isinstance(event, LogChunk) and args.show_logs:
            for line in event.chunk.splitlines():
                print(f"[{event.server_id}] {line}", file=sys.stderr)
        elif isinstance(event, AuthReconnectComplete):
            outcome = "reconnected" if event.success else f"failed: {event.error}"
            logger.info(f"Authorization for {event.server_id} {outcome}")

    bridge.subscribe(on_event)
    await bridge.startup()

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            pass
    await stop.wait()
    return 0


async def _cmd_authorize(bridge: ToolBridge, args: argparse.Namespace) -> int:
    done: asyncio.Future = asyncio.get_running_loop().create_future()

    def on_event(event: Event) -> None:
        if isinstance(event, AuthReconnectComplete) and event.server_id == args.server_id and not done.done():
            done.set_result(event)

    bridge.subscribe(on_event)
    await bridge.startup(connect=False)
    url = await bridge.start_authorization(args.server_id, args.url)
    print(f"If the browser did not open, visit:\n{url}")

    try:
        event = await asyncio.wait_for(done, args.timeout)
    except asyncio.TimeoutError:
        print("Timed out waiting for authorization", file=sys.stderr)
        return 1
    if not event.success:
        print(f"Reconnect failed: {event.error}", file=sys.stderr)
        return 1
    _print_tools(bridge)
    return 0


async def _cmd_call(bridge: ToolBridge, args: argparse.Namespace) -> int:
    try:
        arguments = json.loads(args.args)
    except json.JSONDecodeError as e:
        print(f"Invalid --args JSON: {e}", file=sys.stderr)
        return 2
    await bridge.startup()
    result = await bridge.call_tool(args.tool, arguments)
    print(json.dumps(result, indent=2, default=str))
    return 1 if result.get("isError") else 0


COMMANDS = {
    "tools": _cmd_tools,
    "run": _cmd_run,
    "authorize": _cmd_authorize,
    "call": _cmd_call,
}


async def main_async(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)
    settings = get_settings()
    if args.config:
        settings = settings.model_copy(update={"config_path": args.config})
    setup_context_logging(args.log_level or settings.log_level)

    bridge = ToolBridge(settings=settings)
    try:
        return await COMMANDS[args.command](bridge, args)
    except BridgeError as e:
        logger.error(f"{e.code}: {e.message}")
        return 1
    finally:
        await bridge.shutdown()


def main(argv: Optional[Sequence[str]] = None) -> None:
    try:
        sys.exit(asyncio.run(main_async(argv)))
    except KeyboardInterrupt:
        logger.info("Stopped by user")
