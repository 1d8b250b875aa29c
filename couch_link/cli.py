#!/usr/bin/env python3
"""
Couch Link CLI - Command line interface for running and inspecting the host.
"""

import argparse
import asyncio
import logging
import os
import signal
import sys
from pathlib import Path

import aiohttp

# PID file location
PID_FILE = Path("/tmp/couch-link.pid")

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def setup_logging(level: str = "INFO", verbose: bool = False) -> None:
    """Configure logging for the whole process."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else getattr(logging, level, logging.INFO),
        format=LOG_FORMAT,
    )


def running_pid() -> int | None:
    """PID recorded for a live host, or None. A stale PID file is removed."""
    try:
        pid = int(PID_FILE.read_text().strip())
    except FileNotFoundError:
        return None
    except (ValueError, OSError):
        PID_FILE.unlink(missing_ok=True)
        return None

    try:
        # Signal 0 only checks that the process exists
        os.kill(pid, 0)
    except ProcessLookupError:
        PID_FILE.unlink(missing_ok=True)
        return None
    except PermissionError:
        # Alive, but owned by someone else
        pass
    return pid


def claim_pid_file() -> None:
    PID_FILE.write_text(f"{os.getpid()}\n")


def release_pid_file() -> None:
    """Remove the PID file if it still names this process."""
    try:
        recorded = int(PID_FILE.read_text().strip())
    except (ValueError, OSError):
        return
    if recorded == os.getpid():
        PID_FILE.unlink(missing_ok=True)


def load_cli_config(args):
    """Load config and apply CLI overrides."""
    from .config import Config

    config = Config(Path(args.config) if getattr(args, "config", None) else None)

    if getattr(args, "port", None):
        config.set("control", "port", args.port)
    if getattr(args, "command_host", None):
        config.set("command_server", "host", args.command_host)
    if getattr(args, "service_type", None):
        config.set("presence", "service_type", args.service_type)
        config.set("discovery", "service_type", args.service_type)
    if getattr(args, "instance_name", None):
        config.set("presence", "instance_name", args.instance_name)
    if getattr(args, "advertise", False):
        config.set("presence", "autostart", True)
    if getattr(args, "discover", False):
        config.set("discovery", "autostart", True)

    return config


def cmd_start(args) -> int:
    """Start the host."""
    existing_pid = running_pid()
    if existing_pid:
        print(f"❌ Couch Link is already running (PID: {existing_pid})")
        print(f"   Run 'couch-link stop' first")
        return 1

    from .server import run_server

    config = load_cli_config(args)
    setup_logging(config.log_level, args.verbose)

    claim_pid_file()

    try:
        run_server(config)
    except KeyboardInterrupt:
        pass
    finally:
        release_pid_file()

    return 0


def cmd_stop(args) -> int:
    """Stop the host."""
    pid = running_pid()

    if not pid:
        print("ℹ️  Couch Link is not running")
        return 0

    try:
        # SIGTERM runs the host's cleanup before it exits
        os.kill(pid, signal.SIGTERM)
        print(f"✅ Stopped Couch Link (PID: {pid})")
        return 0
    except OSError as e:
        print(f"❌ Failed to stop: {e}")
        PID_FILE.unlink(missing_ok=True)
        return 1


async def fetch_status(url: str) -> dict:
    timeout = aiohttp.ClientTimeout(total=2)
    async with aiohttp.ClientSession(timeout=timeout) as session:
        async with session.get(url) as response:
            response.raise_for_status()
            return await response.json()


def cmd_status(args) -> int:
    """Check host status."""
    pid = running_pid()

    if not pid:
        print("❌ Couch Link is not running")
        return 1

    print(f"✅ Couch Link is running (PID: {pid})")

    config = load_cli_config(args)
    url = f"http://{config.control_host}:{config.control_port}/status"
    try:
        status = asyncio.run(fetch_status(url))
    except (aiohttp.ClientError, asyncio.TimeoutError) as e:
        print(f"   Control API not reachable at {url}: {e}")
        return 0

    command = status.get("command_server", {})
    print(f"   Control:     http://{config.control_host}:{config.control_port}")
    print(f"   Advertising: {'yes' if status.get('broadcaster_active') else 'no'}")
    print(f"   Discovery:   {'on' if status.get('discovery_active') else 'off'} ({status.get('devices', 0)} devices)")
    if command.get("running"):
        print(f"   Commands:    port {command.get('port')}")
    else:
        print("   Commands:    stopped")
    return 0


async def run_discovery(config, seconds: float) -> int:
    """Watch for peers and print each event until time runs out."""
    from .app import AppContext
    from .discovery import DiscoveryEvent

    app = AppContext(config)
    seen = 0

    def on_event(event: DiscoveryEvent) -> None:
        nonlocal seen
        seen += 1
        device = event.device
        txt = ", ".join(device.txt) or "-"
        print(f"   [{event.kind.value:7}] {device.name}  {device.address}:{device.port}  ({device.hostname})  txt: {txt}")

    await app.discovery.start(config.discovery_service_type, on_event)
    try:
        await asyncio.sleep(seconds)
    finally:
        await app.discovery.stop()
    return seen


def cmd_discover(args) -> int:
    """List peers advertising the service."""
    from .errors import CouchLinkError

    config = load_cli_config(args)
    setup_logging(config.log_level, args.verbose)
    print(f"🔍 Discovering {config.discovery_service_type} for {args.seconds:g}s...")
    try:
        seen = asyncio.run(run_discovery(config, args.seconds))
    except CouchLinkError as e:
        print(f"❌ Discovery failed: {e}")
        return 1
    except KeyboardInterrupt:
        return 0

    print(f"   {seen} event(s)")
    return 0


def cmd_ip(args) -> int:
    """Show advertisable addresses."""
    from .config import get_local_addresses

    addresses = get_local_addresses()
    if not addresses:
        print("❌ No non-loopback addresses found")
        return 1

    print("📍 Advertisable addresses:")
    for address in addresses:
        print(f"   {address}")
    return 0


def cmd_config(args) -> int:
    """Print where config is read from and the effective settings."""
    from .config import get_config_paths

    print("📝 Couch Link configuration\n")
    print("   Searched (first existing file wins):")
    for path in get_config_paths():
        print(f"   {'*' if path.exists() else '-'} {path}")
    if args.config:
        print(f"   Using --config {args.config} only")
    print()

    config = load_cli_config(args)
    goodbye = config.goodbye
    print("   Effective settings:")
    print(f"   - Control: {config.control_host}:{config.control_port} (events on {config.events_port})")
    print(f"   - Command host: {config.command_host}")
    print(f"   - Service type: {config.service_type}")
    print(f"   - Instance name: {config.instance_name}")
    print(f"   - Service port: {config.service_port}")
    print(f"   - TXT: {', '.join(config.txt) or '(none)'}")
    print(f"   - IP version: {config.ip_version}")
    print(f"   - Goodbye: {goodbye['repeats']} repeats, {goodbye['spacing']}s apart")
    print(f"   - Propagation delay: {config.propagation_delay}s")

    return 0


def main() -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        prog="couch-link",
        description="Pair a phone with your desktop over the local network",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  couch-link start                     # Run the host with default settings
  couch-link start --advertise         # Run and advertise immediately
  couch-link start --port 9765         # Control API on a different port
  couch-link discover --seconds 10     # List peers for ten seconds
  couch-link stop                      # Stop the host
  couch-link status                    # Check if running
        """
    )
    parser.add_argument("--config", "-c", type=str, help="Config file path")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # Start command
    start_parser = subparsers.add_parser("start", help="Run the host")
    start_parser.add_argument("--port", "-p", type=int, help="Control API port (default: 8765)")
    start_parser.add_argument("--command-host", type=str, help="Command server bind address (default: 0.0.0.0)")
    start_parser.add_argument("--service-type", type=str, help="DNS-SD service type")
    start_parser.add_argument("--instance-name", type=str, help="Advertised instance name")
    start_parser.add_argument("--advertise", action="store_true", help="Advertise on startup")
    start_parser.add_argument("--discover", action="store_true", help="Start discovery on startup")
    start_parser.set_defaults(func=cmd_start)

    # Stop command
    stop_parser = subparsers.add_parser("stop", help="Stop the host")
    stop_parser.set_defaults(func=cmd_stop)

    # Status command
    status_parser = subparsers.add_parser("status", help="Check host status")
    status_parser.set_defaults(func=cmd_status)

    # Discover command
    discover_parser = subparsers.add_parser("discover", help="List peers on the network")
    discover_parser.add_argument("--service-type", type=str, help="DNS-SD service type")
    discover_parser.add_argument("--seconds", "-s", type=float, default=5.0, help="How long to listen (default: 5)")
    discover_parser.set_defaults(func=cmd_discover)

    # IP command
    ip_parser = subparsers.add_parser("ip", help="Show advertisable addresses")
    ip_parser.set_defaults(func=cmd_ip)

    # Config command
    config_parser = subparsers.add_parser("config", help="Show configuration")
    config_parser.set_defaults(func=cmd_config)

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        return 0

    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
