"""
Local control server for Couch Link.

Exposes the host operations to a desktop UI over HTTP on localhost and
pushes discovery events to it over a WebSocket (control port + 1).
"""

import asyncio
import json
import logging
from typing import Any, Dict, Optional, Set

import websockets
from aiohttp import web

from .app import AppContext
from .config import Config, get_local_ip
from .discovery import DiscoveredDevice, DiscoveryEvent, EventKind
from .errors import CouchLinkError, InvalidServiceParams, MalformedRequest, ShuttingDown

logger = logging.getLogger(__name__)

# Errors caused by the caller rather than by the host
CLIENT_ERRORS = (InvalidServiceParams, MalformedRequest, ShuttingDown)


class DeviceTable:
    """Peers currently visible to discovery, keyed by hostname:port. Not persisted."""

    def __init__(self):
        self._devices: Dict[str, DiscoveredDevice] = {}

    def apply(self, event: DiscoveryEvent) -> None:
        key = event.device.key
        if event.kind is EventKind.LOST:
            self._devices.pop(key, None)
        else:
            self._devices[key] = event.device

    def clear(self) -> None:
        self._devices.clear()

    def to_list(self) -> list:
        return [device.to_dict() for device in self._devices.values()]

    def __len__(self) -> int:
        return len(self._devices)


@web.middleware
async def error_middleware(request: web.Request, handler) -> web.StreamResponse:
    """Turn Couch Link errors into {"error": description} responses."""
    try:
        return await handler(request)
    except CLIENT_ERRORS as e:
        return web.json_response({"error": str(e)}, status=400)
    except CouchLinkError as e:
        logger.error(f"{request.method} {request.path} failed: {e}")
        return web.json_response({"error": str(e)}, status=500)


async def read_json(request: web.Request) -> Dict[str, Any]:
    """Parse a JSON object body. An empty body is an empty object."""
    if not request.can_read_body:
        return {}
    try:
        data = await request.json()
    except json.JSONDecodeError as e:
        raise MalformedRequest(f"Request body is not valid JSON: {e}") from e
    if not isinstance(data, dict):
        raise MalformedRequest("Request body must be a JSON object")
    return data


class CouchLinkServer:
    """
    Host process for Couch Link.

    Features:
    - HTTP operations API for the desktop UI (localhost only by default)
    - WebSocket stream of discovery events
    - Command server auto-start
    - Ordered cleanup on every shutdown path
    """

    def __init__(self, config: Optional[Config] = None, app: Optional[AppContext] = None):
        """Initialize the server."""
        self.app = app or AppContext(config)
        self.config = self.app.config

        # Track event stream subscribers
        self.clients: Set[Any] = set()
        self.devices = DeviceTable()

        # Server instances
        self.http_runner: Optional[web.AppRunner] = None
        self.ws_server = None

        self.http_app = web.Application(middlewares=[error_middleware])
        self._setup_http_routes()

    def _setup_http_routes(self) -> None:
        """Setup HTTP routes for the operations API."""
        router = self.http_app.router
        router.add_get("/ping", self._handle_ping)
        router.add_get("/status", self._handle_status)

        router.add_post("/service/register", self._handle_register)
        router.add_post("/service/unregister", self._handle_unregister)
        router.add_post("/service/goodbye", self._handle_goodbye)
        router.add_get("/service/status", self._handle_service_status)

        router.add_post("/discovery/start", self._handle_discovery_start)
        router.add_post("/discovery/stop", self._handle_discovery_stop)
        router.add_get("/discovery/devices", self._handle_devices)

        router.add_post("/command-server/start", self._handle_command_start)
        router.add_post("/command-server/stop", self._handle_command_stop)
        router.add_get("/command-server/status", self._handle_command_status)

        router.add_post("/cleanup", self._handle_cleanup)
        router.add_post("/shutdown", self._handle_shutdown)

    async def _handle_ping(self, request: web.Request) -> web.Response:
        """Simple ping endpoint."""
        return web.Response(text="pong")

    async def _handle_status(self, request: web.Request) -> web.Response:
        """Return host status."""
        status = self.app.status()
        status.update({
            "status": "running",
            "clients": len(self.clients),
            "devices": len(self.devices),
        })
        return web.json_response(status)

    async def _handle_register(self, request: web.Request) -> web.Response:
        data = await read_json(request)

        txt = data.get("txt", self.config.txt)
        if not isinstance(txt, list) or not all(isinstance(rec, str) for rec in txt):
            raise MalformedRequest("txt must be a list of strings")

        record = await self.app.broadcaster.register(
            data.get("serviceType", self.config.service_type),
            data.get("instanceName", self.config.instance_name),
            data.get("port", self.config.service_port),
            txt,
        )
        return web.json_response({
            "ok": True,
            "name": record.name,
            "txt": list(record.txt),
        })

    async def _handle_unregister(self, request: web.Request) -> web.Response:
        withdrawn = await self.app.broadcaster.unregister()
        return web.json_response({"ok": True, "withdrawn": withdrawn})

    async def _handle_goodbye(self, request: web.Request) -> web.Response:
        background = request.query.get("background", "").lower() in ("1", "true", "yes")
        sent = await self.app.broadcaster.send_goodbye(background=background)
        return web.json_response({"ok": True, "sent": sent, "background": background})

    async def _handle_service_status(self, request: web.Request) -> web.Response:
        return web.json_response({
            "broadcaster_active": self.app.broadcaster.status()["active"],
            "discovery_active": self.app.discovery.is_running,
        })

    async def _handle_discovery_start(self, request: web.Request) -> web.Response:
        data = await read_json(request)
        service_type = data.get("serviceType", self.config.discovery_service_type)
        started = await self.app.discovery.start(service_type, self._on_discovery_event)
        return web.json_response({"ok": True, "started": started})

    async def _handle_discovery_stop(self, request: web.Request) -> web.Response:
        try:
            stopped = await self.app.discovery.stop()
        finally:
            self.devices.clear()
        return web.json_response({"ok": True, "stopped": stopped})

    async def _handle_devices(self, request: web.Request) -> web.Response:
        return web.json_response({"devices": self.devices.to_list()})

    async def _handle_command_start(self, request: web.Request) -> web.Response:
        port = await self.app.command_server.start()
        return web.json_response({"ok": True, "port": port})

    async def _handle_command_stop(self, request: web.Request) -> web.Response:
        stopped = await self.app.command_server.stop()
        return web.json_response({"ok": True, "stopped": stopped})

    async def _handle_command_status(self, request: web.Request) -> web.Response:
        return web.json_response(self.app.command_server.status())

    async def _handle_cleanup(self, request: web.Request) -> web.Response:
        logger.info("Force cleanup requested")
        cleaned = await self.app.lifecycle.cleanup()
        self.devices.clear()
        return web.json_response({"ok": True, "cleaned": cleaned})

    async def _handle_shutdown(self, request: web.Request) -> web.Response:
        """Host UI reports window-close / window-destroy and similar."""
        data = await read_json(request)
        reason = data.get("reason", "shutdown-request")
        if not isinstance(reason, str):
            raise MalformedRequest("reason must be a string")
        cleaned = await self.app.lifecycle.request_shutdown(reason)
        return web.json_response({"ok": True, "cleaned": cleaned})

    def _on_discovery_event(self, event: DiscoveryEvent) -> None:
        """Discovery event sink: update the table and push to subscribers."""
        logger.info(f"{event.kind.topic}: {event.device.name} ({event.device.address}:{event.device.port})")
        self.devices.apply(event)
        if self.clients:
            websockets.broadcast(self.clients, json.dumps(event.to_dict()))

    async def _websocket_handler(self, websocket) -> None:
        """Handle an event stream subscriber."""
        self.clients.add(websocket)
        logger.info(f"Event subscriber connected: {websocket.remote_address}")

        try:
            await websocket.send(json.dumps({"event": "devices", "devices": self.devices.to_list()}))
            # Subscribers only listen; drain anything they send
            async for _ in websocket:
                pass
        except websockets.exceptions.ConnectionClosed:
            pass
        finally:
            self.clients.discard(websocket)
            logger.info(f"Event subscriber disconnected: {websocket.remote_address}")

    async def _autostart(self) -> None:
        """Bring up whatever the config asks for at startup."""
        if self.config.command_autostart:
            try:
                port = await self.app.command_server.start()
                print(f"   Commands:  tcp://{get_local_ip()}:{port}")
            except CouchLinkError as e:
                logger.error(f"Failed to auto-start socket server: {e}")

        if self.config.presence_autostart:
            try:
                record = await self.app.broadcaster.register(
                    self.config.service_type,
                    self.config.instance_name,
                    self.config.service_port,
                    self.config.txt,
                )
                print(f"   Advertising: {record.name}")
            except CouchLinkError as e:
                logger.error(f"Failed to advertise: {e}")

        if self.config.discovery_autostart:
            try:
                await self.app.discovery.start(self.config.discovery_service_type, self._on_discovery_event)
                print(f"   Discovering: {self.config.discovery_service_type}")
            except CouchLinkError as e:
                logger.error(f"Failed to start discovery: {e}")

    async def start(self) -> None:
        """Start the control API and event stream, then autostart services."""
        self.http_runner = web.AppRunner(self.http_app)
        await self.http_runner.setup()
        http_site = web.TCPSite(self.http_runner, self.config.control_host, self.config.control_port)
        await http_site.start()

        self.ws_server = await websockets.serve(
            self._websocket_handler,
            self.config.control_host,
            self.config.events_port,
            ping_interval=20,
            ping_timeout=20,
        )

        print(f"\n🛋️  Couch Link started!")
        print(f"   Control:   http://{self.config.control_host}:{self.config.control_port}")
        print(f"   Events:    ws://{self.config.control_host}:{self.config.events_port}")
        await self._autostart()
        print()

    async def stop(self) -> None:
        """Stop the control API and event stream."""
        for client in list(self.clients):
            try:
                await client.close()
            except websockets.exceptions.WebSocketException as e:
                logger.debug(f"Closing subscriber: {e}")
        self.clients.clear()

        if self.ws_server:
            self.ws_server.close()
            await self.ws_server.wait_closed()
            self.ws_server = None

        if self.http_runner:
            await self.http_runner.cleanup()
            self.http_runner = None

        self.devices.clear()
        print("\n🛋️  Couch Link stopped.\n")

    async def run_forever(self) -> None:
        """Run the host until a shutdown trigger fires."""
        lifecycle = self.app.lifecycle
        lifecycle.install_signal_handlers(asyncio.get_running_loop())

        reason = "exit"
        try:
            await self.start()
            await lifecycle.shutdown_event.wait()
        except Exception:
            logger.exception("Couch Link host failed")
            reason = "abnormal-termination"
        finally:
            await lifecycle.request_shutdown(reason)
            await self.stop()


def run_server(config: Optional[Config] = None) -> None:
    """Run the host (blocking)."""
    server = CouchLinkServer(config)

    try:
        asyncio.run(server.run_forever())
    except KeyboardInterrupt:
        print("\nShutting down...")
