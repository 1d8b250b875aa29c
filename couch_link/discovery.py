"""
mDNS discovery for Couch Link.

Watches the LAN for peers advertising a service type and reports each
found / lost / updated transition as a DiscoveredDevice. Events go to an
event sink (any callable taking a DiscoveryEvent), so the watcher does
not care whether they end up in a UI, a WebSocket or a test list.
"""

import asyncio
import functools
import logging
import socket
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Callable, Iterable, List, Set

from zeroconf import (
    BadTypeInNameException,
    DNSAddress,
    DNSService,
    DNSText,
    ServiceStateChange,
    service_type_name,
)
from zeroconf.asyncio import AsyncServiceBrowser, AsyncServiceInfo

from .errors import BuildFailed, InvalidServiceParams, ShutdownFailed, ShuttingDown
from .presence import ZeroconfFactory, decode_txt
from .state import ServerState

logger = logging.getLogger(__name__)


class EventKind(str, Enum):
    FOUND = "found"
    LOST = "lost"
    UPDATED = "updated"

    @property
    def topic(self) -> str:
        """Event name pushed to host applications."""
        return _TOPICS[self]


_TOPICS = {
    EventKind.FOUND: "mdns:found",
    EventKind.LOST: "mdns:lost",
    EventKind.UPDATED: "mdns:update",
}

STATE_CHANGES = {
    ServiceStateChange.Added: EventKind.FOUND,
    ServiceStateChange.Removed: EventKind.LOST,
    ServiceStateChange.Updated: EventKind.UPDATED,
}


@dataclass
class DiscoveredDevice:
    """A peer as seen in its latest advertisement response."""
    name: str
    hostname: str
    address: str
    port: int
    txt: List[str] = field(default_factory=list)

    @property
    def key(self) -> str:
        return f"{self.hostname}:{self.port}"

    def to_dict(self) -> dict:
        data = asdict(self)
        data["addr"] = data.pop("address")
        return data


@dataclass
class DiscoveryEvent:
    kind: EventKind
    device: DiscoveredDevice

    def to_dict(self) -> dict:
        return {"event": self.kind.topic, "device": self.device.to_dict()}


EventSink = Callable[[DiscoveryEvent], None]


def _format_address(packed: bytes) -> str:
    family = socket.AF_INET if len(packed) == 4 else socket.AF_INET6
    try:
        return socket.inet_ntop(family, packed)
    except ValueError:
        return ""


def extract_device(records: Iterable[Any], fallback_name: str = "") -> DiscoveredDevice:
    """
    Build a DiscoveredDevice from the resource records of a response.

    Every record is scanned. SRV gives name, hostname and port (trailing
    dots trimmed), TXT strings are collected in the order met, and the
    first A/AAAA record gives the address. Missing SRV data leaves an
    empty hostname and port 0; nothing is rejected.

    Args:
        records: zeroconf DNS records
        fallback_name: Name to report when no SRV record is present
    """
    name = ""
    hostname = ""
    port = 0
    address = ""
    txt: List[str] = []

    for record in records:
        if isinstance(record, DNSService):
            hostname = record.server.rstrip(".")
            port = record.port
            name = record.name.rstrip(".")
        elif isinstance(record, DNSText):
            txt.extend(decode_txt(record.text))
        elif isinstance(record, DNSAddress) and not address:
            address = _format_address(record.address)

    return DiscoveredDevice(
        name=name or fallback_name.rstrip("."),
        hostname=hostname,
        address=address,
        port=port,
        txt=txt,
    )


def collect_records(cache: Any, name: str) -> List[Any]:
    """Records cached for a service instance plus the addresses of its SRV target."""
    records = list(cache.async_entries_with_name(name))
    for record in list(records):
        if isinstance(record, DNSService):
            records.extend(cache.async_entries_with_name(record.server))
    return records


@dataclass
class Watch:
    """One running discovery watch and the lookups it started."""
    service_type: str
    sink: EventSink
    zeroconf: Any = None
    browser: Any = None
    lookups: Set[asyncio.Task] = field(default_factory=set)


class DiscoveryWatcher:
    """Owns the single discovery watch of this host."""

    def __init__(
        self,
        state: ServerState,
        zeroconf_factory: ZeroconfFactory,
        browser_factory: Callable[..., Any] = AsyncServiceBrowser,
        request_timeout_ms: int = 3000,
    ):
        self._state = state
        self._zeroconf_factory = zeroconf_factory
        self._browser_factory = browser_factory
        self._request_timeout_ms = request_timeout_ms

    @property
    def is_running(self) -> bool:
        return self._state.discovery.is_set()

    async def start(self, service_type: str, on_event: EventSink) -> bool:
        """
        Start watching for a service type.

        Returns:
            True if a watch was started, False if one was already running

        Raises:
            ShuttingDown, InvalidServiceParams, BuildFailed
        """
        if self.is_running:
            return False

        if self._state.closing.is_set():
            raise ShuttingDown()

        try:
            service_type_name(service_type)
        except (BadTypeInNameException, TypeError) as e:
            raise InvalidServiceParams(f"invalid service type: {e}") from e

        watch = Watch(service_type=service_type, sink=on_event)
        try:
            watch.zeroconf = self._zeroconf_factory()
            watch.browser = self._browser_factory(
                watch.zeroconf.zeroconf,
                service_type,
                handlers=[functools.partial(self._on_service_state_change, watch)],
            )
        except Exception as e:
            await self._shutdown(watch, quiet=True)
            raise BuildFailed(f"discovery build failed: {e}") from e

        if not self._state.discovery.put_if_empty(watch):
            # Lost a race with another start(); the other watch stays
            await self._shutdown(watch, quiet=True)
            return False

        logger.info(f"Discovery started for {service_type}")
        return True

    async def stop(self) -> bool:
        """
        Stop the running watch. Stopping when nothing runs is a no-op.

        Returns:
            True if a watch was stopped

        Raises:
            ShutdownFailed: if the browser or zeroconf reported an error
        """
        watch = self._state.discovery.take()
        if watch is None:
            logger.info("No discovery was running")
            return False

        logger.info("Shutting down discovery service...")
        await self._shutdown(watch)
        logger.info("Discovery stopped successfully")
        return True

    async def _shutdown(self, watch: Watch, quiet: bool = False) -> None:
        for task in list(watch.lookups):
            task.cancel()
        watch.lookups.clear()

        errors = []
        if watch.browser is not None:
            try:
                await watch.browser.async_cancel()
            except Exception as e:
                errors.append(e)
        if watch.zeroconf is not None:
            try:
                await watch.zeroconf.async_close()
            except Exception as e:
                errors.append(e)

        if errors and not quiet:
            raise ShutdownFailed(f"discovery shutdown failed: {errors[0]}") from errors[0]
        for error in errors:
            logger.debug(f"Ignoring discovery teardown error: {error}")

    def _on_service_state_change(
        self,
        watch: Watch,
        zeroconf: Any,
        service_type: str,
        name: str,
        state_change: ServiceStateChange,
    ) -> None:
        """Browser callback, runs on the event loop."""
        if self._state.discovery.get() is not watch:
            return

        kind = STATE_CHANGES.get(state_change)
        if kind is None:
            return

        logger.debug(f"Service {name} {kind.value}")
        if kind is EventKind.LOST:
            # Whatever is still cached is all we will ever know about it
            self._emit(watch, kind, name)
            return

        task = asyncio.create_task(self._resolve_and_emit(watch, kind, name))
        watch.lookups.add(task)
        task.add_done_callback(watch.lookups.discard)

    async def _resolve_and_emit(self, watch: Watch, kind: EventKind, name: str) -> None:
        info = AsyncServiceInfo(watch.service_type, name)
        try:
            await info.async_request(watch.zeroconf.zeroconf, self._request_timeout_ms)
        except Exception as e:
            logger.warning(f"Lookup of {name} failed: {e}")

        if self._state.discovery.get() is not watch:
            return
        self._emit(watch, kind, name)

    def _emit(self, watch: Watch, kind: EventKind, name: str) -> None:
        try:
            records = collect_records(watch.zeroconf.zeroconf.cache, name)
        except Exception as e:
            logger.warning(f"Could not read cached records for {name}: {e}")
            records = []

        event = DiscoveryEvent(kind=kind, device=extract_device(records, fallback_name=name))
        try:
            watch.sink(event)
        except Exception:
            logger.exception(f"Discovery event handler failed for {name}")
