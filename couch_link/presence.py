"""
mDNS presence for Couch Link.

The desktop advertises itself as a DNS-SD service so phones on the LAN
can find it. At most one advertisement is live at a time; registering
again replaces it, withdrawing the old one first.

Withdrawal alone is not always enough: a phone's passive cache can miss
the single goodbye packet and keep showing a desktop that is gone. The
GoodbyeNotifier works around that by briefly re-announcing the same
service and withdrawing it again a few times, so every cycle ends in an
explicit goodbye. Nothing acknowledges these packets, so the cycle count
and spacing are tunables, not a protocol guarantee.
"""

import asyncio
import functools
import logging
import socket
from dataclasses import dataclass
from typing import Any, Callable, Iterable, List, Optional, Set, Tuple

from zeroconf import BadTypeInNameException, IPVersion, service_type_name
from zeroconf.asyncio import AsyncServiceInfo, AsyncZeroconf

from .config import get_local_addresses
from .errors import (
    BuildFailed,
    CouchLinkError,
    InvalidServiceParams,
    NoLocalAddress,
    ShutdownFailed,
    ShuttingDown,
)
from .state import ServerState

logger = logging.getLogger(__name__)

# DNS TXT strings are limited to 255 bytes each
MAX_TXT_LENGTH = 255
# DNS labels are limited to 63 bytes
MAX_INSTANCE_NAME_LENGTH = 63

SOCKET_PORT_KEY = "socketPort"

IP_VERSIONS = {
    "all": IPVersion.All,
    "v4": IPVersion.V4Only,
    "v6": IPVersion.V6Only,
}

ZeroconfFactory = Callable[[], AsyncZeroconf]
AddressProvider = Callable[[], List[str]]


@dataclass(frozen=True)
class ServiceRecord:
    """The service we advertise, kept so a goodbye can rebuild it exactly."""
    service_type: str
    instance_name: str
    port: int
    txt: Tuple[str, ...] = ()

    @property
    def name(self) -> str:
        """Fully qualified service instance name."""
        return f"{self.instance_name}.{self.service_type}"


@dataclass
class Advertisement:
    """A running advertisement: the zeroconf instance broadcasting it and what it says."""
    record: ServiceRecord
    zeroconf: Any
    info: Any
    # Initial announcement broadcast, still running right after register
    announcement: Optional[asyncio.Future] = None


def make_zeroconf_factory(ip_version: str = "all") -> ZeroconfFactory:
    """Build a factory for AsyncZeroconf instances on the given IP version."""
    try:
        version = IP_VERSIONS[ip_version]
    except KeyError:
        raise ValueError(f"ip_version must be one of {sorted(IP_VERSIONS)}, got {ip_version!r}") from None
    return functools.partial(AsyncZeroconf, ip_version=version)


def truncate_txt(record: str) -> str:
    """Cut a TXT string to 255 UTF-8 bytes without splitting a character."""
    raw = record.encode("utf-8")
    if len(raw) <= MAX_TXT_LENGTH:
        return record
    return raw[:MAX_TXT_LENGTH].decode("utf-8", errors="ignore")


def encode_txt(records: Iterable[str]) -> bytes:
    """
    Encode TXT strings as DNS TXT rdata (length-prefixed strings).

    Order and duplicates are preserved. An empty list encodes as a single
    empty string, as DNS-SD requires.
    """
    out = bytearray()
    for record in records:
        raw = truncate_txt(record).encode("utf-8")
        out.append(len(raw))
        out += raw
    return bytes(out) or b"\x00"


def decode_txt(data: bytes) -> List[str]:
    """Decode DNS TXT rdata into strings, skipping empty and non-UTF-8 entries."""
    records = []
    i = 0
    while i < len(data):
        length = data[i]
        chunk = data[i + 1:i + 1 + length]
        i += 1 + length
        if not chunk:
            continue
        try:
            records.append(chunk.decode("utf-8"))
        except UnicodeDecodeError:
            logger.debug(f"Skipping non UTF-8 TXT entry: {chunk!r}")
    return records


def validate_service_params(service_type: str, instance_name: str, port: int) -> None:
    """
    Check the parameters of an advertisement.

    Raises:
        InvalidServiceParams: if any parameter is unusable
    """
    try:
        service_type_name(service_type)
    except (BadTypeInNameException, TypeError) as e:
        raise InvalidServiceParams(f"invalid service params: bad service type {service_type!r}: {e}") from e

    if not isinstance(instance_name, str) or not instance_name:
        raise InvalidServiceParams("invalid service params: instance name must be a non-empty string")
    if instance_name.endswith("."):
        raise InvalidServiceParams(f"invalid service params: instance name {instance_name!r} ends with a dot")
    if len(instance_name.encode("utf-8")) > MAX_INSTANCE_NAME_LENGTH:
        raise InvalidServiceParams(
            f"invalid service params: instance name longer than {MAX_INSTANCE_NAME_LENGTH} bytes"
        )

    if isinstance(port, bool) or not isinstance(port, int) or not 0 <= port <= 65535:
        raise InvalidServiceParams(f"invalid service params: port {port!r} is not in 0-65535")


def build_service_info(record: ServiceRecord, addresses: List[str]) -> AsyncServiceInfo:
    """Turn a ServiceRecord into a zeroconf service description."""
    hostname = socket.gethostname().split(".")[0]
    try:
        return AsyncServiceInfo(
            record.service_type,
            record.name,
            port=record.port,
            properties=encode_txt(record.txt),
            server=f"{hostname}.local.",
            parsed_addresses=addresses,
        )
    except (BadTypeInNameException, ValueError) as e:
        raise BuildFailed(f"service build failed: {e}") from e


async def start_advertisement(
    zeroconf_factory: ZeroconfFactory,
    record: ServiceRecord,
    info: Any,
    cooperating: bool = False,
) -> Advertisement:
    """
    Start broadcasting a service on a fresh zeroconf instance.

    Args:
        cooperating: Skip the name-conflict probe. Used when the name is
            known to be ours, e.g. right after withdrawing it.

    Raises:
        BuildFailed: if zeroconf refuses the service
    """
    try:
        zeroconf = zeroconf_factory()
    except OSError as e:
        raise BuildFailed(f"broadcaster build failed: {e}") from e

    try:
        # Returns once registered; the announcements continue in the background
        announcement = await zeroconf.async_register_service(info, cooperating_responders=cooperating)
    except Exception as e:
        try:
            await zeroconf.async_close()
        except Exception as close_error:
            logger.debug(f"Zeroconf close after failed register: {close_error}")
        raise BuildFailed(f"broadcaster build failed: {e}") from e

    return Advertisement(record=record, zeroconf=zeroconf, info=info, announcement=announcement)


async def withdraw(advertisement: Advertisement) -> None:
    """
    Unregister an advertisement (sending its goodbye) and close its zeroconf.

    The close is attempted even if the unregister fails.

    Raises:
        ShutdownFailed: if either step reported an error
    """
    error: Optional[BaseException] = None

    # An announcement sent after the goodbye would undo it
    if advertisement.announcement is not None and not advertisement.announcement.done():
        advertisement.announcement.cancel()

    try:
        broadcast = await advertisement.zeroconf.async_unregister_service(advertisement.info)
        # Wait for the goodbye packets to go out before closing the sockets
        await broadcast
    except Exception as e:
        error = e

    try:
        await advertisement.zeroconf.async_close()
    except Exception as e:
        error = error or e

    if error is not None:
        raise ShutdownFailed(f"broadcast shutdown failed: {error}") from error


class GoodbyeNotifier:
    """
    Force peers to drop a withdrawn service from their caches.

    Each cycle starts a short-lived copy of the advertisement and
    withdraws it again, which sends an explicit goodbye.
    """

    def __init__(
        self,
        zeroconf_factory: ZeroconfFactory,
        address_provider: AddressProvider = get_local_addresses,
        settle: float = 0.1,
        repeats: int = 3,
        spacing: float = 0.2,
        repeat_settle: float = 0.05,
        final_delay: float = 0.3,
    ):
        self._zeroconf_factory = zeroconf_factory
        self._address_provider = address_provider
        self.settle = settle
        self.repeats = repeats
        self.spacing = spacing
        self.repeat_settle = repeat_settle
        self.final_delay = final_delay

    async def send(self, record: ServiceRecord) -> int:
        """
        Run the goodbye sequence for a record.

        Takes around a second. Failed cycles are logged and the remaining
        cycles still run.

        Returns:
            Number of cycles that completed

        Raises:
            NoLocalAddress: if there is no address to announce from
        """
        addresses = self._address_provider()
        if not addresses:
            raise NoLocalAddress("No non-loopback IPs found for goodbye message")

        logger.info(f"Sending goodbye for service: {record.instance_name} ({record.service_type})")

        sent = 0
        if await self._cycle(record, addresses, self.settle, 0):
            sent += 1

        for i in range(1, self.repeats + 1):
            await asyncio.sleep(self.spacing)
            if await self._cycle(record, addresses, self.repeat_settle, i):
                sent += 1

        # Give the last goodbye time to propagate
        await asyncio.sleep(self.final_delay)
        logger.info(f"Goodbye sequence completed ({sent}/{self.repeats + 1} cycles sent)")
        return sent

    def spawn(self, record: ServiceRecord) -> asyncio.Task:
        """Run send() in the background. Its outcome is reported through the log."""
        task = asyncio.create_task(self.send(record), name=f"goodbye:{record.name}")
        task.add_done_callback(self._log_outcome)
        return task

    async def _cycle(self, record: ServiceRecord, addresses: List[str], settle: float, index: int) -> bool:
        try:
            info = build_service_info(record, addresses)
            advertisement = await start_advertisement(
                self._zeroconf_factory, record, info, cooperating=True
            )
            await asyncio.sleep(settle)
            await withdraw(advertisement)
        except CouchLinkError as e:
            logger.warning(f"Goodbye cycle {index} failed: {e}")
            return False

        logger.debug(f"Goodbye cycle {index} sent")
        return True

    @staticmethod
    def _log_outcome(task: asyncio.Task) -> None:
        if task.cancelled():
            logger.info("Background goodbye cancelled")
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Background goodbye failed: {error}", exc_info=error)


class PresenceBroadcaster:
    """Owns the single live advertisement of this host."""

    def __init__(
        self,
        state: ServerState,
        goodbye: GoodbyeNotifier,
        zeroconf_factory: ZeroconfFactory,
        address_provider: AddressProvider = get_local_addresses,
    ):
        self._state = state
        self._goodbye = goodbye
        self._zeroconf_factory = zeroconf_factory
        self._address_provider = address_provider
        # Background goodbye tasks; the loop only keeps weak references
        self._pending: Set[asyncio.Task] = set()

    @property
    def record(self) -> Optional[ServiceRecord]:
        """Record of the live advertisement, if any."""
        advertisement = self._state.broadcaster.get()
        return advertisement.record if advertisement is not None else None

    def status(self) -> dict:
        return {"active": self._state.broadcaster.is_set()}

    async def register(
        self,
        service_type: str,
        instance_name: str,
        port: int,
        txt: Iterable[str] = (),
    ) -> ServiceRecord:
        """
        Advertise this host, replacing any previous advertisement.

        When the command server is running its port is added to the TXT
        records as socketPort=<port>.

        Raises:
            ShuttingDown, InvalidServiceParams, NoLocalAddress, BuildFailed
        """
        if self._state.closing.is_set():
            raise ShuttingDown()

        validate_service_params(service_type, instance_name, port)
        logger.info(f"Registering service: {service_type} as {instance_name} on port {port}")

        addresses = self._address_provider()
        if not addresses:
            raise NoLocalAddress()
        logger.debug(f"Advertising addresses: {', '.join(addresses)}")

        records = [truncate_txt(str(rec)) for rec in txt]
        socket_port = self._state.command_port
        if socket_port is not None and not any(r.startswith(f"{SOCKET_PORT_KEY}=") for r in records):
            records.append(f"{SOCKET_PORT_KEY}={socket_port}")

        record = ServiceRecord(service_type, instance_name, port, tuple(records))
        info = build_service_info(record, addresses)

        # The old advertisement must be gone before the new one starts
        previous = self._state.broadcaster.take()
        same_name = False
        if previous is not None:
            logger.info("Shutting down previous broadcaster...")
            same_name = previous.record.name.lower() == record.name.lower()
            await self._withdraw_quietly(previous)

        advertisement = await start_advertisement(
            self._zeroconf_factory, record, info, cooperating=same_name
        )

        displaced = self._state.broadcaster.replace(advertisement)
        if displaced is not None:
            # A concurrent register finished first; ours wins the slot
            await self._withdraw_quietly(displaced)

        if self._state.closing.is_set():
            # Shutdown started while we were registering
            if self._state.broadcaster.take_if(advertisement):
                await self._withdraw_quietly(advertisement)
            raise ShuttingDown()

        logger.info("Service registration completed successfully")
        return record

    async def unregister(self) -> bool:
        """
        Withdraw the advertisement and run the goodbye sequence.

        Unregistering when nothing is registered is a no-op.

        Returns:
            True if an advertisement was withdrawn

        Raises:
            ShutdownFailed: if the withdrawal reported an error (the
                goodbye sequence has still been attempted)
        """
        advertisement = self._state.broadcaster.take()
        if advertisement is None:
            logger.info("No service was registered")
            return False

        logger.info("Unregistering service...")
        failure: Optional[ShutdownFailed] = None
        try:
            await withdraw(advertisement)
        except ShutdownFailed as e:
            logger.error(f"Error shutting down broadcaster: {e}")
            failure = e

        try:
            await self._goodbye.send(advertisement.record)
        except CouchLinkError as e:
            logger.warning(f"Failed to send goodbye message: {e}")

        if failure is not None:
            raise failure

        logger.info("Service unregistered successfully")
        return True

    async def withdraw_now(self) -> bool:
        """
        Withdraw the advertisement without the extended goodbye.

        Returns:
            True if an advertisement was withdrawn

        Raises:
            ShutdownFailed: if the withdrawal reported an error
        """
        advertisement = self._state.broadcaster.take()
        if advertisement is None:
            return False
        await withdraw(advertisement)
        return True

    async def send_goodbye(self, background: bool = False) -> int:
        """
        Run the goodbye sequence for the live advertisement's record.

        Args:
            background: Start the sequence as a task and return at once

        Returns:
            Cycles sent (0 when nothing is registered or when running in
            the background)
        """
        record = self.record
        if record is None:
            logger.info("No service info available for goodbye message")
            return 0

        if background:
            task = self._goodbye.spawn(record)
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)
            return 0
        return await self._goodbye.send(record)

    async def _withdraw_quietly(self, advertisement: Advertisement) -> None:
        try:
            await withdraw(advertisement)
        except ShutdownFailed as e:
            logger.warning(f"Ignoring failed withdrawal of {advertisement.record.name}: {e}")
