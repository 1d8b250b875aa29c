"""
Ordered teardown for Couch Link.

cleanup() is the single teardown path. It is reached from every shutdown
trigger: an explicit request, the host window closing or being destroyed,
SIGINT/SIGTERM, the normal exit path and an abnormal exit. Concurrent
callers share one in-flight run.
"""

import asyncio
import logging
import signal
import time
from typing import Optional, Set

from .command_server import CommandServer
from .discovery import DiscoveryWatcher
from .presence import PresenceBroadcaster
from .state import ServerState

logger = logging.getLogger(__name__)


class LifecycleCoordinator:
    """Tears down the command server, the advertisement and the discovery watch."""

    def __init__(
        self,
        state: ServerState,
        command_server: CommandServer,
        broadcaster: PresenceBroadcaster,
        discovery: DiscoveryWatcher,
        propagation_delay: float = 0.75,
        soft_timeout: float = 3.0,
    ):
        self._state = state
        self._command_server = command_server
        self._broadcaster = broadcaster
        self._discovery = discovery
        self.propagation_delay = propagation_delay
        self.soft_timeout = soft_timeout

        self._inflight: Optional[asyncio.Task] = None
        self._pending: Set[asyncio.Task] = set()
        # Set once a shutdown trigger has finished its cleanup
        self.shutdown_event = asyncio.Event()

    @property
    def closing(self) -> bool:
        return self._state.closing.is_set()

    async def cleanup(self) -> int:
        """
        Tear everything down, best effort.

        Safe to call repeatedly and concurrently; a caller arriving while
        a cleanup runs waits for that run instead of starting another.

        Returns:
            Number of resources that were actually torn down
        """
        if self._inflight is None or self._inflight.done():
            self._inflight = asyncio.create_task(self._cleanup(), name="couch-link-cleanup")
        # Shielded so one impatient caller cannot cancel everyone's cleanup
        return await asyncio.shield(self._inflight)

    async def _cleanup(self) -> int:
        logger.info("Cleaning up mDNS services...")
        started = time.monotonic()
        cleaned = 0

        steps = (
            ("socket server", self._command_server.stop),
            # Direct withdrawal only; the extended goodbye belongs to unregister
            ("broadcaster", self._broadcaster.withdraw_now),
            ("discovery", self._discovery.stop),
        )
        for label, step in steps:
            try:
                if await step():
                    logger.info(f"{label.capitalize()} shut down successfully")
                    cleaned += 1
                else:
                    logger.info(f"No {label} to shut down")
            except Exception as e:
                logger.error(f"Error shutting down {label}: {e}")

        elapsed = time.monotonic() - started
        logger.info(f"mDNS cleanup completed in {elapsed:.3f}s ({cleaned} services cleaned)")
        if elapsed > self.soft_timeout:
            logger.warning(f"Cleanup took longer than expected ({elapsed:.3f}s > {self.soft_timeout}s)")

        if cleaned > 0:
            logger.info("Waiting for goodbye messages to propagate across network...")
            await asyncio.sleep(self.propagation_delay)
            logger.info("Network cleanup delay completed")

        return cleaned

    async def request_shutdown(self, reason: str) -> int:
        """
        Handle a shutdown trigger.

        Marks the host as closing (new registrations, watches and command
        servers are refused from now on), cleans up and then sets
        shutdown_event for the run loop.
        """
        if self.closing:
            logger.info(f"Shutdown already in progress, {reason} joins it")
        else:
            logger.info(f"Shutdown requested ({reason}) - cleaning up mDNS services")
            self._state.closing.set()

        try:
            return await self.cleanup()
        finally:
            self.shutdown_event.set()

    def trigger(self, reason: str) -> asyncio.Task:
        """Start request_shutdown() from a synchronous context (signal handlers)."""
        task = asyncio.ensure_future(self.request_shutdown(reason))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    def install_signal_handlers(self, loop: asyncio.AbstractEventLoop) -> None:
        """Route SIGINT and SIGTERM to a shutdown."""
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self._on_signal, sig)
            except (NotImplementedError, RuntimeError):
                # Not available on Windows event loops
                logger.debug(f"Cannot install handler for {sig.name}")

    def _on_signal(self, sig: signal.Signals) -> None:
        logger.info(f"Received {sig.name} - cleaning up mDNS services")
        self.trigger(sig.name)
