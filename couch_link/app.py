"""
Application context for Couch Link.

Builds the shared state and every component once, wiring each component
to the state at construction time.
"""

from typing import Any, Callable, List, Optional

from zeroconf.asyncio import AsyncServiceBrowser

from .command_server import CommandServer
from .commands import CommandDispatcher
from .config import Config, get_local_addresses
from .discovery import DiscoveryWatcher
from .lifecycle import LifecycleCoordinator
from .presence import GoodbyeNotifier, PresenceBroadcaster, ZeroconfFactory, make_zeroconf_factory
from .state import ServerState


class AppContext:
    """Everything one Couch Link host owns."""

    def __init__(
        self,
        config: Optional[Config] = None,
        actuator: Optional[Any] = None,
        zeroconf_factory: Optional[ZeroconfFactory] = None,
        browser_factory: Callable[..., Any] = AsyncServiceBrowser,
        address_provider: Callable[[], List[str]] = get_local_addresses,
    ):
        """
        Args:
            config: Settings; loaded from the default locations if None
            actuator: Input backend; xdotool if None
            zeroconf_factory: Creates AsyncZeroconf instances
            browser_factory: Creates service browsers
            address_provider: Lists the addresses to advertise
        """
        self.config = config or Config()
        self.state = ServerState()

        factory = zeroconf_factory or make_zeroconf_factory(self.config.ip_version)
        goodbye = self.config.goodbye

        self.dispatcher = CommandDispatcher(actuator)
        self.command_server = CommandServer(
            self.state,
            self.dispatcher,
            host=self.config.command_host,
            chunk_size=self.config.chunk_size,
        )
        self.goodbye = GoodbyeNotifier(
            factory,
            address_provider,
            settle=float(goodbye["settle"]),
            repeats=int(goodbye["repeats"]),
            spacing=float(goodbye["spacing"]),
            repeat_settle=float(goodbye["repeat_settle"]),
            final_delay=float(goodbye["final_delay"]),
        )
        self.broadcaster = PresenceBroadcaster(self.state, self.goodbye, factory, address_provider)
        self.discovery = DiscoveryWatcher(
            self.state,
            factory,
            browser_factory=browser_factory,
            request_timeout_ms=self.config.request_timeout_ms,
        )
        self.lifecycle = LifecycleCoordinator(
            self.state,
            self.command_server,
            self.broadcaster,
            self.discovery,
            propagation_delay=self.config.propagation_delay,
            soft_timeout=self.config.soft_timeout,
        )

    def status(self) -> dict:
        """Combined status of every component."""
        return {
            "broadcaster_active": self.broadcaster.status()["active"],
            "discovery_active": self.discovery.is_running,
            "command_server": self.command_server.status(),
            "closing": self.lifecycle.closing,
        }
