"""
Shared server state.

Each long-lived handle (advertisement, discovery watch, command listener)
lives in its own slot. A slot holds at most one value and guards every
read-modify-write with its own lock. The lock is never held across an
await, so a slot can be touched from the event loop and from signal or
exit paths alike.
"""

import threading
from typing import Generic, Optional, TypeVar

T = TypeVar("T")


class Slot(Generic[T]):
    """A lock-guarded holder for at most one value."""

    def __init__(self, name: str):
        self.name = name
        self._lock = threading.Lock()
        self._value: Optional[T] = None

    def get(self) -> Optional[T]:
        with self._lock:
            return self._value

    def is_set(self) -> bool:
        with self._lock:
            return self._value is not None

    def take(self) -> Optional[T]:
        """Remove and return the current value."""
        with self._lock:
            value, self._value = self._value, None
            return value

    def replace(self, value: T) -> Optional[T]:
        """Store a new value and return whatever it displaced."""
        with self._lock:
            previous, self._value = self._value, value
            return previous

    def put_if_empty(self, value: T) -> bool:
        """Store value only if the slot is empty. Returns True if stored."""
        with self._lock:
            if self._value is not None:
                return False
            self._value = value
            return True

    def take_if(self, value: T) -> bool:
        """Clear the slot only if it still holds this exact value."""
        with self._lock:
            if self._value is not value:
                return False
            self._value = None
            return True

    def __repr__(self) -> str:
        return f"Slot({self.name!r}, set={self.is_set()})"


class ServerState:
    """
    Process-wide handles for one Couch Link host.

    Built once by the application context and handed to every component
    at construction time.
    """

    def __init__(self):
        # Live advertisement together with its ServiceRecord
        self.broadcaster: Slot = Slot("broadcaster")
        # Live discovery watch
        self.discovery: Slot = Slot("discovery")
        # Live command listener (server, port, connection tasks)
        self.command_server: Slot = Slot("command_server")

        # Set once a shutdown trigger fires; starts are refused afterwards
        self.closing = threading.Event()

    @property
    def command_port(self) -> Optional[int]:
        """Port of the running command server, if any."""
        listener = self.command_server.get()
        return listener.port if listener is not None else None

    def snapshot(self) -> dict:
        return {
            "broadcaster_active": self.broadcaster.is_set(),
            "discovery_active": self.discovery.is_set(),
            "command_server_port": self.command_port,
            "closing": self.closing.is_set(),
        }
