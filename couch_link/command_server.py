"""
TCP command server for Couch Link.

Paired phones connect to an ephemeral port (published in the presence
advertisement as socketPort=<port>) and send JSON commands. Every
connection gets its own read loop; a bad message or a broken socket only
affects that one connection.
"""

import asyncio
import functools
import json
import logging
from dataclasses import dataclass, field
from typing import List, Optional, Set

from .commands import CommandDispatcher
from .errors import PortUnavailable, ShuttingDown
from .state import ServerState

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 1024


@dataclass
class Listener:
    """A bound command listener and the connection loops it spawned."""
    port: int = 0
    server: Optional[asyncio.AbstractServer] = None
    connections: Set[asyncio.Task] = field(default_factory=set)
    # Set by abort(); connections accepted afterwards are dropped
    closed: bool = False


def split_messages(text: str) -> List[str]:
    """
    Split one received chunk into messages.

    A chunk is normally one message. Clients that write several compact
    JSON lines in one go are handled by falling back to one message per
    line when the chunk as a whole does not parse.
    """
    try:
        json.loads(text)
        return [text]
    except (json.JSONDecodeError, RecursionError):
        pass

    lines = [line.strip() for line in text.splitlines() if line.strip()]
    return lines if len(lines) > 1 else [text]


class CommandServer:
    """Accepts command connections and feeds them to a CommandDispatcher."""

    def __init__(
        self,
        state: ServerState,
        dispatcher: CommandDispatcher,
        host: str = "0.0.0.0",
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ):
        self._state = state
        self._dispatcher = dispatcher
        self._host = host
        self._chunk_size = chunk_size

    @property
    def port(self) -> Optional[int]:
        return self._state.command_port

    def status(self) -> dict:
        port = self.port
        return {"running": port is not None, "port": port}

    async def start(self) -> int:
        """
        Start listening on an unused ephemeral port.

        Returns:
            The bound port. If the server is already running, its
            existing port is returned and nothing new is opened.
        """
        existing = self._state.command_server.get()
        if existing is not None:
            logger.info(f"Command server already running on port: {existing.port}")
            return existing.port

        if self._state.closing.is_set():
            raise ShuttingDown()

        listener = Listener()
        try:
            server = await asyncio.start_server(
                functools.partial(self._handle_connection, listener),
                self._host,
                0,
            )
        except OSError as e:
            raise PortUnavailable(f"Failed to find an unused port: {e}") from e

        listener.server = server
        listener.port = server.sockets[0].getsockname()[1]

        if not self._state.command_server.put_if_empty(listener):
            # Another start() won the race; keep its listener
            server.close()
            winner = self._state.command_server.get()
            if winner is None:
                raise PortUnavailable("Command server was stopped while starting")
            return winner.port

        logger.info(f"Command server listening on {self._host}:{listener.port}")
        return listener.port

    async def stop(self) -> bool:
        """
        Stop listening and abort every open connection.

        Returns:
            True if a running server was stopped
        """
        listener = self._state.command_server.take()
        if listener is None:
            logger.info("No command server to stop")
            return False

        self.abort(listener)
        logger.info(f"Command server on port {listener.port} stopped")
        return True

    @staticmethod
    def abort(listener: Listener) -> None:
        """Close the listener and cancel its connection loops without waiting."""
        listener.closed = True
        if listener.server is not None:
            listener.server.close()
        for task in list(listener.connections):
            task.cancel()
        listener.connections.clear()

    async def _handle_connection(
        self,
        listener: Listener,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        """Read loop for one connection."""
        peer = writer.get_extra_info("peername")
        if listener.closed:
            # Accepted just before stop(); the loop was never tracked
            logger.info(f"Dropping connection from {peer}: command server stopped")
            writer.close()
            return

        task = asyncio.current_task()
        listener.connections.add(task)
        logger.info(f"New command connection from: {peer}")

        try:
            while True:
                try:
                    chunk = await reader.read(self._chunk_size)
                except (ConnectionError, OSError) as e:
                    logger.warning(f"Failed to read from {peer}: {e}")
                    break

                if not chunk:
                    logger.info(f"Connection closed by client: {peer}")
                    break

                try:
                    await self._handle_chunk(chunk, peer)
                except Exception:
                    logger.exception(f"Failed to handle message from {peer}")
        finally:
            listener.connections.discard(task)
            writer.close()

    async def _handle_chunk(self, chunk: bytes, peer) -> None:
        text = chunk.decode("utf-8", errors="replace").strip()
        if not text:
            return

        logger.debug(f"Received from {peer}: {text}")
        for message in split_messages(text):
            # xdotool blocks; keep it off the event loop
            await asyncio.to_thread(self._dispatcher.handle_message, message)
