"""Listening byte-stream endpoint that QEMU connects to.

QEMU is started with ``-qtest tcp:<host>:<port>`` or
``-qtest unix:<path>`` and connects to us as a client. A transport binds
the listener, accepts exactly one connection, and then:

- forwards every chunk read from the peer to its output channel, from a
  background task that owns the read half of the stream;
- writes requests on the caller's behalf through the write half.

Usage::

    raw = Channel("raw")
    transport = await TcpTransport.create("localhost:3000", raw)
    await transport.attach_connection()
    await transport.send("clock_step\\n")
    chunk = await raw.recv()
    await transport.close()
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import socket
from abc import ABC, abstractmethod

from ..channel import Channel
from ..errors import NotConnectedError

logger = logging.getLogger(__name__)

READ_CHUNK_SIZE = 1024
LISTEN_BACKLOG = 1


class Transport(ABC):
    """Base class for the TCP and Unix-domain realizations."""

    def __init__(self, listener: socket.socket, out_channel: Channel[bytes]) -> None:
        listener.setblocking(False)
        self._listener = listener
        self._out = out_channel
        self._reader: asyncio.StreamReader | None = None
        self._writer: asyncio.StreamWriter | None = None
        self._forward_task: asyncio.Task | None = None
        self._closed = False

    @classmethod
    @abstractmethod
    async def create(cls, address: str, out_channel: Channel[bytes]) -> Transport:
        """Bind a listener at ``address``.

        Raises:
            OSError: If the address cannot be bound.
        """

    @property
    @abstractmethod
    def address(self) -> str:
        """Address the listener is bound to."""

    @abstractmethod
    async def _open_stream(
        self, conn: socket.socket
    ) -> tuple[asyncio.StreamReader, asyncio.StreamWriter]:
        """Wrap an accepted socket in asyncio streams."""

    def _cleanup(self) -> None:
        """Release resources left behind by the listener."""

    @property
    def connected(self) -> bool:
        return self._writer is not None and not self._closed

    @property
    def forward_task(self) -> asyncio.Task | None:
        return self._forward_task

    async def attach_connection(self) -> None:
        """Wait for the peer to connect and start forwarding its output.

        Raises:
            OSError: If accepting the connection fails.
        """
        loop = asyncio.get_running_loop()
        conn, peer = await loop.sock_accept(self._listener)
        self._reader, self._writer = await self._open_stream(conn)
        logger.info("Peer attached on %s %s", self.address, peer or "")
        self._forward_task = asyncio.create_task(
            self._forward(self._reader), name=f"qtest-forward-{self.address}"
        )

    async def send(self, data: str) -> int:
        """Write a request to the peer.

        Returns:
            Number of bytes written.

        Raises:
            NotConnectedError: If no peer has been attached.
            OSError: If the write fails.
        """
        if self._writer is None or self._closed:
            raise NotConnectedError("No connection attached")

        payload = data.encode("utf-8")
        self._writer.write(payload)
        await self._writer.drain()
        logger.debug("Sent %r", data)
        return len(payload)

    async def _forward(self, reader: asyncio.StreamReader) -> None:
        try:
            while True:
                chunk = await reader.read(READ_CHUNK_SIZE)
                if not chunk:
                    logger.info("Connection closed by peer on %s", self.address)
                    break
                await self._out.send(chunk)
        except OSError as e:
            logger.error("Read error on %s: %s", self.address, e)
            self._out.close(e)
        finally:
            self._out.close()

    async def close(self) -> None:
        """Close the peer connection and the listener."""
        if self._closed:
            return
        self._closed = True

        if self._writer is not None:
            self._writer.close()
            try:
                await self._writer.wait_closed()
            except OSError as e:
                logger.warning("Error closing connection on %s: %s", self.address, e)
        # The forwarding task may be parked on a full output channel, where
        # closing the stream never reaches it.
        if self._forward_task is not None and not self._forward_task.done():
            self._forward_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._forward_task
        self._out.close()

        address = self.address
        self._listener.close()
        self._cleanup()
        logger.info("Closed %s", address)

    async def __aenter__(self) -> Transport:
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    def __repr__(self) -> str:
        state = "connected" if self.connected else "listening"
        return f"{type(self).__name__}({self.address!r}, {state})"
