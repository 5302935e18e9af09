"""TCP listener transport (``-qtest tcp:<host>:<port>``)."""

from __future__ import annotations

import asyncio
import logging
import socket

from ..channel import Channel
from .base import LISTEN_BACKLOG, Transport

logger = logging.getLogger(__name__)


def parse_host_port(address: str) -> tuple[str, int]:
    """Split ``host:port``; IPv6 hosts may be bracketed."""
    host, sep, port = address.rpartition(":")
    if not sep or not port.isdigit():
        raise ValueError(f"Expected 'host:port', got {address!r}")
    return host.strip("[]"), int(port)


class TcpTransport(Transport):
    """Accepts a single QEMU connection on a TCP port.

    Binding to port 0 picks a free port; :attr:`address` reports the
    port actually bound.
    """

    def __init__(self, listener: socket.socket, out_channel: Channel[bytes]) -> None:
        super().__init__(listener, out_channel)
        host, port = listener.getsockname()[:2]
        self._address = f"{host}:{port}"

    @classmethod
    async def create(cls, address: str, out_channel: Channel[bytes]) -> TcpTransport:
        host, port = parse_host_port(address)
        family = socket.AF_INET6 if ":" in host else socket.AF_INET
        listener = socket.create_server(
            (host, port), family=family, backlog=LISTEN_BACKLOG
        )
        transport = cls(listener, out_channel)
        logger.info("qtest TCP socket listening on %s", transport.address)
        return transport

    @property
    def address(self) -> str:
        return self._address

    async def _open_stream(
        self, conn: socket.socket
    ) -> tuple[asyncio.StreamReader, asyncio.StreamWriter]:
        conn.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
        return await asyncio.open_connection(sock=conn)
