"""Unix-domain listener transport (``-qtest unix:<path>``)."""

from __future__ import annotations

import asyncio
import errno
import logging
import os
import socket

from ..channel import Channel
from .base import LISTEN_BACKLOG, Transport

logger = logging.getLogger(__name__)


def bind_listener(path: str) -> socket.socket:
    """Bind and listen on ``path``.

    A path left behind by an earlier run makes the bind fail with
    ``EADDRINUSE``. In that case the path is removed and the bind is
    retried once; a second failure is raised.
    """
    sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    try:
        try:
            sock.bind(path)
        except OSError as e:
            if e.errno != errno.EADDRINUSE:
                raise
            logger.warning("Removing stale socket path %s", path)
            os.remove(path)
            sock.bind(path)
        sock.listen(LISTEN_BACKLOG)
    except OSError:
        sock.close()
        raise
    return sock


class UnixTransport(Transport):
    """Accepts a single QEMU connection on a Unix socket path.

    The socket file is removed again by :meth:`close`.
    """

    def __init__(
        self, listener: socket.socket, out_channel: Channel[bytes], path: str
    ) -> None:
        super().__init__(listener, out_channel)
        self._path = path

    @classmethod
    async def create(cls, address: str, out_channel: Channel[bytes]) -> UnixTransport:
        listener = bind_listener(address)
        logger.info("qtest unix socket listening on %s", address)
        return cls(listener, out_channel, address)

    @property
    def address(self) -> str:
        return self._path

    async def _open_stream(
        self, conn: socket.socket
    ) -> tuple[asyncio.StreamReader, asyncio.StreamWriter]:
        return await asyncio.open_unix_connection(sock=conn)

    def _cleanup(self) -> None:
        try:
            os.remove(self._path)
        except FileNotFoundError:
            pass
