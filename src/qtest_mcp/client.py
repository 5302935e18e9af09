"""qtest command engine.

``QTestClient`` owns the transport's send path and the receiving end of
the response channel. Each operation writes one request line and waits
for exactly one response. The protocol carries no request identifiers,
so responses are matched to requests purely by order: only one command
may be outstanding at a time, and it is up to the caller not to run two
operations concurrently on the same client.

IRQ events arrive independently on :attr:`QTestClient.irqs`.

Usage::

    client = await QTestClient.create("localhost:3000")
    await client.attach_connection()

    async def watch():
        async for irq in client.irqs:
            print(irq)

    asyncio.create_task(watch())
    await client.irq_intercept_in("/machine/soc")
    value = await client.readl(0x4000_0000)
    await client.close()
"""

from __future__ import annotations

import asyncio
import logging

from .channel import Channel
from .errors import ChannelClosedError
from .protocol import commands
from .protocol.framing import Demultiplexer
from .protocol.parser import Irq, Response, expect_value, parse_hex, parse_unsigned
from .transport import TcpTransport, Transport

logger = logging.getLogger(__name__)


class QTestClient:
    """Typed request/response API over a single qtest connection."""

    def __init__(
        self,
        transport: Transport,
        raw: Channel[bytes],
        irqs: Channel[Irq],
        responses: Channel[Response],
        reader_task: asyncio.Task,
    ) -> None:
        self._transport = transport
        self._raw = raw
        self._irqs = irqs
        self._responses = responses
        self._reader_task = reader_task

    @classmethod
    async def create(
        cls,
        address: str,
        transport_cls: type[Transport] = TcpTransport,
    ) -> QTestClient:
        """Bind a transport at ``address`` and start the reader task.

        Nothing can be exchanged until :meth:`attach_connection` returns.

        Raises:
            OSError: If the transport cannot bind.
        """
        raw: Channel[bytes] = Channel("raw")
        irqs: Channel[Irq] = Channel("irq")
        responses: Channel[Response] = Channel("response")

        transport = await transport_cls.create(address, raw)
        demux = Demultiplexer(raw, irqs, responses)
        reader_task = asyncio.create_task(demux.run(), name="qtest-reader")
        return cls(transport, raw, irqs, responses, reader_task)

    @property
    def transport(self) -> Transport:
        return self._transport

    @property
    def irqs(self) -> Channel[Irq]:
        """IRQ events in arrival order; iteration ends with the connection."""
        return self._irqs

    @property
    def address(self) -> str:
        return self._transport.address

    @property
    def running(self) -> bool:
        """Whether the background reader is still routing messages."""
        return not self._reader_task.done()

    async def attach_connection(self) -> None:
        """Wait for QEMU to connect."""
        await self._transport.attach_connection()

    async def wait_closed(self) -> None:
        """Wait until the reader task has stopped."""
        await asyncio.wait([self._reader_task])

    async def close(self) -> None:
        """Close the connection and stop the reader.

        Messages already routed stay readable on :attr:`irqs`; anything
        still in flight is dropped.
        """
        await self._transport.close()
        self._raw.close()
        # The reader blocks on a full IRQ channel when nobody consumes it.
        if not self._reader_task.done():
            self._reader_task.cancel()
        await asyncio.wait([self._reader_task])

    async def __aenter__(self) -> QTestClient:
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def _request(self, line: str) -> Response:
        """Send one request and wait for its response.

        Raises:
            NotConnectedError: Before :meth:`attach_connection`.
            ChannelClosedError: If the reader task has stopped.
            OSError: If the write fails.
        """
        if not self.running:
            raise ChannelClosedError("response channel closed")
        await self._transport.send(line)
        response = await self._responses.recv()
        logger.debug("%s -> %r", line.rstrip("\n"), response)
        return response

    # ─── CLOCK ───────────────────────────────────────────────────────

    async def clock_step(self, ns: int | None = None) -> Response:
        """Advance the virtual clock by ``ns``, or to the next deadline."""
        return await self._request(commands.build_clock_step(ns))

    async def clock_set(self, ns: int) -> int:
        """Set the virtual clock to ``ns`` and return the resulting time.

        Raises:
            ProtocolError: If the device rejects the request.
            ResponseDecodeError: If the response is not a decimal value.
        """
        response = await self._request(commands.build_clock_set(ns))
        return parse_unsigned(response)

    # ─── IRQ ─────────────────────────────────────────────────────────

    async def irq_intercept_in(self, qom_path: str) -> Response:
        """Intercept the input GPIOs of the device at ``qom_path``.

        QEMU only allows a single interception per path and direction;
        a second attempt is rejected by the device, not here.
        """
        return await self._request(commands.build_irq_intercept_in(qom_path))

    async def irq_intercept_out(self, qom_path: str) -> Response:
        """Intercept the output GPIOs of the device at ``qom_path``."""
        return await self._request(commands.build_irq_intercept_out(qom_path))

    async def set_irq_in(
        self, qom_path: str, irq_name: str, line: int, level: int
    ) -> Response:
        return await self._request(
            commands.build_set_irq_in(qom_path, irq_name, line, level)
        )

    # ─── PORT I/O ────────────────────────────────────────────────────

    async def port_in(self, width: str, addr: int) -> int:
        """Read an I/O port of the given width (``b``, ``w`` or ``l``).

        Raises:
            ProtocolError: If the device rejects the request.
            ResponseDecodeError: If the value is not hex of that width.
        """
        response = await self._request(commands.build_port_in(width, addr))
        return parse_hex(response, commands.WIDTH_BITS[width])

    async def port_out(self, width: str, addr: int, value: int) -> Response:
        """Write an I/O port of the given width (``b``, ``w`` or ``l``)."""
        return await self._request(commands.build_port_out(width, addr, value))

    async def inb(self, addr: int) -> int:
        return await self.port_in("b", addr)

    async def inw(self, addr: int) -> int:
        return await self.port_in("w", addr)

    async def inl(self, addr: int) -> int:
        return await self.port_in("l", addr)

    async def outb(self, addr: int, value: int) -> Response:
        return await self.port_out("b", addr, value)

    async def outw(self, addr: int, value: int) -> Response:
        return await self.port_out("w", addr, value)

    async def outl(self, addr: int, value: int) -> Response:
        return await self.port_out("l", addr, value)

    # ─── MMIO ────────────────────────────────────────────────────────

    async def mem_read(self, width: str, addr: int) -> int:
        """Read guest memory with an access of ``b``, ``w``, ``l`` or ``q``.

        Raises:
            ProtocolError: If the device rejects the request.
            ResponseDecodeError: If the value is not hex of that width.
        """
        response = await self._request(commands.build_mem_read(width, addr))
        return parse_hex(response, commands.WIDTH_BITS[width])

    async def mem_write(self, width: str, addr: int, value: int) -> Response:
        """Write guest memory with an access of ``b``, ``w``, ``l`` or ``q``."""
        return await self._request(commands.build_mem_write(width, addr, value))

    async def readb(self, addr: int) -> int:
        return await self.mem_read("b", addr)

    async def readw(self, addr: int) -> int:
        return await self.mem_read("w", addr)

    async def readl(self, addr: int) -> int:
        return await self.mem_read("l", addr)

    async def readq(self, addr: int) -> int:
        return await self.mem_read("q", addr)

    async def writeb(self, addr: int, value: int) -> Response:
        return await self.mem_write("b", addr, value)

    async def writew(self, addr: int, value: int) -> Response:
        return await self.mem_write("w", addr, value)

    async def writel(self, addr: int, value: int) -> Response:
        return await self.mem_write("l", addr, value)

    async def writeq(self, addr: int, value: int) -> Response:
        return await self.mem_write("q", addr, value)

    # ─── BULK MEMORY ─────────────────────────────────────────────────

    async def read(self, addr: int, size: int) -> str:
        """Read ``size`` bytes at ``addr``, returned as the device's hex text.

        Raises:
            ProtocolError: If the device rejects the request.
            ResponseDecodeError: If the response carries no payload.
        """
        response = await self._request(commands.build_read(addr, size))
        return expect_value(response)

    async def write(
        self, addr: int, data: str, data_len: int | None = None
    ) -> Response:
        """Write hex-encoded ``data`` at ``addr``.

        ``data_len`` overrides the length field, which otherwise is the
        length of ``data`` as passed.
        """
        return await self._request(commands.build_write(addr, data, data_len))

    async def b64write(self, addr: int, data: bytes | str) -> Response:
        """Write raw ``data`` at ``addr`` using base64 transfer encoding."""
        return await self._request(commands.build_b64write(addr, data))

    def __repr__(self) -> str:
        return f"QTestClient({self._transport!r})"
