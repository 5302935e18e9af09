"""Tests for the qtest command engine."""

from __future__ import annotations

import asyncio

import pytest

from qtest_mcp.channel import Channel
from qtest_mcp.client import QTestClient
from qtest_mcp.errors import (
    ChannelClosedError,
    FramingError,
    NotConnectedError,
    ProtocolError,
    ResponseDecodeError,
)
from qtest_mcp.protocol.parser import Irq, IrqState, Response
from qtest_mcp.transport import TcpTransport, Transport
from qtest_mcp.transport.tcp import parse_host_port


class FakeTransport(Transport):
    """In-memory transport that answers each request with scripted chunks."""

    def __init__(self, out_channel: Channel[bytes]) -> None:
        self._out = out_channel
        self._writer = None
        self._closed = False
        self.attached = False
        self.sent: list[str] = []
        self.replies: list[list[bytes]] = []

    @classmethod
    async def create(cls, address: str, out_channel: Channel[bytes]) -> FakeTransport:
        return cls(out_channel)

    @property
    def address(self) -> str:
        return "fake"

    async def _open_stream(self, conn):
        raise NotImplementedError

    async def attach_connection(self) -> None:
        self.attached = True

    async def send(self, data: str) -> int:
        if not self.attached:
            raise NotConnectedError("No connection attached")
        self.sent.append(data)
        if self.replies:
            for chunk in self.replies.pop(0):
                await self._out.send(chunk)
        return len(data)

    async def push(self, chunk: bytes) -> None:
        await self._out.send(chunk)

    async def close(self) -> None:
        self._closed = True
        self._out.close()


async def _fake_client(*replies: str | list[bytes]) -> tuple[QTestClient, FakeTransport]:
    client = await QTestClient.create("fake", FakeTransport)
    await client.attach_connection()
    fake = client.transport
    for reply in replies:
        fake.replies.append([reply.encode()] if isinstance(reply, str) else reply)
    return client, fake


@pytest.mark.asyncio
async def test_send_before_attach():
    client = await QTestClient.create("fake", FakeTransport)
    with pytest.raises(NotConnectedError):
        await client.clock_step()
    await client.close()


@pytest.mark.asyncio
async def test_clock_step_returns_raw_response():
    client, fake = await _fake_client("OK 1000\n", "OK\n")
    assert await client.clock_step() == Response.ok_val("1000")
    assert await client.clock_step(50) == Response.ok()
    assert fake.sent == ["clock_step\n", "clock_step 50\n"]
    await client.close()


@pytest.mark.asyncio
async def test_clock_set():
    client, fake = await _fake_client("OK 123\n")
    assert await client.clock_set(123) == 123
    assert fake.sent == ["clock_set 123\n"]
    await client.close()


@pytest.mark.asyncio
async def test_clock_set_non_numeric():
    client, _ = await _fake_client("OK later\n")
    with pytest.raises(ResponseDecodeError) as info:
        await client.clock_set(1)
    assert info.value.payload == "later"
    await client.close()


@pytest.mark.asyncio
async def test_clock_set_error_response():
    client, _ = await _fake_client("FAIL\n")
    with pytest.raises(ProtocolError):
        await client.clock_set(1)
    await client.close()


@pytest.mark.asyncio
async def test_irq_commands():
    client, fake = await _fake_client("OK\n", "OK\n", "OK\n")
    assert await client.irq_intercept_in("/machine/soc") == Response.ok()
    assert await client.irq_intercept_out("/machine/soc") == Response.ok()
    assert await client.set_irq_in("/machine/soc/gpio[2]", "input-in", 13, 1) == (
        Response.ok()
    )
    assert fake.sent == [
        "irq_intercept_in /machine/soc\n",
        "irq_intercept_out /machine/soc\n",
        "set_irq_in /machine/soc/gpio[2] input-in 13 1\n",
    ]
    await client.close()


@pytest.mark.asyncio
async def test_second_intercept_rejection_is_returned():
    """Rejection of a repeated interception comes back as an Err response."""
    client, _ = await _fake_client("OK\n", "FAIL Interception already in place\n")
    await client.irq_intercept_in("/machine/soc")
    response = await client.irq_intercept_in("/machine/soc")
    assert not response.is_ok
    await client.close()


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "method, expected",
    [
        ("inb", "inb 0x10\n"),
        ("inw", "inw 0x10\n"),
        ("inl", "inl 0x10\n"),
        ("readb", "readb 0x10\n"),
        ("readw", "readw 0x10\n"),
        ("readl", "readl 0x10\n"),
        ("readq", "readq 0x10\n"),
    ],
)
async def test_read_widths_decode_hex(method, expected):
    client, fake = await _fake_client("OK 0x2a\n")
    assert await getattr(client, method)(0x10) == 42
    assert fake.sent == [expected]
    await client.close()


@pytest.mark.asyncio
async def test_read_value_too_wide():
    client, _ = await _fake_client("OK 0x1ff\n")
    with pytest.raises(ResponseDecodeError):
        await client.inb(0x60)
    await client.close()


@pytest.mark.asyncio
async def test_read_requires_value():
    client, _ = await _fake_client("OK\n")
    with pytest.raises(ResponseDecodeError):
        await client.readl(0x0)
    await client.close()


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "method, value, expected",
    [
        ("outb", 0x1, "outb 0x80 0x1\n"),
        ("outw", 0xBEEF, "outw 0x80 0xbeef\n"),
        ("outl", 0xDEADBEEF, "outl 0x80 0xdeadbeef\n"),
        ("writeb", 0xFF, "writeb 0x80 0xff\n"),
        ("writew", 0xFFFF, "writew 0x80 0xffff\n"),
        ("writel", 0x12345678, "writel 0x80 0x12345678\n"),
        ("writeq", 0x1122334455667788, "writeq 0x80 0x1122334455667788\n"),
    ],
)
async def test_write_widths(method, value, expected):
    client, fake = await _fake_client("OK\n")
    assert await getattr(client, method)(0x80, value) == Response.ok()
    assert fake.sent == [expected]
    await client.close()


@pytest.mark.asyncio
async def test_invalid_value_sends_nothing():
    client, fake = await _fake_client()
    with pytest.raises(ValueError):
        await client.writeb(0x0, 0x100)
    assert fake.sent == []
    await client.close()


@pytest.mark.asyncio
async def test_bulk_read_returns_payload_verbatim():
    client, fake = await _fake_client("OK 0xdeadbeef\n")
    assert await client.read(0x1000, 4) == "0xdeadbeef"
    assert fake.sent == ["read 0x1000 4\n"]
    await client.close()


@pytest.mark.asyncio
async def test_bulk_read_error():
    client, _ = await _fake_client("FAIL\n")
    with pytest.raises(ProtocolError):
        await client.read(0x1000, 4)
    await client.close()


@pytest.mark.asyncio
async def test_bulk_write_and_b64write():
    client, fake = await _fake_client("OK\n", "OK\n", "OK\n")
    await client.write(0x1000, "0xdeadbeef")
    await client.write(0x1000, "deadbeef", 4)
    await client.b64write(0x1000, b"\x00\x01\x02")
    assert fake.sent == [
        "write 0x1000 10 0xdeadbeef\n",
        "write 0x1000 4 0xdeadbeef\n",
        "b64write 0x1000 3 AAEC\n",
    ]
    await client.close()


@pytest.mark.asyncio
async def test_interleaved_irqs_keep_order():
    """IRQs arrive in receipt order; each call gets its own response."""
    client, _ = await _fake_client(
        [b"IRQ raise 4\n", b"OK 0x1\n"],
        [b"IRQ lower 4\n", b"IRQ raise 5\n", b"OK 0x2\n"],
    )
    assert await client.readl(0x0) == 1
    assert await client.readl(0x4) == 2

    received = [await client.irqs.recv() for _ in range(3)]
    assert received == [
        Irq(4, IrqState.RAISE),
        Irq(4, IrqState.LOWER),
        Irq(5, IrqState.RAISE),
    ]
    await client.close()


@pytest.mark.asyncio
async def test_response_split_across_chunks():
    client, _ = await _fake_client([b"OK ", b"1\n"])
    assert await client.clock_set(1) == 1
    await client.close()


@pytest.mark.asyncio
async def test_pending_call_fails_when_connection_ends():
    client, fake = await _fake_client()
    call = asyncio.create_task(client.clock_step())
    await asyncio.sleep(0.01)
    assert not call.done()

    await fake.close()
    with pytest.raises(ChannelClosedError):
        await asyncio.wait_for(call, 1)
    await asyncio.wait_for(client.wait_closed(), 1)
    assert not client.running


@pytest.mark.asyncio
async def test_framing_fault_is_cause_of_closure():
    client, _ = await _fake_client([b"\xff\xfe\n"])
    with pytest.raises(ChannelClosedError) as info:
        await client.clock_step()
    assert isinstance(info.value.__cause__, FramingError)

    with pytest.raises(ChannelClosedError):
        await client.clock_step()
    await client.close()


@pytest.mark.asyncio
async def test_irq_stream_ends_with_connection():
    client, fake = await _fake_client()
    await fake.push(b"IRQ raise 1\n")
    await fake.close()
    assert [irq async for irq in client.irqs] == [Irq(1, IrqState.RAISE)]


@pytest.mark.asyncio
async def test_tcp_end_to_end():
    """Drive a client over a real loopback socket with a scripted peer."""
    client = await QTestClient.create("127.0.0.1:0", TcpTransport)
    host, port = parse_host_port(client.address)
    attach = asyncio.create_task(client.attach_connection())
    reader, writer = await asyncio.open_connection(host, port)
    await asyncio.wait_for(attach, 2)

    async def device():
        line = await reader.readline()
        assert line == b"irq_intercept_in /machine/soc\n"
        writer.write(b"OK\n")
        await writer.drain()
        await asyncio.sleep(0.05)
        writer.write(b"IRQ raise 2\n")
        await writer.drain()
        await asyncio.sleep(0.05)
        line = await reader.readline()
        assert line == b"readl 0x40000000\n"
        writer.write(b"OK 0x2a\n")
        await writer.drain()

    peer = asyncio.create_task(device())
    assert await client.irq_intercept_in("/machine/soc") == Response.ok()
    assert await asyncio.wait_for(client.irqs.recv(), 2) == Irq(2, IrqState.RAISE)
    assert await client.readl(0x40000000) == 42
    await asyncio.wait_for(peer, 2)

    writer.close()
    await writer.wait_closed()
    await asyncio.wait_for(client.wait_closed(), 2)
    with pytest.raises(ChannelClosedError):
        await client.clock_step()
    await client.close()


@pytest.mark.asyncio
async def test_close_with_unread_irq_flood():
    """close() returns even when nobody drains the IRQ stream."""
    client = await QTestClient.create("127.0.0.1:0", TcpTransport)
    host, port = parse_host_port(client.address)
    attach = asyncio.create_task(client.attach_connection())
    _, writer = await asyncio.open_connection(host, port)
    await asyncio.wait_for(attach, 2)

    writer.write(b"IRQ raise 1\n" * 200 * 90)
    await asyncio.sleep(0.2)

    await asyncio.wait_for(client.close(), 3)
    assert not client.running
    assert client.irqs.closed
    drained = [irq async for irq in client.irqs]
    assert drained
    assert all(irq == Irq(1, IrqState.RAISE) for irq in drained)

    writer.close()
