"""Command verbs and request line builders.

Every request is a single line: the verb followed by space-separated
arguments and a trailing newline. Addresses and register values are
written as lowercase hex with a ``0x`` prefix; counts, lengths, clock
values and IRQ numbers are decimal.
"""

from __future__ import annotations

import base64
from enum import Enum


class Command(str, Enum):
    """qtest request verbs."""

    CLOCK_STEP = "clock_step"
    CLOCK_SET = "clock_set"
    IRQ_INTERCEPT_IN = "irq_intercept_in"
    IRQ_INTERCEPT_OUT = "irq_intercept_out"
    SET_IRQ_IN = "set_irq_in"
    INB = "inb"
    INW = "inw"
    INL = "inl"
    OUTB = "outb"
    OUTW = "outw"
    OUTL = "outl"
    READB = "readb"
    READW = "readw"
    READL = "readl"
    READQ = "readq"
    WRITEB = "writeb"
    WRITEW = "writew"
    WRITEL = "writel"
    WRITEQ = "writeq"
    READ = "read"
    WRITE = "write"
    B64WRITE = "b64write"


# Access width suffix -> bits
WIDTH_BITS: dict[str, int] = {"b": 8, "w": 16, "l": 32, "q": 64}

PORT_WIDTHS = ("b", "w", "l")
MEMORY_WIDTHS = ("b", "w", "l", "q")


def _hex(value: int) -> str:
    return f"{value:#x}"


def _check_unsigned(name: str, value: int, bits: int | None = None) -> None:
    if value < 0:
        raise ValueError(f"{name} must be non-negative, got {value}")
    if bits is not None and value >> bits:
        raise ValueError(f"{name} must fit in {bits} bits, got {value:#x}")


def _check_width(width: str, allowed: tuple[str, ...]) -> int:
    if width not in allowed:
        raise ValueError(f"Unknown access width '{width}'. Valid: {list(allowed)}")
    return WIDTH_BITS[width]


def build_command(command: Command, *args: object) -> str:
    """Build a newline-terminated request line."""
    return " ".join([command.value, *(str(arg) for arg in args)]) + "\n"


def build_clock_step(ns: int | None = None) -> str:
    """Advance the virtual clock by ``ns``, or to the next timer deadline."""
    if ns is None:
        return build_command(Command.CLOCK_STEP)
    _check_unsigned("ns", ns)
    return build_command(Command.CLOCK_STEP, ns)


def build_clock_set(ns: int) -> str:
    _check_unsigned("ns", ns)
    return build_command(Command.CLOCK_SET, ns)


def build_irq_intercept_in(qom_path: str) -> str:
    return build_command(Command.IRQ_INTERCEPT_IN, qom_path)


def build_irq_intercept_out(qom_path: str) -> str:
    return build_command(Command.IRQ_INTERCEPT_OUT, qom_path)


def build_set_irq_in(qom_path: str, irq_name: str, line: int, level: int) -> str:
    """Drive input GPIO ``line`` of ``irq_name`` on the device at ``qom_path``.

    ``level`` is signed; qtest accepts any integer level.
    """
    _check_unsigned("line", line)
    return build_command(Command.SET_IRQ_IN, qom_path, irq_name, line, level)


def build_port_in(width: str, addr: int) -> str:
    """Build an ``in{b,w,l}`` port read."""
    _check_width(width, PORT_WIDTHS)
    _check_unsigned("addr", addr)
    return build_command(Command("in" + width), _hex(addr))


def build_port_out(width: str, addr: int, value: int) -> str:
    """Build an ``out{b,w,l}`` port write."""
    bits = _check_width(width, PORT_WIDTHS)
    _check_unsigned("addr", addr)
    _check_unsigned("value", value, bits)
    return build_command(Command("out" + width), _hex(addr), _hex(value))


def build_mem_read(width: str, addr: int) -> str:
    """Build a ``read{b,w,l,q}`` MMIO read."""
    _check_width(width, MEMORY_WIDTHS)
    _check_unsigned("addr", addr)
    return build_command(Command("read" + width), _hex(addr))


def build_mem_write(width: str, addr: int, value: int) -> str:
    """Build a ``write{b,w,l,q}`` MMIO write."""
    bits = _check_width(width, MEMORY_WIDTHS)
    _check_unsigned("addr", addr)
    _check_unsigned("value", value, bits)
    return build_command(Command("write" + width), _hex(addr), _hex(value))


def build_read(addr: int, size: int) -> str:
    """Build a bulk ``read`` of ``size`` bytes starting at ``addr``."""
    _check_unsigned("addr", addr)
    _check_unsigned("size", size)
    return build_command(Command.READ, _hex(addr), size)


def build_write(addr: int, data: str, data_len: int | None = None) -> str:
    """Build a bulk ``write`` of hex-encoded ``data``.

    Args:
        addr: Guest physical address.
        data: Hex string, with or without a ``0x`` prefix.
        data_len: Length field sent on the wire. Defaults to the length
            of ``data`` as given.
    """
    _check_unsigned("addr", addr)
    length = len(data) if data_len is None else data_len
    _check_unsigned("data_len", length)
    digits = data[2:] if data.startswith("0x") else data
    return build_command(Command.WRITE, _hex(addr), length, "0x" + digits)


def build_b64write(addr: int, data: bytes | str) -> str:
    """Build a ``b64write`` carrying ``data`` as standard base64.

    Text is UTF-8 encoded first; the length field is the raw byte count.
    """
    _check_unsigned("addr", addr)
    raw = data.encode("utf-8") if isinstance(data, str) else bytes(data)
    encoded = base64.b64encode(raw).decode("ascii")
    return build_command(Command.B64WRITE, _hex(addr), len(raw), encoded)
