"""Response and IRQ parsing for qtest messages."""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum

from ..errors import ProtocolError, ResponseDecodeError

_HEX_DIGITS = re.compile(r"[0-9a-fA-F]+")
_DEC_DIGITS = re.compile(r"[0-9]+")


class ResponseKind(Enum):
    """Outcome of a command as reported by the device."""

    OK = "ok"
    OK_VAL = "ok_val"
    ERR = "err"


@dataclass(frozen=True)
class Response:
    """A decoded response record.

    ``value`` holds the payload of an ``OK_VAL`` response or the full
    text of an ``ERR`` response, and is ``None`` for a bare ``OK``.
    """

    kind: ResponseKind
    value: str | None = None

    @classmethod
    def ok(cls) -> Response:
        return cls(ResponseKind.OK)

    @classmethod
    def ok_val(cls, value: str) -> Response:
        return cls(ResponseKind.OK_VAL, value)

    @classmethod
    def err(cls, text: str) -> Response:
        return cls(ResponseKind.ERR, text)

    @classmethod
    def from_line(cls, text: str) -> Response:
        """Parse response text.

        Anything whose first token is not ``OK`` is an error carrying the
        text unchanged. Tokens after ``OK`` are rejoined with single
        spaces to form the payload.
        """
        parts = text.split()
        if not parts or parts[0] != "OK":
            return cls.err(text)
        if len(parts) == 1:
            return cls.ok()
        return cls.ok_val(" ".join(parts[1:]))

    @property
    def is_ok(self) -> bool:
        return self.kind is not ResponseKind.ERR

    def to_dict(self) -> dict:
        return {"status": self.kind.value, "value": self.value}

    def __repr__(self) -> str:
        if self.kind is ResponseKind.OK:
            return "Response.Ok"
        if self.kind is ResponseKind.OK_VAL:
            return f"Response.OkVal({self.value!r})"
        return f"Response.Err({self.value!r})"


class IrqState(Enum):
    """Level transition reported for an intercepted IRQ line."""

    RAISE = "raise"
    LOWER = "lower"


class IrqParseError(ValueError):
    """A line is not a well-formed ``IRQ raise|lower N`` event."""


@dataclass(frozen=True)
class Irq:
    """An IRQ event emitted by the emulated machine.

    Line numbering depends on the machine and on which device's GPIOs
    were intercepted.
    """

    line: int
    state: IrqState

    @classmethod
    def parse(cls, text: str) -> Irq:
        """Parse ``IRQ raise|lower <line>``.

        Raises:
            IrqParseError: On any deviation from the grammar, including
                negative line numbers and trailing tokens.
        """
        parts = text.split()
        if not parts or parts[0] != "IRQ":
            raise IrqParseError("Invalid IRQ string")
        if len(parts) < 2 or parts[1] not in ("raise", "lower"):
            raise IrqParseError("Invalid IRQ type")
        if len(parts) < 3 or not _DEC_DIGITS.fullmatch(parts[2]):
            raise IrqParseError("Invalid IRQ line")
        if len(parts) > 3:
            raise IrqParseError("Invalid IRQ string")
        return cls(line=int(parts[2]), state=IrqState(parts[1]))

    @property
    def raised(self) -> bool:
        return self.state is IrqState.RAISE

    def to_dict(self) -> dict:
        return {"line": self.line, "state": self.state.value}


def _to_int(text: str, base: int) -> int:
    pattern = _HEX_DIGITS if base == 16 else _DEC_DIGITS
    if not pattern.fullmatch(text):
        raise ValueError(f"invalid digit found in {text!r}")
    return int(text, base)


def expect_value(response: Response) -> str:
    """Return the payload of an ``OK_VAL`` response.

    Raises:
        ProtocolError: For an ``ERR`` response.
        ResponseDecodeError: For a bare ``OK``.
    """
    if response.kind is ResponseKind.OK_VAL:
        return response.value
    if response.kind is ResponseKind.ERR:
        raise ProtocolError(f"invalid response: {response.value}", response)
    raise ResponseDecodeError("Invalid response: expected a value", response=response)


def parse_unsigned(response: Response) -> int:
    """Decode a decimal unsigned payload, as returned by ``clock_set``."""
    value = expect_value(response)
    try:
        return _to_int(value, 10)
    except ValueError as e:
        raise ResponseDecodeError(
            f"Could not parse value: {value} error {e}",
            payload=value,
            response=response,
        ) from e


def parse_hex(response: Response, bits: int) -> int:
    """Decode a hex payload (``0x`` prefix optional) that fits in ``bits``."""
    value = expect_value(response)
    digits = value[2:] if value.startswith("0x") else value
    try:
        number = _to_int(digits, 16)
        if number >> bits:
            raise ValueError(f"number too large to fit in {bits} bits")
    except ValueError as e:
        raise ResponseDecodeError(
            f"Could not parse value: {value} error {e}",
            payload=value,
            response=response,
        ) from e
    return number
