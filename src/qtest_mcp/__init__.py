"""Client for the QEMU qtest machine-control protocol."""

from .client import QTestClient
from .errors import (
    ChannelClosedError,
    FramingError,
    NotConnectedError,
    ProtocolError,
    QTestError,
    ResponseDecodeError,
)
from .protocol.parser import Irq, IrqParseError, IrqState, Response, ResponseKind
from .transport import TcpTransport, Transport, UnixTransport

__version__ = "0.1.0"
