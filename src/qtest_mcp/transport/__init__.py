"""Transport layer: listeners QEMU connects to."""

from .base import Transport
from .tcp import TcpTransport
from .unix import UnixTransport
