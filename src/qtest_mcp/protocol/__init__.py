"""Protocol layer: line framing, request builders, and response parsing."""

from .framing import Demultiplexer, FrameReader
from .commands import Command, build_command
from .parser import Irq, IrqState, Response, ResponseKind
