"""Line framing and demultiplexing of the qtest byte stream.

The device writes two kinds of lines onto the same stream::

    OK [payload...]          response to the last command
    <anything else>          error response to the last command
    IRQ raise|lower <n>      asynchronous interrupt event, at any time

The stream carries no framing of its own. ``FrameReader`` reassembles
raw chunks into frames that end on a line boundary, and
``Demultiplexer`` routes each line of a frame to the IRQ channel or the
response channel.
"""

from __future__ import annotations

import codecs
import logging
from typing import AsyncIterator

from ..channel import Channel
from ..errors import ChannelClosedError, FramingError
from .parser import Irq, IrqParseError, Response

logger = logging.getLogger(__name__)


class FrameReader:
    """Accumulates byte chunks until at least one complete line is present.

    A frame is everything up to and including the last newline seen so
    far; the unterminated remainder stays buffered for the next chunk.
    """

    def __init__(self, chunks: Channel[bytes]) -> None:
        self._chunks = chunks
        self._decoder = codecs.getincrementaldecoder("utf-8")()
        self._buffer = ""

    @property
    def pending(self) -> str:
        """Text received after the last complete line."""
        return self._buffer

    def feed(self, chunk: bytes) -> str | None:
        """Add a chunk and return a complete frame, if one is available.

        Raises:
            FramingError: If the stream is not valid UTF-8.
        """
        try:
            self._buffer += self._decoder.decode(chunk)
        except UnicodeDecodeError as e:
            raise FramingError(f"Invalid UTF-8 in qtest stream: {e}") from e

        end = self._buffer.rfind("\n")
        if end < 0:
            return None
        frame, self._buffer = self._buffer[: end + 1], self._buffer[end + 1 :]
        return frame

    async def frames(self) -> AsyncIterator[str]:
        """Yield frames until the chunk channel closes.

        A channel closed because of a read error re-raises that closure.
        """
        while True:
            try:
                chunk = await self._chunks.recv()
            except ChannelClosedError as e:
                if e.__cause__ is not None:
                    raise
                break
            frame = self.feed(chunk)
            if frame is not None:
                yield frame

        if self._buffer:
            logger.warning("Discarding unterminated data at close: %r", self._buffer)
            self._buffer = ""


class Demultiplexer:
    """Routes framed lines to the IRQ and response channels.

    Each line that parses as an IRQ yields one ``Irq``. Each other
    non-blank line yields one ``Response`` parsed from the *whole* frame
    the line arrived in, so a frame holding several IRQ lines and one
    response line produces the IRQs followed by a single response built
    from the full frame text. Client code relies on this sequencing.
    """

    def __init__(
        self,
        chunks: Channel[bytes],
        irqs: Channel[Irq],
        responses: Channel[Response],
    ) -> None:
        self._reader = FrameReader(chunks)
        self._irqs = irqs
        self._responses = responses

    async def dispatch(self, block: str) -> None:
        """Route every line of one frame.

        Lines break on ``\\n`` only, with one trailing ``\\r`` removed.
        """
        text = block.strip("\x00")
        for line in text.split("\n"):
            if line.endswith("\r"):
                line = line[:-1]
            if not line.strip():
                continue
            try:
                irq = Irq.parse(line)
            except IrqParseError:
                response = Response.from_line(text)
                logger.debug("Response: %r", response)
                await self._responses.send(response)
            else:
                logger.debug("IRQ: line %d %s", irq.line, irq.state.value)
                await self._irqs.send(irq)

    async def run(self) -> None:
        """Read and route frames until the connection ends.

        Both output channels are closed on exit. If the task stopped
        because of a fault, receivers see it as the cause of their
        ``ChannelClosedError``.
        """
        cause: BaseException | None = None
        try:
            async for frame in self._reader.frames():
                logger.debug("Frame: %r", frame)
                await self.dispatch(frame)
        except FramingError as e:
            logger.error("Stopping qtest reader: %s", e)
            cause = e
        except ChannelClosedError as e:
            logger.error("Stopping qtest reader: %s", e.__cause__ or e)
            cause = e.__cause__ or e
        finally:
            self._irqs.close(cause)
            self._responses.close(cause)
        logger.info("qtest reader stopped")
