"""Exception types raised by the qtest client."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .protocol.parser import Response


class QTestError(Exception):
    """Base class for qtest client errors."""


class NotConnectedError(QTestError, ConnectionError):
    """Raised when sending before a peer has been attached."""


class ChannelClosedError(QTestError, ConnectionError):
    """Raised when a channel closed before a value arrived.

    On the response path this means the background reader task has
    terminated. When the task died of a fault, the fault is available as
    ``__cause__``.
    """


class FramingError(QTestError):
    """The incoming byte stream could not be decoded as text."""


class ProtocolError(QTestError):
    """The device answered with an error or an unexpected response."""

    def __init__(self, message: str, response: Response | None = None) -> None:
        super().__init__(message)
        self.response = response


class ResponseDecodeError(ProtocolError):
    """A response did not have the shape the command expects.

    Attributes:
        payload: Raw payload text that failed to decode (empty when the
            response carried no payload).
    """

    def __init__(
        self,
        message: str,
        payload: str = "",
        response: Response | None = None,
    ) -> None:
        super().__init__(message, response)
        self.payload = payload
