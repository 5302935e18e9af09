"""Server configuration read from the environment."""

from __future__ import annotations

import os
from dataclasses import dataclass

from .transport import TcpTransport, Transport, UnixTransport

DEFAULT_ADDRESS = "localhost:3000"
DEFAULT_TRANSPORT = "tcp"
DEFAULT_LOG_LEVEL = "INFO"

TRANSPORTS: dict[str, type[Transport]] = {
    "tcp": TcpTransport,
    "unix": UnixTransport,
}


def resolve_transport(name: str) -> type[Transport]:
    """Map a transport name (``tcp`` or ``unix``) to its class."""
    try:
        return TRANSPORTS[name.lower()]
    except KeyError:
        raise ValueError(
            f"Unknown transport '{name}'. Valid: {list(TRANSPORTS)}"
        ) from None


@dataclass
class ServerConfig:
    """Defaults for the MCP server's ``connect`` tool and logging.

    Environment variables:
        QTEST_ADDRESS: ``host:port`` or socket path (default ``localhost:3000``).
        QTEST_TRANSPORT: ``tcp`` or ``unix`` (default ``tcp``).
        QTEST_LOG_LEVEL: logging level name (default ``INFO``).
    """

    address: str = DEFAULT_ADDRESS
    transport: str = DEFAULT_TRANSPORT
    log_level: str = DEFAULT_LOG_LEVEL

    @classmethod
    def from_env(cls, environ: dict[str, str] | None = None) -> ServerConfig:
        env = os.environ if environ is None else environ
        config = cls(
            address=env.get("QTEST_ADDRESS", DEFAULT_ADDRESS),
            transport=env.get("QTEST_TRANSPORT", DEFAULT_TRANSPORT).lower(),
            log_level=env.get("QTEST_LOG_LEVEL", DEFAULT_LOG_LEVEL).upper(),
        )
        resolve_transport(config.transport)
        return config

    def to_dict(self) -> dict:
        return {
            "address": self.address,
            "transport": self.transport,
            "log_level": self.log_level,
        }
