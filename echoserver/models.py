"""Data models for server configuration, echo responses and errors."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class LifecycleState(enum.Enum):
    """Lifecycle of the listening server."""
    STARTING = "starting"
    LISTENING = "listening"
    SHUTTING_DOWN = "shutting_down"
    STOPPED = "stopped"


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

DEFAULT_BIND = "0.0.0.0"
DEFAULT_PORT = 3000
DEFAULT_MAX_BODY_SIZE = 65536  # 64 KiB
DEFAULT_TAG = "echo-server"
DEFAULT_READ_TIMEOUT = 10.0
DEFAULT_REQUEST_TIMEOUT = 30.0
DEFAULT_SHUTDOWN_TIMEOUT = 10.0


@dataclass(frozen=True)
class ServerConfig:
    """Resolved, immutable server configuration."""
    bind_address: str = DEFAULT_BIND
    port: int = DEFAULT_PORT
    listen_override: tuple[str, int] | None = None
    max_body_size: int = DEFAULT_MAX_BODY_SIZE
    server_tag: str = DEFAULT_TAG
    read_timeout: float = DEFAULT_READ_TIMEOUT
    request_timeout: float = DEFAULT_REQUEST_TIMEOUT
    shutdown_timeout: float = DEFAULT_SHUTDOWN_TIMEOUT

    @property
    def listen_address(self) -> tuple[str, int]:
        """Effective ``(host, port)`` to bind."""
        if self.listen_override is not None:
            return self.listen_override
        return (self.bind_address, self.port)


# ---------------------------------------------------------------------------
# Echo response
# ---------------------------------------------------------------------------

@dataclass
class EchoResponse:
    """Structured description of one inbound request."""
    method: str = ""
    path: str = ""
    headers: dict[str, str] = field(default_factory=dict)
    query: dict[str, str] = field(default_factory=dict)
    body: Any = None
    server_tag: str = DEFAULT_TAG
    server_version: str = ""
    timestamp: str = ""
    timestamp_unix: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "method": self.method,
            "path": self.path,
            "headers": self.headers,
            "query": self.query,
            "body": self.body,
            "server_tag": self.server_tag,
            "server_version": self.server_version,
            "timestamp": self.timestamp,
            "timestamp_unix": self.timestamp_unix,
        }


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class ConfigError(ValueError):
    """A configuration value could not be parsed or is out of range."""

    def __init__(self, field_name: str, raw_value: Any, reason: str = ""):
        self.field = field_name
        self.raw_value = raw_value
        self.reason = reason
        msg = f"invalid value for {field_name}: {raw_value!r}"
        if reason:
            msg += f" ({reason})"
        super().__init__(msg)


class BindError(OSError):
    """The listening socket could not be bound."""

    def __init__(self, address: tuple[str, int], reason: str):
        self.address = address
        self.reason = reason
        super().__init__(f"failed to bind {address[0]}:{address[1]}: {reason}")


class BodyTooLarge(Exception):
    """Request body exceeds the configured maximum."""

    def __init__(self, limit: int):
        self.limit = limit
        super().__init__(f"request body exceeds {limit} bytes")


class BodyReadError(Exception):
    """Request body framing is malformed or the read timed out."""

    def __init__(self, message: str, status: int = 400):
        self.status = status
        super().__init__(message)
