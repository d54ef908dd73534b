"""Resolve server configuration from command-line values and environment.

Each setting is looked up in order: explicit CLI value, environment
variable, built-in default.  A combined ``LISTEN_ADDR`` / ``--listen-addr``
value, when present, supersedes the separately configured bind address
and port no matter where those came from.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any, Callable

from .models import (
    DEFAULT_BIND,
    DEFAULT_MAX_BODY_SIZE,
    DEFAULT_PORT,
    DEFAULT_READ_TIMEOUT,
    DEFAULT_REQUEST_TIMEOUT,
    DEFAULT_SHUTDOWN_TIMEOUT,
    DEFAULT_TAG,
    ConfigError,
    ServerConfig,
)

# Setting name -> environment variable
ENV_VARS: dict[str, str] = {
    "bind": "BIND",
    "port": "PORT",
    "listen_addr": "LISTEN_ADDR",
    "max_body_size": "MAX_BODY_SIZE",
    "tag": "SERVER_TAG",
    "read_timeout": "READ_TIMEOUT",
    "request_timeout": "REQUEST_TIMEOUT",
    "shutdown_timeout": "SHUTDOWN_TIMEOUT",
}

# Above this the server still starts, but a warning is logged.
LARGE_BODY_WARNING = 10 * 1024 * 1024


def resolve(
    cli_args: Mapping[str, Any] | None,
    environment: Mapping[str, str] | None,
) -> ServerConfig:
    """Build a :class:`ServerConfig` from CLI values and environment.

    Parameters
    ----------
    cli_args:
        Setting name to the value given on the command line, ``None``
        (or missing) when the flag was not passed.  Keys are those of
        :data:`ENV_VARS`.
    environment:
        Process environment, usually ``os.environ``.  Empty strings are
        treated as unset.

    Raises
    ------
    ConfigError
        When any value fails validation.
    """
    cli_args = cli_args or {}
    environment = environment or {}

    def lookup(name: str) -> Any:
        value = cli_args.get(name)
        if value is not None:
            return value
        env_value = environment.get(ENV_VARS[name])
        if env_value is not None and env_value != "":
            return env_value
        return None

    bind = _with_default(lookup("bind"), DEFAULT_BIND, "bind", _parse_host)
    port = _with_default(lookup("port"), DEFAULT_PORT, "port", _parse_port)
    max_body_size = _with_default(
        lookup("max_body_size"), DEFAULT_MAX_BODY_SIZE, "max_body_size", _parse_positive_int
    )
    tag = lookup("tag")
    read_timeout = _with_default(
        lookup("read_timeout"), DEFAULT_READ_TIMEOUT, "read_timeout", _parse_positive_float
    )
    request_timeout = _with_default(
        lookup("request_timeout"), DEFAULT_REQUEST_TIMEOUT, "request_timeout", _parse_positive_float
    )
    shutdown_timeout = _with_default(
        lookup("shutdown_timeout"), DEFAULT_SHUTDOWN_TIMEOUT, "shutdown_timeout", _parse_non_negative_float
    )

    raw_listen = lookup("listen_addr")
    listen_override = parse_listen_addr(raw_listen) if raw_listen is not None else None

    return ServerConfig(
        bind_address=bind,
        port=port,
        listen_override=listen_override,
        max_body_size=max_body_size,
        server_tag=str(tag) if tag is not None else DEFAULT_TAG,
        read_timeout=read_timeout,
        request_timeout=request_timeout,
        shutdown_timeout=shutdown_timeout,
    )


def parse_listen_addr(raw: Any) -> tuple[str, int]:
    """Parse a combined ``host:port`` value.

    IPv6 hosts must be bracketed: ``[::1]:8080``.
    """
    text = str(raw).strip()
    if text.startswith("["):
        host, sep, rest = text[1:].partition("]")
        if not sep or not rest.startswith(":"):
            raise ConfigError("listen_addr", raw, "expected [host]:port")
        port_str = rest[1:]
    else:
        host, sep, port_str = text.rpartition(":")
        if not sep:
            raise ConfigError("listen_addr", raw, "expected host:port")
        if ":" in host:
            raise ConfigError("listen_addr", raw, "IPv6 hosts must be bracketed")
    if not host:
        raise ConfigError("listen_addr", raw, "missing host")
    try:
        port = _parse_port(port_str)
    except ValueError:
        raise ConfigError("listen_addr", raw, "port must be 0-65535") from None
    return host, port


def oversized_body_warning(config: ServerConfig) -> str | None:
    """Return a warning message when the body limit is unusually large."""
    if config.max_body_size > LARGE_BODY_WARNING:
        mib = config.max_body_size // (1024 * 1024)
        return f"Max body size is quite large ({mib}MB), consider reducing it"
    return None


# ---------------------------------------------------------------------------
# Value parsers
# ---------------------------------------------------------------------------

def _with_default(raw: Any, default: Any, field_name: str, parser: Callable[[Any], Any]) -> Any:
    if raw is None:
        return default
    try:
        return parser(raw)
    except ValueError as exc:
        raise ConfigError(field_name, raw, str(exc)) from None


def _parse_host(raw: Any) -> str:
    host = str(raw).strip()
    if not host:
        raise ValueError("must not be empty")
    return host


def _parse_port(raw: Any) -> int:
    port = _parse_int(raw)
    if not 0 <= port <= 65535:
        raise ValueError("must be 0-65535")
    return port


def _parse_positive_int(raw: Any) -> int:
    value = _parse_int(raw)
    if value <= 0:
        raise ValueError("must be a positive integer")
    return value


def _parse_int(raw: Any) -> int:
    if isinstance(raw, bool):
        raise ValueError("not an integer")
    if isinstance(raw, int):
        return raw
    text = str(raw).strip()
    # int() accepts "+5" and "1_000"; keep to plain digits.
    if not text.isdigit() or not text.isascii():
        raise ValueError("not an integer")
    return int(text)


def _parse_positive_float(raw: Any) -> float:
    value = _parse_non_negative_float(raw)
    if value == 0:
        raise ValueError("must be greater than zero")
    return value


def _parse_non_negative_float(raw: Any) -> float:
    try:
        value = float(raw)
    except (TypeError, ValueError):
        raise ValueError("not a number") from None
    if value != value or value in (float("inf"), float("-inf")) or value < 0:
        raise ValueError("must be a non-negative number")
    return value
