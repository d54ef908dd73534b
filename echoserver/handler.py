"""Echo request handler.

Every request, whatever its method or path, is answered with a JSON
description of itself.  The pure helpers (``parse_body``,
``collect_headers``, ``parse_query``, ``build_echo``,
``format_access_line``) hold the echo semantics; ``EchoRequestHandler``
wires them to ``http.server`` and enforces the body size limit and read
deadlines.
"""

from __future__ import annotations

import json
import logging
import math
import re
import selectors
import socket
import time
from dataclasses import replace
from datetime import datetime, timezone
from email.message import Message
from http import HTTPStatus
from http.server import BaseHTTPRequestHandler
from typing import Any
from urllib.parse import parse_qsl, urlsplit

from . import __version__
from .models import BodyReadError, BodyTooLarge, EchoResponse, ServerConfig

log = logging.getLogger(__name__)
access_log = logging.getLogger("echoserver.access")

_READ_CHUNK = 16 * 1024
_MAX_REQUEST_LINE = 65536
_MAX_CHUNK_LINE = 1024
_IDLE_POLL = 0.1
_LINGER_TIMEOUT = 2.0
_LINGER_MAX_BYTES = 1024 * 1024
_CHUNK_SIZE_RE = re.compile(rb"[0-9A-Fa-f]+")

# nginx's status for a client that closed the connection before the reply
CLIENT_CLOSED_REQUEST = 499

_MONTHS = (
    "Jan", "Feb", "Mar", "Apr", "May", "Jun",
    "Jul", "Aug", "Sep", "Oct", "Nov", "Dec",
)


# ---------------------------------------------------------------------------
# Echo helpers
# ---------------------------------------------------------------------------

def arrival_time() -> datetime:
    """Current UTC instant truncated to whole seconds."""
    return datetime.now(timezone.utc).replace(microsecond=0)


def parse_body(raw: bytes) -> Any:
    """Interpret a request body.

    Empty bodies become ``None``, valid JSON becomes the decoded value,
    anything else is returned as text (invalid UTF-8 replaced).  Documents
    that only decode to non-finite numbers, or that nest too deeply to
    decode, count as text.
    """
    if not raw:
        return None
    text = raw.decode("utf-8", errors="replace")
    try:
        return json.loads(text, parse_constant=_reject_constant, parse_float=_finite_float)
    except (ValueError, RecursionError):
        return text


def _reject_constant(name: str) -> Any:
    raise ValueError(f"non-standard JSON constant {name}")


def _finite_float(literal: str) -> float:
    # 1e400 overflows to inf, which cannot be written back as JSON
    value = float(literal)
    if math.isinf(value):
        raise ValueError(f"number out of range: {literal[:32]}")
    return value


def collect_headers(message: Message | None) -> dict[str, str]:
    """Map lower-cased header names to values, comma-joining repeats."""
    headers: dict[str, str] = {}
    if message is None:
        return headers
    for name, value in message.items():
        key = name.lower()
        if key in headers:
            headers[key] = f"{headers[key]}, {value}"
        else:
            headers[key] = value
    return headers


def split_target(target: str) -> tuple[str, str]:
    """Split a request target into ``(path, query_string)``."""
    if target.startswith("/") or target == "*":
        path, _, rest = target.partition("?")
        return path.partition("#")[0], rest.partition("#")[0]
    # absolute-form, e.g. requests sent through a forward proxy
    try:
        parts = urlsplit(target)
    except ValueError:
        # e.g. an unterminated IPv6 host: "http://[/x"
        return target, ""
    return parts.path or "/", parts.query


def parse_query(target: str) -> dict[str, str]:
    """Parse the query string of *target*; the last repeated name wins."""
    _, query = split_target(target)
    if not query:
        return {}
    return dict(parse_qsl(query, keep_blank_values=True))


def build_echo(
    method: str,
    target: str,
    headers: Message | None,
    raw_body: bytes,
    config: ServerConfig,
    arrival: datetime,
) -> EchoResponse:
    """Assemble the echo response for one request."""
    path, _ = split_target(target)
    return EchoResponse(
        method=method.upper(),
        path=path,
        headers=collect_headers(headers),
        query=parse_query(target),
        body=parse_body(raw_body),
        server_tag=config.server_tag,
        server_version=__version__,
        timestamp=arrival.isoformat(),
        timestamp_unix=int(arrival.timestamp()),
    )


def render_echo(echo: EchoResponse, raw_body: bytes) -> bytes:
    """Serialize *echo* as strict JSON.

    A body the encoder cannot write back (too deeply nested) is echoed
    as its raw text instead.
    """
    try:
        return _encode(echo.to_dict())
    except (RecursionError, ValueError):
        log.debug("Echoing body as text; decoded value is not serializable")
        fallback = replace(echo, body=raw_body.decode("utf-8", errors="replace"))
        return _encode(fallback.to_dict())


def _encode(payload: dict[str, Any]) -> bytes:
    return json.dumps(payload, allow_nan=False).encode("utf-8")


def format_access_line(
    client_ip: str | None,
    when: datetime,
    request_line: str | None,
    status: int,
    body_bytes: int,
    referrer: str | None = None,
    user_agent: str | None = None,
) -> str:
    """Render one nginx "combined" style access log line."""
    when = when.astimezone(timezone.utc)
    stamp = (
        f"{when.day:02d}/{_MONTHS[when.month - 1]}/{when.year:04d}:"
        f"{when.hour:02d}:{when.minute:02d}:{when.second:02d} +0000"
    )
    return (
        f'{client_ip or "-"} - - [{stamp}] "{_escape(request_line)}" '
        f'{status} {body_bytes} "{_escape(referrer)}" "{_escape(user_agent)}"'
    )


def _escape(value: str | None) -> str:
    if not value:
        return "-"
    out = []
    for ch in value:
        if ch in ('"', "\\") or ord(ch) < 0x20 or ord(ch) == 0x7F:
            out.append(f"\\x{ord(ch):02X}")
        else:
            out.append(ch)
    return "".join(out)


# ---------------------------------------------------------------------------
# Request reader
# ---------------------------------------------------------------------------

class RequestReader:
    """Buffered socket reader with a per-request deadline.

    The deadline starts with the first byte of a request and covers its
    request line, headers and body.  Before every ``recv`` the socket
    timeout is narrowed to what is left of it, so a client trickling
    bytes cannot keep renewing ``read_timeout``.  Expiry raises
    :class:`TimeoutError`.
    """

    def __init__(self, sock: socket.socket, read_timeout: float, request_timeout: float):
        self._sock = sock
        self._read_timeout = read_timeout
        self._request_timeout = request_timeout
        self._buffer = bytearray()
        self._waiting = False
        self.deadline: float | None = None

    @property
    def pending(self) -> bool:
        """Bytes already received but not yet consumed."""
        return bool(self._buffer)

    @property
    def started(self) -> bool:
        return self.deadline is not None

    def begin(self) -> None:
        """Expect a new request; its clock starts on the first byte."""
        self.deadline = None
        self._waiting = True
        if self._buffer:
            self._start_clock()

    def end(self) -> None:
        """The request has been read; fall back to the plain read timeout."""
        if self.deadline is not None:
            self._sock.settimeout(self._read_timeout)
        self.deadline = None
        self._waiting = False

    def readline(self, limit: int = -1) -> bytes:
        while True:
            newline = self._buffer.find(b"\n")
            if newline >= 0:
                size = newline + 1
                break
            if 0 <= limit <= len(self._buffer) or not self._fill():
                size = len(self._buffer)
                break
        if limit >= 0:
            size = min(size, limit)
        return self._take(size)

    def read1(self, size: int = -1) -> bytes:
        if not self._buffer:
            self._fill()
        if size < 0:
            size = len(self._buffer)
        return self._take(size)

    def close(self) -> None:
        self._buffer.clear()

    def _fill(self) -> bool:
        if self.deadline is not None:
            remaining = self.deadline - time.monotonic()
            if remaining <= 0:
                raise TimeoutError("request deadline exceeded")
            self._sock.settimeout(min(self._read_timeout, remaining))
        data = self._sock.recv(_READ_CHUNK)
        if not data:
            return False
        self._buffer += data
        if self._waiting and self.deadline is None:
            self._start_clock()
        return True

    def _start_clock(self) -> None:
        self.deadline = time.monotonic() + self._request_timeout

    def _take(self, size: int) -> bytes:
        data = bytes(self._buffer[:size])
        del self._buffer[:size]
        return data


# ---------------------------------------------------------------------------
# Request handler
# ---------------------------------------------------------------------------

class EchoRequestHandler(BaseHTTPRequestHandler):
    """Answer every request with an echo of itself.

    Expects ``self.server`` to expose ``config`` (:class:`ServerConfig`)
    and ``token`` (a shutdown token with ``is_set()``).
    """

    protocol_version = "HTTP/1.1"
    server_version = f"http-echo-server/{__version__}"
    sys_version = ""

    _arrival: datetime | None = None

    @property
    def config(self) -> ServerConfig:
        return self.server.config

    def setup(self) -> None:
        self.timeout = self.config.read_timeout
        super().setup()
        self.rfile.close()
        self.rfile = RequestReader(
            self.connection, self.config.read_timeout, self.config.request_timeout,
        )

    def handle_one_request(self) -> None:
        """Wait for one request and answer it, whatever its method."""
        self._reset_request()
        if not self._await_request():
            self.close_connection = True
            return
        self.rfile.begin()
        try:
            self.raw_requestline = self.rfile.readline(_MAX_REQUEST_LINE + 1)
            if len(self.raw_requestline) > _MAX_REQUEST_LINE:
                self.send_error(HTTPStatus.REQUEST_URI_TOO_LONG)
                return
            if not self.raw_requestline:
                self.close_connection = True
                return
            if not self.parse_request():
                return
            self.handle_echo()
            self.wfile.flush()
        except TimeoutError as exc:
            self.close_connection = True
            log.warning("Request from %s timed out: %s", self.client_address[0], exc)
            self.send_error(HTTPStatus.REQUEST_TIMEOUT, "request timed out")

    def _reset_request(self) -> None:
        self._arrival = None
        self.command = ""
        self.requestline = ""
        self.request_version = ""
        self.headers = None

    def _await_request(self) -> bool:
        """Wait for the next request to start arriving.

        Returns False when the connection should close instead: the
        client stayed silent for ``read_timeout`` or shutdown began while
        the connection was idle.
        """
        if self.rfile.pending:
            return True
        deadline = time.monotonic() + self.config.read_timeout
        with selectors.DefaultSelector() as selector:
            selector.register(self.connection, selectors.EVENT_READ)
            while True:
                remaining = deadline - time.monotonic()
                if selector.select(max(0.0, min(_IDLE_POLL, remaining))):
                    return True
                if self.server.token.is_set():
                    log.debug("Closing idle connection from %s for shutdown",
                              self.client_address[0])
                    return False
                if remaining <= 0:
                    log.debug("Idle connection from %s timed out", self.client_address[0])
                    return False

    def handle_expect_100(self) -> bool:
        # Do not invite an upload that will be rejected anyway
        if self._declared_length() > self.config.max_body_size:
            return True
        return super().handle_expect_100()

    def handle_echo(self) -> None:
        self._arrival = arrival_time()
        try:
            raw = self._read_body()
        except BodyTooLarge as exc:
            self.close_connection = True
            self._respond(
                HTTPStatus.REQUEST_ENTITY_TOO_LARGE,
                {"error": "payload too large", "max_body_size": exc.limit},
            )
            self._discard_unread()
            return
        except BodyReadError as exc:
            self.close_connection = True
            log.warning("Failed to read request body from %s: %s", self.client_address[0], exc)
            self._respond(
                exc.status,
                {"error": HTTPStatus(exc.status).phrase.lower(), "detail": str(exc)},
            )
            if exc.status != HTTPStatus.REQUEST_TIMEOUT:
                self._discard_unread()
            return
        except ConnectionError as exc:
            self.close_connection = True
            log.warning("Client %s disconnected while sending body: %s", self.client_address[0], exc)
            self._log_access(CLIENT_CLOSED_REQUEST, 0)
            return

        echo = build_echo(self.command, self.path, self.headers, raw, self.config, self._arrival)
        self._send(HTTPStatus.OK, render_echo(echo, raw))

    # -- body --------------------------------------------------------------

    def _declared_length(self) -> int:
        raw = self.headers.get("Content-Length")
        if raw is None:
            return 0
        try:
            return int(raw.strip())
        except ValueError:
            return 0

    def _read_body(self) -> bytes:
        limit = self.config.max_body_size

        if "chunked" in self.headers.get("Transfer-Encoding", "").lower():
            return self._read_chunked(limit)

        raw_length = self.headers.get("Content-Length")
        if raw_length is None:
            return b""
        raw_length = raw_length.strip()
        if not raw_length.isdigit():
            raise BodyReadError(f"invalid Content-Length: {raw_length!r}")
        length = int(raw_length)
        if length > limit:
            raise BodyTooLarge(limit)
        return self._read_exact(length)

    def _read_exact(self, length: int) -> bytes:
        parts: list[bytes] = []
        remaining = length
        while remaining > 0:
            try:
                chunk = self.rfile.read1(min(remaining, _READ_CHUNK))
            except TimeoutError:
                raise BodyReadError("request body timed out", HTTPStatus.REQUEST_TIMEOUT) from None
            if not chunk:
                raise ConnectionAbortedError(
                    f"connection closed after {length - remaining} of {length} body bytes"
                )
            parts.append(chunk)
            remaining -= len(chunk)
        return b"".join(parts)

    def _read_line(self) -> bytes:
        try:
            line = self.rfile.readline(_MAX_CHUNK_LINE + 1)
        except TimeoutError:
            raise BodyReadError("request body timed out", HTTPStatus.REQUEST_TIMEOUT) from None
        if not line:
            raise ConnectionAbortedError("connection closed inside chunked body")
        if len(line) > _MAX_CHUNK_LINE:
            raise BodyReadError("chunk framing line too long")
        return line

    def _read_chunked(self, limit: int) -> bytes:
        parts: list[bytes] = []
        total = 0
        while True:
            size_field = self._read_line().split(b";", 1)[0].strip()
            if not _CHUNK_SIZE_RE.fullmatch(size_field):
                raise BodyReadError(f"invalid chunk size: {size_field[:32]!r}")
            size = int(size_field, 16)
            if size == 0:
                break
            total += size
            if total > limit:
                raise BodyTooLarge(limit)
            parts.append(self._read_exact(size))
            if self._read_line().strip():
                raise BodyReadError("missing CRLF after chunk data")
        # trailer section ends with an empty line
        while self._read_line().strip():
            pass
        return b"".join(parts)

    def _discard_unread(self) -> None:
        """Half-close and drain what the client is still uploading.

        Closing with unread input makes the kernel send RST, which can
        destroy the error response before the client reads it.
        """
        try:
            self.connection.shutdown(socket.SHUT_WR)
            self.connection.settimeout(_LINGER_TIMEOUT)
            drained = 0
            while drained < _LINGER_MAX_BYTES:
                chunk = self.connection.recv(_READ_CHUNK)
                if not chunk:
                    break
                drained += len(chunk)
        except OSError as exc:
            log.debug("Lingering close for %s ended: %s", self.client_address[0], exc)

    # -- response ----------------------------------------------------------

    def send_error(self, code: int, message: str | None = None, explain: str | None = None) -> None:
        """Report protocol errors raised by ``http.server`` as JSON."""
        self.close_connection = True
        payload: dict[str, Any] = {"error": HTTPStatus(code).phrase.lower()}
        if message:
            payload["detail"] = message
        self._respond(code, payload)

    def _respond(self, status: int, payload: dict[str, Any]) -> None:
        self._send(status, _encode(payload))

    def _send(self, status: int, body: bytes) -> None:
        status = int(status)
        self.rfile.end()
        if self.server.token.is_set():
            self.close_connection = True
        sent = 0
        try:
            self.send_response(status)
            self.send_header("Content-Type", "application/json")
            self.send_header("Content-Length", str(len(body)))
            if self.close_connection:
                self.send_header("Connection", "close")
            self.end_headers()
            if self.command != "HEAD":
                self.wfile.write(body)
                sent = len(body)
        except (ConnectionError, TimeoutError) as exc:
            self.close_connection = True
            log.warning("Client %s went away before the response was sent: %s",
                        self.client_address[0], exc)
        self._log_access(status, sent)

    def _log_access(self, status: int, sent: int) -> None:
        headers = self.headers
        access_log.info(format_access_line(
            client_ip=self.client_address[0] if self.client_address else None,
            when=self._arrival or arrival_time(),
            request_line=self.requestline,
            status=status,
            body_bytes=sent,
            referrer=headers.get("Referer") if headers is not None else None,
            user_agent=headers.get("User-Agent") if headers is not None else None,
        ))

    def log_request(self, code: int | str = "-", size: int | str = "-") -> None:
        # access lines are written by _log_access once the body is sent
        pass

    def log_message(self, format: str, *args: Any) -> None:
        log.debug("%s - %s", self.address_string(), format % args)
