"""Server lifecycle: bind, serve, drain on shutdown.

States move ``STARTING -> LISTENING -> SHUTTING_DOWN -> STOPPED``.  A
single :class:`ShutdownToken` carries the shutdown request; the accept
loop polls it, handlers consult it to stop keep-alive, and the drain
waiter runs once it has fired.  Signal handlers do nothing but trigger
the token.
"""

from __future__ import annotations

import logging
import selectors
import signal
import socket
import socketserver
import sys
import threading
import time
from http.server import ThreadingHTTPServer
from typing import Callable

from .handler import EchoRequestHandler
from .models import BindError, LifecycleState, ServerConfig

log = logging.getLogger(__name__)

_POLL_INTERVAL = 0.2


class ShutdownToken:
    """One-shot cancellation signal shared by the accept loop and handlers."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self.reason: str | None = None

    def trigger(self, reason: str = "shutdown requested") -> None:
        if self._event.is_set():
            return
        self.reason = reason
        self._event.set()

    def is_set(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: float | None = None) -> bool:
        return self._event.wait(timeout)


class EchoHTTPServer(ThreadingHTTPServer):
    """Thread-per-connection HTTP server that tracks in-flight work."""

    daemon_threads = True
    block_on_close = False
    request_queue_size = 128

    def __init__(
        self,
        server_address: tuple[str, int],
        handler_class: type[EchoRequestHandler],
        config: ServerConfig,
        token: ShutdownToken,
    ):
        self.config = config
        self.token = token
        self._active = 0
        self._active_cond = threading.Condition()
        if ":" in server_address[0]:
            self.address_family = socket.AF_INET6
        super().__init__(server_address, handler_class)

    def server_bind(self) -> None:
        # HTTPServer.server_bind resolves an FQDN here; a reverse lookup
        # can stall startup and the name is never used.
        socketserver.TCPServer.server_bind(self)
        host, port = self.server_address[:2]
        self.server_name = host
        self.server_port = port

    @property
    def active_count(self) -> int:
        with self._active_cond:
            return self._active

    def serve_until(self, token: ShutdownToken, poll_interval: float = _POLL_INTERVAL) -> None:
        """Accept connections until *token* fires."""
        with selectors.DefaultSelector() as selector:
            selector.register(self, selectors.EVENT_READ)
            while not token.is_set():
                ready = selector.select(poll_interval)
                if token.is_set():
                    break
                if ready:
                    self._handle_request_noblock()
                self.service_actions()

    def process_request(self, request, client_address) -> None:
        with self._active_cond:
            self._active += 1
        try:
            super().process_request(request, client_address)
        except Exception:
            self._finished()
            raise

    def process_request_thread(self, request, client_address) -> None:
        try:
            super().process_request_thread(request, client_address)
        finally:
            self._finished()

    def _finished(self) -> None:
        with self._active_cond:
            self._active -= 1
            self._active_cond.notify_all()

    def wait_for_drain(self, timeout: float) -> bool:
        """Wait up to *timeout* seconds for in-flight connections to end."""
        deadline = time.monotonic() + timeout
        with self._active_cond:
            while self._active > 0:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return False
                self._active_cond.wait(remaining)
            return True

    def handle_error(self, request, client_address) -> None:
        exc = sys.exc_info()[1]
        if isinstance(exc, (ConnectionError, TimeoutError)):
            log.warning("Connection from %s aborted: %s", client_address[0], exc)
        else:
            log.exception("Unhandled error while serving %s", client_address[0])


class ServerLifecycle:
    """Own the listening socket and drive it through its states."""

    def __init__(
        self,
        config: ServerConfig,
        token: ShutdownToken | None = None,
        handler_class: type[EchoRequestHandler] = EchoRequestHandler,
    ):
        self.config = config
        self.token = token or ShutdownToken()
        self.handler_class = handler_class
        self.state = LifecycleState.STARTING
        self.failed = False
        self._httpd: EchoHTTPServer | None = None
        self._thread: threading.Thread | None = None

    @property
    def server_address(self) -> tuple[str, int]:
        if self._httpd is None:
            raise RuntimeError("server is not started")
        host, port = self._httpd.server_address[:2]
        return host, port

    @property
    def in_flight(self) -> int:
        """Connections currently being served."""
        return self._httpd.active_count if self._httpd is not None else 0

    def start(self) -> None:
        """Bind the listener and start accepting.  Raises :class:`BindError`."""
        address = self.config.listen_address
        try:
            self._httpd = EchoHTTPServer(address, self.handler_class, self.config, self.token)
        except OSError as exc:
            self.state = LifecycleState.STOPPED
            raise BindError(address, exc.strerror or str(exc)) from exc

        self._thread = threading.Thread(
            target=self._accept_loop, name="echo-accept", daemon=True,
        )
        self._thread.start()
        self.state = LifecycleState.LISTENING
        host, port = self.server_address
        log.info("Listening on %s:%d", host, port)

    def _accept_loop(self) -> None:
        try:
            self._httpd.serve_until(self.token)
        except Exception:
            log.exception("Accept loop failed")
            self.failed = True
            self.token.trigger("accept loop failed")

    def wait(self) -> None:
        """Block until the shutdown token fires."""
        # is_set() takes no lock; a signal handler may trigger the token here
        while not self.token.is_set():
            time.sleep(_POLL_INTERVAL)

    def serve(self) -> bool:
        """Serve until shutdown is requested, then drain.  See :meth:`shutdown`."""
        self.wait()
        return self.shutdown()

    def shutdown(self) -> bool:
        """Stop accepting, drain in-flight requests, close.

        Returns True when every in-flight request finished within
        ``config.shutdown_timeout``.
        """
        if self.state is not LifecycleState.LISTENING:
            return True
        self.state = LifecycleState.SHUTTING_DOWN
        self.token.trigger()
        log.info("Shutting down (%s)", self.token.reason)

        if self._thread is not None:
            self._thread.join()
        self._httpd.server_close()

        in_flight = self._httpd.active_count
        if in_flight:
            log.info("Waiting up to %.1fs for %d in-flight connection(s)",
                     self.config.shutdown_timeout, in_flight)
        drained = self._httpd.wait_for_drain(self.config.shutdown_timeout)
        if not drained:
            log.warning("Abandoning %d connection(s) still open after the grace period",
                        self._httpd.active_count)

        self.state = LifecycleState.STOPPED
        log.info("Server shutdown complete")
        return drained


def run(
    config: ServerConfig,
    token: ShutdownToken | None = None,
    install_signals: bool = True,
    on_listening: Callable[[tuple[str, int]], None] | None = None,
) -> int:
    """Run the echo server until SIGINT/SIGTERM.  Returns the exit code.

    *on_listening* is called with the bound address once the listener
    is up.
    """
    lifecycle = ServerLifecycle(config, token)
    try:
        lifecycle.start()
    except BindError as exc:
        log.error("%s", exc)
        return 1

    previous = _install_signal_handlers(lifecycle.token) if install_signals else {}
    try:
        if on_listening is not None:
            on_listening(lifecycle.server_address)
        lifecycle.serve()
    finally:
        lifecycle.shutdown()
        _restore_signal_handlers(previous)

    return 1 if lifecycle.failed else 0


def _install_signal_handlers(token: ShutdownToken) -> dict[int, object]:
    if threading.current_thread() is not threading.main_thread():
        log.debug("Not on the main thread; signal handlers not installed")
        return {}

    def on_signal(signum, frame):
        token.trigger(f"received {signal.Signals(signum).name}")

    previous: dict[int, object] = {}
    for name in ("SIGINT", "SIGTERM"):
        signum = getattr(signal, name, None)
        if signum is None:
            continue
        previous[signum] = signal.signal(signum, on_signal)
    return previous


def _restore_signal_handlers(previous: dict[int, object]) -> None:
    for signum, handler in previous.items():
        # None means the old handler was not installed from Python
        signal.signal(signum, signal.SIG_DFL if handler is None else handler)
