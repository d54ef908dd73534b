"""Click-based CLI entry point for the echo server."""

from __future__ import annotations

import logging
import os
import sys

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.panel import Panel

from . import __version__
from .models import ConfigError, ServerConfig

console = Console(stderr=True)
log = logging.getLogger(__name__)

LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR"]


@click.command(context_settings={"help_option_names": ["-h", "--help"]})
@click.version_option(__version__, "-V", "--version", prog_name="http-echo-server")
@click.option("--bind", default=None, metavar="ADDR",
              help="Listening IP address [env: BIND; default: 0.0.0.0].")
@click.option("-p", "--port", default=None, metavar="PORT",
              help="Port to listen on [env: PORT; default: 3000].")
@click.option("--listen-addr", default=None, metavar="HOST:PORT",
              help="Combined bind address and port, overrides --bind and --port "
                   "[env: LISTEN_ADDR].")
@click.option("--max-body-size", default=None, metavar="BYTES",
              help="Maximum request body size in bytes [env: MAX_BODY_SIZE; default: 65536].")
@click.option("--tag", default=None,
              help="Server identification tag echoed in responses "
                   "[env: SERVER_TAG; default: echo-server].")
@click.option("--read-timeout", default=None, metavar="SECONDS",
              help="Socket read timeout per connection [env: READ_TIMEOUT; default: 10].")
@click.option("--request-timeout", default=None, metavar="SECONDS",
              help="Deadline for receiving a whole request [env: REQUEST_TIMEOUT; default: 30].")
@click.option("--shutdown-timeout", default=None, metavar="SECONDS",
              help="Grace period for in-flight requests on shutdown "
                   "[env: SHUTDOWN_TIMEOUT; default: 10].")
@click.option("--log-level", envvar="LOG_LEVEL", default="INFO", show_default=True,
              type=click.Choice(LOG_LEVELS, case_sensitive=False),
              help="Diagnostic log verbosity [env: LOG_LEVEL].")
def cli(bind, port, listen_addr, max_body_size, tag,
        read_timeout, request_timeout, shutdown_timeout, log_level):
    """Echo every HTTP request back as JSON.

    Any method on any path is answered with the request's method, path,
    query, headers and body.  One access log line per request is written
    to standard output.
    """
    from .config import oversized_body_warning, resolve
    from .server import run

    try:
        config = resolve(
            {
                "bind": bind,
                "port": port,
                "listen_addr": listen_addr,
                "max_body_size": max_body_size,
                "tag": tag,
                "read_timeout": read_timeout,
                "request_timeout": request_timeout,
                "shutdown_timeout": shutdown_timeout,
            },
            os.environ,
        )
    except ConfigError as exc:
        console.print(f"[bold red]Error:[/] {escape(str(exc))}")
        sys.exit(2)

    configure_logging(log_level)

    warning = oversized_body_warning(config)
    if warning:
        log.warning(warning)

    exit_code = run(config, on_listening=lambda address: _display_banner(config, address))
    sys.exit(exit_code)


def main() -> None:
    cli(prog_name="echo-server")


def configure_logging(level: str = "INFO") -> None:
    """Send diagnostics through rich on stderr and access lines to stdout."""
    diagnostics = logging.getLogger("echoserver")
    diagnostics.setLevel(level.upper())
    if not any(isinstance(h, RichHandler) for h in diagnostics.handlers):
        diagnostics.addHandler(RichHandler(console=console, show_path=False))

    access = logging.getLogger("echoserver.access")
    access.setLevel(logging.INFO)
    access.propagate = False
    if not access.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter("%(message)s"))
        access.addHandler(handler)


# ---------------------------------------------------------------------------
# Display helpers
# ---------------------------------------------------------------------------

def _display_banner(config: ServerConfig, address: tuple[str, int]) -> None:
    """Show where the server listens and what it is configured with."""
    host, port = address
    if ":" in host:
        host = f"[{host}]"
    panel = Panel(
        f"[bold green]Listening at[/] http://{escape(host)}:{port}\n"
        f"Tag: [cyan]{escape(config.server_tag)}[/] | "
        f"Max body: {config.max_body_size} bytes\n"
        f"Press Ctrl+C to shut down gracefully",
        title=f"[bold]http-echo-server {__version__}[/]",
        border_style="green",
        width=60,
    )
    console.print(panel)
