"""Codex bridge CLI.

Runs a codex app-server subprocess and exposes it over HTTP.

Usage:
    codex-bridge                              # WebSocket on :8080
    codex-bridge --protocol sse               # POST / + GET /events
    codex-bridge --port 9000 --no-auth        # Ignore CODEX_HTTP_SECRET
    codex-bridge --binary ./codex -- app-server --verbose

Env:
    PORT (default 8080)
    CODEX_HTTP_SECRET (optional) - shared secret for the x-codex-secret header
"""

from __future__ import annotations

import logging
import os
import shutil
import sys

import click

from . import __version__
from .config import DEFAULT_CALL_TIMEOUT, BridgeConfig, Protocol

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def resolve_binary(name: str) -> str | None:
    """Find an executable by name on PATH, or check an explicit path."""
    if os.sep in name or (os.altsep and os.altsep in name):
        return name if os.path.isfile(name) and os.access(name, os.X_OK) else None
    return shutil.which(name)


def _missing_binary_hint(name: str) -> str:
    if name == "codex":
        return (
            "Install Codex and ensure `codex` is on PATH, "
            "or pass `--binary <full path to codex>`."
        )
    return "Ensure the binary exists/is on PATH, or pass `--binary <full path>`."


@click.command(context_settings={"help_option_names": ["-h", "--help"]})
@click.option(
    "--protocol",
    type=click.Choice([p.value for p in Protocol]),
    default=Protocol.WS.value,
    show_default=True,
    help="External transport: WebSocket, or HTTP POST + SSE",
)
@click.option("--host", default="0.0.0.0", show_default=True, help="Host to bind to")
@click.option("--port", type=int, default=None, help="Port to bind to (default: $PORT or 8080)")
@click.option("--binary", default="codex", show_default=True, help="App-server executable")
@click.option("--no-auth", is_flag=True, help="Disable the shared secret even if it is set")
@click.option(
    "--timeout",
    "call_timeout",
    type=float,
    default=DEFAULT_CALL_TIMEOUT,
    show_default=True,
    help="Per-call timeout in seconds",
)
@click.option(
    "--log-level",
    type=click.Choice(["debug", "info", "warning", "error"]),
    default="info",
    show_default=True,
)
@click.version_option(__version__)
@click.argument("app_server_args", nargs=-1, type=click.UNPROCESSED)
def main(
    protocol: str,
    host: str,
    port: int | None,
    binary: str,
    no_auth: bool,
    call_timeout: float,
    log_level: str,
    app_server_args: tuple[str, ...],
) -> None:
    """Bridge a codex app-server to HTTP/SSE or WebSocket clients.

    Arguments after `--` are passed to the app-server (default: app-server).
    """
    resolved = resolve_binary(binary)
    if resolved is None:
        raise click.ClickException(
            f"could not find executable: {binary}\n{_missing_binary_hint(binary)}"
        )

    try:
        config = BridgeConfig.from_env(
            binary=resolved,
            args=list(app_server_args) or ["app-server"],
            host=host,
            port=port,
            protocol=protocol,
            call_timeout=call_timeout,
        )
    except ValueError as e:
        raise click.UsageError(str(e)) from e

    if no_auth:
        config.secret = ""

    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format=LOG_FORMAT,
        stream=sys.stderr,
    )

    _run_http_server(config, log_level)


def _run_http_server(config: BridgeConfig, log_level: str) -> None:
    """Run the gateway until interrupted."""
    import uvicorn

    from .app import create_app

    app = create_app(config)
    auth = "enabled" if config.auth_enabled else "disabled"
    click.echo(
        f"HTTP server listening on {config.host}:{config.port} "
        f"(protocol={config.protocol.value}, auth={auth})",
        err=True,
    )
    click.echo("Press Ctrl+C to stop", err=True)

    uvicorn.run(app, host=config.host, port=config.port, log_level=log_level)


if __name__ == "__main__":
    main()
