"""Typer-based command line interface for azurekms."""
from __future__ import annotations

import asyncio
import signal
from pathlib import Path
from typing import Optional

import structlog
import typer

from ..config import PluginSettings, dump_default_settings, load_azure_config, load_settings
from ..errors import ConfigurationError, KMSError, TransportError
from ..logging import configure_logging
from ..paths import default_cloud_config_path

app = typer.Typer(help="Azure Key Vault KMS plugin for Kubernetes")

logger = structlog.get_logger(__name__)

_CONFIG_FILE_OPTION = typer.Option(
    default_cloud_config_path(),
    "--config-file-path",
    help="Path for Azure Cloud Provider config file",
)


@app.callback()
def main(
    ctx: typer.Context,
    settings: Optional[Path] = typer.Option(None, "--settings", metavar="PATH", help="Plugin settings YAML"),
    log_level: Optional[str] = typer.Option(None, "--log-level", help="Override the configured log level"),
) -> None:
    try:
        ctx.obj = load_settings(settings)
    except ConfigurationError as exc:
        configure_logging(log_level)
        logger.critical("cli.settings.invalid", error=str(exc))
        raise typer.Exit(code=1) from exc
    configure_logging(log_level or ctx.obj.logging.normalized_level())


@app.command()
def serve(
    ctx: typer.Context,
    config_file_path: Path = _CONFIG_FILE_OPTION,
    socket: Optional[Path] = typer.Option(None, "--socket", help="Override the Unix socket path"),
) -> None:
    """Run the plugin until SIGTERM."""
    from ..daemon.server import KMSServer

    settings: PluginSettings = ctx.obj
    if socket is not None:
        settings.ipc.socket_path = socket
    logger.info("cli.serve.starting", config=str(config_file_path))
    try:
        config = load_azure_config(config_file_path)
        server = KMSServer.from_config(config, settings, config_path=config_file_path)
    except ConfigurationError as exc:
        logger.critical("cli.serve.config_failed", error=str(exc))
        raise typer.Exit(code=1) from exc
    try:
        asyncio.run(_serve(server))
    except TransportError as exc:
        logger.critical("cli.serve.bind_failed", error=str(exc))
        raise typer.Exit(code=1) from exc
    logger.info("cli.serve.stopped")


async def _serve(server) -> None:
    loop = asyncio.get_running_loop()
    for signum in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(signum, _stop_on_signal, server, signum)
    await server.serve_forever()


def _stop_on_signal(server, signum: int) -> None:
    logger.info("cli.signal", signal=signal.Signals(signum).name)
    server.request_stop()


@app.command()
def resolve(ctx: typer.Context, config_file_path: Path = _CONFIG_FILE_OPTION) -> None:
    """Resolve the configured key, creating it if needed, and print its version."""
    from ..cloud import build_resolver

    try:
        config = load_azure_config(config_file_path)
        ref = config.key_reference()
        resolver = build_resolver(config, ctx.obj, config_file_path)
        key = resolver.resolve(ref)
    except KMSError as exc:
        logger.error("cli.resolve.failed", error=str(exc), error_type=type(exc).__name__)
        raise typer.Exit(code=1) from exc
    typer.echo(key.key_version)


@app.command("write-settings")
def write_settings(target: Path = typer.Argument(..., help="Where to write the default settings")) -> None:
    """Write the default plugin settings as YAML."""
    dump_default_settings(target)
    typer.echo(f"Default settings written to {target}")


@app.command()
def version() -> None:
    from ..version import PROTOCOL_VERSION, RUNTIME_NAME, __version__

    typer.echo(f"{RUNTIME_NAME} {__version__} ({PROTOCOL_VERSION})")


if __name__ == "__main__":  # pragma: no cover
    app()
