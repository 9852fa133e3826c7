"""Command-line entry point (Typer-based).

Global options (``--version``, ``--log-level``, ``--log-format``,
``--env-file``) live on the callback; each command then runs one part of
the system:

- ``serve`` — the webhook/admin HTTP app under uvicorn
- ``sync-subscription`` — one subscription reconciliation
- ``device`` — the device agent until SIGINT/SIGTERM
- ``token`` — print a device SAS token (diagnostics)
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
import sys
from typing import Annotated, get_args

import typer
from pydantic import ValidationError

from cadrelay._credentials import CredentialManager, TokenStatus
from cadrelay._clock import SystemClock
from cadrelay._device import DeviceAgent, build_device_agent
from cadrelay._errors import ConfigurationError
from cadrelay._graph import GraphClient
from cadrelay._logging import configure_logging
from cadrelay._settings import LoggingSettings, Settings
from cadrelay._subscriptions import SubscriptionAction, SubscriptionManager

logger = logging.getLogger(__name__)

SERVICE_NAME = "cadrelay"

# ---------------------------------------------------------------------------
# Exit codes
# ---------------------------------------------------------------------------

EXIT_OK = 0
EXIT_CONFIG_ERROR = 1
EXIT_RUNTIME_ERROR = 3

_VALID_LOG_LEVELS: tuple[str, ...] = get_args(
    LoggingSettings.model_fields["level"].annotation,
)
_VALID_LOG_FORMATS: tuple[str, ...] = get_args(
    LoggingSettings.model_fields["format"].annotation,
)

_SUBSCRIPTION_EXIT_CODES: dict[SubscriptionAction, int] = {
    SubscriptionAction.CREATED: EXIT_OK,
    SubscriptionAction.RENEWED: EXIT_OK,
    SubscriptionAction.OK: EXIT_OK,
    SubscriptionAction.MISSING: EXIT_CONFIG_ERROR,
    SubscriptionAction.INVALID: EXIT_CONFIG_ERROR,
    SubscriptionAction.ERROR: EXIT_RUNTIME_ERROR,
}


def _version() -> str:
    from cadrelay import __version__

    return __version__


def _settings(ctx: typer.Context) -> Settings:
    settings = ctx.obj
    if not isinstance(settings, Settings):
        msg = "settings were not loaded"
        raise RuntimeError(msg)
    return settings


async def _run_device(agent: DeviceAgent, shutdown_event: asyncio.Event | None = None) -> None:
    if shutdown_event is None:
        shutdown_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, shutdown_event.set)
    await agent.run(shutdown_event)


async def _sync_once(settings: Settings) -> SubscriptionAction:
    graph = GraphClient(settings.graph)
    try:
        manager = SubscriptionManager(settings=settings.subscription, graph=graph)
        outcome = await manager.sync()
    finally:
        await graph.aclose()
    typer.echo(outcome.action.value)
    return outcome.action


def build_cli() -> typer.Typer:
    """Construct the Typer application."""
    cli = typer.Typer(
        help="cadrelay — mailbox alerts to IoT Hub relay commands",
        no_args_is_help=False,
    )

    @cli.callback(invoke_without_command=True)
    def main(
        ctx: typer.Context,
        version_flag: Annotated[
            bool | None,
            typer.Option(
                "--version",
                is_eager=True,
                help="Show version and exit.",
            ),
        ] = None,
        log_level: Annotated[
            str | None,
            typer.Option("--log-level", help="Override log level."),
        ] = None,
        log_format: Annotated[
            str | None,
            typer.Option("--log-format", help="Override log format."),
        ] = None,
        env_file: Annotated[
            str,
            typer.Option("--env-file", help="Path to .env file."),
        ] = ".env",
    ) -> None:
        if version_flag:
            typer.echo(f"{SERVICE_NAME} v{_version()}")
            raise typer.Exit()

        if log_level is not None and log_level.upper() not in _VALID_LOG_LEVELS:
            raise typer.BadParameter(
                f"Invalid log level '{log_level}'. "
                f"Choose from: {', '.join(_VALID_LOG_LEVELS)}",
                param_hint="'--log-level'",
            )
        if log_format is not None and log_format.lower() not in _VALID_LOG_FORMATS:
            raise typer.BadParameter(
                f"Invalid log format '{log_format}'. "
                f"Choose from: {', '.join(_VALID_LOG_FORMATS)}",
                param_hint="'--log-format'",
            )

        try:
            settings = Settings(_env_file=env_file)  # type: ignore[call-arg]
        except ValidationError as exc:
            typer.echo(f"Configuration error: {exc}", err=True)
            raise typer.Exit(EXIT_CONFIG_ERROR) from exc

        if log_level is not None:
            settings.logging = settings.logging.model_copy(update={"level": log_level.upper()})
        if log_format is not None:
            settings.logging = settings.logging.model_copy(update={"format": log_format.lower()})

        configure_logging(settings.logging, service=SERVICE_NAME, version=_version())
        ctx.obj = settings

        if ctx.invoked_subcommand is None:
            typer.echo(ctx.get_help())

    @cli.command()
    def serve(
        ctx: typer.Context,
        host: Annotated[str, typer.Option(help="Bind address.")] = "0.0.0.0",  # noqa: S104
        port: Annotated[int, typer.Option(help="Bind port.")] = 8000,
    ) -> None:
        """Run the webhook and admin HTTP app."""
        import uvicorn

        from cadrelay._webapp import create_app

        settings = _settings(ctx)
        app = create_app(settings)
        uvicorn.run(app, host=host, port=port, log_config=None)

    @cli.command("sync-subscription")
    def sync_subscription(ctx: typer.Context) -> None:
        """Create, renew or confirm the mailbox subscription once."""
        settings = _settings(ctx)
        action = asyncio.run(_sync_once(settings))
        code = _SUBSCRIPTION_EXIT_CODES[action]
        if code != EXIT_OK:
            raise typer.Exit(code)

    @cli.command()
    def device(ctx: typer.Context) -> None:
        """Run the device agent until interrupted."""
        settings = _settings(ctx)
        try:
            agent = build_device_agent(settings)
        except ConfigurationError as exc:
            logger.error("Configuration error: %s", exc)
            raise typer.Exit(EXIT_CONFIG_ERROR) from exc

        try:
            with contextlib.suppress(KeyboardInterrupt):
                asyncio.run(_run_device(agent))
        except Exception as exc:
            logger.error("Runtime error: %s", exc)
            sys.exit(EXIT_RUNTIME_ERROR)

    @cli.command()
    def token(
        ctx: typer.Context,
        lifetime: Annotated[
            int | None,
            typer.Option(help="Token lifetime in seconds (default: device.token_lifetime)."),
        ] = None,
    ) -> None:
        """Print a device SAS token and its expiry."""
        device_settings = _settings(ctx).device
        if not device_settings.device_id or not device_settings.host_name or device_settings.device_key is None:
            typer.echo("device.device_id, device.host_name and device.device_key are required", err=True)
            raise typer.Exit(EXIT_CONFIG_ERROR)
        credentials = CredentialManager(
            host_name=device_settings.host_name,
            device_id=device_settings.device_id,
            device_key=device_settings.device_key.get_secret_value(),
            clock=SystemClock(),
        )
        status = credentials.generate(lifetime or device_settings.token_lifetime)
        if status is not TokenStatus.OK:
            typer.echo(f"Token generation failed: {status.name} ({int(status)})", err=True)
            raise typer.Exit(EXIT_CONFIG_ERROR)
        typer.echo(credentials.token)
        typer.echo(f"expiry={credentials.expiry}")

    return cli


def main() -> None:
    """Console-script entry point."""
    build_cli()()
