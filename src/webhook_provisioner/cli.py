"""Command-line entry point for the webhook provisioner."""

import json
import os
import signal
import threading
from pathlib import Path
from typing import Any, Optional

import typer
from dotenv import load_dotenv

from .config import ProvisionerConfig, RegistrarSettings
from .exceptions import ConfigurationError, WebhookAPIError
from .logging import get_logger, setup_logging
from .models import ExitCode, RegistrationStatus
from .orchestrator import ProvisioningOrchestrator
from .registrar import WebhookRegistrar

app = typer.Typer(
    help="Expose a local webhook receiver through a tunnel and register it.",
    no_args_is_help=True,
)

logger = get_logger(__name__)


def _load_env(env_file: Optional[Path]) -> None:
    if env_file is not None and env_file.exists():
        load_dotenv(env_file, override=False)
        logger.debug("Loaded environment file", path=str(env_file))


def _configure_logging(log_level: str, json_logs: bool) -> None:
    try:
        setup_logging(level=log_level, json_format=json_logs)
    except AttributeError:
        typer.echo(f"Unknown log level: {log_level}", err=True)
        raise typer.Exit(ExitCode.CONFIG_ERROR.value)


def _registrar_from_env(
    token: Optional[str], api_base: Optional[str]
) -> tuple[WebhookRegistrar, str]:
    credential = token or os.environ.get("TELEGRAM_BOT_TOKEN")
    if not credential:
        typer.echo(
            "Bot token not provided. Use --token or set TELEGRAM_BOT_TOKEN", err=True
        )
        raise typer.Exit(ExitCode.CONFIG_ERROR.value)
    settings: dict[str, Any] = {}
    base = api_base or os.environ.get("TELEGRAM_API_BASE")
    if base:
        settings["api_base"] = base
    try:
        return WebhookRegistrar(RegistrarSettings(**settings)), credential
    except ValueError as e:
        typer.echo(f"Invalid API base: {e}", err=True)
        raise typer.Exit(ExitCode.CONFIG_ERROR.value)


@app.command()
def provision(
    port: Optional[int] = typer.Option(
        None, "--port", "-p", help="Local port of the webhook receiver (TUNNEL_PORT)"
    ),
    path: Optional[str] = typer.Option(
        None, "--path", help="Webhook path suffix, e.g. /webhook (WEBHOOK_PATH)"
    ),
    token: Optional[str] = typer.Option(
        None, "--token", help="Bot token (TELEGRAM_BOT_TOKEN)", show_default=False
    ),
    timeout: Optional[float] = typer.Option(
        None, "--timeout", help="Discovery timeout in seconds"
    ),
    poll_interval: Optional[float] = typer.Option(
        None, "--poll-interval", help="Delay between discovery attempts"
    ),
    max_attempts: Optional[int] = typer.Option(
        None, "--max-attempts", help="Maximum provisioning attempts"
    ),
    backoff: Optional[float] = typer.Option(
        None, "--backoff", help="Linear backoff step between attempts"
    ),
    control_api: Optional[str] = typer.Option(
        None, "--control-api", help="Tunnel control-plane URL (NGROK_API_URL)"
    ),
    secret_token: Optional[str] = typer.Option(
        None, "--secret-token", help="Webhook secret token", show_default=False
    ),
    verify: bool = typer.Option(
        False, "--verify", help="Confirm the registration via getWebhookInfo"
    ),
    env_file: Optional[Path] = typer.Option(
        Path(".env"), "--env-file", help="Environment file to load"
    ),
    log_level: str = typer.Option("INFO", "--log-level", help="Logging level"),
    json_logs: bool = typer.Option(False, "--json-logs", help="Emit JSON logs"),
) -> None:
    """Start or reuse a tunnel, discover its URL and register the webhook."""
    _configure_logging(log_level, json_logs)
    _load_env(env_file)

    try:
        config = ProvisionerConfig.from_env(
            local_port=port,
            webhook_path=path,
            credential=token,
            **{
                "discovery.timeout": timeout,
                "discovery.poll_interval": poll_interval,
                "retry.max_attempts": max_attempts,
                "retry.backoff_step": backoff,
                "tunnel.control_api_url": control_api,
                "registrar.secret_token": secret_token,
                "registrar.verify": verify or None,
            },
        )
    except ConfigurationError as e:
        typer.echo(str(e), err=True)
        raise typer.Exit(ExitCode.CONFIG_ERROR.value)

    cancel_event = threading.Event()
    previous_handler = signal.getsignal(signal.SIGINT)

    def _cancel(_signum: int, _frame: Any) -> None:
        logger.warning("Interrupt received, cancelling provisioning")
        cancel_event.set()

    signal.signal(signal.SIGINT, _cancel)
    try:
        result = ProvisioningOrchestrator(config).run(cancel_event)
    finally:
        signal.signal(signal.SIGINT, previous_handler)

    typer.echo(result.describe())
    if result.handle is not None and not result.succeeded and result.handle.owned:
        typer.echo(
            f"tunnel process {result.handle.pid} left running for inspection "
            f"({result.handle.control_api_url})",
            err=True,
        )
    raise typer.Exit(result.exit_code.value)


@app.command()
def info(
    token: Optional[str] = typer.Option(
        None, "--token", help="Bot token (TELEGRAM_BOT_TOKEN)", show_default=False
    ),
    api_base: Optional[str] = typer.Option(None, "--api-base", help="API base URL"),
    env_file: Optional[Path] = typer.Option(Path(".env"), "--env-file"),
    log_level: str = typer.Option("WARNING", "--log-level"),
) -> None:
    """Show the webhook currently registered downstream."""
    _configure_logging(log_level, False)
    _load_env(env_file)
    registrar, credential = _registrar_from_env(token, api_base)

    try:
        webhook = registrar.webhook_info(credential)
    except WebhookAPIError as e:
        typer.echo(f"Failed to get webhook info: {e}", err=True)
        code = ExitCode.UNREACHABLE if e.transient else ExitCode.REJECTED
        raise typer.Exit(code.value)

    typer.echo(json.dumps(webhook, indent=2, sort_keys=True))


@app.command()
def unregister(
    token: Optional[str] = typer.Option(
        None, "--token", help="Bot token (TELEGRAM_BOT_TOKEN)", show_default=False
    ),
    api_base: Optional[str] = typer.Option(None, "--api-base", help="API base URL"),
    env_file: Optional[Path] = typer.Option(Path(".env"), "--env-file"),
    log_level: str = typer.Option("WARNING", "--log-level"),
) -> None:
    """Delete the webhook registered downstream."""
    _configure_logging(log_level, False)
    _load_env(env_file)
    registrar, credential = _registrar_from_env(token, api_base)

    outcome = registrar.unregister(credential)
    if outcome.status == RegistrationStatus.CONFIRMED:
        typer.echo("webhook removed")
        return
    typer.echo(f"Failed to remove webhook: {outcome.reason}", err=True)
    code = (
        ExitCode.UNREACHABLE
        if outcome.status == RegistrationStatus.UNREACHABLE
        else ExitCode.REJECTED
    )
    raise typer.Exit(code.value)


def main() -> None:
    app()


if __name__ == "__main__":
    main()
