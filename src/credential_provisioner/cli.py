"""Command-line interface for the credential provisioner.

Runs provisioning flows interactively or serves them over HTTP.
"""

from __future__ import annotations

import asyncio
import sys
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import typer

from credential_provisioner import __version__
from credential_provisioner.config import Config, ConfigError, load_config
from credential_provisioner.logging_config import get_logger, setup_logging
from credential_provisioner.oauth.credential_store import create_credential_store
from credential_provisioner.oauth.orchestrator import FlowOrchestrator
from credential_provisioner.oauth.session import InMemorySessionStore

app = typer.Typer(
    name="credential-provisioner",
    help="Provision provider API credentials through OAuth",
    add_completion=False,
)

T = TypeVar("T")

ConfigOption = typer.Option(
    None,
    "--config",
    "-c",
    help="Path to configuration file (JSON or YAML)",
)
LogLevelOption = typer.Option(
    None,
    "--log-level",
    "-l",
    help="Log level override (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
)


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        typer.echo(f"credential-provisioner version {__version__}")
        typer.echo(f"Python {sys.version}")
        raise typer.Exit()


@app.callback()
def main_callback(
    version: bool = typer.Option(
        False,
        "--version",
        "-v",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit",
    ),
) -> None:
    """Credential provisioner CLI."""


def _load(config_path: str | None, log_level: str | None) -> Config:
    cli_args: dict[str, Any] = {}
    if log_level:
        cli_args["log_level"] = log_level
    try:
        config = load_config(path=config_path, cli_args=cli_args)
    except ConfigError as e:
        typer.echo(f"Configuration error: {e}", err=True)
        raise typer.Exit(code=1) from None
    setup_logging(config)
    return config


def build_orchestrator(config: Config) -> FlowOrchestrator:
    """Wire an orchestrator with the stores selected by configuration."""
    encryption_key = (
        config.credential_encryption_key.get_secret_value()
        if config.credential_encryption_key
        else None
    )
    credential_store = create_credential_store(
        encryption_key=encryption_key,
        file_path=config.credential_store_path,
    )
    return FlowOrchestrator(config, InMemorySessionStore(), credential_store)


def _run(config: Config, action: Callable[[FlowOrchestrator], Awaitable[T]]) -> T:
    async def runner() -> T:
        async with build_orchestrator(config) as orchestrator:
            return await action(orchestrator)

    return asyncio.run(runner())


@app.command()
def login(
    provider: str = typer.Argument(..., help="Provider name, e.g. Anthropic"),
    config_path: str | None = ConfigOption,
    log_level: str | None = LogLevelOption,
) -> None:
    """Provision a credential with the authorization code flow.

    Prints the authorization URL, then asks for the code shown by the
    provider after approval (``code`` or ``code#state``).
    """
    config = _load(config_path, log_level)

    async def action(orchestrator: FlowOrchestrator) -> Any:
        started = await orchestrator.start(provider)
        if not started.success:
            return started
        typer.echo("Open this URL in your browser to authorize:")
        typer.echo(started.auth_url or "")
        code = typer.prompt("Authorization code")
        return await orchestrator.complete(provider, code)

    result = _run(config, action)
    if not result.success:
        typer.echo(f"Login failed: {result.error}", err=True)
        raise typer.Exit(code=1)
    typer.echo(f"Provisioned credential {result.key_name} for {provider}")


@app.command("web-login")
def web_login(
    provider: str = typer.Argument(..., help="Provider name, e.g. Gemini"),
    timeout: float = typer.Option(300.0, "--timeout", help="Seconds to wait for the login"),
    config_path: str | None = ConfigOption,
    log_level: str | None = LogLevelOption,
) -> None:
    """Provision a credential with a browser login."""
    config = _load(config_path, log_level)

    async def action(orchestrator: FlowOrchestrator) -> Any:
        started = await orchestrator.start_web_login(provider)
        if not started.success or started.flow_id is None:
            return started
        typer.echo(started.message or "")
        typer.echo(started.auth_url or "")
        if started.user_code:
            typer.echo(f"Confirmation code: {started.user_code}")
        return await orchestrator.wait_for_web_login(started.flow_id, timeout)

    result = _run(config, action)
    if not result.success:
        typer.echo(f"Login failed: {result.error}", err=True)
        raise typer.Exit(code=1)
    typer.echo(getattr(result, "message", None) or f"Logged in to {provider}")


@app.command()
def status(
    provider: str = typer.Argument(..., help="Provider name"),
    config_path: str | None = ConfigOption,
    log_level: str | None = LogLevelOption,
) -> None:
    """Show whether a provider holds a credential."""
    config = _load(config_path, log_level)
    result = _run(config, lambda orchestrator: orchestrator.status(provider))

    if not result.success:
        typer.echo(f"Status check failed: {result.error}", err=True)
        raise typer.Exit(code=1)
    if not result.authenticated:
        typer.echo(f"{provider}: not authenticated")
        return

    source = "provisioned by login" if result.is_auto_provisioned else "entered manually"
    details = ", ".join(
        part for part in (result.display_name, result.secret_hint) if part
    )
    typer.echo(f"{provider}: authenticated ({source}){f' [{details}]' if details else ''}")


@app.command()
def logout(
    provider: str = typer.Argument(..., help="Provider name"),
    config_path: str | None = ConfigOption,
    log_level: str | None = LogLevelOption,
) -> None:
    """Clear a credential created by a login flow."""
    config = _load(config_path, log_level)
    result = _run(config, lambda orchestrator: orchestrator.logout(provider))

    if not result.success:
        typer.echo(f"Logout failed: {result.error}", err=True)
        raise typer.Exit(code=1)
    typer.echo(f"Logged out of {provider}")


@app.command()
def serve(
    config_path: str | None = ConfigOption,
    log_level: str | None = LogLevelOption,
    host: str | None = typer.Option(None, "--host", "-h", help="Host to bind to"),
    port: int | None = typer.Option(None, "--port", "-p", help="Port to bind to"),
) -> None:
    """Serve the provisioning flows over HTTP."""
    cli_args: dict[str, Any] = {"log_level": log_level, "host": host, "port": port}

    try:
        config = load_config(path=config_path, cli_args=cli_args)
    except ConfigError as e:
        typer.echo(f"Configuration error: {e}", err=True)
        raise typer.Exit(code=1) from None

    setup_logging(config)
    logger = get_logger(__name__)
    logger.info(
        "Starting %s (env: %s, providers: %s)",
        config.app_name,
        config.environment.value,
        ", ".join(p.value for p in config.providers) or "none",
    )

    from credential_provisioner.http_app import create_http_app, run_http

    http_app = create_http_app(config, build_orchestrator(config))

    try:
        asyncio.run(run_http(http_app, config.host, config.port))
    except KeyboardInterrupt:
        logger.info("Shutting down (keyboard interrupt)")
        raise typer.Exit(code=0) from None


@app.command()
def version() -> None:
    """Print version information."""
    typer.echo(f"credential-provisioner version {__version__}")
    typer.echo(f"Python {sys.version}")


def main() -> None:
    """Main entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
