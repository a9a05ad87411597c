"""gptbridge command line interface."""

from __future__ import annotations

import asyncio
from pathlib import Path

import typer
from loguru import logger

from gptbridge.app import build_app
from gptbridge.config import ConfigStore, Settings, load_settings
from gptbridge.core.credentials import mask_credential
from gptbridge.errors import ConfigurationError
from gptbridge.logging_utils import configure_logging

app = typer.Typer(name="gptbridge", help="Discord to OpenAI chat bridge", add_completion=False)


def _settings(config: Path | None, log_level: str | None = None) -> Settings:
    return load_settings(config_path=config, log_level=log_level)


def _load_store(settings: Settings) -> ConfigStore:
    store = ConfigStore(settings.config_path)
    try:
        store.load()
    except ConfigurationError as exc:
        typer.echo(f"error: {exc}", err=True)
        raise typer.Exit(1) from exc
    return store


@app.command()
def run(
    config: Path | None = typer.Option(None, "--config", "-c", help="YAML config file"),  # noqa: B008
    log_level: str | None = typer.Option(None, "--log-level", help="Log level"),
) -> None:
    """Connect to Discord and answer mentions until interrupted."""

    settings = _settings(config, log_level)
    configure_logging(profile="console" if settings.log_profile == "console" else "default", level=settings.log_level)
    try:
        bridge = build_app(settings)
    except ConfigurationError as exc:
        logger.error("app.config_error error={}", exc)
        raise typer.Exit(1) from exc

    try:
        asyncio.run(bridge.run())
    except KeyboardInterrupt:
        logger.info("app.interrupted")


@app.command("check-config")
def check_config(
    config: Path | None = typer.Option(None, "--config", "-c", help="YAML config file"),  # noqa: B008
) -> None:
    """Load, merge and rewrite the config file, then print a summary."""

    settings = _settings(config)
    store = _load_store(settings)
    loaded = store.config
    typer.echo(f"config: {store.path}")
    typer.echo(f"discord token: {'set' if settings.discord_token or loaded.discord.token else 'missing'}")
    typer.echo(f"model: {loaded.openai.model} max_tokens={loaded.openai.max_tokens} stream={loaded.openai.stream}")
    typer.echo(f"keys: {len(loaded.openai.keys)}")
    for key in loaded.openai.keys:
        typer.echo(f"  {mask_credential(key)}")
    typer.echo(f"context budget: {loaded.completion.context_budget}")
    typer.echo(f"inline limit: {loaded.delivery.inline_limit}")
    if not (settings.discord_token or loaded.discord.token):
        raise typer.Exit(1)


@app.command()
def keys(
    config: Path | None = typer.Option(None, "--config", "-c", help="YAML config file"),  # noqa: B008
) -> None:
    """List configured provider keys, masked."""

    store = _load_store(_settings(config))
    configured = store.config.openai.keys
    if not configured:
        typer.echo("no keys configured")
        return
    for index, key in enumerate(configured):
        marker = "*" if index == 0 else " "
        typer.echo(f"{marker} {index}: {mask_credential(key)}")
