"""Switchboard CLI entry point."""

from __future__ import annotations

import asyncio
import uuid
from typing import Optional

import click

from . import __version__
from .config import Config
from .models.base import ConfigurationError
from .models.credentials import CredentialsManager
from .models.registry import ProviderRegistry
from .orchestrator.orchestrator import TurnOrchestrator
from .orchestrator.turns import TurnState
from .state.threads import InMemoryThreadStore, ItemKind

PALETTE = {
    "user": "bright_cyan",
    "assistant": "bright_white",
    "error": "bright_yellow",
    "muted": "bright_black",
}


def _color(text: str, style: str) -> str:
    return click.style(text, fg=PALETTE.get(style, "white"))


@click.group()
@click.version_option(version=__version__)
def main() -> None:
    """Switchboard - route chat turns to agent, session, CLI and HTTP providers."""


@main.command()
def providers() -> None:
    """List configured providers and their models."""
    config = Config()
    registry = ProviderRegistry.from_config(config, CredentialsManager(config))
    for provider in registry.list():
        models = ", ".join(registry.models_for(provider.id)) or "-"
        click.echo(f"{provider.id}\t{provider.family.value}\t{provider.label}\t{models}")
    for provider_id, reason in registry.unconfigured().items():
        click.echo(_color(f"{provider_id}\tunconfigured\t{reason}", "muted"))


@main.command()
@click.argument("model")
@click.argument("text")
@click.option("--plan", is_flag=True, help="Ask for a structured plan instead of a reply.")
@click.option("--thread", "thread_id", default=None, help="Thread id (default: a new one).")
@click.option("--image", "images", multiple=True, help="Image path or URL to attach.")
def send(model: str, text: str, plan: bool, thread_id: Optional[str], images: tuple) -> None:
    """Send TEXT to MODEL ("providerId:model") and print the thread."""
    config = Config()
    orchestrator = TurnOrchestrator.from_config(config)
    store = orchestrator.store
    thread_id = thread_id or f"thread-{uuid.uuid4().hex[:8]}"

    try:
        turn = asyncio.run(
            orchestrator.send_message(
                thread_id,
                text,
                images,
                model=model,
                collaboration_mode="plan" if plan else None,
            )
        )
    except KeyboardInterrupt:
        click.echo("Session stopped.")
        raise SystemExit(130)

    if isinstance(store, InMemoryThreadStore):
        for item in store.items(thread_id):
            prefix = "error" if item.kind == ItemKind.ERROR else item.role.value
            click.echo(f"{_color(f'[{prefix}]', prefix)} {item.text}")

    if turn is None:
        raise click.UsageError("Nothing to send.")
    if turn.state == TurnState.FAILED:
        raise SystemExit(1)
    stats = orchestrator.usage_tracker.get_stats()
    if stats.get("requests"):
        click.echo(
            _color(f"tokens: {int(stats.get('input_tokens', 0))} in / {int(stats.get('output_tokens', 0))} out", "muted"),
            err=True,
        )


@main.command()
@click.argument("provider_id")
def models(provider_id: str) -> None:
    """List models for a provider."""
    config = Config()
    registry = ProviderRegistry.from_config(config, CredentialsManager(config))
    try:
        names = registry.models_for(provider_id)
    except ConfigurationError as exc:
        raise click.ClickException(str(exc)) from exc
    for name in names:
        click.echo(name)


if __name__ == "__main__":
    main()
