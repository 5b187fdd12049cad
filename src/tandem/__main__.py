"""CLI entry point for Tandem."""

from __future__ import annotations

import asyncio
import logging
import sys
from pathlib import Path

import click

from tandem import __version__
from tandem.auth.credentials import Credentials, HttpCredentialProvider
from tandem.chat.store import ChatStore
from tandem.cli.display import (
    display_chunk,
    display_title,
    display_tool_result,
    display_turn_summary,
    display_user_message,
)
from tandem.config import Config, ConfigError, load_config
from tandem.engine.turn import TurnController
from tandem.events.bus import EventBus
from tandem.models.scripted import ScriptedTransport, ScriptError, load_script
from tandem.tools.scratchpad import Scratchpad, scratchpad_registry


def _resolve_config_path(config_path: Path | None) -> Path | None:
    """Resolve the effective tandem.toml path used for config loading."""
    if config_path is not None:
        return config_path
    candidates = [
        Path.cwd() / "tandem.toml",
        Path.home() / ".tandem" / "tandem.toml",
    ]
    for candidate in candidates:
        if candidate.exists():
            return candidate
    return None


@click.group()
@click.version_option(version=__version__, prog_name="tandem")
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, path_type=Path),
    default=None,
    help="Path to tandem.toml configuration file.",
)
@click.pass_context
def cli(ctx: click.Context, config_path: Path | None) -> None:
    """Tandem: turn orchestration for tool-using coding assistants."""
    ctx.ensure_object(dict)
    resolved = _resolve_config_path(config_path)
    try:
        config = load_config(resolved)
    except ConfigError as e:
        click.echo(f"Configuration error: {e}", err=True)
        sys.exit(1)
    ctx.obj["config"] = config
    ctx.obj["config_path"] = resolved
    logging.basicConfig(
        level=getattr(logging, config.logging.level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@cli.command()
@click.argument("script", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--prompt", "-p", default=None, help="User message. Overrides the script's prompt.")
@click.option(
    "--delay", default=0.0, type=float, show_default=True,
    help="Seconds to wait between replayed chunks.",
)
@click.option(
    "--access-token", envvar="TANDEM_ACCESS_TOKEN", default="",
    help="Access token sent with model requests.",
)
@click.option(
    "--refresh-token", envvar="TANDEM_REFRESH_TOKEN", default="",
    help="Refresh token exchanged at [auth] refresh_url when the access token is rejected.",
)
@click.pass_context
def replay(
    ctx: click.Context,
    script: Path,
    prompt: str | None,
    delay: float,
    access_token: str,
    refresh_token: str,
) -> None:
    """Run a scripted conversation through the turn engine."""
    config: Config = ctx.obj["config"]
    try:
        loaded = load_script(script)
    except ScriptError as e:
        click.echo(f"Script error: {e}", err=True)
        sys.exit(1)

    text = prompt or loaded.prompt
    if not text:
        click.echo("No prompt given and the script has none.", err=True)
        sys.exit(1)

    credentials = Credentials(access_token, refresh_token)
    exit_code = asyncio.run(_replay(config, ScriptedTransport(loaded, delay), text, credentials))
    sys.exit(exit_code)


async def _replay(
    config: Config,
    transport: ScriptedTransport,
    text: str,
    credentials: Credentials,
) -> int:
    pad = Scratchpad()
    store = ChatStore()
    bus = EventBus()
    provider = HttpCredentialProvider(config.auth) if config.auth.refresh_url else None
    controller = TurnController(
        transport,
        scratchpad_registry(pad),
        store,
        config=config.turn,
        credential_provider=provider,
        credentials=credentials,
        event_bus=bus,
        on_chunk=display_chunk,
        on_tool_result=display_tool_result,
    )
    chat = controller.create_chat()
    display_user_message(text)
    try:
        await controller.send_user_message(text, chat.id)
    finally:
        await controller.shutdown()
        await bus.drain(timeout=1.0)
        if provider is not None:
            await provider.aclose()

    conversation = store.require(chat.id)
    display_title(conversation)
    display_turn_summary(conversation, store.state.credits)
    pending = controller.find_pending_tool_calls(chat.id)
    if pending:
        ids = ", ".join(p["tool_call_id"] for p in pending)
        click.echo(f"Waiting on user input for: {ids}")
    if pad.notes:
        click.echo("Scratchpad:")
        for name, content in sorted(pad.notes.items()):
            click.echo(f"  {name}: {content}")
    return 1 if conversation.error is not None else 0


@cli.command(name="config")
@click.pass_context
def show_config(ctx: click.Context) -> None:
    """Print the effective configuration."""
    config: Config = ctx.obj["config"]
    path = ctx.obj.get("config_path")
    click.echo(f"Config file: {path or '(defaults)'}")
    click.echo("[turn]")
    click.echo(f"  watchdog_timeout_seconds = {config.turn.watchdog_timeout_seconds:g}")
    click.echo(f"  max_recursion_depth = {config.turn.max_recursion_depth}")
    click.echo(f"  max_auth_retries = {config.turn.max_auth_retries}")
    click.echo(f"  tool_timeout_seconds = {config.turn.tool_timeout_seconds:g}")
    click.echo("[auth]")
    click.echo(f"  refresh_url = {config.auth.refresh_url or '(unset)'}")
    click.echo(f"  timeout_seconds = {config.auth.timeout_seconds:g}")
    click.echo("[logging]")
    click.echo(f"  level = {config.logging.level}")


def main() -> None:
    """Entry point."""
    cli()


if __name__ == "__main__":
    main()
