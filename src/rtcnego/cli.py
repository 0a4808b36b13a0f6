"""CLI entry point for rtc-nego."""

import secrets
from dataclasses import replace
from pathlib import Path

import click

from rtcnego import __version__
from rtcnego.config import load_config
from rtcnego.errors import ConfigError, TransportError
from rtcnego.logging import setup_logging
from rtcnego.protocols import Role


@click.group()
@click.option(
    "--config",
    "-c",
    type=click.Path(exists=False, path_type=Path),
    default=None,
    help="Path to config file.",
)
@click.option("--verbose", "-v", is_flag=True, help="Debug logging, including aiortc and aioice.")
@click.pass_context
def main(ctx: click.Context, config: Path | None, verbose: bool) -> None:
    """rtc-nego - Two-party WebRTC call negotiation."""
    ctx.ensure_object(dict)
    try:
        ctx.obj["config"] = load_config(config)
    except ConfigError as e:
        raise click.ClickException(str(e))
    ctx.obj["logger"] = setup_logging(ctx.obj["config"], verbose=verbose)


@main.command()
def version() -> None:
    """Show version."""
    click.echo(f"rtcnego version {__version__}")


@main.command()
@click.argument("room_id")
@click.option(
    "--initiator/--responder",
    default=False,
    help="Create the offer (initiator) or wait for one (responder).",
)
@click.option("--client-id", default=None, help="Client ID in the room. Random if omitted.")
@click.option("--wss-url", default=None, help="Room server WebSocket URL.")
@click.option("--wss-post-url", default=None, help="Room server HTTP fallback base URL.")
@click.option("--relay-only", is_flag=True, help="Only send relay candidates.")
@click.option("--media-source", default=None, help="File or device to send as local media.")
@click.option("--record-to", default=None, help="Record remote media to this file.")
@click.pass_context
def call(
    ctx: click.Context,
    room_id: str,
    initiator: bool,
    client_id: str | None,
    wss_url: str | None,
    wss_post_url: str | None,
    relay_only: bool,
    media_source: str | None,
    record_to: str | None,
) -> None:
    """Join ROOM_ID and negotiate a call with the other party."""
    import asyncio

    from rtcnego.call import run_call

    config = ctx.obj["config"]
    if wss_url or wss_post_url:
        config.signaling = replace(
            config.signaling,
            wss_url=wss_url or config.signaling.wss_url,
            wss_post_url=wss_post_url or config.signaling.wss_post_url,
        )
    if relay_only:
        config.ice = replace(config.ice, ice_transports="relay")
    if media_source:
        config.media = replace(config.media, send_local_media=True, source=media_source)
    if record_to:
        config.media = replace(config.media, record_to=record_to)

    role = Role.INITIATOR if initiator else Role.RESPONDER
    client_id = client_id or secrets.token_hex(4)

    try:
        stats = asyncio.run(run_call(config, role, room_id, client_id))
    except KeyboardInterrupt:
        click.echo("\nHung up")
        return
    except (ConfigError, TransportError) as e:
        click.echo(f"Error: {e}", err=True)
        raise SystemExit(1)

    click.echo(f"Call ended. Candidates: {stats.summary()}")
