"""Run one call: channel, ICE resolution, media and coordinator wired together."""

import asyncio
import logging

import aiohttp
from aiortc.contrib.media import MediaBlackhole, MediaPlayer, MediaRecorder

from rtcnego.candidates import CandidateStats
from rtcnego.channel import WebSocketSignalingChannel
from rtcnego.config import Config, MediaConfig
from rtcnego.coordinator import Coordinator
from rtcnego.engine import AiortcEngine
from rtcnego.errors import ConfigError
from rtcnego.ice_config import resolve_ice_servers
from rtcnego.protocols import ReadinessFlag, Role
from rtcnego.sdp_policy import SdpPolicy

logger = logging.getLogger(__name__)


def open_media_player(media: MediaConfig) -> MediaPlayer:
    """Open the local media source.

    Raises:
        ConfigError: If sending media is enabled without a source.
    """
    if not media.source:
        raise ConfigError("media.send_local_media requires media.source")
    logger.info(f"Opening local media: {media.source}")
    return MediaPlayer(media.source, format=media.format)


def open_media_sink(media: MediaConfig):
    """Sink for remote media: a recorder if configured, else a blackhole."""
    if media.record_to:
        logger.info(f"Recording remote media to {media.record_to}")
        return MediaRecorder(media.record_to)
    return MediaBlackhole()


async def run_call(config: Config, role: Role, room_id: str, client_id: str) -> CandidateStats:
    """Join a room and run the call until the remote party hangs up.

    The TURN lookup runs concurrently with opening the channel; whichever
    finishes last completes the readiness gate.

    Returns:
        Candidate statistics gathered during the call.
    """
    done = asyncio.Event()
    player = open_media_player(config.media) if config.media.send_local_media else None
    sink = open_media_sink(config.media)
    ice_servers: list = []

    def engine_factory() -> AiortcEngine:
        tracks = [t for t in (player.audio, player.video) if t is not None] if player else []
        return AiortcEngine(ice_servers=ice_servers, tracks=tracks, media_sink=sink)

    async with aiohttp.ClientSession() as http:
        channel = WebSocketSignalingChannel(
            wss_url=config.signaling.wss_url,
            wss_post_url=config.signaling.wss_post_url,
            room_id=room_id,
            client_id=client_id,
            http_session=http,
            reconnect=config.signaling.reconnect,
            reconnect_delay=config.signaling.reconnect_delay,
        )
        coordinator = Coordinator(
            role=role,
            channel=channel,
            engine_factory=engine_factory,
            policy=SdpPolicy.from_config(config.sdp),
            require_local_media=config.media.send_local_media,
            ice_transports=config.ice.ice_transports,
        )
        coordinator.on_remote_hangup = done.set
        coordinator.on_active = lambda: logger.info(f"Call active in room {room_id}")

        async def on_open() -> None:
            await coordinator.set_ready(ReadinessFlag.SIGNALING_CHANNEL_OPEN)

        async def resolve_transport() -> None:
            ice_servers.extend(await resolve_ice_servers(config.ice, http))
            await coordinator.set_ready(ReadinessFlag.TRANSPORT_CONFIG_RESOLVED)

        channel.on_open(on_open)
        channel.on_message(coordinator.handle_inbound)
        channel.on_error(coordinator.on_channel_error)
        channel.on_close(coordinator.on_channel_closed)

        if player is not None:
            await coordinator.set_ready(ReadinessFlag.LOCAL_MEDIA_READY)

        logger.info(f"Joining room {room_id} as {role.value} (client {client_id})")
        try:
            await asyncio.gather(channel.open(), resolve_transport())
            await done.wait()
        finally:
            await coordinator.hangup()
            await channel.close()
            if player is not None:
                for track in (player.audio, player.video):
                    if track is not None:
                        track.stop()
            logger.info(f"Candidate stats: {coordinator.stats.summary()}")

    return coordinator.stats
