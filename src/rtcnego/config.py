"""Configuration management for rtc-nego."""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable

import yaml

from rtcnego.errors import ConfigError


DEFAULT_STUN_SERVERS = [
    "stun:stun.l.google.com:19302",
]

ICE_TRANSPORTS = ("all", "relay")


@dataclass
class SignalingConfig:
    """Signaling channel configuration."""

    wss_url: str = "wss://apprtc-ws.webrtc.org:443/ws"
    wss_post_url: str = "https://apprtc-ws.webrtc.org:443"
    reconnect: bool = False  # Channel reconnect is opt-in
    reconnect_delay: float = 5.0  # seconds


@dataclass
class IceConfig:
    """ICE server and candidate policy configuration."""

    stun_servers: list[str] = field(default_factory=lambda: DEFAULT_STUN_SERVERS.copy())
    turn_url: str | None = None  # TURN credential endpoint, optional
    ice_transports: str = "all"  # "all" or "relay"

    @property
    def relay_only(self) -> bool:
        return self.ice_transports == "relay"


@dataclass
class MediaConfig:
    """Local and remote media configuration."""

    send_local_media: bool = False
    source: str | None = None  # File or device passed to MediaPlayer
    format: str | None = None  # ffmpeg input format, e.g. "v4l2"
    record_to: str | None = None  # Remote media sink; None discards


@dataclass
class SdpConfig:
    """SDP rewrite rules. None disables a rule.

    Bitrates are in kbps.
    """

    opus_stereo: bool = False
    opus_fec: bool = False
    opus_max_playback_rate: int | None = None
    audio_send_codec: str | None = None
    audio_receive_codec: str | None = None
    video_send_codec: str | None = None
    video_receive_codec: str | None = None
    audio_send_bitrate: int | None = None
    audio_receive_bitrate: int | None = None
    video_send_bitrate: int | None = None
    video_receive_bitrate: int | None = None
    video_send_initial_bitrate: int | None = None


@dataclass
class Config:
    """Client configuration."""

    log_level: str = "INFO"
    log_file: str | None = None
    signaling: SignalingConfig = field(default_factory=SignalingConfig)
    ice: IceConfig = field(default_factory=IceConfig)
    media: MediaConfig = field(default_factory=MediaConfig)
    sdp: SdpConfig = field(default_factory=SdpConfig)


def get_config_path(custom_path: Path | None = None) -> Path:
    """Get the configuration file path.

    Args:
        custom_path: Override path. If None, returns default.

    Returns:
        Path to config file.
    """
    if custom_path is not None:
        return custom_path
    return Path.home() / ".config" / "rtcnego" / "config.yaml"


def _default_file_reader(path: Path) -> dict[str, Any] | None:
    """Default file reader that loads YAML from disk."""
    if not path.exists():
        return None
    try:
        content = path.read_text()
        if not content.strip():
            return None
        return yaml.safe_load(content)
    except yaml.YAMLError:
        return None


def _section(cls, data: dict[str, Any]):
    """Build a section dataclass from a dict, ignoring unknown keys."""
    known = {name for name in cls.__dataclass_fields__}
    return cls(**{k: v for k, v in data.items() if k in known})


def load_config(
    path: Path | None = None,
    file_reader: Callable[[Path], dict[str, Any] | None] | None = None,
) -> Config:
    """Load configuration from file.

    Args:
        path: Path to config file. If None, uses default path.
        file_reader: Injectable file reader for testing.

    Returns:
        Config object with values from file or defaults.

    Raises:
        ConfigError: If a value is out of range.
    """
    config_path = get_config_path(path)
    reader = file_reader or _default_file_reader

    data = reader(config_path)

    if data is None:
        return Config()

    ice_config = _section(IceConfig, data.get("ice") or {})
    if ice_config.ice_transports not in ICE_TRANSPORTS:
        raise ConfigError(
            f"ice.ice_transports must be one of {ICE_TRANSPORTS}, "
            f"got {ice_config.ice_transports!r}"
        )

    signaling_config = _section(SignalingConfig, data.get("signaling") or {})
    if signaling_config.reconnect_delay < 0:
        raise ConfigError("signaling.reconnect_delay must not be negative")

    return Config(
        log_level=data.get("log_level", Config.log_level),
        log_file=data.get("log_file", Config.log_file),
        signaling=signaling_config,
        ice=ice_config,
        media=_section(MediaConfig, data.get("media") or {}),
        sdp=_section(SdpConfig, data.get("sdp") or {}),
    )
