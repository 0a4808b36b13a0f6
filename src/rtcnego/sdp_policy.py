"""Declarative SDP rewrite rules.

Two rule sets are applied during negotiation:
- inbound: rewrites a remote description before it is applied, shaping
  what we send (Opus params, send codec preference, send bitrates)
- outbound: rewrites a local description before it is applied and sent,
  shaping what we receive (receive codec preference, receive bitrates)

All rewrites are pure string transforms. A rule whose target is absent
from the SDP leaves it unchanged.
"""

import logging
from dataclasses import dataclass

from rtcnego.config import SdpConfig

logger = logging.getLogger(__name__)

OPUS = "opus/48000"


def _line_separator(sdp: str) -> str:
    return "\r\n" if "\r\n" in sdp else "\n"


def _split(sdp: str) -> tuple[list[str], str]:
    sep = _line_separator(sdp)
    lines = sdp.split(sep)
    # Trailing separator yields a final empty element; keep it for round-trip
    return lines, sep


def _section_bounds(lines: list[str], kind: str) -> tuple[int, int] | None:
    """Return [start, end) line indexes of the first m=<kind> section."""
    start = next((i for i, line in enumerate(lines) if line.startswith(f"m={kind} ")), None)
    if start is None:
        return None
    end = next(
        (i for i in range(start + 1, len(lines)) if lines[i].startswith("m=")),
        len(lines),
    )
    return start, end


def _codec_matches(encoding: str, codec: str) -> bool:
    encoding = encoding.lower()
    codec = codec.lower()
    return encoding == codec or encoding.startswith(codec + "/")


def _find_payload_type(lines: list[str], codec: str, start: int = 0, end: int | None = None) -> str | None:
    """Find the RTP payload type whose rtpmap names codec."""
    for line in lines[start:end]:
        if not line.startswith("a=rtpmap:"):
            continue
        head, _, encoding = line[len("a=rtpmap:"):].partition(" ")
        if _codec_matches(encoding.strip(), codec):
            return head
    return None


def _set_fmtp_params(lines: list[str], payload: str, params: dict[str, str]) -> None:
    """Merge params into the fmtp line for payload, creating it if absent."""
    prefix = f"a=fmtp:{payload} "
    for i, line in enumerate(lines):
        if line.startswith(prefix) or line == f"a=fmtp:{payload}":
            existing = line[len(prefix):] if line.startswith(prefix) else ""
            merged: dict[str, str] = {}
            for item in existing.split(";"):
                item = item.strip()
                if not item:
                    continue
                key, _, value = item.partition("=")
                merged[key] = value
            merged.update(params)
            lines[i] = prefix + ";".join(f"{k}={v}" if v != "" else k for k, v in merged.items())
            return

    rtpmap = f"a=rtpmap:{payload} "
    for i, line in enumerate(lines):
        if line.startswith(rtpmap):
            lines.insert(i + 1, prefix + ";".join(f"{k}={v}" for k, v in params.items()))
            return


def add_codec_param(sdp: str, codec: str, param: str) -> str:
    """Add or replace an fmtp parameter ("key=value") for codec."""
    lines, sep = _split(sdp)
    payload = _find_payload_type(lines, codec)
    if payload is None:
        logger.debug(f"Codec {codec} not in SDP, skipping {param}")
        return sdp
    key, _, value = param.partition("=")
    _set_fmtp_params(lines, payload, {key: value})
    return sep.join(lines)


def prefer_codec(sdp: str, kind: str, codec: str) -> str:
    """Move codec to the front of the m=<kind> payload list."""
    lines, sep = _split(sdp)
    bounds = _section_bounds(lines, kind)
    if bounds is None:
        return sdp
    start, end = bounds
    payload = _find_payload_type(lines, codec, start, end)
    if payload is None:
        logger.debug(f"Codec {codec} not offered for {kind}")
        return sdp

    # m=<kind> <port> <proto> <pt> <pt> ...
    parts = lines[start].split(" ")
    header, payloads = parts[:3], [p for p in parts[3:] if p != payload]
    lines[start] = " ".join(header + [payload] + payloads)
    return sep.join(lines)


def set_bitrate(sdp: str, kind: str, kbps: int) -> str:
    """Set the b=AS bandwidth line of the m=<kind> section."""
    lines, sep = _split(sdp)
    bounds = _section_bounds(lines, kind)
    if bounds is None:
        return sdp
    start, end = bounds

    for i in range(start + 1, end):
        if lines[i].startswith("b=AS:"):
            lines[i] = f"b=AS:{kbps}"
            return sep.join(lines)

    # b= goes after the connection line when there is one (RFC 4566 order)
    insert_at = start + 1
    for i in range(start + 1, end):
        if lines[i].startswith("c="):
            insert_at = i + 1
            break
    lines.insert(insert_at, f"b=AS:{kbps}")
    return sep.join(lines)


def set_video_start_bitrate(sdp: str, start_kbps: int, max_kbps: int | None = None) -> str:
    """Set the initial send bitrate of the preferred video codec.

    start_kbps is clamped to max_kbps when both are given.
    """
    lines, sep = _split(sdp)
    bounds = _section_bounds(lines, "video")
    if bounds is None:
        return sdp
    start, _ = bounds
    parts = lines[start].split(" ")
    if len(parts) < 4:
        return sdp

    if max_kbps is not None and start_kbps > max_kbps:
        logger.info(f"Clamping initial video bitrate {start_kbps} to max {max_kbps} kbps")
        start_kbps = max_kbps

    params = {"x-google-start-bitrate": str(start_kbps)}
    if max_kbps is not None:
        params["x-google-max-bitrate"] = str(max_kbps)
    _set_fmtp_params(lines, parts[3], params)
    return sep.join(lines)


@dataclass
class SdpPolicy:
    """Inbound and outbound SDP rewrite rule sets built from SdpConfig."""

    config: SdpConfig

    @classmethod
    def from_config(cls, config: SdpConfig | None = None) -> "SdpPolicy":
        return cls(config=config or SdpConfig())

    def transform_remote(self, sdp: str) -> str:
        """Rewrite a remote description before it is applied."""
        c = self.config
        if c.opus_stereo:
            sdp = add_codec_param(sdp, OPUS, "stereo=1")
        if c.opus_fec:
            sdp = add_codec_param(sdp, OPUS, "useinbandfec=1")
        if c.opus_max_playback_rate:
            sdp = add_codec_param(sdp, OPUS, f"maxplaybackrate={c.opus_max_playback_rate}")
        if c.audio_send_codec:
            sdp = prefer_codec(sdp, "audio", c.audio_send_codec)
        if c.video_send_codec:
            sdp = prefer_codec(sdp, "video", c.video_send_codec)
        if c.audio_send_bitrate:
            sdp = set_bitrate(sdp, "audio", c.audio_send_bitrate)
        if c.video_send_bitrate:
            sdp = set_bitrate(sdp, "video", c.video_send_bitrate)
        if c.video_send_initial_bitrate:
            sdp = set_video_start_bitrate(
                sdp, c.video_send_initial_bitrate, c.video_send_bitrate
            )
        return sdp

    def transform_local(self, sdp: str) -> str:
        """Rewrite a local description before it is applied and sent."""
        c = self.config
        if c.audio_receive_codec:
            sdp = prefer_codec(sdp, "audio", c.audio_receive_codec)
        if c.video_receive_codec:
            sdp = prefer_codec(sdp, "video", c.video_receive_codec)
        if c.audio_receive_bitrate:
            sdp = set_bitrate(sdp, "audio", c.audio_receive_bitrate)
        if c.video_receive_bitrate:
            sdp = set_bitrate(sdp, "video", c.video_receive_bitrate)
        return sdp
