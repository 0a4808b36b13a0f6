"""aiortc-backed transport engine."""

import asyncio
import logging
import time
from typing import Any, Callable, Iterable

from aiortc import (
    MediaStreamTrack,
    RTCConfiguration,
    RTCIceServer,
    RTCPeerConnection,
    RTCSessionDescription,
)
from aiortc.contrib.media import MediaRelay
from aiortc.sdp import candidate_from_sdp

from rtcnego.messages import Candidate
from rtcnego.protocols import LocalCandidateCallback, RemoteMediaReadyCallback
from rtcnego.sdp import CANDIDATE_PREFIX, iter_candidates, validate_sdp

logger = logging.getLogger(__name__)


class ConnectionTimer:
    """Track and log connection timing phases for debugging.

    Usage:
        timer = ConnectionTimer("webrtc")
        timer.log_mark("offer_created")
        timer.log_summary()
    """

    def __init__(self, label: str = "connection"):
        self._label = label
        self._start = time.perf_counter()
        self._marks: list[tuple[str, float]] = []

    def mark(self, phase: str) -> float:
        """Record a timing mark and return elapsed ms since start."""
        elapsed_ms = (time.perf_counter() - self._start) * 1000
        self._marks.append((phase, elapsed_ms))
        return elapsed_ms

    def log_mark(self, phase: str) -> None:
        elapsed_ms = self.mark(phase)
        logger.info(f"[TIMING] {self._label}: {phase} @ {elapsed_ms:.1f}ms")

    def log_summary(self) -> None:
        if not self._marks:
            return
        summary = " | ".join(f"{phase}={ms:.0f}ms" for phase, ms in self._marks)
        logger.info(f"[TIMING] {self._label} summary: {summary} (total={self._marks[-1][1]:.0f}ms)")


def remote_sends_video(sdp: str) -> bool:
    """True if a remote description has a video section the remote side sends on."""
    in_video = False
    direction = "sendrecv"
    sends = False
    for line in sdp.replace("\r\n", "\n").split("\n"):
        if line.startswith("m="):
            if in_video and direction in ("sendrecv", "sendonly"):
                sends = True
            in_video = line.startswith("m=video ") and not line.startswith("m=video 0 ")
            direction = "sendrecv"
        elif in_video and line[2:] in ("sendrecv", "sendonly", "recvonly", "inactive"):
            direction = line[2:]
    if in_video and direction in ("sendrecv", "sendonly"):
        sends = True
    return sends


def to_rtc_candidate(candidate: Candidate):
    """Convert a signaling Candidate to an aiortc RTCIceCandidate."""
    value = candidate.candidate
    if value.startswith(CANDIDATE_PREFIX):
        value = value[len(CANDIDATE_PREFIX):]
    rtc_candidate = candidate_from_sdp(value)
    rtc_candidate.sdpMid = candidate.id
    rtc_candidate.sdpMLineIndex = candidate.label
    return rtc_candidate


class AiortcEngine:
    """Transport engine over aiortc's RTCPeerConnection.

    aiortc gathers candidates while applying the local description, so
    local candidates are reported in one burst after
    set_local_description(), followed by the end-of-candidates signal.

    Args:
        ice_servers: STUN/TURN servers.
        tracks: Local media tracks to send.
        media_sink: Receives remote tracks (MediaRecorder/MediaBlackhole).
            None discards remote media.
        receive_kinds: Kinds to request from the remote party when no
            local track of that kind is sent.
        pc_factory: Factory to create RTCPeerConnection (for testing).
    """

    def __init__(
        self,
        ice_servers: list[RTCIceServer] | None = None,
        tracks: Iterable[MediaStreamTrack] = (),
        media_sink: Any = None,
        receive_kinds: Iterable[str] = ("audio", "video"),
        pc_factory: Callable[[RTCConfiguration], RTCPeerConnection] | None = None,
    ):
        config = RTCConfiguration(iceServers=list(ice_servers or []))
        factory = pc_factory or (lambda cfg: RTCPeerConnection(configuration=cfg))
        self._pc = factory(config)
        self._tracks = list(tracks)
        self._sink = media_sink
        self._sink_started = False
        self._receive_kinds = tuple(receive_kinds)
        self._relay = MediaRelay()
        self._timer = ConnectionTimer("webrtc")
        self._candidate_callback: LocalCandidateCallback | None = None
        self._media_ready_callback: RemoteMediaReadyCallback | None = None
        self._watch_tasks: set[asyncio.Task] = set()
        self._closed = False

        for track in self._tracks:
            self._pc.addTrack(track)

        self._register_handlers()

    def _register_handlers(self) -> None:
        pc = self._pc
        timer = self._timer

        @pc.on("connectionstatechange")
        async def on_connection_state_change():
            timer.log_mark(f"conn_{pc.connectionState}")
            if pc.connectionState == "connected":
                timer.log_summary()

        @pc.on("iceconnectionstatechange")
        async def on_ice_connection_state_change():
            timer.log_mark(f"ice_{pc.iceConnectionState}")

        @pc.on("signalingstatechange")
        async def on_signaling_state_change():
            logger.info(f"Signaling state changed to: {pc.signalingState}")

        @pc.on("track")
        def on_track(track):
            logger.info(f"Remote {track.kind} track added.")
            if self._sink is not None:
                self._sink.addTrack(self._relay.subscribe(track))
            if track.kind == "video":
                task = asyncio.ensure_future(self._watch_first_frame(track))
                self._watch_tasks.add(task)
                task.add_done_callback(self._watch_tasks.discard)

            @track.on("ended")
            def on_ended():
                logger.info(f"Remote {track.kind} track removed.")

    async def _watch_first_frame(self, track: MediaStreamTrack) -> None:
        proxy = self._relay.subscribe(track, buffered=False)
        try:
            await proxy.recv()
        except Exception as e:
            logger.debug(f"Remote video ended before first frame: {e}")
            return
        finally:
            proxy.stop()
        self._timer.log_mark("first_remote_frame")
        if self._media_ready_callback and not self._closed:
            self._media_ready_callback()

    def on_local_candidate(self, callback: LocalCandidateCallback) -> None:
        self._candidate_callback = callback

    def on_remote_media_ready(self, callback: RemoteMediaReadyCallback) -> None:
        self._media_ready_callback = callback

    async def create_offer(self) -> str:
        sent_kinds = {track.kind for track in self._tracks}
        for kind in self._receive_kinds:
            if kind not in sent_kinds:
                self._pc.addTransceiver(kind, direction="recvonly")
        offer = await self._pc.createOffer()
        self._timer.log_mark("offer_created")
        return offer.sdp

    async def create_answer(self) -> str:
        answer = await self._pc.createAnswer()
        self._timer.log_mark("answer_created")
        return answer.sdp

    async def set_local_description(self, sdp: str, sdp_type: str) -> None:
        await self._pc.setLocalDescription(RTCSessionDescription(sdp=sdp, type=sdp_type))
        self._timer.log_mark("local_desc_set")

        local_sdp = self._pc.localDescription.sdp
        validation = validate_sdp(local_sdp, "Local description")
        logger.info(
            f"Local {sdp_type}: {validation.candidate_count} candidates "
            f"(host={validation.has_host}, srflx={validation.has_srflx}, relay={validation.has_relay})"
        )
        if self._candidate_callback is None:
            return
        for index, mid, attribute in iter_candidates(local_sdp):
            await self._candidate_callback(Candidate(label=index, id=mid, candidate=attribute))
        await self._candidate_callback(None)

    async def set_remote_description(self, sdp: str, sdp_type: str) -> None:
        await self._pc.setRemoteDescription(RTCSessionDescription(sdp=sdp, type=sdp_type))
        self._timer.log_mark("remote_desc_set")
        if self._sink is not None and not self._sink_started:
            self._sink_started = True
            await self._sink.start()

    async def add_ice_candidate(self, candidate: Candidate) -> None:
        await self._pc.addIceCandidate(to_rtc_candidate(candidate))

    def remote_has_video(self) -> bool:
        description = self._pc.remoteDescription
        return description is not None and remote_sends_video(description.sdp)

    async def close(self) -> None:
        """Close the peer connection. Idempotent."""
        if self._closed:
            return
        self._closed = True
        for task in list(self._watch_tasks):
            task.cancel()
        if self._sink is not None and self._sink_started:
            await self._sink.stop()
        await self._pc.close()
        self._timer.log_summary()
        logger.info("Peer connection closed")
