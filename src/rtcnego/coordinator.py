"""Top-level negotiation coordinator.

Composes ReadinessGate, MessageQueue, CandidateRelay and
NegotiationStateMachine. Every entry point that can touch the session
runs under one asyncio.Lock, so signaling messages are applied one at a
time in arrival order.

Usage:
    coordinator = Coordinator(
        role=Role.RESPONDER,
        channel=channel,
        engine_factory=lambda: AiortcEngine(ice_servers),
    )
    coordinator.on_remote_hangup = done.set

    channel.on_message(coordinator.handle_inbound)
    await coordinator.set_ready(ReadinessFlag.SIGNALING_CHANNEL_OPEN)
    await coordinator.set_ready(ReadinessFlag.TRANSPORT_CONFIG_RESOLVED)
"""

import asyncio
import logging
from typing import Any, Callable

from rtcnego.candidates import CandidateFilter, CandidateRelay, CandidateStats
from rtcnego.errors import ProtocolError, RtcNegoError, TransportError
from rtcnego.gate import ReadinessGate
from rtcnego.message_queue import MessageQueue
from rtcnego.messages import Bye, Candidate, SignalingMessage, decode_message, message_from_dict
from rtcnego.negotiation import EngineFactory, NegotiationStateMachine
from rtcnego.protocols import NegotiationState, OutboundChannelProtocol, ReadinessFlag, Role
from rtcnego.sdp_policy import SdpPolicy

logger = logging.getLogger(__name__)


class Coordinator:
    """Routes readiness events, inbound messages and engine events.

    Args:
        role: Initiator or responder.
        channel: Outbound signaling channel.
        engine_factory: Creates the transport engine when the gate fires.
        policy: SDP rewrite rules.
        require_local_media: Whether LOCAL_MEDIA_READY gates the start.
        ice_transports: "relay" forwards only relay local candidates,
            "all" forwards every local candidate.
        remote_filter: Optional predicate for remote candidates.
    """

    def __init__(
        self,
        role: Role,
        channel: OutboundChannelProtocol,
        engine_factory: EngineFactory,
        policy: SdpPolicy | None = None,
        require_local_media: bool = False,
        ice_transports: str = "all",
        remote_filter: CandidateFilter | None = None,
    ):
        self.role = role
        self._channel = channel
        self._engine_factory = engine_factory
        self._policy = policy or SdpPolicy.from_config()
        self._require_local_media = require_local_media
        self._ice_transports = ice_transports
        self._remote_filter = remote_filter
        self._lock = asyncio.Lock()

        self.on_remote_hangup: Callable[[], None] | None = None
        self.on_error: Callable[[Exception], None] | None = None
        self.on_active: Callable[[], None] | None = None
        self.on_remote_media_ready: Callable[[], None] | None = None

        self._build_session()

    def _build_session(self) -> None:
        self.gate = ReadinessGate.for_policy(self._require_local_media)
        self.gate.on_satisfied(self._on_gate_satisfied)
        self.queue = MessageQueue()
        self.relay = CandidateRelay.for_ice_transports(
            self._channel, self._ice_transports, remote_filter=self._remote_filter
        )
        self.state_machine = NegotiationStateMachine(
            role=self.role,
            engine_factory=self._engine_factory,
            send=self._channel.send,
            relay=self.relay,
            policy=self._policy,
            local_candidate_handler=self.handle_local_candidate,
        )
        self.state_machine.on_remote_hangup = self._notify_remote_hangup
        self.state_machine.on_active = self._notify_active
        self.state_machine.on_remote_media_ready = self._notify_remote_media_ready
        self._start_pending = False
        self.state_machine.await_gate()

    @property
    def state(self) -> NegotiationState:
        return self.state_machine.state

    @property
    def stats(self) -> CandidateStats:
        return self.relay.stats

    # ------------------------------------------------------------------
    # Readiness
    # ------------------------------------------------------------------

    def _on_gate_satisfied(self) -> None:
        # Fired synchronously inside gate.set_flag(); set_ready() starts
        # the session before releasing the lock.
        self._start_pending = True

    async def set_ready(self, flag: ReadinessFlag | str) -> None:
        """Mark a readiness precondition; starts the session when complete."""
        async with self._lock:
            self.gate.set_flag(flag)
            if self._start_pending:
                self._start_pending = False
                await self._start_session()

    async def _start_session(self) -> None:
        sm = self.state_machine
        if sm.state is not NegotiationState.AWAITING_GATE:
            logger.info(f"Not starting session in state {sm.state.value}")
            return

        try:
            await sm.start()
        except ProtocolError as e:
            logger.warning(f"Session start rejected: {e}")
        except RtcNegoError as e:
            self._report(e)

        if sm.has_session:
            await self.queue.drain_into(self._apply)

    # ------------------------------------------------------------------
    # Inbound signaling
    # ------------------------------------------------------------------

    async def handle_inbound(self, raw: str | dict[str, Any] | SignalingMessage) -> None:
        """Accept one inbound signaling message.

        Malformed payloads are logged and dropped. Before the session
        exists messages are buffered; a Bye closes immediately.
        """
        try:
            if isinstance(raw, str):
                message = decode_message(raw)
            elif isinstance(raw, dict):
                message = message_from_dict(raw)
            else:
                message = raw
        except ProtocolError as e:
            logger.warning(f"Dropped inbound message: {e}")
            return

        async with self._lock:
            if self.state_machine.state is NegotiationState.CLOSED:
                logger.debug(f"Session closed, discarding {message.type}")
                return

            if isinstance(message, Bye) and len(self.queue):
                queued = ", ".join(m.type for m in self.queue.pending())
                logger.info(f"Bye before session start, discarding queued: {queued}")

            if self.queue.is_bypassed or isinstance(message, Bye):
                await self._apply(message)
            else:
                self.queue.enqueue(message)

    async def _apply(self, message: SignalingMessage) -> None:
        try:
            await self.state_machine.dispatch(message)
        except ProtocolError as e:
            logger.warning(f"Dropped {message.type}: {e}")
        except RtcNegoError as e:
            self._report(e)

    # ------------------------------------------------------------------
    # Engine events
    # ------------------------------------------------------------------

    async def handle_local_candidate(self, candidate: Candidate | None) -> None:
        """Forward a local candidate outward through the relay.

        Does not take the lock: the engine may report candidates while a
        locked operation is awaiting it.
        """
        if self.state_machine.state is NegotiationState.CLOSED:
            return
        try:
            await self.relay.forward_local(candidate)
        except TransportError as e:
            self._report(e)

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    async def hangup(self) -> None:
        """Close the session, sending Bye first if the session had started."""
        async with self._lock:
            if self.state_machine.state is NegotiationState.CLOSED:
                return
            if self.state_machine.has_session:
                try:
                    await self._channel.send(Bye())
                except TransportError as e:
                    logger.warning(f"Could not send bye: {e}")
            await self.state_machine.close()

    async def teardown(self) -> None:
        """Close the session without notifying the remote party."""
        async with self._lock:
            await self.state_machine.close()

    async def reset(self) -> None:
        """Tear down and start over with fresh gate, queue and session."""
        async with self._lock:
            await self.state_machine.close()
            self._build_session()
        logger.info("Coordinator reset")

    # ------------------------------------------------------------------
    # Channel events
    # ------------------------------------------------------------------

    def on_channel_error(self, exc: Exception | None = None) -> None:
        self._report(TransportError(f"Channel error: {exc}" if exc else "Channel error."))

    def on_channel_closed(self, code: int | None = None, reason: str | None = None) -> None:
        self._report(TransportError(f"Channel closed with code: {code} reason: {reason}"))

    # ------------------------------------------------------------------
    # Outward notifications
    # ------------------------------------------------------------------

    def _report(self, error: Exception) -> None:
        logger.error(str(error))
        if self.on_error:
            self.on_error(error)

    def _notify_remote_hangup(self) -> None:
        if self.on_remote_hangup:
            self.on_remote_hangup()

    def _notify_active(self) -> None:
        if self.on_active:
            self.on_active()

    def _notify_remote_media_ready(self) -> None:
        if self.on_remote_media_ready:
            self.on_remote_media_ready()
