"""Offer/answer negotiation state machine.

Owns the session lifecycle and the only reference to the transport engine.
States:

    IDLE -> AWAITING_GATE      await_gate(), at construction
    AWAITING_GATE -> NEGOTIATING   start(), once the readiness gate fires
    NEGOTIATING -> ACTIVE      responder: answer applied and sent
                               initiator: remote answer applied
    * -> CLOSED                Bye, close()

Remote video is a side condition: when the remote description carries
video, on_active is reported only after the engine signals the first
frame. It never blocks signaling.

Engine operations are coroutines; every await is a suspension point where
the caller (Coordinator) resumes on completion.
"""

import logging
from typing import Awaitable, Callable, Optional, TypeVar

from rtcnego.candidates import CandidateRelay
from rtcnego.errors import NegotiationError, ProtocolError
from rtcnego.messages import Answer, Bye, Candidate, Offer, SignalingMessage
from rtcnego.protocols import NegotiationState, Role, TransportEngineProtocol
from rtcnego.sdp import require_valid
from rtcnego.sdp_policy import SdpPolicy

logger = logging.getLogger(__name__)

T = TypeVar("T")

EngineFactory = Callable[[], TransportEngineProtocol]
SendCallback = Callable[[SignalingMessage], Awaitable[None]]
LocalCandidateHandler = Callable[[Optional[Candidate]], Awaitable[None]]

VALID_TRANSITIONS = {
    NegotiationState.IDLE: {NegotiationState.AWAITING_GATE, NegotiationState.CLOSED},
    NegotiationState.AWAITING_GATE: {NegotiationState.NEGOTIATING, NegotiationState.CLOSED},
    NegotiationState.NEGOTIATING: {NegotiationState.ACTIVE, NegotiationState.CLOSED},
    NegotiationState.ACTIVE: {NegotiationState.CLOSED},
    NegotiationState.CLOSED: set(),
}

SESSION_STATES = (NegotiationState.NEGOTIATING, NegotiationState.ACTIVE)


class NegotiationStateMachine:
    """Drives offer/answer creation and application for one session.

    Args:
        role: Initiator creates the offer, responder answers it.
        engine_factory: Creates the transport engine when the session starts.
        send: Async callable delivering a message to the remote party.
        relay: Candidate relay used to vet and count remote candidates.
        policy: SDP rewrite rules.
        local_candidate_handler: Receives local candidates once the local
            description has been sent. Defaults to relay.forward_local.
    """

    def __init__(
        self,
        role: Role,
        engine_factory: EngineFactory,
        send: SendCallback,
        relay: CandidateRelay,
        policy: SdpPolicy | None = None,
        local_candidate_handler: LocalCandidateHandler | None = None,
    ):
        self.role = role
        self._engine_factory = engine_factory
        self._send = send
        self._relay = relay
        self._policy = policy or SdpPolicy.from_config()
        self._local_candidate_handler = local_candidate_handler or relay.forward_local

        self._state = NegotiationState.IDLE
        self._engine: TransportEngineProtocol | None = None

        self._local_applied = False
        self._remote_applied = False
        self._description_sent = False
        self._held_candidates: list[Candidate | None] = []
        self._held_remote_candidates: list[Candidate] = []

        self._awaiting_remote_video = False
        self._remote_media_ready = False
        self._active_reported = False

        self.on_remote_hangup: Callable[[], None] | None = None
        self.on_active: Callable[[], None] | None = None
        self.on_remote_media_ready: Callable[[], None] | None = None

    @property
    def state(self) -> NegotiationState:
        return self._state

    @property
    def has_session(self) -> bool:
        """True while a session exists and accepts signaling."""
        return self._engine is not None and self._state in SESSION_STATES

    @property
    def awaiting_remote_video(self) -> bool:
        return self._awaiting_remote_video

    @property
    def fully_active(self) -> bool:
        """ACTIVE and, when remote video is expected, a frame has arrived."""
        return self._state is NegotiationState.ACTIVE and not self._awaiting_remote_video

    def _transition(self, new_state: NegotiationState) -> None:
        if new_state not in VALID_TRANSITIONS[self._state]:
            raise ValueError(f"Invalid transition: {self._state} -> {new_state}")
        logger.debug(f"Negotiation state: {self._state.value} -> {new_state.value}")
        self._state = new_state

    async def _engine_call(self, what: str, operation: Awaitable[T]) -> T:
        try:
            return await operation
        except NegotiationError:
            raise
        except Exception as e:
            raise NegotiationError(f"Failed to {what}: {e}") from e

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def await_gate(self) -> None:
        """IDLE -> AWAITING_GATE."""
        self._transition(NegotiationState.AWAITING_GATE)

    async def start(self) -> None:
        """Create the session once the readiness gate has fired.

        Raises:
            ProtocolError: If not AWAITING_GATE.
            NegotiationError: If the engine cannot be created (state stays
                AWAITING_GATE) or the initiator's offer fails (state is
                NEGOTIATING; send_offer() may be retried).
            TransportError: If the offer could not be sent.
        """
        if self._state is not NegotiationState.AWAITING_GATE:
            raise ProtocolError(f"Cannot start session in state {self._state.value}")

        logger.info(f"Creating peer connection ({self.role.value})")
        try:
            engine = self._engine_factory()
        except Exception as e:
            raise NegotiationError(f"Failed to create peer connection: {e}") from e

        engine.on_local_candidate(self._on_local_candidate)
        engine.on_remote_media_ready(self.mark_remote_media_ready)
        self._engine = engine
        self._transition(NegotiationState.NEGOTIATING)

        if self.role is Role.INITIATOR:
            await self.send_offer()

    async def send_offer(self) -> None:
        """Initiator: create an offer and send it."""
        if self.role is not Role.INITIATOR or self._state is not NegotiationState.NEGOTIATING:
            raise ProtocolError(f"Cannot create offer as {self.role.value} in state {self._state.value}")

        logger.info("Sending offer to peer.")
        sdp = await self._engine_call("create session description", self._engine.create_offer())
        await self.create_local_description_complete("offer", sdp)

    async def close(self) -> None:
        """Explicit teardown. Idempotent."""
        if self._state is NegotiationState.CLOSED:
            return
        self._transition(NegotiationState.CLOSED)
        self._held_candidates.clear()
        self._held_remote_candidates.clear()
        engine, self._engine = self._engine, None
        if engine is not None:
            try:
                await engine.close()
            except Exception as e:
                logger.warning(f"Error closing peer connection: {e}")
        logger.info("Session closed")

    # ------------------------------------------------------------------
    # Inbound signaling
    # ------------------------------------------------------------------

    async def dispatch(self, message: SignalingMessage) -> None:
        """Apply one inbound message. No-op once CLOSED."""
        if self._state is NegotiationState.CLOSED:
            logger.debug(f"Session closed, ignoring {message.type}")
            return

        if isinstance(message, Offer):
            await self.handle_offer(message.sdp)
        elif isinstance(message, Answer):
            await self.handle_answer(message.sdp)
        elif isinstance(message, Candidate):
            await self.handle_candidate(message)
        elif isinstance(message, Bye):
            await self.handle_bye()
        else:
            raise ProtocolError(f"Unsupported message: {message!r}")

    async def handle_offer(self, sdp: str) -> None:
        """Responder: apply the remote offer and answer it."""
        if self.role is not Role.RESPONDER or self._state is not NegotiationState.NEGOTIATING:
            raise ProtocolError(
                f"Offer rejected: peer connection not yet ready "
                f"({self.role.value}, {self._state.value})"
            )

        require_valid(sdp, "Remote offer")
        await self._set_remote(sdp, "offer")

        logger.info("Sending answer to peer.")
        answer = await self._engine_call("create session description", self._engine.create_answer())
        await self.create_local_description_complete("answer", answer)
        if self.has_session:
            await self._flush_held_remote_candidates()

    async def handle_answer(self, sdp: str) -> None:
        """Initiator: apply the remote answer."""
        if self.role is not Role.INITIATOR or self._state is not NegotiationState.NEGOTIATING:
            raise ProtocolError(
                f"Answer rejected in state {self._state.value} as {self.role.value}"
            )
        if not self._local_applied:
            raise ProtocolError("Answer received before local offer was applied")

        require_valid(sdp, "Remote answer")
        await self._set_remote(sdp, "answer")
        self._maybe_activate()

    async def handle_candidate(self, candidate: Candidate) -> None:
        """Apply a remote candidate, unless the remote filter drops it.

        Candidates that arrive before any description are held and applied
        once the answer has been sent.
        """
        if not self.has_session:
            raise ProtocolError("Candidate rejected: peer connection has not been created yet")
        if not (self._local_applied or self._remote_applied):
            # Delivery can reorder a candidate ahead of the offer
            logger.debug("No session description yet, holding remote candidate")
            self._held_remote_candidates.append(candidate)
            return

        await self._flush_held_remote_candidates()
        await self._add_remote_candidate(candidate)

    async def _add_remote_candidate(self, candidate: Candidate) -> None:
        if not self._relay.accepts_remote(candidate):
            return

        await self._engine_call("add remote candidate", self._engine.add_ice_candidate(candidate))
        self._relay.record_remote(candidate)
        logger.debug("Remote candidate added successfully.")

    async def _flush_held_remote_candidates(self) -> None:
        held, self._held_remote_candidates = self._held_remote_candidates, []
        for candidate in held:
            await self._add_remote_candidate(candidate)

    async def handle_bye(self) -> None:
        """Remote hangup: close from any non-terminal state."""
        if self._state is NegotiationState.CLOSED:
            return
        logger.info("Remote party hung up.")
        await self.close()
        if self.on_remote_hangup:
            self.on_remote_hangup()

    # ------------------------------------------------------------------
    # Local descriptions
    # ------------------------------------------------------------------

    async def create_local_description_complete(self, sdp_type: str, sdp: str) -> None:
        """Apply outbound rewrite rules, set as local description, send.

        Held local candidates are forwarded after the description is sent,
        so the remote party never sees a candidate before its description.
        """
        if not self.has_session:
            raise ProtocolError(f"Cannot set local {sdp_type} in state {self._state.value}")

        sdp = self._policy.transform_local(sdp)
        await self._engine_call(
            "set local description", self._engine.set_local_description(sdp, sdp_type)
        )
        self._local_applied = True
        logger.info("Set session description success.")

        if self._state is NegotiationState.CLOSED:
            return

        await self._send(Offer(sdp=sdp) if sdp_type == "offer" else Answer(sdp=sdp))
        self._description_sent = True
        await self._flush_held_candidates()
        self._maybe_activate()

    async def _set_remote(self, sdp: str, sdp_type: str) -> None:
        sdp = self._policy.transform_remote(sdp)
        await self._engine_call(
            "set remote description", self._engine.set_remote_description(sdp, sdp_type)
        )
        self._remote_applied = True
        logger.info("Set remote session description success.")

        if self._engine.remote_has_video() and not self._remote_media_ready:
            logger.info("Waiting for remote video.")
            self._awaiting_remote_video = True
        else:
            logger.info("No remote video stream; not waiting for media to arrive.")

    # ------------------------------------------------------------------
    # Engine events
    # ------------------------------------------------------------------

    async def _on_local_candidate(self, candidate: Candidate | None) -> None:
        if self._state is NegotiationState.CLOSED:
            return
        if not self._description_sent:
            self._held_candidates.append(candidate)
            return
        await self._local_candidate_handler(candidate)

    async def _flush_held_candidates(self) -> None:
        held, self._held_candidates = self._held_candidates, []
        for candidate in held:
            await self._local_candidate_handler(candidate)

    def mark_remote_media_ready(self) -> None:
        """First remote video frame decoded."""
        if self._state is NegotiationState.CLOSED or self._remote_media_ready:
            return
        self._remote_media_ready = True
        self._awaiting_remote_video = False
        logger.info("Remote video started.")
        if self.on_remote_media_ready:
            self.on_remote_media_ready()
        self._maybe_report_active()

    def _maybe_activate(self) -> None:
        if self._state is not NegotiationState.NEGOTIATING:
            return
        if self.role is Role.RESPONDER:
            ready = self._remote_applied and self._local_applied and self._description_sent
        else:
            ready = self._local_applied and self._remote_applied
        if ready:
            self._transition(NegotiationState.ACTIVE)
            self._maybe_report_active()

    def _maybe_report_active(self) -> None:
        if self._active_reported or not self.fully_active:
            return
        self._active_reported = True
        logger.info("Session active.")
        if self.on_active:
            self.on_active()
