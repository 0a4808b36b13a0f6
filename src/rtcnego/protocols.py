"""Protocols and enums for rtc-nego."""

from enum import Enum
from typing import TYPE_CHECKING, Awaitable, Callable, Optional, Protocol

if TYPE_CHECKING:
    from rtcnego.messages import Candidate, SignalingMessage


class Role(Enum):
    """Which side of the call this party plays. Fixed for the session."""

    INITIATOR = "initiator"
    RESPONDER = "responder"


class ReadinessFlag(Enum):
    """Preconditions that must hold before negotiation starts."""

    SIGNALING_CHANNEL_OPEN = "signaling_channel_open"
    TRANSPORT_CONFIG_RESOLVED = "transport_config_resolved"
    LOCAL_MEDIA_READY = "local_media_ready"


class NegotiationState(Enum):
    """State of a negotiation session.

    IDLE -> AWAITING_GATE -> NEGOTIATING -> ACTIVE, and any non-terminal
    state -> CLOSED. CLOSED is terminal.
    """

    IDLE = "idle"
    AWAITING_GATE = "awaiting_gate"
    NEGOTIATING = "negotiating"
    ACTIVE = "active"
    CLOSED = "closed"


class CandidateOrigin(Enum):
    """Where an ICE candidate came from."""

    LOCAL = "Local"
    REMOTE = "Remote"


# Engine callback types
LocalCandidateCallback = Callable[[Optional["Candidate"]], Awaitable[None]]
RemoteMediaReadyCallback = Callable[[], None]


class TransportEngineProtocol(Protocol):
    """Opaque ICE/DTLS/media engine driven by the negotiation state machine.

    Only NegotiationStateMachine holds a reference to an engine; every
    other component reaches it through the state machine.
    """

    async def create_offer(self) -> str:
        """Create an SDP offer. Returns raw SDP."""
        ...

    async def create_answer(self) -> str:
        """Create an SDP answer for the applied remote offer."""
        ...

    async def set_local_description(self, sdp: str, sdp_type: str) -> None:
        """Apply a local description ("offer" or "answer")."""
        ...

    async def set_remote_description(self, sdp: str, sdp_type: str) -> None:
        """Apply a remote description ("offer" or "answer")."""
        ...

    async def add_ice_candidate(self, candidate: "Candidate") -> None:
        """Apply a remote ICE candidate."""
        ...

    def remote_has_video(self) -> bool:
        """True if the applied remote description carries a video track."""
        ...

    def on_local_candidate(self, callback: LocalCandidateCallback) -> None:
        """Register callback for gathered local candidates (None = done)."""
        ...

    def on_remote_media_ready(self, callback: RemoteMediaReadyCallback) -> None:
        """Register callback for the first decoded remote video frame."""
        ...

    async def close(self) -> None:
        """Release the engine."""
        ...


class OutboundChannelProtocol(Protocol):
    """Outbound half of the signaling channel."""

    async def send(self, message: "SignalingMessage") -> None:
        """Deliver a signaling message to the remote party.

        Raises:
            TransportError: If the message could not be delivered.
        """
        ...
