"""ICE candidate relay and statistics."""

import logging
from collections import Counter
from typing import Callable

from rtcnego.messages import Candidate
from rtcnego.protocols import CandidateOrigin, OutboundChannelProtocol
from rtcnego.sdp import candidate_type

logger = logging.getLogger(__name__)

CandidateFilter = Callable[[Candidate], bool]


class CandidateStats:
    """Per-origin counts of candidate types. Observational only."""

    def __init__(self) -> None:
        self._counts: dict[CandidateOrigin, Counter[str]] = {
            origin: Counter() for origin in CandidateOrigin
        }

    def note(self, origin: CandidateOrigin, type_label: str) -> None:
        self._counts[origin][type_label] += 1

    def get(self, origin: CandidateOrigin) -> dict[str, int]:
        return dict(self._counts[origin])

    def total(self, origin: CandidateOrigin) -> int:
        return sum(self._counts[origin].values())

    def summary(self) -> str:
        parts = []
        for origin in CandidateOrigin:
            counts = ", ".join(f"{t}={n}" for t, n in sorted(self._counts[origin].items()))
            parts.append(f"{origin.value}: {counts or 'none'}")
        return " | ".join(parts)


def relay_only(candidate: Candidate) -> bool:
    """Filter accepting only candidates routed through a relay server."""
    return candidate_type(candidate.candidate) == "relay"


class CandidateRelay:
    """Forwards local candidates outward and vets remote ones.

    Args:
        channel: Outbound signaling channel.
        local_filter: Predicate for local candidates; rejected ones are
            never sent. None forwards everything.
        remote_filter: Predicate for remote candidates; rejected ones are
            dropped before reaching the engine. None accepts everything.
    """

    def __init__(
        self,
        channel: OutboundChannelProtocol,
        local_filter: CandidateFilter | None = None,
        remote_filter: CandidateFilter | None = None,
    ):
        self._channel = channel
        self._local_filter = local_filter
        self._remote_filter = remote_filter
        self._end_of_candidates = False
        self.stats = CandidateStats()

    @classmethod
    def for_ice_transports(
        cls,
        channel: OutboundChannelProtocol,
        ice_transports: str,
        remote_filter: CandidateFilter | None = None,
    ) -> "CandidateRelay":
        """Relay configured from the "ice_transports" policy ("all" or "relay")."""
        local_filter = relay_only if ice_transports == "relay" else None
        return cls(channel, local_filter=local_filter, remote_filter=remote_filter)

    @property
    def end_of_candidates(self) -> bool:
        """True once the engine reported local gathering complete."""
        return self._end_of_candidates

    async def forward_local(self, candidate: Candidate | None) -> bool:
        """Send a locally gathered candidate to the remote party.

        Args:
            candidate: Gathered candidate, or None for end-of-candidates.

        Returns:
            True if the candidate was sent.

        Raises:
            TransportError: If the channel could not deliver the candidate.
        """
        if candidate is None:
            logger.info("End of candidates.")
            self._end_of_candidates = True
            return False

        if self._local_filter and not self._local_filter(candidate):
            logger.debug(f"Filtered local candidate: {candidate.candidate}")
            return False

        await self._channel.send(candidate)
        self.stats.note(CandidateOrigin.LOCAL, candidate_type(candidate.candidate))
        return True

    def accepts_remote(self, candidate: Candidate) -> bool:
        """Whether a remote candidate passes the remote filter."""
        if self._remote_filter and not self._remote_filter(candidate):
            logger.debug(f"Dropped remote candidate: {candidate.candidate}")
            return False
        return True

    def record_remote(self, candidate: Candidate) -> None:
        """Count a remote candidate that was applied to the engine."""
        self.stats.note(CandidateOrigin.REMOTE, candidate_type(candidate.candidate))
