"""SDP inspection utilities.

Validates SDP content and classifies ICE candidates.
"""

from dataclasses import dataclass

from rtcnego.errors import NegotiationError

CANDIDATE_PREFIX = "candidate:"


@dataclass
class SdpValidationResult:
    """Result of SDP validation."""

    is_valid: bool
    candidate_count: int
    has_host: bool
    has_srflx: bool
    has_relay: bool
    has_video: bool
    errors: list[str]


def split_lines(sdp: str) -> list[str]:
    """Split SDP into lines, tolerating both CRLF and LF endings."""
    return [line.rstrip("\r") for line in sdp.split("\n") if line.rstrip("\r")]


def extract_candidates(sdp: str) -> list[str]:
    """Extract all ICE candidate attribute lines from SDP.

    Args:
        sdp: The SDP string

    Returns:
        List of candidate lines (with the "a=" prefix).
    """
    return [line for line in split_lines(sdp) if line.startswith("a=candidate:")]


def iter_candidates(sdp: str) -> list[tuple[int, str | None, str]]:
    """List candidates per media section.

    Returns:
        (m-line index, mid, "candidate:..." attribute) for each candidate.
    """
    result = []
    index = -1
    mid: str | None = None
    pending: list[str] = []

    def flush() -> None:
        result.extend((index, mid, c) for c in pending)

    for line in split_lines(sdp):
        if line.startswith("m="):
            flush()
            index += 1
            mid = None
            pending = []
        elif index >= 0 and line.startswith("a=mid:"):
            mid = line[len("a=mid:"):]
        elif index >= 0 and line.startswith("a=candidate:"):
            pending.append(line[2:])
    flush()
    return result


def candidate_type(candidate: str) -> str:
    """Return the candidate type label ("host", "srflx", "prflx", "relay").

    Accepts a bare candidate attribute ("candidate:...") or an SDP line
    ("a=candidate:..."). Returns "unknown" when no "typ" token is present.
    """
    bits = candidate.split()
    for i, bit in enumerate(bits[:-1]):
        if bit == "typ":
            return bits[i + 1]
    return "unknown"


def validate_sdp(sdp: str, description: str = "SDP") -> SdpValidationResult:
    """Validate SDP has a version line and report what it carries.

    Trickled descriptions legitimately carry no candidates, so a missing
    candidate is not an error here.

    Args:
        sdp: The SDP string to validate
        description: Human-readable description for error messages

    Returns:
        SdpValidationResult with validation details
    """
    errors = []
    lines = split_lines(sdp) if isinstance(sdp, str) else []

    if not lines or not lines[0].startswith("v="):
        errors.append(f"{description} does not start with a version line")

    candidates = extract_candidates(sdp) if lines else []
    types = {candidate_type(c) for c in candidates}

    return SdpValidationResult(
        is_valid=not errors,
        candidate_count=len(candidates),
        has_host="host" in types,
        has_srflx="srflx" in types,
        has_relay="relay" in types,
        has_video=any(line.startswith("m=video") for line in lines),
        errors=errors,
    )


def require_valid(sdp: str, description: str = "SDP") -> SdpValidationResult:
    """Validate SDP, raise if it is unusable.

    Raises:
        NegotiationError: If the SDP fails validation.
    """
    result = validate_sdp(sdp, description)
    if not result.is_valid:
        raise NegotiationError(
            f"{description} validation failed: {', '.join(result.errors)}"
        )
    return result
