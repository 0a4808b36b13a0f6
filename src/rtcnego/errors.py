"""Base exceptions for rtc-nego."""


class RtcNegoError(Exception):
    """Base exception for all rtc-nego errors."""

    pass


class ConfigError(RtcNegoError):
    """Invalid configuration value."""

    pass


class TransportError(RtcNegoError):
    """Signaling channel closed, errored, or could not deliver a message."""

    pass


class ProtocolError(RtcNegoError):
    """Malformed or out-of-state signaling message. Logged and dropped."""

    pass


class NegotiationError(RtcNegoError):
    """Transport engine rejected a description or candidate.

    Non-fatal: the session stays in its current state and the caller
    decides whether to retry or hang up.
    """

    pass
