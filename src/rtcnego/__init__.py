"""rtc-nego: two-party WebRTC negotiation coordinator."""

__version__ = "0.1.0"
