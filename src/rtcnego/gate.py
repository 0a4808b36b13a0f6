"""Readiness gate for negotiation start.

Replaces scattered "channel ready / turn done / started" booleans with a
single set of named flags and one latch. The gate fires its callback
exactly once, synchronously inside the set_flag() call that completes the
required set.

Usage:
    gate = ReadinessGate.for_policy(require_local_media=False)
    gate.on_satisfied(start_session)
    gate.set_flag(ReadinessFlag.SIGNALING_CHANNEL_OPEN)
    gate.set_flag("transport_config_resolved")  # fires start_session()
"""

import logging
from typing import Callable, Iterable

from rtcnego.protocols import ReadinessFlag

logger = logging.getLogger(__name__)

BASE_FLAGS = frozenset(
    {ReadinessFlag.SIGNALING_CHANNEL_OPEN, ReadinessFlag.TRANSPORT_CONFIG_RESOLVED}
)


class ReadinessGate:
    """Tracks independent preconditions that must all hold before starting."""

    def __init__(self, required: Iterable[ReadinessFlag] = BASE_FLAGS):
        self._required = frozenset(required)
        self._flags: set[ReadinessFlag] = set()
        self._fired = False
        self._callback: Callable[[], None] | None = None

    @classmethod
    def for_policy(cls, require_local_media: bool) -> "ReadinessGate":
        """Build a gate for the given media policy."""
        required = set(BASE_FLAGS)
        if require_local_media:
            required.add(ReadinessFlag.LOCAL_MEDIA_READY)
        return cls(required)

    @property
    def required(self) -> frozenset[ReadinessFlag]:
        return self._required

    @property
    def fired(self) -> bool:
        """True once on_satisfied has been invoked (until reset)."""
        return self._fired

    def on_satisfied(self, callback: Callable[[], None]) -> None:
        """Register the callback fired when the gate first opens."""
        self._callback = callback

    def missing(self) -> set[ReadinessFlag]:
        """Required flags not yet set."""
        return set(self._required - self._flags)

    def is_satisfied(self) -> bool:
        return self._required <= self._flags

    def set_flag(self, flag: ReadinessFlag | str) -> None:
        """Mark a precondition as met. Setting a flag twice is a no-op.

        Raises:
            ValueError: If flag is not a known ReadinessFlag name.
        """
        flag = ReadinessFlag(flag)
        if flag in self._flags:
            return

        self._flags.add(flag)
        logger.debug(f"Readiness flag set: {flag.value} (missing: {sorted(f.value for f in self.missing())})")

        if not self._fired and self.is_satisfied():
            self._fired = True
            logger.info("All readiness conditions met")
            if self._callback:
                self._callback()

    def reset(self) -> None:
        """Clear every flag and the latch. Only for full teardown or retry."""
        self._flags.clear()
        self._fired = False
