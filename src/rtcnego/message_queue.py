"""Pre-session buffer for inbound signaling messages.

Messages can reach us before the local session exists: the TURN lookup is
asynchronous and the room server may reorder delivery. Until the session
starts, messages are buffered here. An Offer jumps to the head of the
queue, since candidates cannot be applied before the description they
belong to. Other messages keep arrival order.
"""

import logging
from collections import deque
from typing import Awaitable, Callable

from rtcnego.errors import ProtocolError
from rtcnego.messages import Offer, SignalingMessage

logger = logging.getLogger(__name__)


class MessageQueue:
    """FIFO buffer with Offer-to-head rule, drained exactly once."""

    def __init__(self) -> None:
        self._messages: deque[SignalingMessage] = deque()
        self._bypassed = False

    def __len__(self) -> int:
        return len(self._messages)

    @property
    def is_bypassed(self) -> bool:
        """True once draining has started; new messages skip the queue."""
        return self._bypassed

    def pending(self) -> list[SignalingMessage]:
        """Snapshot of buffered messages, head first."""
        return list(self._messages)

    def enqueue(self, message: SignalingMessage) -> None:
        """Buffer a message.

        Raises:
            ProtocolError: If the queue has already been drained.
        """
        if self._bypassed:
            raise ProtocolError("Message queue already drained")

        if isinstance(message, Offer):
            self._messages.appendleft(message)
        else:
            self._messages.append(message)
        logger.debug(f"Queued {message.type} ({len(self._messages)} pending)")

    async def drain_into(self, apply: Callable[[SignalingMessage], Awaitable[None]]) -> int:
        """Apply buffered messages head-first, one at a time.

        Marks the queue bypassed before the first message is applied.
        Draining an empty (or already drained) queue is a no-op.

        Args:
            apply: Async callable applying one message to the session.

        Returns:
            Number of messages applied.
        """
        self._bypassed = True
        count = 0
        while self._messages:
            message = self._messages.popleft()
            await apply(message)
            count += 1
        if count:
            logger.info(f"Drained {count} queued signaling message(s)")
        return count
