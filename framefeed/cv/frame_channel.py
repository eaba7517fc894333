"""
Single-slot hand-off between a producer and one consumer.

The slot never queues: a delivery while an item is pending replaces it and
gives the older item back to the producer to release. The consumer always
gets the freshest item and the system accepts silent loss under load.
"""

import threading
from enum import Enum
from typing import Dict, Generic, Optional, TypeVar

T = TypeVar("T")


class ChannelState(Enum):
    IDLE = "idle"
    PENDING = "pending"


class FrameChannel(Generic[T]):
    """
    Drop-oldest channel holding at most one pending item.

    All slot access happens under one condition lock, so a take either
    fully precedes or fully follows any concurrent delivery.
    """

    def __init__(self):
        self._cond = threading.Condition(threading.Lock())
        self._slot: Optional[T] = None
        self._closed = False

        # Statistics
        self.delivered = 0
        self.dropped = 0
        self.taken = 0

    @property
    def state(self) -> ChannelState:
        with self._cond:
            return ChannelState.IDLE if self._slot is None else ChannelState.PENDING

    @property
    def closed(self) -> bool:
        with self._cond:
            return self._closed

    def deliver(self, item: T) -> Optional[T]:
        """
        Put an item in the slot, replacing any pending one.

        Returns:
            The item the caller now owns and must release: the displaced
            older item, `item` itself if the channel is closed, or None.
        """
        with self._cond:
            if self._closed:
                return item
            displaced = self._slot
            self._slot = item
            self.delivered += 1
            if displaced is not None:
                self.dropped += 1
            self._cond.notify()
        return displaced

    def take(self, timeout: Optional[float] = None) -> Optional[T]:
        """
        Wait for the pending item and clear the slot.

        Returns:
            The item, or None on timeout or when the channel is closed
        """
        with self._cond:
            self._cond.wait_for(lambda: self._slot is not None or self._closed, timeout)
            return self._take_locked()

    def poll(self) -> Optional[T]:
        """Non-blocking take."""
        with self._cond:
            return self._take_locked()

    def close(self) -> Optional[T]:
        """
        Refuse further deliveries and wake any waiting consumer.

        Returns:
            The item still pending, for the caller to release
        """
        with self._cond:
            self._closed = True
            item = self._slot
            self._slot = None
            self._cond.notify_all()
        return item

    def stats(self) -> Dict[str, int]:
        with self._cond:
            return {
                "delivered": self.delivered,
                "dropped": self.dropped,
                "taken": self.taken,
                "pending": int(self._slot is not None),
            }

    def _take_locked(self) -> Optional[T]:
        item = self._slot
        if item is not None:
            self._slot = None
            self.taken += 1
        return item
