"""
Receive Plan

Bounds a receive or peek loop by an optional message budget and an optional
absolute deadline.
"""

import time
from typing import Callable, Optional


class ReceivePlan:
    """
    Mutable budget shared by every receiver drained within one invocation.

    ``remaining`` is decremented once per message delivered to the caller, so
    it can go negative when a fetched batch is drained past the budget.
    """

    def __init__(
        self,
        max_messages: Optional[int] = None,
        wait_seconds: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_messages is not None and max_messages < 0:
            raise ValueError("max_messages must be >= 0")
        if wait_seconds is not None and wait_seconds < 0:
            raise ValueError("wait_seconds must be >= 0")

        self._clock = clock
        self.remaining: Optional[int] = max_messages
        self.deadline: Optional[float] = (
            clock() + wait_seconds if wait_seconds is not None else None
        )
        self.delivered = 0

    @property
    def has_deadline(self) -> bool:
        return self.deadline is not None

    @property
    def is_bounded(self) -> bool:
        return self.remaining is not None or self.deadline is not None

    @property
    def deadline_reached(self) -> bool:
        return self.deadline is not None and self._clock() >= self.deadline

    @property
    def is_complete(self) -> bool:
        return (self.remaining is not None and self.remaining <= 0) or self.deadline_reached

    def compute_window(self, default_window: float) -> float:
        """
        Seconds the next fetch or accept may wait.

        Zero means "stop now", not "wait zero time".
        """
        if self.deadline is None:
            return default_window
        left = self.deadline - self._clock()
        if left <= 0:
            return 0.0
        return min(left, default_window)

    def on_message_delivered(self) -> None:
        self.delivered += 1
        if self.remaining is not None:
            self.remaining -= 1

    def __repr__(self) -> str:
        return (
            f"ReceivePlan(remaining={self.remaining}, deadline={self.deadline}, "
            f"delivered={self.delivered})"
        )
