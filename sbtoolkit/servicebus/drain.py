"""
Drain Loop

Per-receiver polling loop: fetch (peek or receive), emit each message to the
caller, settle it unless told not to, and advance the receive plan.

**Termination**:
- SESSION_EXHAUSTED: a session receiver returned an empty batch
- PLAN_COMPLETE: the message budget is spent
- DEADLINE_REACHED: the plan's deadline passed
- SOURCE_EMPTY: a plain receiver with an unbounded plan returned an empty batch
- CANCELLED: the surrounding task was cancelled

A fetched batch is always surfaced (and settled) in full, even when the plan
completes part way through it; the plan only gates the next fetch.

Author: sbtoolkit contributors
Date: 2026-10-18
"""

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import AsyncIterator, List, Optional

from .client import MessageReceiver
from .constants import (
    DEFAULT_BATCH_SIZE,
    DEFAULT_IDLE_DELAY,
    DEFAULT_RECEIVE_WINDOW,
    DEFAULT_RENEW_AHEAD,
    DEFAULT_SESSION_ACCEPT_WINDOW,
    MAX_BATCH_SIZE,
    MIN_RENEW_DELAY,
)
from .exceptions import ConfigurationError
from .logging_utils import StructuredLogger
from .metrics import get_metrics
from .models import ReceiveMode, ReceivedMessage, SettlementAction
from .plan import ReceivePlan
from .settlement import settle_shielded


class DrainOutcome(str, Enum):
    """Why a drain loop stopped."""
    SESSION_EXHAUSTED = "session_exhausted"
    PLAN_COMPLETE = "plan_complete"
    DEADLINE_REACHED = "deadline_reached"
    SOURCE_EMPTY = "source_empty"
    CANCELLED = "cancelled"


@dataclass
class DrainOptions:
    """
    Tunables for one drain.

    ``settle_action`` None means "do not settle" (messages stay locked until
    the lock expires). It is ignored in peek mode.
    """
    batch_size: int = DEFAULT_BATCH_SIZE
    default_window: float = DEFAULT_RECEIVE_WINDOW
    idle_delay: float = DEFAULT_IDLE_DELAY
    session_accept_window: float = DEFAULT_SESSION_ACCEPT_WINDOW
    renew_ahead: float = DEFAULT_RENEW_AHEAD
    min_renew_delay: float = MIN_RENEW_DELAY
    settle_action: Optional[SettlementAction] = SettlementAction.COMPLETE
    dead_letter_reason: Optional[str] = None
    dead_letter_description: Optional[str] = None

    def __post_init__(self):
        if not 1 <= self.batch_size <= MAX_BATCH_SIZE:
            raise ConfigurationError(
                f"batch_size must be between 1 and {MAX_BATCH_SIZE}",
                details={"batch_size": self.batch_size},
            )
        if self.default_window <= 0 or self.session_accept_window <= 0:
            raise ConfigurationError("receive windows must be positive")
        if self.idle_delay < 0:
            raise ConfigurationError("idle_delay must be >= 0")
        if self.settle_action is not None:
            self.settle_action = SettlementAction(self.settle_action)

    def settles(self, mode: ReceiveMode) -> bool:
        return mode == ReceiveMode.RECEIVE and self.settle_action is not None


class DrainLoop:
    """
    Drains one receiver under a shared ReceivePlan.

    Usage::

        loop = DrainLoop(receiver, plan, options)
        async for message in loop.run():
            ...
        loop.outcome  # DrainOutcome
    """

    def __init__(
        self,
        receiver: MessageReceiver,
        plan: ReceivePlan,
        options: Optional[DrainOptions] = None,
    ):
        self.receiver = receiver
        self.plan = plan
        self.options = options or DrainOptions()
        self.outcome: Optional[DrainOutcome] = None
        self.emitted = 0
        self._logger = StructuredLogger('sbtoolkit.servicebus.drain')
        self._metrics = get_metrics()

    @property
    def settles(self) -> bool:
        return self.options.settles(self.receiver.mode)

    async def _fetch(self, window: float) -> List[ReceivedMessage]:
        if self.receiver.mode == ReceiveMode.PEEK:
            return await self.receiver.peek(self.options.batch_size)
        return await self.receiver.receive(self.options.batch_size, window)

    async def run(self) -> AsyncIterator[ReceivedMessage]:
        entity = self.receiver.entity
        session = self.receiver.session
        session_id = session.session_id if session is not None else None
        mode = self.receiver.mode.value

        try:
            while True:
                if self.plan.deadline_reached:
                    self.outcome = DrainOutcome.DEADLINE_REACHED
                    return
                if self.plan.is_complete:
                    self.outcome = DrainOutcome.PLAN_COMPLETE
                    return

                window = self.plan.compute_window(self.options.default_window)
                if window <= 0:
                    self.outcome = DrainOutcome.DEADLINE_REACHED
                    return

                batch = await self._fetch(window)
                self._metrics.track_batch_fetched(entity.path, len(batch))

                if not batch:
                    if session is not None:
                        self.outcome = DrainOutcome.SESSION_EXHAUSTED
                        return
                    if not self.plan.is_bounded:
                        self.outcome = DrainOutcome.SOURCE_EMPTY
                        return
                    self._logger.debug(
                        f"No messages on {entity.path}, idling",
                        operation="drain_idle",
                        entity_path=entity.path,
                        idle_seconds=self.options.idle_delay,
                    )
                    await asyncio.sleep(
                        min(self.options.idle_delay, self.plan.compute_window(self.options.idle_delay))
                    )
                    continue

                self._logger.debug(
                    f"Fetched {len(batch)} message(s) from {entity.path}",
                    operation="batch_fetched",
                    entity_path=entity.path,
                    session_id=session_id,
                    count=len(batch),
                    locked_until=(
                        session.locked_until.isoformat()
                        if session is not None and session.locked_until else None
                    ),
                )

                for message in batch:
                    yield message
                    if self.settles:
                        await settle_shielded(
                            self.receiver,
                            message,
                            self.options.settle_action,
                            self.options.dead_letter_reason,
                            self.options.dead_letter_description,
                        )
                    self.emitted += 1
                    self.plan.on_message_delivered()
                    self._metrics.track_received(entity.entity_type, entity.path, mode)
        except asyncio.CancelledError:
            self.outcome = DrainOutcome.CANCELLED
            raise
