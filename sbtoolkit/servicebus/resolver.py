"""
Entity Access Resolver

Decides whether an entity is read through a plain receiver or session by
session, and drains it either way behind one async iterator.

**Session path**:
The broker's capability probe (``BrokerClient.create_receiver``) reports a
session-enabled entity as ``ReceiverResolution.requires_session``. The
resolver then repeatedly accepts the next available session within a window
derived from the plan, drains it with a lock renewer running, releases it and
moves on. No session within the window means the entity is drained.

Author: sbtoolkit contributors
Date: 2026-10-18
"""

from contextlib import aclosing
from typing import AsyncIterator, Optional, Set

from .client import BrokerClient, MessageReceiver, ReceiverResolution
from .drain import DrainLoop, DrainOptions, DrainOutcome
from .logging_utils import StructuredLogger
from .metrics import get_metrics
from .models import EntityRef, ReceiveMode, ReceivedMessage
from .plan import ReceivePlan
from .renewer import SessionLockRenewer

logger = StructuredLogger('sbtoolkit.servicebus.resolver')


class EntityAccessResolver:
    """Uniform receive/peek access to plain and session-enabled entities."""

    def __init__(self, broker: BrokerClient, options: Optional[DrainOptions] = None):
        self.broker = broker
        self.options = options or DrainOptions()
        self.outcome: Optional[DrainOutcome] = None
        self.sessions_drained = 0
        # receiver holding the lock of the message last yielded
        self.current_receiver: Optional[MessageReceiver] = None

    async def resolve(self, entity: EntityRef, mode: ReceiveMode) -> ReceiverResolution:
        """Open a plain receiver or learn that the entity requires sessions."""
        resolution = await self.broker.create_receiver(entity, mode)
        logger.log_operation(
            operation="receiver_resolved",
            entity_path=entity.path,
            access="session" if resolution.requires_session else "plain",
            mode=ReceiveMode(mode).value,
        )
        return resolution

    async def receive(
        self,
        entity: EntityRef,
        plan: ReceivePlan,
        mode: ReceiveMode = ReceiveMode.RECEIVE,
        session_id: Optional[str] = None,
    ) -> AsyncIterator[ReceivedMessage]:
        """
        Yield messages from ``entity`` until the plan or the source is exhausted.

        With ``session_id`` only that session is drained. ``self.outcome``
        holds the terminal DrainOutcome once iteration finishes.
        """
        self.outcome = None
        mode = ReceiveMode(mode)

        if session_id:
            receiver = await self.broker.accept_session(
                entity, session_id, mode, self.options.session_accept_window
            )
            async with aclosing(self._drain_session(receiver, plan)) as messages:
                async for message in messages:
                    yield message
            return

        resolution = await self.resolve(entity, mode)
        if not resolution.requires_session:
            async with aclosing(self._drain_plain(resolution.receiver, plan)) as messages:
                async for message in messages:
                    yield message
            return

        seen: Set[str] = set()
        while True:
            if plan.is_complete:
                self.outcome = (
                    DrainOutcome.DEADLINE_REACHED if plan.deadline_reached else DrainOutcome.PLAN_COMPLETE
                )
                return

            window = plan.compute_window(self.options.session_accept_window)
            if window <= 0:
                self.outcome = DrainOutcome.DEADLINE_REACHED
                return

            receiver = await self.broker.accept_next_session(entity, mode, window)
            if receiver is None:
                logger.info(
                    f"No session available on {entity.path} within {window:.1f}s",
                    operation="no_session_within_window",
                    entity_path=entity.path,
                    window_seconds=round(window, 3),
                )
                self.outcome = DrainOutcome.SOURCE_EMPTY
                return

            accepted = receiver.session.session_id
            if not self.options.settles(mode) and accepted in seen:
                # unsettled sessions come straight back; treat a repeat as the end
                await receiver.close()
                logger.info(
                    f"Session {accepted} re-offered on {entity.path}, stopping",
                    operation="session_reoffered",
                    entity_path=entity.path,
                    session_id=accepted,
                )
                self.outcome = DrainOutcome.SOURCE_EMPTY
                return
            seen.add(accepted)

            async with aclosing(self._drain_session(receiver, plan)) as messages:
                async for message in messages:
                    yield message

            if self.outcome in (DrainOutcome.PLAN_COMPLETE, DrainOutcome.DEADLINE_REACHED):
                return

    async def _drain_plain(self, receiver: MessageReceiver, plan: ReceivePlan) -> AsyncIterator[ReceivedMessage]:
        try:
            self.current_receiver = receiver
            loop = DrainLoop(receiver, plan, self.options)
            async with aclosing(loop.run()) as messages:
                async for message in messages:
                    yield message
            self.outcome = loop.outcome
        finally:
            await receiver.close()
            self.current_receiver = None

    async def _drain_session(self, receiver: MessageReceiver, plan: ReceivePlan) -> AsyncIterator[ReceivedMessage]:
        entity_path = receiver.entity.path
        session_id = receiver.session.session_id
        get_metrics().track_session_accepted(entity_path)
        logger.log_session_operation(
            operation="session_accepted",
            entity_path=entity_path,
            session_id=session_id,
        )
        self.current_receiver = receiver
        try:
            async with SessionLockRenewer.start(
                receiver,
                renew_ahead=self.options.renew_ahead,
                min_delay=self.options.min_renew_delay,
            ):
                loop = DrainLoop(receiver, plan, self.options)
                async with aclosing(loop.run()) as messages:
                    async for message in messages:
                        yield message
                self.outcome = loop.outcome
        finally:
            await receiver.close()
            self.sessions_drained += 1
            self.current_receiver = None
            logger.log_session_operation(
                operation="session_released",
                entity_path=entity_path,
                session_id=session_id,
            )
