"""
Session Context

Holds one accepted session receiver open across several operations, so that
receive, settle, deferred fetch and state get/set all act under the same
session lock without re-accepting it between calls.

Author: sbtoolkit contributors
Date: 2026-10-18
"""

from contextlib import aclosing
from typing import Any, AsyncIterator, Iterable, List, Optional, Sequence

from .client import BrokerClient, MessageReceiver
from .drain import DrainLoop, DrainOptions
from .exceptions import InvalidOperationError
from .logging_utils import StructuredLogger
from .models import EntityRef, ReceiveMode, ReceivedMessage, SettlementAction
from .plan import ReceivePlan
from .renewer import SessionLockRenewer
from .session_state import StateValue, get_session_state, set_session_state
from .settlement import settle

logger = StructuredLogger('sbtoolkit.servicebus.session_context')


class SessionContext:
    """
    A named session kept locked until ``close()``.

    Example::

        async with SessionContext(broker, entity, "order-42") as ctx:
            state = await ctx.get_state()
            async for message in ctx.receive(ReceivePlan(max_messages=10)):
                ...
            await ctx.set_state(new_state)
    """

    def __init__(
        self,
        broker: BrokerClient,
        entity: EntityRef,
        session_id: str,
        mode: ReceiveMode = ReceiveMode.RECEIVE,
        options: Optional[DrainOptions] = None,
    ):
        self.broker = broker
        self.entity = entity
        self.session_id = session_id
        self.mode = ReceiveMode(mode)
        self.options = options or DrainOptions()
        self._receiver: Optional[MessageReceiver] = None

    @property
    def receiver(self) -> MessageReceiver:
        if self._receiver is None:
            raise InvalidOperationError("session_context", "the session context is not open")
        return self._receiver

    @property
    def is_open(self) -> bool:
        return self._receiver is not None

    async def open(self) -> 'SessionContext':
        if self._receiver is None:
            self._receiver = await self.broker.accept_session(
                self.entity, self.session_id, self.mode, self.options.session_accept_window
            )
            logger.log_session_operation(
                operation="session_context_opened",
                entity_path=self.entity.path,
                session_id=self.session_id,
            )
        return self

    async def receive(self, plan: ReceivePlan) -> AsyncIterator[ReceivedMessage]:
        """Drain the held session under ``plan``; the receiver stays open afterwards."""
        receiver = self.receiver
        async with SessionLockRenewer.start(
            receiver,
            renew_ahead=self.options.renew_ahead,
            min_delay=self.options.min_renew_delay,
        ):
            async with aclosing(DrainLoop(receiver, plan, self.options).run()) as messages:
                async for message in messages:
                    yield message

    async def settle(
        self,
        messages: Iterable[ReceivedMessage],
        action: SettlementAction,
        reason: Optional[str] = None,
        description: Optional[str] = None,
    ) -> int:
        count = 0
        for message in messages:
            await settle(self.receiver, message, action, reason, description)
            count += 1
        return count

    async def receive_deferred(self, sequence_numbers: Sequence[int]) -> List[ReceivedMessage]:
        if not sequence_numbers:
            return []
        return await self.receiver.receive_deferred(list(sequence_numbers))

    async def get_state(self, as_string: bool = False) -> StateValue:
        return await get_session_state(self.receiver, as_string=as_string)

    async def set_state(self, value: Any) -> bytes:
        return await set_session_state(self.receiver, value)

    async def close(self) -> None:
        if self._receiver is not None:
            receiver, self._receiver = self._receiver, None
            await receiver.close()
            logger.log_session_operation(
                operation="session_context_closed",
                entity_path=self.entity.path,
                session_id=self.session_id,
            )

    async def __aenter__(self) -> 'SessionContext':
        return await self.open()

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()
