"""
Entity Operations

Operator-level tasks composed from the resolver, drain loop, settlement and
dispatcher: deferred fetch, clearing an entity and dead-letter replay.

Author: sbtoolkit contributors
Date: 2026-10-18
"""

from contextlib import aclosing
from dataclasses import replace
from typing import List, Optional, Sequence

from .client import BrokerClient
from .constants import (
    DEFAULT_CLEAR_BATCH_SIZE,
    DEFAULT_CLEAR_WAIT,
    DEFAULT_SESSION_ACCEPT_WINDOW,
)
from .dispatcher import dispatch_messages
from .drain import DrainOptions
from .exceptions import InvalidOperationError
from .logging_utils import StructuredLogger, track_operation_time
from .message_builder import from_received
from .models import EntityRef, ReceiveMode, ReceivedMessage, SendTarget, SettlementAction
from .plan import ReceivePlan
from .resolver import EntityAccessResolver
from .settlement import settle, settle_shielded

logger = StructuredLogger('sbtoolkit.servicebus.operations')


@track_operation_time(logger, "receive_deferred")
async def receive_deferred(
    broker: BrokerClient,
    entity: EntityRef,
    sequence_numbers: Sequence[int],
    session_id: Optional[str] = None,
    settle_action: Optional[SettlementAction] = None,
    session_timeout: float = DEFAULT_SESSION_ACCEPT_WINDOW,
) -> List[ReceivedMessage]:
    """
    Fetch deferred messages by sequence number.

    Uses a plain receiver, or the named session when ``session_id`` is given.
    Messages are returned locked; with ``settle_action`` each one is settled
    before the receiver is released.
    """
    if not sequence_numbers:
        return []

    if session_id:
        receiver = await broker.accept_session(entity, session_id, ReceiveMode.RECEIVE, session_timeout)
    else:
        resolution = await broker.create_receiver(entity, ReceiveMode.RECEIVE)
        if resolution.requires_session:
            raise InvalidOperationError(
                "receive_deferred",
                f"'{entity.path}' requires sessions; pass the session id",
            )
        receiver = resolution.receiver

    async with receiver:
        messages = await receiver.receive_deferred(list(sequence_numbers))
        if settle_action is not None:
            for message in messages:
                await settle(receiver, message, settle_action)

    logger.log_operation(
        operation="deferred_received",
        entity_path=entity.path,
        requested=len(sequence_numbers),
        count=len(messages),
        session_id=session_id,
    )
    return messages


async def clear_entity(
    broker: BrokerClient,
    entity: EntityRef,
    batch_size: int = DEFAULT_CLEAR_BATCH_SIZE,
    wait_seconds: float = DEFAULT_CLEAR_WAIT,
) -> int:
    """
    Complete every message on a queue or subscription (or its dead-letter queue).

    Session-enabled entities are cleared session by session. Returns the
    number of messages removed.
    """
    options = DrainOptions(
        batch_size=batch_size,
        default_window=wait_seconds,
        session_accept_window=wait_seconds,
        settle_action=SettlementAction.COMPLETE,
    )
    resolver = EntityAccessResolver(broker, options)
    removed = 0
    async with aclosing(resolver.receive(entity, ReceivePlan())) as messages:
        async for _ in messages:
            removed += 1

    logger.log_operation(
        operation="entity_cleared",
        entity_path=entity.path,
        count=removed,
        sessions=resolver.sessions_drained or None,
    )
    return removed


async def replay_dead_letters(
    broker: BrokerClient,
    source: EntityRef,
    target: SendTarget,
    max_messages: Optional[int] = None,
    wait_seconds: Optional[float] = None,
    options: Optional[DrainOptions] = None,
) -> int:
    """
    Move dead-lettered messages from ``source`` back onto ``target``.

    Each message is completed on the dead-letter queue only after it was sent;
    a failed send abandons that message and stops the replay.

    Returns:
        Number of messages replayed
    """
    drain_options = replace(options or DrainOptions(), settle_action=None)
    resolver = EntityAccessResolver(broker, drain_options)
    plan = ReceivePlan(max_messages=max_messages, wait_seconds=wait_seconds)
    dead_letter = source.with_dead_letter()
    replayed = 0

    async with aclosing(resolver.receive(dead_letter, plan)) as messages:
        async for message in messages:
            receiver = resolver.current_receiver
            try:
                await dispatch_messages(broker, target, [from_received(message)])
            except Exception:
                await settle_shielded(receiver, message, SettlementAction.ABANDON)
                raise
            await settle_shielded(receiver, message, SettlementAction.COMPLETE)
            replayed += 1

    logger.log_operation(
        operation="dead_letters_replayed",
        entity_path=dead_letter.path,
        target=target.path,
        count=replayed,
    )
    return replayed
