"""
Message Settlement

Applies complete / abandon / defer / dead-letter to received messages, either
one at a time through a known receiver or in bulk against an entity, where
session messages are routed through their own session receiver.

Author: sbtoolkit contributors
Date: 2026-10-18
"""

import asyncio
from collections import OrderedDict
from typing import Dict, Iterable, List, Optional

from .client import BrokerClient, MessageReceiver
from .constants import DEFAULT_SESSION_ACCEPT_WINDOW
from .exceptions import DeadLetterReason, InvalidOperationError
from .logging_utils import StructuredLogger
from .metrics import get_metrics
from .models import EntityRef, ReceiveMode, ReceivedMessage, SettlementAction

logger = StructuredLogger('sbtoolkit.servicebus.settlement')


async def settle(
    receiver: MessageReceiver,
    message: ReceivedMessage,
    action: SettlementAction,
    reason: Optional[str] = None,
    description: Optional[str] = None,
) -> None:
    """
    Settle one message through the receiver that holds its lock.

    Raises:
        InvalidOperationError: The receiver only peeks
        MessageLockLostError: The message lock expired
    """
    action = SettlementAction(action)
    if receiver.mode == ReceiveMode.PEEK:
        raise InvalidOperationError(action.value, "peeked messages cannot be settled")

    if action == SettlementAction.COMPLETE:
        await receiver.complete(message)
    elif action == SettlementAction.ABANDON:
        await receiver.abandon(message)
    elif action == SettlementAction.DEFER:
        await receiver.defer(message)
    else:
        await receiver.dead_letter(
            message,
            reason=reason or DeadLetterReason.MANUAL,
            description=description,
        )

    get_metrics().track_settled(receiver.entity.entity_type, receiver.entity.path, action.value)
    logger.log_message_operation(
        operation=f"message_{action.value}",
        entity_path=receiver.entity.path,
        message_id=message.message_id,
        sequence_number=message.sequence_number,
        session_id=message.session_id,
    )


async def settle_shielded(
    receiver: MessageReceiver,
    message: ReceivedMessage,
    action: SettlementAction,
    reason: Optional[str] = None,
    description: Optional[str] = None,
) -> None:
    """
    Settle a message so that a cancellation arriving mid-call waits for it.

    The in-flight settlement always runs to completion; the cancellation is
    re-raised afterwards.
    """
    task = asyncio.ensure_future(settle(receiver, message, action, reason, description))
    try:
        await asyncio.shield(task)
    except asyncio.CancelledError:
        await task
        raise


def group_by_session(messages: Iterable[ReceivedMessage]) -> "OrderedDict[Optional[str], List[ReceivedMessage]]":
    """Group messages by session id, keeping first-seen order; None collects sessionless messages."""
    groups: "OrderedDict[Optional[str], List[ReceivedMessage]]" = OrderedDict()
    for message in messages:
        groups.setdefault(message.session_id or None, []).append(message)
    return groups


async def settle_messages(
    broker: BrokerClient,
    entity: EntityRef,
    messages: Iterable[ReceivedMessage],
    action: SettlementAction,
    reason: Optional[str] = None,
    description: Optional[str] = None,
    session_timeout: float = DEFAULT_SESSION_ACCEPT_WINDOW,
) -> int:
    """
    Settle previously received messages against an entity.

    Whether the entity is session-enabled is decided by the broker's
    capability probe. On session entities each session's messages are settled
    through a receiver on that session; otherwise every message goes through
    one plain receiver.

    Returns:
        Number of messages settled
    """
    messages = list(messages)
    if not messages:
        return 0

    action = SettlementAction(action)
    resolution = await broker.create_receiver(entity, ReceiveMode.RECEIVE)
    settled = 0

    if not resolution.requires_session:
        async with resolution.receiver as receiver:
            for message in messages:
                await settle(receiver, message, action, reason, description)
                settled += 1
        return settled

    groups: Dict[Optional[str], List[ReceivedMessage]] = group_by_session(messages)
    if None in groups:
        raise InvalidOperationError(
            action.value,
            f"'{entity.path}' requires sessions but {len(groups[None])} message(s) have no session id",
        )

    for session_id, batch in groups.items():
        receiver = await broker.accept_session(entity, session_id, ReceiveMode.RECEIVE, session_timeout)
        async with receiver:
            for message in batch:
                await settle(receiver, message, action, reason, description)
                settled += 1

    logger.log_operation(
        operation=f"messages_{action.value}",
        entity_path=entity.path,
        count=settled,
        sessions=len(groups),
    )
    return settled
