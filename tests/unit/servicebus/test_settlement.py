"""
Unit Tests for Message Settlement

Author: sbtoolkit contributors
Date: 2026-10-18
"""

import asyncio

import pytest

from sbtoolkit.servicebus.exceptions import InvalidOperationError, MessageLockLostError
from sbtoolkit.servicebus.message_builder import build_messages
from sbtoolkit.servicebus.metrics import get_metrics
from sbtoolkit.servicebus.models import EntityRef, ReceiveMode, SendTarget, SettlementAction
from sbtoolkit.servicebus.settlement import group_by_session, settle, settle_messages, settle_shielded

ORDERS = EntityRef.for_queue("orders")
SESSIONS = EntityRef.for_queue("sessions")


@pytest.fixture
async def received(broker):
    """Two locked messages on the plain queue and the receiver holding them."""
    await broker.send_messages(SendTarget(queue="orders"), build_messages(["a", "b"]))
    receiver = (await broker.create_receiver(ORDERS, ReceiveMode.RECEIVE)).receiver
    messages = await receiver.receive(10, 0.1)
    yield receiver, messages
    await receiver.close()


class TestSettle:
    """Tests for single-message settlement."""

    async def test_complete(self, broker, received):
        receiver, messages = received
        await settle(receiver, messages[0], SettlementAction.COMPLETE)

        counts = broker.message_counts(ORDERS)
        assert counts["locked"] == 1
        assert get_metrics().get_sample(
            "sbtoolkit_messages_settled_total",
            {"entity_type": "queue", "entity_path": "orders", "action": "complete"},
        ) == 1

    async def test_abandon_returns_message(self, broker, received):
        receiver, messages = received
        await settle(receiver, messages[0], "abandon")
        assert broker.message_counts(ORDERS)["active"] == 1

    async def test_defer(self, broker, received):
        receiver, messages = received
        await settle(receiver, messages[0], SettlementAction.DEFER)
        assert broker.message_counts(ORDERS)["deferred"] == 1

    async def test_dead_letter_default_reason(self, broker, received):
        receiver, messages = received
        await settle(receiver, messages[0], SettlementAction.DEAD_LETTER)

        dlq = (await broker.create_receiver(ORDERS.with_dead_letter(), ReceiveMode.PEEK)).receiver
        [dead] = await dlq.peek(10)
        assert dead.dead_letter_reason == "ManualDeadLetter"

    async def test_settle_twice(self, received):
        receiver, messages = received
        await settle(receiver, messages[0], SettlementAction.COMPLETE)
        with pytest.raises(MessageLockLostError):
            await settle(receiver, messages[0], SettlementAction.COMPLETE)

    async def test_peek_receiver_rejected(self, broker, received):
        _, messages = received
        peeker = (await broker.create_receiver(ORDERS, ReceiveMode.PEEK)).receiver
        with pytest.raises(InvalidOperationError):
            await settle(peeker, messages[0], SettlementAction.COMPLETE)

    async def test_shielded_settle_survives_cancellation(self, broker, received):
        """Cancelling the caller does not interrupt an in-flight settlement."""
        receiver, messages = received
        task = asyncio.create_task(settle_shielded(receiver, messages[0], SettlementAction.COMPLETE))
        await asyncio.sleep(0)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert broker.message_counts(ORDERS)["locked"] == 1


class TestSettleMessages:
    """Tests for bulk settlement against an entity."""

    async def test_plain_entity(self, broker, received):
        _, messages = received
        settled = await settle_messages(broker, ORDERS, messages, SettlementAction.COMPLETE)
        assert settled == 2
        assert broker.message_counts(ORDERS) == {"active": 0, "locked": 0, "deferred": 0, "dead_letter": 0}

    async def test_nothing_to_settle(self, broker):
        assert await settle_messages(broker, ORDERS, [], SettlementAction.COMPLETE) == 0

    async def test_session_entity_needs_session_ids(self, broker, received):
        _, messages = received
        with pytest.raises(InvalidOperationError):
            await settle_messages(broker, SESSIONS, messages, SettlementAction.COMPLETE)

    async def test_group_by_session(self, received):
        _, messages = received
        groups = group_by_session(messages)
        assert list(groups) == [None]
        assert len(groups[None]) == 2
