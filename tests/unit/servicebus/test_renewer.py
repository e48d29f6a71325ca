"""
Unit Tests for SessionLockRenewer

Author: sbtoolkit contributors
Date: 2026-10-18
"""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from sbtoolkit.servicebus.exceptions import SessionLockLostError
from sbtoolkit.servicebus.memory_broker import InMemoryBroker
from sbtoolkit.servicebus.message_builder import build_messages
from sbtoolkit.servicebus.metrics import get_metrics
from sbtoolkit.servicebus.models import EntityRef, ReceiveMode, SendTarget
from sbtoolkit.servicebus.renewer import NoopRenewer, SessionLockRenewer

ENTITY = EntityRef.for_queue("short-lock")


@pytest.fixture
async def short_lock_broker():
    """Session queue whose locks last a fraction of a second."""
    broker = InMemoryBroker()
    await broker.create_queue("short-lock", requires_session=True, lock_duration=0.3)
    await broker.send_messages(SendTarget(queue="short-lock"), build_messages(["m"], session_id="A"))
    return broker


@pytest.fixture
async def receiver(short_lock_broker):
    receiver = await short_lock_broker.accept_session(ENTITY, "A", ReceiveMode.RECEIVE, 1.0)
    yield receiver
    await receiver.close()


class TestComputeDelay:
    """Tests for renewal scheduling."""

    async def test_delay_before_expiry(self, receiver):
        """Renewal is scheduled renew_ahead seconds before the lock expires."""
        renewer = SessionLockRenewer(receiver, renew_ahead=10, min_delay=1)
        now = receiver.session.locked_until - timedelta(seconds=60)
        assert renewer.compute_delay(now) == pytest.approx(50.0)

    async def test_delay_never_below_minimum(self, receiver):
        renewer = SessionLockRenewer(receiver, renew_ahead=10, min_delay=1)
        now = receiver.session.locked_until - timedelta(seconds=5)
        assert renewer.compute_delay(now) == 1

    async def test_delay_after_expiry(self, receiver):
        renewer = SessionLockRenewer(receiver, renew_ahead=0, min_delay=0.5)
        now = receiver.session.locked_until + timedelta(seconds=30)
        assert renewer.compute_delay(now) == 0.5


class TestRenewal:
    """Tests for the background renewal task."""

    async def test_keeps_lock_alive(self, receiver):
        """The session stays locked well past its original lock duration."""
        first_expiry = receiver.session.locked_until
        async with SessionLockRenewer.start(receiver, renew_ahead=0.15, min_delay=0.05) as renewer:
            await asyncio.sleep(0.8)
            assert renewer.fault is None

        assert renewer.renewals >= 2
        assert receiver.session.locked_until > first_expiry
        messages = await receiver.receive(1, 0.1)
        assert [m.body for m in messages] == ["m"]
        assert get_metrics().get_sample(
            "sbtoolkit_session_lock_renewals_total", {"entity_path": "short-lock"}
        ) == renewer.renewals

    async def test_lock_loss_raised_on_exit(self, short_lock_broker, receiver):
        """A failed renewal is reported once the body finishes."""
        with pytest.raises(SessionLockLostError):
            async with SessionLockRenewer.start(receiver, renew_ahead=0.15, min_delay=0.05) as renewer:
                await short_lock_broker.expire_session_lock(ENTITY, "A")
                await asyncio.sleep(0.4)
                assert isinstance(renewer.fault, SessionLockLostError)

        assert get_metrics().get_sample(
            "sbtoolkit_session_lock_losses_total", {"entity_path": "short-lock"}
        ) == 1

    async def test_lock_loss_outranks_body_error(self, short_lock_broker, receiver):
        """When the body fails after the lock was lost, the lock loss surfaces."""
        with pytest.raises(SessionLockLostError) as exc_info:
            async with SessionLockRenewer.start(receiver, renew_ahead=0.15, min_delay=0.05):
                await short_lock_broker.expire_session_lock(ENTITY, "A")
                await asyncio.sleep(0.4)
                await receiver.receive(1, 0.1)

        assert isinstance(exc_info.value.__cause__, SessionLockLostError)

    async def test_body_error_without_fault(self, receiver):
        """Body errors pass through untouched when the lock is healthy."""
        with pytest.raises(RuntimeError):
            async with SessionLockRenewer.start(receiver, renew_ahead=0.15, min_delay=0.05):
                raise RuntimeError("boom")

    async def test_stop_is_idempotent(self, receiver):
        renewer = SessionLockRenewer(receiver, renew_ahead=0.15, min_delay=0.05)
        async with renewer:
            pass
        assert await renewer.stop() is None


class TestNoopRenewer:
    """Plain receivers get a no-op renewer."""

    async def test_plain_receiver(self):
        broker = InMemoryBroker()
        await broker.create_queue("plain")
        resolution = await broker.create_receiver(EntityRef.for_queue("plain"), ReceiveMode.RECEIVE)

        renewer = SessionLockRenewer.start(resolution.receiver)
        assert isinstance(renewer, NoopRenewer)
        async with renewer:
            pass
        assert renewer.fault is None
        assert renewer.renewals == 0

    async def test_constructor_requires_session(self):
        broker = InMemoryBroker()
        await broker.create_queue("plain")
        resolution = await broker.create_receiver(EntityRef.for_queue("plain"), ReceiveMode.RECEIVE)
        with pytest.raises(ValueError):
            SessionLockRenewer(resolution.receiver)
