"""
Unit Tests for EntityAccessResolver

Tests for plain and session-by-session draining behind one iterator.

Author: sbtoolkit contributors
Date: 2026-10-18
"""

from contextlib import aclosing
from dataclasses import replace

import pytest

from sbtoolkit.servicebus.dispatcher import dispatch_messages
from sbtoolkit.servicebus.drain import DrainOutcome
from sbtoolkit.servicebus.exceptions import EntityNotFoundError, SessionNotAvailableError
from sbtoolkit.servicebus.message_builder import build_messages, messages_from_records
from sbtoolkit.servicebus.metrics import get_metrics
from sbtoolkit.servicebus.models import EntityRef, ReceiveMode, SendTarget
from sbtoolkit.servicebus.plan import ReceivePlan
from sbtoolkit.servicebus.resolver import EntityAccessResolver

ORDERS = EntityRef.for_queue("orders")
SESSIONS = EntityRef.for_queue("sessions")


async def _drain(resolver, entity, plan, mode=ReceiveMode.RECEIVE, session_id=None):
    async with aclosing(resolver.receive(entity, plan, mode, session_id=session_id)) as messages:
        return [message async for message in messages]


async def _seed_sessions(broker, sessions):
    for session_id, bodies in sessions.items():
        await broker.send_messages(SendTarget(queue="sessions"), build_messages(bodies, session_id=session_id))


class TestResolve:
    """Tests for plain/session detection."""

    async def test_plain_entity(self, broker, fast_options):
        resolution = await EntityAccessResolver(broker, fast_options).resolve(ORDERS, ReceiveMode.RECEIVE)
        assert not resolution.requires_session
        assert resolution.receiver is not None
        await resolution.receiver.close()

    async def test_session_entity(self, broker, fast_options):
        resolution = await EntityAccessResolver(broker, fast_options).resolve(SESSIONS, ReceiveMode.RECEIVE)
        assert resolution.requires_session
        assert resolution.receiver is None

    async def test_missing_entity(self, broker, fast_options):
        with pytest.raises(EntityNotFoundError):
            await EntityAccessResolver(broker, fast_options).resolve(
                EntityRef.for_queue("missing"), ReceiveMode.RECEIVE
            )


class TestPlainDrain:
    """Tests for entities read through one plain receiver."""

    async def test_drains_plain_queue(self, broker, fast_options):
        await broker.send_messages(SendTarget(queue="orders"), build_messages(["a", "b", "c"]))
        resolver = EntityAccessResolver(broker, fast_options)

        messages = await _drain(resolver, ORDERS, ReceivePlan())

        assert [m.body for m in messages] == ["a", "b", "c"]
        assert resolver.outcome == DrainOutcome.SOURCE_EMPTY
        assert resolver.sessions_drained == 0
        assert resolver.current_receiver is None

    async def test_dead_letter_of_session_queue_is_plain(self, broker, fast_options):
        """Dead-letter sub-queues are read without sessions."""
        await _seed_sessions(broker, {"A": ["a1"]})
        receiver = await broker.accept_session(SESSIONS, "A", ReceiveMode.RECEIVE, 1.0)
        [message] = await receiver.receive(1, 0.1)
        await receiver.dead_letter(message, reason="Test")
        await receiver.close()

        resolver = EntityAccessResolver(broker, fast_options)
        messages = await _drain(resolver, SESSIONS.with_dead_letter(), ReceivePlan())

        assert [(m.body, m.session_id, m.dead_letter_reason) for m in messages] == [("a1", "A", "Test")]
        assert resolver.sessions_drained == 0


class TestSessionDrain:
    """Tests for session-by-session draining."""

    async def test_drains_every_session_once(self, broker, fast_options):
        """K sessions are each accepted once and the loop ends on the first empty accept."""
        await _seed_sessions(broker, {"A": ["a1", "a2"], "B": ["b1"], "C": ["c1", "c2", "c3"]})
        resolver = EntityAccessResolver(broker, fast_options)

        messages = await _drain(resolver, SESSIONS, ReceivePlan())

        assert len(messages) == 6
        assert resolver.sessions_drained == 3
        assert resolver.outcome == DrainOutcome.SOURCE_EMPTY
        assert broker.message_counts(SESSIONS)["active"] == 0
        assert get_metrics().get_sample(
            "sbtoolkit_sessions_accepted_total", {"entity_path": "sessions"}
        ) == 3

    async def test_session_order_is_preserved(self, broker, fast_options):
        await _seed_sessions(broker, {"A": ["a1", "a2", "a3"]})
        messages = await _drain(EntityAccessResolver(broker, fast_options), SESSIONS, ReceivePlan())
        assert [m.body for m in messages] == ["a1", "a2", "a3"]

    async def test_budget_spans_sessions(self, broker, fast_options):
        """A budget of 3 over sessions A=[a1,a2] and B=[b1] yields exactly those three."""
        records = [
            {"sessionId": "A", "body": ["a1", "a2"]},
            {"sessionId": "B", "body": "b1"},
        ]
        await dispatch_messages(
            broker,
            SendTarget(queue="sessions"),
            messages_from_records(records),
            per_session_auto=True,
        )
        resolver = EntityAccessResolver(broker, fast_options)

        messages = await _drain(resolver, SESSIONS, ReceivePlan(max_messages=3))

        assert len(messages) == 3
        assert {m.session_id for m in messages} <= {"A", "B"}
        assert {m.body for m in messages} == {"a1", "a2", "b1"}
        assert resolver.outcome == DrainOutcome.PLAN_COMPLETE

    async def test_budget_stops_before_next_session(self, broker, fast_options):
        await _seed_sessions(broker, {"A": ["a1", "a2"], "B": ["b1"]})
        resolver = EntityAccessResolver(broker, fast_options)

        messages = await _drain(resolver, SESSIONS, ReceivePlan(max_messages=2))

        assert [m.body for m in messages] == ["a1", "a2"]
        assert resolver.sessions_drained == 1
        assert broker.message_counts(SESSIONS)["active"] == 1

    async def test_no_sessions_available(self, broker, fast_options):
        resolver = EntityAccessResolver(broker, fast_options)
        messages = await _drain(resolver, SESSIONS, ReceivePlan())
        assert messages == []
        assert resolver.outcome == DrainOutcome.SOURCE_EMPTY

    async def test_deadline_already_passed(self, broker, fast_options):
        await _seed_sessions(broker, {"A": ["a1"]})
        resolver = EntityAccessResolver(broker, fast_options)
        messages = await _drain(resolver, SESSIONS, ReceivePlan(wait_seconds=0))
        assert messages == []
        assert resolver.outcome == DrainOutcome.DEADLINE_REACHED

    async def test_unsettled_sessions_stop_on_reoffer(self, broker, fast_options):
        """Without settlement a session comes back; the repeat ends the drain."""
        await _seed_sessions(broker, {"A": ["a1", "a2"], "B": ["b1"]})
        resolver = EntityAccessResolver(broker, replace(fast_options, settle_action=None))

        messages = await _drain(resolver, SESSIONS, ReceivePlan())

        assert sorted(m.body for m in messages) == ["a1", "a2", "b1"]
        assert resolver.outcome == DrainOutcome.SOURCE_EMPTY
        assert broker.message_counts(SESSIONS)["active"] == 3

    async def test_peek_sessions(self, broker, fast_options):
        await _seed_sessions(broker, {"A": ["a1"], "B": ["b1", "b2"]})
        resolver = EntityAccessResolver(broker, fast_options)

        messages = await _drain(resolver, SESSIONS, ReceivePlan(), mode=ReceiveMode.PEEK)

        assert sorted(m.body for m in messages) == ["a1", "b1", "b2"]
        assert broker.message_counts(SESSIONS)["active"] == 3

    async def test_named_session(self, broker, fast_options):
        await _seed_sessions(broker, {"A": ["a1"], "B": ["b1"]})
        resolver = EntityAccessResolver(broker, fast_options)

        messages = await _drain(resolver, SESSIONS, ReceivePlan(), session_id="B")

        assert [m.body for m in messages] == ["b1"]
        assert resolver.outcome == DrainOutcome.SESSION_EXHAUSTED
        assert resolver.sessions_drained == 1

    async def test_named_session_locked_elsewhere(self, broker, fast_options):
        await _seed_sessions(broker, {"A": ["a1"]})
        holder = await broker.accept_session(SESSIONS, "A", ReceiveMode.RECEIVE, 1.0)
        try:
            with pytest.raises(SessionNotAvailableError):
                await _drain(EntityAccessResolver(broker, fast_options), SESSIONS, ReceivePlan(), session_id="A")
        finally:
            await holder.close()

    async def test_early_exit_releases_session(self, broker, fast_options):
        """Breaking out of the iterator closes the session receiver."""
        await _seed_sessions(broker, {"A": ["a1", "a2"]})
        resolver = EntityAccessResolver(broker, replace(fast_options, batch_size=1))

        async with aclosing(resolver.receive(SESSIONS, ReceivePlan())) as messages:
            async for message in messages:
                assert resolver.current_receiver is not None
                break

        assert resolver.current_receiver is None
        again = await broker.accept_session(SESSIONS, "A", ReceiveMode.RECEIVE, 0.5)
        await again.close()
