"""
Unit Tests for ReceivePlan

Author: sbtoolkit contributors
Date: 2026-10-18
"""

import pytest

from sbtoolkit.servicebus.plan import ReceivePlan


class FakeClock:
    def __init__(self, now: float = 0.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class TestMessageBudget:
    """Tests for the max_messages budget."""

    def test_unbounded_plan(self):
        """Without limits the plan never completes."""
        plan = ReceivePlan()
        assert not plan.is_bounded
        assert not plan.is_complete
        assert plan.compute_window(30.0) == 30.0

    def test_budget_counts_down(self):
        """Each delivery decrements remaining."""
        plan = ReceivePlan(max_messages=3)
        assert plan.is_bounded
        for _ in range(3):
            assert not plan.is_complete
            plan.on_message_delivered()
        assert plan.remaining == 0
        assert plan.delivered == 3
        assert plan.is_complete

    def test_budget_can_go_negative(self):
        """Draining a fetched batch past the budget leaves remaining below zero."""
        plan = ReceivePlan(max_messages=1)
        plan.on_message_delivered()
        plan.on_message_delivered()
        assert plan.remaining == -1
        assert plan.is_complete

    def test_zero_budget_is_complete(self):
        plan = ReceivePlan(max_messages=0)
        assert plan.is_complete

    def test_negative_values_rejected(self):
        with pytest.raises(ValueError):
            ReceivePlan(max_messages=-1)
        with pytest.raises(ValueError):
            ReceivePlan(wait_seconds=-0.5)


class TestDeadline:
    """Tests for the wait_seconds deadline."""

    def test_window_shrinks_towards_deadline(self):
        """The next window is capped by the time left."""
        clock = FakeClock(100.0)
        plan = ReceivePlan(wait_seconds=10, clock=clock)

        assert plan.has_deadline
        assert plan.compute_window(30.0) == 10.0
        assert plan.compute_window(4.0) == 4.0

        clock.now = 107.0
        assert plan.compute_window(30.0) == pytest.approx(3.0)
        assert not plan.deadline_reached

    def test_deadline_reached(self):
        """At the deadline the window is zero and the plan is complete."""
        clock = FakeClock(0.0)
        plan = ReceivePlan(wait_seconds=5, clock=clock)
        clock.now = 5.0
        assert plan.deadline_reached
        assert plan.is_complete
        assert plan.compute_window(30.0) == 0.0

    def test_zero_wait_is_immediately_done(self):
        clock = FakeClock(42.0)
        plan = ReceivePlan(wait_seconds=0, clock=clock)
        assert plan.deadline_reached
        assert plan.compute_window(1.0) == 0.0

    def test_budget_and_deadline_together(self):
        """Either limit completes the plan."""
        clock = FakeClock(0.0)
        plan = ReceivePlan(max_messages=10, wait_seconds=2, clock=clock)
        plan.on_message_delivered()
        assert not plan.is_complete
        clock.now = 3.0
        assert plan.is_complete
        assert plan.remaining == 9
