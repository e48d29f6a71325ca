"""
Unit Tests for Service Bus Models and Validation

Author: sbtoolkit contributors
Date: 2026-10-18
"""

import pytest
from pydantic import ValidationError

from sbtoolkit.servicebus.exceptions import InvalidEntityNameError
from sbtoolkit.servicebus.models import (
    EntityRef,
    PreparedMessage,
    ReceivedMessage,
    SendTarget,
    SessionOrderingState,
)
from sbtoolkit.servicebus.validation import EntityNameValidator


class TestEntityRef:
    """Tests for entity references and their paths."""

    def test_queue_paths(self):
        entity = EntityRef.for_queue("orders")
        assert entity.is_queue
        assert entity.entity_type == "queue"
        assert entity.path == "orders"
        assert entity.with_dead_letter().path == "orders/$DeadLetterQueue"

    def test_subscription_paths(self):
        entity = EntityRef.for_subscription("events", "audit", dead_letter=True)
        assert entity.entity_type == "subscription"
        assert entity.base_path == "events/Subscriptions/audit"
        assert str(entity) == "events/Subscriptions/audit/$DeadLetterQueue"
        assert entity.with_dead_letter(False).path == entity.base_path

    @pytest.mark.parametrize("kwargs", [
        {},
        {"topic": "events"},
        {"queue": "orders", "topic": "events", "subscription": "audit"},
    ])
    def test_invalid_shapes(self, kwargs):
        with pytest.raises(ValidationError):
            EntityRef(**kwargs)

    def test_immutable(self):
        entity = EntityRef.for_queue("orders")
        with pytest.raises(ValidationError):
            entity.queue = "other"


class TestSendTarget:
    def test_exactly_one_destination(self):
        assert SendTarget(queue="orders").path == "orders"
        assert SendTarget(topic="events").path == "events"
        with pytest.raises(ValidationError):
            SendTarget()
        with pytest.raises(ValidationError):
            SendTarget(queue="orders", topic="events")


class TestMessages:
    def test_estimated_size_grows_with_body(self):
        small = PreparedMessage(body="x")
        large = PreparedMessage(body="x" * 1000)
        assert large.estimated_size() - small.estimated_size() == 999

    def test_received_to_dict_excludes_raw(self):
        message = ReceivedMessage(entity_path="orders", sequence_number=1, body="b", raw=object())
        data = message.to_dict()
        assert "raw" not in data
        assert data["sequence_number"] == 1

    def test_ordering_state_alias(self):
        state = SessionOrderingState.model_validate({"lastSeenOrderNum": 3})
        assert state.last_seen_order_num == 3
        with pytest.raises(ValidationError):
            SessionOrderingState(last_seen_order_num=-1)


class TestEntityNameValidator:
    """Tests for entity name rules."""

    @pytest.mark.parametrize("name", ["orders", "team/orders", "a.b-c_d"])
    def test_valid_queue_names(self, name):
        EntityNameValidator.validate_queue_name(name)

    @pytest.mark.parametrize("name", ["", "-x", "x/", "x.", "a" * 261, "bad name"])
    def test_invalid_queue_names(self, name):
        with pytest.raises(InvalidEntityNameError):
            EntityNameValidator.validate_queue_name(name)

    def test_subscription_names_have_no_slashes(self):
        with pytest.raises(InvalidEntityNameError):
            EntityNameValidator.validate_subscription_name("a/b")
        with pytest.raises(InvalidEntityNameError):
            EntityNameValidator.validate_subscription_name("s" * 51)
