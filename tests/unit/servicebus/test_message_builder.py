"""
Unit Tests for the Message Builder

Author: sbtoolkit contributors
Date: 2026-10-18
"""

import pytest

from sbtoolkit.servicebus.constants import ERROR_NO_MESSAGES
from sbtoolkit.servicebus.exceptions import (
    InvalidMessageError,
    MixedSessionIdError,
    SessionIdMissingError,
)
from sbtoolkit.servicebus.message_builder import (
    build_messages,
    from_received,
    messages_from_records,
    prepare_message,
)
from sbtoolkit.servicebus.models import ReceivedMessage


class TestPrepareMessage:
    """Tests for single message validation."""

    def test_basic(self):
        message = prepare_message("hello", "s-1", {"kind": "greeting"})
        assert message.body == "hello"
        assert message.session_id == "s-1"
        assert message.application_properties == {"kind": "greeting"}
        assert message.message_id is None

    def test_message_id_property(self):
        """A MessageId property also sets the message id."""
        message = prepare_message("x", properties={"MessageId": 42})
        assert message.message_id == "42"
        assert message.application_properties["MessageId"] == 42

    def test_empty_message_id_rejected(self):
        with pytest.raises(InvalidMessageError):
            prepare_message("x", properties={"MessageId": ""})

    def test_blank_session_means_none(self):
        assert prepare_message("x", session_id="").session_id is None

    @pytest.mark.parametrize("properties", [{"": "v"}, {"k": None}])
    def test_invalid_properties(self, properties):
        with pytest.raises(InvalidMessageError):
            prepare_message("x", properties=properties)

    def test_session_id_too_long(self):
        with pytest.raises(InvalidMessageError):
            prepare_message("x", session_id="s" * 129)

    def test_body_must_be_text(self):
        with pytest.raises(InvalidMessageError):
            prepare_message(b"bytes")


class TestBuildMessages:
    """Tests for bodies plus property sets."""

    def test_single_body_string(self):
        messages = build_messages("only")
        assert [m.body for m in messages] == ["only"]

    def test_shared_properties(self):
        messages = build_messages(["a", "b"], session_id="S", properties={"k": "v"})
        assert all(m.application_properties == {"k": "v"} for m in messages)
        assert all(m.session_id == "S" for m in messages)

    def test_single_item_list_applies_to_all(self):
        messages = build_messages(["a", "b", "c"], properties=[{"k": 1}])
        assert [m.application_properties for m in messages] == [{"k": 1}] * 3

    def test_one_property_set_per_body(self):
        messages = build_messages(["a", "b"], properties=[{"n": 1}, {"n": 2}])
        assert [m.application_properties["n"] for m in messages] == [1, 2]

    def test_property_count_mismatch(self):
        with pytest.raises(InvalidMessageError) as exc_info:
            build_messages(["a", "b", "c"], properties=[{"n": 1}, {"n": 2}])
        assert exc_info.value.details == {"reason": "property count mismatch"}

    def test_no_bodies(self):
        with pytest.raises(InvalidMessageError) as exc_info:
            build_messages([])
        assert exc_info.value.message == ERROR_NO_MESSAGES


class TestMessagesFromRecords:
    """Tests for {sessionId, body, customProperties} records."""

    def test_keys_are_case_insensitive(self):
        records = [
            {"SessionId": "A", "Body": "a1", "CustomProperties": {"k": "v"}},
            {"sessionid": "B", "body": ["b1", "b2"]},
        ]
        messages = messages_from_records(records)
        assert [(m.session_id, m.body) for m in messages] == [("A", "a1"), ("B", "b1"), ("B", "b2")]
        assert messages[0].application_properties == {"k": "v"}

    def test_required_session_missing(self):
        with pytest.raises(SessionIdMissingError) as exc_info:
            messages_from_records([{"sessionId": "A", "body": "x"}, {"body": "y"}], require_session_id=True)
        assert exc_info.value.details["missing_count"] == 1

    def test_mixed_session_ids(self):
        with pytest.raises(MixedSessionIdError):
            messages_from_records([{"sessionId": "A", "body": "x"}, {"body": "y"}])

    def test_no_sessions_at_all(self):
        messages = messages_from_records([{"body": "x"}, {"body": "y"}])
        assert all(m.session_id is None for m in messages)

    @pytest.mark.parametrize("records", [
        ["not a mapping"],
        [{"sessionId": "A"}],
        [{"body": "x", "customProperties": ["k"]}],
        [],
    ])
    def test_malformed_records(self, records):
        with pytest.raises(InvalidMessageError):
            messages_from_records(records)


class TestFromReceived:
    def test_keeps_identity(self):
        """A received message is re-sent with its body, session, properties and id."""
        received = ReceivedMessage(
            entity_path="orders/$DeadLetterQueue",
            sequence_number=7,
            body="payload",
            message_id="m-7",
            session_id="S",
            application_properties={"attempt": 2},
            dead_letter_reason="Poison",
        )
        prepared = from_received(received)
        assert prepared.body == "payload"
        assert prepared.session_id == "S"
        assert prepared.message_id == "m-7"
        assert prepared.application_properties == {"attempt": 2, "MessageId": "m-7"}
