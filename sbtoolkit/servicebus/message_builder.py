"""
Message Builder

Turns operator input (bodies plus properties, JSON records, or messages
received earlier) into PreparedMessage templates for the dispatcher.

Author: sbtoolkit contributors
Date: 2026-10-18
"""

from collections.abc import Mapping
from typing import Any, Dict, Iterable, List, Optional, Sequence, Union

from .constants import ERROR_NO_MESSAGES, MESSAGE_ID_PROPERTY
from .exceptions import InvalidMessageError, MixedSessionIdError, SessionIdMissingError
from .models import PreparedMessage, ReceivedMessage
from .validation import PropertyValidator, SessionIdValidator

PropertiesInput = Union[None, Mapping, Sequence[Mapping]]


def _message_id_from(properties: Dict[str, Any]) -> Optional[str]:
    value = properties.get(MESSAGE_ID_PROPERTY)
    if value is None:
        return None
    message_id = str(value)
    if not message_id:
        raise InvalidMessageError(
            "MessageId",
            message=f"Custom property '{MESSAGE_ID_PROPERTY}' must convert to a non-empty string.",
        )
    return message_id


def prepare_message(
    body: str,
    session_id: Optional[str] = None,
    properties: Optional[Mapping] = None,
) -> PreparedMessage:
    """Validate and build a single outbound message."""
    if not isinstance(body, str):
        raise InvalidMessageError("body must be a string")
    properties = dict(properties or {})
    PropertyValidator.validate(properties)
    session_id = session_id or None
    SessionIdValidator.validate(session_id)

    return PreparedMessage(
        body=body,
        session_id=session_id,
        application_properties=properties,
        message_id=_message_id_from(properties),
    )


def build_messages(
    bodies: Union[str, Iterable[str]],
    session_id: Optional[str] = None,
    properties: PropertiesInput = None,
) -> List[PreparedMessage]:
    """
    Build one message per body.

    ``properties`` may be omitted, a single mapping applied to every body, or
    a list holding one mapping (applied to all) or one mapping per body.

    Raises:
        InvalidMessageError: Property count does not match the body count,
            or a property key/value is invalid
    """
    if isinstance(bodies, str):
        bodies = [bodies]
    bodies = list(bodies)
    if not bodies:
        raise InvalidMessageError("no bodies", message=ERROR_NO_MESSAGES)

    if properties is None:
        per_body: List[Optional[Mapping]] = [None] * len(bodies)
    elif isinstance(properties, Mapping):
        per_body = [properties] * len(bodies)
    else:
        properties = list(properties)
        if len(properties) == 0:
            per_body = [None] * len(bodies)
        elif len(properties) == 1:
            per_body = properties * len(bodies)
        elif len(properties) == len(bodies):
            per_body = properties
        else:
            raise InvalidMessageError(
                "property count mismatch",
                message=(
                    f"Provide 0, 1 or {len(bodies)} property sets; got {len(properties)}"
                ),
            )

    return [prepare_message(body, session_id, props) for body, props in zip(bodies, per_body)]


def _lookup(record: Mapping, key: str) -> Any:
    """Case-insensitive key lookup."""
    lowered = key.lower()
    for candidate, value in record.items():
        if isinstance(candidate, str) and candidate.lower() == lowered:
            return value
    return None


def messages_from_records(
    records: Iterable[Mapping],
    require_session_id: bool = False,
) -> List[PreparedMessage]:
    """
    Build messages from ``{sessionId, body, customProperties}`` records.

    Keys are matched case-insensitively. A record's ``body`` may be a string
    or a list of strings; each body becomes one message.

    Raises:
        SessionIdMissingError: ``require_session_id`` and a record has none
        MixedSessionIdError: Some records have a session id and some do not
        InvalidMessageError: Malformed record
    """
    messages: List[PreparedMessage] = []
    with_session = 0
    without_session = 0

    for record in records:
        if not isinstance(record, Mapping):
            raise InvalidMessageError("each record must be an object")

        session_id = _lookup(record, "sessionId")
        if session_id is not None and not isinstance(session_id, str):
            session_id = str(session_id)
        body = _lookup(record, "body")
        properties = _lookup(record, "customProperties")

        if body is None:
            raise InvalidMessageError("record has no body")
        if properties is not None and not isinstance(properties, Mapping):
            raise InvalidMessageError("customProperties must be an object")

        if session_id:
            with_session += 1
        else:
            without_session += 1

        bodies = body if isinstance(body, list) else [body]
        for item in bodies:
            messages.append(prepare_message(item, session_id, properties))

    if require_session_id and without_session:
        raise SessionIdMissingError(without_session)
    if with_session and without_session:
        raise MixedSessionIdError(with_session, without_session)
    if not messages:
        raise InvalidMessageError("no records", message=ERROR_NO_MESSAGES)

    return messages


def from_received(message: ReceivedMessage) -> PreparedMessage:
    """Re-inject a received message: body, session, properties and its MessageId."""
    properties = dict(message.application_properties)
    if message.message_id:
        properties[MESSAGE_ID_PROPERTY] = message.message_id
    return PreparedMessage(
        body=message.body,
        session_id=message.session_id or None,
        application_properties=properties,
        message_id=message.message_id or None,
    )
