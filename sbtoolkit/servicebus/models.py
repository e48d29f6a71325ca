"""
Service Bus Models

Pydantic models for entity references, outbound message templates, received
messages and the per-session ordering record.

Author: sbtoolkit contributors
Date: 2026-10-18
"""

import json
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from .constants import DEAD_LETTER_SUFFIX, SUBSCRIPTIONS_SEGMENT
from .validation import EntityNameValidator


class ReceiveMode(str, Enum):
    """How a receiver reads from an entity."""
    RECEIVE = "receive"
    PEEK = "peek"


class SettlementAction(str, Enum):
    """Terminal disposition of a received message."""
    COMPLETE = "complete"
    ABANDON = "abandon"
    DEFER = "defer"
    DEAD_LETTER = "dead-letter"


class EntityRef(BaseModel):
    """
    Reference to a receivable entity.

    Either a queue, or a topic/subscription pair, optionally qualified to its
    dead-letter sub-queue. Immutable.
    """
    model_config = ConfigDict(extra='forbid', frozen=True)

    queue: Optional[str] = None
    topic: Optional[str] = None
    subscription: Optional[str] = None
    dead_letter: bool = False

    @model_validator(mode='after')
    def validate_shape(self) -> 'EntityRef':
        """Exactly one of queue or topic/subscription must be given."""
        if self.queue:
            if self.topic or self.subscription:
                raise ValueError("Specify either a queue or a topic/subscription, not both")
            EntityNameValidator.validate_queue_name(self.queue)
        elif self.topic and self.subscription:
            EntityNameValidator.validate_topic_name(self.topic)
            EntityNameValidator.validate_subscription_name(self.subscription)
        else:
            raise ValueError("A queue, or both a topic and a subscription, are required")
        return self

    @classmethod
    def for_queue(cls, name: str, dead_letter: bool = False) -> 'EntityRef':
        return cls(queue=name, dead_letter=dead_letter)

    @classmethod
    def for_subscription(cls, topic: str, subscription: str, dead_letter: bool = False) -> 'EntityRef':
        return cls(topic=topic, subscription=subscription, dead_letter=dead_letter)

    @property
    def is_queue(self) -> bool:
        return self.queue is not None

    @property
    def entity_type(self) -> str:
        return "queue" if self.is_queue else "subscription"

    @property
    def base_path(self) -> str:
        """Entity path without the dead-letter qualifier."""
        if self.is_queue:
            return self.queue
        return f"{self.topic}/{SUBSCRIPTIONS_SEGMENT}/{self.subscription}"

    @property
    def path(self) -> str:
        """Full entity path, used for logging and error context."""
        if self.dead_letter:
            return f"{self.base_path}/{DEAD_LETTER_SUFFIX}"
        return self.base_path

    def with_dead_letter(self, dead_letter: bool = True) -> 'EntityRef':
        """Return the same entity qualified to (or away from) its dead-letter sub-queue."""
        return self.model_copy(update={"dead_letter": dead_letter})

    def __str__(self) -> str:
        return self.path


class SendTarget(BaseModel):
    """Destination for outbound messages: a queue or a topic."""
    model_config = ConfigDict(extra='forbid', frozen=True)

    queue: Optional[str] = None
    topic: Optional[str] = None

    @model_validator(mode='after')
    def validate_shape(self) -> 'SendTarget':
        if bool(self.queue) == bool(self.topic):
            raise ValueError("Queue or Topic name is required (exactly one)")
        if self.queue:
            EntityNameValidator.validate_queue_name(self.queue)
        else:
            EntityNameValidator.validate_topic_name(self.topic)
        return self

    @property
    def path(self) -> str:
        return self.queue or self.topic

    def __str__(self) -> str:
        return self.path


class PreparedMessage(BaseModel):
    """Outbound message template: one body, optional session, application properties."""
    model_config = ConfigDict(extra='forbid')

    body: str
    session_id: Optional[str] = None
    application_properties: Dict[str, Any] = Field(default_factory=dict)
    message_id: Optional[str] = None

    @property
    def has_session(self) -> bool:
        return bool(self.session_id)

    def estimated_size(self) -> int:
        """Approximate encoded size in bytes, used for batch packing."""
        payload = {
            "body": self.body,
            "session_id": self.session_id,
            "message_id": self.message_id,
            "properties": self.application_properties,
        }
        return len(json.dumps(payload, default=str).encode('utf-8'))


class ReceivedMessage(BaseModel):
    """
    A message surfaced by a peek, receive or deferred fetch.

    ``raw`` holds the broker-specific object needed to settle the message and
    is excluded from serialization.
    """
    model_config = ConfigDict(arbitrary_types_allowed=True)

    entity_path: str
    sequence_number: int
    body: str = ""
    message_id: Optional[str] = None
    session_id: Optional[str] = None
    application_properties: Dict[str, Any] = Field(default_factory=dict)
    enqueued_time_utc: Optional[datetime] = None
    delivery_count: int = 0
    lock_token: Optional[str] = None
    locked_until_utc: Optional[datetime] = None
    dead_letter_reason: Optional[str] = None
    dead_letter_error_description: Optional[str] = None
    deferred: bool = False
    raw: Any = Field(default=None, exclude=True, repr=False)

    def to_dict(self) -> Dict[str, Any]:
        """JSON-friendly representation for CLI output."""
        return self.model_dump(mode='json', exclude={'raw'})


class OrderSeq(BaseModel):
    """One out-of-order message: logical order number and broker sequence number."""
    model_config = ConfigDict(extra='forbid', frozen=True)

    order: int
    seq: int


class SessionOrderingState(BaseModel):
    """
    Ordering-recovery checkpoint stored in a session's state blob.

    Everything up to and including ``last_seen_order_num`` has been processed,
    except the ``deferred`` pairs, which arrived out of order and were deferred
    for later fetch by sequence number.
    """
    model_config = ConfigDict(extra='forbid', populate_by_name=True)

    last_seen_order_num: int = Field(default=0, ge=0, alias='lastSeenOrderNum')
    deferred: List[OrderSeq] = Field(default_factory=list)

    @property
    def deferred_sequence_numbers(self) -> List[int]:
        return [entry.seq for entry in self.deferred]
