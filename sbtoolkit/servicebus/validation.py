"""
Service Bus Input Validation

Entity name, session id and application property checks applied before any
network I/O.

Author: sbtoolkit contributors
Date: 2026-10-18
"""

import re
from typing import Any, Dict, Optional

from .constants import (
    MAX_QUEUE_NAME_LENGTH,
    MAX_TOPIC_NAME_LENGTH,
    MAX_SUBSCRIPTION_NAME_LENGTH,
    MAX_SESSION_ID_LENGTH,
)
from .exceptions import (
    InvalidEntityNameError,
    InvalidMessageError,
)


# ========== Entity Name Validation ==========

class EntityNameValidator:
    """
    Validates entity names against Azure Service Bus naming rules.

    Queue and topic names may contain letters, digits, periods, hyphens,
    underscores and forward slashes (nested paths); subscription names are
    restricted to letters, digits, periods, hyphens and underscores.
    """

    # Pattern for queue/topic names
    QUEUE_TOPIC_PATTERN = re.compile(r'^[a-zA-Z0-9][\w\-\./]*$')

    # Pattern for subscription names
    SUBSCRIPTION_PATTERN = re.compile(r'^[a-zA-Z0-9][\w\-\.]*$')

    @classmethod
    def validate_queue_name(cls, name: str) -> None:
        """
        Validate queue name.

        Raises:
            InvalidEntityNameError: If validation fails
        """
        cls._validate_entity_name(name, "queue", MAX_QUEUE_NAME_LENGTH, cls.QUEUE_TOPIC_PATTERN)

    @classmethod
    def validate_topic_name(cls, name: str) -> None:
        """
        Validate topic name.

        Raises:
            InvalidEntityNameError: If validation fails
        """
        cls._validate_entity_name(name, "topic", MAX_TOPIC_NAME_LENGTH, cls.QUEUE_TOPIC_PATTERN)

    @classmethod
    def validate_subscription_name(cls, name: str) -> None:
        """
        Validate subscription name (1-50 characters).

        Raises:
            InvalidEntityNameError: If validation fails
        """
        cls._validate_entity_name(name, "subscription", MAX_SUBSCRIPTION_NAME_LENGTH, cls.SUBSCRIPTION_PATTERN)

    @classmethod
    def _validate_entity_name(
        cls,
        name: str,
        entity_type: str,
        max_length: int,
        pattern: re.Pattern
    ) -> None:
        """Internal validation logic."""
        if not name:
            raise InvalidEntityNameError(entity_type, name, "Name cannot be empty")

        if len(name) > max_length:
            raise InvalidEntityNameError(
                entity_type,
                name,
                f"Name exceeds maximum length of {max_length} characters"
            )

        if name.endswith('/') or name.endswith('.'):
            raise InvalidEntityNameError(
                entity_type,
                name,
                "Name cannot end with a slash or period"
            )

        if not pattern.match(name):
            raise InvalidEntityNameError(
                entity_type,
                name,
                "Name must start with an alphanumeric character and contain only allowed characters"
            )


# ========== Message Validation ==========

class SessionIdValidator:
    """Validates session ids on outbound messages."""

    @classmethod
    def validate(cls, session_id: Optional[str]) -> None:
        """
        Validate session ID.

        Raises:
            InvalidMessageError: If validation fails
        """
        if session_id is None:
            return

        if not session_id.strip():
            raise InvalidMessageError("Session ID cannot be blank")

        if len(session_id) > MAX_SESSION_ID_LENGTH:
            raise InvalidMessageError(
                f"Session ID exceeds maximum length of {MAX_SESSION_ID_LENGTH} characters"
            )


class PropertyValidator:
    """Validates application properties on outbound messages."""

    @classmethod
    def validate(cls, properties: Dict[str, Any]) -> None:
        """
        Application properties must have non-blank keys and non-null values.

        Raises:
            InvalidMessageError: If validation fails
        """
        for key, value in properties.items():
            if key is None or not str(key).strip():
                raise InvalidMessageError("Custom properties contain an empty key")
            if value is None:
                raise InvalidMessageError(
                    f"Custom property '{key}' is null. Application properties must have non-null values."
                )
