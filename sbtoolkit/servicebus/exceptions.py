"""
Service Bus Exception Hierarchy

Exception types for the drain, settle and dispatch engine, with stable error
codes and the offending entity attached as context.

Author: sbtoolkit contributors
Date: 2026-10-18
"""

from typing import Optional, Dict, Any

from .constants import (
    ERROR_MIXED_SESSION_ID,
    ERROR_PARALLEL_CONFLICT,
    ERROR_SESSION_MISSING,
)


class ServiceBusError(Exception):
    """
    Base exception for all toolkit errors.

    Attributes:
        message: Human-readable error message
        error_code: Machine-readable error code (e.g., 'EntityNotFound')
        details: Additional context (entity_path, session_id, etc.)
    """

    error_code: str = "ServiceBusError"

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code or self.__class__.error_code
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary format for CLI output."""
        return {
            "error": {
                "code": self.error_code,
                "message": self.message,
                "details": self.details
            }
        }


# ========== Configuration Errors ==========

class ConfigurationError(ServiceBusError):
    """Raised before any I/O when the requested options cannot be honoured."""
    error_code = "InvalidConfiguration"


class ParallelModeConflictError(ConfigurationError):
    """Raised when both per-session send strategies are requested."""
    error_code = "ParallelModeConflict"

    def __init__(self, target: Optional[str] = None, message: Optional[str] = None):
        message = message or ERROR_PARALLEL_CONFLICT
        details = {"target": target} if target else {}
        super().__init__(message, details=details)


class SessionIdMissingError(ConfigurationError):
    """Raised when a session id is required but at least one message lacks it."""
    error_code = "SessionIdMissing"

    def __init__(
        self,
        missing_count: int,
        target: Optional[str] = None,
        message: Optional[str] = None
    ):
        message = message or f"{ERROR_SESSION_MISSING} ({missing_count} missing)"
        details: Dict[str, Any] = {"missing_count": missing_count}
        if target:
            details["target"] = target
        super().__init__(message, details=details)


class MixedSessionIdError(ConfigurationError):
    """Raised when some messages carry a session id and some do not."""
    error_code = "MixedSessionId"

    def __init__(self, with_session: int, without_session: int, message: Optional[str] = None):
        message = message or ERROR_MIXED_SESSION_ID
        details = {"with_session": with_session, "without_session": without_session}
        super().__init__(message, details=details)


class InvalidMessageError(ConfigurationError):
    """Raised when a message template is malformed."""
    error_code = "InvalidMessage"

    def __init__(self, reason: str, message: Optional[str] = None):
        message = message or f"Invalid message: {reason}"
        super().__init__(message, details={"reason": reason})


# ========== Entity Errors ==========

class EntityNotFoundError(ServiceBusError):
    """Raised when a queue, topic or subscription does not exist."""
    error_code = "EntityNotFound"

    def __init__(
        self,
        entity_type: str,
        entity_path: str,
        message: Optional[str] = None
    ):
        message = message or f"{entity_type.capitalize()} '{entity_path}' not found"
        details = {"entity_type": entity_type, "entity_path": entity_path}
        super().__init__(message, details=details)


class InvalidEntityNameError(ServiceBusError):
    """Raised when an entity name is invalid."""
    error_code = "InvalidEntityName"

    def __init__(
        self,
        entity_type: str,
        entity_name: str,
        reason: str,
        message: Optional[str] = None
    ):
        message = message or f"Invalid {entity_type} name '{entity_name}': {reason}"
        details = {
            "entity_type": entity_type,
            "entity_name": entity_name,
            "reason": reason
        }
        super().__init__(message, details=details)


# ========== Message Errors ==========

class MessageError(ServiceBusError):
    """Base class for message-related errors."""
    error_code = "MessageError"


class MessageNotFoundError(MessageError):
    """Raised when a deferred message cannot be found by sequence number."""
    error_code = "MessageNotFound"

    def __init__(
        self,
        sequence_number: int,
        entity_path: str,
        message: Optional[str] = None
    ):
        message = message or f"Message with sequence number {sequence_number} not found in '{entity_path}'"
        details = {"sequence_number": sequence_number, "entity_path": entity_path}
        super().__init__(message, details=details)


class MessageSizeExceededError(MessageError):
    """Raised when a single message cannot fit into an otherwise empty batch."""
    error_code = "MessageSizeExceeded"

    def __init__(
        self,
        target: str,
        message_id: Optional[str] = None,
        session_id: Optional[str] = None,
        message: Optional[str] = None
    ):
        message = message or f"Message is too large to fit into an empty batch for '{target}'"
        details: Dict[str, Any] = {"target": target}
        if message_id:
            details["message_id"] = message_id
        if session_id:
            details["session_id"] = session_id
        super().__init__(message, details=details)


class MessageLockLostError(MessageError):
    """Raised when a message lock has expired or is invalid."""
    error_code = "MessageLockLost"

    def __init__(
        self,
        message_id: str,
        lock_token: Optional[str] = None,
        message: Optional[str] = None
    ):
        message = message or f"Message lock lost for message '{message_id}'"
        details = {"message_id": message_id}
        if lock_token:
            details["lock_token"] = lock_token
        super().__init__(message, details=details)


# ========== Session Errors ==========

class SessionError(ServiceBusError):
    """Base class for session-related errors."""
    error_code = "SessionError"


class SessionLockLostError(SessionError):
    """Raised when a session lock has expired or was taken by another receiver."""
    error_code = "SessionLockLost"

    def __init__(
        self,
        session_id: str,
        entity_path: str,
        message: Optional[str] = None
    ):
        message = message or f"Session lock lost for session '{session_id}' in '{entity_path}'"
        details = {"session_id": session_id, "entity_path": entity_path}
        super().__init__(message, details=details)


class SessionNotAvailableError(SessionError):
    """Raised when a named session cannot be accepted within the timeout."""
    error_code = "SessionNotAvailable"

    def __init__(
        self,
        session_id: str,
        entity_path: str,
        message: Optional[str] = None
    ):
        message = message or f"Session '{session_id}' in '{entity_path}' could not be accepted"
        details = {"session_id": session_id, "entity_path": entity_path}
        super().__init__(message, details=details)


class InvalidOperationError(ServiceBusError):
    """Raised when an operation is invalid in the current state."""
    error_code = "InvalidOperation"

    def __init__(
        self,
        operation: str,
        reason: str,
        message: Optional[str] = None
    ):
        message = message or f"Invalid operation '{operation}': {reason}"
        details = {"operation": operation, "reason": reason}
        super().__init__(message, details=details)


# ========== Dispatch Errors ==========

class DispatchError(ServiceBusError):
    """
    Raised after a per-session dispatch when one or more sessions failed.

    Sibling sessions always run to completion; the per-session failures are
    kept on ``failures`` and summarised in ``details``.
    """
    error_code = "DispatchFailed"

    def __init__(
        self,
        target: str,
        failures: Dict[str, Exception],
        sent: int,
        message: Optional[str] = None
    ):
        message = message or f"Send to '{target}' failed for {len(failures)} session(s)"
        details: Dict[str, Any] = {
            "target": target,
            "sent": sent,
            "failed_sessions": sorted(failures),
            "errors": [
                getattr(err, "error_code", type(err).__name__)
                for _, err in sorted(failures.items())
            ],
        }
        super().__init__(message, details=details)
        self.failures = failures


# ========== Broker Errors ==========

class BrokerError(ServiceBusError):
    """
    Raised for a broker failure with no more specific toolkit error
    (authentication, communication, timeouts, generic service errors).
    """
    error_code = "BrokerError"

    def __init__(
        self,
        entity_type: str,
        entity_path: str,
        reason: str,
        error_type: Optional[str] = None,
        session_id: Optional[str] = None,
        retryable: bool = False,
        message: Optional[str] = None
    ):
        message = message or f"Broker error on {entity_type} '{entity_path}': {reason}"
        details: Dict[str, Any] = {"entity_type": entity_type, "entity_path": entity_path}
        if error_type:
            details["error_type"] = error_type
        if session_id:
            details["session_id"] = session_id
        super().__init__(message, details=details)
        self.is_transient = retryable


# ========== Transient Errors ==========

class ServiceBusConnectionError(ServiceBusError):
    """Raised when connection to Service Bus fails."""
    error_code = "ConnectionError"
    is_transient = True

    def __init__(
        self,
        reason: str,
        message: Optional[str] = None
    ):
        message = message or f"Connection error: {reason}"
        details = {"reason": reason}
        super().__init__(message, details=details)


# ========== Dead Letter Reasons ==========

class DeadLetterReason:
    """Standard dead letter reasons used by the toolkit."""
    MANUAL = "ManualDeadLetter"
    PROCESSING_ERROR = "ProcessingError"
    INVALID_MESSAGE_FORMAT = "InvalidMessageFormat"


# ========== Utility Functions ==========

def is_transient_error(error: Exception) -> bool:
    """
    Determine if an error is transient and can be retried.

    Args:
        error: Exception to check

    Returns:
        True if error is transient and operation should be retried
    """
    if isinstance(error, ServiceBusError):
        return getattr(error, 'is_transient', False)

    if isinstance(error, (
        ConnectionError,
        ConnectionRefusedError,
        ConnectionResetError,
        TimeoutError,
    )):
        return True

    return False
