"""
Service Bus Constants

Centralized constants for receive windows, lock renewal, batching, and limits.

Author: sbtoolkit contributors
Date: 2026-10-18
"""

# Receive loop defaults (seconds)
DEFAULT_RECEIVE_WINDOW = 30.0
DEFAULT_SESSION_ACCEPT_WINDOW = 30.0
DEFAULT_IDLE_DELAY = 1.0
DEFAULT_BATCH_SIZE = 10
MAX_BATCH_SIZE = 1000

# Clear defaults
DEFAULT_CLEAR_BATCH_SIZE = 50
DEFAULT_CLEAR_WAIT = 1.0

# Session lock renewal (seconds)
DEFAULT_RENEW_AHEAD = 10.0
MIN_RENEW_DELAY = 1.0

# Session state calls are bounded like the admin timeout
DEFAULT_SESSION_STATE_TIMEOUT = 30.0

# Lock and TTL defaults used by the in-memory broker (seconds)
DEFAULT_LOCK_DURATION = 60.0
DEFAULT_MAX_DELIVERY_COUNT = 10
DEFAULT_MESSAGE_TTL = 1209600  # 14 days

# Size limits
MAX_MESSAGE_SIZE = 256 * 1024  # 256 KB
MAX_SESSION_ID_LENGTH = 128
MAX_QUEUE_NAME_LENGTH = 260
MAX_TOPIC_NAME_LENGTH = 260
MAX_SUBSCRIPTION_NAME_LENGTH = 50

# Entity path fragments
DEAD_LETTER_SUFFIX = "$DeadLetterQueue"
SUBSCRIPTIONS_SEGMENT = "Subscriptions"

# Application property that overrides the outbound message id
MESSAGE_ID_PROPERTY = "MessageId"

# Error message templates
ERROR_PARALLEL_CONFLICT = "Use only one parallelization option: per-session auto or per-session workers."
ERROR_SESSION_MISSING = "Parallel per-session modes require a session id on every message."
ERROR_MIXED_SESSION_ID = (
    "Input contains a mixture of messages with and without a session id. "
    "Provide a session id for all or none."
)
ERROR_NO_MESSAGES = "No messages provided."
