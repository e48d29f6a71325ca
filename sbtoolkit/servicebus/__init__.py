"""
Service Bus drain, settle and dispatch engine.
"""

from .client import BrokerClient, MessageReceiver, ReceiverResolution, SessionHandle
from .dispatcher import DispatchReport, dispatch_messages
from .drain import DrainLoop, DrainOptions, DrainOutcome
from .memory_broker import InMemoryBroker
from .message_builder import build_messages, from_received, messages_from_records
from .models import (
    EntityRef,
    OrderSeq,
    PreparedMessage,
    ReceiveMode,
    ReceivedMessage,
    SendTarget,
    SessionOrderingState,
    SettlementAction,
)
from .operations import clear_entity, receive_deferred, replay_dead_letters
from .plan import ReceivePlan
from .renewer import SessionLockRenewer
from .resolver import EntityAccessResolver
from .session_context import SessionContext
from .session_state import (
    deserialize_ordering_state,
    get_session_state,
    new_ordering_state,
    serialize_ordering_state,
    set_session_state,
)
from .settlement import settle, settle_messages

__all__ = [
    "BrokerClient",
    "MessageReceiver",
    "ReceiverResolution",
    "SessionHandle",
    "DispatchReport",
    "dispatch_messages",
    "DrainLoop",
    "DrainOptions",
    "DrainOutcome",
    "InMemoryBroker",
    "build_messages",
    "from_received",
    "messages_from_records",
    "EntityRef",
    "OrderSeq",
    "PreparedMessage",
    "ReceiveMode",
    "ReceivedMessage",
    "SendTarget",
    "SessionOrderingState",
    "SettlementAction",
    "clear_entity",
    "receive_deferred",
    "replay_dead_letters",
    "ReceivePlan",
    "SessionLockRenewer",
    "EntityAccessResolver",
    "SessionContext",
    "deserialize_ordering_state",
    "get_session_state",
    "new_ordering_state",
    "serialize_ordering_state",
    "set_session_state",
    "settle",
    "settle_messages",
]
