"""
Broker Client Interface

Defines the abstract broker surface the drain, settle and dispatch engine
calls through. Two implementations ship: an adapter over azure-servicebus
(azure_client.py) and an in-process broker (memory_broker.py).

**Receiver variants**:
There is a single ``MessageReceiver`` interface. A receiver bound to one
session of a session-enabled entity exposes a ``SessionHandle`` through
``receiver.session``; a plain receiver has ``session = None``. Callers branch
on that tag, never on the receiver class.

**Session detection**:
``BrokerClient.create_receiver`` returns a ``ReceiverResolution`` instead of
raising when the entity requires sessions, so the resolver can branch
explicitly.

Author: sbtoolkit contributors
Date: 2026-10-18
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional, Sequence

from .models import EntityRef, PreparedMessage, ReceiveMode, ReceivedMessage, SendTarget


class SessionHandle(ABC):
    """Lock and state operations on the session a receiver currently holds."""

    @property
    @abstractmethod
    def session_id(self) -> str:
        """Id of the locked session."""

    @property
    @abstractmethod
    def locked_until(self) -> Optional[datetime]:
        """UTC expiry of the session lock, advanced by ``renew_lock``."""

    @abstractmethod
    async def get_state(self) -> Optional[bytes]:
        """Return the session state blob, or None when unset."""

    @abstractmethod
    async def set_state(self, data: Optional[bytes]) -> None:
        """Overwrite the session state blob."""

    @abstractmethod
    async def renew_lock(self) -> datetime:
        """
        Renew the session lock.

        Raises:
            SessionLockLostError: The lock already expired or was taken over
        """


class MessageReceiver(ABC):
    """Fetch and settlement operations on one entity (or one of its sessions)."""

    entity: EntityRef
    mode: ReceiveMode

    @property
    @abstractmethod
    def session(self) -> Optional[SessionHandle]:
        """Session handle for session receivers, None for plain receivers."""

    @abstractmethod
    async def receive(self, max_count: int, max_wait: float) -> List[ReceivedMessage]:
        """Receive up to ``max_count`` messages, waiting at most ``max_wait`` seconds."""

    @abstractmethod
    async def peek(self, max_count: int) -> List[ReceivedMessage]:
        """Browse up to ``max_count`` messages past the previous peek, without locking."""

    @abstractmethod
    async def complete(self, message: ReceivedMessage) -> None:
        """Remove the message from the entity."""

    @abstractmethod
    async def abandon(self, message: ReceivedMessage) -> None:
        """Release the lock so the message is redelivered."""

    @abstractmethod
    async def defer(self, message: ReceivedMessage) -> None:
        """Set the message aside for later fetch by sequence number."""

    @abstractmethod
    async def dead_letter(
        self,
        message: ReceivedMessage,
        reason: Optional[str] = None,
        description: Optional[str] = None,
    ) -> None:
        """Move the message to the dead-letter sub-queue."""

    @abstractmethod
    async def receive_deferred(self, sequence_numbers: Sequence[int]) -> List[ReceivedMessage]:
        """Fetch deferred messages by sequence number."""

    @abstractmethod
    async def close(self) -> None:
        """Dispose the receiver, releasing any session lock."""

    @property
    def is_session(self) -> bool:
        return self.session is not None

    async def __aenter__(self) -> 'MessageReceiver':
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()


@dataclass
class ReceiverResolution:
    """
    Outcome of opening a plain receiver on an entity.

    Exactly one of ``receiver`` or ``requires_session`` is set.
    """
    entity: EntityRef
    receiver: Optional[MessageReceiver] = None
    requires_session: bool = False

    @classmethod
    def plain(cls, entity: EntityRef, receiver: MessageReceiver) -> 'ReceiverResolution':
        return cls(entity=entity, receiver=receiver)

    @classmethod
    def session_required(cls, entity: EntityRef) -> 'ReceiverResolution':
        return cls(entity=entity, requires_session=True)


class MessageBatch(ABC):
    """Size-bounded batch of outbound messages."""

    @abstractmethod
    def try_add(self, message: PreparedMessage) -> bool:
        """Add the message if it fits; return False (batch unchanged) otherwise."""

    @abstractmethod
    def __len__(self) -> int:
        """Number of messages in the batch."""


class MessageSender(ABC):
    """Sends batches to one queue or topic."""

    target: SendTarget

    @abstractmethod
    async def create_batch(self, max_size_in_bytes: Optional[int] = None) -> MessageBatch:
        """Create an empty batch sized to the broker's limit, or to ``max_size_in_bytes``."""

    @abstractmethod
    async def send_batch(self, batch: MessageBatch) -> None:
        """Send every message in the batch."""

    @abstractmethod
    async def close(self) -> None:
        """Dispose the sender."""

    async def __aenter__(self) -> 'MessageSender':
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()


class BrokerClient(ABC):
    """
    Entry point to a broker.

    **Error Handling**:
    - Entities that do not exist raise EntityNotFoundError
    - "No session / no message within the window" is never an error: it is
      reported as None / an empty list
    """

    @abstractmethod
    async def create_receiver(self, entity: EntityRef, mode: ReceiveMode) -> ReceiverResolution:
        """Open a plain receiver, or report that the entity requires sessions."""

    @abstractmethod
    async def accept_next_session(
        self,
        entity: EntityRef,
        mode: ReceiveMode,
        timeout: float,
    ) -> Optional[MessageReceiver]:
        """Lock the next available session, or return None after ``timeout`` seconds."""

    @abstractmethod
    async def accept_session(
        self,
        entity: EntityRef,
        session_id: str,
        mode: ReceiveMode,
        timeout: float,
    ) -> MessageReceiver:
        """
        Lock a named session.

        Raises:
            SessionNotAvailableError: The session is locked elsewhere past ``timeout``
        """

    @abstractmethod
    async def create_sender(self, target: SendTarget) -> MessageSender:
        """Open a sender on a queue or topic."""

    @abstractmethod
    async def close(self) -> None:
        """Release connections."""

    async def __aenter__(self) -> 'BrokerClient':
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()
