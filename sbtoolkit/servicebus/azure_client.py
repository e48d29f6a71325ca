"""
Azure Service Bus Adapter

Implements the broker client interface over ``azure.servicebus.aio``.

**Session detection**:
A freshly created plain receiver is probed with a one-message peek. The
service refuses non-session links on session-enabled entities; that refusal
(an error whose text mentions sessions) is turned into
``ReceiverResolution.session_required`` instead of propagating.

**Peek cursor**:
Each receiver tracks the sequence number to peek from next, so successive
peeks advance and the probe does not consume a position.

Author: sbtoolkit contributors
Date: 2026-10-18
"""

from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple

from azure.servicebus import NEXT_AVAILABLE_SESSION, ServiceBusMessage, ServiceBusSubQueue
from azure.servicebus.aio import ServiceBusClient
from azure.servicebus.exceptions import (
    MessageLockLostError as SdkMessageLockLostError,
    MessageNotFoundError as SdkMessageNotFoundError,
    MessageSizeExceededError as SdkMessageSizeExceededError,
    MessagingEntityNotFoundError,
    OperationTimeoutError,
    ServiceBusConnectionError as SdkConnectionError,
    ServiceBusError as SdkServiceBusError,
    SessionCannotBeLockedError,
    SessionLockLostError as SdkSessionLockLostError,
)

from .client import (
    BrokerClient,
    MessageBatch,
    MessageReceiver,
    MessageSender,
    ReceiverResolution,
    SessionHandle,
)
from .exceptions import (
    BrokerError,
    EntityNotFoundError,
    MessageLockLostError,
    MessageNotFoundError,
    MessageSizeExceededError,
    ServiceBusConnectionError,
    SessionLockLostError,
    SessionNotAvailableError,
)
from .logging_utils import StructuredLogger
from .models import EntityRef, PreparedMessage, ReceiveMode, ReceivedMessage, SendTarget

logger = StructuredLogger('sbtoolkit.servicebus.azure_client')


def _decode(value: Any) -> Any:
    if isinstance(value, (bytes, bytearray)):
        return value.decode('utf-8', errors='replace')
    return value


def requires_session_error(error: Exception) -> bool:
    """True when the service refused a non-session link on a session-enabled entity."""
    return "session" in str(error).lower()


@contextmanager
def translate_errors(
    entity_type: str,
    entity_path: str,
    session_id: Optional[str] = None,
    passthrough: Tuple[type, ...] = (),
):
    """
    Map azure-servicebus exceptions onto the toolkit hierarchy.

    SDK errors without a specific counterpart become BrokerError, except the
    ``passthrough`` types, which the caller handles itself.
    """
    try:
        yield
    except MessagingEntityNotFoundError as e:
        raise EntityNotFoundError(entity_type, entity_path) from e
    except SdkSessionLockLostError as e:
        raise SessionLockLostError(session_id or "", entity_path) from e
    except SessionCannotBeLockedError as e:
        raise SessionNotAvailableError(session_id or "", entity_path) from e
    except SdkMessageLockLostError as e:
        raise MessageLockLostError("", message=str(e)) from e
    except SdkMessageSizeExceededError as e:
        raise MessageSizeExceededError(entity_path) from e
    except SdkConnectionError as e:
        raise ServiceBusConnectionError(str(e)) from e
    except SdkServiceBusError as e:
        if isinstance(e, passthrough):
            raise
        raise BrokerError(
            entity_type,
            entity_path,
            str(e),
            error_type=type(e).__name__,
            session_id=session_id,
            retryable=bool(getattr(e, "retryable", False)),
        ) from e


def to_received(entity_path: str, message: Any) -> ReceivedMessage:
    """Convert an azure ``ServiceBusReceivedMessage``; the original stays on ``raw``."""
    properties = {
        _decode(key): _decode(value)
        for key, value in (message.application_properties or {}).items()
    }
    lock_token = getattr(message, "lock_token", None)
    return ReceivedMessage(
        entity_path=entity_path,
        sequence_number=message.sequence_number,
        body=str(message),
        message_id=message.message_id,
        session_id=message.session_id,
        application_properties=properties,
        enqueued_time_utc=message.enqueued_time_utc,
        delivery_count=message.delivery_count or 0,
        lock_token=str(lock_token) if lock_token else None,
        locked_until_utc=getattr(message, "locked_until_utc", None),
        dead_letter_reason=message.dead_letter_reason,
        dead_letter_error_description=message.dead_letter_error_description,
        deferred=getattr(getattr(message, "state", None), "name", "") == "DEFERRED",
        raw=message,
    )


def to_sdk_message(message: PreparedMessage) -> ServiceBusMessage:
    return ServiceBusMessage(
        message.body,
        session_id=message.session_id,
        application_properties=dict(message.application_properties) or None,
        message_id=message.message_id,
    )


class AzureSessionHandle(SessionHandle):
    """Wraps ``receiver.session`` of an azure session receiver."""

    def __init__(self, session: Any, entity: EntityRef):
        self._session = session
        self._entity = entity

    @property
    def session_id(self) -> str:
        return self._session.session_id

    @property
    def locked_until(self) -> Optional[datetime]:
        return self._session.locked_until_utc

    async def get_state(self) -> Optional[bytes]:
        with translate_errors(self._entity.entity_type, self._entity.path, self.session_id):
            return await self._session.get_state()

    async def set_state(self, data: Optional[bytes]) -> None:
        with translate_errors(self._entity.entity_type, self._entity.path, self.session_id):
            await self._session.set_state(data)

    async def renew_lock(self) -> datetime:
        with translate_errors(self._entity.entity_type, self._entity.path, self.session_id):
            return await self._session.renew_lock()


class AzureReceiver(MessageReceiver):
    """Adapter over ``azure.servicebus.aio.ServiceBusReceiver``."""

    def __init__(self, receiver: Any, entity: EntityRef, mode: ReceiveMode, session_bound: bool = False):
        self._receiver = receiver
        self.entity = entity
        self.mode = mode
        self._session = AzureSessionHandle(receiver.session, entity) if session_bound else None
        self._peek_from = 1

    @property
    def session(self) -> Optional[AzureSessionHandle]:
        return self._session

    def _errors(self, passthrough: Tuple[type, ...] = ()):
        return translate_errors(
            self.entity.entity_type,
            self.entity.path,
            self._session.session_id if self._session else None,
            passthrough=passthrough,
        )

    async def probe(self) -> None:
        """Issue a one-message peek that leaves the peek cursor untouched."""
        await self._receiver.peek_messages(max_message_count=1, sequence_number=self._peek_from)

    async def receive(self, max_count: int, max_wait: float) -> List[ReceivedMessage]:
        with self._errors():
            messages = await self._receiver.receive_messages(
                max_message_count=max_count,
                max_wait_time=max_wait,
            )
        return [to_received(self.entity.path, m) for m in messages]

    async def peek(self, max_count: int) -> List[ReceivedMessage]:
        with self._errors():
            messages = await self._receiver.peek_messages(
                max_message_count=max_count,
                sequence_number=self._peek_from,
            )
        if messages:
            self._peek_from = messages[-1].sequence_number + 1
        return [to_received(self.entity.path, m) for m in messages]

    async def complete(self, message: ReceivedMessage) -> None:
        with self._errors():
            await self._receiver.complete_message(message.raw)

    async def abandon(self, message: ReceivedMessage) -> None:
        with self._errors():
            await self._receiver.abandon_message(message.raw)

    async def defer(self, message: ReceivedMessage) -> None:
        with self._errors():
            await self._receiver.defer_message(message.raw)

    async def dead_letter(
        self,
        message: ReceivedMessage,
        reason: Optional[str] = None,
        description: Optional[str] = None,
    ) -> None:
        with self._errors():
            await self._receiver.dead_letter_message(
                message.raw,
                reason=reason,
                error_description=description,
            )

    async def receive_deferred(self, sequence_numbers: Sequence[int]) -> List[ReceivedMessage]:
        try:
            with self._errors(passthrough=(SdkMessageNotFoundError,)):
                messages = await self._receiver.receive_deferred_messages(
                    sequence_numbers=list(sequence_numbers)
                )
        except SdkMessageNotFoundError as e:
            raise MessageNotFoundError(sequence_numbers[0], self.entity.path, message=str(e)) from e
        return [to_received(self.entity.path, m) for m in messages]

    async def close(self) -> None:
        await self._receiver.close()


class AzureMessageBatch(MessageBatch):
    """Wraps ``ServiceBusMessageBatch``; ``try_add`` reports the size limit instead of raising."""

    def __init__(self, batch: Any):
        self.batch = batch
        self._count = 0

    def try_add(self, message: PreparedMessage) -> bool:
        try:
            self.batch.add_message(to_sdk_message(message))
        except SdkMessageSizeExceededError:
            return False
        self._count += 1
        return True

    def __len__(self) -> int:
        return self._count


class AzureSender(MessageSender):
    """Adapter over ``azure.servicebus.aio.ServiceBusSender``."""

    def __init__(self, sender: Any, target: SendTarget):
        self._sender = sender
        self.target = target

    async def create_batch(self, max_size_in_bytes: Optional[int] = None) -> AzureMessageBatch:
        entity_type = "queue" if self.target.queue else "topic"
        with translate_errors(entity_type, self.target.path):
            if max_size_in_bytes is None:
                batch = await self._sender.create_message_batch()
            else:
                batch = await self._sender.create_message_batch(max_size_in_bytes=max_size_in_bytes)
        return AzureMessageBatch(batch)

    async def send_batch(self, batch: AzureMessageBatch) -> None:
        entity_type = "queue" if self.target.queue else "topic"
        with translate_errors(entity_type, self.target.path):
            await self._sender.send_messages(batch.batch)

    async def close(self) -> None:
        await self._sender.close()


class AzureServiceBusBroker(BrokerClient):
    """Broker client backed by a single ``ServiceBusClient`` connection."""

    def __init__(self, client: ServiceBusClient):
        self._client = client

    @classmethod
    def from_connection_string(cls, connection_string: str, **kwargs) -> 'AzureServiceBusBroker':
        return cls(ServiceBusClient.from_connection_string(connection_string, **kwargs))

    def _receiver_kwargs(self, entity: EntityRef, **kwargs) -> Dict[str, Any]:
        if entity.dead_letter:
            kwargs["sub_queue"] = ServiceBusSubQueue.DEAD_LETTER
        return kwargs

    def _get_receiver(self, entity: EntityRef, **kwargs) -> Any:
        kwargs = self._receiver_kwargs(entity, **kwargs)
        if entity.is_queue:
            return self._client.get_queue_receiver(entity.queue, **kwargs)
        return self._client.get_subscription_receiver(entity.topic, entity.subscription, **kwargs)

    async def create_receiver(self, entity: EntityRef, mode: ReceiveMode) -> ReceiverResolution:
        receiver = AzureReceiver(self._get_receiver(entity), entity, ReceiveMode(mode))
        try:
            await receiver.probe()
        except SdkServiceBusError as e:
            await receiver.close()
            # checked on the raw SDK error: any subclass may carry the refusal
            if requires_session_error(e):
                logger.debug(
                    f"{entity.path} requires sessions",
                    operation="session_probe",
                    entity_path=entity.path,
                )
                return ReceiverResolution.session_required(entity)
            with translate_errors(entity.entity_type, entity.base_path):
                raise
        except Exception:
            await receiver.close()
            raise
        return ReceiverResolution.plain(entity, receiver)

    async def _open_session(
        self,
        entity: EntityRef,
        session_id: Any,
        mode: ReceiveMode,
        timeout: float,
    ) -> AzureReceiver:
        sdk_receiver = self._get_receiver(entity, session_id=session_id, max_wait_time=timeout)
        with translate_errors(entity.entity_type, entity.base_path, passthrough=(OperationTimeoutError,)):
            await sdk_receiver.__aenter__()
        return AzureReceiver(sdk_receiver, entity, ReceiveMode(mode), session_bound=True)

    async def accept_next_session(
        self,
        entity: EntityRef,
        mode: ReceiveMode,
        timeout: float,
    ) -> Optional[AzureReceiver]:
        try:
            return await self._open_session(entity, NEXT_AVAILABLE_SESSION, mode, timeout)
        except OperationTimeoutError:
            return None

    async def accept_session(
        self,
        entity: EntityRef,
        session_id: str,
        mode: ReceiveMode,
        timeout: float,
    ) -> AzureReceiver:
        try:
            return await self._open_session(entity, session_id, mode, timeout)
        except OperationTimeoutError as e:
            raise SessionNotAvailableError(session_id, entity.path) from e

    async def create_sender(self, target: SendTarget) -> AzureSender:
        if target.queue:
            sender = self._client.get_queue_sender(target.queue)
        else:
            sender = self._client.get_topic_sender(target.topic)
        return AzureSender(sender, target)

    async def close(self) -> None:
        await self._client.close()
