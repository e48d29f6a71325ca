"""
In-Memory Broker.

In-process implementation of the broker client interface with Azure-like
semantics: queues, topics with subscription fan-out, dead-letter sub-queues,
deferral, peek-lock with expiry, session locks with renewal, session state and
size-bounded send batches.

Used by the test suite and by ``sbtoolkit --emulator`` for dry runs.

Author: sbtoolkit contributors
Date: 2026-10-18
"""

import asyncio
import itertools
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from .client import (
    BrokerClient,
    MessageBatch,
    MessageReceiver,
    MessageSender,
    ReceiverResolution,
    SessionHandle,
)
from .constants import (
    DEFAULT_LOCK_DURATION,
    DEFAULT_MAX_DELIVERY_COUNT,
    DEAD_LETTER_SUFFIX,
    MAX_MESSAGE_SIZE,
)
from .exceptions import (
    EntityNotFoundError,
    InvalidOperationError,
    MessageLockLostError,
    MessageNotFoundError,
    SessionLockLostError,
    SessionNotAvailableError,
)
from .logging_utils import StructuredLogger
from .models import EntityRef, PreparedMessage, ReceiveMode, ReceivedMessage, SendTarget
from .validation import EntityNameValidator

# Upper bound on how long a waiter sleeps before re-checking lock expiry
_POLL_INTERVAL = 0.05


@dataclass
class _StoredMessage:
    sequence_number: int
    body: str
    message_id: str
    session_id: Optional[str]
    application_properties: Dict[str, Any]
    enqueued_time_utc: datetime
    delivery_count: int = 0
    lock_token: Optional[str] = None
    locked_until: Optional[datetime] = None
    deferred: bool = False
    dead_letter_reason: Optional[str] = None
    dead_letter_error_description: Optional[str] = None


@dataclass
class _SessionLock:
    token: str
    locked_until: datetime


@dataclass
class _EntityStore:
    """Messages of one receivable entity (a queue, a subscription or a dead-letter queue)."""
    path: str
    entity_type: str
    requires_session: bool = False
    lock_duration: float = DEFAULT_LOCK_DURATION
    max_delivery_count: Optional[int] = DEFAULT_MAX_DELIVERY_COUNT
    dead_letter: Optional['_EntityStore'] = None
    active: List[_StoredMessage] = field(default_factory=list)
    locked: Dict[str, _StoredMessage] = field(default_factory=dict)
    deferred: Dict[int, _StoredMessage] = field(default_factory=dict)
    session_locks: Dict[str, _SessionLock] = field(default_factory=dict)
    session_state: Dict[str, bytes] = field(default_factory=dict)
    accept_ticks: Dict[str, int] = field(default_factory=dict)

    def all_messages(self) -> List[_StoredMessage]:
        """Every message still on the entity (active, locked or deferred) in sequence order."""
        by_sequence = {m.sequence_number: m for m in self.active}
        by_sequence.update({m.sequence_number: m for m in self.locked.values()})
        by_sequence.update(self.deferred)
        return [by_sequence[seq] for seq in sorted(by_sequence)]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _snapshot(store: _EntityStore, message: _StoredMessage, locked: bool = True) -> ReceivedMessage:
    return ReceivedMessage(
        entity_path=store.path,
        sequence_number=message.sequence_number,
        body=message.body,
        message_id=message.message_id,
        session_id=message.session_id,
        application_properties=dict(message.application_properties),
        enqueued_time_utc=message.enqueued_time_utc,
        delivery_count=message.delivery_count,
        lock_token=message.lock_token if locked else None,
        locked_until_utc=message.locked_until if locked else None,
        dead_letter_reason=message.dead_letter_reason,
        dead_letter_error_description=message.dead_letter_error_description,
        deferred=message.deferred,
    )


class MemorySessionHandle(SessionHandle):
    """Session lock held by a MemoryReceiver."""

    def __init__(self, broker: 'InMemoryBroker', store: _EntityStore, session_id: str, lock: _SessionLock):
        self._broker = broker
        self._store = store
        self._session_id = session_id
        self._token = lock.token
        self._locked_until = lock.locked_until

    @property
    def session_id(self) -> str:
        return self._session_id

    @property
    def token(self) -> str:
        return self._token

    @property
    def locked_until(self) -> Optional[datetime]:
        lock = self._store.session_locks.get(self._session_id)
        if lock is not None and lock.token == self._token:
            self._locked_until = lock.locked_until
        return self._locked_until

    async def get_state(self) -> Optional[bytes]:
        return await self._broker._get_session_state(self)

    async def set_state(self, data: Optional[bytes]) -> None:
        await self._broker._set_session_state(self, data)

    async def renew_lock(self) -> datetime:
        return await self._broker._renew_session_lock(self)


class MemoryReceiver(MessageReceiver):
    """Receiver over one in-memory entity, optionally bound to a session."""

    def __init__(
        self,
        broker: 'InMemoryBroker',
        store: _EntityStore,
        entity: EntityRef,
        mode: ReceiveMode,
        session: Optional[MemorySessionHandle] = None,
    ):
        self._broker = broker
        self._store = store
        self._session = session
        self.entity = entity
        self.mode = mode
        self.peek_cursor = 0
        self.closed = False

    @property
    def store(self) -> _EntityStore:
        return self._store

    @property
    def session(self) -> Optional[MemorySessionHandle]:
        return self._session

    async def receive(self, max_count: int, max_wait: float) -> List[ReceivedMessage]:
        return await self._broker._receive(self, max_count, max_wait)

    async def peek(self, max_count: int) -> List[ReceivedMessage]:
        return await self._broker._peek(self, max_count)

    async def complete(self, message: ReceivedMessage) -> None:
        await self._broker._complete(self, message)

    async def abandon(self, message: ReceivedMessage) -> None:
        await self._broker._abandon(self, message)

    async def defer(self, message: ReceivedMessage) -> None:
        await self._broker._defer(self, message)

    async def dead_letter(
        self,
        message: ReceivedMessage,
        reason: Optional[str] = None,
        description: Optional[str] = None,
    ) -> None:
        await self._broker._dead_letter(self, message, reason, description)

    async def receive_deferred(self, sequence_numbers: Sequence[int]) -> List[ReceivedMessage]:
        return await self._broker._receive_deferred(self, sequence_numbers)

    async def close(self) -> None:
        if not self.closed:
            self.closed = True
            await self._broker._close_receiver(self)


class MemoryMessageBatch(MessageBatch):
    """Batch bounded by the estimated encoded size of its messages."""

    def __init__(self, max_size_in_bytes: int):
        self.max_size_in_bytes = max_size_in_bytes
        self.size_in_bytes = 0
        self.messages: List[PreparedMessage] = []

    def try_add(self, message: PreparedMessage) -> bool:
        size = message.estimated_size()
        if self.size_in_bytes + size > self.max_size_in_bytes:
            return False
        self.messages.append(message)
        self.size_in_bytes += size
        return True

    def __len__(self) -> int:
        return len(self.messages)


class MemorySender(MessageSender):
    """Sender over an in-memory queue or topic."""

    def __init__(self, broker: 'InMemoryBroker', target: SendTarget):
        self._broker = broker
        self.target = target
        self.batches_sent = 0

    async def create_batch(self, max_size_in_bytes: Optional[int] = None) -> MemoryMessageBatch:
        limit = self._broker.max_batch_size_in_bytes
        if max_size_in_bytes is not None:
            limit = min(limit, max_size_in_bytes)
        return MemoryMessageBatch(limit)

    async def send_batch(self, batch: MemoryMessageBatch) -> None:
        await self._broker.send_messages(self.target, batch.messages)
        self.batches_sent += 1

    async def close(self) -> None:
        return None


class InMemoryBroker(BrokerClient):
    """
    In-process broker.

    Entities are created up front through the admin helpers
    (``create_queue``, ``create_topic``, ``create_subscription``). All state
    is guarded by one asyncio lock; waiters (receive, accept session) sleep
    on a condition bound to it and are woken on every change.

    Attributes:
        max_batch_size_in_bytes: Size limit of batches handed out by senders
    """

    def __init__(self, max_batch_size_in_bytes: int = MAX_MESSAGE_SIZE):
        self.max_batch_size_in_bytes = max_batch_size_in_bytes
        self._queues: Dict[str, _EntityStore] = {}
        self._topics: Dict[str, List[str]] = {}
        self._subscriptions: Dict[Tuple[str, str], _EntityStore] = {}
        self._sequence_counters: Dict[str, int] = {}
        self._ticks = itertools.count(1)
        self._lock = asyncio.Lock()
        self._changed = asyncio.Condition(self._lock)
        self._logger = StructuredLogger('sbtoolkit.servicebus.memory_broker')

    # ========== Admin helpers ==========

    def _new_store(
        self,
        path: str,
        entity_type: str,
        requires_session: bool,
        lock_duration: float,
        max_delivery_count: int,
    ) -> _EntityStore:
        dead_letter = _EntityStore(
            path=f"{path}/{DEAD_LETTER_SUFFIX}",
            entity_type=entity_type,
            lock_duration=lock_duration,
            max_delivery_count=None,
        )
        return _EntityStore(
            path=path,
            entity_type=entity_type,
            requires_session=requires_session,
            lock_duration=lock_duration,
            max_delivery_count=max_delivery_count,
            dead_letter=dead_letter,
        )

    async def create_queue(
        self,
        name: str,
        requires_session: bool = False,
        lock_duration: float = DEFAULT_LOCK_DURATION,
        max_delivery_count: int = DEFAULT_MAX_DELIVERY_COUNT,
    ) -> None:
        """
        Create a queue.

        Raises:
            InvalidEntityNameError: Queue name is invalid
            InvalidOperationError: Queue already exists
        """
        EntityNameValidator.validate_queue_name(name)
        async with self._lock:
            if name in self._queues:
                raise InvalidOperationError("create_queue", f"queue '{name}' already exists")
            self._queues[name] = self._new_store(
                name, "queue", requires_session, lock_duration, max_delivery_count
            )
        self._logger.log_operation(
            operation="queue_created",
            entity_path=name,
            requires_session=requires_session,
        )

    async def create_topic(self, name: str) -> None:
        EntityNameValidator.validate_topic_name(name)
        async with self._lock:
            if name in self._topics:
                raise InvalidOperationError("create_topic", f"topic '{name}' already exists")
            self._topics[name] = []
        self._logger.log_operation(operation="topic_created", entity_path=name)

    async def create_subscription(
        self,
        topic: str,
        name: str,
        requires_session: bool = False,
        lock_duration: float = DEFAULT_LOCK_DURATION,
        max_delivery_count: int = DEFAULT_MAX_DELIVERY_COUNT,
    ) -> None:
        """
        Create a subscription on an existing topic.

        Raises:
            EntityNotFoundError: Topic does not exist
            InvalidOperationError: Subscription already exists
        """
        EntityNameValidator.validate_subscription_name(name)
        entity = EntityRef.for_subscription(topic, name)
        async with self._lock:
            if topic not in self._topics:
                raise EntityNotFoundError("topic", topic)
            if (topic, name) in self._subscriptions:
                raise InvalidOperationError("create_subscription", f"subscription '{entity.path}' already exists")
            self._topics[topic].append(name)
            self._subscriptions[(topic, name)] = self._new_store(
                entity.path, "subscription", requires_session, lock_duration, max_delivery_count
            )
        self._logger.log_operation(
            operation="subscription_created",
            entity_path=entity.path,
            requires_session=requires_session,
        )

    def message_counts(self, entity: EntityRef) -> Dict[str, int]:
        """Counts of active, locked, deferred and dead-lettered messages."""
        store = self._store_for(entity)
        return {
            "active": len(store.active),
            "locked": len([m for m in store.locked.values() if not m.deferred]),
            "deferred": len(store.deferred),
            "dead_letter": len(store.dead_letter.all_messages()) if store.dead_letter else 0,
        }

    async def expire_session_lock(self, entity: EntityRef, session_id: str) -> None:
        """Drop a session lock as if it had expired (for lock-loss testing)."""
        async with self._changed:
            store = self._store_for(entity)
            if session_id in store.session_locks:
                self._release_session(store, session_id)
                self._changed.notify_all()

    # ========== Internal state handling ==========

    def _store_for(self, entity: EntityRef) -> _EntityStore:
        if entity.is_queue:
            store = self._queues.get(entity.queue)
        else:
            store = self._subscriptions.get((entity.topic, entity.subscription))
        if store is None:
            raise EntityNotFoundError(entity.entity_type, entity.base_path)
        return store.dead_letter if entity.dead_letter else store

    def _next_sequence(self, key: str) -> int:
        value = self._sequence_counters.get(key, 0) + 1
        self._sequence_counters[key] = value
        return value

    def _lock_message(self, store: _EntityStore, message: _StoredMessage, locked_until: datetime) -> None:
        token = str(uuid.uuid4())
        message.lock_token = token
        message.locked_until = locked_until
        message.delivery_count += 1
        store.locked[token] = message

    def _unlock(self, store: _EntityStore, message: _StoredMessage) -> None:
        """Return a message whose lock ended without settlement."""
        message.lock_token = None
        message.locked_until = None
        if message.deferred:
            return
        if store.max_delivery_count is not None and message.delivery_count >= store.max_delivery_count:
            self._move_to_dead_letter(
                store,
                message,
                "MaxDeliveryCountExceeded",
                "The message has exceeded the maximum delivery count",
            )
            return
        store.active.append(message)
        store.active.sort(key=lambda m: m.sequence_number)

    def _move_to_dead_letter(
        self,
        store: _EntityStore,
        message: _StoredMessage,
        reason: Optional[str],
        description: Optional[str],
    ) -> None:
        store.deferred.pop(message.sequence_number, None)
        message.lock_token = None
        message.locked_until = None
        message.deferred = False
        message.dead_letter_reason = reason
        message.dead_letter_error_description = description
        if store.dead_letter is not None:
            store.dead_letter.active.append(message)
            store.dead_letter.active.sort(key=lambda m: m.sequence_number)

    def _release_session(self, store: _EntityStore, session_id: str) -> None:
        store.session_locks.pop(session_id, None)
        for token, message in list(store.locked.items()):
            if message.session_id == session_id:
                del store.locked[token]
                self._unlock(store, message)

    def _expire_locks(self, store: _EntityStore) -> None:
        now = _utcnow()
        for session_id, lock in list(store.session_locks.items()):
            if lock.locked_until <= now:
                self._logger.log_lock_operation(
                    operation="session_lock_expired",
                    entity_path=store.path,
                    session_id=session_id,
                )
                self._release_session(store, session_id)
        for token, message in list(store.locked.items()):
            if store.requires_session and message.session_id:
                continue
            if message.locked_until is not None and message.locked_until <= now:
                del store.locked[token]
                self._unlock(store, message)

    def _check_receiver(self, receiver: MemoryReceiver) -> None:
        if receiver.closed:
            raise InvalidOperationError("receive", "the receiver is closed")
        self._expire_locks(receiver.store)
        session = receiver.session
        if session is None:
            return
        lock = receiver.store.session_locks.get(session.session_id)
        if lock is None or lock.token != session.token:
            raise SessionLockLostError(session.session_id, receiver.store.path)

    def _take_locked(self, receiver: MemoryReceiver, message: ReceivedMessage) -> _StoredMessage:
        if receiver.mode == ReceiveMode.PEEK:
            raise InvalidOperationError("settle", "peeked messages cannot be settled")
        self._check_receiver(receiver)
        store = receiver.store
        stored = store.locked.get(message.lock_token) if message.lock_token else None
        if stored is None or (
            receiver.session is not None and stored.session_id != receiver.session.session_id
        ):
            raise MessageLockLostError(
                message.message_id or str(message.sequence_number),
                message.lock_token,
            )
        del store.locked[message.lock_token]
        return stored

    async def _wait(self, deadline: float) -> bool:
        """Wait for a change (or the poll interval); False once the deadline passed."""
        loop = asyncio.get_running_loop()
        remaining = deadline - loop.time()
        if remaining <= 0:
            return False
        try:
            await asyncio.wait_for(self._changed.wait(), min(remaining, _POLL_INTERVAL))
        except asyncio.TimeoutError:
            pass
        return True

    # ========== BrokerClient ==========

    async def create_receiver(self, entity: EntityRef, mode: ReceiveMode) -> ReceiverResolution:
        async with self._lock:
            store = self._store_for(entity)
            if store.requires_session:
                return ReceiverResolution.session_required(entity)
            return ReceiverResolution.plain(
                entity, MemoryReceiver(self, store, entity, ReceiveMode(mode))
            )

    def _lock_session(self, store: _EntityStore, session_id: str) -> _SessionLock:
        lock = _SessionLock(
            token=str(uuid.uuid4()),
            locked_until=_utcnow() + timedelta(seconds=store.lock_duration),
        )
        store.session_locks[session_id] = lock
        store.accept_ticks[session_id] = next(self._ticks)
        return lock

    async def accept_next_session(
        self,
        entity: EntityRef,
        mode: ReceiveMode,
        timeout: float,
    ) -> Optional[MemoryReceiver]:
        """
        Lock the next available session with pending messages.

        Sessions accepted least recently are offered first.
        """
        deadline = asyncio.get_running_loop().time() + timeout
        async with self._changed:
            store = self._store_for(entity)
            if not store.requires_session:
                raise InvalidOperationError("accept_next_session", f"'{store.path}' is not session-enabled")
            while True:
                self._expire_locks(store)
                candidates: Dict[str, int] = {}
                for message in store.active:
                    if message.session_id and message.session_id not in store.session_locks:
                        candidates.setdefault(message.session_id, message.sequence_number)
                if candidates:
                    session_id = min(
                        candidates,
                        key=lambda sid: (store.accept_ticks.get(sid, 0), candidates[sid]),
                    )
                    lock = self._lock_session(store, session_id)
                    return MemoryReceiver(
                        self, store, entity, ReceiveMode(mode),
                        MemorySessionHandle(self, store, session_id, lock),
                    )
                if not await self._wait(deadline):
                    return None

    async def accept_session(
        self,
        entity: EntityRef,
        session_id: str,
        mode: ReceiveMode,
        timeout: float,
    ) -> MemoryReceiver:
        deadline = asyncio.get_running_loop().time() + timeout
        async with self._changed:
            store = self._store_for(entity)
            if not store.requires_session:
                raise InvalidOperationError("accept_session", f"'{store.path}' is not session-enabled")
            while True:
                self._expire_locks(store)
                if session_id not in store.session_locks:
                    lock = self._lock_session(store, session_id)
                    return MemoryReceiver(
                        self, store, entity, ReceiveMode(mode),
                        MemorySessionHandle(self, store, session_id, lock),
                    )
                if not await self._wait(deadline):
                    raise SessionNotAvailableError(session_id, store.path)

    async def create_sender(self, target: SendTarget) -> MemorySender:
        async with self._lock:
            if target.queue and target.queue not in self._queues:
                raise EntityNotFoundError("queue", target.queue)
            if target.topic and target.topic not in self._topics:
                raise EntityNotFoundError("topic", target.topic)
        return MemorySender(self, target)

    async def close(self) -> None:
        return None

    # ========== Send ==========

    async def send_messages(self, target: SendTarget, messages: Iterable[PreparedMessage]) -> List[int]:
        """
        Enqueue messages directly, bypassing batch size limits.

        Returns:
            Assigned sequence numbers

        Raises:
            EntityNotFoundError: Target does not exist
            InvalidOperationError: A session queue receives a message without session id
        """
        messages = list(messages)
        async with self._changed:
            if target.queue:
                store = self._queues.get(target.queue)
                if store is None:
                    raise EntityNotFoundError("queue", target.queue)
                stores = [store]
                if store.requires_session and any(not m.session_id for m in messages):
                    raise InvalidOperationError(
                        "send", f"queue '{target.queue}' requires a session id on every message"
                    )
            else:
                if target.topic not in self._topics:
                    raise EntityNotFoundError("topic", target.topic)
                stores = [self._subscriptions[(target.topic, sub)] for sub in self._topics[target.topic]]

            now = _utcnow()
            sequence_numbers = []
            for message in messages:
                sequence_number = self._next_sequence(target.path)
                sequence_numbers.append(sequence_number)
                message_id = message.message_id or uuid.uuid4().hex
                for store in stores:
                    store.active.append(_StoredMessage(
                        sequence_number=sequence_number,
                        body=message.body,
                        message_id=message_id,
                        session_id=message.session_id,
                        application_properties=dict(message.application_properties),
                        enqueued_time_utc=now,
                    ))
            self._changed.notify_all()

        self._logger.debug(
            f"Enqueued {len(messages)} message(s) on {target.path}",
            operation="messages_enqueued",
            target=target.path,
            count=len(messages),
        )
        return sequence_numbers

    # ========== Receive ==========

    async def _receive(self, receiver: MemoryReceiver, max_count: int, max_wait: float) -> List[ReceivedMessage]:
        if receiver.mode == ReceiveMode.PEEK:
            raise InvalidOperationError("receive", "the receiver was opened in peek mode")
        deadline = asyncio.get_running_loop().time() + max_wait
        async with self._changed:
            while True:
                self._check_receiver(receiver)
                store = receiver.store
                session = receiver.session
                if session is not None:
                    available = [m for m in store.active if m.session_id == session.session_id]
                    locked_until = store.session_locks[session.session_id].locked_until
                else:
                    available = list(store.active)
                    locked_until = _utcnow() + timedelta(seconds=store.lock_duration)

                if available:
                    taken = available[:max_count]
                    taken_ids = {id(m) for m in taken}
                    store.active = [m for m in store.active if id(m) not in taken_ids]
                    for message in taken:
                        self._lock_message(store, message, locked_until)
                    return [_snapshot(store, m) for m in taken]

                if not await self._wait(deadline):
                    return []

    async def _peek(self, receiver: MemoryReceiver, max_count: int) -> List[ReceivedMessage]:
        async with self._lock:
            self._check_receiver(receiver)
            store = receiver.store
            session_id = receiver.session.session_id if receiver.session else None
            peeked = [
                m for m in store.all_messages()
                if m.sequence_number >= receiver.peek_cursor
                and (session_id is None or m.session_id == session_id)
            ][:max_count]
            if peeked:
                receiver.peek_cursor = peeked[-1].sequence_number + 1
            return [_snapshot(store, m, locked=False) for m in peeked]

    async def _receive_deferred(
        self,
        receiver: MemoryReceiver,
        sequence_numbers: Sequence[int],
    ) -> List[ReceivedMessage]:
        async with self._lock:
            self._check_receiver(receiver)
            store = receiver.store
            session = receiver.session
            result = []
            for sequence_number in sequence_numbers:
                message = store.deferred.get(sequence_number)
                if message is None or (session is not None and message.session_id != session.session_id):
                    raise MessageNotFoundError(sequence_number, store.path)
                if message.lock_token is not None:
                    raise InvalidOperationError(
                        "receive_deferred", f"message {sequence_number} is already locked"
                    )
                if session is not None:
                    locked_until = store.session_locks[session.session_id].locked_until
                else:
                    locked_until = _utcnow() + timedelta(seconds=store.lock_duration)
                self._lock_message(store, message, locked_until)
                result.append(_snapshot(store, message))
            return result

    # ========== Settlement ==========

    async def _complete(self, receiver: MemoryReceiver, message: ReceivedMessage) -> None:
        async with self._changed:
            stored = self._take_locked(receiver, message)
            receiver.store.deferred.pop(stored.sequence_number, None)
            self._changed.notify_all()

    async def _abandon(self, receiver: MemoryReceiver, message: ReceivedMessage) -> None:
        async with self._changed:
            stored = self._take_locked(receiver, message)
            self._unlock(receiver.store, stored)
            self._changed.notify_all()

    async def _defer(self, receiver: MemoryReceiver, message: ReceivedMessage) -> None:
        async with self._changed:
            stored = self._take_locked(receiver, message)
            stored.lock_token = None
            stored.locked_until = None
            stored.deferred = True
            receiver.store.deferred[stored.sequence_number] = stored
            self._changed.notify_all()

    async def _dead_letter(
        self,
        receiver: MemoryReceiver,
        message: ReceivedMessage,
        reason: Optional[str],
        description: Optional[str],
    ) -> None:
        async with self._changed:
            if receiver.store.dead_letter is None:
                raise InvalidOperationError("dead-letter", "messages on a dead-letter queue cannot be dead-lettered")
            stored = self._take_locked(receiver, message)
            self._move_to_dead_letter(receiver.store, stored, reason, description)
            self._changed.notify_all()

    # ========== Sessions ==========

    def _held_lock(self, handle: MemorySessionHandle) -> _SessionLock:
        store = handle._store
        self._expire_locks(store)
        lock = store.session_locks.get(handle.session_id)
        if lock is None or lock.token != handle.token:
            raise SessionLockLostError(handle.session_id, store.path)
        return lock

    async def _renew_session_lock(self, handle: MemorySessionHandle) -> datetime:
        async with self._lock:
            lock = self._held_lock(handle)
            store = handle._store
            lock.locked_until = _utcnow() + timedelta(seconds=store.lock_duration)
            for message in store.locked.values():
                if message.session_id == handle.session_id:
                    message.locked_until = lock.locked_until
            return lock.locked_until

    async def _get_session_state(self, handle: MemorySessionHandle) -> Optional[bytes]:
        async with self._lock:
            self._held_lock(handle)
            return handle._store.session_state.get(handle.session_id)

    async def _set_session_state(self, handle: MemorySessionHandle, data: Optional[bytes]) -> None:
        async with self._lock:
            self._held_lock(handle)
            handle._store.session_state[handle.session_id] = data or b""

    async def _close_receiver(self, receiver: MemoryReceiver) -> None:
        session = receiver.session
        if session is None:
            return
        async with self._changed:
            lock = receiver.store.session_locks.get(session.session_id)
            if lock is not None and lock.token == session.token:
                self._release_session(receiver.store, session.session_id)
                self._changed.notify_all()
