"""
Session State

Codec for the ordering-recovery record kept in a session's state blob, and
the get/set operations that bracket a session-processing run.

The canonical encoding is compact camelCase JSON::

    {"lastSeenOrderNum":5,"deferred":[{"order":6,"seq":1001}]}

``deferred`` is omitted when empty. Decoding falls back to a permissive parse
that also accepts ``[order, seq]`` pairs and a ``LastSeenOrderNum`` key.

Author: sbtoolkit contributors
Date: 2026-10-18
"""

import asyncio
import json
from collections.abc import Mapping
from typing import Any, Dict, Iterable, List, Optional, Union

from pydantic import ValidationError

from .client import MessageReceiver
from .constants import DEFAULT_SESSION_STATE_TIMEOUT
from .exceptions import InvalidMessageError, InvalidOperationError
from .logging_utils import StructuredLogger
from .models import OrderSeq, SessionOrderingState
from .renewer import SessionLockRenewer

logger = StructuredLogger('sbtoolkit.servicebus.session_state')

StateValue = Union[SessionOrderingState, dict, list, str, None]


def serialize_ordering_state(state: SessionOrderingState) -> bytes:
    """Encode the ordering record deterministically."""
    if state is None:
        raise ValueError("state is required")
    exclude = {'deferred'} if not state.deferred else None
    return state.model_dump_json(by_alias=True, exclude=exclude).encode('utf-8')


def deserialize_ordering_state(data: Optional[Union[bytes, str]]) -> Optional[SessionOrderingState]:
    """
    Decode an ordering record.

    Returns None for empty input or when neither the canonical nor the
    permissive decoder understands the payload; None means "no recoverable
    state", never an error.
    """
    if data is None or len(data) == 0:
        return None

    try:
        return SessionOrderingState.model_validate_json(data)
    except ValidationError:
        pass

    try:
        return _from_document(json.loads(data))
    except (ValueError, TypeError, KeyError, IndexError):
        return None


def _lookup(document: Dict[str, Any], key: str) -> Any:
    """Case-insensitive key lookup."""
    if key in document:
        return document[key]
    lowered = key.lower()
    for name, value in document.items():
        if isinstance(name, str) and name.lower() == lowered:
            return value
    return None


def _from_document(root: Any) -> Optional[SessionOrderingState]:
    if not isinstance(root, dict):
        return None

    last_seen_value = _lookup(root, "lastSeenOrderNum")
    last_seen = int(last_seen_value) if last_seen_value is not None else 0

    deferred: List[OrderSeq] = []
    items = _lookup(root, "deferred")
    if isinstance(items, list):
        for item in items:
            if isinstance(item, list) and len(item) >= 2:
                deferred.append(OrderSeq(order=int(item[0]), seq=int(item[1])))
            elif isinstance(item, dict):
                order, seq = _lookup(item, "order"), _lookup(item, "seq")
                if order is not None and seq is not None:
                    deferred.append(OrderSeq(order=int(order), seq=int(seq)))

    # model_construct: the permissive path does not re-apply the ge=0 bound
    return SessionOrderingState.model_construct(
        last_seen_order_num=last_seen,
        deferred=deferred,
    )


def new_ordering_state(
    last_seen_order_num: int = 0,
    deferred: Iterable[Any] = (),
) -> SessionOrderingState:
    """
    Build an ordering record.

    Deferred entries may be ``(order, seq)`` pairs or mappings with ``order``
    and ``seq`` keys.

    Raises:
        InvalidMessageError: Negative order number or malformed entry
    """
    if last_seen_order_num < 0:
        raise InvalidMessageError("lastSeenOrderNum must be >= 0")

    entries: List[OrderSeq] = []
    for item in deferred:
        if isinstance(item, Mapping) and "order" in item and "seq" in item:
            entries.append(OrderSeq(order=int(item["order"]), seq=int(item["seq"])))
        elif isinstance(item, (list, tuple)) and len(item) >= 2:
            entries.append(OrderSeq(order=int(item[0]), seq=int(item[1])))
        else:
            raise InvalidMessageError(
                "Deferred entries must be mappings with 'order' and 'seq' or two-element sequences"
            )

    return SessionOrderingState(last_seen_order_num=last_seen_order_num, deferred=entries)


def _require_session(receiver: MessageReceiver, operation: str):
    if receiver.session is None:
        raise InvalidOperationError(operation, "session state requires a session receiver")
    return receiver.session


async def get_session_state(
    receiver: MessageReceiver,
    as_string: bool = False,
    timeout: float = DEFAULT_SESSION_STATE_TIMEOUT,
) -> StateValue:
    """
    Read the state of the session ``receiver`` holds.

    Returns None when no state is set; the raw text when ``as_string``; a
    SessionOrderingState when the ordering decoder accepts it; otherwise the
    parsed JSON document, otherwise the raw text.
    """
    session = _require_session(receiver, "get_session_state")

    async with SessionLockRenewer.start(receiver):
        data = await asyncio.wait_for(session.get_state(), timeout)

    if not data:
        return None

    text = data.decode('utf-8', errors='replace')
    if as_string:
        return text

    state = deserialize_ordering_state(data)
    if state is not None:
        return state

    try:
        return json.loads(text)
    except ValueError:
        return text


async def set_session_state(
    receiver: MessageReceiver,
    value: Any,
    timeout: float = DEFAULT_SESSION_STATE_TIMEOUT,
) -> bytes:
    """
    Overwrite the state of the session ``receiver`` holds; returns the blob written.

    None writes an empty blob, an ordering record goes through the codec,
    text is UTF-8 encoded, bytes are written as is and anything else is
    written as compact JSON.
    """
    session = _require_session(receiver, "set_session_state")

    if value is None:
        data = b""
    elif isinstance(value, SessionOrderingState):
        data = serialize_ordering_state(value)
    elif isinstance(value, str):
        data = value.encode('utf-8')
    elif isinstance(value, (bytes, bytearray)):
        data = bytes(value)
    else:
        data = json.dumps(value, separators=(',', ':'), default=str).encode('utf-8')

    await asyncio.wait_for(session.set_state(data), timeout)
    logger.log_session_operation(
        operation="session_state_set",
        entity_path=receiver.entity.path,
        session_id=session.session_id,
        size_bytes=len(data),
    )
    return data
