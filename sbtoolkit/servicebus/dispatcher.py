"""
Per-Session Dispatcher

Outbound path: packs prepared messages into size-bounded batches and sends
them with one of three strategies.

**Strategies**:
- Sequential (default): one shared sender, arrival order, sessions optional
- Per-session auto: one sender per session, sessions run concurrently, order
  kept within each session
- Per-session workers: N workers per session pull from a shared queue, each
  with its own sender; order within a session is not kept

Both per-session strategies require a session id on every message and check
that before any network I/O. A failing session never aborts its siblings; all
failures are reported together in a DispatchError.

Author: sbtoolkit contributors
Date: 2026-10-18
"""

import asyncio
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

from .client import BrokerClient, MessageBatch, MessageSender
from .constants import ERROR_NO_MESSAGES
from .exceptions import (
    ConfigurationError,
    DispatchError,
    InvalidMessageError,
    MessageSizeExceededError,
    ParallelModeConflictError,
    SessionIdMissingError,
)
from .logging_utils import StructuredLogger
from .metrics import get_metrics
from .models import PreparedMessage, SendTarget

logger = StructuredLogger('sbtoolkit.servicebus.dispatcher')


@dataclass
class DispatchReport:
    """Counts for a finished dispatch."""
    target: str
    strategy: str
    sent: int = 0
    batches: int = 0
    sessions: Dict[str, int] = field(default_factory=dict)


def group_by_session(messages: Iterable[PreparedMessage]) -> "OrderedDict[str, List[PreparedMessage]]":
    groups: "OrderedDict[str, List[PreparedMessage]]" = OrderedDict()
    for message in messages:
        groups.setdefault(message.session_id, []).append(message)
    return groups


class _BatchPacker:
    """Fills batches on one sender and flushes them as they fill up."""

    def __init__(
        self,
        sender: MessageSender,
        report: DispatchReport,
        max_batch_size: Optional[int],
        session_id: Optional[str] = None,
    ):
        self.sender = sender
        self.report = report
        self.max_batch_size = max_batch_size
        self.session_id = session_id
        self._batch: Optional[MessageBatch] = None

    async def add(self, message: PreparedMessage) -> None:
        if self._batch is None:
            self._batch = await self.sender.create_batch()
        elif self.max_batch_size and len(self._batch) >= self.max_batch_size:
            await self.flush()
            self._batch = await self.sender.create_batch()

        if self._batch.try_add(message):
            return

        if len(self._batch) == 0:
            raise MessageSizeExceededError(
                self.sender.target.path,
                message_id=message.message_id,
                session_id=message.session_id,
            )

        await self.flush()
        self._batch = await self.sender.create_batch()
        if not self._batch.try_add(message):
            raise MessageSizeExceededError(
                self.sender.target.path,
                message_id=message.message_id,
                session_id=message.session_id,
            )

    async def flush(self) -> None:
        if self._batch is None or len(self._batch) == 0:
            return
        batch, self._batch = self._batch, None
        size = len(batch)
        await self.sender.send_batch(batch)

        self.report.sent += size
        self.report.batches += 1
        if self.session_id is not None:
            self.report.sessions[self.session_id] = self.report.sessions.get(self.session_id, 0) + size
        get_metrics().track_batch_sent(self.sender.target.path, size)
        logger.debug(
            f"Sent batch of {size} to {self.sender.target.path}",
            operation="dispatch_batch_sent",
            target=self.sender.target.path,
            session_id=self.session_id,
            count=size,
        )


async def _send_in_order(
    broker: BrokerClient,
    target: SendTarget,
    messages: List[PreparedMessage],
    report: DispatchReport,
    max_batch_size: Optional[int],
    session_id: Optional[str] = None,
) -> None:
    async with await broker.create_sender(target) as sender:
        packer = _BatchPacker(sender, report, max_batch_size, session_id)
        for message in messages:
            await packer.add(message)
        await packer.flush()


async def _send_with_workers(
    broker: BrokerClient,
    target: SendTarget,
    messages: List[PreparedMessage],
    report: DispatchReport,
    max_batch_size: Optional[int],
    workers: int,
    session_id: str,
) -> None:
    queue: "asyncio.Queue[PreparedMessage]" = asyncio.Queue()
    for message in messages:
        queue.put_nowait(message)

    async def worker() -> None:
        async with await broker.create_sender(target) as sender:
            packer = _BatchPacker(sender, report, max_batch_size, session_id)
            while True:
                try:
                    message = queue.get_nowait()
                except asyncio.QueueEmpty:
                    break
                await packer.add(message)
            await packer.flush()

    results = await asyncio.gather(
        *(worker() for _ in range(min(workers, len(messages)))),
        return_exceptions=True,
    )
    for result in results:
        if isinstance(result, BaseException):
            raise result


async def dispatch_messages(
    broker: BrokerClient,
    target: SendTarget,
    messages: Iterable[PreparedMessage],
    per_session_auto: bool = False,
    per_session_workers: int = 0,
    max_batch_size: Optional[int] = None,
) -> DispatchReport:
    """
    Send prepared messages to a queue or topic.

    Args:
        broker: Broker client
        target: Destination queue or topic
        messages: Messages in submission order
        per_session_auto: One ordered sender per session, sessions in parallel
        per_session_workers: N unordered workers per session (0 disables)
        max_batch_size: Optional cap on messages per batch

    Returns:
        DispatchReport with sent and batch counts

    Raises:
        ParallelModeConflictError: Both per-session strategies requested
        SessionIdMissingError: A per-session strategy and a message lacks a session id
        MessageSizeExceededError: Sequential mode and a message cannot fit an empty batch
        DispatchError: One or more sessions failed in a per-session strategy
    """
    messages = list(messages)
    if per_session_auto and per_session_workers:
        raise ParallelModeConflictError(target.path)
    if per_session_workers < 0:
        raise ConfigurationError(
            "per_session_workers must be >= 0",
            details={"per_session_workers": per_session_workers},
        )
    if max_batch_size is not None and max_batch_size < 1:
        raise ConfigurationError(
            "max_batch_size must be >= 1",
            details={"max_batch_size": max_batch_size},
        )
    if not messages:
        raise InvalidMessageError("empty input", message=ERROR_NO_MESSAGES)

    parallel = per_session_auto or per_session_workers > 0
    if parallel:
        missing = sum(1 for message in messages if not message.has_session)
        if missing:
            raise SessionIdMissingError(missing, target=target.path)

    strategy = "per-session-auto" if per_session_auto else (
        "per-session-workers" if per_session_workers else "sequential"
    )
    report = DispatchReport(target=target.path, strategy=strategy)

    if not parallel:
        await _send_in_order(broker, target, messages, report, max_batch_size)
        _log_finished(report)
        return report

    groups = group_by_session(messages)
    if per_session_auto:
        jobs = [
            _send_in_order(broker, target, group, report, max_batch_size, session_id)
            for session_id, group in groups.items()
        ]
    else:
        jobs = [
            _send_with_workers(broker, target, group, report, max_batch_size, per_session_workers, session_id)
            for session_id, group in groups.items()
        ]

    results = await asyncio.gather(*jobs, return_exceptions=True)

    failures: Dict[str, Exception] = {}
    for session_id, result in zip(groups, results):
        if isinstance(result, Exception):
            failures[session_id] = result
        elif isinstance(result, BaseException):
            raise result

    if failures:
        for session_id, error in failures.items():
            get_metrics().track_error("dispatch", getattr(error, "error_code", type(error).__name__))
            logger.log_error(
                operation="dispatch",
                error_type=getattr(error, "error_code", type(error).__name__),
                error_message=str(error),
                target=target.path,
                session_id=session_id,
            )
        raise DispatchError(target.path, failures, report.sent)

    _log_finished(report)
    return report


def _log_finished(report: DispatchReport) -> None:
    logger.info(
        f"Dispatched {report.sent} message(s) to {report.target}",
        operation="dispatch_finished",
        target=report.target,
        strategy=report.strategy,
        count=report.sent,
        batches=report.batches,
        sessions=len(report.sessions) or None,
    )
