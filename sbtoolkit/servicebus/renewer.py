"""
Session Lock Auto-Renewer

Background task that keeps a session receiver's lock alive while a
consumption loop runs, and reports a lost lock back to that loop.

Author: sbtoolkit contributors
Date: 2026-10-18
"""

import asyncio
from datetime import datetime, timezone
from typing import Optional, Union

from .client import MessageReceiver, SessionHandle
from .constants import DEFAULT_RENEW_AHEAD, MIN_RENEW_DELAY
from .exceptions import SessionLockLostError
from .logging_utils import StructuredLogger
from .metrics import get_metrics


class SessionLockRenewer:
    """
    Renews a session lock ``renew_ahead`` seconds before it expires.

    Use as an async context manager around the processing loop. The renewal
    task stops on exit (normal shutdown) or on the first failed renewal; that
    failure is written once to a single-slot fault channel and re-raised when
    the context exits, so the owner learns the lock was lost.
    """

    def __init__(
        self,
        receiver: MessageReceiver,
        renew_ahead: float = DEFAULT_RENEW_AHEAD,
        min_delay: float = MIN_RENEW_DELAY,
    ):
        if receiver.session is None:
            raise ValueError("SessionLockRenewer requires a session receiver")
        self._session: SessionHandle = receiver.session
        self._entity_path = receiver.entity.path
        self._renew_ahead = renew_ahead
        self._min_delay = min_delay
        self._task: Optional[asyncio.Task] = None
        self._fault: Optional[asyncio.Future] = None
        self._logger = StructuredLogger('sbtoolkit.servicebus.renewer')
        self._metrics = get_metrics()
        self.renewals = 0

    @classmethod
    def start(
        cls,
        receiver: MessageReceiver,
        renew_ahead: Optional[float] = None,
        min_delay: Optional[float] = None,
    ) -> Union['SessionLockRenewer', 'NoopRenewer']:
        """Return a renewer for session receivers and a no-op helper for plain ones."""
        if receiver.session is None:
            return NoopRenewer()
        return cls(
            receiver,
            renew_ahead=DEFAULT_RENEW_AHEAD if renew_ahead is None else renew_ahead,
            min_delay=MIN_RENEW_DELAY if min_delay is None else min_delay,
        )

    def compute_delay(self, now: Optional[datetime] = None) -> float:
        """Seconds to sleep before the next renewal, never below ``min_delay``."""
        locked_until = self._session.locked_until
        if locked_until is None:
            return self._min_delay
        now = now or datetime.now(timezone.utc)
        delay = (locked_until - now).total_seconds() - self._renew_ahead
        return delay if delay > self._min_delay else self._min_delay

    @property
    def fault(self) -> Optional[BaseException]:
        if self._fault is None or not self._fault.done():
            return None
        return self._fault.result()

    async def __aenter__(self) -> 'SessionLockRenewer':
        loop = asyncio.get_running_loop()
        self._fault = loop.create_future()
        self._task = asyncio.create_task(self._run())
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        fault = await self.stop()
        if fault is None:
            return
        if exc_type is None:
            raise fault
        # lock loss outranks the body failure it caused
        if issubclass(exc_type, Exception):
            raise fault from exc_val

    async def stop(self) -> Optional[BaseException]:
        """Cancel the renewal task and return the captured fault, if any."""
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        return self.fault

    def _record_fault(self, error: BaseException) -> None:
        if not self._fault.done():
            self._fault.set_result(error)

    async def _run(self) -> None:
        session_id = self._session.session_id
        while True:
            await asyncio.sleep(self.compute_delay())
            try:
                locked_until = await self._session.renew_lock()
            except SessionLockLostError as e:
                self._record_fault(e)
                self._metrics.track_lock_lost(self._entity_path)
                self._logger.log_error(
                    operation="session_lock_renew",
                    error_type=e.error_code,
                    error_message=str(e),
                    entity_path=self._entity_path,
                    session_id=session_id,
                )
                return
            except Exception as e:
                self._record_fault(e)
                self._metrics.track_error("renew_lock", type(e).__name__)
                self._logger.log_error(
                    operation="session_lock_renew",
                    error_type=type(e).__name__,
                    error_message=str(e),
                    entity_path=self._entity_path,
                    session_id=session_id,
                )
                return

            self.renewals += 1
            self._metrics.track_lock_renewed(self._entity_path)
            self._logger.log_lock_operation(
                operation="session_lock_renewed",
                entity_path=self._entity_path,
                session_id=session_id,
                locked_until=locked_until.isoformat() if locked_until else None,
            )


class NoopRenewer:
    """Stand-in used for plain receivers; there is no lock to renew."""

    renewals = 0
    fault = None

    async def __aenter__(self) -> 'NoopRenewer':
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        return None

    async def stop(self) -> None:
        return None
