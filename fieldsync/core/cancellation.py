"""
Cancellation tokens shared by every suspension point of a sync run.

A token is fired once (further calls are no-ops) and every await that goes
through it, whether a request, a retry delay or a batch pause, fails fast with
``SyncCancelledError`` instead of hanging.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, List, Optional, TypeVar

from fieldsync.core.errors import RequestTimeoutError, SyncCancelledError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CancelToken:
    """One-shot cancellation signal observed by awaits inside a session."""

    def __init__(self):
        self._event = asyncio.Event()
        self._callbacks: List[Callable[[], Any]] = []
        self.reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled") -> bool:
        """
        Fire the token.

        Args:
            reason: Human readable cause, kept for logging

        Returns:
            True if this call fired the token, False if it was already fired
        """
        if self._event.is_set():
            return False

        self.reason = reason
        self._event.set()
        logger.debug(f"Cancel token fired: {reason}")

        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            try:
                callback()
            except Exception as e:
                logger.error(f"Cancel callback failed: {e}")
        return True

    def add_callback(self, callback: Callable[[], Any]) -> Callable[[], None]:
        """Run ``callback`` when the token fires; returns a remover."""
        if self.cancelled:
            callback()
            return lambda: None

        self._callbacks.append(callback)

        def remove():
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return remove

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise SyncCancelledError(f"Sync operation was cancelled: {self.reason}")

    async def sleep(self, delay: float) -> None:
        """Sleep for ``delay`` seconds unless the token fires first."""
        self.raise_if_cancelled()
        if delay <= 0:
            return
        try:
            await asyncio.wait_for(self._event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return
        self.raise_if_cancelled()

    async def guard(self, awaitable: Awaitable[T], timeout: Optional[float] = None) -> T:
        """
        Await ``awaitable`` racing it against the token and an optional timeout.

        Args:
            awaitable: Coroutine or future to run
            timeout: Seconds before the call fails with ``RequestTimeoutError``

        Returns:
            The awaitable's result

        Raises:
            SyncCancelledError: The token fired first
            RequestTimeoutError: The timeout elapsed first
        """
        if self.cancelled:
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            self.raise_if_cancelled()

        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            done, _ = await asyncio.wait(
                {task, waiter},
                timeout=timeout,
                return_when=asyncio.FIRST_COMPLETED
            )
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            waiter.cancel()

        if task in done and not task.cancelled():
            return task.result()

        task.cancel()
        self.raise_if_cancelled()
        if task in done:
            raise SyncCancelledError("Request task was cancelled")
        raise RequestTimeoutError(f"Request timed out after {timeout}s")
