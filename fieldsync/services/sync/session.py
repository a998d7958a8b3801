"""
Sync sessions: one bounded, cancellable run of down-sync or up-sync.

A session owns the cancel token threaded through every suspension point of
its run, a wall-clock deadline, and the set of in-flight request tasks. When
the session scope closes, on any exit path, outstanding requests are cancelled
and released.
"""

import asyncio
import enum
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional, Set, TypeVar

from fieldsync.core.cancellation import CancelToken
from fieldsync.core.errors import SyncCancelledError
from fieldsync.core.retry import BackoffPolicy, BackoffRetryExecutor
from fieldsync.services.connectivity import ConnectivityMonitor, ConnectivityState

logger = logging.getLogger(__name__)

T = TypeVar("T")

ABORTED_ERROR_COUNT = -2
UNEXPECTED_ERROR_COUNT = -1


class SyncKind(str, enum.Enum):
    DOWN = "down"
    UP = "up"


class SyncOutcome(str, enum.Enum):
    """How a run ended, as presented to the shell."""
    COMPLETED = "completed"
    PARTIAL = "partial"
    OFFLINE = "offline"
    ABORTED = "aborted"
    FAILED = "failed"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class SyncResult:
    """
    Result handed to the shell after every run.

    ``error_count`` doubles as a sentinel: -2 means the run was aborted
    (cancelled, deadline exceeded or connectivity lost) and -1 means it failed
    unexpectedly. ``outcome`` states the same thing explicitly.
    """
    success: bool
    synced_count: int = 0
    error_count: int = 0
    outcome: Optional[SyncOutcome] = None
    detail: Optional[str] = None
    timestamp: datetime = field(default_factory=_utcnow)

    def __post_init__(self):
        if self.outcome is None:
            object.__setattr__(self, "outcome", self._derive_outcome())

    def _derive_outcome(self) -> SyncOutcome:
        if self.error_count == ABORTED_ERROR_COUNT:
            return SyncOutcome.ABORTED
        if self.error_count == UNEXPECTED_ERROR_COUNT:
            return SyncOutcome.FAILED
        if self.success:
            return SyncOutcome.COMPLETED
        if self.error_count > 0:
            return SyncOutcome.PARTIAL if self.synced_count > 0 else SyncOutcome.FAILED
        return SyncOutcome.OFFLINE

    @classmethod
    def completed(cls, synced_count: int, error_count: int) -> "SyncResult":
        return cls(success=error_count == 0, synced_count=synced_count, error_count=error_count)

    @classmethod
    def offline(cls) -> "SyncResult":
        return cls(success=False, synced_count=0, error_count=0, outcome=SyncOutcome.OFFLINE)

    @classmethod
    def failed(cls, detail: Optional[str] = None) -> "SyncResult":
        """The run could not get its data at all (e.g. the remote read was exhausted)."""
        return cls(
            success=False, synced_count=0, error_count=1,
            outcome=SyncOutcome.FAILED, detail=detail
        )

    @classmethod
    def aborted(cls, synced_count: int = 0, detail: Optional[str] = None) -> "SyncResult":
        return cls(
            success=False, synced_count=synced_count, error_count=ABORTED_ERROR_COUNT,
            outcome=SyncOutcome.ABORTED, detail=detail
        )

    @classmethod
    def unexpected(cls, detail: Optional[str] = None) -> "SyncResult":
        return cls(
            success=False, synced_count=0, error_count=UNEXPECTED_ERROR_COUNT,
            outcome=SyncOutcome.FAILED, detail=detail
        )

    @property
    def is_aborted(self) -> bool:
        return self.error_count == ABORTED_ERROR_COUNT

    def to_dict(self) -> Dict[str, Any]:
        return {
            'success': self.success,
            'synced_count': self.synced_count,
            'error_count': self.error_count,
            'outcome': self.outcome.value,
            'detail': self.detail,
            'timestamp': self.timestamp.isoformat(),
        }


SessionBody = Callable[["SyncSession"], Awaitable[SyncResult]]


class SyncSession:
    """
    Scope for a single sync run.

    Engines issue remote calls through :meth:`request`, which applies the
    retry policy and a per-request timeout that never outlives the session
    deadline, and pause through :meth:`pause`. Both fail fast with
    ``SyncCancelledError`` once the session is cancelled.
    """

    def __init__(
        self,
        kind: SyncKind,
        executor: BackoffRetryExecutor,
        policy: BackoffPolicy,
        monitor: ConnectivityMonitor,
        deadline_seconds: float = 120.0,
        abort_on_disconnect: bool = True
    ):
        self.kind = kind
        self.executor = executor
        self.policy = policy
        self.monitor = monitor
        self.deadline_seconds = deadline_seconds
        self.abort_on_disconnect = abort_on_disconnect

        self.token = CancelToken()
        self.token.add_callback(self._cancel_active_requests)
        self.active_requests: Set[asyncio.Future] = set()
        self.synced_count = 0
        self.error_count = 0

        self._started_at: Optional[float] = None
        self._deadline_handle: Optional[asyncio.TimerHandle] = None
        self._unsubscribe: Optional[Callable[[], None]] = None
        self._open = False

    @property
    def cancelled(self) -> bool:
        return self.token.cancelled

    async def __aenter__(self) -> "SyncSession":
        loop = asyncio.get_running_loop()
        self._open = True
        self._started_at = loop.time()
        self._deadline_handle = loop.call_later(
            self.deadline_seconds, self.cancel, "session deadline exceeded"
        )
        if self.abort_on_disconnect:
            self._unsubscribe = self.monitor.subscribe(self._on_connectivity_change)
        logger.debug(f"{self.kind.value}-sync session opened")
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def close(self) -> None:
        """Cancel everything still in flight and drop the references."""
        if not self._open:
            return
        self._open = False

        if self._deadline_handle is not None:
            self._deadline_handle.cancel()
            self._deadline_handle = None
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

        self.token.cancel("session closed")
        self._cancel_active_requests()
        logger.debug(f"{self.kind.value}-sync session closed")

    async def run(self, body: SessionBody) -> SyncResult:
        """
        Run an engine body inside this session.

        Cancellation of any kind becomes the aborted result and any other
        exception becomes the unexpected-failure result; neither escapes.
        """
        async with self:
            try:
                return await body(self)
            except SyncCancelledError as e:
                reason = self.token.reason or str(e)
                logger.warning(
                    f"{self.kind.value}-sync aborted ({reason}) after {self.synced_count} synced"
                )
                return SyncResult.aborted(self.synced_count, detail=reason)
            except Exception as e:
                logger.error(f"Unexpected error during {self.kind.value}-sync: {e}", exc_info=True)
                return SyncResult.unexpected(detail=str(e))

    def cancel(self, reason: str = "cancelled") -> bool:
        """Fire the session token; a second call is a no-op returning False."""
        fired = self.token.cancel(reason)
        if fired:
            logger.info(f"Cancelling {self.kind.value}-sync session: {reason}")
        return fired

    def raise_if_cancelled(self) -> None:
        self.token.raise_if_cancelled()

    def remaining(self) -> float:
        """Seconds left before the session deadline."""
        if self._started_at is None:
            return self.deadline_seconds
        elapsed = asyncio.get_running_loop().time() - self._started_at
        return max(0.0, self.deadline_seconds - elapsed)

    async def is_online(self) -> bool:
        state = await self.monitor.refresh()
        return state.is_online

    async def pause(self, seconds: float) -> None:
        await self.token.sleep(seconds)

    async def request(
        self,
        make_call: Callable[[CancelToken], Awaitable[T]],
        timeout: float,
        operation_name: str = "request"
    ) -> T:
        """
        Issue a remote call with retries and a per-request timeout.

        Args:
            make_call: Called with the session token for every attempt
            timeout: Per-attempt timeout in seconds, capped by the time left
            operation_name: Label used in log messages
        """

        async def attempt() -> T:
            self.token.raise_if_cancelled()
            budget = min(timeout, self.remaining())
            if budget <= 0:
                self.cancel("session deadline exceeded")
                self.token.raise_if_cancelled()

            task = asyncio.ensure_future(make_call(self.token))
            self.active_requests.add(task)
            task.add_done_callback(self.active_requests.discard)
            return await self.token.guard(task, timeout=budget)

        return await self.executor.run(attempt, self.policy, self.token, operation_name)

    def _cancel_active_requests(self) -> None:
        for task in list(self.active_requests):
            if not task.done():
                task.cancel()
        self.active_requests.clear()

    def _on_connectivity_change(self, state: ConnectivityState) -> None:
        if not state.is_online:
            self.cancel("connectivity lost")
