"""
Exponential backoff retry for remote sync operations.

Failures are classified into transient, terminal and cancelled. Only transient
failures are retried; the delay grows geometrically up to a ceiling and is
slept on the session's cancel token so a cancellation interrupts it at once.
"""

import logging
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, TypeVar

from fieldsync.core.cancellation import CancelToken
from fieldsync.core.errors import ErrorKind, SyncCancelledError, classify_error

logger = logging.getLogger(__name__)

T = TypeVar("T")

ErrorClassifier = Callable[[BaseException], ErrorKind]


@dataclass(frozen=True)
class BackoffPolicy:
    """Configuration for retry behavior."""
    max_retries: int = 3
    initial_delay: float = 2.0  # seconds
    max_delay: float = 15.0  # seconds
    growth_factor: float = 2.0
    jitter: float = 0.0  # fraction of the computed delay added at random

    def __post_init__(self):
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if self.initial_delay < 0 or self.max_delay < 0:
            raise ValueError("delays must be >= 0")
        if self.growth_factor < 1:
            raise ValueError("growth_factor must be >= 1")
        if self.jitter < 0:
            raise ValueError("jitter must be >= 0")

    def delay_for(self, attempt: int, rng: Optional[random.Random] = None) -> float:
        """
        Delay to sleep after the given failed attempt.

        Args:
            attempt: 1-based number of the attempt that just failed
            rng: Random source for jitter

        Returns:
            Delay in seconds, never above ``max_delay``
        """
        delay = min(self.initial_delay * (self.growth_factor ** (attempt - 1)), self.max_delay)
        if self.jitter:
            delay += (rng or random).uniform(0, delay * self.jitter)
        return min(delay, self.max_delay)


class BackoffRetryExecutor:
    """
    Runs an async operation with classified, cancellable retries.

    The classifier is pluggable so transports with their own failure
    vocabulary can map onto the same three error kinds.
    """

    def __init__(
        self,
        classifier: ErrorClassifier = classify_error,
        rng: Optional[random.Random] = None,
        on_retry: Optional[Callable[[int, BaseException, float], Any]] = None
    ):
        self.classifier = classifier
        self.rng = rng or random.Random()
        self.on_retry = on_retry

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        policy: BackoffPolicy,
        cancel_token: CancelToken,
        operation_name: str = "operation"
    ) -> T:
        """
        Execute ``operation`` until it succeeds or the retry budget is spent.

        Args:
            operation: Zero-argument callable returning an awaitable
            policy: Backoff parameters
            cancel_token: Token observed before each attempt and during delays
            operation_name: Label used in log messages

        Returns:
            Result of the first successful attempt

        Raises:
            SyncCancelledError: The token fired or the error was a cancellation
            Exception: The terminal error, or the last transient error once
                retries are exhausted
        """
        total_attempts = policy.max_retries + 1

        for attempt in range(1, total_attempts + 1):
            cancel_token.raise_if_cancelled()

            if attempt > 1:
                logger.info(f"Retry attempt {attempt - 1} for {operation_name}")

            try:
                return await operation()
            except SyncCancelledError:
                raise
            except Exception as e:
                if cancel_token.cancelled:
                    raise SyncCancelledError(
                        f"{operation_name} cancelled: {cancel_token.reason}",
                        original_exception=e
                    ) from e

                kind = self.classifier(e)
                if kind is ErrorKind.CANCELLED:
                    raise SyncCancelledError(
                        f"{operation_name} cancelled", original_exception=e
                    ) from e
                if kind is ErrorKind.TERMINAL:
                    logger.warning(f"{operation_name} failed with terminal error: {e}")
                    raise
                if attempt >= total_attempts:
                    logger.error(
                        f"{operation_name} failed after {policy.max_retries} retries: {e}"
                    )
                    raise

                delay = policy.delay_for(attempt, self.rng)
                logger.warning(
                    f"{operation_name} failed with transient error, retrying in {delay:.2f}s "
                    f"(attempt {attempt}/{total_attempts}): {e}"
                )
                if self.on_retry:
                    self.on_retry(attempt, e, delay)

                await cancel_token.sleep(delay)

        raise RuntimeError("unreachable")

