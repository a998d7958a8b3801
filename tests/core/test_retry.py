"""
Tests for backoff policy, retry executor and error classification.
"""

import asyncio
import random
import socket
import time
from unittest.mock import AsyncMock

import aiohttp
import pytest

from fieldsync.core.cancellation import CancelToken
from fieldsync.core.errors import (
    ErrorKind, LocalStoreError, RemoteAuthError, RemoteValidationError, RequestTimeoutError,
    SyncCancelledError, TransientNetworkError, classify_error, describe_error
)
from fieldsync.core.retry import BackoffPolicy, BackoffRetryExecutor

FAST_POLICY = BackoffPolicy(max_retries=3, initial_delay=0.001, max_delay=0.004)


class TestBackoffPolicy:
    """Test delay computation."""

    def test_delays_grow_and_cap(self):
        policy = BackoffPolicy(max_retries=5, initial_delay=2.0, max_delay=15.0, growth_factor=2.0)

        delays = [policy.delay_for(attempt) for attempt in range(1, 6)]

        assert delays == [2.0, 4.0, 8.0, 15.0, 15.0]

    def test_jittered_delays_never_exceed_max(self):
        policy = BackoffPolicy(max_retries=10, initial_delay=1.0, max_delay=5.0, jitter=0.5)
        rng = random.Random(7)

        delays = [policy.delay_for(attempt, rng) for attempt in range(1, 11)]

        assert all(0 <= d <= 5.0 for d in delays)
        assert delays[0] >= 1.0

    @pytest.mark.parametrize("kwargs", [
        {"max_retries": -1},
        {"initial_delay": -0.5},
        {"growth_factor": 0.5},
        {"jitter": -0.1},
    ])
    def test_invalid_policy_rejected(self, kwargs):
        with pytest.raises(ValueError):
            BackoffPolicy(**kwargs)


class TestBackoffRetryExecutor:
    """Test classified, cancellable retries."""

    @pytest.mark.asyncio
    async def test_transient_errors_retried_until_success(self):
        operation = AsyncMock(side_effect=[
            TransientNetworkError("connection reset"),
            RequestTimeoutError("timed out"),
            "ok",
        ])

        result = await BackoffRetryExecutor().run(operation, FAST_POLICY, CancelToken())

        assert result == "ok"
        assert operation.await_count == 3

    @pytest.mark.asyncio
    async def test_terminal_error_not_retried(self):
        operation = AsyncMock(side_effect=RemoteValidationError("bad row"))

        with pytest.raises(RemoteValidationError):
            await BackoffRetryExecutor().run(operation, FAST_POLICY, CancelToken())

        assert operation.await_count == 1

    @pytest.mark.asyncio
    async def test_last_error_raised_after_exhaustion(self):
        errors = [TransientNetworkError(f"reset {i}") for i in range(4)]
        operation = AsyncMock(side_effect=errors)

        with pytest.raises(TransientNetworkError) as exc_info:
            await BackoffRetryExecutor().run(operation, FAST_POLICY, CancelToken())

        assert exc_info.value is errors[-1]
        assert operation.await_count == FAST_POLICY.max_retries + 1

    @pytest.mark.asyncio
    async def test_consecutive_delays_are_monotonic_and_capped(self):
        policy = BackoffPolicy(max_retries=6, initial_delay=0.001, max_delay=0.01, growth_factor=2.0)
        delays = []
        executor = BackoffRetryExecutor(on_retry=lambda attempt, error, delay: delays.append(delay))
        operation = AsyncMock(side_effect=ConnectionResetError("reset"))

        with pytest.raises(ConnectionResetError):
            await executor.run(operation, policy, CancelToken())

        assert len(delays) == 6
        assert all(later >= earlier for earlier, later in zip(delays, delays[1:]))
        assert all(d <= policy.max_delay for d in delays)

    @pytest.mark.asyncio
    async def test_cancel_during_backoff_sleep(self):
        policy = BackoffPolicy(max_retries=3, initial_delay=10.0, max_delay=10.0)
        operation = AsyncMock(side_effect=TransientNetworkError("reset"))
        token = CancelToken()
        asyncio.get_running_loop().call_later(0.05, token.cancel, "stop")

        started = time.monotonic()
        with pytest.raises(SyncCancelledError):
            await BackoffRetryExecutor().run(operation, policy, token)

        assert time.monotonic() - started < 1
        assert operation.await_count == 1

    @pytest.mark.asyncio
    async def test_cancelled_token_skips_operation(self):
        token = CancelToken()
        token.cancel()
        operation = AsyncMock(return_value="ok")

        with pytest.raises(SyncCancelledError):
            await BackoffRetryExecutor().run(operation, FAST_POLICY, token)

        operation.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_custom_classifier(self):
        operation = AsyncMock(side_effect=[KeyError("flaky"), "ok"])
        executor = BackoffRetryExecutor(classifier=lambda error: ErrorKind.TRANSIENT)

        assert await executor.run(operation, FAST_POLICY, CancelToken()) == "ok"


class TestClassifyError:
    """Test the default error classifier."""

    @pytest.mark.parametrize("error", [
        TransientNetworkError("reset"),
        RequestTimeoutError("slow"),
        asyncio.TimeoutError(),
        ConnectionResetError("reset by peer"),
        socket.gaierror("name resolution"),
        aiohttp.ClientPayloadError("Response payload is not completed"),
        aiohttp.ServerDisconnectedError(),
        RuntimeError("Premature close"),
        Exception("Unexpected end of stream"),
    ])
    def test_transient(self, error):
        assert classify_error(error) is ErrorKind.TRANSIENT

    @pytest.mark.parametrize("error", [
        RemoteAuthError("expired key"),
        RemoteValidationError("missing column"),
        LocalStoreError("disk full"),
        ValueError("bad value"),
    ])
    def test_terminal(self, error):
        assert classify_error(error) is ErrorKind.TERMINAL

    @pytest.mark.parametrize("error", [
        SyncCancelledError(),
        asyncio.CancelledError(),
    ])
    def test_cancelled(self, error):
        assert classify_error(error) is ErrorKind.CANCELLED

    def test_describe_error(self):
        context = describe_error(RemoteValidationError("bad row", code="23502"))

        assert context['error_type'] == "RemoteValidationError"
        assert context['error_code'] == "23502"
        assert context['error_message'] == "bad row"

    def test_error_to_dict(self):
        cause = ConnectionResetError("reset")
        data = TransientNetworkError("upload failed", original_exception=cause).to_dict()

        assert data['retryable'] is True
        assert data['category'] == "network"
        assert "ConnectionResetError" in data['traceback']
