"""
Tests for sync results and session scoping.
"""

import asyncio
import time

import pytest

from fieldsync.core.errors import RemoteValidationError
from fieldsync.services.sync.session import SyncKind, SyncOutcome, SyncResult

from tests.support import OFFLINE


class TestSyncResult:
    """Test outcome derivation and sentinels."""

    def test_completed(self):
        result = SyncResult.completed(4, 0)
        assert result.success
        assert result.outcome is SyncOutcome.COMPLETED

    def test_partial(self):
        result = SyncResult.completed(3, 2)
        assert not result.success
        assert result.outcome is SyncOutcome.PARTIAL

    def test_all_failed(self):
        assert SyncResult.completed(0, 2).outcome is SyncOutcome.FAILED

    def test_offline_is_not_an_error(self):
        result = SyncResult.offline()
        assert (result.success, result.synced_count, result.error_count) == (False, 0, 0)
        assert result.outcome is SyncOutcome.OFFLINE

    def test_aborted_sentinel(self):
        result = SyncResult.aborted(synced_count=2, detail="deadline")
        assert result.error_count == -2
        assert result.is_aborted
        assert result.outcome is SyncOutcome.ABORTED

    def test_unexpected_sentinel(self):
        result = SyncResult.unexpected("boom")
        assert (result.success, result.synced_count, result.error_count) == (False, 0, -1)
        assert result.outcome is SyncOutcome.FAILED

    def test_sentinel_outcome_derived_from_error_count(self):
        assert SyncResult(False, 0, -2).outcome is SyncOutcome.ABORTED
        assert SyncResult(False, 0, -1).outcome is SyncOutcome.FAILED

    def test_to_dict(self):
        data = SyncResult.completed(1, 0).to_dict()
        assert data['outcome'] == "completed"
        assert data['synced_count'] == 1


class TestSyncSession:
    """Test deadline, cancellation and cleanup of a session."""

    @pytest.mark.asyncio
    async def test_run_returns_body_result_and_cleans_up(self, make_session):
        session = make_session()

        async def body(s):
            return await s.request(lambda token: asyncio.sleep(0, result="ok"), 1.0, "probe")

        async def wrapped(s):
            assert await body(s) == "ok"
            return SyncResult.completed(1, 0)

        result = await session.run(wrapped)

        assert result.success
        assert session.active_requests == set()
        assert session.cancelled

    @pytest.mark.asyncio
    async def test_deadline_aborts_in_flight_request(self, make_session):
        session = make_session(deadline=0.1)
        interrupted = asyncio.Event()

        async def slow_call(token):
            try:
                await asyncio.sleep(10)
            except asyncio.CancelledError:
                interrupted.set()
                raise

        async def body(s):
            await s.request(slow_call, 10.0, "slow call")
            return SyncResult.completed(1, 0)

        started = time.monotonic()
        result = await session.run(body)

        assert result.error_count == -2
        assert result.detail == "session deadline exceeded"
        assert time.monotonic() - started < 2
        await asyncio.wait_for(interrupted.wait(), timeout=1)

    @pytest.mark.asyncio
    async def test_request_timeout_is_retried(self, make_session):
        session = make_session()
        attempts = []

        async def call(token):
            attempts.append(token)
            if len(attempts) == 1:
                await asyncio.sleep(10)
            return "second try"

        async def body(s):
            assert await s.request(call, 0.05, "flaky call") == "second try"
            return SyncResult.completed(1, 0)

        result = await session.run(body)

        assert result.success
        assert len(attempts) == 2

    @pytest.mark.asyncio
    async def test_terminal_request_error_propagates_to_body(self, make_session):
        session = make_session()
        calls = []

        async def call(token):
            calls.append(1)
            raise RemoteValidationError("rejected")

        async def body(s):
            with pytest.raises(RemoteValidationError):
                await s.request(call, 1.0, "insert")
            return SyncResult.completed(0, 1)

        result = await session.run(body)

        assert result.error_count == 1
        assert calls == [1]

    @pytest.mark.asyncio
    async def test_unexpected_body_error(self, make_session):
        session = make_session()

        async def body(s):
            raise RuntimeError("corrupted state")

        result = await session.run(body)

        assert result.error_count == -1
        assert result.outcome is SyncOutcome.FAILED
        assert session.active_requests == set()

    @pytest.mark.asyncio
    async def test_cancel_twice_is_noop(self, make_session):
        session = make_session()

        async def body(s):
            assert s.cancel("user") is True
            assert s.cancel("user again") is False
            await s.pause(5)
            return SyncResult.completed(0, 0)

        result = await session.run(body)

        assert result.error_count == -2
        assert result.detail == "user"

    @pytest.mark.asyncio
    async def test_connectivity_loss_aborts_session(self, make_session, network_source):
        session = make_session(SyncKind.DOWN)
        loop = asyncio.get_running_loop()

        async def body(s):
            loop.call_later(0.05, network_source.publish, OFFLINE)
            await s.pause(5)
            return SyncResult.completed(0, 0)

        started = time.monotonic()
        result = await session.run(body)

        assert result.error_count == -2
        assert result.detail == "connectivity lost"
        assert time.monotonic() - started < 2

    @pytest.mark.asyncio
    async def test_remaining_time_shrinks(self, make_session):
        session = make_session(deadline=10)
        assert session.remaining() == 10

        async with session:
            await asyncio.sleep(0.05)
            assert session.remaining() < 10
