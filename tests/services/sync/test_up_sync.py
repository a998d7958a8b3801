"""
Tests for the up-sync engine.
"""

import asyncio
import dataclasses
from datetime import datetime
from unittest.mock import AsyncMock

import pytest

from fieldsync.core.errors import RemoteValidationError, TransientNetworkError
from fieldsync.models import Reading, SyncStatus
from fieldsync.services.sync.session import SyncKind, SyncOutcome
from fieldsync.services.sync.up_sync import UpSyncEngine

from tests.support import OFFLINE, add_readings


async def _run(engine, make_session):
    return await make_session(SyncKind.UP).run(engine.run)


class TestUpSyncEngine:
    """Test pushing pending readings."""

    @pytest.mark.asyncio
    async def test_offline_up_sync(self, local_store, remote_store, tuning, make_session, network_source):
        await add_readings(local_store, 3)
        network_source.publish(OFFLINE)

        result = await _run(UpSyncEngine(local_store, remote_store, tuning), make_session)

        assert (result.success, result.synced_count, result.error_count) == (False, 0, 0)
        assert result.outcome is SyncOutcome.OFFLINE
        assert remote_store.insert_calls == []
        assert await local_store.count_pending() == 3

    @pytest.mark.asyncio
    async def test_nothing_pending(self, local_store, remote_store, tuning, make_session):
        result = await _run(UpSyncEngine(local_store, remote_store, tuning), make_session)

        assert (result.success, result.synced_count, result.error_count) == (True, 0, 0)
        assert await local_store.get_last_sync_time() is not None

    @pytest.mark.asyncio
    async def test_all_readings_synced(self, local_store, remote_store, tuning, make_session):
        await add_readings(local_store, 7)

        result = await _run(UpSyncEngine(local_store, remote_store, tuning), make_session)

        assert (result.success, result.synced_count, result.error_count) == (True, 7, 0)
        reading = await local_store.get_reading("reading-05")
        assert reading.sync_status == SyncStatus.SYNCED
        assert reading.remote_id == "remote-reading-05"
        assert await local_store.count_pending() == 0

    @pytest.mark.asyncio
    async def test_partial_failure(self, local_store, remote_store, tuning, make_session):
        await add_readings(local_store, 5)
        remote_store.insert_failures = {
            "reading-02": RemoteValidationError("null value in column", code="23502"),
            "reading-04": RemoteValidationError("foreign key violation", code="23503"),
        }
        before = {r.id: r for r in await local_store.get_pending()}

        result = await _run(UpSyncEngine(local_store, remote_store, tuning), make_session)

        assert (result.success, result.synced_count, result.error_count) == (False, 3, 2)
        assert result.outcome is SyncOutcome.PARTIAL
        assert len(remote_store.insert_calls) == 5

        for record_id in ("reading-02", "reading-04"):
            reading = await local_store.get_reading(record_id)
            assert reading.sync_status == SyncStatus.PENDING
            assert reading.remote_id is None
            assert reading.value == before[record_id].value
            assert reading.residence_id == before[record_id].residence_id
            assert "violation" in reading.last_error or "null value" in reading.last_error

        for record_id in ("reading-01", "reading-03", "reading-05"):
            reading = await local_store.get_reading(record_id)
            assert reading.sync_status == SyncStatus.SYNCED
            assert reading.remote_id == f"remote-{record_id}"

    @pytest.mark.asyncio
    async def test_missing_remote_id_is_a_record_failure(self, local_store, remote_store, tuning, make_session):
        await add_readings(local_store, 5)
        remote_store.remote_ids = {"reading-02": "", "reading-04": None}

        result = await _run(UpSyncEngine(local_store, remote_store, tuning), make_session)

        assert (result.success, result.synced_count, result.error_count) == (False, 3, 2)
        assert remote_store.insert_calls == [f"reading-0{i}" for i in range(1, 6)]
        for record_id in ("reading-02", "reading-04"):
            reading = await local_store.get_reading(record_id)
            assert reading.sync_status == SyncStatus.PENDING
            assert reading.remote_id is None
            assert "no identifier" in reading.last_error
        assert (await local_store.get_reading("reading-05")).sync_status == SyncStatus.SYNCED

    @pytest.mark.asyncio
    async def test_exhausted_retries_keep_record_pending(self, local_store, remote_store, tuning, make_session):
        await add_readings(local_store, 2)
        remote_store.insert_failures = {"reading-01": TransientNetworkError("connection reset")}

        result = await _run(UpSyncEngine(local_store, remote_store, tuning), make_session)

        assert (result.synced_count, result.error_count) == (1, 1)
        assert remote_store.insert_calls.count("reading-01") == tuning.backoff.max_retries + 1
        reading = await local_store.get_reading("reading-01")
        assert reading.sync_status == SyncStatus.PENDING
        assert reading.sync_attempts == 1

    @pytest.mark.asyncio
    async def test_transient_failure_recovers(self, local_store, remote_store, tuning, make_session):
        await add_readings(local_store, 1)
        remote_store.insert_failures = {"reading-01": [TransientNetworkError("premature close")]}

        result = await _run(UpSyncEngine(local_store, remote_store, tuning), make_session)

        assert result.success
        assert remote_store.insert_calls == ["reading-01", "reading-01"]

    @pytest.mark.asyncio
    async def test_inserts_follow_pending_order(self, local_store, remote_store, tuning, make_session):
        await add_readings(local_store, 10)
        pending_order = [r.id for r in await local_store.get_pending()]

        await _run(UpSyncEngine(local_store, remote_store, tuning), make_session)

        assert remote_store.insert_calls == pending_order

    @pytest.mark.asyncio
    async def test_pauses_only_between_batches(self, local_store, remote_store, tuning, make_session):
        await add_readings(local_store, 11)
        session = make_session(SyncKind.UP)
        session.pause = AsyncMock()

        await session.run(UpSyncEngine(local_store, remote_store, tuning).run)

        # batches of 5, 5 and 1
        assert session.pause.await_count == 2

    @pytest.mark.asyncio
    async def test_cancellation_stops_remote_calls(self, local_store, remote_store, tuning, make_session):
        await add_readings(local_store, 10)
        remote_store.insert_delay = 0.05
        session = make_session(SyncKind.UP)
        asyncio.get_running_loop().call_later(0.12, session.cancel, "user")

        result = await session.run(UpSyncEngine(local_store, remote_store, tuning).run)
        calls_at_abort = len(remote_store.insert_calls)
        await asyncio.sleep(0.2)

        assert result.error_count == -2
        assert len(remote_store.insert_calls) == calls_at_abort
        assert calls_at_abort < 10
        assert await local_store.count_pending() == 10 - result.synced_count

    @pytest.mark.asyncio
    async def test_synced_readings_purged_when_enabled(self, local_store, remote_store, tuning, make_session):
        await add_readings(local_store, 3)
        engine = UpSyncEngine(local_store, remote_store, dataclasses.replace(tuning, purge_synced=True))

        result = await _run(engine, make_session)

        assert result.synced_count == 3
        assert await local_store.get_reading("reading-01") is None

    @pytest.mark.asyncio
    async def test_no_purge_after_failures(self, local_store, remote_store, tuning, make_session):
        await add_readings(local_store, 3)
        remote_store.insert_failures = {"reading-03": RemoteValidationError("rejected")}
        engine = UpSyncEngine(local_store, remote_store, dataclasses.replace(tuning, purge_synced=True))

        await _run(engine, make_session)

        assert (await local_store.get_reading("reading-01")).sync_status == SyncStatus.SYNCED


class TestBuildPayload:

    def test_placeholders_for_missing_keys(self, local_store, remote_store, tuning):
        engine = UpSyncEngine(local_store, remote_store, tuning)
        reading = Reading(id="reading-x", value="123")

        payload = engine.build_payload(reading, now=datetime(2024, 3, 4, 9, 15, 30))

        assert payload.residence_id == tuning.default_residence_id
        assert payload.client_id == tuning.default_client_id
        assert payload.reader_id == tuning.default_reader_id
        assert payload.visit_status == "pending"
        assert payload.read_date == "2024-03-04"
        assert payload.read_time == "09:15:30"
        assert payload.synced is True

    def test_existing_fields_kept(self, local_store, remote_store, tuning):
        engine = UpSyncEngine(local_store, remote_store, tuning)
        reading = Reading(
            id="reading-y", residence_id="residence-9", client_id="client-9",
            reader_id="reader-1", value="77", visit_status="visited",
            read_date="2024-03-01", read_time="17:00:00"
        )

        payload = engine.build_payload(reading)

        assert payload.residence_id == "residence-9"
        assert payload.read_date == "2024-03-01"
        assert payload.visit_status == "visited"
