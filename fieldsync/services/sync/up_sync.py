"""
Up-sync: push locally captured readings to the remote backend.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from fieldsync.core.config import SyncTuning
from fieldsync.core.errors import (
    LocalStoreError, RemoteProtocolError, SyncCancelledError, describe_error
)
from fieldsync.integrations.remote.base import RemoteStore
from fieldsync.models import Reading
from fieldsync.schemas.sync import ReadingPayload
from fieldsync.services.local_store import LocalStore
from fieldsync.services.sync.batching import batched
from fieldsync.services.sync.session import SyncResult, SyncSession

logger = logging.getLogger(__name__)


class UpSyncEngine:
    """
    Uploads pending readings one at a time, in batches.

    A reading only becomes synced once the backend returned its identifier;
    a failed upload leaves it pending for the next session.
    """

    def __init__(
        self,
        local_store: LocalStore,
        remote_store: RemoteStore,
        tuning: Optional[SyncTuning] = None
    ):
        self.local_store = local_store
        self.remote_store = remote_store
        self.tuning = tuning or SyncTuning()

    def build_payload(self, reading: Reading, now: Optional[datetime] = None) -> ReadingPayload:
        """Complete payload for ``reading``, filling missing keys with placeholders."""
        now = now or datetime.now()
        return ReadingPayload(
            id=reading.id,
            residence_id=reading.residence_id or self.tuning.default_residence_id,
            client_id=reading.client_id or self.tuning.default_client_id,
            reader_id=reading.reader_id or self.tuning.default_reader_id,
            value=reading.value,
            photo_path=reading.photo_path,
            visit_status=reading.visit_status or "pending",
            read_date=reading.read_date or now.strftime("%Y-%m-%d"),
            read_time=reading.read_time or now.strftime("%H:%M:%S"),
            synced=True
        )

    async def run(self, session: SyncSession) -> SyncResult:
        if not await session.is_online():
            logger.info("Device is offline, skipping up-sync")
            return SyncResult.offline()

        pending = await self.local_store.get_pending()

        if not pending:
            logger.info("No pending readings to sync")
            await self._touch_last_sync_time()
            return SyncResult.completed(0, 0)

        batches = list(batched(pending, self.tuning.up_batch_size))
        logger.info(f"Found {len(pending)} pending readings, uploading in {len(batches)} batches")

        consecutive_store_faults = 0

        for index, batch in enumerate(batches):
            if index > 0:
                await session.pause(self.tuning.up_batch_pause)

            for reading in batch:
                session.raise_if_cancelled()
                payload = self.build_payload(reading)

                try:
                    remote_id = await session.request(
                        lambda token, p=payload: self.remote_store.insert_record(p, token),
                        self.tuning.up_request_timeout,
                        f"reading insert (ID: {reading.id})"
                    )
                    if not remote_id:
                        raise RemoteProtocolError(f"Backend returned no identifier for reading {reading.id}")
                except SyncCancelledError:
                    raise
                except Exception as e:
                    session.error_count += 1
                    self._log_failure(payload, e)
                    if await self._record_failure(reading.id, e):
                        consecutive_store_faults = 0
                    else:
                        consecutive_store_faults += 1
                else:
                    try:
                        await self.local_store.mark_synced(reading.id, remote_id)
                    except LocalStoreError as e:
                        session.error_count += 1
                        consecutive_store_faults += 1
                        logger.error(
                            f"Reading {reading.id} was uploaded as {remote_id} "
                            f"but could not be marked synced: {e}"
                        )
                    else:
                        session.synced_count += 1
                        consecutive_store_faults = 0

                if consecutive_store_faults >= self.tuning.up_batch_size:
                    raise LocalStoreError(
                        f"Local store failed for {consecutive_store_faults} readings in a row"
                    )

            logger.info(
                f"Batch {index + 1}/{len(batches)} done: "
                f"{session.synced_count} synced, {session.error_count} failed"
            )

        if session.error_count == 0:
            await self._touch_last_sync_time()
            if self.tuning.purge_synced and session.synced_count > 0:
                await self._purge_synced()

        logger.info(
            f"Up-sync finished: {session.synced_count} synced, {session.error_count} failed"
        )
        return SyncResult.completed(session.synced_count, session.error_count)

    def _log_failure(self, payload: ReadingPayload, error: Exception) -> None:
        context = describe_error(error)
        context.update({
            'reading_id': payload.id,
            'residence_id': payload.residence_id,
            'client_id': payload.client_id,
            'reader_id': payload.reader_id,
        })
        logger.error(
            f"Failed to sync reading {payload.id} "
            f"(residence {payload.residence_id}, client {payload.client_id}): "
            f"[{context['error_code']}] {context['error_message']}",
            extra=context
        )

    async def _record_failure(self, record_id: str, error: Exception) -> bool:
        try:
            await self.local_store.record_failure(record_id, str(error))
        except LocalStoreError as e:
            logger.warning(f"Could not record failure for reading {record_id}: {e}")
            return False
        return True

    async def _touch_last_sync_time(self) -> None:
        try:
            await self.local_store.set_last_sync_time(datetime.now(timezone.utc))
        except Exception as e:
            logger.warning(f"Could not store last sync time: {e}")

    async def _purge_synced(self) -> None:
        try:
            removed = await self.local_store.remove_synced()
            logger.info(f"Removed {removed} synced readings from the local store")
        except Exception as e:
            logger.warning(f"Could not remove synced readings: {e}")
