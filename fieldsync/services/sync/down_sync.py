"""
Down-sync: pull the reader's route assignment graph into the local store.

The graph is read with one remote request and written unit by unit, a unit
being one route with its area, street, residences and clients. Parents are
always written before their children and every write is insert-if-absent, so
running the same graph twice leaves the store unchanged.
"""

import logging
from datetime import date, datetime, timezone
from typing import List, Optional

from fieldsync.core.config import SyncTuning
from fieldsync.core.errors import LocalStoreError, SyncCancelledError, describe_error
from fieldsync.integrations.remote.base import RemoteStore
from fieldsync.models import Area, Client, Residence, Route, Street
from fieldsync.schemas.sync import ResidencePayload, RoutePayload
from fieldsync.services.local_store import LocalStore
from fieldsync.services.sync.batching import batched
from fieldsync.services.sync.session import SyncResult, SyncSession

logger = logging.getLogger(__name__)


class DownSyncEngine:
    """Writes the remote route graph into the local store in batches."""

    def __init__(
        self,
        local_store: LocalStore,
        remote_store: RemoteStore,
        tuning: Optional[SyncTuning] = None
    ):
        self.local_store = local_store
        self.remote_store = remote_store
        self.tuning = tuning or SyncTuning()

    async def run(self, reader_id: str, session: SyncSession) -> SyncResult:
        """
        Download and store the route graph of ``reader_id``.

        Args:
            reader_id: Reader whose routes are pulled
            session: Session providing the token, retries and deadline

        Returns:
            Result counted per route; the offline result when there is no
            connection and a failed result when the graph cannot be fetched

        Raises:
            SyncCancelledError: The session was cancelled
            LocalStoreError: The local store failed for a whole batch in a row
        """
        if not await session.is_online():
            logger.info("Device is offline, skipping down-sync")
            return SyncResult.offline()

        logger.info(f"Starting down-sync for reader {reader_id}")

        try:
            graph = await session.request(
                lambda token: self.remote_store.fetch_route_graph(reader_id, token),
                self.tuning.down_request_timeout,
                f"route graph fetch for reader {reader_id}"
            )
        except SyncCancelledError:
            raise
        except Exception as e:
            logger.error(f"Could not fetch route graph for reader {reader_id}", extra=describe_error(e))
            return SyncResult.failed(detail=str(e))

        if graph.is_empty:
            logger.info(f"No routes assigned to reader {reader_id}")
            await self._touch_last_sync_time()
            return SyncResult.completed(0, 0)

        total = len(graph.routes)
        batches = list(batched(graph.routes, self.tuning.down_batch_size))
        logger.info(f"Syncing {total} routes in {len(batches)} batches")

        consecutive_store_faults = 0

        for index, batch in enumerate(batches):
            if index > 0:
                await session.pause(self.tuning.down_batch_pause)

            for route in batch:
                session.raise_if_cancelled()

                try:
                    failures = await self._store_route(reader_id, route, session)
                except SyncCancelledError:
                    raise
                except Exception as e:
                    failures = [e]

                if not failures:
                    session.synced_count += 1
                    consecutive_store_faults = 0
                    continue

                session.error_count += 1
                logger.error(
                    f"Route {route.id} (street {route.street.id}) failed: {failures[0]}",
                    extra=describe_error(failures[0])
                )

                if all(isinstance(f, LocalStoreError) for f in failures):
                    consecutive_store_faults += 1
                else:
                    consecutive_store_faults = 0
                if consecutive_store_faults >= self.tuning.down_batch_size:
                    raise LocalStoreError(
                        f"Local store failed for {consecutive_store_faults} routes in a row"
                    )

            logger.info(
                f"Batch {index + 1}/{len(batches)} done: "
                f"{session.synced_count} synced, {session.error_count} failed"
            )

        await self._touch_last_sync_time()
        logger.info(
            f"Down-sync finished for reader {reader_id}: "
            f"{session.synced_count}/{total} routes synced"
        )
        return SyncResult.completed(session.synced_count, session.error_count)

    async def _store_route(
        self,
        reader_id: str,
        route: RoutePayload,
        session: SyncSession
    ) -> List[Exception]:
        """Store one unit; returns the failures met, empty on full success."""
        failures: List[Exception] = []
        parents_error = await self._store_parents(reader_id, route)
        residences = route.street.residences

        if parents_error is not None:
            logger.warning(f"Parent rows of route {route.id} not stored: {parents_error}")
            if not residences:
                return [parents_error]

        for index, chunk in enumerate(batched(residences, self.tuning.residence_batch_size)):
            if index > 0:
                await session.pause(self.tuning.residence_pause)

            for residence in chunk:
                session.raise_if_cancelled()

                if parents_error is not None:
                    parents_error = await self._store_parents(reader_id, route)
                    if parents_error is not None:
                        logger.error(
                            f"Skipping residence {residence.id}: "
                            f"parent rows of route {route.id} are missing"
                        )
                        failures.append(parents_error)
                        continue

                try:
                    await self._store_residence(residence, route.street.id)
                except Exception as e:
                    logger.error(f"Residence {residence.id} of route {route.id} failed: {e}")
                    failures.append(e)

        return failures

    async def _store_parents(self, reader_id: str, route: RoutePayload) -> Optional[Exception]:
        street = route.street
        area = street.area
        try:
            await self.local_store.upsert(Area(id=area.id, name=area.name, city=area.city))
            await self.local_store.upsert(Street(id=street.id, name=street.name, area_id=area.id))
            await self.local_store.upsert(
                Route(id=route.id, reader_id=reader_id, street_id=street.id, weekday=route.weekday)
            )
        except Exception as e:
            return e
        return None

    async def _store_residence(self, residence: ResidencePayload, street_id: str) -> None:
        await self.local_store.upsert(
            Residence(id=residence.id, street_id=street_id, number=residence.number)
        )
        for client in residence.clients:
            await self.local_store.upsert(
                Client(
                    id=client.id,
                    name=client.name,
                    document=client.document,
                    phone=client.phone,
                    email=client.email,
                    residence_id=residence.id
                )
            )

    async def _touch_last_sync_time(self) -> None:
        try:
            await self.local_store.set_last_sync_time(datetime.now(timezone.utc))
        except Exception as e:
            logger.warning(f"Could not store last sync time: {e}")

    def weekday_label(self, day: date) -> str:
        return self.tuning.weekday_labels[day.weekday()]

    async def fetch_daily_routes(
        self,
        reader_id: str,
        session: SyncSession,
        today: Optional[date] = None
    ) -> List[RoutePayload]:
        """
        Routes assigned to the reader for ``today``.

        Never raises: offline, cancelled and failed fetches all yield ``[]``.
        """
        weekday = self.weekday_label(today or date.today())

        if not await session.is_online():
            logger.info("Device is offline, cannot fetch daily routes")
            return []

        try:
            graph = await session.request(
                lambda token: self.remote_store.fetch_route_graph(reader_id, token, weekday=weekday),
                self.tuning.down_request_timeout,
                f"daily routes fetch for reader {reader_id}"
            )
        except Exception as e:
            logger.error(f"Error fetching daily routes for reader {reader_id}: {e}")
            return []

        routes = [route for route in graph.routes if route.weekday == weekday]
        logger.info(f"Found {len(routes)} routes for {weekday}")
        return routes
