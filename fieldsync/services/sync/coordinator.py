"""
Sync Coordinator: lifecycle, triggers and mutual exclusion of sync sessions.

The coordinator owns the connectivity monitor. Every debounced transition is
first handed to the application listeners and only then considered for an
automatic up-sync, so listeners see the transition whatever the sync does.
"""

import asyncio
import inspect
import logging
from datetime import date, datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Set

from fieldsync.core.config import SyncTuning
from fieldsync.core.retry import BackoffRetryExecutor
from fieldsync.integrations.remote.base import RemoteStore
from fieldsync.models import SyncRun
from fieldsync.schemas.sync import RoutePayload
from fieldsync.services.connectivity import ConnectivityMonitor, ConnectivityState
from fieldsync.services.local_store import LocalStore
from fieldsync.services.sync.down_sync import DownSyncEngine
from fieldsync.services.sync.session import SessionBody, SyncKind, SyncResult, SyncSession
from fieldsync.services.sync.up_sync import UpSyncEngine

logger = logging.getLogger(__name__)

ConnectivityHandler = Callable[[ConnectivityState], Any]


class SyncCoordinator:
    """Entry point the application shell drives."""

    def __init__(
        self,
        monitor: ConnectivityMonitor,
        local_store: LocalStore,
        remote_store: RemoteStore,
        tuning: Optional[SyncTuning] = None,
        executor: Optional[BackoffRetryExecutor] = None
    ):
        self.monitor = monitor
        self.local_store = local_store
        self.remote_store = remote_store
        self.tuning = tuning or SyncTuning()
        self.executor = executor or BackoffRetryExecutor()

        self.down_engine = DownSyncEngine(local_store, remote_store, self.tuning)
        self.up_engine = UpSyncEngine(local_store, remote_store, self.tuning)

        self._lock = asyncio.Lock()
        self._listeners: List[ConnectivityHandler] = []
        self._background_tasks: Set[asyncio.Task] = set()
        self._monitor_unsubscribe: Optional[Callable[[], None]] = None
        self._current_session: Optional[SyncSession] = None
        self._reader_id: Optional[str] = None
        self._was_online: Optional[bool] = None
        self._started = False
        self._stop_generation = 0

    @property
    def started(self) -> bool:
        return self._started

    @property
    def reader_id(self) -> Optional[str]:
        return self._reader_id

    @property
    def running(self) -> bool:
        return self._lock.locked()

    @property
    def running_kind(self) -> Optional[SyncKind]:
        session = self._current_session
        return session.kind if session else None

    async def start(self, reader_id: str) -> None:
        """
        Attach to the connectivity monitor for ``reader_id``.

        Calling it again only updates the reader.

        Raises:
            ValueError: ``reader_id`` is empty
        """
        if not reader_id:
            raise ValueError("A reader id is required to start syncing")

        self._reader_id = reader_id
        if self._started:
            return
        self._started = True

        monitor_running = self.monitor.started
        self._monitor_unsubscribe = self.monitor.subscribe(self._handle_connectivity)
        if monitor_running:
            self._handle_connectivity(self.monitor.current())
        else:
            await self.monitor.start()

        logger.info(f"Sync coordinator started for reader {reader_id}")

    async def stop(self) -> None:
        """Detach from the monitor and abort any running session."""
        if not self._started:
            return
        self._started = False
        self._stop_generation += 1

        if self._monitor_unsubscribe:
            self._monitor_unsubscribe()
            self._monitor_unsubscribe = None

        self.cancel("coordinator stopped")

        tasks = list(self._background_tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._background_tasks.clear()

        await self.monitor.stop()
        self._was_online = None
        logger.info("Sync coordinator stopped")

    def on_connectivity_change(self, handler: ConnectivityHandler) -> Callable[[], None]:
        """
        Register a listener for debounced connectivity transitions.

        Coroutine handlers are scheduled as tasks. Returns an idempotent
        unsubscribe function.
        """
        self._listeners.append(handler)

        def unsubscribe():
            if handler in self._listeners:
                self._listeners.remove(handler)

        return unsubscribe

    async def sync_down(self, reader_id: Optional[str] = None, trigger: str = "manual") -> SyncResult:
        """
        Pull the route graph for ``reader_id`` (default: the started reader).

        Waits for a running session to finish first.

        Raises:
            ValueError: No reader id given and none started
        """
        reader_id = reader_id or self._reader_id
        if not reader_id:
            raise ValueError("A reader id is required for down-sync")

        return await self._run_session(
            SyncKind.DOWN,
            lambda session: self.down_engine.run(reader_id, session),
            reader_id,
            trigger
        )

    async def sync_up(self, trigger: str = "manual") -> SyncResult:
        """Push pending readings; waits for a running session to finish first."""
        return await self._run_session(
            SyncKind.UP,
            self.up_engine.run,
            self._reader_id,
            trigger
        )

    def cancel(self, reason: str = "cancelled by user") -> bool:
        """Cancel the running session, if any."""
        session = self._current_session
        if session is None:
            return False
        return session.cancel(reason)

    async def fetch_daily_routes(self, today: Optional[date] = None) -> List[RoutePayload]:
        """
        Today's routes for the started reader, or ``[]`` when offline.

        Runs as a session of its own, so it waits for a running sync.
        """
        if not self._reader_id:
            raise ValueError("A reader id is required to fetch daily routes")

        reader_id = self._reader_id
        generation = self._stop_generation
        async with self._lock:
            if generation != self._stop_generation:
                logger.info("Coordinator stopped while waiting, skipping daily routes fetch")
                return []

            session = self._new_session(SyncKind.DOWN)
            self._current_session = session
            try:
                async with session:
                    return await self.down_engine.fetch_daily_routes(reader_id, session, today)
            finally:
                self._current_session = None

    async def last_sync_time(self) -> Optional[datetime]:
        try:
            return await self.local_store.get_last_sync_time()
        except Exception as e:
            logger.warning(f"Could not read last sync time: {e}")
            return None

    async def history(self, limit: int = 20) -> List[SyncRun]:
        return await self.local_store.list_runs(limit)

    async def status(self) -> Dict[str, Any]:
        kind = self.running_kind
        return {
            'started': self._started,
            'reader_id': self._reader_id,
            'running': self.running,
            'running_kind': kind.value if kind else None,
            'connectivity': self.monitor.current().to_dict(),
            'last_sync_time': await self.last_sync_time(),
            'pending_count': await self.local_store.count_pending(),
        }

    def _new_session(self, kind: SyncKind) -> SyncSession:
        return SyncSession(
            kind,
            self.executor,
            self.tuning.backoff,
            self.monitor,
            deadline_seconds=self.tuning.session_deadline
        )

    async def _run_session(
        self,
        kind: SyncKind,
        body: SessionBody,
        reader_id: Optional[str],
        trigger: str
    ) -> SyncResult:
        generation = self._stop_generation
        if self._lock.locked():
            logger.info(f"Waiting for the running sync session before {kind.value}-sync")

        async with self._lock:
            started_at = datetime.now(timezone.utc)
            if generation != self._stop_generation:
                result = SyncResult.aborted(detail="coordinator stopped")
            else:
                session = self._new_session(kind)
                self._current_session = session
                try:
                    result = await session.run(body)
                finally:
                    self._current_session = None

        logger.info(
            f"{kind.value}-sync ({trigger}) finished: {result.outcome.value}, "
            f"{result.synced_count} synced, {result.error_count} errors"
        )
        await self._record_run(kind, reader_id, trigger, result, started_at)
        return result

    async def _record_run(
        self,
        kind: SyncKind,
        reader_id: Optional[str],
        trigger: str,
        result: SyncResult,
        started_at: datetime
    ) -> None:
        run = SyncRun(
            kind=kind.value,
            reader_id=reader_id,
            trigger=trigger,
            outcome=result.outcome.value,
            success=int(result.success),
            synced_count=result.synced_count,
            error_count=result.error_count,
            detail=result.detail,
            started_at=started_at,
            finished_at=result.timestamp
        )
        try:
            await self.local_store.record_run(run)
        except Exception as e:
            logger.warning(f"Could not record {kind.value}-sync run: {e}")

    def _handle_connectivity(self, state: ConnectivityState) -> None:
        previous = self._was_online
        self._was_online = state.is_online

        for handler in list(self._listeners):
            try:
                outcome = handler(state)
                if inspect.isawaitable(outcome):
                    self._spawn(outcome)
            except Exception as e:
                logger.error(f"Error in connectivity listener: {e}")

        if not self._started or not state.is_online or previous is True:
            return

        try:
            self._spawn(self._auto_sync_up())
        except Exception as e:
            logger.error(f"Could not schedule automatic up-sync: {e}")

    async def _auto_sync_up(self) -> None:
        if self._lock.locked():
            logger.info("Connection restored but a sync session is running, skipping auto-sync")
            return

        logger.info("Connection restored, starting automatic up-sync")
        try:
            await self.sync_up(trigger="reconnect")
        except Exception as e:
            logger.error(f"Automatic up-sync failed: {e}")

    def _spawn(self, awaitable) -> asyncio.Task:
        task = asyncio.ensure_future(awaitable)
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)
        return task
