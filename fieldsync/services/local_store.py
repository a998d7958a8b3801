"""
Local persistent store used by the sync engines.

The local database is the single source of truth for what has and has not
been uploaded. Every write commits on its own so a run interrupted at any
point leaves each record either untouched or fully marked.
"""

import functools
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Callable, List, Optional, Type

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from fieldsync.core.database import Base
from fieldsync.core.errors import LocalStoreError
from fieldsync.models import Reading, SyncRun, SyncStateEntry, SyncStatus

logger = logging.getLogger(__name__)

LAST_SYNC_TIME_KEY = "last_sync_time"

# A record that failed with status ERROR is picked up again like a pending one
UNSYNCED_STATUSES = (SyncStatus.PENDING, SyncStatus.ERROR)


class LocalStore(ABC):
    """Contract the sync engines consume from local persistence."""

    @abstractmethod
    async def get_pending(self) -> List[Reading]:
        """Unsynced records, oldest first."""

    @abstractmethod
    async def upsert(self, entity: Base) -> bool:
        """Insert ``entity`` unless a row with its primary key exists; True if inserted."""

    @abstractmethod
    async def mark_synced(self, record_id: str, remote_id: str) -> None:
        pass

    @abstractmethod
    async def record_failure(self, record_id: str, message: str) -> None:
        """Keep the record pending and remember why the upload failed."""

    @abstractmethod
    async def get_last_sync_time(self) -> Optional[datetime]:
        pass

    @abstractmethod
    async def set_last_sync_time(self, timestamp: datetime) -> None:
        pass

    @abstractmethod
    async def remove_synced(self) -> int:
        pass

    @abstractmethod
    async def record_run(self, run: SyncRun) -> None:
        pass

    @abstractmethod
    async def list_runs(self, limit: int = 20) -> List[SyncRun]:
        pass

    @abstractmethod
    async def count_pending(self) -> int:
        pass


def _store_call(action: str) -> Callable:
    """Wrap SQLAlchemy failures of a store method into ``LocalStoreError``."""

    def decorator(func_):
        @functools.wraps(func_)
        async def wrapper(self, *args, **kwargs):
            try:
                return await func_(self, *args, **kwargs)
            except SQLAlchemyError as e:
                logger.error(f"Local store failure during {action}: {e}")
                raise LocalStoreError(
                    f"Local store failure during {action}: {e}",
                    original_exception=e
                ) from e
        return wrapper

    return decorator


class SqlAlchemyLocalStore(LocalStore):
    """LocalStore backed by an async SQLAlchemy session factory."""

    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    @_store_call("pending query")
    async def get_pending(self) -> List[Reading]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(Reading)
                .where(Reading.sync_status.in_(UNSYNCED_STATUSES))
                .order_by(Reading.created_at.asc(), Reading.id.asc())
            )
            return list(result.scalars().all())

    @_store_call("pending count")
    async def count_pending(self) -> int:
        async with self.session_factory() as db:
            result = await db.execute(
                select(func.count()).select_from(Reading)
                .where(Reading.sync_status.in_(UNSYNCED_STATUSES))
            )
            return int(result.scalar_one())

    @_store_call("upsert")
    async def upsert(self, entity: Base) -> bool:
        model: Type[Base] = type(entity)
        identity = entity.id

        async with self.session_factory() as db:
            existing = await db.get(model, identity)
            if existing is not None:
                return False
            db.add(entity)
            await db.commit()
            return True

    @_store_call("count")
    async def count(self, model: Type[Base]) -> int:
        async with self.session_factory() as db:
            result = await db.execute(select(func.count()).select_from(model))
            return int(result.scalar_one())

    @_store_call("save reading")
    async def save_reading(self, reading: Reading) -> Reading:
        """Persist a newly captured reading as pending."""
        reading.sync_status = SyncStatus.PENDING
        reading.remote_id = None
        async with self.session_factory() as db:
            db.add(reading)
            await db.commit()
        return reading

    @_store_call("get reading")
    async def get_reading(self, record_id: str) -> Optional[Reading]:
        async with self.session_factory() as db:
            return await db.get(Reading, record_id)

    @_store_call("mark synced")
    async def mark_synced(self, record_id: str, remote_id: str) -> None:
        if not remote_id:
            raise ValueError(f"Reading {record_id} cannot be marked synced without a remote id")

        async with self.session_factory() as db:
            await db.execute(
                update(Reading)
                .where(Reading.id == record_id)
                .values(
                    sync_status=SyncStatus.SYNCED,
                    remote_id=remote_id,
                    last_error=None,
                    synced_at=datetime.now(timezone.utc)
                )
            )
            await db.commit()

    @_store_call("record failure")
    async def record_failure(self, record_id: str, message: str) -> None:
        async with self.session_factory() as db:
            await db.execute(
                update(Reading)
                .where(Reading.id == record_id)
                .where(Reading.sync_status != SyncStatus.SYNCED)
                .values(
                    sync_status=SyncStatus.PENDING,
                    last_error=message,
                    sync_attempts=Reading.sync_attempts + 1
                )
            )
            await db.commit()

    @_store_call("remove synced")
    async def remove_synced(self) -> int:
        async with self.session_factory() as db:
            result = await db.execute(
                delete(Reading).where(Reading.sync_status == SyncStatus.SYNCED)
            )
            await db.commit()
            return result.rowcount or 0

    @_store_call("read last sync time")
    async def get_last_sync_time(self) -> Optional[datetime]:
        async with self.session_factory() as db:
            entry = await db.get(SyncStateEntry, LAST_SYNC_TIME_KEY)
            if entry is None or not entry.value:
                return None
            return datetime.fromisoformat(entry.value)

    @_store_call("write last sync time")
    async def set_last_sync_time(self, timestamp: datetime) -> None:
        async with self.session_factory() as db:
            entry = await db.get(SyncStateEntry, LAST_SYNC_TIME_KEY)
            if entry is None:
                db.add(SyncStateEntry(key=LAST_SYNC_TIME_KEY, value=timestamp.isoformat()))
            else:
                entry.value = timestamp.isoformat()
            await db.commit()

    @_store_call("record run")
    async def record_run(self, run: SyncRun) -> None:
        async with self.session_factory() as db:
            db.add(run)
            await db.commit()

    @_store_call("list runs")
    async def list_runs(self, limit: int = 20) -> List[SyncRun]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(SyncRun).order_by(SyncRun.started_at.desc(), SyncRun.id.desc()).limit(limit)
            )
            return list(result.scalars().all())

    @_store_call("get")
    async def get(self, model: Type[Base], identity: str) -> Optional[Any]:
        async with self.session_factory() as db:
            return await db.get(model, identity)
