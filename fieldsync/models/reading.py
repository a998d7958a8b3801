"""
SQLAlchemy model for meter readings captured in the field.
"""

import enum
from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, Enum as SQLEnum, Index, Integer, String, Text

from fieldsync.core.database import Base


class SyncStatus(str, enum.Enum):
    """Upload state of a locally captured record."""
    PENDING = "pending"
    SYNCED = "synced"
    ERROR = "error"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Reading(Base):
    """
    A meter reading waiting for (or done with) upload.

    ``remote_id`` is only ever set together with ``SyncStatus.SYNCED``.
    """

    __tablename__ = "readings"

    id = Column(String(64), primary_key=True)
    residence_id = Column(String(64), nullable=True)
    client_id = Column(String(64), nullable=True)
    reader_id = Column(String(64), nullable=True)

    value = Column(String(64), nullable=True)
    photo_path = Column(String(500), nullable=True)
    visit_status = Column(String(32), nullable=True)
    read_date = Column(String(10), nullable=True)  # YYYY-MM-DD
    read_time = Column(String(8), nullable=True)  # HH:MM:SS

    sync_status = Column(SQLEnum(SyncStatus), nullable=False, default=SyncStatus.PENDING)
    remote_id = Column(String(64), nullable=True)
    sync_attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    synced_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("idx_readings_sync_status_created", "sync_status", "created_at"),
    )

    @property
    def is_synced(self) -> bool:
        return self.sync_status == SyncStatus.SYNCED and bool(self.remote_id)

    def __repr__(self) -> str:
        return f"<Reading {self.id} {self.sync_status}>"
