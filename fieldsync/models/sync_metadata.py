"""
SQLAlchemy models for sync bookkeeping: key/value sync state and run history.
"""

from sqlalchemy import Column, DateTime, Integer, String, Text
from sqlalchemy.sql import func

from fieldsync.core.database import Base


class SyncStateEntry(Base):
    """Small key/value table (e.g. the last successful sync time)."""

    __tablename__ = "sync_state"

    key = Column(String(64), primary_key=True)
    value = Column(Text, nullable=True)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class SyncRun(Base):
    """Model for tracking individual sync sessions."""

    __tablename__ = "sync_runs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    kind = Column(String(8), nullable=False)  # "down" or "up"
    reader_id = Column(String(64), nullable=True)
    trigger = Column(String(16), nullable=False, default="manual")  # "manual" or "reconnect"

    # Outcome
    outcome = Column(String(16), nullable=False)
    success = Column(Integer, nullable=False, default=0)
    synced_count = Column(Integer, nullable=False, default=0)
    error_count = Column(Integer, nullable=False, default=0)
    detail = Column(Text, nullable=True)

    # Timing
    started_at = Column(DateTime(timezone=True), nullable=False)
    finished_at = Column(DateTime(timezone=True), nullable=False)

    def to_dict(self):
        return {
            'id': self.id,
            'kind': self.kind,
            'reader_id': self.reader_id,
            'trigger': self.trigger,
            'outcome': self.outcome,
            'success': bool(self.success),
            'synced_count': self.synced_count,
            'error_count': self.error_count,
            'detail': self.detail,
            'started_at': self.started_at.isoformat() if self.started_at else None,
            'finished_at': self.finished_at.isoformat() if self.finished_at else None,
        }
