"""
SQLAlchemy models for the reader's route assignment graph.

Identifiers are assigned by the remote backend and reused verbatim as primary
keys, which is what makes down-sync inserts idempotent.
"""

from sqlalchemy import Column, DateTime, ForeignKey, Index, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from fieldsync.core.database import Base


class Area(Base):
    """Neighbourhood grouping streets."""

    __tablename__ = "areas"

    id = Column(String(64), primary_key=True)
    name = Column(String(255), nullable=False)
    city = Column(String(255), nullable=False)

    created_at = Column(DateTime(timezone=True), server_default=func.now())

    streets = relationship("Street", back_populates="area")


class Street(Base):
    __tablename__ = "streets"

    id = Column(String(64), primary_key=True)
    name = Column(String(255), nullable=False)
    area_id = Column(String(64), ForeignKey("areas.id"), nullable=False)

    created_at = Column(DateTime(timezone=True), server_default=func.now())

    area = relationship("Area", back_populates="streets")
    residences = relationship("Residence", back_populates="street")


class Route(Base):
    """A street assigned to a reader on a given weekday."""

    __tablename__ = "routes"

    id = Column(String(64), primary_key=True)
    reader_id = Column(String(64), nullable=False, index=True)
    street_id = Column(String(64), ForeignKey("streets.id"), nullable=False)
    weekday = Column(String(32), nullable=False)

    created_at = Column(DateTime(timezone=True), server_default=func.now())

    street = relationship("Street")

    __table_args__ = (
        Index("idx_routes_reader_weekday", "reader_id", "weekday"),
    )


class Residence(Base):
    __tablename__ = "residences"

    id = Column(String(64), primary_key=True)
    street_id = Column(String(64), ForeignKey("streets.id"), nullable=False, index=True)
    number = Column(String(32), nullable=False)

    created_at = Column(DateTime(timezone=True), server_default=func.now())

    street = relationship("Street", back_populates="residences")
    clients = relationship("Client", back_populates="residence")


class Client(Base):
    """Utility customer living at a residence."""

    __tablename__ = "clients"

    id = Column(String(64), primary_key=True)
    name = Column(String(255), nullable=False)
    document = Column(String(32), nullable=True)
    phone = Column(String(32), nullable=True)
    email = Column(String(255), nullable=True)
    residence_id = Column(String(64), ForeignKey("residences.id"), nullable=False, index=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())

    residence = relationship("Residence", back_populates="clients")
