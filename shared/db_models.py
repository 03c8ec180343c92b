"""SQLAlchemy models for the locally persisted sync state."""

from sqlalchemy import Column, DateTime, Integer, String, Text
from sqlalchemy.orm import declarative_base
from sqlalchemy.sql import func


Base = declarative_base()


class SyncedRecordRow(Base):
    """Model for synced_records table. One row per materialized job."""
    __tablename__ = 'synced_records'

    id = Column(Integer, primary_key=True, autoincrement=True)
    job_id = Column(String(255), nullable=False, unique=True, index=True)
    synced_at = Column(DateTime(timezone=True), nullable=False)
    location = Column(Text, nullable=False)


class LedgerMeta(Base):
    """Model for ledger_meta table. Holds a single row."""
    __tablename__ = 'ledger_meta'

    id = Column(Integer, primary_key=True)
    last_sync_time = Column(DateTime(timezone=True), nullable=True)
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())


class Credential(Base):
    """Model for credentials table."""
    __tablename__ = 'credentials'

    name = Column(String(64), primary_key=True)
    service_url = Column(String(1024), nullable=False)
    api_key = Column(Text, nullable=False)  # Encrypted
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())
