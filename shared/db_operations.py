"""Database operations backing the sync ledger and stored credentials."""

import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import create_engine, delete, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from shared.db_models import Base, Credential, LedgerMeta, SyncedRecordRow
from shared.config import get_database_url
from shared.models import SyncedRecord, SyncLedgerState

logger = logging.getLogger(__name__)

LEDGER_META_ID = 1
DEFAULT_CREDENTIAL_NAME = "default"


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite drops tzinfo on the way back out
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class DatabaseOperations:
    """Handles all database operations for the local sync state."""

    def __init__(self, database_url: Optional[str] = None):
        """Initialize database connection."""
        self.database_url = database_url or get_database_url()
        engine_kwargs = {"pool_pre_ping": True}
        if self.database_url.startswith("sqlite") and ":memory:" in self.database_url:
            # Share one connection so every session sees the same in-memory database
            engine_kwargs = {
                "connect_args": {"check_same_thread": False},
                "poolclass": StaticPool,
            }
        self.engine = create_engine(self.database_url, **engine_kwargs)
        self.SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=self.engine)

    def create_tables(self):
        """Create all tables in the database."""
        Base.metadata.create_all(bind=self.engine)

    def get_session(self) -> Session:
        """Get a new database session."""
        return self.SessionLocal()

    # Ledger State Operations

    def load_ledger_state(self) -> SyncLedgerState:
        """
        Load the persisted ledger state.

        Returns:
            SyncLedgerState with records in insertion order (empty if nothing stored)
        """
        with self.get_session() as session:
            rows = session.execute(
                select(SyncedRecordRow).order_by(SyncedRecordRow.id)
            ).scalars().all()
            meta = session.get(LedgerMeta, LEDGER_META_ID)

            records = [
                SyncedRecord(
                    job_id=row.job_id,
                    synced_at=_as_utc(row.synced_at),
                    location=row.location
                )
                for row in rows
            ]
            last_sync_time = _as_utc(meta.last_sync_time) if meta else None

        logger.info(f"Loaded ledger state with {len(records)} synced records")
        return SyncLedgerState(synced_records=records, last_sync_time=last_sync_time)

    def save_ledger_state(self, state: SyncLedgerState) -> None:
        """
        Replace the persisted ledger state in a single transaction.

        Used as the ledger's write-through persister, so a failure leaves the
        previously committed state intact.

        Args:
            state: Full ledger state to store
        """
        with self.get_session() as session:
            session.execute(delete(SyncedRecordRow))
            session.add_all([
                SyncedRecordRow(
                    job_id=record.job_id,
                    synced_at=record.synced_at,
                    location=record.location
                )
                for record in state.synced_records
            ])

            meta = session.get(LedgerMeta, LEDGER_META_ID)
            if meta is None:
                meta = LedgerMeta(id=LEDGER_META_ID)
                session.add(meta)
            meta.last_sync_time = state.last_sync_time

            session.commit()

    # Credential Management Operations

    def store_credentials(
        self,
        service_url: str,
        api_key: str,
        encryption_service: 'EncryptionService',
        name: str = DEFAULT_CREDENTIAL_NAME
    ) -> Credential:
        """
        Store or update service credentials with the API key encrypted.

        Args:
            service_url: Base URL of the scanner service
            api_key: API key (will be encrypted)
            encryption_service: Encryption service for encrypting the key
            name: Credential slot name

        Returns:
            The created or updated Credential record
        """
        with self.get_session() as session:
            encrypted_key = encryption_service.encrypt(api_key)

            credential = session.get(Credential, name)
            if credential:
                credential.service_url = service_url
                credential.api_key = encrypted_key
                credential.updated_at = datetime.now(timezone.utc)
            else:
                credential = Credential(
                    name=name,
                    service_url=service_url,
                    api_key=encrypted_key
                )
                session.add(credential)

            session.commit()
            session.refresh(credential)
            return credential

    def get_credentials(
        self,
        encryption_service: 'EncryptionService',
        name: str = DEFAULT_CREDENTIAL_NAME
    ) -> Optional[dict]:
        """
        Retrieve and decrypt stored credentials.

        Args:
            encryption_service: Encryption service for decrypting the key
            name: Credential slot name

        Returns:
            Dictionary with service_url and decrypted api_key, or None if not found
        """
        with self.get_session() as session:
            credential = session.get(Credential, name)

            if not credential:
                return None

            return {
                'service_url': credential.service_url,
                'api_key': encryption_service.decrypt(credential.api_key),
                'updated_at': _as_utc(credential.updated_at)
            }

    def delete_credentials(self, name: str = DEFAULT_CREDENTIAL_NAME) -> bool:
        """
        Delete stored credentials.

        Returns:
            True if credentials were deleted, False if not found
        """
        with self.get_session() as session:
            credential = session.get(Credential, name)

            if credential:
                session.delete(credential)
                session.commit()
                return True

            return False
