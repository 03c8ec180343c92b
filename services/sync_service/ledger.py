"""Sync ledger - tracks which jobs have already been materialized."""

import logging
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Callable, Iterable, List, Optional, Tuple

from shared.config import SYNC_STATE_RETENTION_DAYS
from shared.models import SyncedRecord, SyncLedgerState, utcnow

logger = logging.getLogger(__name__)

StatePersister = Callable[[SyncLedgerState], None]


class SyncLedger:
    """
    Idempotent record of synced job ids.

    Every mutation hands the full state to the injected persister before
    returning, so an interrupted process loses at most the in-flight change.
    """

    def __init__(
        self,
        initial_state: Optional[SyncLedgerState],
        persister: StatePersister,
        clock: Callable[[], datetime] = utcnow
    ):
        state = initial_state or SyncLedgerState()
        self._records: List[SyncedRecord] = []
        self._index = {}
        for record in state.synced_records:
            # Collapse duplicates that may exist in older persisted state
            if record.job_id not in self._index:
                self._index[record.job_id] = record
                self._records.append(record)
        self._last_sync_time = state.last_sync_time
        self._persister = persister
        self._clock = clock

    # Query Methods

    def is_synced(self, job_id: str) -> bool:
        return job_id in self._index

    def get_synced_record(self, job_id: str) -> Optional[SyncedRecord]:
        record = self._index.get(job_id)
        return replace(record) if record else None

    def synced_job_ids(self) -> List[str]:
        return [record.job_id for record in self._records]

    def synced_count(self) -> int:
        return len(self._records)

    def last_sync_time(self) -> Optional[datetime]:
        return self._last_sync_time

    def get_state(self) -> SyncLedgerState:
        """Snapshot of the current state. Mutating it does not affect the ledger."""
        return SyncLedgerState(
            synced_records=[replace(record) for record in self._records],
            last_sync_time=self._last_sync_time
        )

    # Mutation Methods

    def mark_synced(self, job_id: str, location: str) -> None:
        """Record a job as materialized. Marking an already-synced job is a no-op."""
        if self.is_synced(job_id):
            logger.debug(f"Job {job_id} already synced, ignoring")
            return

        now = self._clock()
        self._add(SyncedRecord(job_id=job_id, synced_at=now, location=location))
        self._last_sync_time = now
        self._persist()

    def mark_many_synced(self, entries: Iterable[Tuple[str, str]]) -> int:
        """
        Record several (job_id, location) pairs with a single write.

        Returns:
            Number of newly added records
        """
        now = self._clock()
        added = 0
        for job_id, location in entries:
            if not self.is_synced(job_id):
                self._add(SyncedRecord(job_id=job_id, synced_at=now, location=location))
                added += 1

        if added:
            self._last_sync_time = now
            self._persist()
        return added

    def remove_synced(self, job_id: str) -> bool:
        """
        Forget a synced job, e.g. after its artifact was deleted.

        Returns:
            True if a record was removed
        """
        record = self._index.pop(job_id, None)
        if record is None:
            return False

        self._records.remove(record)
        self._persist()
        return True

    def prune(self, max_age_days: int = SYNC_STATE_RETENTION_DAYS) -> int:
        """
        Drop records synced more than ``max_age_days`` ago.

        Returns:
            Number of pruned records. Nothing is persisted when it is 0.
        """
        cutoff = self._clock() - timedelta(days=max_age_days)
        kept = [record for record in self._records if record.synced_at >= cutoff]
        pruned = len(self._records) - len(kept)

        if pruned > 0:
            self._records = kept
            self._index = {record.job_id: record for record in kept}
            self._persist()
            logger.info(f"Pruned {pruned} sync ledger entries older than {max_age_days} days")

        return pruned

    def clear(self) -> None:
        self._records = []
        self._index = {}
        self._last_sync_time = None
        self._persist()

    # Private Methods

    def _add(self, record: SyncedRecord) -> None:
        self._records.append(record)
        self._index[record.job_id] = record

    def _persist(self) -> None:
        self._persister(self.get_state())
