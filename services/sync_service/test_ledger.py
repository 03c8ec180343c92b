"""Unit tests for the sync ledger."""

from datetime import datetime, timedelta, timezone
from unittest.mock import Mock

import pytest

from services.sync_service.ledger import SyncLedger
from shared.models import SyncedRecord, SyncLedgerState


NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def persister():
    return Mock()


@pytest.fixture
def ledger(persister):
    return SyncLedger(None, persister, clock=lambda: NOW)


def _record(job_id, days_ago):
    return SyncedRecord(job_id=job_id, synced_at=NOW - timedelta(days=days_ago), location=f"Notes/{job_id}.md")


def test_mark_synced_persists(ledger, persister):
    ledger.mark_synced("job-1", "Notes/a.md")

    assert ledger.is_synced("job-1")
    assert ledger.synced_count() == 1
    assert ledger.last_sync_time() == NOW
    persister.assert_called_once()

    state = persister.call_args.args[0]
    assert state.synced_records == [SyncedRecord("job-1", NOW, "Notes/a.md")]
    assert state.last_sync_time == NOW


def test_mark_synced_is_idempotent(ledger, persister):
    """Test that marking twice keeps the first record and writes once."""
    ledger.mark_synced("job-1", "Notes/a.md")
    ledger.mark_synced("job-1", "Notes/other.md")

    assert ledger.synced_count() == 1
    assert ledger.get_synced_record("job-1").location == "Notes/a.md"
    assert persister.call_count == 1


def test_mark_many_synced(ledger, persister):
    ledger.mark_synced("job-1", "Notes/a.md")
    persister.reset_mock()

    added = ledger.mark_many_synced([("job-1", "x"), ("job-2", "Notes/b.md"), ("job-3", "Notes/c.md")])

    assert added == 2
    assert ledger.synced_job_ids() == ["job-1", "job-2", "job-3"]
    persister.assert_called_once()


def test_mark_many_synced_nothing_new(ledger, persister):
    assert ledger.mark_many_synced([]) == 0
    persister.assert_not_called()


def test_initial_state_duplicates_collapse(persister):
    state = SyncLedgerState(synced_records=[_record("job-1", 1), _record("job-1", 2), _record("job-2", 1)])

    ledger = SyncLedger(state, persister, clock=lambda: NOW)

    assert ledger.synced_job_ids() == ["job-1", "job-2"]
    assert ledger.get_synced_record("job-1").synced_at == NOW - timedelta(days=1)
    persister.assert_not_called()


def test_remove_synced(ledger, persister):
    ledger.mark_synced("job-1", "Notes/a.md")
    persister.reset_mock()

    assert ledger.remove_synced("job-1") is True
    assert ledger.is_synced("job-1") is False
    persister.assert_called_once()

    persister.reset_mock()
    assert ledger.remove_synced("job-1") is False
    persister.assert_not_called()


def test_prune_drops_old_records(persister):
    """Test that prune(30) removes only records older than 30 days."""
    state = SyncLedgerState(synced_records=[
        _record("old", 31),
        _record("edge", 30),
        _record("recent", 29),
        _record("today", 0),
    ])
    ledger = SyncLedger(state, persister, clock=lambda: NOW)

    pruned = ledger.prune(30)

    assert pruned == 1
    assert ledger.synced_job_ids() == ["edge", "recent", "today"]
    assert ledger.is_synced("old") is False
    persister.assert_called_once()


def test_prune_nothing_does_not_write(persister):
    ledger = SyncLedger(SyncLedgerState(synced_records=[_record("recent", 1)]), persister, clock=lambda: NOW)

    assert ledger.prune(30) == 0
    persister.assert_not_called()


def test_clear(ledger, persister):
    ledger.mark_synced("job-1", "Notes/a.md")

    ledger.clear()

    assert ledger.synced_count() == 0
    assert ledger.last_sync_time() is None
    assert persister.call_args.args[0] == SyncLedgerState()


def test_snapshots_are_copies(ledger):
    ledger.mark_synced("job-1", "Notes/a.md")

    ledger.get_synced_record("job-1").location = "changed"
    ledger.get_state().synced_records.clear()

    assert ledger.get_synced_record("job-1").location == "Notes/a.md"
    assert ledger.synced_count() == 1
    assert ledger.get_synced_record("missing") is None


def test_persister_failure_propagates(persister):
    persister.side_effect = OSError("disk full")
    ledger = SyncLedger(None, persister, clock=lambda: NOW)

    with pytest.raises(OSError):
        ledger.mark_synced("job-1", "Notes/a.md")
