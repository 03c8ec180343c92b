"""Job poller - background polling for completed jobs and note sync."""

import asyncio
import logging
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, Optional, Protocol

from services.scanner_client.base import ScannerClientBase
from services.sync_service.ledger import SyncLedger
from services.sync_service.materializer import NoteMaterializer
from services.sync_service.notifications import NotificationService
from shared.config import MAX_POLL_INTERVAL, SyncSettings
from shared.errors import RateLimitError, get_user_error_message
from shared.models import Job, JobStatus, SyncJobOutcome, SyncResult, format_timestamp, utcnow

logger = logging.getLogger(__name__)

MAX_CONSECUTIVE_ERRORS = 5
BASE_BACKOFF_SECONDS = 5.0
MAX_BACKOFF_SECONDS = MAX_POLL_INTERVAL
PRUNE_EVERY = timedelta(hours=24)


class SchedulerState(str, Enum):
    IDLE = "idle"
    SCHEDULED = "scheduled"
    POLLING = "polling"
    PAUSED = "paused"
    STOPPED_ON_ERROR = "stopped_on_error"


class TimerHandle(Protocol):
    def cancel(self) -> None: ...


TimerFactory = Callable[[float, Callable[[], None]], TimerHandle]


def asyncio_timer(delay: float, callback: Callable[[], None]) -> TimerHandle:
    """Arm a one-shot timer on the running event loop."""
    return asyncio.get_running_loop().call_later(delay, callback)


def compute_backoff_delay(
    poll_interval: float,
    consecutive_errors: int,
    retry_after: Optional[float] = None
) -> float:
    """
    Delay before the next poll, in seconds.

    With no errors this is the configured interval. After n consecutive
    failures it is ``max(interval, 5 * 2**(n-1))``, raised to a server
    supplied retry-after when present, and never above 300 seconds.
    """
    if consecutive_errors <= 0:
        return poll_interval

    backoff = min(BASE_BACKOFF_SECONDS * (2 ** (consecutive_errors - 1)), MAX_BACKOFF_SECONDS)
    delay = max(poll_interval, backoff)

    if retry_after:
        delay = max(delay, retry_after)

    return min(delay, MAX_BACKOFF_SECONDS)


class JobPoller:
    """
    Polls the scanner service for completed jobs and materializes them.

    One timer drives all polling and at most one poll cycle runs at a time,
    guarded by the polling flag. Within a cycle, jobs are handled strictly
    one after another.
    """

    def __init__(
        self,
        client: ScannerClientBase,
        ledger: SyncLedger,
        materializer: NoteMaterializer,
        settings: SyncSettings,
        notifier: Optional[NotificationService] = None,
        timer_factory: Optional[TimerFactory] = None,
        clock: Callable[[], datetime] = utcnow,
        on_sync_complete: Optional[Callable[[SyncResult], None]] = None,
        on_poller_stopped: Optional[Callable[[], None]] = None,
        on_sync_progress: Optional[Callable[[int, int], None]] = None
    ):
        """
        Initialize the poller.

        Args:
            client: Scanner service client
            ledger: Ledger of already materialized jobs
            materializer: Writes results as notes
            settings: Poll interval, auto-sync and notification settings
            notifier: Receives user-visible notices
            timer_factory: ``(delay_seconds, callback) -> handle``; defaults to asyncio
            clock: Source of the current time
            on_sync_complete: Called after every successful scheduled poll
            on_poller_stopped: Called when the poller stops after repeated errors
            on_sync_progress: Called with (current, total) while syncing jobs
        """
        self.client = client
        self.ledger = ledger
        self.materializer = materializer
        self.settings = settings
        self.notifier = notifier
        self.clock = clock
        self.on_sync_complete = on_sync_complete
        self.on_poller_stopped = on_poller_stopped
        self.on_sync_progress = on_sync_progress
        self._timer_factory = timer_factory or asyncio_timer

        self._timer: Optional[TimerHandle] = None
        self._poll_task: Optional[asyncio.Future] = None
        self._running = False
        self._polling = False
        self._paused = False
        self._stopped_on_error = False
        self._consecutive_errors = 0
        self._next_delay: Optional[float] = None
        self._last_error: Optional[str] = None
        self._last_poll_at: Optional[datetime] = None
        self._last_prune_at: Optional[datetime] = None
        self._progress: Optional[tuple] = None

    # Lifecycle Methods

    @property
    def state(self) -> SchedulerState:
        if self._stopped_on_error:
            return SchedulerState.STOPPED_ON_ERROR
        if self._polling:
            return SchedulerState.POLLING
        if self._paused and self._running:
            return SchedulerState.PAUSED
        if self._timer is not None:
            return SchedulerState.SCHEDULED
        return SchedulerState.IDLE

    @property
    def consecutive_errors(self) -> int:
        return self._consecutive_errors

    @property
    def next_delay(self) -> Optional[float]:
        """Delay used when the timer was last armed."""
        return self._next_delay

    def is_running(self) -> bool:
        return self._timer is not None

    def is_paused(self) -> bool:
        return self._paused

    def is_stopped_due_to_errors(self) -> bool:
        return self._stopped_on_error

    def start(self) -> None:
        """Arm the polling timer if auto-sync is enabled."""
        if self._timer is not None:
            logger.info("JobPoller already running")
            return

        if self._stopped_on_error:
            logger.info("JobPoller stopped after errors, waiting for explicit resume")
            return

        if not self.settings.auto_sync:
            logger.info("Auto-sync disabled, not starting poller")
            return

        logger.info(f"Starting JobPoller with {self.settings.poll_interval}s interval")
        self._running = True
        self._schedule_next_poll()

    def stop(self) -> None:
        """
        Stop scheduling polls.

        A poll already in flight runs to completion but does not re-arm the timer.
        """
        self._cancel_timer()
        self._running = False
        self._stopped_on_error = False
        logger.info("JobPoller stopped")

    def pause(self) -> None:
        """Suppress polling without touching the timer chain."""
        self._paused = True
        logger.info("JobPoller paused")

    def resume(self) -> None:
        self._paused = False
        logger.info("JobPoller resumed")

    def resume_after_error(self) -> bool:
        """
        Resume after the poller stopped on repeated errors.

        Returns:
            True if the poller was stopped on errors and has been restarted
        """
        if not self._stopped_on_error:
            return False

        logger.info("Resuming JobPoller after error stop")
        self._stopped_on_error = False
        self._consecutive_errors = 0
        self._last_error = None
        self.start()
        return True

    def restart(self) -> None:
        """Stop, reset the error counter and start again with current settings."""
        self.stop()
        self._consecutive_errors = 0
        self.start()

    def reconfigure(self, settings: SyncSettings, client: Optional[ScannerClientBase] = None) -> None:
        """Apply new settings (and optionally a new client), then restart."""
        self.settings = settings
        if client is not None:
            self.client = client
        self.restart()

    # Polling Logic

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _schedule_next_poll(self, retry_after: Optional[float] = None) -> None:
        self._cancel_timer()
        if not self._running:
            return

        delay = compute_backoff_delay(self.settings.poll_interval, self._consecutive_errors, retry_after)
        if self._consecutive_errors > 0:
            logger.info(f"Backoff applied: {delay}s ({self._consecutive_errors} consecutive errors)")

        self._next_delay = delay
        self._timer = self._timer_factory(delay, self._fire)

    def _fire(self) -> None:
        self._poll_task = asyncio.ensure_future(self.on_timer())

    async def on_timer(self) -> None:
        """Handle the timer firing."""
        self._timer = None

        if not self._running:
            return

        if self._paused or self._polling:
            self._schedule_next_poll()
            return

        if not self.settings.auto_sync:
            self._running = False
            return

        await self._poll()

    async def _poll(self) -> None:
        self._polling = True
        self._last_poll_at = self.clock()

        try:
            result = await self.sync_completed_jobs()
        except Exception as e:
            self._polling = False
            await self._handle_poll_failure(e)
            return

        self._polling = False
        self._consecutive_errors = 0
        self._last_error = None

        try:
            await self._report_sync(result)
        except Exception as e:
            logger.error(f"Post-sync reporting failed: {e}", exc_info=True)
        finally:
            self._maybe_prune()
            self._schedule_next_poll()

    async def _report_sync(self, result: SyncResult) -> None:
        if result.synced_count > 0 and self.settings.notify_on_sync:
            plural = "s" if result.synced_count != 1 else ""
            await self._notify(
                f"Synced {result.synced_count} new note{plural} to {self.settings.output_folder}/"
            )

        if self.on_sync_complete:
            self.on_sync_complete(result)

    async def _handle_poll_failure(self, error: Exception) -> None:
        if not self._running:
            logger.info(f"Poll failed after stop, ignoring: {error}")
            return

        self._consecutive_errors += 1
        self._last_error = get_user_error_message(error)
        logger.error(f"Poll failed ({self._consecutive_errors} consecutive): {error}")

        if self._consecutive_errors >= MAX_CONSECUTIVE_ERRORS:
            logger.error("Too many consecutive errors, stopping poller")
            self._cancel_timer()
            self._running = False
            self._stopped_on_error = True
            try:
                await self._notify(
                    "Notebook Scanner sync paused after repeated errors. Resume to continue.", level="error"
                )
                if self.on_poller_stopped:
                    self.on_poller_stopped()
            except Exception as e:
                logger.error(f"Failed to report poller stop: {e}", exc_info=True)
            return

        retry_after = error.retry_after if isinstance(error, RateLimitError) else None
        self._schedule_next_poll(retry_after)

    def _maybe_prune(self) -> None:
        now = self.clock()
        if self._last_prune_at is not None and now - self._last_prune_at < PRUNE_EVERY:
            return

        self._last_prune_at = now
        try:
            self.ledger.prune(self.settings.retention_days)
        except Exception as e:
            logger.warning(f"Failed to prune sync state: {e}")

    async def _notify(self, message: str, level: str = "info") -> None:
        if self.notifier is not None:
            await self.notifier.notify(message, level=level)

    async def sync_now(self) -> SyncResult:
        """
        Run one sync cycle immediately.

        Returns an empty result if a poll is already in flight. Failure to
        list jobs propagates to the caller and does not count towards the
        scheduler's error counter.
        """
        if self._polling:
            logger.info("Sync already in progress, skipping manual sync")
            return SyncResult()

        self._polling = True
        try:
            return await self.sync_completed_jobs()
        finally:
            self._polling = False

    # Sync Logic

    async def sync_completed_jobs(self) -> SyncResult:
        """
        Sync all completed jobs that are not in the ledger yet.

        Raises:
            ScannerError: If the completed jobs cannot be listed
        """
        completed_jobs = await self.client.list_jobs(JobStatus.COMPLETED)
        unsynced_jobs = [job for job in completed_jobs if not self.ledger.is_synced(job.id)]

        if not unsynced_jobs:
            return SyncResult()

        total = len(unsynced_jobs)
        logger.info(f"Found {total} unsynced completed jobs")

        outcomes = []
        try:
            for index, job in enumerate(unsynced_jobs, start=1):
                self._progress = (index, total)
                if self.on_sync_progress:
                    self.on_sync_progress(index, total)

                outcomes.append(await self._sync_job(job))
        finally:
            self._progress = None

        result = SyncResult.from_outcomes(outcomes)
        logger.info(f"Sync cycle finished: {result.synced_count} synced, {result.failed_count} failed")
        return result

    async def _sync_job(self, job: Job) -> SyncJobOutcome:
        """Fetch, materialize and record one job. Failures stay with the job."""
        try:
            processed_note = await self.client.get_result(job.id)
            outcome = self.materializer.materialize(processed_note)
            self.ledger.mark_synced(job.id, outcome.location)

            return SyncJobOutcome(job_id=job.id, success=True, location=outcome.location)
        except Exception as e:
            logger.error(f"Failed to sync job {job.id}: {e}", exc_info=True)
            return SyncJobOutcome(job_id=job.id, success=False, error=get_user_error_message(e))

    def status(self) -> Dict[str, Any]:
        """Snapshot of the poller for status displays."""
        progress = None
        if self._progress:
            progress = {"current": self._progress[0], "total": self._progress[1]}

        return {
            "state": self.state.value,
            "paused": self._paused,
            "autoSync": self.settings.auto_sync,
            "pollInterval": self.settings.poll_interval,
            "nextDelay": self._next_delay,
            "consecutiveErrors": self._consecutive_errors,
            "lastError": self._last_error,
            "lastPollAt": format_timestamp(self._last_poll_at),
            "lastSyncTime": format_timestamp(self.ledger.last_sync_time()),
            "syncedCount": self.ledger.synced_count(),
            "progress": progress,
        }
