"""In-memory scanner client for development without a backend."""

import asyncio
import logging
import os
import random
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from services.scanner_client.base import ScannerClientBase
from shared.config import SyncSettings
from shared.errors import FileTooLargeError, JobNotFailedError, NotFoundError, ValidationError
from shared.models import (
    BackendSettings,
    HealthStatus,
    Job,
    JobStatus,
    NoteCategory,
    ProcessedNote,
    UploadFailure,
    UploadResult,
    UploadSource,
    utcnow,
)

logger = logging.getLogger(__name__)

MOCK_CONTENT = """# Meeting Notes

## Attendees
- Alice
- Bob
- Charlie

## Discussion Points

1. Project timeline review
2. Budget allocation
3. Next steps

## Action Items

- [ ] Alice: Prepare presentation
- [ ] Bob: Review documentation
- [ ] Charlie: Schedule follow-up"""


@dataclass
class _MockJob:
    job: Job
    run_started: datetime
    processing_seconds: float
    will_fail: bool


class MockScannerClient(ScannerClientBase):
    """
    Simulates the scanner service in memory.

    Jobs move pending -> processing after ``start_delay`` seconds and reach a
    terminal state ``processing_seconds`` later, evaluated lazily against the
    injected clock whenever jobs are read.
    """

    def __init__(
        self,
        settings: SyncSettings,
        clock: Callable[[], datetime] = utcnow,
        rng: Optional[random.Random] = None,
        failure_rate: float = 0.1,
        start_delay: float = 1.0,
        processing_range: tuple = (3.0, 5.0),
        latency: float = 0.0
    ):
        super().__init__(settings)
        self.clock = clock
        self.rng = rng or random.Random()
        self.failure_rate = failure_rate
        self.start_delay = start_delay
        self.processing_range = processing_range
        self.latency = latency
        self._jobs: Dict[str, _MockJob] = {}
        self._results: Dict[str, ProcessedNote] = {}
        self._counter = 0
        self._backend_settings = BackendSettings()

    async def _simulate_latency(self) -> None:
        if self.latency:
            await asyncio.sleep(self.latency)

    async def upload(self, sources: List[UploadSource]) -> UploadResult:
        await self._simulate_latency()

        if len(sources) > self.settings.max_batch_size:
            raise ValidationError(
                f"Too many files in one upload ({len(sources)}). "
                f"Maximum is {self.settings.max_batch_size}."
            )

        job_ids = []
        failed = []

        for source in sources:
            if source.size > self.settings.max_file_size:
                error = FileTooLargeError(source.filename, source.size, self.settings.max_file_size)
                failed.append(UploadFailure(filename=source.filename, reason=error.message))
                continue
            job_ids.append(self._create_job(source.filename))

        return UploadResult(
            job_ids=job_ids,
            message=f"{len(job_ids)} images queued for processing",
            failed=failed
        )

    async def list_jobs(
        self,
        status: Optional[JobStatus] = None,
        limit: Optional[int] = None,
        offset: Optional[int] = None,
        since: Optional[datetime] = None
    ) -> List[Job]:
        await self._simulate_latency()
        self._advance_all()

        jobs = sorted(
            (entry.job for entry in self._jobs.values()),
            key=lambda job: job.created_at,
            reverse=True
        )
        if status is not None:
            jobs = [job for job in jobs if job.status == JobStatus(status)]
        if since is not None:
            jobs = [job for job in jobs if job.created_at >= since]

        start = offset or 0
        end = start + limit if limit is not None else None
        return [self._copy(job) for job in jobs[start:end]]

    async def get_job(self, job_id: str) -> Job:
        await self._simulate_latency()
        entry = self._get_entry(job_id)
        self._advance(entry)
        return self._copy(entry.job)

    async def get_result(self, job_id: str) -> ProcessedNote:
        await self._simulate_latency()
        self._advance(self._get_entry(job_id))

        result = self._results.get(job_id)
        if result is None:
            raise NotFoundError("Result", job_id)
        return result

    async def retry_job(self, job_id: str) -> None:
        await self._simulate_latency()
        entry = self._get_entry(job_id)
        self._advance(entry)

        if entry.job.status != JobStatus.FAILED:
            raise JobNotFailedError(job_id, entry.job.status.value)

        entry.job.status = JobStatus.PENDING
        entry.job.error = None
        entry.job.attempts = 0
        entry.job.started_at = None
        entry.job.completed_at = None
        entry.run_started = self.clock()
        entry.will_fail = self._roll_failure()

    async def delete_job(self, job_id: str) -> None:
        await self._simulate_latency()
        self._get_entry(job_id)
        del self._jobs[job_id]
        self._results.pop(job_id, None)

    async def get_settings(self) -> BackendSettings:
        await self._simulate_latency()
        return BackendSettings(self._backend_settings.image_retention_hours)

    async def update_settings(self, image_retention_hours: int) -> BackendSettings:
        await self._simulate_latency()
        self._backend_settings = BackendSettings(image_retention_hours=image_retention_hours)
        return BackendSettings(image_retention_hours)

    async def check_health(self) -> HealthStatus:
        await self._simulate_latency()
        return HealthStatus(status="healthy", timestamp=self.clock())

    # Simulation helpers

    def _create_job(self, filename: str) -> str:
        self._counter += 1
        now = self.clock()
        job_id = f"mock-job-{self._counter}-{os.urandom(4).hex()}"

        self._jobs[job_id] = _MockJob(
            job=Job(id=job_id, status=JobStatus.PENDING, created_at=now, filename=filename),
            run_started=now,
            processing_seconds=self.rng.uniform(*self.processing_range),
            will_fail=self._roll_failure()
        )
        return job_id

    def _roll_failure(self) -> bool:
        return self.rng.random() < self.failure_rate

    def _get_entry(self, job_id: str) -> _MockJob:
        entry = self._jobs.get(job_id)
        if entry is None:
            raise NotFoundError("Job", job_id)
        return entry

    def _advance_all(self) -> None:
        for entry in self._jobs.values():
            self._advance(entry)

    def _advance(self, entry: _MockJob) -> None:
        job = entry.job
        if job.is_terminal:
            return

        now = self.clock()
        started_at = entry.run_started + timedelta(seconds=self.start_delay)
        finished_at = started_at + timedelta(seconds=entry.processing_seconds)

        if job.status == JobStatus.PENDING and now >= started_at:
            job.status = JobStatus.PROCESSING
            job.started_at = started_at
            job.attempts = 1

        if job.status == JobStatus.PROCESSING and now >= finished_at:
            job.completed_at = finished_at
            if entry.will_fail:
                job.status = JobStatus.FAILED
                job.error = "Simulated processing failure"
            else:
                job.status = JobStatus.COMPLETED
                job.has_result = True
                self._results[job.id] = self._create_result(job)

    def _create_result(self, job: Job) -> ProcessedNote:
        category = self.rng.choice([
            NoteCategory.MEETING,
            NoteCategory.LECTURE,
            NoteCategory.BRAINSTORM,
            NoteCategory.TODO,
            NoteCategory.JOURNAL,
        ])
        stem = os.path.splitext(job.filename or "scan")[0]

        return ProcessedNote(
            job_id=job.id,
            title=f"Notes from {stem}",
            content=MOCK_CONTENT,
            tags=["mock", "example", category.value],
            date=job.completed_at.date().isoformat(),
            category=category,
            summary="This is a mock processed note for development and testing purposes.",
            processed_at=job.completed_at
        )

    @staticmethod
    def _copy(job: Job) -> Job:
        return Job(**vars(job))
