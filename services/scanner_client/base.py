"""Interface shared by every scanner service client variant."""

import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import List, Optional

from shared.config import SyncSettings
from shared.errors import ScannerError
from shared.models import (
    BackendSettings,
    HealthStatus,
    Job,
    JobStatus,
    ProcessedNote,
    RetryBatchResult,
    UploadResult,
    UploadSource,
)

logger = logging.getLogger(__name__)


class ScannerClientBase(ABC):
    """
    Capability set of the remote scanner service.

    Implementations never retry internally: every failure reaches the caller
    as a ScannerError subclass.
    """

    def __init__(self, settings: SyncSettings):
        self.settings = settings

    def reconfigure(self, settings: SyncSettings) -> None:
        """Apply new settings (service URL, API key, upload limits)."""
        self.settings = settings

    @abstractmethod
    async def upload(self, sources: List[UploadSource]) -> UploadResult:
        """Upload images and create one job per successfully stored file."""

    @abstractmethod
    async def list_jobs(
        self,
        status: Optional[JobStatus] = None,
        limit: Optional[int] = None,
        offset: Optional[int] = None,
        since: Optional[datetime] = None
    ) -> List[Job]:
        """List jobs, optionally filtered server-side."""

    @abstractmethod
    async def get_job(self, job_id: str) -> Job:
        ...

    @abstractmethod
    async def get_result(self, job_id: str) -> ProcessedNote:
        ...

    @abstractmethod
    async def retry_job(self, job_id: str) -> None:
        ...

    @abstractmethod
    async def delete_job(self, job_id: str) -> None:
        ...

    @abstractmethod
    async def get_settings(self) -> BackendSettings:
        ...

    @abstractmethod
    async def update_settings(self, image_retention_hours: int) -> BackendSettings:
        ...

    @abstractmethod
    async def check_health(self) -> HealthStatus:
        ...

    async def aclose(self) -> None:
        """Release any held connections."""

    async def retry_failed_jobs(self) -> RetryBatchResult:
        """
        Retry every failed job.

        Each retry succeeds or fails on its own; nothing is rolled back when a
        later retry in the batch fails.

        Returns:
            RetryBatchResult listing retried ids and per-job failure reasons
        """
        failed_jobs = [job for job in await self.list_jobs(JobStatus.FAILED) if job.can_retry]
        result = RetryBatchResult()

        for job in failed_jobs:
            try:
                await self.retry_job(job.id)
                result.retried.append(job.id)
            except ScannerError as e:
                logger.error(f"Retry failed for job {job.id}: {e}")
                result.failed[job.id] = e.message

        logger.info(f"Retried {len(result.retried)} failed jobs, {len(result.failed)} could not be retried")
        return result
