"""HTTP client for the scanner service API."""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

import httpx

from services.scanner_client.base import ScannerClientBase
from shared.config import SUPPORTED_FORMATS, SyncSettings
from shared.errors import (
    FileTooLargeError,
    InternalError,
    NetworkError,
    ScannerError,
    UnsupportedFormatError,
    ValidationError,
    parse_api_error,
)
from shared.models import (
    BackendSettings,
    HealthStatus,
    Job,
    JobStatus,
    ProcessedNote,
    UploadFailure,
    UploadResult,
    UploadSource,
    UploadUnit,
    format_timestamp,
    parse_timestamp,
)

logger = logging.getLogger(__name__)

DEFAULT_CONTENT_TYPE = "image/jpeg"


class ScannerClient(ScannerClientBase):
    """
    Client for the scanner service API.

    Upload flow:
    1. Request a signed URL for each file
    2. PUT the raw bytes to that URL
    3. Finalize all stored files in one call, creating one job per file
    """

    def __init__(
        self,
        settings: SyncSettings,
        http_client: Optional[httpx.AsyncClient] = None,
        upload_client: Optional[httpx.AsyncClient] = None
    ):
        """
        Initialize the client.

        Args:
            settings: Settings carrying service URL, API key and upload limits
            http_client: Client for authenticated API calls (created if omitted)
            upload_client: Client for signed-URL transfers, which must not carry
                the API key (created if omitted)
        """
        super().__init__(settings)
        self._owns_clients = http_client is None and upload_client is None
        self.http_client = http_client or httpx.AsyncClient(timeout=settings.request_timeout)
        self.upload_client = upload_client or httpx.AsyncClient(timeout=settings.request_timeout)

    async def aclose(self) -> None:
        if self._owns_clients:
            await self.http_client.aclose()
            await self.upload_client.aclose()

    # Upload Methods

    async def upload(self, sources: List[UploadSource]) -> UploadResult:
        """
        Upload images through the signed-URL pipeline.

        Files are handled one at a time. A file failing step 1 or 2 is left
        out of the finalize batch and reported with its reason. If finalize
        fails, every transferred file is reported failed since job creation
        is a single atomic call.

        Args:
            sources: Files to upload

        Returns:
            UploadResult with created job ids and per-file failures

        Raises:
            ValidationError: If the batch exceeds the configured maximum
        """
        if len(sources) > self.settings.max_batch_size:
            raise ValidationError(
                f"Too many files in one upload ({len(sources)}). "
                f"Maximum is {self.settings.max_batch_size}.",
                {"count": len(sources), "maxBatchSize": self.settings.max_batch_size}
            )

        transferred: List[UploadUnit] = []
        failed: List[UploadFailure] = []

        for source in sources:
            unit = UploadUnit(
                source=source,
                content_type=source.content_type or DEFAULT_CONTENT_TYPE,
                size=source.size
            )

            try:
                self._validate_unit(unit)

                # Step 1: signed URL
                signed_url, unit.path = await self._get_signed_url(source.filename, unit.content_type)

                # Step 2: raw transfer
                await self._upload_to_signed_url(signed_url, unit)

                unit.succeeded = True
                transferred.append(unit)
            except ScannerError as e:
                logger.error(f"Failed to upload {source.filename}: {e}")
                unit.reason = e.message
                failed.append(UploadFailure(filename=source.filename, reason=unit.reason))
            except Exception as e:
                logger.error(f"Unexpected error uploading {source.filename}: {e}", exc_info=True)
                unit.reason = str(e) or e.__class__.__name__
                failed.append(UploadFailure(filename=source.filename, reason=unit.reason))

        if not transferred:
            return UploadResult(
                job_ids=[],
                message="No files uploaded successfully",
                failed=failed
            )

        # Step 3: finalize
        try:
            response = await self._finalize_uploads(transferred)
        except ScannerError as e:
            logger.error(f"Failed to finalize uploads: {e}")
            return UploadResult(
                job_ids=[],
                message="Failed to finalize uploads",
                failed=failed + [
                    UploadFailure(filename=unit.source.filename, reason="Finalization failed")
                    for unit in transferred
                ]
            )

        job_ids = list(response.get("jobIds", []))
        logger.info(f"{len(job_ids)} images queued for processing, {len(failed)} failed")

        return UploadResult(
            job_ids=job_ids,
            message=response.get("message") or f"{len(job_ids)} images queued for processing",
            failed=failed
        )

    def _validate_unit(self, unit: UploadUnit) -> None:
        if unit.size > self.settings.max_file_size:
            raise FileTooLargeError(unit.source.filename, unit.size, self.settings.max_file_size)
        if unit.content_type not in SUPPORTED_FORMATS:
            raise UnsupportedFormatError(unit.source.filename, unit.content_type)

    async def _get_signed_url(self, filename: str, content_type: str) -> Tuple[str, str]:
        """Request a signed upload URL. Returns ``(signed_url, storage_path)``."""
        data = await self._request(
            "POST",
            "/api/upload/signed-url",
            json={"filename": filename, "contentType": content_type}
        )
        signed_url = data.get("signedUrl") if isinstance(data, dict) else None
        path = data.get("path") if isinstance(data, dict) else None
        if not signed_url or not path:
            raise InternalError(
                "Invalid signed URL response",
                {"filename": filename, "keys": sorted(data) if isinstance(data, dict) else []}
            )
        return signed_url, path

    async def _upload_to_signed_url(self, signed_url: str, unit: UploadUnit) -> None:
        try:
            response = await self.upload_client.put(
                signed_url,
                content=unit.source.content,
                headers={"Content-Type": unit.content_type}
            )
        except httpx.TransportError as e:
            raise NetworkError(e) from e

        if response.is_error:
            raise InternalError(
                f"Upload failed: {response.status_code} {response.reason_phrase}",
                {"filename": unit.source.filename, "status": response.status_code}
            )

    async def _finalize_uploads(self, units: List[UploadUnit]) -> Dict[str, Any]:
        return await self._request(
            "POST",
            "/api/upload/finalize",
            json={
                "uploads": [
                    {
                        "path": unit.path,
                        "filename": unit.source.filename,
                        "contentType": unit.content_type,
                        "size": unit.size,
                    }
                    for unit in units
                ]
            }
        )

    # Job Methods

    async def list_jobs(
        self,
        status: Optional[JobStatus] = None,
        limit: Optional[int] = None,
        offset: Optional[int] = None,
        since: Optional[datetime] = None
    ) -> List[Job]:
        params = {}
        if status is not None:
            params["status"] = JobStatus(status).value
        if limit is not None:
            params["limit"] = limit
        if offset is not None:
            params["offset"] = offset
        if since is not None:
            params["since"] = format_timestamp(since)

        data = await self._request("GET", "/api/jobs", params=params or None)
        return [Job.from_api(job) for job in data.get("jobs", [])]

    async def get_job(self, job_id: str) -> Job:
        data = await self._request("GET", f"/api/jobs/{job_id}")
        return Job.from_api(data["job"])

    async def get_result(self, job_id: str) -> ProcessedNote:
        data = await self._request("GET", f"/api/results/{job_id}")
        return ProcessedNote.from_api(data["result"])

    async def retry_job(self, job_id: str) -> None:
        await self._request("POST", f"/api/jobs/{job_id}/retry")

    async def delete_job(self, job_id: str) -> None:
        await self._request("DELETE", f"/api/jobs/{job_id}")

    # Settings Methods

    async def get_settings(self) -> BackendSettings:
        data = await self._request("GET", "/api/settings")
        return BackendSettings(image_retention_hours=data["settings"]["imageRetentionHours"])

    async def update_settings(self, image_retention_hours: int) -> BackendSettings:
        data = await self._request(
            "PATCH",
            "/api/settings",
            json={"imageRetentionHours": image_retention_hours}
        )
        return BackendSettings(image_retention_hours=data["settings"]["imageRetentionHours"])

    # Health Check

    async def check_health(self) -> HealthStatus:
        data = await self._request("GET", "/api/health")
        return HealthStatus(
            status=data.get("status", "unhealthy"),
            timestamp=parse_timestamp(data.get("timestamp"))
        )

    # HTTP Helper

    async def _request(
        self,
        method: str,
        endpoint: str,
        json: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """
        Perform one authenticated round-trip.

        Raises:
            NetworkError: On transport failures (DNS, TLS, connect, timeout)
            ScannerError: Typed error for any status >= 400
        """
        url = f"{self.settings.service_url.rstrip('/')}{endpoint}"
        headers = {"Authorization": f"Bearer {self.settings.api_key}"}

        try:
            response = await self.http_client.request(
                method,
                url,
                json=json,
                params=params,
                headers=headers,
                timeout=self.settings.request_timeout
            )
        except httpx.TransportError as e:
            logger.warning(f"{method} {endpoint} failed at transport level: {e}")
            raise NetworkError(e) from e

        if response.status_code >= 400:
            try:
                body = response.json()
            except ValueError:
                body = None
            error = parse_api_error(response.status_code, body, response.headers.get("Retry-After"))
            logger.warning(f"{method} {endpoint} returned {response.status_code}: {error.code}")
            raise error

        if response.status_code == 204 or not response.content:
            return {}

        try:
            return response.json()
        except ValueError as e:
            raise InternalError(f"Invalid JSON from {endpoint}") from e


def create_scanner_client(settings: SyncSettings) -> ScannerClientBase:
    """
    Create a scanner client.

    Returns the HTTP client when the service URL and API key are configured,
    otherwise the in-memory mock used for development.
    """
    if settings.is_configured:
        logger.info(f"Using scanner service at {settings.service_url}")
        return ScannerClient(settings)

    from services.scanner_client.mock_client import MockScannerClient

    logger.info("Scanner service not configured, using mock client")
    return MockScannerClient(settings)
