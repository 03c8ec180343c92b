"""Sync Service - FastAPI application hosting the background sync engine."""

import logging
import sys
import os
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import FastAPI, File, Query, Request, UploadFile, status
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from services.scanner_client.base import ScannerClientBase
from services.scanner_client.client import create_scanner_client
from services.sync_service.ledger import SyncLedger
from services.sync_service.materializer import NoteMaterializer
from services.sync_service.notifications import NotificationService
from services.sync_service.scheduler import JobPoller
from shared.config import SyncSettings, get_vault_root
from shared.db_operations import DatabaseOperations
from shared.encryption import EncryptionService
from shared.errors import ScannerError
from shared.models import FrontmatterFormat, JobStatus, OrganizationStyle, UploadSource
from shared.vault import LocalVault

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)]
)

logger = logging.getLogger(__name__)

# Global instances
db_ops: Optional[DatabaseOperations] = None
encryption_service: Optional[EncryptionService] = None
settings: Optional[SyncSettings] = None
vault: Optional[LocalVault] = None
scanner_client: Optional[ScannerClientBase] = None
ledger: Optional[SyncLedger] = None
materializer: Optional[NoteMaterializer] = None
notifier: Optional[NotificationService] = None
poller: Optional[JobPoller] = None


def load_settings(database: DatabaseOperations, encryption: EncryptionService) -> SyncSettings:
    """Settings from the environment, with stored credentials filling a missing URL/key."""
    loaded = SyncSettings.from_env()
    if loaded.is_configured:
        return loaded

    credentials = database.get_credentials(encryption)
    if credentials:
        logger.info("Using stored service credentials")
        return loaded.with_updates(
            service_url=credentials['service_url'],
            api_key=credentials['api_key']
        )
    return loaded


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup and shutdown events."""
    global db_ops, encryption_service, settings, vault, scanner_client
    global ledger, materializer, notifier, poller

    logger.info("Sync Service starting up...")

    db_ops = DatabaseOperations()
    db_ops.create_tables()
    logger.info("Database connection initialized")

    encryption_service = EncryptionService()
    settings = load_settings(db_ops, encryption_service)

    vault = LocalVault(get_vault_root())
    logger.info(f"Writing notes under {vault.root}")

    scanner_client = create_scanner_client(settings)
    ledger = SyncLedger(db_ops.load_ledger_state(), db_ops.save_ledger_state)
    materializer = NoteMaterializer(vault, settings)
    notifier = NotificationService()
    poller = JobPoller(
        client=scanner_client,
        ledger=ledger,
        materializer=materializer,
        settings=settings,
        notifier=notifier
    )

    if settings.is_configured and settings.auto_sync:
        poller.start()

    yield

    # Cleanup
    poller.stop()
    await scanner_client.aclose()
    logger.info("Sync Service shutting down...")


# Create FastAPI application
app = FastAPI(
    title="Notebook Scanner Sync Service",
    description="Uploads notebook scans and syncs processed notes into a local vault",
    version="0.1.0",
    lifespan=lifespan
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Error handling middleware
@app.middleware("http")
async def error_handling_middleware(request: Request, call_next):
    """Global error handling middleware."""
    try:
        response = await call_next(request)
        return response
    except Exception as exc:
        logger.error(f"Unhandled exception: {exc}", exc_info=True)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "error": "Internal server error",
                "detail": str(exc)
            }
        )


@app.exception_handler(ScannerError)
async def scanner_error_handler(request: Request, exc: ScannerError):
    """Return typed scanner errors in the service's error envelope."""
    logger.warning(f"{request.method} {request.url.path} failed: {exc.code} {exc.message}")
    return JSONResponse(
        status_code=exc.http_status,
        content={"error": exc.to_api_error(), "userMessage": exc.to_user_message()}
    )


# Health check endpoint
@app.get("/health", status_code=status.HTTP_200_OK)
async def health_check():
    """Health check endpoint."""
    remote_healthy = False
    try:
        health = await scanner_client.check_health()
        remote_healthy = health.healthy
    except ScannerError as e:
        logger.error(f"Scanner service health check failed: {e}")

    return {
        "status": "healthy" if remote_healthy else "degraded",
        "service": "sync_service",
        "version": "0.1.0",
        "dependencies": {
            "scanner_service": "up" if remote_healthy else "down"
        }
    }


@app.get("/", status_code=status.HTTP_200_OK)
async def root():
    """Root endpoint."""
    return {
        "service": "Notebook Scanner Sync Service",
        "version": "0.1.0",
        "status": "running"
    }


# Request/Response models
class SyncOutcomeModel(BaseModel):
    job_id: str
    success: bool
    location: Optional[str] = None
    error: Optional[str] = None


class SyncNowResponse(BaseModel):
    """Response model for a manual sync."""
    synced_count: int
    failed_count: int
    results: List[SyncOutcomeModel]


class ConfigUpdateRequest(BaseModel):
    """Request model for settings changes. Omitted fields keep their value."""
    output_folder: Optional[str] = None
    organization_style: Optional[OrganizationStyle] = None
    poll_interval: Optional[float] = None
    auto_sync: Optional[bool] = None
    notify_on_sync: Optional[bool] = None
    note_template: Optional[str] = None
    include_source_image: Optional[bool] = None
    frontmatter_format: Optional[FrontmatterFormat] = None
    retention_days: Optional[int] = None


class CredentialsRequest(BaseModel):
    service_url: str
    api_key: str


class SyncedEntry(BaseModel):
    job_id: str
    location: str


class MarkSyncedRequest(BaseModel):
    """Jobs whose notes already exist in the vault."""
    entries: List[SyncedEntry]


class RetryBatchResponse(BaseModel):
    retried: List[str]
    failed: dict


@app.get("/api/v1/status", status_code=status.HTTP_200_OK)
async def get_status():
    """Poller state, ledger summary and the most recent notice."""
    return {
        "configured": settings.is_configured,
        "poller": poller.status(),
        "lastNotice": notifier.last_notice,
    }


@app.post("/api/v1/sync/now", response_model=SyncNowResponse, status_code=status.HTTP_200_OK)
async def sync_now():
    """Run one sync cycle immediately."""
    logger.info("Manual sync requested")
    result = await poller.sync_now()

    return SyncNowResponse(
        synced_count=result.synced_count,
        failed_count=result.failed_count,
        results=[
            SyncOutcomeModel(job_id=o.job_id, success=o.success, location=o.location, error=o.error)
            for o in result.results
        ]
    )


@app.post("/api/v1/sync/pause", status_code=status.HTTP_200_OK)
async def pause_sync():
    poller.pause()
    return poller.status()


@app.post("/api/v1/sync/resume", status_code=status.HTTP_200_OK)
async def resume_sync():
    poller.resume()
    return poller.status()


@app.post("/api/v1/sync/resume-after-error", status_code=status.HTTP_200_OK)
async def resume_after_error():
    """Acknowledge the stopped-on-error state and restart polling."""
    resumed = poller.resume_after_error()
    if resumed:
        await notifier.notify("Sync resumed")
    return {"resumed": resumed, **poller.status()}


@app.post("/api/v1/upload", status_code=status.HTTP_200_OK)
async def upload_images(files: List[UploadFile] = File(...)):
    """Upload images for processing; partial failures are reported per file."""
    sources = [
        UploadSource(
            filename=upload.filename or "upload",
            content=await upload.read(),
            content_type=upload.content_type or ""
        )
        for upload in files
    ]
    logger.info(f"Uploading {len(sources)} files")

    result = await scanner_client.upload(sources)
    return {"successCount": result.success_count, **result.to_dict()}


@app.get("/api/v1/jobs", status_code=status.HTTP_200_OK)
async def list_jobs(status_filter: Optional[JobStatus] = Query(None, alias="status")):
    """List remote jobs, annotated with the local note path when synced."""
    jobs = await scanner_client.list_jobs(status_filter)

    payload = []
    for job in jobs:
        record = ledger.get_synced_record(job.id)
        payload.append({**job.to_dict(), "notePath": record.location if record else None})
    return {"jobs": payload, "total": len(payload)}


@app.post("/api/v1/jobs/retry-failed", response_model=RetryBatchResponse, status_code=status.HTTP_200_OK)
async def retry_failed_jobs():
    result = await scanner_client.retry_failed_jobs()
    return RetryBatchResponse(retried=result.retried, failed=result.failed)


@app.post("/api/v1/jobs/{job_id}/retry", status_code=status.HTTP_200_OK)
async def retry_job(job_id: str):
    await scanner_client.retry_job(job_id)
    return {"job_id": job_id, "status": "queued"}


@app.delete("/api/v1/jobs/{job_id}", status_code=status.HTTP_200_OK)
async def delete_job(job_id: str, delete_note: bool = True):
    """
    Delete a job together with its local note.

    The ledger record is removed last so a failed remote delete leaves the
    job marked as synced and it is not materialized a second time.
    """
    record = ledger.get_synced_record(job_id)
    note_deleted = False
    if delete_note and record:
        note_deleted = vault.delete(record.location)

    await scanner_client.delete_job(job_id)
    ledger.remove_synced(job_id)

    logger.info(f"Deleted job {job_id} (note deleted: {note_deleted})")
    return {"job_id": job_id, "deleted": True, "note_deleted": note_deleted}


@app.post("/api/v1/ledger/prune", status_code=status.HTTP_200_OK)
async def prune_ledger(max_age_days: Optional[int] = None):
    pruned = ledger.prune(max_age_days if max_age_days is not None else settings.retention_days)
    return {"pruned": pruned, "remaining": ledger.synced_count()}


@app.post("/api/v1/ledger/mark-synced", status_code=status.HTTP_200_OK)
async def mark_jobs_synced(request: MarkSyncedRequest):
    """Record jobs as synced without fetching or writing their notes."""
    added = ledger.mark_many_synced((entry.job_id, entry.location) for entry in request.entries)
    logger.info(f"Marked {added} jobs as synced")
    return {"added": added, "total": ledger.synced_count()}


@app.delete("/api/v1/ledger", status_code=status.HTTP_200_OK)
async def clear_ledger():
    """Forget every synced job. Notes already in the vault are left alone."""
    cleared = ledger.synced_count()
    ledger.clear()
    logger.info(f"Cleared {cleared} sync ledger entries")
    return {"cleared": cleared}


@app.put("/api/v1/config", status_code=status.HTTP_200_OK)
async def update_config(request: ConfigUpdateRequest):
    """Apply settings changes and restart the poller with them."""
    global settings

    changes = {key: value for key, value in request.model_dump().items() if value is not None}
    settings = settings.with_updates(**changes)
    logger.info(f"Configuration updated: {sorted(changes)}")

    materializer.reconfigure(settings)
    scanner_client.reconfigure(settings)
    poller.reconfigure(settings)
    return poller.status()


@app.put("/api/v1/credentials", status_code=status.HTTP_200_OK)
async def update_credentials(request: CredentialsRequest):
    """Store service credentials and switch to a client using them."""
    global settings, scanner_client

    db_ops.store_credentials(request.service_url, request.api_key, encryption_service)
    settings = settings.with_updates(service_url=request.service_url, api_key=request.api_key)

    old_client = scanner_client
    scanner_client = create_scanner_client(settings)
    await old_client.aclose()

    materializer.reconfigure(settings)
    poller.reconfigure(settings, client=scanner_client)
    return {"configured": settings.is_configured, **poller.status()}


@app.delete("/api/v1/credentials", status_code=status.HTTP_200_OK)
async def delete_credentials():
    """Remove stored credentials and fall back to the mock client."""
    global settings, scanner_client

    deleted = db_ops.delete_credentials()
    settings = settings.with_updates(service_url="", api_key="")

    old_client = scanner_client
    scanner_client = create_scanner_client(settings)
    await old_client.aclose()

    materializer.reconfigure(settings)
    poller.stop()
    poller.settings = settings
    poller.client = scanner_client
    return {"deleted": deleted, "configured": settings.is_configured, **poller.status()}


if __name__ == "__main__":
    import uvicorn

    port = int(os.getenv("SYNC_SERVICE_PORT", 8005))
    uvicorn.run(app, host="0.0.0.0", port=port)
