"""Unit tests for the scanner service HTTP client."""

import json

import httpx
import pytest

from services.scanner_client.client import ScannerClient, create_scanner_client
from services.scanner_client.mock_client import MockScannerClient
from shared.config import SyncSettings
from shared.errors import (
    AuthenticationError,
    InternalError,
    JobNotFailedError,
    NetworkError,
    NotFoundError,
    RateLimitError,
    ValidationError,
)
from shared.models import JobStatus, NoteCategory, UploadSource


SERVICE_URL = "https://scanner.example.com"
STORAGE_URL = "https://storage.example.com"


class FakeScannerService:
    """Routes requests for the API and the signed-URL storage host."""

    def __init__(self):
        self.requests = []
        self.finalize_payloads = []
        self.failing_puts = set()
        self.signed_url_responses = {}
        self.finalize_status = 200
        self.routes = {}

    def api_handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path

        if path == "/api/upload/signed-url":
            filename = json.loads(request.content)["filename"]
            if filename in self.signed_url_responses:
                return self.signed_url_responses[filename](request)
            return httpx.Response(200, json={
                "signedUrl": f"{STORAGE_URL}/put/{filename}",
                "path": f"uploads/{filename}",
            })
        if path == "/api/upload/finalize":
            payload = json.loads(request.content)
            self.finalize_payloads.append(payload)
            if self.finalize_status != 200:
                return httpx.Response(self.finalize_status, json={
                    "error": {"code": "INTERNAL_ERROR", "message": "database unavailable"}
                })
            job_ids = [f"job-{i}" for i, _ in enumerate(payload["uploads"])]
            return httpx.Response(200, json={
                "jobIds": job_ids,
                "message": f"{len(job_ids)} images queued for processing",
            })

        route = self.routes.get((request.method, path))
        if route is None:
            return httpx.Response(404)
        return route(request)

    def storage_handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        filename = request.url.path.rsplit("/", 1)[-1]
        if filename in self.failing_puts:
            return httpx.Response(500)
        return httpx.Response(200)


@pytest.fixture
def service():
    return FakeScannerService()


@pytest.fixture
def settings():
    return SyncSettings(service_url=SERVICE_URL, api_key="sk_test")


@pytest.fixture
def client(service, settings):
    return ScannerClient(
        settings,
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(service.api_handler)),
        upload_client=httpx.AsyncClient(transport=httpx.MockTransport(service.storage_handler)),
    )


def _sources(*names):
    return [UploadSource(filename=name, content=b"\xff\xd8image", content_type="image/jpeg") for name in names]


def _job(job_id, status="completed"):
    return {"id": job_id, "status": status, "createdAt": "2024-01-01T10:00:00Z", "hasResult": status == "completed"}


class TestUpload:
    """Tests for the three-step upload flow."""

    @pytest.mark.asyncio
    async def test_upload_all_succeed(self, client, service):
        result = await client.upload(_sources("a.jpg", "b.jpg"))

        assert result.job_ids == ["job-0", "job-1"]
        assert result.failed == []
        assert result.message == "2 images queued for processing"

        uploads = service.finalize_payloads[0]["uploads"]
        assert uploads[0] == {
            "path": "uploads/a.jpg",
            "filename": "a.jpg",
            "contentType": "image/jpeg",
            "size": 7,
        }

    @pytest.mark.asyncio
    async def test_failed_transfer_is_left_out_of_finalize(self, client, service):
        """Test that a file failing its PUT is reported and not finalized."""
        service.failing_puts.add("b.jpg")

        result = await client.upload(_sources("a.jpg", "b.jpg", "c.jpg"))

        assert [u["filename"] for u in service.finalize_payloads[0]["uploads"]] == ["a.jpg", "c.jpg"]
        assert result.success_count == 2
        assert len(result.failed) == 1
        assert result.failed[0].filename == "b.jpg"
        assert result.failed[0].reason.startswith("Upload failed: 500")

    @pytest.mark.asyncio
    async def test_signed_url_error_is_left_out_of_finalize(self, client, service):
        """Test that a typed step 1 error fails only that file."""
        service.signed_url_responses["b.jpg"] = lambda request: httpx.Response(401, json={
            "error": {"code": "INVALID_API_KEY", "message": "key revoked"}
        })

        result = await client.upload(_sources("a.jpg", "b.jpg", "c.jpg"))

        assert [u["filename"] for u in service.finalize_payloads[0]["uploads"]] == ["a.jpg", "c.jpg"]
        assert result.job_ids == ["job-0", "job-1"]
        assert [(f.filename, f.reason) for f in result.failed] == [("b.jpg", "key revoked")]
        assert not any(r.url.path.endswith("/b.jpg") for r in service.requests if r.method == "PUT")

    @pytest.mark.asyncio
    async def test_signed_url_transport_error_is_left_out_of_finalize(self, client, service):
        def refuse(request):
            raise httpx.ConnectError("connection reset", request=request)

        service.signed_url_responses["b.jpg"] = refuse

        result = await client.upload(_sources("a.jpg", "b.jpg", "c.jpg"))

        assert len(service.finalize_payloads[0]["uploads"]) == 2
        assert result.success_count == 2
        assert result.failed[0].filename == "b.jpg"
        assert result.failed[0].reason.startswith("Network error")

    @pytest.mark.asyncio
    async def test_rate_limit_with_text_details_fails_one_file(self, client, service):
        service.signed_url_responses["b.jpg"] = lambda request: httpx.Response(429, json={
            "error": {"code": "RATE_LIMIT_EXCEEDED", "message": "slow down", "details": "try later"}
        })

        result = await client.upload(_sources("a.jpg", "b.jpg", "c.jpg"))

        assert len(service.finalize_payloads) == 1
        assert result.job_ids == ["job-0", "job-1"]
        assert result.failed[0].filename == "b.jpg"
        assert result.failed[0].reason == "Rate limit exceeded. Please try again later."

    @pytest.mark.asyncio
    async def test_signed_url_response_without_path(self, client, service):
        service.signed_url_responses["b.jpg"] = lambda request: httpx.Response(
            200, json={"signedUrl": f"{STORAGE_URL}/put/b.jpg"}
        )

        result = await client.upload(_sources("a.jpg", "b.jpg", "c.jpg"))

        assert [u["filename"] for u in service.finalize_payloads[0]["uploads"]] == ["a.jpg", "c.jpg"]
        assert [(f.filename, f.reason) for f in result.failed] == [("b.jpg", "Invalid signed URL response")]

    @pytest.mark.asyncio
    async def test_finalize_failure_fails_every_transferred_file(self, client, service):
        service.finalize_status = 500

        result = await client.upload(_sources("a.jpg", "b.jpg", "c.jpg"))

        assert result.job_ids == []
        assert [f.filename for f in result.failed] == ["a.jpg", "b.jpg", "c.jpg"]
        assert all(f.reason == "Finalization failed" for f in result.failed)

    @pytest.mark.asyncio
    async def test_no_finalize_when_nothing_transferred(self, client, service, settings):
        """Test that finalize is skipped when every file fails validation."""
        settings.max_file_size = 4

        result = await client.upload(_sources("a.jpg", "b.jpg"))

        assert result.job_ids == []
        assert result.message == "No files uploaded successfully"
        assert len(result.failed) == 2
        assert "too large" in result.failed[0].reason
        assert service.finalize_payloads == []
        assert service.requests == []

    @pytest.mark.asyncio
    async def test_unsupported_format_rejected_locally(self, client, service):
        sources = [UploadSource("scan.gif", b"GIF89a", "image/gif")] + _sources("a.jpg")

        result = await client.upload(sources)

        assert result.job_ids == ["job-0"]
        assert result.failed[0].filename == "scan.gif"
        assert "unsupported format" in result.failed[0].reason

    @pytest.mark.asyncio
    async def test_missing_content_type_defaults_to_jpeg(self, client, service):
        await client.upload([UploadSource("a.jpg", b"data")])

        assert service.finalize_payloads[0]["uploads"][0]["contentType"] == "image/jpeg"

    @pytest.mark.asyncio
    async def test_batch_too_large(self, client, service, settings):
        settings.max_batch_size = 2

        with pytest.raises(ValidationError):
            await client.upload(_sources("a.jpg", "b.jpg", "c.jpg"))

        assert service.requests == []

    @pytest.mark.asyncio
    async def test_signed_url_not_sent_api_key(self, client, service):
        await client.upload(_sources("a.jpg"))

        put = next(r for r in service.requests if r.method == "PUT")
        assert "authorization" not in put.headers
        assert put.headers["content-type"] == "image/jpeg"


class TestJobs:
    """Tests for job, result and settings calls."""

    @pytest.mark.asyncio
    async def test_list_jobs_with_filter(self, client, service):
        service.routes[("GET", "/api/jobs")] = lambda request: httpx.Response(
            200, json={"jobs": [_job("j1"), _job("j2")], "total": 2}
        )

        jobs = await client.list_jobs(JobStatus.COMPLETED, limit=10)

        assert [j.id for j in jobs] == ["j1", "j2"]
        assert jobs[0].status == JobStatus.COMPLETED
        request = service.requests[-1]
        assert request.url.params["status"] == "completed"
        assert request.url.params["limit"] == "10"
        assert "offset" not in request.url.params
        assert request.headers["authorization"] == "Bearer sk_test"

    @pytest.mark.asyncio
    async def test_list_jobs_without_filter_sends_no_params(self, client, service):
        service.routes[("GET", "/api/jobs")] = lambda request: httpx.Response(200, json={"jobs": []})

        assert await client.list_jobs() == []
        assert service.requests[-1].url.query == b""

    @pytest.mark.asyncio
    async def test_get_result(self, client, service):
        service.routes[("GET", "/api/results/j1")] = lambda request: httpx.Response(200, json={
            "result": {
                "jobId": "j1",
                "title": "Standup",
                "content": "- item",
                "tags": ["work"],
                "date": "2024-03-15",
                "category": "meeting",
                "summary": "Daily",
                "processedAt": "2024-03-15T09:00:00Z",
            }
        })

        note = await client.get_result("j1")

        assert note.title == "Standup"
        assert note.category == NoteCategory.MEETING

    @pytest.mark.asyncio
    async def test_delete_job_no_content(self, client, service):
        service.routes[("DELETE", "/api/jobs/j1")] = lambda request: httpx.Response(204)

        await client.delete_job("j1")

        assert service.requests[-1].method == "DELETE"

    @pytest.mark.asyncio
    async def test_update_settings(self, client, service):
        def handler(request):
            assert json.loads(request.content) == {"imageRetentionHours": 48}
            return httpx.Response(200, json={"settings": {"imageRetentionHours": 48}})

        service.routes[("PATCH", "/api/settings")] = handler

        updated = await client.update_settings(48)

        assert updated.image_retention_hours == 48

    @pytest.mark.asyncio
    async def test_check_health(self, client, service):
        service.routes[("GET", "/api/health")] = lambda request: httpx.Response(
            200, json={"status": "healthy", "timestamp": "2024-01-01T00:00:00Z"}
        )

        health = await client.check_health()

        assert health.healthy is True


class TestErrorMapping:
    """Tests for error translation in the request helper."""

    @pytest.mark.asyncio
    async def test_unauthorized(self, client, service):
        service.routes[("GET", "/api/jobs")] = lambda request: httpx.Response(401, text="Unauthorized")

        with pytest.raises(AuthenticationError):
            await client.list_jobs()

    @pytest.mark.asyncio
    async def test_unknown_route_is_not_found(self, client):
        with pytest.raises(NotFoundError):
            await client.get_job("missing")

    @pytest.mark.asyncio
    async def test_rate_limited(self, client, service):
        service.routes[("GET", "/api/jobs")] = lambda request: httpx.Response(429, json={
            "error": {"code": "RATE_LIMIT_EXCEEDED", "message": "slow down", "details": {"retryAfter": 45000}}
        })

        with pytest.raises(RateLimitError) as exc_info:
            await client.list_jobs()

        assert exc_info.value.retry_after == 45.0

    @pytest.mark.asyncio
    async def test_rate_limited_header(self, client, service):
        service.routes[("GET", "/api/jobs")] = lambda request: httpx.Response(
            429, headers={"Retry-After": "20"}
        )

        with pytest.raises(RateLimitError) as exc_info:
            await client.list_jobs()

        assert exc_info.value.retry_after == 20.0

    @pytest.mark.asyncio
    async def test_retry_not_failed(self, client, service):
        service.routes[("POST", "/api/jobs/j1/retry")] = lambda request: httpx.Response(409, json={
            "error": {
                "code": "JOB_NOT_FAILED",
                "message": "not failed",
                "details": {"jobId": "j1", "currentStatus": "completed"},
            }
        })

        with pytest.raises(JobNotFailedError):
            await client.retry_job("j1")

    @pytest.mark.asyncio
    async def test_server_error(self, client, service):
        service.routes[("GET", "/api/settings")] = lambda request: httpx.Response(503, text="<html>")

        with pytest.raises(InternalError):
            await client.get_settings()

    @pytest.mark.asyncio
    async def test_transport_failure_is_network_error(self, settings):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        client = ScannerClient(
            settings,
            http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
            upload_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        )

        with pytest.raises(NetworkError) as exc_info:
            await client.check_health()

        assert exc_info.value.code == "NETWORK_ERROR"


@pytest.mark.asyncio
async def test_retry_failed_jobs_reports_each_job(client, service):
    """Test that one failing retry does not undo or stop the others."""
    service.routes[("GET", "/api/jobs")] = lambda request: httpx.Response(
        200, json={"jobs": [_job("j1", "failed"), _job("j2", "failed"), _job("j3", "failed")]}
    )
    service.routes[("POST", "/api/jobs/j1/retry")] = lambda request: httpx.Response(200, json={})
    service.routes[("POST", "/api/jobs/j2/retry")] = lambda request: httpx.Response(410, json={
        "error": {"code": "IMAGE_EXPIRED", "message": "expired", "details": {"jobId": "j2"}}
    })
    service.routes[("POST", "/api/jobs/j3/retry")] = lambda request: httpx.Response(200, json={})

    result = await client.retry_failed_jobs()

    assert result.retried == ["j1", "j3"]
    assert list(result.failed) == ["j2"]
    assert service.requests[0].url.params["status"] == "failed"


def test_create_scanner_client_variants():
    assert isinstance(create_scanner_client(SyncSettings(service_url=SERVICE_URL, api_key="k")), ScannerClient)
    assert isinstance(create_scanner_client(SyncSettings()), MockScannerClient)


@pytest.mark.asyncio
async def test_retry_failed_jobs_skips_jobs_that_have_not_failed(client, service):
    service.routes[("GET", "/api/jobs")] = lambda request: httpx.Response(
        200, json={"jobs": [_job("j1", "failed"), _job("j2", "completed")]}
    )
    service.routes[("POST", "/api/jobs/j1/retry")] = lambda request: httpx.Response(200, json={})

    result = await client.retry_failed_jobs()

    assert result.retried == ["j1"]
    assert result.failed == {}
    assert [r.url.path for r in service.requests if r.method == "POST"] == ["/api/jobs/j1/retry"]
