"""Typed error taxonomy for the remote scanner service."""

import math
from datetime import datetime, timezone
from typing import Any, Dict, Optional


class ScannerError(Exception):
    """Base exception for all scanner sync errors."""

    code = "INTERNAL_ERROR"
    http_status = 500

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.timestamp = datetime.now(timezone.utc)

    def to_user_message(self) -> str:
        return "An unexpected error occurred. Please try again."

    def to_api_error(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "details": self.details,
        }


class AuthenticationError(ScannerError):
    """Invalid or missing API key."""

    code = "INVALID_API_KEY"
    http_status = 401

    def to_user_message(self) -> str:
        return "Authentication failed. Please check your API key in settings."


class NotFoundError(ScannerError):
    """Unknown id, or no access to it."""

    code = "NOT_FOUND"
    http_status = 404

    def __init__(self, resource: str, resource_id: Optional[str] = None):
        message = f"{resource} with ID '{resource_id}' not found" if resource_id else f"{resource} not found"
        super().__init__(message, {"resource": resource, "id": resource_id})

    def to_user_message(self) -> str:
        return "The requested resource was not found."


class ValidationError(ScannerError):
    code = "VALIDATION_ERROR"
    http_status = 400

    def to_user_message(self) -> str:
        return f"Validation error: {self.message}"


class RateLimitError(ScannerError):
    """Rate limit exceeded. retry_after is in seconds when known."""

    code = "RATE_LIMIT_EXCEEDED"
    http_status = 429

    def __init__(self, retry_after: Optional[float] = None):
        super().__init__("Rate limit exceeded. Please try again later.", {"retryAfter": retry_after})
        self.retry_after = retry_after

    def to_user_message(self) -> str:
        if self.retry_after:
            return f"Rate limit exceeded. Please try again in {math.ceil(self.retry_after)} seconds."
        return "Rate limit exceeded. Please try again later."


class FileTooLargeError(ScannerError):
    code = "FILE_TOO_LARGE"
    http_status = 413

    def __init__(self, filename: str, size: int, max_size: int):
        super().__init__(
            f"File '{filename}' is too large ({format_bytes(size)}). "
            f"Maximum size is {format_bytes(max_size)}.",
            {"filename": filename, "size": size, "maxSize": max_size},
        )

    def to_user_message(self) -> str:
        return self.message


class UnsupportedFormatError(ScannerError):
    code = "UNSUPPORTED_FORMAT"
    http_status = 400

    def __init__(self, filename: str, file_format: str):
        super().__init__(
            f"File '{filename}' has unsupported format: {file_format}",
            {"filename": filename, "format": file_format},
        )

    def to_user_message(self) -> str:
        return self.message


class JobNotFailedError(ScannerError):
    """Retry attempted on a job that has not failed."""

    code = "JOB_NOT_FAILED"
    http_status = 409

    def __init__(self, job_id: str, current_status: str):
        super().__init__(
            f"Cannot retry job '{job_id}' with status '{current_status}'",
            {"jobId": job_id, "currentStatus": current_status},
        )

    def to_user_message(self) -> str:
        return "This job cannot be retried because it has not failed."


class ImageExpiredError(ScannerError):
    """Source image deleted under the retention policy before processing."""

    code = "IMAGE_EXPIRED"
    http_status = 410

    def __init__(self, job_id: str):
        super().__init__(f"Image for job '{job_id}' has expired and been deleted", {"jobId": job_id})

    def to_user_message(self) -> str:
        return "The source image has expired and been deleted. Please upload the image again."


class NetworkError(ScannerError):
    """Transport-level failure; no response from the server."""

    code = "NETWORK_ERROR"
    http_status = 503

    def __init__(self, cause: Optional[BaseException] = None):
        super().__init__(
            f"Network error: {cause}" if cause else "Network error. Please check your connection.",
            {"cause": str(cause) if cause else None},
        )

    def to_user_message(self) -> str:
        return "Unable to connect to the server. Please check your internet connection."


class InternalError(ScannerError):
    code = "INTERNAL_ERROR"
    http_status = 500


def parse_api_error(
    status_code: int,
    body: Any,
    retry_after_header: Optional[str] = None
) -> ScannerError:
    """
    Translate an error response into a typed ScannerError.

    The structured body ``{"error": {"code", "message", "details"}}`` wins;
    otherwise the HTTP status code decides.

    Args:
        status_code: HTTP status of the response
        body: Decoded JSON body, or None if it was not JSON
        retry_after_header: Raw Retry-After header value, if present

    Returns:
        The ScannerError subclass matching the response
    """
    error = body.get("error") if isinstance(body, dict) else None

    if isinstance(error, dict) and error.get("code"):
        code = error["code"]
        message = error.get("message") or f"Request failed with status {status_code}"
        details = error.get("details")
        if not isinstance(details, dict):
            details = {}

        if code == "INVALID_API_KEY":
            return AuthenticationError(message, details)
        if code == "NOT_FOUND":
            return NotFoundError(details.get("resource") or "Resource", details.get("id"))
        if code == "VALIDATION_ERROR":
            return ValidationError(message, details)
        if code == "RATE_LIMIT_EXCEEDED":
            retry_after = _retry_after_from_details(details)
            if retry_after is None:
                retry_after = _parse_retry_after(retry_after_header)
            return RateLimitError(retry_after)
        if code == "FILE_TOO_LARGE":
            return FileTooLargeError(
                details.get("filename") or "unknown",
                int(details.get("size") or 0),
                int(details.get("maxSize") or 0),
            )
        if code == "UNSUPPORTED_FORMAT":
            return UnsupportedFormatError(details.get("filename") or "unknown", details.get("format") or "unknown")
        if code == "JOB_NOT_FAILED":
            return JobNotFailedError(details.get("jobId") or "unknown", details.get("currentStatus") or "unknown")
        if code == "IMAGE_EXPIRED":
            return ImageExpiredError(details.get("jobId") or "unknown")
        return InternalError(message, details)

    if status_code == 401:
        return AuthenticationError("Invalid API key")
    if status_code == 404:
        return NotFoundError("Resource")
    if status_code == 413:
        return FileTooLargeError("unknown", 0, 0)
    if status_code == 429:
        return RateLimitError(_parse_retry_after(retry_after_header))
    if status_code == 400:
        return ValidationError(f"Request failed with status {status_code}")
    return InternalError(f"Server returned status {status_code}")


def get_user_error_message(error: BaseException) -> str:
    """Get a user-facing message for any exception."""
    if isinstance(error, ScannerError):
        return error.to_user_message()
    return str(error) or "An unexpected error occurred."


def format_bytes(size: int) -> str:
    """Format a byte count as a human-readable string."""
    if size <= 0:
        return "0 Bytes"

    units = ["Bytes", "KB", "MB", "GB"]
    value = float(size)
    index = 0
    while value >= 1024 and index < len(units) - 1:
        value /= 1024
        index += 1
    return f"{round(value, 2):g} {units[index]}"


def _retry_after_from_details(details: Dict[str, Any]) -> Optional[float]:
    # The service reports retryAfter in milliseconds
    value = details.get("retryAfter")
    if value is None:
        return None
    try:
        return float(value) / 1000.0
    except (TypeError, ValueError):
        return None


def _parse_retry_after(value: Optional[str]) -> Optional[float]:
    if not value:
        return None
    try:
        return float(value)
    except ValueError:
        return None
