"""Shared data models for the notebook scanner sync application."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


class JobStatus(str, Enum):
    """Remote job lifecycle. completed and failed are terminal."""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class NoteCategory(str, Enum):
    """Category assigned to a processed note by the remote service."""
    MEETING = "meeting"
    LECTURE = "lecture"
    BRAINSTORM = "brainstorm"
    TODO = "todo"
    JOURNAL = "journal"
    SKETCH = "sketch"
    OTHER = "other"

    @classmethod
    def parse(cls, value: Optional[str]) -> "NoteCategory":
        try:
            return cls(value)
        except ValueError:
            return cls.OTHER


class OrganizationStyle(str, Enum):
    """How materialized notes are laid out under the output folder."""
    FLAT = "flat"
    DATE = "date"
    CATEGORY = "category"


class FrontmatterFormat(str, Enum):
    YAML = "yaml"
    NONE = "none"


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp (accepting a trailing Z) into an aware datetime."""
    if not value:
        return None
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def format_timestamp(value: Optional[datetime]) -> Optional[str]:
    """Serialize a datetime to ISO-8601, or None."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()


@dataclass
class Job:
    """Snapshot of a remote processing job. Never mutated locally."""
    id: str
    status: JobStatus
    created_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    has_result: bool = False
    filename: Optional[str] = None
    error: Optional[str] = None
    attempts: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.status in (JobStatus.COMPLETED, JobStatus.FAILED)

    @property
    def can_retry(self) -> bool:
        return self.status == JobStatus.FAILED

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "Job":
        """Create from the service's camelCase job representation."""
        return cls(
            id=data["id"],
            status=JobStatus(data.get("status", "pending")),
            created_at=parse_timestamp(data.get("createdAt")),
            started_at=parse_timestamp(data.get("startedAt")),
            completed_at=parse_timestamp(data.get("completedAt")),
            has_result=bool(data.get("hasResult", False)),
            filename=data.get("filename"),
            error=data.get("error"),
            attempts=int(data.get("attempts") or 0),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "status": self.status.value,
            "createdAt": format_timestamp(self.created_at),
            "startedAt": format_timestamp(self.started_at),
            "completedAt": format_timestamp(self.completed_at),
            "hasResult": self.has_result,
            "filename": self.filename,
            "error": self.error,
            "attempts": self.attempts,
        }


@dataclass(frozen=True)
class ProcessedNote:
    """Structured result of a completed job."""
    job_id: str
    title: str
    content: str
    tags: List[str]
    date: Optional[str]
    category: NoteCategory
    summary: str
    processed_at: Optional[datetime] = None

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "ProcessedNote":
        return cls(
            job_id=data["jobId"],
            title=data.get("title") or "",
            content=data.get("content") or "",
            tags=list(data.get("tags") or []),
            date=data.get("date"),
            category=NoteCategory.parse(data.get("category")),
            summary=data.get("summary") or "",
            processed_at=parse_timestamp(data.get("processedAt")),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "jobId": self.job_id,
            "title": self.title,
            "content": self.content,
            "tags": list(self.tags),
            "date": self.date,
            "category": self.category.value,
            "summary": self.summary,
            "processedAt": format_timestamp(self.processed_at),
        }


@dataclass
class SyncedRecord:
    """Ledger entry for a job whose result has been materialized."""
    job_id: str
    synced_at: datetime
    location: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "jobId": self.job_id,
            "syncedAt": format_timestamp(self.synced_at),
            "location": self.location,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SyncedRecord":
        return cls(
            job_id=data["jobId"],
            synced_at=parse_timestamp(data["syncedAt"]),
            location=data.get("location") or data.get("notePath", ""),
        )


@dataclass
class SyncLedgerState:
    """The persisted state of the sync core."""
    synced_records: List[SyncedRecord] = field(default_factory=list)
    last_sync_time: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "syncedRecords": [record.to_dict() for record in self.synced_records],
            "lastSyncTime": format_timestamp(self.last_sync_time),
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "SyncLedgerState":
        data = data or {}
        return cls(
            synced_records=[SyncedRecord.from_dict(r) for r in data.get("syncedRecords", [])],
            last_sync_time=parse_timestamp(data.get("lastSyncTime")),
        )


@dataclass
class UploadSource:
    """A file handed to the client for upload."""
    filename: str
    content: bytes
    content_type: str = ""

    @property
    def size(self) -> int:
        return len(self.content)


@dataclass
class UploadUnit:
    """Progress of one file through the signed-URL upload pipeline."""
    source: UploadSource
    content_type: str
    size: int
    path: Optional[str] = None
    succeeded: bool = False
    reason: Optional[str] = None


@dataclass
class UploadFailure:
    filename: str
    reason: str

    def to_dict(self) -> Dict[str, str]:
        return {"filename": self.filename, "reason": self.reason}


@dataclass
class UploadResult:
    """Outcome of an upload call: queued job ids plus per-file failures."""
    job_ids: List[str]
    message: str
    failed: List[UploadFailure] = field(default_factory=list)

    @property
    def success_count(self) -> int:
        return len(self.job_ids)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "jobIds": list(self.job_ids),
            "message": self.message,
            "failed": [f.to_dict() for f in self.failed],
        }


@dataclass
class SyncJobOutcome:
    """Result of syncing one job within a poll cycle."""
    job_id: str
    success: bool
    location: Optional[str] = None
    error: Optional[str] = None


@dataclass
class SyncResult:
    """Summary of one poll cycle."""
    synced_count: int = 0
    failed_count: int = 0
    results: List[SyncJobOutcome] = field(default_factory=list)

    @classmethod
    def from_outcomes(cls, outcomes: List[SyncJobOutcome]) -> "SyncResult":
        synced = sum(1 for o in outcomes if o.success)
        return cls(synced_count=synced, failed_count=len(outcomes) - synced, results=outcomes)


@dataclass
class RetryBatchResult:
    """Result of retrying every failed job. Each retry stands alone."""
    retried: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)


@dataclass
class HealthStatus:
    status: str
    timestamp: Optional[datetime] = None

    @property
    def healthy(self) -> bool:
        return self.status == "healthy"


@dataclass
class BackendSettings:
    image_retention_hours: int = 24
