"""Shared configuration utilities."""

import os
from dataclasses import dataclass, replace
from typing import Optional

from shared.models import FrontmatterFormat, OrganizationStyle


# Poll interval bounds in seconds
MIN_POLL_INTERVAL = 10.0
MAX_POLL_INTERVAL = 300.0
DEFAULT_POLL_INTERVAL = 30.0

MAX_FILE_SIZE = 20 * 1024 * 1024  # 20MB
MAX_BATCH_SIZE = 50
SYNC_STATE_RETENTION_DAYS = 30

SUPPORTED_FORMATS = ("image/jpeg", "image/png", "image/webp", "image/heic")

DEFAULT_NOTE_TEMPLATE = """---
title: "{{title}}"
date: {{date}}
tags: [{{tags}}]
category: {{category}}
source_job: {{jobId}}
synced_at: {{syncedAt}}
---

# {{title}}

{{content}}

---

> **Summary**: {{summary}}
"""


def get_env(key: str, default: Optional[str] = None, required: bool = False) -> str:
    """Get environment variable with optional default and required validation."""
    value = os.getenv(key, default)
    if required and not value:
        raise ValueError(f"Required environment variable {key} is not set")
    return value


def get_bool_env(key: str, default: bool) -> bool:
    """Get a boolean environment variable ("true"/"false")."""
    value = os.getenv(key)
    if value is None or not value.strip():
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def get_database_url() -> str:
    """Get database URL for the local state store from environment."""
    return get_env(
        "DATABASE_URL",
        "sqlite:///notebook_scanner_sync.db",
        required=False
    )


def get_vault_root() -> str:
    """Get the root directory that artifacts are written under."""
    return get_env("SCANNER_VAULT_ROOT", os.path.join(os.getcwd(), "vault"))


def clamp_poll_interval(seconds: float) -> float:
    """Bound a poll interval to the supported range."""
    return max(MIN_POLL_INTERVAL, min(MAX_POLL_INTERVAL, float(seconds)))


@dataclass
class SyncSettings:
    """Host-provided settings consumed by the client, materializer and scheduler."""
    service_url: str = ""
    api_key: str = ""

    output_folder: str = "Notebook Notes"
    organization_style: OrganizationStyle = OrganizationStyle.FLAT

    poll_interval: float = DEFAULT_POLL_INTERVAL  # seconds
    auto_sync: bool = True
    notify_on_sync: bool = True

    note_template: str = DEFAULT_NOTE_TEMPLATE
    include_source_image: bool = False
    frontmatter_format: FrontmatterFormat = FrontmatterFormat.YAML

    retention_days: int = SYNC_STATE_RETENTION_DAYS
    max_batch_size: int = MAX_BATCH_SIZE
    max_file_size: int = MAX_FILE_SIZE
    request_timeout: float = 30.0

    @property
    def is_configured(self) -> bool:
        """True when both service URL and API key are set."""
        return bool(self.service_url and self.api_key)

    def validated(self) -> "SyncSettings":
        """Return a copy with the poll interval bounded and enums coerced."""
        return replace(
            self,
            service_url=(self.service_url or "").strip(),
            api_key=(self.api_key or "").strip(),
            output_folder=(self.output_folder or "").strip() or "Notebook Notes",
            organization_style=OrganizationStyle(self.organization_style),
            frontmatter_format=FrontmatterFormat(self.frontmatter_format),
            poll_interval=clamp_poll_interval(self.poll_interval),
        )

    def with_updates(self, **changes) -> "SyncSettings":
        """Return a validated copy with the given fields replaced."""
        return replace(self, **changes).validated()

    @classmethod
    def from_env(cls) -> "SyncSettings":
        """Build settings from SCANNER_* environment variables."""
        return cls(
            service_url=get_env("SCANNER_SERVICE_URL", ""),
            api_key=get_env("SCANNER_API_KEY", ""),
            output_folder=get_env("SCANNER_OUTPUT_FOLDER", "Notebook Notes"),
            organization_style=get_env("SCANNER_ORGANIZATION_STYLE", "flat"),
            poll_interval=float(get_env("SCANNER_POLL_INTERVAL", str(DEFAULT_POLL_INTERVAL))),
            auto_sync=get_bool_env("SCANNER_AUTO_SYNC", True),
            notify_on_sync=get_bool_env("SCANNER_NOTIFY_ON_SYNC", True),
            note_template=get_env("SCANNER_NOTE_TEMPLATE", DEFAULT_NOTE_TEMPLATE),
            include_source_image=get_bool_env("SCANNER_INCLUDE_SOURCE_IMAGE", False),
            frontmatter_format=get_env("SCANNER_FRONTMATTER_FORMAT", "yaml"),
            retention_days=int(get_env("SCANNER_RETENTION_DAYS", str(SYNC_STATE_RETENTION_DAYS))),
            max_batch_size=int(get_env("SCANNER_MAX_BATCH_SIZE", str(MAX_BATCH_SIZE))),
            max_file_size=int(get_env("SCANNER_MAX_FILE_SIZE", str(MAX_FILE_SIZE))),
            request_timeout=float(get_env("SCANNER_REQUEST_TIMEOUT", "30")),
        ).validated()
