"""Note materializer - writes processed results as markdown notes."""

import logging
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, Optional, Protocol

from shared.config import DEFAULT_NOTE_TEMPLATE, SyncSettings
from shared.models import FrontmatterFormat, OrganizationStyle, ProcessedNote, format_timestamp, utcnow
from shared.vault import normalize_path

logger = logging.getLogger(__name__)

NOTE_EXTENSION = ".md"
MAX_FILENAME_LENGTH = 100
# A base name may be used by at most this many notes: "name.md", "name 1.md" ... "name 99.md"
MAX_NAME_VARIANTS = 100

ILLEGAL_PATH_CHARS = re.compile(r'[\\/:*?"<>|]')
PLACEHOLDER = re.compile(r"\{\{(\w+)\}\}")
TAGS_BLOCK = re.compile(r"\{\{#tags\}\}.*?\{\{/tags\}\}", re.DOTALL)
FRONTMATTER = re.compile(r"\A---\n.*?\n---\n*", re.DOTALL)


class Vault(Protocol):
    """Storage capability supplied by the host."""

    def exists(self, path: str) -> bool: ...

    def create_folder(self, path: str) -> None: ...

    def write(self, path: str, content: str) -> None: ...


class MaterializationError(Exception):
    """Raised when a note cannot be written."""


@dataclass
class MaterializeOutcome:
    location: str


def sanitize_for_path(value: str) -> str:
    """Make a string safe for use as a single path segment."""
    value = ILLEGAL_PATH_CHARS.sub("-", value)
    value = re.sub(r"\s+", " ", value)
    value = value.strip()
    value = value.lstrip(".").rstrip(".")
    return value.strip()


def generate_filename(result: ProcessedNote) -> str:
    """Derive the note filename from the result title, falling back to the job id."""
    name = sanitize_for_path(result.title)[:MAX_FILENAME_LENGTH].rstrip()

    if not name:
        name = f"note-{result.job_id[:8]}"

    return f"{name}{NOTE_EXTENSION}"


def _yaml_escape(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"').replace("\n", " ")


def remove_frontmatter(content: str) -> str:
    """Strip a leading YAML front-matter block."""
    return FRONTMATTER.sub("", content, count=1)


def render_template(
    template: str,
    result: ProcessedNote,
    synced_at: datetime,
    frontmatter_format: FrontmatterFormat = FrontmatterFormat.YAML,
    source_image: Optional[str] = None
) -> str:
    """
    Render a note template for a result.

    Placeholders are replaced in a single pass so placeholder-like text
    inside the note body is left alone. Values in the front-matter block are
    escaped for a double-quoted YAML context.

    Args:
        template: Template text; empty falls back to the default template
        result: Processed note to render
        synced_at: Materialization timestamp for ``{{syncedAt}}``
        frontmatter_format: ``none`` removes the front-matter block entirely
        source_image: Vault path of the source image to embed, if any

    Returns:
        Rendered note content
    """
    template = template or DEFAULT_NOTE_TEMPLATE

    if frontmatter_format == FrontmatterFormat.NONE:
        template = remove_frontmatter(template)

    values: Dict[str, str] = {
        "title": result.title,
        "content": result.content,
        "summary": result.summary,
        "date": result.date or "unknown",
        "tags": ", ".join(result.tags),
        "category": result.category.value,
        "jobId": result.job_id,
        "syncedAt": format_timestamp(synced_at),
        "sourceImage": f"![[{source_image}]]" if source_image else "",
    }
    tags_yaml = "\n".join(f"  - {tag}" for tag in result.tags)

    def substitute(text: str, escape: bool) -> str:
        text = TAGS_BLOCK.sub(lambda _: tags_yaml, text)

        def replace_placeholder(match):
            key = match.group(1)
            if key not in values:
                return match.group(0)
            return _yaml_escape(values[key]) if escape else values[key]

        return PLACEHOLDER.sub(replace_placeholder, text)

    match = FRONTMATTER.match(template)
    if match:
        head, body = template[:match.end()], template[match.end():]
        return substitute(head, escape=True) + substitute(body, escape=False)

    return substitute(template, escape=False)


class NoteMaterializer:
    """Creates markdown notes in the vault from processed results."""

    def __init__(
        self,
        vault: Vault,
        settings: SyncSettings,
        clock: Callable[[], datetime] = utcnow
    ):
        """
        Initialize the materializer.

        Args:
            vault: Host storage capability (exists / create_folder / write)
            settings: Output folder, organization style and template settings
            clock: Source of the current time
        """
        self.vault = vault
        self.settings = settings
        self.clock = clock

    def reconfigure(self, settings: SyncSettings) -> None:
        self.settings = settings

    def materialize(self, result: ProcessedNote, source_image: Optional[str] = None) -> MaterializeOutcome:
        """
        Write one result as a note.

        Args:
            result: Processed note fetched from the service
            source_image: Optional vault path of a local copy of the source image

        Returns:
            MaterializeOutcome with the vault path that was written

        Raises:
            MaterializationError: If no free filename is left for this title
        """
        now = self.clock()
        folder = self.get_target_folder(result, now)
        filename = generate_filename(result)

        embed = source_image if self.settings.include_source_image else None
        content = render_template(
            self.settings.note_template,
            result,
            synced_at=now,
            frontmatter_format=self.settings.frontmatter_format,
            source_image=embed
        )

        path = self.get_unique_path(normalize_path(f"{folder}/{filename}"))

        self.vault.create_folder(folder)
        self.vault.write(path, content)

        logger.info(f"Materialized job {result.job_id} at {path}")
        return MaterializeOutcome(location=path)

    # Path Generation

    def get_target_folder(self, result: ProcessedNote, now: Optional[datetime] = None) -> str:
        base_folder = normalize_path(self.settings.output_folder)
        style = self.settings.organization_style

        if style == OrganizationStyle.DATE:
            date = self._parse_note_date(result.date) or (now or self.clock())
            return normalize_path(f"{base_folder}/{date.year:04d}/{date.month:02d}")

        if style == OrganizationStyle.CATEGORY:
            category = sanitize_for_path(result.category.value) or "other"
            return normalize_path(f"{base_folder}/{category}")

        return base_folder

    def get_unique_path(self, base_path: str) -> str:
        """Return base_path, or the first free "<stem> N.md" variant."""
        if not self.vault.exists(base_path):
            return base_path

        stem = base_path[:-len(NOTE_EXTENSION)]
        for counter in range(1, MAX_NAME_VARIANTS):
            candidate = f"{stem} {counter}{NOTE_EXTENSION}"
            if not self.vault.exists(candidate):
                return candidate

        raise MaterializationError(f"Too many files with the same name: {base_path}")

    @staticmethod
    def _parse_note_date(value: Optional[str]) -> Optional[datetime]:
        if not value:
            return None
        try:
            return datetime.fromisoformat(value[:10])
        except ValueError:
            logger.warning(f"Unparseable note date {value!r}, using current date")
            return None
