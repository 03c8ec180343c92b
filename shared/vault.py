"""Local filesystem vault used as the artifact storage capability."""

import logging
import posixpath
from pathlib import Path

logger = logging.getLogger(__name__)


def normalize_path(path: str) -> str:
    """
    Normalize a logical vault path.

    Backslashes become forward slashes, duplicate separators collapse and
    leading/trailing slashes are dropped, e.g. ``"/Notes//2024/"`` -> ``"Notes/2024"``.
    """
    cleaned = path.replace("\\", "/")
    parts = [part for part in cleaned.split("/") if part and part != "."]
    return posixpath.join(*parts) if parts else ""


class VaultPathError(ValueError):
    """Raised when a logical path escapes the vault root or has the wrong type."""


class LocalVault:
    """Writes artifacts under a root directory addressed by logical POSIX paths."""

    def __init__(self, root: str):
        """
        Initialize the vault.

        Args:
            root: Directory that all logical paths are resolved against
        """
        self.root = Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)

    def _resolve(self, path: str) -> Path:
        resolved = (self.root / normalize_path(path)).resolve()
        if resolved != self.root and self.root not in resolved.parents:
            raise VaultPathError(f"Path escapes vault root: {path}")
        return resolved

    def exists(self, path: str) -> bool:
        return self._resolve(path).exists()

    def create_folder(self, path: str) -> None:
        """Create a folder and its parents. Existing folders are left alone."""
        target = self._resolve(path)
        if target.exists() and not target.is_dir():
            raise VaultPathError(f"Path exists but is not a folder: {normalize_path(path)}")
        target.mkdir(parents=True, exist_ok=True)

    def write(self, path: str, content: str) -> None:
        target = self._resolve(path)
        target.write_text(content, encoding="utf-8")
        logger.info(f"Wrote artifact: {normalize_path(path)}")

    def read(self, path: str) -> str:
        return self._resolve(path).read_text(encoding="utf-8")

    def delete(self, path: str) -> bool:
        """
        Delete a file from the vault.

        Returns:
            True if the file was deleted, False if it did not exist
        """
        target = self._resolve(path)
        if not target.is_file():
            logger.info(f"Artifact not found: {normalize_path(path)}")
            return False
        target.unlink()
        logger.info(f"Deleted artifact: {normalize_path(path)}")
        return True
