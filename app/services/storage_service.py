"""
Invoice file storage

Files are written to a staging directory first and only moved into the
invoice store (atomic rename) after the database row is committed.
Leftover staged files from crashed requests are removed by sweep_staging().
"""
import os
import time
from pathlib import Path
from typing import Optional

from core.config.config import Config
from core.utils.helpers import generate_stored_filename
from core.utils.logging_config import get_logger

logger = get_logger(__name__)


class UploadStorage:
    """Local-disk storage for uploaded invoice files"""

    def __init__(self, root: Optional[str] = None):
        self.root = Path(root or Config.UPLOAD_DIR)
        self.staging_dir = self.root / "staging"
        self.invoice_dir = self.root / "invoices"

    def ensure_directories(self) -> None:
        self.staging_dir.mkdir(parents=True, exist_ok=True)
        self.invoice_dir.mkdir(parents=True, exist_ok=True)

    def stage(self, data: bytes, original_filename: str) -> Path:
        """
        Write file bytes under a random name in the staging directory

        Args:
            data: File contents
            original_filename: Client filename (only its extension is kept)

        Returns:
            Path of the staged file
        """
        self.ensure_directories()
        staged_path = self.staging_dir / generate_stored_filename(original_filename)
        with staged_path.open("wb") as buffer:
            buffer.write(data)
        logger.debug(f"Staged {len(data)} bytes at {staged_path}")
        return staged_path

    def final_path(self, staged_path: Path) -> Path:
        """Location the staged file will occupy once committed"""
        return self.invoice_dir / Path(staged_path).name

    def commit(self, staged_path: Path) -> Path:
        """Move a staged file into the invoice store"""
        destination = self.final_path(staged_path)
        os.replace(staged_path, destination)
        logger.debug(f"Committed {staged_path.name} to invoice store")
        return destination

    def discard(self, staged_path: Path) -> None:
        """Remove a staged file that will never be committed"""
        try:
            Path(staged_path).unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.error(f"Failed to clean up staged file {staged_path}: {e}")

    def remove(self, file_path: Optional[str]) -> bool:
        """
        Delete a stored invoice file

        Returns:
            True if a file was removed
        """
        if not file_path:
            return False
        try:
            Path(file_path).unlink()
            logger.info(f"Removed stored file {file_path}")
            return True
        except FileNotFoundError:
            logger.warning(f"Stored file already missing: {file_path}")
            return False

    def sweep_staging(self, max_age_seconds: Optional[int] = None) -> int:
        """
        Remove staged files older than max_age_seconds

        Returns:
            Number of files removed
        """
        if not self.staging_dir.exists():
            return 0

        max_age = Config.STAGING_MAX_AGE_SECONDS if max_age_seconds is None else max_age_seconds
        cutoff = time.time() - max_age
        removed = 0
        for path in self.staging_dir.iterdir():
            if path.is_file() and path.stat().st_mtime <= cutoff:
                self.discard(path)
                removed += 1

        if removed:
            logger.info(f"Staging sweep removed {removed} orphaned file(s)")
        return removed


# Create storage instance
upload_storage = UploadStorage()


def get_storage() -> UploadStorage:
    """FastAPI dependency returning the shared storage"""
    return upload_storage
