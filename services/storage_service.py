"""
Storage Service - upload storage and task work directories.

Uploaded archives and spreadsheets are kept under ``<work_dir>/uploads``
(named by content hash), and each task gets its own extraction directory
under ``<work_dir>/tasks/<task_no>`` which is kept for retries and removed
by the cleanup job.
"""

import hashlib
import logging
import shutil
from datetime import datetime
from pathlib import Path
from typing import BinaryIO, Optional, Tuple, Union

logger = logging.getLogger(__name__)

# Default storage directory
DEFAULT_WORK_DIR = 'work/'

# Default maximum upload size
DEFAULT_MAX_UPLOAD_SIZE_MB = 100


class StorageService:
    """
    Framework-agnostic storage service for upload files and work directories.
    """

    def __init__(self, work_dir: str = DEFAULT_WORK_DIR):
        """
        Initialize storage service.

        Args:
            work_dir: Root directory for uploads and extraction (default: 'work/')
        """
        self.work_dir = Path(work_dir)
        self.uploads_dir = self.work_dir / 'uploads'
        self.tasks_dir = self.work_dir / 'tasks'
        self._ensure_directory_exists()

    def _ensure_directory_exists(self):
        """Ensure the upload and task directories exist."""
        self.uploads_dir.mkdir(parents=True, exist_ok=True)
        self.tasks_dir.mkdir(parents=True, exist_ok=True)
        logger.debug(f"Storage directory ensured: {self.work_dir}")

    def compute_file_hash(self, file_path: str, algorithm: str = 'sha256') -> str:
        """
        Compute hash of a file.

        Args:
            file_path: Path to file
            algorithm: Hash algorithm ('sha256', 'md5', 'sha1')

        Returns:
            Hex digest of file hash
        """
        if algorithm not in ('sha256', 'md5', 'sha1'):
            raise ValueError(f"Unsupported hash algorithm: {algorithm}")
        hasher = hashlib.new(algorithm)

        with open(file_path, "rb") as f:
            for byte_block in iter(lambda: f.read(65536), b""):
                hasher.update(byte_block)

        file_hash = hasher.hexdigest()
        logger.debug(f"Computed {algorithm} hash for {file_path}: {file_hash[:16]}...")
        return file_hash

    def store_upload(self, source: Union[str, BinaryIO], file_name: str) -> Tuple[str, str, int]:
        """
        Store an uploaded file.

        Args:
            source: Path to a file on disk, or a readable binary stream
            file_name: Declared upload name (its extension is kept)

        Returns:
            (stored_path, sha256 hash, size in bytes)
        """
        self._ensure_directory_exists()
        suffix = ''.join(Path(file_name).suffixes[-2:]) if file_name.lower().endswith(
            ('.tar.gz', '.tar.bz2')) else Path(file_name).suffix
        staging = self.uploads_dir / f".incoming-{datetime.now().strftime('%Y%m%d%H%M%S%f')}{suffix}"

        if isinstance(source, (str, Path)):
            shutil.copy2(source, staging)
        else:
            with open(staging, 'wb') as out:
                shutil.copyfileobj(source, out)

        file_hash = self.compute_file_hash(str(staging))
        dest_path = self.uploads_dir / f"{file_hash[:16]}{suffix}"
        if dest_path.exists():
            staging.unlink()
        else:
            staging.replace(dest_path)
        size = dest_path.stat().st_size
        logger.info(f"Stored upload {file_name} -> {dest_path} ({size} bytes)")
        return str(dest_path), file_hash, size

    def task_work_dir(self, task_no: str) -> str:
        """Extraction directory for a task (not created here)."""
        return str(self.tasks_dir / task_no)

    def remove_task_work_dir(self, task_no: str) -> bool:
        """
        Delete a task's extraction directory.

        Returns:
            True if the directory was deleted, False if it didn't exist
        """
        path = self.tasks_dir / task_no
        if not path.exists():
            return False
        shutil.rmtree(path)
        logger.info(f"Removed work directory {path}")
        return True

    def delete_file(self, file_path: Optional[str]) -> bool:
        """
        Delete a stored file.

        Returns:
            True if file was deleted, False if file didn't exist
        """
        if not file_path:
            return False
        path = Path(file_path)

        if path.exists():
            path.unlink()
            logger.info(f"Deleted file: {file_path}")
            return True
        logger.warning(f"File not found for deletion: {file_path}")
        return False

    def get_file_size_mb(self, file_path: str) -> float:
        """
        Get file size in megabytes.

        Args:
            file_path: Path to file

        Returns:
            File size in MB
        """
        path = Path(file_path)

        if not path.exists():
            return 0.0

        return round(path.stat().st_size / (1024 * 1024), 2)

    def validate_file_size(self, file_path: str, max_size_mb: int = DEFAULT_MAX_UPLOAD_SIZE_MB) -> bool:
        """
        Validate that file size is within limit.

        Args:
            file_path: Path to file
            max_size_mb: Maximum allowed size in MB

        Returns:
            True if size is within limit, False otherwise
        """
        size_mb = self.get_file_size_mb(file_path)
        is_valid = size_mb <= max_size_mb

        if not is_valid:
            logger.warning(f"File size {size_mb} MB exceeds limit of {max_size_mb} MB")

        return is_valid
