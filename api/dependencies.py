"""
Dependency injection utilities for FastAPI.

This module provides reusable dependencies for database sessions, the
progress store, the task lock manager, the orchestrator and the caller's
actor id.
"""

import logging
from functools import lru_cache
from pathlib import Path
from typing import Generator, Optional
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from fastapi import Depends, HTTPException, Header, status

from api.config import settings
from services.archive_extractor import ArchiveExtractor, archive_format
from services.file_type_classifier import FileTypeClassifier
from services.import_orchestrator import ImportOrchestrator
from services.progress_store import ProgressBackend, TaskProgressStore, create_backend
from services.spreadsheet_reader import is_supported as is_supported_spreadsheet
from services.storage_service import StorageService
from services.task_lock import TaskLockManager

logger = logging.getLogger(__name__)


def _engine_options() -> dict:
    if settings.DATABASE_URL.startswith('sqlite'):
        return {'connect_args': {'check_same_thread': False}}
    return {
        'pool_size': settings.DB_POOL_SIZE,
        'max_overflow': settings.DB_MAX_OVERFLOW,
        'pool_pre_ping': settings.DB_POOL_PRE_PING,
    }


# Create database engine
engine = create_engine(settings.DATABASE_URL, echo=settings.DEBUG, **_engine_options())

# Create session factory
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db() -> Generator[Session, None, None]:
    """
    Get database session dependency.

    Yields database session and ensures it's closed after use.

    Usage:
        @app.get("/endpoint")
        def endpoint(db: Session = Depends(get_db)):
            # Use db session
            pass
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@lru_cache()
def get_progress_backend() -> ProgressBackend:
    """Process-wide backend shared by the progress store and the lock manager."""
    logger.info(f"Progress backend: {settings.PROGRESS_BACKEND}")
    return create_backend(settings.PROGRESS_BACKEND, settings.REDIS_URL)


def get_progress_store(backend: ProgressBackend = Depends(get_progress_backend)) -> TaskProgressStore:
    return TaskProgressStore(
        backend,
        progress_ttl=settings.PROGRESS_TTL_SECONDS,
        session_ttl=settings.SESSION_TTL_SECONDS,
    )


def get_lock_manager(backend: ProgressBackend = Depends(get_progress_backend)) -> TaskLockManager:
    return TaskLockManager(backend, ttl=settings.LOCK_TTL_SECONDS)


def get_storage() -> StorageService:
    return StorageService(settings.WORK_DIR)


def get_orchestrator(
    db: Session = Depends(get_db),
    store: TaskProgressStore = Depends(get_progress_store),
    locks: TaskLockManager = Depends(get_lock_manager),
    storage: StorageService = Depends(get_storage),
) -> ImportOrchestrator:
    """Orchestrator bound to the request's session; used for reads, task creation and cancel."""
    classifier = FileTypeClassifier()
    extractor = ArchiveExtractor(
        classifier=classifier,
        max_archive_size_mb=settings.MAX_ARCHIVE_SIZE_MB,
        max_extracted_size_mb=settings.MAX_EXTRACTED_SIZE_MB,
        max_entries=settings.MAX_ARCHIVE_ENTRIES,
    )
    return ImportOrchestrator(
        db, store, locks,
        extractor=extractor,
        classifier=classifier,
        storage=storage,
        session_factory=SessionLocal,
        batch_size=settings.IMPORT_BATCH_SIZE,
        max_workers=settings.IMPORT_MAX_WORKERS,
        max_retry_count=settings.DETAIL_MAX_RETRY_COUNT,
    )


class ImportQueue:
    """Enqueues orchestrator runs on the Celery import queue."""

    def run(self, task_id: int, actor_id: str) -> str:
        from tasks.import_tasks import run_import_task
        return run_import_task.apply_async(args=[task_id, actor_id], queue=settings.IMPORT_QUEUE).id

    def retry(self, task_id: int, actor_id: str, retry_type: str, table_type: Optional[str]) -> str:
        from tasks.import_tasks import retry_import_task
        return retry_import_task.apply_async(
            args=[task_id, actor_id, retry_type, table_type], queue=settings.IMPORT_QUEUE).id

    def resume(self, task_id: int, actor_id: str) -> str:
        from tasks.import_tasks import resume_import_task
        return resume_import_task.apply_async(args=[task_id, actor_id], queue=settings.IMPORT_QUEUE).id


def get_import_queue() -> ImportQueue:
    return ImportQueue()


def get_actor_id(
    x_actor_id: str = Header(None, alias=settings.ACTOR_HEADER)
) -> str:
    """
    Caller identity from the actor header.

    Raises:
        HTTPException: If the header is missing or blank
    """
    if not x_actor_id or not x_actor_id.strip():
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"{settings.ACTOR_HEADER} header required"
        )
    return x_actor_id.strip()


def verify_file_size(file_size: int) -> bool:
    """
    Verify uploaded file size is within limit.

    Args:
        file_size: File size in bytes

    Returns:
        True if size is acceptable

    Raises:
        HTTPException: If file is too large
    """
    max_size_bytes = settings.MAX_FILE_SIZE_MB * 1024 * 1024

    if file_size > max_size_bytes:
        raise HTTPException(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            detail=f"File size ({file_size / 1024 / 1024:.1f} MB) exceeds maximum allowed "
                   f"({settings.MAX_FILE_SIZE_MB} MB)"
        )

    return True


def verify_file_extension(filename: str) -> bool:
    """
    Verify file has an allowed archive or spreadsheet extension.

    Raises:
        HTTPException: If extension is not allowed
    """
    name = (filename or '').lower()
    allowed = [e.lower() for e in settings.ALLOWED_EXTENSIONS]

    if not any(name.endswith(ext) for ext in allowed) or not (
            archive_format(name) or is_supported_spreadsheet(name)):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"File extension '{''.join(Path(name).suffixes) or name}' not allowed. "
                   f"Allowed extensions: {', '.join(settings.ALLOWED_EXTENSIONS)}"
        )

    return True
