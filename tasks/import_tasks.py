"""
Import background tasks.

This module defines Celery tasks that run drug import tasks through the
orchestrator with progress reporting. Task state lives in the database and
the progress store; the Celery result only carries the final summary.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from celery import Task
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from api.config import settings
from backend.models.enums import RetryType, TableType
from services.archive_extractor import ArchiveExtractor
from services.errors import TaskLockedError
from services.file_type_classifier import FileTypeClassifier
from services.import_orchestrator import ImportOrchestrator
from services.progress_store import TaskProgressStore, create_backend
from services.storage_service import StorageService
from services.task_lock import TaskLockManager
from tasks.celery_app import celery_app

logger = logging.getLogger(__name__)

# Create database engine and session factory
engine = create_engine(settings.DATABASE_URL, pool_pre_ping=True)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

_backend = None


def get_db_session() -> Session:
    """Get database session."""
    return SessionLocal()


def get_backend():
    """Worker-wide progress backend, created on first use."""
    global _backend
    if _backend is None:
        _backend = create_backend(settings.PROGRESS_BACKEND, settings.REDIS_URL)
    return _backend


def build_orchestrator(session: Session, progress_callback=None) -> ImportOrchestrator:
    """Orchestrator configured from settings for one task execution."""
    backend = get_backend()
    classifier = FileTypeClassifier()
    return ImportOrchestrator(
        session,
        TaskProgressStore(backend, progress_ttl=settings.PROGRESS_TTL_SECONDS,
                          session_ttl=settings.SESSION_TTL_SECONDS),
        TaskLockManager(backend, ttl=settings.LOCK_TTL_SECONDS),
        extractor=ArchiveExtractor(
            classifier=classifier,
            max_archive_size_mb=settings.MAX_ARCHIVE_SIZE_MB,
            max_extracted_size_mb=settings.MAX_EXTRACTED_SIZE_MB,
            max_entries=settings.MAX_ARCHIVE_ENTRIES,
        ),
        classifier=classifier,
        storage=StorageService(settings.WORK_DIR),
        session_factory=SessionLocal,
        batch_size=settings.IMPORT_BATCH_SIZE,
        max_workers=settings.IMPORT_MAX_WORKERS,
        max_retry_count=settings.DETAIL_MAX_RETRY_COUNT,
        progress_callback=progress_callback,
    )


class DrugImportTask(Task):
    """
    Base task class with progress tracking.

    The orchestrator writes progress to the progress store; this base class
    mirrors it into the Celery task state so Flower and result consumers see
    it as well.
    """

    def on_progress(self, stage: str, percent: float, message: str):
        """
        Publish progress as Celery task state.

        Args:
            stage: Current stage (e.g., 'EXTRACTING', 'IMPORTING')
            percent: Progress percentage (0-100)
            message: Human-readable progress message
        """
        if not self.request.id or self.request.is_eager:
            return
        self.update_state(state='PROGRESS', meta={
            'stage': stage,
            'percent': float(percent),
            'message': message,
            'timestamp': datetime.utcnow().isoformat(),
        })

    def run_with_orchestrator(self, operation, task_id: int) -> Dict[str, Any]:
        """Run ``operation(orchestrator)`` with a fresh session and return the task summary."""
        with get_db_session() as session:
            orchestrator = build_orchestrator(session, progress_callback=self.on_progress)
            try:
                task = operation(orchestrator)
            except TaskLockedError as e:
                # Another worker owns the task; the redelivered message is a duplicate
                logger.warning(f"Task {task_id} skipped: {e.message}")
                return {'task_id': task_id, 'skipped': True, 'error': e.to_dict()}
            summary = {
                'task_id': task.id,
                'task_no': task.task_no,
                'status': task.status,
                'progress_percent': float(task.progress_percent or 0),
                'success_records': task.success_records,
                'failed_records': task.failed_records,
                'error_message': task.error_message,
            }
        logger.info(f"Import task {task_id} finished with status {summary['status']}")
        return summary


@celery_app.task(base=DrugImportTask, bind=True, name='tasks.import_tasks.run_import_task')
def run_import_task(self, task_id: int, actor_id: str) -> Dict[str, Any]:
    """
    Run a PENDING import task to completion.

    Args:
        task_id: Import task id
        actor_id: Actor the task lock is taken for

    Returns:
        Task summary dictionary
    """
    logger.info(f"Starting import task {task_id} for {actor_id} (celery id {self.request.id})")
    return self.run_with_orchestrator(lambda o: o.start_task(task_id, actor_id), task_id)


@celery_app.task(base=DrugImportTask, bind=True, name='tasks.import_tasks.retry_import_task')
def retry_import_task(self, task_id: int, actor_id: str, retry_type: str = RetryType.FAILED.value,
                      table_type: Optional[str] = None) -> Dict[str, Any]:
    """
    Retry the selected details of a FAILED or PARTIAL_SUCCESS task.

    Args:
        task_id: Import task id
        actor_id: Actor the task lock is taken for
        retry_type: ALL, FAILED or FILE_TYPE
        table_type: Table type code or name for FILE_TYPE retries
    """
    logger.info(f"Retrying import task {task_id} ({retry_type}, {table_type}) for {actor_id}")
    target = TableType.from_value(table_type) if table_type else None
    return self.run_with_orchestrator(
        lambda o: o.retry_task(task_id, actor_id, RetryType(retry_type), target), task_id)


@celery_app.task(base=DrugImportTask, bind=True, name='tasks.import_tasks.resume_import_task')
def resume_import_task(self, task_id: int, actor_id: str) -> Dict[str, Any]:
    """Continue a task interrupted by a worker restart."""
    logger.info(f"Resuming import task {task_id} for {actor_id}")
    return self.run_with_orchestrator(lambda o: o.resume_task(task_id, actor_id), task_id)


@celery_app.task(name='tasks.import_tasks.cleanup_old_tasks')
def cleanup_old_tasks(days_to_keep: int = 30) -> Dict[str, Any]:
    """
    Remove work directories and stored uploads of old finished tasks.

    Args:
        days_to_keep: Number of days to keep task files

    Returns:
        Dictionary with cleanup statistics
    """
    cutoff = datetime.now() - timedelta(days=days_to_keep)
    logger.info(f"Starting cleanup of tasks finished before {cutoff.isoformat()}")
    with get_db_session() as session:
        stats = build_orchestrator(session).cleanup_finished_tasks(cutoff)
    stats['cutoff_date'] = cutoff.isoformat()
    return stats
