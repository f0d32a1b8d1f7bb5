"""
Import Orchestrator - drives an import task through extract -> import -> QC.

Framework-agnostic: the API, the Celery tasks and the CLI all build an
orchestrator around a database session, a progress store and a lock
manager, and call one of the operations below.

Stages of a run:

1. EXTRACTING: unpack and classify the upload, create one PENDING detail
   per recognised table. Any extraction error fails the task without
   details.
2. IMPORTING: every detail is parsed (row count, header check, pre-import
   QC), then imported tier by tier (hospital info, drug catalog, then the
   three business tables in parallel up to ``max_workers``).
3. QC_CHECKING: once every detail's import is terminal, post-import rules
   run per table with access to the other tables of the task.

The task status is always derived from the detail outcomes, see
``derive_task_status``.
"""

import logging
import threading
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session

from backend.models.enums import (
    CANCELLABLE_TASK_STATUSES, IMPORT_TIERS, RETRYABLE_TASK_STATUSES, DetailStatus, ErrorLevel,
    ImportType, RetryType, RuleType, StageStatus, TableType, TaskStatus
)
from backend.models.import_task import ImportTask, ImportTaskDetail, QcFinding
from backend.models.schema import model_for
from services import spreadsheet_reader
from services.archive_extractor import ArchiveExtractor, ExtractedFile, archive_format
from services.errors import (
    DrugImportError, ProgressStoreUnavailableError, RetryLimitExceededError, RetryNotSupportedError,
    RetryTypeUnsupportedError, TaskNotFoundError, TaskStatusInvalidError, UnsupportedFileTypeError
)
from services.file_type_classifier import FileTypeClassifier
from services.progress_store import (
    ImportSessionInfo, TaskDetailProgressInfo, TaskProgressInfo, TaskProgressStore
)
from services.qc_rule_engine import CrossTableIndex, QcReport, QcRuleEngine
from services.row_importer import DEFAULT_BATCH_SIZE, ImportResult, RowImporter, make_batch_no
from services.storage_service import StorageService
from services.table_catalog import field_attrs
from services.task_lock import TaskLockManager

logger = logging.getLogger(__name__)

# Default configuration (can be overridden)
DEFAULT_MAX_WORKERS = 3
DEFAULT_MAX_RETRY_COUNT = 3
DEFAULT_QC_READ_CHUNK = 1000

CANCEL_REASON = 'Cancelled by user'

_TABLE_ORDER = [table_type for tier in IMPORT_TIERS for table_type in tier]


# ---------------------------------------------------------------------------
# Pure rules
# ---------------------------------------------------------------------------

def derive_task_status(detail_statuses: Sequence[DetailStatus], extract_failed: bool = False,
                       current: TaskStatus = TaskStatus.IMPORTING) -> TaskStatus:
    """
    Completion rule.

    COMPLETED iff every detail succeeded, PARTIAL_SUCCESS iff at least one
    succeeded and at least one failed, FAILED iff every detail failed, there
    are no details, or extraction failed. While any detail is still
    running the current processing status is kept.
    """
    if extract_failed or not detail_statuses:
        return TaskStatus.FAILED
    statuses = [DetailStatus(s) for s in detail_statuses]
    if not all(s.is_final() for s in statuses):
        return current
    if all(s == DetailStatus.SUCCESS for s in statuses):
        return TaskStatus.COMPLETED
    if all(s == DetailStatus.FAILED for s in statuses):
        return TaskStatus.FAILED
    return TaskStatus.PARTIAL_SUCCESS


def compute_percent(processed: int, total: int) -> float:
    if total <= 0:
        return 0.0
    return round(min(processed, total) * 100.0 / total, 2)


class _ProgressTracker:
    """
    Thread-safe running totals for one task run. Task progress never
    goes down: every recomputation is clamped to the previous value.
    """

    def __init__(self, snapshot: TaskProgressInfo):
        self._lock = threading.Lock()
        self._totals: Dict[int, int] = {}
        self._processed: Dict[int, int] = {}
        self._detail_percent: Dict[int, float] = {}
        self.snapshot = snapshot

    @property
    def percent(self) -> float:
        return self.snapshot.progress_percent

    def set_detail(self, detail_id: int, total: int, processed: int) -> float:
        """Record a detail's counters; returns the detail's (clamped) percent."""
        with self._lock:
            self._totals[detail_id] = total
            self._processed[detail_id] = min(processed, total)
            overall = compute_percent(sum(self._processed.values()), sum(self._totals.values()))
            self.snapshot.progress_percent = max(self.snapshot.progress_percent, overall)
            detail = max(self._detail_percent.get(detail_id, 0.0), compute_percent(processed, total))
            self._detail_percent[detail_id] = detail
            return detail

    def detail_percent(self, detail_id: int) -> float:
        with self._lock:
            return self._detail_percent.get(detail_id, 0.0)

    def update(self, **changes) -> TaskProgressInfo:
        with self._lock:
            percent = changes.pop('progress_percent', None)
            self.snapshot = replace(self.snapshot, **changes)
            if percent is not None:
                self.snapshot.progress_percent = max(self.snapshot.progress_percent, percent)
            return replace(self.snapshot)


class _Run:
    """Per-call state of one start/retry/resume run."""

    def __init__(self, task: ImportTask, actor_id: str, tracker: _ProgressTracker,
                 session_info: Optional[ImportSessionInfo]):
        self.task_id = task.id
        self.task_no = task.task_no
        self.actor_id = str(actor_id)
        self.tracker = tracker
        self.session_info = session_info
        self.cancelled = False
        self.engine: Optional[QcRuleEngine] = None
        self.rule_errors: List[Dict[str, Any]] = []
        self.session_lock = threading.Lock()

    def add_rule_errors(self, report: QcReport):
        for error in report.rule_errors:
            item = error.to_dict()
            if item not in self.rule_errors:
                self.rule_errors.append(item)


class ImportOrchestrator:
    """
    State machine for drug import tasks.

    Usage:
        orchestrator = ImportOrchestrator(session, store, locks, session_factory=SessionLocal)
        task = orchestrator.create_task(path, 'report.zip', actor_id='42')
        orchestrator.start_task(task.id, actor_id='42')
        info = orchestrator.get_task_progress(task.id)
    """

    def __init__(
        self,
        db_session: Session,
        progress_store: TaskProgressStore,
        lock_manager: TaskLockManager,
        extractor: Optional[ArchiveExtractor] = None,
        classifier: Optional[FileTypeClassifier] = None,
        storage: Optional[StorageService] = None,
        session_factory: Optional[Callable[[], Session]] = None,
        batch_size: int = DEFAULT_BATCH_SIZE,
        max_workers: int = DEFAULT_MAX_WORKERS,
        max_retry_count: int = DEFAULT_MAX_RETRY_COUNT,
        progress_callback: Optional[Callable[[str, float, str], None]] = None,
    ):
        """
        Initialize the orchestrator.

        Args:
            db_session: Session used for task/detail state
            progress_store: Connected progress cache
            lock_manager: Task lock manager (usually on the same backend as the store)
            extractor: Archive extractor (default limits if omitted)
            classifier: File classifier for single-file uploads
            storage: Upload/work directory storage
            session_factory: Creates a new session per worker thread; without it
                             details are imported one at a time
            batch_size: Rows per insert transaction
            max_workers: Parallel details within the last import tier
            max_retry_count: Retry limit written to new details
            progress_callback: Optional callback(stage, percent, message)
        """
        self.session = db_session
        self.store = progress_store
        self.locks = lock_manager
        self.classifier = classifier or FileTypeClassifier()
        self.extractor = extractor or ArchiveExtractor(classifier=self.classifier)
        self.storage = storage or StorageService()
        self.session_factory = session_factory
        self.batch_size = batch_size
        self.max_workers = max(1, max_workers)
        self.max_retry_count = max_retry_count
        self.progress_callback = progress_callback or (lambda *args: None)

        if self.max_workers > 1 and session_factory is None:
            logger.warning('No session factory given, importing details sequentially')
            self.max_workers = 1

    # ==================================================================
    # Public operations
    # ==================================================================

    def create_task(self, file_path: str, file_name: str, actor_id: Optional[str] = None,
                    task_name: Optional[str] = None, file_hash: Optional[str] = None) -> ImportTask:
        """
        Register an upload as a PENDING task.

        Raises:
            UnsupportedFileTypeError: The upload is neither an accepted archive nor a spreadsheet
        """
        if archive_format(file_name):
            import_type = ImportType.ARCHIVE
        elif spreadsheet_reader.is_supported(file_name):
            import_type = ImportType.SINGLE_FILE
        else:
            raise UnsupportedFileTypeError(f"File type not supported: {file_name}", file_name=file_name)

        task = ImportTask(
            task_no=self._next_task_no(),
            task_name=task_name or Path(file_name).stem,
            import_type=int(import_type),
            file_name=file_name,
            file_path=file_path,
            file_size=Path(file_path).stat().st_size,
            file_hash=file_hash or self.storage.compute_file_hash(file_path),
            status=int(TaskStatus.PENDING),
            extract_status=int(StageStatus.NOT_STARTED),
            import_status=int(StageStatus.NOT_STARTED),
            qc_status=int(StageStatus.NOT_STARTED),
            progress_percent=0,
            session_id=uuid.uuid4().hex,
            created_by=str(actor_id) if actor_id is not None else None,
        )
        self.session.add(task)
        self.session.commit()
        logger.info(f"Created task {task.id} ({task.task_no}) for {file_name} as {import_type.name}")
        self._safe_store(self.store.save_task_progress,
                         self._task_info(task, 'PENDING', 'Waiting to start'))
        return task

    def start_task(self, task_id: int, actor_id: str) -> ImportTask:
        """
        Run a PENDING task to a terminal status.

        Raises:
            TaskNotFoundError, TaskStatusInvalidError, TaskLockedError
        """
        self._require_pending(self.get_task(task_id))

        with self.locks.hold(task_id, actor_id, exclusive=True):
            # Another run may have moved the task on before the lock was taken
            task = self._require_pending(self._reload_task(task_id))
            run = self._open_run(task, actor_id)
            self._guarded(run, task, lambda: self._run_from_start(run, task))
        return task

    def cancel_task(self, task_id: int, actor_id: str) -> ImportTask:
        """
        Request cancellation.

        A running task stops at its next detail boundary. A task nobody is
        running is finalized here: unfinished details fail with the
        cancellation reason and committed batches are kept.

        Raises:
            TaskNotFoundError, TaskStatusInvalidError, TaskLockedError
        """
        task = self._require_cancellable(self.get_task(task_id))

        acquired = self.locks.acquire(task_id, actor_id)
        try:
            if acquired:
                task = self._require_cancellable(self._reload_task(task_id))
            self.store.request_cancel(task_id)
            logger.info(f"Cancel requested for task {task_id} by {actor_id}")
            if not acquired:
                # The caller's own run holds the lock and will stop at the next detail boundary
                return task

            run = self._open_run(task, actor_id)
            run.cancelled = True
            for detail in task.details:
                if not detail.detail_status.is_final():
                    self._cancel_detail(detail)
            self.session.commit()
            self._finalize(run, task, extract_failed=task.extract_status == StageStatus.FAILED)
        finally:
            if acquired:
                self.locks.release(task_id, actor_id)
        return task

    def retry_task(self, task_id: int, actor_id: str, retry_type: RetryType = RetryType.FAILED,
                   table_type: Optional[TableType] = None) -> ImportTask:
        """
        Re-import the failed rows of selected details.

        Rows already persisted for a detail are skipped; everything else is
        parsed and imported again under a new batch number, then QC runs
        again for the retried details.

        Raises:
            TaskNotFoundError, RetryNotSupportedError, RetryTypeUnsupportedError,
            RetryLimitExceededError, TaskLockedError
        """
        self.plan_retry(task_id, retry_type, table_type)

        with self.locks.hold(task_id, actor_id, exclusive=True):
            task = self._reload_task(task_id)
            eligible = self.plan_retry(task_id, retry_type, table_type)
            self._safe_store(self.store.clear_cancel, task_id)
            for detail in eligible:
                detail.retry_count += 1
                logger.info(f"Retrying detail {detail.id} ({detail.file_type}) of task {task_id}, "
                            f"attempt {detail.retry_count}/{detail.max_retry_count}")
            task.error_message = None
            task.error_detail = None
            task.end_time = None
            self.session.commit()

            run = self._open_run(task, actor_id, pending=[d.file_type for d in eligible])
            self._guarded(run, task, lambda: self._run_details(run, task, eligible, carry_failed=True))
        return task

    def plan_retry(self, task_id: int, retry_type: RetryType = RetryType.FAILED,
                   table_type: Optional[TableType] = None) -> List[ImportTaskDetail]:
        """
        Details a retry request would process, without changing anything.

        Raises:
            TaskNotFoundError, RetryNotSupportedError, RetryTypeUnsupportedError,
            RetryLimitExceededError
        """
        task = self.get_task(task_id)
        if task.task_status not in RETRYABLE_TASK_STATUSES:
            raise RetryNotSupportedError(
                f"Task {task_id} is {task.task_status.name}, only FAILED or PARTIAL_SUCCESS tasks can be retried",
                task_id=task_id, status=task.status)
        try:
            retry_type = RetryType(retry_type)
        except ValueError:
            raise RetryTypeUnsupportedError(f"Unsupported retry type: {retry_type}") from None

        candidates = self._retry_candidates(task, retry_type, table_type)
        eligible = [d for d in candidates if d.retry_count < d.max_retry_count]
        if not eligible:
            raise RetryLimitExceededError(
                f"Retry limit reached for {', '.join(d.file_type for d in candidates)}",
                task_id=task_id,
                details=[{'detail_id': d.id, 'retry_count': d.retry_count,
                          'max_retry_count': d.max_retry_count} for d in candidates])
        return eligible

    def resume_task(self, task_id: int, actor_id: str) -> ImportTask:
        """
        Continue a task interrupted by a restart.

        The import session lists the pending tables; when it has expired the
        persisted detail statuses are used instead.

        Raises:
            TaskNotFoundError, TaskStatusInvalidError, TaskLockedError
        """
        task = self.get_task(task_id)
        if task.task_status == TaskStatus.PENDING:
            return self.start_task(task_id, actor_id)
        self._require_unfinished(task)

        with self.locks.hold(task_id, actor_id, exclusive=True):
            task = self._require_unfinished(self._reload_task(task_id))
            session_info = self._safe_store(self.store.get_session, task.session_id)
            unfinished = [d for d in task.details if not d.detail_status.is_final()]
            if session_info is not None:
                pending = set(session_info.pending_items)
                details = [d for d in unfinished if d.file_type in pending]
            else:
                details = unfinished
            logger.info(f"Resuming task {task_id} with {[d.file_type for d in details]} "
                        f"({'session' if session_info else 'persisted state'})")

            run = self._open_run(task, actor_id, pending=[d.file_type for d in details])
            if task.extract_status != StageStatus.SUCCESS or not task.details:
                self._guarded(run, task, lambda: self._run_from_start(run, task))
            else:
                self._guarded(run, task, lambda: self._run_details(run, task, details, carry_failed=False))
        return task

    def get_task_progress(self, task_id: int) -> TaskProgressInfo:
        """Cached progress, or a reconstruction from the task row on a cache miss."""
        try:
            info = self.store.get_task_progress(task_id)
        except ProgressStoreUnavailableError as e:
            logger.warning(f"Progress store unavailable, reading task {task_id} from database: {e}")
            info = None
        if info is not None:
            return info
        task = self.get_task(task_id)
        info = self._task_info(task, self._stage_name(task), task.error_message or '')
        info.from_cache = False
        return info

    def get_detail_progress(self, task_id: int, table_type: TableType) -> TaskDetailProgressInfo:
        """Cached detail progress, or a reconstruction from the detail row."""
        table_type = TableType.from_value(table_type)
        try:
            info = self.store.get_detail_progress(task_id, table_type)
        except ProgressStoreUnavailableError as e:
            logger.warning(f"Progress store unavailable, reading detail from database: {e}")
            info = None
        if info is not None:
            return info
        detail = self.session.execute(
            select(ImportTaskDetail).where(ImportTaskDetail.task_id == task_id,
                                           ImportTaskDetail.table_type == int(table_type))
        ).scalar_one_or_none()
        if detail is None:
            raise TaskNotFoundError(f"Task {task_id} has no {table_type.name} detail",
                                    task_id=task_id, table_type=table_type.name)
        info = self._detail_info(detail, float(detail.progress_percent or 0),
                                 detail.detail_status.name, detail.error_message or '')
        info.from_cache = False
        return info

    def list_findings(self, task_id: int, level: Optional[ErrorLevel] = None) -> List[Dict[str, Any]]:
        """QC findings of a task in evaluation order."""
        self.get_task(task_id)
        stmt = select(QcFinding).where(QcFinding.task_id == task_id)
        if level is not None:
            stmt = stmt.where(QcFinding.error_level == int(level))
        stmt = stmt.order_by(QcFinding.id)
        return [f.to_dict() for f in self.session.execute(stmt).scalars()]

    def cleanup_finished_tasks(self, cutoff: datetime) -> Dict[str, int]:
        """
        Remove the files of terminal tasks that ended before ``cutoff``.

        Extraction directories, cache entries and stored uploads no other
        live task refers to are deleted. Task rows, details, findings and
        imported data are kept.

        Returns:
            Counts of cleaned tasks, removed directories and removed uploads
        """
        final = [int(s) for s in TaskStatus if s.is_final()]
        stmt = select(ImportTask).where(ImportTask.status.in_(final), ImportTask.end_time < cutoff,
                                        ImportTask.file_path.isnot(None))
        tasks = list(self.session.execute(stmt).scalars())
        stats = {'tasks': 0, 'work_dirs': 0, 'uploads': 0}
        for task in tasks:
            if self.locks.is_locked(task.id):
                logger.info(f"Skipping cleanup of locked task {task.id}")
                continue
            if self.storage.remove_task_work_dir(task.task_no):
                stats['work_dirs'] += 1
            self._safe_store(self.store.delete_task, task.id, [d.table for d in task.details])
            if Path(task.file_path).parent == self.storage.uploads_dir:
                shared = self.session.execute(
                    select(func.count(ImportTask.id)).where(ImportTask.file_path == task.file_path,
                                                            ImportTask.id != task.id,
                                                            ImportTask.end_time.is_(None) |
                                                            (ImportTask.end_time >= cutoff))
                ).scalar()
                if not shared and self.storage.delete_file(task.file_path):
                    stats['uploads'] += 1
            for detail in task.details:
                detail.file_path = None
            task.file_path = None
            stats['tasks'] += 1
        self.session.commit()
        logger.info(f"Cleanup before {cutoff.isoformat()}: {stats}")
        return stats

    # ==================================================================
    # Run phases
    # ==================================================================

    def _guarded(self, run: _Run, task: ImportTask, body: Callable[[], None]):
        """Run a phase body; an unexpected error fails the whole task and propagates."""
        try:
            body()
        except DrugImportError:
            raise
        except Exception as e:
            logger.error(f"Task {task.id} aborted: {e}", exc_info=True)
            self.session.rollback()
            task = self.get_task(task.id)
            for detail in task.details:
                if not detail.detail_status.is_final():
                    self._fail_detail(detail, f"Task aborted: {e}")
            task.error_detail = {'error': type(e).__name__, 'message': str(e)}
            self.session.commit()
            self._finalize(run, task, extract_failed=task.extract_status != StageStatus.SUCCESS,
                           failure=f"Task aborted: {e}")
            raise

    def _run_from_start(self, run: _Run, task: ImportTask):
        files = self._extract(run, task)
        if files is None:
            return
        details = self._create_details(run, task, files)
        self._run_details(run, task, details, carry_failed=False)

    def _extract(self, run: _Run, task: ImportTask) -> Optional[List[ExtractedFile]]:
        """EXTRACTING stage. Returns the recognised files, or None after failing the task."""
        now = datetime.now()
        task.status = int(TaskStatus.EXTRACTING)
        task.extract_status = int(StageStatus.RUNNING)
        task.start_time = task.start_time or now
        self.session.commit()
        self._publish(run, task, 'EXTRACTING', f"Extracting {task.file_name}")

        try:
            if task.import_type == ImportType.ARCHIVE:
                result = self.extractor.extract(task.file_path, self.storage.task_work_dir(task.task_no),
                                                file_name=task.file_name)
                files = result.files
                task.extracted_files = result.to_dict()
            else:
                table_type = self.classifier.classify(task.file_name, task.file_path)
                if table_type is None:
                    raise UnsupportedFileTypeError(
                        f"Cannot tell which table {task.file_name} belongs to", file_name=task.file_name)
                files = [ExtractedFile(table_type, task.file_name, task.file_path, task.file_size or 0)]
                task.extracted_files = {'files': [files[0].to_dict()], 'unmatched': [], 'missing': []}
            if not files:
                raise UnsupportedFileTypeError('No recognised spreadsheet in upload', file_name=task.file_name)
        except DrugImportError as e:
            logger.error(f"Extraction failed for task {task.id}: {e.message}")
            task.extract_status = int(StageStatus.FAILED)
            task.extract_end_time = datetime.now()
            task.error_detail = e.to_dict()
            self.session.commit()
            self._finalize(run, task, extract_failed=True, failure=e.message)
            return None

        task.extract_status = int(StageStatus.SUCCESS)
        task.extract_end_time = datetime.now()
        task.total_files = len(files)
        self.session.commit()
        self._refresh_lock(run)
        logger.info(f"Task {task.id} extracted {len(files)} files: {[f.table_type.name for f in files]}")
        return files

    def _create_details(self, run: _Run, task: ImportTask, files: List[ExtractedFile]) -> List[ImportTaskDetail]:
        details = []
        for f in files:
            detail = ImportTaskDetail(
                task_id=task.id,
                task_no=task.task_no,
                file_type=f.table_type.name,
                file_name=f.file_name,
                file_path=f.file_path,
                target_table=f.table_type.table_name,
                table_type=int(f.table_type),
                status=int(DetailStatus.PENDING),
                parse_status=int(StageStatus.NOT_STARTED),
                import_status=int(StageStatus.NOT_STARTED),
                qc_status=int(StageStatus.NOT_STARTED),
                total_rows=0, valid_rows=0, success_rows=0, failed_rows=0,
                qc_passed_rows=0, qc_failed_rows=0, progress_percent=0,
                retry_count=0,
                max_retry_count=self.max_retry_count,
            )
            self.session.add(detail)
            details.append(detail)
        self.session.commit()
        if run.session_info is not None:
            run.session_info.pending_items = [d.file_type for d in details]
            self._safe_store(self.store.save_session, run.session_info)
        return details

    def _run_details(self, run: _Run, task: ImportTask, details: List[ImportTaskDetail], carry_failed: bool):
        """IMPORTING and QC_CHECKING stages for the given details."""
        details = sorted(details, key=lambda d: _TABLE_ORDER.index(d.table))
        run.engine = QcRuleEngine.from_session(self.session)

        task.status = int(TaskStatus.IMPORTING)
        task.import_status = int(StageStatus.RUNNING)
        task.qc_status = int(StageStatus.NOT_STARTED)
        self.session.commit()
        for detail in task.details:
            run.tracker.set_detail(detail.id, detail.total_rows or 0, detail.processed_rows)
        self._publish(run, task, 'IMPORTING', f"Importing {len(details)} files")

        # Parse pass: fixes every detail's row total before any row is imported
        importable = []
        for detail in details:
            if self._check_cancel(run):
                break
            if self._parse_detail(run, detail, carry_failed):
                importable.append(detail)
            self._refresh_lock(run)

        # Import pass, tier by tier
        for tier in IMPORT_TIERS:
            tier_details = [d for d in importable if d.table in tier]
            if not tier_details or self._check_cancel(run):
                continue
            self._import_tier(run, tier_details, carry_failed)
            self.session.expire_all()
            self._refresh_lock(run)

        task = self.get_task(task.id)
        if run.cancelled:
            for detail in task.details:
                if not detail.detail_status.is_final() and detail.import_status in (
                        StageStatus.NOT_STARTED, StageStatus.RUNNING):
                    self._cancel_detail(detail)

        imported = [d for d in task.details if d.import_status == StageStatus.SUCCESS]
        task.import_status = int(StageStatus.SUCCESS if imported else StageStatus.FAILED)
        task.import_end_time = datetime.now()
        self.session.commit()

        # Barrier passed: every import status is terminal from here on
        qc_details = [d for d in task.details if d in details and d.import_status == StageStatus.SUCCESS
                      and not d.detail_status.is_final()]
        for detail in task.details:
            if detail in details and detail.import_status == StageStatus.FAILED \
                    and not detail.detail_status.is_final():
                self._close_detail(run, detail, DetailStatus.FAILED)

        if qc_details and not self._check_cancel(run):
            self._run_post_import_qc(run, task, qc_details)
        elif run.cancelled:
            for detail in qc_details:
                self._cancel_detail(detail)
            self.session.commit()

        qc_statuses = [d.qc_status for d in task.details]
        if StageStatus.FAILED in qc_statuses:
            task.qc_status = int(StageStatus.FAILED)
        elif StageStatus.SUCCESS in qc_statuses:
            task.qc_status = int(StageStatus.SUCCESS)
        self.session.commit()
        self._finalize(run, task)

    # ------------------------------------------------------------------ parse

    def _parse_detail(self, run: _Run, detail: ImportTaskDetail, carry_failed: bool) -> bool:
        """Count rows, check the header and run pre-import QC. Returns whether the detail can be imported."""
        importer = RowImporter(self.session, batch_size=self.batch_size)
        table_type = detail.table
        detail.status = int(DetailStatus.PARSING)
        detail.parse_status = int(StageStatus.RUNNING)
        detail.import_status = int(StageStatus.NOT_STARTED)
        detail.qc_status = int(StageStatus.NOT_STARTED)
        detail.start_time = datetime.now()
        detail.end_time = None
        detail.error_message = None
        self.session.execute(delete(QcFinding).where(QcFinding.detail_id == detail.id))
        self.session.commit()
        self._publish_detail(run, detail, 'PARSING', f"Parsing {detail.file_name}")

        try:
            detail.total_rows = importer.count_rows(detail.file_path, table_type)
            importer.check_header(detail.file_path, table_type)
            check = run.engine.start(RuleType.PRE_IMPORT, table_type)
            valid = 0
            for row in importer.iter_rows(detail.file_path, table_type):
                check.add_row(row.row_number, row.values)
                valid += 1 if row.is_valid else 0
            report = check.finish()
        except DrugImportError as e:
            logger.error(f"Detail {detail.id} ({detail.file_type}) failed to parse: {e.message}")
            detail.parse_status = int(StageStatus.FAILED)
            detail.import_status = int(StageStatus.FAILED)
            detail.parse_end_time = datetime.now()
            detail.success_rows = self._persisted_count(detail)
            detail.failed_rows = max(0, (detail.total_rows or 0) - detail.success_rows)
            detail.error_message = e.message
            detail.error_rows_detail = [e.to_dict()]
            self.session.commit()
            run.tracker.set_detail(detail.id, detail.total_rows, detail.processed_rows)
            return False

        detail.valid_rows = valid
        detail.parse_status = int(StageStatus.SUCCESS)
        detail.parse_end_time = datetime.now()
        self._save_findings(run, detail, report)
        detail.success_rows = self._persisted_count(detail)
        detail.total_rows = max(detail.total_rows, detail.success_rows)
        detail.failed_rows = max(0, detail.total_rows - detail.success_rows) if carry_failed else 0
        self.session.commit()
        run.tracker.set_detail(detail.id, detail.total_rows, detail.processed_rows)
        self._publish_detail(run, detail, 'PARSING', f"{detail.total_rows} rows found")
        return True

    # ----------------------------------------------------------------- import

    def _import_tier(self, run: _Run, details: List[ImportTaskDetail], carry_failed: bool):
        detail_ids = [d.id for d in details]
        if self.max_workers == 1 or len(detail_ids) == 1:
            for detail_id in detail_ids:
                self._import_detail(run, self.session, detail_id, carry_failed)
            return

        def work(detail_id):
            worker_session = self.session_factory()
            try:
                self._import_detail(run, worker_session, detail_id, carry_failed)
            finally:
                worker_session.close()

        with ThreadPoolExecutor(max_workers=min(self.max_workers, len(detail_ids))) as pool:
            futures = [pool.submit(work, detail_id) for detail_id in detail_ids]
            for future in futures:
                # Worker errors are recorded on the detail; result() re-raises anything else
                future.result()

    def _import_detail(self, run: _Run, session: Session, detail_id: int, carry_failed: bool):
        detail = session.get(ImportTaskDetail, detail_id)
        if self._check_cancel(run):
            self._cancel_detail(detail)
            session.commit()
            return

        table_type = detail.table
        importer = RowImporter(session, batch_size=self.batch_size)
        skip = importer.persisted_row_numbers(table_type, detail.id)
        base_success = len(skip)
        total = detail.total_rows or 0

        detail.status = int(DetailStatus.IMPORTING)
        detail.import_status = int(StageStatus.RUNNING)
        detail.import_batch_no = make_batch_no(run.task_id, table_type, detail.retry_count)
        session.commit()
        self._publish_detail(run, detail, 'IMPORTING', f"Importing {detail.file_name}")

        def on_batch(result: ImportResult):
            # A file edited since parsing can hold more rows than were counted
            seen = max(total, base_success + result.total_rows)
            detail.total_rows = seen
            detail.success_rows = base_success + result.success_rows
            if carry_failed:
                detail.failed_rows = max(0, seen - detail.success_rows)
            else:
                detail.failed_rows = result.failed_rows
            detail.valid_rows = base_success + result.valid_rows
            percent = run.tracker.set_detail(detail.id, seen, detail.processed_rows)
            detail.progress_percent = percent
            session.commit()
            self._publish_detail(run, detail, 'IMPORTING',
                                 f"{detail.processed_rows}/{seen} rows processed")

        try:
            result = importer.import_file(detail.file_path, table_type, run.task_id, detail.id,
                                          detail.import_batch_no, skip_row_numbers=skip, on_batch=on_batch)
        except DrugImportError as e:
            session.rollback()
            logger.error(f"Detail {detail.id} ({detail.file_type}) import failed: {e.message}")
            detail.import_status = int(StageStatus.FAILED)
            detail.failed_rows = max(0, total - (detail.success_rows or 0))
            detail.error_message = e.message
            detail.error_rows_detail = [e.to_dict()]
            detail.import_end_time = datetime.now()
            session.commit()
            run.tracker.set_detail(detail.id, total, detail.processed_rows)
            return

        detail.total_rows = max(total, base_success + result.total_rows)
        detail.error_rows_detail = result.rejected or None
        detail.import_end_time = datetime.now()
        if result.storage_failed:
            detail.import_status = int(StageStatus.FAILED)
            first = result.failed_batches[0]
            detail.error_message = (f"{len(result.failed_batches)} batch(es) rolled back, "
                                    f"first at rows {first['first_row']}-{first['last_row']}: {first['error']}")
        else:
            detail.import_status = int(StageStatus.SUCCESS)
            if result.failed_rows:
                detail.error_message = f"{result.failed_rows} rows rejected"
        session.commit()
        run.tracker.set_detail(detail.id, detail.total_rows, detail.processed_rows)
        self._publish_detail(run, detail, 'IMPORTING', detail.error_message or 'Import finished')
        logger.info(f"Detail {detail.id} ({detail.file_type}) import "
                    f"{StageStatus(detail.import_status).name}: {detail.success_rows} stored, "
                    f"{detail.failed_rows} failed")

    # --------------------------------------------------------------------- QC

    def _run_post_import_qc(self, run: _Run, task: ImportTask, details: List[ImportTaskDetail]):
        task.status = int(TaskStatus.QC_CHECKING)
        task.qc_status = int(StageStatus.RUNNING)
        self.session.commit()
        self._publish(run, task, 'QC_CHECKING', f"Running quality control on {len(details)} tables")

        index = CrossTableIndex(self.session, task.id)
        for detail in details:
            if self._check_cancel(run):
                self._cancel_detail(detail)
                self.session.commit()
                continue
            detail.status = int(DetailStatus.QC_CHECKING)
            detail.qc_status = int(StageStatus.RUNNING)
            self.session.commit()
            self._publish_detail(run, detail, 'QC_CHECKING', f"Checking {detail.file_name}")

            report = run.engine.evaluate(RuleType.POST_IMPORT, detail.table,
                                         self._persisted_rows(detail), cross_table=index)
            self._save_findings(run, detail, report)

            failed_rows = self._failed_qc_rows(detail)
            has_errors = self._has_error_findings(detail)
            detail.qc_failed_rows = failed_rows
            detail.qc_passed_rows = max(0, (detail.total_rows or 0) - failed_rows)
            detail.qc_status = int(StageStatus.FAILED if has_errors else StageStatus.SUCCESS)
            detail.qc_end_time = datetime.now()
            if has_errors:
                detail.error_message = ((detail.error_message + '; ') if detail.error_message else '') + \
                    'Quality control errors found'
            self._close_detail(run, detail, DetailStatus.FAILED if has_errors else DetailStatus.SUCCESS)
            self._refresh_lock(run)

        task.qc_end_time = datetime.now()
        self.session.commit()

    def _persisted_rows(self, detail: ImportTaskDetail) -> Iterable:
        model = model_for(detail.table)
        attrs = field_attrs(detail.table)
        stmt = (select(model).where(model.detail_id == detail.id)
                .order_by(model.row_number).execution_options(yield_per=DEFAULT_QC_READ_CHUNK))
        for record in self.session.execute(stmt).scalars():
            yield record.row_number, {attr: getattr(record, attr) for attr in attrs}

    def _save_findings(self, run: _Run, detail: ImportTaskDetail, report: QcReport):
        run.add_rule_errors(report)
        if not report.findings:
            return
        self.session.add_all([
            QcFinding(
                task_id=detail.task_id,
                detail_id=detail.id,
                table_type=detail.table_type,
                rule_code=f.rule_code,
                rule_type=int(f.rule_type),
                error_level=int(f.error_level),
                message=f.message,
                row_number=f.row_number,
                field_name=f.field_name,
                import_batch_no=detail.import_batch_no,
            )
            for f in report.findings
        ])
        self.session.commit()
        logger.info(f"Detail {detail.id} {report.rule_type.name} QC: "
                    f"{report.error_count} errors, {report.warning_count} warnings")

    def _failed_qc_rows(self, detail: ImportTaskDetail) -> int:
        stmt = select(func.count(func.distinct(QcFinding.row_number))).where(
            QcFinding.detail_id == detail.id,
            QcFinding.error_level == int(ErrorLevel.ERROR),
            QcFinding.row_number.isnot(None))
        return self.session.execute(stmt).scalar() or 0

    def _has_error_findings(self, detail: ImportTaskDetail) -> bool:
        stmt = select(QcFinding.id).where(QcFinding.detail_id == detail.id,
                                          QcFinding.error_level == int(ErrorLevel.ERROR)).limit(1)
        return self.session.execute(stmt).first() is not None

    # ------------------------------------------------------------- finishing

    def _close_detail(self, run: _Run, detail: ImportTaskDetail, status: DetailStatus):
        detail.status = int(status)
        detail.end_time = datetime.now()
        detail.progress_percent = run.tracker.set_detail(detail.id, detail.total_rows or 0, detail.processed_rows)
        self.session.commit()
        self._publish_detail(run, detail, status.name, detail.error_message or status.name)
        if run.session_info is not None:
            with run.session_lock:
                run.session_info.mark_completed(detail.file_type)
                self._safe_store(self.store.save_session, run.session_info)

    def _fail_detail(self, detail: ImportTaskDetail, reason: str):
        detail.status = int(DetailStatus.FAILED)
        if detail.import_status == StageStatus.RUNNING:
            detail.import_status = int(StageStatus.FAILED)
        if detail.qc_status == StageStatus.RUNNING:
            detail.qc_status = int(StageStatus.FAILED)
        if detail.parse_status == StageStatus.RUNNING:
            detail.parse_status = int(StageStatus.FAILED)
        detail.failed_rows = max(0, (detail.total_rows or 0) - (detail.success_rows or 0))
        detail.error_message = reason
        detail.end_time = datetime.now()

    def _cancel_detail(self, detail: ImportTaskDetail):
        logger.info(f"Detail {detail.id} ({detail.file_type}) cancelled")
        self._fail_detail(detail, CANCEL_REASON)

    def _finalize(self, run: _Run, task: ImportTask, extract_failed: bool = False,
                  failure: Optional[str] = None):
        """Derive the terminal status, counters and error summary, then publish."""
        details = list(task.details)
        status = derive_task_status([d.status for d in details], extract_failed=extract_failed,
                                    current=task.task_status)
        if not status.is_final():
            # Details left unfinished by an interrupted phase
            for detail in details:
                if not detail.detail_status.is_final():
                    self._fail_detail(detail, failure or 'Processing did not complete')
            status = derive_task_status([d.status for d in details], extract_failed=extract_failed)

        task.status = int(status)
        task.total_files = len(details) if details else task.total_files
        task.success_files = sum(1 for d in details if d.detail_status == DetailStatus.SUCCESS)
        task.failed_files = sum(1 for d in details if d.detail_status == DetailStatus.FAILED)
        task.total_records = sum(d.total_rows or 0 for d in details)
        task.success_records = sum(d.success_rows or 0 for d in details)
        task.failed_records = sum(d.failed_rows or 0 for d in details)

        processed = sum(d.processed_rows for d in details)
        percent = compute_percent(processed, task.total_records)
        if details and task.total_records == 0:
            percent = 100.0
        percent = max(percent, run.tracker.percent, float(task.progress_percent or 0))
        task.progress_percent = percent
        task.end_time = datetime.now()

        if status in (TaskStatus.FAILED, TaskStatus.PARTIAL_SUCCESS):
            task.error_message = self._error_summary(task, details, failure, run.cancelled)
            error_detail = dict(task.error_detail or {}) if extract_failed else {}
            error_detail['failed_details'] = [self._failed_detail_entry(d) for d in details
                                              if d.detail_status == DetailStatus.FAILED]
            if run.rule_errors:
                error_detail['rule_errors'] = run.rule_errors
            if task.extracted_files and task.extracted_files.get('unmatched'):
                error_detail['unmatched_files'] = task.extracted_files['unmatched']
            if run.cancelled:
                error_detail['cancelled'] = True
            task.error_detail = error_detail
        else:
            task.error_message = None
            task.error_detail = {'rule_errors': run.rule_errors} if run.rule_errors else None
        self.session.commit()

        logger.info(f"Task {task.id} ({task.task_no}) finished {status.name}: "
                    f"{task.success_files}/{len(details)} files, {task.success_records} rows stored, "
                    f"{task.failed_records} rows failed")

        self._publish(run, task, status.name, task.error_message or 'Import completed')
        if run.session_info is not None:
            run.session_info.session_status = 'CANCELLED' if run.cancelled else status.name
            self._safe_store(self.store.save_session, run.session_info)
        self._safe_store(self.store.clear_cancel, task.id)

    def _error_summary(self, task: ImportTask, details: List[ImportTaskDetail],
                       failure: Optional[str], cancelled: bool) -> str:
        parts = []
        if cancelled:
            parts.append(CANCEL_REASON)
        if failure:
            parts.append(failure)
        failed = [d for d in details if d.detail_status == DetailStatus.FAILED]
        if failed:
            parts.append(f"{len(failed)} of {len(details)} files failed: " + '; '.join(
                f"{d.file_type}: {d.error_message or 'failed'}" for d in failed))
        if not parts:
            parts.append(task.error_message or 'Import failed')
        return ' | '.join(dict.fromkeys(parts))

    @staticmethod
    def _failed_detail_entry(detail: ImportTaskDetail) -> Dict[str, Any]:
        return {
            'detail_id': detail.id,
            'table_type': detail.table_type,
            'file_type': detail.file_type,
            'file_name': detail.file_name,
            'error_message': detail.error_message,
            'failed_rows': detail.failed_rows,
            'import_status': detail.import_status,
            'qc_status': detail.qc_status,
            'retry_count': detail.retry_count,
            'max_retry_count': detail.max_retry_count,
            'retryable': detail.retry_count < detail.max_retry_count,
        }

    # ==================================================================
    # Helpers
    # ==================================================================

    def get_task(self, task_id: int) -> ImportTask:
        task = self.session.get(ImportTask, task_id)
        if task is None:
            raise TaskNotFoundError(f"Import task {task_id} not found", task_id=task_id)
        return task

    def _reload_task(self, task_id: int) -> ImportTask:
        """Re-read a task and its details, dropping state cached before the lock was taken."""
        self.session.expire_all()
        return self.get_task(task_id)

    @staticmethod
    def _require_pending(task: ImportTask) -> ImportTask:
        if task.task_status != TaskStatus.PENDING:
            raise TaskStatusInvalidError(
                f"Task {task.id} is {task.task_status.name}, only PENDING tasks can be started",
                task_id=task.id, status=task.status)
        return task

    @staticmethod
    def _require_cancellable(task: ImportTask) -> ImportTask:
        if task.task_status not in CANCELLABLE_TASK_STATUSES:
            raise TaskStatusInvalidError(
                f"Task {task.id} is {task.task_status.name} and cannot be cancelled",
                task_id=task.id, status=task.status)
        return task

    @staticmethod
    def _require_unfinished(task: ImportTask) -> ImportTask:
        if task.task_status.is_final():
            raise TaskStatusInvalidError(f"Task {task.id} is already {task.task_status.name}",
                                         task_id=task.id, status=task.status)
        return task

    def _retry_candidates(self, task: ImportTask, retry_type: RetryType,
                          table_type: Optional[TableType]) -> List[ImportTaskDetail]:
        details = list(task.details)
        if retry_type == RetryType.ALL:
            candidates = details
        elif retry_type == RetryType.FAILED:
            candidates = [d for d in details if d.detail_status == DetailStatus.FAILED]
        else:
            if table_type is None:
                raise RetryTypeUnsupportedError('FILE_TYPE retry needs a table type')
            wanted = TableType.from_value(table_type)
            candidates = [d for d in details if d.table == wanted]
            if not candidates:
                raise TaskNotFoundError(f"Task {task.id} has no {wanted.name} detail",
                                        task_id=task.id, table_type=wanted.name)
        if not candidates:
            raise RetryNotSupportedError(f"Task {task.id} has no details to retry", task_id=task.id)
        return candidates

    def _open_run(self, task: ImportTask, actor_id: str, pending: Optional[List[str]] = None) -> _Run:
        session_info = None
        if task.session_id:
            session_info = self._safe_store(self.store.get_session, task.session_id)
            if session_info is None:
                session_info = ImportSessionInfo(session_id=task.session_id, task_id=task.id, user_id=str(actor_id))
            session_info.session_status = 'ACTIVE'
            session_info.user_id = str(actor_id)
            if pending is not None:
                session_info.pending_items = list(pending)
                session_info.completed_items = [i for i in session_info.completed_items if i not in pending]
            self._safe_store(self.store.save_session, session_info)
        tracker = _ProgressTracker(self._task_info(task, self._stage_name(task), ''))
        return _Run(task, actor_id, tracker, session_info)

    def _next_task_no(self) -> str:
        try:
            return self.store.next_task_no()
        except ProgressStoreUnavailableError as e:
            day = datetime.now().strftime('%Y%m%d')
            count = self.session.execute(
                select(func.count(ImportTask.id)).where(ImportTask.task_no.like(f"DRUG_{day}_%"))
            ).scalar() or 0
            logger.warning(f"Task number counter unavailable ({e}), using database sequence")
            return f"DRUG_{day}_{count + 1:06d}"

    def _persisted_count(self, detail: ImportTaskDetail) -> int:
        model = model_for(detail.table)
        return self.session.execute(
            select(func.count(model.id)).where(model.detail_id == detail.id)).scalar() or 0

    def _check_cancel(self, run: _Run) -> bool:
        if run.cancelled:
            return True
        if self._safe_store(self.store.is_cancel_requested, run.task_id):
            logger.info(f"Task {run.task_id} cancellation observed")
            run.cancelled = True
        return run.cancelled

    def _refresh_lock(self, run: _Run):
        if not self.locks.refresh(run.task_id, run.actor_id):
            # Lost to expiry; take it back or fail with TaskLockedError
            self.locks.acquire(run.task_id, run.actor_id)

    def _safe_store(self, operation: Callable, *args):
        """Cache writes are best effort; the database stays authoritative."""
        try:
            return operation(*args)
        except ProgressStoreUnavailableError as e:
            logger.warning(f"Progress store unavailable during {operation.__name__}: {e}")
            return None

    @staticmethod
    def _stage_name(task: ImportTask) -> str:
        return task.task_status.name

    def _task_info(self, task: ImportTask, stage: str, message: str) -> TaskProgressInfo:
        return TaskProgressInfo(
            task_id=task.id,
            task_no=task.task_no,
            status=task.status,
            extract_status=task.extract_status,
            import_status=task.import_status,
            qc_status=task.qc_status,
            progress_percent=float(task.progress_percent or 0),
            current_stage=stage,
            message=message,
            total_files=task.total_files or 0,
            success_files=task.success_files or 0,
            failed_files=task.failed_files or 0,
            total_records=task.total_records or 0,
            success_records=task.success_records or 0,
            failed_records=task.failed_records or 0,
        )

    def _detail_info(self, detail: ImportTaskDetail, percent: float, stage: str, message: str) -> TaskDetailProgressInfo:
        return TaskDetailProgressInfo(
            task_id=detail.task_id,
            table_type=detail.table_type,
            detail_id=detail.id,
            file_name=detail.file_name,
            status=detail.status,
            parse_status=detail.parse_status,
            import_status=detail.import_status,
            qc_status=detail.qc_status,
            total_rows=detail.total_rows or 0,
            success_rows=detail.success_rows or 0,
            failed_rows=detail.failed_rows or 0,
            qc_passed_rows=detail.qc_passed_rows or 0,
            qc_failed_rows=detail.qc_failed_rows or 0,
            progress_percent=percent,
            current_stage=stage,
            message=message,
        )

    def _publish(self, run: _Run, task: ImportTask, stage: str, message: str):
        """Refresh the task snapshot after a state transition."""
        task.progress_percent = max(float(task.progress_percent or 0), run.tracker.percent)
        info = self._task_info(task, stage, message)
        snapshot = run.tracker.update(**{k: v for k, v in vars(info).items()
                                         if k not in ('task_id', 'from_cache', 'updated_at')})
        self._safe_store(self.store.save_task_progress, snapshot)
        self.progress_callback(stage, snapshot.progress_percent, message)
        logger.info(f"Task {task.id} {stage} ({snapshot.progress_percent:.1f}%) - {message}")

    def _publish_detail(self, run: _Run, detail: ImportTaskDetail, stage: str, message: str):
        """Refresh the detail snapshot and the task percent derived from it."""
        info = self._detail_info(detail, run.tracker.detail_percent(detail.id), stage, message)
        self._safe_store(self.store.save_detail_progress, info)
        snapshot = run.tracker.update(message=f"{detail.file_type}: {message}")
        self._safe_store(self.store.save_task_progress, snapshot)
        self.progress_callback(stage, snapshot.progress_percent, f"{detail.file_type}: {message}")
