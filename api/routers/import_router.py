"""
Import router - upload drug report archives and track import tasks.

This module provides endpoints for creating import tasks, polling their
progress, listing QC findings, and cancelling or retrying tasks. All work is
done by the orchestrator; long-running runs are queued on Celery.
"""

import logging
from dataclasses import asdict
from typing import Optional

from fastapi import APIRouter, UploadFile, File, Form, Depends, HTTPException, status, Query

from api.dependencies import (
    ImportQueue, get_actor_id, get_import_queue, get_orchestrator, get_storage,
    verify_file_extension, verify_file_size
)
from api.schemas.import_schema import (
    FindingListResponse, ImportStartResponse, RetryRequest, TaskProgressResponse, TaskResponse
)
from backend.models.enums import ErrorLevel, TableType
from backend.models.import_task import ImportTask
from services.import_orchestrator import ImportOrchestrator
from services.storage_service import StorageService

logger = logging.getLogger(__name__)

# Create router
router = APIRouter(prefix='/imports', tags=['imports'])


def _task_response(task: ImportTask) -> TaskResponse:
    data = task.to_dict()
    data['details'] = [d.to_dict() for d in task.details]
    return TaskResponse(**data)


def _parse_table_type(value: str) -> TableType:
    try:
        return TableType.from_value(value)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=f"Unknown table type: {value}"
        ) from None


@router.post('', response_model=ImportStartResponse, status_code=status.HTTP_202_ACCEPTED)
async def create_import(
    file: UploadFile = File(..., description="Report archive (.zip/.tar[.gz]) or a single spreadsheet"),
    task_name: Optional[str] = Form(None, max_length=255, description="Display name for the task"),
    actor_id: str = Depends(get_actor_id),
    orchestrator: ImportOrchestrator = Depends(get_orchestrator),
    storage: StorageService = Depends(get_storage),
    queue: ImportQueue = Depends(get_import_queue),
):
    """
    Upload a report and start an import task.

    **Workflow:**
    1. Validate the extension and store the upload
    2. Create a PENDING task
    3. Enqueue the run on the import queue
    4. Return the task id for polling

    **Returns:**
    - 202 Accepted with task id and polling URLs
    """
    logger.info(f"Upload request from {actor_id}: {file.filename}")
    verify_file_extension(file.filename)

    stored_path, file_hash, size = storage.store_upload(file.file, file.filename)
    try:
        verify_file_size(size)
    except HTTPException:
        storage.delete_file(stored_path)
        raise

    task = orchestrator.create_task(stored_path, file.filename, actor_id=actor_id,
                                    task_name=task_name, file_hash=file_hash)
    celery_id = queue.run(task.id, actor_id)
    logger.info(f"Queued import task {task.id} ({task.task_no}) as {celery_id}")

    return ImportStartResponse(
        task_id=task.id,
        task_no=task.task_no,
        message="Import task started",
        status_url=f"/api/imports/{task.id}",
        progress_url=f"/api/imports/{task.id}/progress",
    )


@router.get('/{task_id}', response_model=TaskResponse)
async def get_import(
    task_id: int,
    orchestrator: ImportOrchestrator = Depends(get_orchestrator),
):
    """Task with its per-table details."""
    return _task_response(orchestrator.get_task(task_id))


@router.get('/{task_id}/progress', response_model=TaskProgressResponse)
async def get_import_progress(
    task_id: int,
    orchestrator: ImportOrchestrator = Depends(get_orchestrator),
):
    """
    Current progress of a task.

    Served from the progress store while it holds a snapshot, otherwise
    rebuilt from the task row (``from_cache`` is false).
    """
    return TaskProgressResponse(**asdict(orchestrator.get_task_progress(task_id)))


@router.get('/{task_id}/details/{table_type}/progress')
async def get_detail_progress(
    task_id: int,
    table_type: str,
    orchestrator: ImportOrchestrator = Depends(get_orchestrator),
):
    """Progress of one table of a task (table type code or name)."""
    return asdict(orchestrator.get_detail_progress(task_id, _parse_table_type(table_type)))


@router.get('/{task_id}/findings', response_model=FindingListResponse)
async def list_findings(
    task_id: int,
    level: Optional[int] = Query(None, ge=1, le=2, description="1 errors only, 2 warnings only"),
    orchestrator: ImportOrchestrator = Depends(get_orchestrator),
):
    """QC findings recorded for a task."""
    items = orchestrator.list_findings(task_id, ErrorLevel(level) if level else None)
    return FindingListResponse(task_id=task_id, total=len(items), items=items)


@router.post('/{task_id}/cancel', response_model=TaskResponse)
async def cancel_import(
    task_id: int,
    actor_id: str = Depends(get_actor_id),
    orchestrator: ImportOrchestrator = Depends(get_orchestrator),
):
    """
    Cancel a task.

    A running task stops at its next table boundary; committed batches are
    kept.

    **Returns:**
    - 200 with the task
    - 404 if the task does not exist
    - 409 if the task is final or locked by another user
    """
    task = orchestrator.cancel_task(task_id, actor_id)
    logger.info(f"Task {task_id} cancel requested by {actor_id}")
    return _task_response(task)


@router.post('/{task_id}/retry', response_model=TaskResponse, status_code=status.HTTP_202_ACCEPTED)
async def retry_import(
    task_id: int,
    request: RetryRequest,
    actor_id: str = Depends(get_actor_id),
    orchestrator: ImportOrchestrator = Depends(get_orchestrator),
    queue: ImportQueue = Depends(get_import_queue),
):
    """
    Retry failed work of a FAILED or PARTIAL_SUCCESS task.

    The request is validated here (status, retry type, retry limit) and the
    retry itself runs on the import queue.
    """
    table_type = _parse_table_type(request.table_type) if request.table_type else None
    details = orchestrator.plan_retry(task_id, request.retry_type, table_type)
    celery_id = queue.retry(task_id, actor_id, request.retry_type.value,
                            table_type.name if table_type else None)
    logger.info(f"Queued retry of task {task_id} ({[d.file_type for d in details]}) as {celery_id}")
    return _task_response(orchestrator.get_task(task_id))


@router.post('/{task_id}/resume', response_model=TaskResponse, status_code=status.HTTP_202_ACCEPTED)
async def resume_import(
    task_id: int,
    actor_id: str = Depends(get_actor_id),
    orchestrator: ImportOrchestrator = Depends(get_orchestrator),
    queue: ImportQueue = Depends(get_import_queue),
):
    """Queue the continuation of an interrupted task."""
    task = orchestrator.get_task(task_id)
    if task.task_status.is_final():
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Task {task_id} is already {task.task_status.name}"
        )
    celery_id = queue.resume(task_id, actor_id)
    logger.info(f"Queued resume of task {task_id} as {celery_id}")
    return _task_response(task)
