"""
Import-related Pydantic schemas.

This module contains schemas for import task creation, task and detail
views, progress snapshots, QC findings and retry requests.
"""

from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field

from backend.models.enums import RetryType


class ImportStartResponse(BaseModel):
    """Response when an import task is created and queued."""

    task_id: int = Field(..., description="Import task id")
    task_no: str = Field(..., description="Task number (DRUG_YYYYMMDD_NNNNNN)")
    message: str = Field(default="Import task started", description="Status message")
    status_url: str = Field(..., description="URL to check task status")
    progress_url: str = Field(..., description="URL to poll progress")

    class Config:
        json_schema_extra = {
            "example": {
                "task_id": 42,
                "task_no": "DRUG_20251015_000042",
                "message": "Import task started",
                "status_url": "/api/imports/42",
                "progress_url": "/api/imports/42/progress"
            }
        }


class TaskDetailResponse(BaseModel):
    """Per-table detail of a task."""

    id: int
    file_type: str
    file_name: str
    target_table: str
    table_type: int
    status: int
    parse_status: int
    import_status: int
    qc_status: int
    total_rows: int
    valid_rows: int
    success_rows: int
    failed_rows: int
    qc_passed_rows: int
    qc_failed_rows: int
    progress_percent: float
    import_batch_no: Optional[str] = None
    retry_count: int
    max_retry_count: int
    error_message: Optional[str] = None
    start_time: Optional[str] = None
    end_time: Optional[str] = None


class TaskResponse(BaseModel):
    """Full task view with its details."""

    id: int
    task_no: str
    task_name: str
    import_type: int
    file_name: str
    file_size: Optional[int] = None
    status: int
    extract_status: int
    import_status: int
    qc_status: int
    total_files: int
    success_files: int
    failed_files: int
    total_records: int
    success_records: int
    failed_records: int
    progress_percent: float
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    error_message: Optional[str] = None
    error_detail: Optional[Dict[str, Any]] = None
    extracted_files: Optional[Dict[str, Any]] = None
    created_by: Optional[str] = None
    details: List[TaskDetailResponse] = Field(default_factory=list)


class TaskProgressResponse(BaseModel):
    """Progress snapshot; ``from_cache`` is False when rebuilt from the database."""

    task_id: int
    task_no: str
    status: int
    extract_status: int
    import_status: int
    qc_status: int
    progress_percent: float = Field(..., ge=0, le=100)
    current_stage: str
    message: str
    total_files: int
    success_files: int
    failed_files: int
    total_records: int
    success_records: int
    failed_records: int
    from_cache: bool
    updated_at: Optional[str] = None

    class Config:
        json_schema_extra = {
            "example": {
                "task_id": 42,
                "task_no": "DRUG_20251015_000042",
                "status": 2,
                "extract_status": 2,
                "import_status": 1,
                "qc_status": 0,
                "progress_percent": 37.5,
                "current_stage": "IMPORTING",
                "message": "DRUG_CATALOG: 1500/4000 rows processed",
                "total_files": 5,
                "success_files": 0,
                "failed_files": 0,
                "total_records": 0,
                "success_records": 0,
                "failed_records": 0,
                "from_cache": True,
                "updated_at": "2025-10-15T12:00:30"
            }
        }


class FindingResponse(BaseModel):
    """A QC rule violation."""

    rule_code: str
    level: int = Field(..., description="1 error, 2 warning")
    message: str
    row_number: Optional[int] = None
    field_name: Optional[str] = None
    table_type: Optional[int] = None
    rule_type: int = Field(..., description="1 pre-import, 2 post-import")


class FindingListResponse(BaseModel):
    task_id: int
    total: int
    items: List[FindingResponse]


class RetryRequest(BaseModel):
    """Retry scope."""

    retry_type: RetryType = Field(RetryType.FAILED, description="ALL, FAILED or FILE_TYPE")
    table_type: Optional[str] = Field(
        None, description="Table type for FILE_TYPE retries (code or name, e.g. 2 or DRUG_CATALOG)")

    class Config:
        json_schema_extra = {
            "example": {"retry_type": "FILE_TYPE", "table_type": "DRUG_INBOUND"}
        }
