"""
Common Pydantic schemas used across the API.

This module contains shared schemas for errors, health checks and
other common response patterns.
"""

from typing import Any, Dict, Optional
from pydantic import BaseModel, Field
from datetime import datetime


class ErrorResponse(BaseModel):
    """Standard error response format."""

    error: str = Field(..., description="Error message")
    code: Optional[int] = Field(None, description="Drug import error code (1_003_xxx_xxx)")
    detail: Optional[Dict[str, Any]] = Field(None, description="Additional error details")
    timestamp: datetime = Field(default_factory=datetime.utcnow, description="Error timestamp")
    path: Optional[str] = Field(None, description="Request path that caused the error")

    class Config:
        json_schema_extra = {
            "example": {
                "error": "Task 12 is locked by another user",
                "code": 1003002011,
                "detail": {"code": 1003002011, "error": "TaskLockedError", "kind": "OPERATIONAL",
                           "retryable": True, "message": "Task 12 is locked by another user",
                           "details": {"task_id": 12, "holder": "7"}},
                "timestamp": "2025-10-15T12:00:00Z",
                "path": "/api/imports/12/retry"
            }
        }


class HealthCheckResponse(BaseModel):
    """Health check response."""

    status: str = Field(..., description="Service status")
    timestamp: datetime = Field(default_factory=datetime.utcnow, description="Health check timestamp")
    version: str = Field(..., description="API version")
    database: str = Field(..., description="Database connection status")
    progress_store: str = Field(..., description="Progress store connection status")
    celery: str = Field(..., description="Celery worker status")

    class Config:
        json_schema_extra = {
            "example": {
                "status": "healthy",
                "timestamp": "2025-10-15T12:00:00Z",
                "version": "1.0.0",
                "database": "connected",
                "progress_store": "connected",
                "celery": "active"
            }
        }
