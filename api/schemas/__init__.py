"""
Pydantic schemas for request/response validation.

This package contains all Pydantic models used for API request validation
and response serialization.
"""

from api.schemas.common import ErrorResponse, HealthCheckResponse
from api.schemas.import_schema import (
    FindingListResponse, FindingResponse, ImportStartResponse, RetryRequest,
    TaskDetailResponse, TaskProgressResponse, TaskResponse
)

__all__ = [
    # Common
    'ErrorResponse',
    'HealthCheckResponse',

    # Import
    'ImportStartResponse',
    'TaskResponse',
    'TaskDetailResponse',
    'TaskProgressResponse',
    'FindingResponse',
    'FindingListResponse',
    'RetryRequest',
]
