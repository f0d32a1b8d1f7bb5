"""
FastAPI application for the drug import system.

This module creates and configures the FastAPI application, registering
the import router, the error handlers and middleware.
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text

from api.config import settings
from api.dependencies import SessionLocal, engine, get_progress_backend
from api.routers import import_router
from api.schemas.common import ErrorResponse, HealthCheckResponse
from backend.models.schema import Base
from services.errors import (
    DrugImportError, ErrorKind, ProgressStoreUnavailableError, RetryLimitExceededError,
    RetryNotSupportedError, RetryTypeUnsupportedError, TaskLockedError, TaskNotFoundError,
    TaskStatusInvalidError
)

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL),
    format=settings.LOG_FORMAT,
    handlers=[
        logging.FileHandler(settings.LOG_FILE),
        logging.StreamHandler()
    ]
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Handles startup and shutdown events.
    """
    # Startup
    logger.info(f"Starting {settings.API_TITLE} v{settings.API_VERSION}")
    logger.info(f"Database: {settings.DATABASE_URL.split('@')[-1]}")  # Hide credentials
    logger.info(f"Progress backend: {settings.PROGRESS_BACKEND}")

    # Ensure database tables exist
    Base.metadata.create_all(bind=engine)
    logger.info("Database tables verified")

    yield

    # Shutdown
    get_progress_backend().close()
    logger.info("Shutting down application")


# Create FastAPI application
app = FastAPI(
    title=settings.API_TITLE,
    description=settings.API_DESCRIPTION,
    version=settings.API_VERSION,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json"
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=settings.CORS_ALLOW_CREDENTIALS,
    allow_methods=settings.CORS_ALLOW_METHODS,
    allow_headers=settings.CORS_ALLOW_HEADERS
)


# Exception handlers

def error_status(exc: DrugImportError) -> int:
    """HTTP status for a pipeline error."""
    if isinstance(exc, TaskNotFoundError):
        return status.HTTP_404_NOT_FOUND
    if isinstance(exc, (TaskLockedError, TaskStatusInvalidError, RetryNotSupportedError,
                        RetryLimitExceededError)):
        return status.HTTP_409_CONFLICT
    if isinstance(exc, ProgressStoreUnavailableError):
        return status.HTTP_503_SERVICE_UNAVAILABLE
    if isinstance(exc, RetryTypeUnsupportedError) or exc.kind in (
            ErrorKind.CLASSIFICATION, ErrorKind.STRUCTURAL, ErrorKind.DATA):
        return status.HTTP_422_UNPROCESSABLE_ENTITY
    return status.HTTP_400_BAD_REQUEST


@app.exception_handler(DrugImportError)
async def drug_import_error_handler(request: Request, exc: DrugImportError):
    """Map pipeline errors to HTTP responses."""
    code = error_status(exc)
    logger.warning(f"{request.method} {request.url.path} -> {code}: {exc.message}")
    return JSONResponse(
        status_code=code,
        content=ErrorResponse(
            error=exc.message,
            code=exc.code,
            detail=exc.to_dict(),
            path=str(request.url)
        ).model_dump(mode='json')
    )


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    """Handle uncaught exceptions."""
    logger.error(f"Unhandled exception: {exc}", exc_info=True)

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=ErrorResponse(
            error="Internal server error",
            detail={"message": str(exc)} if settings.DEBUG else None,
            path=str(request.url)
        ).model_dump(mode='json')
    )


# Register routers with API prefix
app.include_router(import_router.router, prefix=settings.API_PREFIX)


# Root endpoints

@app.get('/', include_in_schema=False)
async def root():
    """
    Root endpoint - redirect to docs.
    """
    return {
        'message': f'Welcome to {settings.API_TITLE}',
        'version': settings.API_VERSION,
        'docs': '/docs',
        'redoc': '/redoc',
        'openapi': '/openapi.json'
    }


@app.get('/health', response_model=HealthCheckResponse, tags=['health'])
async def health_check():
    """
    Health check endpoint.

    Checks connectivity to:
    - Database
    - Progress store (Redis or in-process)
    - Celery workers

    **Example:**
    ```bash
    curl http://localhost:8000/health
    ```
    """
    health_status = {
        'status': 'healthy',
        'timestamp': datetime.utcnow(),
        'version': settings.API_VERSION,
        'database': 'unknown',
        'progress_store': 'unknown',
        'celery': 'unknown'
    }

    # Check database
    try:
        with SessionLocal() as session:
            session.execute(text('SELECT 1'))
        health_status['database'] = 'connected'
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        health_status['database'] = 'disconnected'
        health_status['status'] = 'unhealthy'

    # Check progress store
    try:
        get_progress_backend().ping()
        health_status['progress_store'] = 'connected'
    except ProgressStoreUnavailableError as e:
        logger.error(f"Progress store health check failed: {e}")
        health_status['progress_store'] = 'disconnected'
        health_status['status'] = 'degraded'

    # Check Celery workers
    if settings.PROGRESS_BACKEND == 'memory':
        health_status['celery'] = 'not used'
    else:
        try:
            from tasks.celery_app import celery_app

            active_workers = celery_app.control.inspect(timeout=1.0).active()
            if active_workers:
                health_status['celery'] = f'active ({len(active_workers)} workers)'
            else:
                health_status['celery'] = 'no workers'
                health_status['status'] = 'degraded'
        except Exception as e:
            logger.error(f"Celery health check failed: {e}")
            health_status['celery'] = 'unknown'

    return HealthCheckResponse(**health_status)


@app.get('/api/ping', tags=['health'])
async def ping():
    """
    Simple ping endpoint for load balancers.

    **Returns:**
    ```json
    {"ping": "pong"}
    ```
    """
    return {'ping': 'pong'}


# Middleware for request logging

@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log all HTTP requests."""
    logger.info(f"{request.method} {request.url.path}")
    response = await call_next(request)
    logger.info(f"{request.method} {request.url.path} - {response.status_code}")
    return response


if __name__ == '__main__':
    import uvicorn

    uvicorn.run(
        'api.main:app',
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.RELOAD,
        log_level=settings.LOG_LEVEL.lower()
    )
