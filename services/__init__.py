"""
Service layer for the drug import system.

This package contains framework-agnostic business logic (classification,
extraction, row import, QC rules, progress and locking, orchestration) used
by the CLI, the API and the Celery workers.
"""

__version__ = "1.0.0"
