"""
FastAPI application for the drug import system.

This package contains the REST API used to upload drug report archives,
poll import progress and manage import tasks.
"""

__version__ = "1.0.0"
