"""
Error types raised by the import pipeline.

Every error carries a numeric ``code`` from the drug module catalogue
(``1_003_xxx_xxx``), an ``ErrorKind`` that tells the orchestrator how far
the failure reaches, and a ``retryable`` flag for callers.

- CLASSIFICATION errors fail the whole task before any detail exists.
- STRUCTURAL errors fail one detail; siblings continue.
- DATA errors are recorded as findings or rejected rows.
- OPERATIONAL errors (lock contention, retry limit, store outage) are
  reported to the caller and never change task state.
"""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorKind(str, Enum):
    CLASSIFICATION = 'CLASSIFICATION'
    STRUCTURAL = 'STRUCTURAL'
    DATA = 'DATA'
    OPERATIONAL = 'OPERATIONAL'


class DrugImportError(Exception):
    """Base class for every pipeline error."""

    code = 1_003_000_000
    kind = ErrorKind.OPERATIONAL
    retryable = False
    default_message = 'Drug import failed'

    def __init__(self, message: Optional[str] = None, **details):
        self.message = message or self.default_message
        self.details = details
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Structured form stored in ``error_detail`` and returned by the API."""
        data = {
            'code': self.code,
            'error': type(self).__name__,
            'kind': self.kind.value,
            'retryable': self.retryable,
            'message': self.message,
        }
        if self.details:
            data['details'] = self.details
        return data


# Task errors (1_003_000_xxx)

class TaskNotFoundError(DrugImportError):
    code = 1_003_000_001
    default_message = 'Import task not found'


class TaskStatusInvalidError(DrugImportError):
    code = 1_003_000_002
    default_message = 'Task status does not allow this operation'


class RetryLimitExceededError(DrugImportError):
    code = 1_003_000_004
    default_message = 'Retry limit exceeded'


# Archive errors (1_003_001_xxx)

class ArchiveError(DrugImportError):
    """Raised while validating or unpacking an uploaded archive."""
    kind = ErrorKind.CLASSIFICATION


class UnsupportedArchiveFormatError(ArchiveError):
    code = 1_003_001_000
    default_message = 'Archive format not supported, only .zip and .tar(.gz) are accepted'


class ArchiveExtractError(ArchiveError):
    code = 1_003_001_001
    default_message = 'Archive extraction failed'


class MissingMandatoryFileError(ArchiveError):
    code = 1_003_001_002
    default_message = 'Archive is missing a mandatory spreadsheet'


class ArchiveTooLargeError(ArchiveError):
    code = 1_003_001_003
    default_message = 'Archive exceeds the size limit'


class ArchivePasswordProtectedError(ArchiveError):
    code = 1_003_001_004
    default_message = 'Archive is password protected'


class ArchiveCorruptedError(ArchiveError):
    code = 1_003_001_005
    default_message = 'Archive is corrupted'


class NestedArchiveError(ArchiveError):
    code = 1_003_001_006
    default_message = 'Nested archives are not supported'


class EmptyArchiveError(ArchiveError):
    code = 1_003_001_007
    default_message = 'Archive is empty'


# Import errors (1_003_002_xxx)

class FileParseError(DrugImportError):
    code = 1_003_002_003
    kind = ErrorKind.STRUCTURAL
    default_message = 'Spreadsheet could not be parsed'


class MissingRequiredColumnError(DrugImportError):
    code = 1_003_002_005
    kind = ErrorKind.STRUCTURAL
    default_message = 'Required columns are missing'


class BatchStorageError(DrugImportError):
    code = 1_003_002_009
    kind = ErrorKind.STRUCTURAL
    retryable = True
    default_message = 'Import batch rolled back'


class RetryNotSupportedError(DrugImportError):
    code = 1_003_002_010
    default_message = 'Task status does not support retry'


class TaskLockedError(DrugImportError):
    code = 1_003_002_011
    retryable = True
    default_message = 'Task is being operated on by another user'


class RetryTypeUnsupportedError(DrugImportError):
    code = 1_003_002_012
    default_message = 'Unsupported retry type'


# QC errors (1_003_003_xxx)

class RuleExpressionError(DrugImportError):
    code = 1_003_003_006
    kind = ErrorKind.DATA
    default_message = 'QC rule expression is invalid'


# File errors (1_003_006_xxx)

class UnsupportedFileTypeError(DrugImportError):
    code = 1_003_006_001
    kind = ErrorKind.CLASSIFICATION
    default_message = 'File type not supported'


# Infrastructure

class ProgressStoreUnavailableError(DrugImportError):
    code = 1_003_008_000
    retryable = True
    default_message = 'Progress store unavailable'
