"""
Streaming spreadsheet reader.

Yields rows from .xlsx/.xlsm workbooks (openpyxl read-only mode) and .csv
files one at a time, so large files are never loaded into memory at once.
"""

import csv
import logging
import zipfile
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator, List, Optional, Tuple

import openpyxl
from openpyxl.utils.exceptions import InvalidFileException

from services.errors import FileParseError

logger = logging.getLogger(__name__)

WORKBOOK_EXTENSIONS = ('.xlsx', '.xlsm')
CSV_EXTENSIONS = ('.csv',)
SUPPORTED_EXTENSIONS = WORKBOOK_EXTENSIONS + CSV_EXTENSIONS


def is_supported(file_name: str) -> bool:
    return Path(file_name).suffix.lower() in SUPPORTED_EXTENSIONS


def _is_blank(row) -> bool:
    return all(value is None or (isinstance(value, str) and not value.strip()) for value in row)


@contextmanager
def open_rows(file_path: str, sheet_name: Optional[str] = None) -> Iterator[Iterator[Tuple[int, List[Any]]]]:
    """
    Open a spreadsheet and yield an iterator of (row_number, values).

    Row numbers are 1-based and match what a user sees in Excel; fully blank
    rows are skipped. The first yielded row is the header row.

    Raises:
        FileParseError: The file cannot be opened or is not a spreadsheet
    """
    suffix = Path(file_path).suffix.lower()
    if suffix in CSV_EXTENSIONS:
        try:
            handle = open(file_path, newline='', encoding='utf-8-sig')
        except OSError as e:
            raise FileParseError(f"Cannot open {Path(file_path).name}: {e}") from e
        try:
            yield _csv_rows(handle, file_path)
        finally:
            handle.close()
        return

    if suffix not in WORKBOOK_EXTENSIONS:
        raise FileParseError(f"Unsupported spreadsheet format: {Path(file_path).name}")

    try:
        workbook = openpyxl.load_workbook(file_path, read_only=True, data_only=True)
    except (InvalidFileException, zipfile.BadZipFile, KeyError, OSError) as e:
        raise FileParseError(f"Cannot open workbook {Path(file_path).name}: {e}") from e
    try:
        sheet = workbook[sheet_name] if sheet_name else workbook.worksheets[0]
        yield _sheet_rows(sheet)
    finally:
        workbook.close()


def _sheet_rows(sheet) -> Iterator[Tuple[int, List[Any]]]:
    for row_number, row in enumerate(sheet.iter_rows(values_only=True), start=1):
        if row is None or _is_blank(row):
            continue
        yield row_number, list(row)


def _csv_rows(handle, file_path: str) -> Iterator[Tuple[int, List[Any]]]:
    try:
        for row_number, row in enumerate(csv.reader(handle), start=1):
            if not row or _is_blank(row):
                continue
            yield row_number, row
    except (csv.Error, UnicodeDecodeError) as e:
        raise FileParseError(f"Cannot read {Path(file_path).name}: {e}") from e


def read_header(file_path: str) -> List[Any]:
    """Return the first non-blank row of a spreadsheet (empty list if none)."""
    with open_rows(file_path) as rows:
        for _, values in rows:
            return values
    return []
