"""
Row Importer - Framework-agnostic spreadsheet loading.

Parses a classified spreadsheet into typed rows and bulk-loads them into the
target drug table in batches. Each batch is its own transaction: a storage
failure rolls back that batch only, earlier batches stay committed, and the
rolled-back rows are counted as failed.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Iterator, List, Optional, Set

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from backend.models.enums import TableType
from backend.models.schema import model_for
from services import spreadsheet_reader
from services.errors import FileParseError, MissingRequiredColumnError
from services.table_catalog import FieldSpec, fields_for, map_headers, missing_required

logger = logging.getLogger(__name__)

# Default configuration (can be overridden)
DEFAULT_BATCH_SIZE = 1000
DEFAULT_MAX_REJECTED_DETAILS = 1000


def make_batch_no(task_id: int, table_type: TableType, attempt: int = 0,
                  now: Optional[datetime] = None) -> str:
    """BATCH_{task}_{TABLE}_{yyyyMMddHHmmss}_{attempt}"""
    stamp = (now or datetime.now()).strftime('%Y%m%d%H%M%S')
    return f"BATCH_{task_id}_{TableType(table_type).name}_{stamp}_{attempt}"


@dataclass
class ParsedRow:
    """One data row after header mapping and type conversion."""
    row_number: int
    values: Dict[str, Any]
    errors: List[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.errors


@dataclass
class ImportResult:
    """Counters for one import attempt of one file."""
    batch_no: str
    total_rows: int = 0
    valid_rows: int = 0
    success_rows: int = 0
    failed_rows: int = 0
    skipped_rows: int = 0
    rejected: List[Dict[str, Any]] = field(default_factory=list)
    failed_batches: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def storage_failed(self) -> bool:
        return bool(self.failed_batches)

    @property
    def processed_rows(self) -> int:
        return self.success_rows + self.failed_rows

    def to_dict(self) -> Dict[str, Any]:
        return {
            'batch_no': self.batch_no,
            'total_rows': self.total_rows,
            'valid_rows': self.valid_rows,
            'success_rows': self.success_rows,
            'failed_rows': self.failed_rows,
            'skipped_rows': self.skipped_rows,
            'failed_batches': self.failed_batches,
        }


class RowImporter:
    """
    Streams rows from a spreadsheet and inserts them in batches.

    Usage:
        importer = RowImporter(session, batch_size=500)
        result = importer.import_file(path, TableType.DRUG_CATALOG,
                                      task_id=1, detail_id=3, batch_no='BATCH_1_...')
    """

    def __init__(self, db_session: Session, batch_size: int = DEFAULT_BATCH_SIZE,
                 max_rejected_details: int = DEFAULT_MAX_REJECTED_DETAILS):
        """
        Initialize the importer.

        Args:
            db_session: SQLAlchemy session used for inserts (committed per batch)
            batch_size: Rows per insert transaction
            max_rejected_details: Cap on rejected-row reasons kept in the result
        """
        self.session = db_session
        self.batch_size = max(1, batch_size)
        self.max_rejected_details = max_rejected_details

    # ---------------------------------------------------------------- parsing

    def check_header(self, file_path: str, table_type: TableType) -> Dict[int, FieldSpec]:
        """
        Read and validate the header row.

        Raises:
            FileParseError: File cannot be read or has no header row
            MissingRequiredColumnError: A required column is absent
        """
        headers = spreadsheet_reader.read_header(file_path)
        if not headers:
            raise FileParseError('Spreadsheet has no header row')
        missing = missing_required(table_type, headers)
        if missing:
            raise MissingRequiredColumnError(
                f"Missing required columns: {', '.join(missing)}", missing=missing)
        return map_headers(table_type, headers)

    def iter_rows(self, file_path: str, table_type: TableType) -> Iterator[ParsedRow]:
        """
        Yield every data row with converted values and its validation errors.

        Required-field presence and per-field format are checked here; a row
        with errors is still yielded so QC rules can observe it.
        """
        table_type = TableType(table_type)
        specs = fields_for(table_type)
        with spreadsheet_reader.open_rows(file_path) as rows:
            header_seen = False
            mapping: Dict[int, FieldSpec] = {}
            for row_number, cells in rows:
                if not header_seen:
                    header_seen = True
                    mapping = map_headers(table_type, cells)
                    continue

                values = {spec.attr: None for spec in specs}
                errors = []
                invalid = set()
                for index, spec in mapping.items():
                    raw = cells[index] if index < len(cells) else None
                    try:
                        values[spec.attr] = spec.convert(raw)
                    except ValueError as e:
                        invalid.add(spec.attr)
                        errors.append(f"{spec.header}: {e}")
                missing = [spec.header for spec in specs
                           if spec.required and values[spec.attr] is None
                           and spec.attr not in invalid]
                if missing:
                    errors.insert(0, f"Missing required fields: {', '.join(missing)}")
                yield ParsedRow(row_number, values, errors)

    def count_rows(self, file_path: str, table_type: TableType) -> int:
        """Number of non-blank data rows (header excluded)."""
        count = 0
        with spreadsheet_reader.open_rows(file_path) as rows:
            for index, _ in enumerate(rows):
                if index > 0:
                    count += 1
        return count

    def persisted_row_numbers(self, table_type: TableType, detail_id: int) -> Set[int]:
        """Row numbers already stored for a detail by earlier attempts."""
        model = model_for(table_type)
        stmt = select(model.row_number).where(model.detail_id == detail_id)
        return set(self.session.execute(stmt).scalars())

    # -------------------------------------------------------------- importing

    def import_file(
        self,
        file_path: str,
        table_type: TableType,
        task_id: int,
        detail_id: int,
        batch_no: str,
        skip_row_numbers: Optional[Set[int]] = None,
        on_batch: Optional[Callable[[ImportResult], None]] = None,
    ) -> ImportResult:
        """
        Validate and insert every row of a file.

        Args:
            file_path: Spreadsheet on disk
            table_type: Target table
            task_id: Owning task id, stored on each row
            detail_id: Owning detail id, stored on each row
            batch_no: Batch number for this attempt
            skip_row_numbers: Rows already persisted (retry), neither inserted nor counted
            on_batch: Called with the running result after each committed or rolled-back batch

        Returns:
            ImportResult for this attempt

        Raises:
            FileParseError, MissingRequiredColumnError: The file cannot be imported at all
        """
        table_type = TableType(table_type)
        model = model_for(table_type)
        skip = skip_row_numbers or set()
        notify = on_batch or (lambda result: None)

        self.check_header(file_path, table_type)
        result = ImportResult(batch_no=batch_no)
        batch: List[Dict[str, Any]] = []

        logger.info(f"Importing {table_type.name} from {file_path} (batch {batch_no})")

        for row in self.iter_rows(file_path, table_type):
            if row.row_number in skip:
                result.skipped_rows += 1
                continue
            result.total_rows += 1
            if not row.is_valid:
                result.failed_rows += 1
                self._reject(result, row.row_number, row.errors)
                continue

            result.valid_rows += 1
            record = dict(row.values)
            record.update(task_id=task_id, detail_id=detail_id,
                          import_batch_no=batch_no, row_number=row.row_number)
            batch.append(record)

            if len(batch) >= self.batch_size:
                self._flush(model, batch, result)
                batch = []
                notify(result)

        if batch:
            self._flush(model, batch, result)
        notify(result)

        logger.info(
            f"Imported {table_type.name}: {result.success_rows} stored, "
            f"{result.failed_rows} failed, {result.skipped_rows} skipped"
        )
        return result

    def _flush(self, model, batch: List[Dict[str, Any]], result: ImportResult):
        first, last = batch[0]['row_number'], batch[-1]['row_number']
        try:
            self.session.bulk_insert_mappings(model, batch)
            self.session.commit()
            result.success_rows += len(batch)
            logger.debug(f"Committed rows {first}-{last} ({len(batch)} rows) into {model.__tablename__}")
        except SQLAlchemyError as e:
            self.session.rollback()
            result.failed_rows += len(batch)
            reason = f"Batch rolled back: {e.__class__.__name__}: {str(e).splitlines()[0]}"
            result.failed_batches.append({
                'first_row': first, 'last_row': last, 'rows': len(batch), 'error': reason,
            })
            logger.error(f"Rolled back rows {first}-{last} of {model.__tablename__}: {e}")
            for record in batch:
                self._reject(result, record['row_number'], [reason])

    def _reject(self, result: ImportResult, row_number: int, errors: List[str]):
        if len(result.rejected) < self.max_rejected_details:
            result.rejected.append({'row': row_number, 'errors': list(errors)})
