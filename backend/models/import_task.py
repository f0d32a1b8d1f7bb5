"""
Import task tracking models.

This module defines SQLAlchemy models for the import task, its per-table
details, the QC rule definitions and the QC findings produced by a run.
"""

from datetime import datetime
from sqlalchemy import (
    Boolean, Column, Integer, BigInteger, String, Text, Numeric, TIMESTAMP,
    ForeignKey, CheckConstraint, Index, UniqueConstraint, text
)
from sqlalchemy.orm import relationship

from backend.models.enums import (
    DetailStatus, ErrorLevel, StageStatus, TableType, TaskStatus
)
from backend.models.schema import Base, JSONType


def _iso(value):
    return value.isoformat() if value else None


class ImportTask(Base):
    """
    One uploaded archive (or single spreadsheet) moving through
    extract -> import -> QC.

    ``status`` is never set on its own: the orchestrator derives it from the
    sub-statuses and the detail outcomes.
    """

    __tablename__ = 'drug_import_task'
    __table_args__ = (
        CheckConstraint('status BETWEEN 0 AND 6', name='drug_import_task_status_check'),
        CheckConstraint('import_type IN (1, 2)', name='drug_import_task_import_type_check'),
        Index('idx_drug_import_task_status', 'status'),
        Index('idx_drug_import_task_created_at', 'created_at'),
        {'comment': 'Drug data batch import tasks'}
    )

    id = Column(Integer, primary_key=True, autoincrement=True, nullable=False)
    task_no = Column(String(64), nullable=False, unique=True, comment='DRUG_YYYYMMDD_NNNNNN')
    task_name = Column(String(255), nullable=False)
    import_type = Column(Integer, nullable=False, comment='1 single file, 2 archive')

    # Source file metadata
    file_name = Column(String(255), nullable=False, comment='Original upload name')
    file_path = Column(String(1024), nullable=True, comment='Stored upload path')
    file_size = Column(BigInteger, nullable=True)
    file_hash = Column(String(64), nullable=True)
    extracted_files = Column(JSONType, nullable=True, comment='Recognised and unmatched archive members')

    status = Column(Integer, nullable=False, default=int(TaskStatus.PENDING))
    extract_status = Column(Integer, nullable=False, default=int(StageStatus.NOT_STARTED))
    import_status = Column(Integer, nullable=False, default=int(StageStatus.NOT_STARTED))
    qc_status = Column(Integer, nullable=False, default=int(StageStatus.NOT_STARTED))

    total_files = Column(Integer, nullable=False, default=0)
    success_files = Column(Integer, nullable=False, default=0)
    failed_files = Column(Integer, nullable=False, default=0)
    total_records = Column(BigInteger, nullable=False, default=0)
    success_records = Column(BigInteger, nullable=False, default=0)
    failed_records = Column(BigInteger, nullable=False, default=0)
    progress_percent = Column(Numeric(5, 2), nullable=False, default=0)

    start_time = Column(TIMESTAMP, nullable=True)
    extract_end_time = Column(TIMESTAMP, nullable=True)
    import_end_time = Column(TIMESTAMP, nullable=True)
    qc_end_time = Column(TIMESTAMP, nullable=True)
    end_time = Column(TIMESTAMP, nullable=True)

    error_message = Column(Text, nullable=True)
    error_detail = Column(JSONType, nullable=True)

    session_id = Column(String(64), nullable=True, comment='Resume session key')
    created_by = Column(String(255), nullable=True)
    created_at = Column(TIMESTAMP, server_default=text('CURRENT_TIMESTAMP'), nullable=False)
    updated_at = Column(
        TIMESTAMP,
        server_default=text('CURRENT_TIMESTAMP'),
        nullable=False,
        default=datetime.utcnow,
        onupdate=datetime.utcnow
    )

    details = relationship(
        'ImportTaskDetail',
        back_populates='task',
        cascade='all, delete-orphan',
        order_by='ImportTaskDetail.table_type'
    )

    def __repr__(self):
        return f"<ImportTask(id={self.id}, task_no='{self.task_no}', status={self.status})>"

    @property
    def task_status(self) -> TaskStatus:
        return TaskStatus(self.status)

    def to_dict(self) -> dict:
        """Convert task to dictionary representation."""
        return {
            'id': self.id,
            'task_no': self.task_no,
            'task_name': self.task_name,
            'import_type': self.import_type,
            'file_name': self.file_name,
            'file_size': self.file_size,
            'status': self.status,
            'extract_status': self.extract_status,
            'import_status': self.import_status,
            'qc_status': self.qc_status,
            'total_files': self.total_files,
            'success_files': self.success_files,
            'failed_files': self.failed_files,
            'total_records': self.total_records,
            'success_records': self.success_records,
            'failed_records': self.failed_records,
            'progress_percent': float(self.progress_percent or 0),
            'start_time': _iso(self.start_time),
            'extract_end_time': _iso(self.extract_end_time),
            'import_end_time': _iso(self.import_end_time),
            'qc_end_time': _iso(self.qc_end_time),
            'end_time': _iso(self.end_time),
            'error_message': self.error_message,
            'error_detail': self.error_detail,
            'extracted_files': self.extracted_files,
            'created_by': self.created_by,
        }


class ImportTaskDetail(Base):
    """
    The per-table unit of work within a task.

    Invariant: ``success_rows + failed_rows <= total_rows``.
    """

    __tablename__ = 'drug_import_task_detail'
    __table_args__ = (
        UniqueConstraint('task_id', 'table_type', name='uq_drug_import_task_detail_task_table'),
        CheckConstraint('status BETWEEN 0 AND 5', name='drug_import_task_detail_status_check'),
        CheckConstraint('table_type BETWEEN 1 AND 5', name='drug_import_task_detail_table_type_check'),
        Index('idx_drug_import_task_detail_task_id', 'task_id'),
        {'comment': 'Per-table details of an import task'}
    )

    id = Column(Integer, primary_key=True, autoincrement=True, nullable=False)
    task_id = Column(Integer, ForeignKey('drug_import_task.id', ondelete='CASCADE'), nullable=False)
    task_no = Column(String(64), nullable=False)

    file_type = Column(String(32), nullable=False, comment='HOSPITAL_INFO, DRUG_CATALOG, ...')
    file_name = Column(String(255), nullable=False)
    file_path = Column(String(1024), nullable=True, comment='Extracted file location (kept for retry)')
    target_table = Column(String(64), nullable=False)
    table_type = Column(Integer, nullable=False)

    status = Column(Integer, nullable=False, default=int(DetailStatus.PENDING))
    parse_status = Column(Integer, nullable=False, default=int(StageStatus.NOT_STARTED))
    import_status = Column(Integer, nullable=False, default=int(StageStatus.NOT_STARTED))
    qc_status = Column(Integer, nullable=False, default=int(StageStatus.NOT_STARTED))

    total_rows = Column(BigInteger, nullable=False, default=0)
    valid_rows = Column(BigInteger, nullable=False, default=0)
    success_rows = Column(BigInteger, nullable=False, default=0)
    failed_rows = Column(BigInteger, nullable=False, default=0)
    qc_passed_rows = Column(BigInteger, nullable=False, default=0)
    qc_failed_rows = Column(BigInteger, nullable=False, default=0)
    progress_percent = Column(Numeric(5, 2), nullable=False, default=0)

    start_time = Column(TIMESTAMP, nullable=True)
    parse_end_time = Column(TIMESTAMP, nullable=True)
    import_end_time = Column(TIMESTAMP, nullable=True)
    qc_end_time = Column(TIMESTAMP, nullable=True)
    end_time = Column(TIMESTAMP, nullable=True)

    error_message = Column(Text, nullable=True)
    error_rows_detail = Column(JSONType, nullable=True, comment='Rejected rows: [{row, errors}]')

    import_batch_no = Column(String(128), nullable=True)
    retry_count = Column(Integer, nullable=False, default=0)
    max_retry_count = Column(Integer, nullable=False, default=3)

    created_at = Column(TIMESTAMP, server_default=text('CURRENT_TIMESTAMP'), nullable=False)
    updated_at = Column(
        TIMESTAMP,
        server_default=text('CURRENT_TIMESTAMP'),
        nullable=False,
        default=datetime.utcnow,
        onupdate=datetime.utcnow
    )

    task = relationship('ImportTask', back_populates='details')

    def __repr__(self):
        return (f"<ImportTaskDetail(id={self.id}, task_id={self.task_id}, "
                f"table={self.file_type}, status={self.status})>")

    @property
    def table(self) -> TableType:
        return TableType(self.table_type)

    @property
    def detail_status(self) -> DetailStatus:
        return DetailStatus(self.status)

    @property
    def processed_rows(self) -> int:
        return (self.success_rows or 0) + (self.failed_rows or 0)

    def to_dict(self) -> dict:
        """Convert detail to dictionary representation."""
        return {
            'id': self.id,
            'task_id': self.task_id,
            'task_no': self.task_no,
            'file_type': self.file_type,
            'file_name': self.file_name,
            'target_table': self.target_table,
            'table_type': self.table_type,
            'status': self.status,
            'parse_status': self.parse_status,
            'import_status': self.import_status,
            'qc_status': self.qc_status,
            'total_rows': self.total_rows,
            'valid_rows': self.valid_rows,
            'success_rows': self.success_rows,
            'failed_rows': self.failed_rows,
            'qc_passed_rows': self.qc_passed_rows,
            'qc_failed_rows': self.qc_failed_rows,
            'progress_percent': float(self.progress_percent or 0),
            'import_batch_no': self.import_batch_no,
            'retry_count': self.retry_count,
            'max_retry_count': self.max_retry_count,
            'error_message': self.error_message,
            'start_time': _iso(self.start_time),
            'end_time': _iso(self.end_time),
        }


class QcRule(Base):
    """A quality-control rule definition, managed by the administrative shell."""

    __tablename__ = 'drug_qc_rule'
    __table_args__ = (
        CheckConstraint('rule_type IN (1, 2)', name='drug_qc_rule_rule_type_check'),
        CheckConstraint("rule_category IN ('GLOBAL', 'FIELD', 'LOGIC')", name='drug_qc_rule_category_check'),
        CheckConstraint('error_level IN (1, 2)', name='drug_qc_rule_error_level_check'),
        Index('idx_drug_qc_rule_enabled_priority', 'enabled', 'priority'),
        {'comment': 'Quality-control rule definitions'}
    )

    id = Column(Integer, primary_key=True, autoincrement=True, nullable=False)
    rule_code = Column(String(64), nullable=False, unique=True, comment='e.g. PRE_QC_001')
    rule_name = Column(String(255), nullable=True)
    rule_type = Column(Integer, nullable=False, comment='1 pre-import, 2 post-import')
    rule_category = Column(String(16), nullable=False, comment='GLOBAL, FIELD or LOGIC')
    table_type = Column(Integer, nullable=True, comment='NULL applies to every table')
    field_name = Column(String(64), nullable=True)
    rule_expression = Column(Text, nullable=True)
    error_message = Column(Text, nullable=True, comment='Message template')
    error_level = Column(Integer, nullable=False, default=int(ErrorLevel.ERROR))
    threshold_value = Column(JSONType, nullable=True)
    priority = Column(Integer, nullable=False, default=100)
    enabled = Column(Boolean, nullable=False, default=True)
    description = Column(Text, nullable=True)
    created_at = Column(TIMESTAMP, server_default=text('CURRENT_TIMESTAMP'), nullable=False)

    def __repr__(self):
        return f"<QcRule(rule_code='{self.rule_code}', priority={self.priority}, enabled={self.enabled})>"


class QcFinding(Base):
    """A rule violation recorded for a task run."""

    __tablename__ = 'drug_qc_finding'
    __table_args__ = (
        Index('idx_drug_qc_finding_task_id', 'task_id'),
        Index('idx_drug_qc_finding_detail_id', 'detail_id'),
        {'comment': 'QC findings produced by import tasks'}
    )

    id = Column(Integer, primary_key=True, autoincrement=True, nullable=False)
    task_id = Column(Integer, ForeignKey('drug_import_task.id', ondelete='CASCADE'), nullable=False)
    detail_id = Column(Integer, ForeignKey('drug_import_task_detail.id', ondelete='CASCADE'), nullable=True)
    table_type = Column(Integer, nullable=True)
    rule_code = Column(String(64), nullable=False)
    rule_type = Column(Integer, nullable=False)
    error_level = Column(Integer, nullable=False)
    message = Column(Text, nullable=False)
    row_number = Column(Integer, nullable=True)
    field_name = Column(String(64), nullable=True)
    import_batch_no = Column(String(128), nullable=True)
    created_at = Column(TIMESTAMP, server_default=text('CURRENT_TIMESTAMP'), nullable=False)

    def to_dict(self) -> dict:
        return {
            'rule_code': self.rule_code,
            'level': self.error_level,
            'message': self.message,
            'row_number': self.row_number,
            'field_name': self.field_name,
            'table_type': self.table_type,
            'rule_type': self.rule_type,
        }
