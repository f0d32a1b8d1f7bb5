"""
Pytest configuration and fixtures for drug import tests.

Tests run against an in-memory SQLite database and the in-process progress
backend, so neither PostgreSQL nor Redis is needed.
"""

import csv
import io
import os
import tarfile
import tempfile
import zipfile
from decimal import Decimal
from pathlib import Path

# Settings are read when api.config is imported; point them at test resources first
_TEST_WORK_DIR = tempfile.mkdtemp(prefix='drug-import-tests-')
os.environ.setdefault('DATABASE_URL', 'sqlite://')
os.environ.setdefault('PROGRESS_BACKEND', 'memory')
os.environ.setdefault('WORK_DIR', _TEST_WORK_DIR)
os.environ.setdefault('LOG_FILE', os.path.join(_TEST_WORK_DIR, 'api.log'))

import openpyxl
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from backend.models.enums import TableType
from backend.models.schema import Base
from services.import_orchestrator import ImportOrchestrator
from services.progress_store import MemoryBackend, TaskProgressStore
from services.storage_service import StorageService
from services.table_catalog import fields_for
from services.task_lock import TaskLockManager

# Report template file names, as hospitals upload them
REPORT_FILE_NAMES = {
    TableType.HOSPITAL_INFO: '机构基本情况.xlsx',
    TableType.DRUG_CATALOG: '药品目录.xlsx',
    TableType.DRUG_INBOUND: '入库情况.xlsx',
    TableType.DRUG_OUTBOUND: '出库情况.xlsx',
    TableType.DRUG_USAGE: '使用情况.xlsx',
}


class FakeClock:
    """Monotonic clock advanced by hand."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


# ---------------------------------------------------------------------------
# Report data builders
# ---------------------------------------------------------------------------

def sample_row(table_type: TableType, index: int) -> dict:
    """A valid row for a table, keyed by attribute name."""
    row = {
        'report_date': '20250131',
        'province_code': '110000',
        'org_code': 'ORG0001',
        'hospital_code': 'H110001',
    }
    drug = {'ypid': f'YP{index:06d}', 'hos_drug_id': f'D{index:05d}', 'product_name': f'药品{index}'}
    if table_type == TableType.HOSPITAL_INFO:
        row.update(org_name='北京市第一医院', annual_drug_income=Decimal('1250000.50'), bed_count=300)
    elif table_type == TableType.DRUG_CATALOG:
        row.update(drug, generic_name=f'通用名{index}', approval_no=f'国药准字H{index:08d}',
                   manufacturer='制药有限公司', dosage_unit='片', pack_unit='盒',
                   conversion_factor=Decimal('24'))
    elif table_type == TableType.DRUG_INBOUND:
        row.update(drug, inbound_amount=Decimal('480.00'), inbound_pack_qty=Decimal('10'),
                   inbound_dosage_qty=Decimal('240'))
    elif table_type == TableType.DRUG_OUTBOUND:
        row.update(drug, outbound_pack_qty=Decimal('8'), outbound_dosage_qty=Decimal('192'))
    else:
        row.update(drug, sales_amount=Decimal('360.00'), sales_pack_qty=Decimal('6'),
                   sales_dosage_qty=Decimal('144'))
    return row


def sample_rows(table_type: TableType, count: int) -> list:
    if table_type == TableType.HOSPITAL_INFO:
        return [sample_row(table_type, 1)]
    return [sample_row(table_type, i) for i in range(1, count + 1)]


def _cell(value):
    return float(value) if isinstance(value, Decimal) else value


def write_workbook(path, table_type: TableType, rows, headers=None) -> str:
    """Write rows (attribute dicts) under the template's Chinese headers."""
    specs = fields_for(table_type)
    headers = headers or [spec.header for spec in specs]
    workbook = openpyxl.Workbook()
    sheet = workbook.active
    sheet.title = table_type.label
    sheet.append(headers)
    for row in rows:
        sheet.append([_cell(row.get(spec.attr)) for spec in specs])
    workbook.save(path)
    return str(path)


def write_csv(path, table_type: TableType, rows) -> str:
    specs = fields_for(table_type)
    with open(path, 'w', newline='', encoding='utf-8-sig') as f:
        writer = csv.writer(f)
        writer.writerow([spec.header for spec in specs])
        for row in rows:
            writer.writerow(['' if row.get(spec.attr) is None else row.get(spec.attr) for spec in specs])
    return str(path)


def build_report_files(directory, row_count: int = 20, tables=None, overrides=None) -> dict:
    """
    Write one workbook per table into ``directory``.

    Args:
        overrides: table_type -> list of rows replacing the generated ones
    """
    directory = Path(directory)
    directory.mkdir(parents=True, exist_ok=True)
    overrides = overrides or {}
    paths = {}
    for table_type in tables or list(TableType):
        rows = overrides.get(table_type, sample_rows(table_type, row_count))
        paths[table_type] = write_workbook(directory / REPORT_FILE_NAMES[table_type], table_type, rows)
    return paths


def build_zip(path, files: dict) -> str:
    """Zip ``{member_name: file_path or bytes}`` with UTF-8 member names."""
    with zipfile.ZipFile(path, 'w', zipfile.ZIP_DEFLATED) as zf:
        for member, source in files.items():
            if isinstance(source, bytes):
                zf.writestr(member, source)
            else:
                zf.write(source, member)
    return str(path)


def build_tar(path, files: dict) -> str:
    with tarfile.open(path, 'w:gz') as tf:
        for member, source in files.items():
            if isinstance(source, bytes):
                info = tarfile.TarInfo(member)
                info.size = len(source)
                tf.addfile(info, io.BytesIO(source))
            else:
                tf.add(source, arcname=member)
    return str(path)


def build_report_zip(tmp_path, name: str = 'report.zip', **kwargs) -> str:
    paths = build_report_files(tmp_path / 'src', **kwargs)
    return build_zip(tmp_path / name, {Path(p).name: p for p in paths.values()})


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def engine():
    """In-memory database shared by every session of a test."""
    eng = create_engine('sqlite://', connect_args={'check_same_thread': False}, poolclass=StaticPool)
    Base.metadata.create_all(eng)
    yield eng
    Base.metadata.drop_all(eng)
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine)


@pytest.fixture
def session(session_factory):
    """Create a new database session for a test."""
    sess = session_factory()
    yield sess
    sess.close()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def backend(clock):
    return MemoryBackend(clock=clock)


@pytest.fixture
def store(backend):
    return TaskProgressStore(backend, progress_ttl=60, session_ttl=120).connect()


@pytest.fixture
def locks(backend):
    return TaskLockManager(backend, ttl=30)


@pytest.fixture
def storage(tmp_path):
    return StorageService(str(tmp_path / 'work'))


@pytest.fixture
def orchestrator(session, store, locks, storage):
    """Orchestrator importing details sequentially on the test session."""
    return ImportOrchestrator(session, store, locks, storage=storage, batch_size=7, max_workers=1)


@pytest.fixture
def report_zip(tmp_path):
    """Archive with all five report files, 20 rows per drug table."""
    return build_report_zip(tmp_path)
