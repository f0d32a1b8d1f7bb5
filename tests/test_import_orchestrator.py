"""
End-to-end tests for the import task state machine.

Each test runs real archives through extraction, parsing, batched import
and QC against the in-memory database.
"""

import dataclasses
import itertools
import re
from datetime import datetime, timedelta
from pathlib import Path

import pytest
from sqlalchemy import func, select, update
from sqlalchemy.exc import OperationalError

from backend.models.enums import (
    DetailStatus, ErrorLevel, ImportType, RetryType, StageStatus, TableType, TaskStatus
)
from backend.models.import_task import ImportTask, ImportTaskDetail, QcRule
from backend.models.schema import DrugCatalog, HospitalInfo
from services.default_rules import DEFAULT_RULES, seed_default_rules
from services.errors import (
    ProgressStoreUnavailableError, RetryLimitExceededError, RetryNotSupportedError,
    RetryTypeUnsupportedError, TaskLockedError, TaskNotFoundError, TaskStatusInvalidError,
    UnsupportedFileTypeError
)
from services.import_orchestrator import CANCEL_REASON, ImportOrchestrator, derive_task_status
from services.progress_store import ProgressBackend, TaskProgressStore
from services.table_catalog import fields_for

from conftest import build_report_files, build_report_zip, build_zip, sample_rows, write_workbook

D = DetailStatus


def _count(session, model, task_id):
    return session.execute(select(func.count(model.id)).where(model.task_id == task_id)).scalar()


def _catalog_file(tmp_path, count=100, bad_rows=()):
    rows = sample_rows(TableType.DRUG_CATALOG, count)
    for index in bad_rows:
        rows[index]['conversion_factor'] = 50000
    return write_workbook(tmp_path / '药品目录.xlsx', TableType.DRUG_CATALOG, rows)


def _blank_hospital_codes(tmp_path, count=100):
    rows = sample_rows(TableType.DRUG_CATALOG, count)
    for index in range(0, count, 10):
        rows[index]['hospital_code'] = ''
    return write_workbook(tmp_path / '药品目录.xlsx', TableType.DRUG_CATALOG, rows)


def _change_before_lock(monkeypatch, session, locks, model, row_id, **values):
    """Another worker writes ``values`` just before the lock is taken."""
    acquire = locks.acquire

    def write_then_acquire(task_id, actor_id):
        session.execute(update(model).where(model.id == row_id).values(**values),
                        execution_options={'synchronize_session': False})
        session.commit()
        return acquire(task_id, actor_id)

    monkeypatch.setattr(locks, 'acquire', write_then_acquire)


class UnavailableBackend(ProgressBackend):
    """Backend whose every call fails, as when Redis is down."""

    def _down(self, *args, **kwargs):
        raise ProgressStoreUnavailableError('Redis unavailable: Connection refused')

    ping = get = set = set_if_absent = delete = delete_if_equals = expire_if_equals = incr = _down


class _Crash(BaseException):
    """Simulates the worker process dying mid-run."""


class TestDeriveTaskStatus:
    """Test the completion rule."""

    @pytest.mark.parametrize('statuses, expected', [
        ([D.SUCCESS, D.SUCCESS], TaskStatus.COMPLETED),
        ([D.SUCCESS, D.FAILED], TaskStatus.PARTIAL_SUCCESS),
        ([D.FAILED, D.FAILED], TaskStatus.FAILED),
        ([D.FAILED], TaskStatus.FAILED),
        ([D.SUCCESS], TaskStatus.COMPLETED),
        ([], TaskStatus.FAILED),
        ([D.SUCCESS, D.IMPORTING], TaskStatus.IMPORTING),
        ([D.FAILED, D.QC_CHECKING], TaskStatus.IMPORTING),
    ])
    def test_detail_outcomes(self, statuses, expected):
        assert derive_task_status(statuses) == expected

    def test_extract_failure_wins(self):
        assert derive_task_status([D.SUCCESS], extract_failed=True) == TaskStatus.FAILED

    def test_running_keeps_current_status(self):
        assert derive_task_status([D.PARSING], current=TaskStatus.QC_CHECKING) == TaskStatus.QC_CHECKING

    @pytest.mark.parametrize('statuses', list(itertools.product([D.SUCCESS, D.FAILED], repeat=3)))
    def test_every_terminal_combination(self, statuses):
        status = derive_task_status(list(statuses))
        if all(s == D.SUCCESS for s in statuses):
            assert status == TaskStatus.COMPLETED
        elif all(s == D.FAILED for s in statuses):
            assert status == TaskStatus.FAILED
        else:
            assert status == TaskStatus.PARTIAL_SUCCESS


class TestCreateTask:

    def test_archive_task(self, orchestrator, report_zip):
        task = orchestrator.create_task(report_zip, 'report.zip', actor_id='alice')
        assert task.task_status == TaskStatus.PENDING
        assert task.import_type == ImportType.ARCHIVE
        assert re.match(r'^DRUG_\d{8}_000001$', task.task_no)
        assert task.task_name == 'report'
        assert task.created_by == 'alice'
        assert len(task.file_hash) == 64
        assert orchestrator.get_task_progress(task.id).current_stage == 'PENDING'

    def test_task_numbers_increase(self, orchestrator, report_zip):
        first = orchestrator.create_task(report_zip, 'report.zip')
        second = orchestrator.create_task(report_zip, 'report.zip')
        assert int(second.task_no[-6:]) == int(first.task_no[-6:]) + 1

    def test_single_file_task(self, orchestrator, tmp_path):
        path = _catalog_file(tmp_path, count=3)
        task = orchestrator.create_task(path, '药品目录.xlsx')
        assert task.import_type == ImportType.SINGLE_FILE

    def test_unsupported_upload(self, orchestrator, tmp_path):
        path = tmp_path / 'report.rar'
        path.write_bytes(b'Rar!')
        with pytest.raises(UnsupportedFileTypeError):
            orchestrator.create_task(str(path), 'report.rar')

    def test_unknown_task(self, orchestrator):
        with pytest.raises(TaskNotFoundError):
            orchestrator.start_task(999, 'alice')


class TestStartTask:
    """Test full runs."""

    def test_all_tables_complete(self, orchestrator, session, report_zip, locks):
        """A clean archive with the default rules completes with no findings."""
        seed_default_rules(session)
        percents = []
        orchestrator.progress_callback = lambda stage, percent, message: percents.append(percent)

        task = orchestrator.create_task(report_zip, 'report.zip', actor_id='alice')
        orchestrator.start_task(task.id, 'alice')

        assert task.task_status == TaskStatus.COMPLETED
        assert task.extract_status == StageStatus.SUCCESS
        assert task.import_status == StageStatus.SUCCESS
        assert task.qc_status == StageStatus.SUCCESS
        assert float(task.progress_percent) == 100.0
        assert task.total_files == 5
        assert task.success_files == 5
        assert task.total_records == 81
        assert task.success_records == 81
        assert task.failed_records == 0
        assert task.error_message is None
        assert [d.detail_status for d in task.details] == [DetailStatus.SUCCESS] * 5
        assert all(d.import_batch_no.startswith(f"BATCH_{task.id}_") for d in task.details)
        assert orchestrator.list_findings(task.id) == []
        assert _count(session, DrugCatalog, task.id) == 20
        assert not locks.is_locked(task.id)

        # Progress only ever moves forward
        assert percents == sorted(percents)
        assert percents[-1] == 100.0

    def test_progress_snapshot_and_database_fallback(self, orchestrator, report_zip, clock):
        task = orchestrator.create_task(report_zip, 'report.zip')
        orchestrator.start_task(task.id, 'alice')

        cached = orchestrator.get_task_progress(task.id)
        assert cached.from_cache
        assert cached.status == TaskStatus.COMPLETED
        assert cached.progress_percent == 100.0

        clock.advance(61)
        rebuilt = orchestrator.get_task_progress(task.id)
        assert not rebuilt.from_cache
        assert rebuilt.status == TaskStatus.COMPLETED
        assert rebuilt.progress_percent == 100.0
        assert rebuilt.success_records == 81

        detail = orchestrator.get_detail_progress(task.id, 'DRUG_CATALOG')
        assert not detail.from_cache
        assert detail.success_rows == 20

    def test_missing_catalog_fails_without_details(self, orchestrator, tmp_path):
        archive = build_report_zip(tmp_path, tables=[TableType.DRUG_INBOUND, TableType.DRUG_USAGE])
        task = orchestrator.create_task(archive, 'report.zip')
        orchestrator.start_task(task.id, 'alice')

        assert task.task_status == TaskStatus.FAILED
        assert task.extract_status == StageStatus.FAILED
        assert task.details == []
        assert task.error_detail['code'] == 1_003_001_002
        assert task.error_detail['details']['missing'] == ['DRUG_CATALOG']
        assert '药品目录' in task.error_message

    def test_corrupted_upload_fails(self, orchestrator, tmp_path):
        path = tmp_path / 'report.zip'
        path.write_bytes(b'PK\x03\x04 broken')
        task = orchestrator.create_task(str(path), 'report.zip')
        orchestrator.start_task(task.id, 'alice')
        assert task.task_status == TaskStatus.FAILED
        assert task.error_detail['error'] == 'ArchiveCorruptedError'

    def test_partial_success(self, orchestrator, tmp_path):
        """One broken file fails its detail only."""
        paths = build_report_files(tmp_path / 'src', tables=[
            TableType.HOSPITAL_INFO, TableType.DRUG_CATALOG, TableType.DRUG_INBOUND])
        headers = [spec.header for spec in fields_for(TableType.DRUG_INBOUND) if spec.attr != 'inbound_amount']
        write_workbook(paths[TableType.DRUG_INBOUND], TableType.DRUG_INBOUND,
                       sample_rows(TableType.DRUG_INBOUND, 5), headers=headers)
        archive = build_zip(tmp_path / 'report.zip', {Path(p).name: p for p in paths.values()})

        task = orchestrator.create_task(archive, 'report.zip')
        orchestrator.start_task(task.id, 'alice')

        assert task.task_status == TaskStatus.PARTIAL_SUCCESS
        statuses = {d.file_type: d.detail_status for d in task.details}
        assert statuses == {'HOSPITAL_INFO': D.SUCCESS, 'DRUG_CATALOG': D.SUCCESS, 'DRUG_INBOUND': D.FAILED}
        inbound = task.details[2]
        assert inbound.parse_status == StageStatus.FAILED
        assert '入库总金额（元）' in inbound.error_message
        failed = task.error_detail['failed_details']
        assert [f['file_type'] for f in failed] == ['DRUG_INBOUND']
        assert failed[0]['retryable']
        assert 'DRUG_INBOUND' in task.error_message

    def test_single_file_unclassified(self, orchestrator, tmp_path):
        path = write_workbook(tmp_path / 'misc.xlsx', TableType.DRUG_CATALOG, [], headers=['序号', '备注'])
        task = orchestrator.create_task(path, 'misc.xlsx')
        orchestrator.start_task(task.id, 'alice')
        assert task.task_status == TaskStatus.FAILED
        assert task.error_detail['error'] == 'UnsupportedFileTypeError'

    def test_start_twice_refused(self, orchestrator, report_zip):
        task = orchestrator.create_task(report_zip, 'report.zip')
        orchestrator.start_task(task.id, 'alice')
        with pytest.raises(TaskStatusInvalidError):
            orchestrator.start_task(task.id, 'alice')

    def test_locked_by_other_actor(self, orchestrator, report_zip, locks):
        task = orchestrator.create_task(report_zip, 'report.zip')
        locks.acquire(task.id, 'bob')
        with pytest.raises(TaskLockedError):
            orchestrator.start_task(task.id, 'alice')
        assert task.task_status == TaskStatus.PENDING

    def test_start_refused_while_same_actor_holds_lock(self, orchestrator, report_zip, locks):
        task = orchestrator.create_task(report_zip, 'report.zip')
        locks.acquire(task.id, 'alice')
        with pytest.raises(TaskLockedError):
            orchestrator.start_task(task.id, 'alice')
        assert task.task_status == TaskStatus.PENDING
        assert task.details == []
        assert locks.holder(task.id) == 'alice'

    def test_same_actor_cannot_resume_a_running_task(self, orchestrator, session, report_zip):
        """A second run by the actor already running the task is refused."""
        refused = []

        def resume_mid_run(stage, percent, message):
            if message == 'DRUG_CATALOG: Import finished':
                try:
                    orchestrator.resume_task(task.id, 'alice')
                except TaskLockedError as e:
                    refused.append(e)

        orchestrator.progress_callback = resume_mid_run
        task = orchestrator.create_task(report_zip, 'report.zip')
        orchestrator.start_task(task.id, 'alice')

        assert len(refused) == 1
        assert refused[0].details['holder'] == 'alice'
        assert task.task_status == TaskStatus.COMPLETED
        assert _count(session, DrugCatalog, task.id) == 20

    def test_status_rechecked_after_locking(self, orchestrator, session, locks, report_zip, monkeypatch):
        """A task another worker finished before the lock was taken is not run again."""
        task = orchestrator.create_task(report_zip, 'report.zip')
        _change_before_lock(monkeypatch, session, locks, ImportTask, task.id,
                            status=int(TaskStatus.COMPLETED))

        with pytest.raises(TaskStatusInvalidError):
            orchestrator.start_task(task.id, 'alice')
        assert task.task_status == TaskStatus.COMPLETED
        assert task.details == []
        assert not locks.is_locked(task.id)

    def test_non_finite_amount_rejects_only_its_row(self, orchestrator, tmp_path):
        inbound = sample_rows(TableType.DRUG_INBOUND, 20)
        inbound[3]['inbound_amount'] = 'NaN'
        archive = build_report_zip(tmp_path, overrides={TableType.DRUG_INBOUND: inbound})
        task = orchestrator.create_task(archive, 'report.zip')
        orchestrator.start_task(task.id, 'alice')

        assert task.task_status == TaskStatus.COMPLETED
        assert all(d.detail_status == D.SUCCESS for d in task.details)
        detail = {d.file_type: d for d in task.details}['DRUG_INBOUND']
        assert detail.success_rows == 19
        assert detail.failed_rows == 1
        assert detail.error_rows_detail[0]['row'] == 5
        assert 'not a finite number' in detail.error_rows_detail[0]['errors'][0]

    def test_runs_without_progress_store(self, session, locks, storage, report_zip):
        """With the cache down, tasks still run and progress is read from the database."""
        store = TaskProgressStore(UnavailableBackend())
        orchestrator = ImportOrchestrator(session, store, locks, storage=storage, batch_size=50)
        task = orchestrator.create_task(report_zip, 'report.zip')
        assert task.task_no == f"DRUG_{datetime.now():%Y%m%d}_000001"

        orchestrator.start_task(task.id, 'alice')
        assert task.task_status == TaskStatus.COMPLETED
        info = orchestrator.get_task_progress(task.id)
        assert not info.from_cache
        assert info.progress_percent == 100.0


class TestQualityControl:
    """Test how rule levels decide detail outcomes."""

    def _add_rule(self, session, level):
        session.add(QcRule(rule_code='CF_MAX', rule_name='Conversion factor cap', rule_type=1,
                           rule_category='FIELD', table_type=int(TableType.DRUG_CATALOG),
                           field_name='conversion_factor', rule_expression='conversion_factor > 1000',
                           error_message='Row {row_number}: conversion factor {value} too large',
                           error_level=int(level), priority=1, enabled=True))
        session.commit()

    def test_warnings_keep_detail_successful(self, orchestrator, session, tmp_path):
        self._add_rule(session, ErrorLevel.WARNING)
        path = _catalog_file(tmp_path, count=100, bad_rows=range(0, 100, 10))
        task = orchestrator.create_task(path, '药品目录.xlsx')
        orchestrator.start_task(task.id, 'alice')

        assert task.task_status == TaskStatus.COMPLETED
        detail = task.details[0]
        assert detail.detail_status == DetailStatus.SUCCESS
        assert detail.success_rows == 100
        assert detail.qc_failed_rows == 0
        findings = orchestrator.list_findings(task.id)
        assert len(findings) == 10
        assert findings[0]['row_number'] == 2
        assert findings[0]['message'] == 'Row 2: conversion factor 50000 too large'

    def test_errors_fail_detail(self, orchestrator, session, tmp_path):
        self._add_rule(session, ErrorLevel.ERROR)
        path = _catalog_file(tmp_path, count=100, bad_rows=range(0, 100, 10))
        task = orchestrator.create_task(path, '药品目录.xlsx')
        orchestrator.start_task(task.id, 'alice')

        assert task.task_status == TaskStatus.FAILED
        detail = task.details[0]
        assert detail.detail_status == DetailStatus.FAILED
        assert detail.qc_status == StageStatus.FAILED
        # Rows are stored; QC marks them, it does not drop them
        assert detail.success_rows == 100
        assert detail.qc_failed_rows == 10
        assert detail.qc_passed_rows == 90
        assert len(orchestrator.list_findings(task.id, level=ErrorLevel.ERROR)) == 10

    def test_required_field_warning_rule(self, orchestrator, session, tmp_path):
        """Rows missing a required field are rejected; a warning rule does not fail the detail."""
        warning = dataclasses.replace(
            next(r for r in DEFAULT_RULES if r.rule_code == 'PRE_QC_002'), error_level=ErrorLevel.WARNING)
        seed_default_rules(session, [warning])
        path = _blank_hospital_codes(tmp_path)
        task = orchestrator.create_task(path, '药品目录.xlsx')
        orchestrator.start_task(task.id, 'alice')

        assert task.task_status == TaskStatus.COMPLETED
        detail = task.details[0]
        assert detail.detail_status == DetailStatus.SUCCESS
        assert detail.total_rows == 100
        assert detail.success_rows == 90
        assert detail.failed_rows == 10
        assert detail.qc_failed_rows == 0
        assert _count(session, DrugCatalog, task.id) == 90
        findings = orchestrator.list_findings(task.id, level=ErrorLevel.WARNING)
        assert [f['row_number'] for f in findings] == list(range(2, 102, 10))

    def test_required_field_error_rule(self, orchestrator, session, tmp_path):
        seed_default_rules(session)
        path = _blank_hospital_codes(tmp_path)
        task = orchestrator.create_task(path, '药品目录.xlsx')
        orchestrator.start_task(task.id, 'alice')

        assert task.task_status == TaskStatus.FAILED
        detail = task.details[0]
        assert detail.detail_status == DetailStatus.FAILED
        assert detail.success_rows == 90
        assert detail.failed_rows == 10
        assert detail.qc_failed_rows == 10
        assert detail.qc_passed_rows == 90
        assert 'Quality control errors found' in detail.error_message

    def test_snapshots_never_overcount(self, orchestrator, session, store, tmp_path, monkeypatch):
        """Every published detail snapshot keeps success + failed within total."""
        snapshots = []
        save = store.save_detail_progress

        def record(info):
            snapshots.append((info.success_rows, info.failed_rows, info.total_rows))
            return save(info)

        monkeypatch.setattr(store, 'save_detail_progress', record)
        original = session.bulk_insert_mappings
        calls = {'n': 0}

        def flaky_insert(model, mappings):
            calls['n'] += 1
            if calls['n'] == 3:
                raise OperationalError('INSERT', {}, Exception('database is locked'))
            return original(model, mappings)

        monkeypatch.setattr(session, 'bulk_insert_mappings', flaky_insert)
        path = _blank_hospital_codes(tmp_path)
        task = orchestrator.create_task(path, '药品目录.xlsx')
        orchestrator.start_task(task.id, 'alice')
        assert task.task_status == TaskStatus.FAILED

        monkeypatch.setattr(session, 'bulk_insert_mappings', original)
        orchestrator.retry_task(task.id, 'alice')

        assert len(snapshots) > 20
        assert all(success + failed <= total for success, failed, total in snapshots)
        detail = task.details[0]
        assert detail.success_rows == 90
        assert detail.failed_rows == 10

    def test_broken_rule_reported_not_fatal(self, orchestrator, session, tmp_path):
        session.add(QcRule(rule_code='BROKEN', rule_type=1, rule_category='FIELD',
                           rule_expression='conversion_factor >', error_level=1, priority=1, enabled=True))
        session.commit()
        path = _catalog_file(tmp_path, count=5)
        task = orchestrator.create_task(path, '药品目录.xlsx')
        orchestrator.start_task(task.id, 'alice')

        assert task.task_status == TaskStatus.COMPLETED
        assert task.error_detail['rule_errors'][0]['rule_code'] == 'BROKEN'

    def test_orphan_drugs_flagged_after_import(self, orchestrator, session, tmp_path):
        """Post-import rules see the other tables of the same task."""
        seed_default_rules(session)
        usage_rows = sample_rows(TableType.DRUG_USAGE, 5)
        usage_rows[4]['hos_drug_id'] = 'D99999'
        archive = build_report_zip(tmp_path, row_count=5,
                                   tables=[TableType.DRUG_CATALOG, TableType.DRUG_USAGE],
                                   overrides={TableType.DRUG_USAGE: usage_rows})
        task = orchestrator.create_task(archive, 'report.zip')
        orchestrator.start_task(task.id, 'alice')

        assert task.task_status == TaskStatus.COMPLETED
        findings = orchestrator.list_findings(task.id)
        assert [(f['rule_code'], f['row_number']) for f in findings] == [('POST_QC_003', 6)]


class TestCancel:

    def test_cancel_pending_task(self, orchestrator, report_zip, locks, store):
        task = orchestrator.create_task(report_zip, 'report.zip')
        orchestrator.cancel_task(task.id, 'alice')
        assert task.task_status == TaskStatus.FAILED
        assert CANCEL_REASON in task.error_message
        assert task.error_detail['cancelled'] is True
        assert not locks.is_locked(task.id)
        assert not store.is_cancel_requested(task.id)

    def test_cancel_mid_run_keeps_committed_rows(self, orchestrator, session, store, report_zip):
        """Cancellation stops at the next detail boundary; imported batches stay."""
        def cancel_after_hospital(stage, percent, message):
            if message == 'HOSPITAL_INFO: Import finished':
                store.request_cancel(task.id)

        orchestrator.progress_callback = cancel_after_hospital
        task = orchestrator.create_task(report_zip, 'report.zip')
        orchestrator.start_task(task.id, 'alice')

        assert task.task_status == TaskStatus.FAILED
        assert task.error_message.startswith(CANCEL_REASON)
        assert all(d.detail_status == DetailStatus.FAILED for d in task.details)
        assert all(d.error_message == CANCEL_REASON for d in task.details)
        assert _count(session, HospitalInfo, task.id) == 1
        assert _count(session, DrugCatalog, task.id) == 0
        assert not store.is_cancel_requested(task.id)

    def test_cancel_locked_by_other_actor(self, orchestrator, report_zip, locks):
        task = orchestrator.create_task(report_zip, 'report.zip')
        locks.acquire(task.id, 'bob')
        with pytest.raises(TaskLockedError):
            orchestrator.cancel_task(task.id, 'alice')
        assert task.task_status == TaskStatus.PENDING

    def test_cancel_finished_task_refused(self, orchestrator, report_zip):
        task = orchestrator.create_task(report_zip, 'report.zip')
        orchestrator.start_task(task.id, 'alice')
        with pytest.raises(TaskStatusInvalidError):
            orchestrator.cancel_task(task.id, 'alice')

    def test_cancel_rechecks_status_after_locking(self, orchestrator, session, locks, store,
                                                  report_zip, monkeypatch):
        """A task that finished before the lock was taken keeps its outcome."""
        task = orchestrator.create_task(report_zip, 'report.zip')
        _change_before_lock(monkeypatch, session, locks, ImportTask, task.id,
                            status=int(TaskStatus.COMPLETED))

        with pytest.raises(TaskStatusInvalidError):
            orchestrator.cancel_task(task.id, 'alice')
        assert task.task_status == TaskStatus.COMPLETED
        assert task.error_message is None
        assert not store.is_cancel_requested(task.id)
        assert not locks.is_locked(task.id)


class TestRetry:

    def test_fix_and_retry_failed_detail(self, orchestrator, session, tmp_path):
        paths = build_report_files(tmp_path / 'src', tables=[TableType.DRUG_CATALOG, TableType.DRUG_INBOUND])
        headers = [spec.header for spec in fields_for(TableType.DRUG_INBOUND) if spec.attr != 'ypid']
        write_workbook(paths[TableType.DRUG_INBOUND], TableType.DRUG_INBOUND,
                       sample_rows(TableType.DRUG_INBOUND, 20), headers=headers)
        archive = build_zip(tmp_path / 'report.zip', {Path(p).name: p for p in paths.values()})
        task = orchestrator.create_task(archive, 'report.zip')
        orchestrator.start_task(task.id, 'alice')
        assert task.task_status == TaskStatus.PARTIAL_SUCCESS

        catalog, inbound = task.details
        write_workbook(inbound.file_path, TableType.DRUG_INBOUND, sample_rows(TableType.DRUG_INBOUND, 20))
        assert orchestrator.plan_retry(task.id) == [inbound]

        orchestrator.retry_task(task.id, 'alice')

        assert task.task_status == TaskStatus.COMPLETED
        assert inbound.detail_status == DetailStatus.SUCCESS
        assert inbound.retry_count == 1
        assert inbound.success_rows == 20
        assert inbound.failed_rows == 0
        assert inbound.import_batch_no.endswith('_1')
        assert catalog.retry_count == 0
        assert task.error_message is None
        assert _count(session, DrugCatalog, task.id) == 20

    def test_retry_limit(self, orchestrator, tmp_path):
        headers = [spec.header for spec in fields_for(TableType.DRUG_CATALOG)][:-1]
        path = write_workbook(tmp_path / '药品目录.xlsx', TableType.DRUG_CATALOG,
                              sample_rows(TableType.DRUG_CATALOG, 3), headers=headers)
        task = orchestrator.create_task(path, '药品目录.xlsx')
        orchestrator.start_task(task.id, 'alice')
        assert task.task_status == TaskStatus.FAILED

        for attempt in range(1, 4):
            orchestrator.retry_task(task.id, 'alice')
            assert task.task_status == TaskStatus.FAILED
            assert task.details[0].retry_count == attempt

        assert task.error_detail['failed_details'][0]['retryable'] is False
        with pytest.raises(RetryLimitExceededError):
            orchestrator.retry_task(task.id, 'alice')
        assert task.details[0].retry_count == 3

    def test_retry_refused_while_same_actor_holds_lock(self, orchestrator, locks, tmp_path):
        headers = [spec.header for spec in fields_for(TableType.DRUG_CATALOG)][:-1]
        path = write_workbook(tmp_path / '药品目录.xlsx', TableType.DRUG_CATALOG,
                              sample_rows(TableType.DRUG_CATALOG, 3), headers=headers)
        task = orchestrator.create_task(path, '药品目录.xlsx')
        orchestrator.start_task(task.id, 'alice')

        locks.acquire(task.id, 'alice')
        with pytest.raises(TaskLockedError):
            orchestrator.retry_task(task.id, 'alice')
        assert task.details[0].retry_count == 0
        assert locks.holder(task.id) == 'alice'

    def test_retry_replanned_after_locking(self, orchestrator, session, locks, tmp_path, monkeypatch):
        """Retries used up by another worker before the lock was taken are not exceeded."""
        headers = [spec.header for spec in fields_for(TableType.DRUG_CATALOG)][:-1]
        path = write_workbook(tmp_path / '药品目录.xlsx', TableType.DRUG_CATALOG,
                              sample_rows(TableType.DRUG_CATALOG, 3), headers=headers)
        task = orchestrator.create_task(path, '药品目录.xlsx')
        orchestrator.start_task(task.id, 'alice')
        detail = task.details[0]

        _change_before_lock(monkeypatch, session, locks, ImportTaskDetail, detail.id,
                            retry_count=detail.max_retry_count)
        with pytest.raises(RetryLimitExceededError):
            orchestrator.retry_task(task.id, 'alice')
        assert detail.retry_count == detail.max_retry_count
        assert not locks.is_locked(task.id)

    def test_retry_resumes_after_persisted_rows(self, orchestrator, session, tmp_path, monkeypatch):
        """Rows committed before a storage failure are not inserted twice."""
        path = _catalog_file(tmp_path, count=20)
        task = orchestrator.create_task(path, '药品目录.xlsx')

        original = session.bulk_insert_mappings
        calls = {'n': 0}

        def flaky_insert(model, mappings):
            calls['n'] += 1
            if calls['n'] == 2:
                raise OperationalError('INSERT', {}, Exception('database is locked'))
            return original(model, mappings)

        monkeypatch.setattr(session, 'bulk_insert_mappings', flaky_insert)
        orchestrator.start_task(task.id, 'alice')
        detail = task.details[0]
        assert task.task_status == TaskStatus.FAILED
        assert detail.import_status == StageStatus.FAILED
        assert detail.success_rows == 13
        assert detail.failed_rows == 7
        assert 'rolled back' in detail.error_message

        monkeypatch.setattr(session, 'bulk_insert_mappings', original)
        orchestrator.retry_task(task.id, 'alice')
        assert task.task_status == TaskStatus.COMPLETED
        assert detail.success_rows == 20
        assert detail.failed_rows == 0
        assert _count(session, DrugCatalog, task.id) == 20

    def test_retry_rules(self, orchestrator, report_zip):
        task = orchestrator.create_task(report_zip, 'report.zip')
        with pytest.raises(RetryNotSupportedError):
            orchestrator.retry_task(task.id, 'alice')

        orchestrator.start_task(task.id, 'alice')
        with pytest.raises(RetryNotSupportedError):
            orchestrator.retry_task(task.id, 'alice')

    def test_retry_type_validation(self, orchestrator, tmp_path):
        headers = [spec.header for spec in fields_for(TableType.DRUG_CATALOG)][:-1]
        path = write_workbook(tmp_path / '药品目录.xlsx', TableType.DRUG_CATALOG, [], headers=headers)
        task = orchestrator.create_task(path, '药品目录.xlsx')
        orchestrator.start_task(task.id, 'alice')

        with pytest.raises(RetryTypeUnsupportedError):
            orchestrator.retry_task(task.id, 'alice', retry_type='SOMETIMES')
        with pytest.raises(RetryTypeUnsupportedError):
            orchestrator.retry_task(task.id, 'alice', retry_type=RetryType.FILE_TYPE)
        with pytest.raises(TaskNotFoundError):
            orchestrator.retry_task(task.id, 'alice', retry_type=RetryType.FILE_TYPE,
                                    table_type=TableType.DRUG_USAGE)
        assert orchestrator.plan_retry(task.id, RetryType.FILE_TYPE, 'DRUG_CATALOG') == task.details


class TestResume:

    def test_resume_after_crash(self, orchestrator, session, report_zip, locks):
        """A run that died after the catalog tier finishes without duplicating rows."""
        def crash(stage, percent, message):
            if message == 'DRUG_CATALOG: Import finished':
                raise _Crash()

        orchestrator.progress_callback = crash
        task = orchestrator.create_task(report_zip, 'report.zip')
        with pytest.raises(_Crash):
            orchestrator.start_task(task.id, 'alice')
        assert task.task_status == TaskStatus.IMPORTING
        assert not locks.is_locked(task.id)

        orchestrator.progress_callback = lambda *args: None
        orchestrator.resume_task(task.id, 'alice')

        assert task.task_status == TaskStatus.COMPLETED
        assert _count(session, DrugCatalog, task.id) == 20
        assert _count(session, HospitalInfo, task.id) == 1
        assert task.success_records == 81

    def test_resume_interrupted_extraction(self, orchestrator, session, report_zip):
        task = orchestrator.create_task(report_zip, 'report.zip')
        task.status = int(TaskStatus.EXTRACTING)
        task.extract_status = int(StageStatus.RUNNING)
        session.commit()

        orchestrator.resume_task(task.id, 'alice')
        assert task.task_status == TaskStatus.COMPLETED
        assert len(task.details) == 5

    def test_resume_pending_starts(self, orchestrator, report_zip):
        task = orchestrator.create_task(report_zip, 'report.zip')
        orchestrator.resume_task(task.id, 'alice')
        assert task.task_status == TaskStatus.COMPLETED

    def test_resume_finished_refused(self, orchestrator, report_zip):
        task = orchestrator.create_task(report_zip, 'report.zip')
        orchestrator.start_task(task.id, 'alice')
        with pytest.raises(TaskStatusInvalidError):
            orchestrator.resume_task(task.id, 'alice')


class TestCleanup:

    def test_cleanup_removes_files_keeps_rows(self, orchestrator, session, storage, report_zip):
        stored, file_hash, _ = storage.store_upload(report_zip, 'report.zip')
        task = orchestrator.create_task(stored, 'report.zip', file_hash=file_hash)
        orchestrator.start_task(task.id, 'alice')
        work_dir = Path(storage.task_work_dir(task.task_no))
        assert work_dir.is_dir()

        assert orchestrator.cleanup_finished_tasks(datetime(2000, 1, 1)) == \
            {'tasks': 0, 'work_dirs': 0, 'uploads': 0}

        stats = orchestrator.cleanup_finished_tasks(datetime.now() + timedelta(minutes=1))
        assert stats == {'tasks': 1, 'work_dirs': 1, 'uploads': 1}
        assert not work_dir.exists()
        assert not Path(stored).exists()
        assert task.file_path is None
        assert all(d.file_path is None for d in task.details)
        assert task.task_status == TaskStatus.COMPLETED
        assert _count(session, DrugCatalog, task.id) == 20

        # Nothing left to clean on a second pass
        assert orchestrator.cleanup_finished_tasks(datetime.now() + timedelta(minutes=1))['tasks'] == 0

    def test_cleanup_skips_unfinished(self, orchestrator, report_zip):
        task = orchestrator.create_task(report_zip, 'report.zip')
        stats = orchestrator.cleanup_finished_tasks(datetime.now() + timedelta(days=1))
        assert stats['tasks'] == 0
        assert Path(task.file_path).exists()
