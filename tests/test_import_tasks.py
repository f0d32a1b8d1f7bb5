"""
Tests for the Celery import tasks, executed eagerly with ``apply``.
"""

import pytest

import tasks.import_tasks as import_tasks
from backend.models.enums import TaskStatus
from services.errors import RetryNotSupportedError
from services.import_orchestrator import ImportOrchestrator


@pytest.fixture
def worker(monkeypatch, session_factory, store, locks, storage):
    """Point the tasks at the test database and progress backend."""
    monkeypatch.setattr(import_tasks, 'get_db_session', session_factory)

    def build(session, progress_callback=None):
        return ImportOrchestrator(session, store, locks, storage=storage, batch_size=7, max_workers=1,
                                  progress_callback=progress_callback)
    monkeypatch.setattr(import_tasks, 'build_orchestrator', build)
    return build


class TestImportTasks:

    def test_run_import_task(self, worker, session_factory, report_zip):
        with session_factory() as session:
            task_id = worker(session).create_task(report_zip, 'report.zip', actor_id='alice').id

        summary = import_tasks.run_import_task.apply(args=[task_id, 'alice']).get()
        assert summary['task_id'] == task_id
        assert summary['status'] == TaskStatus.COMPLETED
        assert summary['progress_percent'] == 100.0
        assert summary['failed_records'] == 0

    def test_locked_task_is_skipped(self, worker, session_factory, locks, report_zip):
        with session_factory() as session:
            task_id = worker(session).create_task(report_zip, 'report.zip').id
        locks.acquire(task_id, 'bob')

        summary = import_tasks.run_import_task.apply(args=[task_id, 'alice']).get()
        assert summary['skipped'] is True
        assert summary['error']['details']['holder'] == 'bob'

        with session_factory() as session:
            assert worker(session).get_task(task_id).task_status == TaskStatus.PENDING

    def test_retry_import_task(self, worker, session_factory, report_zip):
        with session_factory() as session:
            task_id = worker(session).create_task(report_zip, 'report.zip').id
        import_tasks.run_import_task.apply(args=[task_id, 'alice']).get()

        result = import_tasks.retry_import_task.apply(args=[task_id, 'alice', 'FILE_TYPE', 'DRUG_INBOUND'])
        with pytest.raises(RetryNotSupportedError):
            result.get()
