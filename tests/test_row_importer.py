"""
Tests for spreadsheet parsing and batched row import.
"""

from datetime import datetime
from decimal import Decimal

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from backend.models.enums import TableType
from backend.models.schema import DrugCatalog, DrugInbound, HospitalInfo
from services.errors import FileParseError, MissingRequiredColumnError
from services.row_importer import RowImporter, make_batch_no
from services.table_catalog import fields_for

from conftest import sample_row, sample_rows, write_csv, write_workbook


def _stored(session, model):
    return session.execute(select(func.count(model.id))).scalar()


class TestParsing:
    """Test header checks and row conversion."""

    def test_iter_rows_converts_types(self, session, tmp_path):
        path = write_workbook(tmp_path / '药品目录.xlsx', TableType.DRUG_CATALOG,
                              sample_rows(TableType.DRUG_CATALOG, 2))
        rows = list(RowImporter(session).iter_rows(path, TableType.DRUG_CATALOG))

        assert [r.row_number for r in rows] == [2, 3]
        first = rows[0]
        assert first.is_valid
        assert first.values['report_date'] == '20250131'
        assert first.values['province_code'] == '110000'
        assert first.values['conversion_factor'] == Decimal('24')
        assert first.values['hos_drug_id'] == 'D00001'

    def test_row_errors_are_reported_not_raised(self, session, tmp_path):
        """Bad cells mark the row invalid with a reason per field."""
        bad = sample_row(TableType.DRUG_INBOUND, 1)
        bad.update(report_date='2025-01-31', inbound_amount=Decimal('-5'), hospital_code=None)
        path = write_workbook(tmp_path / '入库情况.xlsx', TableType.DRUG_INBOUND, [bad])
        row = next(RowImporter(session).iter_rows(path, TableType.DRUG_INBOUND))

        assert not row.is_valid
        assert row.errors[0] == 'Missing required fields: 医疗机构代码'
        assert any(e.startswith('数据上报日期: date must be yyyyMMdd') for e in row.errors)
        assert any(e.startswith('入库总金额（元）: must be greater than 0') for e in row.errors)
        # Invalid cells are not reported again as missing
        assert '数据上报日期' not in row.errors[0]

    def test_invalid_calendar_date(self, session, tmp_path):
        bad = sample_row(TableType.HOSPITAL_INFO, 1)
        bad['report_date'] = '20250230'
        path = write_workbook(tmp_path / '机构基本情况.xlsx', TableType.HOSPITAL_INFO, [bad])
        row = next(RowImporter(session).iter_rows(path, TableType.HOSPITAL_INFO))
        assert row.errors == ["数据上报日期: invalid calendar date: '20250230'"]

    def test_fractional_bed_count_rejected(self, session, tmp_path):
        bad = sample_row(TableType.HOSPITAL_INFO, 1)
        bad['bed_count'] = 12.5
        path = write_workbook(tmp_path / '机构基本情况.xlsx', TableType.HOSPITAL_INFO, [bad])
        row = next(RowImporter(session).iter_rows(path, TableType.HOSPITAL_INFO))
        assert row.errors == ['实有床位数: must be an integer']

    @pytest.mark.parametrize('cell', ['NaN', 'Infinity', '-inf', 'sNaN'])
    def test_non_finite_amount_rejected(self, session, tmp_path, cell):
        """Special decimal values are row errors, never import failures."""
        bad = sample_row(TableType.DRUG_INBOUND, 1)
        bad['inbound_amount'] = cell
        path = write_workbook(tmp_path / '入库情况.xlsx', TableType.DRUG_INBOUND, [bad])
        row = next(RowImporter(session).iter_rows(path, TableType.DRUG_INBOUND))
        assert row.errors == [f"入库总金额（元）: not a finite number: {cell!r}"]

    def test_blank_rows_skipped(self, session, tmp_path):
        path = tmp_path / '药品目录.csv'
        rows = sample_rows(TableType.DRUG_CATALOG, 2)
        write_csv(path, TableType.DRUG_CATALOG, rows)
        with open(path, 'a', encoding='utf-8') as f:
            f.write(',,,,,,,,,,,,,,\n')
        importer = RowImporter(session)
        assert importer.count_rows(str(path), TableType.DRUG_CATALOG) == 2

    def test_missing_required_column(self, session, tmp_path):
        headers = [spec.header for spec in fields_for(TableType.DRUG_CATALOG) if spec.attr != 'ypid']
        path = write_workbook(tmp_path / '药品目录.xlsx', TableType.DRUG_CATALOG, [], headers=headers)
        with pytest.raises(MissingRequiredColumnError) as exc:
            RowImporter(session).check_header(path, TableType.DRUG_CATALOG)
        assert exc.value.details['missing'] == ['国家药品编码（YPID）']

    def test_empty_file_has_no_header(self, session, tmp_path):
        path = tmp_path / '药品目录.csv'
        path.write_text('', encoding='utf-8')
        with pytest.raises(FileParseError):
            RowImporter(session).check_header(str(path), TableType.DRUG_CATALOG)

    def test_unreadable_workbook(self, session, tmp_path):
        path = tmp_path / '药品目录.xlsx'
        path.write_bytes(b'garbage')
        with pytest.raises(FileParseError):
            RowImporter(session).count_rows(str(path), TableType.DRUG_CATALOG)


class TestImportFile:
    """Test batched inserts."""

    def test_batches_committed(self, session, tmp_path):
        path = write_workbook(tmp_path / '药品目录.xlsx', TableType.DRUG_CATALOG,
                              sample_rows(TableType.DRUG_CATALOG, 20))
        calls = []
        result = RowImporter(session, batch_size=7).import_file(
            path, TableType.DRUG_CATALOG, task_id=1, detail_id=1, batch_no='BATCH_1',
            on_batch=lambda r: calls.append(r.success_rows))

        assert result.total_rows == 20
        assert result.success_rows == 20
        assert result.failed_rows == 0
        assert not result.storage_failed
        assert calls == [7, 14, 20]
        assert _stored(session, DrugCatalog) == 20
        stored = session.execute(select(DrugCatalog).order_by(DrugCatalog.row_number)).scalars().all()
        assert stored[0].row_number == 2
        assert stored[-1].row_number == 21
        assert {r.import_batch_no for r in stored} == {'BATCH_1'}

    def test_invalid_rows_rejected(self, session, tmp_path):
        rows = sample_rows(TableType.DRUG_INBOUND, 10)
        rows[2]['hospital_code'] = None
        rows[5]['inbound_pack_qty'] = 'ten'
        path = write_workbook(tmp_path / '入库情况.xlsx', TableType.DRUG_INBOUND, rows)

        result = RowImporter(session, batch_size=4).import_file(
            path, TableType.DRUG_INBOUND, task_id=1, detail_id=2, batch_no='BATCH_2')

        assert result.success_rows == 8
        assert result.failed_rows == 2
        assert result.valid_rows == 8
        assert [r['row'] for r in result.rejected] == [4, 7]
        assert _stored(session, DrugInbound) == 8

    def test_nan_amount_counts_as_failed_row(self, session, tmp_path):
        rows = sample_rows(TableType.DRUG_INBOUND, 5)
        rows[1]['inbound_amount'] = 'NaN'
        path = write_workbook(tmp_path / '入库情况.xlsx', TableType.DRUG_INBOUND, rows)

        result = RowImporter(session, batch_size=2).import_file(
            path, TableType.DRUG_INBOUND, task_id=1, detail_id=2, batch_no='BATCH_3')

        assert result.success_rows == 4
        assert result.failed_rows == 1
        assert [r['row'] for r in result.rejected] == [3]
        assert _stored(session, DrugInbound) == 4

    def test_batch_failure_rolls_back_only_that_batch(self, session, tmp_path, monkeypatch):
        """A storage error fails its batch; earlier batches stay committed."""
        path = write_workbook(tmp_path / '药品目录.xlsx', TableType.DRUG_CATALOG,
                              sample_rows(TableType.DRUG_CATALOG, 20))
        original = session.bulk_insert_mappings
        calls = {'n': 0}

        def flaky_insert(model, mappings):
            calls['n'] += 1
            if calls['n'] == 2:
                raise OperationalError('INSERT INTO drug_catalog', {}, Exception('disk I/O error'))
            return original(model, mappings)

        monkeypatch.setattr(session, 'bulk_insert_mappings', flaky_insert)
        result = RowImporter(session, batch_size=7).import_file(
            path, TableType.DRUG_CATALOG, task_id=1, detail_id=1, batch_no='BATCH_1')

        assert result.storage_failed
        assert result.success_rows == 13
        assert result.failed_rows == 7
        assert result.failed_batches[0]['first_row'] == 9
        assert result.failed_batches[0]['last_row'] == 15
        assert result.processed_rows == 20
        assert _stored(session, DrugCatalog) == 13
        assert all('Batch rolled back' in r['errors'][0] for r in result.rejected)

    def test_skip_persisted_rows(self, session, tmp_path):
        """Rows already stored by an earlier attempt are neither inserted nor counted."""
        path = write_workbook(tmp_path / '机构基本情况.xlsx', TableType.HOSPITAL_INFO,
                              [sample_row(TableType.HOSPITAL_INFO, i) for i in range(5)])
        importer = RowImporter(session, batch_size=2)
        importer.import_file(path, TableType.HOSPITAL_INFO, task_id=1, detail_id=9, batch_no='B0')
        session.execute(HospitalInfo.__table__.delete().where(HospitalInfo.row_number > 3))
        session.commit()

        skip = importer.persisted_row_numbers(TableType.HOSPITAL_INFO, 9)
        assert skip == {2, 3}
        result = importer.import_file(path, TableType.HOSPITAL_INFO, task_id=1, detail_id=9,
                                      batch_no='B1', skip_row_numbers=skip)
        assert result.skipped_rows == 2
        assert result.total_rows == 3
        assert result.success_rows == 3
        assert _stored(session, HospitalInfo) == 5

    def test_csv_import(self, session, tmp_path):
        path = write_csv(tmp_path / '使用情况.csv', TableType.DRUG_USAGE, sample_rows(TableType.DRUG_USAGE, 3))
        result = RowImporter(session).import_file(path, TableType.DRUG_USAGE, task_id=1, detail_id=1,
                                                  batch_no='B')
        assert result.success_rows == 3


class TestBatchNo:

    def test_make_batch_no(self):
        now = datetime(2025, 1, 31, 8, 30, 5)
        assert make_batch_no(12, TableType.DRUG_INBOUND, 2, now=now) == \
            'BATCH_12_DRUG_INBOUND_20250131083005_2'
