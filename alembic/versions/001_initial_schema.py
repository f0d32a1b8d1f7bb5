"""Initial schema for drug import system

Revision ID: 001_initial_schema
Revises:
Create Date: 2026-09-28

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = '001_initial_schema'
down_revision = None
branch_labels = None
depends_on = None

DATA_TABLES = ('drug_hospital_info', 'drug_catalog', 'drug_inbound', 'drug_outbound', 'drug_usage')


def _row_columns():
    """Bookkeeping and identification columns shared by the five data tables."""
    return [
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('task_id', sa.Integer(), nullable=False, comment='Owning import task'),
        sa.Column('detail_id', sa.Integer(), nullable=False, comment='Owning task detail'),
        sa.Column('import_batch_no', sa.String(length=128), nullable=False, comment='Import attempt batch number'),
        sa.Column('row_number', sa.Integer(), nullable=False, comment='Source spreadsheet row (1-based, header = 1)'),
        sa.Column('report_date', sa.String(length=8), nullable=True, comment='数据上报日期 (yyyyMMdd)'),
        sa.Column('province_code', sa.String(length=32), nullable=True, comment='省级行政区划代码'),
        sa.Column('org_code', sa.String(length=64), nullable=True, comment='组织机构代码'),
        sa.Column('hospital_code', sa.String(length=64), nullable=True, comment='医疗机构代码'),
        sa.Column('created_at', sa.TIMESTAMP(), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False),
    ]


def _row_constraints():
    return [
        sa.ForeignKeyConstraint(['task_id'], ['drug_import_task.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['detail_id'], ['drug_import_task_detail.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
    ]


def _amount():
    return sa.Numeric(precision=18, scale=4)


def upgrade() -> None:
    # Create import task table
    op.create_table(
        'drug_import_task',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('task_no', sa.String(length=64), nullable=False, comment='DRUG_YYYYMMDD_NNNNNN'),
        sa.Column('task_name', sa.String(length=255), nullable=False),
        sa.Column('import_type', sa.Integer(), nullable=False, comment='1 single file, 2 archive'),
        sa.Column('file_name', sa.String(length=255), nullable=False, comment='Original upload name'),
        sa.Column('file_path', sa.String(length=1024), nullable=True, comment='Stored upload path'),
        sa.Column('file_size', sa.BigInteger(), nullable=True),
        sa.Column('file_hash', sa.String(length=64), nullable=True),
        sa.Column('extracted_files', postgresql.JSONB(astext_type=sa.Text()), nullable=True,
                  comment='Recognised and unmatched archive members'),
        sa.Column('status', sa.Integer(), server_default='0', nullable=False),
        sa.Column('extract_status', sa.Integer(), server_default='0', nullable=False),
        sa.Column('import_status', sa.Integer(), server_default='0', nullable=False),
        sa.Column('qc_status', sa.Integer(), server_default='0', nullable=False),
        sa.Column('total_files', sa.Integer(), server_default='0', nullable=False),
        sa.Column('success_files', sa.Integer(), server_default='0', nullable=False),
        sa.Column('failed_files', sa.Integer(), server_default='0', nullable=False),
        sa.Column('total_records', sa.BigInteger(), server_default='0', nullable=False),
        sa.Column('success_records', sa.BigInteger(), server_default='0', nullable=False),
        sa.Column('failed_records', sa.BigInteger(), server_default='0', nullable=False),
        sa.Column('progress_percent', sa.Numeric(precision=5, scale=2), server_default='0', nullable=False),
        sa.Column('start_time', sa.TIMESTAMP(), nullable=True),
        sa.Column('extract_end_time', sa.TIMESTAMP(), nullable=True),
        sa.Column('import_end_time', sa.TIMESTAMP(), nullable=True),
        sa.Column('qc_end_time', sa.TIMESTAMP(), nullable=True),
        sa.Column('end_time', sa.TIMESTAMP(), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('error_detail', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column('session_id', sa.String(length=64), nullable=True, comment='Resume session key'),
        sa.Column('created_by', sa.String(length=255), nullable=True),
        sa.Column('created_at', sa.TIMESTAMP(), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False),
        sa.Column('updated_at', sa.TIMESTAMP(), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False),
        sa.CheckConstraint('status BETWEEN 0 AND 6', name='drug_import_task_status_check'),
        sa.CheckConstraint('import_type IN (1, 2)', name='drug_import_task_import_type_check'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('task_no'),
        comment='Drug data batch import tasks'
    )
    op.create_index('idx_drug_import_task_status', 'drug_import_task', ['status'])
    op.create_index('idx_drug_import_task_created_at', 'drug_import_task', ['created_at'])

    # Create task detail table
    op.create_table(
        'drug_import_task_detail',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('task_id', sa.Integer(), nullable=False),
        sa.Column('task_no', sa.String(length=64), nullable=False),
        sa.Column('file_type', sa.String(length=32), nullable=False, comment='HOSPITAL_INFO, DRUG_CATALOG, ...'),
        sa.Column('file_name', sa.String(length=255), nullable=False),
        sa.Column('file_path', sa.String(length=1024), nullable=True,
                  comment='Extracted file location (kept for retry)'),
        sa.Column('target_table', sa.String(length=64), nullable=False),
        sa.Column('table_type', sa.Integer(), nullable=False),
        sa.Column('status', sa.Integer(), server_default='0', nullable=False),
        sa.Column('parse_status', sa.Integer(), server_default='0', nullable=False),
        sa.Column('import_status', sa.Integer(), server_default='0', nullable=False),
        sa.Column('qc_status', sa.Integer(), server_default='0', nullable=False),
        sa.Column('total_rows', sa.BigInteger(), server_default='0', nullable=False),
        sa.Column('valid_rows', sa.BigInteger(), server_default='0', nullable=False),
        sa.Column('success_rows', sa.BigInteger(), server_default='0', nullable=False),
        sa.Column('failed_rows', sa.BigInteger(), server_default='0', nullable=False),
        sa.Column('qc_passed_rows', sa.BigInteger(), server_default='0', nullable=False),
        sa.Column('qc_failed_rows', sa.BigInteger(), server_default='0', nullable=False),
        sa.Column('progress_percent', sa.Numeric(precision=5, scale=2), server_default='0', nullable=False),
        sa.Column('start_time', sa.TIMESTAMP(), nullable=True),
        sa.Column('parse_end_time', sa.TIMESTAMP(), nullable=True),
        sa.Column('import_end_time', sa.TIMESTAMP(), nullable=True),
        sa.Column('qc_end_time', sa.TIMESTAMP(), nullable=True),
        sa.Column('end_time', sa.TIMESTAMP(), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('error_rows_detail', postgresql.JSONB(astext_type=sa.Text()), nullable=True,
                  comment='Rejected rows: [{row, errors}]'),
        sa.Column('import_batch_no', sa.String(length=128), nullable=True),
        sa.Column('retry_count', sa.Integer(), server_default='0', nullable=False),
        sa.Column('max_retry_count', sa.Integer(), server_default='3', nullable=False),
        sa.Column('created_at', sa.TIMESTAMP(), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False),
        sa.Column('updated_at', sa.TIMESTAMP(), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False),
        sa.CheckConstraint('status BETWEEN 0 AND 5', name='drug_import_task_detail_status_check'),
        sa.CheckConstraint('table_type BETWEEN 1 AND 5', name='drug_import_task_detail_table_type_check'),
        sa.ForeignKeyConstraint(['task_id'], ['drug_import_task.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('task_id', 'table_type', name='uq_drug_import_task_detail_task_table'),
        comment='Per-table details of an import task'
    )
    op.create_index('idx_drug_import_task_detail_task_id', 'drug_import_task_detail', ['task_id'])

    # Create QC rule table
    op.create_table(
        'drug_qc_rule',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('rule_code', sa.String(length=64), nullable=False, comment='e.g. PRE_QC_001'),
        sa.Column('rule_name', sa.String(length=255), nullable=True),
        sa.Column('rule_type', sa.Integer(), nullable=False, comment='1 pre-import, 2 post-import'),
        sa.Column('rule_category', sa.String(length=16), nullable=False, comment='GLOBAL, FIELD or LOGIC'),
        sa.Column('table_type', sa.Integer(), nullable=True, comment='NULL applies to every table'),
        sa.Column('field_name', sa.String(length=64), nullable=True),
        sa.Column('rule_expression', sa.Text(), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True, comment='Message template'),
        sa.Column('error_level', sa.Integer(), server_default='1', nullable=False),
        sa.Column('threshold_value', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column('priority', sa.Integer(), server_default='100', nullable=False),
        sa.Column('enabled', sa.Boolean(), server_default='true', nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('created_at', sa.TIMESTAMP(), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False),
        sa.CheckConstraint('rule_type IN (1, 2)', name='drug_qc_rule_rule_type_check'),
        sa.CheckConstraint("rule_category IN ('GLOBAL', 'FIELD', 'LOGIC')", name='drug_qc_rule_category_check'),
        sa.CheckConstraint('error_level IN (1, 2)', name='drug_qc_rule_error_level_check'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('rule_code'),
        comment='Quality-control rule definitions'
    )
    op.create_index('idx_drug_qc_rule_enabled_priority', 'drug_qc_rule', ['enabled', 'priority'])

    # Create QC finding table
    op.create_table(
        'drug_qc_finding',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('task_id', sa.Integer(), nullable=False),
        sa.Column('detail_id', sa.Integer(), nullable=True),
        sa.Column('table_type', sa.Integer(), nullable=True),
        sa.Column('rule_code', sa.String(length=64), nullable=False),
        sa.Column('rule_type', sa.Integer(), nullable=False),
        sa.Column('error_level', sa.Integer(), nullable=False),
        sa.Column('message', sa.Text(), nullable=False),
        sa.Column('row_number', sa.Integer(), nullable=True),
        sa.Column('field_name', sa.String(length=64), nullable=True),
        sa.Column('import_batch_no', sa.String(length=128), nullable=True),
        sa.Column('created_at', sa.TIMESTAMP(), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False),
        sa.ForeignKeyConstraint(['task_id'], ['drug_import_task.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['detail_id'], ['drug_import_task_detail.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        comment='QC findings produced by import tasks'
    )
    op.create_index('idx_drug_qc_finding_task_id', 'drug_qc_finding', ['task_id'])
    op.create_index('idx_drug_qc_finding_detail_id', 'drug_qc_finding', ['detail_id'])
    op.create_index('idx_drug_qc_finding_errors', 'drug_qc_finding', ['task_id'],
                    postgresql_where='error_level = 1')

    # Create data tables
    op.create_table(
        'drug_hospital_info',
        *_row_columns(),
        sa.Column('org_name', sa.String(length=255), nullable=True, comment='组织机构名称'),
        sa.Column('annual_drug_income', _amount(), nullable=True, comment='年度药品总收入（元）'),
        sa.Column('bed_count', sa.Integer(), nullable=True, comment='实有床位数'),
        *_row_constraints(),
        comment='机构基本情况'
    )

    op.create_table(
        'drug_catalog',
        *_row_columns(),
        sa.Column('ypid', sa.String(length=64), nullable=True, comment='国家药品编码（YPID）'),
        sa.Column('hos_drug_id', sa.String(length=64), nullable=True, comment='院内药品唯一码'),
        sa.Column('generic_name', sa.String(length=255), nullable=True, comment='通用名'),
        sa.Column('product_name', sa.String(length=255), nullable=True, comment='产品名称'),
        sa.Column('approval_no', sa.String(length=128), nullable=True, comment='批准文号'),
        sa.Column('manufacturer', sa.String(length=255), nullable=True, comment='生产企业'),
        sa.Column('dosage_unit', sa.String(length=32), nullable=True, comment='制剂单位'),
        sa.Column('pack_unit', sa.String(length=32), nullable=True, comment='最小销售包装单位'),
        sa.Column('conversion_factor', _amount(), nullable=True, comment='转换系数'),
        *_row_constraints(),
        comment='药品目录'
    )

    op.create_table(
        'drug_inbound',
        *_row_columns(),
        sa.Column('ypid', sa.String(length=64), nullable=True),
        sa.Column('hos_drug_id', sa.String(length=64), nullable=True),
        sa.Column('product_name', sa.String(length=255), nullable=True),
        sa.Column('inbound_amount', _amount(), nullable=True, comment='入库总金额（元）'),
        sa.Column('inbound_pack_qty', _amount(), nullable=True, comment='入库数量（最小销售包装单位）'),
        sa.Column('inbound_dosage_qty', _amount(), nullable=True, comment='入库数量（最小制剂单位）'),
        *_row_constraints(),
        comment='入库情况'
    )

    op.create_table(
        'drug_outbound',
        *_row_columns(),
        sa.Column('ypid', sa.String(length=64), nullable=True),
        sa.Column('hos_drug_id', sa.String(length=64), nullable=True),
        sa.Column('product_name', sa.String(length=255), nullable=True),
        sa.Column('outbound_pack_qty', _amount(), nullable=True, comment='出库数量（最小销售包装单位）'),
        sa.Column('outbound_dosage_qty', _amount(), nullable=True, comment='出库数量（最小制剂单位）'),
        *_row_constraints(),
        comment='出库情况'
    )

    op.create_table(
        'drug_usage',
        *_row_columns(),
        sa.Column('ypid', sa.String(length=64), nullable=True),
        sa.Column('hos_drug_id', sa.String(length=64), nullable=True),
        sa.Column('product_name', sa.String(length=255), nullable=True),
        sa.Column('sales_amount', _amount(), nullable=True, comment='销售总金额（元）'),
        sa.Column('sales_pack_qty', _amount(), nullable=True, comment='销售数量（最小销售包装单位）'),
        sa.Column('sales_dosage_qty', _amount(), nullable=True, comment='销售数量（最小制剂单位）'),
        *_row_constraints(),
        comment='使用情况'
    )

    # Create indexes on data tables
    for table in DATA_TABLES:
        op.create_index(f'ix_{table}_task_id', table, ['task_id'])
        op.create_index(f'ix_{table}_detail_id', table, ['detail_id'])
        op.create_index(f'ix_{table}_import_batch_no', table, ['import_batch_no'])
    for table in DATA_TABLES[1:]:
        op.create_index(f'ix_{table}_hos_drug_id', table, ['hos_drug_id'])


def downgrade() -> None:
    # Drop data tables and indexes
    for table in reversed(DATA_TABLES):
        if table != 'drug_hospital_info':
            op.drop_index(f'ix_{table}_hos_drug_id', table_name=table)
        op.drop_index(f'ix_{table}_import_batch_no', table_name=table)
        op.drop_index(f'ix_{table}_detail_id', table_name=table)
        op.drop_index(f'ix_{table}_task_id', table_name=table)
        op.drop_table(table)

    # Drop QC tables
    op.drop_index('idx_drug_qc_finding_errors', table_name='drug_qc_finding')
    op.drop_index('idx_drug_qc_finding_detail_id', table_name='drug_qc_finding')
    op.drop_index('idx_drug_qc_finding_task_id', table_name='drug_qc_finding')
    op.drop_table('drug_qc_finding')
    op.drop_index('idx_drug_qc_rule_enabled_priority', table_name='drug_qc_rule')
    op.drop_table('drug_qc_rule')

    # Drop task tables
    op.drop_index('idx_drug_import_task_detail_task_id', table_name='drug_import_task_detail')
    op.drop_table('drug_import_task_detail')
    op.drop_index('idx_drug_import_task_created_at', table_name='drug_import_task')
    op.drop_index('idx_drug_import_task_status', table_name='drug_import_task')
    op.drop_table('drug_import_task')
