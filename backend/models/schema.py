"""
SQLAlchemy models for the drug monitoring data tables.

This module defines the declarative base and the five typed target tables
that imported spreadsheet rows are loaded into, matching the schema defined
in Alembic migrations.
"""

from sqlalchemy import (
    Column, Integer, String, Numeric, TIMESTAMP, ForeignKey, JSON, text
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import declarative_base, declared_attr

from backend.models.enums import TableType

Base = declarative_base()

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), 'postgresql')

AMOUNT = Numeric(18, 4)


class ImportedRowMixin:
    """
    Bookkeeping columns carried by every imported row.

    ``import_batch_no`` groups the rows loaded by one import attempt and
    ``row_number`` is the 1-based spreadsheet row, so a retry can skip the
    rows that were already persisted.
    """

    id = Column(Integer, primary_key=True, autoincrement=True, nullable=False)

    @declared_attr
    def task_id(cls):
        return Column(
            Integer,
            ForeignKey('drug_import_task.id', ondelete='CASCADE'),
            nullable=False,
            index=True,
            comment='Owning import task'
        )

    @declared_attr
    def detail_id(cls):
        return Column(
            Integer,
            ForeignKey('drug_import_task_detail.id', ondelete='CASCADE'),
            nullable=False,
            index=True,
            comment='Owning task detail'
        )

    import_batch_no = Column(String(128), nullable=False, index=True, comment='Import attempt batch number')
    row_number = Column(Integer, nullable=False, comment='Source spreadsheet row (1-based, header = 1)')
    report_date = Column(String(8), nullable=True, comment='数据上报日期 (yyyyMMdd)')
    province_code = Column(String(32), nullable=True, comment='省级行政区划代码')
    org_code = Column(String(64), nullable=True, comment='组织机构代码')
    hospital_code = Column(String(64), nullable=True, comment='医疗机构代码')
    created_at = Column(TIMESTAMP, server_default=text('CURRENT_TIMESTAMP'), nullable=False)


class HospitalInfo(ImportedRowMixin, Base):
    """机构基本情况 - hospital profile and scale."""

    __tablename__ = 'drug_hospital_info'

    org_name = Column(String(255), nullable=True, comment='组织机构名称')
    annual_drug_income = Column(AMOUNT, nullable=True, comment='年度药品总收入（元）')
    bed_count = Column(Integer, nullable=True, comment='实有床位数')


class DrugCatalog(ImportedRowMixin, Base):
    """药品目录 - the hospital's drug catalogue."""

    __tablename__ = 'drug_catalog'

    ypid = Column(String(64), nullable=True, comment='国家药品编码（YPID）')
    hos_drug_id = Column(String(64), nullable=True, index=True, comment='院内药品唯一码')
    generic_name = Column(String(255), nullable=True, comment='通用名')
    product_name = Column(String(255), nullable=True, comment='产品名称')
    approval_no = Column(String(128), nullable=True, comment='批准文号')
    manufacturer = Column(String(255), nullable=True, comment='生产企业')
    dosage_unit = Column(String(32), nullable=True, comment='制剂单位')
    pack_unit = Column(String(32), nullable=True, comment='最小销售包装单位')
    conversion_factor = Column(AMOUNT, nullable=True, comment='转换系数')


class DrugInbound(ImportedRowMixin, Base):
    """入库情况 - purchase/inbound records."""

    __tablename__ = 'drug_inbound'

    ypid = Column(String(64), nullable=True)
    hos_drug_id = Column(String(64), nullable=True, index=True)
    product_name = Column(String(255), nullable=True)
    inbound_amount = Column(AMOUNT, nullable=True, comment='入库总金额（元）')
    inbound_pack_qty = Column(AMOUNT, nullable=True, comment='入库数量（最小销售包装单位）')
    inbound_dosage_qty = Column(AMOUNT, nullable=True, comment='入库数量（最小制剂单位）')


class DrugOutbound(ImportedRowMixin, Base):
    """出库情况 - dispensing/outbound records."""

    __tablename__ = 'drug_outbound'

    ypid = Column(String(64), nullable=True)
    hos_drug_id = Column(String(64), nullable=True, index=True)
    product_name = Column(String(255), nullable=True)
    outbound_pack_qty = Column(AMOUNT, nullable=True, comment='出库数量（最小销售包装单位）')
    outbound_dosage_qty = Column(AMOUNT, nullable=True, comment='出库数量（最小制剂单位）')


class DrugUsage(ImportedRowMixin, Base):
    """使用情况 - clinical usage/sales records."""

    __tablename__ = 'drug_usage'

    ypid = Column(String(64), nullable=True)
    hos_drug_id = Column(String(64), nullable=True, index=True)
    product_name = Column(String(255), nullable=True)
    sales_amount = Column(AMOUNT, nullable=True, comment='销售总金额（元）')
    sales_pack_qty = Column(AMOUNT, nullable=True, comment='销售数量（最小销售包装单位）')
    sales_dosage_qty = Column(AMOUNT, nullable=True, comment='销售数量（最小制剂单位）')


TABLE_MODELS = {
    TableType.HOSPITAL_INFO: HospitalInfo,
    TableType.DRUG_CATALOG: DrugCatalog,
    TableType.DRUG_INBOUND: DrugInbound,
    TableType.DRUG_OUTBOUND: DrugOutbound,
    TableType.DRUG_USAGE: DrugUsage,
}


def model_for(table_type: TableType):
    """Return the ORM class backing a table type."""
    return TABLE_MODELS[TableType(table_type)]
