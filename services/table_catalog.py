"""
Column catalogue for the five drug data tables.

Maps spreadsheet headers (the Chinese report template headers, or the
attribute names themselves) onto model attributes, and converts raw cell
values to the column types. Conversion failures raise ``ValueError`` with a
message suitable for the rejected-row report.
"""

import re
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Iterable, List, Optional, Tuple

from backend.models.enums import TableType

DATE_PATTERN = re.compile(r'^\d{8}$')

# Full-width punctuation seen in report templates
_HEADER_TRANSLATION = str.maketrans({
    '(': '（',
    ')': '）',
    ' ': '',
    '　': '',
    '\t': '',
    '\n': '',
})


def normalize_header(value) -> str:
    """Normalise a header cell so template variants compare equal."""
    if value is None:
        return ''
    return str(value).strip().translate(_HEADER_TRANSLATION).lower()


@dataclass(frozen=True)
class FieldSpec:
    header: str
    attr: str
    kind: str = 'str'  # str | int | decimal | date
    required: bool = True
    positive: bool = False
    max_length: Optional[int] = None

    def convert(self, value: Any) -> Any:
        """Convert a raw cell value, returning None for blank cells."""
        if value is None or (isinstance(value, str) and not value.strip()):
            return None
        if self.kind == 'date':
            return _to_report_date(value)
        if self.kind == 'int':
            number = _to_decimal(value)
            if number != number.to_integral_value():
                raise ValueError("must be an integer")
            if self.positive and number < 0:
                raise ValueError("must not be negative")
            return int(number)
        if self.kind == 'decimal':
            number = _to_decimal(value)
            if self.positive and number <= 0:
                raise ValueError("must be greater than 0")
            return number
        text = _to_text(value)
        if self.max_length and len(text) > self.max_length:
            raise ValueError(f"exceeds {self.max_length} characters")
        return text


def _to_text(value) -> str:
    # Code columns come back from Excel as floats (e.g. 110000.0)
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value).strip()


def _to_decimal(value) -> Decimal:
    if isinstance(value, bool):
        raise ValueError(f"not a number: {value!r}")
    try:
        if isinstance(value, float):
            number = Decimal(repr(value))
        else:
            number = Decimal(str(value).strip().replace(',', ''))
    except InvalidOperation:
        raise ValueError(f"not a number: {value!r}") from None
    # NaN and Infinity parse but cannot be compared or stored
    if not number.is_finite():
        raise ValueError(f"not a finite number: {value!r}")
    return number


def _to_report_date(value) -> str:
    if isinstance(value, (datetime, date)):
        return value.strftime('%Y%m%d')
    text = _to_text(value)
    if not DATE_PATTERN.match(text):
        raise ValueError(f"date must be yyyyMMdd: {text!r}")
    try:
        datetime.strptime(text, '%Y%m%d')
    except ValueError:
        raise ValueError(f"invalid calendar date: {text!r}") from None
    return text


_COMMON_FIELDS = (
    FieldSpec('数据上报日期', 'report_date', 'date'),
    FieldSpec('省级行政区划代码', 'province_code', max_length=32),
    FieldSpec('组织机构代码', 'org_code', max_length=64),
    FieldSpec('医疗机构代码', 'hospital_code', max_length=64),
)

_DRUG_KEY_FIELDS = (
    FieldSpec('国家药品编码（YPID）', 'ypid', max_length=64),
    FieldSpec('院内药品唯一码', 'hos_drug_id', max_length=64),
)

TABLE_FIELDS: Dict[TableType, Tuple[FieldSpec, ...]] = {
    TableType.HOSPITAL_INFO: _COMMON_FIELDS + (
        FieldSpec('组织机构名称', 'org_name', max_length=255),
        FieldSpec('年度药品总收入（元）', 'annual_drug_income', 'decimal', positive=True),
        FieldSpec('实有床位数', 'bed_count', 'int', positive=True),
    ),
    TableType.DRUG_CATALOG: _COMMON_FIELDS + _DRUG_KEY_FIELDS + (
        FieldSpec('通用名', 'generic_name', max_length=255),
        FieldSpec('产品名称', 'product_name', max_length=255),
        FieldSpec('批准文号', 'approval_no', max_length=128),
        FieldSpec('生产企业', 'manufacturer', max_length=255),
        FieldSpec('制剂单位', 'dosage_unit', max_length=32),
        FieldSpec('最小销售包装单位', 'pack_unit', max_length=32),
        FieldSpec('转换系数', 'conversion_factor', 'decimal', positive=True),
    ),
    TableType.DRUG_INBOUND: _COMMON_FIELDS + _DRUG_KEY_FIELDS + (
        FieldSpec('产品名称', 'product_name', max_length=255),
        FieldSpec('入库总金额（元）', 'inbound_amount', 'decimal', positive=True),
        FieldSpec('入库数量（最小销售包装单位）', 'inbound_pack_qty', 'decimal', positive=True),
        FieldSpec('入库数量（最小制剂单位）', 'inbound_dosage_qty', 'decimal', positive=True),
    ),
    TableType.DRUG_OUTBOUND: _COMMON_FIELDS + _DRUG_KEY_FIELDS + (
        FieldSpec('产品名称', 'product_name', max_length=255),
        FieldSpec('出库数量（最小销售包装单位）', 'outbound_pack_qty', 'decimal', positive=True),
        FieldSpec('出库数量（最小制剂单位）', 'outbound_dosage_qty', 'decimal', positive=True),
    ),
    TableType.DRUG_USAGE: _COMMON_FIELDS + _DRUG_KEY_FIELDS + (
        FieldSpec('产品名称', 'product_name', max_length=255),
        FieldSpec('销售总金额（元）', 'sales_amount', 'decimal', positive=True),
        FieldSpec('销售数量（最小销售包装单位）', 'sales_pack_qty', 'decimal', positive=True),
        FieldSpec('销售数量（最小制剂单位）', 'sales_dosage_qty', 'decimal', positive=True),
    ),
}


def fields_for(table_type: TableType) -> Tuple[FieldSpec, ...]:
    return TABLE_FIELDS[TableType(table_type)]


def required_headers(table_type: TableType) -> List[str]:
    return [spec.header for spec in fields_for(table_type) if spec.required]


def field_attrs(table_type: TableType) -> List[str]:
    return [spec.attr for spec in fields_for(table_type)]


def map_headers(table_type: TableType, headers: Iterable[Any]) -> Dict[int, FieldSpec]:
    """
    Match a header row against the table's fields.

    Args:
        table_type: Target table
        headers: Raw header cells in column order

    Returns:
        Mapping of column index -> FieldSpec for every recognised column.
        The first occurrence wins when a header repeats.
    """
    lookup = {}
    for spec in fields_for(table_type):
        lookup.setdefault(normalize_header(spec.header), spec)
        lookup.setdefault(normalize_header(spec.attr), spec)

    mapping: Dict[int, FieldSpec] = {}
    seen = set()
    for index, header in enumerate(headers):
        spec = lookup.get(normalize_header(header))
        if spec is not None and spec.attr not in seen:
            mapping[index] = spec
            seen.add(spec.attr)
    return mapping


def missing_required(table_type: TableType, headers: Iterable[Any]) -> List[str]:
    """Required headers absent from a header row."""
    present = {spec.attr for spec in map_headers(table_type, headers).values()}
    return [spec.header for spec in fields_for(table_type)
            if spec.required and spec.attr not in present]


def header_match_score(table_type: TableType, headers: Iterable[Any]) -> float:
    """Fraction of the table's distinctive fields present in a header row."""
    common = {spec.attr for spec in _COMMON_FIELDS + _DRUG_KEY_FIELDS}
    distinctive = [spec for spec in fields_for(table_type) if spec.attr not in common]
    if not distinctive:
        return 0.0
    present = {spec.attr for spec in map_headers(table_type, headers).values()}
    hits = sum(1 for spec in distinctive if spec.attr in present)
    return hits / len(distinctive)
