"""
Closed enumerations shared by the models and the service layer.

Integer values are the documented status codes stored on the task and
detail rows and returned to API clients.
"""

from enum import Enum, IntEnum


class TableType(IntEnum):
    """The five fixed target datasets."""
    HOSPITAL_INFO = 1
    DRUG_CATALOG = 2
    DRUG_INBOUND = 3
    DRUG_OUTBOUND = 4
    DRUG_USAGE = 5

    @property
    def table_name(self) -> str:
        return _TABLE_NAMES[self]

    @property
    def label(self) -> str:
        return _TABLE_LABELS[self]

    @classmethod
    def from_value(cls, value) -> 'TableType':
        """Resolve a table type from its code, its name or its target table name."""
        if isinstance(value, cls):
            return value
        if isinstance(value, int):
            return cls(value)
        text = str(value).strip()
        if text.isdigit():
            return cls(int(text))
        upper = text.upper()
        if upper in cls.__members__:
            return cls[upper]
        for member in cls:
            if member.table_name == text.lower():
                return member
        raise ValueError(f"Unknown table type: {value!r}")


_TABLE_NAMES = {
    TableType.HOSPITAL_INFO: 'drug_hospital_info',
    TableType.DRUG_CATALOG: 'drug_catalog',
    TableType.DRUG_INBOUND: 'drug_inbound',
    TableType.DRUG_OUTBOUND: 'drug_outbound',
    TableType.DRUG_USAGE: 'drug_usage',
}

_TABLE_LABELS = {
    TableType.HOSPITAL_INFO: '机构基本情况',
    TableType.DRUG_CATALOG: '药品目录',
    TableType.DRUG_INBOUND: '入库情况',
    TableType.DRUG_OUTBOUND: '出库情况',
    TableType.DRUG_USAGE: '使用情况',
}

# Tables whose absence fails an archive import before any detail is created
MANDATORY_TABLE_TYPES = frozenset({TableType.DRUG_CATALOG})

# Import tiers: later tiers reference data loaded by earlier ones.
# Tables inside one tier are independent and may run in parallel.
IMPORT_TIERS = (
    (TableType.HOSPITAL_INFO,),
    (TableType.DRUG_CATALOG,),
    (TableType.DRUG_INBOUND, TableType.DRUG_OUTBOUND, TableType.DRUG_USAGE),
)


class ImportType(IntEnum):
    SINGLE_FILE = 1
    ARCHIVE = 2


class TaskStatus(IntEnum):
    """Overall task status."""
    PENDING = 0
    EXTRACTING = 1
    IMPORTING = 2
    QC_CHECKING = 3
    COMPLETED = 4
    FAILED = 5
    PARTIAL_SUCCESS = 6

    def is_processing(self) -> bool:
        return self in (TaskStatus.EXTRACTING, TaskStatus.IMPORTING, TaskStatus.QC_CHECKING)

    def is_final(self) -> bool:
        return self in (TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.PARTIAL_SUCCESS)


CANCELLABLE_TASK_STATUSES = frozenset({
    TaskStatus.PENDING, TaskStatus.EXTRACTING, TaskStatus.IMPORTING, TaskStatus.QC_CHECKING,
})

RETRYABLE_TASK_STATUSES = frozenset({TaskStatus.FAILED, TaskStatus.PARTIAL_SUCCESS})


class DetailStatus(IntEnum):
    """Per-table status. A detail is binary pass/fail."""
    PENDING = 0
    PARSING = 1
    IMPORTING = 2
    QC_CHECKING = 3
    SUCCESS = 4
    FAILED = 5

    def is_final(self) -> bool:
        return self in (DetailStatus.SUCCESS, DetailStatus.FAILED)


class StageStatus(IntEnum):
    """Sub-stage status used by extract/parse/import/qc fields."""
    NOT_STARTED = 0
    RUNNING = 1
    SUCCESS = 2
    FAILED = 3

    def is_final(self) -> bool:
        return self in (StageStatus.SUCCESS, StageStatus.FAILED)


class RuleType(IntEnum):
    PRE_IMPORT = 1
    POST_IMPORT = 2


class RuleCategory(str, Enum):
    GLOBAL = 'GLOBAL'
    FIELD = 'FIELD'
    LOGIC = 'LOGIC'


class ErrorLevel(IntEnum):
    ERROR = 1
    WARNING = 2


class RetryType(str, Enum):
    """Scope of a retry request."""
    ALL = 'ALL'
    FAILED = 'FAILED'
    FILE_TYPE = 'FILE_TYPE'
