"""
QC Rule Engine - rule-based quality control of drug data.

The engine works on a snapshot of enabled rules taken when a QC pass
starts, ordered by priority then rule code. Every applicable rule is
evaluated for every row (no short-circuit); table-level rules (GLOBAL
category, or any rule using an aggregate helper) run once per table after
all rows have been seen.

A rule whose expression cannot be compiled or fails at runtime is reported
as a configuration error and skipped; it never aborts the pass.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Set, Tuple

from sqlalchemy import distinct, select
from sqlalchemy.orm import Session

from backend.models.enums import ErrorLevel, RuleCategory, RuleType, TableType
from backend.models.import_task import QcRule
from backend.models.schema import model_for
from services.errors import RuleExpressionError
from services.qc_expression import (
    ROW_FUNCTION_TABLE, CompiledExpression, ExpressionEvaluationError, TableAggregator,
    compile_expression
)
from services.table_catalog import TABLE_FIELDS, field_attrs

logger = logging.getLogger(__name__)

DEFAULT_NULL_RATE_EXPRESSION = 'null_rate(field_name) > max_null_rate'

# Rows reported per rule that fails to evaluate; the rest are counted
DEFAULT_MAX_EVAL_ERRORS = 10

# Names every expression may use besides row fields and thresholds
_RULE_CONSTANTS = frozenset({'field_name', 'table_type', 'row_number'})

_ALL_FIELDS = frozenset(spec.attr for specs in TABLE_FIELDS.values() for spec in specs)


@dataclass(frozen=True)
class RuleDefinition:
    """Immutable copy of a QcRule row, as seen by one QC pass."""
    rule_code: str
    rule_type: RuleType
    rule_category: RuleCategory
    rule_expression: Optional[str] = None
    table_type: Optional[TableType] = None
    field_name: Optional[str] = None
    error_message: Optional[str] = None
    error_level: ErrorLevel = ErrorLevel.ERROR
    threshold: Tuple[Tuple[str, Any], ...] = ()
    priority: int = 100
    rule_name: Optional[str] = None

    @classmethod
    def from_model(cls, rule: QcRule) -> 'RuleDefinition':
        threshold = rule.threshold_value if isinstance(rule.threshold_value, dict) else {}
        return cls(
            rule_code=rule.rule_code,
            rule_type=RuleType(rule.rule_type),
            rule_category=RuleCategory(rule.rule_category),
            rule_expression=rule.rule_expression,
            table_type=TableType(rule.table_type) if rule.table_type else None,
            field_name=rule.field_name,
            error_message=rule.error_message,
            error_level=ErrorLevel(rule.error_level),
            threshold=tuple(sorted(threshold.items())),
            priority=rule.priority if rule.priority is not None else 100,
            rule_name=rule.rule_name,
        )

    @property
    def thresholds(self) -> Dict[str, Any]:
        return dict(self.threshold)

    @property
    def sort_key(self):
        return (self.priority, self.rule_code)

    def applies_to(self, rule_type: RuleType, table_type: TableType) -> bool:
        return self.rule_type == rule_type and (self.table_type is None or self.table_type == table_type)


@dataclass
class Finding:
    """A single rule violation."""
    rule_code: str
    error_level: ErrorLevel
    message: str
    rule_type: RuleType
    table_type: Optional[TableType] = None
    row_number: Optional[int] = None
    field_name: Optional[str] = None

    @property
    def is_error(self) -> bool:
        return self.error_level == ErrorLevel.ERROR

    def to_dict(self) -> Dict[str, Any]:
        return {
            'rule_code': self.rule_code,
            'level': int(self.error_level),
            'message': self.message,
            'row_number': self.row_number,
            'field_name': self.field_name,
            'table_type': int(self.table_type) if self.table_type else None,
            'rule_type': int(self.rule_type),
        }


@dataclass
class RuleConfigError:
    rule_code: str
    message: str
    table_type: Optional[TableType] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'rule_code': self.rule_code,
            'message': self.message,
            'table_type': self.table_type.name if self.table_type else None,
        }


@dataclass
class QcReport:
    """Outcome of one QC pass over one table."""
    rule_type: RuleType
    table_type: TableType
    rows_checked: int = 0
    findings: List[Finding] = field(default_factory=list)
    rule_errors: List[RuleConfigError] = field(default_factory=list)
    failed_row_numbers: Set[int] = field(default_factory=set)

    @property
    def has_errors(self) -> bool:
        return any(f.is_error for f in self.findings)

    @property
    def error_count(self) -> int:
        return sum(1 for f in self.findings if f.is_error)

    @property
    def warning_count(self) -> int:
        return sum(1 for f in self.findings if not f.is_error)

    @property
    def failed_rows(self) -> int:
        return len(self.failed_row_numbers)

    @property
    def passed_rows(self) -> int:
        return max(0, self.rows_checked - self.failed_rows)

    def summary(self) -> Dict[str, Any]:
        return {
            'rule_type': self.rule_type.name,
            'rows_checked': self.rows_checked,
            'errors': self.error_count,
            'warnings': self.warning_count,
            'failed_rows': self.failed_rows,
            'rule_errors': [e.to_dict() for e in self.rule_errors],
        }


class _SafeDict(dict):
    def __missing__(self, key):
        return '{' + key + '}'


def render_message(template: Optional[str], values: Mapping[str, Any], default: str) -> str:
    """Fill ``{name}`` placeholders; unknown names are left as they are, a template that
    cannot be formatted gives ``default``."""
    if not template:
        return default
    try:
        return template.format_map(_SafeDict(values))
    except (ValueError, TypeError, IndexError, AttributeError, KeyError) as e:
        # e.g. a {value:.2f} placeholder over a null or text cell
        logger.debug(f"Message template {template!r} not rendered: {e}")
        return default


class _CompiledRule:
    def __init__(self, rule: RuleDefinition, expression: CompiledExpression, table_level: bool):
        self.rule = rule
        self.expression = expression
        self.table_level = table_level
        self.broken = False
        self.eval_errors = 0


class CrossTableIndex:
    """
    Lazily loaded value sets of other tables in the same task, backing
    the ``exists(table, field, value)`` helper of post-import rules.
    """

    def __init__(self, db_session: Session, task_id: int):
        self.session = db_session
        self.task_id = task_id
        self._cache: Dict[Tuple[TableType, str], Set[Any]] = {}

    def values(self, table, field_name: str) -> Set[Any]:
        table_type = TableType.from_value(table)
        if field_name not in field_attrs(table_type):
            raise ValueError(f"{table_type.name} has no field {field_name}")
        key = (table_type, field_name)
        if key not in self._cache:
            model = model_for(table_type)
            column = getattr(model, field_name)
            stmt = select(distinct(column)).where(model.task_id == self.task_id, column.isnot(None))
            self._cache[key] = set(self.session.execute(stmt).scalars())
            logger.debug(f"Loaded {len(self._cache[key])} {table_type.name}.{field_name} values "
                         f"for task {self.task_id}")
        return self._cache[key]

    def exists(self, table, field_name, value) -> bool:
        if value is None:
            return False
        return value in self.values(table, field_name)


class TableCheck:
    """
    One QC pass over one table. Feed rows with ``add_row`` and call
    ``finish`` once all rows are in.
    """

    def __init__(self, rules: List[_CompiledRule], rule_type: RuleType, table_type: TableType,
                 rule_errors: List[RuleConfigError], cross_table: Optional[CrossTableIndex] = None,
                 max_eval_errors: int = DEFAULT_MAX_EVAL_ERRORS):
        self.rule_type = rule_type
        self.max_eval_errors = max_eval_errors
        self.table_type = table_type
        self.row_rules = [r for r in rules if not r.table_level]
        self.table_rules = [r for r in rules if r.table_level]
        self.report = QcReport(rule_type, table_type, rule_errors=list(rule_errors))
        self.aggregator = TableAggregator(field_attrs(table_type)) if self.table_rules else None
        self._functions = dict(ROW_FUNCTION_TABLE)
        if cross_table is not None:
            self._functions['exists'] = cross_table.exists

    def _base_context(self, rule: RuleDefinition) -> Dict[str, Any]:
        context = rule.thresholds
        context['field_name'] = rule.field_name
        context['table_type'] = self.table_type.name
        return context

    def _fail_rule(self, compiled: _CompiledRule, message: str):
        compiled.broken = True
        error = RuleConfigError(compiled.rule.rule_code, message, self.table_type)
        self.report.rule_errors.append(error)
        logger.warning(f"QC rule {compiled.rule.rule_code} disabled for {self.table_type.name}: {message}")

    def _row_eval_failed(self, compiled: _CompiledRule, row_number: int, error: ExpressionEvaluationError):
        """Record a rule that could not be evaluated on one row; the rule stays active."""
        compiled.eval_errors += 1
        if compiled.eval_errors > self.max_eval_errors:
            return
        message = f"evaluation failed at row {row_number}: {error}"
        self.report.rule_errors.append(RuleConfigError(compiled.rule.rule_code, message, self.table_type))
        logger.warning(f"QC rule {compiled.rule.rule_code} on {self.table_type.name}: {message}")

    def add_row(self, row_number: int, values: Mapping[str, Any]):
        self.report.rows_checked += 1
        if self.aggregator is not None:
            self.aggregator.add(values)

        for compiled in self.row_rules:
            if compiled.broken:
                continue
            rule = compiled.rule
            context = self._base_context(rule)
            context.update(values)
            context['row_number'] = row_number
            try:
                violated = compiled.expression.evaluate(context, self._functions)
            except ExpressionEvaluationError as e:
                self._row_eval_failed(compiled, row_number, e)
                continue
            if not violated:
                continue

            render = dict(context)
            render.update(rule_code=rule.rule_code, rule_name=rule.rule_name or rule.rule_code,
                          table=self.table_type.label,
                          value=values.get(rule.field_name) if rule.field_name else None)
            default = f"{rule.rule_code} violated at row {row_number}"
            if rule.field_name:
                default += f" ({rule.field_name}={render['value']!r})"
            finding = Finding(rule.rule_code, rule.error_level,
                              render_message(rule.error_message, render, default),
                              self.rule_type, self.table_type, row_number, rule.field_name)
            self.report.findings.append(finding)
            if finding.is_error:
                self.report.failed_row_numbers.add(row_number)

    def finish(self) -> QcReport:
        """Run table-level rules and return the report."""
        for compiled in self.row_rules:
            hidden = compiled.eval_errors - self.max_eval_errors
            if hidden > 0:
                self.report.rule_errors.append(RuleConfigError(
                    compiled.rule.rule_code, f"evaluation failed on {hidden} more rows", self.table_type))

        functions = dict(self._functions)
        if self.aggregator is not None:
            functions.update(self.aggregator.functions())

        for compiled in self.table_rules:
            if compiled.broken:
                continue
            rule = compiled.rule
            context = self._base_context(rule)
            try:
                violated = compiled.expression.evaluate(context, functions)
            except ExpressionEvaluationError as e:
                self._fail_rule(compiled, f"evaluation failed: {e}")
                continue
            if not violated:
                continue

            render = dict(context)
            render.update(rule_code=rule.rule_code, rule_name=rule.rule_name or rule.rule_code,
                          table=self.table_type.label, row_count=self.aggregator.row_count)
            if rule.field_name in self.aggregator.fields:
                render.update(null_rate=self.aggregator.null_rate(rule.field_name),
                              blank_rate=self.aggregator.blank_rate(rule.field_name),
                              distinct_count=self.aggregator.distinct_count(rule.field_name))
            default = f"{rule.rule_code} violated for {self.table_type.name}"
            self.report.findings.append(Finding(
                rule.rule_code, rule.error_level,
                render_message(rule.error_message, render, default),
                self.rule_type, self.table_type, None, rule.field_name))

        logger.info(
            f"QC {self.rule_type.name} {self.table_type.name}: {self.report.rows_checked} rows, "
            f"{self.report.error_count} errors, {self.report.warning_count} warnings, "
            f"{len(self.report.rule_errors)} rule errors"
        )
        return self.report


class QcRuleEngine:
    """
    Framework-agnostic QC rule engine over a fixed rule snapshot.

    Usage:
        engine = QcRuleEngine.from_session(session)
        check = engine.start(RuleType.PRE_IMPORT, TableType.DRUG_CATALOG)
        for row in rows:
            check.add_row(row.row_number, row.values)
        report = check.finish()
    """

    def __init__(self, rules: Iterable[RuleDefinition]):
        self.rules: List[RuleDefinition] = sorted(rules, key=lambda r: r.sort_key)

    @classmethod
    def from_session(cls, db_session: Session) -> 'QcRuleEngine':
        """Snapshot every enabled rule."""
        stmt = select(QcRule).where(QcRule.enabled.is_(True)).order_by(QcRule.priority, QcRule.rule_code)
        rules = [RuleDefinition.from_model(r) for r in db_session.execute(stmt).scalars()]
        logger.info(f"Loaded QC rule snapshot with {len(rules)} enabled rules")
        return cls(rules)

    def rules_for(self, rule_type: RuleType, table_type: TableType) -> List[RuleDefinition]:
        return [r for r in self.rules if r.applies_to(rule_type, table_type)]

    def has_rules(self, rule_type: RuleType) -> bool:
        return any(r.rule_type == rule_type for r in self.rules)

    def _compile(self, rule: RuleDefinition, table_type: TableType) -> Optional[_CompiledRule]:
        """
        Compile a rule for one table.

        Returns None when a table-agnostic rule does not apply to this
        table. Raises RuleExpressionError for a broken rule.
        """
        table_fields = set(field_attrs(table_type))
        thresholds = rule.thresholds

        source = (rule.rule_expression or '').strip()
        if not source:
            if rule.rule_category == RuleCategory.GLOBAL and 'max_null_rate' in thresholds and rule.field_name:
                source = DEFAULT_NULL_RATE_EXPRESSION
            else:
                raise RuleExpressionError('Rule has no expression')

        if rule.field_name and rule.field_name not in table_fields:
            if rule.table_type is None:
                return None
            raise RuleExpressionError(f"Unknown field {rule.field_name} for {table_type.name}")

        expression = compile_expression(source)
        table_level = rule.rule_category == RuleCategory.GLOBAL or expression.uses_aggregates

        if expression.uses_cross_table and rule.rule_type != RuleType.POST_IMPORT:
            raise RuleExpressionError('exists() is only available to post-import rules')

        allowed = set(thresholds) | _RULE_CONSTANTS
        if not table_level:
            allowed |= table_fields
        unknown = expression.names - allowed
        if unknown:
            if rule.table_type is None and unknown <= _ALL_FIELDS and not table_level:
                return None
            raise RuleExpressionError(f"Unknown names: {', '.join(sorted(unknown))}")
        return _CompiledRule(rule, expression, table_level)

    def start(self, rule_type: RuleType, table_type: TableType,
              cross_table: Optional[CrossTableIndex] = None) -> TableCheck:
        """Compile the applicable rules and open a pass over one table."""
        rule_type = RuleType(rule_type)
        table_type = TableType(table_type)
        compiled: List[_CompiledRule] = []
        errors: List[RuleConfigError] = []
        for rule in self.rules_for(rule_type, table_type):
            try:
                item = self._compile(rule, table_type)
            except RuleExpressionError as e:
                errors.append(RuleConfigError(rule.rule_code, e.message, table_type))
                logger.warning(f"QC rule {rule.rule_code} skipped for {table_type.name}: {e.message}")
                continue
            if item is not None:
                compiled.append(item)
        return TableCheck(compiled, rule_type, table_type, errors, cross_table)

    def evaluate(self, rule_type: RuleType, table_type: TableType,
                 rows: Iterable[Tuple[int, Mapping[str, Any]]],
                 cross_table: Optional[CrossTableIndex] = None) -> QcReport:
        """Run a whole pass over (row_number, values) pairs."""
        check = self.start(rule_type, table_type, cross_table)
        for row_number, values in rows:
            check.add_row(row_number, values)
        return check.finish()


def validate_rule(rule: RuleDefinition) -> List[str]:
    """
    Check a rule definition against every table it may apply to.

    Returns a list of problems, empty when the rule is usable. Used by the
    shell and the seeding command before rules are saved.
    """
    problems = []
    tables = [rule.table_type] if rule.table_type else list(TableType)
    engine = QcRuleEngine([rule])
    applicable = 0
    for table_type in tables:
        try:
            if engine._compile(rule, table_type) is not None:
                applicable += 1
        except RuleExpressionError as e:
            problems.append(f"{table_type.name}: {e.message}")
    if not problems and applicable == 0:
        problems.append('Rule does not apply to any table')
    return problems
