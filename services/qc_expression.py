"""
QC expression service - a sandboxed predicate language for QC rules.

Rule expressions use Python expression syntax, parsed with ``ast`` and run
by a small tree walker that only understands a whitelisted set of nodes:
literals, context names, boolean logic, comparisons, arithmetic and calls to
a fixed set of helper functions. Anything else (attribute access,
subscripts, lambdas, comprehensions, keyword arguments) is rejected when
the expression is compiled.

A true result means the rule is violated.
"""

import ast
import re
from datetime import datetime
from decimal import Decimal, InvalidOperation
from functools import lru_cache
from typing import Any, Callable, Dict, FrozenSet, Mapping, Optional, Set

from services.errors import RuleExpressionError

# Helpers evaluated against a single row value
ROW_FUNCTIONS = frozenset({
    'is_null', 'not_null', 'is_blank', 'length', 'matches', 'is_number', 'is_date', 'number',
})

# Helpers evaluated against a whole table (take a field name)
AGGREGATE_FUNCTIONS = frozenset({'null_rate', 'blank_rate', 'distinct_count', 'sum_of'})

# Helpers that look up other tables of the same task
CROSS_TABLE_FUNCTIONS = frozenset({'exists'})

ALLOWED_FUNCTIONS = ROW_FUNCTIONS | AGGREGATE_FUNCTIONS | CROSS_TABLE_FUNCTIONS

# Limits for matches(); re has no timeout so catastrophic patterns are refused up front
MAX_PATTERN_LENGTH = 200
MAX_MATCH_LENGTH = 1000
# A quantified group that itself contains a quantifier, e.g. (a+)+ or (\w*\s?)*
_NESTED_QUANTIFIER = re.compile(r'\((?:[^()\\]|\\.)*[+*](?:[^()\\]|\\.)*\)[+*{]')

_BOOL_OPS = (ast.And, ast.Or)
_UNARY_OPS = (ast.Not, ast.USub, ast.UAdd)
_BIN_OPS = (ast.Add, ast.Sub, ast.Mult, ast.Div, ast.Mod)
_CMP_OPS = (ast.Eq, ast.NotEq, ast.Lt, ast.LtE, ast.Gt, ast.GtE, ast.In, ast.NotIn, ast.Is, ast.IsNot)
_CONSTANT_TYPES = (str, int, float, bool, type(None))


class ExpressionEvaluationError(Exception):
    """Raised when a compiled expression fails on concrete values."""


class CompiledExpression:
    """A validated expression ready to evaluate against many rows."""

    def __init__(self, source: str, tree: ast.Expression, names: FrozenSet[str], calls: FrozenSet[str]):
        self.source = source
        self.tree = tree
        self.names = names
        self.calls = calls

    @property
    def uses_aggregates(self) -> bool:
        return bool(self.calls & AGGREGATE_FUNCTIONS)

    @property
    def uses_cross_table(self) -> bool:
        return bool(self.calls & CROSS_TABLE_FUNCTIONS)

    def evaluate(self, context: Mapping[str, Any], functions: Mapping[str, Callable]) -> Any:
        """
        Evaluate the expression.

        Args:
            context: Name -> value (row fields, thresholds, rule constants)
            functions: Name -> callable for the helpers this expression may call

        Raises:
            ExpressionEvaluationError: Operand types do not fit the operation
        """
        try:
            return _Evaluator(context, functions).visit(self.tree.body)
        except (TypeError, ValueError, ArithmeticError, re.error) as e:
            raise ExpressionEvaluationError(f"{type(e).__name__}: {e}") from e

    def __repr__(self):
        return f"<CompiledExpression({self.source!r})>"


class _Validator(ast.NodeVisitor):
    """Walks a parsed expression and rejects anything outside the whitelist."""

    def __init__(self):
        self.names: Set[str] = set()
        self.calls: Set[str] = set()

    def generic_visit(self, node):
        raise RuleExpressionError(f"Unsupported syntax: {type(node).__name__}")

    def visit_Expression(self, node):
        self.visit(node.body)

    def visit_Constant(self, node):
        if not isinstance(node.value, _CONSTANT_TYPES):
            raise RuleExpressionError(f"Unsupported literal: {node.value!r}")

    def visit_Name(self, node):
        if not isinstance(node.ctx, ast.Load):
            raise RuleExpressionError('Assignment is not allowed')
        if node.id.startswith('_'):
            raise RuleExpressionError(f"Name not allowed: {node.id}")
        self.names.add(node.id)

    def visit_BoolOp(self, node):
        for value in node.values:
            self.visit(value)

    def visit_UnaryOp(self, node):
        if not isinstance(node.op, _UNARY_OPS):
            raise RuleExpressionError(f"Unsupported operator: {type(node.op).__name__}")
        self.visit(node.operand)

    def visit_BinOp(self, node):
        if not isinstance(node.op, _BIN_OPS):
            raise RuleExpressionError(f"Unsupported operator: {type(node.op).__name__}")
        self.visit(node.left)
        self.visit(node.right)

    def visit_Compare(self, node):
        for op in node.ops:
            if not isinstance(op, _CMP_OPS):
                raise RuleExpressionError(f"Unsupported comparison: {type(op).__name__}")
        self.visit(node.left)
        for comparator in node.comparators:
            self.visit(comparator)

    def visit_Call(self, node):
        if not isinstance(node.func, ast.Name):
            raise RuleExpressionError('Only direct calls to helper functions are allowed')
        if node.func.id not in ALLOWED_FUNCTIONS:
            raise RuleExpressionError(f"Unknown function: {node.func.id}")
        if node.keywords:
            raise RuleExpressionError(f"Keyword arguments are not allowed in {node.func.id}()")
        self.calls.add(node.func.id)
        for arg in node.args:
            if isinstance(arg, ast.Starred):
                raise RuleExpressionError('Star arguments are not allowed')
            self.visit(arg)

    def _visit_sequence(self, node):
        for element in node.elts:
            self.visit(element)

    visit_List = _visit_sequence
    visit_Tuple = _visit_sequence
    visit_Set = _visit_sequence


@lru_cache(maxsize=512)
def compile_expression(source: str) -> CompiledExpression:
    """
    Parse and validate an expression.

    Raises:
        RuleExpressionError: Syntax error or a construct outside the whitelist
    """
    if not source or not source.strip():
        raise RuleExpressionError('Expression is empty')
    try:
        tree = ast.parse(source.strip(), mode='eval')
    except SyntaxError as e:
        raise RuleExpressionError(f"Syntax error: {e.msg}", expression=source) from e
    validator = _Validator()
    try:
        validator.visit(tree)
    except RuleExpressionError as e:
        raise RuleExpressionError(e.message, expression=source) from None
    return CompiledExpression(source, tree, frozenset(validator.names), frozenset(validator.calls))


def _numeric_pair(left, right):
    # Decimal and float do not mix in arithmetic
    if isinstance(left, Decimal) and isinstance(right, float):
        return float(left), right
    if isinstance(left, float) and isinstance(right, Decimal):
        return left, float(right)
    return left, right


class _Evaluator:
    def __init__(self, context: Mapping[str, Any], functions: Mapping[str, Callable]):
        self.context = context
        self.functions = functions

    def visit(self, node):
        return getattr(self, f"visit_{type(node).__name__}")(node)

    def visit_Constant(self, node):
        return node.value

    def visit_Name(self, node):
        return self.context.get(node.id)

    def visit_BoolOp(self, node):
        if isinstance(node.op, ast.And):
            result = True
            for value in node.values:
                result = self.visit(value)
                if not result:
                    return result
            return result
        result = False
        for value in node.values:
            result = self.visit(value)
            if result:
                return result
        return result

    def visit_UnaryOp(self, node):
        operand = self.visit(node.operand)
        if isinstance(node.op, ast.Not):
            return not operand
        if operand is None:
            return None
        return -operand if isinstance(node.op, ast.USub) else +operand

    def visit_BinOp(self, node):
        left = self.visit(node.left)
        right = self.visit(node.right)
        # Null propagates through arithmetic
        if left is None or right is None:
            return None
        left, right = _numeric_pair(left, right)
        if isinstance(node.op, ast.Add):
            return left + right
        if isinstance(node.op, ast.Sub):
            return left - right
        if isinstance(node.op, ast.Mult):
            return left * right
        if right == 0:
            return None
        if isinstance(node.op, ast.Div):
            return left / right
        return left % right

    def visit_Compare(self, node):
        left = self.visit(node.left)
        for op, comparator in zip(node.ops, node.comparators):
            right = self.visit(comparator)
            if not _compare(op, left, right):
                return False
            left = right
        return True

    def visit_Call(self, node):
        name = node.func.id
        func = self.functions.get(name)
        if func is None:
            raise ValueError(f"{name}() is not available here")
        return func(*[self.visit(arg) for arg in node.args])

    def visit_List(self, node):
        return [self.visit(e) for e in node.elts]

    def visit_Tuple(self, node):
        return tuple(self.visit(e) for e in node.elts)

    def visit_Set(self, node):
        return {self.visit(e) for e in node.elts}


def _compare(op, left, right) -> bool:
    if isinstance(op, ast.Is):
        return left is right
    if isinstance(op, ast.IsNot):
        return left is not right
    if isinstance(op, ast.In):
        return right is not None and left in right
    if isinstance(op, ast.NotIn):
        return right is None or left not in right
    if isinstance(op, (ast.Eq, ast.NotEq)):
        left, right = _coerce_for_compare(left, right)
        equal = left == right
        return equal if isinstance(op, ast.Eq) else not equal
    # Ordering against null is never true
    if left is None or right is None:
        return False
    left, right = _coerce_for_compare(left, right)
    if isinstance(op, ast.Lt):
        return left < right
    if isinstance(op, ast.LtE):
        return left <= right
    if isinstance(op, ast.Gt):
        return left > right
    return left >= right


def _coerce_for_compare(left, right):
    # Numeric text from a spreadsheet compares as a number
    if isinstance(left, str) and _is_numeric(right):
        converted = number(left)
        if converted is not None:
            return _numeric_pair(converted, right)
    if isinstance(right, str) and _is_numeric(left):
        converted = number(right)
        if converted is not None:
            return _numeric_pair(left, converted)
    return _numeric_pair(left, right)


def _is_numeric(value) -> bool:
    return isinstance(value, (int, float, Decimal)) and not isinstance(value, bool)


# ---------------------------------------------------------------------------
# Row-level helper functions
# ---------------------------------------------------------------------------

def is_null(value) -> bool:
    return value is None


def not_null(value) -> bool:
    return value is not None


def is_blank(value) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def length(value) -> int:
    return 0 if value is None else len(str(value))


@lru_cache(maxsize=256)
def _pattern(pattern: str):
    if len(pattern) > MAX_PATTERN_LENGTH:
        raise ValueError(f"pattern longer than {MAX_PATTERN_LENGTH} characters")
    if _NESTED_QUANTIFIER.search(pattern):
        raise ValueError(f"nested quantifier in pattern {pattern!r}")
    return re.compile(pattern)


def matches(value, pattern) -> bool:
    """Full-string regex match; null never matches."""
    if value is None:
        return False
    compiled = _pattern(str(pattern))
    text = str(value)
    if len(text) > MAX_MATCH_LENGTH:
        return False
    return compiled.fullmatch(text) is not None


def number(value) -> Optional[Decimal]:
    """Numeric value of a cell, None when it is not a number."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, Decimal):
        return value
    try:
        if isinstance(value, float):
            parsed = Decimal(repr(value))
        else:
            parsed = Decimal(str(value).strip().replace(',', ''))
    except InvalidOperation:
        return None
    return parsed if parsed.is_finite() else None


def is_number(value) -> bool:
    return number(value) is not None


def is_date(value, fmt: str = '%Y%m%d') -> bool:
    if value is None:
        return False
    try:
        datetime.strptime(str(value), fmt)
    except ValueError:
        return False
    return True


ROW_FUNCTION_TABLE: Dict[str, Callable] = {
    'is_null': is_null,
    'not_null': not_null,
    'is_blank': is_blank,
    'length': length,
    'matches': matches,
    'is_number': is_number,
    'is_date': is_date,
    'number': number,
}


class TableAggregator:
    """
    Running per-field aggregates for one table, fed row by row.

    Provides the table-level helper functions (null_rate, blank_rate,
    distinct_count, sum_of) once every row has been added.
    """

    def __init__(self, fields):
        self.fields = list(fields)
        self.row_count = 0
        self._nulls = {f: 0 for f in self.fields}
        self._blanks = {f: 0 for f in self.fields}
        self._distinct = {f: set() for f in self.fields}
        self._sums = {f: Decimal(0) for f in self.fields}

    def add(self, values: Mapping[str, Any]):
        self.row_count += 1
        for f in self.fields:
            value = values.get(f)
            if value is None:
                self._nulls[f] += 1
                self._blanks[f] += 1
                continue
            if is_blank(value):
                self._blanks[f] += 1
            self._distinct[f].add(value)
            numeric = number(value)
            if numeric is not None:
                self._sums[f] += numeric

    def _check(self, field_name):
        if field_name not in self._nulls:
            raise ValueError(f"Unknown field: {field_name}")

    def null_rate(self, field_name) -> float:
        self._check(field_name)
        return self._nulls[field_name] / self.row_count if self.row_count else 0.0

    def blank_rate(self, field_name) -> float:
        self._check(field_name)
        return self._blanks[field_name] / self.row_count if self.row_count else 0.0

    def distinct_count(self, field_name) -> int:
        self._check(field_name)
        return len(self._distinct[field_name])

    def sum_of(self, field_name) -> Decimal:
        self._check(field_name)
        return self._sums[field_name]

    def functions(self) -> Dict[str, Callable]:
        return {
            'null_rate': self.null_rate,
            'blank_rate': self.blank_rate,
            'distinct_count': self.distinct_count,
            'sum_of': self.sum_of,
        }
