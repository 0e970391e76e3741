"""Formula engine for Sheetopia grids.

Supports: function calls SUM, AVERAGE, MAX, MIN, COUNT over cell refs and
ranges (A1, A1:B3, several comma-separated), TRIM/UPPER/LOWER on a single
cell, and arithmetic (+, -, *, /, parentheses) over cell refs.
References are relative unless pinned with `$` ($A$1, A$1, $A1).

evaluate_formula() never raises. Failures are returned as cell text:
  Error: Unknown function <NAME>
  Error: <NAME> requires a cell reference
  Error: Invalid range: <token>
  Error: Formula evaluation failed
Arithmetic that cannot be evaluated, and any non-finite result, yields 0.
"""

import logging
import math
import re
from typing import Callable, Dict, List, Mapping, NamedTuple, Optional, Sequence, Tuple

from sheetopia.models import Scalar

logger = logging.getLogger(__name__)

Anchor = Tuple[int, int]


# ── Error types ───────────────────────────────────────────────────

class FormulaError(Exception):
    """Base for all formula errors. `as_value()` is the cell display string."""

    def as_value(self) -> str:
        return f"Error: {self}"

class FormulaSyntaxError(FormulaError):
    pass

class DivisionByZeroError(FormulaError):
    pass

class InvalidRangeError(FormulaError):
    pass


# ── Column codec ──────────────────────────────────────────────────

def col_to_index(col_str: str) -> int:
    """A->0, B->1, ..., Z->25, AA->26."""
    n = 0
    for ch in col_str.upper():
        n = n * 26 + (ord(ch) - ord('A') + 1)
    return n - 1


def index_to_col(idx: int) -> str:
    """0->A, 1->B, ..., 25->Z, 26->AA."""
    if idx < 0:
        raise ValueError(f"Column index must be >= 0: {idx}")
    result = ""
    idx += 1
    while idx > 0:
        idx, rem = divmod(idx - 1, 26)
        result = chr(rem + ord('A')) + result
    return result


def format_result(value: float) -> str:
    """Format a numeric result for cell display."""
    if isinstance(value, int) or (math.isfinite(value) and value == int(value) and abs(value) < 1e15):
        return str(int(value))
    return f"{value:.10g}"


# ── References ────────────────────────────────────────────────────

_CELL_REF_RE = re.compile(r'^(\$?)([A-Z]+)(\$?)([0-9]+)$')
_REF_TOKEN_RE = re.compile(r'(\$?[A-Z]+\$?[0-9]+)')


class Reference(NamedTuple):
    """A parsed cell reference.

    Absolute axes hold grid coordinates. Relative axes hold an offset from
    the anchor the reference was parsed at (or the grid coordinate when it
    was parsed without one).
    """
    row: int
    col: int
    row_absolute: bool = False
    col_absolute: bool = False


def parse_cell_ref(token: str, anchor: Optional[Anchor] = None) -> Optional[Reference]:
    """'$A$1' -> Reference(0, 0, True, True). Returns None if token is not a single ref."""
    m = _CELL_REF_RE.match(token)
    if not m:
        return None
    col_absolute = m.group(1) == '$'
    row_absolute = m.group(3) == '$'
    row = int(m.group(4)) - 1
    col = col_to_index(m.group(2))
    if anchor is not None:
        anchor_row, anchor_col = anchor
        if not row_absolute:
            row -= anchor_row
        if not col_absolute:
            col -= anchor_col
    return Reference(row, col, row_absolute, col_absolute)


def resolve_ref(ref: Reference, anchor: Anchor) -> Tuple[int, int]:
    """Turn a reference parsed at *anchor* back into (row, col) grid coordinates."""
    anchor_row, anchor_col = anchor
    row = ref.row if ref.row_absolute else anchor_row + ref.row
    col = ref.col if ref.col_absolute else anchor_col + ref.col
    return row, col


class SheetValues:
    """Read-only view of cell values that a formula is evaluated against.

    Coordinates outside the grid, and cells with no entry, read as None.
    """
    __slots__ = ('_values', 'num_rows', 'num_cols')

    def __init__(self, values: Mapping[Tuple[int, int], Scalar], num_rows: int, num_cols: int):
        self._values = dict(values)
        self.num_rows = num_rows
        self.num_cols = num_cols

    @classmethod
    def from_rows(cls, rows: Sequence[Sequence[Scalar]]) -> "SheetValues":
        """Build a view from a row-major 2-D list."""
        values = {}
        for r, row in enumerate(rows):
            for c, value in enumerate(row):
                if value is not None:
                    values[(r, c)] = value
        num_cols = max((len(row) for row in rows), default=0)
        return cls(values, len(rows), num_cols)

    def get(self, row: int, col: int) -> Scalar:
        if not (0 <= row < self.num_rows and 0 <= col < self.num_cols):
            return None
        return self._values.get((row, col))


# ── Tokenizer ─────────────────────────────────────────────────────

_FUNC_RE = re.compile(r'^([A-Z_]+)\((.*)\)$', re.DOTALL)


def split_function_call(expression: str) -> Optional[Tuple[str, str]]:
    """'SUM(A1:B2,C3)' -> ('SUM', 'A1:B2,C3'). None when not a single call."""
    m = _FUNC_RE.match(expression)
    if not m:
        return None
    return m.group(1), m.group(2)


def parse_parameters(param_str: str) -> List[str]:
    """Split an argument list on top-level commas, keeping nested calls intact."""
    params: List[str] = []
    current = ''
    depth = 0
    for ch in param_str:
        if ch == '(':
            depth += 1
        elif ch == ')':
            depth -= 1
        elif ch == ',' and depth == 0:
            params.append(current.strip())
            current = ''
            continue
        current += ch
    if current.strip():
        params.append(current.strip())
    return params


# ── Range extraction ──────────────────────────────────────────────

def _clamp(value: int, upper: int) -> int:
    return max(0, min(value, upper - 1))


def extract_range(param: str, values: SheetValues, anchor: Anchor) -> List[List[Scalar]]:
    """Return the row-major block of values denoted by 'A1' or 'A1:B3'.

    Range endpoints are clamped to the grid and ordered so that a range
    written backwards (B3:A1) covers the same block.
    Raises InvalidRangeError for anything that is not a ref or a ref pair.
    """
    if ':' not in param:
        ref = parse_cell_ref(param.strip(), anchor)
        if ref is None:
            raise InvalidRangeError(f"Invalid range: {param}")
        return [[values.get(*resolve_ref(ref, anchor))]]

    parts = param.split(':')
    if len(parts) != 2:
        raise InvalidRangeError(f"Invalid range: {param}")
    start = parse_cell_ref(parts[0].strip(), anchor)
    end = parse_cell_ref(parts[1].strip(), anchor)
    if start is None or end is None:
        raise InvalidRangeError(f"Invalid range: {param}")

    r1, c1 = resolve_ref(start, anchor)
    r2, c2 = resolve_ref(end, anchor)
    r1, r2 = _clamp(r1, values.num_rows), _clamp(r2, values.num_rows)
    c1, c2 = _clamp(c1, values.num_cols), _clamp(c2, values.num_cols)
    if r1 > r2:
        r1, r2 = r2, r1
    if c1 > c2:
        c1, c2 = c2, c1

    return [
        [values.get(r, c) for c in range(c1, c2 + 1)]
        for r in range(r1, r2 + 1)
    ]


def extract_values(params: Sequence[str], values: SheetValues, anchor: Anchor) -> List[Scalar]:
    """Flatten every parameter's block, in argument order, row-major within a range."""
    flat: List[Scalar] = []
    for param in params:
        if ':' not in param and parse_cell_ref(param, anchor) is None:
            continue  # not a reference; contributes nothing
        for row in extract_range(param, values, anchor):
            flat.extend(row)
    return flat


# ── Aggregates ────────────────────────────────────────────────────

_NUMERIC_PREFIX_RE = re.compile(r'^\s*([+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?)')


def to_number(value: Scalar) -> Optional[float]:
    """Numeric view of a cell value, or None if it has none.

    Strings count when they start with a number ('12px' -> 12.0).
    """
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return value
    if isinstance(value, str):
        m = _NUMERIC_PREFIX_RE.match(value)
        if m:
            return float(m.group(1))
    return None


def _numbers(items: Sequence[Scalar]) -> List[float]:
    result = []
    for item in items:
        n = to_number(item)
        if n is not None:
            result.append(n)
    return result


def sum_values(items: Sequence[Scalar]) -> float:
    return sum(_numbers(items))


def average_values(items: Sequence[Scalar]) -> float:
    nums = _numbers(items)
    if not nums:
        return 0
    return sum(nums) / len(nums)


def max_values(items: Sequence[Scalar]) -> float:
    nums = _numbers(items)
    return max(nums) if nums else 0


def min_values(items: Sequence[Scalar]) -> float:
    nums = _numbers(items)
    return min(nums) if nums else 0


def count_values(items: Sequence[Scalar]) -> int:
    return len(_numbers(items))


AGGREGATES: Dict[str, Callable[[Sequence[Scalar]], float]] = {
    'SUM': sum_values,
    'AVERAGE': average_values,
    'MAX': max_values,
    'MIN': min_values,
    'COUNT': count_values,
}

TEXT_FUNCTIONS: Dict[str, Callable[[str], str]] = {
    'TRIM': str.strip,
    'UPPER': str.upper,
    'LOWER': str.lower,
}


def _apply_text_function(name: str, params: List[str], values: SheetValues, anchor: Anchor) -> Scalar:
    if len(params) == 1:
        ref = parse_cell_ref(params[0], anchor)
        if ref is not None:
            value = values.get(*resolve_ref(ref, anchor))
            return TEXT_FUNCTIONS[name](value) if isinstance(value, str) else value
    return f"Error: {name} requires a cell reference"


# ── Arithmetic parser (recursive descent, no eval()) ──────────────

class _Parser:
    """Parses and evaluates: +, -, *, /, unary +/-, parentheses, numbers."""
    __slots__ = ('text', 'pos', 'depth')

    MAX_NESTING = 100

    def __init__(self, text: str):
        self.text = re.sub(r'\s+', '', text)
        self.pos = 0
        self.depth = 0

    def _peek(self):
        return self.text[self.pos] if self.pos < len(self.text) else None

    def _eat(self, expected=None):
        if self.pos >= len(self.text):
            raise FormulaSyntaxError("Unexpected end of expression")
        ch = self.text[self.pos]
        if expected and ch != expected:
            raise FormulaSyntaxError(f"Expected '{expected}', got '{ch}'")
        self.pos += 1
        return ch

    def _number(self) -> float:
        start = self.pos
        dot_count = 0
        while self.pos < len(self.text) and (self.text[self.pos].isdigit() or self.text[self.pos] == '.'):
            if self.text[self.pos] == '.':
                dot_count += 1
                if dot_count > 1:
                    raise FormulaSyntaxError(f"Invalid number at pos {start}")
            self.pos += 1
        if self.pos == start or self.text[start:self.pos] == '.':
            raise FormulaSyntaxError(
                f"Expected number at pos {start}"
                + (f", got '{self.text[start]}'" if start < len(self.text) else "")
            )
        # exponent, as produced by str() of very large/small floats
        if self._peek() in ('e', 'E'):
            mark = self.pos
            self.pos += 1
            if self._peek() in ('+', '-'):
                self.pos += 1
            digits = self.pos
            while self.pos < len(self.text) and self.text[self.pos].isdigit():
                self.pos += 1
            if self.pos == digits:
                self.pos = mark
        return float(self.text[start:self.pos])

    def _factor(self) -> float:
        self.depth += 1
        if self.depth > self.MAX_NESTING:
            raise FormulaSyntaxError("Expression nested too deeply")
        try:
            if self._peek() == '(':
                self._eat('(')
                val = self._expr()
                self._eat(')')
                return val
            if self._peek() == '-':
                self._eat()
                return -self._factor()
            if self._peek() == '+':
                self._eat()
                return self._factor()
            return self._number()
        finally:
            self.depth -= 1

    def _term(self) -> float:
        left = self._factor()
        while self._peek() in ('*', '/'):
            op = self._eat()
            right = self._factor()
            if op == '*':
                left *= right
            else:
                if right == 0:
                    raise DivisionByZeroError("Division by zero")
                left /= right
        return left

    def _expr(self) -> float:
        left = self._term()
        while self._peek() in ('+', '-'):
            op = self._eat()
            right = self._term()
            left = left + right if op == '+' else left - right
        return left

    def parse(self) -> float:
        if not self.text:
            raise FormulaSyntaxError("Empty expression")
        result = self._expr()
        if self.pos != len(self.text):
            raise FormulaSyntaxError(f"Unexpected '{self.text[self.pos]}' at pos {self.pos}")
        return result


def _operand(value: Scalar) -> str:
    n = to_number(value)
    if n is None or not math.isfinite(n):
        return "0"
    return str(n)


def evaluate_arithmetic(expression: str, values: SheetValues, anchor: Anchor) -> float:
    """Substitute every cell ref with its numeric value and evaluate the result.

    Missing or non-numeric cells read as 0; any failure evaluates to 0.
    """
    def _ref_sub(m):
        ref = parse_cell_ref(m.group(1), anchor)
        return _operand(values.get(*resolve_ref(ref, anchor)))

    expr = _REF_TOKEN_RE.sub(_ref_sub, expression)
    try:
        result = _Parser(expr).parse()
    except FormulaError as e:
        logger.debug("Arithmetic %r evaluated to 0: %s", expression, e)
        return 0
    if not math.isfinite(result):
        return 0
    return result


# ── Formula evaluation ────────────────────────────────────────────

def _normalize(value: Scalar) -> Scalar:
    if isinstance(value, float) and not math.isfinite(value):
        return 0
    if isinstance(value, float) and value.is_integer() and abs(value) < 1e15:
        return int(value)
    return value


def evaluate_formula(formula: Scalar, values: SheetValues, row: int, col: int) -> Scalar:
    """Evaluate *formula* typed at (row, col) against *values*.

    Input that does not start with '=' is returned unchanged.
    """
    if not isinstance(formula, str) or not formula.startswith('='):
        return formula

    anchor = (row, col)
    expression = formula[1:].strip().upper()
    try:
        call = split_function_call(expression)
        if call is None:
            return _normalize(evaluate_arithmetic(expression, values, anchor))

        name, param_str = call
        params = parse_parameters(param_str)
        if name in AGGREGATES:
            return _normalize(AGGREGATES[name](extract_values(params, values, anchor)))
        if name in TEXT_FUNCTIONS:
            return _apply_text_function(name, params, values, anchor)
        return f"Error: Unknown function {name}"
    except FormulaError as e:
        logger.debug("Formula %r at (%d, %d) failed: %s", formula, row, col, e)
        return e.as_value()
    except Exception:
        logger.exception("Formula evaluation error in (%d, %d): %r", row, col, formula)
        return "Error: Formula evaluation failed"
