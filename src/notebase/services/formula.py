"""Spreadsheet-style formulas for Base views.

Supports cell references (``A1``, ``AB12``), ranges (``A1:C10``, ``B:B``,
``3:3``), arithmetic ``+ - * /``, comparisons ``= <> < <= > >=`` and a set
of built-in functions (numeric, text, date and ``IF``).

Evaluation never raises: :meth:`CellGrid.evaluate` returns a
:class:`CellValue` whose kind is ``error`` when anything goes wrong.
"""

import calendar
import logging
import math
import re
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal, localcontext
from enum import Enum
from typing import Callable, Dict, List, Optional, Set, Union

from notebase.exceptions import FormulaError
from notebase.models.properties import NUMBER_EPSILON, format_number

logger = logging.getLogger(__name__)

CIRCULAR = "circular"

# Columns considered by a whole-row range such as 3:3
ROW_RANGE_COLUMNS = 26

# Longest string REPT may build
MAX_TEXT_LENGTH = 32767


# ----------------------------------------------------------------------
# Addresses
# ----------------------------------------------------------------------

def col_to_letters(col: int) -> str:
    """0 -> A, 25 -> Z, 26 -> AA, 701 -> ZZ."""
    if col < 0:
        raise ValueError(f"Column index must be >= 0, got {col}")
    letters = ""
    n = col + 1
    while n > 0:
        n, rem = divmod(n - 1, 26)
        letters = chr(ord("A") + rem) + letters
    return letters


def letters_to_col(letters: str) -> Optional[int]:
    """A -> 0, Z -> 25, AA -> 26; None for anything that is not letters."""
    letters = letters.strip().upper()
    if not letters or not letters.isalpha() or not letters.isascii():
        return None
    n = 0
    for ch in letters:
        n = n * 26 + (ord(ch) - ord("A") + 1)
    return n - 1


_CELL_RE = re.compile(r"^([A-Za-z]+)(\d+)$")


@dataclass(frozen=True)
class CellRef:
    """A cell address; ``col`` is 0-based, ``row`` 1-based like spreadsheets."""

    col: int
    row: int

    @classmethod
    def parse(cls, text: str) -> Optional["CellRef"]:
        m = _CELL_RE.match(text.strip())
        if not m:
            return None
        col = letters_to_col(m.group(1))
        row = int(m.group(2))
        if col is None or row < 1:
            return None
        return cls(col, row)

    def __str__(self) -> str:
        return f"{col_to_letters(self.col)}{self.row}"


class RangeKind(str, Enum):
    SINGLE = "single"
    RANGE = "range"
    COLUMN = "column"
    ROW = "row"


@dataclass(frozen=True)
class CellRange:
    kind: RangeKind
    start: Optional[CellRef] = None
    end: Optional[CellRef] = None
    col: Optional[int] = None
    col_end: Optional[int] = None
    row: Optional[int] = None

    @classmethod
    def parse(cls, text: str) -> Optional["CellRange"]:
        text = text.strip().upper()
        if ":" not in text:
            ref = CellRef.parse(text)
            return cls(RangeKind.SINGLE, start=ref, end=ref) if ref else None
        left, _, right = text.partition(":")
        if left.isalpha() and right.isalpha():
            start_col, end_col = letters_to_col(left), letters_to_col(right)
            if start_col is None or end_col is None:
                return None
            return cls(
                RangeKind.COLUMN,
                col=min(start_col, end_col),
                col_end=max(start_col, end_col),
            )
        if left.isdigit() and right.isdigit():
            if left == right and int(left) > 0:
                return cls(RangeKind.ROW, row=int(left))
            return None
        start, end = CellRef.parse(left), CellRef.parse(right)
        if start is None or end is None:
            return None
        return cls(RangeKind.RANGE, start=start, end=end)

    def cells(self, max_row: int, max_col: int = ROW_RANGE_COLUMNS - 1) -> List[CellRef]:
        """Addresses covered by the range; open ends stop at ``max_row``."""
        if self.kind is RangeKind.SINGLE:
            return [self.start]
        if self.kind is RangeKind.COLUMN:
            last_col = self.col if self.col_end is None else self.col_end
            return [
                CellRef(c, r)
                for c in range(self.col, last_col + 1)
                for r in range(1, max_row + 1)
            ]
        if self.kind is RangeKind.ROW:
            last = max(max_col, ROW_RANGE_COLUMNS - 1)
            return [CellRef(c, self.row) for c in range(0, last + 1)]
        rows = range(min(self.start.row, self.end.row), max(self.start.row, self.end.row) + 1)
        cols = range(min(self.start.col, self.end.col), max(self.start.col, self.end.col) + 1)
        return [CellRef(c, r) for c in cols for r in rows]

    def __str__(self) -> str:
        if self.kind is RangeKind.SINGLE:
            return str(self.start)
        if self.kind is RangeKind.COLUMN:
            last_col = self.col if self.col_end is None else self.col_end
            return f"{col_to_letters(self.col)}:{col_to_letters(last_col)}"
        if self.kind is RangeKind.ROW:
            return f"{self.row}:{self.row}"
        return f"{self.start}:{self.end}"


# ----------------------------------------------------------------------
# Values
# ----------------------------------------------------------------------

class CellKind(str, Enum):
    NUMBER = "number"
    TEXT = "text"
    EMPTY = "empty"
    ERROR = "error"


@dataclass(frozen=True)
class CellValue:
    kind: CellKind = CellKind.EMPTY
    value: Union[float, str, None] = None

    @classmethod
    def number(cls, n: float) -> "CellValue":
        return cls(CellKind.NUMBER, float(n))

    @classmethod
    def text(cls, s: str) -> "CellValue":
        return cls(CellKind.TEXT, str(s))

    @classmethod
    def empty(cls) -> "CellValue":
        return cls(CellKind.EMPTY, None)

    @classmethod
    def error(cls, message: str) -> "CellValue":
        return cls(CellKind.ERROR, message)

    @classmethod
    def from_input(cls, raw: Optional[str]) -> "CellValue":
        """Grid value for a displayed cell string: numeric strings become numbers."""
        if raw is None or not str(raw).strip():
            return cls.empty()
        text = str(raw).strip()
        try:
            return cls.number(float(text))
        except ValueError:
            return cls.text(text)

    @property
    def is_error(self) -> bool:
        return self.kind is CellKind.ERROR

    @property
    def is_empty(self) -> bool:
        return self.kind is CellKind.EMPTY

    def as_number(self) -> Optional[float]:
        if self.kind is CellKind.NUMBER:
            return self.value
        if self.kind is CellKind.EMPTY:
            return 0.0
        if self.kind is CellKind.TEXT:
            try:
                return float(self.value.strip())
            except ValueError:
                return None
        return None

    def as_bool(self) -> bool:
        if self.kind is CellKind.NUMBER:
            return self.value != 0
        if self.kind is CellKind.TEXT:
            return bool(self.value) and self.value.lower() != "false"
        return False

    def __str__(self) -> str:
        if self.kind is CellKind.NUMBER:
            return format_number(self.value)
        if self.kind is CellKind.TEXT:
            return self.value
        if self.kind is CellKind.ERROR:
            return f"#ERROR: {self.value}"
        return ""


# ----------------------------------------------------------------------
# Tokens and syntax tree
# ----------------------------------------------------------------------

_TOKEN_RE = re.compile(
    r"""\s*(?:
        (?P<range>[A-Za-z]{1,3}\d+:[A-Za-z]{1,3}\d+|[A-Za-z]{1,3}:[A-Za-z]{1,3}|\d+:\d+)
      | (?P<number>\d+(?:\.\d*)?|\.\d+)
      | (?P<string>"[^"]*")
      | (?P<cell>[A-Za-z]{1,3}\d+)(?![A-Za-z0-9_(])
      | (?P<ident>[A-Za-z_][A-Za-z0-9_]*)
      | (?P<op><>|<=|>=|[-+*/(),=<>])
    )""",
    re.VERBOSE,
)


@dataclass
class Token:
    kind: str
    text: str


def tokenize(formula: str) -> List[Token]:
    """Split a formula (without its leading ``=``) into tokens."""
    tokens: List[Token] = []
    pos = 0
    text = formula.rstrip()
    while pos < len(text):
        m = _TOKEN_RE.match(text, pos)
        if not m or m.end() == pos:
            raise FormulaError(f"Unexpected character {text[pos]!r}", formula=formula)
        kind = m.lastgroup
        value = m.group(kind)
        if kind == "string":
            value = value[1:-1]
        tokens.append(Token(kind, value))
        pos = m.end()
    return tokens


@dataclass
class Num:
    value: float


@dataclass
class Str:
    value: str


@dataclass
class Ref:
    cell: CellRef


@dataclass
class Rng:
    cells: CellRange


@dataclass
class Neg:
    operand: "Expr"


@dataclass
class BinOp:
    op: str
    left: "Expr"
    right: "Expr"


@dataclass
class Call:
    name: str
    args: List["Expr"] = field(default_factory=list)


Expr = Union[Num, Str, Ref, Rng, Neg, BinOp, Call]

_COMPARISON_OPS = ("=", "<>", "<", "<=", ">", ">=")


class Parser:
    """Recursive descent: comparison < additive < multiplicative < unary < primary."""

    def __init__(self, tokens: List[Token], formula: str = ""):
        self.tokens = tokens
        self.pos = 0
        self.formula = formula

    def _peek(self) -> Optional[Token]:
        return self.tokens[self.pos] if self.pos < len(self.tokens) else None

    def _next(self) -> Token:
        token = self._peek()
        if token is None:
            raise FormulaError("Unexpected end of formula", formula=self.formula)
        self.pos += 1
        return token

    def _at_op(self, *ops: str) -> bool:
        token = self._peek()
        return token is not None and token.kind == "op" and token.text in ops

    def parse(self) -> Expr:
        if not self.tokens:
            raise FormulaError("Empty formula", formula=self.formula)
        expr = self._comparison()
        if self._peek() is not None:
            raise FormulaError(
                f"Unexpected token {self._peek().text!r}", formula=self.formula
            )
        return expr

    def _comparison(self) -> Expr:
        left = self._additive()
        while self._at_op(*_COMPARISON_OPS):
            op = self._next().text
            left = BinOp(op, left, self._additive())
        return left

    def _additive(self) -> Expr:
        left = self._multiplicative()
        while self._at_op("+", "-"):
            op = self._next().text
            left = BinOp(op, left, self._multiplicative())
        return left

    def _multiplicative(self) -> Expr:
        left = self._unary()
        while self._at_op("*", "/"):
            op = self._next().text
            left = BinOp(op, left, self._unary())
        return left

    def _unary(self) -> Expr:
        if self._at_op("-"):
            self._next()
            return Neg(self._unary())
        if self._at_op("+"):
            self._next()
            return self._unary()
        return self._primary()

    def _primary(self) -> Expr:
        token = self._next()
        if token.kind == "number":
            return Num(float(token.text))
        if token.kind == "string":
            return Str(token.text)
        if token.kind == "cell":
            return Ref(CellRef.parse(token.text))
        if token.kind == "range":
            parsed = CellRange.parse(token.text)
            if parsed is None:
                raise FormulaError(f"Invalid range {token.text!r}", formula=self.formula)
            return Rng(parsed)
        if token.kind == "ident":
            name = token.text.upper()
            if self._at_op("("):
                return self._call(name)
            if name in ("TRUE", "FALSE"):
                return Num(1.0 if name == "TRUE" else 0.0)
            raise FormulaError(f"Unknown name {token.text!r}", formula=self.formula)
        if token.kind == "op" and token.text == "(":
            expr = self._comparison()
            if not self._at_op(")"):
                raise FormulaError("Missing closing parenthesis", formula=self.formula)
            self._next()
            return expr
        raise FormulaError(f"Unexpected token {token.text!r}", formula=self.formula)

    def _call(self, name: str) -> Call:
        self._next()  # (
        args: List[Expr] = []
        if self._at_op(")"):
            self._next()
            return Call(name, args)
        while True:
            args.append(self._comparison())
            if self._at_op(","):
                self._next()
                continue
            if self._at_op(")"):
                self._next()
                return Call(name, args)
            raise FormulaError(f"Expected ',' or ')' in {name}", formula=self.formula)


def parse_formula(formula: str) -> Expr:
    body = formula.strip()
    if body.startswith("="):
        body = body[1:]
    return Parser(tokenize(body), formula).parse()


# ----------------------------------------------------------------------
# Dates
# ----------------------------------------------------------------------

_DATETIME_FORMATS = (
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%d %H:%M",
    "%Y-%m-%dT%H:%M:%S",
    "%Y-%m-%dT%H:%M:%S.%f",
    "%Y-%m-%dT%H:%M",
    "%d/%m/%Y %H:%M:%S",
    "%d/%m/%Y %H:%M",
)
_DATE_FORMATS = ("%Y-%m-%d", "%d/%m/%Y", "%m/%d/%Y", "%Y/%m/%d", "%d-%m-%Y")

# Spreadsheet-style tokens for DATEFORMAT, longest first
_DATE_TOKENS = (
    ("YYYY", "%Y"),
    ("YY", "%y"),
    ("MMMM", "%B"),
    ("MMM", "%b"),
    ("MM", "%m"),
    ("DD", "%d"),
    ("HH", "%H"),
    ("mm", "%M"),
    ("ss", "%S"),
)


def parse_datetime(text: str) -> Optional[datetime]:
    text = text.strip()
    if not text:
        return None
    candidate = text.replace("Z", "+00:00")
    try:
        return datetime.fromisoformat(candidate).replace(tzinfo=None)
    except ValueError:
        pass
    for fmt in _DATETIME_FORMATS + _DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt)
        except ValueError:
            continue
    return None


def format_date(value: datetime, pattern: str) -> str:
    out = ""
    i = 0
    while i < len(pattern):
        for token, directive in _DATE_TOKENS:
            if pattern.startswith(token, i):
                out += value.strftime(directive)
                i += len(token)
                break
        else:
            out += pattern[i]
            i += 1
    return out


def _add_months(day: date, months: int) -> date:
    total = day.year * 12 + (day.month - 1) + months
    year, month = divmod(total, 12)
    return date(year, month + 1, calendar.monthrange(year, month + 1)[1])


def _whole_months(start: date, end: date) -> int:
    sign = 1
    if end < start:
        start, end, sign = end, start, -1
    months = (end.year - start.year) * 12 + (end.month - start.month)
    if end.day < start.day:
        months -= 1
    return sign * months


# ----------------------------------------------------------------------
# Evaluation
# ----------------------------------------------------------------------

class _CircularReference(FormulaError):
    def __init__(self) -> None:
        super().__init__(CIRCULAR)


class CellGrid:
    """Cells of a rendered view, addressable as ``A1``-style references.

    Cells hold values or ``=formula`` strings; formula cells are evaluated
    on access, and a reference chain that loops back yields
    ``Error("circular")``.
    """

    def __init__(self) -> None:
        self._values: Dict[CellRef, CellValue] = {}
        self._formulas: Dict[CellRef, str] = {}
        self._active: Set[CellRef] = set()
        self.max_row = 0
        self.max_col = 0

    def _touch(self, ref: CellRef) -> None:
        self.max_row = max(self.max_row, ref.row)
        self.max_col = max(self.max_col, ref.col)

    def set(self, ref: Union[CellRef, str], value: CellValue) -> None:
        ref = self._ref(ref)
        self._touch(ref)
        self._formulas.pop(ref, None)
        self._values[ref] = value

    def set_formula(self, ref: Union[CellRef, str], formula: str) -> None:
        ref = self._ref(ref)
        self._touch(ref)
        self._values.pop(ref, None)
        self._formulas[ref] = formula

    def set_input(self, ref: Union[CellRef, str], raw: Optional[str]) -> None:
        """Store a displayed string: ``=...`` is a formula, numbers become numbers."""
        if raw is not None and str(raw).strip().startswith("="):
            self.set_formula(ref, str(raw).strip())
        else:
            self.set(ref, CellValue.from_input(raw))

    @staticmethod
    def _ref(ref: Union[CellRef, str]) -> CellRef:
        if isinstance(ref, CellRef):
            return ref
        parsed = CellRef.parse(ref)
        if parsed is None:
            raise FormulaError(f"Invalid cell reference {ref!r}")
        return parsed

    def get(self, ref: Union[CellRef, str]) -> CellValue:
        """Value of a cell; formula cells are evaluated (errors included)."""
        try:
            return self._get(self._ref(ref))
        except FormulaError as e:
            return CellValue.error(e.message)

    def _get(self, ref: CellRef) -> CellValue:
        formula = self._formulas.get(ref)
        if formula is None:
            return self._values.get(ref, CellValue.empty())
        if ref in self._active:
            raise _CircularReference()
        self._active.add(ref)
        try:
            value = self._eval(parse_formula(formula))
        finally:
            self._active.discard(ref)
        if value.is_error:
            raise FormulaError(value.value, formula=formula)
        return value

    def evaluate(self, formula: str) -> CellValue:
        """Evaluate a formula against the grid; failures come back as error values."""
        try:
            return self._eval(parse_formula(formula))
        except FormulaError as e:
            logger.debug(f"Formula {formula!r} evaluated to error: {e.message}")
            return CellValue.error(e.message)
        except (ArithmeticError, ValueError) as e:
            logger.warning(f"Formula {formula!r} failed: {e}")
            return CellValue.error(str(e))

    # --- expression evaluation ----------------------------------------

    def _eval(self, expr: Expr) -> CellValue:
        if isinstance(expr, Num):
            return CellValue.number(expr.value)
        if isinstance(expr, Str):
            return CellValue.text(expr.value)
        if isinstance(expr, Ref):
            return self._get(expr.cell)
        if isinstance(expr, Rng):
            raise FormulaError(f"Range {expr.cells} is only allowed inside a function")
        if isinstance(expr, Neg):
            return CellValue.number(-self._number(self._eval(expr.operand), "-"))
        if isinstance(expr, BinOp):
            return self._binary(expr)
        return self._call(expr)

    @staticmethod
    def _number(value: CellValue, context: str) -> float:
        if value.is_error:
            raise FormulaError(value.value)
        n = value.as_number()
        if n is None:
            raise FormulaError(f"{context} expects a number, got {value.value!r}")
        return n

    def _binary(self, expr: BinOp) -> CellValue:
        left = self._eval(expr.left)
        right = self._eval(expr.right)
        if expr.op in _COMPARISON_OPS:
            return CellValue.number(1.0 if self._compare(expr.op, left, right) else 0.0)
        a = self._number(left, expr.op)
        b = self._number(right, expr.op)
        if expr.op == "+":
            return CellValue.number(a + b)
        if expr.op == "-":
            return CellValue.number(a - b)
        if expr.op == "*":
            return CellValue.number(a * b)
        if b == 0:
            raise FormulaError("division by zero")
        return CellValue.number(a / b)

    @staticmethod
    def _compare(op: str, left: CellValue, right: CellValue) -> bool:
        for side in (left, right):
            if side.is_error:
                raise FormulaError(side.value)
        a, b = left.as_number(), right.as_number()
        if a is not None and b is not None:
            if op == "=":
                return abs(a - b) < NUMBER_EPSILON
            if op == "<>":
                return abs(a - b) >= NUMBER_EPSILON
            cmp = (a > b) - (a < b)
        else:
            sa, sb = str(left).lower(), str(right).lower()
            if op == "=":
                return sa == sb
            if op == "<>":
                return sa != sb
            cmp = (sa > sb) - (sa < sb)
        return {"<": cmp < 0, "<=": cmp <= 0, ">": cmp > 0, ">=": cmp >= 0}[op]

    # --- argument helpers ---------------------------------------------

    def _expand(self, args: List[Expr]) -> List[CellValue]:
        """Values of the arguments with ranges flattened; references keep empties."""
        values: List[CellValue] = []
        for arg in args:
            if isinstance(arg, Rng):
                for ref in arg.cells.cells(self.max_row, self.max_col):
                    values.append(self._get(ref))
            else:
                values.append(self._eval(arg))
        return values

    def _numbers(self, args: List[Expr], name: str) -> List[float]:
        """Numeric arguments; cells that are empty or non-numeric are skipped."""
        numbers: List[float] = []
        for arg in args:
            if isinstance(arg, (Rng, Ref)):
                if isinstance(arg, Rng):
                    cells = arg.cells.cells(self.max_row, self.max_col)
                else:
                    cells = [arg.cell]
                for ref in cells:
                    value = self._get(ref)
                    if value.kind is CellKind.NUMBER:
                        numbers.append(value.value)
                    elif value.kind is CellKind.TEXT and value.as_number() is not None:
                        numbers.append(value.as_number())
            else:
                numbers.append(self._number(self._eval(arg), name))
        return numbers

    def _arity(self, name: str, args: List[Expr], low: int, high: Optional[int] = None) -> None:
        high = low if high is None else high
        if not low <= len(args) <= high:
            expected = str(low) if low == high else f"{low}-{high}"
            raise FormulaError(f"{name} expects {expected} arguments, got {len(args)}")

    def _text_arg(self, expr: Expr) -> str:
        value = self._eval(expr)
        if value.is_error:
            raise FormulaError(value.value)
        return str(value)

    def _int_arg(self, expr: Expr, name: str) -> int:
        n = self._number(self._eval(expr), name)
        if not math.isfinite(n):
            raise FormulaError(f"{name}: argument must be finite")
        return int(n)

    def _date_arg(self, expr: Expr, name: str) -> datetime:
        text = self._text_arg(expr)
        parsed = parse_datetime(text)
        if parsed is None:
            raise FormulaError(f"{name}: invalid date {text!r}")
        return parsed

    # --- functions ----------------------------------------------------

    def _call(self, call: Call) -> CellValue:
        handler = _FUNCTIONS.get(call.name)
        if handler is None:
            raise FormulaError(f"Unknown function {call.name}")
        return handler(self, call.name, call.args)

    def _fn_sum(self, name: str, args: List[Expr]) -> CellValue:
        return CellValue.number(sum(self._numbers(args, name)))

    def _fn_avg(self, name: str, args: List[Expr]) -> CellValue:
        numbers = self._numbers(args, name)
        if not numbers:
            raise FormulaError("division by zero")
        return CellValue.number(sum(numbers) / len(numbers))

    def _fn_min(self, name: str, args: List[Expr]) -> CellValue:
        numbers = self._numbers(args, name)
        return CellValue.number(min(numbers) if numbers else 0.0)

    def _fn_max(self, name: str, args: List[Expr]) -> CellValue:
        numbers = self._numbers(args, name)
        return CellValue.number(max(numbers) if numbers else 0.0)

    def _fn_count(self, name: str, args: List[Expr]) -> CellValue:
        values = self._expand(args)
        return CellValue.number(sum(1 for v in values if v.kind is CellKind.NUMBER))

    def _fn_counta(self, name: str, args: List[Expr]) -> CellValue:
        values = self._expand(args)
        return CellValue.number(
            sum(1 for v in values if not v.is_empty and not (
                v.kind is CellKind.TEXT and not v.value))
        )

    def _fn_abs(self, name: str, args: List[Expr]) -> CellValue:
        self._arity(name, args, 1)
        return CellValue.number(abs(self._number(self._eval(args[0]), name)))

    def _fn_round(self, name: str, args: List[Expr]) -> CellValue:
        self._arity(name, args, 1, 2)
        n = self._number(self._eval(args[0]), name)
        digits = self._int_arg(args[1], name) if len(args) == 2 else 0
        # beyond double precision in either direction the result is fixed
        digits = max(min(digits, 17), -309)
        try:
            with localcontext() as ctx:
                ctx.prec = 350
                rounded = Decimal(repr(n)).quantize(
                    Decimal(1).scaleb(-digits), rounding=ROUND_HALF_UP
                )
        except ArithmeticError as e:
            raise FormulaError(f"ROUND failed for {n}") from e
        return CellValue.number(float(rounded))

    def _fn_if(self, name: str, args: List[Expr]) -> CellValue:
        self._arity(name, args, 2, 3)
        condition = self._eval(args[0])
        if condition.is_error:
            raise FormulaError(condition.value)
        if condition.as_bool():
            return self._eval(args[1])
        return self._eval(args[2]) if len(args) == 3 else CellValue.number(0.0)

    def _fn_concat(self, name: str, args: List[Expr]) -> CellValue:
        parts = []
        for value in self._expand(args):
            if value.is_error:
                raise FormulaError(value.value)
            parts.append(str(value))
        return CellValue.text("".join(parts))

    def _fn_upper(self, name: str, args: List[Expr]) -> CellValue:
        self._arity(name, args, 1)
        return CellValue.text(self._text_arg(args[0]).upper())

    def _fn_lower(self, name: str, args: List[Expr]) -> CellValue:
        self._arity(name, args, 1)
        return CellValue.text(self._text_arg(args[0]).lower())

    def _fn_trim(self, name: str, args: List[Expr]) -> CellValue:
        self._arity(name, args, 1)
        return CellValue.text(" ".join(self._text_arg(args[0]).split()))

    def _fn_len(self, name: str, args: List[Expr]) -> CellValue:
        self._arity(name, args, 1)
        return CellValue.number(len(self._text_arg(args[0])))

    def _count_arg(self, args: List[Expr], index: int, name: str, default: int) -> int:
        if len(args) <= index:
            return default
        n = self._int_arg(args[index], name)
        if n < 0:
            raise FormulaError(f"{name}: negative count")
        return n

    def _fn_left(self, name: str, args: List[Expr]) -> CellValue:
        self._arity(name, args, 1, 2)
        return CellValue.text(self._text_arg(args[0])[: self._count_arg(args, 1, name, 1)])

    def _fn_right(self, name: str, args: List[Expr]) -> CellValue:
        self._arity(name, args, 1, 2)
        text = self._text_arg(args[0])
        n = self._count_arg(args, 1, name, 1)
        return CellValue.text(text[len(text) - n:] if n else "")

    def _fn_mid(self, name: str, args: List[Expr]) -> CellValue:
        self._arity(name, args, 3)
        text = self._text_arg(args[0])
        start = self._int_arg(args[1], name)
        length = self._count_arg(args, 2, name, 0)
        if start < 1:
            raise FormulaError(f"{name}: start must be >= 1")
        return CellValue.text(text[start - 1:start - 1 + length])

    def _fn_replace(self, name: str, args: List[Expr]) -> CellValue:
        self._arity(name, args, 4)
        text = self._text_arg(args[0])
        start = self._int_arg(args[1], name)
        length = self._count_arg(args, 2, name, 0)
        if start < 1:
            raise FormulaError(f"{name}: start must be >= 1")
        replacement = self._text_arg(args[3])
        return CellValue.text(text[:start - 1] + replacement + text[start - 1 + length:])

    def _fn_substitute(self, name: str, args: List[Expr]) -> CellValue:
        self._arity(name, args, 3, 4)
        text = self._text_arg(args[0])
        old = self._text_arg(args[1])
        new = self._text_arg(args[2])
        if not old:
            return CellValue.text(text)
        if len(args) == 3:
            return CellValue.text(text.replace(old, new))
        instance = self._int_arg(args[3], name)
        if instance < 1:
            raise FormulaError(f"{name}: instance must be >= 1")
        idx = -1
        for _ in range(instance):
            idx = text.find(old, idx + 1)
            if idx == -1:
                return CellValue.text(text)
        return CellValue.text(text[:idx] + new + text[idx + len(old):])

    def _fn_text(self, name: str, args: List[Expr]) -> CellValue:
        self._arity(name, args, 2)
        n = self._number(self._eval(args[0]), name)
        pattern = self._text_arg(args[1])
        decimals = len(pattern.split(".", 1)[1]) if "." in pattern else 0
        return CellValue.text(f"{n:.{decimals}f}")

    def _fn_rept(self, name: str, args: List[Expr]) -> CellValue:
        self._arity(name, args, 2)
        text = self._text_arg(args[0])
        times = self._count_arg(args, 1, name, 1)
        if text and times > MAX_TEXT_LENGTH // len(text):
            raise FormulaError(f"{name}: result longer than {MAX_TEXT_LENGTH} characters")
        return CellValue.text(text * times)

    def _fn_today(self, name: str, args: List[Expr]) -> CellValue:
        self._arity(name, args, 0)
        return CellValue.text(date.today().isoformat())

    def _fn_now(self, name: str, args: List[Expr]) -> CellValue:
        self._arity(name, args, 0)
        return CellValue.text(datetime.now().strftime("%Y-%m-%d %H:%M"))

    def _date_part(self, name: str, args: List[Expr], part: Callable[[datetime], int]) -> CellValue:
        self._arity(name, args, 1)
        return CellValue.number(part(self._date_arg(args[0], name)))

    def _fn_year(self, name, args):
        return self._date_part(name, args, lambda d: d.year)

    def _fn_month(self, name, args):
        return self._date_part(name, args, lambda d: d.month)

    def _fn_day(self, name, args):
        return self._date_part(name, args, lambda d: d.day)

    def _fn_hour(self, name, args):
        return self._date_part(name, args, lambda d: d.hour)

    def _fn_minute(self, name, args):
        return self._date_part(name, args, lambda d: d.minute)

    def _fn_weekday(self, name, args):
        # ISO numbering: Monday is 1, Sunday is 7
        return self._date_part(name, args, lambda d: d.isoweekday())

    def _fn_weeknum(self, name, args):
        return self._date_part(name, args, lambda d: d.isocalendar()[1])

    def _fn_datedif(self, name: str, args: List[Expr]) -> CellValue:
        self._arity(name, args, 3)
        start = self._date_arg(args[0], name)
        end = self._date_arg(args[1], name)
        unit = self._text_arg(args[2]).strip().upper()
        if unit == "D":
            return CellValue.number((end.date() - start.date()).days)
        if unit == "H":
            return CellValue.number(int((end - start) / timedelta(hours=1)))
        if unit == "M":
            return CellValue.number(_whole_months(start.date(), end.date()))
        if unit == "Y":
            return CellValue.number(int(_whole_months(start.date(), end.date()) / 12))
        raise FormulaError(f"{name}: unknown unit {unit!r}")

    def _fn_dateformat(self, name: str, args: List[Expr]) -> CellValue:
        self._arity(name, args, 2)
        value = self._date_arg(args[0], name)
        return CellValue.text(format_date(value, self._text_arg(args[1])))

    def _fn_eomonth(self, name: str, args: List[Expr]) -> CellValue:
        self._arity(name, args, 1, 2)
        value = self._date_arg(args[0], name)
        months = self._int_arg(args[1], name) if len(args) == 2 else 0
        try:
            end = _add_months(value.date(), months)
        except (ValueError, OverflowError) as e:
            raise FormulaError(f"{name}: date out of range") from e
        return CellValue.text(end.isoformat())


_FUNCTIONS: Dict[str, Callable[[CellGrid, str, List[Expr]], CellValue]] = {
    "SUM": CellGrid._fn_sum,
    "AVG": CellGrid._fn_avg,
    "AVERAGE": CellGrid._fn_avg,
    "MIN": CellGrid._fn_min,
    "MAX": CellGrid._fn_max,
    "COUNT": CellGrid._fn_count,
    "COUNTA": CellGrid._fn_counta,
    "ABS": CellGrid._fn_abs,
    "ROUND": CellGrid._fn_round,
    "IF": CellGrid._fn_if,
    "CONCAT": CellGrid._fn_concat,
    "CONCATENATE": CellGrid._fn_concat,
    "UPPER": CellGrid._fn_upper,
    "LOWER": CellGrid._fn_lower,
    "TRIM": CellGrid._fn_trim,
    "LEN": CellGrid._fn_len,
    "LEFT": CellGrid._fn_left,
    "RIGHT": CellGrid._fn_right,
    "MID": CellGrid._fn_mid,
    "REPLACE": CellGrid._fn_replace,
    "SUBSTITUTE": CellGrid._fn_substitute,
    "TEXT": CellGrid._fn_text,
    "REPT": CellGrid._fn_rept,
    "TODAY": CellGrid._fn_today,
    "NOW": CellGrid._fn_now,
    "YEAR": CellGrid._fn_year,
    "MONTH": CellGrid._fn_month,
    "DAY": CellGrid._fn_day,
    "HOUR": CellGrid._fn_hour,
    "MINUTE": CellGrid._fn_minute,
    "WEEKDAY": CellGrid._fn_weekday,
    "WEEKNUM": CellGrid._fn_weeknum,
    "DATEDIF": CellGrid._fn_datedif,
    "DATEFORMAT": CellGrid._fn_dateformat,
    "EOMONTH": CellGrid._fn_eomonth,
}


def evaluate(formula: str, grid: Optional[CellGrid] = None) -> CellValue:
    """Evaluate a formula against ``grid`` (an empty grid by default)."""
    return (grid or CellGrid()).evaluate(formula)
