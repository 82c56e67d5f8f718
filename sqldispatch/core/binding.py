import math
import re
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Union

from sqlalchemy import Float, Integer, LargeBinary, String, bindparam
from sqlalchemy.engine import Dialect
from sqlalchemy.sql.elements import BindParameter


# -----------------------------------------------------------------------------
# BINDING MODULE
# Purpose: turn loosely typed call arguments into quoted identifiers, WHERE
# clauses and typed bound parameters.
# -----------------------------------------------------------------------------

Columns = Union[None, str, Sequence[str]]
Condition = Union[None, int, float, str, Mapping[str, Any]]
Params = Union[None, Mapping[str, Any], Sequence[Any]]

# Numeric strings: optional sign, decimals, exponent, surrounding whitespace
_NUMERIC_RE = re.compile(r"^\s*[+-]?(\d+(\.\d*)?|\.\d+)([eE][+-]?\d+)?\s*$")
_CANONICAL_INT_RE = re.compile(r"^[+-]?(0|[1-9]\d*)$")
_INT_RE = re.compile(r"^[+-]?\d+$")

# Widest key range a column can hold (signed and unsigned BIGINT)
_MIN_ROW_ID = -(2**63)
_MAX_ROW_ID = 2**64 - 1

_ALIAS_RE = re.compile(r"\s+AS\s+(`[^`]+`|\"[^\"]+\"|\w+)\s*$", re.IGNORECASE)

# Quoted literals and identifiers are skipped; only bare ? are placeholders
_QMARK_RE = re.compile(r"'(?:[^'\\]|\\.)*'|\"(?:[^\"\\]|\\.)*\"|`[^`]*`|\?")


class BindType(str, Enum):
    """Per-value type letter of a prepared statement's bind signature."""

    INTEGER = "i"
    FLOAT = "d"
    BINARY = "b"
    STRING = "s"


_SQL_TYPES = {
    BindType.INTEGER: Integer,
    BindType.FLOAT: Float,
    BindType.BINARY: LargeBinary,
    BindType.STRING: String,
}


# =========================
# Row ids
# =========================
def _as_row_id(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if math.isfinite(value) and value.is_integer() else None
    if not isinstance(value, str) or not _NUMERIC_RE.match(value):
        return None

    text = value.strip()
    if _INT_RE.match(text):
        return int(text)
    # Exponent and decimal forms ("1e3", "4.0") stay exact through Decimal
    number = Decimal(text)
    if not _MIN_ROW_ID <= number <= _MAX_ROW_ID:
        return None
    if number != number.to_integral_value():
        return None
    return int(number)


def is_row_id(value: Any) -> bool:
    """True when value is numeric and integral, i.e. usable as a `<table>_id`."""
    return _as_row_id(value) is not None


def row_id(value: Any) -> int:
    number = _as_row_id(value)
    if number is None:
        raise ValueError(f"Not a row id: {value!r}")
    return number


# =========================
# Bind types
# =========================
def detect_bind_type(value: Any) -> BindType:
    """
    Detect the bind type of a value by its content.

    Strings only count as numbers when they are in canonical form ("12",
    "1.5"), so converting them never loses characters such as leading zeros.
    """
    if isinstance(value, (bool, int)):
        return BindType.INTEGER
    if isinstance(value, float):
        return BindType.FLOAT
    if isinstance(value, (bytes, bytearray, memoryview)):
        return BindType.BINARY
    if isinstance(value, str):
        if _CANONICAL_INT_RE.match(value):
            return BindType.INTEGER
        if _NUMERIC_RE.match(value) and repr(float(value)) == value:
            return BindType.FLOAT
    return BindType.STRING


def coerce_value(value: Any, bind_type: BindType) -> Any:
    if isinstance(value, str):
        if bind_type is BindType.INTEGER:
            return int(value)
        if bind_type is BindType.FLOAT:
            return float(value)
    if isinstance(value, (bytearray, memoryview)):
        return bytes(value)
    return value


def bind_signature(values: Iterable[Any]) -> str:
    return "".join(detect_bind_type(value).value for value in values)


class Binder:
    """Collects typed bound parameters for one statement."""

    def __init__(self, prefix: str = "p"):
        self.prefix = prefix
        self._params: Dict[str, BindParameter] = {}
        self._values: List[Any] = []

    def add(self, value: Any) -> str:
        """Bind a value under a generated name and return its placeholder."""
        return self.add_named(f"{self.prefix}{len(self._params)}", value)

    def add_named(self, name: str, value: Any) -> str:
        if name in self._params:
            raise ValueError(f"Duplicate bound parameter name: {name}")
        bind_type = detect_bind_type(value)
        self._params[name] = bindparam(
            name, coerce_value(value, bind_type), type_=_SQL_TYPES[bind_type]()
        )
        self._values.append(value)
        return f":{name}"

    @property
    def params(self) -> List[BindParameter]:
        return list(self._params.values())

    @property
    def signature(self) -> str:
        return bind_signature(self._values)


def rewrite_qmarks(clause: str, values: Sequence[Any], binder: Binder) -> str:
    """Replace each bare `?` in clause with a named placeholder bound to values."""
    remaining = list(values)

    def _replace(match: re.Match) -> str:
        token = match.group(0)
        if token != "?":
            return token
        if not remaining:
            raise ValueError("More ? placeholders than bound values")
        return binder.add(remaining.pop(0))

    rewritten = _QMARK_RE.sub(_replace, clause)
    if remaining:
        raise ValueError(f"{len(remaining)} bound value(s) without a ? placeholder")
    return rewritten


# =========================
# Identifiers
# =========================
def quote_name(dialect: Dialect, name: str) -> str:
    """Quote a (possibly dotted) identifier for dialect, dropping user backticks."""
    parts = [part.strip().strip("`").strip() for part in name.split(".")]
    if not all(parts):
        raise ValueError(f"Invalid identifier: {name!r}")
    return ".".join(
        part if part == "*" else dialect.identifier_preparer.quote_identifier(part)
        for part in parts
    )


def is_column_expression(column: str) -> bool:
    """Function calls and aliased columns are passed to the engine as written."""
    return "(" in column or _ALIAS_RE.search(column) is not None


def column_key(column: str) -> str:
    """Key a result row uses for column, e.g. "p.forename AS name" -> "name"."""
    alias = _ALIAS_RE.search(column)
    if alias:
        return alias.group(1).strip().strip("`\"")
    if is_column_expression(column):
        return column
    return column.split(".")[-1].strip("`")


def _split_top_level(columns: str) -> List[str]:
    parts, depth, start = [], 0, 0
    for index, char in enumerate(columns):
        if char == "(":
            depth += 1
        elif char == ")":
            depth = max(depth - 1, 0)
        elif char == "," and depth == 0:
            parts.append(columns[start:index])
            start = index + 1
    parts.append(columns[start:])
    return parts


def split_columns(columns: Columns) -> List[str]:
    if columns is None:
        return []
    if isinstance(columns, str):
        columns = _split_top_level(columns)
    names = []
    for column in columns:
        column = column.strip()
        if not column:
            continue
        names.append(column if is_column_expression(column) else column.strip("`").strip())
    return names


def quote_columns(dialect: Dialect, columns: Columns) -> str:
    names = split_columns(columns)
    if not names:
        return "*"
    return ", ".join(
        name if is_column_expression(name) else quote_name(dialect, name) for name in names
    )


# =========================
# Conditions
# =========================
def build_condition(
    dialect: Dialect,
    table: str,
    condition: Condition,
    params: Params,
    binder: Binder,
) -> str:
    """
    Render a condition argument to SQL, binding every value through binder.

    Args:
        dialect: Dialect used to quote identifiers.
        table: Table the condition applies to; a numeric condition matches
            its `<table>_id` column.
        condition: None, a row id, a column->value dict, or a clause string
            appended verbatim (e.g. "WHERE surname = ? ORDER BY forename").
        params: Values for the clause's placeholders: a list for `?`
            placeholders, a dict for `:name` placeholders.
        binder: Collector for the statement's bound parameters.

    Returns:
        SQL text to append after the statement, or "" for no condition.

    Example:
        build_condition(dialect, "person", 2, None, binder)
        # 'WHERE `person_id` = :p0'
    """
    if condition is None or (isinstance(condition, str) and not condition.strip()):
        if params:
            raise ValueError("Bound values given without a condition clause")
        return ""

    if is_row_id(condition):
        if params:
            raise ValueError("Bound values given with a row id condition")
        column = quote_name(dialect, f"{table}_id")
        return f"WHERE {column} = {binder.add(row_id(condition))}"

    if isinstance(condition, Mapping):
        if params:
            raise ValueError("Bound values given with a column mapping condition")
        parts = []
        for column, value in condition.items():
            quoted = quote_name(dialect, column)
            if value is None:
                parts.append(f"{quoted} IS NULL")
            else:
                parts.append(f"{quoted} = {binder.add(value)}")
        return ("WHERE " + " AND ".join(parts)) if parts else ""

    if not isinstance(condition, str):
        raise ValueError(f"Unsupported condition: {condition!r}")

    if isinstance(params, Mapping):
        for name, value in params.items():
            binder.add_named(name, value)
        return condition
    if params:
        return rewrite_qmarks(condition, params, binder)
    return condition
