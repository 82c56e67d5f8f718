from enum import Enum
from typing import Any, Dict, Iterator, List, Optional

from pydantic import BaseModel, ConfigDict
from sqlalchemy.engine import CursorResult


# =========================
# Errors
# =========================
class ErrorKind(str, Enum):
    CONNECTION = "connection"
    NO_CONNECTION = "no_connection"
    QUERY = "query"
    CONSTRAINT = "constraint"
    INVALID_REQUEST = "invalid_request"
    FORBIDDEN = "forbidden"


class SqlError(BaseModel):
    kind: ErrorKind
    message: str

    model_config = ConfigDict(frozen=True)

    def __str__(self) -> str:
        return f"{self.kind.value}: {self.message}"


class SqlDispatchError(Exception):
    """Raised by Outcome.unwrap() when the outcome carries an error."""

    def __init__(self, error: SqlError):
        super().__init__(str(error))
        self.error = error


# =========================
# Outcome
# =========================
class Outcome(BaseModel):
    """
    Either a success value or a structured error.

    Dispatcher actions never raise on engine failures; they return a failed
    Outcome instead, so a legitimate 0 or None is never confused with an error.
    """

    value: Any = None
    error: Optional[SqlError] = None

    model_config = ConfigDict(arbitrary_types_allowed=True, frozen=True)

    @classmethod
    def success(cls, value: Any = None) -> "Outcome":
        return cls(value=value)

    @classmethod
    def failure(cls, kind: ErrorKind, message: str) -> "Outcome":
        return cls(error=SqlError(kind=kind, message=message))

    @property
    def ok(self) -> bool:
        return self.error is None

    def unwrap(self) -> Any:
        if self.error is not None:
            raise SqlDispatchError(self.error)
        return self.value

    def value_or(self, default: Any) -> Any:
        return self.value if self.error is None else default


# =========================
# Result handle
# =========================
class ResultHandle:
    """
    Cursor over the rows returned by a query.

    Rows are buffered client-side when the handle is created, so the row count
    is known up front. The handle is released when iteration is exhausted, when
    an ``async with`` block exits, or when ``close()`` is called; a released
    handle behaves like an exhausted one.
    """

    def __init__(self, result: CursorResult):
        try:
            self.columns: List[str] = list(result.keys())
            self._rows: List[Dict[str, Any]] = [dict(row) for row in result.mappings()]
        finally:
            result.close()
        self._position = 0
        self._row_count = len(self._rows)
        self.closed = False

    @property
    def row_count(self) -> int:
        return self._row_count

    def fetch(self) -> Optional[Dict[str, Any]]:
        """Return the next row, or None once exhausted or released."""
        if self.closed:
            return None
        if self._position >= len(self._rows):
            self.close()
            return None
        row = self._rows[self._position]
        self._position += 1
        return row

    def close(self) -> None:
        self._rows = []
        self.closed = True

    def __iter__(self) -> Iterator[Dict[str, Any]]:
        row = self.fetch()
        while row is not None:
            yield row
            row = self.fetch()

    def __aiter__(self):
        return self

    async def __anext__(self) -> Dict[str, Any]:
        row = self.fetch()
        if row is None:
            raise StopAsyncIteration
        return row

    async def __aenter__(self) -> "ResultHandle":
        return self

    async def __aexit__(self, *exc_info) -> None:
        self.close()

    def __repr__(self) -> str:
        state = "closed" if self.closed else f"{self._position}/{self._row_count}"
        return f"<ResultHandle rows={state}>"
