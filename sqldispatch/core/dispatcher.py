import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from pymysql.converters import escape_string
from sqlalchemy import text
from sqlalchemy.engine import CursorResult, Dialect, make_url
from sqlalchemy.exc import ArgumentError, IntegrityError, SQLAlchemyError

from sqldispatch.core.binding import (
    Binder,
    build_condition,
    column_key,
    is_row_id,
    quote_columns,
    quote_name,
    rewrite_qmarks,
    split_columns,
)
from sqldispatch.core.config import settings
from sqldispatch.core.database import (
    SqlConnection,
    build_url,
    current_connection,
    open_connection,
)
from sqldispatch.core.results import ErrorKind, Outcome, ResultHandle, SqlError
from sqldispatch.core.schemas import (
    AddRequest,
    CleanseRequest,
    ColumnsArg,
    ConditionArg,
    ConnectRequest,
    CountRequest,
    DeleteRequest,
    EditRequest,
    ErrorRequest,
    FetchRequest,
    IdRequest,
    LastRequest,
    NextRequest,
    ParamsArg,
    QueryRequest,
    RawRequest,
    ReleaseRequest,
    RowsRequest,
    SelectRequest,
    SqlRequest,
    StatusRequest,
    UseRequest,
    parse_request,
)

logger = logging.getLogger(__name__)

Handler = Callable[[SqlConnection, Any], Awaitable[Any]]


# -----------------------------------------------------------------------------
# DISPATCHER MODULE
# Purpose: route one typed request to one SQL behaviour and report the result
# as an Outcome instead of raising.
# -----------------------------------------------------------------------------


def build_count_sql(dialect: Dialect, inner: str) -> str:
    """Wrap inner as a derived table and count its rows."""
    preparer = dialect.identifier_preparer
    return (
        f"SELECT COUNT(*) AS {preparer.quote_identifier('count')} "
        f"FROM ({inner}) AS {preparer.quote_identifier('tCount')}"
    )


def _engine_message(error: SQLAlchemyError) -> str:
    orig = getattr(error, "orig", None)
    return str(orig) if orig is not None else str(error)


def _error_kind(error: SQLAlchemyError) -> ErrorKind:
    if isinstance(error, IntegrityError):
        return ErrorKind.CONSTRAINT
    return ErrorKind.QUERY


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


class SqlDispatcher:
    """
    Single entry point for SQL actions.

    The connection used for a request is, in order: the request's own
    ``connection``, the dispatcher's ``connection``, then the task's default
    from ``use_connection()``.
    """

    def __init__(
        self,
        connection: Optional[SqlConnection] = None,
        allow_raw: Optional[bool] = None,
    ):
        self.connection = connection
        self.allow_raw = settings.ALLOW_RAW_QUERIES if allow_raw is None else allow_raw

    def _resolve(self, request: SqlRequest) -> Optional[SqlConnection]:
        return request.connection or self.connection or current_connection.get()

    async def execute(self, request: SqlRequest) -> Outcome:
        logger.debug(f"Dispatching {request.kind.value}")
        match request:
            case ConnectRequest():
                return await self._connect(request)
            case ErrorRequest():
                return self._error(request)
            case StatusRequest():
                connection = self._resolve(request)
                return Outcome.success(connection is not None and connection.is_open)
            case UseRequest():
                return await self._guarded(request, self._use)
            case CleanseRequest(value=value):
                return Outcome.success(self._cleanse(self._resolve(request), value))
            case IdRequest(value=value):
                return Outcome.success(is_row_id(value))
            case RawRequest():
                if not self.allow_raw:
                    return Outcome.failure(ErrorKind.FORBIDDEN, "Raw queries are disabled")
                return await self._guarded(request, self._raw)
            case QueryRequest():
                return await self._guarded(request, self._query)
            case AddRequest():
                return await self._guarded(request, self._add)
            case EditRequest():
                return await self._guarded(request, self._edit)
            case DeleteRequest():
                return await self._guarded(request, self._delete)
            case SelectRequest():
                return await self._guarded(request, self._select)
            case NextRequest():
                return await self._guarded(request, self._next)
            case LastRequest():
                return await self._guarded(request, self._last)
            case CountRequest():
                return await self._guarded(request, self._count)
            case FetchRequest(handle=handle):
                return Outcome.success(handle.fetch() if handle is not None else None)
            case ReleaseRequest(handle=handle):
                if handle is not None:
                    handle.close()
                return Outcome.success(True)
            case RowsRequest(handle=handle):
                return Outcome.success(handle.row_count if handle is not None else 0)
            case _:
                raise TypeError(f"Unsupported request: {type(request).__name__}")

    async def dispatch(self, action: str, **payload: Any) -> Outcome:
        """String-tagged entry point, e.g. dispatch("select", table="person", where=2)."""
        return await self.execute(parse_request({"action": action, **payload}))

    # =========================
    # Error seam
    # =========================
    async def _guarded(self, request: SqlRequest, handler: Handler) -> Outcome:
        connection = self._resolve(request)
        if connection is None:
            return Outcome.failure(ErrorKind.NO_CONNECTION, "No database connection available")
        try:
            return Outcome.success(await handler(connection, request))
        except (ValueError, ArgumentError) as error:
            logger.warning(f"Invalid {request.kind.value} request: {error}")
            return Outcome.failure(ErrorKind.INVALID_REQUEST, str(error))
        except SQLAlchemyError as error:
            return Outcome.failure(_error_kind(error), _engine_message(error))

    async def _execute_sql(
        self, connection: SqlConnection, sql: str, binder: Optional[Binder] = None
    ) -> CursorResult:
        statement = text(sql)
        if binder is not None and binder.params:
            statement = statement.bindparams(*binder.params)
            logger.debug(f"{sql} [{binder.signature}]")
        else:
            logger.debug(sql)

        try:
            result = await connection.connection.execute(statement)
        except SQLAlchemyError as error:
            connection.last_error = SqlError(
                kind=_error_kind(error), message=_engine_message(error)
            )
            logger.error(f"Database error: {connection.last_error.message}")
            if connection.is_open:
                await connection.connection.rollback()
            raise

        connection.last_error = None
        return result

    # =========================
    # Connection actions
    # =========================
    async def _connect(self, request: ConnectRequest) -> Outcome:
        try:
            if request.url:
                url = make_url(request.url)
            else:
                url = build_url(
                    request.host,
                    request.user,
                    request.password,
                    request.database,
                    request.port,
                )
        except ArgumentError as error:
            return Outcome.failure(ErrorKind.INVALID_REQUEST, str(error))

        try:
            connection = await open_connection(url)
        except ArgumentError as error:
            return Outcome.failure(ErrorKind.INVALID_REQUEST, str(error))
        except SQLAlchemyError as error:
            logger.error(f"Failed to connect to {url.render_as_string()}: {error}")
            return Outcome.failure(ErrorKind.CONNECTION, _engine_message(error))
        return Outcome.success(connection)

    def _error(self, request: ErrorRequest) -> Outcome:
        connection = self._resolve(request)
        if connection is None:
            return Outcome.failure(ErrorKind.NO_CONNECTION, "No database connection available")
        return Outcome.success(connection.last_error.message if connection.last_error else "")

    async def _use(self, connection: SqlConnection, request: UseRequest) -> bool:
        await self._execute_sql(connection, f"USE {quote_name(connection.dialect, request.database)}")
        return True

    def _cleanse(self, connection: Optional[SqlConnection], value: Any) -> str:
        if value is None:
            return ""
        value = value.decode() if isinstance(value, bytes) else str(value)
        if connection is None or connection.dialect_name == "mysql":
            return escape_string(value)
        return value.replace("'", "''")

    # =========================
    # Statements
    # =========================
    def _select_sql(
        self,
        connection: SqlConnection,
        table: str,
        columns: ColumnsArg,
        where: ConditionArg,
        params: ParamsArg,
        binder: Binder,
    ) -> str:
        dialect = connection.dialect
        sql = f"SELECT {quote_columns(dialect, columns)} FROM {quote_name(dialect, table)}"
        condition = build_condition(dialect, table, where, params, binder)
        return f"{sql} {condition}" if condition else sql

    async def _raw(self, connection: SqlConnection, request: RawRequest) -> Any:
        if isinstance(request.sql, str):
            return await self._raw_statement(connection, request.sql, request.params)
        if request.params:
            raise ValueError("Bound values cannot be shared by a list of statements")
        # Stops at the first failing statement; earlier ones stay committed
        return [await self._raw_statement(connection, sql, None) for sql in request.sql]

    async def _raw_statement(
        self, connection: SqlConnection, sql: str, params: ParamsArg
    ) -> Union[ResultHandle, int]:
        binder = Binder()
        if isinstance(params, dict):
            for name, value in params.items():
                binder.add_named(name, value)
        elif params:
            sql = rewrite_qmarks(sql, params, binder)

        result = await self._execute_sql(connection, sql, binder)
        if result.returns_rows:
            return ResultHandle(result)
        affected = result.rowcount
        await connection.connection.commit()
        return affected

    async def _query(self, connection: SqlConnection, request: QueryRequest) -> ResultHandle:
        binder = Binder()
        sql = self._select_sql(
            connection, request.table, request.columns, request.where, request.params, binder
        )
        return ResultHandle(await self._execute_sql(connection, sql, binder))

    async def _add(self, connection: SqlConnection, request: AddRequest) -> int:
        if not request.values:
            raise ValueError("Nothing to insert")
        dialect = connection.dialect
        binder = Binder()
        columns = ", ".join(quote_name(dialect, column) for column in request.values)
        placeholders = ", ".join(binder.add(value) for value in request.values.values())
        sql = f"INSERT INTO {quote_name(dialect, request.table)} ({columns}) VALUES ({placeholders})"

        result = await self._execute_sql(connection, sql, binder)
        affected, connection.last_insert_id = result.rowcount, result.lastrowid
        await connection.connection.commit()
        return affected

    async def _edit(self, connection: SqlConnection, request: EditRequest) -> int:
        if not request.values:
            raise ValueError("Nothing to update")
        dialect = connection.dialect
        binder = Binder()
        assignments = ", ".join(
            f"{quote_name(dialect, column)} = {binder.add(value)}"
            for column, value in request.values.items()
        )
        sql = f"UPDATE {quote_name(dialect, request.table)} SET {assignments}"
        condition = build_condition(dialect, request.table, request.where, request.params, binder)
        if condition:
            sql = f"{sql} {condition}"

        result = await self._execute_sql(connection, sql, binder)
        affected = result.rowcount
        await connection.connection.commit()
        return affected

    async def _delete(self, connection: SqlConnection, request: DeleteRequest) -> int:
        dialect = connection.dialect
        binder = Binder()
        sql = f"DELETE FROM {quote_name(dialect, request.table)}"
        condition = build_condition(dialect, request.table, request.where, request.params, binder)
        if condition:
            sql = f"{sql} {condition}"

        result = await self._execute_sql(connection, sql, binder)
        affected = result.rowcount
        await connection.connection.commit()
        return affected

    async def _select(self, connection: SqlConnection, request: SelectRequest) -> Any:
        handle = await self._query(connection, request)
        async with handle:
            row = handle.fetch()
        if row is None:
            return None

        names = split_columns(request.columns)
        if len(names) == 1 and names[0] != "*":
            # Single column: hand back the bare value
            return row.get(column_key(names[0]), row)
        return row

    async def _next(self, connection: SqlConnection, request: NextRequest) -> Optional[int]:
        dialect = connection.dialect
        table = request.table.strip("`")
        binder = Binder()

        match connection.dialect_name:
            case "mysql":
                sql = f"SHOW TABLE STATUS LIKE {binder.add(_escape_like(table))}"
                row = (await self._execute_sql(connection, sql, binder)).mappings().first()
                if row is None or row["Auto_increment"] is None:
                    return None
                return int(row["Auto_increment"])
            case "sqlite":
                has_sequence = (
                    await self._execute_sql(
                        connection,
                        "SELECT 1 FROM sqlite_master WHERE type = 'table' AND name = 'sqlite_sequence'",
                    )
                ).scalar()
                if has_sequence:
                    sql = f"SELECT seq FROM sqlite_sequence WHERE name = {binder.add(table)}"
                    seq = (await self._execute_sql(connection, sql, binder)).scalar()
                    if seq is not None:
                        return int(seq) + 1
                sql = f"SELECT COALESCE(MAX(rowid), 0) + 1 FROM {quote_name(dialect, table)}"
            case _:
                column = quote_name(dialect, f"{table}_id")
                sql = f"SELECT COALESCE(MAX({column}), 0) + 1 FROM {quote_name(dialect, table)}"

        return int((await self._execute_sql(connection, sql)).scalar())

    async def _last(self, connection: SqlConnection, request: LastRequest) -> Optional[int]:
        match connection.dialect_name:
            case "mysql":
                sql = "SELECT LAST_INSERT_ID()"
            case "sqlite":
                sql = "SELECT last_insert_rowid()"
            case _:
                return connection.last_insert_id
        value = (await self._execute_sql(connection, sql)).scalar()
        return int(value) if value is not None else None

    async def _count(self, connection: SqlConnection, request: CountRequest) -> int:
        binder = Binder()
        if request.table:
            inner = self._select_sql(
                connection, request.table, None, request.where, request.params, binder
            )
        elif isinstance(request.where, str) and request.where.strip() and not is_row_id(request.where):
            inner = build_condition(connection.dialect, "", request.where, request.params, binder)
        else:
            raise ValueError("Counting without a table needs a query string")

        # Fast path: let the engine count
        try:
            result = await self._execute_sql(
                connection, build_count_sql(connection.dialect, inner), binder
            )
            row = result.mappings().first()
            if row is not None:
                return int(row["count"])
        except SQLAlchemyError as error:
            logger.warning(f"Fast count failed, counting returned rows instead: {error}")

        # Slow path: run the query itself and count what comes back
        return ResultHandle(await self._execute_sql(connection, inner, binder)).row_count

    # =========================
    # Convenience wrappers
    # =========================
    async def connect(
        self,
        host: str = "localhost",
        user: str = "root",
        password: str = "",
        database: Optional[str] = None,
        port: Optional[int] = None,
        url: Optional[str] = None,
    ) -> Outcome:
        """Open a connection; the dispatcher adopts it when it has none yet."""
        outcome = await self.execute(
            ConnectRequest(
                host=host, user=user, password=password, database=database, port=port, url=url
            )
        )
        if outcome.ok and self.connection is None:
            self.connection = outcome.value
        return outcome

    async def error(self, connection: Optional[SqlConnection] = None) -> Outcome:
        return await self.execute(ErrorRequest(connection=connection))

    async def status(self, connection: Optional[SqlConnection] = None) -> Outcome:
        return await self.execute(StatusRequest(connection=connection))

    async def use(self, database: str, connection: Optional[SqlConnection] = None) -> Outcome:
        return await self.execute(UseRequest(database=database, connection=connection))

    async def cleanse(self, value: Any, connection: Optional[SqlConnection] = None) -> Outcome:
        return await self.execute(CleanseRequest(value=value, connection=connection))

    async def is_id(self, value: Any) -> Outcome:
        return await self.execute(IdRequest(value=value))

    async def raw(
        self,
        sql: Union[str, List[str]],
        params: ParamsArg = None,
        connection: Optional[SqlConnection] = None,
    ) -> Outcome:
        return await self.execute(RawRequest(sql=sql, params=params, connection=connection))

    async def query(
        self,
        table: str,
        columns: ColumnsArg = None,
        where: ConditionArg = None,
        params: ParamsArg = None,
        connection: Optional[SqlConnection] = None,
    ) -> Outcome:
        return await self.execute(
            QueryRequest(
                table=table, columns=columns, where=where, params=params, connection=connection
            )
        )

    async def add(
        self, table: str, values: Dict[str, Any], connection: Optional[SqlConnection] = None
    ) -> Outcome:
        return await self.execute(AddRequest(table=table, values=values, connection=connection))

    async def edit(
        self,
        table: str,
        values: Dict[str, Any],
        where: ConditionArg = None,
        params: ParamsArg = None,
        connection: Optional[SqlConnection] = None,
    ) -> Outcome:
        return await self.execute(
            EditRequest(
                table=table, values=values, where=where, params=params, connection=connection
            )
        )

    async def delete(
        self,
        table: str,
        where: ConditionArg = None,
        params: ParamsArg = None,
        connection: Optional[SqlConnection] = None,
    ) -> Outcome:
        return await self.execute(
            DeleteRequest(table=table, where=where, params=params, connection=connection)
        )

    async def select(
        self,
        table: str,
        columns: ColumnsArg = None,
        where: ConditionArg = None,
        params: ParamsArg = None,
        connection: Optional[SqlConnection] = None,
    ) -> Outcome:
        return await self.execute(
            SelectRequest(
                table=table, columns=columns, where=where, params=params, connection=connection
            )
        )

    async def next(self, table: str, connection: Optional[SqlConnection] = None) -> Outcome:
        return await self.execute(NextRequest(table=table, connection=connection))

    async def last(self, connection: Optional[SqlConnection] = None) -> Outcome:
        return await self.execute(LastRequest(connection=connection))

    async def count(
        self,
        table: Optional[str] = None,
        where: ConditionArg = None,
        params: ParamsArg = None,
        connection: Optional[SqlConnection] = None,
    ) -> Outcome:
        return await self.execute(
            CountRequest(table=table, where=where, params=params, connection=connection)
        )

    async def fetch(self, handle: Optional[ResultHandle]) -> Outcome:
        return await self.execute(FetchRequest(handle=handle))

    async def free(self, handle: Optional[ResultHandle]) -> Outcome:
        return await self.execute(ReleaseRequest(handle=handle))

    async def rows(self, handle: Optional[ResultHandle]) -> Outcome:
        return await self.execute(RowsRequest(handle=handle))
