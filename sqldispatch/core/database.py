import logging
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any, Dict, Optional, Union

from sqlalchemy.engine import URL, Dialect, make_url
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, create_async_engine

from sqldispatch.core.config import settings
from sqldispatch.core.results import SqlError

logger = logging.getLogger(__name__)


class SqlConnection:
    """
    One open database link.

    Statements run in AUTOCOMMIT isolation, so every write is durable as soon
    as it returns. The handle remembers the last error raised on it and the
    last generated insert id.
    """

    def __init__(self, engine: AsyncEngine, connection: AsyncConnection):
        self.engine = engine
        self.connection = connection
        self.last_error: Optional[SqlError] = None
        self.last_insert_id: Optional[int] = None

    @property
    def dialect(self) -> Dialect:
        return self.engine.dialect

    @property
    def dialect_name(self) -> str:
        return self.engine.dialect.name

    @property
    def is_open(self) -> bool:
        return not self.connection.closed and not self.connection.invalidated

    async def close(self) -> None:
        if not self.connection.closed:
            await self.connection.close()
        await self.engine.dispose()
        logger.info(f"Closed connection to {self.engine.url.render_as_string()}")

    async def __aenter__(self) -> "SqlConnection":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    def __repr__(self) -> str:
        state = "open" if self.is_open else "closed"
        return f"<SqlConnection {self.engine.url.render_as_string()} {state}>"


def build_url(
    host: str,
    user: str,
    password: str,
    database: Optional[str] = None,
    port: Optional[int] = None,
    driver: Optional[str] = None,
) -> URL:
    return URL.create(
        driver or settings.DB_DRIVER,
        username=user,
        password=password or None,
        host=host,
        port=port,
        database=database,
    )


def _connect_args(url: URL) -> Dict[str, Any]:
    # Charset and connect timeout only mean something to MySQL drivers
    if url.get_backend_name() != "mysql":
        return {}
    return {"charset": settings.DB_CHARSET, "connect_timeout": settings.DB_CONNECT_TIMEOUT}


async def open_connection(url: Union[str, URL]) -> SqlConnection:
    """
    Open a new connection to url.

    Raises whatever SQLAlchemy raises when the database is unreachable; the
    dispatcher turns that into a CONNECTION error.
    """
    url = make_url(url)
    engine = create_async_engine(
        url,
        echo=settings.SQL_ECHO,
        isolation_level="AUTOCOMMIT",
        connect_args=_connect_args(url),
    )
    try:
        connection = await engine.connect()
    except Exception:
        await engine.dispose()
        raise
    logger.info(f"Opened connection to {url.render_as_string()}")
    return SqlConnection(engine, connection)


# -----------------------------------------------------------------------------
# Default connection
# Scoped per task through a ContextVar, never a process-wide global.
# -----------------------------------------------------------------------------
current_connection: ContextVar[Optional[SqlConnection]] = ContextVar(
    "current_connection", default=None
)


@contextmanager
def use_connection(connection: SqlConnection):
    """Make connection the default for dispatchers created without one."""
    token = current_connection.set(connection)
    try:
        yield connection
    finally:
        current_connection.reset(token)


# This is the "Bridge" that gives request handlers a dispatcher on the configured database
async def get_dispatcher():
    from sqldispatch.core.dispatcher import SqlDispatcher

    async with await open_connection(settings.database_url()) as connection:
        with use_connection(connection):
            yield SqlDispatcher(connection)
