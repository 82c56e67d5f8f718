from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from sqldispatch.core.database import SqlConnection
from sqldispatch.core.results import ResultHandle


# =========================
# Enums
# =========================
class Action(str, Enum):
    CONNECT = "connect"
    ERROR = "error"
    STATUS = "status"
    USE = "use"
    CLEANSE = "cleanse"
    ID = "id"
    RAW = "raw"
    QUERY = "query"
    ADD = "add"
    EDIT = "edit"
    DELETE = "delete"
    SELECT = "select"
    NEXT = "next"
    LAST = "last"
    COUNT = "count"
    ARRAY = "array"
    FREE = "free"
    ROWS = "rows"


# Older action names still accepted by parse_request
ACTION_ALIASES = {"db": Action.USE, "doquery": Action.RAW}

ConditionArg = Union[None, int, float, str, Dict[str, Any]]
ParamsArg = Union[None, Dict[str, Any], List[Any]]
ColumnsArg = Union[None, str, List[str]]


# =========================
# BASE
# =========================
class SqlRequest(BaseModel):
    # Overrides the dispatcher's connection for this one call
    connection: Optional[SqlConnection] = None

    model_config = ConfigDict(arbitrary_types_allowed=True, frozen=True)

    @property
    def kind(self) -> Action:
        return Action(getattr(self, "action"))


# =========================
# CONNECTION
# =========================
class ConnectRequest(SqlRequest):
    action: Literal["connect"] = "connect"
    host: str = "localhost"
    user: str = "root"
    password: str = ""
    database: Optional[str] = None
    port: Optional[int] = None
    # A full SQLAlchemy URL; when set, the parts above are ignored
    url: Optional[str] = None


class ErrorRequest(SqlRequest):
    action: Literal["error"] = "error"


class StatusRequest(SqlRequest):
    action: Literal["status"] = "status"


class UseRequest(SqlRequest):
    action: Literal["use"] = "use"
    database: str = Field(min_length=1)


# =========================
# VALUES
# =========================
class CleanseRequest(SqlRequest):
    action: Literal["cleanse"] = "cleanse"
    value: Any = None


class IdRequest(SqlRequest):
    action: Literal["id"] = "id"
    value: Any = None


# =========================
# STATEMENTS
# =========================
class RawRequest(SqlRequest):
    action: Literal["raw"] = "raw"
    # A list runs each statement in turn, one result per statement
    sql: Union[
        Annotated[str, Field(min_length=1)],
        Annotated[List[Annotated[str, Field(min_length=1)]], Field(min_length=1)],
    ]
    params: ParamsArg = None


class QueryRequest(SqlRequest):
    action: Literal["query"] = "query"
    table: str = Field(min_length=1)
    columns: ColumnsArg = None
    where: ConditionArg = None
    params: ParamsArg = None


class AddRequest(SqlRequest):
    action: Literal["add"] = "add"
    table: str = Field(min_length=1)
    values: Dict[str, Any]


class EditRequest(SqlRequest):
    action: Literal["edit"] = "edit"
    table: str = Field(min_length=1)
    values: Dict[str, Any]
    where: ConditionArg = None
    params: ParamsArg = None


class DeleteRequest(SqlRequest):
    action: Literal["delete"] = "delete"
    table: str = Field(min_length=1)
    where: ConditionArg = None
    params: ParamsArg = None


class SelectRequest(SqlRequest):
    action: Literal["select"] = "select"
    table: str = Field(min_length=1)
    columns: ColumnsArg = None
    where: ConditionArg = None
    params: ParamsArg = None


class NextRequest(SqlRequest):
    action: Literal["next"] = "next"
    table: str = Field(min_length=1)


class LastRequest(SqlRequest):
    action: Literal["last"] = "last"


class CountRequest(SqlRequest):
    """
    Count rows in table matching where.

    Without a table, where must hold a complete SELECT statement to count.
    """

    action: Literal["count"] = "count"
    table: Optional[str] = None
    where: ConditionArg = None
    params: ParamsArg = None


# =========================
# RESULT HANDLES
# =========================
class FetchRequest(SqlRequest):
    action: Literal["array"] = "array"
    handle: Optional[ResultHandle] = None


class ReleaseRequest(SqlRequest):
    action: Literal["free"] = "free"
    handle: Optional[ResultHandle] = None


class RowsRequest(SqlRequest):
    action: Literal["rows"] = "rows"
    handle: Optional[ResultHandle] = None


Request = Annotated[
    Union[
        ConnectRequest,
        ErrorRequest,
        StatusRequest,
        UseRequest,
        CleanseRequest,
        IdRequest,
        RawRequest,
        QueryRequest,
        AddRequest,
        EditRequest,
        DeleteRequest,
        SelectRequest,
        NextRequest,
        LastRequest,
        CountRequest,
        FetchRequest,
        ReleaseRequest,
        RowsRequest,
    ],
    Field(discriminator="action"),
]

_request_adapter = TypeAdapter(Request)


def parse_request(data: Mapping[str, Any]) -> SqlRequest:
    """
    Build the typed request for a string-tagged mapping.

    Example:
        parse_request({"action": "select", "table": "person", "where": 2})
    """
    payload = dict(data)
    action = payload.get("action")
    if action in ACTION_ALIASES:
        payload["action"] = ACTION_ALIASES[action].value
    elif isinstance(action, Action):
        payload["action"] = action.value
    return _request_adapter.validate_python(payload)
