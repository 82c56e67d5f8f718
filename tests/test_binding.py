import pytest
from sqlalchemy.dialects import mysql, sqlite

from sqldispatch.core.binding import (
    Binder,
    BindType,
    bind_signature,
    build_condition,
    detect_bind_type,
    column_key,
    is_row_id,
    quote_columns,
    quote_name,
    rewrite_qmarks,
    row_id,
)

MYSQL = mysql.dialect()
SQLITE = sqlite.dialect()


@pytest.mark.parametrize(
    "value, expected",
    [
        (12, True),
        ("12", True),
        (" 12 ", True),
        ("1e3", True),
        (4.0, True),
        ("-3", True),
        ("1.5", False),
        (2.5, False),
        ("abc", False),
        ("WHERE a = 1", False),
        ("", False),
        (None, False),
        (True, False),
        ("1e400", False),
        (float("inf"), False),
        (str(2**53 + 1), True),
    ],
)
def test_is_row_id(value, expected):
    assert is_row_id(value) is expected


def test_row_id_conversion():
    assert row_id("1e3") == 1000
    assert row_id(4.0) == 4
    assert row_id("9007199254740993") == 9007199254740993
    assert row_id("9007199254740993.0") == 9007199254740993
    assert row_id(" 12 ") == 12
    with pytest.raises(ValueError):
        row_id("abc")
    with pytest.raises(ValueError):
        row_id("1e400")


def test_bind_types_detected_by_content():
    assert detect_bind_type(5) is BindType.INTEGER
    assert detect_bind_type("42") is BindType.INTEGER
    assert detect_bind_type(1.25) is BindType.FLOAT
    assert detect_bind_type("1.25") is BindType.FLOAT
    assert detect_bind_type(b"\x00") is BindType.BINARY
    # Non-canonical numbers keep their characters
    assert detect_bind_type("007") is BindType.STRING
    assert detect_bind_type("1.50") is BindType.STRING
    assert detect_bind_type("nan") is BindType.STRING


def test_bind_signature():
    assert bind_signature([1, "2", 1.5, "1.50", b"x", None, "abc"]) == "iidsbss"


def test_binder_coerces_canonical_numbers():
    binder = Binder()
    assert binder.add("42") == ":p0"
    assert binder.add("007") == ":p1"
    assert [param.value for param in binder.params] == [42, "007"]
    assert binder.signature == "is"


def test_binder_rejects_duplicate_names():
    binder = Binder()
    binder.add_named("name", "Ada")
    with pytest.raises(ValueError):
        binder.add_named("name", "Alan")


def test_numeric_condition_matches_table_id():
    for value in (2, "2", 2.0):
        binder = Binder()
        clause = build_condition(MYSQL, "person", value, None, binder)
        assert clause == "WHERE `person_id` = :p0"
        assert binder.params[0].value == 2


def test_numeric_condition_quotes_for_dialect():
    clause = build_condition(SQLITE, "order", 9, None, Binder())
    assert clause == 'WHERE "order_id" = :p0'


def test_mapping_condition():
    binder = Binder()
    clause = build_condition(MYSQL, "person", {"forename": "Ada", "surname": None}, None, binder)
    assert clause == "WHERE `forename` = :p0 AND `surname` IS NULL"
    assert binder.signature == "s"


def test_clause_condition_passes_through():
    binder = Binder()
    clause = build_condition(MYSQL, "person", "ORDER BY forename", None, binder)
    assert clause == "ORDER BY forename"
    assert binder.params == []


def test_empty_condition():
    assert build_condition(MYSQL, "person", None, None, Binder()) == ""
    with pytest.raises(ValueError):
        build_condition(MYSQL, "person", None, ["x"], Binder())
    with pytest.raises(ValueError):
        build_condition(MYSQL, "person", 3, ["x"], Binder())


def test_qmarks_inside_literals_are_left_alone():
    binder = Binder()
    clause = rewrite_qmarks("WHERE a = ? AND b = '?' AND `c?` = ?", [1, "x"], binder)
    assert clause == "WHERE a = :p0 AND b = '?' AND `c?` = :p1"
    assert binder.signature == "is"


def test_qmark_count_mismatch():
    with pytest.raises(ValueError):
        rewrite_qmarks("WHERE a = ?", [], Binder())
    with pytest.raises(ValueError):
        rewrite_qmarks("WHERE a = ?", [1, 2], Binder())


def test_identifier_quoting():
    assert quote_name(MYSQL, "`person`") == "`person`"
    assert quote_name(MYSQL, "person.forename") == "`person`.`forename`"
    assert quote_name(MYSQL, "we`ird") == "`we``ird`"
    with pytest.raises(ValueError):
        quote_name(MYSQL, "person.")


def test_column_lists():
    assert quote_columns(MYSQL, None) == "*"
    assert quote_columns(MYSQL, "") == "*"
    assert quote_columns(MYSQL, "`forename`, surname") == "`forename`, `surname`"
    assert quote_columns(SQLITE, ["forename", "surname"]) == '"forename", "surname"'


def test_column_expressions_pass_through():
    columns = "COUNT(*), CONCAT(forename, ' ', surname) AS name, p.`email`, surname"
    assert quote_columns(MYSQL, columns) == (
        "COUNT(*), CONCAT(forename, ' ', surname) AS name, `p`.`email`, `surname`"
    )
    assert quote_columns(SQLITE, ["forename as first", "height"]) == 'forename as first, "height"'


def test_column_keys():
    assert column_key("forename") == "forename"
    assert column_key("p.`forename`") == "forename"
    assert column_key("forename AS name") == "name"
    assert column_key("COUNT(*) AS `total`") == "total"
    assert column_key("COUNT(*)") == "COUNT(*)"


def test_large_id_condition_binds_exact_integer():
    binder = Binder()
    build_condition(MYSQL, "note", str(2**53 + 1), None, binder)
    assert binder.params[0].value == 2**53 + 1
    assert binder.signature == "i"
