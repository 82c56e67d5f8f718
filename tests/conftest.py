import pytest_asyncio
from sqlalchemy import Column, Float, Integer, LargeBinary, MetaData, String, Table

from sqldispatch.core.dispatcher import SqlDispatcher

metadata = MetaData()

# AUTOINCREMENT so ids are never reused and sqlite_sequence is kept
person = Table(
    "person",
    metadata,
    Column("person_id", Integer, primary_key=True, autoincrement=True),
    Column("forename", String(50), nullable=False),
    Column("surname", String(50)),
    Column("email", String(120), unique=True),
    Column("height", Float),
    Column("avatar", LargeBinary),
    sqlite_autoincrement=True,
)

# Plain rowid table
note = Table(
    "note",
    metadata,
    Column("note_id", Integer, primary_key=True),
    Column("body", String(200)),
)


def sqlite_url(path) -> str:
    return f"sqlite+aiosqlite:///{path}"


# Fresh database file per test, tables created up front
@pytest_asyncio.fixture(scope="function")
async def db(tmp_path):
    dispatcher = SqlDispatcher()
    outcome = await dispatcher.connect(url=sqlite_url(tmp_path / "test.db"))
    connection = outcome.unwrap()
    await connection.connection.run_sync(metadata.create_all)

    yield dispatcher  # Tests happen here

    await connection.close()


# Three people: Ada, Alan, Grace
@pytest_asyncio.fixture(scope="function")
async def people(db):
    ids = {}
    for forename, surname, email in [
        ("Ada", "Lovelace", "ada@example.com"),
        ("Alan", "Turing", "alan@example.com"),
        ("Grace", "Hopper", "grace@example.com"),
    ]:
        (await db.add("person", {"forename": forename, "surname": surname, "email": email})).unwrap()
        ids[forename] = (await db.last()).unwrap()
    return ids
