import copy
import re
from typing import Any

import pytest

from tern.migrations.db_adapter import MigrationDBAdapter
from tern.migrations.exceptions import DatabaseError
from tern.migrations.state import ADVISORY_LOCK_KEY

_CREATE_TABLE = re.compile(r"create table (?:if not exists )?([\w.]+)", re.IGNORECASE)
_DROP_TABLE = re.compile(r"drop table (?:if exists )?([\w.]+)", re.IGNORECASE)
_UPDATE_VERSION = re.compile(r"^update ([\w.]+) set version=%s$")

# Any statement containing this token fails like a syntax error at that token
FAIL_TOKEN = "raise_error"


class FakeAdapter(MigrationDBAdapter):
    """In-memory stand-in for a PostgreSQL session.

    Tracks tables created and dropped by simple DDL, the version table row,
    the advisory lock and transactions (a rollback restores the state saved
    at begin). Every executed statement is recorded in `executed`.
    """

    def __init__(self):
        self.tables: set[str] = set()
        self.versions: dict[str, int] = {}
        self.executed: list[str] = []
        self.lock_depth = 0
        self.in_transaction = False
        self.commit_error: DatabaseError | None = None
        self.lock_error: DatabaseError | None = None
        self._saved: tuple[set[str], dict[str, int]] | None = None

    def _fail_if_requested(self, sql: str) -> None:
        index = sql.find(FAIL_TOKEN)
        if index >= 0:
            raise DatabaseError(
                f'syntax error at or near "{FAIL_TOKEN}"',
                sqlstate="42601",
                position=index + 1,
                detail="fake detail",
                statement=sql,
            )

    def execute(self, sql: str, params: Any = None) -> None:
        self.executed.append(sql)
        stripped = sql.strip()

        if stripped == "select pg_advisory_lock(%s)":
            assert params == (ADVISORY_LOCK_KEY,)
            if self.lock_error is not None:
                raise self.lock_error
            self.lock_depth += 1
            return
        if stripped == "select pg_advisory_unlock(%s)":
            self.lock_depth -= 1
            return
        if stripped == "reset all":
            return

        match = _UPDATE_VERSION.match(stripped)
        if match:
            table = match.group(1)
            if table not in self.versions:
                raise DatabaseError(f'relation "{table}" does not exist', sqlstate="42P01")
            self.versions[table] = params[0]
            return

        if "insert into" in stripped and "where 0=(select count(*)" in stripped:
            table = _CREATE_TABLE.search(stripped).group(1)
            self.tables.add(table)
            self.versions.setdefault(table, 0)
            return

        self._fail_if_requested(sql)

        for table in _CREATE_TABLE.findall(sql):
            if table in self.tables:
                raise DatabaseError(f'relation "{table}" already exists', sqlstate="42P07")
            self.tables.add(table)
        for table in _DROP_TABLE.findall(sql):
            self.tables.discard(table)

    def fetchone(self, sql: str, params: Any = None) -> dict[str, Any] | None:
        self.executed.append(sql)
        if "pg_catalog.pg_tables" in sql:
            schema, table = params
            return {"count": int(f"{schema}.{table}" in self.versions)}
        if "pg_catalog.pg_class" in sql:
            return {"count": int(params[0] in self.versions)}
        if sql.startswith("select version from "):
            table = sql[len("select version from ") :]
            if table not in self.versions:
                raise DatabaseError(f'relation "{table}" does not exist', sqlstate="42P01")
            return {"version": self.versions[table]}
        if sql == "show search_path":
            return {"search_path": '"$user", public'}
        raise AssertionError(f"unexpected query: {sql}")

    def begin(self) -> None:
        assert not self.in_transaction, "nested transaction"
        self.executed.append("begin")
        self.in_transaction = True
        self._saved = (set(self.tables), copy.copy(self.versions))

    def commit(self) -> None:
        self.executed.append("commit")
        if self.commit_error is not None:
            self.rollback()
            raise self.commit_error
        self.in_transaction = False
        self._saved = None

    def rollback(self) -> None:
        self.executed.append("rollback")
        if self._saved is not None:
            self.tables, self.versions = self._saved
        self.in_transaction = False
        self._saved = None

    @property
    def db_type(self) -> str:
        return "fake"


@pytest.fixture
def fake_adapter():
    """Provide a fresh in-memory session adapter."""
    return FakeAdapter()
