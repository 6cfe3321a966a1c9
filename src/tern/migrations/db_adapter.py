"""
Database session adapter interface for migrations.

Provides an abstract interface for the database operations needed by the
migration engine, so the engine never depends on a particular driver:

- Executing SQL statements (with optional parameters)
- Explicit transaction control (begin/commit/rollback)
- Single row and single value queries

Driver errors are translated to DatabaseError, which carries the
server-reported SQLSTATE and character position when available.
"""

from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Any, Iterator, Sequence

from tern.config.logging_config import get_logger
from tern.migrations.exceptions import DatabaseError

log = get_logger(__name__)

Params = Sequence[Any] | None


class MigrationDBAdapter(ABC):
    """Abstract database session used by the migration engine.

    The session starts outside of any transaction. Each statement executed
    while no transaction is open is committed on its own.
    """

    @abstractmethod
    def execute(self, sql: str, params: Params = None) -> None:
        """Execute a SQL statement (or several when no params are given).

        Raises:
            DatabaseError: If the database rejects the statement
        """
        pass

    @abstractmethod
    def fetchone(self, sql: str, params: Params = None) -> dict[str, Any] | None:
        """Execute a query and fetch one row as a dict, or None if no row."""
        pass

    def fetchval(self, sql: str, params: Params = None) -> Any:
        """Execute a query and return the first column of the first row."""
        row = self.fetchone(sql, params)
        if row is None:
            return None
        return next(iter(row.values()))

    @abstractmethod
    def begin(self) -> None:
        """Open a transaction."""
        pass

    @abstractmethod
    def commit(self) -> None:
        """Commit the open transaction."""
        pass

    @abstractmethod
    def rollback(self) -> None:
        """Roll back the open transaction."""
        pass

    @contextmanager
    def transaction(self) -> Iterator["MigrationDBAdapter"]:
        """Run a block in a transaction, rolling back if the block raises."""
        self.begin()
        try:
            yield self
        except BaseException:
            self.rollback()
            raise
        self.commit()

    @property
    @abstractmethod
    def db_type(self) -> str:
        """Get the database type identifier (e.g. 'postgres')."""
        pass


class PostgresMigrationAdapter(MigrationDBAdapter):
    """PostgreSQL implementation backed by a psycopg connection.

    The connection is switched to autocommit so that statements outside of
    an explicit begin/commit run without an implicit transaction, which is
    required for statements such as `create index concurrently`.
    """

    def __init__(self, connection: Any):
        """Initialize with a psycopg connection.

        Args:
            connection: psycopg.Connection object, not inside a transaction.
        """
        self._conn = connection
        if not self._conn.autocommit:
            self._conn.autocommit = True

    @property
    def connection(self) -> Any:
        return self._conn

    @staticmethod
    def _translate(e: Exception, sql: str) -> DatabaseError:
        diag = getattr(e, "diag", None)
        position = None
        sqlstate = getattr(e, "sqlstate", None)
        detail = hint = None
        if diag is not None:
            if diag.statement_position:
                position = int(diag.statement_position)
            detail = diag.message_detail
            hint = diag.message_hint
        message = str(e).strip().splitlines()[0] if str(e).strip() else type(e).__name__
        return DatabaseError(message, sqlstate=sqlstate, position=position, detail=detail, hint=hint, statement=sql)

    def execute(self, sql: str, params: Params = None) -> None:
        import psycopg

        try:
            self._conn.execute(sql, params)
        except psycopg.Error as e:
            raise self._translate(e, sql) from e

    def fetchone(self, sql: str, params: Params = None) -> dict[str, Any] | None:
        import psycopg
        from psycopg.rows import dict_row

        try:
            with self._conn.cursor(row_factory=dict_row) as cursor:
                cursor.execute(sql, params)
                return cursor.fetchone()
        except psycopg.Error as e:
            raise self._translate(e, sql) from e

    def begin(self) -> None:
        self.execute("begin")

    def commit(self) -> None:
        self.execute("commit")

    def rollback(self) -> None:
        if self._conn.closed:
            log.debug("Connection closed, nothing to roll back")
            return
        self.execute("rollback")

    @property
    def db_type(self) -> str:
        return "postgres"

    def close(self) -> None:
        self._conn.close()


def create_migration_adapter(connection: Any) -> MigrationDBAdapter:
    """Wrap a raw driver connection in the matching adapter.

    Raises:
        TypeError: If the connection type is not supported.
    """
    if isinstance(connection, MigrationDBAdapter):
        return connection

    module_name = type(connection).__module__.lower()
    if "psycopg" in module_name:
        return PostgresMigrationAdapter(connection)

    raise TypeError(f"Unsupported database connection type: {type(connection)}. Expected psycopg.Connection.")
