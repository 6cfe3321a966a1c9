"""
Persisted version state and cross-process locking.

The version table holds exactly one row with the sequence number of the
most recently applied migration. Every tool that changes the schema
serializes on a session-level PostgreSQL advisory lock, so concurrently
started migrators never act on the same version. The lock belongs to the
database session and is released automatically if the session drops.
"""

from contextlib import contextmanager
from typing import Iterator

from tern.config.logging_config import get_logger
from tern.migrations.db_adapter import MigrationDBAdapter
from tern.migrations.exceptions import DatabaseError, LockError, VersionTableError

log = get_logger(__name__)

# Arbitrary key shared by the migrator and the code package installer
ADVISORY_LOCK_KEY = 9628173550095224

DEFAULT_VERSION_TABLE = "public.schema_version"


def acquire_lock(adapter: MigrationDBAdapter) -> None:
    """Block until the advisory lock is held by this session.

    Raises:
        LockError: If the database refuses the lock request
    """
    try:
        adapter.execute("select pg_advisory_lock(%s)", (ADVISORY_LOCK_KEY,))
    except DatabaseError as e:
        raise LockError(f"Could not acquire migration lock: {e}") from e
    log.debug(f"Migration lock {ADVISORY_LOCK_KEY} acquired")


def release_lock(adapter: MigrationDBAdapter) -> None:
    """Release the advisory lock held by this session."""
    try:
        adapter.execute("select pg_advisory_unlock(%s)", (ADVISORY_LOCK_KEY,))
    except DatabaseError as e:
        raise LockError(f"Could not release migration lock: {e}") from e
    log.debug(f"Migration lock {ADVISORY_LOCK_KEY} released")


@contextmanager
def advisory_lock(adapter: MigrationDBAdapter) -> Iterator[None]:
    """Hold the advisory lock for the duration of a block.

    The lock is released on every exit path. A release failure is only
    raised when the block itself succeeded.
    """
    acquire_lock(adapter)
    try:
        yield
    except BaseException:
        try:
            release_lock(adapter)
        except LockError as unlock_error:
            log.warning(f"{unlock_error} (while handling an earlier error)")
        raise
    release_lock(adapter)


class VersionTable:
    """The single-row table recording the current schema version.

    Args:
        adapter: Database session
        name: Table name, preferably schema qualified (e.g. public.schema_version)
    """

    def __init__(self, adapter: MigrationDBAdapter, name: str = DEFAULT_VERSION_TABLE):
        self.adapter = adapter
        self.name = name

    def exists(self) -> bool:
        """Check whether the table is visible to the session."""
        schema, _, table = self.name.rpartition(".")
        if schema:
            count = self.adapter.fetchval(
                "select count(*) from pg_catalog.pg_tables where schemaname=%s and tablename=%s",
                (schema, table),
            )
        else:
            count = self.adapter.fetchval(
                "select count(*) from pg_catalog.pg_class "
                "where relname=%s and relkind='r' and pg_table_is_visible(oid)",
                (table,),
            )
        return bool(count)

    def ensure_exists(self) -> None:
        """Create and seed the table with version 0 unless it already exists.

        Runs under the advisory lock. The insert only fires when the table is
        empty, so racing first-time initializations still leave one row.
        """
        with advisory_lock(self.adapter):
            if self.exists():
                return
            log.info(f"Creating version table {self.name}")
            self.adapter.execute(
                f"""
                create table if not exists {self.name}(version int4 not null);

                insert into {self.name}(version)
                select 0
                where 0=(select count(*) from {self.name});
                """
            )

    def get(self) -> int:
        """Read the current version.

        Raises:
            VersionTableError: If the table is missing or has no row
        """
        try:
            row = self.adapter.fetchone(f"select version from {self.name}")
        except DatabaseError as e:
            raise VersionTableError(f"Unable to read version from {self.name}: {e}") from e
        if row is None:
            raise VersionTableError(f"Version table {self.name} has no version row")
        return int(row["version"])

    def set(self, version: int) -> None:
        """Overwrite the stored version."""
        self.adapter.execute(f"update {self.name} set version=%s", (version,))
