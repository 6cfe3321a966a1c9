"""
Migration runner for the tern migration system.

Provides the core Migrator class that handles:
- Loading migrations from a source and ordering them by sequence
- Planning the up or down path between the current and a target version
- Executing each step in its own transaction (or statement by statement
  for steps that cannot run in a transaction)
- Version tracking in a single-row version table
- Database-level advisory locking for concurrently started migrators
- Cooperative cancellation between statements and steps
"""

import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable

from tern.config.logging_config import get_logger
from tern.migrations.db_adapter import MigrationDBAdapter, create_migration_adapter
from tern.migrations.discovery import load_migrations
from tern.migrations.exceptions import (
    BadVersionError,
    DatabaseError,
    IrreversibleMigrationError,
    MigrationCancelledError,
    MigrationError,
    MigrationExecutionError,
    NoMigrationsFoundError,
)
from tern.migrations.source import MigrationSource
from tern.migrations.state import DEFAULT_VERSION_TABLE, VersionTable, advisory_lock
from tern.migrations.step import DOWN, UP, FuncMigration, MigrationStep, SQLMigration, StepContext
from tern.migrations.templates import TemplateRenderer

log = get_logger(__name__)

OnStart = Callable[[int, str, str, str], None]


@dataclass(frozen=True)
class MigratorOptions:
    """Options fixed for the lifetime of a Migrator.

    Attributes:
        disable_tx: Never wrap steps in transactions
    """

    disable_tx: bool = False


@dataclass
class MigrationPlan:
    """The ordered steps that move the schema from one version to another.

    Attributes:
        current_version: Version the plan starts from
        target_version: Version the plan ends at
        direction: 1 when migrating up, -1 when migrating down, 0 for no-op
        steps: (step, direction name) pairs in execution order
    """

    current_version: int
    target_version: int
    direction: int
    steps: list[tuple[MigrationStep, str]] = field(default_factory=list)

    @property
    def is_noop(self) -> bool:
        return self.current_version == self.target_version


class Migrator:
    """Applies an ordered, gap-free sequence of migrations to a database.

    Example:
        migrator = Migrator(adapter, "public.schema_version")
        migrator.data = {"prefix": "app"}
        migrator.load_migrations(DirectorySource("migrations"))
        migrator.migrate()

    A Migrator drives a single database session and is not safe for
    concurrent use from several threads. Run several Migrators on separate
    connections instead; the advisory lock serializes them.
    """

    def __init__(
        self,
        connection_or_adapter: Any,
        version_table: str = DEFAULT_VERSION_TABLE,
        options: MigratorOptions | None = None,
        create_version_table: bool = True,
    ):
        """Initialize the migrator.

        Args:
            connection_or_adapter: A MigrationDBAdapter or a raw psycopg
                connection. May be None for load-only use (e.g. script generation).
            version_table: Name of the version table, preferably schema qualified
            options: Migrator options
            create_version_table: Create the version table if it does not exist
        """
        if connection_or_adapter is None:
            self._adapter = None
        else:
            self._adapter = create_migration_adapter(connection_or_adapter)

        self.version_table_name = version_table
        self.options = options or MigratorOptions()
        self.migrations: list[MigrationStep] = []
        self.data: dict[str, Any] = {}
        self.on_start: OnStart | None = None

        if self._adapter is not None and create_version_table:
            self._version_table().ensure_exists()

    @property
    def adapter(self) -> MigrationDBAdapter:
        if self._adapter is None:
            raise MigrationError("Migrator has no database connection")
        return self._adapter

    def _version_table(self) -> VersionTable:
        return VersionTable(self.adapter, self.version_table_name)

    # -------------------------------------------------------------------------
    # Migration set
    # -------------------------------------------------------------------------

    def load_migrations(self, source: MigrationSource, renderer: TemplateRenderer | None = None) -> None:
        """Discover migrations in a source and append them.

        Raises:
            MigrationDiscoveryError: If discovery or rendering fails
        """
        for migration in load_migrations(source, self.data, renderer):
            self.append_migration(migration.name, migration.up_sql, migration.down_sql)

    def append_migration(self, name: str, up_sql: str, down_sql: str = "") -> SQLMigration:
        """Append an SQL migration with the next sequence number."""
        migration = SQLMigration(sequence=len(self.migrations) + 1, name=name, up_sql=up_sql, down_sql=down_sql)
        self.migrations.append(migration)
        return migration

    def append_step(self, step: MigrationStep) -> None:
        """Append a prebuilt step, which must carry the next sequence number."""
        expected = len(self.migrations) + 1
        if step.sequence != expected:
            raise BadVersionError(f"step {step.name} has sequence {step.sequence}, expected {expected}")
        self.migrations.append(step)

    def validate(self) -> None:
        """Check that every step defines an up direction.

        Raises:
            MigrationError: If a step is incoherent
        """
        for step in self.migrations:
            if isinstance(step, SQLMigration) and not step.up_sql:
                raise MigrationError(f"migration {step.name} must specify up SQL", step.sequence)
            if isinstance(step, FuncMigration) and step.up_func is None:
                raise MigrationError(f"migration {step.name} must specify an up function", step.sequence)

    # -------------------------------------------------------------------------
    # Version
    # -------------------------------------------------------------------------

    def get_current_version(self) -> int:
        """Read the current schema version from the version table."""
        return self._version_table().get()

    def _check_version(self, kind: str, version: int) -> None:
        if version < 0 or version > len(self.migrations):
            raise BadVersionError(
                f"{kind} version {version} is outside the valid versions of 0 to {len(self.migrations)}"
            )

    def plan(self, target_version: int, current_version: int | None = None) -> MigrationPlan:
        """Compute the steps needed to reach a target version.

        Raises:
            BadVersionError: If the current or target version is out of range
            IrreversibleMigrationError: If the path down crosses an irreversible step
        """
        self._check_version("destination", target_version)
        if current_version is None:
            current_version = self.get_current_version()
        self._check_version("current", current_version)

        direction = (target_version > current_version) - (target_version < current_version)
        plan = MigrationPlan(current_version, target_version, direction)

        version = current_version
        while version != target_version:
            if direction == 1:
                plan.steps.append((self.migrations[version], UP))
            else:
                step = self.migrations[version - 1]
                if step.irreversible():
                    raise IrreversibleMigrationError(step.sequence, step.name)
                plan.steps.append((step, DOWN))
            version += direction
        return plan

    # -------------------------------------------------------------------------
    # Execution
    # -------------------------------------------------------------------------

    def migrate(self, cancel: threading.Event | None = None) -> None:
        """Migrate to the latest migration."""
        if not self.migrations:
            raise NoMigrationsFoundError()
        self.migrate_to(len(self.migrations), cancel)

    def migrate_to(self, target_version: int, cancel: threading.Event | None = None) -> None:
        """Migrate to an absolute target version.

        Migrating to the current version is a no-op. Each step runs in its
        own transaction together with the version update, unless the step or
        the options disable transactions. When migrating down, the path is
        checked for irreversible steps first, so an IrreversibleMigrationError
        leaves the current version unchanged.

        Args:
            target_version: Version between 0 and the number of migrations
            cancel: Event checked between statements and steps

        Raises:
            BadVersionError: If the current or target version is out of range
            IrreversibleMigrationError: If a down step cannot be undone
            MigrationExecutionError: If a statement fails
            MigrationCancelledError: If cancel was set before the run finished
            LockError: If the advisory lock cannot be taken
        """
        self.validate()
        self._check_version("destination", target_version)

        with advisory_lock(self.adapter):
            current_version = self.get_current_version()
            self._check_version("current", current_version)

            if current_version == target_version:
                log.info(f"Already at version {target_version}")
                return

            # An irreversible step anywhere on the way down fails the whole run
            # before any step is applied
            plan = self.plan(target_version, current_version)
            for step, direction_name in plan.steps:
                if cancel is not None and cancel.is_set():
                    log.warning(f"Migration cancelled at version {current_version}")
                    raise MigrationCancelledError(f"migration cancelled at version {current_version}")

                self._run_step(step, direction_name, current_version + plan.direction, cancel)
                current_version += plan.direction

    def _run_step(
        self,
        step: MigrationStep,
        direction: str,
        new_version: int,
        cancel: threading.Event | None,
    ) -> None:
        use_tx = not self.options.disable_tx and not step.disable_tx(direction)
        context = StepContext(in_transaction=use_tx, cancel=cancel)

        log.info(f"Migrating {direction}: {step.sequence} ({step.name})")
        start_time = time.time()

        if use_tx:
            self.adapter.begin()
        try:
            if self.on_start is not None:
                self.on_start(step.sequence, step.name, direction, step.sql(direction))

            step.apply(direction, self.adapter, context)

            # search_path and other settings changed by the step must not leak
            # into the version update or the next step
            self._execute_step_sql(step, "reset all")
            self._execute_step_sql(step, f"update {self.version_table_name} set version=%s", (new_version,))
        except BaseException:
            if use_tx:
                self.adapter.rollback()
            raise

        if use_tx:
            try:
                self.adapter.commit()
            except DatabaseError as e:
                raise MigrationExecutionError(step.name, "commit", e, step.sequence) from e

        execution_time_ms = int((time.time() - start_time) * 1000)
        log.info(f"Migration {step.sequence} ({step.name}) {direction} done in {execution_time_ms}ms")

    def _execute_step_sql(self, step: MigrationStep, sql: str, params: tuple[Any, ...] | None = None) -> None:
        try:
            self.adapter.execute(sql, params)
        except DatabaseError as e:
            raise MigrationExecutionError(step.name, sql, e, step.sequence) from e


def resolve_destination(destination: str, current_version: int, last_version: int) -> list[int]:
    """Translate a destination argument into the absolute versions to migrate to.

    Accepted forms:
        last   the newest migration
        N      absolute version N
        +N     N steps up from the current version
        -N     N steps down from the current version
        -+N    redo: N steps down, then back up to the current version

    Returns:
        Targets to pass to migrate_to in order (two for a redo)

    Raises:
        BadVersionError: If the destination cannot be parsed
    """
    destination = destination.strip()
    if destination == "last":
        return [last_version]

    if destination.startswith("-+"):
        return [current_version - _parse_count(destination[2:], destination), current_version]
    if destination.startswith("-"):
        return [current_version - _parse_count(destination[1:], destination)]
    if destination.startswith("+"):
        return [current_version + _parse_count(destination[1:], destination)]
    return [_parse_count(destination, destination)]


def _parse_count(text: str, destination: str) -> int:
    if not (text.isascii() and text.isdigit()):
        raise BadVersionError(f"Bad destination: {destination}")
    return int(text)
