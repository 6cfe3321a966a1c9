"""
Tests for the Migrator class.

Tests cover:
- Version table bootstrap
- Migrating up and down
- Transaction handling and rollback on failure
- Non-transactional migrations
- Cancellation
- Function based steps
- Destination resolution
"""

import threading

import pytest

from tern.migrations.exceptions import (
    BadVersionError,
    DatabaseError,
    IrreversibleMigrationError,
    LockError,
    MigrationCancelledError,
    MigrationError,
    MigrationExecutionError,
    NoMigrationsFoundError,
)
from tern.migrations.runner import Migrator, MigratorOptions, resolve_destination
from tern.migrations.source import MemorySource
from tern.migrations.step import FuncMigration, SQLMigration

VERSION_TABLE = "public.schema_version"


@pytest.fixture
def migrator(fake_adapter):
    """A migrator with two reversible migrations."""
    m = Migrator(fake_adapter, VERSION_TABLE)
    m.append_migration("001_create_t1.sql", "create table t1(id int);", "drop table t1;")
    m.append_migration("002_create_t2.sql", "create table t2(id int);", "drop table t2;")
    return m


class TestVersionTable:
    def test_creates_version_table_at_zero(self, fake_adapter):
        """Test that a new version table starts at version 0."""
        migrator = Migrator(fake_adapter, VERSION_TABLE)

        assert fake_adapter.versions == {VERSION_TABLE: 0}
        assert migrator.get_current_version() == 0
        assert fake_adapter.lock_depth == 0

    def test_existing_version_table_is_kept(self, fake_adapter):
        """Test that an existing version table is not recreated."""
        fake_adapter.versions[VERSION_TABLE] = 3
        Migrator(fake_adapter, VERSION_TABLE)

        assert fake_adapter.versions[VERSION_TABLE] == 3
        assert not any("create table" in sql for sql in fake_adapter.executed)

    def test_skip_version_table_creation(self, fake_adapter):
        """Test construction without creating the version table."""
        Migrator(fake_adapter, VERSION_TABLE, create_version_table=False)

        assert fake_adapter.versions == {}
        assert fake_adapter.executed == []


class TestMigrate:
    def test_migrate_applies_all(self, fake_adapter, migrator):
        """Test migrating to the latest version."""
        migrator.migrate()

        assert migrator.get_current_version() == 2
        assert {"t1", "t2"} <= fake_adapter.tables
        assert fake_adapter.lock_depth == 0

    def test_each_step_runs_in_its_own_transaction(self, fake_adapter, migrator):
        """Test the statement sequence of a single step."""
        fake_adapter.executed.clear()
        migrator.migrate_to(1)

        assert fake_adapter.executed == [
            "select pg_advisory_lock(%s)",
            f"select version from {VERSION_TABLE}",
            "begin",
            "create table t1(id int);",
            "reset all",
            f"update {VERSION_TABLE} set version=%s",
            "commit",
            "select pg_advisory_unlock(%s)",
        ]

    def test_migrate_down(self, fake_adapter, migrator):
        """Test migrating down to version 0."""
        migrator.migrate()
        migrator.migrate_to(0)

        assert migrator.get_current_version() == 0
        assert "t1" not in fake_adapter.tables
        assert "t2" not in fake_adapter.tables

    def test_migrate_to_current_version_is_noop(self, fake_adapter, migrator):
        """Test that migrating to the current version does nothing."""
        migrator.migrate_to(1)
        fake_adapter.executed.clear()

        migrator.migrate_to(1)

        assert "begin" not in fake_adapter.executed
        assert migrator.get_current_version() == 1

    @pytest.mark.parametrize("target", [-1, 3])
    def test_destination_out_of_range(self, fake_adapter, migrator, target):
        """Test rejection of out of range destinations."""
        fake_adapter.executed.clear()

        with pytest.raises(BadVersionError, match="destination version"):
            migrator.migrate_to(target)

        assert fake_adapter.executed == []

    def test_current_version_out_of_range(self, fake_adapter, migrator):
        """Test rejection of an out of range current version."""
        fake_adapter.versions[VERSION_TABLE] = 7

        with pytest.raises(BadVersionError, match="current version 7"):
            migrator.migrate_to(1)

        assert fake_adapter.lock_depth == 0

    def test_irreversible_migration(self, fake_adapter):
        """Test that a missing down part blocks migrating down."""
        migrator = Migrator(fake_adapter, VERSION_TABLE)
        migrator.append_migration("001_create_t1.sql", "create table t1(id int);")
        migrator.migrate()

        with pytest.raises(IrreversibleMigrationError, match="Irreversible migration: 1 - 001_create_t1.sql"):
            migrator.migrate_to(0)

        assert migrator.get_current_version() == 1
        assert "t1" in fake_adapter.tables

    def test_migrate_without_migrations(self, fake_adapter):
        """Test migrate with no migrations loaded."""
        migrator = Migrator(fake_adapter, VERSION_TABLE)

        with pytest.raises(NoMigrationsFoundError):
            migrator.migrate()

    def test_on_start_receives_step_details(self, migrator):
        """Test the on_start callback arguments."""
        calls = []
        migrator.on_start = lambda *args: calls.append(args)

        migrator.migrate()
        migrator.migrate_to(1)

        assert calls == [
            (1, "001_create_t1.sql", "up", "create table t1(id int);"),
            (2, "002_create_t2.sql", "up", "create table t2(id int);"),
            (2, "002_create_t2.sql", "down", "drop table t2;"),
        ]

    def test_irreversible_step_in_the_middle_stops_before_any_step(self, fake_adapter):
        """Test that no step runs when the way down is blocked."""
        migrator = Migrator(fake_adapter, VERSION_TABLE)
        migrator.append_migration("001_create_t1.sql", "create table t1(id int);", "drop table t1;")
        migrator.append_migration("002_create_t2.sql", "create table t2(id int);")
        migrator.append_migration("003_create_t3.sql", "create table t3(id int);", "drop table t3;")
        migrator.migrate()

        with pytest.raises(IrreversibleMigrationError) as exc_info:
            migrator.migrate_to(0)

        assert exc_info.value.sequence == 2
        assert migrator.get_current_version() == 3
        assert {"t1", "t2", "t3"} <= fake_adapter.tables
        assert fake_adapter.lock_depth == 0

    def test_lock_failure(self, fake_adapter, migrator):
        """Test that a lock failure aborts before any step."""
        fake_adapter.lock_error = DatabaseError("lock timeout", sqlstate="55P03")

        with pytest.raises(LockError):
            migrator.migrate()

        assert "begin" not in fake_adapter.executed


def _user_tables(adapter):
    return adapter.tables - {VERSION_TABLE}


class TestScenarios:
    @pytest.fixture
    def three_tables(self, fake_adapter):
        """A migrator with three reversible migrations creating t1, t2 and t3."""
        m = Migrator(fake_adapter, VERSION_TABLE)
        for n in (1, 2, 3):
            m.append_migration(f"00{n}_create_t{n}.sql", f"create table t{n}(id int);", f"drop table t{n};")
        return m

    def test_up_down_walk(self, fake_adapter, three_tables):
        """Test moving up and down through three migrations."""
        three_tables.migrate_to(1)
        assert three_tables.get_current_version() == 1
        assert _user_tables(fake_adapter) == {"t1"}

        three_tables.migrate_to(3)
        assert three_tables.get_current_version() == 3
        assert _user_tables(fake_adapter) == {"t1", "t2", "t3"}

        fake_adapter.executed.clear()
        three_tables.migrate_to(3)
        assert "begin" not in fake_adapter.executed
        assert three_tables.get_current_version() == 3

        three_tables.migrate_to(1)
        assert three_tables.get_current_version() == 1
        assert _user_tables(fake_adapter) == {"t1"}

        three_tables.migrate_to(0)
        assert three_tables.get_current_version() == 0
        assert _user_tables(fake_adapter) == set()

    def test_down_to_zero_and_back(self, fake_adapter, three_tables):
        """Test that down to 0 and back up restores the schema."""
        three_tables.migrate()
        tables_at_latest = _user_tables(fake_adapter)

        three_tables.migrate_to(0)
        three_tables.migrate()

        assert three_tables.get_current_version() == 3
        assert _user_tables(fake_adapter) == tables_at_latest


class TestFailures:
    def test_failed_step_is_rolled_back(self, fake_adapter):
        """Test that a failing step is rolled back with diagnostics."""
        migrator = Migrator(fake_adapter, VERSION_TABLE)
        migrator.append_migration("001_ok.sql", "create table t1(id int);")
        migrator.append_migration("002_bad.sql", "create table t2(id int);\nselect raise_error;")

        with pytest.raises(MigrationExecutionError) as exc_info:
            migrator.migrate()

        error = exc_info.value
        assert error.migration_name == "002_bad.sql"
        assert error.migration_version == 2
        assert error.sql == "create table t2(id int);\nselect raise_error;"
        assert error.position == error.sql.index("raise_error") + 1
        assert error.detail == "fake detail"

        line = error.error_line()
        assert line.line_num == 2
        assert line.column_num == 8
        assert line.text == "select raise_error;"

        assert migrator.get_current_version() == 1
        assert "t1" in fake_adapter.tables
        assert "t2" not in fake_adapter.tables
        assert fake_adapter.lock_depth == 0
        assert not fake_adapter.in_transaction

    def test_commit_failure(self, fake_adapter, migrator):
        """Test that a failed commit is reported."""
        fake_adapter.commit_error = DatabaseError("could not serialize access", sqlstate="40001")

        with pytest.raises(MigrationExecutionError) as exc_info:
            migrator.migrate()

        assert exc_info.value.sql == "commit"
        assert migrator.get_current_version() == 0
        assert fake_adapter.lock_depth == 0

    def test_disable_tx_runs_statements_one_by_one(self, fake_adapter):
        """Test non-transactional execution stopping at the failure."""
        migrator = Migrator(fake_adapter, VERSION_TABLE)
        migrator.append_migration(
            "001_no_tx.sql",
            "---- tern: disable-tx ----\ncreate table t1(id int);\nselect raise_error;\ncreate table t2(id int);",
        )

        with pytest.raises(MigrationExecutionError) as exc_info:
            migrator.migrate()

        assert exc_info.value.sql == "select raise_error;"
        assert "begin" not in fake_adapter.executed
        # Statements before the failure stay applied
        assert "t1" in fake_adapter.tables
        assert "t2" not in fake_adapter.tables
        assert migrator.get_current_version() == 0

    def test_disable_tx_option(self, fake_adapter, migrator):
        """Test the disable_tx migrator option."""
        migrator.options = MigratorOptions(disable_tx=True)

        migrator.migrate()

        assert "begin" not in fake_adapter.executed
        assert migrator.get_current_version() == 2

    def test_validate_rejects_empty_up_sql(self, fake_adapter):
        """Test validation of empty up SQL."""
        migrator = Migrator(fake_adapter, VERSION_TABLE)
        migrator.migrations.append(SQLMigration(sequence=1, name="001_empty.sql", up_sql=""))

        with pytest.raises(MigrationError, match="must specify up SQL"):
            migrator.migrate()


class TestCancellation:
    def test_cancel_before_start(self, fake_adapter, migrator):
        """Test cancellation before the first step."""
        cancel = threading.Event()
        cancel.set()

        with pytest.raises(MigrationCancelledError):
            migrator.migrate(cancel)

        assert migrator.get_current_version() == 0
        assert fake_adapter.lock_depth == 0

    def test_cancel_during_step_rolls_back(self, fake_adapter, migrator):
        """Test cancellation in the middle of a step."""
        cancel = threading.Event()
        migrator.on_start = lambda *args: cancel.set()

        with pytest.raises(MigrationCancelledError):
            migrator.migrate(cancel)

        assert migrator.get_current_version() == 0
        assert "t1" not in fake_adapter.tables
        assert "rollback" in fake_adapter.executed
        assert fake_adapter.lock_depth == 0

    def test_cancel_between_steps(self, fake_adapter, migrator):
        """Test cancellation after a committed step."""
        cancel = threading.Event()

        def on_start(sequence, name, direction, sql):
            if sequence == 1:
                fake_adapter.executed.append("-- step 1 started")
            else:
                raise AssertionError("second step must not start")

        migrator.on_start = on_start
        original_commit = fake_adapter.commit

        def commit_then_cancel():
            original_commit()
            cancel.set()

        fake_adapter.commit = commit_then_cancel

        with pytest.raises(MigrationCancelledError):
            migrator.migrate(cancel)

        assert migrator.get_current_version() == 1


class TestFuncMigration:
    def test_function_steps(self, fake_adapter):
        """Test migrating with Python function steps."""
        migrator = Migrator(fake_adapter, VERSION_TABLE)
        migrator.append_step(
            FuncMigration(
                sequence=1,
                name="create_widgets",
                up_func=lambda db: db.execute("create table widgets(id int)"),
                down_func=lambda db: db.execute("drop table widgets"),
            )
        )

        migrator.migrate()
        assert "widgets" in fake_adapter.tables

        migrator.migrate_to(0)
        assert "widgets" not in fake_adapter.tables

    def test_function_step_failure_is_wrapped(self, fake_adapter):
        """Test that function step errors are wrapped."""
        migrator = Migrator(fake_adapter, VERSION_TABLE)
        migrator.append_step(
            FuncMigration(sequence=1, name="broken", up_func=lambda db: db.execute("select raise_error"))
        )

        with pytest.raises(MigrationExecutionError, match="broken"):
            migrator.migrate()

        assert migrator.get_current_version() == 0

    def test_function_step_failure_keeps_statement(self, fake_adapter):
        """Test that function step errors carry the failing statement."""
        migrator = Migrator(fake_adapter, VERSION_TABLE)
        migrator.append_step(
            FuncMigration(sequence=1, name="broken", up_func=lambda db: db.execute("select raise_error"))
        )

        with pytest.raises(MigrationExecutionError) as exc_info:
            migrator.migrate()

        error = exc_info.value
        assert error.sql == "select raise_error"
        line = error.error_line()
        assert line.line_num == 1
        assert line.column_num == 8
        assert line.text == "select raise_error"

    def test_error_line_without_matching_statement(self):
        """Test error_line when the statement text is unknown."""
        error = MigrationExecutionError("broken", "", DatabaseError("boom", position=8))

        assert error.error_line() is None

    def test_append_step_checks_sequence(self, fake_adapter):
        """Test that steps must be appended in sequence."""
        migrator = Migrator(fake_adapter, VERSION_TABLE)

        with pytest.raises(BadVersionError):
            migrator.append_step(FuncMigration(sequence=2, name="skipped", up_func=lambda db: None))


class TestPlan:
    def test_plan_up_and_down(self, migrator):
        """Test planning in both directions."""
        plan = migrator.plan(2)
        assert [(s.sequence, d) for s, d in plan.steps] == [(1, "up"), (2, "up")]
        assert plan.direction == 1

        plan = migrator.plan(0, current_version=2)
        assert [(s.sequence, d) for s, d in plan.steps] == [(2, "down"), (1, "down")]

        assert migrator.plan(0).is_noop

    def test_load_migrations_uses_data(self, fake_adapter):
        """Test that loaded migrations are rendered with migrator data."""
        migrator = Migrator(fake_adapter, VERSION_TABLE)
        migrator.data = {"prefix": "app"}
        migrator.load_migrations(
            MemorySource({"001_create.sql": "create table {{ prefix }}_users(id int);"})
        )

        migrator.migrate()

        assert "app_users" in fake_adapter.tables


class TestResolveDestination:
    @pytest.mark.parametrize(
        "destination,expected",
        [
            ("last", [10]),
            ("4", [4]),
            ("+2", [7]),
            ("-2", [3]),
            ("-+2", [3, 5]),
        ],
    )
    def test_forms(self, destination, expected):
        """Test the accepted destination forms."""
        assert resolve_destination(destination, 5, 10) == expected

    @pytest.mark.parametrize("destination", ["", "abc", "+", "-x", "1.5", "+\u00b2", "\u0663"])
    def test_bad_destination(self, destination):
        """Test rejection of malformed destinations."""
        with pytest.raises(BadVersionError):
            resolve_destination(destination, 5, 10)
