"""
Command line interface for tern.

Provides commands for managing PostgreSQL schema migrations:
- init: Create a config file and a sample migration
- new: Create a new numbered migration file
- migrate: Migrate to a destination version
- status: Show the current version and whether migrations are pending
- code: Install, compile or snapshot code packages
- gengen: Generate a psql script that migrates without tern
- renumber: Renumber migrations after merging branches
- print-connstring / version
"""

import functools
import re
import shutil
import signal
import threading
from contextlib import contextmanager
from datetime import datetime
from importlib.metadata import PackageNotFoundError
from importlib.metadata import version as package_version
from pathlib import Path
from typing import Any, Callable, Iterator, Optional

import click
import psycopg
from rich.console import Console
from rich.markup import escape

from tern.config.environment import load_dotenv_files, resolve_config_paths, resolve_migrations_path
from tern.config.logging_config import configure_logging, get_logger
from tern.config.settings import DEFAULT_CONFIG, ConfigError, TernConfig, load_config
from tern.migrations.code_package import CodePackage, install_code_package
from tern.migrations.db_adapter import PostgresMigrationAdapter
from tern.migrations.diagnostics import extract_error_line, format_error_line
from tern.migrations.discovery import MIGRATION_PATTERN, SNAPSHOTS_DIR, find_migrations
from tern.migrations.exceptions import (
    CodeInstallError,
    DatabaseError,
    MigrationError,
    MigrationExecutionError,
    NoMigrationsFoundError,
)
from tern.migrations.gengen import generate_script
from tern.migrations.runner import Migrator, resolve_destination
from tern.migrations.source import DirectorySource

log = get_logger(__name__)

console = Console()
err_console = Console(stderr=True)

try:
    VERSION = package_version("tern-py")
except PackageNotFoundError:
    VERSION = "unknown"

RENUMBER_FILE = ".tern-renumber.tmp"
_NUMBER_PREFIX = re.compile(r"^\d+")

SAMPLE_MIGRATION = """\
-- This is a sample migration.

create table people(
  id serial primary key,
  first_name varchar not null,
  last_name varchar not null
);

---- create above / drop below ----

drop table people;
"""

NEW_MIGRATION_TEXT = """\
-- Write your migrate up statements here

---- create above / drop below ----

-- Write your migrate down statements here. If this migration is irreversible
-- Then delete the separator line above.
"""


# ============================================================================
# Error reporting
# ============================================================================


def _report_error(error: BaseException) -> None:
    """Print an error, with a psql-style pointer when the server gave a position."""
    err_console.print(f"[red]{escape(str(error))}[/]")

    if not isinstance(error, (MigrationExecutionError, CodeInstallError, DatabaseError)):
        return

    if error.detail:
        err_console.print(escape(f"DETAIL: {error.detail}"))
    if error.hint:
        err_console.print(escape(f"HINT: {error.hint}"))

    sql = getattr(error, "sql", None)
    if error.position and sql:
        try:
            extract = extract_error_line(sql, error.position)
        except ValueError as e:
            err_console.print(escape(str(e)))
            return
        err_console.print(escape(format_error_line(extract)), highlight=False)


def reports_errors(func: Callable[..., Any]) -> Callable[..., Any]:
    """Turn expected failures into a printed message and exit status 1."""

    @functools.wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        try:
            return func(*args, **kwargs)
        except (MigrationError, ConfigError, psycopg.Error, OSError) as e:
            log.debug("Command failed", exc_info=True)
            _report_error(e)
            raise SystemExit(1) from e

    return wrapper


# ============================================================================
# Shared options
# ============================================================================

_DATABASE_OPTIONS = [
    click.option(
        "--config",
        "-c",
        "config_paths",
        multiple=True,
        help="Config file, may be repeated (default is $TERN_CONFIG or ./tern.yaml).",
    ),
    click.option(
        "--conn-string",
        default=None,
        help="Database connection string (libpq key=value or postgres:// URL).",
    ),
    click.option("--host", default=None, help="Database host."),
    click.option("--port", default=None, type=int, help="Database port."),
    click.option("--user", default=None, help="Database user."),
    click.option("--password", default=None, help="Database password."),
    click.option("--database", default=None, help="Database name."),
    click.option("--sslmode", default=None, help="SSL mode."),
    click.option("--sslrootcert", default=None, help="SSL root certificate."),
    click.option(
        "--version-table",
        default=None,
        help="Version table name (default is public.schema_version).",
    ),
]

_OVERRIDE_NAMES = (
    "conn_string",
    "host",
    "port",
    "user",
    "password",
    "database",
    "sslmode",
    "sslrootcert",
    "version_table",
)


def config_options(func: Callable[..., Any]) -> Callable[..., Any]:
    """Add the config and connection flags and pass the loaded TernConfig as `config`."""

    @functools.wraps(func)
    def wrapper(*args: Any, config_paths: tuple[str, ...], **kwargs: Any) -> Any:
        overrides = {name: kwargs.pop(name) for name in _OVERRIDE_NAMES}
        kwargs["config"] = load_config(resolve_config_paths(config_paths), overrides)
        return func(*args, **kwargs)

    for option in reversed(_DATABASE_OPTIONS):
        wrapper = option(wrapper)
    return wrapper


migrations_option = click.option(
    "--migrations",
    "-m",
    "migrations_path",
    default=None,
    help="Migrations path (default is $TERN_MIGRATIONS or .).",
)


def _migrations_dir(migrations_path: Optional[str]) -> Path:
    return resolve_migrations_path(migrations_path)


def _load_migrator(config: TernConfig, migrations_path: Optional[str], connection: Any = None) -> Migrator:
    migrator = Migrator(connection, config.database.version_table)
    migrator.data = dict(config.data)
    migrator.load_migrations(DirectorySource(_migrations_dir(migrations_path)))
    if not migrator.migrations:
        raise NoMigrationsFoundError("No migrations found")
    return migrator


@contextmanager
def _connect(config: TernConfig) -> Iterator[Any]:
    config.validate_connection()
    conn = config.connect()
    try:
        yield conn
    finally:
        conn.close()


@contextmanager
def _interrupt_cancels(cancel: threading.Event) -> Iterator[None]:
    """Route the first Ctrl+C to a cancellation event.

    The handler restores the default disposition, so a second Ctrl+C
    terminates immediately instead of waiting for the current statement.
    """
    if threading.current_thread() is not threading.main_thread():
        yield
        return

    def handle_interrupt(signum: int, frame: Any) -> None:
        err_console.print("[yellow]Interrupt received, stopping after the current statement...[/]")
        cancel.set()
        signal.signal(signal.SIGINT, signal.SIG_DFL)

    previous = signal.signal(signal.SIGINT, handle_interrupt)
    try:
        yield
    finally:
        signal.signal(signal.SIGINT, previous)


# ============================================================================
# Commands
# ============================================================================


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose logging (DEBUG level).")
def cli(verbose: bool):
    """tern - PostgreSQL database migrator."""
    load_dotenv_files()
    if verbose:
        configure_logging(level="DEBUG")


@cli.command("init")
@click.argument("directory", default=".", type=click.Path(file_okay=False))
@reports_errors
def init(directory: str):
    """Initialize a new tern project in DIRECTORY.

    Writes a tern.yaml config template and a sample migration. Existing
    files are never overwritten.
    """
    target = Path(directory)
    target.mkdir(parents=True, exist_ok=True)

    files = {
        "tern.yaml": DEFAULT_CONFIG,
        "001_create_people.sql.example": SAMPLE_MIGRATION,
    }
    for name in files:
        if (target / name).exists():
            raise FileExistsError(f"{target / name} already exists")

    for name, content in files.items():
        with open(target / name, "x", encoding="utf-8") as f:
            f.write(content)
        console.print(f"[green]Created {target / name}[/]")


@cli.command("new")
@click.argument("name")
@click.option("--edit", "-e", is_flag=True, help="Open the new migration in $EDITOR.")
@migrations_option
@reports_errors
def new(name: str, edit: bool, migrations_path: Optional[str]):
    """Generate a new migration named NAME.

    Examples:
        tern new create_widgets
        tern new add_index -m db/migrations --edit
    """
    migrations_dir = _migrations_dir(migrations_path)
    existing = find_migrations(DirectorySource(migrations_dir))

    filename = f"{len(existing) + 1:03d}_{name}.sql"
    path = migrations_dir / filename
    with open(path, "x", encoding="utf-8") as f:
        f.write(NEW_MIGRATION_TEXT)
    console.print(f"[green]Created {path}[/]")

    if edit:
        click.edit(filename=str(path))


@cli.command("migrate")
@click.option(
    "--destination",
    "-d",
    default="last",
    show_default=True,
    help="Destination version: last, N, +N, -N or -+N (redo N steps).",
)
@click.option("--dry-run", is_flag=True, help="Show the steps that would run without executing them.")
@migrations_option
@reports_errors
@config_options
def migrate(destination: str, dry_run: bool, migrations_path: Optional[str], config: TernConfig):
    """Migrate the database to the destination version.

    Examples:
        # Migrate to the latest version
        tern migrate

        # Roll back the last migration
        tern migrate -d -1

        # Roll back and reapply the last two migrations
        tern migrate -d -+2
    """
    with _connect(config) as conn:
        migrator = _load_migrator(config, migrations_path, conn)

        def on_start(sequence: int, name: str, direction: str, sql: str) -> None:
            timestamp = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
            console.print(f"[cyan]{timestamp} executing {escape(name)} {direction}[/]")
            console.print(escape(sql), highlight=False)
            console.print()

        migrator.on_start = on_start

        current_version = migrator.get_current_version()
        targets = resolve_destination(destination, current_version, len(migrator.migrations))

        if dry_run:
            console.print("[cyan]DRY RUN - No changes will be made[/]")
            version = current_version
            for target in targets:
                plan = migrator.plan(target, version)
                for step, direction in plan.steps:
                    console.print(f"  • {direction} {step.sequence} {escape(step.name)}")
                version = target
            if all(target == current_version for target in targets):
                console.print("[yellow]Database is already at the destination version[/]")
            return

        cancel = threading.Event()
        with _interrupt_cancels(cancel):
            for target in targets:
                migrator.migrate_to(target, cancel)


@cli.command("status")
@migrations_option
@reports_errors
@config_options
def status(migrations_path: Optional[str], config: TernConfig):
    """Print the migration status of the database."""
    with _connect(config) as conn:
        migrator = _load_migrator(config, migrations_path, conn)
        current_version = migrator.get_current_version()

    total = len(migrator.migrations)
    state = "up to date" if current_version == total else "migration(s) pending"

    console.print(f"status:   {state}")
    console.print(f"version:  {current_version} of {total}")
    console.print(f"host:     {config.database.host or ''}")
    console.print(f"database: {config.database.database or ''}")


@cli.group("code")
def code():
    """Manage code packages (views, functions and other recreatable objects)."""
    pass


@code.command("install")
@click.argument("path", type=click.Path(exists=True, file_okay=False))
@reports_errors
@config_options
def code_install(path: str, config: TernConfig):
    """Install the code package at PATH into the database."""
    package = CodePackage.load(DirectorySource(path))
    with _connect(config) as conn:
        install_code_package(PostgresMigrationAdapter(conn), package, config.data)
    console.print(f"[green]Installed code package into schema {package.schema}[/]")


@code.command("compile")
@click.argument("path", type=click.Path(exists=True, file_okay=False))
@reports_errors
@config_options
def code_compile(path: str, config: TernConfig):
    """Print the SQL the code package at PATH would install."""
    package = CodePackage.load(DirectorySource(path))
    click.echo(package.eval(config.data))


@code.command("snapshot")
@click.argument("path", type=click.Path(exists=True, file_okay=False))
@migrations_option
@reports_errors
def code_snapshot(path: str, migrations_path: Optional[str]):
    """Snapshot the code package at PATH into a new migration.

    The package is copied to snapshots/NNN in the migrations directory and a
    migration NNN_install_<package>.sql is written that installs the copy.
    """
    CodePackage.load(DirectorySource(path))

    migrations_dir = _migrations_dir(migrations_path)
    existing = find_migrations(DirectorySource(migrations_dir))
    migration_id = f"{len(existing) + 1:03d}"

    snapshot_path = migrations_dir / SNAPSHOTS_DIR / migration_id
    shutil.copytree(path, snapshot_path)

    migration_path = migrations_dir / f"{migration_id}_install_{Path(path).resolve().name}.sql"
    with open(migration_path, "x", encoding="utf-8") as f:
        f.write(f'{{{{ install_snapshot("{migration_id}") }}}}\n')
    console.print(f"[green]Created {migration_path}[/]")


@cli.command("gengen")
@click.option("--output", "-o", "output_file", default=None, help="Output file (default is stdout).")
@migrations_option
@reports_errors
@config_options
def gengen(output_file: Optional[str], migrations_path: Optional[str], config: TernConfig):
    """Generate a SQL script that migrates a database without tern.

    Examples:
        tern gengen -o migrate.sql
        psql --no-psqlrc --tuples-only --quiet --no-align -f migrate.sql | psql
    """
    migrator = _load_migrator(config, migrations_path)
    script = generate_script(migrator.migrations, config.database.version_table, VERSION)

    if output_file is None:
        click.echo(script, nl=False)
    else:
        Path(output_file).write_text(script, encoding="utf-8")


@cli.group("renumber")
def renumber():
    """Renumber migrations after merging branches that both added migrations."""
    pass


def _migration_files(migrations_dir: Path) -> list[str]:
    """List migration file names without rejecting gaps or duplicates."""
    return sorted(
        p.name for p in migrations_dir.iterdir() if p.is_file() and MIGRATION_PATTERN.fullmatch(p.name)
    )


def _number_prefix(name: str) -> int:
    match = _NUMBER_PREFIX.match(name)
    if match is None:
        raise MigrationError(f"{name} does not start with a migration number")
    return int(match.group(0))


@renumber.command("start")
@migrations_option
@reports_errors
def renumber_start(migrations_path: Optional[str]):
    """Record the current migrations before a merge."""
    migrations_dir = _migrations_dir(migrations_path)
    migrations = find_migrations(DirectorySource(migrations_dir))

    renumber_path = migrations_dir / RENUMBER_FILE
    renumber_path.write_text("".join(f"{name}\n" for name in migrations), encoding="utf-8")
    console.print(f"Recorded {len(migrations)} migration(s) in {renumber_path}")


@renumber.command("finish")
@migrations_option
@reports_errors
def renumber_finish(migrations_path: Optional[str]):
    """Renumber migrations added by the merge after the recorded ones."""
    migrations_dir = _migrations_dir(migrations_path)
    renumber_path = migrations_dir / RENUMBER_FILE

    original = [line for line in renumber_path.read_text(encoding="utf-8").splitlines() if line]
    last_number = max((_number_prefix(name) for name in original), default=0)

    recorded = set(original)
    to_renumber = [name for name in _migration_files(migrations_dir) if name not in recorded]
    to_renumber.sort(key=_number_prefix)

    for name in to_renumber:
        last_number += 1
        new_name = f"{last_number:03d}{_NUMBER_PREFIX.sub('', name, count=1)}"
        (migrations_dir / name).rename(migrations_dir / new_name)
        console.print(f"Renamed {name} -> {new_name}")

    renumber_path.unlink()


@cli.command("print-connstring")
@reports_errors
@config_options
def print_connstring(config: TernConfig):
    """Print the connection string for use with other tools."""
    click.echo(config.connection_url(), nl=False)


@cli.command("version")
def version():
    """Print the version."""
    click.echo(f"tern v{VERSION}")


if __name__ == "__main__":
    cli()
