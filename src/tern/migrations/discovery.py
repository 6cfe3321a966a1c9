"""
Migration discovery and loading.

Migration files live at the top level of a source and are named
`<sequence>_<description>.sql`. The sequence numbers must run from 1
without gaps or duplicates. Each file holds the up SQL, optionally
followed by a separator line and the down SQL:

    create table people(id serial primary key);
    ---- create above / drop below ----
    drop table people;

`.sql` files in subdirectories are shared partials that migrations can
include by their relative path.
"""

import posixpath
import re
from typing import Any, Mapping

from tern.config.logging_config import get_logger
from tern.migrations.exceptions import (
    DuplicateMigrationError,
    MigrationDiscoveryError,
    MissingMigrationError,
    NoForwardSQLError,
    NoMigrationsFoundError,
)
from tern.migrations.source import MigrationSource
from tern.migrations.step import DOWN, UP, SQLMigration
from tern.migrations.templates import JinjaTemplateRenderer, TemplateRenderer

log = get_logger(__name__)

MIGRATION_PATTERN = re.compile(r"(\d+)_.+\.sql")
SEPARATOR = "---- create above / drop below ----"
SNAPSHOTS_DIR = "snapshots"


def find_migrations(source: MigrationSource) -> list[str]:
    """Find all migration files at the top level of a source.

    Returns:
        File names ordered by sequence number (index = sequence - 1)

    Raises:
        DuplicateMigrationError: If two files share a sequence number
        MissingMigrationError: If a sequence number between 1 and the highest is missing
    """
    paths: list[str | None] = []

    for entry in sorted(source.list_dir("."), key=lambda e: e.name):
        if entry.is_dir:
            continue

        match = MIGRATION_PATTERN.fullmatch(entry.name)
        if match is None:
            continue

        n = int(match.group(1))
        if n < 1:
            raise MigrationDiscoveryError(f"Invalid migration sequence {n} in {entry.name}")

        if n - 1 < len(paths) and paths[n - 1] is not None:
            raise DuplicateMigrationError(n)

        if n > len(paths):
            paths.extend([None] * (n - len(paths)))
        paths[n - 1] = entry.name

    for i, path in enumerate(paths):
        if path is None:
            raise MissingMigrationError(i + 1)

    return [p for p in paths if p is not None]


def find_shared_partials(source: MigrationSource) -> list[str]:
    """Return the paths of `.sql` files that live below the top level."""
    return [p for p in source.walk(".") if posixpath.dirname(p) != "" and p.endswith(".sql")]


def contains_sql(sql: str) -> bool:
    """True if any line is neither blank nor a `--` comment."""
    for line in sql.split("\n"):
        line = line.strip()
        if line and not line.startswith("--"):
            return True
    return False


def make_renderer(
    source: MigrationSource,
    data: Mapping[str, Any],
    renderer: TemplateRenderer | None = None,
) -> TemplateRenderer:
    """Build a renderer that knows the source's shared partials and helpers."""
    renderer = renderer or JinjaTemplateRenderer()

    for path in find_shared_partials(source):
        renderer.register_partial(path, source.read_file(path))

    def install_snapshot(name: str) -> str:
        from tern.migrations.code_package import CodePackage

        package = CodePackage.load(source.sub(f"{SNAPSHOTS_DIR}/{name}"))
        return package.eval(data)

    renderer.register_function("install_snapshot", install_snapshot)
    return renderer


def load_migrations(
    source: MigrationSource,
    data: Mapping[str, Any] | None = None,
    renderer: TemplateRenderer | None = None,
) -> list[SQLMigration]:
    """Discover, render and validate every migration in a source.

    Args:
        source: Directory tree holding the migration files
        data: Values available to the templates (referenced, not copied)
        renderer: Template renderer to use instead of the Jinja default

    Returns:
        SQLMigration steps in sequence order

    Raises:
        NoMigrationsFoundError: If the source has no migration files
        NoForwardSQLError: If an up part renders to comments or whitespace only
        TemplateRenderError: If a template cannot be rendered
    """
    data = data if data is not None else {}
    renderer = make_renderer(source, data, renderer)

    paths = find_migrations(source)
    if not paths:
        raise NoMigrationsFoundError()

    migrations = []
    for index, path in enumerate(paths):
        sequence = index + 1
        name = posixpath.basename(path)
        body = source.read_file(path)

        up_part, separator, down_part = body.partition(SEPARATOR)
        up_sql = renderer.render(f"{name} {UP}", up_part.strip(), data)
        if not contains_sql(up_sql):
            raise NoForwardSQLError(name, sequence)

        down_sql = ""
        if separator:
            down_sql = renderer.render(f"{name} {DOWN}", down_part.strip(), data)

        migrations.append(SQLMigration(sequence=sequence, name=name, up_sql=up_sql, down_sql=down_sql))

    log.debug(f"Discovered {len(migrations)} migrations in {source.name}")
    return migrations
