"""
Code packages.

A code package is a directory of SQL templates that is installed wholesale
into its own schema, for things like views and functions that are easier
to recreate than to migrate. `manifest.conf` lists the files to install in
order; every `.sql` file in the package can be included by the others by
its relative path.

Installing drops and recreates the schema in a single transaction while
holding the same advisory lock as the migrator.
"""

from dataclasses import dataclass
from typing import Any, Mapping

from tern.config.logging_config import get_logger
from tern.migrations.db_adapter import MigrationDBAdapter
from tern.migrations.exceptions import CodeInstallError, CodePackageError, DatabaseError
from tern.migrations.source import MigrationSource
from tern.migrations.state import advisory_lock
from tern.migrations.templates import JinjaTemplateRenderer, TemplateRenderer

log = get_logger(__name__)

MANIFEST_FILE = "manifest.conf"


def parse_manifest(text: str) -> list[str]:
    """Return the file entries of a manifest, skipping blanks and `#` comments."""
    entries = []
    for line in text.splitlines():
        line = line.strip()
        if line and not line.startswith("#"):
            entries.append(line)
    return entries


@dataclass
class CodePackage:
    """A loaded code package.

    Attributes:
        schema: Schema the package is installed into
        manifest: Ordered list of template names to install
        renderer: Renderer holding every template of the package
    """

    schema: str
    manifest: list[str]
    renderer: TemplateRenderer

    @classmethod
    def load(cls, source: MigrationSource, schema: str | None = None) -> "CodePackage":
        """Load a code package from a source.

        Args:
            source: Directory tree of the package
            schema: Schema name, defaults to the package directory name

        Raises:
            CodePackageError: If the manifest is missing or names an unknown file
        """
        try:
            manifest = parse_manifest(source.read_file(MANIFEST_FILE))
        except FileNotFoundError as e:
            raise CodePackageError(f"unable to load manifest: {e}") from e

        renderer = JinjaTemplateRenderer()
        paths = [p for p in source.walk(".") if p.endswith(".sql")]
        for path in paths:
            renderer.register_partial(path, source.read_file(path))

        missing = [entry for entry in manifest if entry not in paths]
        if missing:
            raise CodePackageError(f"manifest lists missing files: {', '.join(missing)}")

        return cls(schema=schema or source.name, manifest=manifest, renderer=renderer)

    def eval_file(self, name: str, data: Mapping[str, Any]) -> str:
        """Render a single template of the package."""
        if name not in self.manifest:
            raise CodePackageError(f"cannot find template {name}")
        return self.renderer.render_partial(name, data)

    def eval(self, data: Mapping[str, Any]) -> str:
        """Render every manifest entry into one SQL script."""
        parts = []
        for name in self.manifest:
            parts.append(f"-- {name}\n\n")
            parts.append(self.eval_file(name, data))
        return "".join(parts)


def install_code_package(
    adapter: MigrationDBAdapter,
    package: CodePackage,
    data: Mapping[str, Any] | None = None,
) -> None:
    """Drop, recreate and populate the package schema.

    Raises:
        CodeInstallError: If a manifest file fails to execute
        LockError: If the advisory lock cannot be taken
    """
    data = data if data is not None else {}
    # Render everything up front so template errors never leave a half dropped schema
    rendered = [(name, package.eval_file(name, data)) for name in package.manifest]

    with advisory_lock(adapter), adapter.transaction():
        log.info(f"Installing code package into schema {package.schema}")
        _run(adapter, "", f"drop schema if exists {package.schema} cascade")
        _run(adapter, "", f"create schema {package.schema}")

        search_path = adapter.fetchval("show search_path")
        _run(adapter, "", f"set local search_path to {package.schema}, {search_path}")

        for name, sql in rendered:
            log.debug(f"Installing {name}")
            _run(adapter, name, sql)


def _run(adapter: MigrationDBAdapter, code_file: str, sql: str) -> None:
    try:
        adapter.execute(sql)
    except DatabaseError as e:
        raise CodeInstallError(code_file or "(setup)", sql, e) from e
