"""
SQL migration engine for PostgreSQL.

Provides ordered, numbered migrations with templated SQL, a single-row
version table, advisory locking, per-step transactions and code packages.
"""

from tern.migrations.code_package import CodePackage, install_code_package
from tern.migrations.db_adapter import MigrationDBAdapter, PostgresMigrationAdapter
from tern.migrations.exceptions import (
    BadVersionError,
    CodeInstallError,
    CodePackageError,
    DatabaseError,
    IrreversibleMigrationError,
    LockError,
    MigrationCancelledError,
    MigrationDiscoveryError,
    MigrationError,
    MigrationExecutionError,
    NoMigrationsFoundError,
)
from tern.migrations.runner import MigrationPlan, Migrator, MigratorOptions, resolve_destination
from tern.migrations.source import DirectorySource, MemorySource, MigrationSource, PackageSource
from tern.migrations.step import FuncMigration, MigrationStep, SQLMigration

__all__ = [
    "BadVersionError",
    "CodeInstallError",
    "CodePackage",
    "CodePackageError",
    "DatabaseError",
    "DirectorySource",
    "FuncMigration",
    "IrreversibleMigrationError",
    "LockError",
    "MemorySource",
    "MigrationCancelledError",
    "MigrationDBAdapter",
    "MigrationDiscoveryError",
    "MigrationError",
    "MigrationExecutionError",
    "MigrationPlan",
    "MigrationSource",
    "MigrationStep",
    "Migrator",
    "MigratorOptions",
    "NoMigrationsFoundError",
    "PackageSource",
    "PostgresMigrationAdapter",
    "SQLMigration",
    "install_code_package",
    "resolve_destination",
]
