"""
Exception classes for the migration system.

Provides specific exception types for discovery, execution and
infrastructure failures so callers can react to each one distinctly.
"""

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from tern.migrations.diagnostics import ErrorLineExtract


class MigrationError(Exception):
    """Base exception for migration-related errors."""

    def __init__(self, message: str, migration_version: int | None = None):
        self.migration_version = migration_version
        super().__init__(message)


class DatabaseError(MigrationError):
    """Driver-neutral error reported by the database for a statement.

    Attributes:
        sqlstate: Five character SQLSTATE code, when known
        position: 1-based character offset into the statement, when known
        detail: Optional DETAIL line reported by the server
        hint: Optional HINT line reported by the server
        statement: Text of the statement the session was executing, when known
    """

    def __init__(
        self,
        message: str,
        sqlstate: str | None = None,
        position: int | None = None,
        detail: str | None = None,
        hint: str | None = None,
        statement: str | None = None,
    ):
        self.sqlstate = sqlstate
        self.position = position
        self.detail = detail
        self.hint = hint
        self.statement = statement
        super().__init__(message)


class LockError(MigrationError):
    """Raised when the advisory lock cannot be acquired or released."""

    pass


class VersionTableError(MigrationError):
    """Raised when the version table is missing or holds no row."""

    pass


class BadVersionError(MigrationError):
    """Raised for current or target versions outside the migration range."""

    pass


class IrreversibleMigrationError(MigrationError):
    """Raised when migrating down past a migration without a down step."""

    def __init__(self, sequence: int, name: str):
        self.sequence = sequence
        self.name = name
        super().__init__(f"Irreversible migration: {sequence} - {name}", sequence)


class MigrationCancelledError(MigrationError):
    """Raised when a cancellation signal stops a migration run."""

    pass


class MigrationDiscoveryError(MigrationError):
    """Raised when migration discovery fails."""

    pass


class DuplicateMigrationError(MigrationDiscoveryError):
    """Two migration files claim the same sequence number."""

    def __init__(self, sequence: int):
        super().__init__(f"Duplicate migration {sequence}", sequence)


class MissingMigrationError(MigrationDiscoveryError):
    """The discovered sequence has a gap."""

    def __init__(self, sequence: int):
        super().__init__(f"Missing migration {sequence}", sequence)


class NoMigrationsFoundError(MigrationDiscoveryError):
    """Discovery found zero migration files."""

    def __init__(self, message: str = "migrations not found"):
        super().__init__(message)


class NoForwardSQLError(MigrationDiscoveryError):
    """The up part of a migration holds no executable SQL."""

    def __init__(self, name: str, sequence: int | None = None):
        self.name = name
        super().__init__(f"{name}: no sql in forward migration step", sequence)


class TemplateRenderError(MigrationDiscoveryError):
    """Rendering a migration or partial template failed."""

    def __init__(self, template_name: str, cause: Exception):
        self.template_name = template_name
        self.cause = cause
        super().__init__(f"error rendering {template_name}: {cause}")


class _StatementFailure(MigrationError):
    """Shared shape of errors that carry the failing SQL text."""

    def __init__(self, prefix: str, sql: str, cause: BaseException, migration_version: int | None = None):
        self.sql = sql
        self.cause = cause
        self.position: int | None = getattr(cause, "position", None)
        self.detail: str | None = getattr(cause, "detail", None)
        self.hint: str | None = getattr(cause, "hint", None)
        self.sqlstate: str | None = getattr(cause, "sqlstate", None)
        message = f"{prefix}: {cause}" if prefix else str(cause)
        super().__init__(message, migration_version)

    def error_line(self) -> "ErrorLineExtract | None":
        """Return the source line the server pointed at, if it reported a position."""
        from tern.migrations.diagnostics import extract_error_line

        if not self.position or self.position > len(self.sql):
            return None
        return extract_error_line(self.sql, self.position)


class MigrationExecutionError(_StatementFailure):
    """A statement of a migration step failed.

    Attributes:
        migration_name: Name of the migration being applied
        sql: Exact statement text that failed
        cause: Underlying error (usually a DatabaseError)
    """

    def __init__(self, migration_name: str, sql: str, cause: BaseException, sequence: int | None = None):
        self.migration_name = migration_name
        super().__init__(migration_name, sql, cause, sequence)


class CodePackageError(MigrationError):
    """Raised when a code package cannot be loaded or evaluated."""

    pass


class CodeInstallError(_StatementFailure):
    """A file of a code package failed while being installed."""

    def __init__(self, code_file: str, sql: str, cause: BaseException):
        self.code_file = code_file
        super().__init__(code_file, sql, cause)

