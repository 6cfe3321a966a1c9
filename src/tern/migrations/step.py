"""
Migration step variants.

A migration step is one schema state transition, identified by the
sequence number of the state it produces. Steps come in two flavors:

- SQLMigration: declared with up/down SQL text (the usual file based form)
- FuncMigration: declared with up/down Python callables that receive the
  database session adapter

The Migrator drives both through the MigrationStep interface.
"""

import re
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Callable

from tern.config.logging_config import get_logger
from tern.migrations import sqlsplit
from tern.migrations.db_adapter import MigrationDBAdapter
from tern.migrations.exceptions import (
    DatabaseError,
    IrreversibleMigrationError,
    MigrationCancelledError,
    MigrationExecutionError,
)

log = get_logger(__name__)

UP = "up"
DOWN = "down"

DISABLE_TX_PATTERN = re.compile(r"^---- tern: disable-tx ----$", re.MULTILINE)


@dataclass(frozen=True)
class StepContext:
    """Execution context handed to a step by the Migrator.

    Attributes:
        in_transaction: Whether the Migrator wrapped the step in a transaction
        cancel: Event that, once set, stops the step before its next statement
    """

    in_transaction: bool
    cancel: threading.Event | None = None

    def check_cancelled(self) -> None:
        if self.cancel is not None and self.cancel.is_set():
            raise MigrationCancelledError("migration cancelled")


class MigrationStep(ABC):
    """A database schema state transition."""

    sequence: int
    name: str

    @abstractmethod
    def disable_tx(self, direction: str) -> bool:
        """True if the step must not run inside a transaction in this direction."""
        pass

    @abstractmethod
    def irreversible(self) -> bool:
        """True if the step cannot be undone."""
        pass

    def sql(self, direction: str) -> str:
        """SQL text shown to observers for this direction ("" for code steps)."""
        return ""

    @abstractmethod
    def up(self, adapter: MigrationDBAdapter, context: StepContext) -> None:
        """Bring the schema from sequence - 1 to sequence."""
        pass

    @abstractmethod
    def down(self, adapter: MigrationDBAdapter, context: StepContext) -> None:
        """Bring the schema from sequence back to sequence - 1.

        Raises:
            IrreversibleMigrationError: If the step has no down direction
        """
        pass

    def apply(self, direction: str, adapter: MigrationDBAdapter, context: StepContext) -> None:
        if direction == UP:
            self.up(adapter, context)
        else:
            self.down(adapter, context)


@dataclass(frozen=True)
class SQLMigration(MigrationStep):
    """A migration declared entirely with SQL.

    A line consisting of exactly `---- tern: disable-tx ----` anywhere in a
    body makes that direction run outside a transaction, one statement at
    a time. The marker itself is removed before execution.
    """

    sequence: int
    name: str
    up_sql: str
    down_sql: str = ""

    def sql(self, direction: str) -> str:
        return self.up_sql if direction == UP else self.down_sql

    def disable_tx(self, direction: str) -> bool:
        return bool(DISABLE_TX_PATTERN.search(self.sql(direction)))

    def irreversible(self) -> bool:
        return self.down_sql == ""

    def statements(self, direction: str, split: bool) -> list[str]:
        """Return the executable statements for a direction.

        The whole body is one unit unless split is requested.
        """
        body = DISABLE_TX_PATTERN.sub("", self.sql(direction))
        if split:
            return sqlsplit.split(body)
        return [body]

    def up(self, adapter: MigrationDBAdapter, context: StepContext) -> None:
        self._execute(adapter, UP, context)

    def down(self, adapter: MigrationDBAdapter, context: StepContext) -> None:
        if self.irreversible():
            raise IrreversibleMigrationError(self.sequence, self.name)
        self._execute(adapter, DOWN, context)

    def _execute(self, adapter: MigrationDBAdapter, direction: str, context: StepContext) -> None:
        split = not context.in_transaction
        for statement in self.statements(direction, split):
            context.check_cancelled()
            if split:
                log.debug(f"{self.name} {direction}: {statement}")
            try:
                adapter.execute(statement)
            except DatabaseError as e:
                raise MigrationExecutionError(self.name, statement, e, self.sequence) from e


StepFunc = Callable[[MigrationDBAdapter], None]


@dataclass(frozen=True)
class FuncMigration(MigrationStep):
    """A migration performed by Python callables.

    Attributes:
        up_func: Called with the session adapter to migrate up
        down_func: Called to migrate down; None makes the step irreversible
        disable_func_tx: Do not wrap the callables in a transaction
    """

    sequence: int
    name: str
    up_func: StepFunc
    down_func: StepFunc | None = None
    disable_func_tx: bool = field(default=False)

    def disable_tx(self, direction: str) -> bool:
        return self.disable_func_tx

    def irreversible(self) -> bool:
        return self.down_func is None

    def up(self, adapter: MigrationDBAdapter, context: StepContext) -> None:
        context.check_cancelled()
        self._call(self.up_func, adapter)

    def down(self, adapter: MigrationDBAdapter, context: StepContext) -> None:
        if self.down_func is None:
            raise IrreversibleMigrationError(self.sequence, self.name)
        context.check_cancelled()
        self._call(self.down_func, adapter)

    def _call(self, func: StepFunc, adapter: MigrationDBAdapter) -> None:
        try:
            func(adapter)
        except DatabaseError as e:
            raise MigrationExecutionError(self.name, e.statement or "", e, self.sequence) from e
