"""Exception types raised or recorded by chainorm.

Terminal session calls do not raise for database-level failures; the error is
recorded on the returned session's ``error`` attribute instead. Configuration
problems (bad source, unknown dialect) are raised immediately by ``open``.
"""

from __future__ import annotations

from collections.abc import Iterator
from typing import Any


class ORMError(Exception):
    """Base class for every chainorm error."""


class ConfigurationError(ORMError):
    """Invalid connection arguments, unknown dialect or unusable model declaration."""


class RecordNotFound(ORMError):
    """A single-target read matched zero rows."""

    def __init__(self, message: str = "record not found") -> None:
        super().__init__(message)


class MissingWhereClause(ORMError):
    """An update or delete without conditions was blocked."""

    def __init__(self, message: str = "missing WHERE clause while updating or deleting") -> None:
        super().__init__(message)


class InvalidSQL(ORMError):
    """A statement could not be built from the accumulated conditions."""


class InvalidTransaction(ORMError):
    """Commit or rollback was requested outside of a transaction."""

    def __init__(self, message: str = "no valid transaction") -> None:
        super().__init__(message)


class CantStartTransaction(ORMError):
    """``begin`` was called on a session that is already inside a transaction."""

    def __init__(self, message: str = "can't start transaction") -> None:
        super().__init__(message)


class UnaddressableValue(ORMError):
    """The target value cannot be written back to (e.g. an empty list without a model)."""


class StatementError(ORMError):
    """The database rejected a statement.

    The driver's exception is kept as ``orig`` (and chained as ``__cause__``);
    ``str()`` is the driver message verbatim, prefixed by the operation that
    issued the statement.
    """

    def __init__(
        self,
        orig: BaseException,
        sql: str,
        values: list[Any] | None = None,
        operation: str | None = None,
    ) -> None:
        self.orig = orig
        self.sql = sql
        self.values = list(values or [])
        self.operation = operation
        super().__init__(str(orig))
        self.__cause__ = orig

    def __str__(self) -> str:
        if self.operation:
            return f"{self.operation}: {self.orig}"
        return str(self.orig)


class Errors(ORMError):
    """Several errors recorded on one scope."""

    def __init__(self, errors: list[BaseException] | None = None) -> None:
        self.errors: list[BaseException] = []
        for err in errors or []:
            self.add(err)
        super().__init__(str(self))

    def add(self, err: BaseException) -> Errors:
        """Append ``err``, flattening nested aggregates and skipping duplicates."""
        if isinstance(err, Errors):
            for inner in err.errors:
                self.add(inner)
        elif err not in self.errors:
            self.errors.append(err)
        return self

    def __iter__(self) -> Iterator[BaseException]:
        return iter(self.errors)

    def __len__(self) -> int:
        return len(self.errors)

    def __str__(self) -> str:
        return "; ".join(str(err) for err in self.errors)


def is_record_not_found(err: BaseException | None) -> bool:
    """Return True if ``err`` is, or aggregates, a RecordNotFound error."""
    if isinstance(err, RecordNotFound):
        return True
    if isinstance(err, Errors):
        return any(isinstance(e, RecordNotFound) for e in err)
    return False
