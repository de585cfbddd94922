"""Thin adapter over PEP 249 (DB-API 2.0) connections.

``Pool`` serializes statements on one primary connection and opens a separate
connection per transaction. For sources that cannot be reopened (an in-memory
SQLite database, or a single connection handed in by the caller) the
transaction reuses the primary connection and keeps it locked until it ends.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field
from typing import Any

from chainorm.dialects import Dialect, SQLite3Dialect
from chainorm.errors import ConfigurationError, InvalidTransaction

logger = logging.getLogger(__name__)


class Rows:
    """A fully fetched result set.

    Iterating yields row tuples; ``columns`` holds the column names in order.

    Example:
        >>> rows = db.table("users").select("name, age").rows()
        >>> for name, age in rows:
        ...     print(name, age)
    """

    def __init__(self, columns: list[str], rows: list[tuple[Any, ...]]) -> None:
        self.columns = columns
        self._rows = rows
        self._position = 0

    def __iter__(self) -> Iterator[tuple[Any, ...]]:
        while self._position < len(self._rows):
            row = self._rows[self._position]
            self._position += 1
            yield row

    def __len__(self) -> int:
        return len(self._rows)

    def fetchone(self) -> tuple[Any, ...] | None:
        if self._position >= len(self._rows):
            return None
        row = self._rows[self._position]
        self._position += 1
        return row

    def fetchall(self) -> list[tuple[Any, ...]]:
        remaining = self._rows[self._position:]
        self._position = len(self._rows)
        return remaining

    def close(self) -> None:
        self._position = len(self._rows)


@dataclass
class ExecResult:
    rows_affected: int = 0
    last_insert_id: Any = None
    rows: Rows | None = None


@dataclass
class _Executor:
    """Runs statements on one DB-API connection."""

    connection: Any
    dialect: Dialect
    lock: threading.RLock = field(default_factory=threading.RLock)

    def run(self, sql: str, values: list[Any]) -> tuple[Any, Rows | None]:
        cursor = self.connection.cursor()
        try:
            cursor.execute(sql, values)
            rows = None
            if cursor.description:
                columns = [d[0] for d in cursor.description]
                rows = Rows(columns, [tuple(row) for row in cursor.fetchall()])
            return cursor, rows
        except BaseException:
            cursor.close()
            raise

    def exec(self, sql: str, values: list[Any]) -> ExecResult:
        cursor, rows = self.run(sql, values)
        try:
            return ExecResult(
                rows_affected=cursor.rowcount if cursor.rowcount is not None else 0,
                last_insert_id=getattr(cursor, "lastrowid", None),
                rows=rows,
            )
        finally:
            cursor.close()

    def query(self, sql: str, values: list[Any]) -> Rows:
        cursor, rows = self.run(sql, values)
        cursor.close()
        return rows if rows is not None else Rows([], [])


class Pool:
    """Primary connection plus a factory for transaction connections."""

    def __init__(
        self,
        dialect: Dialect,
        connection: Any,
        factory: Callable[[], Any] | None = None,
    ) -> None:
        self.dialect = dialect
        self._factory = factory
        self._primary = _Executor(connection, dialect)
        self._closed = False

    def _autocommit(self) -> None:
        if self.dialect.begin_sql() is None:
            self._primary.connection.commit()

    def exec(self, sql: str, values: list[Any]) -> ExecResult:
        with self._primary.lock:
            try:
                result = self._primary.exec(sql, values)
            except Exception:
                self._rollback_implicit()
                raise
            self._autocommit()
            return result

    def query(self, sql: str, values: list[Any]) -> Rows:
        with self._primary.lock:
            try:
                rows = self._primary.query(sql, values)
            except Exception:
                self._rollback_implicit()
                raise
            self._autocommit()
            return rows

    def _rollback_implicit(self) -> None:
        if self.dialect.begin_sql() is None:
            self._primary.connection.rollback()

    def begin(self, read_only: bool = False, shared: bool = False) -> Transaction:
        """Start a transaction on its own connection (or the locked primary one).

        ``shared`` forces the primary connection, held locked until the
        transaction ends; statement-level transactions opened by callbacks use it.
        """
        if self._factory is None or shared:
            self._primary.lock.acquire()
            try:
                return Transaction(self._primary, read_only, release=self._primary.lock.release)
            except BaseException:
                self._primary.lock.release()
                raise
        executor = _Executor(self._factory(), self.dialect)
        return Transaction(executor, read_only, release=executor.connection.close)

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._primary.connection.close()


class Transaction:
    """One transactional connection.

    After ``commit`` or ``rollback`` every statement raises
    ``InvalidTransaction``; a second ``rollback`` is a no-op.
    """

    def __init__(
        self,
        executor: _Executor,
        read_only: bool = False,
        release: Callable[[], None] | None = None,
    ) -> None:
        self.dialect = executor.dialect
        self._executor = executor
        self._release = release
        self.read_only = read_only
        self.committed = False
        self.rolled_back = False

        begin = self.dialect.begin_sql()
        try:
            if begin:
                executor.exec(begin, [])
            if read_only:
                for sql in self.dialect.read_only_sql():
                    executor.exec(sql, [])
        except BaseException:
            self._finish()
            raise
        logger.debug("Transaction started (read_only=%s)", read_only)

    @property
    def finished(self) -> bool:
        return self.committed or self.rolled_back

    def _check(self) -> None:
        if self.finished:
            raise InvalidTransaction("transaction has already been committed or rolled back")

    def exec(self, sql: str, values: list[Any]) -> ExecResult:
        self._check()
        return self._executor.exec(sql, values)

    def query(self, sql: str, values: list[Any]) -> Rows:
        self._check()
        return self._executor.query(sql, values)

    def commit(self) -> None:
        self._check()
        try:
            if self.dialect.begin_sql() is not None:
                self._executor.exec("COMMIT", [])
            else:
                self._executor.connection.commit()
            self.committed = True
            logger.debug("Transaction committed")
        finally:
            if self.committed:
                self._finish()

    def rollback(self) -> None:
        if self.finished:
            return
        try:
            if self.dialect.begin_sql() is not None:
                self._executor.exec("ROLLBACK", [])
            else:
                self._executor.connection.rollback()
        finally:
            self.rolled_back = True
            self._finish()
            logger.debug("Transaction rolled back")

    def _finish(self) -> None:
        try:
            if self.read_only:
                for sql in self.dialect.end_read_only_sql():
                    self._executor.exec(sql, [])
        finally:
            if self._release is not None:
                release, self._release = self._release, None
                release()


def connect(dialect: Dialect, source: Any) -> Pool:
    """Build a ``Pool`` for ``dialect`` from a DSN, a connection or a factory.

    ``source`` may be:

    - a path string (``":memory:"`` included) for the SQLite dialect
    - a zero-argument callable returning a new DB-API connection
    - an open DB-API connection (transactions then share it)

    Raises:
        ConfigurationError: if ``source`` is none of the above.
    """
    if isinstance(dialect, SQLite3Dialect) and isinstance(source, str):
        if not source:
            raise ConfigurationError("invalid database source: empty path")

        def factory() -> Any:
            return sqlite3.connect(source, isolation_level=None, check_same_thread=False)

        try:
            connection = factory()
        except sqlite3.Error as err:
            raise ConfigurationError(f"invalid database source: {err}") from err
        if source == ":memory:" or source.startswith("file::memory:"):
            return Pool(dialect, connection)
        return Pool(dialect, connection, factory)

    if callable(source) and not hasattr(source, "cursor"):
        try:
            connection = source()
        except Exception as err:
            raise ConfigurationError(f"invalid database source: {err}") from err
        if not hasattr(connection, "cursor"):
            raise ConfigurationError(f"invalid database source: factory returned {connection!r}")
        return Pool(dialect, connection, source)

    if hasattr(source, "cursor"):
        if isinstance(source, sqlite3.Connection):
            # Transactions are opened with explicit BEGIN statements
            source.isolation_level = None
        return Pool(dialect, source)

    raise ConfigurationError(f"invalid database source: {source!r}")
