"""chainorm - a chainable ORM core built on scopes and callback pipelines."""

from __future__ import annotations

from typing import Any

from chainorm.base import Base
from chainorm.callbacks import Callbacks, Pipeline, Step
from chainorm.dialects import Dialect, get_dialect, register_dialect
from chainorm.driver import Rows, Transaction
from chainorm.errors import (
    CantStartTransaction,
    ConfigurationError,
    Errors,
    InvalidSQL,
    InvalidTransaction,
    MissingWhereClause,
    ORMError,
    RecordNotFound,
    StatementError,
    UnaddressableValue,
    is_record_not_found,
)
from chainorm.fields import Mapped, mapped_column
from chainorm.metadata import describe
from chainorm.mixins import SoftDeleteMixin, TimestampMixin
from chainorm.query import Expr, expr
from chainorm.relationships import relationship
from chainorm.scope import Scope
from chainorm.session import Engine, Session, create_engine, create_session
from chainorm.settings import Settings

__version__ = "0.1.0"

__all__ = [
    # Core
    "open",
    "create_engine",
    "create_session",
    "Engine",
    "Session",
    "Scope",
    "Settings",
    "Rows",
    "Transaction",
    # Model definition
    "Base",
    "Mapped",
    "mapped_column",
    "relationship",
    "SoftDeleteMixin",
    "TimestampMixin",
    "describe",
    # Query building
    "Expr",
    "expr",
    # Callbacks
    "Callbacks",
    "Pipeline",
    "Step",
    # Dialects
    "Dialect",
    "get_dialect",
    "register_dialect",
    # Errors
    "ORMError",
    "ConfigurationError",
    "StatementError",
    "RecordNotFound",
    "MissingWhereClause",
    "InvalidSQL",
    "InvalidTransaction",
    "CantStartTransaction",
    "UnaddressableValue",
    "Errors",
    "is_record_not_found",
]


def open(dialect: str | Dialect, source: Any, **options: Any) -> Session:  # noqa: A001
    """Open a database and return a session on it.

    Args:
        dialect: Dialect name (``sqlite3``, ``postgres``, ``mysql``, ``mssql``) or instance.
        source: A DSN (the database path for SQLite), an open DB-API
            connection, or a zero-argument callable returning one.
        **options: ``singular_table`` and ``now_func``, see ``create_engine``.

    Returns:
        A session on a new engine.

    Raises:
        ConfigurationError: for an unknown dialect or an invalid source.

    Example:
        >>> db = chainorm.open("sqlite3", "app.db")
        >>> db = chainorm.open("postgres", lambda: psycopg2.connect(dsn))
    """
    return create_session(create_engine(dialect, source, **options))
