"""Column and field definitions for models."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Generic, TypeVar

T = TypeVar("T")


class Mapped(Generic[T]):
    """Type annotation wrapper indicating a database-mapped column.

    Example:
        >>> class User(Base):
        ...     id: Mapped[int] = mapped_column(primary_key=True)
        ...     name: Mapped[str] = mapped_column(max_length=100)
        ...     age: Mapped[int | None] = mapped_column(nullable=True)
    """

    pass


@dataclass
class ColumnInfo:
    """Stores the declared options of a database column."""

    name: str | None = None
    column: str | None = None
    python_type: Any = None
    primary_key: bool = False
    nullable: bool = False
    unique: bool = False
    index: bool = False
    default: Any = None
    server_default: str | None = None
    max_length: int | None = None
    type_: str | None = None
    autoincrement: bool | None = None
    ignore: bool = False

    @property
    def db_name(self) -> str | None:
        """Column name in the database (explicit override or attribute name)."""
        return self.column or self.name

    def default_value(self) -> Any:
        """Return the client-side default, calling it when it is callable."""
        if callable(self.default):
            return self.default()
        return self.default


def mapped_column(
    column: str | None = None,
    /,
    *,
    primary_key: bool = False,
    nullable: bool = False,
    unique: bool = False,
    index: bool = False,
    default: Any = None,
    server_default: str | None = None,
    max_length: int | None = None,
    type_: str | None = None,
    autoincrement: bool | None = None,
    ignore: bool = False,
) -> Any:
    """Define a database column.

    Args:
        column: Optional column name, when it differs from the attribute name
        primary_key: Whether this is (part of) the primary key
        nullable: Whether NULL values are allowed
        unique: Whether values must be unique
        index: Whether to create an index on this column
        default: Client-side default value (can be callable)
        server_default: SQL expression for a server-side default. Blank values
            are left out of INSERT statements and read back afterwards.
        max_length: Maximum length for string columns
        type_: Explicit SQL type, bypassing the dialect's type mapping
        autoincrement: Whether the database generates the key (a sole integer PK)
        ignore: Keep the attribute on the model but never map it to a column

    Returns:
        A ColumnInfo descriptor

    Example:
        >>> id: Mapped[int] = mapped_column(primary_key=True)
        >>> name: Mapped[str] = mapped_column(max_length=100, index=True)
        >>> email: Mapped[str] = mapped_column("email_address", unique=True)
        >>> role: Mapped[str] = mapped_column(server_default="'member'")
    """
    # Primary keys are not nullable by default
    if primary_key:
        nullable = False
        if autoincrement is None:
            autoincrement = True

    return ColumnInfo(
        column=column,
        primary_key=primary_key,
        nullable=nullable,
        unique=unique,
        index=index,
        default=default,
        server_default=server_default,
        max_length=max_length,
        type_=type_,
        autoincrement=autoincrement,
        ignore=ignore,
    )
