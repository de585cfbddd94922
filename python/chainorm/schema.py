"""Basic DDL: create, drop and extend tables from model descriptors.

Column types come from the dialect (``Dialect.data_type_of``). Only additive
changes are made by ``auto_migrate``: missing tables, columns, join tables
and indexes of new columns are created, nothing is altered or dropped.
"""

from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from chainorm.errors import InvalidSQL
from chainorm.metadata import ModelStruct, StructField, describe

if TYPE_CHECKING:
    from chainorm.dialects import Dialect
    from chainorm.scope import Scope

logger = logging.getLogger(__name__)


# ========== Operations ==========


@dataclass
class ColumnDef:
    """Column definition for CreateTable and AddColumn operations."""

    name: str
    type_: str
    unique: bool = False
    default: str | None = None

    def to_sql(self, dialect: Dialect) -> str:
        parts = [f"{dialect.quote(self.name)} {self.type_}"]
        if self.unique and "primary key" not in self.type_.lower():
            parts.append("UNIQUE")
        if self.default is not None:
            parts.append(f"DEFAULT {self.default}")
        return " ".join(parts)


@dataclass
class CreateTable:
    """Create a new table."""

    table_name: str
    columns: list[ColumnDef]
    primary_keys: list[str] = field(default_factory=list)

    def to_sql(self, dialect: Dialect) -> str:
        defs = [col.to_sql(dialect) for col in self.columns]
        # Types like "integer primary key autoincrement" already declare the key
        if self.primary_keys and not any("primary key" in col.type_.lower() for col in self.columns):
            defs.append(f"PRIMARY KEY ({','.join(dialect.quote(pk) for pk in self.primary_keys)})")
        return f"CREATE TABLE {dialect.quote(self.table_name)} ({','.join(defs)})"


@dataclass
class DropTable:
    """Drop a table."""

    table_name: str
    if_exists: bool = False

    def to_sql(self, dialect: Dialect) -> str:
        exists_clause = "IF EXISTS " if self.if_exists else ""
        return f"DROP TABLE {exists_clause}{dialect.quote(self.table_name)}"


@dataclass
class AddColumn:
    """Add a column to a table."""

    table_name: str
    column: ColumnDef

    def to_sql(self, dialect: Dialect) -> str:
        return f"ALTER TABLE {dialect.quote(self.table_name)} ADD {self.column.to_sql(dialect)}"


@dataclass
class CreateIndex:
    """Create an index on one or more columns."""

    name: str
    table_name: str
    columns: list[str]

    def to_sql(self, dialect: Dialect) -> str:
        columns = ", ".join(dialect.quote(col) for col in self.columns)
        return f"CREATE INDEX {dialect.quote(self.name)} ON {dialect.quote(self.table_name)} ({columns})"


# ========== Execution ==========


def _run(scope: Scope, operation: Any) -> None:
    scope.sql_vars = []
    scope.raw(operation.to_sql(scope.dialect))
    scope.exec()


def _struct(scope: Scope) -> ModelStruct | None:
    struct = scope.get_model_struct()
    if struct is None:
        scope.err(InvalidSQL(f"cannot derive a table definition from {scope.value!r}"))
    return struct


def _column(dialect: Dialect, f: StructField) -> ColumnDef:
    info = f.info
    return ColumnDef(
        name=f.db_name,
        type_=dialect.data_type_of(f),
        unique=bool(info is not None and info.unique),
        default=info.server_default if info is not None else None,
    )


def _index_operation(table: str, f: StructField) -> CreateIndex:
    return CreateIndex(f"idx_{table}_{f.db_name}", table, [f.db_name])


def has_table(scope: Scope, table_name: str | None = None) -> bool:
    return scope.dialect.has_table(scope.db, table_name or scope.table_name())


def create_table(scope: Scope) -> None:
    """Create the table of ``scope.value`` plus its join tables and indexes."""
    struct = _struct(scope)
    if struct is None:
        return
    table = scope.table_name()
    try:
        columns = [_column(scope.dialect, f) for f in struct.normal_fields]
    except InvalidSQL as error:
        scope.err(error)
        return
    _run(scope, CreateTable(table, columns, [f.db_name for f in struct.primary_fields]))
    if scope.has_error():
        return
    logger.debug("Created table %s", table)
    create_join_tables(scope, struct)
    for f in struct.normal_fields:
        if f.info is not None and f.info.index and not scope.has_error():
            _run(scope, _index_operation(table, f))


def create_join_tables(scope: Scope, struct: ModelStruct) -> None:
    for f in struct.relationship_fields:
        handler = f.relationship.join_table_handler if f.relationship is not None else None
        if handler is None or has_table(scope, handler.table_name):
            continue
        keys = [(key, handler.source) for key in handler.source_keys] + [
            (key, handler.destination) for key in handler.destination_keys
        ]
        columns = []
        for key, model in keys:
            referenced = describe(model).field(key.attr)
            if referenced is None:
                scope.err(InvalidSQL(f"unknown join key {key.attr} on {model.__name__}"))
                return
            # Join columns take the referenced type without its auto-increment key clause
            plain = dataclasses.replace(referenced, is_primary_key=False, is_auto_increment=False)
            try:
                columns.append(ColumnDef(key.db_name, scope.dialect.data_type_of(plain)))
            except InvalidSQL as error:
                scope.err(error)
                return
        _run(scope, CreateTable(handler.table_name, columns, [col.name for col in columns]))
        if scope.has_error():
            return
        logger.debug("Created join table %s", handler.table_name)


def drop_table(scope: Scope, if_exists: bool = False) -> None:
    _run(scope, DropTable(scope.table_name(), if_exists=if_exists))


def auto_migrate(scope: Scope) -> None:
    """Create the table when missing, otherwise add the columns it lacks."""
    struct = _struct(scope)
    if struct is None:
        return
    table = scope.table_name()
    if not has_table(scope, table):
        create_table(scope)
        return
    for f in struct.normal_fields:
        if scope.dialect.has_column(scope.db, table, f.db_name):
            continue
        try:
            column = _column(scope.dialect, f)
        except InvalidSQL as error:
            scope.err(error)
            return
        _run(scope, AddColumn(table, column))
        if scope.has_error():
            return
        logger.debug("Added column %s.%s", table, f.db_name)
        if f.info is not None and f.info.index:
            _run(scope, _index_operation(table, f))
    create_join_tables(scope, struct)
