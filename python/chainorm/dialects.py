"""Dialect adapters: identifier quoting, placeholders, type mapping and introspection.

Each dialect is registered under one or more names; ``get_dialect`` returns a
fresh instance. Dialects never hold a connection themselves, introspection
methods take the driver handle to query through.
"""

from __future__ import annotations

import datetime as dt
import decimal
import logging
from typing import TYPE_CHECKING, Any, Protocol

from chainorm.errors import ConfigurationError, InvalidSQL

if TYPE_CHECKING:
    from chainorm.metadata import StructField

logger = logging.getLogger(__name__)

DEFAULT_STRING_SIZE = 255


class Queryable(Protocol):
    """The part of a driver handle dialects use for introspection."""

    def query(self, sql: str, values: list[Any]) -> Any: ...


class Dialect:
    """Common behaviour; subclasses override what their engine does differently."""

    name = "common"
    paramstyle = "?"

    def bind_var(self, index: int) -> str:
        """Placeholder for the ``index``-th (1-based) bound value."""
        return self.paramstyle

    def quote(self, key: str) -> str:
        return f'"{key}"'

    def bind_value(self, value: Any) -> Any:
        """Adapt a Python value before handing it to the driver."""
        return value

    def result_value(self, value: Any, python_type: Any) -> Any:
        """Adapt a driver value to the attribute's declared Python type."""
        return value

    # ========== DDL ==========

    def data_type_of(self, field: StructField) -> str:
        info = field.info
        if info is not None and info.type_:
            return info.type_
        sql_type = self._sql_type(field)
        if sql_type is None:
            raise InvalidSQL(f"invalid sql type {getattr(field.python_type, '__name__', field.python_type)} "
                             f"for field {field.name} in dialect {self.name}")
        return sql_type

    def _sql_type(self, field: StructField) -> str | None:
        raise NotImplementedError

    @staticmethod
    def _size(field: StructField) -> int:
        if field.info is not None and field.info.max_length:
            return field.info.max_length
        return DEFAULT_STRING_SIZE

    @staticmethod
    def _is_auto_increment(field: StructField) -> bool:
        return field.is_auto_increment

    def has_table(self, db: Queryable, table_name: str) -> bool:
        raise NotImplementedError

    def has_column(self, db: Queryable, table_name: str, column_name: str) -> bool:
        raise NotImplementedError

    # ========== Statement fragments ==========

    def limit_and_offset_sql(self, limit: int | None, offset: int | None, has_order: bool = True) -> str:
        sql = ""
        if limit is not None and limit >= 0:
            sql += f" LIMIT {limit}"
        if offset is not None and offset >= 0:
            sql += f" OFFSET {offset}"
        return sql

    def select_from_dummy_table(self) -> str:
        return ""

    def default_values_sql(self) -> str:
        return "DEFAULT VALUES"

    def last_insert_id_output_interstitial(self, table_name: str, column_name: str) -> str:
        return ""

    def last_insert_id_returning_suffix(self, table_name: str, column_name: str) -> str:
        return ""

    # ========== Transactions ==========

    def begin_sql(self) -> str | None:
        """Statement opening a transaction; None when the driver starts one implicitly."""
        return None

    def read_only_sql(self) -> list[str]:
        """Statements making the current transaction read-only."""
        return ["SET TRANSACTION READ ONLY"]

    def end_read_only_sql(self) -> list[str]:
        return []

    @staticmethod
    def _count(db: Queryable, sql: str, values: list[Any]) -> int:
        rows = db.query(sql, values)
        first = rows.fetchone()
        return int(first[0]) if first else 0


class SQLite3Dialect(Dialect):
    name = "sqlite3"

    def bind_value(self, value: Any) -> Any:
        if isinstance(value, bool):
            return int(value)
        if isinstance(value, dt.datetime):
            return value.isoformat(" ")
        if isinstance(value, (dt.date, dt.time)):
            return value.isoformat()
        if isinstance(value, decimal.Decimal):
            return str(value)
        return value

    def result_value(self, value: Any, python_type: Any) -> Any:
        if value is None or not isinstance(python_type, type):
            return value
        if python_type is bool and isinstance(value, int):
            return bool(value)
        if isinstance(value, str):
            if python_type is dt.datetime:
                return dt.datetime.fromisoformat(value)
            if python_type is dt.date:
                return dt.date.fromisoformat(value[:10])
            if python_type is dt.time:
                return dt.time.fromisoformat(value)
            if python_type is decimal.Decimal:
                return decimal.Decimal(value)
        if python_type is decimal.Decimal and isinstance(value, (int, float)):
            return decimal.Decimal(str(value))
        return value

    def _sql_type(self, field: StructField) -> str | None:
        python_type = field.python_type
        if python_type is bool:
            return "bool"
        if python_type is int:
            if self._is_auto_increment(field):
                return "integer primary key autoincrement"
            return "integer"
        if python_type is float:
            return "real"
        if python_type is decimal.Decimal:
            return "decimal"
        if python_type is str:
            size = self._size(field)
            return f"varchar({size})" if 0 < size < 65532 else "text"
        if python_type is dt.datetime:
            return "datetime"
        if python_type is dt.date:
            return "date"
        if python_type is dt.time:
            return "time"
        if python_type is bytes:
            return "blob"
        return None

    def has_table(self, db: Queryable, table_name: str) -> bool:
        return self._count(
            db, "SELECT count(*) FROM sqlite_master WHERE type='table' AND name=?", [table_name]
        ) > 0

    def has_column(self, db: Queryable, table_name: str, column_name: str) -> bool:
        rows = db.query(f"PRAGMA table_info({self.quote(table_name)})", [])
        return any(row[1] == column_name for row in rows.fetchall())

    def limit_and_offset_sql(self, limit: int | None, offset: int | None, has_order: bool = True) -> str:
        sql = ""
        if limit is not None and limit >= 0:
            sql += f" LIMIT {limit}"
        if offset is not None and offset >= 0:
            if not sql:
                sql += " LIMIT -1"
            sql += f" OFFSET {offset}"
        return sql

    def begin_sql(self) -> str | None:
        return "BEGIN"

    def read_only_sql(self) -> list[str]:
        return ["PRAGMA query_only = ON"]

    def end_read_only_sql(self) -> list[str]:
        return ["PRAGMA query_only = OFF"]


class PostgresDialect(Dialect):
    name = "postgres"
    paramstyle = "%s"

    def _sql_type(self, field: StructField) -> str | None:
        python_type = field.python_type
        if python_type is bool:
            return "boolean"
        if python_type is int:
            if self._is_auto_increment(field):
                return "serial"
            return "integer"
        if python_type is float:
            return "numeric"
        if python_type is decimal.Decimal:
            return "numeric"
        if python_type is str:
            size = self._size(field)
            return f"varchar({size})" if 0 < size < 65532 else "text"
        if python_type is dt.datetime:
            return "timestamp with time zone"
        if python_type is dt.date:
            return "date"
        if python_type is dt.time:
            return "time"
        if python_type is bytes:
            return "bytea"
        return None

    def has_table(self, db: Queryable, table_name: str) -> bool:
        return self._count(
            db,
            "SELECT count(*) FROM INFORMATION_SCHEMA.tables WHERE table_name = %s "
            "AND table_type = 'BASE TABLE' AND table_schema = CURRENT_SCHEMA()",
            [table_name],
        ) > 0

    def has_column(self, db: Queryable, table_name: str, column_name: str) -> bool:
        return self._count(
            db,
            "SELECT count(*) FROM INFORMATION_SCHEMA.columns WHERE table_name = %s "
            "AND column_name = %s AND table_schema = CURRENT_SCHEMA()",
            [table_name, column_name],
        ) > 0

    def last_insert_id_returning_suffix(self, table_name: str, column_name: str) -> str:
        return f"RETURNING {self.quote(table_name)}.{self.quote(column_name)}"


class MySQLDialect(Dialect):
    name = "mysql"
    paramstyle = "%s"

    def quote(self, key: str) -> str:
        return f"`{key}`"

    def _sql_type(self, field: StructField) -> str | None:
        python_type = field.python_type
        if python_type is bool:
            return "boolean"
        if python_type is int:
            if self._is_auto_increment(field):
                return "int AUTO_INCREMENT"
            return "int"
        if python_type is float:
            return "double"
        if python_type is decimal.Decimal:
            return "decimal"
        if python_type is str:
            size = self._size(field)
            return f"varchar({size})" if 0 < size < 65532 else "longtext"
        if python_type is dt.datetime:
            return "DATETIME"
        if python_type is dt.date:
            return "DATE"
        if python_type is dt.time:
            return "TIME"
        if python_type is bytes:
            return "longblob"
        return None

    def has_table(self, db: Queryable, table_name: str) -> bool:
        return self._count(
            db,
            "SELECT count(*) FROM INFORMATION_SCHEMA.TABLES WHERE table_schema = DATABASE() "
            "AND table_name = %s",
            [table_name],
        ) > 0

    def has_column(self, db: Queryable, table_name: str, column_name: str) -> bool:
        return self._count(
            db,
            "SELECT count(*) FROM INFORMATION_SCHEMA.COLUMNS WHERE table_schema = DATABASE() "
            "AND table_name = %s AND column_name = %s",
            [table_name, column_name],
        ) > 0

    def limit_and_offset_sql(self, limit: int | None, offset: int | None, has_order: bool = True) -> str:
        sql = ""
        if limit is not None and limit >= 0:
            sql += f" LIMIT {limit}"
        if offset is not None and offset >= 0:
            if not sql:
                sql += " LIMIT 18446744073709551615"
            sql += f" OFFSET {offset}"
        return sql

    def select_from_dummy_table(self) -> str:
        return "FROM DUAL"

    def default_values_sql(self) -> str:
        return "VALUES()"


class MSSQLDialect(Dialect):
    name = "mssql"

    def quote(self, key: str) -> str:
        return f"[{key}]"

    def _sql_type(self, field: StructField) -> str | None:
        python_type = field.python_type
        if python_type is bool:
            return "bit"
        if python_type is int:
            if self._is_auto_increment(field):
                return "int IDENTITY(1,1)"
            return "int"
        if python_type is float:
            return "float"
        if python_type is decimal.Decimal:
            return "decimal"
        if python_type is str:
            size = self._size(field)
            return f"nvarchar({size})" if 0 < size < 4000 else "nvarchar(max)"
        if python_type is dt.datetime:
            return "datetimeoffset"
        if python_type is dt.date:
            return "date"
        if python_type is dt.time:
            return "time"
        if python_type is bytes:
            return "varbinary(max)"
        return None

    def has_table(self, db: Queryable, table_name: str) -> bool:
        return self._count(
            db,
            "SELECT count(*) FROM INFORMATION_SCHEMA.tables WHERE table_name = ? "
            "AND table_catalog = DB_NAME()",
            [table_name],
        ) > 0

    def has_column(self, db: Queryable, table_name: str, column_name: str) -> bool:
        return self._count(
            db,
            "SELECT count(*) FROM INFORMATION_SCHEMA.columns WHERE table_catalog = DB_NAME() "
            "AND table_name = ? AND column_name = ?",
            [table_name, column_name],
        ) > 0

    def limit_and_offset_sql(self, limit: int | None, offset: int | None, has_order: bool = True) -> str:
        if (limit is None or limit < 0) and (offset is None or offset < 0):
            return ""
        sql = "" if has_order else " ORDER BY (SELECT NULL)"
        sql += f" OFFSET {offset if offset is not None and offset >= 0 else 0} ROWS"
        if limit is not None and limit >= 0:
            sql += f" FETCH NEXT {limit} ROWS ONLY"
        return sql

    def last_insert_id_output_interstitial(self, table_name: str, column_name: str) -> str:
        return f"OUTPUT Inserted.{self.quote(column_name)}"


_dialects: dict[str, type[Dialect]] = {}


def register_dialect(name: str, dialect: type[Dialect]) -> None:
    """Register ``dialect`` under ``name`` for ``chainorm.open``."""
    _dialects[name] = dialect


def get_dialect(name: str) -> Dialect:
    """Return a new instance of the dialect registered as ``name``.

    Raises:
        ConfigurationError: if no dialect is registered under ``name``.
    """
    try:
        return _dialects[name]()
    except KeyError:
        raise ConfigurationError(f"unknown dialect {name!r}") from None


register_dialect("sqlite3", SQLite3Dialect)
register_dialect("sqlite", SQLite3Dialect)
register_dialect("postgres", PostgresDialect)
register_dialect("postgresql", PostgresDialect)
register_dialect("mysql", MySQLDialect)
register_dialect("mssql", MSSQLDialect)
