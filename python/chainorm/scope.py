"""Scope: the per-operation execution context.

A scope is created by every terminal session call (and by every nested
association save or preload). It owns a private copy of the chain's
``Search``, the target value, the SQL text and bound values being built, and
the errors recorded so far. Callback steps read and write it; nothing outlives
the operation.
"""

from __future__ import annotations

import dataclasses
import decimal
import logging
import re
import time
from collections.abc import Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from chainorm.base import ModelMeta
from chainorm.driver import ExecResult, Pool, Rows
from chainorm.errors import Errors, InvalidSQL, ORMError, StatementError, UnaddressableValue
from chainorm.metadata import ModelStruct, StructField, describe, model_type_of
from chainorm.query import Clause, Expr, Search

if TYPE_CHECKING:
    from chainorm.dialects import Dialect
    from chainorm.session import Session
    from chainorm.settings import Settings

logger = logging.getLogger(__name__)

_NUMBER_RE = re.compile(r"^\s*\d+\s*$")
_COMPARISON_RE = re.compile(r"(?i) (=|<>|(>|<)(=?)|LIKE|IS|IN) ")
_COLUMN_RE = re.compile(r"^[a-zA-Z\d_]+(\.[a-zA-Z\d_]+)*$")
_COUNTING_RE = re.compile(r"(?i)^count(.+)$")

_SCALAR_TYPES = (str, bytes, int, float, bool, decimal.Decimal, dict)


def is_blank(value: Any) -> bool:
    """Zero values: None, empty strings and containers, numeric zero and False."""
    if value is None:
        return True
    if isinstance(value, (str, bytes, list, tuple, dict, set)):
        return len(value) == 0
    if isinstance(value, (int, float, decimal.Decimal)):
        return value == 0
    return False


def strip_parens(sql: str) -> str:
    """Drop one pair of outer parentheses from a built condition."""
    if sql.startswith("(") and sql.endswith(")"):
        return sql[1:-1]
    return sql


@dataclass
class Field:
    """A struct field bound to one instance."""

    struct: StructField
    owner: Any

    @property
    def name(self) -> str:
        return self.struct.name

    @property
    def db_name(self) -> str:
        return self.struct.db_name

    @property
    def value(self) -> Any:
        return getattr(self.owner, self.struct.name, None)

    @property
    def is_blank(self) -> bool:
        return is_blank(self.value)

    def set(self, value: Any) -> None:
        setattr(self.owner, self.struct.name, value)


class Scope:
    """Mutable state of one operation."""

    def __init__(self, session: Session, value: Any) -> None:
        self.session = session
        self.value = value
        self.search: Search = session._search.clone()
        self.sql = ""
        self.sql_vars: list[Any] = []
        self.rows_affected = 0
        self._errors: list[BaseException] = []
        if session.error is not None:
            self.err(session.error)
        self._instance: dict[str, Any] = {}
        self._skip_left = False
        self._skip_bindvar = False
        self._struct: ModelStruct | None = None
        self._struct_resolved = False

    @property
    def settings(self) -> Settings:
        return self.session.settings

    @property
    def dialect(self) -> Dialect:
        return self.session.dialect

    @property
    def db(self) -> Any:
        """The connection handle statements run on (pool or transaction)."""
        return self.session.db

    def get(self, key: str, default: Any = None) -> Any:
        """Read a session setting."""
        return self.settings.get(key, default)

    def instance_get(self, key: str, default: Any = None) -> Any:
        """Read a value private to this operation."""
        return self._instance.get(key, default)

    def instance_set(self, key: str, value: Any) -> Scope:
        self._instance[key] = value
        return self

    def new_db(self) -> Session:
        """A session for nested operations: same connection and settings, empty chain."""
        return self.session._fresh()

    # ========== Errors ==========

    def err(self, error: BaseException | None) -> BaseException | None:
        """Record ``error`` (when not None) and return it."""
        if error is not None:
            if isinstance(error, Errors):
                self._errors.extend(e for e in error if e not in self._errors)
            elif error not in self._errors:
                self._errors.append(error)
        return error

    @property
    def error(self) -> BaseException | None:
        if not self._errors:
            return None
        if len(self._errors) == 1:
            return self._errors[0]
        return Errors(self._errors)

    def has_error(self) -> bool:
        return bool(self._errors)

    def skip_left(self) -> None:
        """Skip the remaining non-cleanup steps without recording an error."""
        self._skip_left = True

    @property
    def skipped(self) -> bool:
        return self._skip_left

    # ========== Model ==========

    def model_type(self) -> type | None:
        value = self.value
        if isinstance(value, (list, tuple)) and not value:
            value = None
        if value is None:
            value = self.session._value
        if value is None or isinstance(value, _SCALAR_TYPES) or value in _SCALAR_TYPES:
            return None
        try:
            return model_type_of(value)
        except UnaddressableValue:
            return None

    def get_model_struct(self) -> ModelStruct | None:
        if not self._struct_resolved:
            model_type = self.model_type()
            self._struct = describe(model_type) if model_type is not None else None
            self._struct_resolved = True
        return self._struct

    def _instance_value(self) -> Any:
        value = self.value
        if value is None or isinstance(value, (type, list, tuple, dict)):
            return None
        return value

    def fields(self) -> list[Field]:
        """Struct fields bound to the target instance (empty for classes and lists)."""
        struct = self.get_model_struct()
        owner = self._instance_value()
        if struct is None or owner is None:
            return []
        if isinstance(type(owner), ModelMeta):
            struct.relationship_fields  # resolve association kinds
        return [Field(f, owner) for f in struct.fields]

    def field_by_name(self, name: str) -> Field | None:
        struct = self.get_model_struct()
        owner = self._instance_value()
        if struct is None or owner is None:
            return None
        f = struct.field(name)
        return Field(f, owner) if f is not None else None

    def primary_fields(self) -> list[Field]:
        struct = self.get_model_struct()
        owner = self._instance_value()
        if struct is None or owner is None:
            return []
        return [Field(f, owner) for f in struct.primary_fields]

    def primary_field(self) -> StructField | None:
        struct = self.get_model_struct()
        return struct.primary_field if struct is not None else None

    def primary_key(self) -> str:
        f = self.primary_field()
        return f.db_name if f is not None else ""

    def primary_key_zero(self) -> bool:
        fields = self.primary_fields()
        if not fields:
            return True
        return any(f.is_blank for f in fields)

    def primary_key_value(self) -> Any:
        fields = self.primary_fields()
        return fields[0].value if fields else None

    def has_conditions(self) -> bool:
        search = self.search
        return (
            not self.primary_key_zero()
            or bool(search.where_conditions)
            or bool(search.or_conditions)
            or bool(search.not_conditions)
        )

    def has_column(self, column: str) -> bool:
        struct = self.get_model_struct()
        if struct is None:
            return False
        f = struct.field(column)
        return f is not None and f.is_normal and not f.is_ignored

    def set_column(self, column: str | Field, value: Any) -> BaseException | None:
        """Set a column on the target instance, tracking it in pending update attributes."""
        f = column if isinstance(column, Field) else self.field_by_name(column)
        if f is None:
            return UnaddressableValue(f"cannot set column {column!r} on {self.value!r}")
        update_attrs = self.instance_get("update_attrs")
        if update_attrs is not None:
            update_attrs[f.db_name] = value
        f.set(value)
        return None

    def changeable_field(self, f: StructField | Field) -> bool:
        """Whether ``f`` may be written, given ``select`` and ``omit`` restrictions."""
        name, db_name = f.name, f.db_name
        select_attrs = self.select_attrs()
        if select_attrs:
            return name in select_attrs or db_name in select_attrs
        return name not in self.search.omits and db_name not in self.search.omits

    def select_attrs(self) -> list[str]:
        selects = self.search.selects
        if selects is None:
            return []
        attrs: list[str] = []
        for value in (selects.query, *selects.args):
            if isinstance(value, str):
                attrs.extend(part.strip() for part in value.split(",") if part.strip())
            elif isinstance(value, (list, tuple)):
                attrs.extend(str(v) for v in value)
        return attrs

    def table_name(self) -> str:
        table = self.search.table_name
        if isinstance(table, str) and table:
            return table
        struct = self.get_model_struct()
        if struct is None:
            return ""
        return struct.table_name(self.session.engine.singular)

    def quoted_table_name(self) -> str:
        table = self.search.table_name
        if isinstance(table, str) and table:
            return table if " " in table else self.quote(table)
        return self.quote(self.table_name())

    def quote(self, name: str) -> str:
        if "." in name:
            return ".".join(self.dialect.quote(part) for part in name.split("."))
        return self.dialect.quote(name)

    def _qualify(self, column: str, table: str | None = None) -> str:
        struct = self.get_model_struct()
        if struct is not None and table is None:
            f = struct.field(column)
            if f is not None and f.is_normal:
                column = f.db_name
        if "." in column:
            return self.quote(column)
        if isinstance(self.search.table_name, Expr) and table is None:
            return self.quote(column)
        return f"{table or self.quoted_table_name()}.{self.quote(column)}"

    # ========== Bound values ==========

    def add_to_vars(self, value: Any) -> str:
        """Bind ``value`` and return the SQL that stands for it.

        Lists expand to comma separated placeholders (``NULL`` when empty),
        tuples inside lists become parenthesized groups, and ``Expr`` values
        are spliced inline with their own values bound at that position.
        """
        if isinstance(value, Expr):
            return self._splice(value.sql, value.vars)
        if isinstance(value, (list, set, frozenset)):
            if not value:
                return "NULL"
            marks = []
            for item in value:
                if isinstance(item, tuple):
                    marks.append("(" + ",".join(self.add_to_vars(v) for v in item) + ")")
                else:
                    marks.append(self.add_to_vars(item))
            return ",".join(marks)
        if self._skip_bindvar:
            self.sql_vars.append(value)
            return "?"
        self.sql_vars.append(self.dialect.bind_value(value))
        return self.dialect.bind_var(len(self.sql_vars))

    def _splice(self, sql: str, args: Sequence[Any]) -> str:
        """Replace the i-th ``?`` of ``sql`` with the bound form of ``args[i]``."""
        if not args:
            return sql
        parts = sql.split("?")
        out = [parts[0]]
        for index, part in enumerate(parts[1:]):
            out.append(self.add_to_vars(args[index]) if index < len(args) else "?")
            out.append(part)
        return "".join(out)

    # ========== Conditions ==========

    def build_condition(self, clause: Clause, include: bool) -> str:
        query, args = clause.query, clause.args
        equal = "=" if include else "<>"
        in_sql = "IN" if include else "NOT IN"

        if isinstance(query, bool):
            self.err(InvalidSQL(f"invalid query condition: {query!r}"))
            return ""
        if isinstance(query, int):
            return f"({self._qualify(self.primary_key())} {equal} {self.add_to_vars(query)})"
        if isinstance(query, (list, tuple)):
            if not query and not include:
                return ""
            sql = f"({self._qualify(self.primary_key())} {in_sql} (?))"
            args = (list(query),)
        elif isinstance(query, Expr):
            sql = f"({query.sql})" if include else f"NOT ({query.sql})"
            args = (*query.vars, *args)
        elif isinstance(query, str):
            if _NUMBER_RE.match(query):
                return f"({self._qualify(self.primary_key())} {equal} {self.add_to_vars(int(query))})"
            if not query:
                return ""
            if include:
                sql = f"({query})"
            elif _COMPARISON_RE.search(query):
                sql = f"NOT ({query})"
            else:
                sql = f"({self._qualify(query)} {in_sql} (?))"
        elif isinstance(query, dict):
            parts = []
            for key, value in query.items():
                column = self._qualify(key)
                if value is None:
                    parts.append(f"({column} IS {'NULL' if include else 'NOT NULL'})")
                else:
                    parts.append(f"({column} {equal} {self.add_to_vars(value)})")
            return " AND ".join(parts)
        else:
            return self._struct_condition(query, equal)

        return self._splice(sql, args)

    def _struct_condition(self, query: Any, equal: str) -> str:
        if isinstance(query, type):
            self.err(InvalidSQL(f"invalid query condition: {query!r}"))
            return ""
        struct = describe(query)
        if not struct.normal_fields:
            self.err(InvalidSQL(f"invalid query condition: {query!r}"))
            return ""
        table = self.quote(struct.table_name(self.session.engine.singular))
        parts = []
        for f in struct.normal_fields:
            value = getattr(query, f.name, None)
            if not is_blank(value):
                parts.append(f"({self._qualify(f.db_name, table)} {equal} {self.add_to_vars(value)})")
        return " AND ".join(parts)

    def where_sql(self) -> str:
        primary_conditions: list[str] = []
        struct = self.get_model_struct()
        if not self.search.unscoped and struct is not None:
            deleted_at = struct.field("deleted_at")
            if deleted_at is not None and deleted_at.is_normal:
                primary_conditions.append(f"{self._qualify(deleted_at.db_name)} IS NULL")
        if not self.primary_key_zero():
            for f in self.primary_fields():
                primary_conditions.append(f"{self._qualify(f.db_name)} = {self.add_to_vars(f.value)}")

        # Built in textual order so bound values line up with placeholders
        and_conditions = [
            sql for sql in (self.build_condition(c, True) for c in self.search.where_conditions) if sql
        ]
        and_conditions += [
            sql for sql in (self.build_condition(c, False) for c in self.search.not_conditions) if sql
        ]
        or_conditions = [
            sql for sql in (self.build_condition(c, True) for c in self.search.or_conditions) if sql
        ]

        combined = " AND ".join(and_conditions)
        or_sql = " OR ".join(or_conditions)
        if combined and or_sql:
            combined = f"{combined} OR {or_sql}"
        elif or_sql:
            combined = or_sql

        if primary_conditions:
            sql = " WHERE " + " AND ".join(primary_conditions)
            if combined:
                sql += f" AND ({combined})"
            return sql
        if combined:
            return f" WHERE {combined}"
        return ""

    def select_sql(self) -> str:
        selects = self.search.selects
        if selects is None:
            if self.search.join_conditions:
                return f"{self.quoted_table_name()}.*"
            return "*"
        query = selects.query
        if isinstance(query, (list, tuple)):
            return ", ".join(str(column) for column in query)
        if isinstance(query, Expr):
            return self.add_to_vars(query)
        return self._splice(str(query), selects.args)

    def from_sql(self) -> str:
        table = self.search.table_name
        if isinstance(table, Expr):
            return self.add_to_vars(table)
        return self.quoted_table_name()

    def joins_sql(self) -> str:
        joins = [strip_parens(self.build_condition(c, True)) for c in self.search.join_conditions]
        joins = [sql for sql in joins if sql]
        return " " + " ".join(joins) if joins else ""

    def group_sql(self) -> str:
        return f" GROUP BY {self.search.group}" if self.search.group else ""

    def having_sql(self) -> str:
        conditions = [
            sql for sql in (self.build_condition(c, True) for c in self.search.having_conditions) if sql
        ]
        return f" HAVING {' AND '.join(conditions)}" if conditions else ""

    def order_sql(self) -> str:
        if not self.search.orders or self.search.ignore_order_query:
            return ""
        orders = []
        for order in self.search.orders:
            if isinstance(order, Expr):
                orders.append(self.add_to_vars(order))
            elif isinstance(order, str) and _COLUMN_RE.match(order):
                orders.append(self.quote(order))
            else:
                orders.append(str(order))
        return " ORDER BY " + ",".join(orders)

    def limit_and_offset_sql(self) -> str:
        has_order = bool(self.search.orders) and not self.search.ignore_order_query
        return self.dialect.limit_and_offset_sql(self.search.limit, self.search.offset, has_order)

    def combined_condition_sql(self) -> str:
        return (
            self.joins_sql()
            + self.where_sql()
            + self.group_sql()
            + self.having_sql()
            + self.order_sql()
            + self.limit_and_offset_sql()
        )

    def raw(self, sql: str) -> Scope:
        self.sql = sql.replace("$$$", "?")
        return self

    def prepare_query_sql(self) -> None:
        """Build the SELECT statement (or the raw statement) for this scope."""
        self.sql_vars = []
        if self.search.raw:
            parts = [strip_parens(self.build_condition(c, True)) for c in self.search.where_conditions]
            self.sql = (
                " AND ".join(part for part in parts if part)
                + self.group_sql()
                + self.having_sql()
                + self.order_sql()
                + self.limit_and_offset_sql()
            )
        else:
            select = self.select_sql()
            self.sql = f"SELECT {select} FROM {self.from_sql()}{self.combined_condition_sql()}"

    def apply_query_options(self) -> None:
        hint = self.get("query_hint")
        if hint:
            self.sql = f"{hint} {self.sql}"
        option = self.get("query_option")
        if option:
            self.sql = f"{self.sql} {option}"

    def query_expr(self, wrap: bool = False) -> Expr:
        """Render this scope's SELECT as an ``Expr`` with ``?`` placeholders."""
        self._skip_bindvar = True
        try:
            self.prepare_query_sql()
            option = self.get("query_option")
            if option:
                self.sql = f"{self.sql} {option}"
        finally:
            self._skip_bindvar = False
        sql = f"({self.sql})" if wrap else self.sql
        return Expr(sql, list(self.sql_vars))

    # ========== Execution ==========

    def exec(self) -> ExecResult | None:
        """Run ``self.sql`` as a statement, recording failures on the scope."""
        start = time.perf_counter()
        try:
            result = self.db.exec(self.sql, self.sql_vars)
        except ORMError as error:
            self.err(error)
            return None
        except Exception as error:
            self.err(self._statement_error(error))
            return None
        self.rows_affected = result.rows_affected
        self.trace(start, result.rows_affected)
        return result

    def query(self) -> Rows | None:
        """Run ``self.sql`` as a query, recording failures on the scope."""
        start = time.perf_counter()
        try:
            rows = self.db.query(self.sql, self.sql_vars)
        except ORMError as error:
            self.err(error)
            return None
        except Exception as error:
            self.err(self._statement_error(error))
            return None
        self.trace(start, len(rows))
        return rows

    def _statement_error(self, error: Exception) -> StatementError:
        logger.debug("Statement failed: %s [%s] %r", error, self.sql, self.sql_vars)
        return StatementError(error, self.sql, self.sql_vars, self.instance_get("operation"))

    def trace(self, start: float, rows: int) -> None:
        elapsed = (time.perf_counter() - start) * 1000
        logger.debug("[%.2fms] %s %r [%d rows]", elapsed, self.sql, self.sql_vars, rows)

    def row_query(self, mode: str) -> Rows | None:
        """Run the ``row_query`` pipeline and return its rows."""
        self.instance_set("row_query_result", mode)
        self.session.engine.callbacks.row_query.run(self)
        return self.instance_get("row_query_rows")

    def count(self) -> int | None:
        selects = self.search.selects
        if selects is None or not _COUNTING_RE.match(str(selects.query)):
            if self.search.group:
                if self.search.having_conditions:
                    inner = self.query_expr()
                    self.search = Search(unscoped=True).select("count(*)").table(
                        Expr(f"( {inner.sql} ) AS count_table", inner.vars)
                    )
                    self.value = None
                else:
                    self.search.select("count(*) FROM ( SELECT count(*) as name ")
                    self.search.group += " ) AS count_table"
            else:
                self.search.select("count(*)")
        self.search.ignore_order_query = True
        rows = self.row_query("row")
        if rows is None:
            return None
        first = rows.fetchone()
        return int(first[0]) if first and first[0] is not None else 0

    def pluck(self, column: str) -> list[Any] | None:
        selects = self.search.selects
        if selects is None or not _is_query_for_column(selects.query, column):
            self.search.select(column)
        rows = self.row_query("rows")
        if rows is None:
            return None
        struct = self.get_model_struct()
        f = struct.field(column.split(".")[-1]) if struct is not None else None
        python_type = f.python_type if f is not None else None
        return [self.dialect.result_value(row[0], python_type) for row in rows]

    # ========== Transactions ==========

    def begin(self) -> Scope:
        """Open a transaction for this operation unless one is already active."""
        db = self.session.db
        if isinstance(db, Pool):
            try:
                tx = db.begin(shared=True)
            except ORMError as error:
                self.err(error)
                return self
            except Exception as error:
                self.err(self._statement_error(error))
                return self
            self.instance_set("started_transaction", (tx, self.session))
            self.session = self.session._with_db(tx)
        return self

    def commit_or_rollback(self) -> Scope:
        started = self.instance_get("started_transaction")
        if started is None:
            return self
        tx, original = started
        self._instance.pop("started_transaction", None)
        try:
            if self.has_error():
                tx.rollback()
            else:
                try:
                    tx.commit()
                except Exception as error:
                    self.err(self._statement_error(error))
                    tx.rollback()
        finally:
            self.session = original
        return self

    # ========== Hooks ==========

    def call_method(self, name: str) -> None:
        """Call ``name(db)`` on the target instance(s); a raised or returned error aborts."""
        if self.has_error():
            return
        values = self.value if isinstance(self.value, list) else [self.value]
        for value in values:
            if value is None or isinstance(value, type):
                continue
            method = getattr(value, name, None)
            if not callable(method):
                continue
            try:
                result = method(self.session)
            except Exception as error:
                self.err(error)
                return
            if isinstance(result, BaseException):
                self.err(result)
                return

    # ========== Scanning ==========

    def scan_row(
        self, columns: list[str], row: Sequence[Any], target: Any, struct: ModelStruct | None
    ) -> dict[str, Any]:
        """Copy ``row`` into ``target``; return the columns no field matched."""
        extras: dict[str, Any] = {}
        if isinstance(target, dict):
            target.update(zip(columns, row))
            return extras
        used: set[str] = set()
        for column, value in zip(columns, row):
            f = struct.field(column) if struct is not None else None
            if f is None or not f.is_normal or f.name in used:
                extras[column] = value
                continue
            used.add(f.name)
            try:
                setattr(target, f.name, self.dialect.result_value(value, f.python_type))
            except (AttributeError, dataclasses.FrozenInstanceError) as error:
                self.err(UnaddressableValue(f"cannot set {f.name} on {target!r}: {error}"))
        return extras


def new_instance(model_type: type) -> Any:
    """Create an empty instance of ``model_type`` to scan a row into."""
    if model_type is dict:
        return {}
    if dataclasses.is_dataclass(model_type):
        required = {
            f.name: None
            for f in dataclasses.fields(model_type)
            if f.init
            and f.default is dataclasses.MISSING
            and f.default_factory is dataclasses.MISSING
        }
        return model_type(**required)
    try:
        return model_type()
    except TypeError:
        return object.__new__(model_type)


def _is_query_for_column(query: Any, column: str) -> bool:
    if not isinstance(query, str):
        return False
    query = query.strip()
    return (
        query == column
        or query.lower().endswith(f" as {column.lower()}")
        or query.endswith(f".{column}")
    )
