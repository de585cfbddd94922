"""Engine and chainable session.

An ``Engine`` owns the dialect, the connection pool, the callback pipelines
and engine-wide options. A ``Session`` is an immutable handle over an engine:
every chain method returns a new session with its own copy of the chain
state, and every terminal call returns a new session carrying the outcome
(``error``, ``rows_affected``, ``value``).

Example:
    >>> db = chainorm.open("sqlite3", "app.db")
    >>> db.auto_migrate(User)
    >>> db.create(User(name="Alice", age=30))
    >>> adults = db.where("age >= ?", 18).order("name").find(User).value
    >>> result = db.where(name="Nobody").first(User)
    >>> result.record_not_found()
    True
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from chainorm import schema
from chainorm.callbacks import Callbacks, default_callbacks
from chainorm.dialects import Dialect, get_dialect
from chainorm.driver import Pool, Rows, Transaction, connect
from chainorm.errors import (
    CantStartTransaction,
    Errors,
    InvalidSQL,
    InvalidTransaction,
    ORMError,
    StatementError,
    is_record_not_found,
)
from chainorm.metadata import describe
from chainorm.query import Clause, Expr, Search
from chainorm.scope import Scope, is_blank, new_instance, strip_parens
from chainorm.settings import Settings

logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(UTC)


class Engine:
    """Shared state behind every session of one database.

    Attributes:
        dialect: SQL dialect adapter
        pool: Connection pool statements run on outside transactions
        callbacks: Pipelines run by terminal session calls
        now_func: Clock used for ``created_at``/``updated_at``/``deleted_at``
        singular: Use singular table names (``user`` instead of ``users``)
    """

    def __init__(
        self,
        dialect: Dialect,
        pool: Pool,
        callbacks: Callbacks | None = None,
        now_func: Callable[[], datetime] | None = None,
        singular: bool = False,
    ) -> None:
        self.dialect = dialect
        self.pool = pool
        self.callbacks = callbacks or default_callbacks()
        self.now_func = now_func or _utc_now
        self.singular = singular

    def close(self) -> None:
        self.pool.close()


def create_engine(
    dialect: str | Dialect,
    source: Any,
    *,
    singular_table: bool = False,
    now_func: Callable[[], datetime] | None = None,
) -> Engine:
    """Create an engine for ``source`` (a DSN, a DB-API connection or a connection factory).

    Raises:
        ConfigurationError: for an unknown dialect or an invalid source.

    Example:
        >>> engine = create_engine("sqlite3", ":memory:")
        >>> db = create_session(engine)
    """
    if isinstance(dialect, str):
        dialect = get_dialect(dialect)
    pool = connect(dialect, source)
    logger.debug("Opened %s database", dialect.name)
    return Engine(dialect, pool, now_func=now_func, singular=singular_table)


def create_session(engine: Engine) -> Session:
    return Session(engine)


def _pairs(attrs: tuple[Any, ...], kwargs: dict[str, Any]) -> Any:
    """Normalize ``update`` arguments: ``("col", v)``, a dict, a record, or keywords."""
    if len(attrs) == 1:
        value = attrs[0]
        if kwargs:
            if not isinstance(value, dict):
                raise InvalidSQL("keyword arguments can only be combined with a dict")
            return {**value, **kwargs}
        return value
    if len(attrs) % 2:
        raise InvalidSQL(f"update expects column/value pairs, got {attrs!r}")
    values = {attrs[i]: attrs[i + 1] for i in range(0, len(attrs), 2)}
    values.update(kwargs)
    return values


class Session:
    """Chainable database handle.

    Chain methods (``where``, ``order``, ``limit`` ...) never modify the
    receiver. Terminal methods run a callback pipeline and return a new
    session whose ``error``, ``rows_affected`` and ``value`` describe the
    outcome.
    """

    def __init__(
        self,
        engine: Engine,
        db: Pool | Transaction | None = None,
        search: Search | None = None,
        settings: Settings | None = None,
        value: Any = None,
        error: BaseException | None = None,
        rows_affected: int = 0,
    ) -> None:
        self.engine = engine
        self.db = db if db is not None else engine.pool
        self._search = search if search is not None else Search()
        self.settings = settings if settings is not None else Settings()
        self._value = value
        self.error = error
        self.rows_affected = rows_affected

    def __repr__(self) -> str:
        return f"<Session value={self._value!r} error={self.error!r} rows_affected={self.rows_affected}>"

    @property
    def dialect(self) -> Dialect:
        return self.engine.dialect

    @property
    def value(self) -> Any:
        return self._value

    def record_not_found(self) -> bool:
        """True when the call that produced this session matched no row."""
        return is_record_not_found(self.error)

    # ========== Copies ==========

    def _clone(self, **changes: Any) -> Session:
        state: dict[str, Any] = {
            "db": self.db,
            "search": self._search.clone(),
            "settings": self.settings,
            "value": self._value,
            "error": self.error,
        }
        state.update(changes)
        return Session(self.engine, **state)

    def _chain(self, apply: Callable[[Search], Any]) -> Session:
        clone = self._clone()
        apply(clone._search)
        return clone

    def _with_db(self, db: Pool | Transaction) -> Session:
        return self._clone(db=db)

    def _with_error(self, error: BaseException | None) -> Session:
        return self._clone(error=error)

    def _fresh(self) -> Session:
        """Same connection and settings, empty chain state."""
        return Session(self.engine, db=self.db, settings=self.settings)

    def _result(self, scope: Scope, value: Any = None) -> Session:
        return Session(
            self.engine,
            db=self.db,
            search=self._search,
            settings=self.settings,
            value=scope.value if value is None else value,
            error=scope.error,
            rows_affected=scope.rows_affected,
        )

    def new(self) -> Session:
        """A session on the same connection with no chain state and default settings."""
        return Session(self.engine, db=self.db)

    def new_scope(self, value: Any) -> Scope:
        return Scope(self, value)

    def _run(self, kind: str, value: Any, **instance: Any) -> Session:
        scope = self.new_scope(value)
        for key, item in instance.items():
            scope.instance_set(key, item)
        self.engine.callbacks.get(kind).run(scope)
        return self._result(scope)

    # ========== Chain ==========

    def where(self, query: Any = None, /, *args: Any, **kwargs: Any) -> Session:
        """Add a condition, combined with the others by ``AND``.

        Example:
            >>> db.where("name = ? AND age > ?", "alice", 20)
            >>> db.where({"name": "alice"})
            >>> db.where(name="alice")
            >>> db.where([1, 2, 3])  # primary keys
        """
        return self._chain(lambda s: _add(s.where, query, args, kwargs))

    def or_(self, query: Any = None, /, *args: Any, **kwargs: Any) -> Session:
        return self._chain(lambda s: _add(s.or_, query, args, kwargs))

    def not_(self, query: Any = None, /, *args: Any, **kwargs: Any) -> Session:
        return self._chain(lambda s: _add(s.not_, query, args, kwargs))

    def select(self, query: Any, *args: Any) -> Session:
        return self._chain(lambda s: s.select(query, *args))

    def omit(self, *columns: str) -> Session:
        return self._chain(lambda s: s.omit(*columns))

    def table(self, name: str | Expr) -> Session:
        return self._chain(lambda s: s.table(name))

    def model(self, value: Any) -> Session:
        """Name the model (class or instance) the following calls operate on."""
        return self._clone(value=value)

    def joins(self, query: str, *args: Any) -> Session:
        return self._chain(lambda s: s.joins(query, *args))

    def group(self, query: str) -> Session:
        return self._chain(lambda s: s.set_group(query))

    def having(self, query: Any, *args: Any) -> Session:
        return self._chain(lambda s: s.having(query, *args))

    def order(self, value: Any, reorder: bool = False) -> Session:
        return self._chain(lambda s: s.order(value, reorder))

    def limit(self, limit: int | None) -> Session:
        return self._chain(lambda s: s.set_limit(limit))

    def offset(self, offset: int | None) -> Session:
        return self._chain(lambda s: s.set_offset(offset))

    def preload(self, path: str, *conditions: Any) -> Session:
        """Eager-load the association at ``path`` (dotted for nesting).

        Conditions are ``where`` arguments or callables taking and returning
        a session; they narrow the last level of the path.

        Example:
            >>> db.preload("orders", "state = ?", "paid").preload("orders.items").find(User)
        """
        return self._chain(lambda s: s.preload(path, *conditions))

    def unscoped(self) -> Session:
        """Include soft-deleted rows (and hard-delete on ``delete``)."""
        return self._chain(lambda s: s.set_unscoped())

    def attrs(self, *attrs: Any, **kwargs: Any) -> Session:
        """Values used only when ``first_or_init``/``first_or_create`` finds nothing."""
        return self._chain(lambda s: s.attrs(*attrs, *([kwargs] if kwargs else [])))

    def assign(self, *attrs: Any, **kwargs: Any) -> Session:
        """Values applied by ``first_or_init``/``first_or_create`` whether found or not."""
        return self._chain(lambda s: s.assign(*attrs, *([kwargs] if kwargs else [])))

    def raw(self, sql: str, *values: Any) -> Session:
        """Use ``sql`` verbatim as the statement of the following read."""
        return self._chain(lambda s: s.set_raw(True).where(sql, *values))

    def set(self, key: str, value: Any) -> Session:
        """Return a session with setting ``key`` set (see ``Settings``)."""
        return self._clone(settings=self.settings.with_value(key, value))

    def get(self, key: str, default: Any = None) -> Any:
        return self.settings.get(key, default)

    def allow_global_update(self, enable: bool = True) -> Session:
        return self.set("allow_global_update", enable)

    # ========== Reads ==========

    def _destination(self, out: Any, single: bool) -> Any:
        if out is None:
            out = self._value
        if isinstance(out, type):
            return new_instance(out) if single else []
        if out is None:
            raise InvalidSQL("no destination given, pass a model class, instance or list")
        return out

    def _query(self, out: Any, where: tuple[Any, ...], single: bool, **instance: Any) -> Session:
        session = self.where(*where) if where else self
        model = out if isinstance(out, type) else None
        if model is not None and session._value is None:
            session = session.model(model)
        try:
            target = session._destination(out, single)
        except InvalidSQL as error:
            return self._with_error(error)
        if model is not None and isinstance(target, list):
            instance["query_destination_type"] = model
        return session._run("query", target, **instance)

    def _find_one(self, out: Any, where: tuple[Any, ...], direction: str | None) -> Session:
        session = self.limit(1)
        if direction is None:
            return session._query(out, where, True)
        return session._query(out, where, True, order_by_primary_key=direction)

    def first(self, out: Any = None, *where: Any) -> Session:
        """First record ordered by primary key; ``RecordNotFound`` when none match."""
        return self._find_one(out, where, "ASC")

    def last(self, out: Any = None, *where: Any) -> Session:
        return self._find_one(out, where, "DESC")

    def take(self, out: Any = None, *where: Any) -> Session:
        """One record in database order."""
        return self._find_one(out, where, None)

    def find(self, out: Any = None, *where: Any) -> Session:
        """All matching records.

        ``out`` may be a model class (the result is a new list), a list to
        fill, or an instance to receive the first row.
        """
        return self._query(out, where, False)

    def scan(self, dest: Any, model: Any = None) -> Session:
        """Read into an arbitrary shape: an instance, a dict, a list, or a class (list of it).

        A plain list receives one dict per row.
        """
        session = self.model(model) if model is not None else self
        scope = session.new_scope(session._value)
        if isinstance(dest, type):
            scope.instance_set("query_destination_type", dest)
            dest = []
        elif isinstance(dest, list):
            scope.instance_set("query_destination_type", dict)
        scope.instance_set("query_destination", dest)
        self.engine.callbacks.query.run(scope)
        return session._result(scope, value=dest)

    def first_or_init(self, out: Any = None, *where: Any) -> Session:
        """First match, or a new unsaved record built from the conditions and ``attrs``."""
        session = self.where(*where) if where else self
        try:
            target = session._destination(out, True)
        except InvalidSQL as error:
            return self._with_error(error)
        result = session._first_into(target)
        if result.record_not_found():
            session._initialize(target)
            return session._clone(value=target, error=None)
        if result.error is None:
            _apply_attrs(target, session._search.assign_attrs)
        return result

    def first_or_create(self, out: Any = None, *where: Any) -> Session:
        """First match, or a record created from the conditions and ``attrs``.

        ``assign`` values are written to the found record, or included in
        the created one.
        """
        session = self.where(*where) if where else self
        try:
            target = session._destination(out, True)
        except InvalidSQL as error:
            return self._with_error(error)
        result = session._first_into(target)
        if result.record_not_found():
            session._initialize(target)
            return session._run("create", target)
        if result.error is None and session._search.assign_attrs:
            values = _merge_attrs(session._search.assign_attrs)
            return session._run("update", target, update_interface=values)
        return result

    def _first_into(self, target: Any) -> Session:
        session = self if self._value is not None else self.model(type(target))
        return session._find_one(target, (), "ASC")

    def _initialize(self, target: Any) -> None:
        _apply_attrs(target, [c for c in self._search.where_conditions if _is_attr_source(c.query)])
        _apply_attrs(target, self._search.init_attrs)
        _apply_attrs(target, self._search.assign_attrs)

    def count(self) -> Session:
        """Count matching rows; the result's ``value`` is the count."""
        scope = self.new_scope(self._value)
        count = scope.count()
        return self._result(scope, value=count if count is not None else 0)

    def pluck(self, column: str, dest: list[Any] | None = None) -> Session:
        """Read one column into a list (``dest`` is cleared first)."""
        scope = self.new_scope(self._value)
        values = scope.pluck(column)
        if dest is None:
            dest = []
        dest.clear()
        dest.extend(values or [])
        return self._result(scope, value=dest)

    def row(self) -> tuple[Any, ...] | None:
        """First row of the chain's SELECT as a tuple.

        Raises:
            ORMError: if the statement fails.
        """
        return self.rows().fetchone()

    def rows(self) -> Rows:
        """Every row of the chain's SELECT.

        Raises:
            ORMError: if the statement fails.
        """
        scope = self.new_scope(self._value)
        rows = scope.row_query("rows")
        if scope.error is not None:
            raise scope.error
        return rows if rows is not None else Rows([], [])

    def scan_rows(self, rows: Rows, dest: Any) -> Session:
        """Scan from ``rows``: the next row into an instance or dict, the rest into a list or class."""
        scope = self.new_scope(self._value)
        if isinstance(dest, type) or isinstance(dest, list):
            element_type = dest if isinstance(dest, type) else dict
            out = [] if isinstance(dest, type) else dest
            struct = describe(element_type) if element_type is not dict else None
            for row in rows:
                target = new_instance(element_type)
                scope.scan_row(rows.columns, row, target, struct)
                out.append(target)
            return self._result(scope, value=out)
        row = rows.fetchone()
        if row is None:
            scope.err(InvalidSQL("no row left to scan"))
        else:
            struct = describe(dest) if not isinstance(dest, dict) else None
            scope.scan_row(rows.columns, row, dest, struct)
        return self._result(scope, value=dest)

    def query_expr(self) -> Expr:
        """The chain's SELECT as an ``Expr`` for use as a condition argument."""
        return self.new_scope(self._value).query_expr()

    def sub_query(self) -> Expr:
        """Like ``query_expr`` wrapped in parentheses.

        Example:
            >>> avg = db.table("users").select("AVG(age)").where("name LIKE ?", "a%").sub_query()
            >>> db.where("age >= ?", avg).find(User)
        """
        return self.new_scope(self._value).query_expr(wrap=True)

    # ========== Writes ==========

    def _each(self, values: list[Any], write: Callable[[Any], Session]) -> Session:
        """Run ``write`` once per element so each record succeeds or fails on its own."""
        errors: list[BaseException] = []
        rows_affected = 0
        for item in values:
            result = write(item)
            if result.error is not None:
                errors.append(result.error)
            rows_affected += result.rows_affected
        error = Errors(errors) if len(errors) > 1 else (errors[0] if errors else None)
        return self._clone(value=values, error=error, rows_affected=rows_affected)

    def create(self, value: Any) -> Session:
        """Insert ``value``; a list inserts each element in its own statement."""
        if isinstance(value, list):
            return self._each(value, self.create)
        return self._run("create", value)

    def save(self, value: Any) -> Session:
        """Insert ``value`` if its primary key is blank, otherwise update every column.

        An update that matches no row falls back to creating it. Lists are
        saved element by element.
        """
        if isinstance(value, list):
            return self._each(value, self.save)
        scope = self.new_scope(value)
        if scope.primary_key_zero():
            return self._run("create", value)
        result = self._run("update", value)
        if result.error is None and result.rows_affected == 0:
            return self.new().table(scope.table_name()).first_or_create(value)
        return result

    def update(self, *attrs: Any, **kwargs: Any) -> Session:
        """Update columns of the model (hooks and ``updated_at`` included).

        Example:
            >>> db.model(user).update("name", "hello")
            >>> db.model(user).update({"name": "hello", "age": 18})
            >>> db.model(User).where("active = ?", True).update(name="hello")
        """
        try:
            values = _pairs(attrs, kwargs)
        except InvalidSQL as error:
            return self._with_error(error)
        return self.updates(values)

    def updates(self, values: Any) -> Session:
        return self._run("update", self._value, update_interface=values)

    def update_column(self, *attrs: Any, **kwargs: Any) -> Session:
        """Like ``update`` without hooks or ``updated_at``."""
        try:
            values = _pairs(attrs, kwargs)
        except InvalidSQL as error:
            return self._with_error(error)
        return self.update_columns(values)

    def update_columns(self, values: Any) -> Session:
        return self.set("update_column", True)._run("update", self._value, update_interface=values)

    def delete(self, value: Any = None, *where: Any) -> Session:
        """Delete matching rows; soft delete for models with ``deleted_at``."""
        if isinstance(value, list):
            return self._each(value, lambda item: self.delete(item, *where))
        session = self.where(*where) if where else self
        return session._run("delete", value if value is not None else self._value)

    def exec(self, sql: str, *values: Any) -> Session:
        """Run a statement; ``?`` placeholders are bound like condition arguments."""
        scope = self.new_scope(self._value)
        scope.raw(strip_parens(scope.build_condition(Clause(sql, values), True)))
        scope.exec()
        return self._result(scope)

    # ========== Transactions ==========

    def begin(self, read_only: bool = False) -> Session:
        """Return a session bound to a new transaction."""
        if isinstance(self.db, Transaction):
            return self._with_error(CantStartTransaction())
        try:
            tx = self.db.begin(read_only)
        except ORMError as error:
            return self._with_error(error)
        except Exception as error:
            return self._with_error(StatementError(error, "BEGIN", operation="begin"))
        return self._clone(db=tx, error=None)

    def _finish(self, action: str) -> Session:
        tx = self.db
        if not isinstance(tx, Transaction):
            return self._with_error(InvalidTransaction())
        try:
            getattr(tx, action)()
        except ORMError as error:
            return self._with_error(error)
        except Exception as error:
            return self._with_error(StatementError(error, action.upper(), operation=action))
        return self._with_error(None)

    def commit(self) -> Session:
        return self._finish("commit")

    def rollback(self) -> Session:
        """Roll back; a second rollback (or one after commit) is a no-op."""
        return self._finish("rollback")

    def rollback_unless_committed(self) -> Session:
        """Roll back unless already committed, for use in ``finally`` blocks."""
        tx = self.db
        if isinstance(tx, Transaction) and tx.committed:
            return self._with_error(None)
        return self._finish("rollback")

    def transaction(
        self, fn: Callable[[Session], BaseException | None], read_only: bool = False
    ) -> BaseException | None:
        """Run ``fn`` in a transaction.

        Commits when ``fn`` returns None. Rolls back and returns the error
        when ``fn`` returns an exception; rolls back and re-raises when it
        raises.

        Example:
            >>> def transfer(tx):
            ...     result = tx.model(src).update("balance", src.balance - 10)
            ...     return result.error
            >>> err = db.transaction(transfer)
        """
        tx = self.begin(read_only)
        if tx.error is not None:
            return tx.error
        try:
            outcome = fn(tx)
        except BaseException:
            tx.rollback()
            raise
        if isinstance(outcome, BaseException):
            tx.rollback()
            return outcome
        return tx.commit().error

    # ========== Schema ==========

    def has_table(self, value: Any) -> bool:
        if isinstance(value, str):
            return schema.has_table(self.new_scope(None), value)
        return schema.has_table(self.new_scope(value))

    def _schema(self, operation: Callable[[Scope], None], values: tuple[Any, ...]) -> Session:
        session = self
        for value in values:
            scope = self.new_scope(value)
            if isinstance(value, str):
                scope.search.table(value)
            operation(scope)
            session = self._result(scope)
            if session.error is not None:
                break
        return session

    def create_table(self, *models: Any) -> Session:
        return self._schema(schema.create_table, models)

    def drop_table(self, *values: Any) -> Session:
        return self._schema(schema.drop_table, values)

    def drop_table_if_exists(self, *values: Any) -> Session:
        return self._schema(lambda scope: schema.drop_table(scope, if_exists=True), values)

    def auto_migrate(self, *models: Any) -> Session:
        """Create missing tables, columns and join tables for ``models``."""
        return self._schema(schema.auto_migrate, models)

    def singular_table(self, enable: bool) -> None:
        """Switch table naming between ``users`` (default) and ``user``."""
        self.engine.singular = enable

    # ========== Engine ==========

    def callback(self) -> Callbacks:
        return self.engine.callbacks

    def close(self) -> None:
        self.engine.close()


def _add(method: Callable[..., Any], query: Any, args: tuple[Any, ...], kwargs: dict[str, Any]) -> None:
    if query is not None:
        method(query, *args)
    if kwargs:
        method(dict(kwargs))


def _is_attr_source(value: Any) -> bool:
    """Dicts and record instances carry column values; SQL strings and key lists do not."""
    if isinstance(value, dict):
        return True
    return value is not None and not isinstance(value, (str, bytes, int, float, list, tuple, Expr, type))


def _merge_attrs(clauses: list[Clause]) -> dict[str, Any]:
    merged: dict[str, Any] = {}
    for clause in clauses:
        value = clause.query
        if isinstance(value, dict):
            merged.update(value)
        elif value is not None:
            struct = describe(value)
            for f in struct.normal_fields:
                item = getattr(value, f.name, None)
                if not is_blank(item):
                    merged[f.name] = item
    return merged


def _apply_attrs(target: Any, clauses: list[Clause]) -> None:
    if not clauses:
        return
    struct = describe(target)
    for key, value in _merge_attrs(clauses).items():
        f = struct.field(key)
        if f is not None and f.is_normal:
            setattr(target, f.name, value)
