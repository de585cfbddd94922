"""Chain state: the conditions and clauses accumulated by chained session calls.

A ``Search`` is owned by exactly one session value. Chaining copies it
(``clone``) and mutates the copy, so sibling chains never observe each other.
SQL text is produced from a ``Search`` by ``chainorm.scope.Scope``.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from typing import Any


@dataclass
class Expr:
    """A raw SQL fragment with ``?`` placeholders and its values.

    Passing an ``Expr`` as a condition argument splices its SQL at that
    position and binds its values in textual order, recursively.

    Example:
        >>> db.where("age >= (?)", expr("SELECT AVG(age) FROM users WHERE role = ?", "admin"))
    """

    sql: str
    vars: list[Any] = field(default_factory=list)


def expr(sql: str, *args: Any) -> Expr:
    """Build an ``Expr`` from SQL text and its arguments."""
    return Expr(sql, list(args))


@dataclass
class Clause:
    """One accumulated condition: a query value and its arguments."""

    query: Any
    args: tuple[Any, ...] = ()


@dataclass
class Preload:
    """A preload directive: a dotted association path and optional conditions."""

    path: str
    conditions: tuple[Any, ...] = ()


@dataclass
class Search:
    """Accumulated clauses of a chain, in call order."""

    where_conditions: list[Clause] = field(default_factory=list)
    or_conditions: list[Clause] = field(default_factory=list)
    not_conditions: list[Clause] = field(default_factory=list)
    having_conditions: list[Clause] = field(default_factory=list)
    join_conditions: list[Clause] = field(default_factory=list)
    init_attrs: list[Clause] = field(default_factory=list)
    assign_attrs: list[Clause] = field(default_factory=list)
    selects: Clause | None = None
    omits: list[str] = field(default_factory=list)
    orders: list[Any] = field(default_factory=list)
    preloads: list[Preload] = field(default_factory=list)
    offset: int | None = None
    limit: int | None = None
    group: str = ""
    table_name: Any = ""
    raw: bool = False
    unscoped: bool = False
    ignore_order_query: bool = False

    def clone(self) -> Search:
        """Return a copy whose lists can be mutated independently."""
        clone = copy.copy(self)
        for name in (
            "where_conditions",
            "or_conditions",
            "not_conditions",
            "having_conditions",
            "join_conditions",
            "init_attrs",
            "assign_attrs",
            "omits",
            "orders",
            "preloads",
        ):
            setattr(clone, name, list(getattr(self, name)))
        return clone

    # ========== Conditions ==========

    def where(self, query: Any, *args: Any) -> Search:
        self.where_conditions.append(Clause(query, args))
        return self

    def or_(self, query: Any, *args: Any) -> Search:
        self.or_conditions.append(Clause(query, args))
        return self

    def not_(self, query: Any, *args: Any) -> Search:
        self.not_conditions.append(Clause(query, args))
        return self

    def having(self, query: Any, *args: Any) -> Search:
        self.having_conditions.append(Clause(query, args))
        return self

    def joins(self, query: str, *args: Any) -> Search:
        self.join_conditions.append(Clause(query, args))
        return self

    def attrs(self, *attrs: Any) -> Search:
        self.init_attrs.extend(Clause(attr) for attr in attrs)
        return self

    def assign(self, *attrs: Any) -> Search:
        self.assign_attrs.extend(Clause(attr) for attr in attrs)
        return self

    # ========== Clauses ==========

    def select(self, query: Any, *args: Any) -> Search:
        self.selects = Clause(query, args)
        return self

    def omit(self, *columns: str) -> Search:
        self.omits = list(columns)
        return self

    def order(self, value: Any, reorder: bool = False) -> Search:
        if reorder:
            self.orders = []
        if value is not None and value != "":
            self.orders.append(value)
        return self

    def set_limit(self, limit: int | None) -> Search:
        self.limit = limit
        return self

    def set_offset(self, offset: int | None) -> Search:
        self.offset = offset
        return self

    def set_group(self, query: str) -> Search:
        self.group = query
        return self

    def table(self, name: Any) -> Search:
        self.table_name = name
        return self

    def preload(self, path: str, *conditions: Any) -> Search:
        # A later directive for the same path replaces the earlier one
        self.preloads = [p for p in self.preloads if p.path != path]
        self.preloads.append(Preload(path, conditions))
        return self

    def set_raw(self, raw: bool) -> Search:
        self.raw = raw
        return self

    def set_unscoped(self) -> Search:
        self.unscoped = True
        return self
