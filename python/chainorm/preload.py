"""Eager loading of associations with one batched query per association level.

Each level collects the owners' keys, runs a single ``IN (...)`` query for
the related records (through the join table for many-to-many), and merges
the results into every owner's attribute by key. Dotted paths
(``"orders.items"``) repeat this level by level.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from chainorm.errors import InvalidSQL
from chainorm.metadata import Relationship, describe
from chainorm.relationships import BELONGS_TO, HAS_MANY, HAS_ONE, MANY_TO_MANY
from chainorm.scope import is_blank

if TYPE_CHECKING:
    from chainorm.scope import Scope
    from chainorm.session import Session

logger = logging.getLogger(__name__)

# Session setting holding a list that receives the unmatched columns of every scanned row
ROW_EXTRAS_KEY = "chainorm:row_extras"


def preload(scope: Scope) -> None:
    """Resolve every preload directive of ``scope`` against the scanned records."""
    if scope.has_error() or not scope.search.preloads:
        return
    destination = scope.instance_get("query_destination", scope.value)
    owners = destination if isinstance(destination, list) else [destination]
    owners = [o for o in owners if o is not None and not isinstance(o, (dict, type))]
    if not owners:
        return

    done: set[str] = set()
    for directive in scope.search.preloads:
        names = directive.path.split(".")
        current = owners
        for depth, name in enumerate(names):
            path = ".".join(names[: depth + 1])
            if path not in done:
                # Conditions only narrow the last level of a dotted path
                conditions = directive.conditions if depth == len(names) - 1 else ()
                _preload_field(scope, current, name, conditions)
                if scope.has_error():
                    return
                done.add(path)
            current = _collect(current, name)
            if not current:
                break


def _collect(owners: list[Any], name: str) -> list[Any]:
    values: list[Any] = []
    for owner in owners:
        value = getattr(owner, name, None)
        if isinstance(value, list):
            values.extend(value)
        elif value is not None:
            values.append(value)
    return values


def _apply_conditions(db: Session, conditions: tuple[Any, ...]) -> Session:
    rest: list[Any] = []
    for condition in conditions:
        if callable(condition) and not isinstance(condition, type):
            db = condition(db)
        else:
            rest.append(condition)
    if rest:
        db = db.where(*rest)
    return db


def _keys(records: list[Any], names: list[str]) -> list[tuple[Any, ...]]:
    """Distinct non-blank key tuples of ``records``, in first-seen order."""
    seen: dict[tuple[Any, ...], None] = {}
    for record in records:
        key = tuple(getattr(record, name, None) for name in names)
        if not any(is_blank(v) for v in key):
            seen.setdefault(key, None)
    return list(seen)


def _where_in(scope: Scope, db: Session, table: str, columns: list[str], keys: list[tuple[Any, ...]]) -> Session:
    if len(columns) == 1:
        return db.where(f"{table}.{scope.quote(columns[0])} IN (?)", [key[0] for key in keys])
    quoted = ",".join(f"{table}.{scope.quote(column)}" for column in columns)
    return db.where(f"({quoted}) IN (?)", keys)


def _preload_field(scope: Scope, owners: list[Any], name: str, conditions: tuple[Any, ...]) -> None:
    struct = describe(owners[0])
    struct.relationship_fields  # resolve association kinds
    field = struct.field(name)
    if field is None or field.relationship is None:
        scope.err(InvalidSQL(f"can't preload field {name} for {struct.model_type.__name__}"))
        return
    relationship = field.relationship
    logger.debug("Preloading %s.%s (%s) for %d owners", struct.model_type.__name__, name, relationship.kind, len(owners))

    db = _apply_conditions(scope.new_db(), conditions)
    if relationship.kind in (HAS_ONE, HAS_MANY):
        _preload_has(scope, db, owners, name, relationship)
    elif relationship.kind == BELONGS_TO:
        _preload_belongs_to(scope, db, owners, name, relationship)
    elif relationship.kind == MANY_TO_MANY:
        _preload_many_to_many(scope, db, owners, name, relationship)


def _target_table(scope: Scope, relationship: Relationship) -> str:
    return scope.new_db().new_scope(relationship.target).quoted_table_name()


def _preload_has(scope: Scope, db: Session, owners: list[Any], name: str, relationship: Relationship) -> None:
    uselist = relationship.kind == HAS_MANY
    keys = _keys(owners, relationship.association_field_names)
    if not keys:
        for owner in owners:
            setattr(owner, name, [] if uselist else None)
        return

    table = _target_table(scope, relationship)
    result = _where_in(scope, db, table, relationship.foreign_db_names, keys).find(relationship.target)
    if scope.err(result.error) is not None:
        return

    grouped: dict[tuple[Any, ...], list[Any]] = {}
    for record in result.value:
        key = tuple(getattr(record, fk) for fk in relationship.foreign_field_names)
        grouped.setdefault(key, []).append(record)

    for owner in owners:
        key = tuple(getattr(owner, ref, None) for ref in relationship.association_field_names)
        matches = grouped.get(key, [])
        setattr(owner, name, list(matches) if uselist else (matches[0] if matches else None))


def _preload_belongs_to(
    scope: Scope, db: Session, owners: list[Any], name: str, relationship: Relationship
) -> None:
    keys = _keys(owners, relationship.foreign_field_names)
    if not keys:
        for owner in owners:
            setattr(owner, name, None)
        return

    table = _target_table(scope, relationship)
    result = _where_in(scope, db, table, relationship.association_db_names, keys).find(relationship.target)
    if scope.err(result.error) is not None:
        return

    by_key: dict[tuple[Any, ...], Any] = {}
    for record in result.value:
        key = tuple(getattr(record, ref) for ref in relationship.association_field_names)
        by_key.setdefault(key, record)

    for owner in owners:
        key = tuple(getattr(owner, fk, None) for fk in relationship.foreign_field_names)
        setattr(owner, name, by_key.get(key))


def _preload_many_to_many(
    scope: Scope, db: Session, owners: list[Any], name: str, relationship: Relationship
) -> None:
    handler = relationship.join_table_handler
    assert handler is not None
    keys = _keys(owners, [key.attr for key in handler.source_keys])
    if not keys:
        for owner in owners:
            setattr(owner, name, [])
        return

    extras: list[dict[str, Any]] = []
    result = handler.join_with(db.set(ROW_EXTRAS_KEY, extras), keys).find(relationship.target)
    if scope.err(result.error) is not None:
        return

    grouped: dict[tuple[Any, ...], list[Any]] = {}
    for record, row_extras in zip(result.value, extras):
        key = tuple(row_extras.get(f"__join_{k.db_name}") for k in handler.source_keys)
        grouped.setdefault(key, []).append(record)

    for owner in owners:
        key = tuple(getattr(owner, k.attr, None) for k in handler.source_keys)
        setattr(owner, name, list(grouped.get(key, [])))
