"""Steps shared by the create and update pipelines.

Transaction bracketing and cascaded association saves. Belongs-to targets are
saved before the owner so their keys can be copied into the owner's foreign
key columns; has-one, has-many and many-to-many targets are saved after it,
once the owner's key is known.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from chainorm.relationships import BELONGS_TO

if TYPE_CHECKING:
    from chainorm.scope import Field, Scope

logger = logging.getLogger(__name__)


def begin_transaction(scope: Scope) -> None:
    scope.begin()


def commit_or_rollback_transaction(scope: Scope) -> None:
    scope.commit_or_rollback()


def _association_flags(scope: Scope, field: Field) -> tuple[bool, bool, bool] | None:
    """Return ``(autoupdate, autocreate, save_reference)`` or None to leave ``field`` alone.

    Session settings override the flags declared on the relationship.
    """
    struct = field.struct
    relationship = struct.relationship
    if relationship is None or struct.is_ignored or field.is_blank:
        return None
    if not scope.changeable_field(field):
        return None

    autoupdate = relationship.autoupdate
    autocreate = relationship.autocreate
    save_reference = relationship.save_reference

    save_associations = scope.get("save_associations")
    if save_associations is not None:
        autoupdate = autocreate = save_reference = bool(save_associations)
    autoupdate = bool(scope.get("association_autoupdate", autoupdate))
    autocreate = bool(scope.get("association_autocreate", autocreate))
    save_reference = bool(scope.get("association_save_reference", save_reference))
    return autoupdate, autocreate, save_reference


def _save(scope: Scope, value: Any, autoupdate: bool, autocreate: bool) -> None:
    db = scope.new_db()
    if db.new_scope(value).primary_key_zero():
        if autocreate:
            scope.err(db.save(value).error)
    elif autoupdate:
        scope.err(db.save(value).error)


def save_before_associations(scope: Scope) -> None:
    for field in scope.fields():
        flags = _association_flags(scope, field)
        if flags is None:
            continue
        relationship = field.struct.relationship
        if relationship is None or relationship.kind != BELONGS_TO:
            continue
        autoupdate, autocreate, save_reference = flags
        value = field.value
        _save(scope, value, autoupdate, autocreate)
        if save_reference:
            for foreign, referenced in zip(
                relationship.foreign_field_names, relationship.association_field_names
            ):
                scope.err(scope.set_column(foreign, getattr(value, referenced)))


def save_after_associations(scope: Scope) -> None:
    owner = scope.value
    for field in scope.fields():
        flags = _association_flags(scope, field)
        if flags is None:
            continue
        relationship = field.struct.relationship
        if relationship is None or relationship.kind == BELONGS_TO:
            continue
        autoupdate, autocreate, save_reference = flags
        handler = relationship.join_table_handler
        values = field.value if isinstance(field.value, list) else [field.value]
        for value in values:
            if save_reference and handler is None:
                for foreign, referenced in zip(
                    relationship.foreign_field_names, relationship.association_field_names
                ):
                    setattr(value, foreign, getattr(owner, referenced))
            _save(scope, value, autoupdate, autocreate)
            if handler is not None and save_reference:
                db = scope.new_db()
                if not db.new_scope(value).primary_key_zero():
                    scope.err(handler.add(db, owner, value))
        if scope.has_error():
            logger.debug("Saving %s.%s failed: %s", type(owner).__name__, field.name, scope.error)
            return
