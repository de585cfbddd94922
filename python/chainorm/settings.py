"""Typed per-session settings consulted by callback steps."""

from __future__ import annotations

import dataclasses
from collections.abc import Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any

# Recognized keys may also be written with a "chainorm:" prefix
_PREFIX = "chainorm:"


@dataclass(frozen=True)
class Settings:
    """Recognized options plus free-form extras.

    Attributes:
        query_option: SQL appended to SELECT statements (e.g. ``FOR UPDATE``)
        query_hint: SQL prepended to SELECT statements (e.g. ``/*+ INDEX(...) */``)
        insert_option: SQL appended to INSERT statements
        update_option: SQL appended to UPDATE statements
        delete_option: SQL appended to DELETE statements
        save_associations: Master switch for cascaded association saves
        association_autoupdate: Update already-persisted related records
        association_autocreate: Create new related records
        association_save_reference: Write foreign keys and join rows
        allow_global_update: Permit update/delete without any condition
        update_column: Internal, set by ``update_column(s)`` to skip hooks and timestamps
        extras: Any other key passed to ``Session.set``
    """

    query_option: str | None = None
    query_hint: str | None = None
    insert_option: str | None = None
    update_option: str | None = None
    delete_option: str | None = None
    save_associations: bool | None = None
    association_autoupdate: bool | None = None
    association_autocreate: bool | None = None
    association_save_reference: bool | None = None
    allow_global_update: bool = False
    update_column: bool = False
    extras: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))

    def with_value(self, key: str, value: Any) -> Settings:
        """Return a copy with ``key`` set to ``value``."""
        name = _field_name(key)
        if name is not None:
            return dataclasses.replace(self, **{name: value})
        extras = dict(self.extras)
        extras[key] = value
        return dataclasses.replace(self, extras=MappingProxyType(extras))

    def get(self, key: str, default: Any = None) -> Any:
        """Return the value stored under ``key``, or ``default`` when unset."""
        name = _field_name(key)
        if name is not None:
            value = getattr(self, name)
            if value is None or (value is False and name in ("allow_global_update", "update_column")):
                return default
            return value
        return self.extras.get(key, default)


_FIELD_NAMES = frozenset(f.name for f in dataclasses.fields(Settings)) - {"extras"}


def _field_name(key: str) -> str | None:
    if key.startswith(_PREFIX):
        key = key[len(_PREFIX):]
    return key if key in _FIELD_NAMES else None
