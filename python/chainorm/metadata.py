"""Metadata cache: per-type column, primary key and association descriptors.

``describe`` builds a ``ModelStruct`` the first time a type is seen and
returns the cached value afterwards. Classes, instances and sequences of
instances all resolve to the same descriptor. Relationship kinds and foreign
keys are resolved lazily on first use, once every model has been declared.
"""

from __future__ import annotations

import dataclasses
import inspect
import logging
import re
import sys
import threading
import typing
from dataclasses import dataclass, field
from typing import Any, ClassVar

from chainorm.base import ModelMeta, unwrap_optional
from chainorm.errors import ConfigurationError, UnaddressableValue
from chainorm.fields import ColumnInfo
from chainorm.naming import pluralize, singularize, underscore
from chainorm.relationships import (
    BELONGS_TO,
    HAS_MANY,
    HAS_ONE,
    MANY_TO_MANY,
    JoinTableHandler,
    JoinTableKey,
    RelationshipInfo,
    get_model,
)

logger = logging.getLogger(__name__)

_struct_cache: dict[type, ModelStruct] = {}
_cache_lock = threading.RLock()

_INT_TYPES = (int,)
_HINT_NOISE = {"Mapped", "list", "List", "Optional", "None", "typing", "Union"}


@dataclass
class Relationship:
    """Resolved association between an owner field and its target model."""

    kind: str
    target: type
    info: RelationshipInfo
    # FK columns: on the owner for belongs-to, on the target for has-one/has-many
    foreign_field_names: list[str] = field(default_factory=list)
    foreign_db_names: list[str] = field(default_factory=list)
    # Referenced key columns: on the target for belongs-to, on the owner otherwise
    association_field_names: list[str] = field(default_factory=list)
    association_db_names: list[str] = field(default_factory=list)
    join_table_handler: JoinTableHandler | None = None

    def _flag(self, value: bool) -> bool:
        if self.info.save_associations is not None:
            return self.info.save_associations
        return value

    @property
    def autoupdate(self) -> bool:
        return self._flag(self.info.autoupdate)

    @property
    def autocreate(self) -> bool:
        return self._flag(self.info.autocreate)

    @property
    def save_reference(self) -> bool:
        return self._flag(self.info.save_reference)


@dataclass(eq=False)
class StructField:
    """One attribute of a described type."""

    name: str
    db_name: str
    python_type: Any = None
    info: ColumnInfo | None = None
    is_primary_key: bool = False
    is_normal: bool = True
    is_ignored: bool = False
    is_auto_increment: bool = False
    has_default_value: bool = False
    nullable: bool = False
    relationship_info: RelationshipInfo | None = None
    relationship: Relationship | None = None


@dataclass(eq=False)
class ModelStruct:
    """Cached description of a record type."""

    model_type: type
    fields: list[StructField]
    primary_fields: list[StructField]
    custom_table_name: str | None
    base_name: str
    _relationships_resolved: bool = False
    _by_name: dict[str, StructField] = field(default_factory=dict, repr=False)

    def __post_init__(self) -> None:
        for f in self.fields:
            self._by_name.setdefault(f.db_name, f)
        for f in self.fields:
            self._by_name[f.name] = f

    def table_name(self, singular: bool = False) -> str:
        """Return the table name, honouring an explicit ``__tablename__``."""
        if self.custom_table_name:
            return self.custom_table_name
        if singular:
            return self.base_name
        return pluralize(self.base_name)

    def field(self, name: str) -> StructField | None:
        """Look a field up by attribute name or column name."""
        return self._by_name.get(name)

    @property
    def primary_field(self) -> StructField | None:
        return self.primary_fields[0] if self.primary_fields else None

    @property
    def normal_fields(self) -> list[StructField]:
        return [f for f in self.fields if f.is_normal and not f.is_ignored]

    @property
    def relationship_fields(self) -> list[StructField]:
        """Fields holding associations, with their kinds resolved."""
        if not self._relationships_resolved:
            with _cache_lock:
                if not self._relationships_resolved:
                    _resolve_relationships(self)
                    self._relationships_resolved = True
        return [f for f in self.fields if f.relationship is not None]


def model_type_of(value: Any) -> type:
    """Return the record type of a class, an instance or a sequence of instances."""
    if isinstance(value, (list, tuple)):
        if not value:
            raise UnaddressableValue("cannot determine the model of an empty sequence, use model()")
        value = value[0]
    if isinstance(value, type):
        return value
    return type(value)


def describe(value: Any) -> ModelStruct:
    """Return the cached descriptor of ``value``'s record type.

    Example:
        >>> describe(User).table_name()
        'users'
        >>> describe([User(), User()]) is describe(User)
        True
    """
    model_type = model_type_of(value)
    struct = _struct_cache.get(model_type)
    if struct is not None:
        return struct
    with _cache_lock:
        struct = _struct_cache.get(model_type)
        if struct is None:
            struct = _build_struct(model_type)
            _struct_cache[model_type] = struct
            logger.debug("Described %s as table %s", model_type.__name__, struct.table_name())
        return struct


def _build_struct(model_type: type) -> ModelStruct:
    fields: list[StructField] = []

    if isinstance(model_type, ModelMeta):
        for name, col in model_type.__columns__.items():  # type: ignore[attr-defined]
            fields.append(_column_field(name, col))
        for name, rel in model_type.__relationships__.items():  # type: ignore[attr-defined]
            fields.append(StructField(name=name, db_name=name, is_normal=False, relationship_info=rel))
    elif dataclasses.is_dataclass(model_type):
        hints = _class_hints(model_type)
        for f in dataclasses.fields(model_type):
            fields.append(_hint_field(f.name, hints.get(f.name, f.type)))
    else:
        for name, hint in _class_hints(model_type).items():
            if name.startswith("_") or typing.get_origin(hint) is ClassVar:
                continue
            fields.append(_hint_field(name, hint))

    primary_fields = [f for f in fields if f.info is not None and f.info.primary_key]
    if not primary_fields:
        # Explicit primary_key=True wins; otherwise fall back to an integer `id`
        for f in fields:
            if f.name == "id" and f.is_normal and _is_int_type(f.python_type):
                primary_fields = [f]
                break
    for f in primary_fields:
        f.is_primary_key = True
    # Only a sole integer key is generated by the database
    if len(primary_fields) == 1:
        key = primary_fields[0]
        key.is_auto_increment = _is_int_type(key.python_type) and (
            key.info is None or key.info.autoincrement is not False
        )

    custom = getattr(model_type, "__tablename__", None)
    return ModelStruct(
        model_type=model_type,
        fields=fields,
        primary_fields=primary_fields,
        custom_table_name=custom if isinstance(custom, str) else None,
        base_name=underscore(model_type.__name__),
    )


def _column_field(name: str, col: ColumnInfo) -> StructField:
    return StructField(
        name=name,
        db_name=col.db_name or name,
        python_type=col.python_type,
        info=col,
        is_ignored=col.ignore,
        has_default_value=col.server_default is not None,
        nullable=col.nullable,
    )


def _hint_field(name: str, hint: Any) -> StructField:
    python_type, optional = unwrap_optional(hint)
    return StructField(name=name, db_name=name, python_type=python_type, nullable=optional)


def _class_hints(model_type: type) -> dict[str, Any]:
    try:
        return typing.get_type_hints(model_type)
    except (NameError, TypeError):
        hints: dict[str, Any] = {}
        for klass in reversed(model_type.__mro__):
            hints.update(inspect.get_annotations(klass))
        return hints


def _is_int_type(python_type: Any) -> bool:
    return isinstance(python_type, type) and issubclass(python_type, _INT_TYPES) and python_type is not bool


# ========== Relationship resolution ==========


def _resolve_relationships(struct: ModelStruct) -> None:
    for f in struct.fields:
        if f.relationship_info is None or f.relationship is not None:
            continue
        target = _resolve_target(struct, f)
        f.relationship = _build_relationship(struct, f, target)
        logger.debug(
            "Resolved %s.%s as %s %s",
            struct.model_type.__name__,
            f.name,
            f.relationship.kind,
            target.__name__,
        )


def _resolve_target(struct: ModelStruct, f: StructField) -> type:
    info = f.relationship_info
    assert info is not None
    if isinstance(info.target, type):
        return info.target

    name = info.target if isinstance(info.target, str) else _target_name_from_hint(info.hint)
    if name:
        module = struct.model_type.__module__
        target = get_model(name, module)
        if target is None:
            namespace = getattr(sys.modules.get(module), "__dict__", {})
            candidate = namespace.get(name)
            target = candidate if isinstance(candidate, type) else None
        if target is not None:
            return target
    raise ConfigurationError(
        f"cannot resolve the target model of {struct.model_type.__name__}.{f.name}"
    )


def _target_name_from_hint(hint: Any) -> str | None:
    if hint is None:
        return None
    if isinstance(hint, str):
        names = [n for n in re.findall(r"[A-Za-z_][A-Za-z0-9_]*", hint) if n not in _HINT_NOISE]
        return names[0] if names else None
    if isinstance(hint, typing.ForwardRef):
        return _target_name_from_hint(hint.__forward_arg__)
    args = typing.get_args(hint)
    if args:
        for arg in args:
            if arg is not type(None):
                return _target_name_from_hint(arg)
    if isinstance(hint, type):
        return hint.__name__
    return None


def _find_fields(struct: ModelStruct, names: list[str]) -> list[StructField] | None:
    found = [struct.field(name) for name in names]
    if any(f is None or not f.is_normal for f in found):
        return None
    return typing.cast(list[StructField], found)


def _build_relationship(owner: ModelStruct, f: StructField, target: type) -> Relationship:
    info = f.relationship_info
    assert info is not None
    target_struct = describe(target)
    owner_name = underscore(owner.model_type.__name__)
    where = f"{owner.model_type.__name__}.{f.name}"

    if info.is_many_to_many:
        source_refs = _key_fields(owner, info.references, where)
        dest_refs = _key_fields(target_struct, None, where)
        source_columns = info.join_foreign_key or [f"{owner_name}_{ref.db_name}" for ref in source_refs]
        if target is owner.model_type:
            dest_prefix = underscore(singularize(f.name))
        else:
            dest_prefix = underscore(target.__name__)
        dest_columns = info.association_join_foreign_key or [
            f"{dest_prefix}_{ref.db_name}" for ref in dest_refs
        ]
        handler = JoinTableHandler(
            table_name=typing.cast(str, info.secondary),
            source=owner.model_type,
            destination=target,
            source_keys=[
                JoinTableKey(col, ref.db_name, ref.name) for col, ref in zip(source_columns, source_refs)
            ],
            destination_keys=[
                JoinTableKey(col, ref.db_name, ref.name) for col, ref in zip(dest_columns, dest_refs)
            ],
        )
        return Relationship(
            kind=MANY_TO_MANY,
            target=target,
            info=info,
            foreign_db_names=source_columns,
            association_field_names=[ref.name for ref in source_refs],
            association_db_names=[ref.db_name for ref in source_refs],
            join_table_handler=handler,
        )

    # has-one / has-many: the foreign key lives on the target
    if info.uselist or info.foreign_key is not None or owner.primary_fields:
        refs = _key_fields(owner, info.references, where) if (owner.primary_fields or info.references) else []
        fk_names = info.foreign_key or [f"{owner_name}_{ref.db_name}" for ref in refs]
        fk_fields = _find_fields(target_struct, fk_names) if fk_names else None
        if fk_fields is not None and len(fk_fields) == len(refs):
            return Relationship(
                kind=HAS_MANY if info.uselist else HAS_ONE,
                target=target,
                info=info,
                foreign_field_names=[fk.name for fk in fk_fields],
                foreign_db_names=[fk.db_name for fk in fk_fields],
                association_field_names=[ref.name for ref in refs],
                association_db_names=[ref.db_name for ref in refs],
            )
        if info.uselist:
            raise ConfigurationError(
                f"{where}: no foreign key {', '.join(fk_names)} on {target.__name__}"
            )

    # belongs-to: the foreign key lives on the owner
    refs = _key_fields(target_struct, info.references, where)
    fk_names = info.foreign_key or [f"{f.name}_{ref.db_name}" for ref in refs]
    fk_fields = _find_fields(owner, fk_names)
    if fk_fields is None or len(fk_fields) != len(refs):
        raise ConfigurationError(f"{where}: cannot infer a foreign key to {target.__name__}")
    return Relationship(
        kind=BELONGS_TO,
        target=target,
        info=info,
        foreign_field_names=[fk.name for fk in fk_fields],
        foreign_db_names=[fk.db_name for fk in fk_fields],
        association_field_names=[ref.name for ref in refs],
        association_db_names=[ref.db_name for ref in refs],
    )


def _key_fields(struct: ModelStruct, names: list[str] | None, where: str) -> list[StructField]:
    if names:
        found = _find_fields(struct, names)
        if found is None:
            raise ConfigurationError(f"{where}: unknown reference column(s) {', '.join(names)}")
        return found
    if not struct.primary_fields:
        raise ConfigurationError(f"{where}: {struct.model_type.__name__} has no primary key")
    return list(struct.primary_fields)
