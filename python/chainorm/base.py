"""Declarative base for models."""

from __future__ import annotations

import dataclasses
import inspect
import sys
import typing
from typing import Any, ClassVar

from chainorm.fields import ColumnInfo, Mapped
from chainorm.relationships import RelationshipInfo, register_model


class ModelMeta(type):
    """Metaclass for models that collects column and relationship declarations.

    Columns come from ``mapped_column()`` values, from ``Mapped[T]``
    annotations without a value, and from mixins or parent classes (flattened
    into the subclass). ``relationship()`` values are collected separately.
    Table names, primary keys and relationship kinds are derived later by
    ``chainorm.metadata.describe``.
    """

    def __new__(
        mcs,
        name: str,
        bases: tuple[type, ...],
        namespace: dict[str, Any],
        **kwargs: Any,
    ) -> ModelMeta:
        cls = super().__new__(mcs, name, bases, namespace, **kwargs)

        # Skip processing for the Base class itself
        if name == "Base" and not bases:
            return cls

        columns: dict[str, ColumnInfo] = {}
        relationships: dict[str, RelationshipInfo] = {}
        # Walk the MRO base-first so subclasses override mixin declarations
        for klass in reversed(cls.__mro__):
            if klass is object or klass.__name__ == "Base" and klass.__module__ == __name__:
                continue
            own_hints = _own_hints(klass)

            for attr_name, hint in own_hints.items():
                if attr_name.startswith("_"):
                    continue
                value = klass.__dict__.get(attr_name)
                if isinstance(value, RelationshipInfo):
                    continue
                if isinstance(value, ColumnInfo):
                    # Clone so that classes sharing a mixin never share state
                    col = dataclasses.replace(value, name=attr_name)
                elif _is_mapped(hint):
                    col = ColumnInfo(name=attr_name)
                    if value is not None:
                        col.default = value
                else:
                    continue
                python_type, optional = _extract_mapped_type(hint)
                col.python_type = python_type
                col.nullable = col.nullable or optional
                columns[attr_name] = col

            for attr_name, value in klass.__dict__.items():
                if attr_name.startswith("_"):
                    continue
                if isinstance(value, ColumnInfo) and attr_name not in columns:
                    columns[attr_name] = dataclasses.replace(value, name=attr_name)
                elif isinstance(value, RelationshipInfo):
                    rel = dataclasses.replace(value, name=attr_name, hint=own_hints.get(attr_name))
                    if rel.uselist is None:
                        rel.uselist = rel.is_many_to_many or _is_list_hint(rel.hint)
                    columns.pop(attr_name, None)
                    relationships[attr_name] = rel

        cls.__columns__ = columns  # type: ignore[attr-defined]
        cls.__relationships__ = relationships  # type: ignore[attr-defined]

        # Register model for relationship resolution
        register_model(cls)

        return cls


def _own_hints(klass: type) -> dict[str, Any]:
    """Annotations declared directly on ``klass``, resolved where possible.

    Forward references that cannot be resolved yet are kept as strings; the
    metadata cache resolves relationship targets lazily.
    """
    raw = inspect.get_annotations(klass)
    module = sys.modules.get(klass.__module__)
    globalns = dict(getattr(module, "__dict__", {}))
    globalns["ClassVar"] = ClassVar
    globalns["Any"] = Any
    globalns["Mapped"] = Mapped
    globalns["ColumnInfo"] = ColumnInfo
    globalns["RelationshipInfo"] = RelationshipInfo
    localns: dict[str, Any] = {}

    try:
        resolved = typing.get_type_hints(klass, globalns=globalns, localns=localns)
    except (NameError, TypeError):
        resolved = {}

    hints: dict[str, Any] = {}
    for attr_name, hint in raw.items():
        if attr_name in resolved:
            hints[attr_name] = resolved[attr_name]
        elif isinstance(hint, str) and not attr_name.startswith("_"):
            hints[attr_name] = _resolve_hint(hint, globalns, localns)
        else:
            hints[attr_name] = hint
    return hints


def _resolve_hint(hint: str, globalns: dict[str, Any], localns: dict[str, Any]) -> Any:
    """Resolve one annotation string, or return it unchanged when a name is still undefined."""

    def carrier() -> None:
        pass

    carrier.__annotations__ = {"hint": hint}
    try:
        return typing.get_type_hints(carrier, globalns=globalns, localns=localns)["hint"]
    except (NameError, TypeError):
        return hint


def _is_mapped(hint: Any) -> bool:
    if isinstance(hint, str):
        return hint.replace(" ", "").startswith("Mapped[")
    return typing.get_origin(hint) is Mapped


def _is_list_hint(hint: Any) -> bool:
    """Check if the type hint indicates a collection."""
    if hint is None:
        return False
    if isinstance(hint, str):
        compact = hint.replace(" ", "")
        return "[list[" in compact or "[List[" in compact or compact.startswith("list[")
    if typing.get_origin(hint) is Mapped:
        args = typing.get_args(hint)
        hint = args[0] if args else None
    return typing.get_origin(hint) is list


def _extract_mapped_type(hint: Any) -> tuple[Any, bool]:
    """Extract the inner type from a ``Mapped[T]`` annotation and whether it is optional."""
    if isinstance(hint, str):
        return None, "None" in hint or "Optional[" in hint
    if typing.get_origin(hint) is Mapped:
        args = typing.get_args(hint)
        hint = args[0] if args else None
    return unwrap_optional(hint)


def unwrap_optional(hint: Any) -> tuple[Any, bool]:
    """Strip ``Optional``/``X | None`` from ``hint``."""
    args = typing.get_args(hint)
    if args and type(None) in args:
        non_none = [a for a in args if a is not type(None)]
        if len(non_none) == 1:
            return non_none[0], True
        return hint, True
    return hint, False


class Base(metaclass=ModelMeta):
    """Base class for all models.

    The table name is derived from the class name (``UserAddress`` becomes
    ``user_addresses``) unless the class sets ``__tablename__``.

    Example:
        >>> class User(Base):
        ...     id: Mapped[int] = mapped_column(primary_key=True)
        ...     name: Mapped[str] = mapped_column(max_length=100)
        ...     emails: Mapped[list["Email"]] = relationship()
    """

    __columns__: ClassVar[dict[str, ColumnInfo]]
    __relationships__: ClassVar[dict[str, RelationshipInfo]]

    def __init__(self, **kwargs: Any) -> None:
        """Initialize a model instance with the given column and relationship values."""
        for key in kwargs:
            if key not in self.__columns__ and key not in self.__relationships__:
                raise TypeError(f"Unknown column or relationship: {key}")

        for col_name, col_info in self.__columns__.items():
            if col_name in kwargs:
                setattr(self, col_name, kwargs[col_name])
            else:
                setattr(self, col_name, col_info.default_value())

        for rel_name, rel_info in self.__relationships__.items():
            if rel_name in kwargs:
                setattr(self, rel_name, kwargs[rel_name])
            else:
                setattr(self, rel_name, rel_info.empty_value())

    def __repr__(self) -> str:
        pk = "id" if "id" in self.__columns__ else None
        if pk is not None:
            return f"<{self.__class__.__name__} {pk}={getattr(self, pk)!r}>"
        return f"<{self.__class__.__name__}>"

    def to_dict(self) -> dict[str, Any]:
        """Convert the column values of this instance to a dictionary."""
        return {col_name: getattr(self, col_name) for col_name in self.__columns__}
