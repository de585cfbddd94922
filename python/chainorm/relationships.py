"""Relationship definitions for models."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from chainorm.session import Session


# Global model registry - maps qualified and plain class names to model classes
_model_registry: dict[str, type] = {}


def register_model(model_cls: type) -> None:
    """Register a model class for relationship resolution."""
    _model_registry[f"{model_cls.__module__}.{model_cls.__qualname__}"] = model_cls
    _model_registry[model_cls.__name__] = model_cls


def get_model(name: str, module: str | None = None) -> type | None:
    """Get a model class by name, preferring one declared in ``module``."""
    if module is not None:
        found = _model_registry.get(f"{module}.{name}")
        if found is not None:
            return found
    return _model_registry.get(name)


BELONGS_TO = "belongs_to"
HAS_ONE = "has_one"
HAS_MANY = "has_many"
MANY_TO_MANY = "many_to_many"


@dataclass
class RelationshipInfo:
    """Stores the declared options of a relationship between models."""

    target: str | type | None = None
    foreign_key: list[str] | None = None
    references: list[str] | None = None
    secondary: str | None = None  # Join table name for many-to-many relationships
    join_foreign_key: list[str] | None = None
    association_join_foreign_key: list[str] | None = None
    autoupdate: bool = True
    autocreate: bool = True
    save_reference: bool = True
    save_associations: bool | None = None
    uselist: bool | None = None

    # Filled in by the model metaclass
    name: str | None = None
    hint: Any = field(default=None, repr=False)

    @property
    def is_many_to_many(self) -> bool:
        """Check if this is a many-to-many relationship."""
        return self.secondary is not None

    def empty_value(self) -> Any:
        """Value an unloaded relationship attribute starts with."""
        return [] if self.uselist else None


def _as_list(value: str | list[str] | None) -> list[str] | None:
    if value is None:
        return None
    if isinstance(value, str):
        return [part.strip() for part in value.split(",") if part.strip()]
    return list(value)


def relationship(
    target: str | type | None = None,
    /,
    *,
    foreign_key: str | list[str] | None = None,
    references: str | list[str] | None = None,
    secondary: str | None = None,
    join_foreign_key: str | list[str] | None = None,
    association_join_foreign_key: str | list[str] | None = None,
    autoupdate: bool = True,
    autocreate: bool = True,
    save_reference: bool = True,
    save_associations: bool | None = None,
    uselist: bool | None = None,
) -> Any:
    """Define a relationship between models.

    The kind is inferred when the relationship is first used: a list with
    ``secondary`` is many-to-many, any other list is has-many, and a single
    value is has-one when the target holds ``<owner>_id`` and belongs-to when
    the owner holds ``<attribute>_id``.

    Args:
        target: Related model class or class name; defaults to the ``Mapped`` hint
        foreign_key: Foreign key column(s), on the target for has-one/has-many,
            on the owner for belongs-to
        references: Referenced column(s), defaults to the primary key
        secondary: Join table name for many-to-many relationships
        join_foreign_key: Join table column(s) pointing at the owner
        association_join_foreign_key: Join table column(s) pointing at the target
        autoupdate: Update already-persisted related records on save
        autocreate: Create new related records on save
        save_reference: Write foreign keys / join rows on save
        save_associations: Override all three flags at once
        uselist: Force collection (True) or single value (False)

    Returns:
        A RelationshipInfo descriptor

    Example:
        >>> class User(Base):
        ...     emails: Mapped[list["Email"]] = relationship()
        ...     languages: Mapped[list["Language"]] = relationship(secondary="user_languages")
        ...
        >>> class Email(Base):
        ...     user_id: Mapped[int]
    """
    return RelationshipInfo(
        target=target,
        foreign_key=_as_list(foreign_key),
        references=_as_list(references),
        secondary=secondary,
        join_foreign_key=_as_list(join_foreign_key),
        association_join_foreign_key=_as_list(association_join_foreign_key),
        autoupdate=autoupdate,
        autocreate=autocreate,
        save_reference=save_reference,
        save_associations=save_associations,
        uselist=uselist,
    )


@dataclass
class JoinTableKey:
    """One join-table column and the model column it mirrors."""

    db_name: str
    association_db_name: str
    attr: str


@dataclass
class JoinTableHandler:
    """Reads and writes the rows of a many-to-many join table."""

    table_name: str
    source: type
    destination: type
    source_keys: list[JoinTableKey]
    destination_keys: list[JoinTableKey]

    def add(self, session: Session, source: Any, destination: Any) -> BaseException | None:
        """Insert the (source, destination) pair unless it already exists."""
        scope = session.new_scope(source)
        quoted_table = scope.quote(self.table_name)
        columns: list[str] = []
        values: list[Any] = []
        for key in self.source_keys:
            columns.append(key.db_name)
            values.append(getattr(source, key.attr))
        for key in self.destination_keys:
            columns.append(key.db_name)
            values.append(getattr(destination, key.attr))

        placeholders = ",".join("?" for _ in columns)
        conditions = " AND ".join(f"{scope.quote(col)} = ?" for col in columns)
        sql = (
            f"INSERT INTO {quoted_table} ({','.join(scope.quote(col) for col in columns)}) "
            f"SELECT {placeholders} {scope.dialect.select_from_dummy_table()} "
            f"WHERE NOT EXISTS (SELECT * FROM {quoted_table} WHERE {conditions})"
        )
        return session.exec(sql, *values, *values).error

    def join_with(self, session: Session, source_values: list[tuple[Any, ...]]) -> Session:
        """Narrow ``session`` (querying the destination) to rows joined to ``source_values``.

        The join-table source columns are selected as ``__join_<column>`` so
        rows can be grouped by owner afterwards.
        """
        scope = session.new_scope(None)
        quoted_table = scope.quote(self.table_name)
        destination_table = scope.quote(session.new_scope(self.destination).table_name())

        on = " AND ".join(
            f"{quoted_table}.{scope.quote(key.db_name)} = "
            f"{destination_table}.{scope.quote(key.association_db_name)}"
            for key in self.destination_keys
        )
        selects = [f"{destination_table}.*"] + [
            f"{quoted_table}.{scope.quote(key.db_name)} AS {scope.quote('__join_' + key.db_name)}"
            for key in self.source_keys
        ]
        session = session.select(", ".join(selects)).joins(f"INNER JOIN {quoted_table} ON {on}")

        if len(self.source_keys) == 1:
            key = self.source_keys[0]
            return session.where(
                f"{quoted_table}.{scope.quote(key.db_name)} IN (?)",
                [values[0] for values in source_values],
            )
        columns = ",".join(f"{quoted_table}.{scope.quote(key.db_name)}" for key in self.source_keys)
        tuples = ",".join("(" + ",".join("?" for _ in self.source_keys) + ")" for _ in source_values)
        flat = [value for values in source_values for value in values]
        return session.where(f"({columns}) IN ({tuples})", *flat)
