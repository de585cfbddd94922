"""Tests for the metadata cache."""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime

import pytest

from chainorm import (
    Base,
    ConfigurationError,
    Mapped,
    SoftDeleteMixin,
    TimestampMixin,
    UnaddressableValue,
    describe,
    mapped_column,
    relationship,
)
from chainorm.metadata import model_type_of
from chainorm.naming import pluralize, singularize, underscore
from chainorm.relationships import BELONGS_TO, HAS_MANY, HAS_ONE, MANY_TO_MANY


class User(Base):
    """Test user model."""

    id: Mapped[int] = mapped_column(primary_key=True)
    name: Mapped[str] = mapped_column(max_length=100)
    age: Mapped[int | None] = mapped_column(nullable=True)
    note: Mapped[str | None] = mapped_column(nullable=True, ignore=True)


class UserAddress(Base):
    id: Mapped[int] = mapped_column(primary_key=True)
    street: Mapped[str]


class Custom(Base):
    __tablename__ = "my_custom"

    id: Mapped[int] = mapped_column(primary_key=True)


class Tagged(Base):
    """Both an integer `id` and an explicit primary key."""

    id: Mapped[int]
    code: Mapped[str] = mapped_column(primary_key=True)


class ImplicitKey(Base):
    id: Mapped[int]
    label: Mapped[str]


class NoKey(Base):
    name: Mapped[str]


class Article(Base, TimestampMixin, SoftDeleteMixin):
    id: Mapped[int] = mapped_column(primary_key=True)
    title: Mapped[str]


@dataclass
class Summary:
    name: str
    total: int | None = None


class Country(Base):
    id: Mapped[int] = mapped_column(primary_key=True)
    name: Mapped[str]


class Tag(Base):
    id: Mapped[int] = mapped_column(primary_key=True)
    name: Mapped[str]


class Comment(Base):
    id: Mapped[int] = mapped_column(primary_key=True)
    post_id: Mapped[int | None] = mapped_column(nullable=True)
    body: Mapped[str]


class Cover(Base):
    id: Mapped[int] = mapped_column(primary_key=True)
    post_id: Mapped[int | None] = mapped_column(nullable=True)


class Post(Base):
    id: Mapped[int] = mapped_column(primary_key=True)
    country_id: Mapped[int | None] = mapped_column(nullable=True)
    country: Mapped[Country | None] = relationship()
    cover: Mapped[Cover | None] = relationship()
    comments: Mapped[list[Comment]] = relationship()
    tags: Mapped[list[Tag]] = relationship(secondary="post_tags")


class Broken(Base):
    id: Mapped[int] = mapped_column(primary_key=True)
    comments: Mapped[list[Comment]] = relationship()


class Shelf(Base):
    """Refers to a model declared after it."""

    id: Mapped[int] = mapped_column(primary_key=True)
    label: Mapped[str | None]
    items: Mapped[list[ShelfItem]] = relationship()


class ShelfItem(Base):
    id: Mapped[int] = mapped_column(primary_key=True)
    shelf_id: Mapped[int]


class TestNaming:
    """Test name inflection helpers."""

    def test_underscore(self) -> None:
        assert underscore("User") == "user"
        assert underscore("UserAddress") == "user_address"
        assert underscore("HTTPRequest") == "http_request"

    def test_pluralize(self) -> None:
        assert pluralize("user") == "users"
        assert pluralize("user_address") == "user_addresses"
        assert pluralize("country") == "countries"
        assert pluralize("day") == "days"
        assert pluralize("box") == "boxes"

    def test_singularize(self) -> None:
        assert singularize("languages") == "language"
        assert singularize("countries") == "country"
        assert singularize("boxes") == "box"
        assert singularize("class") == "class"


class TestTableNames:
    """Test table name derivation."""

    def test_plural_snake_case(self) -> None:
        assert describe(User).table_name() == "users"
        assert describe(UserAddress).table_name() == "user_addresses"

    def test_singular(self) -> None:
        assert describe(User).table_name(singular=True) == "user"
        assert describe(UserAddress).table_name(singular=True) == "user_address"

    def test_custom_table_name_wins(self) -> None:
        assert describe(Custom).table_name() == "my_custom"
        assert describe(Custom).table_name(singular=True) == "my_custom"

    def test_singular_toggle_on_session(self, db) -> None:
        """Switching the engine to singular names leaves the cached struct alone."""
        struct = describe(User)
        assert db.new_scope(User).table_name() == "users"

        db.singular_table(True)

        assert db.new_scope(User).table_name() == "user"
        assert describe(User) is struct
        assert db.create_table(User).error is None
        assert db.has_table("user")


class TestPrimaryKeys:
    """Test primary key detection."""

    def test_explicit_primary_key(self) -> None:
        assert [f.name for f in describe(User).primary_fields] == ["id"]

    def test_explicit_key_wins_over_id(self) -> None:
        struct = describe(Tagged)
        assert [f.name for f in struct.primary_fields] == ["code"]
        assert struct.field("id").is_primary_key is False

    def test_integer_id_is_implicit_key(self) -> None:
        assert describe(ImplicitKey).primary_field.name == "id"

    def test_no_key(self) -> None:
        assert describe(NoKey).primary_fields == []
        assert describe(NoKey).primary_field is None


class TestDescribe:
    """Test descriptor construction and caching."""

    def test_class_instance_and_list_share_struct(self) -> None:
        struct = describe(User)
        assert describe(User(name="a")) is struct
        assert describe([User(name="a"), User(name="b")]) is struct

    def test_empty_list_is_unaddressable(self) -> None:
        with pytest.raises(UnaddressableValue):
            model_type_of([])

    def test_fields_in_declaration_order(self) -> None:
        names = [f.name for f in describe(User).fields]
        assert names == ["id", "name", "age", "note"]

    def test_ignored_field_is_not_a_column(self) -> None:
        struct = describe(User)
        assert struct.field("note").is_ignored is True
        assert "note" not in [f.name for f in struct.normal_fields]

    def test_mixin_fields_flattened(self) -> None:
        names = [f.name for f in describe(Article).normal_fields]
        assert {"id", "title", "created_at", "updated_at", "deleted_at"} <= set(names)

    def test_optional_hint_is_nullable(self) -> None:
        struct = describe(User)
        assert struct.field("age").nullable is True
        assert struct.field("age").python_type is int
        assert struct.field("name").nullable is False

    def test_dataclass(self) -> None:
        struct = describe(Summary)
        assert [f.name for f in struct.fields] == ["name", "total"]
        assert struct.field("total").python_type is int
        assert struct.table_name() == "summaries"

    def test_concurrent_first_describe(self) -> None:
        """Concurrent first use builds one descriptor."""

        class Fresh(Base):
            id: Mapped[int] = mapped_column(primary_key=True)
            value: Mapped[str]

        with ThreadPoolExecutor(max_workers=8) as pool:
            structs = list(pool.map(lambda _: describe(Fresh), range(32)))

        assert all(struct is structs[0] for struct in structs)


class TestRelationshipResolution:
    """Test association kind and foreign key inference."""

    def _relationship(self, name: str):
        struct = describe(Post)
        struct.relationship_fields
        return struct.field(name).relationship

    def test_belongs_to(self) -> None:
        rel = self._relationship("country")
        assert rel.kind == BELONGS_TO
        assert rel.target is Country
        assert rel.foreign_db_names == ["country_id"]
        assert rel.association_db_names == ["id"]

    def test_has_one(self) -> None:
        rel = self._relationship("cover")
        assert rel.kind == HAS_ONE
        assert rel.foreign_db_names == ["post_id"]

    def test_has_many(self) -> None:
        rel = self._relationship("comments")
        assert rel.kind == HAS_MANY
        assert rel.target is Comment
        assert rel.foreign_db_names == ["post_id"]

    def test_many_to_many(self) -> None:
        rel = self._relationship("tags")
        assert rel.kind == MANY_TO_MANY
        handler = rel.join_table_handler
        assert handler.table_name == "post_tags"
        assert [k.db_name for k in handler.source_keys] == ["post_id"]
        assert [k.db_name for k in handler.destination_keys] == ["tag_id"]

    def test_relationship_fields_are_not_columns(self) -> None:
        names = [f.name for f in describe(Post).normal_fields]
        assert names == ["id", "country_id"]

    def test_missing_foreign_key(self) -> None:
        with pytest.raises(ConfigurationError, match="broken_id"):
            describe(Broken).relationship_fields


class TestTypeHints:
    """Test annotation resolution on model classes."""

    def test_resolved_column_types(self) -> None:
        assert Shelf.__columns__["id"].python_type is int
        assert Shelf.__columns__["label"].python_type is str
        assert Shelf.__columns__["label"].nullable is True

    def test_mixin_types_resolve_in_their_own_module(self) -> None:
        deleted_at = Article.__columns__["deleted_at"]
        assert deleted_at.python_type is datetime
        assert deleted_at.nullable is True

    def test_forward_reference_kept_until_described(self) -> None:
        assert isinstance(Shelf.__relationships__["items"].hint, str)

        struct = describe(Shelf)
        struct.relationship_fields
        rel = struct.field("items").relationship

        assert rel.kind == HAS_MANY
        assert rel.target is ShelfItem
        assert rel.foreign_db_names == ["shelf_id"]
