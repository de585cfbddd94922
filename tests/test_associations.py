"""Tests for cascaded association saves and eager loading."""

from __future__ import annotations

import pytest

from chainorm import Base, InvalidSQL, Mapped, mapped_column, relationship


class Address(Base):
    id: Mapped[int] = mapped_column(primary_key=True)
    street: Mapped[str]


class Profile(Base):
    id: Mapped[int] = mapped_column(primary_key=True)
    user_id: Mapped[int | None] = mapped_column(nullable=True)
    bio: Mapped[str]


class Email(Base):
    id: Mapped[int] = mapped_column(primary_key=True)
    user_id: Mapped[int | None] = mapped_column(nullable=True)
    email: Mapped[str]


class Language(Base):
    id: Mapped[int] = mapped_column(primary_key=True)
    name: Mapped[str]


class User(Base):
    """User with one association of every kind."""

    id: Mapped[int] = mapped_column(primary_key=True)
    name: Mapped[str] = mapped_column(max_length=100)
    billing_address_id: Mapped[int | None] = mapped_column(nullable=True)
    billing_address: Mapped[Address | None] = relationship()
    profile: Mapped[Profile | None] = relationship()
    emails: Mapped[list[Email]] = relationship()
    languages: Mapped[list[Language]] = relationship(secondary="user_languages")


class Chapter(Base):
    id: Mapped[int] = mapped_column(primary_key=True)
    book_id: Mapped[int]
    title: Mapped[str]


class Book(Base):
    id: Mapped[int] = mapped_column(primary_key=True)
    author_id: Mapped[int]
    title: Mapped[str]
    chapters: Mapped[list[Chapter]] = relationship()


class Author(Base):
    id: Mapped[int] = mapped_column(primary_key=True)
    name: Mapped[str]
    books: Mapped[list[Book]] = relationship()


class Note(Base):
    """Owner whose emails are never cascaded."""

    id: Mapped[int] = mapped_column(primary_key=True)
    emails: Mapped[list[Email]] = relationship(foreign_key="user_id", save_associations=False)


@pytest.fixture
def tables(db):
    result = db.auto_migrate(Address, Profile, Email, Language, User, Author, Book, Chapter)
    assert result.error is None
    return db


def full_user(name: str) -> User:
    return User(
        name=name,
        billing_address=Address(street=f"{name} street"),
        profile=Profile(bio=f"{name} bio"),
        emails=[Email(email=f"{name}@a.com"), Email(email=f"{name}@b.com")],
        languages=[Language(name=f"{name}-en"), Language(name=f"{name}-zh")],
    )


class TestSchema:
    """Test DDL for associations."""

    def test_join_table_created(self, tables) -> None:
        assert tables.has_table("user_languages")
        rows = tables.raw("PRAGMA table_info(user_languages)").scan([]).value
        assert [row["name"] for row in rows] == ["user_id", "language_id"]


class TestSaveAssociations:
    """Test cascading saves."""

    def test_save_graph(self, tables) -> None:
        user = full_user("jinzhu")

        result = tables.save(user)

        assert result.error is None
        assert user.id is not None
        assert user.billing_address.id is not None
        assert user.billing_address_id == user.billing_address.id
        assert user.profile.user_id == user.id
        assert all(e.id is not None and e.user_id == user.id for e in user.emails)
        assert all(lang.id is not None for lang in user.languages)
        assert tables.table("user_languages").count().value == 2

        loaded = tables.first(User, user.id).value
        assert loaded.billing_address_id == user.billing_address.id
        assert tables.model(Email).where(user_id=user.id).count().value == 2

    def test_resave_updates_without_duplicates(self, tables) -> None:
        user = full_user("jinzhu")
        tables.save(user)

        user.name = "renamed"
        user.emails[0].email = "changed@a.com"
        user.billing_address.street = "new street"
        result = tables.save(user)

        assert result.error is None
        assert tables.model(Email).count().value == 2
        assert tables.model(Address).count().value == 1
        assert tables.table("user_languages").count().value == 2
        assert tables.first(Email, user.emails[0].id).value.email == "changed@a.com"
        assert tables.first(Address).value.street == "new street"

    def test_belongs_to_existing_record(self, tables) -> None:
        address = Address(street="shared")
        tables.create(address)

        user = User(name="a", billing_address=address)
        tables.save(user)

        assert user.billing_address_id == address.id
        assert tables.model(Address).count().value == 1

    def test_added_language_appends_join_row(self, tables) -> None:
        user = full_user("jinzhu")
        tables.save(user)

        user.languages.append(Language(name="fr"))
        tables.save(user)

        assert tables.table("user_languages").count().value == 3
        assert tables.model(Language).count().value == 3

    def test_save_associations_disabled(self, tables) -> None:
        user = User(name="solo", emails=[Email(email="x@a.com")], billing_address=Address(street="s"))

        result = tables.set("save_associations", False).save(user)

        assert result.error is None
        assert user.id is not None
        assert tables.model(Email).count().value == 0
        assert tables.model(Address).count().value == 0

    def test_autocreate_disabled(self, tables) -> None:
        existing = Email(email="old@a.com")
        tables.create(existing)
        user = User(name="a", emails=[existing, Email(email="new@a.com")])

        tables.set("association_autocreate", False).save(user)

        assert tables.model(Email).count().value == 1
        assert tables.first(Email, existing.id).value.user_id == user.id

    def test_save_reference_disabled(self, tables) -> None:
        user = User(name="a", languages=[Language(name="en")])

        tables.set("association_save_reference", False).save(user)

        assert tables.model(Language).count().value == 1
        assert tables.table("user_languages").count().value == 0

    def test_relationship_flag(self, tables) -> None:
        tables.auto_migrate(Note)
        note = Note(emails=[Email(email="n@a.com")])

        assert tables.save(note).error is None
        assert tables.model(Email).count().value == 0

    def test_association_error_rolls_back_owner(self, tables) -> None:
        tables.drop_table("profiles")

        result = tables.save(full_user("broken"))

        assert result.error is not None
        assert tables.model(User).count().value == 0
        assert tables.model(Address).count().value == 0


class TestPreload:
    """Test eager loading."""

    def seed(self, db) -> list[User]:
        users = [full_user("alice"), full_user("bob"), User(name="carol")]
        for user in users:
            assert db.save(user).error is None
        return users

    def test_has_many_single_query(self, tables, statements) -> None:
        alice, bob, carol = self.seed(tables)

        users = tables.preload("emails").order("id").find(User).value

        assert len(statements('FROM "emails"')) == 1
        assert [e.email for e in users[0].emails] == ["alice@a.com", "alice@b.com"]
        assert [e.email for e in users[1].emails] == ["bob@a.com", "bob@b.com"]
        assert users[2].emails == []

    def test_has_one_and_belongs_to(self, tables) -> None:
        alice, bob, carol = self.seed(tables)

        users = tables.preload("profile").preload("billing_address").order("id").find(User).value

        assert users[0].profile.bio == "alice bio"
        assert users[1].billing_address.street == "bob street"
        assert users[2].profile is None
        assert users[2].billing_address is None

    def test_many_to_many(self, tables, statements) -> None:
        self.seed(tables)

        users = tables.preload("languages").order("id").find(User).value

        assert len(statements('INNER JOIN "user_languages"')) == 1
        assert sorted(lang.name for lang in users[0].languages) == ["alice-en", "alice-zh"]
        assert sorted(lang.name for lang in users[1].languages) == ["bob-en", "bob-zh"]
        assert users[2].languages == []

    def test_preload_conditions(self, tables) -> None:
        self.seed(tables)

        users = tables.preload("emails", "email LIKE ?", "%@b.com").order("id").find(User).value

        assert [e.email for e in users[0].emails] == ["alice@b.com"]
        assert [e.email for e in users[1].emails] == ["bob@b.com"]

    def test_preload_callable_condition(self, tables) -> None:
        self.seed(tables)

        user = tables.preload("emails", lambda db: db.order("email desc")).first(User).value

        assert [e.email for e in user.emails] == ["alice@b.com", "alice@a.com"]

    def test_preload_single_record(self, tables) -> None:
        alice, bob, carol = self.seed(tables)

        user = tables.preload("languages").first(User, bob.id).value

        assert sorted(lang.name for lang in user.languages) == ["bob-en", "bob-zh"]

    def test_nested_preload(self, tables, statements) -> None:
        for a in range(2):
            author = Author(name=f"author{a}")
            tables.create(author)
            for b in range(2):
                book = Book(author_id=author.id, title=f"book{a}{b}")
                tables.create(book)
                for c in range(3):
                    tables.create(Chapter(book_id=book.id, title=f"chapter{a}{b}{c}"))

        authors = tables.preload("books.chapters").order("id").find(Author).value

        assert len(statements("SELECT")) == 3
        assert [b.title for b in authors[1].books] == ["book10", "book11"]
        assert [c.title for c in authors[1].books[0].chapters] == [
            "chapter100",
            "chapter101",
            "chapter102",
        ]

    def test_unknown_association(self, tables) -> None:
        self.seed(tables)
        result = tables.preload("nothing").find(User)
        assert isinstance(result.error, InvalidSQL)
