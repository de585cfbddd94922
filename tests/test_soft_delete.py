"""Tests for soft delete and timestamp mixins."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

import chainorm
from chainorm import Base, Mapped, SoftDeleteMixin, TimestampMixin, describe, mapped_column


class Article(Base, TimestampMixin, SoftDeleteMixin):
    """Test model with timestamps and soft delete."""

    id: Mapped[int] = mapped_column(primary_key=True)
    title: Mapped[str] = mapped_column(max_length=200)


class RegularModel(Base):
    """Test model without soft delete."""

    id: Mapped[int] = mapped_column(primary_key=True)
    name: Mapped[str] = mapped_column(max_length=100)


class Clock:
    """Controllable clock handed to the engine."""

    def __init__(self) -> None:
        self.now = datetime(2024, 1, 1, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, minutes: int = 1) -> datetime:
        self.now += timedelta(minutes=minutes)
        return self.now


@pytest.fixture
def clock() -> Clock:
    return Clock()


@pytest.fixture
def db(tmp_path, clock):
    session = chainorm.open("sqlite3", str(tmp_path / "clock.db"), now_func=clock)
    session.auto_migrate(Article, RegularModel)
    yield session
    session.close()


class TestSoftDeleteMixinDefinition:
    """Test SoftDeleteMixin model definition."""

    def test_adds_deleted_at_column(self) -> None:
        """Mixin adds deleted_at column."""
        assert "deleted_at" in Article.__columns__
        col = Article.__columns__["deleted_at"]
        assert col.nullable is True
        assert col.index is True

    def test_is_deleted_property(self) -> None:
        article = Article(title="Test")
        assert article.is_deleted is False

        article.deleted_at = datetime.now(UTC)
        assert article.is_deleted is True

    def test_regular_model_has_no_deleted_at(self) -> None:
        assert describe(RegularModel).field("deleted_at") is None

    def test_deleted_at_index_created(self, db) -> None:
        rows = db.raw("PRAGMA index_list(articles)").scan([]).value
        assert "idx_articles_deleted_at" in [row["name"] for row in rows]


class TestSoftDelete:
    """Test soft delete behaviour."""

    def test_delete_sets_deleted_at(self, db, clock) -> None:
        article = Article(title="gone")
        db.create(article)

        result = db.delete(article)

        assert result.rows_affected == 1
        row = db.unscoped().first(Article, article.id).value
        assert row.deleted_at == clock.now

    def test_deleted_rows_are_hidden(self, db) -> None:
        kept = Article(title="kept")
        gone = Article(title="gone")
        db.create(kept)
        db.create(gone)
        db.delete(gone)

        assert [a.title for a in db.find(Article).value] == ["kept"]
        assert db.model(Article).count().value == 1
        assert db.first(Article, gone.id).record_not_found()
        assert len(db.unscoped().find(Article).value) == 2

    def test_soft_delete_statement(self, db, statements) -> None:
        article = Article(title="gone")
        db.create(article)

        db.delete(article)

        assert statements(
            'UPDATE "articles" SET "deleted_at"=? WHERE "articles"."deleted_at" IS NULL AND "articles"."id" = ?'
        )

    def test_second_delete_affects_nothing(self, db) -> None:
        article = Article(title="gone")
        db.create(article)
        db.delete(article)

        assert db.delete(article).rows_affected == 0

    def test_unscoped_delete_is_permanent(self, db) -> None:
        article = Article(title="gone")
        db.create(article)
        db.delete(article)

        result = db.unscoped().delete(article)

        assert result.rows_affected == 1
        assert db.unscoped().model(Article).count().value == 0

    def test_bulk_soft_delete(self, db) -> None:
        for title in ("a", "b", "c"):
            db.create(Article(title=title))

        result = db.delete(Article, "title <> ?", "b")

        assert result.rows_affected == 2
        assert db.model(Article).pluck("title").value == ["b"]

    def test_regular_model_hard_delete(self, db) -> None:
        row = RegularModel(name="x")
        db.create(row)

        db.delete(row)

        assert db.unscoped().model(RegularModel).count().value == 0


class TestTimestamps:
    """Test created_at/updated_at maintenance."""

    def test_create_sets_both(self, db, clock) -> None:
        article = Article(title="new")
        db.create(article)

        assert article.created_at == clock.now
        assert article.updated_at == clock.now
        loaded = db.first(Article, article.id).value
        assert loaded.created_at == clock.now

    def test_explicit_created_at_kept(self, db, clock) -> None:
        earlier = datetime(2020, 5, 5, tzinfo=UTC)
        article = Article(title="old", created_at=earlier)
        db.create(article)

        assert db.first(Article, article.id).value.created_at == earlier

    def test_update_refreshes_updated_at(self, db, clock) -> None:
        article = Article(title="new")
        db.create(article)
        created = clock.now
        later = clock.advance(5)

        db.model(article).update("title", "edited")

        loaded = db.first(Article, article.id).value
        assert loaded.updated_at == later
        assert loaded.created_at == created
        assert article.updated_at == later

    def test_save_refreshes_updated_at(self, db, clock) -> None:
        article = Article(title="new")
        db.create(article)
        later = clock.advance(5)

        article.title = "saved"
        db.save(article)

        assert db.first(Article, article.id).value.updated_at == later

    def test_update_column_keeps_updated_at(self, db, clock) -> None:
        article = Article(title="new")
        db.create(article)
        created = clock.now
        clock.advance(5)

        db.model(article).update_column("title", "quiet")

        loaded = db.first(Article, article.id).value
        assert loaded.title == "quiet"
        assert loaded.updated_at == created

    def test_bulk_update_sets_updated_at(self, db, clock) -> None:
        db.create(Article(title="a"))
        db.create(Article(title="b"))
        later = clock.advance(5)

        db.model(Article).where("title = ?", "a").update(title="z")

        rows = db.order("id").find(Article).value
        assert rows[0].updated_at == later
        assert rows[1].updated_at != later
