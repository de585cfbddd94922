"""Mixins for common model patterns."""

from __future__ import annotations

from datetime import datetime

from chainorm.fields import Mapped, mapped_column


class SoftDeleteMixin:
    """Mixin that adds soft delete functionality to models.

    When applied to a model, adds a `deleted_at` column. Records with
    `deleted_at != NULL` are excluded from queries, and `delete` sets the
    column instead of removing the row. Chain `unscoped()` to see deleted
    records or to delete them permanently.

    Example:
        >>> class Article(Base, SoftDeleteMixin):
        ...     id: Mapped[int] = mapped_column(primary_key=True)
        ...     title: Mapped[str]
        >>>
        >>> db.delete(article)                  # UPDATE articles SET deleted_at=...
        >>> db.find(Article).value              # deleted articles are skipped
        >>> db.unscoped().find(Article).value   # every article
        >>> db.unscoped().delete(article)       # DELETE FROM articles ...
    """

    deleted_at: Mapped[datetime | None] = mapped_column(nullable=True, index=True)

    @property
    def is_deleted(self) -> bool:
        """Check if this instance is soft-deleted."""
        return getattr(self, "deleted_at", None) is not None


class TimestampMixin:
    """Mixin that adds `created_at` and `updated_at` columns.

    Both are filled from the engine clock on create; `updated_at` is refreshed
    on every update unless the update is issued with `update_column(s)`.
    """

    created_at: Mapped[datetime | None] = mapped_column(nullable=True)
    updated_at: Mapped[datetime | None] = mapped_column(nullable=True)
