"""Tests for callback pipelines and model hooks."""

from __future__ import annotations

import pytest

from chainorm import Base, ConfigurationError, Mapped, ORMError, mapped_column
from chainorm.callbacks import KINDS, Pipeline, default_callbacks


class Product(Base):
    """Product recording the hooks it went through."""

    id: Mapped[int] = mapped_column(primary_key=True)
    name: Mapped[str]
    price: Mapped[int]
    code: Mapped[str | None] = mapped_column(nullable=True)

    def _record(self, event: str) -> None:
        self.events = getattr(self, "events", []) + [event]

    def before_save(self, db):
        self._record("before_save")

    def before_create(self, db):
        self._record("before_create")
        if self.price < 0:
            return ValueError("price must not be negative")
        self.code = f"P-{self.name}"

    def after_create(self, db):
        self._record("after_create")

    def after_save(self, db):
        self._record("after_save")

    def before_update(self, db):
        self._record("before_update")
        if self.price > 1000:
            raise ValueError("price too high")

    def after_update(self, db):
        self._record("after_update")

    def before_delete(self, db):
        self._record("before_delete")

    def after_delete(self, db):
        self._record("after_delete")

    def after_find(self, db):
        self._record("after_find")


@pytest.fixture
def tables(db):
    db.auto_migrate(Product)
    return db


class TestDefaultPipelines:
    """Test the built-in registrations."""

    def test_all_kinds_registered(self, db) -> None:
        callbacks = db.callback()
        for kind in KINDS:
            assert callbacks.get(kind).names()

    def test_create_order(self, db) -> None:
        assert db.callback().create.names() == [
            "begin_transaction",
            "before_create",
            "save_before_associations",
            "update_time_stamp",
            "assign_default_primary_key",
            "create",
            "force_reload_after_create",
            "save_after_associations",
            "after_create",
            "commit_or_rollback_transaction",
        ]

    def test_update_and_delete_check_conditions_first(self, db) -> None:
        update = db.callback().update.names()
        assert update.index("check_global_update") < update.index("begin_transaction")
        assert db.callback().delete.names()[0] == "check_global_delete"

    def test_query_order(self, db) -> None:
        assert db.callback().query.names() == ["query", "preload", "after_query"]

    def test_commit_is_cleanup(self, db) -> None:
        assert db.callback().create.get("commit_or_rollback_transaction").cleanup is True
        assert db.callback().create.get("create").cleanup is False

    def test_unknown_kind(self, db) -> None:
        with pytest.raises(ConfigurationError):
            db.callback().get("upsert")


class TestRegistry:
    """Test registering, replacing and removing steps."""

    def test_insert_before_and_after(self) -> None:
        pipeline = Pipeline("create")
        pipeline.append("a", lambda scope: None)
        pipeline.append("c", lambda scope: None)
        pipeline.insert_before("c", "b", lambda scope: None)
        pipeline.insert_after("c", "d", lambda scope: None)
        pipeline.prepend("start", lambda scope: None)

        assert pipeline.names() == ["start", "a", "b", "c", "d"]

    def test_duplicate_name(self) -> None:
        pipeline = Pipeline("create").append("a", lambda scope: None)
        with pytest.raises(ConfigurationError, match="already registered"):
            pipeline.append("a", lambda scope: None)

    def test_unknown_anchor(self) -> None:
        pipeline = Pipeline("create")
        with pytest.raises(ConfigurationError, match="not registered"):
            pipeline.insert_after("missing", "a", lambda scope: None)
        with pytest.raises(ConfigurationError):
            pipeline.remove("missing")
        with pytest.raises(ConfigurationError):
            pipeline.replace("missing", lambda scope: None)

    def test_replace_keeps_position_and_cleanup(self) -> None:
        pipeline = Pipeline("create")
        pipeline.append("a", lambda scope: None)
        pipeline.append("b", lambda scope: None, cleanup=True)
        replacement = lambda scope: None  # noqa: E731

        pipeline.replace("b", replacement)

        assert pipeline.names() == ["a", "b"]
        assert pipeline.get("b").fn is replacement
        assert pipeline.get("b").cleanup is True

    def test_clone_is_independent(self) -> None:
        callbacks = default_callbacks()
        copy = callbacks.clone()
        copy.create.remove("after_create")

        assert "after_create" in callbacks.create.names()
        assert "after_create" not in copy.create.names()

    def test_custom_step_runs(self, tables) -> None:
        seen = []
        tables.callback().create.insert_after("create", "audit", lambda scope: seen.append(scope.value.id))

        product = Product(name="lamp", price=5)
        tables.create(product)

        assert seen == [product.id]

    def test_replaced_step(self, tables) -> None:
        def refuse(scope):
            scope.err(ORMError("writes disabled"))

        tables.callback().create.replace("create", refuse)

        result = tables.create(Product(name="lamp", price=5))

        assert str(result.error) == "writes disabled"
        assert tables.model(Product).count().value == 0

    def test_removed_step(self, tables) -> None:
        tables.callback().create.remove("after_create")

        product = Product(name="lamp", price=5)
        tables.create(product)

        assert "after_create" not in product.events
        assert "before_create" in product.events

    def test_orm_error_raised_by_step_is_recorded(self, tables) -> None:
        def fail(scope):
            raise ORMError("step failed")

        tables.callback().create.insert_before("create", "fail", fail)

        result = tables.create(Product(name="lamp", price=5))

        assert str(result.error) == "step failed"

    def test_unexpected_exception_rolls_back_and_propagates(self, tables) -> None:
        def explode(scope):
            raise RuntimeError("boom")

        tables.callback().create.insert_after("create", "explode", explode)

        with pytest.raises(RuntimeError, match="boom"):
            tables.create(Product(name="lamp", price=5))

        assert tables.model(Product).count().value == 0

    def test_skip_left(self, tables) -> None:
        tables.callback().create.insert_before("create", "skip", lambda scope: scope.skip_left())

        result = tables.create(Product(name="lamp", price=5))

        assert result.error is None
        assert tables.model(Product).count().value == 0


class TestHooks:
    """Test model hook methods."""

    def test_create_hooks(self, tables) -> None:
        product = Product(name="lamp", price=5)
        tables.create(product)

        assert product.events == ["before_save", "before_create", "after_create", "after_save"]
        assert tables.first(Product).value.code == "P-lamp"

    def test_update_hooks(self, tables) -> None:
        product = Product(name="lamp", price=5)
        tables.create(product)
        product.events = []

        tables.model(product).update("price", 6)

        assert product.events == ["before_save", "before_update", "after_update", "after_save"]

    def test_update_column_skips_hooks(self, tables) -> None:
        product = Product(name="lamp", price=5)
        tables.create(product)
        product.events = []

        tables.model(product).update_column("price", 2000)

        assert product.events == []
        assert tables.first(Product).value.price == 2000

    def test_delete_hooks(self, tables) -> None:
        product = Product(name="lamp", price=5)
        tables.create(product)
        product.events = []

        tables.delete(product)

        assert product.events == ["before_delete", "after_delete"]

    def test_after_find(self, tables) -> None:
        tables.create(Product(name="lamp", price=5))
        tables.create(Product(name="desk", price=50))

        assert tables.first(Product).value.events == ["after_find"]
        products = tables.find(Product).value
        assert all(p.events == ["after_find"] for p in products)

    def test_returned_error_aborts_create(self, tables) -> None:
        product = Product(name="broken", price=-1)

        result = tables.create(product)

        assert isinstance(result.error, ValueError)
        assert product.id is None
        assert product.events == ["before_save", "before_create"]
        assert tables.model(Product).count().value == 0

    def test_raised_error_aborts_update(self, tables) -> None:
        product = Product(name="lamp", price=5)
        tables.create(product)

        result = tables.model(product).update("price", 5000)

        assert isinstance(result.error, ValueError)
        assert tables.first(Product).value.price == 5
