"""Built-in steps of the ``delete`` pipeline."""

from __future__ import annotations

from typing import TYPE_CHECKING

from chainorm.callback_save import begin_transaction, commit_or_rollback_transaction
from chainorm.errors import MissingWhereClause

if TYPE_CHECKING:
    from chainorm.callbacks import Pipeline
    from chainorm.scope import Scope


def check_global_delete(scope: Scope) -> None:
    if not scope.get("allow_global_update") and not scope.has_conditions():
        scope.err(MissingWhereClause())


def before_delete(scope: Scope) -> None:
    scope.call_method("before_delete")


def delete(scope: Scope) -> None:
    """Soft delete (set ``deleted_at``) when the model has the column, else DELETE."""
    option = scope.get("delete_option")
    suffix = f" {option}" if option else ""
    struct = scope.get_model_struct()
    deleted_at = struct.field("deleted_at") if struct is not None else None

    if not scope.search.unscoped and deleted_at is not None and deleted_at.is_normal:
        now = scope.session.engine.now_func()
        scope.raw(
            f"UPDATE {scope.quoted_table_name()} SET {scope.quote(deleted_at.db_name)}="
            f"{scope.add_to_vars(now)}{scope.combined_condition_sql()}{suffix}"
        )
    else:
        scope.raw(f"DELETE FROM {scope.quoted_table_name()}{scope.combined_condition_sql()}{suffix}")
    scope.exec()


def after_delete(scope: Scope) -> None:
    scope.call_method("after_delete")


def register(pipeline: Pipeline) -> None:
    pipeline.append("check_global_delete", check_global_delete)
    pipeline.append("begin_transaction", begin_transaction)
    pipeline.append("before_delete", before_delete)
    pipeline.append("delete", delete)
    pipeline.append("after_delete", after_delete)
    pipeline.append("commit_or_rollback_transaction", commit_or_rollback_transaction, cleanup=True)
