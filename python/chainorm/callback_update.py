"""Built-in steps of the ``update`` pipeline."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from chainorm.callback_save import (
    begin_transaction,
    commit_or_rollback_transaction,
    save_after_associations,
    save_before_associations,
)
from chainorm.errors import MissingWhereClause
from chainorm.metadata import describe
from chainorm.query import Expr
from chainorm.scope import is_blank

if TYPE_CHECKING:
    from chainorm.callbacks import Pipeline
    from chainorm.scope import Scope


def _space(sql: str | None) -> str:
    return f" {sql}" if sql else ""


def _to_map(scope: Scope, value: Any) -> dict[str, Any]:
    """Normalize an update argument (dict or record instance) to ``{column: value}``."""
    if isinstance(value, dict):
        struct = scope.get_model_struct()
        attrs: dict[str, Any] = {}
        for key, item in value.items():
            field = struct.field(key) if struct is not None else None
            attrs[field.db_name if field is not None and field.is_normal else key] = item
        return attrs
    struct = describe(value)
    return {
        f.db_name: getattr(value, f.name)
        for f in struct.normal_fields
        if not is_blank(getattr(value, f.name, None))
    }


def assign_updating_attributes(scope: Scope) -> None:
    """Turn the values passed to ``update``/``updates`` into pending column assignments.

    When the target is a record instance the values are also set on it. With
    nothing left to write the rest of the pipeline is skipped.
    """
    values = scope.instance_get("update_interface")
    if values is None:
        return
    attrs = _to_map(scope, values)

    if scope.fields():
        results: dict[str, Any] = {}
        for key, value in attrs.items():
            field = scope.field_by_name(key)
            if field is None or not scope.changeable_field(field):
                continue
            struct = field.struct
            if not struct.is_normal or struct.is_ignored:
                continue
            if not isinstance(value, Expr):
                field.set(value)
            results[struct.db_name] = value
        attrs = results

    if attrs:
        scope.instance_set("update_attrs", attrs)
    else:
        scope.skip_left()


def check_global_update(scope: Scope) -> None:
    if not scope.get("allow_global_update") and not scope.has_conditions():
        scope.err(MissingWhereClause())


def before_update(scope: Scope) -> None:
    if not scope.get("update_column"):
        scope.call_method("before_save")
        scope.call_method("before_update")


def update_time_stamp(scope: Scope) -> None:
    if scope.get("update_column") or not scope.has_column("updated_at"):
        return
    now = scope.session.engine.now_func()
    field = scope.field_by_name("updated_at")
    if field is not None:
        scope.set_column(field, now)
        return
    attrs = scope.instance_get("update_attrs")
    struct = scope.get_model_struct()
    if attrs is not None and struct is not None:
        updated_at = struct.field("updated_at")
        if updated_at is not None:
            attrs[updated_at.db_name] = now


def update(scope: Scope) -> None:
    """Build and run the UPDATE; SET values are bound before WHERE values."""
    assignments: list[str] = []
    attrs = scope.instance_get("update_attrs")
    if attrs is not None:
        for column in sorted(attrs):
            assignments.append(f"{scope.quote(column)} = {scope.add_to_vars(attrs[column])}")
    else:
        for field in scope.fields():
            struct = field.struct
            if not scope.changeable_field(field) or struct.is_primary_key:
                continue
            if not struct.is_normal or struct.is_ignored:
                continue
            if struct.name == "created_at" and field.is_blank:
                continue
            assignments.append(f"{scope.quote(field.db_name)} = {scope.add_to_vars(field.value)}")

    if not assignments:
        return
    scope.raw(
        f"UPDATE {scope.quoted_table_name()} SET {', '.join(assignments)}"
        f"{scope.combined_condition_sql()}{_space(scope.get('update_option'))}"
    )
    scope.exec()


def after_update(scope: Scope) -> None:
    if not scope.get("update_column"):
        scope.call_method("after_update")
        scope.call_method("after_save")


def register(pipeline: Pipeline) -> None:
    pipeline.append("assign_updating_attributes", assign_updating_attributes)
    pipeline.append("check_global_update", check_global_update)
    pipeline.append("begin_transaction", begin_transaction)
    pipeline.append("before_update", before_update)
    pipeline.append("save_before_associations", save_before_associations)
    pipeline.append("update_time_stamp", update_time_stamp)
    pipeline.append("update", update)
    pipeline.append("save_after_associations", save_after_associations)
    pipeline.append("after_update", after_update)
    pipeline.append("commit_or_rollback_transaction", commit_or_rollback_transaction, cleanup=True)
