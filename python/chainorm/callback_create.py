"""Built-in steps of the ``create`` pipeline."""

from __future__ import annotations

from typing import TYPE_CHECKING

from chainorm.callback_save import (
    begin_transaction,
    commit_or_rollback_transaction,
    save_after_associations,
    save_before_associations,
)

if TYPE_CHECKING:
    from chainorm.callbacks import Pipeline
    from chainorm.scope import Scope


def _space(sql: str | None) -> str:
    return f" {sql}" if sql else ""


def before_create(scope: Scope) -> None:
    scope.call_method("before_save")
    scope.call_method("before_create")


def update_time_stamp(scope: Scope) -> None:
    now = scope.session.engine.now_func()
    for name in ("created_at", "updated_at"):
        field = scope.field_by_name(name)
        if field is not None and field.is_blank:
            field.set(now)


def assign_default_primary_key(scope: Scope) -> None:
    """Fill blank primary keys that declare a client-side default (e.g. ``uuid4``)."""
    for field in scope.primary_fields():
        info = field.struct.info
        if field.is_blank and info is not None and info.default is not None:
            field.set(info.default_value())


def create(scope: Scope) -> None:
    """Build and run the INSERT, then copy the generated key back."""
    columns: list[str] = []
    placeholders: list[str] = []
    blank_with_default: list[str] = []

    for field in scope.fields():
        struct = field.struct
        if not struct.is_normal or struct.is_ignored or not scope.changeable_field(field):
            continue
        if field.is_blank and struct.has_default_value:
            blank_with_default.append(field.db_name)
        elif not struct.is_primary_key or not field.is_blank:
            columns.append(scope.quote(field.db_name))
            placeholders.append(scope.add_to_vars(field.value))
    scope.instance_set("blank_columns_with_default_value", blank_with_default)

    dialect = scope.dialect
    table = scope.table_name()
    quoted_table = scope.quoted_table_name()
    primary = scope.primary_field()
    returning = output = ""
    if primary is not None:
        returning = dialect.last_insert_id_returning_suffix(table, primary.db_name)
        output = dialect.last_insert_id_output_interstitial(table, primary.db_name)
    option = scope.get("insert_option")

    if columns:
        scope.raw(
            f"INSERT INTO {quoted_table} ({','.join(columns)}){_space(output)} "
            f"VALUES ({','.join(placeholders)}){_space(option)}{_space(returning)}"
        )
    else:
        scope.raw(
            f"INSERT INTO {quoted_table}{_space(output)} {dialect.default_values_sql()}"
            f"{_space(option)}{_space(returning)}"
        )

    primary_fields = scope.primary_fields()
    if primary is None or not (returning or output):
        result = scope.exec()
        if result is None:
            return
        if primary_fields and primary_fields[0].is_blank and result.last_insert_id:
            field = primary_fields[0]
            scope.err(scope.set_column(field, dialect.result_value(result.last_insert_id, field.struct.python_type)))
        return

    rows = scope.query()
    if rows is None:
        return
    row = rows.fetchone()
    if row is not None and primary_fields:
        field = primary_fields[0]
        scope.err(scope.set_column(field, dialect.result_value(row[0], field.struct.python_type)))
    scope.rows_affected = 1


def force_reload_after_create(scope: Scope) -> None:
    """Read back columns the database filled from server-side defaults."""
    columns = scope.instance_get("blank_columns_with_default_value")
    if not columns:
        return
    conditions = {f.db_name: f.value for f in scope.primary_fields()}
    if not conditions:
        return
    db = scope.new_db().table(scope.table_name()).select(columns).where(conditions)
    scope.err(db.scan(scope.value).error)


def after_create(scope: Scope) -> None:
    scope.call_method("after_create")
    scope.call_method("after_save")


def register(pipeline: Pipeline) -> None:
    pipeline.append("begin_transaction", begin_transaction)
    pipeline.append("before_create", before_create)
    pipeline.append("save_before_associations", save_before_associations)
    pipeline.append("update_time_stamp", update_time_stamp)
    pipeline.append("assign_default_primary_key", assign_default_primary_key)
    pipeline.append("create", create)
    pipeline.append("force_reload_after_create", force_reload_after_create)
    pipeline.append("save_after_associations", save_after_associations)
    pipeline.append("after_create", after_create)
    pipeline.append("commit_or_rollback_transaction", commit_or_rollback_transaction, cleanup=True)
