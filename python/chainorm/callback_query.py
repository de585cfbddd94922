"""Built-in steps of the ``query`` pipeline."""

from __future__ import annotations

from typing import TYPE_CHECKING

from chainorm.errors import InvalidSQL, RecordNotFound
from chainorm.metadata import describe
from chainorm.preload import ROW_EXTRAS_KEY, preload
from chainorm.scope import new_instance

if TYPE_CHECKING:
    from chainorm.callbacks import Pipeline
    from chainorm.scope import Scope


def query(scope: Scope) -> None:
    """Run the SELECT and scan rows into the destination.

    A list destination is emptied and then filled with one new element per
    row; any other destination receives the first row, and zero rows records
    ``RecordNotFound``.
    """
    destination = scope.instance_get("query_destination", scope.value)
    is_list = isinstance(destination, list)

    element_type = None
    if is_list:
        destination.clear()
        element_type = scope.instance_get("query_destination_type") or scope.model_type()
        if element_type is None:
            scope.err(InvalidSQL("unsupported destination, use model() to name the element type"))
            return
    elif destination is None or isinstance(destination, type):
        scope.err(InvalidSQL(f"unsupported destination: {destination!r}"))
        return

    direction = scope.instance_get("order_by_primary_key")
    if direction and scope.primary_key():
        scope.search.order(f"{scope.quoted_table_name()}.{scope.quote(scope.primary_key())} {direction}")

    scope.prepare_query_sql()
    scope.apply_query_options()
    rows = scope.query()
    if rows is None:
        return

    target_type = element_type if is_list else type(destination)
    struct = describe(target_type) if target_type is not dict else None
    sink = scope.get(ROW_EXTRAS_KEY)

    count = 0
    for row in rows:
        count += 1
        target = new_instance(target_type) if is_list else destination
        extras = scope.scan_row(rows.columns, row, target, struct)
        if sink is not None:
            sink.append(extras)
        if not is_list:
            break
        destination.append(target)
    scope.rows_affected = count

    if count == 0 and not is_list:
        scope.err(RecordNotFound())


def after_query(scope: Scope) -> None:
    scope.call_method("after_find")


def register(pipeline: Pipeline) -> None:
    pipeline.append("query", query)
    pipeline.append("preload", preload)
    pipeline.append("after_query", after_query)
