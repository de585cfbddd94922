"""Built-in step of the ``row_query`` pipeline (``row``, ``rows``, ``count``, ``pluck``)."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from chainorm.callbacks import Pipeline
    from chainorm.scope import Scope


def row_query(scope: Scope) -> None:
    if scope.instance_get("row_query_result") is None:
        return
    scope.prepare_query_sql()
    scope.apply_query_options()
    scope.instance_set("row_query_rows", scope.query())


def register(pipeline: Pipeline) -> None:
    pipeline.append("row_query", row_query)
