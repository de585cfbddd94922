"""Callback pipelines: named, ordered steps run against a ``Scope``.

Each operation kind (``create``, ``query``, ``update``, ``delete`` and
``row_query``) has one ``Pipeline``. Steps run in order; once the scope holds
an error (or asked to skip the rest) only cleanup steps still run.

Example:
    >>> def audit(scope):
    ...     logger.info("created %r", scope.value)
    >>> db.callback().create.insert_after("create", "audit", audit)
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING

from chainorm import (
    callback_create,
    callback_delete,
    callback_query,
    callback_row_query,
    callback_update,
)
from chainorm.errors import ConfigurationError, ORMError

if TYPE_CHECKING:
    from chainorm.scope import Scope

logger = logging.getLogger(__name__)

StepFn = Callable[["Scope"], None]

KINDS = ("create", "query", "update", "delete", "row_query")


@dataclass(frozen=True)
class Step:
    """One named pipeline step.

    Attributes:
        name: Unique name within its pipeline
        fn: Called with the operation's scope
        cleanup: Run even after an error was recorded (commit/rollback)
    """

    name: str
    fn: StepFn
    cleanup: bool = False


class Pipeline:
    """An ordered list of steps for one operation kind."""

    def __init__(self, kind: str, steps: list[Step] | None = None) -> None:
        self.kind = kind
        self._steps: list[Step] = list(steps or [])
        self._lock = threading.Lock()

    def _index(self, name: str) -> int:
        for index, step in enumerate(self._steps):
            if step.name == name:
                return index
        raise ConfigurationError(f"{self.kind} callback {name!r} is not registered")

    def _insert(self, index: int, step: Step) -> Pipeline:
        with self._lock:
            if any(s.name == step.name for s in self._steps):
                raise ConfigurationError(f"{self.kind} callback {step.name!r} is already registered")
            self._steps.insert(index, step)
        logger.debug("Registered %s callback %s", self.kind, step.name)
        return self

    # ========== Registration ==========

    def append(self, name: str, fn: StepFn, cleanup: bool = False) -> Pipeline:
        return self._insert(len(self._steps), Step(name, fn, cleanup))

    def prepend(self, name: str, fn: StepFn, cleanup: bool = False) -> Pipeline:
        return self._insert(0, Step(name, fn, cleanup))

    def insert_before(self, anchor: str, name: str, fn: StepFn, cleanup: bool = False) -> Pipeline:
        return self._insert(self._index(anchor), Step(name, fn, cleanup))

    def insert_after(self, anchor: str, name: str, fn: StepFn, cleanup: bool = False) -> Pipeline:
        return self._insert(self._index(anchor) + 1, Step(name, fn, cleanup))

    def replace(self, name: str, fn: StepFn) -> Pipeline:
        """Swap the behavior of step ``name``, keeping its position and cleanup flag."""
        with self._lock:
            index = self._index(name)
            self._steps[index] = Step(name, fn, self._steps[index].cleanup)
        logger.debug("Replaced %s callback %s", self.kind, name)
        return self

    def remove(self, name: str) -> Pipeline:
        with self._lock:
            del self._steps[self._index(name)]
        logger.debug("Removed %s callback %s", self.kind, name)
        return self

    def get(self, name: str) -> Step | None:
        for step in self._steps:
            if step.name == name:
                return step
        return None

    def names(self) -> list[str]:
        return [step.name for step in self._steps]

    def clone(self) -> Pipeline:
        with self._lock:
            return Pipeline(self.kind, self._steps)

    # ========== Execution ==========

    def run(self, scope: Scope) -> Scope:
        """Run every step against ``scope``.

        ``ORMError`` raised by a step is recorded on the scope like any other
        failure. Any other exception is recorded, the remaining cleanup steps
        run, and the exception propagates.
        """
        with self._lock:
            steps = list(self._steps)
        scope.instance_set("operation", self.kind)
        for index, step in enumerate(steps):
            if not step.cleanup and (scope.has_error() or scope.skipped):
                continue
            try:
                step.fn(scope)
            except ORMError as error:
                scope.err(error)
            except Exception as error:
                scope.err(error)
                for later in steps[index + 1:]:
                    if later.cleanup:
                        later.fn(scope)
                raise
        return scope


class Callbacks:
    """The pipelines of one engine."""

    def __init__(self, pipelines: dict[str, Pipeline] | None = None) -> None:
        pipelines = pipelines or {}
        self.create = pipelines.get("create") or Pipeline("create")
        self.query = pipelines.get("query") or Pipeline("query")
        self.update = pipelines.get("update") or Pipeline("update")
        self.delete = pipelines.get("delete") or Pipeline("delete")
        self.row_query = pipelines.get("row_query") or Pipeline("row_query")

    def get(self, kind: str) -> Pipeline:
        if kind not in KINDS:
            raise ConfigurationError(f"unknown callback kind {kind!r}")
        return getattr(self, kind)

    def clone(self) -> Callbacks:
        return Callbacks({kind: self.get(kind).clone() for kind in KINDS})


def default_callbacks() -> Callbacks:
    """Build the pipelines with the built-in steps registered."""
    callbacks = Callbacks()
    callback_create.register(callbacks.create)
    callback_query.register(callbacks.query)
    callback_update.register(callbacks.update)
    callback_delete.register(callbacks.delete)
    callback_row_query.register(callbacks.row_query)
    return callbacks
