from __future__ import annotations

"""Per-run execution context.

An ``ExecutionContext`` is owned by exactly one orchestrator run. It holds:

- the loaded capability (shared read-only across runs),
- the capability-level inputs,
- the run's ``StateStore`` view,
- the task-output table (what ``<task>.outputs.<name>`` reads),
- the append-only trace,
- the cancel scope observed at every suspension point.

Parallel branches run on ``fork``ed contexts: the fork copies the output
table and forks the store, so a branch only sees what its ancestors wrote.
``merge`` folds a finished branch back in at the join.
"""

import logging
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional, Set
from uuid import uuid4

from ..capability.errors import TaskCancelled
from ..capability.loader import LoadedCapability
from ..capability.schemas.domain import TraceEntry
from ..core.config import EngineSettings
from ..state.store import StateStore

logger = logging.getLogger(__name__)


class CancelScope:
    """Cooperative cancellation flag.

    A scope is cancelled when it, or any ancestor scope, was cancelled.
    Branches observe it before and after each suspension point.
    """

    def __init__(self, parent: Optional["CancelScope"] = None) -> None:
        self._parent = parent
        self._reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._reason is not None or (self._parent is not None and self._parent.cancelled)

    @property
    def reason(self) -> Optional[str]:
        if self._reason is not None:
            return self._reason
        return self._parent.reason if self._parent is not None else None

    def cancel(self, reason: str) -> None:
        if self._reason is None:
            self._reason = reason

    def raise_if_cancelled(self, where: str) -> None:
        if self.cancelled:
            raise TaskCancelled(f"{where} cancelled: {self.reason}")


class ExecutionContext:
    """Mutable state of one capability run."""

    def __init__(
        self,
        *,
        capability: LoadedCapability,
        inputs: Dict[str, Any],
        store: StateStore,
        settings: EngineSettings,
        run_id: Optional[str] = None,
        cancel: Optional[CancelScope] = None,
        depth: int = 0,
    ) -> None:
        self.capability = capability
        self.inputs = inputs
        self.store = store
        self.settings = settings
        self.run_id = run_id or str(uuid4())
        self.cancel = cancel or CancelScope()
        self.depth = depth
        self.outputs: Dict[str, Dict[str, Any]] = {}
        self.latest: Dict[str, Any] = {}
        self.trace: List[TraceEntry] = []
        self._loop_indices: List[int] = []
        self._recorded: List[str] = []

    @property
    def capability_domains(self) -> Set[str]:
        return set(self.capability.document.services)

    # -- task outputs ------------------------------------------------------

    def record_outputs(self, task_id: str, outputs: Dict[str, Any]) -> None:
        self.outputs[task_id] = dict(outputs)
        self.latest.update(outputs)
        self._recorded.append(task_id)

    def has_outputs(self, task_id: str) -> bool:
        return task_id in self.outputs

    # -- trace -------------------------------------------------------------

    def add_trace(self, entry: TraceEntry) -> None:
        self.trace.append(entry)

    # -- loops ---------------------------------------------------------------

    @contextmanager
    def loop_iteration(self, index: int) -> Iterator[None]:
        self._loop_indices.append(index)
        try:
            yield
        finally:
            self._loop_indices.pop()

    @property
    def loop_index(self) -> Optional[int]:
        return self._loop_indices[-1] if self._loop_indices else None

    # -- fork / join ---------------------------------------------------------

    def fork(self, cancel: CancelScope) -> "ExecutionContext":
        """Return a branch context isolated from its siblings until ``merge``."""
        child = ExecutionContext(
            capability=self.capability,
            inputs=self.inputs,
            store=self.store.fork(),
            settings=self.settings,
            run_id=self.run_id,
            cancel=cancel,
            depth=self.depth,
        )
        child.outputs = dict(self.outputs)
        child.latest = dict(self.latest)
        child._loop_indices = list(self._loop_indices)
        return child

    def merge(self, child: "ExecutionContext") -> None:
        """Fold a finished branch back into this context."""
        for task_id in child._recorded:
            self.record_outputs(task_id, child.outputs[task_id])
        self.trace.extend(child.trace)
        self.store.commit(child.store)

    def child_run(self, capability: LoadedCapability, inputs: Dict[str, Any]) -> "ExecutionContext":
        """Return a fresh context for a nested capability run."""
        return ExecutionContext(
            capability=capability,
            inputs=inputs,
            store=self.store.spawn(),
            settings=self.settings,
            cancel=CancelScope(parent=self.cancel),
            depth=self.depth + 1,
        )
