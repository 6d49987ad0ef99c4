"""Per-task state machine.

``PENDING -> RESOLVING_INPUTS -> RUNNING -> {SUCCEEDED, FAILED}``, plus
``RESOLVING_INPUTS -> FAILED`` (an input did not resolve, so the task body is
never invoked) and ``PENDING -> SKIPPED`` (a guard was false).

The machine fails closed: any transition missing from the table raises, so
no task can re-enter ``RUNNING`` after reaching a terminal state.
"""

from __future__ import annotations

from enum import Enum
from typing import Dict, FrozenSet, List, Tuple

from ..capability.errors import StateError


class TaskState(str, Enum):
    PENDING = "PENDING"
    RESOLVING_INPUTS = "RESOLVING_INPUTS"
    RUNNING = "RUNNING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"


_ALLOWED: FrozenSet[Tuple[TaskState, TaskState]] = frozenset(
    {
        (TaskState.PENDING, TaskState.RESOLVING_INPUTS),
        (TaskState.PENDING, TaskState.SKIPPED),
        (TaskState.PENDING, TaskState.FAILED),
        (TaskState.RESOLVING_INPUTS, TaskState.RUNNING),
        (TaskState.RESOLVING_INPUTS, TaskState.FAILED),
        (TaskState.RUNNING, TaskState.SUCCEEDED),
        (TaskState.RUNNING, TaskState.FAILED),
    }
)

TERMINAL: FrozenSet[TaskState] = frozenset({TaskState.SUCCEEDED, TaskState.FAILED, TaskState.SKIPPED})


class IllegalTransition(StateError):
    pass


class TaskStateMachine:
    """Tracks one task execution; ``history`` lists every state entered."""

    def __init__(self, task_id: str) -> None:
        self.task_id = task_id
        self.state = TaskState.PENDING
        self.history: List[TaskState] = [TaskState.PENDING]

    @property
    def terminal(self) -> bool:
        return self.state in TERMINAL

    def advance(self, target: TaskState) -> None:
        if (self.state, target) not in _ALLOWED:
            raise IllegalTransition(f"task {self.task_id}: illegal transition {self.state.value} -> {target.value}")
        self.state = target
        self.history.append(target)

    def as_dict(self) -> Dict[str, object]:
        return {"task_id": self.task_id, "state": self.state.value, "history": [s.value for s in self.history]}
