from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import Field

from ..errors import A2SError, ErrorCategory, category_of
from .base import BaseSchema


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class TaskStatus(str, Enum):
    succeeded = "succeeded"
    failed = "failed"
    skipped = "skipped"


class RunStatus(str, Enum):
    completed = "completed"
    aborted = "aborted"


class ErrorInfo(BaseSchema):
    category: ErrorCategory
    message: str
    task_id: Optional[str] = None

    @classmethod
    def from_exception(cls, exc: BaseException, *, task_id: Optional[str] = None) -> "ErrorInfo":
        message = exc.message if isinstance(exc, A2SError) else (str(exc) or type(exc).__name__)
        return cls(category=category_of(exc), message=message, task_id=task_id)


@dataclass(frozen=True)
class TaskResult:
    """Structured outcome of one task execution.

    ``branch`` is set by condition tasks: the Dispatcher reports the decision
    and the Flow Orchestrator acts on it.
    """

    task_id: str
    status: TaskStatus
    outputs: Dict[str, Any] = field(default_factory=dict)
    error: Optional[ErrorInfo] = None
    branch: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status != TaskStatus.failed


class TraceEntry(BaseSchema):
    task_id: str
    node: str
    status: TaskStatus
    started_at: datetime
    ended_at: datetime = Field(default_factory=_utc_now)
    error: Optional[ErrorInfo] = None
    branch: Optional[str] = None
    iteration: Optional[int] = None
    children: List["TraceEntry"] = Field(default_factory=list)


class RunError(BaseSchema):
    """Why a capability run aborted, with the trace up to the failure point."""

    category: ErrorCategory
    message: str
    task_id: Optional[str] = None
    trace: List[TraceEntry] = Field(default_factory=list)


class CapabilityResult(BaseSchema):
    run_id: str = Field(default_factory=lambda: str(uuid4()))
    capability_id: str
    capability_version: str
    status: RunStatus
    outputs: Dict[str, Any] = Field(default_factory=dict)
    trace: List[TraceEntry] = Field(default_factory=list)
    error: Optional[RunError] = None
    started_at: datetime = Field(default_factory=_utc_now)
    ended_at: datetime = Field(default_factory=_utc_now)

    @property
    def ok(self) -> bool:
        return self.status == RunStatus.completed


TraceEntry.model_rebuild()
