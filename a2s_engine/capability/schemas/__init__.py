"""Schemas of capability documents and execution results."""

from .base import BaseSchema, DocumentSchema
from .document import (
    CapabilityDocument,
    CapabilityType,
    DependencySpec,
    FailureAction,
    InputBinding,
    OutputBinding,
    ServiceSpec,
    TaskSpec,
    TaskType,
    Tier,
    ValueType,
    VariableSpec,
)
from .domain import (
    CapabilityResult,
    ErrorInfo,
    RunError,
    RunStatus,
    TaskResult,
    TaskStatus,
    TraceEntry,
)

__all__ = [
    "BaseSchema",
    "DocumentSchema",
    "CapabilityDocument",
    "CapabilityType",
    "DependencySpec",
    "FailureAction",
    "InputBinding",
    "OutputBinding",
    "ServiceSpec",
    "TaskSpec",
    "TaskType",
    "Tier",
    "ValueType",
    "VariableSpec",
    "CapabilityResult",
    "ErrorInfo",
    "RunError",
    "RunStatus",
    "TaskResult",
    "TaskStatus",
    "TraceEntry",
]
