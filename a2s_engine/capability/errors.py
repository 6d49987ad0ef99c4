from __future__ import annotations

"""Error taxonomy of the capability execution engine.

Every error raised by the engine derives from ``A2SError``. The hierarchy
mirrors how far an error is allowed to travel:

- ``LoadError`` (``IntegrityError``, ``SchemaError``): fatal at load time;
  nothing is partially loaded.
- ``StateError`` (``NotFound``, ``AccessDenied``, ``TrustDenied``,
  ``ValidationError``): raised by the State Store; fatal to the calling
  task and never downgraded to one another.
- ``ResolutionError``, ``TaskTimeoutError``, ``InvocationError``: task-level
  failures handled by the task's ``on_failure`` policy.
- ``AbortError``: propagated termination of a whole capability run.

Each error exposes a ``category`` string. Categories are what ``try/catch``
flow nodes match against.
"""

from enum import Enum
from typing import Any, Dict, List, Optional


class ErrorCategory(str, Enum):
    INTEGRITY = "INTEGRITY"
    SCHEMA = "SCHEMA"
    NOT_FOUND = "NOT_FOUND"
    ACCESS_DENIED = "ACCESS_DENIED"
    TRUST_DENIED = "TRUST_DENIED"
    VALIDATION = "VALIDATION"
    RESOLUTION = "RESOLUTION"
    CONDITION = "CONDITION"
    TIMEOUT = "TIMEOUT"
    RATE_LIMIT = "RATE_LIMIT"
    HTTP_ERROR = "HTTP_ERROR"
    INVOCATION = "INVOCATION"
    CAPABILITY_FAILED = "CAPABILITY_FAILED"
    CANCELLED = "CANCELLED"
    ABORT = "ABORT"


class A2SError(Exception):
    """Base class for all engine errors."""

    category: ErrorCategory = ErrorCategory.INVOCATION

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


# ---------------------------------------------------------------------------
# Load time
# ---------------------------------------------------------------------------


class LoadError(A2SError):
    """A capability document could not be loaded."""

    category = ErrorCategory.SCHEMA


class IntegrityError(LoadError):
    """The declared checksum does not match the document content."""

    category = ErrorCategory.INTEGRITY

    def __init__(self, message: str, *, expected: Optional[str] = None, actual: Optional[str] = None) -> None:
        super().__init__(message)
        self.expected = expected
        self.actual = actual


class SchemaError(LoadError):
    """The document violates the structural contract.

    ``errors`` holds every violation found, not only the first one.
    """

    category = ErrorCategory.SCHEMA

    def __init__(self, message: str, *, errors: Optional[List[Dict[str, Any]]] = None) -> None:
        super().__init__(message)
        self.errors: List[Dict[str, Any]] = list(errors or [])


# ---------------------------------------------------------------------------
# State store
# ---------------------------------------------------------------------------


class StateError(A2SError):
    """Base class for State Store boundary and lookup errors."""


class NotFound(StateError):
    category = ErrorCategory.NOT_FOUND


class AccessDenied(StateError):
    """A service-tier variable was read from a foreign domain."""

    category = ErrorCategory.ACCESS_DENIED


class TrustDenied(StateError):
    """A shared-tier variable was read by an untrusted domain."""

    category = ErrorCategory.TRUST_DENIED


class ValidationError(StateError):
    """A value failed its declared type, pattern, range or format."""

    category = ErrorCategory.VALIDATION


# ---------------------------------------------------------------------------
# Run time
# ---------------------------------------------------------------------------


class ResolutionError(A2SError):
    """A reference expression could not be resolved."""

    category = ErrorCategory.RESOLUTION

    def __init__(self, message: str, *, expression: Optional[str] = None) -> None:
        super().__init__(message)
        self.expression = expression


class ConditionError(ResolutionError):
    """A condition expression is malformed or compares incompatible values."""

    category = ErrorCategory.CONDITION


class TaskTimeoutError(A2SError):
    """A suspending call exceeded its deadline."""

    category = ErrorCategory.TIMEOUT


class InvocationError(A2SError):
    """An external collaborator reported a failure.

    Collaborators raise this with an explicit category (``RATE_LIMIT``,
    ``HTTP_ERROR``...) so flows can catch specific kinds of failure.
    """

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory | str = ErrorCategory.INVOCATION,
        status: Optional[int] = None,
    ) -> None:
        super().__init__(message)
        self.category = ErrorCategory(category)
        self.status = status


class TaskCancelled(A2SError):
    """A sibling branch aborted and the cancellation flag was observed."""

    category = ErrorCategory.CANCELLED


class AbortError(A2SError):
    """Termination of the whole capability run.

    ``category`` is the category of the failure that caused the abort, so a
    ``try/catch`` node can still match on it.
    """

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory | str = ErrorCategory.ABORT,
        task_id: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.category = ErrorCategory(category)
        self.task_id = task_id


def category_of(exc: BaseException) -> ErrorCategory:
    """Return the failure category of ``exc``."""
    if isinstance(exc, A2SError):
        return ErrorCategory(exc.category)
    return ErrorCategory.INVOCATION
