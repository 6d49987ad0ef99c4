"""Capability documents: parsing, validation, loading and lookup.

A capability moves through this package in one direction:

- ``loader.CapabilityLoader`` reads a source, verifies its checksum and
  parses it into ``schemas.CapabilityDocument``.
- ``validator.CapabilityValidator`` checks the structural contract and
  reports every violation at once.
- ``flow.FlowBuilder`` compiles the flow section into tagged nodes.

The result, a ``LoadedCapability``, is immutable and is what the runtime
executes.
"""

from .canonical import compute_checksum, seal
from .errors import (
    A2SError,
    AbortError,
    AccessDenied,
    ErrorCategory,
    IntegrityError,
    InvocationError,
    LoadError,
    NotFound,
    ResolutionError,
    SchemaError,
    StateError,
    TaskTimeoutError,
    TrustDenied,
    ValidationError,
)
from .loader import CapabilityLoader, LoadedCapability, load_capability
from .registry import InMemoryCapabilityRegistry, satisfies
from .validator import CapabilityValidator, ValidationIssue, ValidationResult

__all__ = [
    "A2SError",
    "AbortError",
    "AccessDenied",
    "CapabilityLoader",
    "CapabilityValidator",
    "ErrorCategory",
    "InMemoryCapabilityRegistry",
    "IntegrityError",
    "InvocationError",
    "LoadError",
    "LoadedCapability",
    "NotFound",
    "ResolutionError",
    "SchemaError",
    "StateError",
    "TaskTimeoutError",
    "TrustDenied",
    "ValidationError",
    "ValidationIssue",
    "ValidationResult",
    "compute_checksum",
    "load_capability",
    "satisfies",
    "seal",
]
