"""A2S capability execution engine.

This package loads declarative A2S capability documents and executes them:
a verified, immutable capability goes in, a ``CapabilityResult`` with the
outputs and a full execution trace comes out.

Core subpackages
----------------

- ``a2s_engine.capability``: document schemas, checksum verification, the
  validator, the loader with dependency resolution and the flow compiler.
- ``a2s_engine.state``: the three-tier State Store (service, shared,
  temporary) with domain isolation and encryption at rest.
- ``a2s_engine.runtime``: the Reference Resolver, the Task Dispatcher and
  the LangGraph-based Flow Orchestrator.
- ``a2s_engine.invokers``: reference httpx and pydantic-ai adapters for the
  HTTP and decision collaborators.
- ``a2s_engine.core``: settings and logging.

Entry points are ``build_engine`` and ``A2SEngine``.
"""

from .capability import CapabilityLoader, LoadedCapability, load_capability
from .capability.schemas import CapabilityResult, RunStatus, TaskStatus
from .factory import build_engine, build_loader, build_registry
from .service import A2SEngine

__all__ = [
    "A2SEngine",
    "CapabilityLoader",
    "CapabilityResult",
    "LoadedCapability",
    "RunStatus",
    "TaskStatus",
    "build_engine",
    "build_loader",
    "build_registry",
    "load_capability",
]
