from __future__ import annotations

"""Runtime dependency bundle and LangGraph state types.

The runtime is dependency-injected:

- ``EngineDeps`` collects the collaborators (HTTP and decision invokers, the
  trust policy), the long-lived state vaults and the settings a
  ``FlowOrchestrator`` needs.
- ``_FlowState`` is the mutable state passed between LangGraph nodes while
  one capability run walks its top-level flow steps.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, NotRequired, Optional, Required, TypedDict

from ..capability.flow import FlowNode
from ..capability.schemas.domain import RunError
from ..core.config import EngineSettings
from ..invokers.base import HttpInvoker, LlmInvoker, TrustPolicy
from ..state.crypto import DomainCipher
from ..state.store import ServiceVault, SharedVault
from .context import ExecutionContext


@dataclass(frozen=True)
class EngineDeps:
    """Dependency bundle for ``FlowOrchestrator``.

    Typically constructed by ``build_engine``. It holds:

    - the invokers every side effect is delegated to,
    - the service/shared vaults that outlive a single run,
    - the cipher used for the service tier.
    """

    settings: EngineSettings
    service_vault: ServiceVault = field(default_factory=ServiceVault)
    shared_vault: SharedVault = field(default_factory=SharedVault)
    cipher: Optional[DomainCipher] = None

    http_invoke: Optional[HttpInvoker] = None
    llm_complete: Optional[LlmInvoker] = None
    is_trusted: Optional[TrustPolicy] = None


class _FlowState(TypedDict):
    """Mutable LangGraph state for a single capability run.

    Required keys:

    - ``ctx``: the run's ``ExecutionContext``.
    - ``steps``: top-level flow nodes.
    - ``idx``: index of the next step to execute.

    Optional keys:

    - ``_finished``: terminates the graph.
    - ``_error``: set when the run aborted.
    - ``_outputs``: capability outputs gathered by the finish node.
    """

    ctx: Required[ExecutionContext]
    steps: Required[List[FlowNode]]
    idx: Required[int]
    _finished: NotRequired[bool]
    _error: NotRequired[Optional[RunError]]
    _outputs: NotRequired[Dict[str, Any]]
