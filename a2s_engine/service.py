from __future__ import annotations

"""High-level facade over the capability engine.

``A2SEngine`` gives applications one object to load capabilities and execute
them, without wiring the loader and the runtime by hand.

Workflow
--------

- ``load_capability``: read, verify and validate a document (and its
  dependencies) through ``CapabilityLoader``.
- ``execute``: run a loaded capability through ``FlowOrchestrator`` and
  return its ``CapabilityResult``.

Service and shared variables live in vaults owned by the engine, so values
written by one run are visible to later runs. ``set_service`` /
``set_shared`` / ``revoke_trust`` seed and administer them from outside a
run (e.g. storing an API token for a domain).
"""

import logging
from typing import Any, Iterable, Mapping, Optional

from .capability.loader import CapabilityLoader, CapabilitySource, DependencyResolver, LoadedCapability
from .capability.schemas.domain import CapabilityResult
from .runtime.models import EngineDeps
from .runtime.orchestrator import FlowOrchestrator
from .state.store import ServiceVault, SharedVault, StateStore

logger = logging.getLogger(__name__)


class A2SEngine:
    """Load and execute capabilities."""

    def __init__(self, *, loader: CapabilityLoader, deps: EngineDeps) -> None:
        self._loader = loader
        self._deps = deps
        self._orchestrator = FlowOrchestrator(deps=deps)

    @property
    def deps(self) -> EngineDeps:
        return self._deps

    @property
    def orchestrator(self) -> FlowOrchestrator:
        return self._orchestrator

    @property
    def service_vault(self) -> ServiceVault:
        return self._deps.service_vault

    @property
    def shared_vault(self) -> SharedVault:
        return self._deps.shared_vault

    def load_capability(
        self,
        source: CapabilitySource,
        dependency_resolver: Optional[DependencyResolver] = None,
    ) -> LoadedCapability:
        return self._loader.load(source, dependency_resolver=dependency_resolver)

    async def execute(
        self,
        capability: LoadedCapability,
        inputs: Optional[Mapping[str, Any]] = None,
        *,
        run_id: Optional[str] = None,
    ) -> CapabilityResult:
        """
        Execute ``capability`` with ``inputs``.

        Args:
            capability: A capability returned by ``load_capability``.
            inputs: Capability-level inputs.
            run_id: Identifier of the run; generated when omitted.

        Returns:
            The run result. Task failures are reported in it, never raised.
        """
        return await self._orchestrator.run(capability, inputs or {}, run_id=run_id)

    # -- state administration --------------------------------------------------

    def _store(self) -> StateStore:
        return StateStore(
            service_vault=self._deps.service_vault,
            shared_vault=self._deps.shared_vault,
            cipher=self._deps.cipher,
            is_trusted=self._deps.is_trusted,
        )

    def set_service(self, domain: str, name: str, value: Any, *, expiry: Optional[float] = None) -> None:
        self._store().set_service(domain, name, value, expiry=expiry)

    def get_service(self, domain: str, name: str) -> Any:
        return self._store().get_service(domain, name)

    def set_shared(self, name: str, value: Any, trusted_domains: Iterable[str]) -> None:
        self._store().set_shared(name, value, trusted_domains)

    def get_shared(self, name: str, requesting_domain: Optional[str]) -> Any:
        return self._store().get_shared(name, requesting_domain)

    def revoke_trust(self, name: str, domain: str) -> None:
        logger.info("revoking trust of domain %s on shared variable %s", domain, name)
        self._store().revoke_trust(name, domain)

    async def aclose(self) -> None:
        """Release the resources of the HTTP invoker, if it holds any."""
        closer = getattr(self._deps.http_invoke, "aclose", None)
        if closer is not None:
            await closer()
