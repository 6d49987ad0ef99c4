from __future__ import annotations

"""Convenience factories for wiring the engine.

``build_engine`` assembles an ``A2SEngine`` from ``EngineSettings``: the
loader and validator, an in-memory registry, the Fernet cipher of the service tier and the default
httpx invoker. Any collaborator can be replaced, which keeps tests and
application wiring concise.
"""

from typing import Any, Iterable, Mapping, Optional

from .capability.loader import CapabilityLoader, DependencyResolver
from .capability.registry import InMemoryCapabilityRegistry
from .capability.validator import CapabilityValidator
from .core.config import EngineSettings, get_settings
from .core.logging_config import setup_logging
from .invokers.base import HttpInvoker, LlmInvoker, TrustPolicy
from .invokers.http import HttpxInvoker
from .invokers.llm import PydanticAIDecisionInvoker
from .runtime.models import EngineDeps
from .service import A2SEngine
from .state.crypto import DomainCipher, FernetDomainCipher
from .state.store import ServiceVault, SharedVault


def build_loader(
    settings: Optional[EngineSettings] = None,
    *,
    dependency_resolver: Optional[DependencyResolver] = None,
) -> CapabilityLoader:
    """Construct a ``CapabilityLoader`` honoring the settings' checksum and protocol rules."""
    settings = settings or get_settings()
    validator = CapabilityValidator(protocol_versions=tuple(settings.protocol_versions))
    return CapabilityLoader(
        validator=validator,
        dependency_resolver=dependency_resolver,
        require_checksum=settings.require_checksum,
    )


def build_registry(
    settings: Optional[EngineSettings] = None,
    documents: Iterable[Mapping[str, Any]] = (),
) -> InMemoryCapabilityRegistry:
    """Construct an in-memory registry serving ``settings.registry_url``."""
    settings = settings or get_settings()
    return InMemoryCapabilityRegistry(documents, url=settings.registry_url)


def build_engine(
    *,
    settings: Optional[EngineSettings] = None,
    http_invoke: Optional[HttpInvoker] = None,
    llm_complete: Optional[LlmInvoker] = None,
    llm_model: Any = None,
    is_trusted: Optional[TrustPolicy] = None,
    cipher: Optional[DomainCipher] = None,
    dependency_resolver: Optional[DependencyResolver] = None,
    service_vault: Optional[ServiceVault] = None,
    shared_vault: Optional[SharedVault] = None,
) -> A2SEngine:
    """
    Construct an ``A2SEngine``.

    Args:
        settings: Engine settings; ``get_settings()`` when omitted.
        http_invoke: HTTP invoker; an ``HttpxInvoker`` when omitted.
        llm_complete: Decision invoker. When omitted and ``llm_model`` is
            given, a ``PydanticAIDecisionInvoker`` over that model is used.
        llm_model: A pydantic-ai model (or model name) for the default
            decision invoker.
        is_trusted: Trust collaborator consulted on shared-tier reads.
        cipher: Service-tier cipher; a ``FernetDomainCipher`` keyed by
            ``settings.master_key`` when omitted.
        dependency_resolver: Used by the loader for ``dependencies``.
        service_vault: Pre-populated service-tier vault.
        shared_vault: Pre-populated shared-tier vault.
    """
    settings = settings or get_settings()
    if settings.configure_logging:
        setup_logging(
            log_level=settings.log_level,
            log_format=settings.log_format,
            enable_file=settings.enable_file_logging,
            log_file_dir=settings.log_file_dir,
        )

    if llm_complete is None and llm_model is not None:
        llm_complete = PydanticAIDecisionInvoker(llm_model)
    deps = EngineDeps(
        settings=settings,
        service_vault=service_vault if service_vault is not None else ServiceVault(),
        shared_vault=shared_vault if shared_vault is not None else SharedVault(),
        cipher=cipher if cipher is not None else FernetDomainCipher(settings.master_key),
        http_invoke=http_invoke if http_invoke is not None else HttpxInvoker(timeout=settings.http_timeout),
        llm_complete=llm_complete,
        is_trusted=is_trusted,
    )
    return A2SEngine(loader=build_loader(settings, dependency_resolver=dependency_resolver), deps=deps)
