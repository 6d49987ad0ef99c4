from __future__ import annotations

"""Collaborator interfaces consumed by the Task Dispatcher.

The engine performs no I/O of its own. Side effects are delegated to:

- an HTTP invoker: ``await http_invoke(request, timeout) -> HttpResponse``,
- a decision invoker: ``await llm_complete(prompt, schema, context=...,
  system=..., timeout=...) -> structured value``,
- a trust collaborator: ``is_trusted(domain) -> bool``.

Invokers raise ``InvocationError`` (with a category) or
``TaskTimeoutError``; any other exception is mapped to ``INVOCATION`` by the
dispatcher. HTTP error statuses are *returned*, not raised: turning them
into ``RATE_LIMIT`` / ``HTTP_ERROR`` failures is the dispatcher's job.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional, Protocol


@dataclass(frozen=True)
class HttpRequest:
    method: str
    url: str
    headers: Dict[str, str] = field(default_factory=dict)
    query: Dict[str, Any] = field(default_factory=dict)
    body: Any = None


@dataclass(frozen=True)
class HttpResponse:
    status: int
    headers: Mapping[str, str] = field(default_factory=dict)
    body: Any = None

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 400


class HttpInvoker(Protocol):
    async def __call__(self, request: HttpRequest, timeout: float) -> HttpResponse: ...


class LlmInvoker(Protocol):
    async def __call__(
        self,
        prompt: str,
        schema: Dict[str, Any],
        *,
        context: Dict[str, Any],
        system: Optional[str] = None,
        timeout: float,
    ) -> Any: ...


class TrustPolicy(Protocol):
    def __call__(self, domain: str) -> bool: ...
