from __future__ import annotations

import asyncio
import inspect
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple, Union

import httpx
import pytest

from a2s_engine.capability.canonical import seal
from a2s_engine.core.config import EngineSettings
from a2s_engine.factory import build_engine
from a2s_engine.invokers.base import HttpRequest, HttpResponse
from a2s_engine.state.crypto import FernetDomainCipher

TEST_MASTER_KEY = "a2s-engine-test-master-key"


@pytest.fixture(autouse=True)
def _global_offline_http_guard(monkeypatch: pytest.MonkeyPatch):
    allowed_prefixes: Iterable[str] = (
        "http://mock",
        "https://mock",
        "http://localhost",
        "http://127.0.0.1",
    )

    orig_async = httpx._client.AsyncClient.request

    def _is_allowed(url_str: str) -> bool:
        return any(url_str.startswith(p) for p in allowed_prefixes)

    async def offline_async(self, method, url, *args, **kwargs):
        url_str = str(url)
        if _is_allowed(url_str):
            return await orig_async(self, method, url, *args, **kwargs)
        raise RuntimeError(f"External HTTP blocked by global offline guard (async): {url_str}")

    monkeypatch.setattr(httpx._client.AsyncClient, "request", offline_async, raising=True)
    yield


# ---------------------------------------------------------------------------
# collaborator stubs
# ---------------------------------------------------------------------------

Route = Union[HttpResponse, Callable[[HttpRequest], Any]]


class StubHttp:
    """HTTP invoker answering from a ``(METHOD, url) -> response`` table."""

    def __init__(self, routes: Optional[Dict[Tuple[str, str], Route]] = None) -> None:
        self.routes: Dict[Tuple[str, str], Route] = dict(routes or {})
        self.requests: List[HttpRequest] = []
        self.delay: float = 0.0

    async def __call__(self, request: HttpRequest, timeout: float) -> HttpResponse:
        self.requests.append(request)
        if self.delay:
            await asyncio.sleep(self.delay)
        route = self.routes.get((request.method, request.url))
        if route is None:
            return HttpResponse(status=404, body={"error": f"no route for {request.method} {request.url}"})
        if isinstance(route, HttpResponse):
            return route
        result = route(request)
        if inspect.isawaitable(result):
            result = await result
        return result


class StubLlm:
    """Decision invoker returning queued responses (or the output of ``decide``)."""

    def __init__(self, responses: Optional[List[Any]] = None) -> None:
        self.responses: List[Any] = list(responses or [])
        self.calls: List[Dict[str, Any]] = []
        self.decide: Optional[Callable[[str, Dict[str, Any]], Any]] = None

    async def __call__(
        self,
        prompt: str,
        schema: Dict[str, Any],
        *,
        context: Dict[str, Any],
        system: Optional[str] = None,
        timeout: float,
    ) -> Any:
        self.calls.append({"prompt": prompt, "schema": schema, "context": context, "system": system})
        if self.decide is not None:
            return self.decide(prompt, context)
        return self.responses.pop(0)


def make_document(**fields: Any) -> Dict[str, Any]:
    """A sealed capability document with a valid header plus ``fields``."""
    doc: Dict[str, Any] = {
        "a2s": "1.0",
        "id": "testCapability",
        "description": "Capability used by the engine tests",
        "version": "1.0.0",
        "type": "atomic",
        "authors": [{"name": "Engine Tests", "email": "tests@example.com"}],
    }
    doc.update(fields)
    return seal(doc)


# ---------------------------------------------------------------------------
# fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def document_factory() -> Callable[..., Dict[str, Any]]:
    return make_document


@pytest.fixture
def engine_settings() -> EngineSettings:
    return EngineSettings(
        default_task_timeout=5.0,
        max_loop_iterations=20,
        max_parallel_branches=4,
        master_key=TEST_MASTER_KEY,
    )


@pytest.fixture
def http_stub() -> StubHttp:
    return StubHttp()


@pytest.fixture
def llm_stub() -> StubLlm:
    return StubLlm()


@pytest.fixture
def engine(engine_settings: EngineSettings, http_stub: StubHttp, llm_stub: StubLlm):
    return build_engine(
        settings=engine_settings,
        http_invoke=http_stub,
        llm_complete=llm_stub,
        cipher=FernetDomainCipher(TEST_MASTER_KEY),
    )
