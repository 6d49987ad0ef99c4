from __future__ import annotations

"""httpx-based HTTP/GraphQL invoker.

``HttpxInvoker`` sends one ``HttpRequest`` through an ``httpx.AsyncClient``
and returns the status, headers and parsed body. JSON bodies are decoded
when the response declares a JSON content type; anything else is returned
as text.

Transport failures map onto the engine taxonomy:

- ``httpx.TimeoutException`` -> ``TaskTimeoutError`` (``TIMEOUT``),
- any other ``httpx.HTTPError`` -> ``InvocationError`` (``INVOCATION``).
"""

import logging
from typing import Any, Dict, Optional

import httpx

from ..capability.errors import InvocationError, TaskTimeoutError
from .base import HttpRequest, HttpResponse

logger = logging.getLogger(__name__)


class HttpxInvoker:
    """HTTP invoker backed by ``httpx.AsyncClient``.

    Args:
        client: Client to use. When omitted, one is created (and owned) with
            ``timeout`` and redirect following enabled.
        timeout: Default client timeout in seconds.
    """

    def __init__(self, client: Optional[httpx.AsyncClient] = None, *, timeout: float = 30.0) -> None:
        self._owns_client = client is None
        self._http = client or httpx.AsyncClient(timeout=timeout, follow_redirects=True)

    async def __call__(self, request: HttpRequest, timeout: float) -> HttpResponse:
        kwargs: Dict[str, Any] = {
            "headers": request.headers,
            "params": {k: v for k, v in request.query.items() if v is not None},
            "timeout": timeout,
        }
        if isinstance(request.body, (str, bytes)):
            kwargs["content"] = request.body
        elif request.body is not None:
            kwargs["json"] = request.body

        logger.debug("HttpxInvoker: %s %s", request.method, request.url)
        try:
            r = await self._http.request(request.method, request.url, **kwargs)
        except httpx.TimeoutException as exc:
            raise TaskTimeoutError(f"{request.method} {request.url} timed out after {timeout:g}s") from exc
        except httpx.HTTPError as exc:
            raise InvocationError(f"{request.method} {request.url} failed: {exc}") from exc

        return HttpResponse(status=r.status_code, headers=dict(r.headers), body=_decode_body(r))

    async def aclose(self) -> None:
        if self._owns_client:
            await self._http.aclose()


def _decode_body(r: httpx.Response) -> Any:
    if not r.content:
        return None
    content_type = r.headers.get("content-type", "")
    if "json" in content_type:
        try:
            return r.json()
        except ValueError:
            logger.warning("HttpxInvoker: response declared %s but is not JSON", content_type)
    return r.text
