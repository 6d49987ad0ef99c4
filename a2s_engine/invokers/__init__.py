"""Reference adapters for the engine's external collaborators."""

from .base import HttpInvoker, HttpRequest, HttpResponse, LlmInvoker, TrustPolicy
from .http import HttpxInvoker
from .llm import PydanticAIDecisionInvoker

__all__ = [
    "HttpInvoker",
    "HttpRequest",
    "HttpResponse",
    "HttpxInvoker",
    "LlmInvoker",
    "PydanticAIDecisionInvoker",
    "TrustPolicy",
]
