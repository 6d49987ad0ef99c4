from __future__ import annotations

import re
from pathlib import Path
from typing import Any, Callable, Dict

import pytest
import yaml

from a2s_engine.capability.canonical import seal
from a2s_engine.capability.registry import InMemoryCapabilityRegistry
from a2s_engine.factory import build_engine
from a2s_engine.state.crypto import FernetDomainCipher

CAPABILITIES_DIR = Path(__file__).parent / "capabilities"

_DECISION_RE = re.compile(r"It is (\S+) degrees in .*above (\S+) degrees")


def sealed_document(name: str) -> Dict[str, Any]:
    """Parse ``capabilities/<name>.yaml`` and attach its checksum."""
    return seal(yaml.safe_load((CAPABILITIES_DIR / f"{name}.yaml").read_text(encoding="utf-8")))


@pytest.fixture
def capability_document() -> Callable[[str], Dict[str, Any]]:
    return sealed_document


@pytest.fixture
def capability_yaml() -> Callable[[str], str]:
    """Sealed capability documents as YAML text, the way they are published."""

    def _text(name: str) -> str:
        return yaml.safe_dump(sealed_document(name), sort_keys=False)

    return _text


@pytest.fixture
def registry() -> InMemoryCapabilityRegistry:
    return InMemoryCapabilityRegistry([sealed_document("weather_lookup"), sealed_document("social_post")])


@pytest.fixture
def weather_decision():
    """Decide to post when the prompt's temperature exceeds its threshold."""

    def decide(prompt: str, context: Dict[str, Any]) -> Dict[str, Any]:
        match = _DECISION_RE.search(prompt)
        assert match is not None, prompt
        return {"shouldPost": float(match.group(1)) > float(match.group(2))}

    return decide


@pytest.fixture
def engine(engine_settings, http_stub, llm_stub, registry):
    return build_engine(
        settings=engine_settings,
        http_invoke=http_stub,
        llm_complete=llm_stub,
        cipher=FernetDomainCipher(engine_settings.master_key),
        dependency_resolver=registry,
    )
