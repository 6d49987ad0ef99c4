"""Canonical serialization and checksums for capability documents."""

from __future__ import annotations

import hashlib
import json
from typing import Any, Mapping

CHECKSUM_FIELD = "checksum"
CHECKSUM_PREFIX = "sha256:"


def _plain(obj: Any) -> Any:
    # YAML allows non-string keys (``on:`` parses as ``True``); JSON does not.
    if isinstance(obj, Mapping):
        return {k if isinstance(k, str) else json.dumps(k, default=str): _plain(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [_plain(v) for v in obj]
    return obj


def canonical_json(obj: Any) -> str:
    # Dates and other YAML scalars without a JSON form are stringified.
    return json.dumps(_plain(obj), sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)


def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def compute_checksum(document: Mapping[str, Any]) -> str:
    """Return ``sha256:<hex>`` over the canonical document minus its checksum field."""
    body = {k: v for k, v in document.items() if k != CHECKSUM_FIELD}
    return CHECKSUM_PREFIX + sha256_hex(canonical_json(body).encode("utf-8"))


def normalize_checksum(value: str) -> str:
    """Normalize a declared checksum to the ``sha256:<hex>`` form (lower-case hex)."""
    raw = str(value).strip()
    if raw.lower().startswith(CHECKSUM_PREFIX):
        raw = raw[len(CHECKSUM_PREFIX) :]
    return CHECKSUM_PREFIX + raw.lower()


def seal(document: Mapping[str, Any]) -> dict[str, Any]:
    """Return a copy of ``document`` carrying its correct checksum."""
    out = dict(document)
    out[CHECKSUM_FIELD] = compute_checksum(document)
    return out
