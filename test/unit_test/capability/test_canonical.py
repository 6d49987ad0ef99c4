from __future__ import annotations

from datetime import date

from a2s_engine.capability.canonical import (
    canonical_json,
    compute_checksum,
    normalize_checksum,
    seal,
)


def test_canonical_json_is_key_order_independent():
    a = {"b": 1, "a": {"y": [1, 2], "x": "é"}}
    b = {"a": {"x": "é", "y": [1, 2]}, "b": 1}
    assert canonical_json(a) == canonical_json(b)
    assert canonical_json(a) == '{"a":{"x":"é","y":[1,2]},"b":1}'


def test_canonical_json_handles_non_string_keys_and_dates():
    text = canonical_json({True: "on", "when": date(2024, 1, 2)})
    assert '"true":"on"' in text
    assert '"when":"2024-01-02"' in text


def test_checksum_ignores_checksum_field():
    doc = {"id": "x", "version": "1"}
    assert compute_checksum(doc) == compute_checksum({**doc, "checksum": "sha256:whatever"})
    assert compute_checksum(doc).startswith("sha256:")
    assert len(compute_checksum(doc)) == len("sha256:") + 64


def test_checksum_changes_with_content():
    assert compute_checksum({"id": "x"}) != compute_checksum({"id": "y"})


def test_normalize_checksum():
    assert normalize_checksum("ABCDEF") == "sha256:abcdef"
    assert normalize_checksum(" SHA256:ABC ") == "sha256:abc"


def test_seal_adds_matching_checksum_without_mutating():
    doc = {"id": "x"}
    sealed = seal(doc)
    assert "checksum" not in doc
    assert sealed["checksum"] == compute_checksum(doc)
