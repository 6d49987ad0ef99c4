from __future__ import annotations

import pytest

from a2s_engine.capability import expressions
from a2s_engine.capability.errors import ConditionError


def _lookup(values):
    def lookup(path):
        return values[path]

    return lookup


@pytest.mark.parametrize(
    "text,values,expected",
    [
        ("inputs.count > 3", {"inputs.count": 5}, True),
        ("inputs.count <= 3", {"inputs.count": 5}, False),
        ("{inputs.name} == 'alice'", {"inputs.name": "alice"}, True),
        ('inputs.name != "bob"', {"inputs.name": "alice"}, True),
        ("inputs.flag", {"inputs.flag": True}, True),
        ("not inputs.flag", {"inputs.flag": True}, False),
        ("!inputs.flag", {"inputs.flag": "false"}, True),
        ("inputs.a > 1 and inputs.b < 1", {"inputs.a": 2, "inputs.b": 0}, True),
        ("inputs.a > 1 && inputs.b > 1", {"inputs.a": 2, "inputs.b": 0}, False),
        ("inputs.a > 5 or inputs.b == 0", {"inputs.a": 2, "inputs.b": 0}, True),
        ("(inputs.a > 5 || inputs.b == 0) and true", {"inputs.a": 2, "inputs.b": 0}, True),
        ("inputs.color in ['red', 'blue']", {"inputs.color": "red"}, True),
        ("inputs.color not in ['red', 'blue']", {"inputs.color": "red"}, False),
        ("inputs.tags contains 'x'", {"inputs.tags": ["x", "y"]}, True),
        ("inputs.text contains 'ell'", {"inputs.text": "hello"}, True),
        ("inputs.n == 2", {"inputs.n": 2.0}, True),
        ("inputs.n == '2'", {"inputs.n": 2}, True),
        ("inputs.v == null", {"inputs.v": None}, True),
        ("check.outputs.items[0] == 'a'", {"check.outputs.items[0]": "a"}, True),
        ("inputs.score >= -1.5", {"inputs.score": -1.5}, True),
    ],
)
def test_evaluate(text, values, expected):
    assert expressions.evaluate(text, _lookup(values)) is expected


def test_references_are_collected_in_order():
    node = expressions.parse("{a.outputs.x} > 1 and b.outputs.y in [inputs.z, 3]")
    assert expressions.references(node) == ["a.outputs.x", "b.outputs.y", "inputs.z"]


def test_literals_are_not_references():
    node = expressions.parse("true == 'true' or null")
    assert expressions.references(node) == []


@pytest.mark.parametrize("text", ["", "inputs.a >", "(inputs.a", "inputs.a == 1 )", "inputs.a # 2", "[1, 2"])
def test_parse_errors_raise_condition_error(text):
    with pytest.raises(ConditionError):
        expressions.parse(text)


def test_ordering_incomparable_values_raises():
    with pytest.raises(ConditionError):
        expressions.evaluate("inputs.a > 1", _lookup({"inputs.a": {"k": 1}}))


def test_membership_against_number_raises():
    with pytest.raises(ConditionError):
        expressions.evaluate("1 in inputs.a", _lookup({"inputs.a": 5}))


def test_lookup_is_lazy_for_short_circuit():
    calls = []

    def lookup(path):
        calls.append(path)
        return True

    assert expressions.evaluate("inputs.a or inputs.b", lookup) is True
    assert calls == ["inputs.a"]
