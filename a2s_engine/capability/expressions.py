from __future__ import annotations

"""Condition expression grammar.

Condition tasks, inline ``if`` nodes, loop ``while``/``until`` clauses and
task guards share one small comparison language::

    expr     := or
    or       := and (("or" | "||") and)*
    and      := not (("and" | "&&") not)*
    not      := ("not" | "!") not | compare
    compare  := operand (OP operand)?
    OP       := == | != | < | <= | > | >= | in | not in | contains
    operand  := "(" expr ")" | "[" operand ("," operand)* "]" | literal | reference
    literal  := number | 'string' | "string" | true | false | null
    reference:= {path} | path

References are resolved lazily through a ``lookup`` callable, so parsing
can happen at load time (for validation) and evaluation at run time against
the live execution context.
"""

import re
from dataclasses import dataclass
from typing import Any, Callable, List, Optional, Tuple, Union

from .errors import ConditionError

_TOKEN_RE = re.compile(
    r"""
    \s*(?:
        (?P<num>-?\d+(?:\.\d+)?(?![\w.]))
      | (?P<str>"(?:[^"\\]|\\.)*"|'(?:[^'\\]|\\.)*')
      | (?P<ref>\{[^{}]+\})
      | (?P<op>==|!=|<=|>=|<|>|&&|\|\||!|\(|\)|\[|\]|,)
      | (?P<word>[A-Za-z_$][\w\-$]*(?:\.[\w\-]+|\[\d+\])*)
    )
    """,
    re.VERBOSE,
)

_KEYWORD_LITERALS = {"true": True, "false": False, "null": None, "none": None}
_COMPARE_OPS = {"==", "!=", "<", "<=", ">", ">=", "in", "not in", "contains"}


@dataclass(frozen=True)
class Literal:
    value: Any


@dataclass(frozen=True)
class Ref:
    path: str


@dataclass(frozen=True)
class ListExpr:
    items: Tuple["Node", ...]


@dataclass(frozen=True)
class Not:
    operand: "Node"


@dataclass(frozen=True)
class BoolOp:
    op: str
    operands: Tuple["Node", ...]


@dataclass(frozen=True)
class Compare:
    op: str
    left: "Node"
    right: "Node"


Node = Union[Literal, Ref, ListExpr, Not, BoolOp, Compare]
Lookup = Callable[[str], Any]


def _tokenize(text: str) -> List[Tuple[str, str]]:
    tokens: List[Tuple[str, str]] = []
    pos = 0
    text = text.rstrip()
    while pos < len(text):
        m = _TOKEN_RE.match(text, pos)
        if m is None or m.end() == pos:
            raise ConditionError(f"unexpected character at {pos} in {text!r}", expression=text)
        kind = m.lastgroup
        value = m.group(kind)
        if kind == "word":
            lowered = value.lower()
            if lowered in ("and", "or", "not", "in", "contains"):
                kind = "op"
                value = lowered
        tokens.append((kind, value))
        pos = m.end()
    return tokens


class _Parser:
    def __init__(self, text: str) -> None:
        self._text = text
        self._tokens = _tokenize(text)
        self._pos = 0

    def _peek(self) -> Optional[Tuple[str, str]]:
        return self._tokens[self._pos] if self._pos < len(self._tokens) else None

    def _accept(self, *values: str) -> Optional[str]:
        tok = self._peek()
        if tok is not None and tok[0] == "op" and tok[1] in values:
            self._pos += 1
            return tok[1]
        return None

    def _expect(self, value: str) -> None:
        if self._accept(value) is None:
            raise ConditionError(f"expected {value!r} in {self._text!r}", expression=self._text)

    def parse(self) -> Node:
        if not self._tokens:
            raise ConditionError("empty expression", expression=self._text)
        node = self._or()
        if self._peek() is not None:
            raise ConditionError(f"unexpected token {self._peek()[1]!r} in {self._text!r}", expression=self._text)
        return node

    def _or(self) -> Node:
        items = [self._and()]
        while self._accept("or", "||"):
            items.append(self._and())
        return items[0] if len(items) == 1 else BoolOp("or", tuple(items))

    def _and(self) -> Node:
        items = [self._not()]
        while self._accept("and", "&&"):
            items.append(self._not())
        return items[0] if len(items) == 1 else BoolOp("and", tuple(items))

    def _not(self) -> Node:
        if self._accept("not", "!"):
            return Not(self._not())
        return self._compare()

    def _compare(self) -> Node:
        left = self._operand()
        op = self._accept("==", "!=", "<=", ">=", "<", ">", "in", "contains")
        if op is None:
            tok = self._peek()
            nxt = self._tokens[self._pos + 1] if self._pos + 1 < len(self._tokens) else None
            if tok == ("op", "not") and nxt == ("op", "in"):
                self._pos += 2
                op = "not in"
            else:
                return left
        return Compare(op, left, self._operand())

    def _operand(self) -> Node:
        if self._accept("("):
            node = self._or()
            self._expect(")")
            return node
        if self._accept("["):
            items: List[Node] = []
            if not self._accept("]"):
                items.append(self._operand())
                while self._accept(","):
                    items.append(self._operand())
                self._expect("]")
            return ListExpr(tuple(items))
        tok = self._peek()
        if tok is None:
            raise ConditionError(f"unexpected end of {self._text!r}", expression=self._text)
        kind, value = tok
        self._pos += 1
        if kind == "num":
            return Literal(float(value) if "." in value else int(value))
        if kind == "str":
            return Literal(re.sub(r"\\(.)", r"\1", value[1:-1]))
        if kind == "ref":
            return Ref(value[1:-1].strip())
        if kind == "word":
            lowered = value.lower()
            if lowered in _KEYWORD_LITERALS:
                return Literal(_KEYWORD_LITERALS[lowered])
            return Ref(value)
        raise ConditionError(f"unexpected token {value!r} in {self._text!r}", expression=self._text)


def parse(text: str) -> Node:
    """Parse a condition expression. Raises ``ConditionError`` on bad syntax."""
    return _Parser(str(text)).parse()


def references(node: Node) -> List[str]:
    """Return every reference path used by ``node``."""
    if isinstance(node, Ref):
        return [node.path]
    if isinstance(node, ListExpr):
        return [p for item in node.items for p in references(item)]
    if isinstance(node, Not):
        return references(node.operand)
    if isinstance(node, BoolOp):
        return [p for item in node.operands for p in references(item)]
    if isinstance(node, Compare):
        return references(node.left) + references(node.right)
    return []


def _truthy(value: Any) -> bool:
    if isinstance(value, str) and value.strip().lower() in ("true", "false"):
        return value.strip().lower() == "true"
    return bool(value)


def _as_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return value
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            return None
    return None


def _equals(a: Any, b: Any) -> bool:
    if isinstance(a, bool) or isinstance(b, bool):
        if isinstance(a, (bool, str)) and isinstance(b, (bool, str)):
            return _truthy(a) == _truthy(b)
        return a == b
    na, nb = _as_number(a), _as_number(b)
    if na is not None and nb is not None and (isinstance(a, (int, float)) or isinstance(b, (int, float))):
        return na == nb
    return a == b


def _order(op: str, a: Any, b: Any, text: str) -> bool:
    na, nb = _as_number(a), _as_number(b)
    if na is not None and nb is not None:
        left, right = na, nb
    elif isinstance(a, str) and isinstance(b, str):
        left, right = a, b
    else:
        raise ConditionError(f"cannot compare {a!r} {op} {b!r}", expression=text)
    if op == "<":
        return left < right
    if op == "<=":
        return left <= right
    if op == ">":
        return left > right
    return left >= right


def _contains(container: Any, item: Any, text: str) -> bool:
    if isinstance(container, (list, tuple, set, frozenset)):
        return any(_equals(item, c) for c in container)
    if isinstance(container, str):
        return str(item) in container
    if isinstance(container, dict):
        return item in container
    raise ConditionError(f"membership test against {type(container).__name__}", expression=text)


def _value(node: Node, lookup: Lookup, text: str) -> Any:
    if isinstance(node, Literal):
        return node.value
    if isinstance(node, Ref):
        return lookup(node.path)
    if isinstance(node, ListExpr):
        return [_value(item, lookup, text) for item in node.items]
    return _evaluate(node, lookup, text)


def _evaluate(node: Node, lookup: Lookup, text: str) -> bool:
    if isinstance(node, Not):
        return not _evaluate(node.operand, lookup, text)
    if isinstance(node, BoolOp):
        if node.op == "and":
            return all(_evaluate(item, lookup, text) for item in node.operands)
        return any(_evaluate(item, lookup, text) for item in node.operands)
    if isinstance(node, Compare):
        left = _value(node.left, lookup, text)
        right = _value(node.right, lookup, text)
        if node.op == "==":
            return _equals(left, right)
        if node.op == "!=":
            return not _equals(left, right)
        if node.op == "in":
            return _contains(right, left, text)
        if node.op == "not in":
            return not _contains(right, left, text)
        if node.op == "contains":
            return _contains(left, right, text)
        return _order(node.op, left, right, text)
    return _truthy(_value(node, lookup, text))


def evaluate(text: str, lookup: Lookup) -> bool:
    """Parse and evaluate ``text``, resolving references through ``lookup``."""
    return _evaluate(parse(text), lookup, str(text))
