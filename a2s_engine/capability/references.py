from __future__ import annotations

"""Syntax of references inside capability documents.

A binding expression is one of:

- a literal (any YAML scalar, list or mapping without reference keys),
- ``{"$ref": "#/..."}``: a JSON pointer into the document itself,
- ``{"mapping": "path"}``: a dynamic path such as ``inputs.city``,
  ``getWeather.outputs.temperature`` or ``services.api.example.auth.token``,
- a string template mixing literal text with ``{path}`` interpolations.

Only brace spans whose content is a well-formed path are interpolations;
any other brace text (JSON snippets in a prompt, for instance) is left as
literal text.
"""

import re
from typing import Any, Iterator, List, Optional, Tuple, Union

PATH_PATTERN = r"[A-Za-z_$][\w\-$]*(?:\.[\w\-]+|\[\d+\])*"
TEMPLATE_RE = re.compile(r"\{\s*(" + PATH_PATTERN + r")\s*\}")
_PATH_RE = re.compile(r"^" + PATH_PATTERN + r"$")
_SEGMENT_RE = re.compile(r"([^.\[\]]+)|\[(\d+)\]")

Segment = Union[str, int]

INPUTS_ROOT = "inputs"
SERVICES_ROOT = "services"
SHARED_ROOT = "shared"
TEMPORARY_ROOTS = frozenset({"temporary", "temp"})
CAPABILITY_ROOT = "capability"
LOOP_ROOT = "loop"
OUTPUTS_SEGMENT = "outputs"


def is_path(text: Any) -> bool:
    return isinstance(text, str) and bool(_PATH_RE.match(text.strip()))


def strip_braces(text: str) -> str:
    return text.strip().strip("{}").strip()


def split_path(path: str) -> List[Segment]:
    """Split ``a.b[0].c`` into ``["a", "b", 0, "c"]``."""
    out: List[Segment] = []
    for name, index in _SEGMENT_RE.findall(path):
        out.append(int(index) if index else name)
    return out


def single_reference(template: str) -> Optional[str]:
    """Return the path if ``template`` is exactly one ``{path}`` span."""
    m = TEMPLATE_RE.fullmatch(template.strip())
    return m.group(1) if m else None


def iter_expression_paths(expr: Any) -> Iterator[Tuple[str, str]]:
    """Yield ``(kind, target)`` for every reference inside a binding expression.

    ``kind`` is ``"mapping"`` for dynamic paths and ``"$ref"`` for document
    pointers.
    """
    if isinstance(expr, str):
        for m in TEMPLATE_RE.finditer(expr):
            yield "mapping", m.group(1)
    elif isinstance(expr, dict):
        if "$ref" in expr:
            yield "$ref", str(expr["$ref"])
        elif set(expr) == {"mapping"}:
            yield "mapping", strip_braces(str(expr["mapping"]))
        else:
            for value in expr.values():
                yield from iter_expression_paths(value)
    elif isinstance(expr, list):
        for value in expr:
            yield from iter_expression_paths(value)


def resolve_pointer(document: Any, pointer: str) -> Any:
    """Resolve a ``#/a/b/0`` JSON pointer against ``document``.

    Raises:
        KeyError: if the pointer is malformed or its target does not exist.
    """
    if not isinstance(pointer, str) or not pointer.startswith("#"):
        raise KeyError(f"not a document pointer: {pointer!r}")
    node = document
    body = pointer[1:]
    if body in ("", "/"):
        return node
    if not body.startswith("/"):
        raise KeyError(f"not a document pointer: {pointer!r}")
    for raw in body[1:].split("/"):
        part = raw.replace("~1", "/").replace("~0", "~")
        if isinstance(node, dict) and part in node:
            node = node[part]
        elif isinstance(node, list) and part.isdigit() and int(part) < len(node):
            node = node[int(part)]
        else:
            raise KeyError(f"pointer {pointer!r} has no target at {part!r}")
    return node
