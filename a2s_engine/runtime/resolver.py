from __future__ import annotations

"""Reference Resolver.

Evaluates binding expressions against a live ``ExecutionContext``:

- literals resolve to themselves (containers are resolved element-wise),
- ``{"$ref": "#/..."}`` is a static JSON pointer into the document; results
  are cached per document checksum and returned as copies, so resolving the
  same pointer twice yields equal values. ``#/inputs/<name>`` is the one
  dynamic pointer: it reads the run's capability input,
- ``{"mapping": "path"}`` reads a runtime value,
- strings are templates: a string that is exactly one ``{path}`` yields the
  raw typed value; otherwise each ``{path}`` span is replaced by the value's
  text, left to right, and all other text is kept. A string without any
  path span is returned unchanged.

Path roots
----------

``inputs.<name>``
    Capability-level input.
``<task>.outputs.<name>``
    Output of a task that already ran in this context.
``services.<domain>.<name>``
    Service-tier variable of ``<domain>`` (falls back to the document's
    static service declaration, e.g. ``services.<domain>.baseUrl``). Only a
    task of that same domain may read it.
``shared.<name>``
    Shared-tier variable, subject to the trust grant of the reading domain.
``temporary.<name>`` / ``temp.<name>``
    Temporary variable of the current task execution.
``capability.<field>``
    Header field of the running capability.
``loop.index`` / ``loop.iteration``
    Zero- and one-based counters of the innermost loop.

Any unresolvable path raises ``ResolutionError``; state-tier boundary
violations keep their own ``AccessDenied`` / ``TrustDenied`` errors.
"""

import copy
import json
import logging
import threading
from typing import Any, Dict, List, Mapping, Optional, Tuple

from ..capability.errors import AccessDenied, NotFound, ResolutionError
from ..capability.references import (
    CAPABILITY_ROOT,
    INPUTS_ROOT,
    LOOP_ROOT,
    OUTPUTS_SEGMENT,
    SERVICES_ROOT,
    SHARED_ROOT,
    TEMPLATE_RE,
    TEMPORARY_ROOTS,
    Segment,
    resolve_pointer,
    single_reference,
    split_path,
    strip_braces,
)
from .context import ExecutionContext

logger = logging.getLogger(__name__)

_MISSING = object()


def walk(value: Any, segments: List[Segment], path: str) -> Any:
    """Descend into ``value`` along ``segments``."""
    for seg in segments:
        if isinstance(value, Mapping):
            key = seg if isinstance(seg, str) else str(seg)
            if key not in value:
                raise ResolutionError(f"{path}: no field {key!r}", expression=path)
            value = value[key]
        elif isinstance(value, (list, tuple)):
            try:
                index = int(seg)
            except ValueError:
                raise ResolutionError(f"{path}: cannot read field {seg!r} of a list", expression=path) from None
            if not -len(value) <= index < len(value):
                raise ResolutionError(f"{path}: index {index} out of range", expression=path)
            value = value[index]
        else:
            raise ResolutionError(f"{path}: cannot read {seg!r} of {type(value).__name__}", expression=path)
    return value


def to_text(value: Any) -> str:
    """String representation used when a value is interpolated into text."""
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return "null"
    if isinstance(value, (dict, list, tuple)):
        return json.dumps(value, ensure_ascii=False, default=str)
    return str(value)


class ReferenceResolver:
    """Resolve binding expressions; see the module docstring for the syntax."""

    def __init__(self) -> None:
        self._pointer_cache: Dict[Tuple[str, str], Any] = {}
        self._lock = threading.Lock()

    def resolve(
        self,
        expression: Any,
        context: ExecutionContext,
        *,
        domain: Optional[str] = None,
        local: Optional[Mapping[str, Any]] = None,
    ) -> Any:
        """
        Resolve ``expression`` against ``context``.

        Args:
            expression: A literal, ``$ref``/``mapping`` mapping, template
                string, or a container of those.
            context: The live execution context.
            domain: Service domain of the reading task; governs
                ``services.*`` and ``shared.*`` reads.
            local: Task-local names (a task's resolved inputs), consulted
                before every other root.

        Raises:
            ResolutionError: if a reference cannot be resolved.
            AccessDenied: on a cross-domain service-tier read.
            TrustDenied: on a shared-tier read without a trust grant.
        """
        if isinstance(expression, str):
            return self.render(expression, context, domain=domain, local=local)
        if isinstance(expression, dict):
            if "$ref" in expression and len(expression) == 1:
                return self.resolve_ref(str(expression["$ref"]), context)
            if "mapping" in expression and len(expression) == 1:
                return self.lookup(strip_braces(str(expression["mapping"])), context, domain=domain, local=local)
            if "value" in expression and len(expression) == 1:
                return self.resolve(expression["value"], context, domain=domain, local=local)
            return {k: self.resolve(v, context, domain=domain, local=local) for k, v in expression.items()}
        if isinstance(expression, list):
            return [self.resolve(v, context, domain=domain, local=local) for v in expression]
        return expression

    def render(
        self,
        template: str,
        context: ExecutionContext,
        *,
        domain: Optional[str] = None,
        local: Optional[Mapping[str, Any]] = None,
    ) -> Any:
        if TEMPLATE_RE.search(template) is None:
            return template
        whole = single_reference(template)
        if whole is not None:
            return self.lookup(whole, context, domain=domain, local=local)
        return TEMPLATE_RE.sub(
            lambda m: to_text(self.lookup(m.group(1), context, domain=domain, local=local)),
            template,
        )

    # -- $ref ------------------------------------------------------------------

    def resolve_ref(self, pointer: str, context: ExecutionContext) -> Any:
        capability = context.capability
        parts = pointer.lstrip("#").strip("/").split("/")
        if len(parts) >= 2 and parts[0] == INPUTS_ROOT:
            name = parts[1]
            if name not in context.inputs:
                raise ResolutionError(f"{pointer}: capability input {name!r} was not provided", expression=pointer)
            return walk(context.inputs[name], list(parts[2:]), pointer)

        key = (capability.checksum, pointer)
        with self._lock:
            cached = self._pointer_cache.get(key, _MISSING)
        if cached is _MISSING:
            try:
                cached = copy.deepcopy(resolve_pointer(capability.raw, pointer))
            except KeyError as exc:
                raise ResolutionError(str(exc.args[0]), expression=pointer) from None
            with self._lock:
                self._pointer_cache[key] = cached
        return copy.deepcopy(cached)

    # -- mapping paths ---------------------------------------------------------

    def lookup(
        self,
        path: str,
        context: ExecutionContext,
        *,
        domain: Optional[str] = None,
        local: Optional[Mapping[str, Any]] = None,
    ) -> Any:
        segments = split_path(path)
        if not segments or not isinstance(segments[0], str):
            raise ResolutionError(f"malformed reference {path!r}", expression=path)
        root = segments[0]

        if local is not None and root in local:
            return walk(local[root], segments[1:], path)

        if root == INPUTS_ROOT:
            if len(segments) < 2 or str(segments[1]) not in context.inputs:
                raise ResolutionError(f"{path}: capability input is not set", expression=path)
            return walk(context.inputs[str(segments[1])], segments[2:], path)

        if root == SERVICES_ROOT:
            return self._service_value(path, segments[1:], context, domain)

        if root == SHARED_ROOT:
            name = self._variable_name(path, segments)
            try:
                value = context.store.get_shared(name, domain)
            except NotFound as exc:
                raise ResolutionError(f"{path}: {exc.message}", expression=path) from exc
            return walk(value, segments[2:], path)

        if root in TEMPORARY_ROOTS:
            name = self._variable_name(path, segments)
            try:
                value = context.store.get_temporary(name)
            except NotFound as exc:
                raise ResolutionError(f"{path}: {exc.message}", expression=path) from exc
            return walk(value, segments[2:], path)

        if root == CAPABILITY_ROOT:
            header = context.capability.document.model_dump(mode="json", include=_HEADER_DUMP_FIELDS)
            header.setdefault("name", header.get("id"))
            return walk(header, segments[1:], path)

        if root == LOOP_ROOT:
            index = context.loop_index
            if index is None:
                raise ResolutionError(f"{path}: not inside a loop", expression=path)
            counters = {"index": index, "iteration": index + 1}
            return walk(counters, segments[1:], path)

        if len(segments) >= 2 and segments[1] == OUTPUTS_SEGMENT:
            if context.has_outputs(root):
                return walk(context.outputs[root], segments[2:], path)
            if context.capability.task(root) is not None:
                raise ResolutionError(f"{path}: task {root!r} has not produced outputs", expression=path)
        raise ResolutionError(f"{path}: unknown reference root {root!r}", expression=path)

    @staticmethod
    def _variable_name(path: str, segments: List[Segment]) -> str:
        if len(segments) < 2:
            raise ResolutionError(f"{path}: names no variable", expression=path)
        return str(segments[1])

    def _service_value(
        self,
        path: str,
        rest: List[Segment],
        context: ExecutionContext,
        domain: Optional[str],
    ) -> Any:
        names = [str(s) for s in rest]
        known = context.capability_domains | context.store.service_domains()
        owner: Optional[str] = None
        tail: List[Segment] = []
        for end in range(len(names), 0, -1):
            candidate = ".".join(names[:end])
            if candidate in known:
                owner, tail = candidate, rest[end:]
                break
        if owner is None:
            raise ResolutionError(f"{path}: unknown service domain", expression=path)
        if domain != owner:
            logger.warning("service reference %s denied to domain %s", path, domain)
            raise AccessDenied(f"{path}: service variables of {owner!r} are not readable from domain {domain!r}")
        if not tail:
            raise ResolutionError(f"{path}: names no variable", expression=path)

        # Variable names may contain dots (``auth.token``); try the longest name first.
        tail_names = [str(s) for s in tail]
        for end in range(len(tail), 0, -1):
            try:
                value = context.store.get_service(owner, ".".join(tail_names[:end]))
            except (NotFound, AccessDenied):
                continue
            return walk(value, tail[end:], path)

        static = _service_declaration(context, owner)
        if static is not None:
            return walk(static, tail, path)
        raise ResolutionError(f"{path}: service variable is not set", expression=path)


_HEADER_DUMP_FIELDS = {"a2s", "id", "description", "version", "type", "checksum", "authors", "source_url", "security"}


def _service_declaration(context: ExecutionContext, domain: str) -> Optional[Dict[str, Any]]:
    raw = context.capability.raw
    section = raw.get("services") or raw.get("domains") or {}
    declared = section.get(domain) if isinstance(section, dict) else None
    return declared if isinstance(declared, dict) else None
