from __future__ import annotations

"""Structural validation of capability documents.

``CapabilityValidator.validate`` checks a parsed ``CapabilityDocument``
against the A2S structural contract and returns *all* violations rather than
failing fast, so tooling can report the full defect list:

- the type taxonomy of every parameter declaration,
- the atomic/aggregate invariant (atomic capabilities import nothing),
- task-type specific fields (request fragments, prompts, expressions),
- every ``mapping`` / ``$ref`` / template reference: well-formed, pointing
  at something that exists in the document, and only at tasks that precede
  the reader in the flow (never at a sibling parallel branch),
- the flow graph: known task ids, forward-only ``next`` jumps and no
  composite-task cycles.

Task-local names
----------------

Prompt templates, request overrides and condition expressions run after the
task's own inputs are resolved, so a path whose root is one of the task's
declared inputs (``/breeds/{id}``) refers to that input.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Set, Tuple

from . import expressions
from .errors import ConditionError
from .flow import (
    END,
    ConditionNode,
    FlowBuilder,
    FlowNode,
    LoopNode,
    ParallelNode,
    SequenceNode,
    TaskNode,
    TryNode,
    iter_nodes,
    referenced_task_ids,
)
from .references import (
    CAPABILITY_ROOT,
    INPUTS_ROOT,
    LOOP_ROOT,
    OUTPUTS_SEGMENT,
    SERVICES_ROOT,
    SHARED_ROOT,
    TEMPORARY_ROOTS,
    is_path,
    iter_expression_paths,
    resolve_pointer,
    single_reference,
    split_path,
)
from .schemas.document import (
    COMPOSITE_TASK_TYPES,
    CapabilityDocument,
    CapabilityType,
    TaskSpec,
    TaskType,
    Tier,
    ValueType,
    VariableSpec,
)

logger = logging.getLogger(__name__)

HEADER_FIELDS = frozenset(
    {"a2s", "id", "name", "description", "version", "type", "checksum", "authors", "source_url", "security"}
)
CONDITION_OUTPUTS = frozenset({"result", "branch"})
_TYPE_NAMES = frozenset(t.value for t in ValueType)
_FIXED_OUTPUT_TYPES = frozenset({TaskType.request, TaskType.agent_decision, TaskType.sampling})


@dataclass(frozen=True)
class ValidationIssue:
    path: str
    code: str
    message: str

    def __str__(self) -> str:
        return f"{self.path}: [{self.code}] {self.message}"


@dataclass
class ValidationResult:
    errors: List[ValidationIssue] = field(default_factory=list)
    warnings: List[ValidationIssue] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors

    def codes(self) -> List[str]:
        return [e.code for e in self.errors]


def _without_graphql_queries(value: Any) -> Any:
    # GraphQL selection sets ({ name }) are not interpolations.
    if isinstance(value, dict):
        return {
            k: _without_graphql_queries(v) for k, v in value.items() if not (k == "query" and isinstance(v, str))
        }
    return value


def _types_compatible(a: Optional[str], b: Optional[str]) -> bool:
    if a is None or b is None or a == b:
        return True
    return {a, b} == {ValueType.integer.value, ValueType.number.value}


class CapabilityValidator:
    """Validate capability documents; see the module docstring for the checks."""

    def __init__(self, *, protocol_versions: Iterable[str] = ("1",)) -> None:
        self._protocol_versions = {str(v) for v in protocol_versions}

    def validate(self, document: CapabilityDocument, raw: Optional[Dict[str, Any]] = None) -> ValidationResult:
        """
        Validate a parsed capability document.

        Args:
            document: The parsed document.
            raw: The raw mapping the document was parsed from, used to check
                ``$ref`` pointers. Defaults to the document's own dump.

        Returns:
            A ``ValidationResult`` holding every error and warning found.
        """
        raw_doc = raw if raw is not None else document.model_dump(by_alias=True)
        run = _ValidationRun(document, raw_doc)
        run.check_header(self._protocol_versions)
        run.check_parameters()
        run.check_tasks()
        run.check_flow()
        run.check_outputs()
        result = ValidationResult(errors=run.errors, warnings=run.warnings)
        if result.ok:
            logger.debug("capability %s validated with %d warning(s)", document.id, len(result.warnings))
        else:
            logger.info("capability %s failed validation: %s", document.id, result.codes())
        return result


class _ValidationRun:
    def __init__(self, document: CapabilityDocument, raw: Dict[str, Any]) -> None:
        self.doc = document
        self.raw = raw
        self.errors: List[ValidationIssue] = []
        self.warnings: List[ValidationIssue] = []
        self.flow: Optional[SequenceNode] = None
        self.final_available: FrozenSet[str] = frozenset()
        self._task_index = {t.id: i for i, t in enumerate(document.tasks)}
        self._checked: Set[Tuple[str, FrozenSet[str], FrozenSet[str]]] = set()

    def error(self, path: str, code: str, message: str) -> None:
        self.errors.append(ValidationIssue(path=path, code=code, message=message))

    def warn(self, path: str, code: str, message: str) -> None:
        self.warnings.append(ValidationIssue(path=path, code=code, message=message))

    def _task_path(self, task_id: str) -> str:
        index = self._task_index.get(task_id)
        return f"tasks[{index}]" if index is not None else task_id

    # -- header ----------------------------------------------------------

    def check_header(self, protocol_versions: Set[str]) -> None:
        major = self.doc.a2s.split(".")[0]
        if major not in protocol_versions:
            self.error("a2s", "unsupported_protocol", f"unsupported A2S protocol version {self.doc.a2s!r}")

        if self.doc.type == CapabilityType.atomic:
            if self.doc.dependencies:
                self.error(
                    "dependencies",
                    "atomic_imports_capability",
                    "atomic capabilities must not declare capability dependencies",
                )
            for i, task in enumerate(self.doc.tasks):
                if task.type == TaskType.capability:
                    self.error(
                        f"tasks[{i}]",
                        "atomic_imports_capability",
                        f"task {task.id!r} is of type 'capability', but atomic capabilities must not import "
                        "other capabilities",
                    )

    # -- parameter declarations -----------------------------------------

    def _check_spec(self, path: str, spec: VariableSpec) -> None:
        if spec.type is not None and spec.type not in _TYPE_NAMES:
            self.error(path, "unknown_type", f"unknown type {spec.type!r}; expected one of {sorted(_TYPE_NAMES)}")
        self._check_properties(f"{path}.properties", spec.properties)
        if spec.items is not None:
            self._check_properties(f"{path}.items", {"": spec.items})
        if spec.pattern is not None:
            try:
                re.compile(spec.pattern)
            except re.error as exc:
                self.error(path, "bad_pattern", f"invalid pattern {spec.pattern!r}: {exc}")

    def _check_properties(self, path: str, properties: Dict[str, Any]) -> None:
        for name, prop in properties.items():
            if not isinstance(prop, dict):
                continue
            ptype = prop.get("type")
            sub = f"{path}.{name}" if name else path
            if ptype is not None and ptype not in _TYPE_NAMES:
                self.error(sub, "unknown_type", f"unknown type {ptype!r}")
            self._check_properties(f"{sub}.properties", prop.get("properties") or {})

    def check_parameters(self) -> None:
        for name, spec in self.doc.inputs.items():
            self._check_spec(f"inputs.{name}", spec)
        for name, spec in self.doc.outputs.items():
            self._check_spec(f"outputs.{name}", spec)
        for i, task in enumerate(self.doc.tasks):
            for name, binding in task.inputs.items():
                self._check_spec(f"tasks[{i}].inputs.{name}", binding.spec)
                self._check_input_type(f"tasks[{i}].inputs.{name}", binding.expression, binding.spec)
            for name, out in task.outputs.items():
                self._check_spec(f"tasks[{i}].outputs.{name}", out.spec)

    def _check_input_type(self, path: str, expression: Any, spec: VariableSpec) -> None:
        """A task input bound straight to a capability input must agree on its type."""
        if spec.type is None:
            return
        target: Optional[str] = None
        if isinstance(expression, dict) and set(expression) == {"mapping"}:
            target = str(expression["mapping"])
        elif isinstance(expression, str):
            target = single_reference(expression)
        if target is None:
            return
        segments = split_path(target)
        if len(segments) != 2 or segments[0] != INPUTS_ROOT:
            return
        declared = self.doc.inputs.get(str(segments[1]))
        if declared is not None and not _types_compatible(spec.type, declared.type):
            self.error(
                path,
                "type_mismatch",
                f"declared as {spec.type} but bound to capability input {segments[1]!r} of type {declared.type}",
            )

    # -- tasks -------------------------------------------------------------

    def check_tasks(self) -> None:
        seen: Set[str] = set()
        dependency_ids = set(self.doc.dependencies) | {d.id for d in self.doc.dependencies.values()}
        for i, task in enumerate(self.doc.tasks):
            path = f"tasks[{i}]"
            if task.id in seen:
                self.error(path, "duplicate_task", f"duplicate task id {task.id!r}")
            seen.add(task.id)

            if task.service is not None and task.service not in self.doc.services:
                self.error(
                    f"{path}.service", "unknown_service", f"task {task.id!r} uses undeclared service {task.service!r}"
                )

            if task.type == TaskType.request:
                self._check_request(path, task)
            elif task.type in (TaskType.agent_decision, TaskType.sampling):
                if task.prompt is None or not task.prompt.template.strip():
                    self.warn(path, "missing_prompt", f"task {task.id!r} has no prompt template")
            elif task.type == TaskType.condition:
                if task.expression is None and not task.cases:
                    self.error(path, "missing_field", f"condition task {task.id!r} has no expression or cases")
                for text in [task.expression, *task.cases.values()]:
                    if text is not None:
                        self._check_expression(f"{path}.expression", text)
            elif task.type == TaskType.capability:
                if not task.capability:
                    self.error(path, "missing_field", f"capability task {task.id!r} names no capability")
                elif self.doc.type == CapabilityType.aggregate and task.capability not in dependency_ids:
                    self.error(
                        f"{path}.capability",
                        "unknown_dependency",
                        f"task {task.id!r} invokes {task.capability!r}, which is not a declared dependency",
                    )
            elif task.type in COMPOSITE_TASK_TYPES and not (task.tasks or task.steps):
                self.error(path, "missing_field", f"{task.type.value} task {task.id!r} lists no tasks")

            if task.guard is not None:
                self._check_expression(f"{path}.condition", task.guard)

            for name, out in task.outputs.items():
                if out.tier == Tier.service and not task.service:
                    self.error(
                        f"{path}.outputs.{name}",
                        "missing_domain",
                        f"service-tier output {name!r} of task {task.id!r} needs the task to declare a service",
                    )

    def _check_request(self, path: str, task: TaskSpec) -> None:
        if task.request is None and task.url is None and task.path is None:
            self.error(path, "missing_field", f"request task {task.id!r} has no request, url or path")
            return
        if isinstance(task.request, str):
            try:
                fragment = resolve_pointer(self.raw, task.request)
            except KeyError as exc:
                self.error(f"{path}.request", "bad_ref_pointer", str(exc.args[0]))
                return
            if not isinstance(fragment, dict):
                self.error(f"{path}.request", "bad_ref_pointer", f"{task.request!r} is not a request fragment")

    def _check_expression(self, path: str, text: str) -> Optional[expressions.Node]:
        try:
            return expressions.parse(text)
        except ConditionError as exc:
            self.error(path, "bad_expression", f"invalid expression {text!r}: {exc.message}")
            return None

    # -- flow ----------------------------------------------------------------

    def check_flow(self) -> None:
        builder = FlowBuilder(self.doc)
        self.flow = builder.build()
        for issue in builder.errors:
            self.error(issue.path, issue.code, issue.message)

        self.final_available = self._walk(self.flow, frozenset(), frozenset())

        used = set(referenced_task_ids(self.flow)) | {n.label for n in iter_nodes(self.flow)}
        for i, task in enumerate(self.doc.tasks):
            if task.id not in used:
                self.warn(f"tasks[{i}]", "unreferenced_task", f"task {task.id!r} is never reached by the flow")

    def _walk(self, node: FlowNode, available: FrozenSet[str], siblings: FrozenSet[str]) -> FrozenSet[str]:
        """Check references along ``node`` and return the task ids that may have run after it."""
        if isinstance(node, TaskNode):
            self._check_task_refs(node.task_id, available, siblings)
            return available | {node.task_id}

        if isinstance(node, SequenceNode):
            self._check_next_targets(node)
            current = available
            for step in node.steps:
                current = self._walk(step, current, siblings)
            return current

        if isinstance(node, ParallelNode):
            members = [frozenset(referenced_task_ids(b)) for b in node.branches]
            out = available
            for i, branch in enumerate(node.branches):
                others = frozenset().union(*(m for j, m in enumerate(members) if j != i))
                out = out | self._walk(branch, available, siblings | others)
            return out

        if isinstance(node, ConditionNode):
            after = available
            if node.task_id is not None and self.doc.task(node.task_id) is not None:
                self._check_task_refs(node.task_id, available, siblings)
                after = available | {node.task_id}
            if node.expression is not None:
                parsed = self._check_expression(node.label, node.expression)
                if parsed is not None:
                    for ref in expressions.references(parsed):
                        self._check_path(ref, node.label, available, siblings)
            out = after
            for _name, branch in node.branches:
                out = out | self._walk(branch, after, siblings)
            return out

        if isinstance(node, LoopNode):
            if node.while_ is not None:
                self._check_condition_refs(f"{node.label}.while", node.while_, available, siblings)
            after = self._walk(node.body, available, siblings)
            if node.until is not None:
                self._check_condition_refs(f"{node.label}.until", node.until, after, siblings)
            if node.max_iterations is not None and node.max_iterations < 0:
                self.error(node.label, "bad_flow", "loop bound must not be negative")
            return after

        if isinstance(node, TryNode):
            after = self._walk(node.body, available, siblings)
            out = after
            for clause in node.handlers:
                out = out | self._walk(clause.body, after, siblings)
            return out

        return available

    def _check_condition_refs(self, path: str, text: str, available: FrozenSet[str], siblings: FrozenSet[str]) -> None:
        parsed = self._check_expression(path, text)
        if parsed is not None:
            for ref in expressions.references(parsed):
                self._check_path(ref, path, available, siblings)

    def _check_next_targets(self, seq: SequenceNode) -> None:
        positions: Dict[str, int] = {}
        for i, step in enumerate(seq.steps):
            positions.setdefault(step.task_id if isinstance(step, TaskNode) else step.label, i)
        for i, step in enumerate(seq.steps):
            if not isinstance(step, TaskNode) or step.next is None:
                continue
            targets = [step.next] if isinstance(step.next, str) else list(step.next.values())
            for target in targets:
                if target is None or target == END:
                    continue
                path = f"{self._task_path(step.task_id)}.next"
                j = positions.get(target)
                if j is None:
                    if self.doc.task(target) is None:
                        self.error(path, "unknown_task", f"next references unknown task {target!r}")
                    else:
                        self.error(
                            path,
                            "bad_next",
                            f"next target {target!r} is not a later step of the sequence containing {step.task_id!r}",
                        )
                elif j <= i:
                    self.error(path, "flow_cycle", f"next of {step.task_id!r} jumps back to {target!r}")

    # -- references ----------------------------------------------------------

    def _check_task_refs(self, task_id: str, available: FrozenSet[str], siblings: FrozenSet[str]) -> None:
        key = (task_id, available, siblings)
        if key in self._checked:
            return
        self._checked.add(key)
        task = self.doc.task(task_id)
        if task is None:
            return
        path = self._task_path(task_id)
        local = frozenset(task.inputs)

        for name, binding in task.inputs.items():
            self._check_expression_refs(f"{path}.inputs.{name}", binding.expression, available, siblings)
        if task.guard is not None:
            self._check_condition_refs(f"{path}.condition", task.guard, available, siblings)

        late: List[Tuple[str, Any]] = [
            ("url", task.url),
            ("path", task.path),
            ("headers", task.headers),
            ("query", task.query),
            ("body", task.body),
            ("input_mapping", task.input_mapping),
        ]
        if isinstance(task.request, dict):
            late.append(("request", _without_graphql_queries(task.request)))
        if task.prompt is not None:
            late.append(("prompt.template", task.prompt.template))
            late.append(("prompt.system", task.prompt.system))
        for where, expr in late:
            if expr is not None:
                self._check_expression_refs(f"{path}.{where}", expr, available, siblings, local)
        for text in [task.expression, *task.cases.values()]:
            if text is None:
                continue
            try:
                parsed = expressions.parse(text)
            except ConditionError:
                continue
            for ref in expressions.references(parsed):
                self._check_path(ref, f"{path}.expression", available, siblings, local)

    def _check_expression_refs(
        self,
        path: str,
        expr: Any,
        available: FrozenSet[str],
        siblings: FrozenSet[str],
        local: FrozenSet[str] = frozenset(),
    ) -> None:
        for kind, target in iter_expression_paths(expr):
            if kind == "$ref":
                try:
                    resolve_pointer(self.raw, target)
                except KeyError as exc:
                    self.error(path, "bad_ref_pointer", str(exc.args[0]))
            else:
                self._check_path(target, path, available, siblings, local)

    def _check_path(
        self,
        ref: str,
        path: str,
        available: FrozenSet[str],
        siblings: FrozenSet[str],
        local: FrozenSet[str] = frozenset(),
    ) -> None:
        if not is_path(ref):
            self.error(path, "bad_reference", f"malformed reference {ref!r}")
            return
        segments = [str(s) for s in split_path(ref)]
        root = segments[0]

        if root in local:
            return
        if root == INPUTS_ROOT:
            if len(segments) < 2 or segments[1] not in self.doc.inputs:
                self.error(path, "bad_reference", f"{ref!r} references an undeclared capability input")
            return
        if root == SERVICES_ROOT:
            if not self._known_service_path(segments[1:]):
                self.error(path, "bad_reference", f"{ref!r} references an undeclared service")
            return
        if root == CAPABILITY_ROOT:
            if len(segments) < 2 or segments[1] not in HEADER_FIELDS:
                self.error(path, "bad_reference", f"{ref!r} references an unknown capability field")
            return
        if root == SHARED_ROOT or root in TEMPORARY_ROOTS:
            if len(segments) < 2:
                self.error(path, "bad_reference", f"{ref!r} names no variable")
            return
        if root == LOOP_ROOT:
            return

        task = self.doc.task(root)
        if task is None:
            self.error(path, "bad_reference", f"{ref!r} references unknown task or root {root!r}")
            return
        if len(segments) < 3 or segments[1] != OUTPUTS_SEGMENT:
            self.error(path, "bad_reference", f"{ref!r} must read a task output as '<task>.outputs.<name>'")
            return
        if root not in available:
            if root in siblings:
                self.error(path, "sibling_reference", f"{ref!r} reads a task of a sibling parallel branch")
            else:
                self.error(path, "forward_reference", f"{ref!r} reads task {root!r} before it can have run")
            return

        output = segments[2]
        if task.type == TaskType.condition:
            if output not in CONDITION_OUTPUTS and output not in task.outputs:
                self.error(path, "bad_reference", f"condition task {root!r} has no output {output!r}")
        elif task.type in _FIXED_OUTPUT_TYPES and task.outputs and output not in task.outputs:
            self.error(path, "bad_reference", f"task {root!r} declares no output {output!r}")
        binding = task.outputs.get(output)
        if binding is not None and binding.tier == Tier.temporary:
            self.error(
                path,
                "temporary_reference",
                f"{ref!r} reads a temporary output, which does not outlive task {root!r}",
            )

    def _known_service_path(self, rest: List[str]) -> bool:
        if not rest:
            return False
        for end in range(len(rest), 0, -1):
            if ".".join(rest[:end]) in self.doc.services:
                return True
        return False

    # -- capability outputs --------------------------------------------------

    def check_outputs(self) -> None:
        produced: Set[str] = set()
        for task_id in self.final_available:
            task = self.doc.task(task_id)
            if task is not None:
                produced.update(task.outputs)
                produced.update(task.output_mapping)

        for name, spec in self.doc.outputs.items():
            expr = spec.expression()
            if expr is None:
                if name not in produced:
                    self.warn(
                        f"outputs.{name}",
                        "unmapped_output",
                        f"no task produces {name!r} and it declares no mapping; it will be null",
                    )
                continue
            self._check_expression_refs(f"outputs.{name}", expr, self.final_available, frozenset())
