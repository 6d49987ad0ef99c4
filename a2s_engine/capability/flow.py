from __future__ import annotations

"""Flow graph of a capability.

The ``flow`` section of a capability document is compiled into an explicit
tree of tagged node variants which the Flow Orchestrator interprets:

- ``TaskNode``: execute one leaf task.
- ``SequenceNode``: execute children in order (``next`` overrides jump
  forward within the sequence).
- ``ParallelNode``: fork/join over branches.
- ``ConditionNode``: evaluate a condition task or inline ``if`` expression
  and follow the matching branch (``true``/``false`` or a named case).
- ``LoopNode``: ``loop``/``while``/``repeat`` with a bounded iteration count
  and an optional wall-clock ``timeout``.
- ``TryNode``: run a body and redirect declared error categories to a
  fallback.

Composite tasks (``type: parallel`` / ``type: sequence``) are expanded into
the matching node so that every ``TaskNode`` refers to a leaf task. A
document without ``flow`` runs its tasks in declaration order.

``FlowBuilder`` never raises on a malformed flow: it records every problem
in ``errors`` and skips the offending node, so the validator can report the
complete defect list.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Iterator, List, Optional, Tuple, Union

from pydantic import ValidationError as PydanticValidationError

from .schemas.document import CapabilityDocument, OnFailure, TaskType

END = "end"
CATCH_ALL = "*"


@dataclass(frozen=True)
class TaskNode:
    task_id: str
    label: str
    next: Optional[Union[str, Dict[str, Optional[str]]]] = None


@dataclass(frozen=True)
class SequenceNode:
    steps: Tuple["FlowNode", ...]
    label: str


@dataclass(frozen=True)
class ParallelNode:
    branches: Tuple["FlowNode", ...]
    label: str


@dataclass(frozen=True)
class ConditionNode:
    label: str
    branches: Tuple[Tuple[str, "FlowNode"], ...]
    task_id: Optional[str] = None
    expression: Optional[str] = None

    def branch(self, name: str) -> Optional["FlowNode"]:
        for key, node in self.branches:
            if key == name:
                return node
        for key, node in self.branches:
            if key == "default":
                return node
        return None


@dataclass(frozen=True)
class LoopNode:
    body: "FlowNode"
    label: str
    while_: Optional[str] = None
    until: Optional[str] = None
    max_iterations: Optional[int] = None
    timeout: Optional[float] = None
    on_failure: OnFailure = field(default_factory=OnFailure)


@dataclass(frozen=True)
class CatchClause:
    categories: FrozenSet[str]
    body: "FlowNode"

    def matches(self, category: str) -> bool:
        return CATCH_ALL in self.categories or category.upper() in self.categories


@dataclass(frozen=True)
class TryNode:
    body: "FlowNode"
    handlers: Tuple[CatchClause, ...]
    label: str


FlowNode = Union[TaskNode, SequenceNode, ParallelNode, ConditionNode, LoopNode, TryNode]


@dataclass(frozen=True)
class FlowIssue:
    path: str
    code: str
    message: str


def iter_nodes(node: FlowNode) -> Iterator[FlowNode]:
    """Yield ``node`` and all of its descendants, depth first."""
    yield node
    if isinstance(node, SequenceNode):
        for child in node.steps:
            yield from iter_nodes(child)
    elif isinstance(node, ParallelNode):
        for child in node.branches:
            yield from iter_nodes(child)
    elif isinstance(node, ConditionNode):
        for _name, child in node.branches:
            yield from iter_nodes(child)
    elif isinstance(node, LoopNode):
        yield from iter_nodes(node.body)
    elif isinstance(node, TryNode):
        yield from iter_nodes(node.body)
        for clause in node.handlers:
            yield from iter_nodes(clause.body)


def referenced_task_ids(node: FlowNode) -> List[str]:
    out: List[str] = []
    for n in iter_nodes(node):
        if isinstance(n, TaskNode):
            out.append(n.task_id)
        elif isinstance(n, ConditionNode) and n.task_id:
            out.append(n.task_id)
    return out


class FlowBuilder:
    """Compile a document's ``flow`` section into a ``SequenceNode`` tree."""

    def __init__(self, document: CapabilityDocument) -> None:
        self._doc = document
        self._expanding: List[str] = []
        self.errors: List[FlowIssue] = []

    def build(self) -> SequenceNode:
        raw = self._doc.flow
        if raw is None:
            steps = [self._task_step(t.id, "tasks", None) for t in self._doc.tasks]
            return SequenceNode(steps=tuple(s for s in steps if s is not None), label="flow")
        if isinstance(raw, list):
            return SequenceNode(steps=self._steps(raw, "flow.steps"), label="flow")
        if isinstance(raw, dict):
            flow_type = str(raw.get("type") or "sequence")
            if flow_type == "sequence":
                return SequenceNode(steps=self._steps(self._body(raw), "flow.steps"), label="flow")
            node = self._node(raw, "flow")
            return SequenceNode(steps=(node,) if node is not None else (), label="flow")
        self._issue("flow", "bad_flow", f"flow must be a mapping or a list, got {type(raw).__name__}")
        return SequenceNode(steps=(), label="flow")

    # -- helpers ---------------------------------------------------------

    def _issue(self, path: str, code: str, message: str) -> None:
        self.errors.append(FlowIssue(path=path, code=code, message=message))

    @staticmethod
    def _body(raw: Dict[str, Any], *keys: str) -> List[Any]:
        for key in keys or ("steps", "tasks"):
            value = raw.get(key)
            if value is None:
                continue
            if isinstance(value, list):
                return value
            return [value]
        return []

    def _steps(self, raw_steps: List[Any], path: str) -> Tuple[FlowNode, ...]:
        out: List[FlowNode] = []
        for i, raw in enumerate(raw_steps):
            node = self._node(raw, f"{path}[{i}]")
            if node is not None:
                out.append(node)
        return tuple(out)

    def _sub_flow(self, raw: Any, path: str) -> FlowNode:
        """A branch or body: a list of steps, a ``{tasks|steps: [...]}`` block or one node."""
        if isinstance(raw, list):
            return SequenceNode(steps=self._steps(raw, path), label=path)
        if isinstance(raw, dict) and "type" not in raw and "task" not in raw:
            return SequenceNode(steps=self._steps(self._body(raw), path), label=path)
        node = self._node(raw, path)
        return node if node is not None else SequenceNode(steps=(), label=path)

    def _node(self, raw: Any, path: str) -> Optional[FlowNode]:
        if isinstance(raw, str):
            return self._task_step(raw, path, None)
        if not isinstance(raw, dict):
            self._issue(path, "bad_flow", f"flow step must be a task id or a mapping, got {type(raw).__name__}")
            return None

        node_type = raw.get("type")
        if node_type is None or ("task" in raw and node_type != "condition"):
            task_id = raw.get("task") or raw.get("id")
            if not task_id:
                self._issue(path, "bad_flow", "flow step has neither 'task' nor 'type'")
                return None
            return self._task_step(str(task_id), path, raw.get("next"))

        if node_type == "sequence":
            return SequenceNode(steps=self._steps(self._body(raw), f"{path}.steps"), label=path)
        if node_type == "parallel":
            return self._parallel(raw, path)
        if node_type == "condition":
            return self._condition(raw, path)
        if node_type in ("loop", "while", "repeat"):
            return self._loop(raw, path)
        if node_type == "try":
            return self._try(raw, path)
        self._issue(path, "bad_flow", f"unknown flow node type: {node_type!r}")
        return None

    def _task_step(self, task_id: str, path: str, next_override: Any) -> Optional[FlowNode]:
        task = self._doc.task(task_id)
        if task is None:
            self._issue(path, "unknown_task", f"flow references unknown task {task_id!r}")
            return None
        if not task.is_composite:
            return TaskNode(task_id=task_id, label=task_id, next=next_override if next_override is not None else task.next)

        if task_id in self._expanding:
            cycle = " -> ".join(self._expanding + [task_id])
            self._issue(path, "flow_cycle", f"composite task cycle: {cycle}")
            return None
        self._expanding.append(task_id)
        try:
            children = task.steps or task.tasks
            if task.type == TaskType.parallel:
                branches = tuple(self._sub_flow(c, f"{task_id}.tasks[{i}]") for i, c in enumerate(children))
                return ParallelNode(branches=branches, label=task_id)
            return SequenceNode(steps=self._steps(children, f"{task_id}.steps"), label=task_id)
        finally:
            self._expanding.pop()

    def _parallel(self, raw: Dict[str, Any], path: str) -> ParallelNode:
        entries = raw.get("branches")
        if entries is None:
            entries = self._body(raw)
        branches = tuple(self._sub_flow(entry, f"{path}.branches[{i}]") for i, entry in enumerate(entries))
        if not branches:
            self._issue(path, "bad_flow", "parallel node has no branches")
        return ParallelNode(branches=branches, label=path)

    def _condition(self, raw: Dict[str, Any], path: str) -> ConditionNode:
        task_id: Optional[str] = raw.get("task")
        expression: Optional[str] = raw.get("if") or raw.get("expression")
        cond = raw.get("condition")
        if cond is not None and task_id is None and expression is None:
            candidate = self._doc.task(str(cond))
            if candidate is not None and candidate.type == TaskType.condition:
                task_id = candidate.id
            else:
                expression = str(cond)
        if task_id is not None:
            task = self._doc.task(task_id)
            if task is None:
                self._issue(path, "unknown_task", f"condition references unknown task {task_id!r}")
            elif task.type != TaskType.condition:
                self._issue(path, "bad_flow", f"condition node task {task_id!r} is not a condition task")
        elif expression is None:
            self._issue(path, "bad_flow", "condition node needs a condition task or an 'if' expression")

        branches: List[Tuple[str, FlowNode]] = []
        for key, name in (("then", "true"), ("else", "false"), (True, "true"), (False, "false")):
            if key in raw:
                branches.append((name, self._sub_flow(raw[key], f"{path}.{name}")))
        for name, body in (raw.get("cases") or {}).items():
            branches.append((str(name), self._sub_flow(body, f"{path}.cases.{name}")))
        if "default" in raw:
            branches.append(("default", self._sub_flow(raw["default"], f"{path}.default")))
        return ConditionNode(label=path, branches=tuple(branches), task_id=task_id, expression=expression)

    def _loop(self, raw: Dict[str, Any], path: str) -> LoopNode:
        body = self._sub_flow(self._body(raw, "steps", "tasks", "body", "do"), f"{path}.body")
        max_iterations = raw.get("max_iterations", raw.get("times", raw.get("count")))
        if max_iterations is not None:
            try:
                max_iterations = int(max_iterations)
            except (TypeError, ValueError):
                self._issue(path, "bad_flow", f"loop bound must be an integer, got {max_iterations!r}")
                max_iterations = None
        timeout = raw.get("timeout")
        if timeout is not None:
            try:
                timeout = float(timeout)
            except (TypeError, ValueError):
                self._issue(path, "bad_flow", f"loop timeout must be a number of seconds, got {timeout!r}")
                timeout = None
        return LoopNode(
            body=body,
            label=path,
            while_=raw.get("while") or raw.get("condition"),
            until=raw.get("until"),
            max_iterations=max_iterations,
            timeout=timeout,
            on_failure=self._on_failure(raw, path),
        )

    def _on_failure(self, raw: Dict[str, Any], path: str) -> OnFailure:
        handling = raw.get("error_handling") or {}
        if not isinstance(handling, dict):
            self._issue(f"{path}.error_handling", "bad_flow", "error_handling must be a mapping")
            return OnFailure()
        try:
            return OnFailure.model_validate(handling.get("on_failure") or {})
        except PydanticValidationError as exc:
            message = exc.errors()[0]["msg"]
            self._issue(f"{path}.error_handling.on_failure", "bad_flow", f"invalid on_failure policy: {message}")
            return OnFailure()

    def _try(self, raw: Dict[str, Any], path: str) -> TryNode:
        body = self._sub_flow(self._body(raw, "try", "steps", "tasks"), f"{path}.try")
        clauses_raw = raw.get("catch") or []
        if isinstance(clauses_raw, dict):
            clauses_raw = [clauses_raw]
        handlers: List[CatchClause] = []
        for i, clause in enumerate(clauses_raw):
            if not isinstance(clause, dict):
                self._issue(f"{path}.catch[{i}]", "bad_flow", "catch clause must be a mapping")
                continue
            errors = clause.get("errors", clause.get("categories", clause.get("error", CATCH_ALL)))
            if isinstance(errors, str):
                errors = [errors]
            categories = frozenset(str(e).upper() for e in errors)
            handlers.append(CatchClause(categories=categories, body=self._sub_flow(self._body(clause), f"{path}.catch[{i}]")))
        if not handlers:
            self._issue(path, "bad_flow", "try node declares no catch clause")
        return TryNode(body=body, handlers=tuple(handlers), label=path)
