from __future__ import annotations

"""Flow Orchestrator.

``FlowOrchestrator`` walks the flow tree of a loaded capability and drives the
Task Dispatcher.

Execution model
---------------

- A run is a LangGraph state machine over a mutable ``_FlowState``:
  ``start -> execute (loop) -> finish``.
- Each ``execute`` iteration runs exactly one top-level flow node at index
  ``idx``; nested nodes are interpreted recursively by ``_run_node``.

Node semantics
--------------

- Task: dispatch, then apply the task's ``on_failure`` policy. ``abort``
  (the default) raises ``AbortError`` carrying the failure category;
  ``continue`` records the failure and proceeds.
- Sequence: children in order. A ``next`` target jumps forward to the step
  with that label (``end`` stops the run).
- Parallel: every branch runs on a forked context; at most
  ``max_parallel_branches`` run at the same time. The first abort cancels the
  sibling branches; the orchestrator waits for all of them, merges them in
  branch order and re-raises that first abort.
- Condition: follow the branch the condition task (or inline ``if``)
  reported. No matching branch is a no-op.
- Loop: ``while`` is checked before each iteration, ``until`` after it, and
  the iteration count is bounded. A loop ``timeout`` fails the loop with
  ``TIMEOUT`` under its own ``on_failure`` policy.
- Try: an abort whose category a ``catch`` clause names runs that clause's
  body instead of propagating.

Result
------

A run never raises for task failures: it returns a ``CapabilityResult`` with
status ``completed`` or ``aborted`` and the full trace.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional

from langgraph.graph import END as GRAPH_END
from langgraph.graph import StateGraph

from ..capability import expressions
from ..capability.errors import (
    A2SError,
    AbortError,
    ErrorCategory,
    TaskTimeoutError,
    ValidationError,
    category_of,
)
from ..capability.flow import (
    END,
    ConditionNode,
    FlowNode,
    LoopNode,
    ParallelNode,
    SequenceNode,
    TaskNode,
    TryNode,
)
from ..capability.loader import LoadedCapability
from ..capability.schemas.document import FailureAction, OnFailure
from ..capability.schemas.domain import (
    CapabilityResult,
    ErrorInfo,
    RunError,
    RunStatus,
    TaskResult,
    TaskStatus,
    TraceEntry,
)
from ..state.store import StateStore
from ..state.validation import validate_value
from .context import CancelScope, ExecutionContext
from .dispatcher import TaskDispatcher
from .models import EngineDeps, _FlowState
from .resolver import ReferenceResolver

logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class FlowOrchestrator:
    """Execute capability flows; see the module docstring for the semantics."""

    def __init__(self, *, deps: EngineDeps, resolver: Optional[ReferenceResolver] = None) -> None:
        """
        Initialize the FlowOrchestrator.

        Args:
            deps: The runtime dependencies (invokers, vaults, settings).
            resolver: Reference resolver shared by all runs; one is created
                when omitted.
        """
        self._deps = deps
        self._resolver = resolver or ReferenceResolver()
        self._dispatcher = TaskDispatcher(
            resolver=self._resolver,
            http_invoke=deps.http_invoke,
            llm_complete=deps.llm_complete,
        )
        self._graph = self._build_graph()

    @property
    def dispatcher(self) -> TaskDispatcher:
        return self._dispatcher

    def _build_graph(self):
        """Build and compile the LangGraph state machine."""
        g: StateGraph = StateGraph(_FlowState)
        g.add_node("start", self._node_start)
        g.add_node("execute", self._node_execute_next)
        g.add_node("finish", self._node_finish)

        g.set_entry_point("start")
        g.add_edge("start", "execute")
        g.add_conditional_edges(
            "execute",
            self._route_after_execute,
            {
                "finish": "finish",
                "continue": "execute",
            },
        )
        g.add_edge("finish", GRAPH_END)
        return g.compile()

    # ------------------------------------------------------------------
    # public API
    # ------------------------------------------------------------------

    def new_context(
        self,
        capability: LoadedCapability,
        inputs: Mapping[str, Any],
        *,
        run_id: Optional[str] = None,
    ) -> ExecutionContext:
        store = StateStore(
            service_vault=self._deps.service_vault,
            shared_vault=self._deps.shared_vault,
            cipher=self._deps.cipher,
            is_trusted=self._deps.is_trusted,
        )
        return ExecutionContext(
            capability=capability,
            inputs=dict(inputs),
            store=store,
            settings=self._deps.settings,
            run_id=run_id,
        )

    async def run(
        self,
        capability: LoadedCapability,
        inputs: Optional[Mapping[str, Any]] = None,
        *,
        context: Optional[ExecutionContext] = None,
        run_id: Optional[str] = None,
    ) -> CapabilityResult:
        """
        Execute ``capability`` with ``inputs``.

        Args:
            capability: A capability returned by the loader.
            inputs: Capability-level inputs. Ignored when ``context`` is
                given (the context already carries them).
            context: A prepared context, e.g. the child context of a nested
                capability run.
            run_id: Identifier of the run; generated when omitted.

        Returns:
            The capability result. Task failures are reported in it, never
            raised.
        """
        started = _utc_now()
        raw_inputs = dict(context.inputs if context is not None else (inputs or {}))
        ctx = context or self.new_context(capability, raw_inputs, run_id=run_id)
        try:
            ctx.inputs = self.bind_inputs(capability, raw_inputs)
        except ValidationError as exc:
            logger.warning("run %s: capability inputs rejected: %s", ctx.run_id, exc.message)
            return CapabilityResult(
                run_id=ctx.run_id,
                capability_id=capability.id,
                capability_version=capability.version,
                status=RunStatus.aborted,
                error=RunError(category=exc.category, message=exc.message),
                started_at=started,
            )

        logger.info("run %s: capability %s@%s started", ctx.run_id, capability.id, capability.version)
        steps: List[FlowNode] = list(capability.flow.steps)
        state: _FlowState = {"ctx": ctx, "steps": steps, "idx": 0}
        final = await self._graph.ainvoke(state, config={"recursion_limit": len(steps) + 10})

        error: Optional[RunError] = final.get("_error")
        status = RunStatus.aborted if error is not None else RunStatus.completed
        logger.info("run %s: capability %s finished with status %s", ctx.run_id, capability.id, status.value)
        return CapabilityResult(
            run_id=ctx.run_id,
            capability_id=capability.id,
            capability_version=capability.version,
            status=status,
            outputs=final.get("_outputs") or {},
            trace=list(ctx.trace),
            error=error,
            started_at=started,
        )

    @staticmethod
    def bind_inputs(capability: LoadedCapability, inputs: Mapping[str, Any]) -> Dict[str, Any]:
        """Apply declared defaults and validate capability inputs.

        Raises:
            ValidationError: if a required input is missing or a value does
                not match its declaration.
        """
        bound = dict(inputs)
        for name, spec in capability.document.inputs.items():
            if name not in bound:
                if spec.default is not None:
                    bound[name] = spec.default
                elif spec.required:
                    raise ValidationError(f"required capability input {name!r} is missing")
                else:
                    continue
            validate_value(f"inputs.{name}", bound[name], spec)
        return bound

    # ------------------------------------------------------------------
    # graph nodes
    # ------------------------------------------------------------------

    async def _node_start(self, state: _FlowState) -> _FlowState:
        """Graph entry node. Currently a no-op."""
        return state

    async def _node_execute_next(self, state: _FlowState) -> _FlowState:
        """Execute the next top-level flow node."""
        ctx = state["ctx"]
        steps = state["steps"]
        idx = int(state.get("idx") or 0)
        if idx >= len(steps):
            state["_finished"] = True
            return state

        try:
            target = await self._run_node(steps[idx], ctx)
        except A2SError as exc:
            category = category_of(exc)
            task_id = exc.task_id if isinstance(exc, AbortError) else None
            logger.warning("run %s aborted: [%s] %s", ctx.run_id, category.value, exc.message)
            state["_error"] = RunError(category=category, message=exc.message, task_id=task_id, trace=list(ctx.trace))
            state["_finished"] = True
            return state

        if target == END:
            state["_finished"] = True
            return state
        if target is not None:
            jump = _find_step(steps, target, idx)
            if jump is None:
                logger.warning("run %s: jump target %r not found after step %d; stopping", ctx.run_id, target, idx)
                state["_finished"] = True
                return state
            state["idx"] = jump
            return state
        state["idx"] = idx + 1
        return state

    def _route_after_execute(self, state: _FlowState) -> str:
        return "finish" if state.get("_finished") else "continue"

    async def _node_finish(self, state: _FlowState) -> _FlowState:
        """Gather the capability outputs (skipped for aborted runs)."""
        if state.get("_error") is None:
            state["_outputs"] = self._gather_outputs(state["ctx"])
        return state

    def _gather_outputs(self, ctx: ExecutionContext) -> Dict[str, Any]:
        outputs: Dict[str, Any] = {}
        for name, spec in ctx.capability.document.outputs.items():
            expression = spec.expression()
            if expression is None:
                outputs[name] = ctx.latest.get(name, spec.default)
                continue
            try:
                outputs[name] = self._resolver.resolve(expression, ctx)
            except A2SError as exc:
                logger.warning("run %s: output %r is unavailable: %s", ctx.run_id, name, exc.message)
                outputs[name] = spec.default
        return outputs

    # ------------------------------------------------------------------
    # node interpretation
    # ------------------------------------------------------------------

    async def _run_node(self, node: FlowNode, ctx: ExecutionContext) -> Optional[str]:
        """Execute ``node``; return a jump target (``end`` or a step label) or None."""
        ctx.cancel.raise_if_cancelled(node.label)
        if isinstance(node, TaskNode):
            return await self._run_task(node, ctx)
        if isinstance(node, SequenceNode):
            return await self._run_sequence(node.steps, ctx)
        if isinstance(node, ParallelNode):
            await self._run_parallel(node, ctx)
            return None
        if isinstance(node, ConditionNode):
            return await self._run_condition(node, ctx)
        if isinstance(node, LoopNode):
            return await self._run_loop(node, ctx)
        if isinstance(node, TryNode):
            return await self._run_try(node, ctx)
        raise TypeError(f"unknown flow node: {node!r}")

    async def _dispatch(self, task_id: str, ctx: ExecutionContext) -> TaskResult:
        task = ctx.capability.task(task_id)
        if task is None:
            raise AbortError(f"flow references unknown task {task_id!r}", task_id=task_id)
        result = await self._dispatcher.execute(task, ctx, run_child=self._run_child)
        if result.status == TaskStatus.failed:
            self._apply_on_failure(task.on_failure, result.error, task_id)
        return result

    @staticmethod
    def _apply_on_failure(policy: OnFailure, error: Optional[ErrorInfo], task_id: str) -> None:
        category = error.category if error is not None else ErrorCategory.ABORT
        message = error.message if error is not None else "failed"
        if policy.action == FailureAction.continue_:
            logger.info("%s failed with %s; continuing per on_failure policy", task_id, category.value)
            return
        raise AbortError(policy.message or f"{task_id} failed: {message}", category=category, task_id=task_id)

    async def _run_task(self, node: TaskNode, ctx: ExecutionContext) -> Optional[str]:
        result = await self._dispatch(node.task_id, ctx)
        if node.next is None or result.status == TaskStatus.skipped:
            return None
        if isinstance(node.next, str):
            return node.next
        if result.status == TaskStatus.failed:
            # Continued failure: no branch was taken, outputs stay unset.
            return node.next.get("default")
        key = result.branch if result.branch is not None else "default"
        if key in node.next:
            return node.next[key]
        return node.next.get("default")

    async def _run_sequence(self, steps: tuple, ctx: ExecutionContext) -> Optional[str]:
        i = 0
        while i < len(steps):
            target = await self._run_node(steps[i], ctx)
            if target is None:
                i += 1
                continue
            if target == END:
                return END
            jump = _find_step(steps, target, i)
            if jump is None:
                # Not in this sequence: let the enclosing sequence jump.
                return target
            i = jump
        return None

    async def _run_parallel(self, node: ParallelNode, ctx: ExecutionContext) -> None:
        scope = CancelScope(parent=ctx.cancel)
        limit = asyncio.Semaphore(max(1, ctx.settings.max_parallel_branches))
        branch_contexts = [ctx.fork(scope) for _ in node.branches]
        first_failure: List[A2SError] = []

        async def run_branch(index: int, branch: FlowNode, bctx: ExecutionContext) -> None:
            async with limit:
                try:
                    bctx.cancel.raise_if_cancelled(f"{node.label} branch {index}")
                    await self._run_node(branch, bctx)
                except A2SError as exc:
                    if not first_failure:
                        first_failure.append(exc)
                        scope.cancel(f"branch {index} of {node.label} failed: {exc.message}")
                    raise

        logger.debug("parallel %s: %d branches", node.label, len(node.branches))
        results = await asyncio.gather(
            *(run_branch(i, b, c) for i, (b, c) in enumerate(zip(node.branches, branch_contexts))),
            return_exceptions=True,
        )
        for bctx in branch_contexts:
            ctx.merge(bctx)
        for outcome in results:
            if isinstance(outcome, BaseException) and not isinstance(outcome, A2SError):
                raise outcome
        if first_failure:
            exc = first_failure[0]
            if isinstance(exc, AbortError):
                raise exc
            raise AbortError(exc.message, category=category_of(exc))

    async def _run_condition(self, node: ConditionNode, ctx: ExecutionContext) -> Optional[str]:
        if node.task_id is not None:
            result = await self._dispatch(node.task_id, ctx)
            if result.status != TaskStatus.succeeded:
                return None
            branch = result.branch or "default"
        else:
            started = _utc_now()
            decided = self._evaluate(str(node.expression), ctx, node.label)
            branch = "true" if decided else "false"
            ctx.add_trace(
                TraceEntry(
                    task_id=node.label,
                    node="condition",
                    status=TaskStatus.succeeded,
                    started_at=started,
                    branch=branch,
                    iteration=ctx.loop_index,
                )
            )
        body = node.branch(branch)
        if body is None:
            logger.debug("condition %s: no branch for %r", node.label, branch)
            return None
        return await self._run_node(body, ctx)

    def _evaluate(self, text: str, ctx: ExecutionContext, where: str) -> bool:
        try:
            return expressions.evaluate(text, lambda path: self._resolver.lookup(path, ctx))
        except A2SError as exc:
            raise AbortError(f"{where}: {exc.message}", category=category_of(exc)) from exc

    async def _run_loop(self, node: LoopNode, ctx: ExecutionContext) -> Optional[str]:
        bound = node.max_iterations if node.max_iterations is not None else ctx.settings.max_loop_iterations

        async def iterate() -> Optional[str]:
            for index in range(bound):
                ctx.cancel.raise_if_cancelled(node.label)
                with ctx.loop_iteration(index):
                    if node.while_ is not None and not self._evaluate(node.while_, ctx, node.label):
                        return None
                    target = await self._run_node(node.body, ctx)
                    if target is not None:
                        return target
                    if node.until is not None and self._evaluate(node.until, ctx, node.label):
                        return None
            if node.while_ is not None or node.until is not None:
                logger.warning("loop %s stopped at its bound of %d iterations", node.label, bound)
            return None

        if node.timeout is None:
            return await iterate()
        started = _utc_now()
        try:
            return await asyncio.wait_for(iterate(), node.timeout)
        except asyncio.TimeoutError:
            error = ErrorInfo.from_exception(
                TaskTimeoutError(f"loop {node.label} exceeded its timeout of {node.timeout:g}s"),
                task_id=node.label,
            )
            ctx.add_trace(
                TraceEntry(
                    task_id=node.label,
                    node="loop",
                    status=TaskStatus.failed,
                    started_at=started,
                    error=error,
                )
            )
            self._apply_on_failure(node.on_failure, error, node.label)
            return None

    async def _run_try(self, node: TryNode, ctx: ExecutionContext) -> Optional[str]:
        try:
            return await self._run_node(node.body, ctx)
        except AbortError as exc:
            for clause in node.handlers:
                if clause.matches(exc.category.value):
                    logger.info("try %s caught %s: %s", node.label, exc.category.value, exc.message)
                    return await self._run_node(clause.body, ctx)
            raise

    async def _run_child(self, capability: LoadedCapability, context: ExecutionContext) -> CapabilityResult:
        """Run a nested capability on its prepared child context."""
        if context.depth > _MAX_NESTING:
            raise AbortError(
                f"capability {capability.id} nested deeper than {_MAX_NESTING} levels",
                category=ErrorCategory.CAPABILITY_FAILED,
            )
        return await self.run(capability, context=context)


_MAX_NESTING = 32


def _find_step(steps: Any, target: str, after: int) -> Optional[int]:
    """Index of the step labelled ``target`` after position ``after``."""
    for j in range(after + 1, len(steps)):
        step = steps[j]
        if step.label == target or (isinstance(step, TaskNode) and step.task_id == target):
            return j
    return None

