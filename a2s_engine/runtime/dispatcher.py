from __future__ import annotations

"""Task Dispatcher.

Executes exactly one leaf task and reports a ``TaskResult``. Concurrency and
branching belong to the Flow Orchestrator; the dispatcher only reports what
a condition task decided.

Lifecycle of one task (see ``fsm.TaskStateMachine``):

1. ``PENDING``: the cancel flag is checked and an optional guard
   (``condition`` on a non-condition task) is evaluated. A false guard
   skips the task.
2. ``RESOLVING_INPUTS``: every input binding is resolved and validated
   against its declaration. A failure here fails the task without invoking
   its body.
3. ``RUNNING``: the body runs under a deadline (the task's ``timeout`` or
   ``EngineSettings.default_task_timeout``):

   - ``request``: build an HTTP/GraphQL request from the referenced
     fragment and hand it to the HTTP invoker,
   - ``agent_decision`` / ``sampling``: render the prompt and hand it to the
     decision invoker together with an output schema,
   - ``condition``: evaluate the expression (or named cases),
   - ``capability``: run the dependency through the orchestrator on a fresh
     child context.

4. Outputs are read from the task response and written to the State Store
   at the tier each output declares. Temporary-tier outputs live only until
   the task's scope closes.

The whole execution runs inside one temporary scope of the State Store.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple
from urllib.parse import quote

from ..capability import expressions
from ..capability.errors import (
    A2SError,
    AccessDenied,
    ErrorCategory,
    InvocationError,
    NotFound,
    ResolutionError,
    TaskTimeoutError,
)
from ..capability.loader import LoadedCapability
from ..capability.references import split_path
from ..capability.schemas.document import TaskSpec, TaskType, Tier
from ..capability.schemas.domain import CapabilityResult, ErrorInfo, TaskResult, TaskStatus, TraceEntry
from ..invokers.base import HttpInvoker, HttpRequest, HttpResponse, LlmInvoker
from ..state.validation import validate_value
from .context import ExecutionContext
from .fsm import TaskState, TaskStateMachine
from .resolver import ReferenceResolver, to_text, walk

logger = logging.getLogger(__name__)

RunChild = Callable[[LoadedCapability, ExecutionContext], Awaitable[CapabilityResult]]

_HTTP_METHODS = ("get", "post", "put", "patch", "delete", "head", "options")
_BODY_METHODS = ("POST", "PUT", "PATCH")
AUTH_TOKEN_VARIABLE = "auth.token"
GRAPHQL_QUERY_KEY = "query"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class TaskDispatcher:
    """Execute single tasks; see the module docstring for the lifecycle."""

    def __init__(
        self,
        *,
        resolver: ReferenceResolver,
        http_invoke: Optional[HttpInvoker] = None,
        llm_complete: Optional[LlmInvoker] = None,
    ) -> None:
        self._resolver = resolver
        self._http_invoke = http_invoke
        self._llm_complete = llm_complete

    async def execute(
        self,
        task: TaskSpec,
        context: ExecutionContext,
        *,
        run_child: Optional[RunChild] = None,
    ) -> TaskResult:
        """
        Execute ``task`` in ``context`` and record it in the trace.

        Args:
            task: A leaf task of the running capability.
            context: The run (or branch) context.
            run_child: Runs a nested capability; required for ``capability``
                tasks.

        Returns:
            The task result. Failures are reported, not raised; applying
            the task's ``on_failure`` policy is the orchestrator's job.
        """
        fsm = TaskStateMachine(task.id)
        started = _utc_now()
        children: List[TraceEntry] = []
        try:
            context.cancel.raise_if_cancelled(f"task {task.id}")
            if task.guard is not None and not self._evaluate(task.guard, context, task.service):
                fsm.advance(TaskState.SKIPPED)
                logger.info("task %s skipped: guard %r is false", task.id, task.guard)
                result = TaskResult(task_id=task.id, status=TaskStatus.skipped)
                self._trace(context, result, started, children)
                return result

            with context.store.task_scope(task.id):
                fsm.advance(TaskState.RESOLVING_INPUTS)
                inputs = self._resolve_inputs(task, context)

                fsm.advance(TaskState.RUNNING)
                logger.debug("task %s (%s) running", task.id, task.type.value)
                roots, branch = await self._run_body(task, context, inputs, run_child, children)
                context.cancel.raise_if_cancelled(f"task {task.id}")
                outputs = self._store_outputs(task, context, roots)

            fsm.advance(TaskState.SUCCEEDED)
            result = TaskResult(task_id=task.id, status=TaskStatus.succeeded, outputs=outputs, branch=branch)
        except A2SError as exc:
            result = self._failed(task, fsm, exc)
        except Exception as exc:
            logger.exception("task %s: collaborator raised an unexpected error", task.id)
            result = self._failed(task, fsm, InvocationError(f"{type(exc).__name__}: {exc}"))
        self._trace(context, result, started, children)
        return result

    # -- lifecycle helpers -------------------------------------------------

    @staticmethod
    def _failed(task: TaskSpec, fsm: TaskStateMachine, exc: A2SError) -> TaskResult:
        if not fsm.terminal:
            fsm.advance(TaskState.FAILED)
        error = ErrorInfo.from_exception(exc, task_id=task.id)
        logger.warning("task %s failed: [%s] %s", task.id, error.category.value, error.message)
        return TaskResult(task_id=task.id, status=TaskStatus.failed, error=error)

    @staticmethod
    def _trace(context: ExecutionContext, result: TaskResult, started: datetime, children: List[TraceEntry]) -> None:
        context.add_trace(
            TraceEntry(
                task_id=result.task_id,
                node=result.task_id,
                status=result.status,
                started_at=started,
                ended_at=_utc_now(),
                error=result.error,
                branch=result.branch,
                iteration=context.loop_index,
                children=children,
            )
        )

    def _evaluate(
        self,
        text: str,
        context: ExecutionContext,
        domain: Optional[str],
        local: Optional[Dict[str, Any]] = None,
    ) -> bool:
        return expressions.evaluate(
            text, lambda path: self._resolver.lookup(path, context, domain=domain, local=local)
        )

    def _timeout(self, task: TaskSpec, context: ExecutionContext) -> float:
        return task.timeout if task.timeout is not None else context.settings.default_task_timeout

    async def _suspend(self, task: TaskSpec, context: ExecutionContext, awaitable: Awaitable[Any], timeout: float) -> Any:
        """Await a collaborator call under the task deadline."""
        try:
            return await asyncio.wait_for(awaitable, timeout)
        except asyncio.TimeoutError:
            raise TaskTimeoutError(f"task {task.id} exceeded its deadline of {timeout:g}s") from None

    # -- inputs ------------------------------------------------------------

    def _resolve_inputs(self, task: TaskSpec, context: ExecutionContext) -> Dict[str, Any]:
        resolved: Dict[str, Any] = {}
        for name, binding in task.inputs.items():
            if binding.expression is None:
                if binding.spec.required:
                    raise ResolutionError(f"task {task.id}: required input {name!r} has no binding")
                continue
            value = self._resolver.resolve(binding.expression, context, domain=task.service)
            validate_value(f"{task.id}.inputs.{name}", value, binding.spec)
            resolved[name] = value
            if binding.spec.tier == Tier.temporary:
                context.store.set_temporary(name, value)
        return resolved

    # -- bodies --------------------------------------------------------------

    async def _run_body(
        self,
        task: TaskSpec,
        context: ExecutionContext,
        inputs: Dict[str, Any],
        run_child: Optional[RunChild],
        children: List[TraceEntry],
    ) -> Tuple[Dict[str, Any], Optional[str]]:
        if task.type == TaskType.request:
            return await self._run_request(task, context, inputs), None
        if task.type in (TaskType.agent_decision, TaskType.sampling):
            return await self._run_decision(task, context, inputs), None
        if task.type == TaskType.condition:
            return self._run_condition(task, context, inputs)
        if task.type == TaskType.capability:
            return await self._run_capability(task, context, inputs, run_child, children), None
        raise InvocationError(f"task {task.id}: {task.type.value} tasks are expanded by the flow, not dispatched")

    async def _run_request(self, task: TaskSpec, context: ExecutionContext, inputs: Dict[str, Any]) -> Dict[str, Any]:
        if self._http_invoke is None:
            raise InvocationError(f"task {task.id}: no HTTP invoker is configured")
        request = self.build_request(task, context, inputs)
        timeout = self._timeout(task, context)
        logger.info("task %s: %s %s", task.id, request.method, request.url)
        response: HttpResponse = await self._suspend(task, context, self._http_invoke(request, timeout), timeout)
        if response.status == 429:
            raise InvocationError(
                f"task {task.id}: {request.method} {request.url} was rate limited",
                category=ErrorCategory.RATE_LIMIT,
                status=response.status,
            )
        if response.status >= 400:
            raise InvocationError(
                f"task {task.id}: {request.method} {request.url} returned HTTP {response.status}",
                category=ErrorCategory.HTTP_ERROR,
                status=response.status,
            )
        return {"response": response.body, "status": response.status, "headers": dict(response.headers)}

    def build_request(self, task: TaskSpec, context: ExecutionContext, inputs: Dict[str, Any]) -> HttpRequest:
        """Build the HTTP request of a ``request`` task from its fragment and overrides."""
        domain = task.service
        fragment: Dict[str, Any] = {}
        if isinstance(task.request, str):
            fragment = self._resolver.resolve_ref(task.request, context)
        elif isinstance(task.request, dict):
            fragment = self._resolve_fragment(task.request, context, domain, inputs)
        if not isinstance(fragment, dict):
            raise InvocationError(f"task {task.id}: request {task.request!r} is not a request fragment")
        spec = fragment.get("specification") if isinstance(fragment.get("specification"), dict) else fragment
        fmt = str(fragment.get("format") or "").lower()

        method = "GET"
        path = ""
        headers: Dict[str, str] = {}
        query: Dict[str, Any] = {}
        body: Any = None
        consumed: set = set()

        if fmt == "graphql" or (isinstance(spec.get("query"), str) and "paths" not in spec):
            method = "POST"
            path = str(spec.get("path") or "")
            variables = spec.get("variables")
            body = {
                "query": spec.get("query"),
                "variables": self._resolver.resolve(variables, context, domain=domain, local=inputs)
                if variables is not None
                else dict(inputs),
            }
        elif spec.get("paths"):
            path, operations = next(iter(spec["paths"].items()))
            operations = operations or {}
            op_name = next((m for m in operations if str(m).lower() in _HTTP_METHODS), "get")
            method = str(op_name).upper()
            operation = operations.get(op_name) or {}
            params = list(operations.get("parameters") or []) + list(operation.get("parameters") or [])
            for param in params:
                name = param.get("name")
                location = param.get("in", "query")
                if name not in inputs:
                    if param.get("required"):
                        raise ResolutionError(f"task {task.id}: required {location} parameter {name!r} is not bound")
                    continue
                consumed.add(name)
                value = inputs[name]
                if location == "path":
                    path = path.replace("{" + name + "}", quote(to_text(value), safe=""))
                elif location == "header":
                    headers[name] = to_text(value)
                elif location == "query":
                    query[name] = value
            if "requestBody" in operation or method in _BODY_METHODS:
                remaining = {k: v for k, v in inputs.items() if k not in consumed}
                body = remaining or None

        if task.method:
            method = task.method.upper()
        if task.path is not None:
            path = task.path
        path = to_text(self._resolver.render(path, context, domain=domain, local=inputs)) if path else ""
        headers.update({k: to_text(v) for k, v in self._resolver.resolve(task.headers, context, domain=domain, local=inputs).items()})
        query.update(self._resolver.resolve(task.query, context, domain=domain, local=inputs))
        if task.body is not None:
            body = self._resolver.resolve(task.body, context, domain=domain, local=inputs)

        if task.url is not None:
            url = to_text(self._resolver.render(task.url, context, domain=domain, local=inputs))
        else:
            url = _join_url(self._base_url(task, context, spec), path)

        if domain and "Authorization" not in headers:
            token = self._service_token(context, domain)
            if token is not None:
                headers["Authorization"] = f"Bearer {token}"
        return HttpRequest(method=method, url=url, headers=headers, query=query, body=body)

    def _resolve_fragment(self, value: Any, context: ExecutionContext, domain: Optional[str], inputs: Dict[str, Any]) -> Any:
        """Resolve an inline request fragment; GraphQL ``query`` documents are kept verbatim."""
        if isinstance(value, dict) and not _is_reference(value):
            return {
                k: v if k == GRAPHQL_QUERY_KEY and isinstance(v, str) else self._resolve_fragment(v, context, domain, inputs)
                for k, v in value.items()
            }
        return self._resolver.resolve(value, context, domain=domain, local=inputs)

    @staticmethod
    def _base_url(task: TaskSpec, context: ExecutionContext, spec: Dict[str, Any]) -> str:
        if task.service:
            service = context.capability.document.services.get(task.service)
            if service is not None and service.base_url:
                return service.base_url
        servers = spec.get("servers") or []
        if servers and isinstance(servers[0], dict) and servers[0].get("url"):
            return str(servers[0]["url"])
        return ""

    @staticmethod
    def _service_token(context: ExecutionContext, domain: str) -> Optional[str]:
        try:
            token = context.store.get_service(domain, AUTH_TOKEN_VARIABLE)
        except (NotFound, AccessDenied):
            return None
        return to_text(token)

    async def _run_decision(self, task: TaskSpec, context: ExecutionContext, inputs: Dict[str, Any]) -> Dict[str, Any]:
        if self._llm_complete is None:
            raise InvocationError(f"task {task.id}: no decision invoker is configured")
        template = task.prompt.template if task.prompt is not None else ""
        prompt = to_text(self._resolver.render(template, context, domain=task.service, local=inputs))
        system: Optional[str] = None
        if task.prompt is not None and task.prompt.system:
            system = to_text(self._resolver.render(task.prompt.system, context, domain=task.service, local=inputs))
        if task.type == TaskType.sampling and task.sampling:
            prompt = f"{prompt}\n\nSampling parameters: {to_text(task.sampling)}"
        timeout = self._timeout(task, context)
        response = await self._suspend(
            task,
            context,
            self._llm_complete(prompt, output_schema(task), context=inputs, system=system, timeout=timeout),
            timeout,
        )
        return {"response": response}

    def _run_condition(
        self, task: TaskSpec, context: ExecutionContext, inputs: Dict[str, Any]
    ) -> Tuple[Dict[str, Any], Optional[str]]:
        if task.cases:
            branch = "default"
            for name, text in task.cases.items():
                if self._evaluate(text, context, task.service, inputs):
                    branch = name
                    break
            result = branch != "default"
        else:
            result = self._evaluate(str(task.expression), context, task.service, inputs)
            branch = "true" if result else "false"
        logger.info("condition %s -> %s", task.id, branch)
        decision = {"result": result, "branch": branch}
        return {"response": decision, **decision}, branch

    async def _run_capability(
        self,
        task: TaskSpec,
        context: ExecutionContext,
        inputs: Dict[str, Any],
        run_child: Optional[RunChild],
        children: List[TraceEntry],
    ) -> Dict[str, Any]:
        if run_child is None:
            raise InvocationError(f"task {task.id}: nested capability runs are not available here")
        dependency = context.capability.dependency(str(task.capability))
        if dependency is None:
            raise InvocationError(
                f"task {task.id}: capability {task.capability!r} is not a loaded dependency",
                category=ErrorCategory.CAPABILITY_FAILED,
            )
        if task.input_mapping:
            child_inputs = self._resolver.resolve(task.input_mapping, context, domain=task.service, local=inputs)
        else:
            child_inputs = dict(inputs)
        child = context.child_run(dependency, child_inputs)
        logger.info("task %s: running capability %s@%s", task.id, dependency.id, dependency.version)
        if task.timeout is not None:
            result = await self._suspend(task, context, run_child(dependency, child), task.timeout)
        else:
            result = await run_child(dependency, child)
        children.extend(result.trace)
        if not result.ok:
            reason = result.error.message if result.error is not None else "aborted"
            kind = result.error.category.value if result.error is not None else ErrorCategory.ABORT.value
            raise InvocationError(
                f"task {task.id}: capability {dependency.id} aborted ({kind}): {reason}",
                category=ErrorCategory.CAPABILITY_FAILED,
            )
        outputs = dict(result.outputs)
        mapped = {name: _child_output(outputs, source, task.id) for name, source in task.output_mapping.items()}
        return {"response": mapped if task.output_mapping else outputs, "outputs": outputs}

    # -- outputs ---------------------------------------------------------------

    def _store_outputs(self, task: TaskSpec, context: ExecutionContext, roots: Dict[str, Any]) -> Dict[str, Any]:
        response = roots.get("response")
        if task.outputs:
            values = {name: _read_output(roots, binding.source, task.id) for name, binding in task.outputs.items()}
        elif isinstance(response, dict):
            values = dict(response)
        else:
            values = {"result": response}

        recorded: Dict[str, Any] = {}
        for name, value in values.items():
            binding = task.outputs.get(name)
            spec = binding.spec if binding is not None else None
            validate_value(f"{task.id}.outputs.{name}", value, spec)
            tier = binding.tier if binding is not None else None
            if tier == Tier.temporary:
                context.store.set_temporary(name, value, spec=spec)
                continue
            if tier == Tier.service:
                context.store.set_service(str(task.service), name, value, spec=spec)
            elif tier == Tier.shared:
                trusted = (spec.trusted_domains if spec is not None else []) or sorted(
                    context.capability_domains or ({task.service} if task.service else set())
                )
                context.store.set_shared(name, value, trusted, spec=spec)
            recorded[name] = value
        context.record_outputs(task.id, recorded)
        return recorded


def output_schema(task: TaskSpec) -> Dict[str, Any]:
    """JSON-schema-like description of the response a decision task must return."""
    properties: Dict[str, Any] = {}
    for name, binding in task.outputs.items():
        segments = split_path(binding.source)
        key = str(segments[1]) if len(segments) >= 2 and segments[0] == "response" else name
        prop: Dict[str, Any] = {}
        if binding.spec.type:
            prop["type"] = binding.spec.type
        if binding.spec.description:
            prop["description"] = binding.spec.description
        if binding.spec.enum:
            prop["enum"] = list(binding.spec.enum)
        properties[key] = prop
    return {"type": "object", "properties": properties, "required": sorted(properties)}


def _read_output(roots: Dict[str, Any], source: str, task_id: str) -> Any:
    segments = split_path(source)
    path = f"{task_id} output {source}"
    if segments and isinstance(segments[0], str) and segments[0] in roots:
        return walk(roots[segments[0]], segments[1:], path)
    return walk(roots.get("response"), segments, path)


def _child_output(outputs: Dict[str, Any], source: str, task_id: str) -> Any:
    segments = split_path(source)
    if segments and segments[0] in ("outputs", "response"):
        segments = segments[1:]
    return walk(outputs, segments, f"{task_id} output_mapping {source}")


def _is_reference(value: Dict[str, Any]) -> bool:
    return len(value) == 1 and next(iter(value)) in ("$ref", "mapping", "value")


def _join_url(base: str, path: str) -> str:
    if not base:
        return path
    if not path:
        return base
    if path.startswith(("http://", "https://")):
        return path
    return base.rstrip("/") + "/" + path.lstrip("/")
