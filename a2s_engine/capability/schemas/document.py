from __future__ import annotations

"""Pydantic models of the A2S capability document.

The models accept every documented revision of the format and normalize it
into a single shape:

- ``id`` or the legacy ``name``; ``services`` or ``domains``.
- Task parameters either as ``input: {mappings: {...}}`` /
  ``output: {mappings: {...}}`` or as per-parameter declarations under
  ``inputs`` / ``outputs``.
- Tasks declared under ``tasks`` or inline under ``execution.steps``.
- Storage tiers named ``service/shared/temporary`` or
  ``persistent/session|capability/task|execution``.

Parsing is structural only. Cross-references, the flow graph and the
atomic/aggregate invariant are checked by ``CapabilityValidator``.
"""

import re
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import AliasChoices, Field, field_validator, model_validator

from .base import DocumentSchema

_PATH_RE = re.compile(r"^[A-Za-z_$][\w\-]*(?:\.[\w\-]+|\[\d+\])+$")

FLOW_NODE_TYPES = frozenset({"sequence", "parallel", "condition", "loop", "while", "repeat", "try"})

_DECLARATION_KEYS = frozenset({"type", "description", "required", "default", "$ref", "ref", "mapping", "value"})


class CapabilityType(str, Enum):
    atomic = "atomic"
    aggregate = "aggregate"


class TaskType(str, Enum):
    request = "request"
    agent_decision = "agent_decision"
    condition = "condition"
    capability = "capability"
    sampling = "sampling"
    parallel = "parallel"
    sequence = "sequence"


COMPOSITE_TASK_TYPES = frozenset({TaskType.parallel, TaskType.sequence})


class ValueType(str, Enum):
    string = "string"
    number = "number"
    integer = "integer"
    boolean = "boolean"
    date = "date"
    object = "object"
    array = "array"


class Tier(str, Enum):
    """Storage tier of a variable.

    Later protocol revisions renamed the tiers; the old and new names are
    aliases of the same three tiers.
    """

    service = "service"
    shared = "shared"
    temporary = "temporary"

    @classmethod
    def parse(cls, value: Union[str, "Tier", None]) -> Optional["Tier"]:
        if value is None or isinstance(value, Tier):
            return value
        key = str(value).strip().lower()
        tier = _TIER_ALIASES.get(key)
        if tier is None:
            raise ValueError(f"unknown storage tier or lifecycle: {value!r}")
        return tier


_TIER_ALIASES: Dict[str, Tier] = {
    "service": Tier.service,
    "persistent": Tier.service,
    "shared": Tier.shared,
    "session": Tier.shared,
    "capability": Tier.shared,
    "temporary": Tier.temporary,
    "task": Tier.temporary,
    "execution": Tier.temporary,
}


class FailureAction(str, Enum):
    continue_ = "continue"
    abort = "abort"


class PermissionLevel(str, Enum):
    basic = "basic"
    elevated = "elevated"
    admin = "admin"


class AuditStatus(str, Enum):
    audited = "audited"
    unaudited = "unaudited"
    in_progress = "in-progress"


def normalize_expression(raw: Any) -> Any:
    """Normalize a binding expression.

    An unquoted ``key: {inputs.name}`` in YAML parses as the flow mapping
    ``{"inputs.name": None}``; such single-key mappings are read back as the
    ``mapping`` reference the author meant. Nested structures are normalized
    recursively.
    """
    if isinstance(raw, dict):
        if len(raw) == 1:
            (key, value), = raw.items()
            if value is None and isinstance(key, str) and _PATH_RE.match(key):
                return {"mapping": key}
        return {k: normalize_expression(v) for k, v in raw.items()}
    if isinstance(raw, list):
        return [normalize_expression(v) for v in raw]
    return raw


# ---------------------------------------------------------------------------
# Parameters and bindings
# ---------------------------------------------------------------------------


class VariableSpec(DocumentSchema):
    """Declaration of a capability-level or task-level parameter."""

    type: Optional[str] = None
    description: Optional[str] = None
    required: bool = False
    default: Any = None
    example: Any = None
    pattern: Optional[str] = None
    min: Optional[float] = Field(default=None, validation_alias=AliasChoices("min", "minimum"))
    max: Optional[float] = Field(default=None, validation_alias=AliasChoices("max", "maximum"))
    format: Optional[str] = None
    enum: Optional[List[Any]] = None
    properties: Dict[str, Any] = Field(default_factory=dict)
    items: Optional[Dict[str, Any]] = None
    lifecycle: Optional[str] = Field(default=None, validation_alias=AliasChoices("lifecycle", "tier", "storage"))
    expiry: Optional[float] = None
    trusted_domains: List[str] = Field(default_factory=list)
    mapping: Optional[str] = None
    ref: Optional[str] = Field(default=None, validation_alias=AliasChoices("$ref", "ref"))
    value: Any = None

    @property
    def tier(self) -> Optional[Tier]:
        return Tier.parse(self.lifecycle)

    @field_validator("lifecycle")
    @classmethod
    def _known_lifecycle(cls, v: Optional[str]) -> Optional[str]:
        Tier.parse(v)
        return v

    def expression(self) -> Any:
        """Return the binding expression this declaration carries, if any."""
        if self.ref is not None:
            return {"$ref": self.ref}
        if self.mapping is not None:
            return {"mapping": self.mapping.strip().strip("{}").strip()}
        if self.value is not None:
            return normalize_expression(self.value)
        return None


class InputBinding(DocumentSchema):
    """A resolved-at-run-time task input: name, expression and declaration."""

    name: str
    expression: Any = None
    spec: VariableSpec = Field(default_factory=VariableSpec)


class OutputBinding(DocumentSchema):
    """A task output: where to read it from the task response and where to store it."""

    name: str
    source: str
    spec: VariableSpec = Field(default_factory=VariableSpec)

    @property
    def tier(self) -> Optional[Tier]:
        return self.spec.tier


def _input_bindings(data: Dict[str, Any]) -> Dict[str, Dict[str, Any]]:
    out: Dict[str, Dict[str, Any]] = {}
    section = data.get("input")
    if isinstance(section, dict):
        mappings = section.get("mappings") if "mappings" in section else section
        for name, raw in (mappings or {}).items():
            out[name] = {"name": name, "expression": normalize_expression(raw)}
    for name, raw in (data.get("inputs") or {}).items():
        if isinstance(raw, dict) and _DECLARATION_KEYS.intersection(raw):
            spec = VariableSpec.model_validate(raw)
            expr = spec.expression()
            if expr is None and spec.default is not None:
                expr = spec.default
            out[name] = {"name": name, "expression": expr, "spec": spec}
        else:
            out[name] = {"name": name, "expression": normalize_expression(raw)}
    return out


def _output_bindings(data: Dict[str, Any]) -> Dict[str, Dict[str, Any]]:
    out: Dict[str, Dict[str, Any]] = {}
    section = data.get("output")
    if isinstance(section, dict):
        mappings = section.get("mappings") if "mappings" in section else section
        for name, raw in (mappings or {}).items():
            out[name] = _one_output(name, raw)
    for name, raw in (data.get("outputs") or {}).items():
        out[name] = _one_output(name, raw)
    return out


def _one_output(name: str, raw: Any) -> Dict[str, Any]:
    if isinstance(raw, str):
        return {"name": name, "source": raw.strip().strip("{}").strip()}
    if isinstance(raw, dict):
        raw = dict(raw)
        source = raw.pop("path", None) or raw.pop("from", None) or raw.get("mapping")
        spec = VariableSpec.model_validate({k: v for k, v in raw.items() if k != "mapping"})
        return {"name": name, "source": str(source or f"response.{name}").strip("{}"), "spec": spec}
    if raw is None:
        return {"name": name, "source": f"response.{name}"}
    raise ValueError(f"output {name!r} must be a path string or a declaration")


# ---------------------------------------------------------------------------
# Tasks
# ---------------------------------------------------------------------------


class OnFailure(DocumentSchema):
    action: FailureAction = FailureAction.abort
    message: Optional[str] = None


class ErrorHandling(DocumentSchema):
    on_failure: OnFailure = Field(default_factory=OnFailure)


class PromptSpec(DocumentSchema):
    template: str = ""
    system: Optional[str] = None


class TaskSpec(DocumentSchema):
    """One node of a capability's execution graph."""

    id: str
    type: TaskType
    description: Optional[str] = None
    service: Optional[str] = Field(default=None, validation_alias=AliasChoices("service", "requires_service"))

    # request
    request: Optional[Union[str, Dict[str, Any]]] = None
    method: Optional[str] = None
    url: Optional[str] = None
    path: Optional[str] = None
    headers: Dict[str, Any] = Field(default_factory=dict)
    query: Dict[str, Any] = Field(default_factory=dict)
    body: Any = None

    # parameters
    inputs: Dict[str, InputBinding] = Field(default_factory=dict)
    outputs: Dict[str, OutputBinding] = Field(default_factory=dict)

    # agent_decision / sampling
    prompt: Optional[PromptSpec] = None
    sampling: Dict[str, Any] = Field(default_factory=dict)

    # condition
    expression: Optional[str] = None
    cases: Dict[str, str] = Field(default_factory=dict)
    guard: Optional[str] = None

    # capability
    capability: Optional[str] = None
    input_mapping: Dict[str, Any] = Field(default_factory=dict)
    output_mapping: Dict[str, str] = Field(default_factory=dict)

    # parallel / sequence
    tasks: List[Any] = Field(default_factory=list)
    steps: List[Any] = Field(default_factory=list)

    error_handling: ErrorHandling = Field(default_factory=ErrorHandling)
    next: Optional[Union[str, Dict[str, Optional[str]]]] = None
    timeout: Optional[float] = Field(default=None, gt=0)

    @model_validator(mode="before")
    @classmethod
    def _normalize(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        data["inputs"] = _input_bindings(data)
        data["outputs"] = _output_bindings(data)
        data.pop("input", None)
        data.pop("output", None)

        definition = data.pop("definition", None)
        if isinstance(definition, dict):
            data.setdefault("request", definition.get("request"))
            if "logic" in definition and "prompt" not in data:
                data["prompt"] = {"template": definition["logic"]}

        if isinstance(data.get("prompt"), str):
            data["prompt"] = {"template": data["prompt"]}

        # ``condition`` is the expression of a condition task and an
        # execution guard on every other task type.
        if data.get("type") == TaskType.condition.value:
            for key in ("condition", "if"):
                if key in data and data.get("expression") is None:
                    data["expression"] = data.pop(key)
        elif "condition" in data and data.get("guard") is None:
            data["guard"] = data.pop("condition")

        if data.get("type") == TaskType.capability.value:
            data["input_mapping"] = normalize_expression(data.get("input_mapping") or {})
            data["output_mapping"] = {
                k: str(v).strip("{}") for k, v in (normalize_expression(data.get("output_mapping") or {})).items()
            }
        if isinstance(data.get("next"), dict):
            data["next"] = {str(k).lower(): v for k, v in data["next"].items()}
        return data

    @property
    def on_failure(self) -> OnFailure:
        return self.error_handling.on_failure

    @property
    def is_composite(self) -> bool:
        return self.type in COMPOSITE_TASK_TYPES


# ---------------------------------------------------------------------------
# Header sections
# ---------------------------------------------------------------------------


class Author(DocumentSchema):
    name: str
    email: Optional[str] = None
    organization: Optional[str] = None


class Audit(DocumentSchema):
    status: AuditStatus = AuditStatus.unaudited
    provider: Optional[str] = None
    id: Optional[str] = None
    url: Optional[str] = None


class Permissions(DocumentSchema):
    level: PermissionLevel = PermissionLevel.basic
    description: Optional[str] = None
    capabilities: List[str] = Field(default_factory=list)


class Security(DocumentSchema):
    audit: Audit = Field(default_factory=Audit)
    permissions: Permissions = Field(default_factory=Permissions)


class DependencySpec(DocumentSchema):
    namespace: Optional[str] = None
    id: str
    version: str = "*"
    checksum: Optional[str] = None
    registry: Optional[str] = None

    @field_validator("version", mode="before")
    @classmethod
    def _version_as_str(cls, v: Any) -> str:
        return str(v)


class Authentication(DocumentSchema):
    method: Optional[str] = None
    parameters: List[str] = Field(default_factory=list)


class ServiceSpec(DocumentSchema):
    type: Optional[str] = None
    base_url: Optional[str] = Field(default=None, validation_alias=AliasChoices("baseUrl", "base_url", "url"))
    authentication: Optional[Authentication] = None
    rate_limits: Dict[str, Any] = Field(default_factory=dict)
    tasks: List[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Document
# ---------------------------------------------------------------------------


class CapabilityDocument(DocumentSchema):
    """A parsed A2S capability document."""

    a2s: str
    id: str = Field(validation_alias=AliasChoices("id", "name"))
    description: str
    version: str
    type: CapabilityType
    checksum: Optional[str] = None
    authors: List[Author] = Field(min_length=1)
    source_url: Optional[str] = None
    security: Security = Field(default_factory=Security)
    registries: Dict[str, str] = Field(default_factory=dict)
    dependencies: Dict[str, DependencySpec] = Field(default_factory=dict)
    services: Dict[str, ServiceSpec] = Field(
        default_factory=dict, validation_alias=AliasChoices("services", "domains")
    )
    inputs: Dict[str, VariableSpec] = Field(default_factory=dict)
    outputs: Dict[str, VariableSpec] = Field(default_factory=dict)
    tasks: List[TaskSpec] = Field(default_factory=list)
    flow: Any = None
    requests: Dict[str, Any] = Field(default_factory=dict)
    schemas: Dict[str, Any] = Field(default_factory=dict)
    examples: List[Dict[str, Any]] = Field(default_factory=list)

    @field_validator("a2s", "version", mode="before")
    @classmethod
    def _scalar_as_str(cls, v: Any) -> Any:
        if isinstance(v, (int, float)):
            return str(v)
        return v

    @field_validator("dependencies", "services", "inputs", "outputs", "requests", "schemas", mode="before")
    @classmethod
    def _none_as_empty(cls, v: Any) -> Any:
        return {} if v is None else v

    @model_validator(mode="before")
    @classmethod
    def _inline_execution_steps(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        execution = data.get("execution")
        has_tasks = bool(data.get("tasks"))
        if execution is None and not has_tasks and data.get("flow") is None:
            raise ValueError("document declares no execution section (tasks, execution.steps or flow)")
        if not isinstance(execution, dict):
            return data

        # Later revisions declare tasks inline as execution steps; lift them
        # into ``tasks`` and leave a reference in their place.
        data = dict(data)
        tasks = list(data.get("tasks") or [])
        steps: List[Any] = []
        for step in execution.get("steps") or []:
            if (
                isinstance(step, dict)
                and "id" in step
                and "task" not in step
                and step.get("type") is not None
                and step["type"] not in FLOW_NODE_TYPES
            ):
                tasks.append(step)
                steps.append({"task": step["id"]})
            else:
                steps.append(step)
        data["tasks"] = tasks
        if data.get("flow") is None:
            data["flow"] = {key: value for key, value in execution.items() if key != "steps"} | {"steps": steps}
        return data

    def task(self, task_id: str) -> Optional[TaskSpec]:
        for t in self.tasks:
            if t.id == task_id:
                return t
        return None

    @property
    def task_ids(self) -> List[str]:
        return [t.id for t in self.tasks]
