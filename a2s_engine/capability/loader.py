from __future__ import annotations

"""Capability Loader.

Turns a document source into an immutable ``LoadedCapability``:

1. Parse the source (path, YAML/JSON text, bytes or mapping) with PyYAML.
2. Verify integrity: SHA-256 over the canonical document minus its
   ``checksum`` field must equal the declared checksum (``IntegrityError``).
3. Parse the header and execution sections into ``CapabilityDocument``
   (``SchemaError`` carrying every pydantic error).
4. Run the ``CapabilityValidator`` (``SchemaError`` carrying every issue).
5. For aggregates, resolve every declared dependency through the injected
   resolver and load it with this same procedure. A dependency that is
   itself an aggregate, or whose checksum differs from the declared one,
   rejects the whole load.

Nothing is partially loaded: any failure raises before a value is produced.
"""

import copy
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Protocol, Set, Tuple, Union

import yaml
from pydantic import ValidationError as PydanticValidationError

from .canonical import CHECKSUM_FIELD, compute_checksum, normalize_checksum
from .errors import IntegrityError, LoadError, SchemaError
from .flow import FlowBuilder, SequenceNode
from .schemas.document import CapabilityDocument, CapabilityType, DependencySpec, TaskSpec
from .validator import CapabilityValidator, ValidationIssue

logger = logging.getLogger(__name__)

CapabilitySource = Union[str, bytes, Path, Mapping[str, Any]]


@dataclass(frozen=True)
class LoadedCapability:
    """A validated capability, immutable for the duration of any run.

    ``raw`` is the parsed document the checksum was computed over; it backs
    ``$ref`` JSON-pointer lookups and must not be mutated.
    """

    document: CapabilityDocument
    raw: Dict[str, Any] = field(repr=False)
    flow: SequenceNode = field(repr=False)
    checksum: str = ""
    dependencies: Dict[str, "LoadedCapability"] = field(default_factory=dict, repr=False)
    warnings: Tuple[ValidationIssue, ...] = field(default=(), repr=False, compare=False)
    source: Optional[str] = field(default=None, compare=False)

    @property
    def id(self) -> str:
        return self.document.id

    @property
    def version(self) -> str:
        return self.document.version

    @property
    def type(self) -> CapabilityType:
        return self.document.type

    def task(self, task_id: str) -> Optional[TaskSpec]:
        return self.document.task(task_id)

    def dependency(self, ref: str) -> Optional["LoadedCapability"]:
        """Look a dependency up by its declared name or by its capability id."""
        if ref in self.dependencies:
            return self.dependencies[ref]
        for dep in self.dependencies.values():
            if dep.id == ref:
                return dep
        return None


class DependencyResolver(Protocol):
    def __call__(
        self,
        namespace: Optional[str],
        capability_id: str,
        version_constraint: str,
        checksum: Optional[str],
        registry: Optional[str],
    ) -> Union[CapabilitySource, LoadedCapability]: ...


class CapabilityLoader:
    """Load and verify capability documents.

    Loaded capabilities are cached by checksum, so re-loading an unchanged
    source returns the same value.
    """

    def __init__(
        self,
        *,
        validator: Optional[CapabilityValidator] = None,
        dependency_resolver: Optional[DependencyResolver] = None,
        require_checksum: bool = True,
    ) -> None:
        self._validator = validator or CapabilityValidator()
        self._dependency_resolver = dependency_resolver
        self._require_checksum = require_checksum
        self._cache: Dict[str, LoadedCapability] = {}
        self._in_progress: Set[str] = set()

    def load(
        self,
        source: CapabilitySource,
        dependency_resolver: Optional[DependencyResolver] = None,
    ) -> LoadedCapability:
        """
        Load ``source`` into a ``LoadedCapability``.

        Args:
            source: A filesystem path, YAML/JSON text or bytes, or a parsed
                mapping.
            dependency_resolver: Overrides the resolver given at construction
                for this load (and the dependencies it pulls in).

        Returns:
            The loaded capability.

        Raises:
            IntegrityError: if a checksum does not match the content.
            SchemaError: if the document or one of its dependencies is
                malformed, or a dependency is an aggregate.
            LoadError: if the source cannot be read.
        """
        resolver = dependency_resolver or self._dependency_resolver
        raw, origin = self._read(source)
        return self._load_raw(raw, origin, resolver)

    # -- steps -------------------------------------------------------------

    def _read(self, source: CapabilitySource) -> Tuple[Dict[str, Any], Optional[str]]:
        origin: Optional[str] = None
        if isinstance(source, Mapping):
            data: Any = copy.deepcopy(dict(source))
        else:
            text: str
            if isinstance(source, Path) or (
                isinstance(source, str) and "\n" not in source and source.strip().endswith((".yml", ".yaml", ".json"))
            ):
                path = Path(source)
                origin = str(path)
                try:
                    text = path.read_text(encoding="utf-8")
                except OSError as exc:
                    raise LoadError(f"cannot read capability document {origin}: {exc}") from exc
            elif isinstance(source, bytes):
                try:
                    text = source.decode("utf-8")
                except UnicodeDecodeError as exc:
                    raise LoadError(f"capability document is not UTF-8: {exc}") from exc
            else:
                text = str(source)
            try:
                data = yaml.safe_load(text)
            except yaml.YAMLError as exc:
                raise SchemaError(f"capability document is not valid YAML: {exc}") from exc
        if not isinstance(data, dict):
            raise SchemaError(f"capability document must be a mapping, got {type(data).__name__}")
        return data, origin

    def _verify_integrity(self, raw: Dict[str, Any]) -> str:
        computed = compute_checksum(raw)
        declared = raw.get(CHECKSUM_FIELD)
        label = raw.get("id") or raw.get("name") or "<unnamed>"
        if declared in (None, ""):
            if self._require_checksum:
                raise IntegrityError(f"capability {label} declares no checksum", actual=computed)
            logger.warning("capability %s declares no checksum; integrity not verified", label)
            return computed
        expected = normalize_checksum(str(declared))
        if expected != computed:
            logger.error("checksum mismatch for capability %s: declared=%s computed=%s", label, expected, computed)
            raise IntegrityError(
                f"checksum mismatch for capability {label}: declared {expected}, computed {computed}",
                expected=expected,
                actual=computed,
            )
        return computed

    def _parse(self, raw: Dict[str, Any]) -> CapabilityDocument:
        try:
            return CapabilityDocument.model_validate(raw)
        except PydanticValidationError as exc:
            errors = [
                {
                    "path": ".".join(str(p) for p in err.get("loc", ())),
                    "code": err.get("type", "invalid"),
                    "message": err.get("msg", ""),
                }
                for err in exc.errors()
            ]
            raise SchemaError(
                f"capability document is malformed: {len(errors)} error(s); first: "
                f"{errors[0]['path'] or '<document>'}: {errors[0]['message']}",
                errors=errors,
            ) from exc

    def _load_raw(
        self,
        raw: Dict[str, Any],
        origin: Optional[str],
        resolver: Optional[DependencyResolver],
    ) -> LoadedCapability:
        checksum = self._verify_integrity(raw)
        cached = self._cache.get(checksum)
        if cached is not None:
            logger.debug("capability %s served from cache (%s)", cached.id, checksum)
            return cached

        document = self._parse(raw)
        result = self._validator.validate(document, raw)
        if not result.ok:
            first = result.errors[0]
            raise SchemaError(
                f"capability {document.id} failed validation: {len(result.errors)} error(s); first: {first}",
                errors=[{"path": e.path, "code": e.code, "message": e.message} for e in result.errors],
            )
        for warning in result.warnings:
            logger.info("capability %s: %s", document.id, warning)

        dependencies: Dict[str, LoadedCapability] = {}
        if checksum in self._in_progress:
            raise SchemaError(
                f"capability {document.id} depends on itself through its dependency graph",
                errors=[{"path": "dependencies", "code": "dependency_cycle", "message": document.id}],
            )
        self._in_progress.add(checksum)
        try:
            for name, spec in document.dependencies.items():
                dependencies[name] = self._load_dependency(document, name, spec, resolver)
        finally:
            self._in_progress.discard(checksum)

        loaded = LoadedCapability(
            document=document,
            raw=raw,
            flow=FlowBuilder(document).build(),
            checksum=checksum,
            dependencies=dependencies,
            warnings=tuple(result.warnings),
            source=origin,
        )
        self._cache[checksum] = loaded
        logger.info(
            "loaded capability %s@%s (%s, %d task(s), %d dependenc(ies))",
            document.id,
            document.version,
            document.type.value,
            len(document.tasks),
            len(dependencies),
        )
        return loaded

    def _load_dependency(
        self,
        parent: CapabilityDocument,
        name: str,
        spec: DependencySpec,
        resolver: Optional[DependencyResolver],
    ) -> LoadedCapability:
        if resolver is None:
            raise LoadError(f"capability {parent.id} declares dependency {name!r} but no dependency resolver is set")
        logger.debug("resolving dependency %s of %s: %s@%s", name, parent.id, spec.id, spec.version)
        fetched = resolver(spec.namespace, spec.id, spec.version, spec.checksum, spec.registry)
        if isinstance(fetched, LoadedCapability):
            dep = fetched
        else:
            raw, origin = self._read(fetched)
            if str(raw.get("type", "")).strip().lower() == CapabilityType.aggregate.value:
                raise self._aggregate_dependency(parent, name, str(raw.get("id") or raw.get("name") or spec.id))
            dep = self._load_raw(raw, origin, resolver)

        if dep.type == CapabilityType.aggregate:
            raise self._aggregate_dependency(parent, name, dep.id)
        if spec.checksum and normalize_checksum(spec.checksum) != dep.checksum:
            raise IntegrityError(
                f"dependency {name!r} of {parent.id}: declared checksum {normalize_checksum(spec.checksum)} "
                f"does not match {dep.checksum}",
                expected=normalize_checksum(spec.checksum),
                actual=dep.checksum,
            )
        return dep

    @staticmethod
    def _aggregate_dependency(parent: CapabilityDocument, name: str, dep_id: str) -> SchemaError:
        return SchemaError(
            f"dependency {name!r} of {parent.id} is the aggregate capability {dep_id}; "
            "aggregates may only depend on atomic capabilities",
            errors=[{"path": f"dependencies.{name}", "code": "aggregate_dependency", "message": dep_id}],
        )


def load_capability(
    source: CapabilitySource,
    dependency_resolver: Optional[DependencyResolver] = None,
    *,
    require_checksum: bool = True,
) -> LoadedCapability:
    """One-shot ``CapabilityLoader(...).load(source)``."""
    loader = CapabilityLoader(dependency_resolver=dependency_resolver, require_checksum=require_checksum)
    return loader.load(source)
