from __future__ import annotations

"""In-memory capability registry.

The real registry (discovery, semantic ranking, remote fetch) is an external
collaborator. ``InMemoryCapabilityRegistry`` implements its interface for
embedding and tests:

- ``resolve_dependency(namespace, id, version_constraint, checksum, registry)``
  returns the highest registered version satisfying the constraint. It has
  the signature of the loader's dependency resolver, so the registry can be
  passed to ``CapabilityLoader`` directly.
- ``search_capabilities(intents, strategy)`` ranks registered capabilities
  by keyword overlap with the intents.

Version constraints
-------------------

``*`` / ``latest`` (anything), ``1.2.3`` or ``=1.2.3`` (exact), ``^1.2.3``
(same major, or same minor while the major is 0), ``~1.2.3`` (same minor),
``>``, ``>=``, ``<``, ``<=``, ``!=`` and comma-separated lists of these
(all must hold). Missing minor/patch parts count as zero.
"""

import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from .canonical import compute_checksum, normalize_checksum
from .errors import IntegrityError, NotFound

logger = logging.getLogger(__name__)

Version = Tuple[int, int, int]

_VERSION_RE = re.compile(r"^v?(\d+)(?:\.(\d+))?(?:\.(\d+))?(?:[-+].*)?$")
_CLAUSE_RE = re.compile(r"^(\^|~|>=|<=|==|!=|=|>|<)?\s*(.+)$")
_WORD_RE = re.compile(r"[a-z0-9]+")


def parse_version(text: str) -> Version:
    """Parse ``1``, ``1.2`` or ``1.2.3[-pre][+build]`` into a comparable tuple."""
    m = _VERSION_RE.match(str(text).strip())
    if m is None:
        raise ValueError(f"not a semantic version: {text!r}")
    major, minor, patch = m.groups()
    return int(major), int(minor or 0), int(patch or 0)


def _clause_matches(clause: str, version: Version) -> bool:
    m = _CLAUSE_RE.match(clause.strip())
    if m is None:
        raise ValueError(f"bad version constraint: {clause!r}")
    op, target_text = m.groups()
    if target_text in ("*", "latest", "x"):
        return True
    target = parse_version(target_text)
    if op in (None, "=", "=="):
        return version == target
    if op == "!=":
        return version != target
    if op == ">":
        return version > target
    if op == ">=":
        return version >= target
    if op == "<":
        return version < target
    if op == "<=":
        return version <= target
    if op == "~":
        return target <= version < (target[0], target[1] + 1, 0)
    # caret
    if target[0] > 0:
        upper: Version = (target[0] + 1, 0, 0)
    elif target[1] > 0:
        upper = (0, target[1] + 1, 0)
    else:
        upper = (0, 0, target[2] + 1)
    return target <= version < upper


def satisfies(version: str, constraint: Optional[str]) -> bool:
    """Return whether ``version`` satisfies ``constraint``."""
    if constraint is None or not str(constraint).strip():
        return True
    parsed = parse_version(version)
    return all(_clause_matches(c, parsed) for c in str(constraint).split(",") if c.strip())


@dataclass(frozen=True)
class RegistryEntry:
    namespace: Optional[str]
    id: str
    version: str
    document: Mapping[str, Any]
    checksum: str

    @property
    def description(self) -> str:
        return str(self.document.get("description") or "")


@dataclass(frozen=True)
class SearchHit:
    entry: RegistryEntry
    score: float


class InMemoryCapabilityRegistry:
    """
    In-memory store of capability documents keyed by namespace, id and version.

    Notes:
        - ``register`` overwrites an existing entry with the same key.
        - Documents are stored as parsed mappings; the loader verifies them
          when they are resolved.
    """

    def __init__(
        self,
        documents: Iterable[Mapping[str, Any]] = (),
        *,
        namespace: Optional[str] = None,
        url: Optional[str] = None,
    ) -> None:
        self.url = url.rstrip("/") if url else None
        self._entries: Dict[Tuple[Optional[str], str, str], RegistryEntry] = {}
        for doc in documents:
            self.register(doc, namespace=namespace)

    def register(self, document: Mapping[str, Any], *, namespace: Optional[str] = None) -> RegistryEntry:
        """
        Register a capability document.

        Args:
            document: The parsed capability document.
            namespace: Namespace to file it under; ``None`` is the default
                namespace.

        Returns:
            The stored entry.
        """
        cap_id = str(document.get("id") or document.get("name") or "")
        if not cap_id:
            raise ValueError("capability document has no id")
        version = str(document.get("version") or "0.0.0")
        parse_version(version)
        entry = RegistryEntry(
            namespace=namespace,
            id=cap_id,
            version=version,
            document=dict(document),
            checksum=compute_checksum(document),
        )
        self._entries[(namespace, cap_id, version)] = entry
        logger.debug("registered capability %s@%s (namespace=%s)", cap_id, version, namespace)
        return entry

    def versions(self, capability_id: str, namespace: Optional[str] = None) -> List[str]:
        found = [e for (ns, cid, _v), e in self._entries.items() if cid == capability_id and ns == namespace]
        return [e.version for e in sorted(found, key=lambda e: parse_version(e.version))]

    def resolve_dependency(
        self,
        namespace: Optional[str],
        capability_id: str,
        version_constraint: Optional[str] = "*",
        checksum: Optional[str] = None,
        registry: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Return the document of the highest version satisfying the constraint.

        Args:
            namespace: Namespace of the capability.
            capability_id: Capability id.
            version_constraint: See the module docstring.
            checksum: When given, the chosen entry must carry this checksum.
            registry: Registry URL the dependency is pinned to. When both it
                and ``url`` are set they must name the same registry.

        Raises:
            NotFound: if no registered version satisfies the constraint, or the
                dependency is pinned to another registry.
            IntegrityError: if the chosen entry's checksum differs from ``checksum``.
        """
        if registry and self.url and registry.rstrip("/") != self.url:
            raise NotFound(f"{capability_id} is pinned to registry {registry}; this registry serves {self.url}")
        candidates = [
            e
            for (ns, cid, _v), e in self._entries.items()
            if cid == capability_id and (namespace is None or ns == namespace) and satisfies(e.version, version_constraint)
        ]
        if not candidates:
            raise NotFound(
                f"no registered version of {namespace + '/' if namespace else ''}{capability_id} "
                f"satisfies {version_constraint!r}"
            )
        best = max(candidates, key=lambda e: parse_version(e.version))
        if checksum and normalize_checksum(checksum) != best.checksum:
            raise IntegrityError(
                f"{capability_id}@{best.version} has checksum {best.checksum}, expected {normalize_checksum(checksum)}",
                expected=normalize_checksum(checksum),
                actual=best.checksum,
            )
        logger.debug("resolved %s %s -> %s", capability_id, version_constraint, best.version)
        return dict(best.document)

    __call__ = resolve_dependency

    def search_capabilities(self, intents: Iterable[str], strategy: str = "keyword", limit: int = 10) -> List[SearchHit]:
        """
        Rank registered capabilities by keyword overlap with ``intents``.

        Args:
            intents: Free-text intents (``"post weather to social media"``).
            strategy: Only ``"keyword"`` is supported in memory.
            limit: Maximum number of hits.

        Returns:
            Hits ordered by descending score, then id.
        """
        if strategy != "keyword":
            raise ValueError(f"unsupported search strategy: {strategy!r}")
        wanted = {w for intent in intents for w in _WORD_RE.findall(intent.lower())}
        if not wanted:
            return []
        hits: List[SearchHit] = []
        for entry in self._entries.values():
            haystack = set(_WORD_RE.findall(f"{_split_camel(entry.id)} {entry.description}".lower()))
            overlap = wanted & haystack
            if overlap:
                hits.append(SearchHit(entry=entry, score=len(overlap) / len(wanted)))
        hits.sort(key=lambda h: (-h.score, h.entry.id, tuple(-p for p in parse_version(h.entry.version))))
        return hits[:limit]


def _split_camel(name: str) -> str:
    return re.sub(r"(?<=[a-z0-9])(?=[A-Z])", " ", name)
