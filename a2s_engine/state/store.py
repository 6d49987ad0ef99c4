from __future__ import annotations

"""Three-tier variable store.

Tiers
-----

- **service** (alias ``persistent``): keyed by ``(domain, name)``, encrypted
  at rest with a domain-bound key through the injected cipher, optionally
  expiring. Only the owning domain can read a value; any other domain gets
  ``AccessDenied`` (never ``NotFound``), so audits can tell a wrong-domain
  read from a missing value.
- **shared** (alias ``session``/``capability``): readable by the domains the
  writer granted trust to. Grants are re-checked on every read, so a
  revocation takes effect on the next read.
- **temporary** (alias ``task``/``execution``): lives in the scope of one
  task execution. Each task pushes a scope and pops it when it completes;
  popping discards the values.

Service and shared values live in long-lived vaults (``ServiceVault``,
``SharedVault``) that outlive a single run; a ``StateStore`` is the per-run
view over them plus the temporary scope stack.

Parallel branches
-----------------

``fork`` returns a child store reading from a snapshot of the vaults as of
the fork point; its service/shared writes are journaled and only become
visible to the parent when the parent ``commit``s the child at the join.
Writes are serialized per key with locks.
"""

import itertools
import json
import logging
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, FrozenSet, Hashable, Iterable, Iterator, List, Optional, Set, Tuple

from ..capability.errors import AccessDenied, NotFound, StateError, TrustDenied
from ..capability.schemas.document import VariableSpec
from .crypto import DomainCipher, FernetDomainCipher
from .validation import validate_value

logger = logging.getLogger(__name__)


class _LockTable:
    """Per-key write locks."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: Dict[Hashable, threading.Lock] = {}

    @contextmanager
    def hold(self, key: Hashable) -> Iterator[None]:
        with self._guard:
            lock = self._locks.setdefault(key, threading.Lock())
        with lock:
            yield


@dataclass(frozen=True)
class ServiceEntry:
    domain: str
    name: str
    ciphertext: bytes
    expires_at: Optional[float] = None

    def expired(self, now: float) -> bool:
        return self.expires_at is not None and now >= self.expires_at


@dataclass(frozen=True)
class SharedEntry:
    name: str
    value: Any
    trusted_domains: FrozenSet[str] = field(default_factory=frozenset)


class ServiceVault:
    """Ciphertext storage of the service tier, keyed by ``(domain, name)``."""

    def __init__(self, entries: Optional[Dict[Tuple[str, str], ServiceEntry]] = None) -> None:
        self._entries: Dict[Tuple[str, str], ServiceEntry] = dict(entries or {})
        self._locks = _LockTable()

    def get(self, domain: str, name: str) -> Optional[ServiceEntry]:
        return self._entries.get((domain, name))

    def owners(self, name: str) -> List[str]:
        return [d for (d, n) in list(self._entries) if n == name]

    def domains(self) -> Set[str]:
        return {d for (d, _n) in list(self._entries)}

    def put(self, entry: ServiceEntry) -> None:
        key = (entry.domain, entry.name)
        with self._locks.hold(key):
            self._entries[key] = entry

    def delete(self, domain: str, name: str) -> None:
        key = (domain, name)
        with self._locks.hold(key):
            self._entries.pop(key, None)

    def snapshot(self) -> "ServiceVault":
        return ServiceVault(self._entries)


class SharedVault:
    """Storage of the shared tier.

    A snapshot consults the revocations of the vault it was taken from, so a
    revocation made on that vault while a parallel branch is running is
    honored by the branch on its next read. Revocations made on a snapshot
    stay local to it until the branch is committed.
    """

    def __init__(
        self,
        entries: Optional[Dict[str, SharedEntry]] = None,
        *,
        parent: Optional["SharedVault"] = None,
    ) -> None:
        self._entries: Dict[str, SharedEntry] = dict(entries or {})
        self._revoked: Dict[str, Set[str]] = {}
        self._parent = parent
        self._locks = _LockTable()

    def get(self, name: str) -> Optional[SharedEntry]:
        return self._entries.get(name)

    def is_revoked(self, name: str, domain: str) -> bool:
        if domain in self._revoked.get(name, ()):
            return True
        return self._parent is not None and self._parent.is_revoked(name, domain)

    def put(self, entry: SharedEntry, *, clear_revocations: bool = True) -> None:
        with self._locks.hold(entry.name):
            self._entries[entry.name] = entry
            if clear_revocations and entry.name in self._revoked:
                self._revoked[entry.name] -= set(entry.trusted_domains)

    def revoke(self, name: str, domain: str) -> None:
        with self._locks.hold(name):
            self._revoked.setdefault(name, set()).add(domain)
            entry = self._entries.get(name)
            if entry is not None:
                self._entries[name] = replace(entry, trusted_domains=entry.trusted_domains - {domain})

    def snapshot(self) -> "SharedVault":
        return SharedVault(self._entries, parent=self)


@dataclass
class _Scope:
    scope_id: int
    owner: str
    values: Dict[str, Any] = field(default_factory=dict)


class StateStore:
    """Per-run view over the three storage tiers."""

    def __init__(
        self,
        *,
        service_vault: Optional[ServiceVault] = None,
        shared_vault: Optional[SharedVault] = None,
        cipher: Optional[DomainCipher] = None,
        is_trusted: Optional[Callable[[str], bool]] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._service = service_vault if service_vault is not None else ServiceVault()
        self._shared = shared_vault if shared_vault is not None else SharedVault()
        self._cipher: DomainCipher = cipher if cipher is not None else FernetDomainCipher()
        self._is_trusted = is_trusted
        self._clock = clock
        self._scopes: List[_Scope] = []
        self._scope_ids = itertools.count(1)
        # Set on forked stores: service/shared writes to replay at the join.
        self._journal: Optional[List[Tuple[str, Any]]] = None

    # ------------------------------------------------------------------
    # service tier
    # ------------------------------------------------------------------

    def set_service(
        self,
        domain: str,
        name: str,
        value: Any,
        *,
        expiry: Optional[float] = None,
        spec: Optional[VariableSpec] = None,
    ) -> None:
        """Encrypt and store ``value`` as ``(domain, name)``.

        Raises:
            ValidationError: if ``value`` fails ``spec``.
        """
        if not domain:
            raise StateError("service variables need an owning domain")
        validate_value(name, value, spec)
        if expiry is None and spec is not None:
            expiry = spec.expiry
        plaintext = json.dumps(value, default=str).encode("utf-8")
        entry = ServiceEntry(
            domain=domain,
            name=name,
            ciphertext=self._cipher.encrypt(domain, plaintext),
            expires_at=self._clock() + expiry if expiry is not None else None,
        )
        self._service.put(entry)
        if self._journal is not None:
            self._journal.append(("service", entry))
        logger.debug("service variable set: domain=%s name=%s", domain, name)

    def get_service(self, domain: str, name: str) -> Any:
        """Read the service variable ``name`` on behalf of ``domain``.

        Raises:
            AccessDenied: if ``name`` exists but is owned by another domain.
            NotFound: if no domain owns ``name`` (or it expired).
        """
        entry = self._service.get(domain, name)
        if entry is None:
            owners = self._service.owners(name)
            if owners:
                logger.warning("service variable access denied: name=%s requesting_domain=%s", name, domain)
                raise AccessDenied(f"service variable {name!r} is not owned by domain {domain!r}")
            raise NotFound(f"service variable {name!r} is not set for domain {domain!r}")
        if entry.expired(self._clock()):
            self._service.delete(domain, name)
            raise NotFound(f"service variable {name!r} of domain {domain!r} has expired")
        return json.loads(self._cipher.decrypt(domain, entry.ciphertext).decode("utf-8"))

    def service_domains(self) -> Set[str]:
        return self._service.domains()

    # ------------------------------------------------------------------
    # shared tier
    # ------------------------------------------------------------------

    def set_shared(
        self,
        name: str,
        value: Any,
        trusted_domains: Iterable[str],
        *,
        spec: Optional[VariableSpec] = None,
    ) -> None:
        validate_value(name, value, spec)
        entry = SharedEntry(name=name, value=value, trusted_domains=frozenset(trusted_domains))
        self._shared.put(entry, clear_revocations=self._journal is None)
        if self._journal is not None:
            self._journal.append(("shared", entry))

    def get_shared(self, name: str, requesting_domain: Optional[str]) -> Any:
        """Read the shared variable ``name`` on behalf of ``requesting_domain``.

        Raises:
            NotFound: if ``name`` is not set.
            TrustDenied: if the domain holds no grant, the grant was revoked,
                or the trust collaborator no longer trusts the domain.
        """
        entry = self._shared.get(name)
        if entry is None:
            raise NotFound(f"shared variable {name!r} is not set")
        domain = requesting_domain or ""
        if (
            domain not in entry.trusted_domains
            or self._shared.is_revoked(name, domain)
            or (self._is_trusted is not None and not self._is_trusted(domain))
        ):
            logger.warning("shared variable trust denied: name=%s requesting_domain=%s", name, requesting_domain)
            raise TrustDenied(f"domain {requesting_domain!r} is not trusted to read shared variable {name!r}")
        return entry.value

    def revoke_trust(self, name: str, domain: str) -> None:
        self._shared.revoke(name, domain)
        if self._journal is not None:
            self._journal.append(("revoke", (name, domain)))

    # ------------------------------------------------------------------
    # temporary tier
    # ------------------------------------------------------------------

    def push_scope(self, owner: str) -> int:
        scope = _Scope(scope_id=next(self._scope_ids), owner=owner)
        self._scopes.append(scope)
        return scope.scope_id

    def pop_scope(self, scope_id: int) -> None:
        if not self._scopes or self._scopes[-1].scope_id != scope_id:
            raise StateError(f"temporary scope {scope_id} is not the innermost scope")
        scope = self._scopes.pop()
        scope.values.clear()

    @contextmanager
    def task_scope(self, owner: str) -> Iterator[int]:
        scope_id = self.push_scope(owner)
        try:
            yield scope_id
        finally:
            self.pop_scope(scope_id)

    def set_temporary(self, name: str, value: Any, *, spec: Optional[VariableSpec] = None) -> None:
        if not self._scopes:
            raise StateError("temporary variables can only be set inside a task execution")
        validate_value(name, value, spec)
        self._scopes[-1].values[name] = value

    def get_temporary(self, name: str) -> Any:
        if not self._scopes or name not in self._scopes[-1].values:
            raise NotFound(f"temporary variable {name!r} is not set in the current task")
        return self._scopes[-1].values[name]

    # ------------------------------------------------------------------
    # fork / join
    # ------------------------------------------------------------------

    def fork(self) -> "StateStore":
        """Return a child store isolated from sibling forks until ``commit``."""
        child = StateStore(
            service_vault=self._service.snapshot(),
            shared_vault=self._shared.snapshot(),
            cipher=self._cipher,
            is_trusted=self._is_trusted,
            clock=self._clock,
        )
        child._journal = []
        return child

    def spawn(self) -> "StateStore":
        """Return a store with its own temporary scopes over the same vaults.

        Used for nested capability runs: service/shared writes land where
        this store's writes land (including its journal when forked).
        """
        child = StateStore(
            service_vault=self._service,
            shared_vault=self._shared,
            cipher=self._cipher,
            is_trusted=self._is_trusted,
            clock=self._clock,
        )
        child._journal = self._journal
        return child

    def commit(self, child: "StateStore") -> None:
        """Apply the journaled service/shared writes of a forked ``child``."""
        for kind, item in child._journal or ():
            if kind == "service":
                self._service.put(item)
            elif kind == "shared":
                self._shared.put(item)
            else:
                name, domain = item
                self._shared.revoke(name, domain)
            if self._journal is not None:
                self._journal.append((kind, item))
        child._journal = []
