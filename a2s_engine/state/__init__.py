"""Three-tier variable store with domain isolation and encryption at rest."""

from .crypto import DomainCipher, FernetDomainCipher
from .store import ServiceVault, SharedVault, StateStore
from .validation import type_matches, validate_value

__all__ = [
    "DomainCipher",
    "FernetDomainCipher",
    "ServiceVault",
    "SharedVault",
    "StateStore",
    "type_matches",
    "validate_value",
]
