"""Encryption-at-rest hooks for the service tier.

The State Store only depends on an ``encrypt(domain, plaintext)`` /
``decrypt(domain, ciphertext)`` pair. ``FernetDomainCipher`` is the default
implementation:

- Values are encrypted with Fernet (AES-128-CBC + HMAC).
- Each domain gets its own key, derived from one master secret with HKDF,
  so a ciphertext written for one domain cannot be decrypted with another
  domain's key.

Key management beyond that (rotation, KMS integration) belongs to the
credential collaborator that supplies the master secret.
"""

from __future__ import annotations

import base64
import threading
from typing import Dict, Optional, Protocol, Union

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from ..capability.errors import AccessDenied

_HKDF_INFO_PREFIX = b"a2s-service-tier:"


class DomainCipher(Protocol):
    def encrypt(self, domain: str, plaintext: bytes) -> bytes: ...

    def decrypt(self, domain: str, ciphertext: bytes) -> bytes: ...


class FernetDomainCipher:
    """Per-domain Fernet cipher derived from a single master secret."""

    def __init__(self, master_key: Optional[Union[str, bytes]] = None) -> None:
        if master_key is None:
            master_key = Fernet.generate_key()
        self._master = master_key.encode("utf-8") if isinstance(master_key, str) else bytes(master_key)
        self._fernets: Dict[str, Fernet] = {}
        self._lock = threading.Lock()

    def _fernet(self, domain: str) -> Fernet:
        with self._lock:
            f = self._fernets.get(domain)
            if f is None:
                raw = HKDF(
                    algorithm=hashes.SHA256(),
                    length=32,
                    salt=None,
                    info=_HKDF_INFO_PREFIX + domain.encode("utf-8"),
                ).derive(self._master)
                f = Fernet(base64.urlsafe_b64encode(raw))
                self._fernets[domain] = f
            return f

    def encrypt(self, domain: str, plaintext: bytes) -> bytes:
        return self._fernet(domain).encrypt(plaintext)

    def decrypt(self, domain: str, ciphertext: bytes) -> bytes:
        try:
            return self._fernet(domain).decrypt(ciphertext)
        except InvalidToken as exc:
            raise AccessDenied(f"ciphertext is not readable with the key of domain {domain!r}") from exc
