"""In-memory implementations of the store interfaces.

They keep the same contracts as the Azure-backed stores (typed errors,
base64url values, lease contention) and are used for local development and
tests. Nothing here performs real cryptography.
"""
from __future__ import annotations

import threading
import time
import uuid
from typing import Callable, Dict, List

from .errors import KeyNotFoundError, KeyStoreError, LeaseError, LeaseErrorKind
from .models import KeyBundle, KeyCreateParameters, KeyType, VaultInfo, VaultSku
from .utils import b64d, b64e


class InMemoryKeyStore:
    """Keys live in a dict of ``name -> [versions]``; the last version is the latest."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._keys: Dict[str, List[str]] = {}
        self._types: Dict[str, KeyType] = {}
        self.create_calls = 0
        self.get_calls = 0

    def __call__(self, vault: VaultInfo) -> "InMemoryKeyStore":
        return self

    def add_key(self, name: str, version: str | None = None, key_type: KeyType = KeyType.RSA) -> str:
        version = version or uuid.uuid4().hex
        with self._lock:
            self._keys.setdefault(name, []).append(version)
            self._types[name] = key_type
        return version

    def key_type(self, name: str) -> KeyType:
        return self._types[name]

    def get_key(self, vault_url: str, name: str, version: str = "") -> KeyBundle:
        with self._lock:
            self.get_calls += 1
            version = self._find(name, version)
            return KeyBundle(kid=_kid(vault_url, name, version), key_type=self._types[name].value)

    def create_key(self, vault_url: str, name: str, params: KeyCreateParameters) -> KeyBundle:
        with self._lock:
            self.create_calls += 1
        version = self.add_key(name, key_type=params.key_type)
        return KeyBundle(kid=_kid(vault_url, name, version), key_type=params.key_type.value)

    def encrypt(self, vault_url: str, name: str, version: str, algorithm: str, value: str) -> str:
        with self._lock:
            version = self._find(name, version)
        return b64e(version.encode("ascii") + b"." + b64d(value))

    def decrypt(self, vault_url: str, name: str, version: str, algorithm: str, value: str) -> str:
        with self._lock:
            version = self._find(name, version)
        try:
            raw = b64d(value)
        except ValueError as exc:
            raise KeyStoreError(f"malformed ciphertext: {exc}") from exc
        prefix = version.encode("ascii") + b"."
        if not raw.startswith(prefix):
            raise KeyStoreError(f"ciphertext was not produced by {name}/{version}")
        return b64e(raw[len(prefix):])

    def _find(self, name: str, version: str) -> str:
        versions = self._keys.get(name)
        if not versions:
            raise KeyNotFoundError(f"key {name!r} not found")
        if not version:
            return versions[-1]
        if version not in versions:
            raise KeyNotFoundError(f"key {name!r} has no version {version!r}")
        return version


class InMemoryLeaseProvider:
    """Leases that expire on ``clock``; holders are never released explicitly."""

    def __init__(self, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._lock = threading.Lock()
        self._clock = clock
        self._blobs: set[str] = set()
        self._leases: Dict[str, float] = {}
        self.acquired: List[str] = []

    def ensure_blob(self, name: str) -> None:
        with self._lock:
            self._blobs.add(name)

    def acquire_lease(self, name: str, duration: int) -> str:
        with self._lock:
            if name not in self._blobs:
                raise LeaseError(f"blob {name!r} does not exist")
            expires = self._leases.get(name)
            if expires is not None and expires > self._clock():
                raise LeaseError(f"lease on {name!r} is held", kind=LeaseErrorKind.HELD)
            self._leases[name] = self._clock() + duration
            lease_id = uuid.uuid4().hex
            self.acquired.append(lease_id)
            return lease_id

    def hold(self, name: str, duration: float = float("inf")) -> None:
        """Simulate another process holding the lease."""
        with self._lock:
            self._blobs.add(name)
            self._leases[name] = self._clock() + duration


class StaticVaultLocator:
    def __init__(self, vault_url: str = "https://vault.test/", sku: VaultSku = VaultSku.STANDARD) -> None:
        self.vault = VaultInfo(vault_url=vault_url, sku=sku)
        self.calls = 0

    def get_vault(self, resource_group: str, vault_name: str) -> VaultInfo:
        self.calls += 1
        return self.vault


class MemoryConfigStore:
    def __init__(self, version: str = "") -> None:
        self.saved: List[str] = []
        self.version = version

    def save_key_version(self, version: str) -> None:
        self.saved.append(version)
        self.version = version


def _kid(vault_url: str, name: str, version: str) -> str:
    return f"{vault_url.rstrip('/')}/keys/{name}/{version}"


__all__ = [
    "InMemoryKeyStore",
    "InMemoryLeaseProvider",
    "StaticVaultLocator",
    "MemoryConfigStore",
]
