"""Capability interfaces for the external services the plugin talks to.

The resolver and the creation protocol only depend on these protocols, so
tests can provide complete in-memory implementations and the Azure SDK stays
confined to :mod:`azurekms.cloud`.
"""
from __future__ import annotations

from typing import Protocol

from .models import KeyBundle, KeyCreateParameters, VaultInfo

ENCRYPTION_ALGORITHM = "RSA1_5"


class KeyStoreClient(Protocol):
    """Key operations against a vault.

    ``encrypt`` and ``decrypt`` exchange base64url strings, the same values
    the Key Vault REST API accepts and returns.
    """

    def get_key(self, vault_url: str, name: str, version: str = "") -> KeyBundle:  # pragma: no cover - protocol
        """Return key metadata; raises ``KeyNotFoundError`` when absent."""
        ...

    def create_key(self, vault_url: str, name: str, params: KeyCreateParameters) -> KeyBundle:  # pragma: no cover - protocol
        ...

    def encrypt(self, vault_url: str, name: str, version: str, algorithm: str, value: str) -> str:  # pragma: no cover - protocol
        ...

    def decrypt(self, vault_url: str, name: str, version: str, algorithm: str, value: str) -> str:  # pragma: no cover - protocol
        ...


class LeaseProvider(Protocol):
    """Mutual exclusion backed by an external blob store."""

    def ensure_blob(self, name: str) -> None:  # pragma: no cover - protocol
        """Create the container and blob called ``name`` if they are missing."""
        ...

    def acquire_lease(self, name: str, duration: int) -> str:  # pragma: no cover - protocol
        """Return a lease id; raises ``LeaseError`` with kind ``HELD`` on contention."""
        ...


class VaultLocator(Protocol):
    def get_vault(self, resource_group: str, vault_name: str) -> VaultInfo:  # pragma: no cover - protocol
        ...


class ConfigStore(Protocol):
    def save_key_version(self, version: str) -> None:  # pragma: no cover - protocol
        ...


class KeyStoreClientFactory(Protocol):
    def __call__(self, vault: VaultInfo) -> KeyStoreClient:  # pragma: no cover - protocol
        ...


__all__ = [
    "ENCRYPTION_ALGORITHM",
    "KeyStoreClient",
    "LeaseProvider",
    "VaultLocator",
    "ConfigStore",
    "KeyStoreClientFactory",
]
