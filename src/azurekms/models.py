"""Shared domain models used across azurekms."""
from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Tuple


class VaultSku(str, Enum):
    STANDARD = "standard"
    PREMIUM = "premium"

    @classmethod
    def parse(cls, value: Any) -> "VaultSku":
        name = str(getattr(value, "value", value) or "").lower()
        if name == cls.PREMIUM.value:
            return cls.PREMIUM
        return cls.STANDARD


class KeyType(str, Enum):
    RSA = "RSA"
    RSA_HSM = "RSA-HSM"

    @classmethod
    def for_sku(cls, sku: VaultSku) -> "KeyType":
        """Premium vaults get hardware-backed keys."""
        if sku is VaultSku.PREMIUM:
            return cls.RSA_HSM
        return cls.RSA


@dataclass(frozen=True, slots=True)
class KeyReference:
    """The logical key a plugin instance encrypts with.

    ``key_version`` is empty until a version is resolved or created.
    """

    subscription_id: str
    resource_group: str
    vault_name: str
    key_name: str
    key_version: str = ""

    @property
    def pinned(self) -> bool:
        return bool(self.key_version)

    def with_version(self, version: str) -> "KeyReference":
        return replace(self, key_version=version)


@dataclass(frozen=True, slots=True)
class VaultInfo:
    vault_url: str
    sku: VaultSku = VaultSku.STANDARD


@dataclass(frozen=True, slots=True)
class KeyBundle:
    kid: str
    enabled: bool = True
    key_type: str | None = None


@dataclass(frozen=True, slots=True)
class KeyCreateParameters:
    key_type: KeyType
    size: int = 2048
    operations: Tuple[str, ...] = ("encrypt", "decrypt")
    enabled: bool = True


@dataclass(frozen=True, slots=True)
class ResolvedKeyHandle:
    """Vault connection reused for the lifetime of the process."""

    vault_url: str
    client: Any = field(repr=False)
    sku: VaultSku = VaultSku.STANDARD


@dataclass(frozen=True, slots=True)
class ResolvedKey:
    client: Any = field(repr=False)
    vault_url: str
    key_name: str
    key_version: str


@dataclass(frozen=True, slots=True)
class PollPolicy:
    """How long to wait for a key another replica is creating."""

    interval: float = 5.0
    timeout: float = 60.0

    def __post_init__(self) -> None:
        if self.interval <= 0:
            raise ValueError("poll interval must be positive")
        if self.timeout < self.interval:
            raise ValueError("poll timeout must be at least one interval")


__all__ = [
    "VaultSku",
    "KeyType",
    "KeyReference",
    "VaultInfo",
    "KeyBundle",
    "KeyCreateParameters",
    "ResolvedKeyHandle",
    "ResolvedKey",
    "PollPolicy",
]
