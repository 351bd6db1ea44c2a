"""Central exception hierarchy."""
from __future__ import annotations

from enum import Enum


class KMSError(Exception):
    """Base exception for all plugin failures"""


class ConfigurationError(KMSError):
    """Raised when configuration is missing, unreadable or invalid"""


class TransportError(KMSError):
    """Raised when the plugin socket cannot be prepared or bound"""


class KeyIdentifierError(KMSError):
    """Raised when a key identifier does not carry a version"""


class KeyResolutionError(KMSError):
    """Raised when the configured key cannot be resolved to a usable version"""


class PinnedKeyVersionNotFound(KeyResolutionError):
    """Raised when the key version pinned in configuration does not exist"""


class KeyCreationTimeout(KeyResolutionError):
    """Raised when a key created by another replica never became visible"""


class KeyStoreError(KMSError):
    """Raised for failures reported by the key store"""


class KeyNotFoundError(KeyStoreError):
    """Raised when the key store has no key for the requested name/version"""


class LeaseErrorKind(str, Enum):
    HELD = "held"
    OTHER = "other"


class LeaseError(KMSError):
    """Raised by lease providers; ``kind`` drives the creation protocol"""

    def __init__(self, message: str, *, kind: LeaseErrorKind = LeaseErrorKind.OTHER) -> None:
        super().__init__(message)
        self.kind = kind

    @property
    def held(self) -> bool:
        return self.kind is LeaseErrorKind.HELD


__all__ = [
    "KMSError",
    "ConfigurationError",
    "TransportError",
    "KeyIdentifierError",
    "KeyResolutionError",
    "PinnedKeyVersionNotFound",
    "KeyCreationTimeout",
    "KeyStoreError",
    "KeyNotFoundError",
    "LeaseErrorKind",
    "LeaseError",
]
