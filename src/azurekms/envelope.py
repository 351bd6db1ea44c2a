"""Encrypt and decrypt envelope keys with the resolved vault key."""
from __future__ import annotations

from typing import Callable, Optional

from .models import KeyReference, ResolvedKey
from .resolver import KeyResolver
from .stores import ENCRYPTION_ALGORITHM
from .utils import b64d, b64e

VersionObserver = Callable[[str], None]


class EnvelopeCodec:
    """Maps caller payloads onto the key store's encrypt/decrypt operations.

    All cryptography happens in the key store. Plaintext travels as unpadded
    base64url text; the ciphertext token the store returns is handed back
    untouched.
    """

    def __init__(self, resolver: KeyResolver, *, on_version: Optional[VersionObserver] = None) -> None:
        self._resolver = resolver
        self._on_version = on_version

    def encrypt(self, plaintext: bytes, ref: KeyReference) -> str:
        key = self._resolve(ref)
        return key.client.encrypt(
            key.vault_url,
            key.key_name,
            key.key_version,
            ENCRYPTION_ALGORITHM,
            b64e(plaintext),
        )

    def decrypt(self, token: str, ref: KeyReference) -> bytes:
        key = self._resolve(ref)
        result = key.client.decrypt(
            key.vault_url,
            key.key_name,
            key.key_version,
            ENCRYPTION_ALGORITHM,
            token,
        )
        return b64d(result)

    def _resolve(self, ref: KeyReference) -> ResolvedKey:
        key = self._resolver.resolve(ref)
        if not ref.pinned and key.key_version and self._on_version is not None:
            self._on_version(key.key_version)
        return key


__all__ = ["EnvelopeCodec", "VersionObserver"]
