"""Resolve the configured key to a vault connection and a concrete version."""
from __future__ import annotations

import threading

import structlog

from .errors import KeyIdentifierError, KeyNotFoundError, PinnedKeyVersionNotFound
from .lease import LeaseGuardedCreator
from .models import KeyReference, ResolvedKey, ResolvedKeyHandle, VaultInfo
from .stores import ConfigStore, KeyStoreClientFactory, VaultLocator

logger = structlog.get_logger(__name__)


def version_from_kid(kid: str | None) -> str:
    """Return the version segment of ``https://<vault>/keys/<name>/<version>``."""
    if not kid:
        raise KeyIdentifierError("key identifier is empty")
    segments = kid.split("/")
    if len(segments) < 3 or segments[-3] != "keys" or not segments[-1]:
        raise KeyIdentifierError(f"failed to parse version from: {kid}")
    return segments[-1]


class KeyResolver:
    """Looks the vault up once per process and makes sure the key exists.

    The first successful call caches a :class:`ResolvedKeyHandle`; later calls
    return it without touching the network. A version discovered on the way
    (latest version of an existing key, or a freshly created key) is written
    back through ``config_store`` so restarts reuse the same key.
    """

    def __init__(
        self,
        locator: VaultLocator,
        client_factory: KeyStoreClientFactory,
        creator: LeaseGuardedCreator,
        config_store: ConfigStore,
    ) -> None:
        self._locator = locator
        self._client_factory = client_factory
        self._creator = creator
        self._config_store = config_store
        self._lock = threading.Lock()
        self._handle: ResolvedKeyHandle | None = None
        self._discovered_version = ""

    @property
    def handle(self) -> ResolvedKeyHandle | None:
        return self._handle

    def resolve(self, ref: KeyReference) -> ResolvedKey:
        handle = self._handle
        if handle is None:
            with self._lock:
                handle = self._handle or self._populate(ref)
        version = ref.key_version or self._discovered_version
        return ResolvedKey(
            client=handle.client,
            vault_url=handle.vault_url,
            key_name=ref.key_name,
            key_version=version,
        )

    def _populate(self, ref: KeyReference) -> ResolvedKeyHandle:
        vault = self._locator.get_vault(ref.resource_group, ref.vault_name)
        client = self._client_factory(vault)
        logger.info(
            "resolver.key.verify",
            key=ref.key_name,
            version=ref.key_version or None,
            vault=vault.vault_url,
        )
        kid = self._lookup(client, vault, ref)
        if kid is not None:
            version = version_from_kid(kid)
            logger.info("resolver.version.found", key=ref.key_name, version=version)
            self._config_store.save_key_version(version)
            self._discovered_version = version
        self._handle = ResolvedKeyHandle(vault_url=vault.vault_url, client=client, sku=vault.sku)
        return self._handle

    def _lookup(self, client, vault: VaultInfo, ref: KeyReference) -> str | None:
        try:
            bundle = client.get_key(vault.vault_url, ref.key_name, ref.key_version)
        except KeyNotFoundError as exc:
            if ref.pinned:
                raise PinnedKeyVersionNotFound(
                    f"failed to verify the provided key version {ref.key_version!r} "
                    f"of key {ref.key_name!r}: {exc}"
                ) from exc
            logger.info("resolver.key.missing", key=ref.key_name)
            return self._creator.create(client, vault, ref.key_name)
        if ref.pinned:
            return None
        return bundle.kid


__all__ = ["KeyResolver", "version_from_kid"]
