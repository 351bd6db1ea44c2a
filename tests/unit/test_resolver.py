import pytest

from azurekms.errors import KeyStoreError, PinnedKeyVersionNotFound
from azurekms.lease import LeaseGuardedCreator
from azurekms.memory import (
    InMemoryKeyStore,
    InMemoryLeaseProvider,
    MemoryConfigStore,
    StaticVaultLocator,
)
from azurekms.models import KeyReference, KeyType, PollPolicy, VaultSku
from azurekms.resolver import KeyResolver


def _ref(version: str = "") -> KeyReference:
    return KeyReference(
        subscription_id="sub",
        resource_group="rg",
        vault_name="vault",
        key_name="k8s",
        key_version=version,
    )


def _resolver(store, config_store, *, locator=None, leases=None):
    creator = LeaseGuardedCreator(
        leases or InMemoryLeaseProvider(),
        poll=PollPolicy(interval=0.01, timeout=0.1),
        sleep=lambda _seconds: None,
    )
    return KeyResolver(locator or StaticVaultLocator(), store, creator, config_store)


def test_unversioned_existing_key_captures_and_persists_latest_version() -> None:
    store = InMemoryKeyStore()
    store.add_key("k8s", "v1")
    latest = store.add_key("k8s", "v2")
    config_store = MemoryConfigStore()

    key = _resolver(store, config_store).resolve(_ref())

    assert key.key_version == latest
    assert key.key_name == "k8s"
    assert key.vault_url == "https://vault.test/"
    assert config_store.saved == [latest]
    assert store.create_calls == 0


def test_pinned_version_is_used_without_persisting() -> None:
    store = InMemoryKeyStore()
    store.add_key("k8s", "v1")
    store.add_key("k8s", "v2")
    config_store = MemoryConfigStore()

    key = _resolver(store, config_store).resolve(_ref("v1"))

    assert key.key_version == "v1"
    assert config_store.saved == []


def test_pinned_version_missing_is_fatal_and_never_creates() -> None:
    store = InMemoryKeyStore()
    leases = InMemoryLeaseProvider()
    config_store = MemoryConfigStore()
    resolver = _resolver(store, config_store, leases=leases)

    with pytest.raises(PinnedKeyVersionNotFound):
        resolver.resolve(_ref("does-not-exist"))

    assert store.create_calls == 0
    assert leases.acquired == []
    assert config_store.saved == []
    assert resolver.handle is None


def test_missing_key_is_created_and_version_persisted() -> None:
    store = InMemoryKeyStore()
    config_store = MemoryConfigStore()

    key = _resolver(store, config_store).resolve(_ref())

    assert store.create_calls == 1
    assert key.key_version
    assert config_store.saved == [key.key_version]
    assert store.key_type("k8s") is KeyType.RSA


def test_premium_vault_creates_hardware_backed_key() -> None:
    store = InMemoryKeyStore()
    locator = StaticVaultLocator(sku=VaultSku.PREMIUM)

    _resolver(store, MemoryConfigStore(), locator=locator).resolve(_ref())

    assert store.key_type("k8s") is KeyType.RSA_HSM


def test_cached_handle_skips_network() -> None:
    store = InMemoryKeyStore()
    store.add_key("k8s", "v1")
    locator = StaticVaultLocator()
    resolver = _resolver(store, MemoryConfigStore(), locator=locator)

    first = resolver.resolve(_ref())
    calls = store.get_calls
    second = resolver.resolve(_ref())

    assert locator.calls == 1
    assert store.get_calls == calls
    assert second.key_version == first.key_version == "v1"
    assert resolver.handle is not None
    assert resolver.handle.client is store


def test_restart_resolves_the_same_persisted_version() -> None:
    store = InMemoryKeyStore()
    config_store = MemoryConfigStore()

    first = _resolver(store, config_store).resolve(_ref())
    # a restarted process reads the persisted version back from config
    restarted_ref = _ref(config_store.version)
    second = _resolver(store, MemoryConfigStore()).resolve(restarted_ref)
    # and a restart that lost the write-back still converges on the same key
    third = _resolver(store, config_store).resolve(_ref())

    assert first.key_version == second.key_version == third.key_version
    assert store.create_calls == 1
    assert config_store.saved == [first.key_version, first.key_version]


def test_store_errors_propagate_without_creation() -> None:
    class BrokenStore(InMemoryKeyStore):
        def get_key(self, vault_url, name, version=""):
            raise KeyStoreError("vault unreachable")

    store = BrokenStore()
    with pytest.raises(KeyStoreError, match="unreachable"):
        _resolver(store, MemoryConfigStore()).resolve(_ref())
    assert store.create_calls == 0
