import pytest

from azurekms.envelope import EnvelopeCodec
from azurekms.errors import KeyStoreError, PinnedKeyVersionNotFound
from azurekms.lease import LeaseGuardedCreator
from azurekms.memory import (
    InMemoryKeyStore,
    InMemoryLeaseProvider,
    MemoryConfigStore,
    StaticVaultLocator,
)
from azurekms.models import KeyReference
from azurekms.resolver import KeyResolver

REF = KeyReference("sub", "rg", "vault", "k8s")


def _codec(store: InMemoryKeyStore, observed: list[str] | None = None) -> EnvelopeCodec:
    resolver = KeyResolver(
        StaticVaultLocator(),
        store,
        LeaseGuardedCreator(InMemoryLeaseProvider()),
        MemoryConfigStore(),
    )
    on_version = observed.append if observed is not None else None
    return EnvelopeCodec(resolver, on_version=on_version)


def test_encrypt_decrypt_round_trip() -> None:
    store = InMemoryKeyStore()
    store.add_key("k8s", "v1")
    codec = _codec(store)

    token = codec.encrypt(b"secret dek", REF)

    assert isinstance(token, str)
    assert "=" not in token
    assert codec.decrypt(token, REF) == b"secret dek"


def test_unpinned_reference_reports_version() -> None:
    store = InMemoryKeyStore()
    store.add_key("k8s", "v1")
    observed: list[str] = []

    _codec(store, observed).encrypt(b"x", REF)

    assert observed == ["v1"]


def test_pinned_reference_does_not_report() -> None:
    store = InMemoryKeyStore()
    store.add_key("k8s", "v1")
    observed: list[str] = []

    _codec(store, observed).encrypt(b"x", REF.with_version("v1"))

    assert observed == []


def test_token_from_another_version_fails() -> None:
    store = InMemoryKeyStore()
    store.add_key("k8s", "v1")
    codec = _codec(store)
    token = codec.encrypt(b"payload", REF.with_version("v1"))
    store.add_key("k8s", "v2")

    with pytest.raises(KeyStoreError):
        _codec(store).decrypt(token, REF.with_version("v2"))


def test_resolution_failure_reaches_caller() -> None:
    codec = _codec(InMemoryKeyStore())
    with pytest.raises(PinnedKeyVersionNotFound):
        codec.encrypt(b"x", REF.with_version("missing"))
