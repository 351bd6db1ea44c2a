import pytest

from azurekms.errors import KeyCreationTimeout, KeyNotFoundError, KeyStoreError, LeaseError
from azurekms.lease import LeaseGuardedCreator
from azurekms.memory import InMemoryKeyStore, InMemoryLeaseProvider
from azurekms.models import KeyType, PollPolicy, VaultInfo, VaultSku
from azurekms.resolver import version_from_kid

VAULT = VaultInfo(vault_url="https://vault.test/")


class FakeSleep:
    def __init__(self, on_call=None) -> None:
        self.total = 0.0
        self.calls = 0
        self._on_call = on_call

    def __call__(self, seconds: float) -> None:
        self.calls += 1
        self.total += seconds
        if self._on_call is not None:
            self._on_call(self.calls)


def test_lease_winner_creates_key() -> None:
    store = InMemoryKeyStore()
    leases = InMemoryLeaseProvider()
    creator = LeaseGuardedCreator(leases, sleep=FakeSleep())

    kid = creator.create(store, VAULT, "k8s")

    assert store.create_calls == 1
    assert len(leases.acquired) == 1
    assert version_from_kid(kid)
    assert store.key_type("k8s") is KeyType.RSA


def test_premium_vault_gets_hsm_key() -> None:
    store = InMemoryKeyStore()
    creator = LeaseGuardedCreator(InMemoryLeaseProvider(), sleep=FakeSleep())

    creator.create(store, VaultInfo(vault_url="https://vault.test/", sku=VaultSku.PREMIUM), "k8s")

    assert store.key_type("k8s") is KeyType.RSA_HSM


def test_held_lease_polls_until_key_appears() -> None:
    store = InMemoryKeyStore()
    leases = InMemoryLeaseProvider()
    leases.hold("k8s")

    def appear(calls: int) -> None:
        if calls == 2:
            store.add_key("k8s", "created-elsewhere")

    sleep = FakeSleep(appear)
    creator = LeaseGuardedCreator(leases, sleep=sleep)

    kid = creator.create(store, VAULT, "k8s")

    assert version_from_kid(kid) == "created-elsewhere"
    assert store.create_calls == 0
    assert sleep.calls == 2
    assert sleep.total == pytest.approx(10.0)


def test_held_lease_times_out_after_about_a_minute() -> None:
    store = InMemoryKeyStore()
    leases = InMemoryLeaseProvider()
    leases.hold("k8s")
    sleep = FakeSleep()
    creator = LeaseGuardedCreator(leases, sleep=sleep)

    with pytest.raises(KeyCreationTimeout):
        creator.create(store, VAULT, "k8s")

    assert 55 <= sleep.total <= 65
    assert store.create_calls == 0


def test_poll_survives_transient_store_errors() -> None:
    class Flaky(InMemoryKeyStore):
        def __init__(self) -> None:
            super().__init__()
            self.failures = 2

        def get_key(self, vault_url, name, version=""):
            if self.failures:
                self.failures -= 1
                raise KeyStoreError("throttled")
            return super().get_key(vault_url, name, version)

    store = Flaky()
    store.add_key("k8s", "v1")
    leases = InMemoryLeaseProvider()
    leases.hold("k8s")
    sleep = FakeSleep()

    kid = LeaseGuardedCreator(leases, sleep=sleep).create(store, VAULT, "k8s")

    assert kid.endswith("/keys/k8s/v1")
    assert sleep.calls == 2


def test_other_lease_errors_propagate() -> None:
    class BrokenLeases(InMemoryLeaseProvider):
        def acquire_lease(self, name, duration):
            raise LeaseError("forbidden")

    store = InMemoryKeyStore()
    sleep = FakeSleep()

    with pytest.raises(LeaseError) as excinfo:
        LeaseGuardedCreator(BrokenLeases(), sleep=sleep).create(store, VAULT, "k8s")

    assert not excinfo.value.held
    assert sleep.calls == 0
    assert store.create_calls == 0


def test_expired_lease_can_be_acquired_again() -> None:
    now = [0.0]
    leases = InMemoryLeaseProvider(clock=lambda: now[0])
    leases.ensure_blob("k8s")
    leases.acquire_lease("k8s", 60)

    with pytest.raises(LeaseError) as excinfo:
        leases.acquire_lease("k8s", 60)
    assert excinfo.value.held

    now[0] = 61.0
    leases.acquire_lease("k8s", 60)
    assert len(leases.acquired) == 2


def test_unknown_key_is_not_found() -> None:
    store = InMemoryKeyStore()
    with pytest.raises(KeyNotFoundError):
        store.get_key(VAULT.vault_url, "k8s")


@pytest.mark.parametrize(
    "interval, timeout",
    [(0, 60), (-1, 60), (5, 1)],
)
def test_poll_policy_validation(interval, timeout) -> None:
    with pytest.raises(ValueError):
        PollPolicy(interval=interval, timeout=timeout)
