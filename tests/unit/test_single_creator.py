import threading

from azurekms.lease import LeaseGuardedCreator
from azurekms.memory import (
    InMemoryKeyStore,
    InMemoryLeaseProvider,
    MemoryConfigStore,
    StaticVaultLocator,
)
from azurekms.models import KeyReference, PollPolicy
from azurekms.resolver import KeyResolver

REPLICAS = 8


def test_concurrent_replicas_create_the_key_once() -> None:
    store = InMemoryKeyStore()
    leases = InMemoryLeaseProvider()
    ref = KeyReference("sub", "rg", "vault", "k8s")
    barrier = threading.Barrier(REPLICAS)
    versions: list[str] = []
    errors: list[BaseException] = []
    lock = threading.Lock()

    def replica() -> None:
        resolver = KeyResolver(
            StaticVaultLocator(),
            store,
            LeaseGuardedCreator(leases, poll=PollPolicy(interval=0.01, timeout=5.0)),
            MemoryConfigStore(),
        )
        barrier.wait()
        try:
            key = resolver.resolve(ref)
        except BaseException as exc:  # noqa: BLE001 - collected for the assertion below
            with lock:
                errors.append(exc)
            return
        with lock:
            versions.append(key.key_version)

    threads = [threading.Thread(target=replica) for _ in range(REPLICAS)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)

    assert errors == []
    assert store.create_calls == 1
    assert len(versions) == REPLICAS
    assert len(set(versions)) == 1


def test_concurrent_calls_share_one_resolution() -> None:
    store = InMemoryKeyStore()
    store.add_key("k8s", "v1")
    locator = StaticVaultLocator()
    resolver = KeyResolver(
        locator,
        store,
        LeaseGuardedCreator(InMemoryLeaseProvider()),
        MemoryConfigStore(),
    )
    ref = KeyReference("sub", "rg", "vault", "k8s")

    threads = [threading.Thread(target=resolver.resolve, args=(ref,)) for _ in range(REPLICAS)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=10)

    assert locator.calls == 1
    assert store.get_calls == 1
