"""Create a missing key exactly once across all replicas of the plugin.

Every replica that finds the key missing races for a lease on a blob named
after the key. The lease holder creates the key; everyone else polls the
vault until the new key shows up or the wait times out.
"""
from __future__ import annotations

import time
from typing import Callable

import structlog

from .errors import KeyCreationTimeout, KeyNotFoundError, KeyStoreError, LeaseError
from .models import KeyCreateParameters, KeyType, PollPolicy, VaultInfo
from .stores import KeyStoreClient, LeaseProvider

DEFAULT_LEASE_DURATION = 60

logger = structlog.get_logger(__name__)


class LeaseGuardedCreator:
    def __init__(
        self,
        leases: LeaseProvider,
        *,
        poll: PollPolicy | None = None,
        lease_duration: int = DEFAULT_LEASE_DURATION,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._leases = leases
        self._poll = poll or PollPolicy()
        self._lease_duration = lease_duration
        self._sleep = sleep

    def create(self, client: KeyStoreClient, vault: VaultInfo, key_name: str) -> str:
        """Return the identifier of the key, creating it if this caller wins the lease."""
        logger.info("lease.create.start", key=key_name, vault=vault.vault_url)
        self._leases.ensure_blob(key_name)
        try:
            self._leases.acquire_lease(key_name, self._lease_duration)
        except LeaseError as exc:
            if not exc.held:
                raise
            logger.info("lease.held", key=key_name)
            return self._wait_for_key(client, vault, key_name)

        params = KeyCreateParameters(key_type=KeyType.for_sku(vault.sku))
        logger.info("lease.acquired", key=key_name, key_type=params.key_type.value)
        bundle = client.create_key(vault.vault_url, key_name, params)
        logger.info("lease.key.created", key=key_name)
        return bundle.kid

    def _wait_for_key(self, client: KeyStoreClient, vault: VaultInfo, key_name: str) -> str:
        waited = 0.0
        while waited < self._poll.timeout:
            try:
                bundle = client.get_key(vault.vault_url, key_name, "")
            except KeyNotFoundError:
                pass
            except KeyStoreError as exc:
                logger.warning("lease.poll.error", key=key_name, error=str(exc))
            else:
                logger.info("lease.poll.found", key=key_name, waited=waited)
                return bundle.kid
            self._sleep(self._poll.interval)
            waited += self._poll.interval
            logger.info("lease.poll.retry", key=key_name, waited=waited)
        raise KeyCreationTimeout(
            f"key {key_name!r} did not become visible within {self._poll.timeout:g} seconds"
        )


__all__ = ["DEFAULT_LEASE_DURATION", "LeaseGuardedCreator"]
