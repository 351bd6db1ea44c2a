"""Azure SDK implementations of the store interfaces."""
from __future__ import annotations

import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict
from urllib.parse import quote

import structlog
from azure.core.exceptions import AzureError, HttpResponseError, ResourceExistsError, ResourceNotFoundError
from azure.core.rest import HttpRequest
from azure.identity import ClientSecretCredential, ManagedIdentityCredential
from azure.keyvault.keys import KeyClient, KeyOperation
from azure.mgmt.keyvault import KeyVaultManagementClient
from azure.mgmt.storage import StorageManagementClient
from azure.storage.blob import BlobServiceClient

from .config import AzureConfig, FileConfigStore, PluginSettings
from .errors import (
    ConfigurationError,
    KeyNotFoundError,
    KeyStoreError,
    LeaseError,
    LeaseErrorKind,
)
from .lease import LeaseGuardedCreator
from .models import KeyBundle, KeyCreateParameters, KeyType, VaultInfo, VaultSku
from .resolver import KeyResolver

USER_AGENT = "k8s-kms-keyvault"
LEASE_ALREADY_PRESENT = "LeaseAlreadyPresent"

logger = structlog.get_logger(__name__)


@dataclass(frozen=True, slots=True)
class CloudEnvironment:
    name: str
    authority_host: str
    resource_manager: str
    storage_suffix: str

    @property
    def management_scope(self) -> str:
        return self.resource_manager.rstrip("/") + "/.default"


PUBLIC_CLOUD = CloudEnvironment(
    name="AzurePublicCloud",
    authority_host="login.microsoftonline.com",
    resource_manager="https://management.azure.com/",
    storage_suffix="core.windows.net",
)

_CLOUDS: Dict[str, CloudEnvironment] = {
    env.name.lower(): env
    for env in (
        PUBLIC_CLOUD,
        CloudEnvironment(
            name="AzureChinaCloud",
            authority_host="login.chinacloudapi.cn",
            resource_manager="https://management.chinacloudapi.cn/",
            storage_suffix="core.chinacloudapi.cn",
        ),
        CloudEnvironment(
            name="AzureUSGovernmentCloud",
            authority_host="login.microsoftonline.us",
            resource_manager="https://management.usgovcloudapi.net/",
            storage_suffix="core.usgovcloudapi.net",
        ),
        CloudEnvironment(
            name="AzureGermanCloud",
            authority_host="login.microsoftonline.de",
            resource_manager="https://management.microsoftazure.de/",
            storage_suffix="core.cloudapi.de",
        ),
    )
}


def cloud_environment(name: str | None) -> CloudEnvironment:
    if not name:
        return PUBLIC_CLOUD
    try:
        return _CLOUDS[name.strip().lower()]
    except KeyError:
        raise ConfigurationError(f"Unknown cloud environment: {name}") from None


def credential_from_config(config: AzureConfig, env: CloudEnvironment) -> Any:
    if config.use_managed_identity:
        if config.user_assigned_identity_id:
            return ManagedIdentityCredential(client_id=config.user_assigned_identity_id)
        return ManagedIdentityCredential()
    missing = [
        name
        for name, value in (
            ("tenantId", config.tenant_id),
            ("aadClientId", config.aad_client_id),
            ("aadClientSecret", config.aad_client_secret),
        )
        if not value
    ]
    if missing:
        raise ConfigurationError(f"Missing {', '.join(missing)} in azure config")
    return ClientSecretCredential(
        config.tenant_id,
        config.aad_client_id,
        config.aad_client_secret,
        authority=env.authority_host,
    )


class ManagementVaultLocator:
    """Finds a vault's URI and SKU through Azure Resource Manager."""

    def __init__(self, credential: Any, subscription_id: str, env: CloudEnvironment) -> None:
        self._client = KeyVaultManagementClient(
            credential,
            subscription_id,
            base_url=env.resource_manager,
            credential_scopes=[env.management_scope],
        )

    def get_vault(self, resource_group: str, vault_name: str) -> VaultInfo:
        try:
            vault = self._client.vaults.get(resource_group, vault_name)
        except HttpResponseError as exc:
            raise KeyStoreError(f"failed to get vault {vault_name!r}: {exc}") from exc
        properties = vault.properties
        return VaultInfo(vault_url=properties.vault_uri, sku=VaultSku.parse(properties.sku.name))


class KeyVaultStoreClient:
    """Key operations via ``azure-keyvault-keys``.

    Encrypt and decrypt go to the vault as REST key operations; values cross
    this boundary as the base64url text the REST API exchanges.
    """

    def __init__(self, credential: Any, *, user_agent: str = USER_AGENT) -> None:
        self._credential = credential
        self._user_agent = user_agent
        self._lock = threading.Lock()
        self._key_clients: Dict[str, KeyClient] = {}

    def __call__(self, vault: VaultInfo) -> "KeyVaultStoreClient":
        return self

    def get_key(self, vault_url: str, name: str, version: str = "") -> KeyBundle:
        client = self._key_client(vault_url)
        try:
            key = client.get_key(name, version=version or None)
        except ResourceNotFoundError as exc:
            raise KeyNotFoundError(f"key {name!r} version {version or 'latest'!r} not found: {exc}") from exc
        except HttpResponseError as exc:
            raise KeyStoreError(f"failed to get key {name!r}: {exc}") from exc
        return _bundle(key)

    def create_key(self, vault_url: str, name: str, params: KeyCreateParameters) -> KeyBundle:
        client = self._key_client(vault_url)
        try:
            key = client.create_rsa_key(
                name,
                size=params.size,
                hardware_protected=params.key_type is KeyType.RSA_HSM,
                key_operations=[KeyOperation(op) for op in params.operations],
                enabled=params.enabled,
            )
        except HttpResponseError as exc:
            raise KeyStoreError(f"failed to create key {name!r}: {exc}") from exc
        return _bundle(key)

    def encrypt(self, vault_url: str, name: str, version: str, algorithm: str, value: str) -> str:
        return self._key_operation(vault_url, name, version, "encrypt", algorithm, value)

    def decrypt(self, vault_url: str, name: str, version: str, algorithm: str, value: str) -> str:
        return self._key_operation(vault_url, name, version, "decrypt", algorithm, value)

    def _key_operation(
        self, vault_url: str, name: str, version: str, operation: str, algorithm: str, value: str
    ) -> str:
        # remote key operation; key material never leaves the vault
        client = self._key_client(vault_url)
        path = "/".join(quote(part, safe="") for part in ("keys", name, version, operation) if part)
        request = HttpRequest(
            "POST",
            f"{vault_url.rstrip('/')}/{path}",
            params={"api-version": client.api_version},
            json={"alg": algorithm, "value": value},
        )
        try:
            response = client.send_request(request)
        except AzureError as exc:
            raise KeyStoreError(f"failed to {operation} with key {name!r}: {exc}") from exc
        if response.status_code == 404:
            raise KeyNotFoundError(f"key {name!r} version {version!r} not found")
        try:
            response.raise_for_status()
        except HttpResponseError as exc:
            raise KeyStoreError(f"failed to {operation} with key {name!r}: {exc}") from exc
        try:
            return response.json()["value"]
        except (ValueError, KeyError, TypeError) as exc:
            raise KeyStoreError(f"unexpected {operation} response for key {name!r}: {exc}") from exc

    def _key_client(self, vault_url: str) -> KeyClient:
        with self._lock:
            client = self._key_clients.get(vault_url)
            if client is None:
                client = KeyClient(
                    vault_url=vault_url, credential=self._credential, user_agent=self._user_agent
                )
                self._key_clients[vault_url] = client
            return client


def _bundle(key: Any) -> KeyBundle:
    key_type = getattr(key, "key_type", None)
    return KeyBundle(
        kid=key.id,
        enabled=bool(getattr(key.properties, "enabled", True)),
        key_type=str(getattr(key_type, "value", key_type)) if key_type is not None else None,
    )


class BlobLeaseProvider:
    """Blob leases in the storage account that shares the vault's name."""

    def __init__(
        self,
        credential: Any,
        subscription_id: str,
        resource_group: str,
        account_name: str,
        env: CloudEnvironment,
    ) -> None:
        self._management = StorageManagementClient(
            credential,
            subscription_id,
            base_url=env.resource_manager,
            credential_scopes=[env.management_scope],
        )
        self._resource_group = resource_group
        self._account_name = account_name
        self._env = env
        self._service: BlobServiceClient | None = None

    def ensure_blob(self, name: str) -> None:
        service = self._blob_service()
        try:
            container = service.get_container_client(name)
            if not container.exists():
                logger.info("lease.container.create", container=name)
                try:
                    container.create_container()
                except ResourceExistsError:
                    logger.debug("lease.container.exists", container=name)
            blob = container.get_blob_client(name)
            if not blob.exists():
                logger.info("lease.blob.create", blob=name)
                try:
                    blob.upload_blob(b"", blob_type="BlockBlob", overwrite=False)
                except ResourceExistsError:
                    logger.debug("lease.blob.exists", blob=name)
        except HttpResponseError as exc:
            raise LeaseError(f"failed to prepare lease blob {name!r}: {exc}") from exc

    def acquire_lease(self, name: str, duration: int) -> str:
        blob = self._blob_service().get_blob_client(container=name, blob=name)
        try:
            lease = blob.acquire_lease(lease_duration=duration)
        except HttpResponseError as exc:
            if getattr(exc, "error_code", None) == LEASE_ALREADY_PRESENT:
                raise LeaseError(f"lease on {name!r} is held", kind=LeaseErrorKind.HELD) from exc
            raise LeaseError(f"failed to acquire lease on {name!r}: {exc}") from exc
        return lease.id

    def _blob_service(self) -> BlobServiceClient:
        if self._service is None:
            try:
                keys = self._management.storage_accounts.list_keys(
                    self._resource_group, self._account_name
                )
            except HttpResponseError as exc:
                raise LeaseError(
                    f"failed to list keys of storage account {self._account_name!r}: {exc}"
                ) from exc
            if not keys.keys:
                raise LeaseError(f"storage account {self._account_name!r} has no access keys")
            account_url = f"https://{self._account_name}.blob.{self._env.storage_suffix}"
            self._service = BlobServiceClient(
                account_url=account_url,
                credential={"account_name": self._account_name, "account_key": keys.keys[0].value},
            )
        return self._service


def build_resolver(config: AzureConfig, settings: PluginSettings, config_path: Path) -> KeyResolver:
    """Wire the Azure-backed collaborators of a :class:`KeyResolver`."""
    config.require()
    env = cloud_environment(config.cloud)
    credential = credential_from_config(config, env)
    leases = BlobLeaseProvider(
        credential,
        config.subscription_id,
        config.resource_group,
        config.vault_name,
        env,
    )
    creator = LeaseGuardedCreator(
        leases,
        poll=settings.key_creation.poll_policy(),
        lease_duration=settings.key_creation.lease_duration,
    )
    return KeyResolver(
        ManagementVaultLocator(credential, config.subscription_id, env),
        KeyVaultStoreClient(credential),
        creator,
        FileConfigStore(config_path),
    )


__all__ = [
    "USER_AGENT",
    "LEASE_ALREADY_PRESENT",
    "CloudEnvironment",
    "PUBLIC_CLOUD",
    "cloud_environment",
    "credential_from_config",
    "ManagementVaultLocator",
    "KeyVaultStoreClient",
    "BlobLeaseProvider",
    "build_resolver",
]
