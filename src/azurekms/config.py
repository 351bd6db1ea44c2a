"""Configuration loading utilities for azurekms.

Two sources feed the plugin: the cloud provider file shared with the rest of
the control plane (``azure.json``), which names the vault and key, and an
optional YAML settings file tuning the plugin itself.
"""
from __future__ import annotations

import json
import os
import tempfile
import threading
from pathlib import Path
from typing import Any, Dict, Iterable, Optional

import structlog
import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from .errors import ConfigurationError
from .models import KeyReference, PollPolicy
from .paths import default_cloud_config_path, default_unix_socket_path, site_config_dir

logger = structlog.get_logger(__name__)

_KEY_VERSION_FIELD = "providerKeyVersion"


class LoggingConfig(BaseModel):
    level: str = Field(default="INFO", description="Logging verbosity level")

    def normalized_level(self) -> str:
        return self.level.upper()


class IPCConfig(BaseModel):
    socket_path: Path = Field(default_factory=default_unix_socket_path)


class KeyCreationConfig(BaseModel):
    poll_interval: float = Field(default=5.0, gt=0, description="Seconds between visibility polls")
    poll_timeout: float = Field(default=60.0, gt=0, description="Give up waiting after this many seconds")
    lease_duration: int = Field(default=60, ge=15, le=60, description="Blob lease duration in seconds")

    @model_validator(mode="after")
    def _timeout_covers_one_poll(self) -> "KeyCreationConfig":
        if self.poll_timeout < self.poll_interval:
            raise ValueError("poll_timeout must be at least poll_interval")
        return self

    def poll_policy(self) -> PollPolicy:
        return PollPolicy(interval=self.poll_interval, timeout=self.poll_timeout)


class ServerConfig(BaseModel):
    drain_timeout: Optional[float] = Field(
        default=None, gt=0, description="Upper bound on graceful shutdown, unbounded when unset"
    )


class PluginSettings(BaseModel):
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    ipc: IPCConfig = Field(default_factory=IPCConfig)
    key_creation: KeyCreationConfig = Field(default_factory=KeyCreationConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)


DEFAULT_SETTINGS = PluginSettings()


class AzureConfig(BaseModel):
    """The subset of the cloud provider config the plugin reads."""

    tenant_id: str = Field(default="", alias="tenantId")
    subscription_id: str = Field(default="", alias="subscriptionId")
    aad_client_id: str = Field(default="", alias="aadClientId")
    aad_client_secret: str = Field(default="", alias="aadClientSecret", repr=False)
    resource_group: str = Field(default="", alias="resourceGroup")
    location: str = Field(default="")
    cloud: str = Field(default="")
    vault_name: str = Field(default="", alias="providerVaultName")
    key_name: str = Field(default="", alias="providerKeyName")
    key_version: str = Field(default="", alias=_KEY_VERSION_FIELD)
    use_managed_identity: bool = Field(default=False, alias="useManagedIdentityExtension")
    user_assigned_identity_id: str = Field(default="", alias="userAssignedIdentityID")

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    @field_validator("*", mode="before")
    @classmethod
    def _strip_strings(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip()
        return value

    def require(self) -> "AzureConfig":
        """Raise :class:`ConfigurationError` naming the first missing required field."""
        required = {
            "subscriptionId": self.subscription_id,
            "resourceGroup": self.resource_group,
            "providerVaultName": self.vault_name,
            "providerKeyName": self.key_name,
        }
        for name, value in required.items():
            if not value:
                raise ConfigurationError(f"Missing {name} in azure config")
        return self

    def key_reference(self) -> KeyReference:
        self.require()
        return KeyReference(
            subscription_id=self.subscription_id,
            resource_group=self.resource_group,
            vault_name=self.vault_name,
            key_name=self.key_name,
            key_version=self.key_version,
        )


def settings_search_paths(explicit: Optional[Path] = None) -> Iterable[Path]:
    if explicit:
        yield explicit
    yield Path.cwd() / ".azurekms" / "config.yaml"
    yield site_config_dir() / "config.yaml"


def load_settings(path: Optional[Path] = None) -> PluginSettings:
    if path is not None and not path.is_file():
        raise ConfigurationError(f"Settings file not found: {path}")
    for candidate in settings_search_paths(path):
        if candidate.is_file():
            try:
                with candidate.open("r", encoding="utf-8") as handle:
                    data = yaml.safe_load(handle) or {}
                return PluginSettings.model_validate(data)
            except (yaml.YAMLError, ValidationError) as exc:
                raise ConfigurationError(f"Invalid configuration in {candidate}: {exc}") from exc
    return DEFAULT_SETTINGS.model_copy(deep=True)


def load_azure_config(path: Optional[Path] = None) -> AzureConfig:
    target = path or default_cloud_config_path()
    try:
        raw = target.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigurationError(f"Failed to read cloud config {target}: {exc}") from exc
    try:
        return AzureConfig.model_validate_json(raw)
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid cloud config in {target}: {exc}") from exc


class FileConfigStore:
    """Persists a discovered key version back into ``azure.json``.

    Only ``providerKeyVersion`` is touched; every other field, known or not,
    is written back as it was read. The file is replaced atomically.
    """

    def __init__(self, path: Path) -> None:
        self.path = path
        self._lock = threading.Lock()

    def save_key_version(self, version: str) -> None:
        with self._lock:
            data = self._read()
            if data.get(_KEY_VERSION_FIELD) == version:
                return
            data[_KEY_VERSION_FIELD] = version
            self._write(data)
        logger.info("config.key_version.saved", path=str(self.path), version=version)

    def _read(self) -> Dict[str, Any]:
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            raise ConfigurationError(f"Failed to read cloud config {self.path}: {exc}") from exc
        if not isinstance(data, dict):
            raise ConfigurationError(f"Cloud config {self.path} is not a JSON object")
        return data

    def _write(self, data: Dict[str, Any]) -> None:
        directory = self.path.parent
        fd, tmp_name = tempfile.mkstemp(prefix=f".{self.path.name}.", dir=directory)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(data, handle, indent=4)
                handle.write("\n")
            try:
                os.chmod(tmp_name, self.path.stat().st_mode & 0o777)
            except OSError as exc:
                logger.warning("config.mode.not_preserved", path=str(self.path), error=str(exc))
            os.replace(tmp_name, self.path)
        except OSError as exc:
            Path(tmp_name).unlink(missing_ok=True)
            raise ConfigurationError(f"Failed to update cloud config {self.path}: {exc}") from exc


def dump_default_settings(target: Path) -> None:
    target.parent.mkdir(parents=True, exist_ok=True)
    with target.open("w", encoding="utf-8") as handle:
        yaml.safe_dump(DEFAULT_SETTINGS.model_dump(mode="json"), handle, sort_keys=False)


__all__ = [
    "AzureConfig",
    "DEFAULT_SETTINGS",
    "FileConfigStore",
    "IPCConfig",
    "KeyCreationConfig",
    "LoggingConfig",
    "PluginSettings",
    "ServerConfig",
    "dump_default_settings",
    "load_azure_config",
    "load_settings",
    "settings_search_paths",
]
