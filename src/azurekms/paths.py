"""Shared filesystem path helpers for azurekms."""
from __future__ import annotations

from pathlib import Path

from platformdirs import PlatformDirs

_APP_NAME = "azurekms"


def site_config_dir() -> Path:
    """Return the system-wide configuration directory."""
    dirs = PlatformDirs(appname=_APP_NAME, appauthor=None, multipath=False)
    return Path(dirs.site_config_path)


def default_unix_socket_path() -> Path:
    """Return the socket the API server expects the plugin on."""
    return Path("/opt/azurekms.socket")


def default_cloud_config_path() -> Path:
    """Return the default cloud provider configuration file."""
    return Path("/etc/kubernetes/azure.json")
