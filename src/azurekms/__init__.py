"""Azure Key Vault KMS plugin for Kubernetes encryption at rest."""
from __future__ import annotations

from .version import __version__

__all__ = ["__version__"]
