"""Daemon serving the KMS plugin protocol."""
from __future__ import annotations

from typing import TYPE_CHECKING, Any

__all__ = ["KMSServer", "ServerState"]


def __getattr__(name: str) -> Any:  # pragma: no cover - thin wrapper
    if name in {"KMSServer", "ServerState"}:
        from .server import KMSServer, ServerState

        globals().update({"KMSServer": KMSServer, "ServerState": ServerState})
        return globals()[name]
    raise AttributeError(name)


if TYPE_CHECKING:  # pragma: no cover - typing aid
    from .server import KMSServer, ServerState  # noqa: F401
