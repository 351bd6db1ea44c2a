"""Structured logging setup for azurekms.

The plugin runs as a static pod next to the API server, so everything goes to
stderr as one JSON object per line (``ts``, ``level``, ``msg``, ``component``).
Payloads and credentials are dropped before rendering.
"""
from __future__ import annotations

import logging
import sys
from typing import Any, MutableMapping, TextIO

import structlog

_PACKAGE = "azurekms"

# event keys that may carry key material or credentials
_REDACTED_KEYS = frozenset(
    {"plain", "plaintext", "cipher", "ciphertext", "value", "token", "aad_client_secret", "aadClientSecret"}
)


def configure_logging(level: str | None = None, *, stream: TextIO | None = None) -> None:
    """Route stdlib and structlog output through a single JSON renderer."""

    numeric_level = logging.getLevelName((level or "INFO").upper())
    if not isinstance(numeric_level, int):
        numeric_level = logging.INFO

    logging.basicConfig(
        level=numeric_level,
        handlers=[logging.StreamHandler(stream or sys.stderr)],
        format="%(message)s",
        force=True,
    )
    # the Azure SDK logs every HTTP request at INFO
    logging.getLogger("azure").setLevel(max(numeric_level, logging.WARNING))

    structlog.configure(
        processors=[
            structlog.processors.TimeStamper(fmt="iso", key="ts"),
            structlog.stdlib.add_log_level,
            _add_component,
            _redact_payloads,
            structlog.processors.EventRenamer("msg"),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        cache_logger_on_first_use=True,
    )


def _add_component(logger: Any, _name: str, event_dict: MutableMapping[str, Any]) -> MutableMapping[str, Any]:
    """``azurekms.daemon.server`` logs as component ``daemon.server``."""

    if "component" not in event_dict:
        name = getattr(logger, "name", None) or _PACKAGE
        event_dict["component"] = name.removeprefix(f"{_PACKAGE}.")
    return event_dict


def _redact_payloads(_logger: Any, _name: str, event_dict: MutableMapping[str, Any]) -> MutableMapping[str, Any]:
    for key in _REDACTED_KEYS.intersection(event_dict):
        event_dict[key] = "[redacted]"
    return event_dict


__all__ = ["configure_logging"]
