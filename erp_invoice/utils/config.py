"""Runtime configuration helpers for the invoice MCP server."""
from __future__ import annotations

import os
from pathlib import Path
from typing import Final, Optional

from dotenv import load_dotenv

# Load .env file from project root (if it exists)
load_dotenv()


def _parse_bool(value: str | None, *, default: bool = False) -> bool:
    if value is None:
        return default
    value = value.strip().lower()
    return value in {"1", "true", "yes", "on"}


def _parse_float(value: str | None, *, default: float) -> float:
    if value is None or not value.strip():
        return default
    try:
        return float(value)
    except ValueError:
        return default


def _env_bool(name: str, *, default: bool = False) -> bool:
    return _parse_bool(os.getenv(name), default=default)


ENABLE_WRITES: Final[bool] = _env_bool("MCP_ENABLE_WRITES", default=False)

_audit_log_env = os.getenv("MCP_AUDIT_LOG", "").strip()
AUDIT_LOG_PATH: Final[Optional[Path]] = (
    Path(_audit_log_env).expanduser() if _audit_log_env else None
)


def writes_enabled() -> bool:
    """Return whether write tools may run.

    Read at call time so tests and long-running servers pick up changes to
    ``MCP_ENABLE_WRITES`` without re-importing this module.
    """

    return _env_bool("MCP_ENABLE_WRITES", default=ENABLE_WRITES)


def get_default_series() -> str:
    """Series used when a draft does not name one (``ERP_DEFAULT_SERIES``)."""

    value = os.getenv("ERP_DEFAULT_SERIES", "").strip().upper()
    return value or "FAC"


def get_lock_timeout() -> float:
    """Seconds to wait for the sequence/index file locks (``ERP_LOCK_TIMEOUT``)."""

    return _parse_float(os.getenv("ERP_LOCK_TIMEOUT"), default=5.0)


__all__ = [
    "AUDIT_LOG_PATH",
    "ENABLE_WRITES",
    "get_default_series",
    "get_lock_timeout",
    "writes_enabled",
]
