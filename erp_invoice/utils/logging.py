"""Logging setup and write auditing for the invoice server."""
from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from .config import AUDIT_LOG_PATH

_LOG_FORMAT = "%(levelname)s:%(name)s:%(message)s"
_AUDIT_LOGGER = logging.getLogger("erp_invoice.audit")


def configure_root(level: int = logging.INFO) -> None:
    """Reset the root logger to a single stream handler with the default format."""

    logging.basicConfig(level=level, format=_LOG_FORMAT, force=True)


def record_write_attempt(
    tool: str,
    *,
    details: dict[str, object] | None = None,
    audit_path: Optional[Path] = None,
) -> None:
    """Log a write-capable tool invocation and append it to the audit log, if configured."""

    _AUDIT_LOGGER.info("write.attempt tool=%s details=%s", tool, details or {})

    target = audit_path or AUDIT_LOG_PATH
    if target is None:
        return

    entry = {
        "ts": datetime.now(timezone.utc).isoformat(),
        "tool": tool,
        "details": details or {},
    }
    target.parent.mkdir(parents=True, exist_ok=True)
    with target.open("a", encoding="utf-8") as handle:
        handle.write(json.dumps(entry, sort_keys=True, default=str))
        handle.write("\n")


__all__ = ["configure_root", "record_write_attempt"]
