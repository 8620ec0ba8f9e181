"""Command line handling for the invoice MCP server."""
from __future__ import annotations

import argparse
import logging
import os
import re
import socket
from typing import Callable

from erp_invoice.backends.invoices_storage import get_invoice_root
from erp_invoice.utils.config import get_default_series, writes_enabled

StartSSE = Callable[[str, int], None]
RunStdIO = Callable[[], None]

_SERIES_RE = re.compile(r"^[A-Za-z]{1,10}$")


def build_parser() -> argparse.ArgumentParser:
    """Create an argument parser for the runtime."""

    parser = argparse.ArgumentParser(description="erp-invoice-mcp server")
    parser.add_argument(
        "--transport",
        type=str,
        default="stdio",
        choices=["stdio", "sse"],
        help="Transport mechanism to expose (default: stdio)",
    )
    parser.add_argument("--mcp-host", type=str, default="127.0.0.1", help="Host for SSE")
    parser.add_argument("--mcp-port", type=int, default=8099, help="Port for SSE")

    storage = parser.add_argument_group("invoices")
    storage.add_argument(
        "--root",
        type=str,
        default=None,
        help="Invoice storage directory (overrides ERP_INVOICE_ROOT)",
    )
    storage.add_argument(
        "--series",
        type=str,
        default=None,
        help="Default numbering series, 1-10 letters (overrides ERP_DEFAULT_SERIES)",
    )
    storage.add_argument(
        "--enable-writes",
        action="store_true",
        help="Allow write tools for this process (same as MCP_ENABLE_WRITES=1)",
    )

    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    return parser


def apply_overrides(args: argparse.Namespace, *, logger: logging.Logger) -> None:
    """Push CLI overrides into the environment read by the backends."""

    if args.root:
        os.environ["ERP_INVOICE_ROOT"] = args.root
    if args.series:
        if not _SERIES_RE.match(args.series):
            logger.error("Invalid --series: %r (expected 1-10 letters)", args.series)
            raise SystemExit(2)
        os.environ["ERP_DEFAULT_SERIES"] = args.series.upper()
    if args.enable_writes:
        os.environ["MCP_ENABLE_WRITES"] = "1"


def _ensure_port_free(host: str, port: int, *, logger: logging.Logger) -> None:
    if port <= 0 or port > 65535:
        logger.error("Invalid --mcp-port: %s (must be between 1 and 65535)", port)
        raise SystemExit(2)

    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            sock.bind((host, port))
        except OSError as exc:  # pragma: no cover - depends on local env
            logger.error(
                "SSE port %s is unavailable on %s: %s. Use --mcp-port to pick a free port.",
                port,
                host,
                exc.strerror or exc,
            )
            raise SystemExit(1)


def run(
    args: argparse.Namespace,
    *,
    logger: logging.Logger,
    start_sse: StartSSE,
    run_stdio: RunStdIO,
) -> None:
    """Apply overrides, report the runtime settings and start the transport."""

    if args.debug:
        logging.getLogger().setLevel(logging.DEBUG)
        logger.setLevel(logging.DEBUG)

    apply_overrides(args, logger=logger)

    enabled = writes_enabled()
    logger.info(
        "Starting invoice server (transport=%s, root=%s, series=%s, writes=%s)",
        args.transport,
        get_invoice_root(),
        get_default_series(),
        "enabled" if enabled else "disabled",
    )
    if not enabled:
        logger.warning(
            "Write-capable tools disabled (set MCP_ENABLE_WRITES=1 or pass --enable-writes)."
        )

    if args.transport == "stdio":
        run_stdio()
        return

    _ensure_port_free(args.mcp_host, args.mcp_port, logger=logger)
    logger.debug("SSE endpoint on http://%s:%s", args.mcp_host, args.mcp_port)
    start_sse(args.mcp_host, args.mcp_port)


__all__ = ["apply_overrides", "build_parser", "run"]
