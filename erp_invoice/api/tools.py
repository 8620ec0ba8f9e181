"""Tool registration for erp-invoice-mcp."""
from __future__ import annotations

import logging

from mcp.server.fastmcp import FastMCP

from erp_invoice.backends import invoices

_LOGGER = logging.getLogger("erp_invoice.api.tools")


def register_tools(server: FastMCP) -> list[str]:
    """Register built-in backends on the MCP server."""

    loaded: list[str] = []
    invoices.register(server)
    loaded.append("erp_invoice.backends.invoices")
    _LOGGER.debug("backends.loaded modules=%s", loaded)
    return loaded


__all__ = ["register_tools"]
