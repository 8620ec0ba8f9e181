"""FastMCP server instance with the invoice tools registered."""
from __future__ import annotations

from mcp.server.fastmcp import FastMCP

from erp_invoice.api import register_tools


def build_server(name: str = "erp-invoice-mcp") -> FastMCP:
    server = FastMCP(name)
    register_tools(server)
    return server


MCP_SERVER = build_server()

__all__ = ["MCP_SERVER", "build_server"]
