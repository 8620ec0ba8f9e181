"""Invoice numbering, totals and payment tracking exposed over MCP."""

__version__ = "0.1.0"
