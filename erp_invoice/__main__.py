"""Entry point for python -m erp_invoice."""
from __future__ import annotations


def main() -> None:
    """Parse CLI arguments and serve the invoice tools."""
    import logging

    from erp_invoice.app import MCP_SERVER
    from erp_invoice.cli import build_parser, run
    from erp_invoice.utils.logging import configure_root

    configure_root()
    logger = logging.getLogger("erp_invoice.cli")

    def _start_sse(host: str, port: int) -> None:
        """Launch the MCP SSE server."""
        MCP_SERVER.settings.host = host
        MCP_SERVER.settings.port = int(port)
        MCP_SERVER.run(transport="sse")

    def _run_stdio() -> None:
        """Run stdio transport."""
        MCP_SERVER.run()

    parser = build_parser()
    args = parser.parse_args()

    run(args, logger=logger, start_sse=_start_sse, run_stdio=_run_stdio)


if __name__ == "__main__":
    main()
