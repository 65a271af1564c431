"""Entry point for ``python -m airlog``.

Dispatches to CLI commands (migrate, import-locations, stats) or starts the
MCP server over stdio transport if no command is given.
"""

from __future__ import annotations

import logging
import sys

from airlog.config import get_config


def _configure_logging() -> None:
    # stdout carries the MCP stdio protocol, so logs go to stderr.
    logging.basicConfig(
        stream=sys.stderr,
        level=get_config().log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def main() -> None:
    """Dispatch CLI commands or run the MCP server."""
    _configure_logging()
    args = sys.argv[1:]

    if args:
        from airlog.cli import dispatch
        dispatch(args)
        return

    from airlog.server import mcp
    mcp.run()


if __name__ == "__main__":
    main()
