"""CLI entry points for maintenance commands.

Each command starts its own :class:`~airlog.backend.Backend` against the
configured snapshot, does its work and shuts down, which performs the final
flush.  Do not run a command against a snapshot that a live server is
using: the server's next flush would overwrite the command's changes.

Usage::

    python -m airlog migrate
    python -m airlog import-locations data/full.csv --format codepos
    python -m airlog stats
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any

from airlog.backend import Backend
from airlog.imports import DEFAULT_BATCH_SIZE, FORMATS, batched, parse_locations

log = logging.getLogger(__name__)

COMMANDS = ("migrate", "import-locations", "stats")


# ------------------------------------------------------------------
# migrate
# ------------------------------------------------------------------


async def _migrate(backend: Backend) -> str:
    """Re-run schema evolution and format the step report."""
    result = await backend.migrate()
    lines = ["airlog migrate:", ""]
    for step in result["migrations"]:
        line = f"  {step['status']:16s} {step['step']}"
        if step.get("detail"):
            line += f"  ({step['detail']})"
        lines.append(line)
    lines.append("")
    lines.append(f"  shipments columns: {', '.join(result['columns'])}")
    return "\n".join(lines)


# ------------------------------------------------------------------
# import-locations
# ------------------------------------------------------------------


async def _import_locations(
    backend: Backend,
    text: str,
    fmt: str = "plain",
    batch_size: int = DEFAULT_BATCH_SIZE,
) -> dict[str, Any]:
    """Import location CSV *text* in batches of *batch_size*.

    Each batch is its own transaction; a failing batch is reported and the
    remaining batches still run.
    """
    rows = parse_locations(text, fmt)
    summary: dict[str, Any] = {"parsed": len(rows), "imported": 0, "skipped": 0, "failed_batches": 0}
    for index, batch in enumerate(batched(rows, batch_size)):
        result = await backend.import_locations(batch)
        if "error" in result:
            summary["failed_batches"] += 1
            log.error("Batch %d failed: %s %s", index, result["error"], result.get("detail", ""))
            continue
        summary["imported"] += result["count"]
        summary["skipped"] += result.get("skipped", 0)
        log.debug("Batch %d: %d imported", index, result["count"])
    return summary


# ------------------------------------------------------------------
# stats
# ------------------------------------------------------------------


async def _stats(backend: Backend) -> str:
    """Row counts and persistence state as a small dashboard."""
    status = await backend.status()
    lines = ["airlog stats:", "", f"  Snapshot: {status['snapshot']}", "", "  Rows:"]
    for table, count in status["tables"].items():
        lines.append(f"    {table:14s} {count}")
    return "\n".join(lines)


# ------------------------------------------------------------------
# Runners
# ------------------------------------------------------------------


async def _with_backend(fn, *args: Any) -> Any:
    backend = Backend()
    await backend.initialize()
    try:
        return await fn(backend, *args)
    finally:
        await backend.shutdown()


def run_migrate() -> None:
    """Run migrate command."""
    print(asyncio.run(_with_backend(_migrate)))


def run_import_locations(args: list[str]) -> None:
    """Parse arguments and import a location CSV file."""
    parser = argparse.ArgumentParser(
        prog="airlog import-locations",
        description="Bulk-import locations from a CSV file",
    )
    parser.add_argument("file", type=Path, help="CSV file to import")
    parser.add_argument(
        "--format",
        choices=FORMATS,
        default="plain",
        help="CSV layout (default: plain)",
    )
    parser.add_argument(
        "--batch-size",
        type=int,
        default=DEFAULT_BATCH_SIZE,
        help=f"Rows per transaction (default: {DEFAULT_BATCH_SIZE})",
    )
    parsed = parser.parse_args(args)
    if parsed.batch_size < 1:
        parser.error("--batch-size must be positive")

    text = parsed.file.read_text(encoding="utf-8")
    summary = asyncio.run(
        _with_backend(_import_locations, text, parsed.format, parsed.batch_size),
    )
    print(json.dumps(summary, indent=2))


def run_stats() -> None:
    """Run stats command."""
    print(asyncio.run(_with_backend(_stats)))


def dispatch(args: list[str]) -> None:
    """Main CLI dispatcher.

    Parameters
    ----------
    args:
        Command-line arguments after ``python -m airlog``.
        e.g. ``["migrate"]`` or ``["import-locations", "full.csv"]``
    """
    if not args:
        return  # Fall through to MCP server.

    command = args[0]

    if command == "migrate":
        run_migrate()
        sys.exit(0)

    elif command == "import-locations":
        run_import_locations(args[1:])
        sys.exit(0)

    elif command == "stats":
        run_stats()
        sys.exit(0)

    print(f"Unknown command {command!r}. Expected one of: {', '.join(COMMANDS)}", file=sys.stderr)
    sys.exit(2)
