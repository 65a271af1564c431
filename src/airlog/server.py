"""MCP server exposing the backend's operations as tools via stdio transport.

This module is the operator-facing interface to the
:class:`~airlog.backend.Backend`.  Each public backend operation is mapped
1-to-1 to an MCP tool.

The ``mcp`` object is imported by :mod:`airlog.__main__` and launched with
``mcp.run()`` over stdio.

Architecture notes
------------------
* A single global :pydata:`_backend` instance is lazily initialised on the
  first tool call via :func:`_ensure_backend`.
* Empty-string parameters from MCP (which lacks first-class optionals) are
  normalised to ``None`` before forwarding to the backend.
* All tools catch exceptions and return structured error dicts so the MCP
  server never crashes on a bad request.  Core errors keep their stable
  ``code`` (``invalid_payload``, ``not_found``, ...) as the ``error`` key.
* The server lifespan shuts the backend down on exit, which performs the
  final snapshot flush.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from mcp.server.fastmcp import FastMCP

from airlog.backend import Backend
from airlog.collections import get_collection
from airlog.errors import AirlogError

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Server and Backend instances
# ---------------------------------------------------------------------------

_backend = Backend()


@asynccontextmanager
async def _lifespan(server: FastMCP) -> AsyncIterator[None]:
    try:
        yield
    finally:
        await _backend.shutdown()


mcp = FastMCP(
    "airlog",
    instructions="Embedded store for the airlog logistics site",
    lifespan=_lifespan,
)


async def _ensure_backend() -> Backend:
    """Lazily initialise the backend on the first tool call."""
    await _backend.initialize()
    return _backend


def _error_response(err: Exception) -> dict[str, Any]:
    """Create a structured error dict for MCP tool responses."""
    if isinstance(err, AirlogError):
        return {"error": err.code, "detail": err.detail}
    return {"error": type(err).__name__, "detail": str(err)}


# ===================================================================
# Records
# ===================================================================


@mcp.tool()
async def list_records(collection: str) -> dict[str, Any]:
    """List every record of a collection in its natural order.

    Args:
        collection: One of shipments, inquiries, services, rates, banners,
            testimonials, blogs, vendors, users, locations.

    Returns:
        A dict with ``records`` (list) and ``count``.
    """
    try:
        backend = await _ensure_backend()
        records = await backend.list_records(collection)
        return {"records": records, "count": len(records)}
    except Exception as exc:
        logger.exception("list_records failed")
        return _error_response(exc)


@mcp.tool()
async def create_record(collection: str, payload: dict[str, Any]) -> dict[str, Any]:
    """Create one record. Missing defaults (ids, dates, status) are filled in.

    Args:
        collection: Target collection name.
        payload: Field values for the new record.

    Returns:
        ``{"ok": true, "id": ..., "record": ..., "persisted": bool}`` or
        ``{"error": "invalid_payload" | "db_error", "detail": ...}``.
    """
    try:
        backend = await _ensure_backend()
        return await backend.create(collection, payload)
    except Exception as exc:
        logger.exception("create_record failed")
        return _error_response(exc)


@mcp.tool()
async def update_record(collection: str, key: str, payload: dict[str, Any]) -> dict[str, Any]:
    """Update the given fields of one record; other fields are left as they are.

    Args:
        collection: Target collection name.
        key: Identity of the record (inquiry and location ids are numeric strings).
        payload: Fields to change.
    """
    try:
        backend = await _ensure_backend()
        return await backend.update(collection, _key(collection, key), payload)
    except Exception as exc:
        logger.exception("update_record failed")
        return _error_response(exc)


@mcp.tool()
async def delete_record(collection: str, key: str) -> dict[str, Any]:
    """Delete one record by identity."""
    try:
        backend = await _ensure_backend()
        return await backend.delete(collection, _key(collection, key))
    except Exception as exc:
        logger.exception("delete_record failed")
        return _error_response(exc)


def _key(collection: str, key: str) -> Any:
    # Integer-keyed collections compare numerically.
    if get_collection(collection).generated_key and key.isdigit():
        return int(key)
    return key


# ===================================================================
# Lookups
# ===================================================================


@mcp.tool()
async def track_shipment(tracking_number: str) -> dict[str, Any]:
    """Find a shipment by tracking number (e.g. ``AIR2410190A3F``)."""
    try:
        backend = await _ensure_backend()
        return await backend.track_shipment(tracking_number)
    except Exception as exc:
        logger.exception("track_shipment failed")
        return _error_response(exc)


@mcp.tool()
async def get_blog(id_or_slug: str) -> dict[str, Any]:
    """Fetch a blog post by id or slug."""
    try:
        backend = await _ensure_backend()
        return await backend.get_blog(id_or_slug)
    except Exception as exc:
        logger.exception("get_blog failed")
        return _error_response(exc)


@mcp.tool()
async def search_locations(term: str = "", limit: int = 20) -> dict[str, Any]:
    """Search locations by zip code, city, district or province substring.

    Args:
        term: Substring to look for. Leave empty to list the first locations.
        limit: Maximum number of results (default 20).
    """
    try:
        backend = await _ensure_backend()
        records = await backend.search_locations(term or None, limit)
        return {"records": records, "count": len(records)}
    except Exception as exc:
        logger.exception("search_locations failed")
        return _error_response(exc)


# ===================================================================
# Batch operations
# ===================================================================


@mcp.tool()
async def reorder_banners(orders: list[dict[str, Any]]) -> dict[str, Any]:
    """Set the display order of several banners in one go.

    Args:
        orders: List of ``{"id": <banner id>, "order": <position>}``.
    """
    try:
        backend = await _ensure_backend()
        return await backend.reorder_banners(orders)
    except Exception as exc:
        logger.exception("reorder_banners failed")
        return _error_response(exc)


@mcp.tool()
async def import_rates(rates: list[dict[str, Any]]) -> dict[str, Any]:
    """Bulk-insert shipping rates in one transaction; invalid rows are skipped."""
    try:
        backend = await _ensure_backend()
        return await backend.import_rates(rates)
    except Exception as exc:
        logger.exception("import_rates failed")
        return _error_response(exc)


@mcp.tool()
async def import_locations(locations: list[dict[str, Any]]) -> dict[str, Any]:
    """Bulk-insert locations in one transaction; rows without zipCode or city are skipped."""
    try:
        backend = await _ensure_backend()
        return await backend.import_locations(locations)
    except Exception as exc:
        logger.exception("import_locations failed")
        return _error_response(exc)


@mcp.tool()
async def import_locations_csv(text: str, format: str = "plain") -> dict[str, Any]:
    """Parse location CSV text and bulk-insert it.

    Args:
        text: The CSV file contents.
        format: ``plain`` (zip, district, city, province) or ``codepos``.
    """
    try:
        backend = await _ensure_backend()
        return await backend.import_locations_csv(text, format or "plain")
    except Exception as exc:
        logger.exception("import_locations_csv failed")
        return _error_response(exc)


# ===================================================================
# Administration
# ===================================================================


@mcp.tool()
async def migrate() -> dict[str, Any]:
    """Re-run schema evolution and report each step plus the shipment columns."""
    try:
        backend = await _ensure_backend()
        return await backend.migrate()
    except Exception as exc:
        logger.exception("migrate failed")
        return _error_response(exc)


@mcp.tool()
async def status() -> dict[str, Any]:
    """Row counts per table and the state of snapshot persistence."""
    try:
        backend = await _ensure_backend()
        return await backend.status()
    except Exception as exc:
        logger.exception("status failed")
        return _error_response(exc)


@mcp.tool()
async def flush() -> dict[str, Any]:
    """Write a snapshot immediately instead of waiting for the debounce timer."""
    try:
        backend = await _ensure_backend()
        return {"ok": await backend.flush()}
    except Exception as exc:
        logger.exception("flush failed")
        return _error_response(exc)


# ===================================================================
# Sessions
# ===================================================================


@mcp.tool()
async def login(email: str, password: str) -> dict[str, Any]:
    """Check credentials and return a session token with the public user record."""
    try:
        backend = await _ensure_backend()
        return await backend.login(email, password)
    except AirlogError as exc:
        return _error_response(exc)
    except Exception as exc:
        logger.exception("login failed")
        return _error_response(exc)


@mcp.tool()
async def me(token: str) -> dict[str, Any]:
    """Return the user bound to a session token."""
    try:
        backend = await _ensure_backend()
        return await backend.me(token or None)
    except AirlogError as exc:
        return _error_response(exc)
    except Exception as exc:
        logger.exception("me failed")
        return _error_response(exc)


@mcp.tool()
async def logout(token: str) -> dict[str, Any]:
    """Forget a session token."""
    try:
        backend = await _ensure_backend()
        return await backend.logout(token or None)
    except Exception as exc:
        logger.exception("logout failed")
        return _error_response(exc)
