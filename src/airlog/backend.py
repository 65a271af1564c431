"""Central orchestrator for the airlog store.

The :class:`Backend` owns the process-wide store and wires its parts
together -- storage, schema evolution, seeding, the mutation gateway, the
durability writer and the session store -- behind one high-level API that
the MCP server and the CLI call.

There is **one Backend per process**.  Public methods return plain dicts
and lists because their output is JSON-serialised by the outer layers.
Mutations never raise: they return the gateway's tagged result as a dict.
Reads and auth calls raise :class:`~airlog.errors.AirlogError` subclasses,
which the server maps to ``{"error": code, "detail": ...}``.

Usage::

    from airlog.backend import Backend

    backend = Backend()
    await backend.initialize()

    result = await backend.create("shipments", {"customer": "PT. Maju", ...})
    rows = await backend.list_records("shipments")
    await backend.shutdown()
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Callable, Iterable, Mapping

import anyio

from airlog.collections import get_collection
from airlog.config import AirlogConfig, get_config
from airlog.errors import AirlogError, AuthError, InvalidPayload, NotFound
from airlog.gateway import MutationGateway, MutationResult
from airlog.imports import parse_locations
from airlog.persistence import DurabilityWriter, load_snapshot
from airlog.schema import EvolutionReport, SchemaEvolver
from airlog.seeds import last_active_stamp, load_seeds
from airlog.sessions import SessionStore, hash_secret
from airlog.storage import Storage

logger = logging.getLogger(__name__)

LOCATION_SEARCH_LIMIT = 20


# ---------------------------------------------------------------------------
# Read shaping
# ---------------------------------------------------------------------------


def _parse_permissions(raw: Any) -> list[Any]:
    if not raw:
        return []
    if isinstance(raw, list):
        return raw
    try:
        value = json.loads(raw)
    except ValueError:
        return [raw]
    return value if isinstance(value, list) else [value]


def _shape_banner(row: dict[str, Any]) -> dict[str, Any]:
    shaped = dict(row)
    if "ord" in shaped:
        shaped["order"] = shaped.pop("ord")
    shaped["isActive"] = bool(shaped.get("isActive"))
    return shaped


def _shape_testimonial(row: dict[str, Any]) -> dict[str, Any]:
    return {**row, "isActive": bool(row.get("isActive"))}


def _shape_blog(row: dict[str, Any]) -> dict[str, Any]:
    return {**row, "featured": bool(row.get("featured"))}


def _shape_user(row: dict[str, Any]) -> dict[str, Any]:
    shaped = {k: v for k, v in row.items() if k != "passwordHash"}
    shaped["permissions"] = _parse_permissions(shaped.get("permissions"))
    return shaped


Shaper = Callable[[dict[str, Any]], dict[str, Any]]

READ_ORDER: dict[str, str] = {
    "shipments": '"createdDate" DESC',
    "inquiries": '"date" DESC',
    "services": '"id" ASC',
    "rates": '"origin" ASC, "destination" ASC',
    "banners": '"ord" ASC',
    "testimonials": '"id" ASC',
    "blogs": '"date" DESC',
    "vendors": '"name" ASC',
    "users": '"name" ASC',
    "locations": '"zipCode" ASC',
}
"""``ORDER BY`` clause used when listing each collection."""

SHAPERS: dict[str, Shaper] = {
    "banners": _shape_banner,
    "testimonials": _shape_testimonial,
    "blogs": _shape_blog,
    "users": _shape_user,
}


def shape(collection: str, row: dict[str, Any]) -> dict[str, Any]:
    """Apply the outbound shaping for *collection* to one record."""
    shaper = SHAPERS.get(collection)
    return shaper(row) if shaper else row


# ---------------------------------------------------------------------------
# Backend
# ---------------------------------------------------------------------------


class Backend:
    """The central orchestrator.  One backend per process.

    Typical lifecycle::

        backend = Backend()
        await backend.initialize()   # snapshot -> evolve -> seed
        ...                          # tool calls
        await backend.shutdown()     # final flush, discard the store
    """

    def __init__(
        self,
        config: AirlogConfig | None = None,
        *,
        snapshot_path: Path | None = None,
    ) -> None:
        self._config = config or get_config()
        self._snapshot_path = Path(snapshot_path or self._config.snapshot_path)
        self._storage: Storage | None = None
        self._writer: DurabilityWriter | None = None
        self._gateway: MutationGateway | None = None
        self._sessions = SessionStore()
        self._startup_report: EvolutionReport | None = None
        self._seeded: dict[str, int] = {}
        self._initialized = False

    # ------------------------------------------------------------------
    # Initialisation
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        """Bring the store up.  Idempotent.

        Startup sequence:

        1. Read the snapshot file, if any.
        2. Restore it into a fresh in-memory :class:`Storage`.
        3. Run the :class:`SchemaEvolver` (strict when configured).
        4. Seed empty collections and bootstrap the admin account.
        5. Schedule a flush so the evolved, seeded store reaches disk.
        """
        if self._initialized:
            return

        path = self._snapshot_path
        snapshot = await anyio.to_thread.run_sync(lambda: load_snapshot(path))

        storage = Storage()
        await storage.initialize(snapshot)
        try:
            evolver = SchemaEvolver(strict=self._config.strict_schema)
            self._startup_report = await storage.run_sync(evolver.run)
            self._seeded = await storage.run_sync(lambda conn: load_seeds(conn, self._config))
        except Exception:
            await storage.close()
            raise

        persistence = self._config.persistence
        self._storage = storage
        self._writer = DurabilityWriter(
            storage, path, delay=persistence.flush_delay, fsync=persistence.fsync,
        )
        self._gateway = MutationGateway(storage, self._writer, self._config)
        self._initialized = True

        self._writer.schedule_flush()
        logger.info(
            "Backend initialized. Snapshot: %s (%d schema change(s), seeded %s)",
            path,
            len(self._startup_report.applied),
            ", ".join(self._seeded) or "nothing",
        )

    def _ensure_initialized(self) -> None:
        if not self._initialized:
            raise RuntimeError(
                "Backend not initialized. Call await backend.initialize() first."
            )

    @property
    def storage(self) -> Storage:
        self._ensure_initialized()
        assert self._storage is not None
        return self._storage

    @property
    def writer(self) -> DurabilityWriter:
        self._ensure_initialized()
        assert self._writer is not None
        return self._writer

    @property
    def gateway(self) -> MutationGateway:
        self._ensure_initialized()
        assert self._gateway is not None
        return self._gateway

    @property
    def sessions(self) -> SessionStore:
        return self._sessions

    @property
    def startup_report(self) -> EvolutionReport | None:
        return self._startup_report

    @property
    def seeded(self) -> dict[str, int]:
        """Rows inserted per collection by the seed loader at startup."""
        return dict(self._seeded)

    # ==================================================================
    # Reads
    # ==================================================================

    async def list_records(self, collection: str) -> list[dict[str, Any]]:
        """Every record of *collection*, in the collection's listing order."""
        spec = get_collection(collection)
        rows = await self.storage.execute(
            f'SELECT * FROM "{spec.table}" ORDER BY {READ_ORDER[spec.name]}'
        )
        return [shape(spec.name, row) for row in rows]

    async def track_shipment(self, tracking_number: str) -> dict[str, Any]:
        """Look a shipment up by its tracking number."""
        number = (tracking_number or "").strip()
        if not number:
            raise InvalidPayload("tracking number is required")
        rows = await self.storage.execute(
            'SELECT * FROM shipments WHERE "trackingNumber" = ? LIMIT 1', (number,),
        )
        if not rows:
            raise NotFound(f"no shipment with tracking number {number!r}")
        return rows[0]

    async def get_blog(self, id_or_slug: str) -> dict[str, Any]:
        """Fetch one blog post by id or by slug."""
        rows = await self.storage.execute(
            'SELECT * FROM blogs WHERE "id" = ? OR "slug" = ? LIMIT 1',
            (id_or_slug, id_or_slug),
        )
        if not rows:
            raise NotFound(f"blog {id_or_slug!r} does not exist")
        return _shape_blog(rows[0])

    async def search_locations(
        self,
        term: str | None = None,
        limit: int = LOCATION_SEARCH_LIMIT,
    ) -> list[dict[str, Any]]:
        """Substring search over zip code, city, district and province.

        Without a *term* the first *limit* locations by zip code are
        returned.
        """
        sql = "SELECT * FROM locations"
        params: tuple[Any, ...] = ()
        if term:
            sql += ' WHERE "zipCode" LIKE ? OR "city" LIKE ? OR "district" LIKE ? OR "province" LIKE ?'
            params = (f"%{term}%",) * 4
        sql += ' ORDER BY "zipCode" ASC LIMIT ?'
        return await self.storage.execute(sql, (*params, int(limit)))

    async def table_counts(self) -> dict[str, int]:
        return await self.storage.table_counts()

    async def status(self) -> dict[str, Any]:
        """Row counts plus persistence and session state."""
        writer = self.writer
        return {
            "snapshot": str(writer.path),
            "tables": await self.table_counts(),
            "dirty": writer.dirty,
            "flush_pending": writer.pending,
            "flushes": writer.flush_count,
            "last_flush_error": writer.last_error,
            "sessions": len(self._sessions),
        }

    # ==================================================================
    # Mutations
    # ==================================================================

    def _result(self, collection: str, result: MutationResult) -> dict[str, Any]:
        if result.ok and result.record is not None:
            result.record = shape(collection, result.record)
        return result.to_dict()

    async def create(self, collection: str, payload: Mapping[str, Any] | None) -> dict[str, Any]:
        return self._result(collection, await self.gateway.create(collection, payload))

    async def update(
        self,
        collection: str,
        key: Any,
        payload: Mapping[str, Any] | None,
    ) -> dict[str, Any]:
        """Sparse update: fields absent from *payload* keep their values."""
        return self._result(collection, await self.gateway.update(collection, key, payload))

    async def delete(self, collection: str, key: Any) -> dict[str, Any]:
        return self._result(collection, await self.gateway.delete(collection, key))

    async def reorder_banners(self, orders: Iterable[Mapping[str, Any]] | None) -> dict[str, Any]:
        """Set ``order`` on several banners at once.

        *orders* is a list of ``{"id": ..., "order": ...}`` entries; the
        whole batch is applied in one transaction.
        """
        changes = [(entry.get("id"), {"order": entry.get("order")}) for entry in orders or ()]
        if not changes:
            return {"ok": True, "count": 0, "persisted": False}
        return self._result("banners", await self.gateway.update_many("banners", changes))

    async def import_rates(self, rows: Iterable[Mapping[str, Any]] | None) -> dict[str, Any]:
        return self._result("rates", await self.gateway.bulk_insert("rates", rows))

    async def import_locations(self, rows: Iterable[Mapping[str, Any]] | None) -> dict[str, Any]:
        return self._result("locations", await self.gateway.bulk_insert("locations", rows))

    async def import_locations_csv(self, text: str, fmt: str = "plain") -> dict[str, Any]:
        """Parse CSV *text* in layout *fmt* and bulk-insert the locations."""
        try:
            rows = parse_locations(text or "", fmt)
        except ValueError as exc:
            return MutationResult.failure(InvalidPayload(str(exc))).to_dict()
        return await self.import_locations(rows)

    async def migrate(self) -> dict[str, Any]:
        """Re-run schema evolution on demand.

        Always best-effort: failures are reported per step rather than
        raised.  Returns the step results and the current shipment columns.
        """
        report = await self.storage.run_sync(SchemaEvolver().run)
        if report.applied:
            self.writer.schedule_flush()
        columns = await self.storage.columns("shipments")
        return {
            "ok": report.ok,
            "persisted": bool(report.applied),
            "migrations": [step.to_dict() for step in report.steps],
            "columns": list(columns),
        }

    # ==================================================================
    # Authentication
    # ==================================================================

    async def login(self, email: str | None, password: str | None) -> dict[str, Any]:
        """Check credentials and open a session.

        Returns ``{"token": ..., "user": ...}``.  Raises
        :class:`InvalidPayload` when either field is empty and
        :class:`AuthError` (``invalid_credentials`` / ``user_inactive``)
        when the login is refused.
        """
        if not email or not password:
            raise InvalidPayload("email and password are required")

        rows = await self.storage.execute(
            'SELECT * FROM users WHERE "email" = ? LIMIT 1', (email,),
        )
        if not rows:
            raise AuthError("wrong email or password", code="invalid_credentials")
        user = rows[0]
        if user.get("status") != "active":
            raise AuthError("account is not active", code="user_inactive")
        if (user.get("passwordHash") or "") != hash_secret(password):
            raise AuthError("wrong email or password", code="invalid_credentials")

        stamp = last_active_stamp()
        result = await self.gateway.update("users", user["id"], {"lastActive": stamp})
        if not result.ok:
            raise AirlogError(result.detail, code=result.error)
        user["lastActive"] = stamp

        token = self._sessions.issue(user["id"])
        logger.info("User %s logged in", user["id"])
        return {"token": token, "user": _shape_user(user)}

    async def me(self, token: str | None) -> dict[str, Any]:
        """The user bound to *token*."""
        session = self._sessions.resolve(token)
        if session is None:
            raise AuthError("missing or unknown session token")
        rows = await self.storage.execute(
            'SELECT * FROM users WHERE "id" = ? LIMIT 1', (session.user_id,),
        )
        if not rows:
            raise AuthError("session user no longer exists")
        return {"user": _shape_user(rows[0])}

    async def logout(self, token: str | None) -> dict[str, Any]:
        self._sessions.revoke(token)
        return {"ok": True}

    # ==================================================================
    # Lifecycle
    # ==================================================================

    async def flush(self) -> bool:
        """Write a snapshot now if anything changed since the last one."""
        return await self.writer.flush_now()

    async def shutdown(self) -> None:
        """Final flush, then discard the in-memory store.

        Safe to call even if the backend was never initialised.
        """
        if self._writer is not None:
            if not await self._writer.close():
                logger.error("Final flush failed; last snapshot on disk is stale")
        if self._storage is not None:
            await self._storage.close()
        self._initialized = False
        logger.info("Backend shut down")
