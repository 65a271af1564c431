"""Schema-lag tolerant write path.

Every mutation of the store goes through :class:`MutationGateway`:

1. The collection's ``prepare`` function validates the payload and fills in
   defaults (see :mod:`airlog.collections`).  Nothing touches the database
   if this fails.
2. Inside one locked transaction the table's *physical* columns are read
   and intersected with the prepared record, and :func:`build_insert` /
   :func:`build_update` turn the intersection into a parameterised
   statement.  A binary that knows a column the table lacks silently omits
   it; a binary that lacks a column never overwrites it.
3. On success the durability writer is asked to schedule a flush.

The gateway never raises across its boundary: every outcome is a
:class:`MutationResult`, either ``ok`` with a row count or tagged with one
of ``invalid_payload``, ``not_found`` or ``db_error``.
"""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping, NamedTuple

from airlog.collections import CollectionSpec, get_collection
from airlog.config import AirlogConfig, get_config
from airlog.errors import AirlogError, InvalidPayload, NotFound
from airlog.persistence import DurabilityWriter
from airlog.storage import Storage, quote_ident, table_columns

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Statement builders
# ---------------------------------------------------------------------------


class Statement(NamedTuple):
    sql: str
    params: tuple[Any, ...]
    columns: tuple[str, ...]


def build_insert(table: str, record: Mapping[str, Any], physical: Iterable[str]) -> Statement:
    """``INSERT`` of the columns of *record* that exist in *physical*.

    Column order follows *record*.  Raises :class:`InvalidPayload` when no
    column survives the intersection.
    """
    available = set(physical)
    columns = tuple(c for c in record if c in available)
    if not columns:
        raise InvalidPayload(f"no writable columns for {table}")
    sql = "INSERT INTO {} ({}) VALUES ({})".format(
        quote_ident(table),
        ", ".join(quote_ident(c) for c in columns),
        ", ".join("?" for _ in columns),
    )
    return Statement(sql, tuple(record[c] for c in columns), columns)


def build_update(
    table: str,
    key_column: str,
    key: Any,
    record: Mapping[str, Any],
    physical: Iterable[str],
) -> Statement:
    """``UPDATE`` setting only the columns of *record* that exist in *physical*.

    The key column itself is never assigned.  Raises
    :class:`InvalidPayload` when nothing is left to set.
    """
    available = set(physical)
    columns = tuple(c for c in record if c in available and c != key_column)
    if not columns:
        raise InvalidPayload(f"no updatable columns for {table}")
    sql = "UPDATE {} SET {} WHERE {} = ?".format(
        quote_ident(table),
        ", ".join(f"{quote_ident(c)} = ?" for c in columns),
        quote_ident(key_column),
    )
    return Statement(sql, (*(record[c] for c in columns), key), columns)


def build_delete(table: str, key_column: str, key: Any) -> Statement:
    sql = f"DELETE FROM {quote_ident(table)} WHERE {quote_ident(key_column)} = ?"
    return Statement(sql, (key,), ())


# ---------------------------------------------------------------------------
# Result
# ---------------------------------------------------------------------------


@dataclass
class MutationResult:
    """Outcome of one gateway call.

    ``persisted`` reports whether a flush was scheduled, not whether the
    snapshot has already reached the disk.
    """

    ok: bool
    count: int = 0
    key: Any = None
    record: dict[str, Any] | None = None
    persisted: bool = False
    skipped: int = 0
    error: str | None = None
    detail: str = ""
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def failure(cls, exc: AirlogError) -> MutationResult:
        return cls(ok=False, error=exc.code, detail=exc.detail)

    def to_dict(self) -> dict[str, Any]:
        if not self.ok:
            return {"error": self.error, "detail": self.detail}
        d: dict[str, Any] = {"ok": True, "count": self.count, "persisted": self.persisted}
        if self.key is not None:
            d["id"] = self.key
        if self.record is not None:
            d["record"] = self.record
        if self.skipped:
            d["skipped"] = self.skipped
        d.update(self.extra)
        return d


# ---------------------------------------------------------------------------
# Gateway
# ---------------------------------------------------------------------------


class MutationGateway:
    """The single write path into the store.

    Parameters
    ----------
    storage:
        The initialised in-memory store.
    writer:
        Durability writer notified after each successful mutation.  ``None``
        disables persistence (used by tests and dry runs).
    config:
        Defaults for generated values; falls back to :func:`get_config`.
    """

    def __init__(
        self,
        storage: Storage,
        writer: DurabilityWriter | None = None,
        config: AirlogConfig | None = None,
    ) -> None:
        self._storage = storage
        self._writer = writer
        self._config = config or get_config()

    # ------------------------------------------------------------------
    # Single-record mutations
    # ------------------------------------------------------------------

    async def create(self, collection: str, payload: Mapping[str, Any] | None) -> MutationResult:
        """Validate, default and insert one record."""
        try:
            spec = get_collection(collection)
            record = spec.prepare(payload or {}, True, self._config)
            stmt, rowid = await self._storage.execute_transaction(
                lambda conn: self._insert_sync(conn, spec, record),
            )
        except AirlogError as exc:
            log.debug("create %s rejected: %s", collection, exc)
            return MutationResult.failure(exc)

        written = {c: record[c] for c in stmt.columns}
        key = rowid if spec.generated_key else record.get(spec.key)
        written.setdefault(spec.key, key)
        return MutationResult(
            ok=True, count=1, key=key, record=written, persisted=self._schedule_flush(),
        )

    async def update(
        self,
        collection: str,
        key: Any,
        payload: Mapping[str, Any] | None,
    ) -> MutationResult:
        """Set the fields present in *payload* on the record with *key*."""
        return await self.update_many(collection, [(key, payload or {})])

    async def update_many(
        self,
        collection: str,
        changes: Iterable[tuple[Any, Mapping[str, Any]]],
    ) -> MutationResult:
        """Apply several sparse updates in one transaction.

        Every key must exist; a missing one aborts the whole batch with
        ``not_found``.
        """
        try:
            spec = get_collection(collection)
            prepared = [(key, spec.prepare(payload, False, self._config)) for key, payload in changes]
            if not prepared:
                raise InvalidPayload("nothing to update")
            count = await self._storage.execute_transaction(
                lambda conn: self._update_sync(conn, spec, prepared),
            )
        except AirlogError as exc:
            log.debug("update %s rejected: %s", collection, exc)
            return MutationResult.failure(exc)

        key = prepared[0][0] if len(prepared) == 1 else None
        return MutationResult(ok=True, count=count, key=key, persisted=self._schedule_flush())

    async def delete(self, collection: str, key: Any) -> MutationResult:
        """Delete the record with *key*; ``not_found`` if there is none."""
        try:
            spec = get_collection(collection)
            stmt = build_delete(spec.table, spec.key, key)
            count = await self._storage.execute_transaction(
                lambda conn: conn.execute(stmt.sql, stmt.params).rowcount,
            )
            if count == 0:
                raise NotFound(f"{collection} {key!r} does not exist")
        except AirlogError as exc:
            return MutationResult.failure(exc)
        return MutationResult(ok=True, count=count, key=key, persisted=self._schedule_flush())

    # ------------------------------------------------------------------
    # Bulk import
    # ------------------------------------------------------------------

    async def bulk_insert(
        self,
        collection: str,
        rows: Iterable[Mapping[str, Any]] | None,
    ) -> MutationResult:
        """Insert a batch of records inside one transaction.

        Rows that fail validation are skipped and counted in ``skipped``.
        An engine error on any row rolls back the whole batch, so either
        every valid row is inserted or none is.
        """
        try:
            spec = get_collection(collection)
            if rows is None or isinstance(rows, (str, bytes, Mapping)):
                raise InvalidPayload(f"{collection} import expects a list of records")
            rows = list(rows)
            if not rows:
                raise InvalidPayload(f"{collection} import is empty")

            prepared: list[dict[str, Any]] = []
            skipped = 0
            for row in rows:
                try:
                    prepared.append(spec.prepare(row, True, self._config))
                except InvalidPayload as exc:
                    skipped += 1
                    log.debug("Skipping %s import row: %s", collection, exc)

            count = 0
            if prepared:
                count = await self._storage.execute_transaction(
                    lambda conn: self._bulk_sync(conn, spec, prepared),
                )
        except AirlogError as exc:
            log.warning("Bulk import into %s failed: %s", collection, exc)
            return MutationResult.failure(exc)

        log.info("Imported %d %s (%d skipped)", count, collection, skipped)
        persisted = self._schedule_flush() if count else False
        return MutationResult(ok=True, count=count, persisted=persisted, skipped=skipped)

    # ------------------------------------------------------------------
    # In-transaction helpers (run under the storage lock)
    # ------------------------------------------------------------------

    @staticmethod
    def _insert_sync(
        conn: sqlite3.Connection,
        spec: CollectionSpec,
        record: Mapping[str, Any],
    ) -> tuple[Statement, int]:
        stmt = build_insert(spec.table, record, table_columns(conn, spec.table))
        cursor = conn.execute(stmt.sql, stmt.params)
        return stmt, cursor.lastrowid or 0

    @staticmethod
    def _update_sync(
        conn: sqlite3.Connection,
        spec: CollectionSpec,
        prepared: list[tuple[Any, dict[str, Any]]],
    ) -> int:
        physical = table_columns(conn, spec.table)
        count = 0
        for key, record in prepared:
            stmt = build_update(spec.table, spec.key, key, record, physical)
            affected = conn.execute(stmt.sql, stmt.params).rowcount
            if affected == 0:
                raise NotFound(f"{spec.name} {key!r} does not exist")
            count += affected
        return count

    @staticmethod
    def _bulk_sync(
        conn: sqlite3.Connection,
        spec: CollectionSpec,
        prepared: list[dict[str, Any]],
    ) -> int:
        physical = table_columns(conn, spec.table)
        for record in prepared:
            stmt = build_insert(spec.table, record, physical)
            conn.execute(stmt.sql, stmt.params)
        return len(prepared)

    def _schedule_flush(self) -> bool:
        if self._writer is None:
            return False
        self._writer.schedule_flush()
        return True
