"""In-memory relational store backing every airlog operation.

Holds exactly one SQLite ``:memory:`` connection per process.  The database
is rebuilt from a snapshot (the bytes produced by :meth:`Storage.serialize`)
at startup and is otherwise the sole source of truth while the process
runs; :mod:`airlog.persistence` writes it back to disk.

All public methods are async-friendly, wrapping synchronous sqlite3 calls
via :func:`anyio.to_thread.run_sync`.

Connection strategy:
    - A single connection, opened with ``check_same_thread=False`` so worker
      threads can share it.
    - A single ``threading.Lock`` serialises every statement and the
      snapshot read-out, so a snapshot never observes half of a statement.
    - Engine errors are converted to :class:`~airlog.errors.DbError` at the
      statement boundary; raw :class:`sqlite3.Error` never escapes.

Usage::

    from airlog.storage import Storage

    store = Storage()
    await store.initialize(snapshot_bytes)
    rows = await store.execute("SELECT * FROM rates ORDER BY origin")
"""

from __future__ import annotations

import logging
import re
import sqlite3
import threading
from typing import Any, Callable, TypeVar

import anyio

from airlog.errors import DbError

_T = TypeVar("_T")

log = logging.getLogger(__name__)

Record = dict[str, Any]

_IDENT_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


# ---------------------------------------------------------------------------
# Identifier and column helpers (usable on a raw connection)
# ---------------------------------------------------------------------------


def quote_ident(name: str) -> str:
    """Return *name* double-quoted for use as a table or column identifier.

    Only plain identifiers are accepted; anything else raises
    :class:`ValueError` so that no caller-controlled text is ever spliced
    into SQL.
    """
    if not _IDENT_RE.match(name):
        raise ValueError(f"Invalid SQL identifier {name!r}")
    return f'"{name}"'


def table_columns(conn: sqlite3.Connection, table: str) -> tuple[str, ...]:
    """Physical column names of *table* in declaration order.

    Returns an empty tuple when the table does not exist.
    """
    rows = conn.execute(f"PRAGMA table_info({quote_ident(table)})").fetchall()
    return tuple(row[1] for row in rows)


def table_exists(conn: sqlite3.Connection, table: str) -> bool:
    row = conn.execute(
        "SELECT 1 FROM sqlite_master WHERE type = 'table' AND name = ?",
        (table,),
    ).fetchone()
    return row is not None


def count_rows(conn: sqlite3.Connection, table: str) -> int:
    row = conn.execute(f"SELECT COUNT(*) FROM {quote_ident(table)}").fetchone()
    return int(row[0])


# ---------------------------------------------------------------------------
# Storage class
# ---------------------------------------------------------------------------


class Storage:
    """Async-friendly wrapper around the process-wide in-memory database."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._conn: sqlite3.Connection | None = None
        self._initialized = False

    # ------------------------------------------------------------------
    # Initialisation
    # ------------------------------------------------------------------

    async def initialize(self, snapshot: bytes | None = None) -> None:
        """Open the in-memory database, restoring *snapshot* when given.

        Idempotent: a second call on an open store is a no-op.  A snapshot
        the engine cannot read raises :class:`DbError` instead of silently
        starting empty, which would later overwrite the good file.
        """
        if self._initialized:
            return
        await anyio.to_thread.run_sync(lambda: self._initialize_sync(snapshot))
        self._initialized = True
        log.info(
            "Storage initialised in memory (%s)",
            f"restored {len(snapshot)} bytes" if snapshot else "empty",
        )

    def _initialize_sync(self, snapshot: bytes | None) -> None:
        conn = sqlite3.connect(":memory:", check_same_thread=False)
        conn.row_factory = sqlite3.Row
        if snapshot:
            try:
                conn.deserialize(snapshot)
                # Touch the schema so a corrupt image fails here, not later.
                conn.execute("SELECT COUNT(*) FROM sqlite_master").fetchone()
            except sqlite3.Error as exc:
                conn.close()
                raise DbError(f"snapshot could not be loaded: {exc}") from exc
        conn.execute("PRAGMA foreign_keys=ON")
        self._conn = conn

    def _connection(self) -> sqlite3.Connection:
        if self._conn is None:
            raise DbError("storage is not initialised")
        return self._conn

    # ------------------------------------------------------------------
    # Column registry
    # ------------------------------------------------------------------

    async def columns(self, table: str) -> tuple[str, ...]:
        """Return the physical columns of *table* as currently materialised.

        Includes every column added by earlier evolution runs, in this or a
        previous process lifetime.  Unknown tables yield ``()``.
        """
        return await anyio.to_thread.run_sync(
            lambda: self._locked(lambda conn: table_columns(conn, table)),
        )

    async def tables(self) -> list[str]:
        """Names of all user tables."""
        rows = await self.execute(
            "SELECT name FROM sqlite_master "
            "WHERE type = 'table' AND name NOT LIKE 'sqlite_%' ORDER BY name"
        )
        return [row["name"] for row in rows]

    # ------------------------------------------------------------------
    # Query execution
    # ------------------------------------------------------------------

    async def execute(
        self,
        sql: str,
        params: tuple | dict = (),
    ) -> list[Record]:
        """Execute a parameterised query and return every row as a dict.

        Rows come back in whatever order the engine produces; callers that
        care add their own ``ORDER BY``.  No matching rows yields ``[]``.
        """
        return await anyio.to_thread.run_sync(
            lambda: self._execute_sync(sql, params),
        )

    def _execute_sync(self, sql: str, params: tuple | dict = ()) -> list[Record]:
        def run(conn: sqlite3.Connection) -> list[Record]:
            try:
                cursor = conn.execute(sql, params)
                rows = [dict(row) for row in cursor.fetchall()]
                if conn.in_transaction:
                    conn.commit()
                return rows
            except sqlite3.Error as exc:
                conn.rollback()
                raise DbError(str(exc)) from exc

        return self._locked(run)

    async def execute_transaction(self, fn: Callable[[sqlite3.Connection], _T]) -> _T:
        """Execute a callback inside a single ``BEGIN`` ... ``COMMIT``.

        The lock is held for the entire duration, so neither another
        statement nor a snapshot read-out can interleave.  Any exception
        raised by *fn* rolls the whole transaction back; engine errors are
        re-raised as :class:`DbError`, everything else propagates as-is.
        """
        return await anyio.to_thread.run_sync(
            lambda: self._locked(lambda conn: self._transaction_sync(conn, fn)),
        )

    @staticmethod
    def _transaction_sync(conn: sqlite3.Connection, fn: Callable[[sqlite3.Connection], _T]) -> _T:
        try:
            if conn.in_transaction:
                conn.commit()
            conn.execute("BEGIN")
            result = fn(conn)
            conn.commit()
            return result
        except sqlite3.Error as exc:
            conn.rollback()
            raise DbError(str(exc)) from exc
        except Exception:
            conn.rollback()
            raise

    async def run_sync(self, fn: Callable[[sqlite3.Connection], _T]) -> _T:
        """Run *fn* against the raw connection under the lock.

        No transaction is opened for the caller; this is the entry point for
        startup work (schema evolution, seeding) that manages its own
        commits step by step.
        """
        return await anyio.to_thread.run_sync(lambda: self._locked(fn))

    def _locked(self, fn: Callable[[sqlite3.Connection], _T]) -> _T:
        with self._lock:
            return fn(self._connection())

    # ------------------------------------------------------------------
    # Snapshot read-out
    # ------------------------------------------------------------------

    async def serialize(self) -> bytes:
        """Return the complete database image as bytes.

        Taken under the statement lock so the image always reflects a
        state between two statements, never in the middle of one.
        """
        return await anyio.to_thread.run_sync(self._serialize_sync)

    def _serialize_sync(self) -> bytes:
        def run(conn: sqlite3.Connection) -> bytes:
            try:
                if conn.in_transaction:
                    conn.commit()
                return conn.serialize()
            except sqlite3.Error as exc:
                raise DbError(f"serialisation failed: {exc}") from exc

        return self._locked(run)

    # ------------------------------------------------------------------
    # Database metadata
    # ------------------------------------------------------------------

    async def table_counts(self) -> dict[str, int]:
        """Return row counts for every user table."""

        def run(conn: sqlite3.Connection) -> dict[str, int]:
            names = [
                row[0]
                for row in conn.execute(
                    "SELECT name FROM sqlite_master "
                    "WHERE type = 'table' AND name NOT LIKE 'sqlite_%' ORDER BY name"
                )
            ]
            return {name: count_rows(conn, name) for name in names}

        return await self.run_sync(run)

    # ------------------------------------------------------------------
    # Context manager support
    # ------------------------------------------------------------------

    async def close(self) -> None:
        """Discard the in-memory database."""
        with self._lock:
            conn, self._conn = self._conn, None
        if conn is not None:
            conn.close()
        self._initialized = False
        log.debug("Storage closed")

    async def __aenter__(self) -> Storage:
        await self.initialize()
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()
