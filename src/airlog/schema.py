"""Startup schema evolution for the airlog store.

The store has no migration framework and no version table.  Instead the
expected shape is described by :data:`EVOLUTION`, an ordered tuple of small
declarative operations that are applied on every startup:

- :class:`CreateTable` -- full table definition, ``CREATE TABLE IF NOT EXISTS``.
- :class:`AddColumn` -- new nullable column, added only when absent.
- :class:`Backfill` -- data-only ``UPDATE ... WHERE <predicate>``; the
  predicate is false for every row once the backfill has been applied.
- :class:`DeriveColumn` -- computes a column from other columns in Python
  for rows that still lack it (e.g. a blog slug from its title).

Every operation is idempotent by construction, so running the list twice is
the same as running it once.  Operations run strictly in declaration order
because later steps read columns that earlier steps add.

Failure policy
--------------
A step that turns out to be already applied reports ``already_applied``.
A step whose table or source column does not exist reports ``skipped``.
Any other failure is logged and reported as ``failed``; evolution carries on
with the next step unless the evolver is *strict*, in which case it raises
:class:`~airlog.errors.SchemaEvolutionError` and startup aborts.
"""

from __future__ import annotations

import logging
import re
import sqlite3
from dataclasses import dataclass, field
from typing import Any, Callable, Union

from airlog.errors import SchemaEvolutionError
from airlog.storage import quote_ident, table_columns, table_exists

log = logging.getLogger(__name__)

# Step outcome statuses.
APPLIED = "applied"
ALREADY_APPLIED = "already_applied"
SKIPPED = "skipped"
FAILED = "failed"


# ---------------------------------------------------------------------------
# Operations
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CreateTable:
    """Create *table* with *columns* (``(name, declaration)`` pairs) if absent."""

    table: str
    columns: tuple[tuple[str, str], ...]

    @property
    def name(self) -> str:
        return f"create {self.table}"

    def apply(self, conn: sqlite3.Connection) -> str:
        if table_exists(conn, self.table):
            return ALREADY_APPLIED
        body = ",\n    ".join(f"{quote_ident(col)} {decl}" for col, decl in self.columns)
        conn.execute(f"CREATE TABLE IF NOT EXISTS {quote_ident(self.table)} (\n    {body}\n)")
        return APPLIED


@dataclass(frozen=True)
class AddColumn:
    """Add a nullable *column* of SQL *type* to *table* if it is missing."""

    table: str
    column: str
    type: str = "TEXT"

    @property
    def name(self) -> str:
        return f"add {self.table}.{self.column}"

    def apply(self, conn: sqlite3.Connection) -> str:
        existing = table_columns(conn, self.table)
        if not existing:
            return SKIPPED
        if self.column in existing:
            return ALREADY_APPLIED
        return _add_column(conn, self.table, self.column, self.type)


@dataclass(frozen=True)
class Backfill:
    """Run ``UPDATE table SET <assignments> WHERE <where>``.

    *where* must select only rows that still need the backfill so that a
    re-run touches nothing.  *requires* lists every column the statement
    reads or writes; the step is skipped if any of them is missing.
    """

    table: str
    assignments: str
    where: str
    requires: tuple[str, ...] = ()

    @property
    def name(self) -> str:
        return f"backfill {self.table}: {self.assignments}"

    def apply(self, conn: sqlite3.Connection) -> str:
        existing = set(table_columns(conn, self.table))
        if not existing or not set(self.requires) <= existing:
            return SKIPPED
        cursor = conn.execute(
            f"UPDATE {quote_ident(self.table)} SET {self.assignments} WHERE {self.where}"
        )
        return APPLIED if cursor.rowcount > 0 else ALREADY_APPLIED


@dataclass(frozen=True)
class DeriveColumn:
    """Fill *column* from *derive(row)* for rows where it is NULL or empty.

    *key* identifies rows for the UPDATE; *sources* are the columns handed
    to *derive* as a mapping.
    """

    table: str
    column: str
    key: str
    sources: tuple[str, ...]
    derive: Callable[[dict[str, Any]], Any] = field(compare=False)

    @property
    def name(self) -> str:
        return f"derive {self.table}.{self.column}"

    def apply(self, conn: sqlite3.Connection) -> str:
        existing = set(table_columns(conn, self.table))
        if not existing or not {self.column, self.key, *self.sources} <= existing:
            return SKIPPED
        table, column, key = quote_ident(self.table), quote_ident(self.column), quote_ident(self.key)
        select_cols = ", ".join(quote_ident(c) for c in dict.fromkeys((self.key, *self.sources)))
        rows = conn.execute(
            f"SELECT {select_cols} FROM {table} WHERE {column} IS NULL OR {column} = ''"
        ).fetchall()
        if not rows:
            return ALREADY_APPLIED
        conn.executemany(
            f"UPDATE {table} SET {column} = ? WHERE {key} = ?",
            [(self.derive(dict(row)), row[self.key]) for row in rows],
        )
        return APPLIED


Operation = Union[CreateTable, AddColumn, Backfill, DeriveColumn]


def _add_column(conn: sqlite3.Connection, table: str, column: str, col_type: str) -> str:
    """``ALTER TABLE ... ADD COLUMN`` that treats a duplicate column as done.

    The existence check in :meth:`AddColumn.apply` already covers the normal
    case; this catches the remaining race where the column appears between
    the check and the ALTER.  Only SQLite's "duplicate column name" error is
    absorbed; every other error propagates.
    """
    try:
        conn.execute(
            f"ALTER TABLE {quote_ident(table)} ADD COLUMN {quote_ident(column)} {col_type}"
        )
    except sqlite3.OperationalError as exc:
        if "duplicate column name" in str(exc).lower():
            return ALREADY_APPLIED
        raise
    return APPLIED


# ---------------------------------------------------------------------------
# Slugs
# ---------------------------------------------------------------------------

_SLUG_STRIP_RE = re.compile(r"[^a-z0-9]+")


def slugify(title: str | None, fallback: str = "") -> str:
    """Lowercase *title*, collapse non-alphanumerics to ``-`` and trim dashes."""
    slug = _SLUG_STRIP_RE.sub("-", (title or "").lower()).strip("-")
    return slug or fallback


def _blog_slug(row: dict[str, Any]) -> str:
    return slugify(row.get("title"), fallback=str(row["id"]))


# ---------------------------------------------------------------------------
# Expected schema
# ---------------------------------------------------------------------------

TABLES: dict[str, tuple[tuple[str, str], ...]] = {
    "shipments": (
        ("id", "TEXT PRIMARY KEY"),
        ("trackingNumber", "TEXT"),
        ("customer", "TEXT"),
        ("origin", "TEXT"),
        ("destination", "TEXT"),
        ("weight", "REAL"),
        ("status", "TEXT"),
        ("courier", "TEXT"),
        ("createdDate", "TEXT"),
        ("estimatedDelivery", "TEXT"),
        ("notes", "TEXT"),
    ),
    "inquiries": (
        ("id", "INTEGER PRIMARY KEY AUTOINCREMENT"),
        ("name", "TEXT"),
        ("email", "TEXT"),
        ("phone", "TEXT"),
        ("company", "TEXT"),
        ("message", "TEXT"),
        ("date", "TEXT"),
        ("status", "TEXT"),
    ),
    "services": (
        ("id", "TEXT PRIMARY KEY"),
        ("title", "TEXT"),
        ("description", "TEXT"),
        ("icon", "TEXT"),
        ("photo", "TEXT"),
    ),
    "rates": (
        ("id", "TEXT PRIMARY KEY"),
        ("origin", "TEXT"),
        ("destination", "TEXT"),
        ("ratePerKg", "REAL"),
        ("volumetricRate", "REAL"),
        ("eta", "TEXT"),
    ),
    "banners": (
        ("id", "TEXT PRIMARY KEY"),
        ("ord", "INTEGER"),
        ("title", "TEXT"),
        ("subtitle", "TEXT"),
        ("ctaLink", "TEXT"),
        ("imageUrl", "TEXT"),
        ("isActive", "INTEGER"),
    ),
    "testimonials": (
        ("id", "TEXT PRIMARY KEY"),
        ("name", "TEXT"),
        ("company", "TEXT"),
        ("photo", "TEXT"),
        ("message", "TEXT"),
        ("rating", "INTEGER"),
    ),
    "users": (
        ("id", "TEXT PRIMARY KEY"),
        ("name", "TEXT"),
        ("email", "TEXT"),
        ("role", "TEXT"),
        ("permissions", "TEXT"),
        ("lastActive", "TEXT"),
        ("status", "TEXT"),
    ),
    "blogs": (
        ("id", "TEXT PRIMARY KEY"),
        ("title", "TEXT"),
        ("slug", "TEXT"),
        ("imageUrl", "TEXT"),
        ("category", "TEXT"),
        ("author", "TEXT"),
        ("date", "TEXT"),
        ("readTime", "TEXT"),
        ("featured", "INTEGER"),
        ("content", "TEXT"),
    ),
    "vendors": (
        ("id", "TEXT PRIMARY KEY"),
        ("name", "TEXT"),
        ("type", "TEXT"),
        ("contactInfo", "TEXT"),
        ("status", "TEXT"),
    ),
    "locations": (
        ("id", "INTEGER PRIMARY KEY AUTOINCREMENT"),
        ("zipCode", "TEXT"),
        ("district", "TEXT"),
        ("city", "TEXT"),
        ("province", "TEXT"),
    ),
}
"""Initial table layouts.  Later columns arrive through :data:`EVOLUTION`."""

SHIPMENT_COLUMN_UPGRADES: tuple[AddColumn, ...] = (
    AddColumn("shipments", "vendorId"),
    AddColumn("shipments", "description"),
    AddColumn("shipments", "sender"),
    AddColumn("shipments", "coli", "INTEGER"),
    AddColumn("shipments", "insurance"),
    AddColumn("shipments", "packing"),
    AddColumn("shipments", "service"),
)

SERVICE_FROM_COURIER = Backfill(
    "shipments",
    assignments='"service" = "courier"',
    where="(\"service\" IS NULL OR \"service\" = '') AND \"courier\" IS NOT NULL",
    requires=("service", "courier"),
)

EVOLUTION: tuple[Operation, ...] = (
    *(CreateTable(name, cols) for name, cols in TABLES.items()),
    *SHIPMENT_COLUMN_UPGRADES,
    SERVICE_FROM_COURIER,
    AddColumn("users", "passwordHash"),
    AddColumn("blogs", "slug"),
    DeriveColumn("blogs", "slug", key="id", sources=("title",), derive=_blog_slug),
    AddColumn("testimonials", "isActive", "INTEGER"),
    Backfill(
        "testimonials",
        assignments='"isActive" = 1',
        where='"isActive" IS NULL',
        requires=("isActive",),
    ),
)
"""The ordered list of schema changes applied at every startup."""


# ---------------------------------------------------------------------------
# Interpreter
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class StepResult:
    name: str
    status: str
    detail: str = ""

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {"step": self.name, "status": self.status}
        if self.detail:
            d["detail"] = self.detail
        return d


@dataclass
class EvolutionReport:
    """Per-step outcome of one evolver run."""

    steps: list[StepResult] = field(default_factory=list)

    @property
    def applied(self) -> list[StepResult]:
        return [s for s in self.steps if s.status == APPLIED]

    @property
    def failures(self) -> list[StepResult]:
        return [s for s in self.steps if s.status == FAILED]

    @property
    def ok(self) -> bool:
        return not self.failures

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": self.ok,
            "applied": len(self.applied),
            "failed": len(self.failures),
            "steps": [s.to_dict() for s in self.steps],
        }


class SchemaEvolver:
    """Apply an ordered list of schema operations to a raw connection.

    Parameters
    ----------
    operations:
        Steps to apply, in order.  Defaults to :data:`EVOLUTION`.
    strict:
        Raise :class:`SchemaEvolutionError` on the first unexpected failure
        instead of logging it and continuing.
    """

    def __init__(
        self,
        operations: tuple[Operation, ...] = EVOLUTION,
        *,
        strict: bool = False,
    ) -> None:
        self._operations = operations
        self._strict = strict

    def run(self, conn: sqlite3.Connection) -> EvolutionReport:
        """Apply every operation in order and return the report.

        Each step commits on its own so a failure never rolls back the
        steps before it.
        """
        report = EvolutionReport()
        for op in self._operations:
            try:
                status = op.apply(conn)
                conn.commit()
            except Exception as exc:
                conn.rollback()
                log.error("Schema step %r failed: %s", op.name, exc)
                report.steps.append(StepResult(op.name, FAILED, str(exc)))
                if self._strict:
                    raise SchemaEvolutionError(f"{op.name}: {exc}") from exc
                continue

            if status == APPLIED:
                log.info("Migration: %s", op.name)
            else:
                log.debug("Migration %s: %s", status, op.name)
            report.steps.append(StepResult(op.name, status))
        return report
