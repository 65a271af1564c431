"""Shared fixtures and helpers for the airlog test suite."""

from __future__ import annotations

import sqlite3
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from airlog.backend import Backend
from airlog.config import AirlogConfig, PersistenceConfig
from airlog.gateway import MutationGateway
from airlog.persistence import DurabilityWriter
from airlog.schema import SchemaEvolver
from airlog.storage import Storage, quote_ident


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def config(tmp_path: Path) -> AirlogConfig:
    """Config rooted in ``tmp_path`` with a short debounce window.

    Tests never touch the user's real snapshot at ``~/.airlog``.
    """
    return AirlogConfig(
        data_dir=tmp_path / "data",
        persistence=PersistenceConfig(flush_delay=0.05, fsync=False),
    )


@pytest.fixture
def conn() -> sqlite3.Connection:
    """A raw in-memory connection configured like :class:`Storage`'s."""
    c = sqlite3.connect(":memory:")
    c.row_factory = sqlite3.Row
    yield c  # type: ignore[misc]
    c.close()


@pytest.fixture
async def storage() -> Storage:
    """An initialised, empty in-memory store (no tables)."""
    s = Storage()
    await s.initialize()
    yield s  # type: ignore[misc]
    await s.close()


@pytest.fixture
async def evolved(storage: Storage) -> Storage:
    """A store with the full current schema and no rows."""
    await storage.run_sync(SchemaEvolver(strict=True).run)
    return storage


@pytest.fixture
def mock_writer() -> MagicMock:
    """Stand-in for the durability writer that records schedule calls."""
    return MagicMock(spec=DurabilityWriter)


@pytest.fixture
def gateway(evolved: Storage, mock_writer: MagicMock, config: AirlogConfig) -> MutationGateway:
    return MutationGateway(evolved, mock_writer, config)


@pytest.fixture
async def backend(config: AirlogConfig) -> Backend:
    """A fully started backend (evolved and seeded) persisting into ``tmp_path``."""
    b = Backend(config)
    await b.initialize()
    yield b  # type: ignore[misc]
    await b.shutdown()


# ---------------------------------------------------------------------------
# Shared test helpers -- direct SQL bypassing the gateway
# ---------------------------------------------------------------------------


def create_table(conn: sqlite3.Connection, table: str, *columns: str) -> None:
    """Create *table* with the given ``"name TYPE"`` column declarations.

    Used to simulate snapshots written by an older binary.
    """
    conn.execute(f"CREATE TABLE {quote_ident(table)} ({', '.join(columns)})")
    conn.commit()


def insert_row(conn: sqlite3.Connection, table: str, **values: object) -> None:
    cols = ", ".join(quote_ident(c) for c in values)
    marks = ", ".join("?" for _ in values)
    conn.execute(f"INSERT INTO {quote_ident(table)} ({cols}) VALUES ({marks})", tuple(values.values()))
    conn.commit()


async def count(storage: Storage, table: str) -> int:
    rows = await storage.execute(f"SELECT COUNT(*) AS n FROM {quote_ident(table)}")
    return rows[0]["n"]


V1_SHIPMENT_COLUMNS = (
    "id TEXT PRIMARY KEY", "trackingNumber TEXT", "customer TEXT", "origin TEXT",
    "destination TEXT", "weight REAL", "status TEXT", "courier TEXT",
    "createdDate TEXT", "estimatedDelivery TEXT", "notes TEXT",
)
"""The shipments layout before any in-place upgrade."""
