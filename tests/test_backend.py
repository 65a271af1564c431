"""End-to-end tests for the Backend orchestrator.

Every test starts a real backend (evolved and seeded) whose snapshot lives
under ``tmp_path``.
"""

from __future__ import annotations

import re
import sqlite3

import pytest

from airlog.backend import Backend
from airlog.config import AirlogConfig
from airlog.errors import AuthError, DbError, InvalidPayload, NotFound
from airlog.persistence import atomic_write_bytes
from airlog.storage import Storage
from tests.conftest import V1_SHIPMENT_COLUMNS, count, create_table, insert_row

TRACKING_RE = re.compile(r"^AIR\d{6}[0-9A-F]{4}$")


# -----------------------------------------------------------------------
# 1. Startup
# -----------------------------------------------------------------------


class TestStartup:

    async def test_seeded_on_first_start(self, backend: Backend) -> None:
        """An empty snapshot directory starts with every collection seeded."""
        counts = await backend.table_counts()
        assert counts["shipments"] == 3
        assert counts["locations"] == 12
        assert counts["users"] == 4
        assert counts["vendors"] == 0
        assert backend.startup_report.ok

    async def test_seeded_shipments_have_service(self, backend: Backend) -> None:
        """Seed rows look like rows that went through the service backfill."""
        rows = await backend.list_records("shipments")
        assert {r["service"] for r in rows} == {r["courier"] for r in rows}
        assert all(r["service"] for r in rows)

    async def test_requires_initialize(self, config: AirlogConfig) -> None:
        """Operations before initialize() fail loudly."""
        with pytest.raises(RuntimeError):
            await Backend(config).list_records("rates")

    async def test_restart_restores_and_does_not_reseed(self, config: AirlogConfig) -> None:
        """Data written before shutdown survives a restart; seeds are not re-applied."""
        first = Backend(config)
        await first.initialize()
        await first.create("vendors", {"name": "Kargo Cepat"})
        await first.shutdown()
        assert config.snapshot_path.exists()

        second = Backend(config)
        await second.initialize()
        try:
            vendors = await second.list_records("vendors")
            assert [v["name"] for v in vendors] == ["Kargo Cepat"]
            assert second.seeded == {}
            assert (await second.table_counts())["shipments"] == 3
        finally:
            await second.shutdown()

    async def test_upgrades_older_snapshot(self, config: AirlogConfig) -> None:
        """A snapshot from before the shipment upgrades is evolved in place."""
        old = Storage()
        await old.initialize()
        await old.run_sync(lambda conn: create_table(conn, "shipments", *V1_SHIPMENT_COLUMNS))
        await old.run_sync(
            lambda conn: insert_row(
                conn, "shipments", id="legacy", trackingNumber="LGX100", customer="PT. Lama",
                courier="TIKI", createdDate="2023-01-01",
            )
        )
        atomic_write_bytes(config.snapshot_path, await old.serialize(), fsync=False)
        await old.close()

        backend = Backend(config)
        await backend.initialize()
        try:
            shipment = await backend.track_shipment("LGX100")
            assert shipment["service"] == "TIKI"
            assert shipment["customer"] == "PT. Lama"
            assert await count(backend.storage, "shipments") == 1
        finally:
            await backend.shutdown()

    async def test_corrupt_snapshot_aborts_startup(self, config: AirlogConfig) -> None:
        """An unreadable snapshot stops startup and is left on disk untouched."""
        config.snapshot_path.parent.mkdir(parents=True)
        config.snapshot_path.write_bytes(b"garbage" * 200)

        with pytest.raises(DbError):
            await Backend(config).initialize()
        assert config.snapshot_path.read_bytes() == b"garbage" * 200


# -----------------------------------------------------------------------
# 2. Reads
# -----------------------------------------------------------------------


class TestReads:

    async def test_shipments_newest_first(self, backend: Backend) -> None:
        """Shipments list by createdDate, newest first."""
        rows = await backend.list_records("shipments")
        assert [r["trackingNumber"] for r in rows] == ["LGX003", "LGX001", "LGX002"]

    async def test_rates_ordered_by_route(self, backend: Backend) -> None:
        rows = await backend.list_records("rates")
        assert [(r["origin"], r["destination"]) for r in rows] == [
            ("Jakarta", "Bandung"), ("Jakarta", "Surabaya"), ("Surabaya", "Medan"),
        ]

    async def test_banner_shape(self, backend: Backend) -> None:
        """Banners expose ``order`` and boolean ``isActive``."""
        banners = await backend.list_records("banners")
        assert [b["order"] for b in banners] == [1, 2, 3, 4, 5]
        assert all(b["isActive"] is True for b in banners)
        assert "ord" not in banners[0]

    async def test_users_hide_password_hash(self, backend: Backend) -> None:
        """User reads never include the hash and decode permissions."""
        users = await backend.list_records("users")
        assert all("passwordHash" not in u for u in users)
        jane = next(u for u in users if u["email"] == "jane@logistics.com")
        assert jane["permissions"] == ["Shipments", "Rates", "Inquiries"]

    async def test_blog_by_id_or_slug(self, backend: Backend) -> None:
        """A blog post resolves by either its id or its slug."""
        by_slug = await backend.get_blog("tips-mengemas-paket-agar-aman")
        by_id = await backend.get_blog("2")
        assert by_slug == by_id
        assert by_slug["featured"] is True

    async def test_blog_not_found(self, backend: Backend) -> None:
        with pytest.raises(NotFound):
            await backend.get_blog("nope")

    async def test_track_shipment(self, backend: Backend) -> None:
        """Tracking numbers are trimmed; unknown and empty ones are errors."""
        shipment = await backend.track_shipment(" LGX001 ")
        assert shipment["customer"] == "PT. Maju Jaya"
        with pytest.raises(NotFound):
            await backend.track_shipment("LGX404")
        with pytest.raises(InvalidPayload):
            await backend.track_shipment("")

    async def test_search_locations(self, backend: Backend) -> None:
        """The term matches city substrings, results ordered by zip code."""
        rows = await backend.search_locations("Jakarta")
        assert [r["zipCode"] for r in rows] == ["10110", "10270", "10310"]

    async def test_search_locations_limit(self, backend: Backend) -> None:
        assert len(await backend.search_locations(limit=5)) == 5
        assert len(await backend.search_locations()) == 12

    async def test_unknown_collection(self, backend: Backend) -> None:
        with pytest.raises(InvalidPayload):
            await backend.list_records("spaceships")


# -----------------------------------------------------------------------
# 3. Mutations
# -----------------------------------------------------------------------


class TestMutations:

    async def test_create_shipment_appears_first(self, backend: Backend) -> None:
        """A created shipment gets a tracking number and lists first."""
        result = await backend.create(
            "shipments",
            {"customer": "PT. Baru", "origin": "Jakarta", "destination": "Medan", "weight": 4},
        )

        assert result["ok"] is True
        assert result["count"] == 1
        assert result["persisted"] is True
        assert TRACKING_RE.match(result["record"]["trackingNumber"])

        rows = await backend.list_records("shipments")
        assert rows[0]["id"] == result["id"]
        assert rows[0]["status"] == "Created"

    async def test_invalid_payload_leaves_store_unchanged(self, backend: Backend) -> None:
        """A rejected create leaves every table count as it was."""
        before = await backend.table_counts()
        result = await backend.create("shipments", {"customer": "PT. Baru", "origin": "Jakarta"})

        assert result["error"] == "invalid_payload"
        assert await backend.table_counts() == before

    async def test_created_user_record_hides_hash(self, backend: Backend) -> None:
        result = await backend.create(
            "users", {"email": "new@logistics.com", "password": "s3cret-pass", "permissions": ["Rates"]},
        )
        assert "passwordHash" not in result["record"]
        assert result["record"]["permissions"] == ["Rates"]

    async def test_update_and_delete(self, backend: Backend) -> None:
        """Update is sparse; deleting twice reports not_found."""
        assert (await backend.update("rates", "1", {"eta": "1 day"}))["ok"]
        rates = {r["id"]: r for r in await backend.list_records("rates")}
        assert rates["1"]["eta"] == "1 day"
        assert rates["1"]["ratePerKg"] == 10000

        assert (await backend.delete("rates", "1"))["count"] == 1
        assert (await backend.delete("rates", "1"))["error"] == "not_found"

    async def test_reorder_banners(self, backend: Backend) -> None:
        """Reordering rewrites ``ord`` so the listing follows the new order."""
        result = await backend.reorder_banners([{"id": "1", "order": 9}, {"id": "5", "order": 0}])

        assert result["ok"] and result["count"] == 2
        banners = await backend.list_records("banners")
        assert [b["id"] for b in banners] == ["5", "2", "3", "4", "1"]

    async def test_reorder_nothing(self, backend: Backend) -> None:
        """An empty reorder is a successful no-op."""
        assert (await backend.reorder_banners([]))["count"] == 0


class TestImports:

    async def test_import_rates_skips_invalid(self, backend: Backend) -> None:
        """Valid rows are inserted and the invalid one is skipped."""
        result = await backend.import_rates([
            {"origin": "Jakarta", "destination": "Bali", "ratePerKg": 12000, "eta": "2 days"},
            {"origin": "Jakarta", "destination": "Lombok", "ratePerKg": 13000},
            {"origin": "Bandung", "destination": "Bali", "ratePerKg": 14000},
            {"origin": "Bandung"},
        ])

        assert result["ok"] and result["count"] == 3
        assert (await backend.table_counts())["rates"] == 6

    async def test_import_locations_csv(self, backend: Backend) -> None:
        """CSV text goes through the parser into the locations table."""
        text = "zip,district,city,province\n80111,Denpasar Barat,Denpasar,Bali\n,No Zip,Nowhere,X\n"
        result = await backend.import_locations_csv(text)

        assert result["count"] == 1
        assert result["skipped"] == 1
        rows = await backend.search_locations("Denpasar")
        assert rows[0]["zipCode"] == "80111"

    async def test_import_locations_csv_bad_format(self, backend: Backend) -> None:
        result = await backend.import_locations_csv("a,b", "xml")
        assert result["error"] == "invalid_payload"


class TestMigrate:

    async def test_migrate_is_idempotent(self, backend: Backend) -> None:
        """A freshly seeded store is already fully evolved."""
        result = await backend.migrate()

        assert result["ok"] is True
        assert result["persisted"] is False
        assert all(step["status"] != "applied" for step in result["migrations"])
        assert "service" in result["columns"]

    async def test_migrate_upgrades_old_shipments_table(self, backend: Backend) -> None:
        """migrate adds missing shipment columns and reports them."""
        await backend.storage.run_sync(
            lambda conn: conn.execute('ALTER TABLE shipments RENAME TO "shipments_old"')
        )
        await backend.storage.run_sync(
            lambda conn: create_table(conn, "shipments", *V1_SHIPMENT_COLUMNS)
        )

        result = await backend.migrate()

        assert result["ok"] is True
        assert result["persisted"] is True
        assert {"service", "vendorId", "coli"} <= set(result["columns"])
        applied = [step["step"] for step in result["migrations"] if step["status"] == "applied"]
        assert applied


# -----------------------------------------------------------------------
# 4. Authentication
# -----------------------------------------------------------------------


class TestAuth:

    async def test_login_me_logout(self, backend: Backend) -> None:
        """A token from login resolves through me() until logout."""
        login = await backend.login("admin", "admin123")

        assert login["user"]["id"] == "admin"
        assert "passwordHash" not in login["user"]
        assert login["user"]["permissions"] == ["All Access"]

        me = await backend.me(login["token"])
        assert me["user"]["email"] == "admin"
        assert me["user"]["lastActive"] == login["user"]["lastActive"]

        assert await backend.logout(login["token"]) == {"ok": True}
        with pytest.raises(AuthError) as exc_info:
            await backend.me(login["token"])
        assert exc_info.value.code == "unauthorized"

    async def test_wrong_password(self, backend: Backend) -> None:
        with pytest.raises(AuthError) as exc_info:
            await backend.login("admin", "nope-nope")
        assert exc_info.value.code == "invalid_credentials"

    async def test_unknown_email(self, backend: Backend) -> None:
        with pytest.raises(AuthError) as exc_info:
            await backend.login("ghost@logistics.com", "admin123")
        assert exc_info.value.code == "invalid_credentials"

    async def test_inactive_user(self, backend: Backend) -> None:
        """Inactive accounts are refused even with the right password."""
        await backend.update("users", "2", {"status": "inactive"})
        with pytest.raises(AuthError) as exc_info:
            await backend.login("jane@logistics.com", "admin123")
        assert exc_info.value.code == "user_inactive"

    async def test_missing_fields(self, backend: Backend) -> None:
        with pytest.raises(InvalidPayload):
            await backend.login("admin", "")

    async def test_changed_password(self, backend: Backend) -> None:
        """A password set through update is the one login checks."""
        await backend.update("users", "3", {"password": "brand-new-pass"})
        login = await backend.login("bob@logistics.com", "brand-new-pass")
        assert login["user"]["id"] == "3"


# -----------------------------------------------------------------------
# 5. Persistence through the backend
# -----------------------------------------------------------------------


class TestPersistence:

    async def test_flush_writes_snapshot(self, backend: Backend, config: AirlogConfig) -> None:
        """flush() writes a snapshot that restores the new row."""
        await backend.create("vendors", {"name": "Kargo"})
        assert await backend.flush() is True

        conn = sqlite3.connect(":memory:")
        try:
            conn.deserialize(config.snapshot_path.read_bytes())
            assert conn.execute("SELECT name FROM vendors").fetchall() == [("Kargo",)]
        finally:
            conn.close()

    async def test_status(self, backend: Backend, config: AirlogConfig) -> None:
        status = await backend.status()
        assert status["snapshot"] == str(config.snapshot_path)
        assert status["tables"]["services"] == 6
        assert status["sessions"] == 0
