"""Tests for the maintenance CLI commands."""

from __future__ import annotations

import pytest

from airlog import cli
from airlog.backend import Backend


class TestMigrate:

    async def test_report_lists_steps_and_columns(self, backend: Backend) -> None:
        """The report shows each step and the current shipment columns."""
        output = await cli._migrate(backend)

        assert output.startswith("airlog migrate:")
        assert "already_applied" in output
        assert "shipments columns:" in output
        assert "service" in output.splitlines()[-1]


class TestImportLocations:

    CSV = (
        "zip,district,city,province\n"
        "80111,Denpasar Barat,Denpasar,Bali\n"
        "80221,Denpasar Selatan,Denpasar,Bali\n"
        "83111,Ampenan,Mataram,NTB\n"
        ",Nowhere,,\n"
        "65111,Klojen,Malang,Jawa Timur\n"
    )

    async def test_batches_and_summary(self, backend: Backend) -> None:
        """Rows are imported in batches and totals are summed across them."""
        before = (await backend.table_counts())["locations"]

        summary = await cli._import_locations(backend, self.CSV, "plain", batch_size=2)

        assert summary == {"parsed": 5, "imported": 4, "skipped": 1, "failed_batches": 0}
        assert (await backend.table_counts())["locations"] == before + 4

    async def test_batch_of_only_invalid_rows_is_skipped(self, backend: Backend) -> None:
        """A batch with no valid rows counts as skipped, not failed."""
        summary = await cli._import_locations(backend, ",a,,\n", batch_size=10)

        assert summary == {"parsed": 1, "imported": 0, "skipped": 1, "failed_batches": 0}

    async def test_unknown_format(self, backend: Backend) -> None:
        with pytest.raises(ValueError):
            await cli._import_locations(backend, "x", "xml")


class TestStats:

    async def test_dashboard(self, backend: Backend) -> None:
        """stats prints the snapshot path and per-table counts."""
        output = await cli._stats(backend)

        assert output.startswith("airlog stats:")
        assert "shipments" in output
        assert str(backend.writer.path) in output


class TestDispatch:

    def test_no_args_falls_through(self) -> None:
        assert cli.dispatch([]) is None

    def test_unknown_command_exits_2(self, capsys: pytest.CaptureFixture[str]) -> None:
        """Unknown commands print to stderr and exit with status 2."""
        with pytest.raises(SystemExit) as exc_info:
            cli.dispatch(["explode"])

        assert exc_info.value.code == 2
        assert "explode" in capsys.readouterr().err

    def test_import_rejects_bad_batch_size(self, tmp_path) -> None:
        """argparse rejects a batch size below one."""
        csv_file = tmp_path / "l.csv"
        csv_file.write_text("1,a,b,c\n")
        with pytest.raises(SystemExit):
            cli.run_import_locations([str(csv_file), "--batch-size", "0"])
