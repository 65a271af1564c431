"""Tests for the location CSV parsers."""

from __future__ import annotations

import pytest

from airlog.imports import batched, parse_codepos_csv, parse_location_csv, parse_locations


class TestPlainFormat:

    def test_header_blank_and_short_lines_skipped(self) -> None:
        """Header, blank and one-column lines are dropped; short rows are padded."""
        text = (
            "Zip Code,District,City,Province\n"
            "\n"
            "10110, Gambir ,Jakarta Pusat,DKI Jakarta\r\n"
            "lonely\n"
            "60241,Gubeng,Surabaya\n"
        )
        assert parse_location_csv(text) == [
            {"zipCode": "10110", "district": "Gambir", "city": "Jakarta Pusat", "province": "DKI Jakarta"},
            {"zipCode": "60241", "district": "Gubeng", "city": "Surabaya", "province": ""},
        ]

    def test_quoted_fields(self) -> None:
        """Quoted fields may contain commas."""
        rows = parse_location_csv('17121,"Bekasi Selatan, Bekasi",Bekasi,Jawa Barat\n')
        assert rows[0]["district"] == "Bekasi Selatan, Bekasi"

    def test_empty_text(self) -> None:
        assert parse_location_csv("") == []


class TestCodeposFormat:

    HEADER = "id,a,b,c,d,postal_code,subdis_name,dis_name,city_name,prov_name\n"

    def test_columns_mapped(self) -> None:
        """codepos columns map to zip, joined district, city and province."""
        text = self.HEADER + "1,x,x,x,x,10110,Gambir,Gambir,Jakarta Pusat,DKI Jakarta\n"
        assert parse_codepos_csv(text) == [
            {"zipCode": "10110", "district": "Gambir, Gambir", "city": "Jakarta Pusat", "province": "DKI Jakarta"},
        ]

    def test_first_line_always_skipped(self) -> None:
        """The codepos header line is skipped whatever it contains."""
        line = "1,x,x,x,x,10110,Gambir,Gambir,Jakarta Pusat,DKI Jakarta\n"
        assert len(parse_codepos_csv(line + line)) == 1

    def test_short_rows_skipped(self) -> None:
        assert parse_codepos_csv(self.HEADER + "1,2,3\n") == []


class TestDispatch:

    def test_unknown_format(self) -> None:
        with pytest.raises(ValueError):
            parse_locations("a,b", "xml")

    def test_plain_is_default(self) -> None:
        assert parse_locations("1,a,b,c") == parse_location_csv("1,a,b,c")


class TestBatched:

    def test_batches(self) -> None:
        assert list(batched(range(5), 2)) == [[0, 1], [2, 3], [4]]

    def test_empty(self) -> None:
        assert list(batched([], 3)) == []

    def test_rejects_non_positive_size(self) -> None:
        with pytest.raises(ValueError):
            list(batched([1], 0))
