"""CSV parsers for bulk location imports.

Two layouts are understood:

``plain``
    ``zipCode, district, city, province`` per line.  An optional header row
    (first column mentions "zip", second "district") is skipped, as are
    blank lines and lines with fewer than two columns.

``codepos``
    The national postcode dump: a header line followed by rows with at
    least ten columns, where column 5 is the postcode, 6 and 7 the
    sub-district and district, 8 the city and 9 the province.

Parsers only shape rows; validation (zipCode and city required) happens in
the gateway, which skips rows that fail it.
"""

from __future__ import annotations

import csv
from typing import Iterable, Iterator, TypeVar

_T = TypeVar("_T")

FORMATS = ("plain", "codepos")
DEFAULT_BATCH_SIZE = 1000

_CODEPOS_MIN_COLUMNS = 10


def _rows(text: str) -> Iterator[list[str]]:
    for row in csv.reader(text.splitlines()):
        cols = [col.strip() for col in row]
        if not any(cols):
            continue
        yield cols


def _is_plain_header(cols: list[str]) -> bool:
    return "zip" in cols[0].lower() and "district" in cols[1].lower()


def parse_location_csv(text: str) -> list[dict[str, str]]:
    """Parse the ``plain`` layout into location payloads."""
    locations = []
    for cols in _rows(text):
        if len(cols) < 2 or _is_plain_header(cols):
            continue
        cols += [""] * (4 - len(cols))
        locations.append({
            "zipCode": cols[0],
            "district": cols[1],
            "city": cols[2],
            "province": cols[3],
        })
    return locations


def parse_codepos_csv(text: str) -> list[dict[str, str]]:
    """Parse the ``codepos`` layout into location payloads."""
    locations = []
    rows = _rows(text)
    next(rows, None)  # header
    for cols in rows:
        if len(cols) < _CODEPOS_MIN_COLUMNS:
            continue
        locations.append({
            "zipCode": cols[5],
            "district": f"{cols[6]}, {cols[7]}",
            "city": cols[8],
            "province": cols[9],
        })
    return locations


def parse_locations(text: str, fmt: str = "plain") -> list[dict[str, str]]:
    """Dispatch to the parser for *fmt* (one of :data:`FORMATS`)."""
    if fmt == "plain":
        return parse_location_csv(text)
    if fmt == "codepos":
        return parse_codepos_csv(text)
    raise ValueError(f"Unknown location CSV format {fmt!r}. Must be one of: {', '.join(FORMATS)}")


def batched(items: Iterable[_T], size: int = DEFAULT_BATCH_SIZE) -> Iterator[list[_T]]:
    """Yield consecutive lists of at most *size* items."""
    if size < 1:
        raise ValueError("batch size must be positive")
    batch: list[_T] = []
    for item in items:
        batch.append(item)
        if len(batch) >= size:
            yield batch
            batch = []
    if batch:
        yield batch
