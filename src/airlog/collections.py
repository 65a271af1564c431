"""Logical definitions of the record collections.

Each :class:`CollectionSpec` names a table, its identity column, the full
list of columns the application knows about (the *logical* schema) and a
``prepare`` function that validates, defaults and coerces an incoming
payload into a sparse record.

The logical schema is allowed to differ from the physical one: the
:mod:`airlog.gateway` intersects every prepared record with the columns the
table actually has before any SQL is built.

``prepare(payload, creating, config)`` contract:

- Only fields present in *payload* (plus defaults when *creating*) appear in
  the returned record, so an update never touches a column the caller did
  not mention.
- Validation failures raise :class:`~airlog.errors.InvalidPayload` before
  anything reaches the database.
"""

from __future__ import annotations

import json
import math
import secrets
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Mapping

from airlog.config import AirlogConfig
from airlog.errors import InvalidPayload
from airlog.schema import slugify
from airlog.sessions import hash_secret

Payload = Mapping[str, Any]
Prepare = Callable[[Payload, bool, AirlogConfig], dict[str, Any]]

MIN_PASSWORD_LENGTH = 8


@dataclass(frozen=True)
class CollectionSpec:
    """Static description of one record collection."""

    name: str
    key: str
    fields: tuple[str, ...]
    prepare: Prepare
    generated_key: bool = False
    """``True`` when the engine assigns the key (INTEGER AUTOINCREMENT)."""
    aliases: Mapping[str, str] = field(default_factory=dict)
    """Payload names that map onto differently named columns."""

    @property
    def table(self) -> str:
        return self.name


# ---------------------------------------------------------------------------
# Coercion helpers
# ---------------------------------------------------------------------------


def today() -> str:
    """Current UTC date as ``YYYY-MM-DD``."""
    return datetime.now(tz=timezone.utc).date().isoformat()


def new_id() -> str:
    return str(uuid.uuid4())


def tracking_number(prefix: str) -> str:
    """``<prefix><yymmdd><4 uppercase hex>``, e.g. ``AIR2410190A3F``."""
    stamp = datetime.now(tz=timezone.utc).strftime("%y%m%d")
    return f"{prefix}{stamp}{secrets.token_hex(2).upper()}"


def _present(value: Any) -> bool:
    return value is not None and str(value).strip() != ""


def _text(value: Any) -> str:
    return "" if value is None else str(value)


def _opt_text(value: Any) -> str | None:
    return None if value is None else str(value)


def _number(value: Any) -> float:
    # Non-finite values collapse to 0; records must stay JSON-serialisable.
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    return number if math.isfinite(number) else 0.0


def _integer(value: Any) -> int:
    return int(_number(value))


def _flag(value: Any) -> int:
    return 1 if value else 0


def _pick(payload: Payload, spec_fields: tuple[str, ...], aliases: Mapping[str, str] | None = None) -> dict[str, Any]:
    """Keep only known fields from *payload*, renaming aliases to columns."""
    record: dict[str, Any] = {}
    for name, value in payload.items():
        column = (aliases or {}).get(name, name)
        if column in spec_fields:
            record[column] = value
    return record


def _require(record: Mapping[str, Any], creating: bool, *names: str) -> None:
    """Required fields must be present on create and non-empty whenever given."""
    missing = [
        name
        for name in names
        if (creating and not _present(record.get(name)))
        or (not creating and name in record and not _present(record[name]))
    ]
    if missing:
        raise InvalidPayload(f"missing required field(s): {', '.join(missing)}")


def _coerce(record: dict[str, Any], coercers: Mapping[str, Callable[[Any], Any]]) -> None:
    for name, fn in coercers.items():
        if name in record:
            record[name] = fn(record[name])


# ---------------------------------------------------------------------------
# Per-collection preparation
# ---------------------------------------------------------------------------

SHIPMENT_FIELDS = (
    "id", "trackingNumber", "customer", "origin", "destination", "weight",
    "status", "service", "courier", "vendorId", "createdDate",
    "estimatedDelivery", "notes", "description", "sender", "coli",
    "insurance", "packing",
)


def _prepare_shipment(payload: Payload, creating: bool, config: AirlogConfig) -> dict[str, Any]:
    record = _pick(payload, SHIPMENT_FIELDS)
    _require(record, creating, "customer", "origin", "destination")
    if (creating or "weight" in record) and not _number(record.get("weight")) > 0:
        raise InvalidPayload("weight must be a positive number")

    _coerce(record, {
        "weight": _number,
        "coli": _integer,
        "vendorId": _opt_text,
        **{name: _text for name in SHIPMENT_FIELDS if name not in ("weight", "coli", "vendorId")},
    })

    if creating:
        defaults = config.shipments
        record["id"] = record.get("id") or new_id()
        record["trackingNumber"] = record.get("trackingNumber") or tracking_number(defaults.tracking_prefix)
        record["status"] = record.get("status") or defaults.default_status
        record["createdDate"] = record.get("createdDate") or today()
        service = record.get("service") or record.get("courier") or defaults.default_service
        record["courier"] = record.get("courier") or service
        record["service"] = service
        record.setdefault("vendorId", None)
    return record


INQUIRY_FIELDS = ("id", "name", "email", "phone", "company", "message", "date", "status")


def _prepare_inquiry(payload: Payload, creating: bool, config: AirlogConfig) -> dict[str, Any]:
    record = _pick(payload, INQUIRY_FIELDS)
    record.pop("id", None)
    _require(record, creating, "name", "message")
    _coerce(record, {name: _text for name in INQUIRY_FIELDS})
    if creating:
        record["date"] = record.get("date") or today()
        record["status"] = record.get("status") or "new"
    return record


SERVICE_FIELDS = ("id", "title", "description", "icon", "photo")


def _prepare_service(payload: Payload, creating: bool, config: AirlogConfig) -> dict[str, Any]:
    record = _pick(payload, SERVICE_FIELDS)
    _require(record, creating, "title")
    _coerce(record, {name: _text for name in SERVICE_FIELDS})
    if creating:
        record["id"] = record.get("id") or new_id()
    return record


RATE_FIELDS = ("id", "origin", "destination", "ratePerKg", "volumetricRate", "eta")


def _prepare_rate(payload: Payload, creating: bool, config: AirlogConfig) -> dict[str, Any]:
    record = _pick(payload, RATE_FIELDS)
    _require(record, creating, "origin", "destination")
    _coerce(record, {
        "id": _text,
        "origin": _text,
        "destination": _text,
        "ratePerKg": _number,
        "volumetricRate": _number,
        "eta": _text,
    })
    if creating:
        record["id"] = record.get("id") or new_id()
    return record


BANNER_FIELDS = ("id", "ord", "title", "subtitle", "ctaLink", "imageUrl", "isActive")
BANNERS_ALIASES = {"order": "ord"}


def _prepare_banner(payload: Payload, creating: bool, config: AirlogConfig) -> dict[str, Any]:
    record = _pick(payload, BANNER_FIELDS, BANNERS_ALIASES)
    _require(record, creating, "title")
    _coerce(record, {
        "id": _text,
        "ord": _integer,
        "title": _text,
        "subtitle": _text,
        "ctaLink": _text,
        "imageUrl": _text,
        "isActive": _flag,
    })
    if creating:
        record["id"] = record.get("id") or new_id()
        record["ord"] = record.get("ord") or 99
        record.setdefault("isActive", 0)
    return record


TESTIMONIAL_FIELDS = ("id", "name", "company", "photo", "message", "rating", "isActive")


def _prepare_testimonial(payload: Payload, creating: bool, config: AirlogConfig) -> dict[str, Any]:
    record = _pick(payload, TESTIMONIAL_FIELDS)
    _require(record, creating, "name")
    _coerce(record, {
        "id": _text,
        "name": _text,
        "company": _text,
        "photo": _text,
        "message": _text,
        "rating": _integer,
        "isActive": _flag,
    })
    if creating:
        record["id"] = record.get("id") or new_id()
        record.setdefault("isActive", 0)
    return record


BLOG_FIELDS = (
    "id", "title", "slug", "imageUrl", "category", "author", "date",
    "readTime", "featured", "content",
)


def _prepare_blog(payload: Payload, creating: bool, config: AirlogConfig) -> dict[str, Any]:
    record = _pick(payload, BLOG_FIELDS)
    _require(record, creating, "title")
    _coerce(record, {
        "featured": _flag,
        **{name: _text for name in BLOG_FIELDS if name != "featured"},
    })
    if creating:
        record["id"] = record.get("id") or new_id()
        record["slug"] = record.get("slug") or slugify(record["title"], fallback=record["id"])
        record.setdefault("featured", 0)
    return record


VENDOR_FIELDS = ("id", "name", "type", "contactInfo", "status")


def _prepare_vendor(payload: Payload, creating: bool, config: AirlogConfig) -> dict[str, Any]:
    record = _pick(payload, VENDOR_FIELDS)
    _require(record, creating, "name")
    _coerce(record, {name: _text for name in VENDOR_FIELDS})
    if creating:
        record["id"] = record.get("id") or new_id()
        record["status"] = record.get("status") or "active"
    return record


USER_FIELDS = ("id", "name", "email", "role", "permissions", "lastActive", "status", "passwordHash")


def _prepare_user(payload: Payload, creating: bool, config: AirlogConfig) -> dict[str, Any]:
    # passwordHash is derived here only; callers cannot set it directly.
    record = _pick(payload, USER_FIELDS)
    record.pop("passwordHash", None)
    _require(record, creating, "email")

    password = payload.get("password")
    if _present(password):
        if len(str(password)) < MIN_PASSWORD_LENGTH:
            raise InvalidPayload(
                f"password must be at least {MIN_PASSWORD_LENGTH} characters",
                code="weak_password",
            )
        record["passwordHash"] = hash_secret(str(password))
    elif creating:
        record["passwordHash"] = hash_secret(config.admin_password_init)

    if "permissions" in record or creating:
        permissions = record.get("permissions") or []
        if isinstance(permissions, str):
            permissions = [permissions]
        record["permissions"] = json.dumps(list(permissions))
    _coerce(record, {name: _opt_text for name in ("id", "name", "email", "role", "lastActive", "status")})
    if creating:
        record["id"] = record.get("id") or new_id()
    return record


LOCATION_FIELDS = ("id", "zipCode", "district", "city", "province")


def _prepare_location(payload: Payload, creating: bool, config: AirlogConfig) -> dict[str, Any]:
    record = _pick(payload, LOCATION_FIELDS)
    record.pop("id", None)
    _coerce(record, {name: lambda v: _text(v).strip() for name in LOCATION_FIELDS})
    _require(record, creating, "zipCode", "city")
    if creating:
        record.setdefault("district", "")
        record.setdefault("province", "")
    return record


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

COLLECTIONS: dict[str, CollectionSpec] = {
    spec.name: spec
    for spec in (
        CollectionSpec("shipments", "id", SHIPMENT_FIELDS, _prepare_shipment),
        CollectionSpec("inquiries", "id", INQUIRY_FIELDS, _prepare_inquiry, generated_key=True),
        CollectionSpec("services", "id", SERVICE_FIELDS, _prepare_service),
        CollectionSpec("rates", "id", RATE_FIELDS, _prepare_rate),
        CollectionSpec("banners", "id", BANNER_FIELDS, _prepare_banner, aliases=BANNERS_ALIASES),
        CollectionSpec("testimonials", "id", TESTIMONIAL_FIELDS, _prepare_testimonial),
        CollectionSpec("blogs", "id", BLOG_FIELDS, _prepare_blog),
        CollectionSpec("vendors", "id", VENDOR_FIELDS, _prepare_vendor),
        CollectionSpec("users", "id", USER_FIELDS, _prepare_user),
        CollectionSpec("locations", "id", LOCATION_FIELDS, _prepare_location, generated_key=True),
    )
}


def get_collection(name: str) -> CollectionSpec:
    """Look up a collection by name.

    Raises :class:`InvalidPayload` for unknown names so that a bad
    collection identity from the outer layer is reported like any other
    malformed request.
    """
    try:
        return COLLECTIONS[name]
    except KeyError:
        raise InvalidPayload(
            f"Unknown collection {name!r}. Must be one of: {', '.join(COLLECTIONS)}"
        ) from None
