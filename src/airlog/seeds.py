"""Default content for an empty store.

Each collection in :data:`SEED_ROWS` is filled only when it has no rows at
all; a collection with even one record is left alone, so seeding never
overwrites and never tops up.  Rows go through
:func:`airlog.gateway.build_insert`, so a column the table does not have
yet is simply omitted.

After the sample users, every user without a ``passwordHash`` gets the hash
of the initial admin secret, and the well-known ``admin`` account is
created if it does not exist.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from datetime import datetime, timezone
from typing import Any

from airlog.config import AirlogConfig, get_config
from airlog.gateway import build_insert
from airlog.sessions import hash_secret
from airlog.storage import count_rows, table_columns

log = logging.getLogger(__name__)

ADMIN_KEY = "admin"

_UNSPLASH = "https://images.unsplash.com"
_SERVICE_PHOTO = f"{_UNSPLASH}/photo-1553413077-190dd305871c"
_TESTIMONIAL_PHOTO = f"{_UNSPLASH}/photo-1556740714-a8395b3bf30f"
_BLOG_IMAGE_QUERY = "?crop=entropy&cs=tinysrgb&fit=max&fm=jpg&w=1080"


SEED_ROWS: dict[str, tuple[dict[str, Any], ...]] = {
    "shipments": (
        {"id": "1", "trackingNumber": "LGX001", "customer": "PT. Maju Jaya", "origin": "Jakarta",
         "destination": "Surabaya", "weight": 25, "status": "In Transit", "courier": "John Doe",
         "service": "John Doe", "createdDate": "2024-11-26", "estimatedDelivery": "2024-11-29", "notes": "Fragile items"},
        {"id": "2", "trackingNumber": "LGX002", "customer": "CV. Sentosa", "origin": "Bandung",
         "destination": "Medan", "weight": 10, "status": "Delivered", "courier": "Jane Smith",
         "service": "Jane Smith", "createdDate": "2024-11-25", "estimatedDelivery": "2024-11-28", "notes": "Standard shipping"},
        {"id": "3", "trackingNumber": "LGX003", "customer": "PT. Global Tech", "origin": "Surabaya",
         "destination": "Jakarta", "weight": 50, "status": "Picked Up", "courier": "Mike Ross",
         "service": "Mike Ross", "createdDate": "2024-11-27", "estimatedDelivery": "2024-11-30", "notes": "Express delivery"},
    ),
    "inquiries": (
        {"name": "Ahmad Wijaya", "email": "ahmad@example.com", "phone": "08123456789",
         "company": "PT. Sinergi", "message": "I need a quote for bulk shipping.",
         "date": "2024-11-27", "status": "new"},
        {"name": "Siti Nurhaliza", "email": "siti@example.com", "phone": "08198765432",
         "company": "CV. Abadi", "message": "Do you ship to remote islands?",
         "date": "2024-11-26", "status": "reviewed"},
    ),
    "services": (
        {"id": "1", "title": "General Cargo Handling", "icon": "Package", "photo": _SERVICE_PHOTO,
         "description": "Penanganan kargo umum dengan sistem yang efisien dan aman untuk berbagai jenis barang."},
        {"id": "2", "title": "Oil & Gas Spare Parts", "icon": "Droplet", "photo": _SERVICE_PHOTO,
         "description": "Spesialisasi pengiriman spare parts untuk industri minyak dan gas dengan penanganan khusus."},
        {"id": "3", "title": "Storage & Distribution", "icon": "Warehouse", "photo": _SERVICE_PHOTO,
         "description": "Fasilitas gudang modern dengan sistem manajemen inventori terintegrasi."},
        {"id": "4", "title": "Telecom Spare Parts", "icon": "Radio", "photo": _SERVICE_PHOTO,
         "description": "Pengiriman komponen telekomunikasi dengan jaminan keamanan dan kecepatan."},
        {"id": "5", "title": "Small Package Delivery", "icon": "ShoppingBag", "photo": _SERVICE_PHOTO,
         "description": "Layanan pengiriman paket kecil door-to-door yang cepat dan terpercaya."},
        {"id": "6", "title": "E-commerce Fulfillment", "icon": "Truck", "photo": _SERVICE_PHOTO,
         "description": "Solusi lengkap untuk kebutuhan fulfillment bisnis e-commerce Anda."},
    ),
    "rates": (
        {"id": "1", "origin": "Jakarta", "destination": "Surabaya", "ratePerKg": 10000,
         "volumetricRate": 5000, "eta": "2-3 days"},
        {"id": "2", "origin": "Jakarta", "destination": "Bandung", "ratePerKg": 8000,
         "volumetricRate": 4000, "eta": "1-2 days"},
        {"id": "3", "origin": "Surabaya", "destination": "Medan", "ratePerKg": 15000,
         "volumetricRate": 7000, "eta": "3-4 days"},
    ),
    "locations": tuple(
        {"zipCode": zip_code, "district": district, "city": city, "province": province}
        for zip_code, district, city, province in (
            ("10110", "Gambir", "Jakarta Pusat", "DKI Jakarta"),
            ("10270", "Kebayoran Baru", "Jakarta Selatan", "DKI Jakarta"),
            ("10310", "Menteng", "Jakarta Pusat", "DKI Jakarta"),
            ("20111", "Medan Kota", "Medan", "Sumatera Utara"),
            ("40111", "Cibeunying", "Bandung", "Jawa Barat"),
            ("50139", "Semarang Tengah", "Semarang", "Jawa Tengah"),
            ("60241", "Gubeng", "Surabaya", "Jawa Timur"),
            ("70111", "Ilir Timur I", "Palembang", "Sumatera Selatan"),
            ("90111", "Ujung Pandang", "Makassar", "Sulawesi Selatan"),
            ("15111", "Karawaci", "Tangerang", "Banten"),
            ("16411", "Sukmajaya", "Depok", "Jawa Barat"),
            ("17121", "Bekasi Selatan", "Bekasi", "Jawa Barat"),
        )
    ),
    "banners": (
        {"id": "1", "ord": 1, "title": "Solusi Logistik Terpercaya",
         "subtitle": "Pengiriman cepat dan aman ke seluruh Indonesia", "ctaLink": "/tracking",
         "imageUrl": f"{_UNSPLASH}/photo-1713859326033-f75e04439c3e", "isActive": 1},
        {"id": "2", "ord": 2, "title": "Pengiriman Internasional",
         "subtitle": "Jangkauan global dengan jaringan pelabuhan terluas", "ctaLink": "/shipping-rate",
         "imageUrl": f"{_UNSPLASH}/photo-1672870152741-e526cfe5419b", "isActive": 1},
        {"id": "3", "ord": 3, "title": "Gudang & Distribusi",
         "subtitle": "Fasilitas penyimpanan modern dengan sistem terintegrasi", "ctaLink": "/contact",
         "imageUrl": f"{_UNSPLASH}/photo-1553413077-190dd305871c", "isActive": 1},
        {"id": "4", "ord": 4, "title": "Kargo Udara Express",
         "subtitle": "Pengiriman kilat untuk kebutuhan mendesak Anda", "ctaLink": "/tracking",
         "imageUrl": f"{_UNSPLASH}/photo-1571086291540-b137111fa1c7", "isActive": 1},
        {"id": "5", "ord": 5, "title": "Kontainer & Kargo Besar",
         "subtitle": "Layanan full container untuk kebutuhan industri", "ctaLink": "/shipping-rate",
         "imageUrl": f"{_UNSPLASH}/photo-1561702469-c4239ced3f47", "isActive": 1},
    ),
    "testimonials": (
        {"id": "1", "name": "Budi Santoso", "company": "PT. Maju Jaya", "photo": _TESTIMONIAL_PHOTO,
         "message": "Layanan yang sangat profesional dan cepat. Pengiriman spare parts kami selalu "
                    "tepat waktu dan dalam kondisi sempurna.",
         "rating": 5, "isActive": 1},
        {"id": "2", "name": "Siti Nurhaliza", "company": "CV. Sentosa", "photo": _TESTIMONIAL_PHOTO,
         "message": "Sudah 3 tahun kami menggunakan jasa mereka untuk e-commerce fulfillment. "
                    "Sistem tracking yang real-time sangat membantu bisnis kami.",
         "rating": 5, "isActive": 1},
    ),
    "blogs": (
        {"id": "1", "title": "Teknologi AI dalam Dunia Logistik Modern",
         "slug": "teknologi-ai-dalam-dunia-logistik-modern",
         "imageUrl": f"{_UNSPLASH}/photo-1761195696590-3490ea770aa1{_BLOG_IMAGE_QUERY}",
         "category": "Teknologi", "author": "Ahmad Wijaya", "date": "15 Des 2024",
         "readTime": "5 menit", "featured": 1, "content": "Konten lengkap artikel AI"},
        {"id": "2", "title": "Tips Mengemas Paket agar Aman Saat Pengiriman",
         "slug": "tips-mengemas-paket-agar-aman",
         "imageUrl": f"{_UNSPLASH}/photo-1755606396356-bdd7cd95df75{_BLOG_IMAGE_QUERY}",
         "category": "Tips & Trik", "author": "Siti Nurhaliza", "date": "12 Des 2024",
         "readTime": "4 menit", "featured": 1, "content": "Konten lengkap tips mengemas"},
        {"id": "3", "title": "Tren E-Commerce dan Dampaknya pada Logistik",
         "slug": "tren-e-commerce-dan-dampaknya",
         "imageUrl": f"{_UNSPLASH}/photo-1627309366653-2dedc084cdf1{_BLOG_IMAGE_QUERY}",
         "category": "Industri", "author": "Budi Santoso", "date": "10 Des 2024",
         "readTime": "6 menit", "featured": 0, "content": "Konten lengkap tren e-commerce"},
    ),
    "users": (
        {"id": "1", "name": "John Doe", "email": "john@logistics.com", "role": "Super Admin",
         "permissions": json.dumps(["All Access"]), "lastActive": "2024-11-27 14:30", "status": "active"},
        {"id": "2", "name": "Jane Smith", "email": "jane@logistics.com", "role": "Admin",
         "permissions": json.dumps(["Shipments", "Rates", "Inquiries"]),
         "lastActive": "2024-11-27 10:15", "status": "active"},
        {"id": "3", "name": "Bob Wilson", "email": "bob@logistics.com", "role": "Operator",
         "permissions": json.dumps(["Shipments", "View Only"]),
         "lastActive": "2024-11-26 16:45", "status": "active"},
    ),
}


def last_active_stamp() -> str:
    """UTC ``YYYY-MM-DD HH:MM``, the format of ``users.lastActive``."""
    return datetime.now(tz=timezone.utc).strftime("%Y-%m-%d %H:%M")


def _insert_rows(conn: sqlite3.Connection, table: str, rows: tuple[dict[str, Any], ...]) -> int:
    physical = table_columns(conn, table)
    for row in rows:
        stmt = build_insert(table, row, physical)
        conn.execute(stmt.sql, stmt.params)
    return len(rows)


def _ensure_admin(conn: sqlite3.Connection, secret_hash: str) -> bool:
    exists = conn.execute(
        "SELECT 1 FROM users WHERE email = ? OR id = ? LIMIT 1", (ADMIN_KEY, ADMIN_KEY),
    ).fetchone()
    if exists:
        return False
    admin = {
        "id": ADMIN_KEY,
        "name": "Administrator",
        "email": ADMIN_KEY,
        "role": "Super Admin",
        "permissions": json.dumps(["All Access"]),
        "lastActive": last_active_stamp(),
        "status": "active",
        "passwordHash": secret_hash,
    }
    _insert_rows(conn, "users", (admin,))
    return True


def load_seeds(conn: sqlite3.Connection, config: AirlogConfig | None = None) -> dict[str, int]:
    """Seed every empty collection and make sure the admin account exists.

    Runs on a raw connection (the caller holds the storage lock).  Each
    collection is seeded inside its own transaction.  Returns the number of
    rows inserted per collection; collections that already had data are
    absent from the mapping.
    """
    cfg = config or get_config()
    inserted: dict[str, int] = {}

    for table, rows in SEED_ROWS.items():
        if not table_columns(conn, table):
            log.warning("Not seeding %s: table does not exist", table)
            continue
        if count_rows(conn, table) > 0:
            continue
        with conn:
            inserted[table] = _insert_rows(conn, table, rows)
        log.info("Seeded %d %s", inserted[table], table)

    if "passwordHash" in table_columns(conn, "users"):
        secret_hash = hash_secret(cfg.admin_password_init)
        with conn:
            updated = conn.execute(
                "UPDATE users SET passwordHash = ? WHERE passwordHash IS NULL", (secret_hash,),
            ).rowcount
            if updated:
                log.info("Set initial password for %d user(s)", updated)
            if _ensure_admin(conn, secret_hash):
                inserted["users"] = inserted.get("users", 0) + 1
                log.info("Created %s account", ADMIN_KEY)
    else:
        log.warning("users.passwordHash is missing; skipping admin bootstrap")

    return inserted
