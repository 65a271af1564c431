"""airlog -- embedded store for a logistics marketing site.

Quick start::

    from airlog import Backend

    async def main():
        backend = Backend()
        await backend.initialize()

        await backend.create("shipments", {"customer": "PT. Maju Jaya", ...})
        shipments = await backend.list_records("shipments")

        await backend.shutdown()

For lower-level access, import from submodules::

    from airlog.storage import Storage
    from airlog.schema import SchemaEvolver, EVOLUTION
    from airlog.gateway import MutationGateway, build_insert, build_update
    from airlog.persistence import DurabilityWriter
"""

from __future__ import annotations

__version__ = "0.1.0"

# Public API exports
from airlog.backend import Backend
from airlog.errors import AirlogError, AuthError, DbError, InvalidPayload, NotFound, SchemaEvolutionError
from airlog.gateway import MutationResult

__all__ = [
    "__version__",
    "Backend",
    "MutationResult",
    "AirlogError",
    "AuthError",
    "DbError",
    "InvalidPayload",
    "NotFound",
    "SchemaEvolutionError",
]
