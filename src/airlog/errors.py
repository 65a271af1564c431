"""Error taxonomy for the airlog core.

Every failure that can leave the core is one of:

- :class:`InvalidPayload` -- required fields missing or malformed.  Raised
  before any SQL is built, so no partial write ever happens.
- :class:`NotFound` -- a lookup or mutation by identity touched zero rows.
- :class:`DbError` -- statement execution or serialisation failed.  Carries
  the engine's message as ``detail`` for operator diagnosis.
- :class:`SchemaEvolutionError` -- an evolution step failed for a reason
  other than "already applied" while strict mode is on.
- :class:`AuthError` -- a login or session token was refused.

The ``code`` attribute is the stable, machine-readable tag that outer
layers map to their own status codes.
"""

from __future__ import annotations


class AirlogError(Exception):
    """Base class for all core errors."""

    code = "airlog_error"

    def __init__(self, detail: str = "", *, code: str | None = None) -> None:
        super().__init__(detail or self.code)
        self.detail = detail
        if code is not None:
            self.code = code


class InvalidPayload(AirlogError):
    """The caller must fix the payload and resubmit."""

    code = "invalid_payload"


class NotFound(AirlogError):
    code = "not_found"


class DbError(AirlogError):
    """The engine rejected a statement or a snapshot could not be produced."""

    code = "db_error"


class SchemaEvolutionError(AirlogError):
    code = "schema_evolution_failed"


class AuthError(AirlogError):
    """Login or session check refused.

    ``code`` is ``invalid_credentials`` for a wrong email or password,
    ``user_inactive`` for a disabled account and ``unauthorized`` for a
    missing or unknown session token.
    """

    code = "unauthorized"
