"""Ephemeral login sessions.

Sessions live only in process memory and are never written to the snapshot;
a restart logs everybody out.  Tokens come from :mod:`secrets` and are never
derived from anything the caller supplies.
"""

from __future__ import annotations

import hashlib
import logging
import secrets
import time
from dataclasses import dataclass

log = logging.getLogger(__name__)

TOKEN_BYTES = 24


def hash_secret(secret: str) -> str:
    """Hex SHA-256 of *secret*, the format stored in ``users.passwordHash``."""
    return hashlib.sha256(secret.encode("utf-8")).hexdigest()


@dataclass(frozen=True, slots=True)
class Session:
    """Identity bound to a token."""

    user_id: str
    issued_at: float


class SessionStore:
    """In-memory ``token -> Session`` map."""

    def __init__(self) -> None:
        self._sessions: dict[str, Session] = {}

    def issue(self, user_id: str) -> str:
        """Create a fresh session for *user_id* and return its token."""
        token = secrets.token_hex(TOKEN_BYTES)
        self._sessions[token] = Session(user_id=user_id, issued_at=time.time())
        log.debug("Session issued for user %s", user_id)
        return token

    def resolve(self, token: str | None) -> Session | None:
        if not token:
            return None
        return self._sessions.get(token)

    def revoke(self, token: str | None) -> None:
        """Forget *token*.  Unknown or empty tokens are ignored."""
        if token:
            self._sessions.pop(token, None)

    def __len__(self) -> int:
        return len(self._sessions)
