"""Central configuration for the airlog backend.

All tunables live here with sensible defaults.  Values can be overridden
through environment variables prefixed with ``AIRLOG_`` (nested keys use
double underscores, e.g. ``AIRLOG_PERSISTENCE__FLUSH_DELAY=0.25``).

Usage::

    from airlog.config import get_config

    cfg = get_config()
    print(cfg.snapshot_path)
    print(cfg.persistence.flush_delay)
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field, fields, is_dataclass, replace
from functools import lru_cache
from pathlib import Path
from typing import Any, TypeVar

_S = TypeVar("_S")

# ---------------------------------------------------------------------------
# Nested configuration sections
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class PersistenceConfig:
    """Parameters for the debounced snapshot writer."""

    flush_delay: float = 1.0
    """Debounce window in seconds.  Every mutation restarts the window; the
    snapshot is written once the window elapses without a new mutation."""

    fsync: bool = True
    """Fsync the temporary snapshot and its directory around the rename."""


@dataclass(frozen=True, slots=True)
class ShipmentConfig:
    """Defaults applied to shipments that omit optional fields."""

    tracking_prefix: str = "AIR"
    default_status: str = "Created"
    default_service: str = "Reguler"


# ---------------------------------------------------------------------------
# Top-level configuration
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class AirlogConfig:
    """Root configuration object for the airlog backend.

    ``data_dir`` is stored as a resolved :class:`~pathlib.Path` with ``~``
    expanded.
    """

    data_dir: Path = field(default_factory=lambda: Path("~/.airlog"))
    snapshot_name: str = "airlog.sqlite"
    admin_password_init: str = "admin123"
    log_level: str = "INFO"
    strict_schema: bool = False  # abort startup on unexpected evolution errors

    persistence: PersistenceConfig = field(default_factory=PersistenceConfig)
    shipments: ShipmentConfig = field(default_factory=ShipmentConfig)

    def __post_init__(self) -> None:
        # Frozen dataclass: expand ~ through object.__setattr__.
        object.__setattr__(self, "data_dir", self.data_dir.expanduser())

    @property
    def snapshot_path(self) -> Path:
        """Canonical location of the on-disk snapshot."""
        return self.data_dir / self.snapshot_name


# ---------------------------------------------------------------------------
# Environment-variable overrides
# ---------------------------------------------------------------------------

_ENV_PREFIX = "AIRLOG_"
_NESTED_SEP = "__"
_TRUTHY = frozenset({"1", "true", "yes", "on"})


def _parse(raw: str, default: Any) -> Any:
    """Parse *raw* into the type of the field's *default* value."""
    if isinstance(default, bool):
        return raw.strip().lower() in _TRUTHY
    if isinstance(default, Path):
        return Path(raw)
    return type(default)(raw)


def _with_env(section: _S, prefix: str) -> _S:
    """Return *section* with every ``<prefix><FIELD>`` variable applied.

    Nested sections are visited with ``<prefix><FIELD>__`` so that
    ``AIRLOG_PERSISTENCE__FSYNC`` reaches ``persistence.fsync``.
    """
    overrides: dict[str, Any] = {}
    for f in fields(section):
        current = getattr(section, f.name)
        key = f"{prefix}{f.name.upper()}"
        if is_dataclass(current):
            nested = _with_env(current, key + _NESTED_SEP)
            if nested != current:
                overrides[f.name] = nested
        elif key in os.environ:
            overrides[f.name] = _parse(os.environ[key], current)
    return replace(section, **overrides) if overrides else section


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


@lru_cache(maxsize=1)
def _load() -> AirlogConfig:
    return _with_env(AirlogConfig(), _ENV_PREFIX)


def get_config(*, reload: bool = False) -> AirlogConfig:
    """Return the process-wide :class:`AirlogConfig`.

    Built once from the defaults plus any ``AIRLOG_*`` environment
    variables; pass ``reload=True`` to re-read the environment.
    """
    if reload:
        _load.cache_clear()
    return _load()
