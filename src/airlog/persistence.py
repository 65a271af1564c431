"""Debounced, atomic persistence of the in-memory store.

The store is flushed as one complete image, never as a log of changes:

1. :meth:`DurabilityWriter.schedule_flush` marks the store dirty and
   (re)arms a timer.  A burst of mutations inside one window therefore
   produces exactly one flush.
2. When the timer fires, :meth:`DurabilityWriter.flush_now` reads the whole
   database out via :meth:`~airlog.storage.Storage.serialize` and hands the
   bytes to :func:`atomic_write_bytes`.
3. :func:`atomic_write_bytes` writes ``<path>.tmp`` beside the target,
   fsyncs it and renames it over the target.  The canonical path is always
   either the previous complete snapshot or the new one.

A failed flush is logged and leaves the store dirty, so the next mutation's
flush retries the write.  Mutations that land between the dirty flag being
cleared and the read-out simply ride along in this snapshot and re-mark the
store dirty for the next one.

Usage::

    writer = DurabilityWriter(storage, cfg.snapshot_path)
    writer.schedule_flush()      # after every successful mutation
    ...
    await writer.close()         # final flush on graceful shutdown
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
from pathlib import Path

import anyio

from airlog.config import get_config
from airlog.errors import DbError
from airlog.storage import Storage

log = logging.getLogger(__name__)


# =============================================================================
# Atomic file operations
# =============================================================================


def temp_path_for(path: Path) -> Path:
    """Sibling path used while a snapshot is being written."""
    return path.with_name(path.name + ".tmp")


def _fsync_dir(directory: Path) -> None:
    # Directories cannot be opened for fsync on every platform.
    try:
        fd = os.open(directory, os.O_RDONLY)
    except OSError:
        return
    try:
        os.fsync(fd)
    except OSError:
        pass
    finally:
        os.close(fd)


def atomic_write_bytes(path: Path, data: bytes, *, fsync: bool = True) -> None:
    """Write *data* to *path* through a temp file and an atomic rename.

    The temp file is removed again if anything fails before the rename;
    the target is untouched in that case.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = temp_path_for(path)
    try:
        with open(tmp, "wb") as fh:
            fh.write(data)
            fh.flush()
            if fsync:
                os.fsync(fh.fileno())

        # Rename is atomic on POSIX and on NTFS for same-volume paths.
        os.replace(tmp, path)

        if fsync:
            _fsync_dir(path.parent)
    except Exception:
        with contextlib.suppress(OSError):
            tmp.unlink(missing_ok=True)
        raise


def load_snapshot(path: Path) -> bytes | None:
    """Return the bytes of the snapshot at *path*, or ``None`` if there is none.

    A stale ``.tmp`` left behind by a crash mid-write is ignored; it is
    overwritten by the next flush.
    """
    if not path.exists():
        log.info("No snapshot at %s; starting with an empty store", path)
        return None
    data = path.read_bytes()
    if temp_path_for(path).exists():
        log.warning("Ignoring orphaned temp snapshot %s", temp_path_for(path))
    log.info("Loaded snapshot %s (%d bytes)", path, len(data))
    return data


# =============================================================================
# Durability writer
# =============================================================================


class DurabilityWriter:
    """Owns the debounce timer and dirty flag for one store and one path.

    Parameters
    ----------
    storage:
        The store to snapshot.
    path:
        Canonical snapshot location.
    delay:
        Debounce window in seconds.  Defaults to
        ``config.persistence.flush_delay``.
    fsync:
        Whether to fsync around the rename.  Defaults to
        ``config.persistence.fsync``.
    """

    def __init__(
        self,
        storage: Storage,
        path: Path,
        *,
        delay: float | None = None,
        fsync: bool | None = None,
    ) -> None:
        cfg = get_config().persistence
        self._storage = storage
        self._path = Path(path)
        self._delay = cfg.flush_delay if delay is None else delay
        self._fsync = cfg.fsync if fsync is None else fsync
        self._dirty = False
        self._timer: asyncio.TimerHandle | None = None
        self._flush_lock = asyncio.Lock()
        self._tasks: set[asyncio.Task[bool]] = set()
        self._flush_count = 0
        self._last_error: str | None = None

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def path(self) -> Path:
        return self._path

    @property
    def dirty(self) -> bool:
        """``True`` while there are mutations not yet in a written snapshot."""
        return self._dirty

    @property
    def pending(self) -> bool:
        """``True`` while a debounce timer is armed."""
        return self._timer is not None

    @property
    def flush_count(self) -> int:
        """Number of snapshots successfully written by this writer."""
        return self._flush_count

    @property
    def last_error(self) -> str | None:
        return self._last_error

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    def schedule_flush(self) -> None:
        """Mark the store dirty and restart the debounce window.

        Must be called from inside the running event loop.
        """
        self._dirty = True
        if self._timer is not None:
            self._timer.cancel()
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(self._delay, self._on_timer)

    def _on_timer(self) -> None:
        self._timer = None
        task = asyncio.get_running_loop().create_task(self.flush_now())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    # ------------------------------------------------------------------
    # Flushing
    # ------------------------------------------------------------------

    async def flush_now(self) -> bool:
        """Write a snapshot immediately if the store is dirty.

        Only one flush runs at a time; a caller arriving while another
        flush is in progress waits for it and then flushes whatever is
        still dirty.  Returns ``False`` if the write failed.
        """
        async with self._flush_lock:
            if not self._dirty:
                return True
            self._dirty = False
            try:
                data = await self._storage.serialize()
                await anyio.to_thread.run_sync(
                    lambda: atomic_write_bytes(self._path, data, fsync=self._fsync),
                )
            except (DbError, OSError) as exc:
                self._dirty = True
                self._last_error = str(exc)
                log.error("Failed to persist snapshot to %s: %s", self._path, exc)
                return False

            self._flush_count += 1
            self._last_error = None
            log.info("Snapshot persisted to %s (%d bytes)", self._path, len(data))
            return True

    async def wait_idle(self) -> None:
        """Wait until no timer-triggered flush is running."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def close(self) -> bool:
        """Cancel the pending timer and flush whatever is still dirty."""
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        await self.wait_idle()
        return await self.flush_now()
