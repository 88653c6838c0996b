"""
Keyed lock manager.

Provides "scoped exclusive access to key X" for in-process serialization of
per-aggregate mutations. Keys are strings such as ``session:42`` or
``table:7``; operations on different keys never block each other.

Locks are reentrant for the owning thread so a locked operation may call
another operation that guards the same key (settlement -> end session).

Lock entries are reference counted and removed once no thread holds or waits
on them, so the dictionary does not grow with the number of sessions ever seen.

LOCK ORDERING:
    _meta_lock only protects the dictionary and reference counts. It is never
    held while waiting on a keyed lock. Code holding a keyed lock must not try
    to acquire a second keyed lock for a *different* aggregate.
"""

from __future__ import annotations

import threading
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field

from shared.config.logging import get_logger
from shared.config.settings import Settings, settings as default_settings
from shared.utils.exceptions import LockTimeoutError

logger = get_logger(__name__)


def session_key(session_id: int) -> str:
    """Lock key for a table session aggregate."""
    return f"session:{session_id}"


def table_key(table_id: int) -> str:
    """Lock key for a physical table (check-in)."""
    return f"table:{table_id}"


@dataclass
class _LockEntry:
    lock: threading.RLock = field(default_factory=threading.RLock)
    refs: int = 0


class KeyedLockManager:
    """
    Manages one reentrant lock per key.

    Usage:
        locks = KeyedLockManager()
        with locks.hold(session_key(session.id)):
            ...  # read-modify-write the session aggregate
    """

    def __init__(self, timeout_seconds: float | None = None, config: Settings | None = None):
        if timeout_seconds is None:
            timeout_seconds = (config or default_settings).session_lock_timeout_seconds
        self._timeout_seconds = timeout_seconds
        self._locks: dict[str, _LockEntry] = {}
        self._meta_lock = threading.Lock()
        self._acquisitions = 0
        self._timeouts = 0

    @property
    def lock_count(self) -> int:
        """Number of lock entries currently cached."""
        with self._meta_lock:
            return len(self._locks)

    @property
    def stats(self) -> dict[str, int]:
        """Counters for monitoring."""
        with self._meta_lock:
            return {
                "cached_locks": len(self._locks),
                "acquisitions": self._acquisitions,
                "timeouts": self._timeouts,
            }

    def _checkout(self, key: str) -> _LockEntry:
        with self._meta_lock:
            entry = self._locks.get(key)
            if entry is None:
                entry = _LockEntry()
                self._locks[key] = entry
            entry.refs += 1
            return entry

    def _checkin(self, key: str, entry: _LockEntry) -> None:
        with self._meta_lock:
            entry.refs -= 1
            if entry.refs <= 0 and self._locks.get(key) is entry:
                del self._locks[key]

    @contextmanager
    def hold(self, key: str, timeout: float | None = None) -> Iterator[None]:
        """
        Hold the lock for ``key`` for the duration of the block.

        Raises:
            LockTimeoutError: If the lock is not acquired within the timeout.
        """
        wait = self._timeout_seconds if timeout is None else timeout
        entry = self._checkout(key)
        try:
            if not entry.lock.acquire(timeout=wait):
                with self._meta_lock:
                    self._timeouts += 1
                raise LockTimeoutError(key, wait)
            with self._meta_lock:
                self._acquisitions += 1
            try:
                yield
            finally:
                entry.lock.release()
        finally:
            self._checkin(key, entry)
