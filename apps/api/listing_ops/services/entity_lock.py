"""Entity-scoped try-locks.

A lock is keyed by ``(entity_type, entity_id)`` folded into a signed 64-bit
integer so the same key can be used with ``pg_try_advisory_lock``. Locks are
non-blocking and non-reentrant: a second acquisition of a held key fails
even from the holder's own thread.
"""
from __future__ import annotations

import hashlib
import logging
from contextlib import contextmanager
from threading import Lock
from typing import Any, Callable, Iterator, Protocol, TypeVar

from sqlalchemy import text
from sqlalchemy.exc import InterfaceError, OperationalError

from listing_ops.core.config import settings
from listing_ops.core.database import engine
from listing_ops.core.exceptions import EntityLockBusyError, TransientInfrastructureError

_LOGGER = logging.getLogger(__name__)

T = TypeVar("T")


class Locker(Protocol):
    def try_acquire(self, key: int) -> bool: ...

    def release(self, key: int) -> None: ...


def entity_lock_key(entity_type: str, entity_id: int) -> int:
    raw = f"{str(entity_type).upper()}:{int(entity_id)}".encode("utf-8")
    digest = hashlib.blake2b(raw, digest_size=8).digest()
    return int.from_bytes(digest, "big", signed=True)


class InProcessLocker:
    """Mutex map for single-node deployments and SQLite."""

    def __init__(self) -> None:
        self._guard = Lock()
        self._locks: dict[int, Lock] = {}

    def try_acquire(self, key: int) -> bool:
        with self._guard:
            lock = self._locks.setdefault(int(key), Lock())
        return lock.acquire(blocking=False)

    def release(self, key: int) -> None:
        with self._guard:
            lock = self._locks.get(int(key))
        if lock is None or not lock.locked():
            _LOGGER.warning("entity_lock_release_unheld key=%s backend=memory", key)
            return
        lock.release()

    def is_held(self, key: int) -> bool:
        with self._guard:
            lock = self._locks.get(int(key))
        return bool(lock is not None and lock.locked())


class PostgresAdvisoryLocker:
    """Session-level advisory locks, one pinned connection per held key.

    The connection is kept out of the pool while the lock is held, so the
    lock ends with the connection if the process dies.
    """

    def __init__(self, bind: Any) -> None:
        self._bind = bind
        self._guard = Lock()
        self._held: dict[int, Any] = {}

    def try_acquire(self, key: int) -> bool:
        lock_key = int(key)
        with self._guard:
            if lock_key in self._held:
                return False
        connection = self._bind.connect()
        try:
            acquired = bool(
                connection.execute(
                    text("SELECT pg_try_advisory_lock(:lock_key)"),
                    {"lock_key": lock_key},
                ).scalar()
            )
            connection.commit()
        except Exception:
            connection.close()
            raise
        if not acquired:
            connection.close()
            return False
        with self._guard:
            self._held[lock_key] = connection
        return True

    def release(self, key: int) -> None:
        lock_key = int(key)
        with self._guard:
            connection = self._held.pop(lock_key, None)
        if connection is None:
            _LOGGER.warning("entity_lock_release_unheld key=%s backend=postgres", lock_key)
            return
        try:
            connection.execute(text("SELECT pg_advisory_unlock(:lock_key)"), {"lock_key": lock_key})
            connection.commit()
            connection.close()
        except (OperationalError, InterfaceError) as exc:
            _LOGGER.warning("entity_lock_unlock_failed key=%s error_class=%s", lock_key, exc.__class__.__name__)
            connection.invalidate()


_LOCKER_GUARD = Lock()
_LOCKER: Locker | None = None


def _build_locker() -> Locker:
    backend = str(settings.entity_lock_backend or "auto").lower()
    dialect = str(getattr(engine.dialect, "name", "")).lower()
    if backend == "postgres" or (backend == "auto" and dialect.startswith("postgres")):
        return PostgresAdvisoryLocker(engine)
    return InProcessLocker()


def get_locker() -> Locker:
    global _LOCKER
    if _LOCKER is not None:
        return _LOCKER
    with _LOCKER_GUARD:
        if _LOCKER is None:
            _LOCKER = _build_locker()
        return _LOCKER


def set_locker(locker: Locker | None) -> None:
    global _LOCKER
    with _LOCKER_GUARD:
        _LOCKER = locker


@contextmanager
def entity_lock(entity_type: str, entity_id: int) -> Iterator[bool]:
    if not settings.entity_lock_enabled:
        yield True
        return

    locker = get_locker()
    key = entity_lock_key(entity_type, entity_id)
    try:
        acquired = locker.try_acquire(key)
    except (OperationalError, InterfaceError) as exc:
        raise TransientInfrastructureError(f"lock service unavailable for {entity_type}:{entity_id}") from exc

    if not acquired:
        _LOGGER.info("entity_lock_busy entity_type=%s entity_id=%s key=%s", entity_type, entity_id, key)
    try:
        yield acquired
    finally:
        if acquired:
            locker.release(key)


def with_entity_lock(entity_type: str, entity_id: int, fn: Callable[[], T]) -> T:
    with entity_lock(entity_type, entity_id) as acquired:
        if not acquired:
            raise EntityLockBusyError(entity_type, entity_id)
        return fn()
