"""
In-process lock manager built on per-key asyncio locks.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import UTC, datetime

from rotation.locks.base import LockAcquisitionError, LockInfo
from rotation.observability import ATTR_LOCK_KEY, ATTR_LOCK_TIMEOUT, Tracer, create_tracer

logger = logging.getLogger(__name__)


class InMemoryLockManager:
    """
    Lock manager for a single orchestrator process.

    One ``asyncio.Lock`` is created lazily per key. Locks are not reentrant:
    a holder must not acquire the same key again.

    Example:
        >>> locks = InMemoryLockManager()
        >>> async with locks.acquire("write_pointer:payments", timeout=5.0):
        ...     await flip_master()
    """

    def __init__(
        self,
        *,
        holder_id: str | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._holder_id = holder_id
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock_for(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    @asynccontextmanager
    async def acquire(
        self,
        key: str,
        *,
        timeout: float | None = None,
    ) -> AsyncIterator[LockInfo]:
        """
        Acquire the lock for ``key``.

        Args:
            key: Lock key (see ``rotation_lock_key``)
            timeout: Maximum seconds to wait (None = wait forever)

        Raises:
            LockAcquisitionError: If the lock is not acquired within timeout
        """
        lock = self._lock_for(key)
        with self._tracer.span(
            "rotation.lock.acquire",
            {
                ATTR_LOCK_KEY: key,
                ATTR_LOCK_TIMEOUT: timeout if timeout is not None else -1,
            },
        ):
            try:
                await asyncio.wait_for(lock.acquire(), timeout=timeout)
            except TimeoutError as e:
                raise LockAcquisitionError(
                    key=key,
                    reason=f"Timeout after {timeout}s",
                    timeout=timeout,
                ) from e

        logger.debug("Acquired lock: key=%s", key)
        try:
            yield LockInfo(key=key, acquired_at=datetime.now(UTC), holder_id=self._holder_id)
        finally:
            lock.release()
            logger.debug("Released lock: key=%s", key)

    async def is_held(self, key: str) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

    @property
    def held_lock_count(self) -> int:
        return sum(1 for lock in self._locks.values() if lock.locked())


__all__ = ["InMemoryLockManager"]
