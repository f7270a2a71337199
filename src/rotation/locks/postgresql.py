"""
PostgreSQL advisory lock manager for multi-replica orchestrators.

Advisory locks are session-level: each held lock keeps its own database
session open until the lock is released, and PostgreSQL drops the lock if
that session dies, so a crashed replica never keeps a group locked.

Usage:
    >>> lock_manager = PostgreSQLLockManager(session_factory)
    >>> async with lock_manager.acquire("write_pointer:payments", timeout=5.0):
    ...     await flip_master()
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import UTC, datetime

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from rotation.locks.base import LockAcquisitionError, LockInfo
from rotation.observability import (
    ATTR_DB_SYSTEM,
    ATTR_LOCK_KEY,
    ATTR_LOCK_TIMEOUT,
    Tracer,
    create_tracer,
)

logger = logging.getLogger(__name__)


class PostgreSQLLockManager:
    """
    Manages PostgreSQL advisory locks keyed by strings.

    Note:
        Each held lock uses a dedicated session/connection. Size the
        connection pool for the number of groups rotating concurrently.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        holder_id: str | None = None,
        retry_interval: float = 0.1,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        """
        Initialize the lock manager.

        Args:
            session_factory: SQLAlchemy async session factory
            holder_id: Optional identifier for this lock holder (for debugging)
            retry_interval: Seconds between attempts when acquiring with a timeout
            tracer: Optional custom Tracer instance
            enable_tracing: Whether to enable OpenTelemetry tracing
        """
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._session_factory = session_factory
        self._holder_id = holder_id
        self._retry_interval = retry_interval
        self._held: set[str] = set()

    @staticmethod
    def key_to_lock_id(key: str) -> int:
        """
        Convert a string key to a 63-bit advisory lock id.

        PostgreSQL bigint is signed, so the SHA-256 prefix is masked to 63 bits.
        """
        digest = hashlib.sha256(key.encode()).digest()
        return int.from_bytes(digest[:8], byteorder="big") & 0x7FFFFFFFFFFFFFFF

    @asynccontextmanager
    async def acquire(
        self,
        key: str,
        *,
        timeout: float | None = None,
    ) -> AsyncIterator[LockInfo]:
        """
        Acquire an advisory lock as a context manager.

        Args:
            key: Lock key (see ``rotation_lock_key``)
            timeout: Maximum seconds to wait (None = wait forever)

        Raises:
            LockAcquisitionError: If lock cannot be acquired within timeout
        """
        lock_id = self.key_to_lock_id(key)
        with self._tracer.span(
            "rotation.lock.acquire",
            {
                ATTR_DB_SYSTEM: "postgresql",
                ATTR_LOCK_KEY: key,
                ATTR_LOCK_TIMEOUT: timeout if timeout is not None else -1,
            },
        ):
            session = await self._acquire(key, lock_id, timeout)

        self._held.add(key)
        logger.debug("Acquired advisory lock: key=%s, lock_id=%d", key, lock_id)
        try:
            yield LockInfo(
                key=key,
                acquired_at=datetime.now(UTC),
                holder_id=self._holder_id,
                lock_id=lock_id,
            )
        finally:
            await self._release(key, session, lock_id)

    async def _acquire(self, key: str, lock_id: int, timeout: float | None) -> AsyncSession:
        session = self._session_factory()
        try:
            if timeout is None:
                await session.execute(
                    text("SELECT pg_advisory_lock(:lock_id)"),
                    {"lock_id": lock_id},
                )
                return session

            loop = asyncio.get_running_loop()
            deadline = loop.time() + timeout
            while True:
                result = await session.execute(
                    text("SELECT pg_try_advisory_lock(:lock_id)"),
                    {"lock_id": lock_id},
                )
                if result.scalar():
                    return session
                if loop.time() >= deadline:
                    raise LockAcquisitionError(
                        key=key,
                        reason=f"Timeout after {timeout}s",
                        timeout=timeout,
                    )
                await asyncio.sleep(self._retry_interval)

        except LockAcquisitionError:
            await session.close()
            raise
        except Exception as e:
            await session.close()
            raise LockAcquisitionError(key=key, reason=f"Database error: {e}") from e

    async def _release(self, key: str, session: AsyncSession, lock_id: int) -> None:
        try:
            await session.execute(
                text("SELECT pg_advisory_unlock(:lock_id)"),
                {"lock_id": lock_id},
            )
            logger.debug("Released advisory lock: key=%s, lock_id=%d", key, lock_id)
        except Exception as e:
            # Closing the session below releases the lock server-side anyway.
            logger.warning("Error releasing advisory lock: key=%s, error=%s", key, e)
        finally:
            self._held.discard(key)
            await session.close()

    async def is_held(self, key: str) -> bool:
        """True if this manager currently holds ``key``."""
        return key in self._held

    @property
    def held_lock_count(self) -> int:
        return len(self._held)


__all__ = ["PostgreSQLLockManager"]
