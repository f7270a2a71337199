"""
Lock manager protocol and shared lock types.

Mutations of a group's write pointer, traffic split and rotation state are
serialized by key through a lock manager. The in-memory manager is enough
for a single orchestrator process; the PostgreSQL manager uses advisory
locks so several orchestrator replicas can share one database.
"""

from __future__ import annotations

from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass
from datetime import datetime
from typing import Protocol, runtime_checkable


@dataclass(frozen=True)
class LockInfo:
    """
    Information about an acquired lock.

    Attributes:
        key: The string key used to identify the lock
        acquired_at: When the lock was acquired
        holder_id: Optional identifier for the lock holder (for debugging)
        lock_id: Backend-specific numeric id, if the backend uses one
    """

    key: str
    acquired_at: datetime
    holder_id: str | None = None
    lock_id: int | None = None


class LockAcquisitionError(Exception):
    """
    Raised when a lock cannot be acquired.

    Attributes:
        key: The lock key that could not be acquired
        reason: Description of why acquisition failed
        timeout: The timeout value if timeout was the cause
    """

    def __init__(self, key: str, reason: str, timeout: float | None = None) -> None:
        self.key = key
        self.reason = reason
        self.timeout = timeout
        super().__init__(f"Failed to acquire lock '{key}': {reason}")


@runtime_checkable
class LockManager(Protocol):
    """Serializes critical sections by string key."""

    def acquire(
        self,
        key: str,
        *,
        timeout: float | None = None,
    ) -> AbstractAsyncContextManager[LockInfo]:
        """
        Acquire the lock for ``key`` as an async context manager.

        Raises:
            LockAcquisitionError: If the lock cannot be acquired within timeout
        """
        ...

    async def is_held(self, key: str) -> bool: ...


def rotation_lock_key(group_id: str, operation: str = "rotation") -> str:
    """
    Create a lock key for a group-scoped operation.

    Example:
        >>> rotation_lock_key("payments", "write_pointer")
        'write_pointer:payments'
    """
    return f"{operation}:{group_id}"


__all__ = [
    "LockInfo",
    "LockAcquisitionError",
    "LockManager",
    "rotation_lock_key",
]
