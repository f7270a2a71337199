"""
Lock managers for serializing group-scoped mutations.

Example:
    >>> from rotation.locks import InMemoryLockManager, rotation_lock_key
    >>>
    >>> locks = InMemoryLockManager()
    >>> async with locks.acquire(rotation_lock_key("payments", "write_pointer")):
    ...     await flip_master()
"""

from rotation.locks.base import (
    LockAcquisitionError,
    LockInfo,
    LockManager,
    rotation_lock_key,
)
from rotation.locks.memory import InMemoryLockManager
from rotation.locks.postgresql import PostgreSQLLockManager

__all__ = [
    "LockAcquisitionError",
    "LockInfo",
    "LockManager",
    "InMemoryLockManager",
    "PostgreSQLLockManager",
    "rotation_lock_key",
]
