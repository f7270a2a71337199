"""
WritePointerManager - Owns the versioned write-master designation of each group.

Every cluster derives its local write-target configuration from the
group's WritePointer: the master writes locally, mirrored clusters forward
writes to the master through the mesh, and nobody writes while the pointer
is in maintenance.

Guarantees:
    - At most one master per group at any time.
    - Mutations are serialized per group through the lock manager;
      readers never lock because pointer values are immutable.
    - Every mutation produces a new version, is persisted, and is
      published to every member cluster of the group.

Usage:
    >>> manager = WritePointerManager(publisher, repository, InMemoryLockManager())
    >>> manager.set_members("payments", ["blue", "green"])
    >>> await manager.set_master("payments", "blue")
    >>> await manager.enter_maintenance("payments")
    >>> await manager.set_master("payments", "green")
    >>> await manager.exit_maintenance("payments")
"""

from __future__ import annotations

import asyncio
import logging
import math
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import replace
from datetime import datetime

from rotation.enforcer import SafetyInvariantEnforcer, TransitionCheck
from rotation.exceptions import ErrorHandler, RotationTimeoutError, WriteBlockedError
from rotation.interfaces import WriteConfigPublisher
from rotation.locks import LockManager, rotation_lock_key
from rotation.models import RotationState, WritePointer, utc_now
from rotation.observability import (
    ATTR_CLUSTER_ID,
    ATTR_GROUP_ID,
    ATTR_MAINTENANCE,
    ATTR_POINTER_MASTER,
    ATTR_POINTER_VERSION,
    Tracer,
    create_tracer,
)
from rotation.repositories.state import RotationStateRepository

logger = logging.getLogger(__name__)


class WritePointerManager:
    """
    Single writer of each group's WritePointer.

    Args:
        publisher: Delivers pointer versions to clusters and reads back
            what they applied
        repository: Persists the pointer version history
        lock_manager: Serializes mutations per group
        error_handler: Retries transient publisher failures
        enforcer: Checks SINGLE_MASTER and BLIND_MIRROR before mutations
        clock: Returns the current time
        sleep: Coroutine used between polls
        poll_interval: Seconds between polls in bounded waits
        lock_timeout: Seconds to wait for the group's pointer lock
        tracer: Optional tracer
        enable_tracing: Create an OpenTelemetry tracer when none is given
    """

    def __init__(
        self,
        publisher: WriteConfigPublisher,
        repository: RotationStateRepository,
        lock_manager: LockManager,
        *,
        error_handler: ErrorHandler | None = None,
        enforcer: SafetyInvariantEnforcer | None = None,
        clock: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], Awaitable[None]] | None = None,
        poll_interval: float = 0.5,
        lock_timeout: float | None = 30.0,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._publisher = publisher
        self._repository = repository
        self._locks = lock_manager
        self._sleep = sleep or asyncio.sleep
        self._error_handler = error_handler or ErrorHandler(sleep=self._sleep)
        self._enforcer = enforcer or SafetyInvariantEnforcer(clock=clock)
        self._clock = clock
        self._poll_interval = poll_interval
        self._lock_timeout = lock_timeout
        self._tracer = tracer or create_tracer(__name__, enable_tracing)

        self._members: dict[str, tuple[str, ...]] = {}
        self._current: dict[str, WritePointer] = {}

    # Membership

    def set_members(self, group_id: str, clusters: Iterable[str]) -> None:
        """Set the clusters that receive the group's pointer."""
        self._members[group_id] = tuple(dict.fromkeys(clusters))

    def members(self, group_id: str) -> tuple[str, ...]:
        return self._members.get(group_id, ())

    # Reads

    async def get_pointer(self, group_id: str) -> WritePointer:
        """
        Current pointer of the group without taking the lock.

        A group that never had a pointer gets version 0 with no master.
        """
        pointer = self._current.get(group_id)
        if pointer is not None:
            return pointer
        stored = await self._repository.get_pointer(group_id)
        if stored is not None:
            self._current.setdefault(group_id, stored)
            return self._current[group_id]
        return WritePointer(group_id=group_id, updated_at=self._clock())

    async def pointer_history(self, group_id: str) -> list[WritePointer]:
        return await self._repository.list_pointers(group_id)

    # Mutations

    async def set_master(self, group_id: str, cluster_id: str) -> WritePointer:
        """
        Make ``cluster_id`` the write master of the group.

        Setting the current master again is a no-op. Mirror entries that do
        not forward to the new master are dropped.

        Raises:
            InvariantViolation: SINGLE_MASTER if another cluster is master
                and the group is not in maintenance
        """
        async with self._locks.acquire(
            rotation_lock_key(group_id, "write_pointer"), timeout=self._lock_timeout
        ):
            current = await self.get_pointer(group_id)
            if current.master == cluster_id:
                return current
            self._enforcer.enforce(
                TransitionCheck(group_id=group_id, pointer=current, proposed_master=cluster_id)
            )
            mirrors = {src: dst for src, dst in current.mirrors.items() if dst == cluster_id}
            mirrors.pop(cluster_id, None)
            updated = self._next(current, master=cluster_id, mirrors=mirrors)
            logger.info(
                "Write master for %s: %s -> %s (version %d)",
                group_id,
                current.master,
                cluster_id,
                updated.version,
            )
            return await self._commit(updated, publish_last=cluster_id)

    async def demote(self, group_id: str) -> WritePointer:
        """
        Clear the master of the group.

        Raises:
            WriteBlockedError: If the group is not in maintenance
        """
        async with self._locks.acquire(
            rotation_lock_key(group_id, "write_pointer"), timeout=self._lock_timeout
        ):
            current = await self.get_pointer(group_id)
            if not current.maintenance:
                raise WriteBlockedError(group_id, "demote", "demotion requires maintenance")
            if current.master is None:
                return current
            logger.warning("Demoting write master %s of group %s", current.master, group_id)
            return await self._commit(self._next(current, master=None, mirrors={}))

    async def enter_maintenance(self, group_id: str) -> WritePointer:
        """Block writes for the group. Idempotent."""
        return await self._set_maintenance(group_id, True)

    async def exit_maintenance(self, group_id: str) -> WritePointer:
        """Unblock writes for the group. Idempotent."""
        return await self._set_maintenance(group_id, False)

    async def enable_mirror(
        self,
        group_id: str,
        cluster_id: str,
        *,
        state: RotationState | None = None,
    ) -> WritePointer:
        """
        Forward writes arriving at ``cluster_id`` to the master through the mesh.

        Args:
            group_id: The group
            cluster_id: Cluster that forwards its writes
            state: Rotation state carrying the link confirmation

        Raises:
            InvariantViolation: BLIND_MIRROR if the mesh link is not confirmed
            WriteBlockedError: During maintenance, or when there is no master
        """
        async with self._locks.acquire(
            rotation_lock_key(group_id, "write_pointer"), timeout=self._lock_timeout
        ):
            current = await self.get_pointer(group_id)
            if current.maintenance:
                raise WriteBlockedError(group_id, "enable_mirror", "group is in maintenance")
            self._enforcer.enforce(
                TransitionCheck(group_id=group_id, state=state, pointer=current, enabling_mirror=True)
            )
            if current.master is None:
                raise WriteBlockedError(group_id, "enable_mirror", "group has no write master")
            if current.master == cluster_id or current.mirrors.get(cluster_id) == current.master:
                return current
            mirrors = dict(current.mirrors)
            mirrors[cluster_id] = current.master
            logger.info("Mirroring writes of %s to %s for %s", cluster_id, current.master, group_id)
            return await self._commit(self._next(current, mirrors=mirrors))

    async def disable_mirror(self, group_id: str, cluster_id: str) -> WritePointer:
        """
        Raises:
            WriteBlockedError: During maintenance
        """
        async with self._locks.acquire(
            rotation_lock_key(group_id, "write_pointer"), timeout=self._lock_timeout
        ):
            current = await self.get_pointer(group_id)
            if current.maintenance:
                raise WriteBlockedError(group_id, "disable_mirror", "group is in maintenance")
            if cluster_id not in current.mirrors:
                return current
            mirrors = {src: dst for src, dst in current.mirrors.items() if src != cluster_id}
            logger.info("Stopped mirroring writes of %s for %s", cluster_id, group_id)
            return await self._commit(self._next(current, mirrors=mirrors))

    # Observation

    async def confirm_applied(self, group_id: str, clusters: Iterable[str]) -> bool:
        """True when every cluster reports the current pointer version applied."""
        pointer = await self.get_pointer(group_id)
        for cluster_id in clusters:
            applied = await self._error_handler.execute_with_retry(
                lambda c=cluster_id: self._publisher.get_applied_version(c, group_id),
                operation_name="publisher.get_applied_version",
                group_id=group_id,
            )
            if applied < pointer.version:
                return False
        return True

    async def observe_masters(self, group_id: str, clusters: Iterable[str]) -> frozenset[str]:
        """Clusters currently reporting themselves as write master."""
        masters = set()
        for cluster_id in clusters:
            reports = await self._error_handler.execute_with_retry(
                lambda c=cluster_id: self._publisher.reports_master(c, group_id),
                operation_name="publisher.reports_master",
                group_id=group_id,
            )
            if reports:
                masters.add(cluster_id)
        return frozenset(masters)

    async def wait_for_drain(
        self,
        group_id: str,
        clusters: Iterable[str],
        *,
        timeout: float,
    ) -> None:
        """
        Poll in-flight write counts until every cluster reports zero.

        Raises:
            RotationTimeoutError: If writes are still in flight after ``timeout``
        """
        targets = list(clusters)

        async def drained() -> bool:
            for cluster_id in targets:
                count = await self._error_handler.execute_with_retry(
                    lambda c=cluster_id: self._publisher.count_inflight_writes(c, group_id),
                    operation_name="publisher.count_inflight_writes",
                    group_id=group_id,
                )
                if count > 0:
                    logger.debug("%d writes in flight on %s for %s", count, cluster_id, group_id)
                    return False
            return True

        await self._poll_until(drained, group_id, "In-flight writes did not drain", timeout)

    async def wait_for_applied(
        self,
        group_id: str,
        clusters: Iterable[str],
        *,
        timeout: float,
    ) -> None:
        """
        Poll until every cluster applied the current pointer version.

        Raises:
            RotationTimeoutError: If not applied within ``timeout``
        """
        targets = list(clusters)
        await self._poll_until(
            lambda: self.confirm_applied(group_id, targets),
            group_id,
            "Write pointer not applied",
            timeout,
        )

    async def wait_for_demotion(
        self,
        group_id: str,
        cluster_id: str,
        *,
        timeout: float,
    ) -> bool:
        """Poll until ``cluster_id`` stops reporting master; False on timeout."""

        async def demoted() -> bool:
            return cluster_id not in await self.observe_masters(group_id, [cluster_id])

        try:
            await self._poll_until(demoted, group_id, "Demotion not confirmed", timeout)
        except RotationTimeoutError:
            return False
        return True

    async def _poll_until(
        self,
        condition: Callable[[], Awaitable[bool]],
        group_id: str,
        message: str,
        timeout: float,
    ) -> None:
        polls = max(1, math.ceil(timeout / self._poll_interval))
        for attempt in range(polls + 1):
            if await condition():
                return
            if attempt < polls:
                await self._sleep(self._poll_interval)
        raise RotationTimeoutError(
            message,
            elapsed_seconds=polls * self._poll_interval,
            timeout_seconds=timeout,
            group_id=group_id,
        )

    # Internals

    async def _set_maintenance(self, group_id: str, maintenance: bool) -> WritePointer:
        async with self._locks.acquire(
            rotation_lock_key(group_id, "write_pointer"), timeout=self._lock_timeout
        ):
            current = await self.get_pointer(group_id)
            if current.maintenance == maintenance:
                return current
            logger.info(
                "%s maintenance for %s",
                "Entering" if maintenance else "Leaving",
                group_id,
            )
            return await self._commit(self._next(current, maintenance=maintenance))

    def _next(self, current: WritePointer, **changes: object) -> WritePointer:
        return replace(current, version=current.version + 1, updated_at=self._clock(), **changes)

    async def _commit(self, pointer: WritePointer, *, publish_last: str | None = None) -> WritePointer:
        with self._tracer.span(
            "rotation.write_pointer.commit",
            {
                ATTR_GROUP_ID: pointer.group_id,
                ATTR_POINTER_VERSION: pointer.version,
                ATTR_POINTER_MASTER: pointer.master or "",
                ATTR_MAINTENANCE: pointer.maintenance,
            },
        ):
            await self._repository.save_pointer(pointer)
            self._current[pointer.group_id] = pointer
            await self._publish(pointer, publish_last=publish_last)
        return pointer

    async def _publish(self, pointer: WritePointer, *, publish_last: str | None) -> None:
        # The new master learns of its promotion only after everyone else.
        members = sorted(
            self._members.get(pointer.group_id, ()),
            key=lambda cluster: cluster == publish_last,
        )
        for cluster_id in members:
            with self._tracer.span(
                "rotation.write_pointer.publish",
                {ATTR_GROUP_ID: pointer.group_id, ATTR_CLUSTER_ID: cluster_id},
            ):
                await self._error_handler.execute_with_retry(
                    lambda c=cluster_id: self._publisher.publish_pointer(c, pointer),
                    operation_name="publisher.publish_pointer",
                    group_id=pointer.group_id,
                )


__all__ = ["WritePointerManager"]
