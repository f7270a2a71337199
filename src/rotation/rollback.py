"""
RollbackCoordinator - Unwinds a rotation and returns the group to IDLE_STABLE.

Two paths exist:

Rollback (IDLE_STABLE through TRAFFIC_CANARY):
    Write authority never left the source, so the rotation can be unwound
    completely: traffic back to the source, mirror and replication
    removed, mesh link deleted, target decommissioned and unregistered.

Emergency rollback (SWITCHOVER_LOCKED, PROMOTED):
    The target may already have accepted writes. Writes are blocked, the
    divergence set is collected for operators, the target is demoted and
    the demotion confirmed, the source is made master again and traffic
    returns to it. The target is kept (idle) so the divergence can be
    reconciled by hand; nothing is merged automatically and no data-loss
    guarantee is made.

Every step is keyed by ``"{rotation_id}:{kind}:{step}"`` and recorded in
the state before the next one starts, so an interrupted unwind continues
where it stopped when the orchestrator restarts.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import Any

from rotation.exceptions import (
    ConflictingMasterError,
    ErrorHandler,
    ErrorSeverity,
    RollbackNotPermittedError,
    RotationNotFoundError,
)
from rotation.interfaces import MeshProvider, ProvisioningProvider, ReplicationProvider
from rotation.journal import RotationJournal
from rotation.locks import LockManager, rotation_lock_key
from rotation.metrics import RotationMetrics
from rotation.models import (
    ClusterRole,
    DivergenceReport,
    EmergencyRollbackResult,
    RollbackResult,
    RotationConfig,
    RotationPhase,
    RotationState,
    TransitionKind,
    utc_now,
)
from rotation.observability import (
    ATTR_GROUP_ID,
    ATTR_PHASE,
    ATTR_ROTATION_ID,
    Tracer,
    create_tracer,
)
from rotation.registry import ClusterRegistry
from rotation.traffic import TrafficWeightController
from rotation.write_pointer import WritePointerManager

logger = logging.getLogger(__name__)


class RollbackCoordinator:
    """
    Executes rollbacks and emergency rollbacks.

    The public ``rollback``/``emergency_rollback`` methods take the group's
    rotation lock. ``unwind``/``emergency_unwind`` expect the caller to hold
    it already (the state machine uses them from inside a tick).

    Args:
        journal: Records transitions and persists state
        registry: Cluster registry
        pointers: Write pointer manager
        traffic: Traffic weight controller
        provisioning: Provisioning collaborator (target decommission)
        mesh: Mesh collaborator (link deletion)
        replication: Replication collaborator (detachment, divergence)
        lock_manager: Lock manager holding the group's rotation lock
        config: Orchestrator configuration
        error_handler: Retries transient collaborator failures
        metrics: Records rollbacks
        cancel_run: Stops the group's polling task before a manual unwind
    """

    def __init__(
        self,
        journal: RotationJournal,
        registry: ClusterRegistry,
        pointers: WritePointerManager,
        traffic: TrafficWeightController,
        provisioning: ProvisioningProvider,
        mesh: MeshProvider,
        replication: ReplicationProvider,
        lock_manager: LockManager,
        *,
        config: RotationConfig | None = None,
        error_handler: ErrorHandler | None = None,
        metrics: RotationMetrics | None = None,
        cancel_run: Callable[[str], Awaitable[None]] | None = None,
        clock: Callable[[], datetime] = utc_now,
        lock_timeout: float | None = 30.0,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._journal = journal
        self._registry = registry
        self._pointers = pointers
        self._traffic = traffic
        self._provisioning = provisioning
        self._mesh = mesh
        self._replication = replication
        self._locks = lock_manager
        self._config = config or RotationConfig()
        self._error_handler = error_handler or ErrorHandler()
        self._metrics = metrics
        self._cancel_run = cancel_run
        self._clock = clock
        self._lock_timeout = lock_timeout
        self._tracer = tracer or create_tracer(__name__, enable_tracing)

    # Public API

    async def rollback(
        self,
        group_id: str,
        *,
        reason: str,
        actor: str | None = None,
    ) -> RollbackResult:
        """
        Unwind a rotation that has not reached switchover.

        Raises:
            RotationNotFoundError: If the group has no active rotation
            RollbackNotPermittedError: If the group is at or past SWITCHOVER_LOCKED
        """
        async with self._locks.acquire(rotation_lock_key(group_id), timeout=self._lock_timeout):
            state = await self._journal.load(group_id)
            self._check_permitted(state, TransitionKind.ROLLBACK)
            if self._cancel_run is not None:
                await self._cancel_run(group_id)
            return await self.unwind(state, reason=reason, actor=actor)

    async def emergency_rollback(
        self,
        group_id: str,
        *,
        reason: str,
        actor: str | None = None,
    ) -> EmergencyRollbackResult:
        """
        Return write authority and traffic to the original source after switchover.

        Raises:
            RotationNotFoundError: If the group has no active rotation
            RollbackNotPermittedError: Unless the group is in SWITCHOVER_LOCKED or PROMOTED
            ConflictingMasterError: If the target's demotion is not confirmed;
                the group is then in FAULT
        """
        async with self._locks.acquire(rotation_lock_key(group_id), timeout=self._lock_timeout):
            state = await self._journal.load(group_id)
            self._check_permitted(state, TransitionKind.EMERGENCY_ROLLBACK)
            if self._cancel_run is not None:
                await self._cancel_run(group_id)
            return await self.emergency_unwind(state, reason=reason, actor=actor)

    # Unwinds (caller holds the rotation lock)

    async def unwind(
        self,
        state: RotationState,
        *,
        reason: str,
        actor: str | None = None,
    ) -> RollbackResult:
        self._check_permitted(state, TransitionKind.ROLLBACK)
        request = state.request
        assert request is not None

        group_id = state.group_id
        source = request.source_cluster_id
        target = request.target_cluster_id
        from_phase = state.phase

        with self._tracer.span(
            "rotation.rollback",
            {
                ATTR_GROUP_ID: group_id,
                ATTR_ROTATION_ID: request.rotation_id,
                ATTR_PHASE: from_phase.value,
            },
        ):
            if state.unwinding is None:
                logger.warning(
                    "Rolling back rotation %d of group %s from %s: %s",
                    request.rotation_id,
                    group_id,
                    from_phase.value,
                    reason,
                )
                state.unwinding = TransitionKind.ROLLBACK
                await self._journal.save(state)

            steps: list[str] = []

            async def restore_traffic(key: str) -> None:
                await self._traffic.set_split(group_id, source, 100, target, 0, idempotency_key=key)

            async def disable_mirror(key: str) -> None:
                await self._pointers.disable_mirror(group_id, target)

            async def detach_replication(key: str) -> None:
                await self._error_handler.execute_with_retry(
                    lambda: self._replication.detach_replication(target, idempotency_key=key),
                    operation_name="replication.detach_replication",
                    group_id=group_id,
                )

            async def delete_link(key: str) -> None:
                link_id = state.link_id
                if link_id is None:
                    return
                await self._error_handler.execute_with_retry(
                    lambda: self._mesh.delete_link(link_id, idempotency_key=key),
                    operation_name="mesh.delete_link",
                    group_id=group_id,
                )

            async def decommission_target(key: str) -> None:
                if not self._config.decommission_on_rollback:
                    return
                await self._error_handler.execute_with_retry(
                    lambda: self._provisioning.decommission_cluster(target, idempotency_key=key),
                    operation_name="provisioning.decommission_cluster",
                    group_id=group_id,
                )

            async def unregister_target(key: str) -> None:
                await self._registry.remove_cluster(target)
                self._pointers.set_members(group_id, [source])

            for name, step in (
                ("restore_traffic", restore_traffic),
                ("disable_mirror", disable_mirror),
                ("detach_replication", detach_replication),
                ("delete_link", delete_link),
                ("decommission_target", decommission_target),
                ("unregister_target", unregister_target),
            ):
                await self._step(state, TransitionKind.ROLLBACK, name, step)
                steps.append(name)

            state.clear_rotation()
            state.halted = False
            state.halt_reason = None
            await self._journal.transition(
                state,
                RotationPhase.IDLE_STABLE,
                TransitionKind.ROLLBACK,
                reason=reason,
                actor=actor,
            )
            if self._metrics is not None:
                self._metrics.record_rollback(group_id, TransitionKind.ROLLBACK.value, from_phase.value)

        logger.info("Rollback of rotation %d for group %s complete", request.rotation_id, group_id)
        return RollbackResult(
            group_id=group_id,
            rotation_id=request.rotation_id,
            from_phase=from_phase,
            source_cluster_id=source,
            target_cluster_id=target,
            steps=tuple(steps),
            completed_at=self._clock(),
        )

    async def emergency_unwind(
        self,
        state: RotationState,
        *,
        reason: str,
        actor: str | None = None,
    ) -> EmergencyRollbackResult:
        self._check_permitted(state, TransitionKind.EMERGENCY_ROLLBACK)
        request = state.request
        assert request is not None

        group_id = state.group_id
        source = request.source_cluster_id
        target = request.target_cluster_id
        from_phase = state.phase

        with self._tracer.span(
            "rotation.emergency_rollback",
            {
                ATTR_GROUP_ID: group_id,
                ATTR_ROTATION_ID: request.rotation_id,
                ATTR_PHASE: from_phase.value,
            },
        ):
            if state.unwinding is None:
                logger.critical(
                    "Emergency rollback of rotation %d for group %s from %s: %s",
                    request.rotation_id,
                    group_id,
                    from_phase.value,
                    reason,
                )
                state.unwinding = TransitionKind.EMERGENCY_ROLLBACK
                await self._journal.save(state)

            steps: list[str] = []

            async def block_writes(key: str) -> None:
                await self._pointers.enter_maintenance(group_id)

            async def demote_target(key: str) -> None:
                pointer = await self._pointers.get_pointer(group_id)
                if pointer.master is None or pointer.master == source:
                    return
                demoted = pointer.master
                await self._pointers.demote(group_id)
                confirmed = await self._pointers.wait_for_demotion(
                    group_id, demoted, timeout=self._config.confirm_timeout_seconds
                )
                if not confirmed:
                    error = ConflictingMasterError(
                        group_id, demoted, phase=state.phase, rotation_id=request.rotation_id
                    )
                    await self._journal.fault(state, error)
                    raise error

            async def restore_master(key: str) -> None:
                await self._pointers.set_master(group_id, source)

            async def resume_writes(key: str) -> None:
                await self._pointers.exit_maintenance(group_id)

            async def restore_traffic(key: str) -> None:
                await self._traffic.set_split(group_id, source, 100, target, 0, idempotency_key=key)

            async def restore_roles(key: str) -> None:
                await self._registry.promote(group_id, source)
                await self._registry.set_role(target, ClusterRole.IDLE)

            await self._step(state, TransitionKind.EMERGENCY_ROLLBACK, "block_writes", block_writes)
            steps.append("block_writes")

            # Writes are blocked, so the set cannot grow while it is read.
            divergence = await self._collect_divergence(group_id, source, target, state.switchover_at)

            for name, step in (
                ("demote_target", demote_target),
                ("restore_master", restore_master),
                ("resume_writes", resume_writes),
                ("restore_traffic", restore_traffic),
                ("restore_roles", restore_roles),
            ):
                await self._step(state, TransitionKind.EMERGENCY_ROLLBACK, name, step)
                steps.append(name)

            state.clear_rotation()
            state.halted = False
            state.halt_reason = None
            await self._journal.transition(
                state,
                RotationPhase.IDLE_STABLE,
                TransitionKind.EMERGENCY_ROLLBACK,
                reason=reason,
                actor=actor,
            )
            if self._metrics is not None:
                self._metrics.record_rollback(
                    group_id, TransitionKind.EMERGENCY_ROLLBACK.value, from_phase.value
                )

        details: dict[str, Any] = {
            "rotation_id": request.rotation_id,
            "from_phase": from_phase.value,
            "divergence": divergence.to_dict(),
        }
        await self._journal.alert(
            ErrorSeverity.WARNING if divergence.is_empty else ErrorSeverity.CRITICAL,
            f"Emergency rollback to {source} complete; "
            f"{len(divergence.writes)} unreplicated writes on {target} need reconciliation",
            group_id=group_id,
            details=details,
        )
        return EmergencyRollbackResult(
            group_id=group_id,
            rotation_id=request.rotation_id,
            from_phase=from_phase,
            source_cluster_id=source,
            target_cluster_id=target,
            divergence=divergence,
            steps=tuple(steps),
            completed_at=self._clock(),
        )

    # Internals

    def _check_permitted(self, state: RotationState, kind: TransitionKind) -> None:
        """Raise unless ``state`` may be unwound by ``kind``; has no side effects."""
        request = state.request
        if request is None:
            raise RotationNotFoundError(state.group_id)
        if state.unwinding == kind:
            return
        if kind == TransitionKind.EMERGENCY_ROLLBACK:
            permitted = state.phase.requires_emergency_rollback
        else:
            permitted = state.phase.allows_rollback
        if not permitted:
            raise RollbackNotPermittedError(state.group_id, state.phase, kind.value, request.rotation_id)

    async def _step(
        self,
        state: RotationState,
        kind: TransitionKind,
        name: str,
        action: Callable[[str], Awaitable[None]],
    ) -> None:
        key = f"{state.rotation_id}:{kind.value}:{name}"
        if state.has_completed(key):
            return
        await action(key)
        state.completed_actions.append(key)
        await self._journal.save(state)
        logger.debug("Group %s %s step %s done", state.group_id, kind.value, name)

    async def _collect_divergence(
        self,
        group_id: str,
        source: str,
        target: str,
        since: datetime | None,
    ) -> DivergenceReport:
        writes: list[str] = []
        if since is not None:
            writes = await self._error_handler.execute_with_retry(
                lambda: self._replication.list_unreplicated_writes(target, source, since=since),
                operation_name="replication.list_unreplicated_writes",
                group_id=group_id,
            )
        if writes:
            logger.critical(
                "Group %s: %d writes accepted by %s since %s were not replicated to %s",
                group_id,
                len(writes),
                target,
                since.isoformat() if since else "-",
                source,
            )
        return DivergenceReport(
            from_cluster_id=target,
            to_cluster_id=source,
            since=since,
            writes=tuple(writes),
        )


__all__ = ["RollbackCoordinator"]
