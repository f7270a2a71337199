"""
SwitchoverCoordinator - Moves write authority from the source to the target.

The switchover is the only window in which writes are blocked. It runs as
the entry action of SWITCHOVER_LOCKED.

Switchover Sequence:
    1. Acquire the group's switchover lock
    2. Enter maintenance (writes blocked on every cluster)
    3. Re-check the lag gate now that no new writes arrive
    4. Wait for in-flight writes to drain
    5. Detach the target from replication
    6. Flip the write master to the target
    7. Leave maintenance

Failure Handling:
    - Before the flip, the pointer still names the source; maintenance is
      lifted so writes resume on the source and the result reports
      ``rolled_back=True``.
    - After the flip, nothing is unwound. Maintenance is lifted on the new
      master and the failure is surfaced for an operator.
    - A lag gate veto under maintenance leaves the group unchanged and is
      reported as ``retryable``.

Every step is idempotent, so re-running the switchover after a crash
completes whatever the previous attempt left undone.

Usage:
    >>> coordinator = SwitchoverCoordinator(pointers, gateway, replication, locks)
    >>> result = await coordinator.execute(state, config)
    >>> if result.success:
    ...     print(f"Writes blocked for {result.duration_ms:.0f}ms")
"""

from __future__ import annotations

import logging
import time

from rotation.enforcer import SafetyInvariantEnforcer, TransitionCheck
from rotation.exceptions import SWITCHOVER_RETRY_CONFIG, ErrorHandler, RotationError
from rotation.gateway import HealthGateway
from rotation.interfaces import ReplicationProvider
from rotation.locks import LockAcquisitionError, LockManager, rotation_lock_key
from rotation.metrics import RotationMetrics
from rotation.models import RotationConfig, RotationPhase, RotationState, SwitchoverResult
from rotation.observability import (
    ATTR_GROUP_ID,
    ATTR_ROTATION_ID,
    ATTR_SOURCE_CLUSTER,
    ATTR_TARGET_CLUSTER,
    Tracer,
    create_tracer,
)
from rotation.write_pointer import WritePointerManager

logger = logging.getLogger(__name__)

ATTR_SWITCHOVER_ROLLED_BACK = "rotation.switchover.rolled_back"


class SwitchoverCoordinator:
    """
    Executes the write-authority switchover of a rotation.

    Args:
        pointers: Write pointer manager of the orchestrator
        gateway: Health gateway used for the final lag check
        replication: Replication collaborator (for detachment)
        lock_manager: Lock manager for the switchover lock
        enforcer: Safety enforcer for the final lag check
        error_handler: Retries transient collaborator failures
        metrics: Records switchover durations
        lock_acquisition_timeout: Seconds to wait for the switchover lock
        tracer: Optional tracer
        enable_tracing: Create an OpenTelemetry tracer when none is given
    """

    def __init__(
        self,
        pointers: WritePointerManager,
        gateway: HealthGateway,
        replication: ReplicationProvider,
        lock_manager: LockManager,
        *,
        enforcer: SafetyInvariantEnforcer | None = None,
        error_handler: ErrorHandler | None = None,
        metrics: RotationMetrics | None = None,
        lock_acquisition_timeout: float = 5.0,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._pointers = pointers
        self._gateway = gateway
        self._replication = replication
        self._lock_manager = lock_manager
        self._enforcer = enforcer or SafetyInvariantEnforcer()
        self._error_handler = error_handler or ErrorHandler()
        self._metrics = metrics
        self._lock_acquisition_timeout = lock_acquisition_timeout

    async def execute(self, state: RotationState, config: RotationConfig) -> SwitchoverResult:
        """
        Run the switchover for the rotation held by ``state``.

        Returns:
            SwitchoverResult describing the outcome; never raises for
            failures of the switchover itself.
        """
        request = state.request
        if request is None:
            raise ValueError(f"group {state.group_id} has no active rotation")

        with self._tracer.span(
            "rotation.switchover.execute",
            {
                ATTR_GROUP_ID: state.group_id,
                ATTR_ROTATION_ID: request.rotation_id,
                ATTR_SOURCE_CLUSTER: request.source_cluster_id,
                ATTR_TARGET_CLUSTER: request.target_cluster_id,
            },
        ):
            logger.info(
                "Starting switchover for group %s: %s -> %s (rotation %d)",
                state.group_id,
                request.source_cluster_id,
                request.target_cluster_id,
                request.rotation_id,
            )
            lock_key = rotation_lock_key(state.group_id, "switchover")
            try:
                async with self._lock_manager.acquire(
                    lock_key,
                    timeout=self._lock_acquisition_timeout,
                ):
                    result = await self._execute_locked(state, config)
            except LockAcquisitionError as e:
                logger.warning(
                    "Failed to acquire switchover lock for group %s: %s",
                    state.group_id,
                    e,
                )
                return SwitchoverResult(
                    success=False,
                    duration_ms=0.0,
                    error_message=f"Failed to acquire switchover lock: {e}",
                    retryable=True,
                )

        if self._metrics is not None:
            self._metrics.record_switchover_duration(
                state.group_id, result.duration_ms, success=result.success
            )
        return result

    async def _execute_locked(self, state: RotationState, config: RotationConfig) -> SwitchoverResult:
        request = state.request
        assert request is not None
        group_id = state.group_id
        source = request.source_cluster_id
        target = request.target_cluster_id
        clusters = [source, target]

        start_time = time.perf_counter()
        flipped = False

        try:
            await self._pointers.enter_maintenance(group_id)
            logger.debug("Writes blocked for group %s", group_id)

            pointer = await self._pointers.get_pointer(group_id)
            flipped = pointer.master == target

            if not flipped:
                replication = await self._gateway.replication_status(
                    target, source, link_id=state.link_id
                )
                veto = self._enforcer.evaluate(
                    TransitionCheck(
                        group_id=group_id,
                        state=state,
                        proposed_phase=RotationPhase.SWITCHOVER_LOCKED,
                        replication=replication,
                    )
                )
                if veto is not None:
                    await self._pointers.exit_maintenance(group_id)
                    return SwitchoverResult(
                        success=False,
                        duration_ms=(time.perf_counter() - start_time) * 1000,
                        pointer_version=pointer.version,
                        error_message=f"{veto.rule.value}: {veto.message}",
                        rolled_back=True,
                        retryable=True,
                    )

                await self._pointers.wait_for_drain(
                    group_id, clusters, timeout=config.drain_timeout_seconds
                )

                detach_key = f"{request.rotation_id}:{RotationPhase.SWITCHOVER_LOCKED.value}:detach_replication"
                await self._error_handler.execute_with_retry(
                    lambda: self._replication.detach_replication(target, idempotency_key=detach_key),
                    operation_name="replication.detach_replication",
                    group_id=group_id,
                    retry_config=SWITCHOVER_RETRY_CONFIG,
                )

                pointer = await self._pointers.set_master(group_id, target)
                flipped = True

            pointer = await self._pointers.exit_maintenance(group_id)
            elapsed_ms = (time.perf_counter() - start_time) * 1000
            logger.info(
                "Switchover completed for group %s in %.2fms (pointer version %d)",
                group_id,
                elapsed_ms,
                pointer.version,
            )
            return SwitchoverResult(
                success=True,
                duration_ms=elapsed_ms,
                pointer_version=pointer.version,
            )

        except RotationError as e:
            logger.error("Switchover error for group %s: %s", group_id, e)
            rolled_back = await self._restore_writes(group_id, flipped)
            return SwitchoverResult(
                success=False,
                duration_ms=(time.perf_counter() - start_time) * 1000,
                error_message=str(e),
                rolled_back=rolled_back,
            )

        except Exception as e:
            logger.exception("Unexpected error during switchover for group %s", group_id)
            rolled_back = await self._restore_writes(group_id, flipped)
            return SwitchoverResult(
                success=False,
                duration_ms=(time.perf_counter() - start_time) * 1000,
                error_message=f"Unexpected error: {e}",
                rolled_back=rolled_back,
            )

    async def _restore_writes(self, group_id: str, flipped: bool) -> bool:
        """
        Lift maintenance after a failed switchover.

        Returns:
            True if writes resumed on the unchanged source master.
        """
        with self._tracer.span(
            "rotation.switchover.restore",
            {ATTR_GROUP_ID: group_id, ATTR_SWITCHOVER_ROLLED_BACK: not flipped},
        ):
            try:
                await self._pointers.exit_maintenance(group_id)
            except RotationError as e:
                logger.critical(
                    "Failed to lift maintenance for group %s; writes remain blocked: %s",
                    group_id,
                    e,
                )
                return False
            if flipped:
                logger.warning(
                    "Switchover for group %s failed after the master flip; not unwinding",
                    group_id,
                )
                return False
            logger.info("Writes resumed on the source cluster of group %s", group_id)
            return True


__all__ = ["SwitchoverCoordinator"]
