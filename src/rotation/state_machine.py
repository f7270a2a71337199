"""
RotationStateMachine - Drives cluster rotations through their lifecycle.

The state machine is the only component that moves a group between
phases. Each polling iteration (``tick``) of a group:

    1. observes which clusters report write master (split brain)
    2. handles an exceeded phase timeout
    3. runs the phase's entry actions, each at most once per rotation
    4. evaluates the phase's advance condition
    5. consults the safety enforcer and takes the forward edge

Phase lifecycle:
    IDLE_STABLE -> PROVISIONING -> BOOTSTRAPPING -> MESH_LINKING
        -> DATA_SYNCING -> TRAFFIC_CANARY -> SWITCHOVER_LOCKED
        -> PROMOTED -> DRAINING -> IDLE_STABLE

Entry actions carry the idempotency key ``"{rotation_id}:{phase}:{action}"``
and are recorded in the persisted state once applied, so a restarted
orchestrator resumes exactly where it stopped without replaying them.

Failure policy:
    - A veto parks the group in its phase with the veto recorded.
    - Collaborator failures park the group before switchover and halt it
      (with a critical alert) from SWITCHOVER_LOCKED onward.
    - A phase timeout rolls the rotation back before switchover and halts
      it from SWITCHOVER_LOCKED onward.
    - A canary step below the success-rate threshold rolls back.
    - Split brain moves the group to FAULT, which only ``resolve_fault``
      leaves.

Usage:
    >>> machine = RotationStateMachine(
    ...     registry, gateway, pointers, traffic,
    ...     provisioning, reconciliation, mesh, replication,
    ...     repository, InMemoryLockManager(),
    ... )
    >>> request = await machine.start_rotation("payments", green)
    >>> machine.start("payments")
    >>> ...
    >>> await machine.confirm_external_routing("payments", request.rotation_id)
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable, Coroutine
from dataclasses import replace
from datetime import datetime
from typing import Any, TypeVar

from rotation.enforcer import SafetyInvariantEnforcer, TransitionCheck
from rotation.exceptions import (
    AutomationHaltedError,
    ClusterNotFoundError,
    ConflictingMasterError,
    ErrorHandler,
    ExternalCallFailure,
    InvalidStateTransitionError,
    InvalidTargetError,
    InvariantViolation,
    RotationError,
    RotationInProgressError,
    RotationNotFoundError,
    RotationTimeoutError,
    SplitBrainFault,
)
from rotation.gateway import HealthGateway
from rotation.interfaces import (
    AlertSink,
    MeshProvider,
    ProvisioningProvider,
    ReconciliationProvider,
    ReplicationProvider,
)
from rotation.journal import RotationJournal
from rotation.locks import LockAcquisitionError, LockManager, rotation_lock_key
from rotation.metrics import RotationMetrics
from rotation.models import (
    ClusterDescriptor,
    ClusterRole,
    EmergencyRollbackResult,
    ReconciliationStatus,
    RollbackResult,
    RotationConfig,
    RotationPhase,
    RotationRequest,
    RotationState,
    RotationStatus,
    TransitionKind,
    Veto,
    ViolationKind,
    utc_now,
)
from rotation.observability import (
    ATTR_GROUP_ID,
    ATTR_PHASE,
    ATTR_ROTATION_ID,
    ATTR_TARGET_CLUSTER,
    Tracer,
    create_tracer,
)
from rotation.registry import ClusterRegistry
from rotation.repositories.state import RotationStateRepository
from rotation.rollback import RollbackCoordinator
from rotation.switchover import SwitchoverCoordinator
from rotation.traffic import TrafficWeightController
from rotation.write_pointer import WritePointerManager

logger = logging.getLogger(__name__)

T = TypeVar("T")

AUTOMATION_ACTOR = "automation"


class RotationStateMachine:
    """
    Orchestrates rotations for any number of cluster groups.

    Groups share no mutable state; each runs in its own polling task and
    every operation on a group holds that group's rotation lock.

    Args:
        registry: Cluster registry
        gateway: Health & metrics gateway (polling only)
        pointers: Write pointer manager
        traffic: Traffic weight controller
        provisioning: Provisioning collaborator
        reconciliation: GitOps reconciliation collaborator
        mesh: Service mesh collaborator
        replication: Database replication collaborator
        repository: Rotation state persistence
        lock_manager: Serializes operations per group
        config: Thresholds, windows and timeouts
        enforcer: Safety invariant enforcer
        switchover: Switchover coordinator (built from the above if omitted)
        rollback: Rollback coordinator (built from the above if omitted)
        metrics: Metric instruments
        alert_sink: Receives critical alerts
        error_handler: Retries transient collaborator failures
        clock: Returns the current time
        sleep: Coroutine used between polls
        lock_timeout: Seconds to wait for a group's rotation lock
        tracer: Optional tracer
        enable_tracing: Create an OpenTelemetry tracer when none is given
    """

    def __init__(
        self,
        registry: ClusterRegistry,
        gateway: HealthGateway,
        pointers: WritePointerManager,
        traffic: TrafficWeightController,
        provisioning: ProvisioningProvider,
        reconciliation: ReconciliationProvider,
        mesh: MeshProvider,
        replication: ReplicationProvider,
        repository: RotationStateRepository,
        lock_manager: LockManager,
        *,
        config: RotationConfig | None = None,
        enforcer: SafetyInvariantEnforcer | None = None,
        switchover: SwitchoverCoordinator | None = None,
        rollback: RollbackCoordinator | None = None,
        metrics: RotationMetrics | None = None,
        alert_sink: AlertSink | None = None,
        error_handler: ErrorHandler | None = None,
        clock: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], Awaitable[None]] | None = None,
        lock_timeout: float | None = 30.0,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._config = config or RotationConfig()
        self._registry = registry
        self._gateway = gateway
        self._pointers = pointers
        self._traffic = traffic
        self._provisioning = provisioning
        self._reconciliation = reconciliation
        self._mesh = mesh
        self._replication = replication
        self._repository = repository
        self._locks = lock_manager
        self._metrics = metrics
        self._clock = clock
        self._sleep = sleep or asyncio.sleep
        self._lock_timeout = lock_timeout
        self._error_handler = error_handler or ErrorHandler(sleep=self._sleep)
        self._enforcer = enforcer or SafetyInvariantEnforcer(
            self._config.lag_threshold_bytes, clock=clock, tracer=self._tracer
        )
        self._journal = RotationJournal(
            repository,
            metrics=metrics,
            alert_sink=alert_sink,
            clock=clock,
            tracer=self._tracer,
        )
        if self._error_handler.alert_callback is None:
            self._error_handler.alert_callback = self._alert_error
        self._switchover = switchover or SwitchoverCoordinator(
            pointers,
            gateway,
            replication,
            lock_manager,
            enforcer=self._enforcer,
            error_handler=self._error_handler,
            metrics=metrics,
            tracer=self._tracer,
        )
        self._rollback = rollback or RollbackCoordinator(
            self._journal,
            registry,
            pointers,
            traffic,
            provisioning,
            mesh,
            replication,
            lock_manager,
            config=self._config,
            error_handler=self._error_handler,
            metrics=metrics,
            cancel_run=self.stop,
            clock=clock,
            lock_timeout=lock_timeout,
            tracer=self._tracer,
        )

        # Polling tasks by group_id
        self._tasks: dict[str, asyncio.Task[None]] = {}

    @property
    def config(self) -> RotationConfig:
        return self._config

    @property
    def rollback_coordinator(self) -> RollbackCoordinator:
        return self._rollback

    # Rotation lifecycle

    async def start_rotation(
        self,
        group_id: str,
        target: ClusterDescriptor,
        *,
        requested_by: str | None = None,
        profile_ref: str | None = None,
    ) -> RotationRequest:
        """
        Accept a rotation of ``group_id`` onto ``target``.

        The target is registered with role TARGET and the group's write
        pointer is initialised to the active cluster if it has none. The
        rotation advances once the group is ticked or started.

        Raises:
            ClusterNotFoundError: If the group or its active cluster is unknown
            RotationInProgressError: If the group already has an active rotation
            InvalidTargetError: If the target is the active cluster or already registered
        """
        with self._tracer.span(
            "rotation.state_machine.start_rotation",
            {ATTR_GROUP_ID: group_id, ATTR_TARGET_CLUSTER: target.cluster_id},
        ):
            async with self._locks.acquire(rotation_lock_key(group_id), timeout=self._lock_timeout):
                group = await self._registry.get_group(group_id)
                source = await self._registry.find_cluster(group.active_cluster_id)
                if source is None:
                    raise ClusterNotFoundError(group.active_cluster_id, group_id)

                state = await self._journal.load(group_id)
                if state.is_active or state.phase != RotationPhase.IDLE_STABLE:
                    raise RotationInProgressError(
                        group_id, state.rotation_id or 0, state.phase
                    )
                if target.cluster_id == source.cluster_id:
                    raise InvalidTargetError(
                        group_id, target.cluster_id, "target is the active cluster"
                    )
                existing = await self._registry.find_cluster(target.cluster_id)
                if existing is not None:
                    raise InvalidTargetError(
                        group_id,
                        target.cluster_id,
                        f"already registered with role {existing.role.value}",
                    )

                pointer = await self._pointers.get_pointer(group_id)
                if pointer.master is not None and pointer.master != source.cluster_id:
                    raise InvariantViolation(
                        ViolationKind.SINGLE_MASTER,
                        f"write master {pointer.master} is not the active cluster "
                        f"{source.cluster_id}",
                        group_id=group_id,
                        phase=state.phase,
                    )

                rotation_id = await self._repository.next_rotation_id()
                now = self._clock()
                await self._registry.register_cluster(
                    replace(target, role=ClusterRole.TARGET, group_id=group_id)
                )
                self._pointers.set_members(group_id, [source.cluster_id, target.cluster_id])
                if pointer.master is None:
                    await self._pointers.set_master(group_id, source.cluster_id)

                request = RotationRequest(
                    rotation_id=rotation_id,
                    group_id=group_id,
                    service=group.service,
                    source_cluster_id=source.cluster_id,
                    target_cluster_id=target.cluster_id,
                    requested_by=requested_by,
                    created_at=now,
                    profile_ref=profile_ref,
                )
                state.request = request
                state.entered_at = now
                state.halted = False
                state.halt_reason = None
                await self._journal.save(state)
                if self._metrics is not None:
                    self._metrics.set_active(group_id, True)

            logger.info(
                "Accepted rotation %d for group %s: %s -> %s",
                rotation_id,
                group_id,
                source.cluster_id,
                target.cluster_id,
            )
            return request

    async def tick(self, group_id: str) -> RotationState:
        """
        Run one polling iteration for the group and return its state.

        Safe to call any number of times; a tick on an idle, halted or
        faulted group changes nothing.
        """
        async with self._locks.acquire(rotation_lock_key(group_id), timeout=self._lock_timeout):
            state = await self._journal.load(group_id)
            with self._tracer.span(
                "rotation.state_machine.tick",
                {
                    ATTR_GROUP_ID: group_id,
                    ATTR_PHASE: state.phase.value,
                    ATTR_ROTATION_ID: state.rotation_id or 0,
                },
            ):
                await self._tick_locked(state)
            return state

    async def advance(
        self,
        group_id: str,
        *,
        force: bool = False,
        actor: str | None = None,
    ) -> RotationState:
        """
        Attempt the forward transition now.

        With ``force`` the advance condition is skipped; the safety
        enforcer never is. Returns the state unchanged if the condition is
        not met.

        Raises:
            RotationNotFoundError: If the group has no active rotation
            AutomationHaltedError: If the group is halted or faulted
            InvariantViolation: If the enforcer vetoes the transition
        """
        async with self._locks.acquire(rotation_lock_key(group_id), timeout=self._lock_timeout):
            state = await self._journal.load(group_id)
            if state.request is None:
                raise RotationNotFoundError(group_id)
            if state.halted or state.phase.is_terminal or state.unwinding is not None:
                raise AutomationHaltedError(
                    group_id,
                    state.halt_reason or "rollback in progress",
                    phase=state.phase,
                    rotation_id=state.rotation_id,
                )
            self._pointers.set_members(group_id, self._rotation_clusters(state))
            try:
                await self._observe_split_brain(state)
                await self._run_entry_actions(state)
                if state.request is None or state.halted:
                    return state
                if not force and not await self._advance_condition(state):
                    return state
                if state.request is None:
                    return state
                await self._transition_forward(
                    state,
                    TransitionKind.FORCED if force else TransitionKind.ADVANCE,
                    actor=actor,
                )
            except SplitBrainFault as e:
                await self._journal.fault(state, e)
                raise
            except InvariantViolation as e:
                await self._record_violation(state, e)
                raise
            return state

    async def run(self, group_id: str) -> None:
        """Poll the group until its rotation finishes, halts or faults."""
        logger.info("Polling group %s", group_id)
        while True:
            state = await self.tick(group_id)
            if not self._should_poll(state):
                logger.info(
                    "Stopped polling group %s in %s (halted=%s)",
                    group_id,
                    state.phase.value,
                    state.halted,
                )
                return
            await self._sleep(self._config.poll_interval_seconds)

    def start(self, group_id: str) -> asyncio.Task[None]:
        """Start the polling task of the group; returns the running one if any."""
        task = self._tasks.get(group_id)
        if task is not None and not task.done():
            return task
        task = asyncio.create_task(self.run(group_id), name=f"rotation_{group_id}")
        self._tasks[group_id] = task
        task.add_done_callback(lambda t: self._on_task_done(group_id, t))
        return task

    async def stop(self, group_id: str) -> None:
        """Cancel the polling task of the group, if running."""
        task = self._tasks.pop(group_id, None)
        if task is None or task.done() or task is asyncio.current_task():
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
        logger.info("Cancelled polling task for group %s", group_id)

    async def shutdown(self) -> None:
        """Cancel every polling task."""
        for group_id in list(self._tasks):
            await self.stop(group_id)

    def is_running(self, group_id: str) -> bool:
        task = self._tasks.get(group_id)
        return task is not None and not task.done()

    async def resume_all(self, *, start: bool = True) -> list[RotationState]:
        """
        Reload every persisted group that is mid-rotation and resume it.

        Nothing is replayed: each group continues from its persisted phase
        and completed actions.
        """
        states = await self._repository.list_active()
        for state in states:
            if state.request is not None:
                self._pointers.set_members(state.group_id, self._rotation_clusters(state))
            logger.info(
                "Resuming group %s in %s (rotation %s, halted=%s)",
                state.group_id,
                state.phase.value,
                state.rotation_id,
                state.halted,
            )
            if start and self._should_poll(state):
                self.start(state.group_id)
        return states

    async def confirm_external_routing(self, group_id: str, rotation_id: int) -> RotationState:
        """
        Signal that DNS and external routing now point at the target.

        Idempotent per rotation.

        Raises:
            RotationNotFoundError: If ``rotation_id`` is not the group's active rotation
            InvalidStateTransitionError: If the group has not reached PROMOTED
        """
        async with self._locks.acquire(rotation_lock_key(group_id), timeout=self._lock_timeout):
            state = await self._journal.load(group_id)
            if state.rotation_id != rotation_id:
                raise RotationNotFoundError(group_id, rotation_id)
            if state.external_routing_confirmed:
                return state
            if state.phase != RotationPhase.PROMOTED:
                raise InvalidStateTransitionError(group_id, state.phase, RotationPhase.DRAINING)
            state.external_routing_confirmed = True
            await self._journal.save(state)
            logger.info("External routing confirmed for group %s (rotation %d)", group_id, rotation_id)
            return state

    async def rollback(
        self,
        group_id: str,
        *,
        reason: str,
        actor: str | None = None,
    ) -> RollbackResult:
        """See ``RollbackCoordinator.rollback``."""
        return await self._rollback.rollback(group_id, reason=reason, actor=actor)

    async def emergency_rollback(
        self,
        group_id: str,
        *,
        reason: str,
        actor: str | None = None,
    ) -> EmergencyRollbackResult:
        """See ``RollbackCoordinator.emergency_rollback``."""
        return await self._rollback.emergency_rollback(group_id, reason=reason, actor=actor)

    async def resolve_fault(self, group_id: str, *, operator: str, reason: str) -> RotationState:
        """
        Leave FAULT after an operator restored a single write master.

        The pointer's master becomes the group's active cluster and the
        group returns to IDLE_STABLE. Never called by automation.

        Raises:
            InvalidStateTransitionError: If the group is not in FAULT
            InvariantViolation: SINGLE_MASTER unless exactly one cluster is master
        """
        async with self._locks.acquire(rotation_lock_key(group_id), timeout=self._lock_timeout):
            state = await self._journal.load(group_id)
            if state.phase != RotationPhase.FAULT:
                raise InvalidStateTransitionError(group_id, state.phase, RotationPhase.IDLE_STABLE)

            pointer = await self._pointers.get_pointer(group_id)
            clusters = [c.cluster_id for c in await self._registry.list_clusters(group_id)]
            masters = await self._pointers.observe_masters(group_id, clusters)
            if pointer.master is None or not masters <= {pointer.master}:
                raise InvariantViolation(
                    ViolationKind.SINGLE_MASTER,
                    f"pointer master is {pointer.master}, clusters reporting master: "
                    f"{', '.join(sorted(masters)) or 'none'}",
                    group_id=group_id,
                    phase=state.phase,
                    rotation_id=state.rotation_id,
                )

            await self._registry.promote(group_id, pointer.master)
            state.clear_rotation()
            state.halted = False
            state.halt_reason = None
            await self._journal.transition(
                state,
                RotationPhase.IDLE_STABLE,
                TransitionKind.RESOLVE,
                reason=reason,
                actor=operator,
            )
            logger.warning(
                "Fault of group %s resolved by %s with %s as master: %s",
                group_id,
                operator,
                pointer.master,
                reason,
            )
            return state

    async def clear_halt(self, group_id: str, *, operator: str, reason: str) -> RotationState:
        """
        Let automation continue a halted group.

        The phase timer restarts so the phase is not immediately timed out
        again. FAULT is not a halt; use ``resolve_fault``.

        Raises:
            InvalidStateTransitionError: If the group is in FAULT
        """
        async with self._locks.acquire(rotation_lock_key(group_id), timeout=self._lock_timeout):
            state = await self._journal.load(group_id)
            if state.phase.is_terminal:
                raise InvalidStateTransitionError(group_id, state.phase, state.phase)
            if not state.halted:
                return state
            state.halted = False
            state.halt_reason = None
            state.entered_at = self._clock()
            state.log(TransitionKind.RESUME, state.entered_at, reason=reason, actor=operator)
            await self._journal.save(state)
            logger.warning("Halt of group %s cleared by %s: %s", group_id, operator, reason)
            return state

    # Queries

    async def get_state(self, group_id: str) -> RotationState:
        """
        Raises:
            RotationNotFoundError: If the group has never been rotated
        """
        state = await self._repository.get_state(group_id)
        if state is None:
            raise RotationNotFoundError(group_id)
        return state

    async def get_status(self, group_id: str) -> RotationStatus:
        state = await self._repository.get_state(group_id)
        if state is None:
            await self._registry.get_group(group_id)
            state = RotationState(group_id=group_id, entered_at=self._clock())
        pointer = await self._pointers.get_pointer(group_id)
        split = await self._traffic.get_split(group_id)
        target = state.target_cluster_id
        return RotationStatus(
            group_id=group_id,
            rotation_id=state.rotation_id,
            phase=state.phase,
            seconds_in_phase=state.seconds_in_phase(self._clock()),
            source_cluster_id=state.source_cluster_id,
            target_cluster_id=target,
            halted=state.halted,
            halt_reason=state.halt_reason,
            last_veto=state.last_veto,
            canary_weight=split.weight_of(target) if split and target else None,
            pointer=pointer if pointer.version > 0 else None,
            split=split,
            updated_at=self._clock(),
        )

    # Tick internals

    async def _tick_locked(self, state: RotationState) -> None:
        if state.unwinding is not None:
            await self._continue_unwind(state)
            return
        if state.request is None or state.halted or state.phase.is_terminal:
            return

        self._pointers.set_members(state.group_id, self._rotation_clusters(state))
        try:
            await self._observe_split_brain(state)
            if await self._handle_timeout(state):
                return
            await self._run_entry_actions(state)
            if state.request is None or state.halted:
                return
            if await self._advance_condition(state) and state.request is not None:
                await self._transition_forward(state, TransitionKind.ADVANCE, actor=AUTOMATION_ACTOR)
        except SplitBrainFault as e:
            await self._journal.fault(state, e)
        except InvariantViolation as e:
            await self._record_violation(state, e)
        except ConflictingMasterError:
            logger.error("Group %s faulted on a conflicting master", state.group_id)
        except (ExternalCallFailure, RotationTimeoutError) as e:
            await self._handle_failure(state, e)
        except LockAcquisitionError as e:
            logger.warning("Group %s parked in %s: %s", state.group_id, state.phase.value, e)

    async def _handle_failure(self, state: RotationState, error: RotationError) -> None:
        if state.phase.is_post_switchover:
            await self._journal.halt(state, error.message, actor=AUTOMATION_ACTOR)
            return
        logger.warning(
            "Group %s parked in %s after collaborator failure: %s",
            state.group_id,
            state.phase.value,
            error.message,
        )

    async def _continue_unwind(self, state: RotationState) -> None:
        try:
            if state.unwinding == TransitionKind.ROLLBACK:
                await self._rollback.unwind(
                    state, reason="resuming interrupted rollback", actor=AUTOMATION_ACTOR
                )
            else:
                await self._rollback.emergency_unwind(
                    state, reason="resuming interrupted emergency rollback", actor=AUTOMATION_ACTOR
                )
        except (ExternalCallFailure, RotationTimeoutError, LockAcquisitionError) as e:
            logger.warning("Unwind of group %s interrupted, will retry: %s", state.group_id, e)
        except ConflictingMasterError:
            logger.error("Group %s faulted on a conflicting master", state.group_id)

    async def _observe_split_brain(self, state: RotationState) -> None:
        masters = await self._pointers.observe_masters(
            state.group_id, self._rotation_clusters(state)
        )
        self._enforcer.evaluate(
            TransitionCheck(group_id=state.group_id, state=state, observed_masters=masters)
        )

    async def _handle_timeout(self, state: RotationState) -> bool:
        limit = self._config.timeout_for(state.phase)
        if limit is None:
            return False
        elapsed = state.seconds_in_phase(self._clock())
        if elapsed <= limit:
            return False

        error = RotationTimeoutError(
            f"Phase {state.phase.value} timed out",
            elapsed_seconds=elapsed,
            timeout_seconds=limit,
            group_id=state.group_id,
            rotation_id=state.rotation_id,
            phase=state.phase,
        )
        if state.phase.allows_rollback:
            logger.warning("Rolling back group %s: %s", state.group_id, error.message)
            await self._rollback.unwind(state, reason=error.message, actor=AUTOMATION_ACTOR)
        else:
            await self._journal.halt(state, error.message, actor=AUTOMATION_ACTOR)
        return True

    async def _run_entry_actions(self, state: RotationState) -> None:
        request = state.request
        assert request is not None
        source = request.source_cluster_id
        target = request.target_cluster_id
        group_id = state.group_id
        phase = state.phase

        if phase == RotationPhase.PROVISIONING:

            async def provision(key: str) -> None:
                descriptor = await self._registry.get_cluster(target)
                await self._call(
                    "provisioning.provision_cluster",
                    group_id,
                    lambda: self._provisioning.provision_cluster(descriptor, idempotency_key=key),
                )

            await self._once(state, "provision", provision)

        elif phase == RotationPhase.BOOTSTRAPPING:
            profile_ref = request.profile_ref or self._config.profile_ref

            async def apply_profile(key: str) -> None:
                await self._call(
                    "reconciliation.apply_profile",
                    group_id,
                    lambda: self._reconciliation.apply_profile(
                        target, profile_ref, idempotency_key=key
                    ),
                )

            await self._once(state, "apply_profile", apply_profile)

        elif phase == RotationPhase.MESH_LINKING:

            async def create_link(key: str) -> None:
                state.link_id = await self._call(
                    "mesh.create_link",
                    group_id,
                    lambda: self._mesh.create_link(source, target, idempotency_key=key),
                )

            await self._once(state, "create_link", create_link)

        elif phase == RotationPhase.DATA_SYNCING:

            async def set_replication_source(key: str) -> None:
                await self._call(
                    "replication.set_replication_source",
                    group_id,
                    lambda: self._replication.set_replication_source(
                        target, source, idempotency_key=key
                    ),
                )

            async def enable_mirror(key: str) -> None:
                await self._pointers.enable_mirror(group_id, target, state=state)

            await self._once(state, "set_replication_source", set_replication_source)
            await self._once(state, "enable_mirror", enable_mirror)

        elif phase == RotationPhase.TRAFFIC_CANARY:
            weight = self._config.canary_steps[state.canary_step_index]

            async def apply_canary_weight(key: str) -> None:
                await self._set_target_weight(state, weight, key)

            await self._once(state, f"split_{weight}", apply_canary_weight)
            if state.condition_since is None:
                state.condition_since = self._clock()
                await self._journal.save(state)

        elif phase == RotationPhase.SWITCHOVER_LOCKED:

            async def switch_writes(key: str) -> bool:
                return await self._switch_writes(state)

            await self._once(state, "switchover", switch_writes)

        elif phase == RotationPhase.PROMOTED:

            async def full_traffic(key: str) -> None:
                await self._set_target_weight(state, 100, key)

            await self._once(state, "split_full", full_traffic)

        elif phase == RotationPhase.DRAINING:

            async def unlink_source(key: str) -> None:
                link_id = state.link_id
                if link_id is None:
                    return
                await self._call(
                    "mesh.delete_link",
                    group_id,
                    lambda: self._mesh.delete_link(link_id, idempotency_key=key),
                )

            async def retire_source(key: str) -> None:
                await self._registry.set_role(source, ClusterRole.RETIRING)

            async def decommission_source(key: str) -> bool:
                acknowledged = await self._call(
                    "provisioning.decommission_cluster",
                    group_id,
                    lambda: self._provisioning.decommission_cluster(source, idempotency_key=key),
                )
                state.decommission_acknowledged = bool(acknowledged)
                return state.decommission_acknowledged

            await self._once(state, "unlink_source", unlink_source)
            await self._once(state, "retire_source", retire_source)
            await self._once(state, "decommission_source", decommission_source)

    async def _switch_writes(self, state: RotationState) -> bool:
        request = state.request
        assert request is not None
        result = await self._switchover.execute(state, self._config)

        pointer = await self._pointers.get_pointer(state.group_id)
        if pointer.master == request.target_cluster_id and state.switchover_at is None:
            state.switchover_at = self._clock()
            await self._journal.save(state)

        if result.success:
            return True
        if result.retryable:
            logger.warning(
                "Switchover for group %s deferred: %s", state.group_id, result.error_message
            )
            return False
        await self._journal.halt(
            state,
            f"switchover failed: {result.error_message}",
            actor=AUTOMATION_ACTOR,
        )
        return False

    async def _advance_condition(self, state: RotationState) -> bool:
        request = state.request
        assert request is not None
        source = request.source_cluster_id
        target = request.target_cluster_id
        phase = state.phase

        if phase == RotationPhase.IDLE_STABLE:
            return True

        if phase == RotationPhase.PROVISIONING:
            return await self._gateway.cluster_ready(target)

        if phase == RotationPhase.BOOTSTRAPPING:
            status = await self._gateway.reconciliation_status(target)
            if status == ReconciliationStatus.FAILED:
                logger.warning("Reconciliation of %s reports failed; waiting", target)
            return status == ReconciliationStatus.HEALTHY

        if phase == RotationPhase.MESH_LINKING:
            ready = await self._gateway.link_ready(state.link_id) and (
                await self._gateway.mirror_endpoints_exist(state.link_id)
            )
            if ready and not state.link_confirmed:
                state.link_confirmed = True
                await self._journal.save(state)
            return ready

        if phase == RotationPhase.DATA_SYNCING:
            return await self._lag_window_satisfied(state, source, target)

        if phase == RotationPhase.TRAFFIC_CANARY:
            return await self._canary_step_passed(state, target)

        if phase == RotationPhase.SWITCHOVER_LOCKED:
            if not state.has_completed(self._action_key(state, "switchover")):
                return False
            applied = await self._pointers.confirm_applied(state.group_id, [source, target])
            detached = await self._gateway.replication_source(target) is None
            return applied and detached

        if phase == RotationPhase.PROMOTED:
            return state.external_routing_confirmed

        if phase == RotationPhase.DRAINING:
            return state.decommission_acknowledged

        return False

    async def _lag_window_satisfied(self, state: RotationState, source: str, target: str) -> bool:
        status = await self._gateway.replication_status(target, source, link_id=state.link_id)
        if self._metrics is not None and status.lag_bytes is not None:
            self._metrics.record_replication_lag(state.group_id, status.lag_bytes)

        now = self._clock()
        if not status.within(self._config.lag_threshold_bytes):
            if state.condition_since is not None:
                logger.info(
                    "Group %s lag window reset (lag=%s, link_up=%s)",
                    state.group_id,
                    status.lag_bytes,
                    status.link_up,
                )
                state.condition_since = None
                await self._journal.save(state)
            return False

        if state.condition_since is None:
            state.condition_since = now
            await self._journal.save(state)
        sustained = (now - state.condition_since).total_seconds()
        return sustained >= self._config.lag_window_seconds

    async def _canary_step_passed(self, state: RotationState, target: str) -> bool:
        if state.condition_since is None:
            return False
        weight = self._config.canary_steps[state.canary_step_index]
        rate = await self._traffic.observe_success_rate(state.group_id, target)
        if rate < self._config.success_rate_threshold:
            reason = (
                f"canary success rate {rate:.4f} at weight {weight} below "
                f"{self._config.success_rate_threshold:.4f}"
            )
            logger.warning("Rolling back group %s: %s", state.group_id, reason)
            await self._rollback.unwind(state, reason=reason, actor=AUTOMATION_ACTOR)
            return False

        baked = (self._clock() - state.condition_since).total_seconds()
        if baked < self._config.canary_bake_seconds:
            return False
        if state.canary_step_index < len(self._config.canary_steps) - 1:
            state.canary_step_index += 1
            state.condition_since = None
            await self._journal.save(state)
            logger.info(
                "Group %s canary step at %d%% passed; next weight %d%%",
                state.group_id,
                weight,
                self._config.canary_steps[state.canary_step_index],
            )
            return False
        return True

    async def _transition_forward(
        self,
        state: RotationState,
        kind: TransitionKind,
        *,
        actor: str | None,
    ) -> None:
        proposed = state.phase.next_phase
        if proposed is None:
            raise InvalidStateTransitionError(state.group_id, state.phase, state.phase)
        self._enforcer.check_phase_order(state.group_id, state.phase, proposed)
        check = await self._build_check(state, proposed)
        self._enforcer.enforce(check)

        if state.phase == RotationPhase.DRAINING:
            await self._finalize(state)
        await self._journal.transition(state, proposed, kind, actor=actor)

    async def _build_check(self, state: RotationState, proposed: RotationPhase) -> TransitionCheck:
        request = state.request
        assert request is not None
        clusters = self._rotation_clusters(state)
        replication = None
        if proposed == RotationPhase.SWITCHOVER_LOCKED:
            replication = await self._gateway.replication_status(
                request.target_cluster_id, request.source_cluster_id, link_id=state.link_id
            )
        return TransitionCheck(
            group_id=state.group_id,
            state=state,
            proposed_phase=proposed,
            pointer=await self._pointers.get_pointer(state.group_id),
            replication=replication,
            split=await self._traffic.get_split(state.group_id),
            observed_masters=await self._pointers.observe_masters(state.group_id, clusters),
        )

    async def _finalize(self, state: RotationState) -> None:
        request = state.request
        assert request is not None
        await self._registry.promote(state.group_id, request.target_cluster_id)
        await self._registry.remove_cluster(request.source_cluster_id)
        self._pointers.set_members(state.group_id, [request.target_cluster_id])
        state.clear_rotation()
        logger.info(
            "Rotation %d of group %s complete: %s is now active",
            request.rotation_id,
            state.group_id,
            request.target_cluster_id,
        )

    async def _set_target_weight(self, state: RotationState, weight: int, key: str) -> None:
        request = state.request
        assert request is not None
        current = await self._traffic.get_split(state.group_id)
        self._enforcer.enforce(
            TransitionCheck(
                group_id=state.group_id,
                state=state,
                split=current,
                target_cluster_id=request.target_cluster_id,
                proposed_target_weight=weight,
            )
        )
        await self._traffic.set_split(
            state.group_id,
            request.source_cluster_id,
            100 - weight,
            request.target_cluster_id,
            weight,
            idempotency_key=key,
        )

    async def _once(
        self,
        state: RotationState,
        action: str,
        fn: Callable[[str], Awaitable[bool | None]],
    ) -> None:
        """Run an entry action unless already applied; ``False`` means try again later."""
        key = self._action_key(state, action)
        if state.has_completed(key):
            return
        with self._tracer.span(
            "rotation.state_machine.entry_action",
            {ATTR_GROUP_ID: state.group_id, ATTR_PHASE: state.phase.value},
        ):
            done = await fn(key)
        if done is False:
            return
        state.completed_actions.append(key)
        await self._journal.save(state)
        logger.debug("Group %s applied %s", state.group_id, key)

    async def _call(
        self,
        operation_name: str,
        group_id: str,
        operation: Callable[[], Coroutine[Any, Any, T]],
    ) -> T:
        return await self._error_handler.execute_with_retry(
            operation,
            operation_name=operation_name,
            group_id=group_id,
        )

    async def _alert_error(self, error: RotationError) -> None:
        await self._journal.alert(
            error.severity,
            error.message,
            group_id=error.group_id,
            details=error.to_dict(),
        )

    async def _record_violation(self, state: RotationState, error: InvariantViolation) -> None:
        assert error.rule is not None
        await self._journal.veto(
            state,
            Veto(
                rule=error.rule,
                phase=state.phase,
                proposed_phase=error.proposed_phase,
                message=error.message,
                occurred_at=self._clock(),
            ),
        )

    @staticmethod
    def _action_key(state: RotationState, action: str) -> str:
        return f"{state.rotation_id}:{state.phase.value}:{action}"

    @staticmethod
    def _rotation_clusters(state: RotationState) -> list[str]:
        if state.request is None:
            return []
        return [state.request.source_cluster_id, state.request.target_cluster_id]

    @staticmethod
    def _should_poll(state: RotationState) -> bool:
        if state.unwinding is not None:
            return True
        return state.request is not None and not state.halted and not state.phase.is_terminal

    def _on_task_done(self, group_id: str, task: asyncio.Task[None]) -> None:
        if self._tasks.get(group_id) is task:
            del self._tasks[group_id]
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error("Polling task for group %s failed", group_id, exc_info=error)


__all__ = ["RotationStateMachine", "AUTOMATION_ACTOR"]
