"""
Test harness wiring a complete orchestrator onto in-memory infrastructure.

Example:
    >>> harness = RotationTestHarness()
    >>> await harness.register_group()
    >>> await harness.machine.start_rotation("payments", ClusterDescriptor("green", "eu-west-1"))
    >>> state = await harness.run_until("payments", RotationPhase.DATA_SYNCING)
    >>> harness.restart()  # simulated crash: new components, same stores
"""

from __future__ import annotations

from rotation.control import RotationControlPlane
from rotation.enforcer import SafetyInvariantEnforcer
from rotation.exceptions import ErrorHandler
from rotation.gateway import HealthGateway
from rotation.locks import InMemoryLockManager, LockManager
from rotation.metrics import RotationMetrics
from rotation.models import ClusterDescriptor, ClusterGroup, RotationConfig, RotationPhase, RotationState
from rotation.registry import ClusterRegistry
from rotation.repositories.cluster import ClusterRepository, InMemoryClusterRepository
from rotation.repositories.state import InMemoryRotationStateRepository, RotationStateRepository
from rotation.state_machine import RotationStateMachine
from rotation.testing.fakes import (
    FakeClock,
    FakeMesh,
    FakeMetricsProvider,
    FakeProvisioning,
    FakeReconciliation,
    FakeReplication,
    FakeTrafficRouter,
    FakeWriteConfigPublisher,
    RecordingAlertSink,
)
from rotation.traffic import TrafficWeightController
from rotation.write_pointer import WritePointerManager


class RotationTestHarness:
    """
    Pre-wired orchestrator for tests.

    Collaborators are fakes, persistence and locks are in memory, and time
    is a ``FakeClock`` shared by every component. ``restart`` rebuilds the
    orchestrator components against the same stores and fakes.
    """

    def __init__(
        self,
        config: RotationConfig | None = None,
        *,
        state_repository: RotationStateRepository | None = None,
        cluster_repository: ClusterRepository | None = None,
        lock_manager: LockManager | None = None,
        clock: FakeClock | None = None,
        poll_interval: float = 1.0,
    ) -> None:
        self.config = config or RotationConfig()
        self.clock = clock or FakeClock()
        self.poll_interval = poll_interval

        self.provisioning = FakeProvisioning()
        self.reconciliation = FakeReconciliation()
        self.mesh = FakeMesh()
        self.replication = FakeReplication()
        self.router = FakeTrafficRouter()
        self.metrics_provider = FakeMetricsProvider()
        self.publisher = FakeWriteConfigPublisher()
        self.alerts = RecordingAlertSink()

        self.state_repository = state_repository or InMemoryRotationStateRepository(enable_tracing=False)
        self.cluster_repository = cluster_repository or InMemoryClusterRepository()
        self.locks = lock_manager or InMemoryLockManager(enable_tracing=False)
        self.metrics = RotationMetrics(enable_metrics=False)

        self._build()

    def _build(self) -> None:
        self.error_handler = ErrorHandler(sleep=self.clock.sleep)
        self.enforcer = SafetyInvariantEnforcer(
            self.config.lag_threshold_bytes, clock=self.clock, enable_tracing=False
        )
        self.registry = ClusterRegistry(self.cluster_repository, enable_tracing=False)
        self.gateway = HealthGateway(
            self.provisioning,
            self.reconciliation,
            self.mesh,
            self.replication,
            error_handler=self.error_handler,
            clock=self.clock,
        )
        self.pointers = WritePointerManager(
            self.publisher,
            self.state_repository,
            self.locks,
            error_handler=self.error_handler,
            enforcer=self.enforcer,
            clock=self.clock,
            sleep=self.clock.sleep,
            poll_interval=self.poll_interval,
            enable_tracing=False,
        )
        self.traffic = TrafficWeightController(
            self.router,
            self.metrics_provider,
            self.state_repository,
            self.locks,
            error_handler=self.error_handler,
            clock=self.clock,
            enable_tracing=False,
        )
        self.machine = RotationStateMachine(
            self.registry,
            self.gateway,
            self.pointers,
            self.traffic,
            self.provisioning,
            self.reconciliation,
            self.mesh,
            self.replication,
            self.state_repository,
            self.locks,
            config=self.config,
            enforcer=self.enforcer,
            metrics=self.metrics,
            alert_sink=self.alerts,
            error_handler=self.error_handler,
            clock=self.clock,
            sleep=self.clock.sleep,
            enable_tracing=False,
        )
        self.control = RotationControlPlane(
            self.machine,
            self.registry,
            self.traffic,
            enforcer=self.enforcer,
            auto_start=False,
            enable_tracing=False,
        )

    def restart(self) -> None:
        """Drop every in-process component and rebuild it over the same stores."""
        self._build()

    async def register_group(
        self,
        group_id: str = "payments",
        service: str = "payments-api",
        active: str = "blue",
        region: str = "eu-west-1",
    ) -> ClusterGroup:
        """Register a group and make its active cluster the write master."""
        group = await self.registry.register_group(group_id, service, ClusterDescriptor(active, region))
        self.pointers.set_members(group_id, [active])
        await self.pointers.set_master(group_id, active)
        return group

    async def start_rotation(
        self,
        group_id: str = "payments",
        target: str = "green",
        region: str = "eu-west-1",
    ) -> int:
        request = await self.machine.start_rotation(group_id, ClusterDescriptor(target, region))
        return request.rotation_id

    async def step(self, group_id: str = "payments", seconds: float | None = None) -> RotationState:
        """Advance the clock by one poll interval (or ``seconds``) and tick."""
        self.clock.advance(self.config.poll_interval_seconds if seconds is None else seconds)
        return await self.machine.tick(group_id)

    async def run_until(
        self,
        group_id: str,
        phase: RotationPhase,
        *,
        max_ticks: int = 500,
    ) -> RotationState:
        """
        Tick until the group is in ``phase``.

        Raises:
            AssertionError: If the phase is not reached within ``max_ticks``
        """
        state = await self.machine.tick(group_id)
        for _ in range(max_ticks):
            if state.phase == phase:
                return state
            state = await self.step(group_id)
        raise AssertionError(
            f"group {group_id} stuck in {state.phase.value} (halted={state.halted}, "
            f"veto={state.last_veto}) while waiting for {phase.value}"
        )

    def masters(self, group_id: str = "payments") -> set[str]:
        return self.publisher.masters(group_id)


__all__ = ["RotationTestHarness"]
