"""
Scenario tests for RotationStateMachine.

Tests cover:
- Full rotation from IDLE_STABLE through DRAINING back to IDLE_STABLE
- Sustained lag window in DATA_SYNCING and window reset on a lag spike
- Forced advance vetoed by the lag gate
- Phase timeouts (rollback before switchover, halt after)
- Canary rollback on a failing success rate
- Split brain moving the group to FAULT and operator resolution
- Halts and clear_halt
- Crash and resume without replaying side effects
- start_rotation / advance / confirm_external_routing error paths
- Status queries and polling tasks
- Transient collaborator failures retried, alerting errors forwarded to the alert sink
"""

import asyncio

import pytest

from rotation.exceptions import (
    AutomationHaltedError,
    ConflictingMasterError,
    ErrorSeverity,
    ExternalCallFailure,
    GroupNotFoundError,
    InvalidStateTransitionError,
    InvalidTargetError,
    InvariantViolation,
    RotationInProgressError,
    RotationNotFoundError,
)
from rotation.models import (
    ClusterDescriptor,
    ClusterRole,
    RotationConfig,
    RotationPhase,
    TransitionKind,
    ViolationKind,
)
from rotation.testing import RotationTestHarness

# =============================================================================
# Helpers
# =============================================================================


async def drive_to_completion(harness: RotationTestHarness, rotation_id: int) -> None:
    await harness.run_until("payments", RotationPhase.PROMOTED)
    await harness.step()
    await harness.machine.confirm_external_routing("payments", rotation_id)
    await harness.run_until("payments", RotationPhase.IDLE_STABLE)


def transition_path(state) -> list[tuple[str, str, str]]:
    return [(t.from_phase.value, t.to_phase.value, t.kind.value) for t in state.transitions]


# =============================================================================
# Happy path
# =============================================================================


class TestHappyPath:
    """A rotation with healthy collaborators runs end to end."""

    @pytest.mark.asyncio
    async def test_full_rotation(self, registered_harness):
        h = registered_harness
        rotation_id = await h.start_rotation()

        await drive_to_completion(h, rotation_id)

        state = await h.machine.get_state("payments")
        group = await h.registry.get_group("payments")
        assert state.phase == RotationPhase.IDLE_STABLE
        assert state.request is None
        assert group.active_cluster_id == "green"
        assert (await h.registry.get_cluster("green")).role == ClusterRole.ACTIVE
        assert await h.registry.find_cluster("blue") is None
        assert h.masters() == {"green"}
        assert h.router.applied["payments"] == {"blue": 0, "green": 100}
        assert h.provisioning.decommissioned == ["blue"]

        forward = [
            (f, t) for f, t, kind in transition_path(state) if kind == TransitionKind.ADVANCE.value
        ]
        assert forward == [
            ("idle_stable", "provisioning"),
            ("provisioning", "bootstrapping"),
            ("bootstrapping", "mesh_linking"),
            ("mesh_linking", "data_syncing"),
            ("data_syncing", "traffic_canary"),
            ("traffic_canary", "switchover_locked"),
            ("switchover_locked", "promoted"),
            ("promoted", "draining"),
            ("draining", "idle_stable"),
        ]

    @pytest.mark.asyncio
    async def test_entry_actions_use_rotation_keys(self, registered_harness):
        h = registered_harness
        rotation_id = await h.start_rotation()

        await drive_to_completion(h, rotation_id)

        assert h.provisioning.keys() == [f"{rotation_id}:provisioning:provision", f"{rotation_id}:draining:decommission_source"]
        assert h.reconciliation.keys() == [f"{rotation_id}:bootstrapping:apply_profile"]
        assert h.mesh.keys() == [
            f"{rotation_id}:mesh_linking:create_link",
            f"{rotation_id}:draining:unlink_source",
        ]
        assert h.router.keys() == [
            f"{rotation_id}:traffic_canary:split_10",
            f"{rotation_id}:traffic_canary:split_50",
            f"{rotation_id}:traffic_canary:split_90",
            f"{rotation_id}:promoted:split_full",
        ]
        assert h.reconciliation.profiles["green"] == "base"

    @pytest.mark.asyncio
    async def test_canary_weights_never_decrease(self, registered_harness):
        h = registered_harness
        rotation_id = await h.start_rotation()

        await drive_to_completion(h, rotation_id)

        weights = [s.weight_of("green") for s in await h.traffic.split_history("payments")]
        assert weights == [10, 50, 90, 100]
        assert weights == sorted(weights)

    @pytest.mark.asyncio
    async def test_single_master_throughout(self, registered_harness):
        h = registered_harness
        rotation_id = await h.start_rotation()

        state = await h.machine.tick("payments")
        while state.phase != RotationPhase.PROMOTED:
            assert len(h.masters()) == 1
            state = await h.step()
        await h.machine.confirm_external_routing("payments", rotation_id)
        while state.phase != RotationPhase.IDLE_STABLE:
            assert len(h.masters()) == 1
            state = await h.step()

        assert h.masters() == {"green"}

    @pytest.mark.asyncio
    async def test_profile_override(self, registered_harness):
        h = registered_harness
        await h.machine.start_rotation(
            "payments", ClusterDescriptor("green", "eu-west-1"), profile_ref="hardened"
        )

        await h.run_until("payments", RotationPhase.MESH_LINKING)

        assert h.reconciliation.profiles["green"] == "hardened"


# =============================================================================
# Data syncing
# =============================================================================


class TestLagWindow:
    @pytest.mark.asyncio
    async def test_sustained_lag_below_threshold_advances_after_window(self):
        h = RotationTestHarness(RotationConfig())
        await h.register_group()
        h.replication.set_lag("green", 200)
        await h.start_rotation()
        await h.run_until("payments", RotationPhase.DATA_SYNCING)

        state = await h.step()
        assert state.condition_since is not None
        for _ in range(11):
            state = await h.step()
            assert state.phase == RotationPhase.DATA_SYNCING

        state = await h.step()

        assert state.phase == RotationPhase.TRAFFIC_CANARY
        assert h.metrics.get_snapshot().replication_lag["payments"] == 200

    @pytest.mark.asyncio
    async def test_lag_spike_resets_window(self, registered_harness):
        h = registered_harness
        await h.start_rotation()
        await h.run_until("payments", RotationPhase.DATA_SYNCING)
        await h.step()

        h.replication.set_lag("green", 5000)
        state = await h.step()
        assert state.condition_since is None

        h.replication.set_lag("green", 0)
        state = await h.step()
        assert state.phase == RotationPhase.DATA_SYNCING
        state = await h.step()
        assert state.phase == RotationPhase.DATA_SYNCING
        state = await h.step()
        assert state.phase == RotationPhase.TRAFFIC_CANARY

    @pytest.mark.asyncio
    async def test_unreadable_lag_parks(self, registered_harness):
        h = registered_harness
        await h.start_rotation()
        await h.run_until("payments", RotationPhase.DATA_SYNCING)
        h.replication.set_lag("green", None)

        for _ in range(5):
            state = await h.step()

        assert state.phase == RotationPhase.DATA_SYNCING
        assert state.condition_since is None

    @pytest.mark.asyncio
    async def test_mirror_enabled_after_link_confirmed(self, registered_harness):
        h = registered_harness
        await h.start_rotation()
        await h.run_until("payments", RotationPhase.DATA_SYNCING)

        state = await h.step()

        pointer = await h.pointers.get_pointer("payments")
        assert state.link_confirmed
        assert pointer.mirrors == {"green": "blue"}
        assert h.replication.sources["green"] == "blue"


# =============================================================================
# Safety vetoes
# =============================================================================


class TestVetoes:
    @pytest.mark.asyncio
    async def test_forced_advance_vetoed_by_lag_gate(self, registered_harness):
        h = registered_harness
        await h.start_rotation()
        await h.run_until("payments", RotationPhase.TRAFFIC_CANARY)
        h.replication.set_lag("green", 5000)

        with pytest.raises(InvariantViolation) as exc_info:
            await h.machine.advance("payments", force=True, actor="alice")

        assert exc_info.value.rule == ViolationKind.LAG_GATE
        assert str(exc_info.value) == (
            "InvariantViolation: LagGate in traffic_canary: "
            "replication lag 5000 bytes exceeds 1024 bytes"
        )
        state = await h.machine.get_state("payments")
        assert state.phase == RotationPhase.TRAFFIC_CANARY
        assert state.last_veto.rule == ViolationKind.LAG_GATE
        assert state.transitions[-1].kind == TransitionKind.VETO
        assert h.masters() == {"blue"}

    @pytest.mark.asyncio
    async def test_lag_gate_parks_automation(self, registered_harness):
        h = registered_harness
        await h.start_rotation()
        await h.run_until("payments", RotationPhase.TRAFFIC_CANARY)
        h.replication.set_lag("green", 5000)

        for _ in range(12):
            state = await h.step()

        assert state.phase == RotationPhase.TRAFFIC_CANARY
        assert state.last_veto.rule == ViolationKind.LAG_GATE
        vetoes = [t for t in state.transitions if t.kind == TransitionKind.VETO]
        assert len(vetoes) == 1
        assert h.metrics.get_snapshot().vetoes == {"LagGate": 1}

        h.replication.set_lag("green", 0)
        state = await h.run_until("payments", RotationPhase.SWITCHOVER_LOCKED)
        assert state.last_veto is None

    @pytest.mark.asyncio
    async def test_forced_advance_skips_condition(self, registered_harness):
        h = registered_harness
        await h.start_rotation()
        await h.run_until("payments", RotationPhase.DATA_SYNCING)

        state = await h.machine.advance("payments", force=True, actor="alice")

        assert state.phase == RotationPhase.TRAFFIC_CANARY
        assert state.transitions[-1].kind == TransitionKind.FORCED
        assert state.transitions[-1].actor == "alice"

    @pytest.mark.asyncio
    async def test_advance_without_condition_is_noop(self, registered_harness):
        h = registered_harness
        h.provisioning.auto_ready = False
        await h.start_rotation()
        await h.run_until("payments", RotationPhase.PROVISIONING)

        state = await h.machine.advance("payments")

        assert state.phase == RotationPhase.PROVISIONING


# =============================================================================
# Timeouts and halts
# =============================================================================


class TestTimeouts:
    @pytest.mark.asyncio
    async def test_pre_switchover_timeout_rolls_back(self):
        h = RotationTestHarness(
            RotationConfig(phase_timeouts={RotationPhase.PROVISIONING: 60.0})
        )
        await h.register_group()
        h.provisioning.auto_ready = False
        rotation_id = await h.start_rotation()

        state = await h.run_until("payments", RotationPhase.IDLE_STABLE)

        assert state.request is None
        assert state.transitions[-1].kind == TransitionKind.ROLLBACK
        assert state.transitions[-1].from_phase == RotationPhase.PROVISIONING
        assert "timed out" in state.transitions[-1].reason
        assert await h.registry.find_cluster("green") is None
        assert h.provisioning.decommissioned == ["green"]
        assert f"{rotation_id}:rollback:decommission_target" in h.provisioning.keys()
        assert h.masters() == {"blue"}

    @pytest.mark.asyncio
    async def test_post_switchover_timeout_halts(self):
        h = RotationTestHarness(
            RotationConfig(
                lag_window_seconds=10.0,
                canary_bake_seconds=10.0,
                phase_timeouts={RotationPhase.PROMOTED: 60.0},
            )
        )
        await h.register_group()
        rotation_id = await h.start_rotation()
        await h.run_until("payments", RotationPhase.PROMOTED)

        state = await h.step(seconds=61)

        assert state.phase == RotationPhase.PROMOTED
        assert state.halted
        assert "Phase promoted timed out" in state.halt_reason
        critical = h.alerts.with_severity(ErrorSeverity.CRITICAL)
        assert critical[-1].message.startswith("Rotation halted in promoted")
        assert h.masters() == {"green"}

        # Halted groups are left alone
        assert (await h.step()).halted
        with pytest.raises(AutomationHaltedError):
            await h.machine.advance("payments")

        state = await h.machine.clear_halt("payments", operator="alice", reason="investigated")
        assert not state.halted
        assert state.transitions[-1].kind == TransitionKind.RESUME

        await h.machine.confirm_external_routing("payments", rotation_id)
        state = await h.run_until("payments", RotationPhase.IDLE_STABLE)
        assert (await h.registry.get_group("payments")).active_cluster_id == "green"

    @pytest.mark.asyncio
    async def test_collaborator_failure_parks_before_switchover(self, registered_harness):
        h = registered_harness
        h.mesh.fail("create_link", times=5)
        await h.start_rotation()
        await h.run_until("payments", RotationPhase.MESH_LINKING)

        state = await h.step()
        assert state.phase == RotationPhase.MESH_LINKING
        assert not state.halted

        state = await h.run_until("payments", RotationPhase.DATA_SYNCING)
        assert state.link_id == "link-blue-green"

    @pytest.mark.asyncio
    async def test_collaborator_failure_halts_after_switchover(self, registered_harness):
        h = registered_harness
        rotation_id = await h.start_rotation()
        await h.run_until("payments", RotationPhase.PROMOTED)
        h.router.fail("apply_split", times=5)

        state = await h.step()

        assert state.halted
        assert "apply_split" in state.halt_reason
        assert h.alerts.with_severity(ErrorSeverity.CRITICAL)

        await h.machine.clear_halt("payments", operator="alice", reason="router fixed")
        await h.step()
        await h.machine.confirm_external_routing("payments", rotation_id)
        state = await h.run_until("payments", RotationPhase.IDLE_STABLE)
        assert h.router.applied["payments"] == {"blue": 0, "green": 100}

    @pytest.mark.asyncio
    async def test_clear_halt_rejected_in_fault(self, registered_harness):
        h = registered_harness
        await h.start_rotation()
        await h.run_until("payments", RotationPhase.DATA_SYNCING)
        h.publisher.force_master("green", "payments")
        await h.step()

        with pytest.raises(InvalidStateTransitionError):
            await h.machine.clear_halt("payments", operator="alice", reason="no")


# =============================================================================
# Canary rollback
# =============================================================================


class TestCanaryRollback:
    @pytest.mark.asyncio
    async def test_failing_canary_rolls_back(self, registered_harness):
        h = registered_harness
        h.metrics_provider.set_success_rate("payments", "green", 0.5)
        await h.start_rotation()

        state = await h.run_until("payments", RotationPhase.IDLE_STABLE)

        last = state.transitions[-1]
        assert last.kind == TransitionKind.ROLLBACK
        assert last.from_phase == RotationPhase.TRAFFIC_CANARY
        assert "success rate" in last.reason
        assert h.router.applied["payments"] == {"blue": 100, "green": 0}
        assert h.provisioning.decommissioned == ["green"]
        assert await h.registry.find_cluster("green") is None
        assert (await h.pointers.get_pointer("payments")).mirrors == {}
        assert h.replication.sources["green"] is None
        assert h.mesh.deleted == ["link-blue-green"]
        assert h.masters() == {"blue"}
        assert h.metrics.get_snapshot().rollbacks == {"rollback": 1}

    @pytest.mark.asyncio
    async def test_new_rotation_after_rollback(self, registered_harness):
        h = registered_harness
        h.metrics_provider.set_success_rate("payments", "green", 0.5)
        await h.start_rotation()
        await h.run_until("payments", RotationPhase.IDLE_STABLE)
        h.metrics_provider.set_success_rate("payments", "red", 1.0)

        rotation_id = await h.start_rotation(target="red")

        assert rotation_id == 2
        await drive_to_completion(h, rotation_id)
        assert (await h.registry.get_group("payments")).active_cluster_id == "red"


# =============================================================================
# Split brain
# =============================================================================


class TestSplitBrain:
    @pytest.mark.asyncio
    async def test_split_brain_faults_group(self, registered_harness):
        h = registered_harness
        await h.start_rotation()
        await h.run_until("payments", RotationPhase.DATA_SYNCING)
        h.publisher.force_master("green", "payments")

        state = await h.step()

        assert state.phase == RotationPhase.FAULT
        assert state.halted
        assert state.transitions[-1].kind == TransitionKind.FAULT
        alert = h.alerts.with_severity(ErrorSeverity.CRITICAL)[-1]
        assert alert.message.startswith("Group moved to FAULT")
        assert alert.details["error_code"] == "SPLIT_BRAIN"

        # FAULT is terminal for automation
        assert (await h.step()).phase == RotationPhase.FAULT

    @pytest.mark.asyncio
    async def test_resolve_fault_requires_single_master(self, registered_harness):
        h = registered_harness
        await h.start_rotation()
        await h.run_until("payments", RotationPhase.DATA_SYNCING)
        h.publisher.force_master("green", "payments")
        await h.step()

        with pytest.raises(InvariantViolation) as exc_info:
            await h.machine.resolve_fault("payments", operator="alice", reason="fenced")
        assert exc_info.value.rule == ViolationKind.SINGLE_MASTER

        h.publisher.release_master("green", "payments")
        state = await h.machine.resolve_fault("payments", operator="alice", reason="fenced green")

        assert state.phase == RotationPhase.IDLE_STABLE
        assert state.request is None
        assert not state.halted
        assert state.transitions[-1].kind == TransitionKind.RESOLVE
        assert state.transitions[-1].actor == "alice"
        assert (await h.registry.get_group("payments")).active_cluster_id == "blue"

    @pytest.mark.asyncio
    async def test_resolve_fault_outside_fault(self, registered_harness):
        h = registered_harness
        await h.start_rotation()

        with pytest.raises(InvalidStateTransitionError):
            await h.machine.resolve_fault("payments", operator="alice", reason="none")


# =============================================================================
# Crash and resume
# =============================================================================


class TestCrashResume:
    async def _run(self, crash: bool) -> RotationTestHarness:
        h = RotationTestHarness(RotationConfig(lag_window_seconds=10.0, canary_bake_seconds=10.0))
        await h.register_group()
        rotation_id = await h.start_rotation()
        await h.run_until("payments", RotationPhase.DATA_SYNCING)
        await h.step()

        if crash:
            h.restart()
            resumed = await h.machine.resume_all(start=False)
            assert [s.group_id for s in resumed] == ["payments"]
            assert resumed[0].phase == RotationPhase.DATA_SYNCING

        await drive_to_completion(h, rotation_id)
        return h

    @pytest.mark.asyncio
    async def test_resume_replays_nothing(self):
        uninterrupted = await self._run(crash=False)
        resumed = await self._run(crash=True)

        a = await uninterrupted.machine.get_state("payments")
        b = await resumed.machine.get_state("payments")
        assert transition_path(a) == transition_path(b)
        for fake in ("provisioning", "reconciliation", "mesh", "replication", "router"):
            assert getattr(uninterrupted, fake).keys() == getattr(resumed, fake).keys(), fake
        assert len(resumed.provisioning.calls_to("provision_cluster")) == 1
        assert len(resumed.mesh.calls_to("create_link")) == 1
        assert resumed.masters() == {"green"}

    @pytest.mark.asyncio
    async def test_resume_skips_idle_groups(self, registered_harness):
        h = registered_harness

        assert await h.machine.resume_all(start=False) == []

    @pytest.mark.asyncio
    async def test_interrupted_rollback_finishes_on_next_tick(self, registered_harness):
        h = registered_harness
        rotation_id = await h.start_rotation()
        await h.run_until("payments", RotationPhase.DATA_SYNCING)
        await h.step()
        h.mesh.fail("delete_link", times=5)

        with pytest.raises(ExternalCallFailure):
            await h.machine.rollback("payments", reason="operator abort", actor="alice")

        state = await h.machine.get_state("payments")
        assert state.unwinding == TransitionKind.ROLLBACK
        assert f"{rotation_id}:rollback:restore_traffic" in state.completed_actions

        h.restart()
        await h.machine.resume_all(start=False)
        state = await h.machine.tick("payments")

        assert state.phase == RotationPhase.IDLE_STABLE
        assert state.unwinding is None
        assert h.router.keys().count(f"{rotation_id}:rollback:restore_traffic") == 1
        assert h.mesh.deleted == ["link-blue-green"]


# =============================================================================
# Error paths
# =============================================================================


class TestStartRotationErrors:
    @pytest.mark.asyncio
    async def test_unknown_group(self, harness):
        with pytest.raises(GroupNotFoundError):
            await harness.start_rotation()

    @pytest.mark.asyncio
    async def test_rotation_in_progress(self, registered_harness):
        await registered_harness.start_rotation()

        with pytest.raises(RotationInProgressError):
            await registered_harness.start_rotation(target="red")

    @pytest.mark.asyncio
    async def test_target_is_active_cluster(self, registered_harness):
        with pytest.raises(InvalidTargetError):
            await registered_harness.start_rotation(target="blue")

    @pytest.mark.asyncio
    async def test_target_already_registered(self, registered_harness):
        await registered_harness.registry.register_cluster(ClusterDescriptor("green", "eu-west-1"))

        with pytest.raises(InvalidTargetError):
            await registered_harness.start_rotation()

    @pytest.mark.asyncio
    async def test_pointer_master_is_not_active_cluster(self, registered_harness):
        h = registered_harness
        h.pointers.set_members("payments", ["blue", "red"])
        await h.pointers.enter_maintenance("payments")
        await h.pointers.set_master("payments", "red")
        await h.pointers.exit_maintenance("payments")

        with pytest.raises(InvariantViolation) as exc_info:
            await h.start_rotation()

        assert exc_info.value.rule == ViolationKind.SINGLE_MASTER

    @pytest.mark.asyncio
    async def test_start_sets_first_master(self, harness):
        await harness.registry.register_group(
            "payments", "payments-api", ClusterDescriptor("blue", "eu-west-1")
        )

        await harness.start_rotation()

        assert (await harness.pointers.get_pointer("payments")).master == "blue"
        assert harness.masters() == {"blue"}
        assert (await harness.registry.get_cluster("green")).role == ClusterRole.TARGET


class TestOperatorErrors:
    @pytest.mark.asyncio
    async def test_advance_without_rotation(self, registered_harness):
        with pytest.raises(RotationNotFoundError):
            await registered_harness.machine.advance("payments")

    @pytest.mark.asyncio
    async def test_confirm_wrong_rotation(self, registered_harness):
        h = registered_harness
        rotation_id = await h.start_rotation()

        with pytest.raises(RotationNotFoundError):
            await h.machine.confirm_external_routing("payments", rotation_id + 1)

    @pytest.mark.asyncio
    async def test_confirm_before_promoted(self, registered_harness):
        h = registered_harness
        rotation_id = await h.start_rotation()
        await h.run_until("payments", RotationPhase.DATA_SYNCING)

        with pytest.raises(InvalidStateTransitionError):
            await h.machine.confirm_external_routing("payments", rotation_id)

    @pytest.mark.asyncio
    async def test_confirm_is_idempotent(self, registered_harness):
        h = registered_harness
        rotation_id = await h.start_rotation()
        await h.run_until("payments", RotationPhase.PROMOTED)

        first = await h.machine.confirm_external_routing("payments", rotation_id)
        second = await h.machine.confirm_external_routing("payments", rotation_id)

        assert first.external_routing_confirmed
        assert second.version == first.version

    @pytest.mark.asyncio
    async def test_get_state_unknown(self, registered_harness):
        with pytest.raises(RotationNotFoundError):
            await registered_harness.machine.get_state("payments")


# =============================================================================
# Status and polling
# =============================================================================


class TestStatusAndPolling:
    @pytest.mark.asyncio
    async def test_status_of_idle_group(self, registered_harness):
        status = await registered_harness.machine.get_status("payments")

        assert status.phase == RotationPhase.IDLE_STABLE
        assert status.rotation_id is None
        assert status.pointer.master == "blue"
        assert status.split is None

    @pytest.mark.asyncio
    async def test_status_unknown_group(self, harness):
        with pytest.raises(GroupNotFoundError):
            await harness.machine.get_status("nope")

    @pytest.mark.asyncio
    async def test_status_during_canary(self, registered_harness):
        h = registered_harness
        rotation_id = await h.start_rotation()
        await h.run_until("payments", RotationPhase.TRAFFIC_CANARY)
        await h.step()

        status = await h.machine.get_status("payments")

        assert status.rotation_id == rotation_id
        assert status.canary_weight == 10
        assert status.source_cluster_id == "blue"
        assert status.target_cluster_id == "green"
        assert status.to_dict()["phase"] == "traffic_canary"

    @pytest.mark.asyncio
    async def test_run_returns_when_rotation_ends(self, registered_harness):
        h = registered_harness
        h.metrics_provider.set_success_rate("payments", "green", 0.5)
        await h.start_rotation()

        await asyncio.wait_for(h.machine.run("payments"), timeout=10)

        assert (await h.machine.get_state("payments")).request is None

    @pytest.mark.asyncio
    async def test_start_and_stop_polling(self, registered_harness):
        h = registered_harness
        h.provisioning.auto_ready = False
        await h.start_rotation()

        task = h.machine.start("payments")
        assert h.machine.start("payments") is task
        assert h.machine.is_running("payments")
        for _ in range(5):
            await asyncio.sleep(0)

        await h.machine.shutdown()

        assert not h.machine.is_running("payments")
        assert task.cancelled() or task.done()

    @pytest.mark.asyncio
    async def test_resume_all_starts_tasks(self, registered_harness):
        h = registered_harness
        h.provisioning.auto_ready = False
        await h.start_rotation()
        await h.machine.tick("payments")

        states = await h.machine.resume_all()

        assert [s.phase for s in states] == [RotationPhase.PROVISIONING]
        assert h.machine.is_running("payments")
        await h.machine.shutdown()


# =============================================================================
# Transient collaborator failures
# =============================================================================


class TestTransientFailures:
    @pytest.mark.asyncio
    async def test_source_check_retried_during_switchover(self, registered_harness):
        h = registered_harness
        await h.start_rotation()
        await h.run_until("payments", RotationPhase.SWITCHOVER_LOCKED)
        before = len(h.replication.calls_to("get_replication_source"))
        h.replication.fail("get_replication_source", times=1)

        state = await h.step()

        assert not state.halted
        assert len(h.replication.calls_to("get_replication_source")) >= before + 2
        state = await h.run_until("payments", RotationPhase.PROMOTED)
        assert not state.halted
        assert h.masters() == {"green"}

    @pytest.mark.asyncio
    async def test_alerting_errors_reach_alert_sink(self, registered_harness):
        h = registered_harness

        async def unconfirmed_demotion():
            raise ConflictingMasterError("payments", "green")

        with pytest.raises(ConflictingMasterError):
            await h.error_handler.execute_with_retry(
                unconfirmed_demotion, operation_name="pointers.demote"
            )

        alert = h.alerts.with_severity(ErrorSeverity.CRITICAL)[-1]
        assert alert.group_id == "payments"
        assert alert.details["error_code"] == "CONFLICTING_MASTER"

    @pytest.mark.asyncio
    async def test_transient_errors_are_not_alerted(self, registered_harness):
        h = registered_harness
        h.mesh.fail("create_link", times=5)
        await h.start_rotation()
        await h.run_until("payments", RotationPhase.MESH_LINKING)
        await h.step()

        assert len(h.mesh.calls_to("create_link")) >= 5
        assert h.alerts.with_severity(ErrorSeverity.WARNING) == []
        assert h.alerts.with_severity(ErrorSeverity.ERROR) == []
