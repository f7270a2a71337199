"""
Unit tests for rollback and emergency rollback.

Tests cover:
- Rollback from every phase before switchover
- Rollback / emergency rollback refused from the wrong phases
- Emergency rollback restoring the source as the only master
- Divergence reporting and the resulting alert severity
- Unconfirmed demotion moving the group to FAULT
- Interrupted unwinds finishing on the next tick
- Rejected rollbacks leaving the polling task running
"""

import asyncio

import pytest

from rotation.exceptions import (
    ConflictingMasterError,
    ErrorSeverity,
    ExternalCallFailure,
    RollbackNotPermittedError,
    RotationNotFoundError,
)
from rotation.models import ClusterRole, RotationConfig, RotationPhase, TransitionKind
from rotation.testing import RotationTestHarness

ROLLBACK_STEPS = (
    "restore_traffic",
    "disable_mirror",
    "detach_replication",
    "delete_link",
    "decommission_target",
    "unregister_target",
)

EMERGENCY_STEPS = (
    "block_writes",
    "demote_target",
    "restore_master",
    "resume_writes",
    "restore_traffic",
    "restore_roles",
)


# =============================================================================
# Rollback
# =============================================================================


class TestRollback:
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "phase",
        [
            RotationPhase.PROVISIONING,
            RotationPhase.BOOTSTRAPPING,
            RotationPhase.MESH_LINKING,
            RotationPhase.DATA_SYNCING,
            RotationPhase.TRAFFIC_CANARY,
        ],
    )
    async def test_rollback_from_phase(self, registered_harness, phase):
        h = registered_harness
        rotation_id = await h.start_rotation()
        await h.run_until("payments", phase)

        result = await h.machine.rollback("payments", reason="operator abort", actor="alice")

        state = await h.machine.get_state("payments")
        assert result.rotation_id == rotation_id
        assert result.from_phase == phase
        assert result.source_cluster_id == "blue"
        assert result.target_cluster_id == "green"
        assert result.steps == ROLLBACK_STEPS
        assert state.phase == RotationPhase.IDLE_STABLE
        assert state.request is None
        assert state.transitions[-1].kind == TransitionKind.ROLLBACK
        assert state.transitions[-1].actor == "alice"
        assert h.masters() == {"blue"}
        assert h.router.applied["payments"] == {"blue": 100, "green": 0}
        assert await h.registry.find_cluster("green") is None
        assert (await h.registry.get_group("payments")).active_cluster_id == "blue"

    @pytest.mark.asyncio
    async def test_rollback_before_first_tick(self, registered_harness):
        h = registered_harness
        await h.start_rotation()

        result = await h.machine.rollback("payments", reason="changed my mind")

        assert result.from_phase == RotationPhase.IDLE_STABLE
        assert h.provisioning.provisioned == []
        assert h.mesh.deleted == []

    @pytest.mark.asyncio
    async def test_rollback_keeps_target_when_configured(self):
        h = RotationTestHarness(RotationConfig(decommission_on_rollback=False))
        await h.register_group()
        await h.start_rotation()
        await h.run_until("payments", RotationPhase.BOOTSTRAPPING)

        await h.machine.rollback("payments", reason="operator abort")

        assert h.provisioning.decommissioned == []
        assert h.provisioning.calls_to("decommission_cluster") == []

    @pytest.mark.asyncio
    async def test_rollback_refused_after_switchover(self, registered_harness):
        h = registered_harness
        await h.start_rotation()
        await h.run_until("payments", RotationPhase.PROMOTED)

        with pytest.raises(RollbackNotPermittedError) as exc_info:
            await h.machine.rollback("payments", reason="too late")

        assert exc_info.value.group_id == "payments"
        assert (await h.machine.get_state("payments")).phase == RotationPhase.PROMOTED
        assert h.masters() == {"green"}

    @pytest.mark.asyncio
    async def test_rollback_without_rotation(self, registered_harness):
        with pytest.raises(RotationNotFoundError):
            await registered_harness.machine.rollback("payments", reason="nothing to do")

    @pytest.mark.asyncio
    async def test_rollback_stops_polling(self, registered_harness):
        h = registered_harness
        h.provisioning.auto_ready = False
        await h.start_rotation()
        h.machine.start("payments")

        await h.machine.rollback("payments", reason="operator abort")

        assert not h.machine.is_running("payments")
        assert (await h.machine.get_state("payments")).phase == RotationPhase.IDLE_STABLE

    @pytest.mark.asyncio
    async def test_rollback_records_metrics(self, registered_harness):
        h = registered_harness
        await h.start_rotation()
        await h.run_until("payments", RotationPhase.MESH_LINKING)

        await h.machine.rollback("payments", reason="operator abort")

        snapshot = h.metrics.get_snapshot()
        assert snapshot.rollbacks == {"rollback": 1}
        assert "payments" not in snapshot.active_groups


# =============================================================================
# Emergency rollback
# =============================================================================


class TestEmergencyRollback:
    @pytest.mark.asyncio
    async def test_from_promoted_restores_source(self, registered_harness):
        h = registered_harness
        rotation_id = await h.start_rotation()
        await h.run_until("payments", RotationPhase.PROMOTED)
        await h.step()
        h.replication.add_unreplicated_writes("green", "blue", "w1", "w2")

        result = await h.machine.emergency_rollback(
            "payments", reason="target misbehaving", actor="alice"
        )

        state = await h.machine.get_state("payments")
        pointer = await h.pointers.get_pointer("payments")
        assert result.rotation_id == rotation_id
        assert result.from_phase == RotationPhase.PROMOTED
        assert result.steps == EMERGENCY_STEPS
        assert result.divergence.writes == ("w1", "w2")
        assert result.divergence.from_cluster_id == "green"
        assert result.divergence.to_cluster_id == "blue"
        assert result.divergence.since is not None
        assert pointer.master == "blue"
        assert pointer.maintenance is False
        assert h.masters() == {"blue"}
        assert h.router.applied["payments"] == {"blue": 100, "green": 0}
        assert (await h.registry.get_cluster("green")).role == ClusterRole.IDLE
        assert (await h.registry.get_cluster("blue")).role == ClusterRole.ACTIVE
        assert (await h.registry.get_group("payments")).active_cluster_id == "blue"
        assert state.phase == RotationPhase.IDLE_STABLE
        assert state.transitions[-1].kind == TransitionKind.EMERGENCY_ROLLBACK

        alert = h.alerts.alerts[-1]
        assert alert.severity == ErrorSeverity.CRITICAL
        assert alert.details["divergence"]["writes"] == ["w1", "w2"]

    @pytest.mark.asyncio
    async def test_from_switchover_locked_before_flip(self, registered_harness):
        h = registered_harness
        await h.start_rotation()
        await h.run_until("payments", RotationPhase.SWITCHOVER_LOCKED)

        result = await h.machine.emergency_rollback("payments", reason="abort switchover")

        assert result.divergence.is_empty
        assert result.divergence.since is None
        assert h.masters() == {"blue"}
        assert h.alerts.alerts[-1].severity == ErrorSeverity.WARNING
        assert h.replication.calls_to("list_unreplicated_writes") == []

    @pytest.mark.asyncio
    async def test_refused_before_switchover(self, registered_harness):
        h = registered_harness
        await h.start_rotation()
        await h.run_until("payments", RotationPhase.DATA_SYNCING)

        with pytest.raises(RollbackNotPermittedError):
            await h.machine.emergency_rollback("payments", reason="wrong path")

    @pytest.mark.asyncio
    async def test_unconfirmed_demotion_faults(self, registered_harness):
        h = registered_harness
        await h.start_rotation()
        await h.run_until("payments", RotationPhase.PROMOTED)
        h.publisher.force_master("green", "payments")

        with pytest.raises(ConflictingMasterError) as exc_info:
            await h.machine.emergency_rollback("payments", reason="target misbehaving")

        state = await h.machine.get_state("payments")
        assert exc_info.value.group_id == "payments"
        assert state.phase == RotationPhase.FAULT
        assert state.halted
        assert state.unwinding is None
        assert h.alerts.with_severity(ErrorSeverity.CRITICAL)[-1].message.startswith(
            "Group moved to FAULT"
        )

    @pytest.mark.asyncio
    async def test_interrupted_emergency_rollback_resumes(self, registered_harness):
        h = registered_harness
        rotation_id = await h.start_rotation()
        await h.run_until("payments", RotationPhase.PROMOTED)
        h.replication.fail("list_unreplicated_writes", times=5)

        with pytest.raises(ExternalCallFailure):
            await h.machine.emergency_rollback("payments", reason="target misbehaving")

        state = await h.machine.get_state("payments")
        assert state.unwinding == TransitionKind.EMERGENCY_ROLLBACK
        assert state.completed_actions[-1] == f"{rotation_id}:emergency_rollback:block_writes"
        assert h.masters() == set()

        state = await h.machine.tick("payments")

        assert state.phase == RotationPhase.IDLE_STABLE
        assert state.transitions[-1].kind == TransitionKind.EMERGENCY_ROLLBACK
        assert h.masters() == {"blue"}
        assert h.metrics.get_snapshot().rollbacks == {"emergency_rollback": 1}


# =============================================================================
# Rejected rollbacks leave polling alone
# =============================================================================


def install_polling_task(h: RotationTestHarness, group_id: str = "payments") -> asyncio.Task:
    """Register a long-lived stand-in for the group's polling task."""
    task = asyncio.create_task(asyncio.Event().wait())
    h.machine._tasks[group_id] = task
    return task


class TestRejectedRollbackKeepsPolling:
    @pytest.mark.asyncio
    async def test_rollback_rejected_after_switchover(self, registered_harness):
        h = registered_harness
        await h.start_rotation()
        await h.run_until("payments", RotationPhase.PROMOTED)
        task = install_polling_task(h)

        response = await h.control.rollback("payments", operator="alice", reason="too late")

        state = await h.machine.get_state("payments")
        assert response.error["error_code"] == "ROLLBACK_NOT_PERMITTED"
        assert response.error["phase"] == "promoted"
        assert h.machine.is_running("payments")
        assert not task.cancelled()
        assert state.phase == RotationPhase.PROMOTED
        assert state.unwinding is None
        await h.machine.shutdown()

    @pytest.mark.asyncio
    async def test_emergency_rollback_rejected_before_switchover(self, registered_harness):
        h = registered_harness
        await h.start_rotation()
        await h.run_until("payments", RotationPhase.TRAFFIC_CANARY)
        install_polling_task(h)

        with pytest.raises(RollbackNotPermittedError):
            await h.machine.emergency_rollback("payments", reason="wrong path")

        assert h.machine.is_running("payments")
        assert (await h.machine.get_state("payments")).phase == RotationPhase.TRAFFIC_CANARY
        await h.machine.shutdown()

    @pytest.mark.asyncio
    async def test_permitted_rollback_stops_polling(self, registered_harness):
        h = registered_harness
        await h.start_rotation()
        await h.run_until("payments", RotationPhase.MESH_LINKING)
        task = install_polling_task(h)

        await h.machine.rollback("payments", reason="operator abort")

        assert not h.machine.is_running("payments")
        assert task.cancelled()
