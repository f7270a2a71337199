"""
Unit tests for RotationControlPlane.

Tests cover:
- Command validation with pydantic
- Successful calls returning data
- Rejections carrying error code, violated rule and phase
- Manual splits checked against weight validation and canary monotonicity
- Cluster listings
"""

import pytest
from pydantic import ValidationError

from rotation.control import (
    ControlResponse,
    RotationControlPlane,
    SetSplitCommand,
    StartRotationCommand,
)
from rotation.exceptions import GroupNotFoundError
from rotation.models import ClusterRole, RotationPhase
from rotation.observability import MockTracer

# =============================================================================
# Helpers
# =============================================================================


def start_command(cluster_id: str = "green", **kwargs) -> StartRotationCommand:
    return StartRotationCommand(group_id="payments", cluster_id=cluster_id, region="eu-west-1", **kwargs)


def split_command(weight_a, weight_b, cluster_a="blue", cluster_b="green") -> SetSplitCommand:
    return SetSplitCommand(
        group_id="payments",
        cluster_a=cluster_a,
        weight_a=weight_a,
        cluster_b=cluster_b,
        weight_b=weight_b,
    )


# =============================================================================
# Commands
# =============================================================================


class TestCommands:
    def test_start_command_requires_ids(self):
        with pytest.raises(ValidationError):
            StartRotationCommand(group_id="", cluster_id="green", region="eu-west-1")

    def test_start_command_builds_target_descriptor(self):
        descriptor = start_command(labels={"tier": "gold"}).to_descriptor()

        assert descriptor.cluster_id == "green"
        assert descriptor.role == ClusterRole.TARGET
        assert descriptor.group_id == "payments"
        assert descriptor.labels == {"tier": "gold"}

    def test_split_command_keeps_weights_as_given(self):
        command = split_command("50", 50.0)

        assert command.weight_a == "50"
        assert command.weight_b == 50.0

    def test_responses(self):
        assert ControlResponse.success({"a": 1}).ok
        failure = ControlResponse.failure(GroupNotFoundError("payments"))
        assert not failure.ok
        assert failure.error["error_code"] == "GROUP_NOT_FOUND"


# =============================================================================
# Rotations
# =============================================================================


class TestRotationCalls:
    @pytest.mark.asyncio
    async def test_start_rotation(self, registered_harness):
        response = await registered_harness.control.start_rotation(
            start_command(requested_by="alice")
        )

        assert response.ok
        assert response.data["rotation_id"] == 1
        assert response.data["target_cluster_id"] == "green"
        assert response.data["requested_by"] == "alice"
        assert not registered_harness.machine.is_running("payments")

    @pytest.mark.asyncio
    async def test_start_rotation_twice(self, registered_harness):
        await registered_harness.control.start_rotation(start_command())
        await registered_harness.machine.tick("payments")

        response = await registered_harness.control.start_rotation(start_command("red"))

        assert not response.ok
        assert response.error["error_code"] == "ROTATION_IN_PROGRESS"
        assert response.error["phase"] == "provisioning"
        assert response.error["rotation_id"] == 1

    @pytest.mark.asyncio
    async def test_start_rotation_unknown_group(self, harness):
        response = await harness.control.start_rotation(start_command())

        assert not response.ok
        assert response.error["error_code"] == "GROUP_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_start_rotation_auto_starts_polling(self, registered_harness):
        h = registered_harness
        h.provisioning.auto_ready = False
        control = RotationControlPlane(h.machine, h.registry, h.traffic, enable_tracing=False)

        response = await control.start_rotation(start_command())

        assert response.ok
        assert h.machine.is_running("payments")
        await h.machine.shutdown()

    @pytest.mark.asyncio
    async def test_get_status(self, registered_harness):
        response = await registered_harness.control.get_status("payments")

        assert response.ok
        assert response.data["phase"] == "idle_stable"
        assert response.data["pointer"]["master"] == "blue"

    @pytest.mark.asyncio
    async def test_promote_vetoed_by_lag_gate(self, registered_harness):
        h = registered_harness
        await h.control.start_rotation(start_command())
        await h.run_until("payments", RotationPhase.TRAFFIC_CANARY)
        h.replication.set_lag("green", 5000)

        response = await h.control.promote("payments", operator="alice")

        assert not response.ok
        assert response.error["error_code"] == "INVARIANT_VIOLATION"
        assert response.error["rule"] == "LagGate"
        assert response.error["phase"] == "traffic_canary"
        assert response.error["classification"]["category"] == "safety"

    @pytest.mark.asyncio
    async def test_promote(self, registered_harness):
        h = registered_harness
        await h.control.start_rotation(start_command())
        await h.run_until("payments", RotationPhase.DATA_SYNCING)

        response = await h.control.promote("payments", operator="alice")

        assert response.ok
        assert response.data["phase"] == "traffic_canary"
        assert response.data["transitions"][-1]["kind"] == "forced"

    @pytest.mark.asyncio
    async def test_rollback(self, registered_harness):
        h = registered_harness
        await h.control.start_rotation(start_command())
        await h.run_until("payments", RotationPhase.MESH_LINKING)

        response = await h.control.rollback("payments", operator="alice", reason="abort")

        assert response.ok
        assert response.data["from_phase"] == "mesh_linking"
        assert response.data["steps"][0] == "restore_traffic"

    @pytest.mark.asyncio
    async def test_emergency_rollback_refused_before_switchover(self, registered_harness):
        h = registered_harness
        await h.control.start_rotation(start_command())
        await h.run_until("payments", RotationPhase.DATA_SYNCING)

        response = await h.control.emergency_rollback("payments", operator="alice", reason="abort")

        assert not response.ok
        assert response.error["error_code"] == "ROLLBACK_NOT_PERMITTED"
        assert response.error["phase"] == "data_syncing"

    @pytest.mark.asyncio
    async def test_confirm_external_routing(self, registered_harness):
        h = registered_harness
        started = await h.control.start_rotation(start_command())
        rotation_id = started.data["rotation_id"]
        await h.run_until("payments", RotationPhase.PROMOTED)

        wrong = await h.control.confirm_external_routing("payments", rotation_id + 1)
        right = await h.control.confirm_external_routing("payments", rotation_id)

        assert wrong.error["error_code"] == "ROTATION_NOT_FOUND"
        assert right.ok
        assert right.data["external_routing_confirmed"] is True


# =============================================================================
# Manual splits
# =============================================================================


class TestSetSplit:
    @pytest.mark.asyncio
    async def test_invalid_weights_rejected(self, registered_harness):
        h = registered_harness
        await h.control.start_rotation(start_command())

        response = await h.control.set_split(split_command(70, 20))

        assert not response.ok
        assert response.error["error_code"] == "INVALID_WEIGHT"
        assert h.router.calls == []

    @pytest.mark.asyncio
    async def test_unknown_cluster_rejected(self, registered_harness):
        response = await registered_harness.control.set_split(split_command(50, 50, cluster_b="nope"))

        assert response.error["error_code"] == "CLUSTER_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_target_weight_may_not_decrease(self, registered_harness):
        h = registered_harness
        await h.control.start_rotation(start_command())
        await h.run_until("payments", RotationPhase.TRAFFIC_CANARY)
        await h.step()

        response = await h.control.set_split(split_command(95, 5))

        assert not response.ok
        assert response.error["rule"] == "CanaryMonotonicity"
        assert response.error["phase"] == "traffic_canary"
        assert h.router.applied["payments"] == {"blue": 90, "green": 10}

    @pytest.mark.asyncio
    async def test_target_weight_may_increase(self, registered_harness):
        h = registered_harness
        await h.control.start_rotation(start_command())
        await h.run_until("payments", RotationPhase.TRAFFIC_CANARY)
        await h.step()

        response = await h.control.set_split(split_command(60, 40))

        assert response.ok
        assert response.data["weights"] == {"blue": 60, "green": 40}
        assert h.router.applied["payments"] == {"blue": 60, "green": 40}


# =============================================================================
# Clusters
# =============================================================================


class TestClusterQueries:
    @pytest.mark.asyncio
    async def test_list_clusters(self, registered_harness):
        h = registered_harness
        await h.control.start_rotation(start_command())

        response = await h.control.list_clusters("payments")

        clusters = response.data["clusters"]
        assert [c["cluster_id"] for c in clusters] == ["blue", "green"]
        assert [c["role"] for c in clusters] == ["active", "target"]

    @pytest.mark.asyncio
    async def test_get_cluster(self, registered_harness):
        found = await registered_harness.control.get_cluster("blue")
        missing = await registered_harness.control.get_cluster("nope")

        assert found.data["role"] == "active"
        assert missing.error["error_code"] == "CLUSTER_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_calls_are_traced(self, registered_harness):
        h = registered_harness
        tracer = MockTracer()
        control = RotationControlPlane(h.machine, h.registry, h.traffic, auto_start=False, tracer=tracer)

        await control.get_status("payments")
        await control.list_clusters()

        assert tracer.span_names == ["rotation.control.get_status", "rotation.control.list_clusters"]
