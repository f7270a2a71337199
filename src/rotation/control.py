"""
Operator control surface.

Thin boundary in front of the rotation state machine. Requests are
validated here (pydantic commands, split weights, rotation ownership) so
malformed input never reaches the state machine, and every call returns a
``ControlResponse``: either ``ok`` with data, or an error carrying the
error code, the violated rule and the phase that caused the rejection.

Example:
    >>> control = RotationControlPlane(machine, registry, traffic)
    >>> response = await control.start_rotation(
    ...     StartRotationCommand(group_id="payments", cluster_id="green", region="eu-west-1")
    ... )
    >>> response.ok
    True
    >>> response = await control.set_split(
    ...     SetSplitCommand(group_id="payments", cluster_a="blue", weight_a=70,
    ...                     cluster_b="green", weight_b=20)
    ... )
    >>> response.error["error_code"]
    'INVALID_WEIGHT'
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from rotation.enforcer import SafetyInvariantEnforcer, TransitionCheck
from rotation.exceptions import ClusterNotFoundError, RotationError, RotationInProgressError
from rotation.models import ClusterDescriptor, ClusterRole
from rotation.observability import ATTR_GROUP_ID, Tracer, create_tracer
from rotation.registry import ClusterRegistry
from rotation.state_machine import RotationStateMachine
from rotation.traffic import TrafficWeightController, validate_split

logger = logging.getLogger(__name__)


class StartRotationCommand(BaseModel):
    """Request to rotate a group onto a new cluster."""

    model_config = ConfigDict(frozen=True)

    group_id: str = Field(..., min_length=1, description="Group to rotate")
    cluster_id: str = Field(..., min_length=1, description="Identifier of the new cluster")
    region: str = Field(..., min_length=1, description="Region of the new cluster")
    endpoints: dict[str, str] = Field(
        default_factory=dict,
        description="Named endpoints of the new cluster",
    )
    labels: dict[str, str] = Field(default_factory=dict, description="Free-form labels")
    requested_by: str | None = Field(default=None, description="Operator asking for the rotation")
    profile_ref: str | None = Field(
        default=None,
        description="Reconciliation profile override for bootstrapping",
    )

    def to_descriptor(self) -> ClusterDescriptor:
        return ClusterDescriptor(
            cluster_id=self.cluster_id,
            region=self.region,
            role=ClusterRole.TARGET,
            endpoints=dict(self.endpoints),
            labels=dict(self.labels),
            group_id=self.group_id,
        )


class SetSplitCommand(BaseModel):
    """
    Manual traffic split.

    Weights are kept as given (no coercion) and checked by
    ``validate_split`` at the boundary.
    """

    model_config = ConfigDict(frozen=True)

    group_id: str = Field(..., min_length=1, description="Group whose traffic is split")
    cluster_a: str = Field(..., description="First cluster")
    weight_a: Any = Field(..., description="Weight of the first cluster (0..100)")
    cluster_b: str = Field(..., description="Second cluster")
    weight_b: Any = Field(..., description="Weight of the second cluster (0..100)")


class ControlResponse(BaseModel):
    """
    Result of a control surface call.

    On failure ``error`` holds the ``RotationError.to_dict()`` of the
    rejection, including ``error_code``, ``rule`` and ``phase``.
    """

    model_config = ConfigDict(frozen=True)

    ok: bool = Field(..., description="Whether the call succeeded")
    data: dict[str, Any] | None = Field(default=None, description="Result payload")
    error: dict[str, Any] | None = Field(default=None, description="Rejection details")

    @classmethod
    def success(cls, data: dict[str, Any] | None = None) -> ControlResponse:
        return cls(ok=True, data=data)

    @classmethod
    def failure(cls, error: RotationError) -> ControlResponse:
        return cls(ok=False, error=error.to_dict())


class RotationControlPlane:
    """
    Operator-facing API over a ``RotationStateMachine``.

    Args:
        machine: The state machine driving rotations
        registry: Cluster registry (cluster listings)
        traffic: Traffic weight controller (manual splits)
        enforcer: Checks manual splits against canary monotonicity
        auto_start: Start the group's polling task when a rotation is accepted
    """

    def __init__(
        self,
        machine: RotationStateMachine,
        registry: ClusterRegistry,
        traffic: TrafficWeightController,
        *,
        enforcer: SafetyInvariantEnforcer | None = None,
        auto_start: bool = True,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._machine = machine
        self._registry = registry
        self._traffic = traffic
        self._enforcer = enforcer or SafetyInvariantEnforcer(machine.config.lag_threshold_bytes)
        self._auto_start = auto_start
        self._tracer = tracer or create_tracer(__name__, enable_tracing)

    async def start_rotation(self, command: StartRotationCommand) -> ControlResponse:
        async def call() -> dict[str, Any]:
            status = await self._machine.get_status(command.group_id)
            if status.rotation_id is not None:
                raise RotationInProgressError(command.group_id, status.rotation_id, status.phase)
            request = await self._machine.start_rotation(
                command.group_id,
                command.to_descriptor(),
                requested_by=command.requested_by,
                profile_ref=command.profile_ref,
            )
            if self._auto_start:
                self._machine.start(command.group_id)
            return request.to_dict()

        return await self._respond("start_rotation", command.group_id, call)

    async def get_status(self, group_id: str) -> ControlResponse:
        async def call() -> dict[str, Any]:
            return (await self._machine.get_status(group_id)).to_dict()

        return await self._respond("get_status", group_id, call)

    async def promote(self, group_id: str, *, operator: str) -> ControlResponse:
        """Force the forward transition past a gated wait; the enforcer still applies."""

        async def call() -> dict[str, Any]:
            state = await self._machine.advance(group_id, force=True, actor=operator)
            return state.to_dict()

        return await self._respond("promote", group_id, call)

    async def rollback(self, group_id: str, *, operator: str, reason: str) -> ControlResponse:
        async def call() -> dict[str, Any]:
            result = await self._machine.rollback(group_id, reason=reason, actor=operator)
            return result.to_dict()

        return await self._respond("rollback", group_id, call)

    async def emergency_rollback(self, group_id: str, *, operator: str, reason: str) -> ControlResponse:
        async def call() -> dict[str, Any]:
            result = await self._machine.emergency_rollback(group_id, reason=reason, actor=operator)
            return result.to_dict()

        return await self._respond("emergency_rollback", group_id, call)

    async def confirm_external_routing(self, group_id: str, rotation_id: int) -> ControlResponse:
        async def call() -> dict[str, Any]:
            state = await self._machine.confirm_external_routing(group_id, rotation_id)
            return state.to_dict()

        return await self._respond("confirm_external_routing", group_id, call)

    async def set_split(self, command: SetSplitCommand) -> ControlResponse:
        """
        Apply a manual split.

        During a rotation the target's weight may not decrease; use
        ``rollback`` to move traffic back.
        """

        async def call() -> dict[str, Any]:
            group_id = command.group_id
            validate_split(
                command.cluster_a,
                command.weight_a,
                command.cluster_b,
                command.weight_b,
                group_id=group_id,
            )
            for cluster_id in (command.cluster_a, command.cluster_b):
                descriptor = await self._registry.get_cluster(cluster_id)
                if descriptor.group_id not in (None, group_id):
                    raise ClusterNotFoundError(cluster_id, group_id)

            status = await self._machine.get_status(group_id)
            target = status.target_cluster_id
            if target in (command.cluster_a, command.cluster_b):
                weight = command.weight_a if target == command.cluster_a else command.weight_b
                self._enforcer.enforce(
                    TransitionCheck(
                        group_id=group_id,
                        state=await self._machine.get_state(group_id),
                        split=status.split,
                        target_cluster_id=target,
                        proposed_target_weight=weight,
                    )
                )
            split = await self._traffic.set_split(
                group_id,
                command.cluster_a,
                command.weight_a,
                command.cluster_b,
                command.weight_b,
            )
            return split.to_dict()

        return await self._respond("set_split", command.group_id, call)

    async def list_clusters(self, group_id: str | None = None) -> ControlResponse:
        async def call() -> dict[str, Any]:
            clusters = await self._registry.list_clusters(group_id)
            return {"clusters": [c.to_dict() for c in clusters]}

        return await self._respond("list_clusters", group_id, call)

    async def get_cluster(self, cluster_id: str) -> ControlResponse:
        async def call() -> dict[str, Any]:
            return (await self._registry.get_cluster(cluster_id)).to_dict()

        return await self._respond("get_cluster", None, call)

    async def _respond(
        self,
        operation: str,
        group_id: str | None,
        call: Callable[[], Awaitable[dict[str, Any]]],
    ) -> ControlResponse:
        with self._tracer.span(f"rotation.control.{operation}", {ATTR_GROUP_ID: group_id or ""}):
            try:
                data = await call()
            except RotationError as e:
                logger.warning("Control call %s rejected for group %s: %s", operation, group_id, e)
                return ControlResponse.failure(e)
        return ControlResponse.success(data)


__all__ = [
    "ControlResponse",
    "RotationControlPlane",
    "SetSplitCommand",
    "StartRotationCommand",
]
