"""
Safety invariant enforcer.

Consulted before every phase transition and before write pointer and
traffic mutations that could break a data-consistency rule. The enforcer
is stateless: every decision is made from the snapshot it is given.

Rules are checked in a fixed order and the first violation wins:

1. SPLIT_BRAIN: more than one cluster reports itself as master. This is
   raised as ``SplitBrainFault`` and moves the group to FAULT.
2. SINGLE_MASTER: the proposed master differs from the current one while
   writes are not blocked.
3. BLIND_MIRROR: DATA_SYNCING begins, or a mirror is enabled, before the
   mesh link was confirmed.
4. LAG_GATE: SWITCHOVER_LOCKED begins while lag is above the threshold,
   unknown, or the link is down.
5. CANARY_MONOTONICITY: the target weight decreases outside a rollback.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime

from rotation.exceptions import InvalidStateTransitionError, InvariantViolation, SplitBrainFault
from rotation.models import (
    ReplicationStatus,
    RotationPhase,
    RotationState,
    TrafficSplit,
    Veto,
    ViolationKind,
    WritePointer,
    utc_now,
)
from rotation.observability import (
    ATTR_GROUP_ID,
    ATTR_PHASE,
    ATTR_PROPOSED_PHASE,
    ATTR_VIOLATION_RULE,
    Tracer,
    create_tracer,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TransitionCheck:
    """
    Snapshot the enforcer decides on.

    Attributes:
        group_id: Group being checked.
        state: Current rotation state, if the group has one.
        proposed_phase: Phase the transition would enter (None for a bare mutation).
        pointer: Current write pointer.
        replication: Current replication observation of the target.
        split: Current traffic split.
        observed_masters: Clusters reporting themselves as write master.
        proposed_master: Master a pointer mutation would install.
        target_cluster_id: Cluster whose weight is checked for monotonicity.
        proposed_target_weight: Weight a traffic mutation would give the target.
        enabling_mirror: The mutation enables a mirror write path.
        is_rollback: The mutation belongs to an explicit rollback.
    """

    group_id: str
    state: RotationState | None = None
    proposed_phase: RotationPhase | None = None
    pointer: WritePointer | None = None
    replication: ReplicationStatus | None = None
    split: TrafficSplit | None = None
    observed_masters: frozenset[str] = field(default_factory=frozenset)
    proposed_master: str | None = None
    target_cluster_id: str | None = None
    proposed_target_weight: int | None = None
    enabling_mirror: bool = False
    is_rollback: bool = False

    @property
    def current_phase(self) -> RotationPhase:
        return self.state.phase if self.state else RotationPhase.IDLE_STABLE


class SafetyInvariantEnforcer:
    """
    Evaluates the safety rules for a proposed transition or mutation.

    Example:
        >>> enforcer = SafetyInvariantEnforcer(lag_threshold_bytes=1024)
        >>> veto = enforcer.evaluate(
        ...     TransitionCheck(
        ...         group_id="payments",
        ...         state=state,
        ...         proposed_phase=RotationPhase.SWITCHOVER_LOCKED,
        ...         replication=ReplicationStatus("green", "blue", 5000, True),
        ...     )
        ... )
        >>> veto.rule
        <ViolationKind.LAG_GATE: 'LagGate'>
    """

    def __init__(
        self,
        lag_threshold_bytes: int = 1024,
        *,
        clock: Callable[[], datetime] = utc_now,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._lag_threshold = lag_threshold_bytes
        self._clock = clock
        self._tracer = tracer or create_tracer(__name__, enable_tracing)

    @property
    def lag_threshold_bytes(self) -> int:
        return self._lag_threshold

    def evaluate(self, check: TransitionCheck) -> Veto | None:
        """
        Return the first violated rule as a Veto, or None if the check passes.

        Raises:
            SplitBrainFault: If more than one cluster reports master
        """
        with self._tracer.span(
            "rotation.enforcer.evaluate",
            {
                ATTR_GROUP_ID: check.group_id,
                ATTR_PHASE: check.current_phase.value,
                ATTR_PROPOSED_PHASE: check.proposed_phase.value if check.proposed_phase else "",
            },
        ):
            self._check_split_brain(check)
            for rule in (
                self._check_single_master,
                self._check_blind_mirror,
                self._check_lag_gate,
                self._check_canary_monotonicity,
            ):
                veto = rule(check)
                if veto is not None:
                    logger.warning(
                        "Veto %s for group %s in %s: %s",
                        veto.rule.value,
                        check.group_id,
                        check.current_phase.value,
                        veto.message,
                    )
                    return veto
            return None

    def enforce(self, check: TransitionCheck) -> None:
        """
        Raise if the check fails.

        Raises:
            SplitBrainFault: If more than one cluster reports master
            InvariantViolation: If any other rule is violated
        """
        veto = self.evaluate(check)
        if veto is not None:
            with self._tracer.span(
                "rotation.enforcer.veto",
                {ATTR_GROUP_ID: check.group_id, ATTR_VIOLATION_RULE: veto.rule.value},
            ):
                raise InvariantViolation(
                    veto.rule,
                    veto.message,
                    group_id=check.group_id,
                    phase=veto.phase,
                    proposed_phase=veto.proposed_phase,
                    rotation_id=check.state.rotation_id if check.state else None,
                )

    def check_phase_order(self, group_id: str, current: RotationPhase, proposed: RotationPhase) -> None:
        """
        Raises:
            InvalidStateTransitionError: If ``proposed`` is not the forward edge of ``current``
        """
        if not current.can_transition_to(proposed):
            raise InvalidStateTransitionError(group_id, current, proposed)

    def _veto(self, check: TransitionCheck, rule: ViolationKind, message: str) -> Veto:
        return Veto(
            rule=rule,
            phase=check.current_phase,
            proposed_phase=check.proposed_phase,
            message=message,
            occurred_at=self._clock(),
        )

    def _check_split_brain(self, check: TransitionCheck) -> None:
        if len(check.observed_masters) > 1:
            raise SplitBrainFault(
                ViolationKind.SPLIT_BRAIN,
                check.observed_masters,
                group_id=check.group_id,
                phase=check.current_phase,
                rotation_id=check.state.rotation_id if check.state else None,
            )

    def _check_single_master(self, check: TransitionCheck) -> Veto | None:
        if check.proposed_master is None or check.pointer is None:
            return None
        current = check.pointer.master
        if current is None or current == check.proposed_master:
            return None
        if check.pointer.maintenance:
            return None
        return self._veto(
            check,
            ViolationKind.SINGLE_MASTER,
            f"{current} is master and writes are not blocked; "
            f"refusing to make {check.proposed_master} master",
        )

    def _check_blind_mirror(self, check: TransitionCheck) -> Veto | None:
        starting_sync = check.proposed_phase == RotationPhase.DATA_SYNCING
        if not (starting_sync or check.enabling_mirror):
            return None
        if check.state is not None and check.state.link_confirmed:
            return None
        what = "data syncing" if starting_sync else "mirror writes"
        return self._veto(
            check,
            ViolationKind.BLIND_MIRROR,
            f"mesh link not confirmed ready; refusing to start {what}",
        )

    def _check_lag_gate(self, check: TransitionCheck) -> Veto | None:
        if check.proposed_phase != RotationPhase.SWITCHOVER_LOCKED:
            return None
        status = check.replication
        if status is None:
            reason = "replication status unknown"
        elif not status.link_up:
            reason = "replication link is down"
        elif status.lag_bytes is None:
            reason = "replication lag unknown"
        elif status.lag_bytes > self._lag_threshold:
            reason = f"replication lag {status.lag_bytes} bytes exceeds {self._lag_threshold} bytes"
        else:
            return None
        return self._veto(check, ViolationKind.LAG_GATE, reason)

    def _check_canary_monotonicity(self, check: TransitionCheck) -> Veto | None:
        if check.is_rollback or check.proposed_target_weight is None:
            return None
        if check.split is None or check.target_cluster_id is None:
            return None
        current = check.split.weight_of(check.target_cluster_id)
        if check.proposed_target_weight >= current:
            return None
        return self._veto(
            check,
            ViolationKind.CANARY_MONOTONICITY,
            f"target weight would decrease from {current} to "
            f"{check.proposed_target_weight} outside a rollback",
        )


__all__ = ["SafetyInvariantEnforcer", "TransitionCheck"]
