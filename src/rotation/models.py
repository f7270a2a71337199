"""
Data models for the cluster rotation orchestrator.

Models in this module:

Enums:
    - ClusterRole: Role a cluster plays within its group
    - RotationPhase: Rotation lifecycle phases
    - TransitionKind: Why a phase transition happened
    - ViolationKind: Safety rules the enforcer checks
    - ClusterHealth / ReconciliationStatus / LinkStatus: collaborator answers

Configuration:
    - RotationConfig: Thresholds, windows, and per-phase timeouts

Core Models:
    - ClusterDescriptor: A registered cluster
    - ClusterGroup: Logical service plus its active cluster
    - RotationRequest: An accepted rotation of a group onto a target
    - RotationState: Persisted state machine state for one group
    - TransitionRecord / Veto: Entries of the transition log
    - WritePointer: Versioned write-master designation for a group
    - TrafficSplit: Versioned two-cluster read traffic weights
    - ReplicationStatus: Point-in-time replication observation
    - RotationStatus: Status snapshot for operators
    - SwitchoverResult / RollbackResult / EmergencyRollbackResult
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from enum import Enum
from typing import Any


def utc_now() -> datetime:
    """Default clock for the orchestrator."""
    return datetime.now(UTC)


def _parse_dt(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _format_dt(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


class ClusterRole(Enum):
    """
    Role of a cluster within its group.

    Attributes:
        ACTIVE: Source-of-record serving the group.
        TARGET: Cluster being rotated in.
        RETIRING: Former active cluster awaiting decommission.
        IDLE: Registered but neither serving nor rotating in.
    """

    ACTIVE = "active"
    TARGET = "target"
    RETIRING = "retiring"
    IDLE = "idle"


class ClusterHealth(Enum):
    READY = "ready"
    NOT_READY = "not_ready"


class ReconciliationStatus(Enum):
    HEALTHY = "healthy"
    PENDING = "pending"
    FAILED = "failed"


class LinkStatus(Enum):
    READY = "ready"
    DOWN = "down"


class ViolationKind(Enum):
    """
    Safety rules checked before every transition.

    Attributes:
        SINGLE_MASTER: A transition or mutation would leave two write masters.
        BLIND_MIRROR: Mirror writes requested before the mesh link is confirmed.
        LAG_GATE: Switchover requested while replication lag exceeds the
            threshold, the link is down, or the lag is unknown.
        CANARY_MONOTONICITY: Target weight would decrease outside a rollback.
        SPLIT_BRAIN: More than one cluster reports itself as write master.
    """

    SINGLE_MASTER = "SingleMaster"
    BLIND_MIRROR = "BlindMirror"
    LAG_GATE = "LagGate"
    CANARY_MONOTONICITY = "CanaryMonotonicity"
    SPLIT_BRAIN = "SplitBrain"


class TransitionKind(Enum):
    """Reason a phase transition or transition-log entry was recorded."""

    ADVANCE = "advance"
    FORCED = "forced"
    ROLLBACK = "rollback"
    EMERGENCY_ROLLBACK = "emergency_rollback"
    FAULT = "fault"
    VETO = "veto"
    RESUME = "resume"
    HALT = "halt"
    RESOLVE = "resolve"


class RotationPhase(Enum):
    """
    Rotation lifecycle phases.

    State machine transitions (one forward edge per phase):
        IDLE_STABLE -> PROVISIONING -> BOOTSTRAPPING -> MESH_LINKING
            -> DATA_SYNCING -> TRAFFIC_CANARY -> SWITCHOVER_LOCKED
            -> PROMOTED -> DRAINING -> IDLE_STABLE

        IDLE_STABLE..TRAFFIC_CANARY ----> IDLE_STABLE (rollback)
        SWITCHOVER_LOCKED, PROMOTED ----> IDLE_STABLE (emergency rollback)
        Any phase ----------------------> FAULT (split brain, conflicting master)

    FAULT is terminal for automation; only an operator can leave it.
    """

    IDLE_STABLE = "idle_stable"
    PROVISIONING = "provisioning"
    BOOTSTRAPPING = "bootstrapping"
    MESH_LINKING = "mesh_linking"
    DATA_SYNCING = "data_syncing"
    TRAFFIC_CANARY = "traffic_canary"
    SWITCHOVER_LOCKED = "switchover_locked"
    PROMOTED = "promoted"
    DRAINING = "draining"
    FAULT = "fault"

    @property
    def ordinal(self) -> int:
        """Position along the forward path (FAULT sorts last)."""
        return _PHASE_ORDER.index(self)

    @property
    def is_terminal(self) -> bool:
        """True for FAULT, which automation can never leave."""
        return self == RotationPhase.FAULT

    @property
    def allows_rollback(self) -> bool:
        """True for IDLE_STABLE through TRAFFIC_CANARY."""
        return self.ordinal <= RotationPhase.TRAFFIC_CANARY.ordinal

    @property
    def requires_emergency_rollback(self) -> bool:
        return self in (RotationPhase.SWITCHOVER_LOCKED, RotationPhase.PROMOTED)

    @property
    def is_post_switchover(self) -> bool:
        """True once write authority may have moved to the target."""
        return self in (
            RotationPhase.SWITCHOVER_LOCKED,
            RotationPhase.PROMOTED,
            RotationPhase.DRAINING,
        )

    @property
    def writes_paused_possible(self) -> bool:
        """Only SWITCHOVER_LOCKED ever blocks writes."""
        return self == RotationPhase.SWITCHOVER_LOCKED

    @property
    def next_phase(self) -> RotationPhase | None:
        """
        The single forward edge of this phase.

        Returns:
            The next phase, or None for FAULT.
        """
        if self == RotationPhase.FAULT:
            return None
        if self == RotationPhase.DRAINING:
            return RotationPhase.IDLE_STABLE
        return _PHASE_ORDER[self.ordinal + 1]

    def can_transition_to(self, target: RotationPhase) -> bool:
        """
        Check if the forward state machine allows moving to ``target``.

        Rollbacks are not forward transitions and are checked with
        ``allows_rollback`` / ``requires_emergency_rollback`` instead.
        """
        if self.is_terminal:
            return False
        if target == RotationPhase.FAULT:
            return True
        return target == self.next_phase


_PHASE_ORDER: tuple[RotationPhase, ...] = (
    RotationPhase.IDLE_STABLE,
    RotationPhase.PROVISIONING,
    RotationPhase.BOOTSTRAPPING,
    RotationPhase.MESH_LINKING,
    RotationPhase.DATA_SYNCING,
    RotationPhase.TRAFFIC_CANARY,
    RotationPhase.SWITCHOVER_LOCKED,
    RotationPhase.PROMOTED,
    RotationPhase.DRAINING,
    RotationPhase.FAULT,
)


DEFAULT_PHASE_TIMEOUTS: dict[RotationPhase, float] = {
    RotationPhase.PROVISIONING: 3600.0,
    RotationPhase.BOOTSTRAPPING: 1800.0,
    RotationPhase.MESH_LINKING: 900.0,
    RotationPhase.DATA_SYNCING: 7200.0,
    RotationPhase.TRAFFIC_CANARY: 7200.0,
    RotationPhase.SWITCHOVER_LOCKED: 300.0,
    RotationPhase.PROMOTED: 3600.0,
    RotationPhase.DRAINING: 1800.0,
}


@dataclass(frozen=True)
class RotationConfig:
    """
    Configuration for the rotation orchestrator.

    Immutable so that a rotation cannot observe thresholds changing
    underneath it.

    Attributes:
        lag_threshold_bytes: Lag gate threshold (default 1024).
        lag_window_seconds: How long lag must stay within the threshold
            before DATA_SYNCING advances (default 60).
        canary_steps: Target-cluster weights, strictly increasing, 1..99.
        canary_bake_seconds: Monitoring window per canary step (default 300).
        success_rate_threshold: Minimum success ratio during canary (default 0.99).
        poll_interval_seconds: Polling cadence of the run loop (default 5).
        phase_timeouts: Seconds allowed in each phase before rollback or halt.
        drain_timeout_seconds: Bound on waiting for in-flight writes to drain.
        confirm_timeout_seconds: Bound on waiting for pointer confirmation.
        profile_ref: Reconciliation profile applied during BOOTSTRAPPING.
        decommission_on_rollback: Request target decommission on rollback.

    Example:
        >>> config = RotationConfig(canary_steps=(5, 25, 75), canary_bake_seconds=120)
        >>> config.canary_steps[0]
        5
    """

    lag_threshold_bytes: int = 1024
    lag_window_seconds: float = 60.0
    canary_steps: tuple[int, ...] = (10, 50, 90)
    canary_bake_seconds: float = 300.0
    success_rate_threshold: float = 0.99
    poll_interval_seconds: float = 5.0
    phase_timeouts: Mapping[RotationPhase, float] = field(
        default_factory=lambda: dict(DEFAULT_PHASE_TIMEOUTS)
    )
    drain_timeout_seconds: float = 30.0
    confirm_timeout_seconds: float = 30.0
    profile_ref: str = "base"
    decommission_on_rollback: bool = True

    def __post_init__(self) -> None:
        """Validate configuration values."""
        if self.lag_threshold_bytes < 0:
            raise ValueError(f"lag_threshold_bytes must be >= 0, got {self.lag_threshold_bytes}")
        if self.lag_window_seconds < 0:
            raise ValueError(f"lag_window_seconds must be >= 0, got {self.lag_window_seconds}")
        if not self.canary_steps:
            raise ValueError("canary_steps must contain at least one weight")
        previous = 0
        for step in self.canary_steps:
            if not isinstance(step, int) or not 1 <= step <= 99:
                raise ValueError(f"canary_steps must be integers in 1..99, got {step!r}")
            if step <= previous:
                raise ValueError(f"canary_steps must be strictly increasing, got {self.canary_steps}")
            previous = step
        if self.canary_bake_seconds < 0:
            raise ValueError(f"canary_bake_seconds must be >= 0, got {self.canary_bake_seconds}")
        if not 0.0 <= self.success_rate_threshold <= 1.0:
            raise ValueError(
                f"success_rate_threshold must be between 0.0 and 1.0, "
                f"got {self.success_rate_threshold}"
            )
        if self.poll_interval_seconds <= 0:
            raise ValueError(
                f"poll_interval_seconds must be > 0, got {self.poll_interval_seconds}"
            )
        for phase, seconds in self.phase_timeouts.items():
            if seconds <= 0:
                raise ValueError(f"timeout for {phase.value} must be > 0, got {seconds}")
        if self.drain_timeout_seconds <= 0:
            raise ValueError(
                f"drain_timeout_seconds must be > 0, got {self.drain_timeout_seconds}"
            )
        if self.confirm_timeout_seconds <= 0:
            raise ValueError(
                f"confirm_timeout_seconds must be > 0, got {self.confirm_timeout_seconds}"
            )
        if not self.profile_ref:
            raise ValueError("profile_ref must not be empty")

    def timeout_for(self, phase: RotationPhase) -> float | None:
        """Timeout in seconds for ``phase``, or None if the phase never times out."""
        return self.phase_timeouts.get(phase)

    def to_dict(self) -> dict[str, Any]:
        return {
            "lag_threshold_bytes": self.lag_threshold_bytes,
            "lag_window_seconds": self.lag_window_seconds,
            "canary_steps": list(self.canary_steps),
            "canary_bake_seconds": self.canary_bake_seconds,
            "success_rate_threshold": self.success_rate_threshold,
            "poll_interval_seconds": self.poll_interval_seconds,
            "phase_timeouts": {p.value: s for p, s in self.phase_timeouts.items()},
            "drain_timeout_seconds": self.drain_timeout_seconds,
            "confirm_timeout_seconds": self.confirm_timeout_seconds,
            "profile_ref": self.profile_ref,
            "decommission_on_rollback": self.decommission_on_rollback,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RotationConfig:
        timeouts = dict(DEFAULT_PHASE_TIMEOUTS)
        for key, seconds in (data.get("phase_timeouts") or {}).items():
            timeouts[RotationPhase(key)] = float(seconds)
        return cls(
            lag_threshold_bytes=int(data.get("lag_threshold_bytes", 1024)),
            lag_window_seconds=float(data.get("lag_window_seconds", 60.0)),
            canary_steps=tuple(int(s) for s in data.get("canary_steps", (10, 50, 90))),
            canary_bake_seconds=float(data.get("canary_bake_seconds", 300.0)),
            success_rate_threshold=float(data.get("success_rate_threshold", 0.99)),
            poll_interval_seconds=float(data.get("poll_interval_seconds", 5.0)),
            phase_timeouts=timeouts,
            drain_timeout_seconds=float(data.get("drain_timeout_seconds", 30.0)),
            confirm_timeout_seconds=float(data.get("confirm_timeout_seconds", 30.0)),
            profile_ref=data.get("profile_ref", "base"),
            decommission_on_rollback=bool(data.get("decommission_on_rollback", True)),
        )

    @classmethod
    def from_env(
        cls,
        prefix: str = "ROTATION_",
        environ: Mapping[str, str] | None = None,
    ) -> RotationConfig:
        """
        Build a config from environment variables.

        Recognised variables are the upper-cased field names with ``prefix``
        (e.g. ``ROTATION_LAG_THRESHOLD_BYTES``). ``ROTATION_CANARY_STEPS`` is
        a comma-separated list and per-phase timeouts are read from
        ``ROTATION_TIMEOUT_<PHASE>`` (e.g. ``ROTATION_TIMEOUT_DATA_SYNCING``).
        Unset variables keep their defaults.
        """
        env = os.environ if environ is None else environ
        data: dict[str, Any] = {}
        scalar_fields = (
            "lag_threshold_bytes",
            "lag_window_seconds",
            "canary_bake_seconds",
            "success_rate_threshold",
            "poll_interval_seconds",
            "drain_timeout_seconds",
            "confirm_timeout_seconds",
            "profile_ref",
        )
        for name in scalar_fields:
            value = env.get(f"{prefix}{name.upper()}")
            if value is not None:
                data[name] = value
        steps = env.get(f"{prefix}CANARY_STEPS")
        if steps:
            data["canary_steps"] = [s.strip() for s in steps.split(",") if s.strip()]
        decommission = env.get(f"{prefix}DECOMMISSION_ON_ROLLBACK")
        if decommission is not None:
            data["decommission_on_rollback"] = decommission.strip().lower() in (
                "1",
                "true",
                "yes",
                "on",
            )
        timeouts: dict[str, float] = {}
        for phase in RotationPhase:
            value = env.get(f"{prefix}TIMEOUT_{phase.name}")
            if value is not None:
                timeouts[phase.value] = float(value)
        if timeouts:
            data["phase_timeouts"] = timeouts
        return cls.from_dict(data)


@dataclass(frozen=True)
class ClusterDescriptor:
    """
    A registered Kubernetes cluster.

    Attributes:
        cluster_id: Unique cluster identifier.
        region: Region the cluster runs in.
        role: Role of the cluster within its group.
        endpoints: Named endpoints (e.g. ``api``, ``ingress``) to URLs.
        labels: Free-form labels.
        created_at: When the cluster was requested.
        group_id: Group the cluster belongs to, once assigned.
    """

    cluster_id: str
    region: str
    role: ClusterRole = ClusterRole.IDLE
    endpoints: Mapping[str, str] = field(default_factory=dict)
    labels: Mapping[str, str] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utc_now)
    group_id: str | None = None

    def with_role(self, role: ClusterRole) -> ClusterDescriptor:
        return replace(self, role=role)

    def to_dict(self) -> dict[str, Any]:
        return {
            "cluster_id": self.cluster_id,
            "region": self.region,
            "role": self.role.value,
            "endpoints": dict(self.endpoints),
            "labels": dict(self.labels),
            "created_at": self.created_at.isoformat(),
            "group_id": self.group_id,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ClusterDescriptor:
        return cls(
            cluster_id=data["cluster_id"],
            region=data["region"],
            role=ClusterRole(data.get("role", ClusterRole.IDLE.value)),
            endpoints=dict(data.get("endpoints") or {}),
            labels=dict(data.get("labels") or {}),
            created_at=_parse_dt(data.get("created_at")) or utc_now(),
            group_id=data.get("group_id"),
        )


@dataclass(frozen=True)
class ClusterGroup:
    """
    A logical service and the cluster currently serving it.

    Attributes:
        group_id: Unique group identifier.
        service: Logical service identity carried across rotations.
        active_cluster_id: Source-of-record cluster.
    """

    group_id: str
    service: str
    active_cluster_id: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "group_id": self.group_id,
            "service": self.service,
            "active_cluster_id": self.active_cluster_id,
        }


@dataclass(frozen=True)
class RotationRequest:
    """
    An accepted request to rotate a group onto a new cluster.

    Attributes:
        rotation_id: Monotonically increasing identifier.
        group_id: Group being rotated.
        service: Logical service identity.
        source_cluster_id: Active cluster at request time.
        target_cluster_id: Cluster being rotated in.
        requested_by: Operator or system that asked for the rotation.
        profile_ref: Reconciliation profile override for BOOTSTRAPPING.
        created_at: When the request was accepted.
    """

    rotation_id: int
    group_id: str
    service: str
    source_cluster_id: str
    target_cluster_id: str
    requested_by: str | None = None
    created_at: datetime = field(default_factory=utc_now)
    profile_ref: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "rotation_id": self.rotation_id,
            "group_id": self.group_id,
            "service": self.service,
            "source_cluster_id": self.source_cluster_id,
            "target_cluster_id": self.target_cluster_id,
            "requested_by": self.requested_by,
            "created_at": self.created_at.isoformat(),
            "profile_ref": self.profile_ref,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RotationRequest:
        return cls(
            rotation_id=int(data["rotation_id"]),
            group_id=data["group_id"],
            service=data["service"],
            source_cluster_id=data["source_cluster_id"],
            target_cluster_id=data["target_cluster_id"],
            requested_by=data.get("requested_by"),
            created_at=_parse_dt(data.get("created_at")) or utc_now(),
            profile_ref=data.get("profile_ref"),
        )


@dataclass(frozen=True)
class Veto:
    """
    A transition or mutation refused by the safety enforcer.

    Attributes:
        rule: The violated safety rule.
        phase: Phase the group was in.
        proposed_phase: Phase the transition tried to enter, if any.
        message: Human-readable explanation.
        occurred_at: When the veto was issued.
    """

    rule: ViolationKind
    phase: RotationPhase
    proposed_phase: RotationPhase | None
    message: str
    occurred_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "rule": self.rule.value,
            "phase": self.phase.value,
            "proposed_phase": self.proposed_phase.value if self.proposed_phase else None,
            "message": self.message,
            "occurred_at": self.occurred_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Veto:
        proposed = data.get("proposed_phase")
        return cls(
            rule=ViolationKind(data["rule"]),
            phase=RotationPhase(data["phase"]),
            proposed_phase=RotationPhase(proposed) if proposed else None,
            message=data["message"],
            occurred_at=_parse_dt(data.get("occurred_at")) or utc_now(),
        )


@dataclass(frozen=True)
class TransitionRecord:
    """One entry of a group's ordered transition log."""

    from_phase: RotationPhase
    to_phase: RotationPhase
    kind: TransitionKind
    occurred_at: datetime = field(default_factory=utc_now)
    reason: str | None = None
    actor: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "from_phase": self.from_phase.value,
            "to_phase": self.to_phase.value,
            "kind": self.kind.value,
            "occurred_at": self.occurred_at.isoformat(),
            "reason": self.reason,
            "actor": self.actor,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TransitionRecord:
        return cls(
            from_phase=RotationPhase(data["from_phase"]),
            to_phase=RotationPhase(data["to_phase"]),
            kind=TransitionKind(data["kind"]),
            occurred_at=_parse_dt(data.get("occurred_at")) or utc_now(),
            reason=data.get("reason"),
            actor=data.get("actor"),
        )


@dataclass
class RotationState:
    """
    Persisted state machine state for one cluster group.

    This is a mutable dataclass owned by the state machine; it is persisted
    after every mutation so a restarted orchestrator resumes from it.

    Attributes:
        group_id: Group this state belongs to.
        phase: Current phase.
        entered_at: When the current phase was entered.
        request: The active rotation request, or None when idle.
        transitions: Ordered transition log.
        completed_actions: Idempotency keys of side effects already applied.
        link_id: Mesh link created during MESH_LINKING.
        link_confirmed: Whether the link was confirmed ready with mirror endpoints.
        condition_since: Start of the currently satisfied sustained window
            (lag window in DATA_SYNCING, bake window in TRAFFIC_CANARY).
        canary_step_index: Index into the configured canary steps.
        last_veto: Most recent veto, cleared when the phase advances.
        halted: Automation stopped pending operator action.
        halt_reason: Why automation stopped.
        external_routing_confirmed: PROMOTED advance signal received.
        decommission_acknowledged: Source decommission acknowledged.
        switchover_at: When write authority moved to the target.
        unwinding: Rollback kind in progress, so a restarted orchestrator
            finishes the unwind instead of advancing.
        version: Optimistic concurrency version, bumped on every save.
    """

    group_id: str
    phase: RotationPhase = RotationPhase.IDLE_STABLE
    entered_at: datetime = field(default_factory=utc_now)
    request: RotationRequest | None = None
    transitions: list[TransitionRecord] = field(default_factory=list)
    completed_actions: list[str] = field(default_factory=list)
    link_id: str | None = None
    link_confirmed: bool = False
    condition_since: datetime | None = None
    canary_step_index: int = 0
    last_veto: Veto | None = None
    halted: bool = False
    halt_reason: str | None = None
    external_routing_confirmed: bool = False
    decommission_acknowledged: bool = False
    switchover_at: datetime | None = None
    unwinding: TransitionKind | None = None
    version: int = 0

    @property
    def rotation_id(self) -> int | None:
        return self.request.rotation_id if self.request else None

    @property
    def source_cluster_id(self) -> str | None:
        return self.request.source_cluster_id if self.request else None

    @property
    def target_cluster_id(self) -> str | None:
        return self.request.target_cluster_id if self.request else None

    @property
    def is_active(self) -> bool:
        """True while a rotation request holds the group."""
        return self.request is not None

    def has_completed(self, key: str) -> bool:
        return key in self.completed_actions

    def seconds_in_phase(self, now: datetime) -> float:
        return max(0.0, (now - self.entered_at).total_seconds())

    def reset_phase_progress(self) -> None:
        """Clear per-phase progress when a new phase is entered."""
        self.condition_since = None
        self.last_veto = None

    def clear_rotation(self) -> None:
        """Drop everything tied to the finished or unwound rotation."""
        self.request = None
        self.completed_actions = []
        self.link_id = None
        self.link_confirmed = False
        self.condition_since = None
        self.canary_step_index = 0
        self.last_veto = None
        self.external_routing_confirmed = False
        self.decommission_acknowledged = False
        self.switchover_at = None
        self.unwinding = None

    def enter(
        self,
        phase: RotationPhase,
        kind: TransitionKind,
        now: datetime,
        *,
        reason: str | None = None,
        actor: str | None = None,
    ) -> TransitionRecord:
        """Move to ``phase``, append the transition record and reset phase progress."""
        record = TransitionRecord(
            from_phase=self.phase,
            to_phase=phase,
            kind=kind,
            occurred_at=now,
            reason=reason,
            actor=actor,
        )
        self.transitions.append(record)
        self.phase = phase
        self.entered_at = now
        self.reset_phase_progress()
        return record

    def log(
        self,
        kind: TransitionKind,
        now: datetime,
        *,
        reason: str | None = None,
        actor: str | None = None,
    ) -> TransitionRecord:
        """Append a log entry that does not change the phase (veto, halt, resume)."""
        record = TransitionRecord(
            from_phase=self.phase,
            to_phase=self.phase,
            kind=kind,
            occurred_at=now,
            reason=reason,
            actor=actor,
        )
        self.transitions.append(record)
        return record

    def to_dict(self) -> dict[str, Any]:
        return {
            "group_id": self.group_id,
            "phase": self.phase.value,
            "entered_at": self.entered_at.isoformat(),
            "request": self.request.to_dict() if self.request else None,
            "transitions": [t.to_dict() for t in self.transitions],
            "completed_actions": list(self.completed_actions),
            "link_id": self.link_id,
            "link_confirmed": self.link_confirmed,
            "condition_since": _format_dt(self.condition_since),
            "canary_step_index": self.canary_step_index,
            "last_veto": self.last_veto.to_dict() if self.last_veto else None,
            "halted": self.halted,
            "halt_reason": self.halt_reason,
            "external_routing_confirmed": self.external_routing_confirmed,
            "decommission_acknowledged": self.decommission_acknowledged,
            "switchover_at": _format_dt(self.switchover_at),
            "unwinding": self.unwinding.value if self.unwinding else None,
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RotationState:
        request = data.get("request")
        veto = data.get("last_veto")
        unwinding = data.get("unwinding")
        return cls(
            group_id=data["group_id"],
            phase=RotationPhase(data["phase"]),
            entered_at=_parse_dt(data.get("entered_at")) or utc_now(),
            request=RotationRequest.from_dict(request) if request else None,
            transitions=[TransitionRecord.from_dict(t) for t in data.get("transitions", [])],
            completed_actions=list(data.get("completed_actions", [])),
            link_id=data.get("link_id"),
            link_confirmed=bool(data.get("link_confirmed", False)),
            condition_since=_parse_dt(data.get("condition_since")),
            canary_step_index=int(data.get("canary_step_index", 0)),
            last_veto=Veto.from_dict(veto) if veto else None,
            halted=bool(data.get("halted", False)),
            halt_reason=data.get("halt_reason"),
            external_routing_confirmed=bool(data.get("external_routing_confirmed", False)),
            decommission_acknowledged=bool(data.get("decommission_acknowledged", False)),
            switchover_at=_parse_dt(data.get("switchover_at")),
            unwinding=TransitionKind(unwinding) if unwinding else None,
            version=int(data.get("version", 0)),
        )


@dataclass(frozen=True)
class WritePointer:
    """
    Versioned write-master designation for a group.

    Every cluster derives its local write-target configuration from this
    value. Instances are immutable; each mutation produces a new version.

    Attributes:
        group_id: Group the pointer belongs to.
        master: Cluster accepting writes, or None while demoted.
        maintenance: Writes are blocked for the group.
        mirrors: Cluster -> cluster it forwards writes to through the mesh.
        version: Monotonic per group.
        updated_at: When this version was produced.
    """

    group_id: str
    master: str | None = None
    maintenance: bool = False
    mirrors: Mapping[str, str] = field(default_factory=dict)
    version: int = 0
    updated_at: datetime = field(default_factory=utc_now)

    def is_master(self, cluster_id: str) -> bool:
        return self.master == cluster_id

    def write_target_for(self, cluster_id: str) -> str | None:
        """Where ``cluster_id`` sends writes: itself, its mirror, or nowhere."""
        if self.maintenance:
            return None
        if self.master == cluster_id:
            return cluster_id
        return self.mirrors.get(cluster_id)

    def to_dict(self) -> dict[str, Any]:
        return {
            "group_id": self.group_id,
            "master": self.master,
            "maintenance": self.maintenance,
            "mirrors": dict(self.mirrors),
            "version": self.version,
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> WritePointer:
        return cls(
            group_id=data["group_id"],
            master=data.get("master"),
            maintenance=bool(data.get("maintenance", False)),
            mirrors=dict(data.get("mirrors") or {}),
            version=int(data.get("version", 0)),
            updated_at=_parse_dt(data.get("updated_at")) or utc_now(),
        )


@dataclass(frozen=True)
class TrafficSplit:
    """
    Versioned read traffic weights for the two clusters of a group.

    Attributes:
        group_id: Group the split belongs to.
        weights: Exactly two cluster ids to non-negative weights summing to 100.
        version: Monotonic per group.
        updated_at: When this version was produced.
    """

    group_id: str
    weights: Mapping[str, int]
    version: int = 0
    updated_at: datetime = field(default_factory=utc_now)

    def weight_of(self, cluster_id: str) -> int:
        return self.weights.get(cluster_id, 0)

    def favoring(self, cluster_id: str) -> bool:
        """True when ``cluster_id`` receives all traffic."""
        return self.weight_of(cluster_id) == 100

    def same_weights(self, other: TrafficSplit | None) -> bool:
        return other is not None and dict(self.weights) == dict(other.weights)

    def to_dict(self) -> dict[str, Any]:
        return {
            "group_id": self.group_id,
            "weights": dict(self.weights),
            "version": self.version,
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TrafficSplit:
        return cls(
            group_id=data["group_id"],
            weights={k: int(v) for k, v in (data.get("weights") or {}).items()},
            version=int(data.get("version", 0)),
            updated_at=_parse_dt(data.get("updated_at")) or utc_now(),
        )


@dataclass(frozen=True)
class ReplicationStatus:
    """
    Point-in-time replication observation for a target cluster.

    Attributes:
        cluster_id: Replica being observed.
        source_cluster_id: Cluster it replicates from, if any.
        lag_bytes: Replication lag in bytes, None if unknown.
        link_up: Whether the mesh link carrying replication is up.
        observed_at: When the observation was made.
    """

    cluster_id: str
    source_cluster_id: str | None
    lag_bytes: int | None
    link_up: bool
    observed_at: datetime = field(default_factory=utc_now)

    def within(self, threshold_bytes: int) -> bool:
        """True when the link is up and lag is known and at most the threshold."""
        return self.link_up and self.lag_bytes is not None and self.lag_bytes <= threshold_bytes

    def to_dict(self) -> dict[str, Any]:
        return {
            "cluster_id": self.cluster_id,
            "source_cluster_id": self.source_cluster_id,
            "lag_bytes": self.lag_bytes,
            "link_up": self.link_up,
            "observed_at": self.observed_at.isoformat(),
        }


@dataclass(frozen=True)
class RotationStatus:
    """
    Status snapshot of a group for operators.

    This class is immutable because it represents a point in time.
    """

    group_id: str
    rotation_id: int | None
    phase: RotationPhase
    seconds_in_phase: float
    source_cluster_id: str | None
    target_cluster_id: str | None
    halted: bool
    halt_reason: str | None
    last_veto: Veto | None
    canary_weight: int | None
    pointer: WritePointer | None
    split: TrafficSplit | None
    updated_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "group_id": self.group_id,
            "rotation_id": self.rotation_id,
            "phase": self.phase.value,
            "seconds_in_phase": self.seconds_in_phase,
            "source_cluster_id": self.source_cluster_id,
            "target_cluster_id": self.target_cluster_id,
            "halted": self.halted,
            "halt_reason": self.halt_reason,
            "last_veto": self.last_veto.to_dict() if self.last_veto else None,
            "canary_weight": self.canary_weight,
            "pointer": self.pointer.to_dict() if self.pointer else None,
            "split": self.split.to_dict() if self.split else None,
            "updated_at": self.updated_at.isoformat(),
        }


@dataclass(frozen=True)
class SwitchoverResult:
    """
    Result of a switchover attempt.

    Attributes:
        success: Whether write authority moved to the target.
        duration_ms: Time spent with writes blocked.
        pointer_version: Pointer version after the flip (if successful).
        error_message: Error description (if failed).
        rolled_back: Whether the pointer was restored to the source.
        retryable: The failure left the group unchanged and may be retried.
    """

    success: bool
    duration_ms: float
    pointer_version: int | None = None
    error_message: str | None = None
    rolled_back: bool = False
    retryable: bool = False


@dataclass(frozen=True)
class RollbackResult:
    """Result of a pre-switchover rollback."""

    group_id: str
    rotation_id: int
    from_phase: RotationPhase
    source_cluster_id: str
    target_cluster_id: str
    steps: tuple[str, ...]
    completed_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "group_id": self.group_id,
            "rotation_id": self.rotation_id,
            "from_phase": self.from_phase.value,
            "source_cluster_id": self.source_cluster_id,
            "target_cluster_id": self.target_cluster_id,
            "steps": list(self.steps),
            "completed_at": self.completed_at.isoformat(),
        }


@dataclass(frozen=True)
class DivergenceReport:
    """
    Writes accepted by the promoted cluster and not replicated back.

    Surfaced to operators; never merged automatically.
    """

    from_cluster_id: str
    to_cluster_id: str
    since: datetime | None
    writes: tuple[str, ...]

    @property
    def is_empty(self) -> bool:
        return not self.writes

    def to_dict(self) -> dict[str, Any]:
        return {
            "from_cluster_id": self.from_cluster_id,
            "to_cluster_id": self.to_cluster_id,
            "since": _format_dt(self.since),
            "writes": list(self.writes),
        }


@dataclass(frozen=True)
class EmergencyRollbackResult:
    """Result of an emergency rollback from SWITCHOVER_LOCKED or PROMOTED."""

    group_id: str
    rotation_id: int
    from_phase: RotationPhase
    source_cluster_id: str
    target_cluster_id: str
    divergence: DivergenceReport
    steps: tuple[str, ...]
    completed_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "group_id": self.group_id,
            "rotation_id": self.rotation_id,
            "from_phase": self.from_phase.value,
            "source_cluster_id": self.source_cluster_id,
            "target_cluster_id": self.target_cluster_id,
            "divergence": self.divergence.to_dict(),
            "steps": list(self.steps),
            "completed_at": self.completed_at.isoformat(),
        }


__all__ = [
    "utc_now",
    # Enums
    "ClusterRole",
    "ClusterHealth",
    "ReconciliationStatus",
    "LinkStatus",
    "ViolationKind",
    "TransitionKind",
    "RotationPhase",
    # Configuration
    "DEFAULT_PHASE_TIMEOUTS",
    "RotationConfig",
    # Core models
    "ClusterDescriptor",
    "ClusterGroup",
    "RotationRequest",
    "Veto",
    "TransitionRecord",
    "RotationState",
    "WritePointer",
    "TrafficSplit",
    "ReplicationStatus",
    "RotationStatus",
    "SwitchoverResult",
    "RollbackResult",
    "DivergenceReport",
    "EmergencyRollbackResult",
]
