"""
OpenTelemetry metrics for cluster rotations.

Example:
    >>> from rotation.metrics import RotationMetrics
    >>>
    >>> metrics = RotationMetrics()
    >>> metrics.record_transition("payments", "data_syncing", "traffic_canary", "advance")
    >>> metrics.record_replication_lag("payments", 200)
    >>> metrics.record_switchover_duration("payments", 850.0, success=True)

Metrics Exposed:
    - rotation.transitions (Counter): Phase transitions by kind
    - rotation.vetoes (Counter): Safety vetoes by rule
    - rotation.rollbacks (Counter): Rollbacks by kind
    - rotation.halts (Counter): Automation halts and faults
    - rotation.replication.lag (Gauge): Last observed replication lag per group
    - rotation.active (Gauge): Groups with a rotation in progress
    - rotation.phase.duration (Histogram): Time spent in each phase
    - rotation.switchover.duration (Histogram): Time writes were blocked

All metrics carry the ``group_id`` attribute for filtering.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

from opentelemetry import metrics
from opentelemetry.metrics import CallbackOptions, Observation

_meter: Any = None


def _get_meter() -> Any:
    """Get or create the meter for the rotation namespace."""
    global _meter
    if _meter is None:
        _meter = metrics.get_meter("rotation", version="1.0.0")
    return _meter


def reset_meter() -> None:
    """Reset the module meter. Useful between tests."""
    global _meter
    _meter = None


class NoOpCounter:
    """Counter used when metrics are disabled."""

    def add(self, amount: int | float, attributes: dict[str, Any] | None = None) -> None:
        pass


class NoOpHistogram:
    """Histogram used when metrics are disabled."""

    def record(self, value: float, attributes: dict[str, Any] | None = None) -> None:
        pass


@dataclass(frozen=True)
class RotationMetricSnapshot:
    """
    Snapshot of recorded values, for tests and debugging.

    Attributes:
        transitions: Count per ``"{from}->{to}"``
        vetoes: Count per rule
        rollbacks: Count per rollback kind
        halts: Number of halts and faults
        replication_lag: Last observed lag per group
        active_groups: Groups with a rotation in progress
        phase_durations: Total seconds per phase
        switchover_durations: Recorded switchover durations (ms)
    """

    transitions: dict[str, int] = field(default_factory=dict)
    vetoes: dict[str, int] = field(default_factory=dict)
    rollbacks: dict[str, int] = field(default_factory=dict)
    halts: int = 0
    replication_lag: dict[str, int] = field(default_factory=dict)
    active_groups: frozenset[str] = frozenset()
    phase_durations: dict[str, float] = field(default_factory=dict)
    switchover_durations: list[float] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "transitions": dict(self.transitions),
            "vetoes": dict(self.vetoes),
            "rollbacks": dict(self.rollbacks),
            "halts": self.halts,
            "replication_lag": dict(self.replication_lag),
            "active_groups": sorted(self.active_groups),
            "phase_durations": dict(self.phase_durations),
            "switchover_durations": list(self.switchover_durations),
        }


class RotationMetrics:
    """
    Container for rotation metric instruments.

    One instance serves every group of an orchestrator; the group is passed
    as an attribute on each recording.

    Args:
        enable_metrics: Create OpenTelemetry instruments (default True).
            When False, recordings only update the local snapshot.
    """

    def __init__(self, enable_metrics: bool = True) -> None:
        self._enable_metrics = enable_metrics
        self._transitions: dict[str, int] = {}
        self._vetoes: dict[str, int] = {}
        self._rollbacks: dict[str, int] = {}
        self._halts = 0
        self._lag: dict[str, int] = {}
        self._active: set[str] = set()
        self._phase_durations: dict[str, float] = {}
        self._switchover_durations: list[float] = []

        if enable_metrics:
            self._setup_metrics()
        else:
            self._setup_noop()

    def _setup_metrics(self) -> None:
        meter = _get_meter()
        self._transition_counter = meter.create_counter(
            name="rotation.transitions",
            unit="transitions",
            description="Rotation phase transitions",
        )
        self._veto_counter = meter.create_counter(
            name="rotation.vetoes",
            unit="vetoes",
            description="Transitions refused by the safety enforcer",
        )
        self._rollback_counter = meter.create_counter(
            name="rotation.rollbacks",
            unit="rollbacks",
            description="Rollbacks and emergency rollbacks",
        )
        self._halt_counter = meter.create_counter(
            name="rotation.halts",
            unit="halts",
            description="Groups halted or faulted pending operator action",
        )
        meter.create_observable_gauge(
            name="rotation.replication.lag",
            callbacks=[self._observe_lag],
            unit="By",
            description="Last observed replication lag of the target cluster",
        )
        meter.create_observable_gauge(
            name="rotation.active",
            callbacks=[self._observe_active],
            unit="groups",
            description="Groups with a rotation in progress",
        )
        self._phase_histogram = meter.create_histogram(
            name="rotation.phase.duration",
            unit="s",
            description="Time spent in each rotation phase",
        )
        self._switchover_histogram = meter.create_histogram(
            name="rotation.switchover.duration",
            unit="ms",
            description="Time writes were blocked during switchover",
        )

    def _setup_noop(self) -> None:
        self._transition_counter = NoOpCounter()
        self._veto_counter = NoOpCounter()
        self._rollback_counter = NoOpCounter()
        self._halt_counter = NoOpCounter()
        self._phase_histogram = NoOpHistogram()
        self._switchover_histogram = NoOpHistogram()

    def _observe_lag(self, options: CallbackOptions) -> Iterable[Observation]:
        for group_id, lag in list(self._lag.items()):
            yield Observation(lag, {"group_id": group_id})

    def _observe_active(self, options: CallbackOptions) -> Iterable[Observation]:
        yield Observation(len(self._active))

    def record_transition(self, group_id: str, from_phase: str, to_phase: str, kind: str) -> None:
        key = f"{from_phase}->{to_phase}"
        self._transitions[key] = self._transitions.get(key, 0) + 1
        self._transition_counter.add(
            1,
            {"group_id": group_id, "from": from_phase, "to": to_phase, "kind": kind},
        )

    def record_veto(self, group_id: str, rule: str, phase: str) -> None:
        self._vetoes[rule] = self._vetoes.get(rule, 0) + 1
        self._veto_counter.add(1, {"group_id": group_id, "rule": rule, "phase": phase})

    def record_rollback(self, group_id: str, kind: str, from_phase: str) -> None:
        self._rollbacks[kind] = self._rollbacks.get(kind, 0) + 1
        self._rollback_counter.add(
            1, {"group_id": group_id, "kind": kind, "from_phase": from_phase}
        )

    def record_halt(self, group_id: str, phase: str, reason: str) -> None:
        self._halts += 1
        self._halt_counter.add(1, {"group_id": group_id, "phase": phase, "reason": reason})

    def record_replication_lag(self, group_id: str, lag_bytes: int) -> None:
        self._lag[group_id] = lag_bytes

    def record_phase_duration(self, group_id: str, phase: str, seconds: float) -> None:
        self._phase_durations[phase] = self._phase_durations.get(phase, 0.0) + seconds
        self._phase_histogram.record(seconds, {"group_id": group_id, "phase": phase})

    def record_switchover_duration(self, group_id: str, duration_ms: float, *, success: bool) -> None:
        self._switchover_durations.append(duration_ms)
        self._switchover_histogram.record(
            duration_ms, {"group_id": group_id, "success": str(success).lower()}
        )

    def set_active(self, group_id: str, active: bool) -> None:
        if active:
            self._active.add(group_id)
        else:
            self._active.discard(group_id)
            self._lag.pop(group_id, None)

    def get_snapshot(self) -> RotationMetricSnapshot:
        return RotationMetricSnapshot(
            transitions=dict(self._transitions),
            vetoes=dict(self._vetoes),
            rollbacks=dict(self._rollbacks),
            halts=self._halts,
            replication_lag=dict(self._lag),
            active_groups=frozenset(self._active),
            phase_durations=dict(self._phase_durations),
            switchover_durations=list(self._switchover_durations),
        )

    @property
    def metrics_enabled(self) -> bool:
        return self._enable_metrics


__all__ = [
    "RotationMetrics",
    "RotationMetricSnapshot",
    "NoOpCounter",
    "NoOpHistogram",
    "reset_meter",
]
