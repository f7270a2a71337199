"""
Rotation journal.

Single place where rotation state changes are recorded: the transition log
entry, the persisted state document, the metrics and, for halts and
faults, the operator alert. The state machine and the rollback coordinator
share one journal so every path records state the same way.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime
from typing import Any

from rotation.exceptions import ErrorSeverity, RotationError
from rotation.interfaces import AlertSink
from rotation.metrics import RotationMetrics
from rotation.models import (
    RotationPhase,
    RotationState,
    TransitionKind,
    TransitionRecord,
    Veto,
    utc_now,
)
from rotation.observability import (
    ATTR_GROUP_ID,
    ATTR_PHASE,
    ATTR_PROPOSED_PHASE,
    Tracer,
    create_tracer,
)
from rotation.repositories.state import RotationStateRepository

logger = logging.getLogger(__name__)


class RotationJournal:
    """
    Persists rotation state and records transitions, vetoes, halts and faults.

    Args:
        repository: Rotation state persistence
        metrics: Metric instruments (optional)
        alert_sink: Receives critical alerts (optional)
        clock: Returns the current time
    """

    def __init__(
        self,
        repository: RotationStateRepository,
        *,
        metrics: RotationMetrics | None = None,
        alert_sink: AlertSink | None = None,
        clock: Callable[[], datetime] = utc_now,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._repository = repository
        self._metrics = metrics
        self._alert_sink = alert_sink
        self._clock = clock
        self._tracer = tracer or create_tracer(__name__, enable_tracing)

    @property
    def repository(self) -> RotationStateRepository:
        return self._repository

    async def load(self, group_id: str) -> RotationState:
        """Persisted state of the group, or a fresh IDLE_STABLE state."""
        state = await self._repository.get_state(group_id)
        return state if state is not None else RotationState(group_id=group_id, entered_at=self._clock())

    async def save(self, state: RotationState) -> None:
        await self._repository.save_state(state)

    async def transition(
        self,
        state: RotationState,
        phase: RotationPhase,
        kind: TransitionKind,
        *,
        reason: str | None = None,
        actor: str | None = None,
    ) -> TransitionRecord:
        """Move ``state`` into ``phase``, persist it and record the transition."""
        now = self._clock()
        previous = state.phase
        spent = state.seconds_in_phase(now)
        with self._tracer.span(
            "rotation.transition",
            {
                ATTR_GROUP_ID: state.group_id,
                ATTR_PHASE: previous.value,
                ATTR_PROPOSED_PHASE: phase.value,
            },
        ):
            record = state.enter(phase, kind, now, reason=reason, actor=actor)
            await self.save(state)

        logger.info(
            "Group %s: %s -> %s (%s%s)",
            state.group_id,
            previous.value,
            phase.value,
            kind.value,
            f": {reason}" if reason else "",
        )
        if self._metrics is not None:
            self._metrics.record_phase_duration(state.group_id, previous.value, spent)
            self._metrics.record_transition(state.group_id, previous.value, phase.value, kind.value)
            self._metrics.set_active(state.group_id, state.is_active or phase != RotationPhase.IDLE_STABLE)
        return record

    async def veto(self, state: RotationState, veto: Veto) -> None:
        """
        Record a veto and persist the parked state.

        Repeats of the rule already recorded do not add log entries.
        """
        repeated = state.last_veto is not None and state.last_veto.rule == veto.rule
        state.last_veto = veto
        if not repeated:
            state.log(
                TransitionKind.VETO,
                veto.occurred_at,
                reason=f"{veto.rule.value}: {veto.message}",
            )
            if self._metrics is not None:
                self._metrics.record_veto(state.group_id, veto.rule.value, state.phase.value)
        await self.save(state)

    async def halt(self, state: RotationState, reason: str, *, actor: str | None = None) -> None:
        """Stop automation for the group and alert an operator."""
        if state.halted and state.halt_reason == reason:
            return
        state.halted = True
        state.halt_reason = reason
        state.log(TransitionKind.HALT, self._clock(), reason=reason, actor=actor)
        await self.save(state)
        logger.critical("Automation halted for group %s in %s: %s", state.group_id, state.phase.value, reason)
        if self._metrics is not None:
            self._metrics.record_halt(state.group_id, state.phase.value, reason)
        await self.alert(
            ErrorSeverity.CRITICAL,
            f"Rotation halted in {state.phase.value}: {reason}",
            group_id=state.group_id,
            details={"rotation_id": state.rotation_id, "phase": state.phase.value},
        )

    async def fault(self, state: RotationState, error: RotationError) -> None:
        """Move the group to FAULT; only an operator can leave it."""
        reason = str(error)
        state.halted = True
        state.halt_reason = reason
        state.unwinding = None
        await self.transition(state, RotationPhase.FAULT, TransitionKind.FAULT, reason=reason)
        if self._metrics is not None:
            self._metrics.record_halt(state.group_id, RotationPhase.FAULT.value, error.error_code)
        await self.alert(
            ErrorSeverity.CRITICAL,
            f"Group moved to FAULT: {reason}",
            group_id=state.group_id,
            details=error.to_dict(),
        )

    async def alert(
        self,
        severity: ErrorSeverity,
        message: str,
        *,
        group_id: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        if self._alert_sink is None:
            return
        try:
            await self._alert_sink.alert(severity, message, group_id=group_id, details=details)
        except Exception:
            logger.exception("Alert sink failed for group %s", group_id)


__all__ = ["RotationJournal"]
