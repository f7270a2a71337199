"""
Rotation-specific exceptions for the cluster rotation orchestrator.

Exception Hierarchy:
    RotationError (base)
    +-- RotationNotFoundError
    +-- RotationInProgressError
    +-- ClusterNotFoundError
    |   +-- GroupNotFoundError
    +-- InvalidTargetError
    +-- InvalidWeightError
    +-- InvalidStateTransitionError
    +-- InvariantViolation
    +-- SplitBrainFault
    +-- ConflictingMasterError
    +-- RotationTimeoutError
    +-- ExternalCallFailure
    +-- RollbackNotPermittedError
    +-- WriteBlockedError
    +-- AutomationHaltedError
    +-- StateConflictError

Error Classification:
    - ErrorSeverity: CRITICAL, ERROR, WARNING, INFO levels
    - ErrorRecoverability: RECOVERABLE, TRANSIENT, FATAL categories
    - ErrorClassification: Rich metadata for each error type
    - ErrorHandler: Automatic retry for transient errors with backoff

Every error that rejects or vetoes a call carries the phase that caused it,
and safety vetoes also carry the violated rule, so ``to_dict()`` can be
returned verbatim by the operator control surface.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import random
from collections.abc import Awaitable, Callable, Coroutine
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, TypeVar

if TYPE_CHECKING:
    from rotation.models import RotationPhase, ViolationKind

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ErrorSeverity(Enum):
    """
    Severity level of rotation errors.

    Used for alerting, logging, and operator notification decisions.

    Attributes:
        CRITICAL: Failure that needs a human now (split brain, halted switchover).
        ERROR: Significant failure that may require operator intervention.
        WARNING: Issue that should be monitored but may self-resolve.
        INFO: Informational condition, not a failure.
    """

    CRITICAL = "critical"
    ERROR = "error"
    WARNING = "warning"
    INFO = "info"

    @property
    def should_alert(self) -> bool:
        """True for CRITICAL and ERROR levels."""
        return self in (ErrorSeverity.CRITICAL, ErrorSeverity.ERROR)

    @property
    def log_level(self) -> int:
        """Corresponding Python logging level."""
        level_map = {
            ErrorSeverity.CRITICAL: logging.CRITICAL,
            ErrorSeverity.ERROR: logging.ERROR,
            ErrorSeverity.WARNING: logging.WARNING,
            ErrorSeverity.INFO: logging.INFO,
        }
        return level_map[self]


class ErrorRecoverability(Enum):
    """
    Recoverability classification for rotation errors.

    Attributes:
        RECOVERABLE: The rotation stays parked; it can continue once the
            condition clears or an operator acts.
        TRANSIENT: Temporary collaborator failure; retried with backoff.
        FATAL: Automation must stop; the group needs operator resolution.
    """

    RECOVERABLE = "recoverable"
    TRANSIENT = "transient"
    FATAL = "fatal"

    @property
    def should_retry(self) -> bool:
        """True only for TRANSIENT errors."""
        return self == ErrorRecoverability.TRANSIENT


@dataclass(frozen=True)
class RetryConfig:
    """
    Configuration for automatic error retry.

    Implements exponential backoff with jitter for transient errors.

    Attributes:
        max_attempts: Maximum number of attempts (including the first).
        base_delay_ms: Base delay between retries in milliseconds.
        max_delay_ms: Maximum delay between retries in milliseconds.
        exponential_base: Base for exponential backoff.
        jitter_factor: Random jitter factor (0.0 to 1.0).

    Example:
        >>> config = RetryConfig(max_attempts=5, base_delay_ms=100, max_delay_ms=10000)
        >>> config.get_delay_ms(attempt=3)
        800.0  # 100 * 2^3, plus up to 10% jitter
    """

    max_attempts: int = 3
    base_delay_ms: float = 100.0
    max_delay_ms: float = 30000.0
    exponential_base: float = 2.0
    jitter_factor: float = 0.1

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.max_attempts}")
        if self.base_delay_ms < 0:
            raise ValueError(f"base_delay_ms must be >= 0, got {self.base_delay_ms}")
        if self.max_delay_ms < self.base_delay_ms:
            raise ValueError(
                f"max_delay_ms ({self.max_delay_ms}) must be >= "
                f"base_delay_ms ({self.base_delay_ms})"
            )
        if self.exponential_base < 1.0:
            raise ValueError(f"exponential_base must be >= 1.0, got {self.exponential_base}")
        if not 0.0 <= self.jitter_factor <= 1.0:
            raise ValueError(f"jitter_factor must be between 0.0 and 1.0, got {self.jitter_factor}")

    def get_delay_ms(self, attempt: int) -> float:
        """
        Calculate delay for a specific retry attempt.

        Args:
            attempt: Current attempt number (0-indexed).

        Returns:
            Delay in milliseconds before the next retry.
        """
        delay = self.base_delay_ms * (self.exponential_base**attempt)
        if self.jitter_factor > 0:
            jitter = delay * self.jitter_factor * random.random()  # nosec B311 - retry jitter
            delay = delay + jitter
        return min(delay, self.max_delay_ms)

    def to_dict(self) -> dict[str, Any]:
        return {
            "max_attempts": self.max_attempts,
            "base_delay_ms": self.base_delay_ms,
            "max_delay_ms": self.max_delay_ms,
            "exponential_base": self.exponential_base,
            "jitter_factor": self.jitter_factor,
        }


TRANSIENT_RETRY_CONFIG = RetryConfig(
    max_attempts=5,
    base_delay_ms=100.0,
    max_delay_ms=30000.0,
    exponential_base=2.0,
    jitter_factor=0.1,
)

SWITCHOVER_RETRY_CONFIG = RetryConfig(
    max_attempts=3,
    base_delay_ms=250.0,
    max_delay_ms=5000.0,
    exponential_base=2.0,
    jitter_factor=0.1,
)


@dataclass(frozen=True)
class ErrorClassification:
    """
    Rich metadata for error classification.

    Attributes:
        severity: The severity level of the error.
        recoverability: How the error can be recovered from.
        error_code: Unique error code for programmatic handling.
        category: Error category for grouping related errors.
        suggested_action: Human-readable guidance for operators.
        retry_config: Configuration for automatic retry (if applicable).
        metrics_labels: Labels for metrics instrumentation.
    """

    severity: ErrorSeverity
    recoverability: ErrorRecoverability
    error_code: str
    category: str
    suggested_action: str
    retry_config: RetryConfig | None = None
    metrics_labels: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "severity": self.severity.value,
            "recoverability": self.recoverability.value,
            "error_code": self.error_code,
            "category": self.category,
            "suggested_action": self.suggested_action,
        }
        if self.retry_config:
            result["retry_config"] = self.retry_config.to_dict()
        if self.metrics_labels:
            result["metrics_labels"] = self.metrics_labels
        return result


class RotationError(Exception):
    """
    Base exception for all rotation errors.

    Attributes:
        message: Human-readable error description.
        group_id: Cluster group the error concerns, if applicable.
        rotation_id: Rotation request the error concerns, if applicable.
        phase: Phase of the group when the error was raised, if known.
        rule: Safety rule that was violated, if the error is a veto.
        classification: Rich error classification metadata.
    """

    _default_classification: ErrorClassification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.FATAL,
        error_code="ROTATION_ERROR",
        category="general",
        suggested_action="Review orchestrator logs and the group's transition log",
    )

    def __init__(
        self,
        message: str,
        *,
        group_id: str | None = None,
        rotation_id: int | None = None,
        phase: RotationPhase | None = None,
        rule: ViolationKind | None = None,
    ) -> None:
        self.message = message
        self.group_id = group_id
        self.rotation_id = rotation_id
        self.phase = phase
        self.rule = rule
        super().__init__(message)

    def __str__(self) -> str:
        parts = [self.message]
        if self.group_id:
            parts.append(f"group_id={self.group_id}")
        if self.rotation_id is not None:
            parts.append(f"rotation_id={self.rotation_id}")
        return " ".join(parts)

    @property
    def classification(self) -> ErrorClassification:
        return self._default_classification

    @property
    def severity(self) -> ErrorSeverity:
        return self.classification.severity

    @property
    def recoverability_type(self) -> ErrorRecoverability:
        return self.classification.recoverability

    @property
    def error_code(self) -> str:
        return self.classification.error_code

    @property
    def retry_config(self) -> RetryConfig | None:
        return self.classification.retry_config

    def to_dict(self) -> dict[str, Any]:
        """
        Convert the exception to a dictionary for serialization.

        Returns:
            Dictionary with the message, error code, violated rule and the
            phase that caused the error.
        """
        return {
            "message": self.message,
            "error_code": self.error_code,
            "group_id": self.group_id,
            "rotation_id": self.rotation_id,
            "phase": self.phase.value if self.phase else None,
            "rule": self.rule.value if self.rule else None,
            "classification": self.classification.to_dict(),
        }


class RotationNotFoundError(RotationError):
    """Raised when a group has no rotation state or request."""

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.FATAL,
        error_code="ROTATION_NOT_FOUND",
        category="lookup",
        suggested_action="Verify the group id and that a rotation was started for it",
    )

    def __init__(self, group_id: str, rotation_id: int | None = None) -> None:
        detail = f" (rotation {rotation_id})" if rotation_id is not None else ""
        super().__init__(
            message=f"No rotation found for group {group_id}{detail}",
            group_id=group_id,
            rotation_id=rotation_id,
        )


class RotationInProgressError(RotationError):
    """
    Raised when a rotation is requested for a group that already has one.

    Attributes:
        existing_rotation_id: The rotation currently holding the group.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.WARNING,
        recoverability=ErrorRecoverability.RECOVERABLE,
        error_code="ROTATION_IN_PROGRESS",
        category="conflict",
        suggested_action="Wait for the active rotation to finish or roll it back",
    )

    def __init__(
        self,
        group_id: str,
        existing_rotation_id: int | None,
        phase: RotationPhase | None = None,
    ) -> None:
        self.existing_rotation_id = existing_rotation_id
        super().__init__(
            message=(
                f"Rotation already in progress for group {group_id}: "
                f"rotation {existing_rotation_id}"
            ),
            group_id=group_id,
            rotation_id=existing_rotation_id,
            phase=phase,
        )


class ClusterNotFoundError(RotationError):
    """Raised when a cluster is not registered."""

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.FATAL,
        error_code="CLUSTER_NOT_FOUND",
        category="lookup",
        suggested_action="Register the cluster before referencing it",
    )

    def __init__(self, cluster_id: str, group_id: str | None = None) -> None:
        self.cluster_id = cluster_id
        super().__init__(
            message=f"Cluster not found: {cluster_id}",
            group_id=group_id,
        )


class GroupNotFoundError(ClusterNotFoundError):
    """Raised when a cluster group is not registered."""

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.FATAL,
        error_code="GROUP_NOT_FOUND",
        category="lookup",
        suggested_action="Register the group with its active cluster first",
    )

    def __init__(self, group_id: str) -> None:
        super().__init__(group_id, group_id=group_id)
        self.message = f"Cluster group not found: {group_id}"
        self.args = (self.message,)


class InvalidTargetError(RotationError):
    """Raised when a rotation target is the source or already has a role."""

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.WARNING,
        recoverability=ErrorRecoverability.RECOVERABLE,
        error_code="INVALID_TARGET",
        category="validation",
        suggested_action="Choose a new, unregistered cluster as the rotation target",
    )

    def __init__(self, group_id: str, cluster_id: str, reason: str) -> None:
        self.cluster_id = cluster_id
        self.reason = reason
        super().__init__(
            message=f"Invalid rotation target {cluster_id}: {reason}",
            group_id=group_id,
        )


class InvalidWeightError(RotationError):
    """
    Raised when a traffic split is malformed.

    Weights must be non-negative integers summing to 100 and the two
    clusters must differ.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.WARNING,
        recoverability=ErrorRecoverability.RECOVERABLE,
        error_code="INVALID_WEIGHT",
        category="validation",
        suggested_action="Provide two distinct clusters with weights summing to 100",
    )

    def __init__(self, message: str, group_id: str | None = None) -> None:
        super().__init__(message=message, group_id=group_id)


class InvalidStateTransitionError(RotationError):
    """
    Raised when a transition is not the single forward edge of the phase.

    Attributes:
        current_phase: The phase the group is in.
        target_phase: The phase that was attempted.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.FATAL,
        error_code="INVALID_STATE_TRANSITION",
        category="state",
        suggested_action="Only the forward edge or an explicit rollback may leave a phase",
    )

    def __init__(
        self,
        group_id: str,
        current_phase: RotationPhase,
        target_phase: RotationPhase,
    ) -> None:
        self.current_phase = current_phase
        self.target_phase = target_phase
        super().__init__(
            message=f"Invalid phase transition: {current_phase.value} -> {target_phase.value}",
            group_id=group_id,
            phase=current_phase,
        )


class InvariantViolation(RotationError):  # noqa: N818
    """
    Raised when the safety enforcer vetoes a transition or mutation.

    The rotation stays parked in its current phase with the veto recorded.

    Attributes:
        rule: The violated safety rule.
        phase: The phase the group was in.
        proposed_phase: The phase the transition attempted to enter.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.WARNING,
        recoverability=ErrorRecoverability.RECOVERABLE,
        error_code="INVARIANT_VIOLATION",
        category="safety",
        suggested_action="Wait for the violated condition to clear, or roll back",
    )

    def __init__(
        self,
        rule: ViolationKind,
        message: str,
        *,
        group_id: str | None = None,
        phase: RotationPhase | None = None,
        proposed_phase: RotationPhase | None = None,
        rotation_id: int | None = None,
    ) -> None:
        self.proposed_phase = proposed_phase
        super().__init__(
            message=message,
            group_id=group_id,
            rotation_id=rotation_id,
            phase=phase,
            rule=rule,
        )

    def __str__(self) -> str:
        where = f" in {self.phase.value}" if self.phase else ""
        return f"InvariantViolation: {self.rule.value}{where}: {self.message}"  # type: ignore[union-attr]

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        result["proposed_phase"] = self.proposed_phase.value if self.proposed_phase else None
        return result


class SplitBrainFault(InvariantViolation):
    """
    Raised when more than one cluster reports itself as write master.

    Fatal for automation: the group moves to FAULT and only an operator can
    resolve it.

    Attributes:
        masters: Clusters observed reporting master authority.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.CRITICAL,
        recoverability=ErrorRecoverability.FATAL,
        error_code="SPLIT_BRAIN",
        category="safety",
        suggested_action=(
            "Block writes on all but one cluster, reconcile the divergence, "
            "then resolve the fault manually"
        ),
    )

    def __init__(
        self,
        rule: ViolationKind,
        masters: frozenset[str],
        *,
        group_id: str | None = None,
        phase: RotationPhase | None = None,
        rotation_id: int | None = None,
    ) -> None:
        self.masters = masters
        super().__init__(
            rule,
            f"multiple clusters report write master: {', '.join(sorted(masters))}",
            group_id=group_id,
            phase=phase,
            rotation_id=rotation_id,
        )


class ConflictingMasterError(RotationError):
    """
    Raised when a demotion could not be confirmed during emergency rollback.

    Attributes:
        cluster_id: The cluster still claiming master authority.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.CRITICAL,
        recoverability=ErrorRecoverability.FATAL,
        error_code="CONFLICTING_MASTER",
        category="safety",
        suggested_action="Fence the cluster still accepting writes before resolving the fault",
    )

    def __init__(
        self,
        group_id: str,
        cluster_id: str,
        *,
        phase: RotationPhase | None = None,
        rotation_id: int | None = None,
    ) -> None:
        self.cluster_id = cluster_id
        super().__init__(
            message=f"Demotion of {cluster_id} was not confirmed; cluster still reports master",
            group_id=group_id,
            rotation_id=rotation_id,
            phase=phase,
        )


class RotationTimeoutError(RotationError):
    """
    Raised when a phase or bounded wait exceeds its timeout.

    Attributes:
        elapsed_seconds: How long the phase or wait took.
        timeout_seconds: The configured limit.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.RECOVERABLE,
        error_code="ROTATION_TIMEOUT",
        category="timeout",
        suggested_action=(
            "Before switchover the rotation rolls back automatically; "
            "after switchover investigate the halted group"
        ),
    )

    def __init__(
        self,
        message: str,
        *,
        elapsed_seconds: float,
        timeout_seconds: float,
        group_id: str | None = None,
        rotation_id: int | None = None,
        phase: RotationPhase | None = None,
    ) -> None:
        self.elapsed_seconds = elapsed_seconds
        self.timeout_seconds = timeout_seconds
        super().__init__(
            message=f"{message}: {elapsed_seconds:.1f}s (limit: {timeout_seconds:.1f}s)",
            group_id=group_id,
            rotation_id=rotation_id,
            phase=phase,
        )


class ExternalCallFailure(RotationError):
    """
    Raised when a collaborator call fails.

    Transient: the calling component retries it with backoff. When retries
    exhaust, the failure surfaces as a parked or halted rotation.

    Attributes:
        operation: Name of the collaborator operation.
        cause: The underlying error, if any.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.WARNING,
        recoverability=ErrorRecoverability.TRANSIENT,
        error_code="EXTERNAL_CALL_FAILURE",
        category="connectivity",
        suggested_action="Check the collaborator's availability; the call is retried",
        retry_config=TRANSIENT_RETRY_CONFIG,
    )

    def __init__(
        self,
        operation: str,
        message: str | None = None,
        *,
        cause: Exception | None = None,
        group_id: str | None = None,
    ) -> None:
        self.operation = operation
        self.cause = cause
        super().__init__(
            message=f"External call '{operation}' failed: {message or cause}",
            group_id=group_id,
        )


class RollbackNotPermittedError(RotationError):
    """Raised when a rollback kind is requested from a phase that forbids it."""

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.WARNING,
        recoverability=ErrorRecoverability.RECOVERABLE,
        error_code="ROLLBACK_NOT_PERMITTED",
        category="state",
        suggested_action=(
            "Use rollback before switchover and emergency_rollback from "
            "switchover_locked or promoted"
        ),
    )

    def __init__(
        self,
        group_id: str,
        phase: RotationPhase,
        kind: str,
        rotation_id: int | None = None,
    ) -> None:
        self.kind = kind
        super().__init__(
            message=f"{kind} is not permitted from phase {phase.value}",
            group_id=group_id,
            rotation_id=rotation_id,
            phase=phase,
        )


class WriteBlockedError(RotationError):
    """Raised when a pointer mutation is attempted under the wrong maintenance state."""

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.WARNING,
        recoverability=ErrorRecoverability.RECOVERABLE,
        error_code="WRITE_BLOCKED",
        category="write_pointer",
        suggested_action="Retry after the switchover window closes",
    )

    def __init__(self, group_id: str, operation: str, reason: str) -> None:
        self.operation = operation
        super().__init__(
            message=f"Write pointer operation '{operation}' blocked: {reason}",
            group_id=group_id,
        )


class AutomationHaltedError(RotationError):
    """Raised when automation is asked to act on a halted or faulted group."""

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.FATAL,
        error_code="AUTOMATION_HALTED",
        category="state",
        suggested_action="An operator must investigate and resolve the group",
    )

    def __init__(
        self,
        group_id: str,
        reason: str | None,
        *,
        phase: RotationPhase | None = None,
        rotation_id: int | None = None,
    ) -> None:
        self.reason = reason
        super().__init__(
            message=f"Automation halted for group {group_id}: {reason or 'unknown'}",
            group_id=group_id,
            rotation_id=rotation_id,
            phase=phase,
        )


class StateConflictError(RotationError):
    """
    Raised when a rotation state save loses an optimistic version check.

    Another writer (usually a second orchestrator replica) saved the group
    since this copy was loaded.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.RECOVERABLE,
        error_code="STATE_CONFLICT",
        category="persistence",
        suggested_action="Reload the group state; ensure one orchestrator drives each group",
    )

    def __init__(self, group_id: str, expected_version: int, actual_version: int | None) -> None:
        self.expected_version = expected_version
        self.actual_version = actual_version
        super().__init__(
            message=(
                f"Rotation state version conflict: expected {expected_version}, "
                f"found {actual_version}"
            ),
            group_id=group_id,
        )


class ErrorHandler:
    """
    Error handler with automatic retry for transient errors.

    Provides:
    - Automatic retry for transient errors with exponential backoff
    - Structured logging at the classification's level
    - Alert hook for critical/error severity

    Usage:
        >>> handler = ErrorHandler()
        >>> link_id = await handler.execute_with_retry(
        ...     lambda: mesh.create_link("blue", "green", idempotency_key=key),
        ...     operation_name="mesh.create_link",
        ... )

    Attributes:
        alert_callback: Callback for alerting on errors.
        metrics_callback: Callback for recording error metrics.
    """

    def __init__(
        self,
        alert_callback: Callable[[RotationError], Awaitable[None] | None] | None = None,
        metrics_callback: Callable[[RotationError, bool], None] | None = None,
        *,
        sleep: Callable[[float], Awaitable[None]] | None = None,
    ) -> None:
        """
        Initialize the error handler.

        Args:
            alert_callback: Invoked when errors with alerting severity occur; may be
                a coroutine function.
            metrics_callback: Records error metrics (error, retried).
            sleep: Coroutine used between retries (defaults to asyncio.sleep).
        """
        self.alert_callback = alert_callback
        self.metrics_callback = metrics_callback
        self._sleep = sleep or asyncio.sleep

    async def execute_with_retry(
        self,
        operation: Callable[[], Coroutine[Any, Any, T]],
        operation_name: str,
        *,
        group_id: str | None = None,
        retry_config: RetryConfig | None = None,
        on_retry: Callable[[int, Exception, float], None] | None = None,
    ) -> T:
        """
        Execute an operation with automatic retry for transient errors.

        Args:
            operation: Async callable to execute.
            operation_name: Name for logging and metrics.
            group_id: Optional group for error context.
            retry_config: Override retry configuration.
            on_retry: Callback invoked on each retry (attempt, exception, delay_ms).

        Returns:
            The result of the operation.

        Raises:
            RotationError: If all retries are exhausted or error is non-transient.
        """
        attempt = 0
        while True:
            try:
                result = await operation()
                if attempt > 0:
                    logger.info(
                        "Operation '%s' succeeded after %d retries",
                        operation_name,
                        attempt,
                    )
                return result

            except RotationError as e:
                if group_id and e.group_id is None:
                    e.group_id = group_id
                await self._handle_error(e, operation_name)

                if not e.recoverability_type.should_retry:
                    raise

                config = retry_config or e.retry_config or TRANSIENT_RETRY_CONFIG
                if attempt + 1 >= config.max_attempts:
                    logger.error(
                        "Exhausted %d attempts for '%s': %s",
                        config.max_attempts,
                        operation_name,
                        e.message,
                    )
                    raise

                delay_ms = config.get_delay_ms(attempt)
                delay_s = delay_ms / 1000.0
                logger.warning(
                    "Retryable error in '%s' (attempt %d/%d): %s. Retrying in %.2fs",
                    operation_name,
                    attempt + 1,
                    config.max_attempts,
                    e.message,
                    delay_s,
                )
                if on_retry:
                    on_retry(attempt, e, delay_ms)

                await self._sleep(delay_s)
                attempt += 1

            except Exception as e:
                logger.exception("Unexpected error in '%s': %s", operation_name, e)
                raise

    async def _handle_error(self, error: RotationError, operation_name: str) -> None:
        """Log an error at its classified level and alert when warranted."""
        classification = error.classification
        logger.log(
            classification.severity.log_level,
            "Error in '%s': %s [code=%s, severity=%s, recoverable=%s]",
            operation_name,
            error.message,
            classification.error_code,
            classification.severity.value,
            classification.recoverability.value,
        )

        if classification.severity.should_alert and self.alert_callback:
            try:
                outcome = self.alert_callback(error)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception:
                logger.exception("Alert callback failed")

        if self.metrics_callback:
            try:
                self.metrics_callback(error, classification.recoverability.should_retry)
            except Exception:
                logger.exception("Metrics callback failed")


__all__ = [
    # Classification
    "ErrorSeverity",
    "ErrorRecoverability",
    "ErrorClassification",
    "RetryConfig",
    "TRANSIENT_RETRY_CONFIG",
    "SWITCHOVER_RETRY_CONFIG",
    # Errors
    "RotationError",
    "RotationNotFoundError",
    "RotationInProgressError",
    "ClusterNotFoundError",
    "GroupNotFoundError",
    "InvalidTargetError",
    "InvalidWeightError",
    "InvalidStateTransitionError",
    "InvariantViolation",
    "SplitBrainFault",
    "ConflictingMasterError",
    "RotationTimeoutError",
    "ExternalCallFailure",
    "RollbackNotPermittedError",
    "WriteBlockedError",
    "AutomationHaltedError",
    "StateConflictError",
    # Handling
    "ErrorHandler",
]
