"""
rotation - Zero-downtime Kubernetes cluster rotation orchestrator.

This library provides:
- A per-group rotation state machine (provision, bootstrap, mesh link,
  data sync, traffic canary, switchover, promotion, drain)
- A versioned write pointer with single-master enforcement
- Validated two-cluster traffic splits
- Safety invariant enforcement (single master, blind mirror, lag gate,
  canary monotonicity, split brain)
- Rollback and emergency rollback with divergence reporting
- In-memory, SQLite and PostgreSQL persistence with crash resume
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("cluster-rotation")
except PackageNotFoundError:
    # Package not installed (running from source without install)
    __version__ = "0.0.0.dev0"

from rotation.control import (
    ControlResponse,
    RotationControlPlane,
    SetSplitCommand,
    StartRotationCommand,
)
from rotation.enforcer import SafetyInvariantEnforcer, TransitionCheck
from rotation.exceptions import (
    AutomationHaltedError,
    ClusterNotFoundError,
    ConflictingMasterError,
    ErrorHandler,
    ErrorSeverity,
    ExternalCallFailure,
    GroupNotFoundError,
    InvalidStateTransitionError,
    InvalidTargetError,
    InvalidWeightError,
    InvariantViolation,
    RetryConfig,
    RollbackNotPermittedError,
    RotationError,
    RotationInProgressError,
    RotationNotFoundError,
    RotationTimeoutError,
    SplitBrainFault,
    StateConflictError,
    WriteBlockedError,
)
from rotation.gateway import HealthGateway
from rotation.interfaces import (
    AlertSink,
    MeshProvider,
    MetricsProvider,
    ProvisioningProvider,
    ReconciliationProvider,
    ReplicationProvider,
    TrafficRouter,
    WriteConfigPublisher,
)
from rotation.journal import RotationJournal
from rotation.locks import (
    InMemoryLockManager,
    LockAcquisitionError,
    LockManager,
    PostgreSQLLockManager,
    rotation_lock_key,
)
from rotation.metrics import RotationMetrics, RotationMetricSnapshot
from rotation.models import (
    ClusterDescriptor,
    ClusterGroup,
    ClusterHealth,
    ClusterRole,
    DivergenceReport,
    EmergencyRollbackResult,
    LinkStatus,
    ReconciliationStatus,
    ReplicationStatus,
    RollbackResult,
    RotationConfig,
    RotationPhase,
    RotationRequest,
    RotationState,
    RotationStatus,
    SwitchoverResult,
    TrafficSplit,
    TransitionKind,
    TransitionRecord,
    Veto,
    ViolationKind,
    WritePointer,
)
from rotation.registry import ClusterRegistry
from rotation.repositories import (
    ClusterRepository,
    InMemoryClusterRepository,
    InMemoryRotationStateRepository,
    PostgreSQLClusterRepository,
    PostgreSQLRotationStateRepository,
    RotationStateRepository,
    SQLiteClusterRepository,
    SQLiteRotationStateRepository,
)
from rotation.rollback import RollbackCoordinator
from rotation.state_machine import RotationStateMachine
from rotation.switchover import SwitchoverCoordinator
from rotation.traffic import TrafficWeightController, validate_split
from rotation.write_pointer import WritePointerManager

__all__ = [
    "__version__",
    # Orchestration
    "RotationStateMachine",
    "SwitchoverCoordinator",
    "RollbackCoordinator",
    "RotationJournal",
    "WritePointerManager",
    "TrafficWeightController",
    "validate_split",
    "SafetyInvariantEnforcer",
    "TransitionCheck",
    "ClusterRegistry",
    "HealthGateway",
    # Control surface
    "RotationControlPlane",
    "ControlResponse",
    "StartRotationCommand",
    "SetSplitCommand",
    # Models
    "ClusterDescriptor",
    "ClusterGroup",
    "ClusterHealth",
    "ClusterRole",
    "DivergenceReport",
    "EmergencyRollbackResult",
    "LinkStatus",
    "ReconciliationStatus",
    "ReplicationStatus",
    "RollbackResult",
    "RotationConfig",
    "RotationPhase",
    "RotationRequest",
    "RotationState",
    "RotationStatus",
    "SwitchoverResult",
    "TrafficSplit",
    "TransitionKind",
    "TransitionRecord",
    "Veto",
    "ViolationKind",
    "WritePointer",
    # Collaborator interfaces
    "AlertSink",
    "MeshProvider",
    "MetricsProvider",
    "ProvisioningProvider",
    "ReconciliationProvider",
    "ReplicationProvider",
    "TrafficRouter",
    "WriteConfigPublisher",
    # Exceptions
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
    "ErrorHandler",
    "ErrorSeverity",
    "RetryConfig",
    # Persistence
    "RotationStateRepository",
    "InMemoryRotationStateRepository",
    "SQLiteRotationStateRepository",
    "PostgreSQLRotationStateRepository",
    "ClusterRepository",
    "InMemoryClusterRepository",
    "SQLiteClusterRepository",
    "PostgreSQLClusterRepository",
    # Locks
    "LockManager",
    "InMemoryLockManager",
    "PostgreSQLLockManager",
    "LockAcquisitionError",
    "rotation_lock_key",
    # Observability
    "RotationMetrics",
    "RotationMetricSnapshot",
]
