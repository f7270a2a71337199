"""
Standard span and metric attributes for the rotation orchestrator.

Example:
    >>> from rotation.observability.attributes import ATTR_GROUP_ID, ATTR_PHASE
    >>>
    >>> with tracer.span(
    ...     "rotation.state_machine.transition",
    ...     {ATTR_GROUP_ID: group_id, ATTR_PHASE: phase.value},
    ... ):
    ...     pass
"""

# =============================================================================
# Rotation Attributes
# =============================================================================

ATTR_GROUP_ID = "rotation.group.id"
"""Cluster-group identifier (string)."""

ATTR_ROTATION_ID = "rotation.id"
"""Monotonic rotation identifier (integer)."""

ATTR_PHASE = "rotation.phase"
"""Current rotation phase value (string)."""

ATTR_PROPOSED_PHASE = "rotation.proposed_phase"
"""Phase a transition is attempting to enter (string)."""

ATTR_SOURCE_CLUSTER = "rotation.source_cluster"
"""Cluster currently serving as source-of-record (string)."""

ATTR_TARGET_CLUSTER = "rotation.target_cluster"
"""Cluster being rotated in (string)."""

ATTR_CLUSTER_ID = "rotation.cluster.id"
"""Cluster identifier for cluster-scoped operations (string)."""

# =============================================================================
# Safety Attributes
# =============================================================================

ATTR_VIOLATION_RULE = "rotation.violation.rule"
"""Safety rule that vetoed a transition (string)."""

ATTR_LAG_BYTES = "rotation.replication.lag_bytes"
"""Observed replication lag in bytes (integer)."""

ATTR_LAG_THRESHOLD = "rotation.replication.lag_threshold"
"""Configured lag gate threshold in bytes (integer)."""

# =============================================================================
# Write Pointer / Traffic Attributes
# =============================================================================

ATTR_POINTER_MASTER = "rotation.pointer.master"
"""Cluster designated as write master (string)."""

ATTR_POINTER_VERSION = "rotation.pointer.version"
"""Write pointer version (integer)."""

ATTR_MAINTENANCE = "rotation.pointer.maintenance"
"""Whether writes are blocked for the group (boolean)."""

ATTR_TARGET_WEIGHT = "rotation.traffic.target_weight"
"""Traffic weight routed to the target cluster (integer)."""

ATTR_SPLIT_VERSION = "rotation.traffic.version"
"""Traffic split version (integer)."""

# =============================================================================
# Persistence / Lock Attributes
# =============================================================================

ATTR_DB_SYSTEM = "db.system"
"""Database system identifier, OpenTelemetry semantic convention (string)."""

ATTR_LOCK_KEY = "rotation.lock.key"
"""Lock key (string)."""

ATTR_LOCK_TIMEOUT = "rotation.lock.timeout"
"""Lock acquisition timeout in seconds (float)."""

ATTR_RETRY_COUNT = "rotation.retry.count"
"""Number of retry attempts (integer)."""
