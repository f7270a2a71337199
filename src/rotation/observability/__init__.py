"""
Observability utilities for the rotation orchestrator.

This module provides the composition-based tracer and the standard
attribute names used for spans and metric labels.

Example:
    >>> from rotation.observability import create_tracer
    >>>
    >>> class MyController:
    ...     def __init__(self, enable_tracing: bool = True):
    ...         self._tracer = create_tracer(__name__, enable_tracing)
    ...         self._enable_tracing = self._tracer.enabled
"""

from rotation.observability.attributes import (
    ATTR_CLUSTER_ID,
    ATTR_DB_SYSTEM,
    ATTR_GROUP_ID,
    ATTR_LAG_BYTES,
    ATTR_LAG_THRESHOLD,
    ATTR_LOCK_KEY,
    ATTR_LOCK_TIMEOUT,
    ATTR_MAINTENANCE,
    ATTR_PHASE,
    ATTR_POINTER_MASTER,
    ATTR_POINTER_VERSION,
    ATTR_PROPOSED_PHASE,
    ATTR_RETRY_COUNT,
    ATTR_ROTATION_ID,
    ATTR_SOURCE_CLUSTER,
    ATTR_SPLIT_VERSION,
    ATTR_TARGET_CLUSTER,
    ATTR_TARGET_WEIGHT,
    ATTR_VIOLATION_RULE,
)
from rotation.observability.tracer import (
    MockTracer,
    NullTracer,
    OpenTelemetryTracer,
    Tracer,
    create_tracer,
)

__all__ = [
    # Tracer (composition-based API)
    "Tracer",
    "NullTracer",
    "OpenTelemetryTracer",
    "MockTracer",
    "create_tracer",
    # Attributes - Rotation
    "ATTR_GROUP_ID",
    "ATTR_ROTATION_ID",
    "ATTR_PHASE",
    "ATTR_PROPOSED_PHASE",
    "ATTR_SOURCE_CLUSTER",
    "ATTR_TARGET_CLUSTER",
    "ATTR_CLUSTER_ID",
    # Attributes - Safety
    "ATTR_VIOLATION_RULE",
    "ATTR_LAG_BYTES",
    "ATTR_LAG_THRESHOLD",
    # Attributes - Pointer / Traffic
    "ATTR_POINTER_MASTER",
    "ATTR_POINTER_VERSION",
    "ATTR_MAINTENANCE",
    "ATTR_TARGET_WEIGHT",
    "ATTR_SPLIT_VERSION",
    # Attributes - Persistence / Locks
    "ATTR_DB_SYSTEM",
    "ATTR_LOCK_KEY",
    "ATTR_LOCK_TIMEOUT",
    "ATTR_RETRY_COUNT",
]
