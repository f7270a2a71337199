"""
Persistence for rotation state and the cluster registry.

Example:
    >>> from rotation.repositories import (
    ...     InMemoryClusterRepository,
    ...     InMemoryRotationStateRepository,
    ... )
    >>>
    >>> states = InMemoryRotationStateRepository()
    >>> clusters = InMemoryClusterRepository()
"""

from rotation.repositories.cluster import (
    ClusterRepository,
    InMemoryClusterRepository,
    PostgreSQLClusterRepository,
    SQLiteClusterRepository,
)
from rotation.repositories.schema import create_postgresql_schema, create_sqlite_schema
from rotation.repositories.state import (
    InMemoryRotationStateRepository,
    PostgreSQLRotationStateRepository,
    RotationStateRepository,
    SQLiteRotationStateRepository,
)

__all__ = [
    # Rotation state
    "RotationStateRepository",
    "InMemoryRotationStateRepository",
    "SQLiteRotationStateRepository",
    "PostgreSQLRotationStateRepository",
    # Clusters
    "ClusterRepository",
    "InMemoryClusterRepository",
    "SQLiteClusterRepository",
    "PostgreSQLClusterRepository",
    # Schema
    "create_postgresql_schema",
    "create_sqlite_schema",
]
