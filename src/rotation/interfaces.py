"""
Capability interfaces for the orchestrator's external collaborators.

Provisioning, GitOps reconciliation, the service mesh, database
replication, ingress routing, metrics and alerting are all reached through
the protocols below. Every mutating call takes an ``idempotency_key``;
implementations must treat a repeated key as a no-op that returns the
original result. Failures should be raised as ``ExternalCallFailure`` so the
calling component can retry them with backoff.

Fakes implementing every protocol live in ``rotation.testing``.
"""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from rotation.exceptions import ErrorSeverity
    from rotation.models import (
        ClusterDescriptor,
        ClusterHealth,
        LinkStatus,
        ReconciliationStatus,
        TrafficSplit,
        WritePointer,
    )


@runtime_checkable
class ProvisioningProvider(Protocol):
    """Creates and destroys Kubernetes clusters."""

    async def provision_cluster(
        self,
        descriptor: ClusterDescriptor,
        *,
        idempotency_key: str,
    ) -> str:
        """Request creation of a cluster; returns the provider's cluster id."""
        ...

    async def decommission_cluster(self, cluster_id: str, *, idempotency_key: str) -> bool:
        """Request destruction of a cluster; True once acknowledged."""
        ...

    async def get_cluster_health(self, cluster_id: str) -> ClusterHealth:
        """READY once the cluster API is reachable and nodes are ready."""
        ...


@runtime_checkable
class ReconciliationProvider(Protocol):
    """Installs and reports on the GitOps base profile of a cluster."""

    async def apply_profile(
        self,
        cluster_id: str,
        profile_ref: str,
        *,
        idempotency_key: str,
    ) -> None: ...

    async def get_reconciliation_status(self, cluster_id: str) -> ReconciliationStatus: ...


@runtime_checkable
class MeshProvider(Protocol):
    """Establishes trust and links between two clusters' meshes."""

    async def create_link(self, source: str, target: str, *, idempotency_key: str) -> str:
        """Create a link and return its id."""
        ...

    async def get_link_status(self, link_id: str) -> LinkStatus: ...

    async def list_mirror_endpoints(self, link_id: str) -> list[str]: ...

    async def delete_link(self, link_id: str, *, idempotency_key: str) -> None: ...


@runtime_checkable
class ReplicationProvider(Protocol):
    """Controls data replication between clusters."""

    async def set_replication_source(
        self,
        target: str,
        source: str,
        *,
        idempotency_key: str,
    ) -> None: ...

    async def detach_replication(self, cluster_id: str, *, idempotency_key: str) -> None: ...

    async def get_replication_lag(self, cluster_id: str) -> int:
        """Lag of ``cluster_id`` behind its replication source, in bytes."""
        ...

    async def get_replication_source(self, cluster_id: str) -> str | None:
        """Cluster ``cluster_id`` replicates from, or None when detached."""
        ...

    async def list_unreplicated_writes(
        self,
        from_cluster: str,
        to_cluster: str,
        *,
        since: datetime | None,
    ) -> list[str]:
        """Identifiers of writes accepted by ``from_cluster`` and absent on ``to_cluster``."""
        ...


@runtime_checkable
class TrafficRouter(Protocol):
    """Applies read traffic weights at the ingress / gateway layer."""

    async def apply_split(self, split: TrafficSplit, *, idempotency_key: str) -> None:
        """Apply both weights of ``split`` atomically."""
        ...


@runtime_checkable
class MetricsProvider(Protocol):
    async def get_success_rate(self, group_id: str, cluster_id: str) -> float:
        """Ratio of successful requests served by ``cluster_id`` (0..1)."""
        ...


@runtime_checkable
class WriteConfigPublisher(Protocol):
    """Pushes the write pointer to clusters and reads back what they applied."""

    async def publish_pointer(self, cluster_id: str, pointer: WritePointer) -> None: ...

    async def get_applied_version(self, cluster_id: str, group_id: str) -> int:
        """Pointer version ``cluster_id`` has applied for ``group_id``."""
        ...

    async def reports_master(self, cluster_id: str, group_id: str) -> bool:
        """Whether ``cluster_id`` currently accepts writes as master for ``group_id``."""
        ...

    async def count_inflight_writes(self, cluster_id: str, group_id: str) -> int: ...


@runtime_checkable
class AlertSink(Protocol):
    async def alert(
        self,
        severity: ErrorSeverity,
        message: str,
        *,
        group_id: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None: ...


__all__ = [
    "ProvisioningProvider",
    "ReconciliationProvider",
    "MeshProvider",
    "ReplicationProvider",
    "TrafficRouter",
    "MetricsProvider",
    "WriteConfigPublisher",
    "AlertSink",
]
