"""
Health gateway.

Read-only polling facade over the provisioning, reconciliation, mesh and
replication collaborators. Nothing here mutates external state, so every
method may be called any number of times. Transient collaborator failures
are retried with backoff; only exhausted retries reach the caller.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Coroutine
from datetime import datetime
from typing import Any, TypeVar

from rotation.exceptions import ErrorHandler, ExternalCallFailure
from rotation.interfaces import (
    MeshProvider,
    ProvisioningProvider,
    ReconciliationProvider,
    ReplicationProvider,
)
from rotation.models import (
    ClusterHealth,
    LinkStatus,
    ReconciliationStatus,
    ReplicationStatus,
    utc_now,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


class HealthGateway:
    """
    Polling facade used by the state machine to evaluate advance conditions.

    Args:
        provisioning: Cluster health source
        reconciliation: GitOps status source
        mesh: Link status and mirror endpoint source
        replication: Replication lag and source
        error_handler: Retries transient collaborator failures
        clock: Returns the current time (injectable for tests)
    """

    def __init__(
        self,
        provisioning: ProvisioningProvider,
        reconciliation: ReconciliationProvider,
        mesh: MeshProvider,
        replication: ReplicationProvider,
        *,
        error_handler: ErrorHandler | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._provisioning = provisioning
        self._reconciliation = reconciliation
        self._mesh = mesh
        self._replication = replication
        self._error_handler = error_handler or ErrorHandler()
        self._clock = clock

    async def cluster_ready(self, cluster_id: str) -> bool:
        health = await self._call(
            "provisioning.get_cluster_health",
            lambda: self._provisioning.get_cluster_health(cluster_id),
        )
        return health == ClusterHealth.READY

    async def reconciliation_status(self, cluster_id: str) -> ReconciliationStatus:
        return await self._call(
            "reconciliation.get_reconciliation_status",
            lambda: self._reconciliation.get_reconciliation_status(cluster_id),
        )

    async def link_ready(self, link_id: str | None) -> bool:
        if link_id is None:
            return False
        status = await self._call("mesh.get_link_status", lambda: self._mesh.get_link_status(link_id))
        return status == LinkStatus.READY

    async def mirror_endpoints_exist(self, link_id: str | None) -> bool:
        if link_id is None:
            return False
        endpoints = await self._call(
            "mesh.list_mirror_endpoints", lambda: self._mesh.list_mirror_endpoints(link_id)
        )
        return len(endpoints) > 0

    async def replication_source(self, cluster_id: str) -> str | None:
        """Cluster ``cluster_id`` currently replicates from, or None when detached."""
        return await self._call(
            "replication.get_replication_source",
            lambda: self._replication.get_replication_source(cluster_id),
        )

    async def replication_status(
        self,
        target: str,
        source: str,
        *,
        link_id: str | None = None,
    ) -> ReplicationStatus:
        """
        Observe replication of ``target`` from ``source``.

        Lag is reported as unknown (None) when the target replicates from a
        different cluster or the lag cannot be read after retrying.
        ``link_up`` reflects the mesh link when ``link_id`` is given.
        """
        link_up = await self.link_ready(link_id) if link_id is not None else True
        actual_source = await self.replication_source(target)
        lag: int | None = None
        if actual_source == source:
            try:
                lag = await self._call(
                    "replication.get_replication_lag",
                    lambda: self._replication.get_replication_lag(target),
                )
            except ExternalCallFailure as e:
                logger.warning("Replication lag unavailable for %s: %s", target, e.message)
        return ReplicationStatus(
            cluster_id=target,
            source_cluster_id=actual_source,
            lag_bytes=lag,
            link_up=link_up,
            observed_at=self._clock(),
        )

    async def _call(
        self,
        operation_name: str,
        operation: Callable[[], Coroutine[Any, Any, T]],
    ) -> T:
        return await self._error_handler.execute_with_retry(
            operation,
            operation_name=operation_name,
        )


__all__ = ["HealthGateway"]
