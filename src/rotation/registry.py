"""
Cluster registry.

Tracks which clusters exist, which group each belongs to and the role each
plays. Only the rotation state machine and rollback coordinator change
roles; everything else reads.
"""

from __future__ import annotations

import logging

from rotation.exceptions import ClusterNotFoundError, GroupNotFoundError
from rotation.models import ClusterDescriptor, ClusterGroup, ClusterRole
from rotation.observability import ATTR_CLUSTER_ID, ATTR_GROUP_ID, Tracer, create_tracer
from rotation.repositories.cluster import ClusterRepository, InMemoryClusterRepository

logger = logging.getLogger(__name__)


class ClusterRegistry:
    """
    Registry of clusters and cluster groups.

    Example:
        >>> registry = ClusterRegistry()
        >>> await registry.register_group(
        ...     "payments", "payments-api", ClusterDescriptor("blue", "eu-west-1")
        ... )
        >>> (await registry.get_cluster("blue")).role
        <ClusterRole.ACTIVE: 'active'>
    """

    def __init__(
        self,
        repository: ClusterRepository | None = None,
        *,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._repository = repository or InMemoryClusterRepository()
        self._tracer = tracer or create_tracer(__name__, enable_tracing)

    async def register_group(
        self,
        group_id: str,
        service: str,
        active: ClusterDescriptor,
    ) -> ClusterGroup:
        """Register a group together with the cluster currently serving it."""
        descriptor = ClusterDescriptor(
            cluster_id=active.cluster_id,
            region=active.region,
            role=ClusterRole.ACTIVE,
            endpoints=active.endpoints,
            labels=active.labels,
            created_at=active.created_at,
            group_id=group_id,
        )
        group = ClusterGroup(group_id=group_id, service=service, active_cluster_id=active.cluster_id)
        await self._repository.save_cluster(descriptor)
        await self._repository.save_group(group)
        logger.info(
            "Registered group %s (service=%s) with active cluster %s",
            group_id,
            service,
            active.cluster_id,
        )
        return group

    async def register_cluster(self, descriptor: ClusterDescriptor) -> ClusterDescriptor:
        """Insert or replace a descriptor as given."""
        with self._tracer.span(
            "rotation.registry.register_cluster",
            {ATTR_CLUSTER_ID: descriptor.cluster_id, ATTR_GROUP_ID: descriptor.group_id or ""},
        ):
            await self._repository.save_cluster(descriptor)
        logger.debug(
            "Registered cluster %s role=%s group=%s",
            descriptor.cluster_id,
            descriptor.role.value,
            descriptor.group_id,
        )
        return descriptor

    async def find_cluster(self, cluster_id: str) -> ClusterDescriptor | None:
        return await self._repository.get_cluster(cluster_id)

    async def get_cluster(self, cluster_id: str) -> ClusterDescriptor:
        """
        Raises:
            ClusterNotFoundError: If the cluster is not registered
        """
        descriptor = await self._repository.get_cluster(cluster_id)
        if descriptor is None:
            raise ClusterNotFoundError(cluster_id)
        return descriptor

    async def list_clusters(self, group_id: str | None = None) -> list[ClusterDescriptor]:
        return await self._repository.list_clusters(group_id)

    async def find_group(self, group_id: str) -> ClusterGroup | None:
        return await self._repository.get_group(group_id)

    async def get_group(self, group_id: str) -> ClusterGroup:
        """
        Raises:
            GroupNotFoundError: If the group is not registered
        """
        group = await self._repository.get_group(group_id)
        if group is None:
            raise GroupNotFoundError(group_id)
        return group

    async def list_groups(self) -> list[ClusterGroup]:
        return await self._repository.list_groups()

    async def set_role(self, cluster_id: str, role: ClusterRole) -> ClusterDescriptor:
        """Change a cluster's role; a no-op if it already has it."""
        descriptor = await self.get_cluster(cluster_id)
        if descriptor.role == role:
            return descriptor
        updated = descriptor.with_role(role)
        await self._repository.save_cluster(updated)
        logger.info(
            "Cluster %s role %s -> %s",
            cluster_id,
            descriptor.role.value,
            role.value,
        )
        return updated

    async def promote(self, group_id: str, cluster_id: str) -> ClusterGroup:
        """Make ``cluster_id`` the active source-of-record of the group."""
        group = await self.get_group(group_id)
        await self.set_role(cluster_id, ClusterRole.ACTIVE)
        if group.active_cluster_id == cluster_id:
            return group
        promoted = ClusterGroup(
            group_id=group.group_id,
            service=group.service,
            active_cluster_id=cluster_id,
        )
        await self._repository.save_group(promoted)
        logger.info(
            "Group %s active cluster %s -> %s",
            group_id,
            group.active_cluster_id,
            cluster_id,
        )
        return promoted

    async def remove_cluster(self, cluster_id: str) -> bool:
        """Remove a cluster; True if it was registered."""
        removed = await self._repository.delete_cluster(cluster_id)
        if removed:
            logger.info("Removed cluster %s from registry", cluster_id)
        return removed


__all__ = ["ClusterRegistry"]
