"""
Cluster repository backing the cluster registry.

Stores cluster descriptors and cluster groups.
"""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Protocol, runtime_checkable

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from rotation.models import ClusterDescriptor, ClusterGroup
from rotation.repositories._connection import execute_with_connection
from rotation.repositories.state import _load_document
from rotation.serialization import json_dumps

if TYPE_CHECKING:
    import aiosqlite


@runtime_checkable
class ClusterRepository(Protocol):
    """Protocol for cluster and group persistence."""

    async def get_cluster(self, cluster_id: str) -> ClusterDescriptor | None: ...

    async def save_cluster(self, descriptor: ClusterDescriptor) -> None:
        """Insert or replace a descriptor."""
        ...

    async def delete_cluster(self, cluster_id: str) -> bool:
        """Remove a descriptor; True if it existed."""
        ...

    async def list_clusters(self, group_id: str | None = None) -> list[ClusterDescriptor]: ...

    async def get_group(self, group_id: str) -> ClusterGroup | None: ...

    async def save_group(self, group: ClusterGroup) -> None: ...

    async def list_groups(self) -> list[ClusterGroup]: ...


class InMemoryClusterRepository:
    """In-memory implementation for testing."""

    def __init__(self) -> None:
        self._clusters: dict[str, ClusterDescriptor] = {}
        self._groups: dict[str, ClusterGroup] = {}
        self._lock = asyncio.Lock()

    async def get_cluster(self, cluster_id: str) -> ClusterDescriptor | None:
        async with self._lock:
            return self._clusters.get(cluster_id)

    async def save_cluster(self, descriptor: ClusterDescriptor) -> None:
        async with self._lock:
            self._clusters[descriptor.cluster_id] = descriptor

    async def delete_cluster(self, cluster_id: str) -> bool:
        async with self._lock:
            return self._clusters.pop(cluster_id, None) is not None

    async def list_clusters(self, group_id: str | None = None) -> list[ClusterDescriptor]:
        async with self._lock:
            return [
                c
                for c in sorted(self._clusters.values(), key=lambda c: c.cluster_id)
                if group_id is None or c.group_id == group_id
            ]

    async def get_group(self, group_id: str) -> ClusterGroup | None:
        async with self._lock:
            return self._groups.get(group_id)

    async def save_group(self, group: ClusterGroup) -> None:
        async with self._lock:
            self._groups[group.group_id] = group

    async def list_groups(self) -> list[ClusterGroup]:
        async with self._lock:
            return sorted(self._groups.values(), key=lambda g: g.group_id)


class SQLiteClusterRepository:
    """SQLite implementation using aiosqlite."""

    def __init__(self, connection: aiosqlite.Connection) -> None:
        self._connection = connection

    async def get_cluster(self, cluster_id: str) -> ClusterDescriptor | None:
        cursor = await self._connection.execute(
            "SELECT document FROM rotation_clusters WHERE cluster_id = ?",
            (cluster_id,),
        )
        row = await cursor.fetchone()
        return ClusterDescriptor.from_dict(_load_document(row[0])) if row else None

    async def save_cluster(self, descriptor: ClusterDescriptor) -> None:
        await self._connection.execute(
            """
            INSERT INTO rotation_clusters (cluster_id, group_id, role, document, updated_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT (cluster_id) DO UPDATE
            SET group_id = excluded.group_id,
                role = excluded.role,
                document = excluded.document,
                updated_at = excluded.updated_at
            """,
            (
                descriptor.cluster_id,
                descriptor.group_id,
                descriptor.role.value,
                json_dumps(descriptor.to_dict()),
                datetime.now(UTC).isoformat(),
            ),
        )
        await self._connection.commit()

    async def delete_cluster(self, cluster_id: str) -> bool:
        cursor = await self._connection.execute(
            "DELETE FROM rotation_clusters WHERE cluster_id = ?",
            (cluster_id,),
        )
        await self._connection.commit()
        return cursor.rowcount > 0

    async def list_clusters(self, group_id: str | None = None) -> list[ClusterDescriptor]:
        if group_id is None:
            cursor = await self._connection.execute(
                "SELECT document FROM rotation_clusters ORDER BY cluster_id"
            )
        else:
            cursor = await self._connection.execute(
                "SELECT document FROM rotation_clusters WHERE group_id = ? ORDER BY cluster_id",
                (group_id,),
            )
        rows = await cursor.fetchall()
        return [ClusterDescriptor.from_dict(_load_document(row[0])) for row in rows]

    async def get_group(self, group_id: str) -> ClusterGroup | None:
        cursor = await self._connection.execute(
            "SELECT group_id, service, active_cluster_id FROM rotation_groups WHERE group_id = ?",
            (group_id,),
        )
        row = await cursor.fetchone()
        return ClusterGroup(group_id=row[0], service=row[1], active_cluster_id=row[2]) if row else None

    async def save_group(self, group: ClusterGroup) -> None:
        await self._connection.execute(
            """
            INSERT INTO rotation_groups (group_id, service, active_cluster_id, updated_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT (group_id) DO UPDATE
            SET service = excluded.service,
                active_cluster_id = excluded.active_cluster_id,
                updated_at = excluded.updated_at
            """,
            (
                group.group_id,
                group.service,
                group.active_cluster_id,
                datetime.now(UTC).isoformat(),
            ),
        )
        await self._connection.commit()

    async def list_groups(self) -> list[ClusterGroup]:
        cursor = await self._connection.execute(
            "SELECT group_id, service, active_cluster_id FROM rotation_groups ORDER BY group_id"
        )
        rows = await cursor.fetchall()
        return [ClusterGroup(group_id=r[0], service=r[1], active_cluster_id=r[2]) for r in rows]


class PostgreSQLClusterRepository:
    """PostgreSQL implementation using SQLAlchemy async."""

    def __init__(self, conn: AsyncConnection | AsyncEngine) -> None:
        self.conn = conn

    async def get_cluster(self, cluster_id: str) -> ClusterDescriptor | None:
        query = text("SELECT document FROM rotation_clusters WHERE cluster_id = :cluster_id")
        async with execute_with_connection(self.conn, transactional=False) as conn:
            result = await conn.execute(query, {"cluster_id": cluster_id})
            row = result.fetchone()
        return ClusterDescriptor.from_dict(_load_document(row[0])) if row else None

    async def save_cluster(self, descriptor: ClusterDescriptor) -> None:
        query = text("""
            INSERT INTO rotation_clusters (cluster_id, group_id, role, document, updated_at)
            VALUES (:cluster_id, :group_id, :role, CAST(:document AS JSONB), :now)
            ON CONFLICT (cluster_id) DO UPDATE
            SET group_id = EXCLUDED.group_id,
                role = EXCLUDED.role,
                document = EXCLUDED.document,
                updated_at = EXCLUDED.updated_at
        """)
        params = {
            "cluster_id": descriptor.cluster_id,
            "group_id": descriptor.group_id,
            "role": descriptor.role.value,
            "document": json_dumps(descriptor.to_dict()),
            "now": datetime.now(UTC),
        }
        async with execute_with_connection(self.conn, transactional=True) as conn:
            await conn.execute(query, params)

    async def delete_cluster(self, cluster_id: str) -> bool:
        query = text("DELETE FROM rotation_clusters WHERE cluster_id = :cluster_id")
        async with execute_with_connection(self.conn, transactional=True) as conn:
            result = await conn.execute(query, {"cluster_id": cluster_id})
            return result.rowcount > 0

    async def list_clusters(self, group_id: str | None = None) -> list[ClusterDescriptor]:
        if group_id is None:
            query = text("SELECT document FROM rotation_clusters ORDER BY cluster_id")
            params: dict[str, str] = {}
        else:
            query = text("""
                SELECT document FROM rotation_clusters
                WHERE group_id = :group_id ORDER BY cluster_id
            """)
            params = {"group_id": group_id}
        async with execute_with_connection(self.conn, transactional=False) as conn:
            result = await conn.execute(query, params)
            rows = result.fetchall()
        return [ClusterDescriptor.from_dict(_load_document(row[0])) for row in rows]

    async def get_group(self, group_id: str) -> ClusterGroup | None:
        query = text("""
            SELECT group_id, service, active_cluster_id
            FROM rotation_groups WHERE group_id = :group_id
        """)
        async with execute_with_connection(self.conn, transactional=False) as conn:
            result = await conn.execute(query, {"group_id": group_id})
            row = result.fetchone()
        return ClusterGroup(group_id=row[0], service=row[1], active_cluster_id=row[2]) if row else None

    async def save_group(self, group: ClusterGroup) -> None:
        query = text("""
            INSERT INTO rotation_groups (group_id, service, active_cluster_id, updated_at)
            VALUES (:group_id, :service, :active_cluster_id, :now)
            ON CONFLICT (group_id) DO UPDATE
            SET service = EXCLUDED.service,
                active_cluster_id = EXCLUDED.active_cluster_id,
                updated_at = EXCLUDED.updated_at
        """)
        params = {
            "group_id": group.group_id,
            "service": group.service,
            "active_cluster_id": group.active_cluster_id,
            "now": datetime.now(UTC),
        }
        async with execute_with_connection(self.conn, transactional=True) as conn:
            await conn.execute(query, params)

    async def list_groups(self) -> list[ClusterGroup]:
        query = text(
            "SELECT group_id, service, active_cluster_id FROM rotation_groups ORDER BY group_id"
        )
        async with execute_with_connection(self.conn, transactional=False) as conn:
            result = await conn.execute(query)
            rows = result.fetchall()
        return [ClusterGroup(group_id=r[0], service=r[1], active_cluster_id=r[2]) for r in rows]


__all__ = [
    "ClusterRepository",
    "InMemoryClusterRepository",
    "SQLiteClusterRepository",
    "PostgreSQLClusterRepository",
]
