"""
Database schema for the rotation repositories.

Documents (rotation state, pointer and split versions, cluster
descriptors) are stored as JSON text next to the columns that are queried
directly. PostgreSQL uses JSONB and a sequence for rotation ids; SQLite
uses TEXT and a one-row counter table.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from rotation.repositories._connection import execute_with_connection

if TYPE_CHECKING:
    import aiosqlite

POSTGRESQL_STATEMENTS: tuple[str, ...] = (
    """
    CREATE TABLE IF NOT EXISTS rotation_states (
        group_id TEXT PRIMARY KEY,
        phase TEXT NOT NULL,
        rotation_id BIGINT,
        halted BOOLEAN NOT NULL DEFAULT FALSE,
        version INTEGER NOT NULL,
        document JSONB NOT NULL,
        updated_at TIMESTAMPTZ NOT NULL
    )
    """,
    "CREATE SEQUENCE IF NOT EXISTS rotation_id_seq",
    """
    CREATE TABLE IF NOT EXISTS rotation_write_pointers (
        group_id TEXT NOT NULL,
        version INTEGER NOT NULL,
        master TEXT,
        maintenance BOOLEAN NOT NULL,
        document JSONB NOT NULL,
        created_at TIMESTAMPTZ NOT NULL,
        PRIMARY KEY (group_id, version)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS rotation_traffic_splits (
        group_id TEXT NOT NULL,
        version INTEGER NOT NULL,
        document JSONB NOT NULL,
        created_at TIMESTAMPTZ NOT NULL,
        PRIMARY KEY (group_id, version)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS rotation_clusters (
        cluster_id TEXT PRIMARY KEY,
        group_id TEXT,
        role TEXT NOT NULL,
        document JSONB NOT NULL,
        updated_at TIMESTAMPTZ NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_rotation_clusters_group ON rotation_clusters (group_id)",
    """
    CREATE TABLE IF NOT EXISTS rotation_groups (
        group_id TEXT PRIMARY KEY,
        service TEXT NOT NULL,
        active_cluster_id TEXT NOT NULL,
        updated_at TIMESTAMPTZ NOT NULL
    )
    """,
)

SQLITE_STATEMENTS: tuple[str, ...] = (
    """
    CREATE TABLE IF NOT EXISTS rotation_states (
        group_id TEXT PRIMARY KEY,
        phase TEXT NOT NULL,
        rotation_id INTEGER,
        halted INTEGER NOT NULL DEFAULT 0,
        version INTEGER NOT NULL,
        document TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS rotation_sequences (
        name TEXT PRIMARY KEY,
        value INTEGER NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS rotation_write_pointers (
        group_id TEXT NOT NULL,
        version INTEGER NOT NULL,
        master TEXT,
        maintenance INTEGER NOT NULL,
        document TEXT NOT NULL,
        created_at TEXT NOT NULL,
        PRIMARY KEY (group_id, version)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS rotation_traffic_splits (
        group_id TEXT NOT NULL,
        version INTEGER NOT NULL,
        document TEXT NOT NULL,
        created_at TEXT NOT NULL,
        PRIMARY KEY (group_id, version)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS rotation_clusters (
        cluster_id TEXT PRIMARY KEY,
        group_id TEXT,
        role TEXT NOT NULL,
        document TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_rotation_clusters_group ON rotation_clusters (group_id)",
    """
    CREATE TABLE IF NOT EXISTS rotation_groups (
        group_id TEXT PRIMARY KEY,
        service TEXT NOT NULL,
        active_cluster_id TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
)


async def create_postgresql_schema(conn: AsyncConnection | AsyncEngine) -> None:
    """Create the rotation tables in PostgreSQL if they do not exist."""
    async with execute_with_connection(conn, transactional=True) as connection:
        for statement in POSTGRESQL_STATEMENTS:
            await connection.execute(text(statement))


async def create_sqlite_schema(connection: aiosqlite.Connection) -> None:
    """Create the rotation tables in SQLite if they do not exist."""
    for statement in SQLITE_STATEMENTS:
        await connection.execute(statement)
    await connection.commit()


__all__ = [
    "POSTGRESQL_STATEMENTS",
    "SQLITE_STATEMENTS",
    "create_postgresql_schema",
    "create_sqlite_schema",
]
