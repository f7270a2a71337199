"""
Rotation state repository.

Persists everything the orchestrator needs to resume after a crash:
- one RotationState document per group, saved with an optimistic version
  check after every mutation
- the rotation id sequence
- the append-only version history of each group's write pointer and
  traffic split

Implementations:
- InMemoryRotationStateRepository: tests and single-process development
- SQLiteRotationStateRepository: aiosqlite, embedded deployments
- PostgreSQLRotationStateRepository: SQLAlchemy async, shared deployments
"""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from rotation.exceptions import StateConflictError
from rotation.models import RotationPhase, RotationState, TrafficSplit, WritePointer
from rotation.observability import (
    ATTR_DB_SYSTEM,
    ATTR_GROUP_ID,
    ATTR_PHASE,
    Tracer,
    create_tracer,
)
from rotation.repositories._connection import execute_with_connection
from rotation.serialization import json_dumps, json_loads

if TYPE_CHECKING:
    import aiosqlite


def _copy_state(state: RotationState) -> RotationState:
    return RotationState.from_dict(state.to_dict())


def _is_active(state: RotationState) -> bool:
    return state.request is not None or state.phase != RotationPhase.IDLE_STABLE


def _load_document(value: Any) -> dict[str, Any]:
    return json_loads(value) if isinstance(value, (str, bytes)) else dict(value)


@runtime_checkable
class RotationStateRepository(Protocol):
    """Protocol for rotation state persistence."""

    async def get_state(self, group_id: str) -> RotationState | None:
        """Load the persisted state of a group, or None if never saved."""
        ...

    async def save_state(self, state: RotationState) -> None:
        """
        Persist ``state`` if nobody saved the group since it was loaded.

        On success ``state.version`` is incremented to the stored version.

        Raises:
            StateConflictError: If the stored version differs from ``state.version``
        """
        ...

    async def list_states(self) -> list[RotationState]: ...

    async def list_active(self) -> list[RotationState]:
        """States holding a rotation request or outside IDLE_STABLE."""
        ...

    async def next_rotation_id(self) -> int:
        """Allocate the next monotonically increasing rotation id."""
        ...

    async def save_pointer(self, pointer: WritePointer) -> None: ...

    async def get_pointer(self, group_id: str) -> WritePointer | None:
        """Latest pointer version of the group."""
        ...

    async def list_pointers(self, group_id: str) -> list[WritePointer]:
        """All pointer versions of the group, oldest first."""
        ...

    async def save_split(self, split: TrafficSplit) -> None: ...

    async def get_split(self, group_id: str) -> TrafficSplit | None: ...

    async def list_splits(self, group_id: str) -> list[TrafficSplit]: ...


class InMemoryRotationStateRepository:
    """
    In-memory implementation for testing.

    Stores copies so callers mutating a loaded state never change what is
    persisted until they save it, which mirrors the database backends.

    Example:
        >>> repo = InMemoryRotationStateRepository()
        >>> await repo.save_state(RotationState(group_id="payments"))
        >>> (await repo.get_state("payments")).version
        1
    """

    def __init__(
        self,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._states: dict[str, RotationState] = {}
        self._pointers: dict[str, list[WritePointer]] = {}
        self._splits: dict[str, list[TrafficSplit]] = {}
        self._rotation_id = 0
        self._lock = asyncio.Lock()

    async def get_state(self, group_id: str) -> RotationState | None:
        async with self._lock:
            state = self._states.get(group_id)
            return _copy_state(state) if state else None

    async def save_state(self, state: RotationState) -> None:
        with self._tracer.span(
            "rotation.state_repository.save",
            {ATTR_GROUP_ID: state.group_id, ATTR_PHASE: state.phase.value},
        ):
            async with self._lock:
                stored = self._states.get(state.group_id)
                stored_version = stored.version if stored else 0
                if stored_version != state.version:
                    raise StateConflictError(state.group_id, state.version, stored_version)
                state.version += 1
                self._states[state.group_id] = _copy_state(state)

    async def list_states(self) -> list[RotationState]:
        async with self._lock:
            return [_copy_state(s) for s in self._states.values()]

    async def list_active(self) -> list[RotationState]:
        return [s for s in await self.list_states() if _is_active(s)]

    async def next_rotation_id(self) -> int:
        async with self._lock:
            self._rotation_id += 1
            return self._rotation_id

    async def save_pointer(self, pointer: WritePointer) -> None:
        async with self._lock:
            self._pointers.setdefault(pointer.group_id, []).append(pointer)

    async def get_pointer(self, group_id: str) -> WritePointer | None:
        async with self._lock:
            history = self._pointers.get(group_id)
            return history[-1] if history else None

    async def list_pointers(self, group_id: str) -> list[WritePointer]:
        async with self._lock:
            return list(self._pointers.get(group_id, []))

    async def save_split(self, split: TrafficSplit) -> None:
        async with self._lock:
            self._splits.setdefault(split.group_id, []).append(split)

    async def get_split(self, group_id: str) -> TrafficSplit | None:
        async with self._lock:
            history = self._splits.get(group_id)
            return history[-1] if history else None

    async def list_splits(self, group_id: str) -> list[TrafficSplit]:
        async with self._lock:
            return list(self._splits.get(group_id, []))

    async def clear(self) -> None:
        """Clear all data. Useful for test cleanup."""
        async with self._lock:
            self._states.clear()
            self._pointers.clear()
            self._splits.clear()
            self._rotation_id = 0


class SQLiteRotationStateRepository:
    """
    SQLite implementation using aiosqlite.

    SQLite-specific adaptations:
    - Documents stored as TEXT JSON
    - Timestamps stored as TEXT in ISO 8601 format
    - Rotation ids come from a counter row in ``rotation_sequences``

    Example:
        >>> async with aiosqlite.connect("rotation.db") as db:
        ...     await create_sqlite_schema(db)
        ...     repo = SQLiteRotationStateRepository(db)
    """

    def __init__(
        self,
        connection: aiosqlite.Connection,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._connection = connection

    async def get_state(self, group_id: str) -> RotationState | None:
        cursor = await self._connection.execute(
            "SELECT document FROM rotation_states WHERE group_id = ?",
            (group_id,),
        )
        row = await cursor.fetchone()
        return RotationState.from_dict(_load_document(row[0])) if row else None

    async def save_state(self, state: RotationState) -> None:
        with self._tracer.span(
            "rotation.state_repository.save",
            {
                ATTR_DB_SYSTEM: "sqlite",
                ATTR_GROUP_ID: state.group_id,
                ATTR_PHASE: state.phase.value,
            },
        ):
            expected = state.version
            new_version = expected + 1
            document = state.to_dict()
            document["version"] = new_version
            now = datetime.now(UTC).isoformat()
            params = (
                state.phase.value,
                state.rotation_id,
                1 if state.halted else 0,
                new_version,
                json_dumps(document),
                now,
            )
            if expected == 0:
                cursor = await self._connection.execute(
                    """
                    INSERT INTO rotation_states
                        (phase, rotation_id, halted, version, document, updated_at, group_id)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT (group_id) DO NOTHING
                    """,
                    (*params, state.group_id),
                )
            else:
                cursor = await self._connection.execute(
                    """
                    UPDATE rotation_states
                    SET phase = ?, rotation_id = ?, halted = ?, version = ?,
                        document = ?, updated_at = ?
                    WHERE group_id = ? AND version = ?
                    """,
                    (*params, state.group_id, expected),
                )
            if cursor.rowcount != 1:
                await self._connection.rollback()
                current = await self.get_state(state.group_id)
                raise StateConflictError(
                    state.group_id, expected, current.version if current else None
                )
            await self._connection.commit()
            state.version = new_version

    async def list_states(self) -> list[RotationState]:
        cursor = await self._connection.execute(
            "SELECT document FROM rotation_states ORDER BY group_id"
        )
        rows = await cursor.fetchall()
        return [RotationState.from_dict(_load_document(row[0])) for row in rows]

    async def list_active(self) -> list[RotationState]:
        return [s for s in await self.list_states() if _is_active(s)]

    async def next_rotation_id(self) -> int:
        await self._connection.execute(
            """
            INSERT INTO rotation_sequences (name, value) VALUES ('rotation_id', 1)
            ON CONFLICT (name) DO UPDATE SET value = value + 1
            """
        )
        cursor = await self._connection.execute(
            "SELECT value FROM rotation_sequences WHERE name = 'rotation_id'"
        )
        row = await cursor.fetchone()
        await self._connection.commit()
        return int(row[0])

    async def save_pointer(self, pointer: WritePointer) -> None:
        await self._connection.execute(
            """
            INSERT INTO rotation_write_pointers
                (group_id, version, master, maintenance, document, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                pointer.group_id,
                pointer.version,
                pointer.master,
                1 if pointer.maintenance else 0,
                json_dumps(pointer.to_dict()),
                pointer.updated_at.isoformat(),
            ),
        )
        await self._connection.commit()

    async def get_pointer(self, group_id: str) -> WritePointer | None:
        cursor = await self._connection.execute(
            """
            SELECT document FROM rotation_write_pointers
            WHERE group_id = ? ORDER BY version DESC LIMIT 1
            """,
            (group_id,),
        )
        row = await cursor.fetchone()
        return WritePointer.from_dict(_load_document(row[0])) if row else None

    async def list_pointers(self, group_id: str) -> list[WritePointer]:
        cursor = await self._connection.execute(
            "SELECT document FROM rotation_write_pointers WHERE group_id = ? ORDER BY version",
            (group_id,),
        )
        rows = await cursor.fetchall()
        return [WritePointer.from_dict(_load_document(row[0])) for row in rows]

    async def save_split(self, split: TrafficSplit) -> None:
        await self._connection.execute(
            """
            INSERT INTO rotation_traffic_splits (group_id, version, document, created_at)
            VALUES (?, ?, ?, ?)
            """,
            (
                split.group_id,
                split.version,
                json_dumps(split.to_dict()),
                split.updated_at.isoformat(),
            ),
        )
        await self._connection.commit()

    async def get_split(self, group_id: str) -> TrafficSplit | None:
        cursor = await self._connection.execute(
            """
            SELECT document FROM rotation_traffic_splits
            WHERE group_id = ? ORDER BY version DESC LIMIT 1
            """,
            (group_id,),
        )
        row = await cursor.fetchone()
        return TrafficSplit.from_dict(_load_document(row[0])) if row else None

    async def list_splits(self, group_id: str) -> list[TrafficSplit]:
        cursor = await self._connection.execute(
            "SELECT document FROM rotation_traffic_splits WHERE group_id = ? ORDER BY version",
            (group_id,),
        )
        rows = await cursor.fetchall()
        return [TrafficSplit.from_dict(_load_document(row[0])) for row in rows]


class PostgreSQLRotationStateRepository:
    """
    PostgreSQL implementation using SQLAlchemy async.

    Example:
        >>> engine = create_async_engine("postgresql+asyncpg://localhost/rotation")
        >>> await create_postgresql_schema(engine)
        >>> repo = PostgreSQLRotationStateRepository(engine)
    """

    def __init__(
        self,
        conn: AsyncConnection | AsyncEngine,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self.conn = conn

    async def get_state(self, group_id: str) -> RotationState | None:
        query = text("SELECT document FROM rotation_states WHERE group_id = :group_id")
        async with execute_with_connection(self.conn, transactional=False) as conn:
            result = await conn.execute(query, {"group_id": group_id})
            row = result.fetchone()
        return RotationState.from_dict(_load_document(row[0])) if row else None

    async def save_state(self, state: RotationState) -> None:
        with self._tracer.span(
            "rotation.state_repository.save",
            {
                ATTR_DB_SYSTEM: "postgresql",
                ATTR_GROUP_ID: state.group_id,
                ATTR_PHASE: state.phase.value,
            },
        ):
            expected = state.version
            new_version = expected + 1
            document = state.to_dict()
            document["version"] = new_version
            params = {
                "group_id": state.group_id,
                "phase": state.phase.value,
                "rotation_id": state.rotation_id,
                "halted": state.halted,
                "version": new_version,
                "expected": expected,
                "document": json_dumps(document),
                "now": datetime.now(UTC),
            }
            if expected == 0:
                query = text("""
                    INSERT INTO rotation_states
                        (group_id, phase, rotation_id, halted, version, document, updated_at)
                    VALUES (:group_id, :phase, :rotation_id, :halted, :version,
                            CAST(:document AS JSONB), :now)
                    ON CONFLICT (group_id) DO NOTHING
                """)
            else:
                query = text("""
                    UPDATE rotation_states
                    SET phase = :phase, rotation_id = :rotation_id, halted = :halted,
                        version = :version, document = CAST(:document AS JSONB),
                        updated_at = :now
                    WHERE group_id = :group_id AND version = :expected
                """)
            async with execute_with_connection(self.conn, transactional=True) as conn:
                result = await conn.execute(query, params)
                saved = result.rowcount == 1
            if not saved:
                current = await self.get_state(state.group_id)
                raise StateConflictError(
                    state.group_id, expected, current.version if current else None
                )
            state.version = new_version

    async def list_states(self) -> list[RotationState]:
        query = text("SELECT document FROM rotation_states ORDER BY group_id")
        async with execute_with_connection(self.conn, transactional=False) as conn:
            result = await conn.execute(query)
            rows = result.fetchall()
        return [RotationState.from_dict(_load_document(row[0])) for row in rows]

    async def list_active(self) -> list[RotationState]:
        query = text("""
            SELECT document FROM rotation_states
            WHERE rotation_id IS NOT NULL OR phase <> :idle
            ORDER BY group_id
        """)
        async with execute_with_connection(self.conn, transactional=False) as conn:
            result = await conn.execute(query, {"idle": RotationPhase.IDLE_STABLE.value})
            rows = result.fetchall()
        return [RotationState.from_dict(_load_document(row[0])) for row in rows]

    async def next_rotation_id(self) -> int:
        async with execute_with_connection(self.conn, transactional=True) as conn:
            result = await conn.execute(text("SELECT nextval('rotation_id_seq')"))
            return int(result.scalar_one())

    async def save_pointer(self, pointer: WritePointer) -> None:
        query = text("""
            INSERT INTO rotation_write_pointers
                (group_id, version, master, maintenance, document, created_at)
            VALUES (:group_id, :version, :master, :maintenance,
                    CAST(:document AS JSONB), :created_at)
        """)
        params = {
            "group_id": pointer.group_id,
            "version": pointer.version,
            "master": pointer.master,
            "maintenance": pointer.maintenance,
            "document": json_dumps(pointer.to_dict()),
            "created_at": pointer.updated_at,
        }
        async with execute_with_connection(self.conn, transactional=True) as conn:
            await conn.execute(query, params)

    async def get_pointer(self, group_id: str) -> WritePointer | None:
        query = text("""
            SELECT document FROM rotation_write_pointers
            WHERE group_id = :group_id ORDER BY version DESC LIMIT 1
        """)
        async with execute_with_connection(self.conn, transactional=False) as conn:
            result = await conn.execute(query, {"group_id": group_id})
            row = result.fetchone()
        return WritePointer.from_dict(_load_document(row[0])) if row else None

    async def list_pointers(self, group_id: str) -> list[WritePointer]:
        query = text("""
            SELECT document FROM rotation_write_pointers
            WHERE group_id = :group_id ORDER BY version
        """)
        async with execute_with_connection(self.conn, transactional=False) as conn:
            result = await conn.execute(query, {"group_id": group_id})
            rows = result.fetchall()
        return [WritePointer.from_dict(_load_document(row[0])) for row in rows]

    async def save_split(self, split: TrafficSplit) -> None:
        query = text("""
            INSERT INTO rotation_traffic_splits (group_id, version, document, created_at)
            VALUES (:group_id, :version, CAST(:document AS JSONB), :created_at)
        """)
        params = {
            "group_id": split.group_id,
            "version": split.version,
            "document": json_dumps(split.to_dict()),
            "created_at": split.updated_at,
        }
        async with execute_with_connection(self.conn, transactional=True) as conn:
            await conn.execute(query, params)

    async def get_split(self, group_id: str) -> TrafficSplit | None:
        query = text("""
            SELECT document FROM rotation_traffic_splits
            WHERE group_id = :group_id ORDER BY version DESC LIMIT 1
        """)
        async with execute_with_connection(self.conn, transactional=False) as conn:
            result = await conn.execute(query, {"group_id": group_id})
            row = result.fetchone()
        return TrafficSplit.from_dict(_load_document(row[0])) if row else None

    async def list_splits(self, group_id: str) -> list[TrafficSplit]:
        query = text("""
            SELECT document FROM rotation_traffic_splits
            WHERE group_id = :group_id ORDER BY version
        """)
        async with execute_with_connection(self.conn, transactional=False) as conn:
            result = await conn.execute(query, {"group_id": group_id})
            rows = result.fetchall()
        return [TrafficSplit.from_dict(_load_document(row[0])) for row in rows]


__all__ = [
    "RotationStateRepository",
    "InMemoryRotationStateRepository",
    "SQLiteRotationStateRepository",
    "PostgreSQLRotationStateRepository",
]
