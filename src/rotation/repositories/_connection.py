"""
Connection handling helper for SQLAlchemy-backed repositories.

Repositories accept either an ``AsyncEngine`` (they open their own
connection or transaction per call) or an ``AsyncConnection`` owned by the
caller (used as-is, the caller manages the transaction).
"""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine


@asynccontextmanager
async def execute_with_connection(
    conn: AsyncConnection | AsyncEngine,
    transactional: bool = True,
) -> AsyncIterator[AsyncConnection]:
    """
    Yield a connection ready for ``execute()`` calls.

    Args:
        conn: Database connection or engine
        transactional: Wrap in a transaction (begin) for writes, or use a
            bare connection (connect) for reads. Only applies to engines.

    Example:
        >>> async with execute_with_connection(self.conn, transactional=False) as conn:
        ...     result = await conn.execute(select_query, params)
    """
    if isinstance(conn, AsyncEngine):
        if transactional:
            async with conn.begin() as connection:
                yield connection
        else:
            async with conn.connect() as connection:
                yield connection
    else:
        yield conn
