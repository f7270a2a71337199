"""
Unit tests for the lock managers.

Tests cover:
- Lock key format
- InMemoryLockManager mutual exclusion, timeouts and release on error
- PostgreSQLLockManager advisory lock calls (mocked sessions)
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from rotation.locks import (
    InMemoryLockManager,
    LockAcquisitionError,
    LockManager,
    PostgreSQLLockManager,
    rotation_lock_key,
)
from rotation.observability import MockTracer


class TestLockKeys:
    def test_default_operation(self):
        assert rotation_lock_key("payments") == "rotation:payments"

    def test_named_operation(self):
        assert rotation_lock_key("payments", "write_pointer") == "write_pointer:payments"


# =============================================================================
# InMemoryLockManager
# =============================================================================


class TestInMemoryLockManager:
    def test_implements_protocol(self):
        assert isinstance(InMemoryLockManager(enable_tracing=False), LockManager)

    @pytest.mark.asyncio
    async def test_acquire_and_release(self):
        locks = InMemoryLockManager(holder_id="replica-1", enable_tracing=False)

        async with locks.acquire("rotation:payments") as info:
            assert info.key == "rotation:payments"
            assert info.holder_id == "replica-1"
            assert await locks.is_held("rotation:payments")
            assert locks.held_lock_count == 1

        assert not await locks.is_held("rotation:payments")
        assert locks.held_lock_count == 0

    @pytest.mark.asyncio
    async def test_timeout_raises(self):
        locks = InMemoryLockManager(enable_tracing=False)

        async with locks.acquire("rotation:payments"):
            with pytest.raises(LockAcquisitionError) as exc_info:
                async with locks.acquire("rotation:payments", timeout=0.01):
                    pass

        assert exc_info.value.key == "rotation:payments"
        assert exc_info.value.timeout == 0.01
        assert "Timeout" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_keys_are_independent(self):
        locks = InMemoryLockManager(enable_tracing=False)

        async with locks.acquire("rotation:payments"):
            async with locks.acquire("rotation:orders", timeout=0.01):
                assert locks.held_lock_count == 2

    @pytest.mark.asyncio
    async def test_released_on_error(self):
        locks = InMemoryLockManager(enable_tracing=False)

        with pytest.raises(RuntimeError):
            async with locks.acquire("rotation:payments"):
                raise RuntimeError("boom")

        assert not await locks.is_held("rotation:payments")

    @pytest.mark.asyncio
    async def test_serializes_critical_sections(self):
        locks = InMemoryLockManager(enable_tracing=False)
        inside = 0
        peak = 0

        async def critical():
            nonlocal inside, peak
            async with locks.acquire("rotation:payments"):
                inside += 1
                peak = max(peak, inside)
                await asyncio.sleep(0)
                inside -= 1

        await asyncio.gather(*(critical() for _ in range(10)))

        assert peak == 1

    @pytest.mark.asyncio
    async def test_acquire_is_traced(self):
        tracer = MockTracer()
        locks = InMemoryLockManager(tracer=tracer)

        async with locks.acquire("rotation:payments", timeout=1.0):
            pass

        assert tracer.span_names == ["rotation.lock.acquire"]
        assert tracer.spans[0][1]["rotation.lock.key"] == "rotation:payments"


# =============================================================================
# PostgreSQLLockManager
# =============================================================================


def make_session(*try_results: bool) -> MagicMock:
    session = MagicMock()
    results = []
    for value in try_results:
        result = MagicMock()
        result.scalar.return_value = value
        results.append(result)
    session.execute = AsyncMock(side_effect=results or None)
    session.close = AsyncMock()
    return session


class TestPostgreSQLLockManager:
    def test_lock_id_is_stable_and_positive(self):
        first = PostgreSQLLockManager.key_to_lock_id("rotation:payments")
        second = PostgreSQLLockManager.key_to_lock_id("rotation:payments")
        other = PostgreSQLLockManager.key_to_lock_id("rotation:orders")

        assert first == second
        assert first != other
        assert 0 <= first < 2**63

    @pytest.mark.asyncio
    async def test_acquire_with_timeout_retries_until_free(self):
        session = make_session(False, True, True)
        locks = PostgreSQLLockManager(
            MagicMock(return_value=session), retry_interval=0.001, enable_tracing=False
        )

        async with locks.acquire("rotation:payments", timeout=5.0) as info:
            assert info.lock_id == PostgreSQLLockManager.key_to_lock_id("rotation:payments")
            assert await locks.is_held("rotation:payments")

        statements = [str(call.args[0]) for call in session.execute.await_args_list]
        assert statements == [
            "SELECT pg_try_advisory_lock(:lock_id)",
            "SELECT pg_try_advisory_lock(:lock_id)",
            "SELECT pg_advisory_unlock(:lock_id)",
        ]
        assert not await locks.is_held("rotation:payments")
        session.close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_timeout_closes_session(self):
        session = MagicMock()
        busy = MagicMock()
        busy.scalar.return_value = False
        session.execute = AsyncMock(return_value=busy)
        session.close = AsyncMock()
        locks = PostgreSQLLockManager(
            MagicMock(return_value=session), retry_interval=0.001, enable_tracing=False
        )

        with pytest.raises(LockAcquisitionError) as exc_info:
            async with locks.acquire("rotation:payments", timeout=0.01):
                pass

        assert exc_info.value.timeout == 0.01
        session.close.assert_awaited_once()
        assert locks.held_lock_count == 0

    @pytest.mark.asyncio
    async def test_database_error_is_wrapped(self):
        session = MagicMock()
        session.execute = AsyncMock(side_effect=OSError("connection refused"))
        session.close = AsyncMock()
        locks = PostgreSQLLockManager(MagicMock(return_value=session), enable_tracing=False)

        with pytest.raises(LockAcquisitionError, match="Database error"):
            async with locks.acquire("rotation:payments"):
                pass

        session.close.assert_awaited_once()
