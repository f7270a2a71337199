"""
Shared pytest fixtures for the rotation orchestrator tests.

This module provides:
- Configuration fixtures (fast_config with short windows for scenario tests)
- Harness fixtures (harness, registered_harness) wiring the orchestrator
  onto fakes, in-memory stores and a FakeClock
- SQLite fixtures (sqlite_connection, sqlite_state_repo, sqlite_cluster_repo)
- OpenTelemetry metrics fixtures (sdk_meter_provider, reset_rotation_meter)
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from typing import Any

import pytest
import pytest_asyncio

from rotation.models import RotationConfig
from rotation.testing import FakeClock, RotationTestHarness

# ============================================================================
# SQLite Availability Check
# ============================================================================

AIOSQLITE_AVAILABLE = False
try:
    import aiosqlite

    AIOSQLITE_AVAILABLE = True
except ImportError:
    aiosqlite = None  # type: ignore[assignment]


# ============================================================================
# OpenTelemetry Metrics Availability Check
# ============================================================================

OTEL_METRICS_AVAILABLE = False
try:
    from opentelemetry.sdk.metrics import MeterProvider
    from opentelemetry.sdk.metrics.export import InMemoryMetricReader

    OTEL_METRICS_AVAILABLE = True
except ImportError:
    MeterProvider = None  # type: ignore[assignment, misc]
    InMemoryMetricReader = None  # type: ignore[assignment, misc]


# ============================================================================
# Pytest Configuration
# ============================================================================


def pytest_configure(config: pytest.Config) -> None:
    """Register custom markers for tests."""
    config.addinivalue_line("markers", "sqlite: marks tests that require SQLite (aiosqlite)")


# ============================================================================
# Skip Condition
# ============================================================================

skip_if_no_aiosqlite = pytest.mark.skipif(not AIOSQLITE_AVAILABLE, reason="aiosqlite not installed")

skip_if_no_otel_metrics = pytest.mark.skipif(
    not OTEL_METRICS_AVAILABLE, reason="opentelemetry-sdk not installed"
)


# =============================================================================
# Configuration Fixtures
# =============================================================================


@pytest.fixture
def fast_config() -> RotationConfig:
    """
    Provide a config with short sustained windows.

    Lag window and canary bake are 10 seconds (two 5-second polls) so a
    full rotation finishes in a few dozen ticks.
    """
    return RotationConfig(
        lag_window_seconds=10.0,
        canary_steps=(10, 50, 90),
        canary_bake_seconds=10.0,
    )


@pytest.fixture
def clock() -> FakeClock:
    """Provide a FakeClock starting at 2026-01-01T00:00:00Z."""
    return FakeClock()


# =============================================================================
# Harness Fixtures
# =============================================================================


@pytest.fixture
def harness(fast_config: RotationConfig) -> RotationTestHarness:
    """Provide a harness with no groups registered."""
    return RotationTestHarness(fast_config)


@pytest_asyncio.fixture
async def registered_harness(harness: RotationTestHarness) -> RotationTestHarness:
    """
    Provide a harness with group ``payments`` registered.

    ``blue`` is the active cluster and the write master.
    """
    await harness.register_group()
    return harness


# =============================================================================
# SQLite Fixtures
# =============================================================================


@pytest_asyncio.fixture
async def sqlite_connection() -> AsyncGenerator[Any, None]:
    """
    Provide an aiosqlite connection to an in-memory database with the
    rotation schema created.

    Yields:
        aiosqlite.Connection: Raw database connection
    """
    if not AIOSQLITE_AVAILABLE:
        pytest.skip("aiosqlite not installed")

    from rotation.repositories import create_sqlite_schema

    conn = await aiosqlite.connect(":memory:")
    await create_sqlite_schema(conn)

    yield conn

    await conn.close()


@pytest.fixture
def sqlite_state_repo(sqlite_connection: Any) -> Any:
    from rotation.repositories import SQLiteRotationStateRepository

    return SQLiteRotationStateRepository(sqlite_connection, enable_tracing=False)


@pytest.fixture
def sqlite_cluster_repo(sqlite_connection: Any) -> Any:
    from rotation.repositories import SQLiteClusterRepository

    return SQLiteClusterRepository(sqlite_connection)


# =============================================================================
# OpenTelemetry Metrics Fixtures
# =============================================================================


@pytest.fixture
def sdk_meter_provider(monkeypatch: pytest.MonkeyPatch) -> Any:
    """
    Provide an InMemoryMetricReader wired to the rotation meter.

    The rotation module's cached meter is replaced with one from a private
    SDK MeterProvider, so the global provider is left untouched.

    Returns:
        InMemoryMetricReader: Reader for inspecting collected metrics.
    """
    if not OTEL_METRICS_AVAILABLE:
        pytest.skip("opentelemetry-sdk not installed")

    import rotation.metrics

    reader = InMemoryMetricReader()
    provider = MeterProvider(metric_readers=[reader])
    monkeypatch.setattr(rotation.metrics, "_meter", provider.get_meter("rotation"))
    return reader


@pytest.fixture
def reset_rotation_meter():
    """
    Reset the rotation module's cached meter between tests.

    The metrics module caches the meter at module level, so a test that
    installs its own meter provider must drop the cached meter first.
    """
    from rotation.metrics import reset_meter

    reset_meter()
    yield
    reset_meter()
