"""
Traffic weight controller.

Owns the read traffic split of each group. Splits are validated before
anything is published, applied through the router in a single call, and
persisted as an append-only version history.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime

from rotation.exceptions import ErrorHandler, InvalidWeightError
from rotation.interfaces import MetricsProvider, TrafficRouter
from rotation.locks import LockManager, rotation_lock_key
from rotation.models import TrafficSplit, utc_now
from rotation.observability import (
    ATTR_GROUP_ID,
    ATTR_SPLIT_VERSION,
    ATTR_TARGET_CLUSTER,
    ATTR_TARGET_WEIGHT,
    Tracer,
    create_tracer,
)
from rotation.repositories.state import RotationStateRepository

logger = logging.getLogger(__name__)


def validate_split(
    cluster_a: str,
    weight_a: object,
    cluster_b: str,
    weight_b: object,
    *,
    group_id: str | None = None,
) -> None:
    """
    Check that two weights form a valid split.

    Raises:
        InvalidWeightError: Unless both weights are non-negative integers
            summing to 100 over two distinct clusters
    """
    if cluster_a == cluster_b:
        raise InvalidWeightError(
            f"split must name two distinct clusters, got {cluster_a!r} twice",
            group_id=group_id,
        )
    for cluster_id, weight in ((cluster_a, weight_a), (cluster_b, weight_b)):
        if isinstance(weight, bool) or not isinstance(weight, int):
            raise InvalidWeightError(
                f"weight for {cluster_id} must be an integer, got {weight!r}",
                group_id=group_id,
            )
        if weight < 0:
            raise InvalidWeightError(
                f"weight for {cluster_id} must be >= 0, got {weight}",
                group_id=group_id,
            )
    total = weight_a + weight_b  # type: ignore[operator]
    if total != 100:
        raise InvalidWeightError(
            f"weights must sum to 100, got {weight_a}/{weight_b} (sum {total})",
            group_id=group_id,
        )


class TrafficWeightController:
    """
    Applies and records traffic splits.

    Example:
        >>> controller = TrafficWeightController(router, metrics, repository, locks)
        >>> split = await controller.set_split("payments", "blue", 90, "green", 10)
        >>> split.weight_of("green")
        10
    """

    def __init__(
        self,
        router: TrafficRouter,
        metrics_provider: MetricsProvider,
        repository: RotationStateRepository,
        lock_manager: LockManager,
        *,
        error_handler: ErrorHandler | None = None,
        clock: Callable[[], datetime] = utc_now,
        lock_timeout: float | None = 30.0,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._router = router
        self._metrics = metrics_provider
        self._repository = repository
        self._locks = lock_manager
        self._error_handler = error_handler or ErrorHandler()
        self._clock = clock
        self._lock_timeout = lock_timeout
        self._tracer = tracer or create_tracer(__name__, enable_tracing)

    async def set_split(
        self,
        group_id: str,
        cluster_a: str,
        weight_a: int,
        cluster_b: str,
        weight_b: int,
        *,
        idempotency_key: str | None = None,
    ) -> TrafficSplit:
        """
        Publish a new split for the group.

        Reissuing the current weights is a no-op and returns the current split.

        Raises:
            InvalidWeightError: If the weights are not a valid split
        """
        validate_split(cluster_a, weight_a, cluster_b, weight_b, group_id=group_id)
        async with self._locks.acquire(
            rotation_lock_key(group_id, "traffic"), timeout=self._lock_timeout
        ):
            current = await self._repository.get_split(group_id)
            proposed = TrafficSplit(
                group_id=group_id,
                weights={cluster_a: weight_a, cluster_b: weight_b},
                version=(current.version if current else 0) + 1,
                updated_at=self._clock(),
            )
            if current is not None and proposed.same_weights(current):
                return current

            key = idempotency_key or f"{group_id}:split:{proposed.version}"
            with self._tracer.span(
                "rotation.traffic.set_split",
                {
                    ATTR_GROUP_ID: group_id,
                    ATTR_SPLIT_VERSION: proposed.version,
                    ATTR_TARGET_CLUSTER: cluster_b,
                    ATTR_TARGET_WEIGHT: weight_b,
                },
            ):
                await self._error_handler.execute_with_retry(
                    lambda: self._router.apply_split(proposed, idempotency_key=key),
                    operation_name="router.apply_split",
                    group_id=group_id,
                )
                await self._repository.save_split(proposed)

            logger.info(
                "Traffic split for %s: %s=%d %s=%d (version %d)",
                group_id,
                cluster_a,
                weight_a,
                cluster_b,
                weight_b,
                proposed.version,
            )
            return proposed

    async def get_split(self, group_id: str) -> TrafficSplit | None:
        return await self._repository.get_split(group_id)

    async def split_history(self, group_id: str) -> list[TrafficSplit]:
        return await self._repository.list_splits(group_id)

    async def observe_success_rate(self, group_id: str, cluster_id: str) -> float:
        """Success ratio (0..1) of requests served by ``cluster_id``."""
        return await self._error_handler.execute_with_retry(
            lambda: self._metrics.get_success_rate(group_id, cluster_id),
            operation_name="metrics.get_success_rate",
            group_id=group_id,
        )


__all__ = ["TrafficWeightController", "validate_split"]
