"""
Test utilities for the rotation orchestrator.

Components:
    Fakes of every collaborator protocol (provisioning, reconciliation, mesh,
    replication, traffic routing, metrics, write config, alerts)
    FakeClock: Manually advanced clock whose ``sleep`` never waits
    RotationTestHarness: Orchestrator pre-wired onto fakes and in-memory stores

Note:
    This module is intended for test code only. It should not be imported
    in production code paths.
"""

from rotation.testing.fakes import (
    FakeClock,
    FakeMesh,
    FakeMetricsProvider,
    FakeProvisioning,
    FakeReconciliation,
    FakeReplication,
    FakeTrafficRouter,
    FakeWriteConfigPublisher,
    RecordedAlert,
    RecordedCall,
    RecordingAlertSink,
)
from rotation.testing.harness import RotationTestHarness

__all__ = [
    "FakeClock",
    "FakeMesh",
    "FakeMetricsProvider",
    "FakeProvisioning",
    "FakeReconciliation",
    "FakeReplication",
    "FakeTrafficRouter",
    "FakeWriteConfigPublisher",
    "RecordedAlert",
    "RecordedCall",
    "RecordingAlertSink",
    "RotationTestHarness",
]
