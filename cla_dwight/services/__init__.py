"""Signature cache services."""

from .signature_cache import SignatureCache
from .reload_orchestrator import HealthState, HealthStatus, ReloadOptions, ReloadOrchestrator
from .snapshot_builder import Snapshot, SnapshotBuilder

__all__ = [
    "SignatureCache",
    "HealthState",
    "HealthStatus",
    "ReloadOptions",
    "ReloadOrchestrator",
    "Snapshot",
    "SnapshotBuilder",
]
