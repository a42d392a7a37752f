"""Offline-first synchronization for CouponSync."""

from __future__ import annotations

from .tracker import ChangeTracker, encode_payload
from .protocol import RemoteEntity, SyncChange, SyncRequest, SyncResponse, encode_entity
from .remote import RemoteBackend, RemoteClient, RemoteSettings
from .conflict import ConflictResolution, ConflictResolver, ConflictStrategy
from .engine import PhaseStatus, SubCycleResult, SyncEngine, SyncResult, SyncSettings
from .scheduler import BackoffPolicy, SchedulerSettings, SchedulerState, SyncScheduler, UserSyncStatus
from .connectivity import ConnectivityMonitor, ConnectivitySettings

__all__ = [
    # Tracking
    "ChangeTracker",
    "encode_payload",
    # Protocol
    "RemoteEntity",
    "SyncChange",
    "SyncRequest",
    "SyncResponse",
    "encode_entity",
    # Remote
    "RemoteBackend",
    "RemoteClient",
    "RemoteSettings",
    # Conflict
    "ConflictResolution",
    "ConflictResolver",
    "ConflictStrategy",
    # Engine
    "PhaseStatus",
    "SubCycleResult",
    "SyncEngine",
    "SyncResult",
    "SyncSettings",
    # Scheduling
    "BackoffPolicy",
    "SchedulerSettings",
    "SchedulerState",
    "SyncScheduler",
    "UserSyncStatus",
    "ConnectivityMonitor",
    "ConnectivitySettings",
]
