"""Offline queue, cache, conflict handling and the sync coordinator."""

from .cache import EntityCache
from .conflict import (
    Conflict,
    ConflictDetector,
    ConflictManager,
    ConflictStats,
    ConflictType,
    EntitySnapshot,
    ResolutionStrategy,
)
from .connectivity import ConnectivityProbe
from .coordinator import SyncCoordinator, SyncResult, SyncSettings, calculate_backoff
from .operations import OperationLog, OperationType, OperationVerb, SyncOperation
from .remote import PullResult, PushResult, PushStatus, RemoteSource
from .state import SyncPhase, SyncState, SyncStateStore

__all__ = [
    "Conflict",
    "ConflictDetector",
    "ConflictManager",
    "ConflictStats",
    "ConflictType",
    "ConnectivityProbe",
    "EntityCache",
    "EntitySnapshot",
    "OperationLog",
    "OperationType",
    "OperationVerb",
    "PullResult",
    "PushResult",
    "PushStatus",
    "RemoteSource",
    "ResolutionStrategy",
    "SyncCoordinator",
    "SyncOperation",
    "SyncPhase",
    "SyncResult",
    "SyncSettings",
    "SyncState",
    "SyncStateStore",
    "calculate_backoff",
]
