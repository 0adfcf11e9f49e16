"""Per-branch sync state."""

from __future__ import annotations

from dataclasses import dataclass, replace
from enum import Enum
import threading
from typing import Any, Dict, List

from ..storage.kv import KeyValueStore

STATE_PREFIX = "sync_state:"


class SyncPhase(str, Enum):
    """Where a branch is in its pull/push cycle."""

    IDLE = "IDLE"
    PULLING = "PULLING"
    PULL_OK = "PULL_OK"
    PULL_FAILED = "PULL_FAILED"
    PUSHING = "PUSHING"
    PUSH_OK = "PUSH_OK"
    PUSH_FAILED = "PUSH_FAILED"


@dataclass
class SyncState:
    branch_id: str
    is_online: bool = False
    last_pull_timestamp: float = 0.0
    last_push_timestamp: float = 0.0
    pending_operations: int = 0
    last_pull_failed: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "branch_id": self.branch_id,
            "is_online": self.is_online,
            "last_pull_timestamp": self.last_pull_timestamp,
            "last_push_timestamp": self.last_push_timestamp,
            "pending_operations": self.pending_operations,
            "last_pull_failed": self.last_pull_failed,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SyncState":
        return cls(
            branch_id=data["branch_id"],
            is_online=bool(data.get("is_online", False)),
            last_pull_timestamp=float(data.get("last_pull_timestamp", 0.0)),
            last_push_timestamp=float(data.get("last_push_timestamp", 0.0)),
            pending_operations=int(data.get("pending_operations", 0)),
            last_pull_failed=bool(data.get("last_pull_failed", False)),
        )


class SyncStateStore:
    def __init__(self, store: KeyValueStore) -> None:
        self.store = store
        self._lock = threading.Lock()

    def get(self, branch_id: str) -> SyncState:
        raw = self.store.get(f"{STATE_PREFIX}{branch_id}")
        if raw is None:
            return SyncState(branch_id=branch_id)
        return SyncState.from_dict(raw)

    def update(self, branch_id: str, **changes: Any) -> SyncState:
        with self._lock:
            state = replace(self.get(branch_id), **changes)
            self.store.set(f"{STATE_PREFIX}{branch_id}", state.to_dict())
        return state

    def branches(self) -> List[str]:
        return [key[len(STATE_PREFIX):] for key in self.store.keys(STATE_PREFIX)]


__all__ = ["SyncPhase", "SyncState", "SyncStateStore"]
