"""The sync engine service object wiring storage, sync and monitoring together."""

from __future__ import annotations

from contextlib import nullcontext
from dataclasses import replace
import logging
from pathlib import Path
import threading
import time
from typing import Any, Callable, Dict, List, Mapping, Optional

from .configuration import ConfigurationBundle
from .monitor import (
    AlertCallback,
    StorageAlert,
    StorageMonitor,
    StorageSettings,
    StorageStats,
    Subscription,
)
from .storage.kv import KeyValueStore, MemoryStore, SQLiteStore
from .storage.usage import DiskUsageEstimator, StoreUsageEstimator, UsageEstimator
from .sync.cache import EntityCache
from .sync.conflict import (
    Conflict,
    ConflictManager,
    ResolutionStrategy,
    strategies_from_config,
)
from .sync.connectivity import ConnectivityProbe
from .sync.coordinator import SyncCoordinator, SyncResult, SyncSettings
from .sync.operations import OperationLog, OperationType, OperationVerb, SyncOperation
from .sync.remote import RemoteSource
from .sync.state import SyncPhase, SyncState, SyncStateStore

logger = logging.getLogger("branchsync.engine")


def _update_kind_for(entity_type: str) -> Optional[OperationType]:
    for kind in OperationType:
        if kind.entity_type == entity_type and kind.verb is OperationVerb.UPDATE:
            return kind
    return None


class SyncEngine:
    """Offline-first sync for one terminal.

    Everything it depends on is injected, so tests run it against an
    in-memory store, a fake remote and a fake clock.
    """

    def __init__(
        self,
        store: KeyValueStore,
        remote: RemoteSource,
        usage_estimator: UsageEstimator,
        sync_settings: Optional[SyncSettings] = None,
        storage_settings: Optional[StorageSettings] = None,
        clock: Callable[[], float] = time.time,
        default_strategies: Optional[Mapping[Any, Any]] = None,
        probe: Optional[ConnectivityProbe] = None,
    ) -> None:
        self.store = store
        self.clock = clock
        self.sync_settings = sync_settings or SyncSettings()
        self.storage_settings = storage_settings or StorageSettings()
        self.operations = OperationLog(store, clock=clock)
        self.cache = EntityCache(store)
        self.states = SyncStateStore(store)
        self.conflict_manager = ConflictManager(
            store,
            clock=clock,
            default_strategies=strategies_from_config(default_strategies),
        )
        self.coordinator = SyncCoordinator(
            self.operations,
            self.cache,
            self.states,
            self.conflict_manager,
            remote,
            settings=self.sync_settings,
            clock=clock,
            probe=probe,
        )
        self.monitor = StorageMonitor(
            usage_estimator,
            self.operations,
            self.cache,
            settings=self.storage_settings,
            clock=clock,
        )
        self._resolve_lock = threading.Lock()

    @classmethod
    def from_configuration(
        cls,
        bundle: ConfigurationBundle,
        remote: RemoteSource,
        clock: Callable[[], float] = time.time,
    ) -> "SyncEngine":
        """Build the default engine: SQLite store under the data directory."""
        config = bundle.merged or {}
        sync_settings = SyncSettings.from_config(config)
        storage_settings = StorageSettings.from_config(config)

        store: KeyValueStore
        if storage_settings.backend == "memory":
            store = MemoryStore()
        else:
            db_path = Path(storage_settings.database).expanduser()
            if not db_path.is_absolute():
                db_path = bundle.data_dir / db_path
            sqlite_store = SQLiteStore(db_path)
            sqlite_store.initialize()
            store = sqlite_store

        estimator: UsageEstimator
        if storage_settings.estimator == "disk":
            estimator = DiskUsageEstimator(bundle.data_dir)
        else:
            estimator = StoreUsageEstimator(store, storage_settings.quota_bytes)

        probe = None
        if sync_settings.connectivity_checks:
            probe = ConnectivityProbe(
                targets=sync_settings.connectivity_checks,
                timeout=sync_settings.connectivity_timeout,
            )

        conflicts_cfg = config.get("conflicts", {}) or {}
        return cls(
            store=store,
            remote=remote,
            usage_estimator=estimator,
            sync_settings=sync_settings,
            storage_settings=storage_settings,
            clock=clock,
            default_strategies=conflicts_cfg.get("default_strategies"),
            probe=probe,
        )

    # Offline writes

    def record_offline(self, kind: Any, payload: Dict[str, Any], branch_id: str) -> SyncOperation:
        """Queue a mutation and apply it to the local cache right away."""
        operation = self.operations.enqueue(kind, payload, branch_id)
        entity_id = operation.entity_id
        if operation.type.verb is OperationVerb.DELETE:
            if entity_id is not None:
                self.cache.remove(operation.entity_type, [entity_id])
        elif entity_id is not None:
            self.cache.upsert_one(operation.entity_type, operation.payload)
        self.states.update(branch_id, pending_operations=self.operations.count(branch_id))
        return operation

    # Sync

    def sync(self, branch_id: str) -> SyncResult:
        return self.coordinator.sync_branch(branch_id)

    def sync_all(self) -> Dict[str, SyncResult]:
        return self.coordinator.sync_all()

    def set_online(self, branch_id: str, online: bool) -> Optional[SyncResult]:
        return self.coordinator.set_online(branch_id, online)

    def pending_count(self, branch_id: Optional[str] = None) -> int:
        return self.operations.count(branch_id)

    def sync_state(self, branch_id: str) -> SyncState:
        state = self.states.get(branch_id)
        return replace(state, pending_operations=self.operations.count(branch_id))

    def phase(self, branch_id: str) -> SyncPhase:
        return self.coordinator.phase(branch_id)

    def branches(self) -> List[str]:
        known = self.coordinator.branches()
        for branch in self.states.branches():
            if branch not in known:
                known.append(branch)
        return known

    # Conflicts

    def conflicts(self) -> List[Conflict]:
        return self.conflict_manager.all()

    def unresolved_conflicts(self) -> List[Conflict]:
        return self.conflict_manager.unresolved()

    def resolve(
        self,
        conflict_id: str,
        strategy: Any,
        actor_id: str,
        payload: Any = None,
    ) -> Conflict:
        """Resolve a conflict and put its outcome back on the push path.

        The branch's sync lock is held throughout so no cycle can push the
        blocked operation between the conflict closing and its rewrite.
        """
        with self._resolve_lock:
            before = self.conflict_manager.get(conflict_id)
            guard = nullcontext()
            if before is not None and before.branch_id:
                guard = self.coordinator.branch_guard(before.branch_id)
            with guard:
                resolved = self.conflict_manager.resolve(conflict_id, strategy, actor_id, payload)
                if before is not None and not before.resolved:
                    self._resubmit(resolved)
        return resolved

    def resolve_all(
        self,
        strategy: Any = ResolutionStrategy.LAST_WRITE_WINS,
        strategy_map: Optional[Mapping[str, Any]] = None,
        actor_id: str = "auto-resolver",
    ) -> List[Conflict]:
        default = ResolutionStrategy.parse(strategy)
        strategy_map = strategy_map or {}
        results: List[Conflict] = []
        for conflict in self.conflict_manager.unresolved():
            chosen = ResolutionStrategy.parse(strategy_map.get(conflict.id, default))
            if chosen is ResolutionStrategy.MANUAL:
                logger.info("Skipping %s: manual resolution needs a payload", conflict.id)
                continue
            results.append(self.resolve(conflict.id, chosen, actor_id))
        return results

    def auto_resolve(self, actor_id: str = "auto-resolver") -> List[Conflict]:
        """Resolve open conflicts with the configured per-type defaults."""
        defaults = self.conflict_manager.default_strategies
        strategy_map = {}
        for conflict in self.conflict_manager.unresolved():
            chosen = defaults.get(conflict.conflict_type)
            if chosen is None or chosen is ResolutionStrategy.MANUAL:
                continue
            strategy_map[conflict.id] = chosen
        return [self.resolve(cid, chosen, actor_id) for cid, chosen in strategy_map.items()]

    def clear_resolved_conflicts(self) -> int:
        return self.conflict_manager.clear_resolved()

    def _resubmit(self, conflict: Conflict) -> None:
        operation = self.operations.get(conflict.operation_id) if conflict.operation_id else None
        entity_type = conflict.entity_type
        data = conflict.resolved_data

        if conflict.resolution_strategy is ResolutionStrategy.KEEP_REMOTE or data is None:
            if operation is not None:
                self.operations.remove(operation.id)
            if conflict.remote_data is None:
                self.cache.remove(entity_type, [conflict.entity_id])
            else:
                self.cache.upsert_one(entity_type, conflict.remote_data, merge=False)
            self._refresh_pending(conflict.branch_id)
            logger.info(
                "Kept remote copy of %s:%s", entity_type, conflict.entity_id,
                extra={"conflict_id": conflict.id},
            )
            return

        payload = dict(data)
        payload.setdefault("id", conflict.entity_id)
        payload["version"] = max(conflict.local_version, conflict.remote_version) + 1

        kind = OperationType.parse(conflict.operation_type)
        if kind.verb is OperationVerb.DELETE and conflict.resolution_strategy in (
            ResolutionStrategy.MERGE,
            ResolutionStrategy.MANUAL,
        ):
            kind = _update_kind_for(entity_type) or kind

        if operation is not None:
            self.operations.update(
                replace(
                    operation,
                    type=kind,
                    payload=payload,
                    retry_count=0,
                    next_attempt_at=0.0,
                    last_error="",
                )
            )
        elif conflict.branch_id:
            # The blocked operation was trimmed away; queue the outcome afresh.
            self.operations.enqueue(kind, payload, conflict.branch_id)

        if kind.verb is OperationVerb.DELETE:
            self.cache.remove(entity_type, [payload["id"]])
        else:
            self.cache.upsert_one(entity_type, payload, merge=False)
        self._refresh_pending(conflict.branch_id)

    def _refresh_pending(self, branch_id: str) -> None:
        if branch_id:
            self.states.update(branch_id, pending_operations=self.operations.count(branch_id))

    # Storage

    def recent_alerts(self, max_age: float = 3600.0) -> List[StorageAlert]:
        return self.monitor.recent_alerts(max_age)

    def subscribe(self, callback: AlertCallback) -> Subscription:
        return self.monitor.subscribe(callback)

    def check_storage(self) -> Optional[StorageStats]:
        return self.monitor.force_check()

    # Lifecycle

    def start(self) -> None:
        self.coordinator.start()
        self.monitor.start()

    def stop(self) -> None:
        self.monitor.stop()
        self.coordinator.stop()

    def close(self) -> None:
        self.stop()
        close = getattr(self.store, "close", None)
        if callable(close):
            close()

    def status(self) -> Dict[str, Any]:
        """Snapshot used by the console and the CLI."""
        stats = self.monitor.storage_stats()
        return {
            "branches": [
                dict(self.sync_state(b).to_dict(), phase=self.phase(b).value)
                for b in self.branches()
            ],
            "pending": self.operations.count(),
            "dead_letters": len(self.operations.dead_letters()),
            "conflicts": self.conflict_manager.stats().to_dict(),
            "storage": stats.to_dict() if stats else None,
            "storage_monitor": "disabled" if self.monitor.disabled else "enabled",
        }


__all__ = ["SyncEngine"]
