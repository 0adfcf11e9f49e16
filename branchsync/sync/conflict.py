"""Conflict detection and resolution for queued operations."""

from __future__ import annotations

from collections import OrderedDict
from dataclasses import dataclass, field, replace
from enum import Enum
import copy
import json
import logging
import threading
import time
import uuid
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

from ..errors import ConflictNotFoundError, MalformedManualPayloadError
from ..storage.kv import KeyValueStore
from ..timeutils import parse_timestamp
from .operations import OperationVerb, SyncOperation

logger = logging.getLogger("branchsync.sync.conflict")

CONFLICTS_KEY = "sync_conflicts"

BOOKKEEPING_FIELDS = frozenset(
    {"id", "version", "updated_at", "updatedAt", "created_at", "createdAt", "synced"}
)


class ConflictType(str, Enum):
    VERSION_MISMATCH = "VERSION_MISMATCH"
    CONCURRENT_UPDATE = "CONCURRENT_UPDATE"
    DELETED_MODIFIED = "DELETED_MODIFIED"
    MODIFIED_DELETED = "MODIFIED_DELETED"
    DUPLICATE_ENTITY = "DUPLICATE_ENTITY"


class ResolutionStrategy(str, Enum):
    """Ways of settling a conflict."""

    LAST_WRITE_WINS = "LAST_WRITE_WINS"
    KEEP_LOCAL = "KEEP_LOCAL"
    KEEP_REMOTE = "KEEP_REMOTE"
    MERGE = "MERGE"
    MANUAL = "MANUAL"

    @classmethod
    def parse(cls, value: Any) -> "ResolutionStrategy":
        if isinstance(value, cls):
            return value
        text = str(value).strip().upper().replace("-", "_")
        aliases = {"LWW": "LAST_WRITE_WINS", "LOCAL": "KEEP_LOCAL", "REMOTE": "KEEP_REMOTE"}
        try:
            return cls(aliases.get(text, text))
        except ValueError:
            raise ValueError(f"Unknown resolution strategy: {value!r}") from None


@dataclass(frozen=True)
class EntitySnapshot:
    """One side of a conflict. ``data`` is None when that side has no record."""

    data: Optional[Dict[str, Any]]
    version: int = 0
    timestamp: float = 0.0
    deleted: bool = False

    @classmethod
    def from_record(
        cls,
        record: Optional[Mapping[str, Any]],
        default_timestamp: float = 0.0,
        deleted: bool = False,
    ) -> "EntitySnapshot":
        if record is None:
            return cls(data=None, version=0, timestamp=default_timestamp, deleted=True)
        data = dict(record)
        timestamp = parse_timestamp(data.get("updated_at", data.get("updatedAt")))
        return cls(
            data=data,
            version=_as_version(data.get("version")),
            timestamp=default_timestamp if timestamp is None else timestamp,
            deleted=deleted or bool(data.get("deleted") or data.get("is_deleted")),
        )


def _as_version(value: Any) -> int:
    if isinstance(value, bool):
        return 0
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


@dataclass(frozen=True)
class Conflict:
    """A detected divergence between a queued operation and the remote record.

    Instances are immutable; resolution swaps in a replacement record.
    """

    id: str
    entity_type: str
    entity_id: str
    conflict_type: ConflictType
    local_data: Optional[Dict[str, Any]]
    remote_data: Optional[Dict[str, Any]]
    local_version: int
    remote_version: int
    local_timestamp: float
    remote_timestamp: float
    operation_type: str
    created_at: float
    operation_id: str = ""
    branch_id: str = ""
    resolved: bool = False
    resolution_strategy: Optional[ResolutionStrategy] = None
    resolved_data: Optional[Dict[str, Any]] = None
    resolved_at: Optional[float] = None
    resolved_by: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "conflict_type": self.conflict_type.value,
            "local_data": self.local_data,
            "remote_data": self.remote_data,
            "local_version": self.local_version,
            "remote_version": self.remote_version,
            "local_timestamp": self.local_timestamp,
            "remote_timestamp": self.remote_timestamp,
            "operation_type": self.operation_type,
            "created_at": self.created_at,
            "operation_id": self.operation_id,
            "branch_id": self.branch_id,
            "resolved": self.resolved,
            "resolution_strategy": (
                self.resolution_strategy.value if self.resolution_strategy else None
            ),
            "resolved_data": self.resolved_data,
            "resolved_at": self.resolved_at,
            "resolved_by": self.resolved_by,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Conflict":
        strategy = data.get("resolution_strategy")
        return cls(
            id=data["id"],
            entity_type=data["entity_type"],
            entity_id=str(data["entity_id"]),
            conflict_type=ConflictType(data["conflict_type"]),
            local_data=data.get("local_data"),
            remote_data=data.get("remote_data"),
            local_version=int(data.get("local_version", 0)),
            remote_version=int(data.get("remote_version", 0)),
            local_timestamp=float(data.get("local_timestamp", 0.0)),
            remote_timestamp=float(data.get("remote_timestamp", 0.0)),
            operation_type=data.get("operation_type", ""),
            created_at=float(data.get("created_at", 0.0)),
            operation_id=data.get("operation_id", ""),
            branch_id=data.get("branch_id", ""),
            resolved=bool(data.get("resolved", False)),
            resolution_strategy=ResolutionStrategy(strategy) if strategy else None,
            resolved_data=data.get("resolved_data"),
            resolved_at=data.get("resolved_at"),
            resolved_by=data.get("resolved_by"),
        )


# ---------------------------------------------------------------------------
# Detection


def comparable_payload(data: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    """Strip bookkeeping fields so only business content is compared."""
    if not data:
        return {}
    return {key: value for key, value in data.items() if key not in BOOKKEEPING_FIELDS}


def payloads_differ(local: Optional[Mapping[str, Any]], remote: Optional[Mapping[str, Any]]) -> bool:
    left = json.dumps(comparable_payload(local), sort_keys=True, default=str)
    right = json.dumps(comparable_payload(remote), sort_keys=True, default=str)
    return left != right


def classify(
    local: EntitySnapshot,
    remote: EntitySnapshot,
    *,
    is_create: bool = False,
    same_identity: bool = True,
) -> Optional[ConflictType]:
    """Classify a divergence in priority order; None means the two sides agree."""
    if remote.deleted and not local.deleted:
        return ConflictType.DELETED_MODIFIED
    if local.deleted:
        return None if remote.deleted else ConflictType.MODIFIED_DELETED
    if same_identity:
        differ = payloads_differ(local.data, remote.data)
        if local.version == remote.version and differ:
            return ConflictType.CONCURRENT_UPDATE
        if local.version != remote.version and differ:
            return ConflictType.VERSION_MISMATCH
        return None
    if is_create:
        return ConflictType.DUPLICATE_ENTITY
    return None


class ConflictDetector:
    """Builds Conflict records from a local/remote pair."""

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self.clock = clock

    def detect(
        self,
        entity_type: str,
        entity_id: str,
        local: EntitySnapshot,
        remote: EntitySnapshot,
        operation_type: str,
        *,
        is_create: bool = False,
        same_identity: bool = True,
        operation_id: str = "",
        branch_id: str = "",
    ) -> Optional[Conflict]:
        conflict_type = classify(local, remote, is_create=is_create, same_identity=same_identity)
        if conflict_type is None:
            return None
        now = self.clock()
        conflict = Conflict(
            id=f"conflict_{entity_type}_{entity_id}_{uuid.uuid4().hex[:8]}",
            entity_type=entity_type,
            entity_id=str(entity_id),
            conflict_type=conflict_type,
            local_data=copy.deepcopy(local.data),
            remote_data=copy.deepcopy(remote.data),
            local_version=local.version,
            remote_version=remote.version,
            local_timestamp=local.timestamp,
            remote_timestamp=remote.timestamp,
            operation_type=operation_type,
            created_at=now,
            operation_id=operation_id,
            branch_id=branch_id,
        )
        logger.info(
            "Conflict detected: %s for %s:%s",
            conflict_type.value,
            entity_type,
            entity_id,
            extra={"conflict_id": conflict.id, "branch_id": branch_id, "operation_id": operation_id},
        )
        return conflict

    def detect_for_operation(
        self,
        operation: SyncOperation,
        remote_record: Optional[Mapping[str, Any]],
        deleted_at: Optional[float] = None,
    ) -> Optional[Conflict]:
        """Compare a rejected operation against the record the remote holds.

        A missing remote record is a deletion stamped with ``deleted_at``, or
        with the detection time when the remote did not say.
        """
        verb = operation.type.verb
        local = EntitySnapshot.from_record(
            operation.payload,
            default_timestamp=operation.timestamp,
            deleted=verb is OperationVerb.DELETE,
        )
        if remote_record is None:
            remote = EntitySnapshot.from_record(
                None, default_timestamp=self.clock() if deleted_at is None else deleted_at
            )
        else:
            remote = EntitySnapshot.from_record(remote_record)
        local_id = operation.entity_id
        remote_id = None
        if remote_record is not None and remote_record.get("id") is not None:
            remote_id = str(remote_record["id"])
        same_identity = local_id is None or remote_id is None or local_id == remote_id
        return self.detect(
            operation.entity_type,
            local_id or remote_id or operation.id,
            local,
            remote,
            operation.type.value,
            is_create=verb is OperationVerb.CREATE,
            same_identity=same_identity,
            operation_id=operation.id,
            branch_id=operation.branch_id,
        )


# ---------------------------------------------------------------------------
# Resolution strategies. Each takes the conflict and the resolution time and
# returns the winning payload (None when the winning side is a deletion).

StrategyFunction = Callable[[Conflict, float, Any], Optional[Dict[str, Any]]]


def last_write_wins(conflict: Conflict, now: float, payload: Any = None) -> Optional[Dict[str, Any]]:
    """Newer timestamp wins and the remote takes ties.

    A remote deletion counts as written when the remote reports it, or when
    it was detected, so an offline edit queued before then loses to it.
    """
    if conflict.local_timestamp > conflict.remote_timestamp:
        return copy.deepcopy(conflict.local_data)
    return copy.deepcopy(conflict.remote_data)


def keep_local(conflict: Conflict, now: float, payload: Any = None) -> Optional[Dict[str, Any]]:
    return copy.deepcopy(conflict.local_data)


def keep_remote(conflict: Conflict, now: float, payload: Any = None) -> Optional[Dict[str, Any]]:
    return copy.deepcopy(conflict.remote_data)


def merge(conflict: Conflict, now: float, payload: Any = None) -> Dict[str, Any]:
    """Field-wise union; local wins on collisions except where it holds None."""
    merged = copy.deepcopy(conflict.remote_data) if conflict.remote_data else {}
    for key, value in (conflict.local_data or {}).items():
        if value is not None:
            merged[key] = copy.deepcopy(value)
    merged["version"] = max(conflict.local_version, conflict.remote_version) + 1
    stamp_key = "updatedAt" if "updatedAt" in merged and "updated_at" not in merged else "updated_at"
    merged[stamp_key] = now
    return merged


def manual(conflict: Conflict, now: float, payload: Any = None) -> Dict[str, Any]:
    validate_manual_payload(payload)
    return copy.deepcopy(payload)


def validate_manual_payload(payload: Any) -> None:
    if not isinstance(payload, Mapping):
        raise MalformedManualPayloadError("Manual resolution needs a mapping payload")
    bad_keys = [key for key in payload if not isinstance(key, str)]
    if bad_keys:
        raise MalformedManualPayloadError(f"Manual payload keys must be strings: {bad_keys!r}")
    try:
        json.dumps(payload)
    except (TypeError, ValueError) as exc:
        raise MalformedManualPayloadError(f"Manual payload is not JSON-serializable: {exc}") from exc


STRATEGIES: Dict[ResolutionStrategy, StrategyFunction] = {
    ResolutionStrategy.LAST_WRITE_WINS: last_write_wins,
    ResolutionStrategy.KEEP_LOCAL: keep_local,
    ResolutionStrategy.KEEP_REMOTE: keep_remote,
    ResolutionStrategy.MERGE: merge,
    ResolutionStrategy.MANUAL: manual,
}

_unhandled = set(ResolutionStrategy) - set(STRATEGIES)
if _unhandled:  # pragma: no cover - guards additions to the enum
    raise RuntimeError(f"Strategies without a resolver: {sorted(s.value for s in _unhandled)}")


def apply_strategy(
    conflict: Conflict,
    strategy: ResolutionStrategy,
    resolved_by: str,
    now: float,
    payload: Any = None,
) -> Conflict:
    """Return the resolved replacement for ``conflict``; the input is untouched."""
    if conflict.resolved:
        return conflict
    resolved_data = STRATEGIES[strategy](conflict, now, payload)
    return replace(
        conflict,
        resolved=True,
        resolution_strategy=strategy,
        resolved_data=resolved_data,
        resolved_at=now,
        resolved_by=resolved_by,
    )


# ---------------------------------------------------------------------------
# Manager


@dataclass
class ConflictStats:
    total: int = 0
    resolved: int = 0
    unresolved: int = 0
    by_type: Dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "resolved": self.resolved,
            "unresolved": self.unresolved,
            "by_type": dict(self.by_type),
        }


DEFAULT_STRATEGIES: Dict[ConflictType, ResolutionStrategy] = {
    ConflictType.VERSION_MISMATCH: ResolutionStrategy.LAST_WRITE_WINS,
    ConflictType.CONCURRENT_UPDATE: ResolutionStrategy.LAST_WRITE_WINS,
    ConflictType.DELETED_MODIFIED: ResolutionStrategy.KEEP_REMOTE,
    ConflictType.MODIFIED_DELETED: ResolutionStrategy.KEEP_LOCAL,
    ConflictType.DUPLICATE_ENTITY: ResolutionStrategy.MERGE,
}


def strategies_from_config(mapping: Optional[Mapping[str, Any]]) -> Dict[ConflictType, ResolutionStrategy]:
    """Overlay configured per-type defaults on the built-in table."""
    strategies = dict(DEFAULT_STRATEGIES)
    for key, value in (mapping or {}).items():
        try:
            conflict_type = ConflictType(getattr(key, "value", str(key)).strip().upper())
        except ValueError:
            logger.warning("Ignoring default strategy for unknown conflict type %r", key)
            continue
        try:
            strategies[conflict_type] = ResolutionStrategy.parse(value)
        except ValueError as exc:
            logger.warning("Keeping built-in strategy for %s: %s", conflict_type.value, exc)
    return strategies


class ConflictManager:
    """Holds detected conflicts and resolves them one at a time under a lock.

    Conflicts are persisted through the key-value store so they survive a
    restart of the terminal.
    """

    def __init__(
        self,
        store: KeyValueStore,
        detector: Optional[ConflictDetector] = None,
        clock: Callable[[], float] = time.time,
        default_strategies: Optional[Mapping[ConflictType, ResolutionStrategy]] = None,
        key: str = CONFLICTS_KEY,
    ) -> None:
        self.store = store
        self.clock = clock
        self.detector = detector or ConflictDetector(clock=clock)
        self.key = key
        self.default_strategies: Dict[ConflictType, ResolutionStrategy] = dict(
            default_strategies or DEFAULT_STRATEGIES
        )
        self._lock = threading.RLock()
        self._conflicts: "OrderedDict[str, Conflict]" = OrderedDict()
        for item in self.store.get(self.key) or []:
            conflict = Conflict.from_dict(item)
            self._conflicts[conflict.id] = conflict

    def _commit(self, staged: "OrderedDict[str, Conflict]") -> None:
        # Memory only changes once the store has accepted the new set.
        self.store.set(self.key, [c.to_dict() for c in staged.values()])
        self._conflicts = staged

    def _staged(self) -> "OrderedDict[str, Conflict]":
        return OrderedDict(self._conflicts)

    def record(self, conflict: Conflict) -> Conflict:
        with self._lock:
            staged = self._staged()
            staged[conflict.id] = conflict
            self._commit(staged)
        return conflict

    def detect_for_operation(
        self,
        operation: SyncOperation,
        remote_record: Optional[Mapping[str, Any]],
        deleted_at: Optional[float] = None,
    ) -> Optional[Conflict]:
        conflict = self.detector.detect_for_operation(operation, remote_record, deleted_at)
        if conflict is not None:
            self.record(conflict)
        return conflict

    def set_default_strategy(self, conflict_type: ConflictType, strategy: ResolutionStrategy) -> None:
        with self._lock:
            self.default_strategies[ConflictType(conflict_type)] = ResolutionStrategy.parse(strategy)

    # Queries

    def get(self, conflict_id: str) -> Optional[Conflict]:
        with self._lock:
            return self._conflicts.get(conflict_id)

    def all(self) -> List[Conflict]:
        with self._lock:
            return list(self._conflicts.values())

    def unresolved(self) -> List[Conflict]:
        return [c for c in self.all() if not c.resolved]

    def by_entity_type(self, entity_type: str) -> List[Conflict]:
        return [c for c in self.all() if c.entity_type == entity_type]

    def blocking(self, operation_id: str) -> Optional[Conflict]:
        """The unresolved conflict holding back an operation, if any."""
        if not operation_id:
            return None
        for conflict in self.unresolved():
            if conflict.operation_id == operation_id:
                return conflict
        return None

    def stats(self) -> ConflictStats:
        stats = ConflictStats()
        for conflict in self.all():
            stats.total += 1
            if conflict.resolved:
                stats.resolved += 1
            else:
                stats.unresolved += 1
            name = conflict.conflict_type.value
            stats.by_type[name] = stats.by_type.get(name, 0) + 1
        return stats

    # Resolution

    def resolve(
        self,
        conflict_id: str,
        strategy: Any,
        resolved_by: str = "system",
        payload: Any = None,
    ) -> Conflict:
        """Resolve one conflict atomically.

        Raises ConflictNotFoundError for an unknown id and
        MalformedManualPayloadError for a bad MANUAL payload, in which case the
        stored conflict is left unresolved.
        """
        chosen = ResolutionStrategy.parse(strategy)
        with self._lock:
            current = self._conflicts.get(conflict_id)
            if current is None:
                raise ConflictNotFoundError(f"Conflict not found: {conflict_id}")
            if current.resolved:
                logger.warning("Conflict already resolved: %s", conflict_id)
                return current
            resolved = apply_strategy(current, chosen, resolved_by, self.clock(), payload)
            staged = self._staged()
            staged[conflict_id] = resolved
            self._commit(staged)
        logger.info(
            "Conflict resolved: %s using %s",
            conflict_id,
            chosen.value,
            extra={"conflict_id": conflict_id, "operation_id": resolved.operation_id},
        )
        return resolved

    def resolve_all(
        self,
        strategy: Any = ResolutionStrategy.LAST_WRITE_WINS,
        strategy_map: Optional[Mapping[str, Any]] = None,
        resolved_by: str = "auto-resolver",
        payloads: Optional[Mapping[str, Any]] = None,
    ) -> List[Conflict]:
        """Resolve every open conflict with one strategy or a per-id map.

        MANUAL entries without a usable payload in ``payloads`` are skipped and
        stay open.
        """
        default = ResolutionStrategy.parse(strategy)
        strategy_map = strategy_map or {}
        payloads = payloads or {}
        results: List[Conflict] = []
        for conflict in self.unresolved():
            chosen = ResolutionStrategy.parse(strategy_map.get(conflict.id, default))
            try:
                results.append(
                    self.resolve(conflict.id, chosen, resolved_by, payloads.get(conflict.id))
                )
            except MalformedManualPayloadError as exc:
                logger.warning("Left %s unresolved: %s", conflict.id, exc)
        return results

    def auto_resolve(self, resolved_by: str = "auto-resolver") -> List[Conflict]:
        """Apply the per-type default strategy to every open conflict."""
        strategy_map = {}
        for conflict in self.unresolved():
            chosen = self.default_strategies.get(conflict.conflict_type)
            if chosen is not None and chosen is not ResolutionStrategy.MANUAL:
                strategy_map[conflict.id] = chosen
        results: List[Conflict] = []
        for conflict_id, chosen in strategy_map.items():
            results.append(self.resolve(conflict_id, chosen, resolved_by))
        return results

    # Housekeeping

    def clear_resolved(self) -> int:
        with self._lock:
            doomed = [cid for cid, c in self._conflicts.items() if c.resolved]
            if doomed:
                staged = self._staged()
                for conflict_id in doomed:
                    del staged[conflict_id]
                self._commit(staged)
        return len(doomed)

    def clear_all(self) -> int:
        with self._lock:
            count = len(self._conflicts)
            self._commit(OrderedDict())
        return count

    def export_json(self) -> str:
        return json.dumps([c.to_dict() for c in self.all()], indent=2, default=str)

    def import_json(self, text: str) -> int:
        """Load conflicts exported elsewhere; existing ids are overwritten."""
        items: Iterable[Dict[str, Any]] = json.loads(text)
        if not isinstance(items, list):
            raise ValueError("Conflict export must be a JSON list")
        imported = [Conflict.from_dict(item) for item in items]
        with self._lock:
            staged = self._staged()
            for conflict in imported:
                staged[conflict.id] = conflict
            self._commit(staged)
        return len(imported)


__all__ = [
    "Conflict",
    "ConflictDetector",
    "ConflictManager",
    "ConflictStats",
    "ConflictType",
    "DEFAULT_STRATEGIES",
    "EntitySnapshot",
    "ResolutionStrategy",
    "STRATEGIES",
    "apply_strategy",
    "classify",
    "comparable_payload",
    "payloads_differ",
    "strategies_from_config",
]
