"""Pull/push cycles between the local queue and the remote system."""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
import logging
import threading
import time
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional

from ..errors import TransientNetworkError, VersionConflictError
from .cache import EntityCache
from .conflict import ConflictManager
from .connectivity import ConnectivityProbe
from .operations import OperationLog, SyncOperation
from .remote import PushResult, PushStatus, RemoteSource
from .state import SyncPhase, SyncStateStore

logger = logging.getLogger("branchsync.sync.coordinator")


@dataclass
class SyncSettings:
    """Settings for the sync coordinator."""

    branches: List[str] = field(default_factory=list)
    interval: float = 30.0
    backoff_base: float = 1.0
    backoff_cap: float = 32.0
    max_retries: Optional[int] = None
    max_workers: int = 4
    connectivity_checks: List[str] = field(default_factory=list)
    connectivity_timeout: float = 1.0

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "SyncSettings":
        raw = config.get("sync", {}) if config else {}
        max_retries = raw.get("max_retries")
        return cls(
            branches=[str(b) for b in raw.get("branches", [])],
            interval=float(raw.get("interval", 30)),
            backoff_base=float(raw.get("backoff_base", 1.0)),
            backoff_cap=float(raw.get("backoff_cap", 32.0)),
            max_retries=None if max_retries is None else int(max_retries),
            max_workers=max(1, int(raw.get("max_workers", 4))),
            connectivity_checks=list(raw.get("connectivity_checks", [])),
            connectivity_timeout=float(raw.get("connectivity_timeout", 1.0)),
        )


def calculate_backoff(retry_count: int, base: float = 1.0, cap: float = 32.0) -> float:
    """Exponential delay before the next attempt: ``base * 2**retry_count``, capped."""
    exponent = max(0, int(retry_count))
    # 2**64 seconds is already far past any cap.
    if exponent > 64:
        return cap
    return min(base * (2 ** exponent), cap)


@dataclass
class SyncResult:
    """What one sync cycle did for a branch."""

    branch_id: str
    skipped: bool = False
    pulled: bool = False
    pull_error: str = ""
    pushed: int = 0
    already_applied: int = 0
    skipped_missing: int = 0
    conflicts: List[str] = field(default_factory=list)
    stopped_reason: str = ""
    pending: int = 0
    phase: SyncPhase = SyncPhase.IDLE

    @property
    def ok(self) -> bool:
        return not self.skipped and self.phase is SyncPhase.PUSH_OK

    def to_dict(self) -> Dict[str, Any]:
        return {
            "branch_id": self.branch_id,
            "skipped": self.skipped,
            "pulled": self.pulled,
            "pull_error": self.pull_error,
            "pushed": self.pushed,
            "already_applied": self.already_applied,
            "skipped_missing": self.skipped_missing,
            "conflicts": list(self.conflicts),
            "stopped_reason": self.stopped_reason,
            "pending": self.pending,
            "phase": self.phase.value,
        }


class SyncCoordinator:
    """Runs pull-then-push cycles per branch.

    Each branch has a non-blocking lock: a trigger that arrives while a cycle
    for the same branch is in flight returns a skipped result instead of
    queueing behind it. Different branches never share a lock.
    """

    def __init__(
        self,
        operations: OperationLog,
        cache: EntityCache,
        states: SyncStateStore,
        conflicts: ConflictManager,
        remote: RemoteSource,
        settings: Optional[SyncSettings] = None,
        clock: Callable[[], float] = time.time,
        probe: Optional[ConnectivityProbe] = None,
    ) -> None:
        self.operations = operations
        self.cache = cache
        self.states = states
        self.conflicts = conflicts
        self.remote = remote
        self.settings = settings or SyncSettings()
        self.clock = clock
        self.probe = probe
        self._branch_locks: Dict[str, threading.Lock] = {}
        self._phases: Dict[str, SyncPhase] = {}
        self._registry_lock = threading.Lock()
        self._running = False
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    # Branch bookkeeping

    def _branch_lock(self, branch_id: str) -> threading.Lock:
        with self._registry_lock:
            lock = self._branch_locks.get(branch_id)
            if lock is None:
                lock = threading.Lock()
                self._branch_locks[branch_id] = lock
            return lock

    @contextmanager
    def branch_guard(self, branch_id: str) -> Iterator[None]:
        """Hold a branch's sync lock, waiting out any cycle in flight.

        Cycles triggered while the guard is held are skipped.
        """
        with self._branch_lock(branch_id):
            yield

    def _set_phase(self, branch_id: str, phase: SyncPhase) -> None:
        with self._registry_lock:
            self._phases[branch_id] = phase
        logger.debug("Branch %s -> %s", branch_id, phase.value, extra={"branch_id": branch_id})

    def phase(self, branch_id: str) -> SyncPhase:
        with self._registry_lock:
            return self._phases.get(branch_id, SyncPhase.IDLE)

    def is_syncing(self, branch_id: str) -> bool:
        return self._branch_lock(branch_id).locked()

    def branches(self) -> List[str]:
        """Configured branches followed by any other branch with queued work."""
        ordered = list(dict.fromkeys(self.settings.branches))
        for operation in self.operations.list():
            if operation.branch_id not in ordered:
                ordered.append(operation.branch_id)
        return ordered

    # Triggers

    def sync_branch(self, branch_id: str) -> SyncResult:
        """Run one pull/push cycle for a branch, or skip if one is in flight."""
        lock = self._branch_lock(branch_id)
        if not lock.acquire(blocking=False):
            logger.debug("Sync already running for %s; skipping", branch_id, extra={"branch_id": branch_id})
            return SyncResult(branch_id=branch_id, skipped=True, phase=self.phase(branch_id))
        try:
            result = SyncResult(branch_id=branch_id)
            self._pull(branch_id, result)
            self._push(branch_id, result)
            return result
        finally:
            self._set_phase(branch_id, SyncPhase.IDLE)
            lock.release()

    def sync_all(self, branches: Optional[Iterable[str]] = None) -> Dict[str, SyncResult]:
        """Sync every branch concurrently; one branch failing does not stop the rest."""
        targets = list(dict.fromkeys(branches if branches is not None else self.branches()))
        if not targets:
            return {}
        results: Dict[str, SyncResult] = {}
        workers = min(self.settings.max_workers, len(targets))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="branchsync") as pool:
            futures = {branch: pool.submit(self.sync_branch, branch) for branch in targets}
            for branch, future in futures.items():
                try:
                    results[branch] = future.result()
                except Exception as exc:
                    logger.exception("Sync failed for branch %s", branch, extra={"branch_id": branch})
                    results[branch] = SyncResult(
                        branch_id=branch,
                        stopped_reason=f"error: {exc}",
                        pending=self.operations.count(branch),
                        phase=SyncPhase.PUSH_FAILED,
                    )
        return results

    def set_online(self, branch_id: str, online: bool) -> Optional[SyncResult]:
        """Record a connectivity change; coming back online starts a cycle."""
        was_online = self.states.get(branch_id).is_online
        self.states.update(branch_id, is_online=bool(online))
        if online and not was_online:
            logger.info("Branch %s is back online", branch_id, extra={"branch_id": branch_id})
            return self.sync_branch(branch_id)
        if not online and was_online:
            logger.info("Branch %s went offline", branch_id, extra={"branch_id": branch_id})
        return None

    # Cycle stages

    def _pull(self, branch_id: str, result: SyncResult) -> None:
        self._set_phase(branch_id, SyncPhase.PULLING)
        try:
            collections = self.remote.pull(branch_id)
        except (TransientNetworkError, OSError) as exc:
            logger.warning("Pull failed for %s: %s", branch_id, exc, extra={"branch_id": branch_id})
            self.states.update(branch_id, last_pull_failed=True, is_online=False)
            result.pull_error = str(exc) or exc.__class__.__name__
            self._set_phase(branch_id, SyncPhase.PULL_FAILED)
            return

        for entity_type, items in (collections or {}).items():
            self.cache.batch_replace(entity_type, items or [], branch_id=branch_id)
        self.states.update(
            branch_id,
            last_pull_timestamp=self.clock(),
            last_pull_failed=False,
            is_online=True,
        )
        result.pulled = True
        self._set_phase(branch_id, SyncPhase.PULL_OK)

    def _push(self, branch_id: str, result: SyncResult) -> None:
        self._set_phase(branch_id, SyncPhase.PUSHING)
        for queued in self.operations.list(branch_id):
            # The monitor may have trimmed it since the snapshot was taken.
            operation = self.operations.get(queued.id)
            if operation is None:
                result.skipped_missing += 1
                continue

            blocking = self.conflicts.blocking(operation.id)
            if blocking is not None:
                result.conflicts.append(blocking.id)
                result.stopped_reason = "conflict"
                break
            if operation.next_attempt_at > self.clock():
                result.stopped_reason = "backoff"
                break

            outcome = self._push_one(operation)
            if outcome.status is PushStatus.APPLIED:
                self.operations.remove(operation.id)
                result.pushed += 1
                continue

            if outcome.status is PushStatus.VERSION_CONFLICT:
                self.states.update(branch_id, is_online=True)
                conflict = self.conflicts.detect_for_operation(
                    operation, outcome.remote_snapshot, deleted_at=outcome.deleted_at
                )
                if conflict is None:
                    # Remote already holds this content.
                    self.operations.remove(operation.id)
                    result.already_applied += 1
                    continue
                result.conflicts.append(conflict.id)
                result.stopped_reason = "conflict"
                break

            self._record_failure(operation, outcome.message)
            self.states.update(branch_id, is_online=False)
            result.stopped_reason = "transient"
            break

        now = self.clock()
        pending = self.operations.count(branch_id)
        changes: Dict[str, Any] = {"pending_operations": pending}
        if result.pushed or result.already_applied or not result.stopped_reason:
            changes["last_push_timestamp"] = now
        if result.pushed and result.stopped_reason != "transient":
            changes["is_online"] = True
        self.states.update(branch_id, **changes)

        result.pending = pending
        result.phase = SyncPhase.PUSH_FAILED if result.stopped_reason else SyncPhase.PUSH_OK
        self._set_phase(branch_id, result.phase)
        if result.pushed or result.stopped_reason:
            logger.info(
                "Branch %s pushed %d, %d pending%s",
                branch_id,
                result.pushed,
                pending,
                f" (stopped: {result.stopped_reason})" if result.stopped_reason else "",
                extra={"branch_id": branch_id},
            )

    def _push_one(self, operation: SyncOperation) -> PushResult:
        try:
            outcome = self.remote.push(operation)
        except VersionConflictError as exc:
            return PushResult.conflict(exc.remote_snapshot, exc.deleted_at)
        except (TransientNetworkError, OSError) as exc:
            return PushResult.transient(str(exc) or exc.__class__.__name__)
        if outcome is None:
            return PushResult.applied()
        return outcome

    def _record_failure(self, operation: SyncOperation, message: str) -> None:
        delay = calculate_backoff(
            operation.retry_count,
            base=self.settings.backoff_base,
            cap=self.settings.backoff_cap,
        )
        failed = replace(
            operation,
            retry_count=operation.retry_count + 1,
            next_attempt_at=self.clock() + delay,
            last_error=message,
        )
        if not self.operations.update(failed):
            logger.debug("Operation %s left the queue during push", operation.id)
            return
        logger.warning(
            "Push of %s failed (attempt %d), retrying in %.1fs: %s",
            operation.id,
            failed.retry_count,
            delay,
            message or "transient failure",
            extra={"branch_id": operation.branch_id, "operation_id": operation.id},
        )
        max_retries = self.settings.max_retries
        if max_retries is not None and failed.retry_count >= max_retries:
            self.operations.dead_letter(failed)

    # Background loop

    def tick(self) -> Dict[str, SyncResult]:
        """One timer pass: consult the probe if configured, then sync every branch."""
        branches = self.branches()
        if self.probe is not None and self.probe.enabled and not self.probe.is_online():
            for branch in branches:
                self.set_online(branch, False)
            return {}
        return self.sync_all(branches)

    def start(self) -> bool:
        if self._running:
            return True
        self._running = True
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._sync_loop, name="branchsync-sync", daemon=True)
        self._thread.start()
        logger.info("Sync loop started (every %.0fs)", self.settings.interval)
        return True

    def stop(self) -> None:
        self._running = False
        self._stop_event.set()
        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=2.0)
        self._thread = None
        logger.info("Sync loop stopped")

    @property
    def running(self) -> bool:
        return self._running

    def _sync_loop(self) -> None:
        while self._running:
            try:
                self.tick()
            except Exception:
                logger.exception("Sync loop error")
            if self._stop_event.wait(self.settings.interval):
                break


__all__ = [
    "SyncCoordinator",
    "SyncResult",
    "SyncSettings",
    "calculate_backoff",
]
