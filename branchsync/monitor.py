"""Storage budget monitor: usage alerts and emergency cleanup."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
import logging
import math
import threading
import time
from typing import Any, Callable, Dict, List, Optional

from .configuration import ConfigurationBundle
from .errors import CallbackError, StorageUnavailableError
from .storage.usage import UsageEstimator
from .sync.cache import EntityCache
from .sync.operations import OperationLog
from .timeutils import parse_timestamp

logger = logging.getLogger("branchsync.monitor")

ORDER_TIMESTAMP_FIELDS = ("order_timestamp", "orderTimestamp", "created_at", "createdAt")
ORDERS = "orders"


@dataclass
class StorageSettings:
    """Runtime configuration for storage and the budget monitor."""

    backend: str = "sqlite"
    database: str = "state/branchsync.db"
    quota_bytes: int = 50 * 1024 * 1024
    estimator: str = "database"
    check_interval: float = 300.0
    warning_percent: float = 80.0
    critical_percent: float = 95.0
    rearm_seconds: float = 300.0
    order_retention_seconds: float = 3600.0
    operation_log_limit: int = 100

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "StorageSettings":
        raw = config.get("storage", {}) if config else {}

        def _float_val(key: str, default: float) -> float:
            try:
                return float(raw.get(key, default))
            except (TypeError, ValueError):
                return default

        return cls(
            backend=str(raw.get("backend", "sqlite")),
            database=str(raw.get("database", "state/branchsync.db")),
            quota_bytes=int(raw.get("quota_bytes", 50 * 1024 * 1024)),
            estimator=str(raw.get("estimator", "database")),
            check_interval=_float_val("check_interval", 300.0),
            warning_percent=_float_val("warning_percent", 80.0),
            critical_percent=_float_val("critical_percent", 95.0),
            rearm_seconds=_float_val("rearm_seconds", 300.0),
            order_retention_seconds=_float_val("order_retention_seconds", 3600.0),
            operation_log_limit=int(raw.get("operation_log_limit", 100)),
        )

    @classmethod
    def from_bundle(cls, bundle: ConfigurationBundle) -> "StorageSettings":
        return cls.from_config(bundle.merged)


@dataclass
class StorageStats:
    usage: int
    quota: int
    percentage: float
    is_near_limit: bool
    is_critical: bool

    @classmethod
    def measure(cls, usage: int, quota: int, settings: StorageSettings) -> "StorageStats":
        percentage = (usage / quota) * 100 if quota > 0 else 0.0
        return cls(
            usage=usage,
            quota=quota,
            percentage=percentage,
            is_near_limit=percentage >= settings.warning_percent,
            is_critical=percentage >= settings.critical_percent,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "usage": self.usage,
            "quota": self.quota,
            "percentage": round(self.percentage, 2),
            "is_near_limit": self.is_near_limit,
            "is_critical": self.is_critical,
        }


class AlertLevel(str, Enum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


@dataclass
class StorageAlert:
    level: AlertLevel
    message: str
    percentage: float
    timestamp: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "level": self.level.value,
            "message": self.message,
            "percentage": round(self.percentage, 2),
            "timestamp": self.timestamp,
        }


@dataclass
class CleanupReport:
    orders_removed: int = 0
    operations_removed: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "orders_removed": self.orders_removed,
            "operations_removed": list(self.operations_removed),
        }


AlertCallback = Callable[[StorageAlert], None]


class Subscription:
    """Handle returned by ``AlertBus.subscribe``."""

    def __init__(self, bus: "AlertBus", callback: AlertCallback) -> None:
        self._bus = bus
        self.callback = callback

    def unsubscribe(self) -> bool:
        return self._bus.unsubscribe(self.callback)


class AlertBus:
    """Delivers alerts to subscribers; one failing callback never blocks the others."""

    def __init__(self) -> None:
        self._callbacks: List[AlertCallback] = []
        self._lock = threading.Lock()

    def subscribe(self, callback: AlertCallback) -> Subscription:
        with self._lock:
            self._callbacks.append(callback)
        return Subscription(self, callback)

    def unsubscribe(self, callback: AlertCallback) -> bool:
        with self._lock:
            if callback not in self._callbacks:
                return False
            self._callbacks.remove(callback)
        return True

    def __len__(self) -> int:
        with self._lock:
            return len(self._callbacks)

    def publish(self, alert: StorageAlert) -> List[CallbackError]:
        with self._lock:
            callbacks = list(self._callbacks)
        errors: List[CallbackError] = []
        for callback in callbacks:
            try:
                callback(alert)
            except Exception as exc:
                error = CallbackError(callback, exc)
                logger.error("%s", error)
                errors.append(error)
        return errors


def format_bytes(size: float) -> str:
    if size <= 0:
        return "0 Bytes"
    units = ["Bytes", "KB", "MB", "GB", "TB"]
    index = min(int(math.floor(math.log(size, 1024))), len(units) - 1)
    return f"{round(size / (1024 ** index), 2):g} {units[index]}"


def order_timestamp(order: Dict[str, Any]) -> Optional[float]:
    for key in ORDER_TIMESTAMP_FIELDS:
        value = parse_timestamp(order.get(key))
        if value is not None:
            return value
    return None


class StorageMonitor:
    """Watches the storage budget on a timer.

    Crossing the warning threshold raises one warning per re-arm window.
    Crossing the critical threshold always raises a critical alert and runs
    the emergency cleanup. If the estimator cannot report usage the monitor
    disables itself and sync carries on without it.
    """

    def __init__(
        self,
        estimator: UsageEstimator,
        operations: OperationLog,
        cache: EntityCache,
        settings: Optional[StorageSettings] = None,
        clock: Callable[[], float] = time.time,
        bus: Optional[AlertBus] = None,
    ) -> None:
        self.estimator = estimator
        self.operations = operations
        self.cache = cache
        self.settings = settings or StorageSettings()
        self.clock = clock
        self.bus = bus or AlertBus()
        self.alerts: List[StorageAlert] = []
        self.callback_errors: List[CallbackError] = []
        self.last_check_time: float = 0.0
        self.disabled_reason: Optional[str] = None
        self._lock = threading.RLock()
        self._running = False
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def disabled(self) -> bool:
        return self.disabled_reason is not None

    def subscribe(self, callback: AlertCallback) -> Subscription:
        return self.bus.subscribe(callback)

    def storage_stats(self) -> Optional[StorageStats]:
        if self.disabled:
            return None
        try:
            usage, quota = self.estimator.estimate()
            if quota <= 0:
                raise StorageUnavailableError("Estimator reported no quota")
        except StorageUnavailableError as exc:
            self._disable(str(exc))
            return None
        return StorageStats.measure(int(usage), int(quota), self.settings)

    def _disable(self, reason: str) -> None:
        if not self.disabled:
            logger.warning("Storage monitoring disabled: %s", reason)
        self.disabled_reason = reason or "storage usage unavailable"
        self._running = False
        self._stop_event.set()

    def check_storage(self) -> Optional[StorageStats]:
        """Measure usage, raise any due alert, clean up when critical."""
        with self._lock:
            stats = self.storage_stats()
            if stats is None:
                return None
            now = self.clock()
            self.last_check_time = now

            if stats.is_critical:
                self._raise_alert(
                    AlertLevel.CRITICAL,
                    "Storage critically full. Old data will be automatically cleaned up.",
                    stats.percentage,
                    now,
                )
                self.emergency_cleanup()
            elif stats.is_near_limit and not self._recently_alerted(AlertLevel.WARNING, now):
                self._raise_alert(
                    AlertLevel.WARNING,
                    "Storage nearly full. Please sync data to free up space.",
                    stats.percentage,
                    now,
                )
            return stats

    def force_check(self) -> Optional[StorageStats]:
        """Check now, re-enabling a monitor that disabled itself earlier."""
        self.disabled_reason = None
        return self.check_storage()

    def _recently_alerted(self, level: AlertLevel, now: float) -> bool:
        window = self.settings.rearm_seconds
        return any(a.level is level and now - a.timestamp < window for a in self.alerts)

    def _raise_alert(self, level: AlertLevel, message: str, percentage: float, now: float) -> StorageAlert:
        alert = StorageAlert(level=level, message=message, percentage=percentage, timestamp=now)
        self.alerts.append(alert)
        log = logger.error if level is AlertLevel.CRITICAL else logger.warning
        log("%s (%.1f%% used)", message, percentage)
        errors = self.bus.publish(alert)
        if errors:
            self.callback_errors.extend(errors)
            del self.callback_errors[:-50]
        return alert

    def emergency_cleanup(self) -> CleanupReport:
        """Drop stale cached orders and trim the operation log to its limit.

        Running it twice in a row is a no-op the second time. Orders without a
        readable timestamp are kept.
        """
        report = CleanupReport()
        cutoff = self.clock() - self.settings.order_retention_seconds

        def _is_stale(order: Dict[str, Any]) -> bool:
            stamp = order_timestamp(order)
            return stamp is not None and stamp < cutoff

        report.orders_removed = self.cache.remove_where(ORDERS, _is_stale)
        if report.orders_removed:
            logger.warning("Emergency cleanup removed %d old orders", report.orders_removed)

        discarded = self.operations.trim(self.settings.operation_log_limit)
        report.operations_removed = [op.id for op in discarded]
        if discarded:
            logger.warning(
                "Emergency cleanup discarded %d unsynced operations: %s",
                len(discarded),
                ", ".join(report.operations_removed),
            )
        return report

    def recent_alerts(self, max_age: float = 3600.0) -> List[StorageAlert]:
        now = self.clock()
        return [a for a in self.alerts if now - a.timestamp < max_age]

    def clear_old_alerts(self, max_age: float = 86400.0) -> int:
        now = self.clock()
        with self._lock:
            kept = [a for a in self.alerts if now - a.timestamp < max_age]
            removed = len(self.alerts) - len(kept)
            self.alerts = kept
        return removed

    def formatted_usage(self) -> str:
        stats = self.storage_stats()
        if stats is None:
            return "Storage monitoring not available"
        return f"Using {format_bytes(stats.usage)} of {format_bytes(stats.quota)} ({stats.percentage:.1f}%)"

    # Timer

    def start(self) -> bool:
        if self._running:
            return True
        if self.disabled:
            logger.info("Storage monitor is disabled: %s", self.disabled_reason)
            return False
        self._running = True
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._monitor_loop, name="branchsync-storage", daemon=True)
        self._thread.start()
        logger.info("Storage monitor started (every %.0fs)", self.settings.check_interval)
        return True

    def stop(self) -> None:
        self._running = False
        self._stop_event.set()
        if self._thread and self._thread.is_alive() and self._thread is not threading.current_thread():
            self._thread.join(timeout=2.0)
        self._thread = None

    @property
    def running(self) -> bool:
        return self._running

    def _monitor_loop(self) -> None:
        while self._running:
            try:
                self.check_storage()
                self.clear_old_alerts()
            except Exception:
                logger.exception("Storage check error")
            if self._stop_event.wait(self.settings.check_interval):
                break


__all__ = [
    "AlertBus",
    "AlertLevel",
    "CleanupReport",
    "StorageAlert",
    "StorageMonitor",
    "StorageSettings",
    "StorageStats",
    "Subscription",
    "format_bytes",
]
