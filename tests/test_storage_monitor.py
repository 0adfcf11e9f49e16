"""Tests for the storage budget monitor."""

from __future__ import annotations

import time

from branchsync.errors import CallbackError, StorageUnavailableError
from branchsync.monitor import (
    AlertBus,
    AlertLevel,
    StorageAlert,
    StorageMonitor,
    StorageSettings,
    format_bytes,
    order_timestamp,
)
from branchsync.storage import CallableUsageEstimator, MemoryStore
from branchsync.sync.cache import EntityCache
from branchsync.sync.operations import OperationLog

from conftest import FakeClock, Usage


def _monitor(usage: Usage, clock: FakeClock, **settings) -> StorageMonitor:
    store = MemoryStore()
    return StorageMonitor(
        CallableUsageEstimator(usage),
        OperationLog(store, clock=clock),
        EntityCache(store),
        settings=StorageSettings(**settings),
        clock=clock,
    )


def _levels(monitor: StorageMonitor):
    return [alert.level for alert in monitor.alerts]


def test_below_warning_raises_nothing(usage, clock):
    monitor = _monitor(usage, clock)
    usage.set_percent(79.9)

    stats = monitor.check_storage()

    assert stats.is_near_limit is False
    assert monitor.alerts == []
    assert monitor.last_check_time == clock.now


def test_warning_fires_once_per_rearm_window(usage, clock):
    monitor = _monitor(usage, clock)
    usage.set_percent(80.1)

    monitor.check_storage()
    clock.advance(120)
    monitor.check_storage()
    assert _levels(monitor) == [AlertLevel.WARNING]

    clock.advance(181)
    monitor.check_storage()
    assert _levels(monitor) == [AlertLevel.WARNING, AlertLevel.WARNING]


def test_critical_alert_runs_cleanup(usage, clock):
    monitor = _monitor(usage, clock)
    for i in range(150):
        monitor.operations.enqueue("CREATE_ORDER", {"id": f"o{i}"}, "north")
    usage.set_percent(95.1)

    stats = monitor.check_storage()

    assert stats.is_critical is True
    assert _levels(monitor) == [AlertLevel.CRITICAL]
    assert monitor.operations.count() == 100

    monitor.check_storage()
    assert _levels(monitor) == [AlertLevel.CRITICAL, AlertLevel.CRITICAL]


def test_cleanup_removes_only_stale_orders(usage, clock):
    monitor = _monitor(usage, clock)
    stale_iso = time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime(clock.now - 7200))
    monitor.cache.batch_replace(
        "orders",
        [
            {"id": "old-epoch", "created_at": clock.now - 3601},
            {"id": "old-iso", "orderTimestamp": stale_iso},
            {"id": "old-ms", "createdAt": (clock.now - 5000) * 1000},
            {"id": "fresh", "order_timestamp": clock.now - 60},
            {"id": "undated", "total": 3},
            {"id": "garbled", "created_at": "yesterday-ish"},
        ],
    )

    report = monitor.emergency_cleanup()

    assert report.orders_removed == 3
    assert [o["id"] for o in monitor.cache.get_all("orders")] == ["fresh", "undated", "garbled"]


def test_cleanup_is_idempotent(usage, clock):
    monitor = _monitor(usage, clock, operation_log_limit=10)
    queued = [monitor.operations.enqueue("UPDATE_TABLE", {"id": f"t{i}"}, "south") for i in range(15)]
    monitor.cache.batch_replace("orders", [{"id": "o1", "created_at": 1.0}, {"id": "o2"}])

    first = monitor.emergency_cleanup()
    second = monitor.emergency_cleanup()

    assert first.orders_removed == 1
    assert first.operations_removed == [op.id for op in queued[:5]]
    assert second.to_dict() == {"orders_removed": 0, "operations_removed": []}
    assert [op.id for op in monitor.operations.list()] == [op.id for op in queued[5:]]


def test_order_timestamp_field_precedence():
    assert order_timestamp({"order_timestamp": 10, "created_at": 20}) == 10.0
    assert order_timestamp({"createdAt": "1970-01-01T00:01:40Z"}) == 100.0
    assert order_timestamp({"created_at": None}) is None


def test_failing_callback_does_not_block_others(usage, clock):
    monitor = _monitor(usage, clock)
    seen = []

    def _broken(alert):
        raise RuntimeError("display gone")

    monitor.subscribe(_broken)
    monitor.subscribe(seen.append)
    usage.set_percent(90)

    monitor.check_storage()

    assert [a.level for a in seen] == [AlertLevel.WARNING]
    assert len(monitor.callback_errors) == 1
    error = monitor.callback_errors[0]
    assert isinstance(error, CallbackError)
    assert isinstance(error.original, RuntimeError)


def test_unsubscribe_stops_delivery():
    bus = AlertBus()
    seen = []
    subscription = bus.subscribe(seen.append)
    alert = StorageAlert(AlertLevel.INFO, "hi", 1.0, 0.0)

    bus.publish(alert)
    assert subscription.unsubscribe() is True
    assert subscription.unsubscribe() is False
    bus.publish(alert)

    assert seen == [alert]
    assert len(bus) == 0


def test_monitor_disables_itself_when_usage_unavailable(usage, clock):
    monitor = _monitor(usage, clock)
    usage.error = StorageUnavailableError("no estimate API")

    assert monitor.check_storage() is None
    assert monitor.disabled is True
    assert monitor.start() is False
    assert monitor.formatted_usage() == "Storage monitoring not available"

    usage.error = None
    usage.set_percent(10)
    assert monitor.check_storage() is None

    stats = monitor.force_check()
    assert stats is not None
    assert monitor.disabled is False


def test_zero_quota_disables_monitor(clock):
    monitor = _monitor(Usage(used=5, quota=0), clock)

    assert monitor.storage_stats() is None
    assert monitor.disabled_reason


def test_recent_and_old_alert_pruning(usage, clock):
    monitor = _monitor(usage, clock)
    usage.set_percent(85)
    monitor.check_storage()
    clock.advance(4000)
    monitor.check_storage()

    assert len(monitor.recent_alerts()) == 1
    assert len(monitor.recent_alerts(max_age=5000)) == 2

    clock.advance(86400 - 4000)
    assert monitor.clear_old_alerts() == 1
    assert len(monitor.alerts) == 1


def test_formatted_usage(clock):
    monitor = _monitor(Usage(used=1536, quota=50 * 1024 * 1024), clock)
    assert monitor.formatted_usage() == "Using 1.5 KB of 50 MB (0.0%)"


def test_format_bytes():
    assert format_bytes(0) == "0 Bytes"
    assert format_bytes(512) == "512 Bytes"
    assert format_bytes(1024) == "1 KB"
    assert format_bytes(3 * 1024 ** 3) == "3 GB"


def test_settings_from_config_tolerates_bad_numbers():
    settings = StorageSettings.from_config(
        {"storage": {"warning_percent": "lots", "critical_percent": 97, "quota_bytes": 1000}}
    )
    assert settings.warning_percent == 80.0
    assert settings.critical_percent == 97.0
    assert settings.quota_bytes == 1000


def test_background_loop_checks_until_stopped(usage):
    usage.set_percent(50)
    monitor = _monitor(usage, FakeClock(), check_interval=0.05)

    assert monitor.start() is True
    deadline = time.time() + 2.0
    while not monitor.last_check_time and time.time() < deadline:
        time.sleep(0.01)
    monitor.stop()

    assert monitor.last_check_time
    assert monitor.running is False
