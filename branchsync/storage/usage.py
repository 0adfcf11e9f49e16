"""Storage usage estimators consumed by the storage budget monitor."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Callable, Protocol, Tuple

from ..errors import StorageUnavailableError

try:
    import psutil
except ImportError:  # pragma: no cover
    psutil = None  # type: ignore

logger = logging.getLogger("branchsync.storage.usage")


class UsageEstimator(Protocol):
    """Reports ``(usage_bytes, quota_bytes)`` or raises StorageUnavailableError."""

    def estimate(self) -> Tuple[int, int]: ...


class StoreUsageEstimator:
    """Measures a store's own footprint against a fixed quota."""

    def __init__(self, store: Any, quota_bytes: int) -> None:
        if not hasattr(store, "size_bytes"):
            raise StorageUnavailableError(
                f"{type(store).__name__} cannot report its size"
            )
        self.store = store
        self.quota_bytes = int(quota_bytes)

    def estimate(self) -> Tuple[int, int]:
        if self.quota_bytes <= 0:
            raise StorageUnavailableError("Storage quota is not configured")
        return int(self.store.size_bytes()), self.quota_bytes


class DiskUsageEstimator:
    """Filesystem usage of the partition holding ``path``."""

    def __init__(self, path: Path) -> None:
        self.path = path

    def estimate(self) -> Tuple[int, int]:
        if psutil is None:
            raise StorageUnavailableError("psutil is not installed; disk usage unavailable.")
        try:
            usage = psutil.disk_usage(str(self.path))
        except (OSError, FileNotFoundError) as exc:
            logger.warning("Could not check disk usage for %s: %s", self.path, exc)
            raise StorageUnavailableError(str(exc)) from exc
        return int(usage.used), int(usage.total)


class CallableUsageEstimator:
    """Adapts a plain callable returning ``(usage, quota)``."""

    def __init__(self, fn: Callable[[], Tuple[int, int]]) -> None:
        self._fn = fn

    def estimate(self) -> Tuple[int, int]:
        return self._fn()


__all__ = [
    "CallableUsageEstimator",
    "DiskUsageEstimator",
    "StoreUsageEstimator",
    "UsageEstimator",
]
