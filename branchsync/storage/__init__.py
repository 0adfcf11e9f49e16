"""Persistence and usage-estimation adapters."""

from __future__ import annotations

from .kv import KeyValueStore, MemoryStore, SQLiteStore
from .usage import CallableUsageEstimator, DiskUsageEstimator, StoreUsageEstimator, UsageEstimator

__all__ = [
    "KeyValueStore",
    "MemoryStore",
    "SQLiteStore",
    "UsageEstimator",
    "StoreUsageEstimator",
    "DiskUsageEstimator",
    "CallableUsageEstimator",
]
