"""Offline-first sync engine for multi-branch point-of-sale terminals."""

from .engine import SyncEngine
from .errors import SyncError

__version__ = "0.1.0"

__all__ = ["SyncEngine", "SyncError", "__version__"]
