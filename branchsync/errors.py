"""Exception hierarchy for the branch synchronization engine.

Every exception raised on purpose by the engine derives from ``SyncError`` so
callers can catch the whole family at once.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class SyncError(Exception):
    """Base class for all branchsync errors."""


class TransientNetworkError(SyncError):
    """The remote system could not be reached; the operation should be retried."""


class VersionConflictError(SyncError):
    """The remote rejected a push because its copy of the entity diverged.

    Carries the remote snapshot so the conflict detector can classify the
    divergence. Never surfaced to callers as a failure.
    """

    def __init__(
        self,
        message: str = "",
        remote_snapshot: Optional[Dict[str, Any]] = None,
        deleted_at: Optional[float] = None,
    ) -> None:
        super().__init__(message or "Remote version conflict")
        self.remote_snapshot = remote_snapshot
        self.deleted_at = deleted_at


class MalformedManualPayloadError(SyncError):
    """A manual resolution payload is not a well-formed record."""


class StorageUnavailableError(SyncError):
    """The platform cannot report storage usage."""


class CallbackError(SyncError):
    """A subscriber callback failed while an alert was being delivered."""

    def __init__(self, callback: Any, original: BaseException) -> None:
        name = getattr(callback, "__qualname__", None) or repr(callback)
        super().__init__(f"Alert callback {name} failed: {original}")
        self.callback = callback
        self.original = original


class ConflictNotFoundError(SyncError, KeyError):
    """No conflict with the requested id is known."""


class UnknownOperationTypeError(SyncError, ValueError):
    """An operation kind outside the supported set was enqueued."""


__all__ = [
    "CallbackError",
    "ConflictNotFoundError",
    "MalformedManualPayloadError",
    "StorageUnavailableError",
    "SyncError",
    "TransientNetworkError",
    "UnknownOperationTypeError",
    "VersionConflictError",
]
