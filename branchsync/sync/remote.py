"""Contract of the authoritative remote system the coordinator talks to."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
import importlib
from typing import Any, Dict, List, Optional, Protocol

from ..errors import TransientNetworkError
from .operations import SyncOperation

PullResult = Dict[str, List[Dict[str, Any]]]


class PushStatus(str, Enum):
    APPLIED = "applied"
    VERSION_CONFLICT = "version_conflict"
    TRANSIENT_FAILURE = "transient_failure"


@dataclass
class PushResult:
    """Outcome of pushing one operation."""

    status: PushStatus
    remote_snapshot: Optional[Dict[str, Any]] = None
    message: str = ""
    deleted_at: Optional[float] = None

    @classmethod
    def applied(cls) -> "PushResult":
        return cls(status=PushStatus.APPLIED)

    @classmethod
    def conflict(
        cls,
        remote_snapshot: Optional[Dict[str, Any]],
        deleted_at: Optional[float] = None,
    ) -> "PushResult":
        return cls(status=PushStatus.VERSION_CONFLICT, remote_snapshot=remote_snapshot, deleted_at=deleted_at)

    @classmethod
    def transient(cls, message: str = "") -> "PushResult":
        return cls(status=PushStatus.TRANSIENT_FAILURE, message=message)


class RemoteSource(Protocol):
    """Authoritative system of record.

    ``pull`` returns per-entity-type collections whose records carry
    ``version`` and ``updated_at`` metadata. ``push`` applies one operation.
    Either may raise TransientNetworkError (or any ``OSError``); ``push`` may
    also raise VersionConflictError instead of returning a conflict result.
    A ``remote_snapshot`` of ``None`` means the remote no longer has the entity;
    ``deleted_at`` then says when it went, if the remote knows.
    """

    def pull(self, branch_id: str) -> PullResult: ...

    def push(self, operation: SyncOperation) -> PushResult: ...


class UnreachableRemote:
    """Stand-in used when no remote is configured; every call is a transient failure."""

    def pull(self, branch_id: str) -> PullResult:
        raise TransientNetworkError("No remote configured")

    def push(self, operation: SyncOperation) -> PushResult:
        raise TransientNetworkError("No remote configured")


def load_remote(spec: str) -> RemoteSource:
    """Build a remote from a ``package.module:factory`` path."""
    module_name, _, attr = spec.partition(":")
    if not module_name or not attr:
        raise ValueError(f"Remote must look like 'module:factory', got {spec!r}")
    factory = getattr(importlib.import_module(module_name), attr)
    return factory()


__all__ = [
    "PullResult",
    "PushResult",
    "PushStatus",
    "RemoteSource",
    "UnreachableRemote",
    "load_remote",
]
