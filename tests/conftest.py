"""Shared fakes for the sync engine tests."""

from __future__ import annotations

from collections import deque
from typing import Any, Callable, Deque, Dict, List, Optional, Union

import pytest

from branchsync.engine import SyncEngine
from branchsync.monitor import StorageSettings
from branchsync.storage import CallableUsageEstimator, MemoryStore
from branchsync.sync.coordinator import SyncSettings
from branchsync.sync.operations import SyncOperation
from branchsync.sync.remote import PushResult

START = 1_700_000_000.0


class FakeClock:
    def __init__(self, start: float = START) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


Outcome = Union[PushResult, BaseException]


class FakeRemote:
    """Scripted remote: pushes succeed unless an outcome is queued for them."""

    def __init__(self) -> None:
        self.collections: Dict[str, Dict[str, List[Dict[str, Any]]]] = {}
        self.pull_error: Optional[BaseException] = None
        self.pulls: List[str] = []
        self.pushed: List[SyncOperation] = []
        self.outcomes: Deque[Outcome] = deque()
        self.on_push: Optional[Callable[[SyncOperation], None]] = None

    def script(self, *outcomes: Outcome) -> None:
        self.outcomes.extend(outcomes)

    def pull(self, branch_id: str) -> Dict[str, List[Dict[str, Any]]]:
        self.pulls.append(branch_id)
        if self.pull_error is not None:
            raise self.pull_error
        return {k: [dict(i) for i in v] for k, v in self.collections.get(branch_id, {}).items()}

    def push(self, operation: SyncOperation) -> PushResult:
        self.pushed.append(operation)
        if self.on_push is not None:
            self.on_push(operation)
        if self.outcomes:
            outcome = self.outcomes.popleft()
            if isinstance(outcome, BaseException):
                raise outcome
            return outcome
        return PushResult.applied()

    @property
    def pushed_ids(self) -> List[str]:
        return [op.id for op in self.pushed]


class Usage:
    """Mutable ``(usage, quota)`` source for the storage monitor."""

    def __init__(self, used: int = 0, quota: int = 1000) -> None:
        self.used = used
        self.quota = quota
        self.error: Optional[BaseException] = None

    def set_percent(self, percent: float) -> None:
        self.used = int(round(self.quota * percent / 100))

    def __call__(self):
        if self.error is not None:
            raise self.error
        return self.used, self.quota


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def remote() -> FakeRemote:
    return FakeRemote()


@pytest.fixture
def usage() -> Usage:
    return Usage(quota=100_000)


@pytest.fixture
def engine(store: MemoryStore, remote: FakeRemote, usage: Usage, clock: FakeClock) -> SyncEngine:
    return SyncEngine(
        store=store,
        remote=remote,
        usage_estimator=CallableUsageEstimator(usage),
        sync_settings=SyncSettings(branches=["north", "south"]),
        storage_settings=StorageSettings(),
        clock=clock,
    )
