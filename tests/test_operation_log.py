"""Tests for the durable operation log."""

from __future__ import annotations

from dataclasses import replace

import pytest

from branchsync.errors import UnknownOperationTypeError
from branchsync.storage import MemoryStore
from branchsync.sync.operations import OperationLog, OperationType, OperationVerb


def _log(clock=None) -> OperationLog:
    ticks = iter(range(1, 10_000))
    return OperationLog(MemoryStore(), clock=clock or (lambda: float(next(ticks))))


def test_enqueue_persists_in_order():
    store = MemoryStore()
    log = OperationLog(store, clock=lambda: 10.0)
    first = log.enqueue("CREATE_ORDER", {"id": "o1"}, "north")
    second = log.enqueue(OperationType.UPDATE_ORDER, {"id": "o1", "total": 5}, "north")

    reopened = OperationLog(store)
    assert [op.id for op in reopened.list()] == [first.id, second.id]
    assert first.retry_count == 0
    assert first.timestamp == 10.0
    assert first.id != second.id


def test_list_filters_by_branch():
    log = _log()
    log.enqueue("CREATE_ORDER", {"id": "a"}, "north")
    log.enqueue("CREATE_ORDER", {"id": "b"}, "south")
    log.enqueue("CREATE_ORDER", {"id": "c"}, "north")

    assert [op.payload["id"] for op in log.list("north")] == ["a", "c"]
    assert log.count("south") == 1
    assert log.count() == 3


def test_unknown_kind_is_rejected():
    log = _log()
    with pytest.raises(UnknownOperationTypeError):
        log.enqueue("LAUNCH_ROCKET", {}, "north")
    with pytest.raises(ValueError):
        log.enqueue("CREATE_ORDER", {}, "")


def test_operation_types_map_to_entities():
    assert OperationType.CLOSE_SHIFT.entity_type == "shifts"
    assert OperationType.CLOSE_SHIFT.verb is OperationVerb.UPDATE
    assert OperationType.DELETE_TABLE.verb is OperationVerb.DELETE
    assert OperationType.parse("create_order") is OperationType.CREATE_ORDER
    assert all(kind.entity_type for kind in OperationType)


def test_remove_and_update_never_resurrect():
    log = _log()
    op = log.enqueue("CREATE_ORDER", {"id": "o1"}, "north")

    assert log.remove(op.id) is True
    assert log.remove(op.id) is False
    assert log.update(replace(op, retry_count=3)) is False
    assert log.count() == 0


def test_update_replaces_in_place():
    log = _log()
    first = log.enqueue("CREATE_ORDER", {"id": "o1"}, "north")
    second = log.enqueue("CREATE_ORDER", {"id": "o2"}, "north")

    assert log.update(replace(first, retry_count=2, last_error="timeout")) is True

    ops = log.list()
    assert [op.id for op in ops] == [first.id, second.id]
    assert ops[0].retry_count == 2
    assert ops[0].last_error == "timeout"


def test_trim_keeps_most_recent():
    log = _log()
    ops = [log.enqueue("CREATE_ORDER", {"id": f"o{i}"}, "north") for i in range(150)]

    discarded = log.trim(100)

    assert len(discarded) == 50
    assert [op.id for op in discarded] == [op.id for op in ops[:50]]
    assert [op.id for op in log.list()] == [op.id for op in ops[50:]]
    assert log.trim(100) == []


def test_clear_by_branch():
    log = _log()
    log.enqueue("CREATE_ORDER", {"id": "a"}, "north")
    log.enqueue("CREATE_ORDER", {"id": "b"}, "south")

    assert log.clear("north") == 1
    assert [op.branch_id for op in log.list()] == ["south"]


def test_dead_letter_round_trip_keeps_fifo_position():
    log = _log()
    first = log.enqueue("CREATE_ORDER", {"id": "a"}, "north")
    second = log.enqueue("CREATE_ORDER", {"id": "b"}, "north")
    failed = replace(first, retry_count=5, last_error="boom")
    log.update(failed)

    assert log.dead_letter(failed) is True
    assert [op.id for op in log.list()] == [second.id]
    assert [op.id for op in log.dead_letters()] == [first.id]

    revived = log.requeue_dead_letter(first.id)

    assert revived is not None
    assert revived.retry_count == 0
    assert [op.id for op in log.list()] == [first.id, second.id]
    assert log.dead_letters() == []
    assert log.requeue_dead_letter(first.id) is None
