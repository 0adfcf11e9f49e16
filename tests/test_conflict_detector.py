"""Tests for conflict classification."""

from __future__ import annotations

from branchsync.sync.conflict import (
    ConflictDetector,
    ConflictType,
    EntitySnapshot,
    classify,
    last_write_wins,
    payloads_differ,
)
from branchsync.sync.operations import OperationType, SyncOperation


def _snap(data, version=1, timestamp=100.0, deleted=False) -> EntitySnapshot:
    return EntitySnapshot(data=data, version=version, timestamp=timestamp, deleted=deleted)


def _op(kind: OperationType, payload, op_id="op-1") -> SyncOperation:
    return SyncOperation(id=op_id, type=kind, payload=payload, branch_id="north", timestamp=50.0)


def test_equal_versions_and_payloads_are_not_a_conflict():
    local = _snap({"id": "m1", "price": 10, "updated_at": 1}, version=3)
    remote = _snap({"id": "m1", "price": 10, "updated_at": 2, "synced": True}, version=3)

    assert classify(local, remote) is None


def test_version_collision_with_different_payload_is_concurrent_update():
    local = _snap({"id": "m1", "price": 11}, version=3)
    remote = _snap({"id": "m1", "price": 12}, version=3)

    assert classify(local, remote) is ConflictType.CONCURRENT_UPDATE


def test_differing_versions_and_payloads_is_version_mismatch():
    local = _snap({"id": "m1", "price": 11}, version=3)
    remote = _snap({"id": "m1", "price": 12}, version=4)

    assert classify(local, remote) is ConflictType.VERSION_MISMATCH


def test_differing_versions_with_same_content_is_not_a_conflict():
    local = _snap({"id": "m1", "price": 12}, version=3)
    remote = _snap({"id": "m1", "price": 12}, version=4)

    assert classify(local, remote) is None


def test_remote_deletion_beats_other_rules():
    local = _snap({"id": "m1", "price": 11}, version=3)
    remote = _snap(None, version=0, deleted=True)

    assert classify(local, remote) is ConflictType.DELETED_MODIFIED


def test_local_deletion_against_live_remote():
    local = _snap({"id": "m1"}, version=3, deleted=True)
    remote = _snap({"id": "m1", "price": 12}, version=4)

    assert classify(local, remote) is ConflictType.MODIFIED_DELETED
    assert classify(local, _snap(None, deleted=True)) is None


def test_create_colliding_with_other_record_is_duplicate():
    local = _snap({"id": "c-local", "phone": "555"}, version=1)
    remote = _snap({"id": "c-remote", "phone": "555"}, version=1)

    assert classify(local, remote, is_create=True, same_identity=False) is ConflictType.DUPLICATE_ENTITY


def test_bookkeeping_fields_are_ignored():
    assert not payloads_differ(
        {"id": 1, "version": 1, "createdAt": "x", "updatedAt": "y", "name": "A"},
        {"id": 2, "version": 9, "created_at": "z", "updated_at": "w", "synced": False, "name": "A"},
    )
    assert payloads_differ({"name": "A"}, {"name": "A", "notes": None})


def test_detect_for_operation_builds_conflict_record():
    detector = ConflictDetector(clock=lambda: 500.0)
    op = _op(OperationType.UPDATE_MENU_ITEM, {"id": "m1", "price": 11, "version": 3})
    remote = {"id": "m1", "price": 12, "version": 3, "updated_at": "2024-01-01T00:00:00Z"}

    conflict = detector.detect_for_operation(op, remote)

    assert conflict is not None
    assert conflict.conflict_type is ConflictType.CONCURRENT_UPDATE
    assert conflict.entity_type == "menu_items"
    assert conflict.entity_id == "m1"
    assert conflict.operation_id == "op-1"
    assert conflict.branch_id == "north"
    assert conflict.operation_type == "UPDATE_MENU_ITEM"
    assert conflict.local_timestamp == 50.0
    assert conflict.remote_timestamp == 1704067200.0
    assert conflict.created_at == 500.0
    assert conflict.resolved is False
    assert conflict.id.startswith("conflict_menu_items_m1_")


def test_detect_for_operation_remote_gone():
    detector = ConflictDetector(clock=lambda: 1.0)
    op = _op(OperationType.UPDATE_TABLE, {"id": "t1", "seats": 4, "version": 2})

    conflict = detector.detect_for_operation(op, None)

    assert conflict.conflict_type is ConflictType.DELETED_MODIFIED
    assert conflict.remote_data is None
    assert conflict.remote_timestamp == 1.0


def test_last_write_wins_weighs_remote_deletion_time():
    detector = ConflictDetector(clock=lambda: 500.0)
    op = _op(OperationType.UPDATE_TABLE, {"id": "t1", "seats": 4, "version": 2})

    unreported = detector.detect_for_operation(op, None)
    earlier = detector.detect_for_operation(op, None, deleted_at=20.0)

    assert unreported.remote_timestamp == 500.0
    assert last_write_wins(unreported, 600.0) is None
    assert earlier.remote_timestamp == 20.0
    assert last_write_wins(earlier, 600.0) == {"id": "t1", "seats": 4, "version": 2}


def test_detect_for_delete_operation():
    detector = ConflictDetector(clock=lambda: 1.0)
    op = _op(OperationType.DELETE_CUSTOMER, {"id": "c1", "version": 2})

    conflict = detector.detect_for_operation(op, {"id": "c1", "name": "Ann", "version": 3})

    assert conflict.conflict_type is ConflictType.MODIFIED_DELETED


def test_detect_for_create_with_foreign_id():
    detector = ConflictDetector(clock=lambda: 1.0)
    op = _op(OperationType.CREATE_CUSTOMER, {"id": "local-1", "phone": "555", "version": 1})

    conflict = detector.detect_for_operation(op, {"id": "remote-9", "phone": "555", "version": 1})

    assert conflict.conflict_type is ConflictType.DUPLICATE_ENTITY
    assert conflict.entity_id == "local-1"


def test_detect_for_operation_without_divergence():
    detector = ConflictDetector(clock=lambda: 1.0)
    op = _op(OperationType.UPDATE_ORDER, {"id": "o1", "total": 5, "version": 2})

    assert detector.detect_for_operation(op, {"id": "o1", "total": 5, "version": 2}) is None
