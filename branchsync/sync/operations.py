"""Durable, ordered log of mutations waiting to be applied remotely."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
import logging
import threading
import time
import uuid
from typing import Any, Callable, Dict, List, Optional

from ..errors import UnknownOperationTypeError
from ..storage.kv import KeyValueStore

logger = logging.getLogger("branchsync.sync.operations")

OPERATIONS_KEY = "sync_operations"
DEAD_LETTER_KEY = "sync_operations_dead_letter"


class OperationVerb(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class OperationType(str, Enum):
    """Kinds of mutation a terminal can queue while offline."""

    CREATE_ORDER = "CREATE_ORDER"
    UPDATE_ORDER = "UPDATE_ORDER"
    CREATE_CUSTOMER = "CREATE_CUSTOMER"
    UPDATE_CUSTOMER = "UPDATE_CUSTOMER"
    DELETE_CUSTOMER = "DELETE_CUSTOMER"
    CREATE_INGREDIENT = "CREATE_INGREDIENT"
    UPDATE_INGREDIENT = "UPDATE_INGREDIENT"
    CREATE_MENU_ITEM = "CREATE_MENU_ITEM"
    UPDATE_MENU_ITEM = "UPDATE_MENU_ITEM"
    DELETE_MENU_ITEM = "DELETE_MENU_ITEM"
    CREATE_SHIFT = "CREATE_SHIFT"
    UPDATE_SHIFT = "UPDATE_SHIFT"
    CLOSE_SHIFT = "CLOSE_SHIFT"
    CREATE_WASTE_LOG = "CREATE_WASTE_LOG"
    CREATE_TRANSFER = "CREATE_TRANSFER"
    UPDATE_INVENTORY = "UPDATE_INVENTORY"
    CREATE_PURCHASE_ORDER = "CREATE_PURCHASE_ORDER"
    UPDATE_PURCHASE_ORDER = "UPDATE_PURCHASE_ORDER"
    CREATE_RECEIPT_SETTINGS = "CREATE_RECEIPT_SETTINGS"
    UPDATE_RECEIPT_SETTINGS = "UPDATE_RECEIPT_SETTINGS"
    CREATE_DAILY_EXPENSE = "CREATE_DAILY_EXPENSE"
    CREATE_VOIDED_ITEM = "CREATE_VOIDED_ITEM"
    CREATE_PROMO_CODE = "CREATE_PROMO_CODE"
    USE_PROMO_CODE = "USE_PROMO_CODE"
    CREATE_LOYALTY_TRANSACTION = "CREATE_LOYALTY_TRANSACTION"
    CREATE_TABLE = "CREATE_TABLE"
    UPDATE_TABLE = "UPDATE_TABLE"
    CLOSE_TABLE = "CLOSE_TABLE"
    DELETE_TABLE = "DELETE_TABLE"
    CREATE_INVENTORY_TRANSACTION = "CREATE_INVENTORY_TRANSACTION"

    @classmethod
    def parse(cls, value: Any) -> "OperationType":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().upper())
        except ValueError:
            raise UnknownOperationTypeError(f"Unknown operation type: {value!r}") from None

    @property
    def entity_type(self) -> str:
        return _OPERATION_TARGETS[self][0]

    @property
    def verb(self) -> OperationVerb:
        return _OPERATION_TARGETS[self][1]


_C, _U, _D = OperationVerb.CREATE, OperationVerb.UPDATE, OperationVerb.DELETE

_OPERATION_TARGETS = {
    OperationType.CREATE_ORDER: ("orders", _C),
    OperationType.UPDATE_ORDER: ("orders", _U),
    OperationType.CREATE_CUSTOMER: ("customers", _C),
    OperationType.UPDATE_CUSTOMER: ("customers", _U),
    OperationType.DELETE_CUSTOMER: ("customers", _D),
    OperationType.CREATE_INGREDIENT: ("ingredients", _C),
    OperationType.UPDATE_INGREDIENT: ("ingredients", _U),
    OperationType.CREATE_MENU_ITEM: ("menu_items", _C),
    OperationType.UPDATE_MENU_ITEM: ("menu_items", _U),
    OperationType.DELETE_MENU_ITEM: ("menu_items", _D),
    OperationType.CREATE_SHIFT: ("shifts", _C),
    OperationType.UPDATE_SHIFT: ("shifts", _U),
    OperationType.CLOSE_SHIFT: ("shifts", _U),
    OperationType.CREATE_WASTE_LOG: ("waste_logs", _C),
    OperationType.CREATE_TRANSFER: ("transfers", _C),
    OperationType.UPDATE_INVENTORY: ("inventory", _U),
    OperationType.CREATE_PURCHASE_ORDER: ("purchase_orders", _C),
    OperationType.UPDATE_PURCHASE_ORDER: ("purchase_orders", _U),
    OperationType.CREATE_RECEIPT_SETTINGS: ("receipt_settings", _C),
    OperationType.UPDATE_RECEIPT_SETTINGS: ("receipt_settings", _U),
    OperationType.CREATE_DAILY_EXPENSE: ("daily_expenses", _C),
    OperationType.CREATE_VOIDED_ITEM: ("voided_items", _C),
    OperationType.CREATE_PROMO_CODE: ("promo_codes", _C),
    OperationType.USE_PROMO_CODE: ("promo_codes", _U),
    OperationType.CREATE_LOYALTY_TRANSACTION: ("loyalty_transactions", _C),
    OperationType.CREATE_TABLE: ("tables", _C),
    OperationType.UPDATE_TABLE: ("tables", _U),
    OperationType.CLOSE_TABLE: ("tables", _U),
    OperationType.DELETE_TABLE: ("tables", _D),
    OperationType.CREATE_INVENTORY_TRANSACTION: ("inventory_transactions", _C),
}

_missing = set(OperationType) - set(_OPERATION_TARGETS)
if _missing:  # pragma: no cover - guards additions to the enum
    raise RuntimeError(f"Operation types without a target: {sorted(m.value for m in _missing)}")


@dataclass
class SyncOperation:
    """A single pending mutation awaiting remote application."""

    id: str
    type: OperationType
    payload: Dict[str, Any]
    branch_id: str
    timestamp: float
    retry_count: int = 0
    next_attempt_at: float = 0.0
    last_error: str = ""

    @property
    def entity_type(self) -> str:
        return self.type.entity_type

    @property
    def entity_id(self) -> Optional[str]:
        value = self.payload.get("id") if isinstance(self.payload, dict) else None
        return None if value is None else str(value)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "payload": self.payload,
            "branch_id": self.branch_id,
            "timestamp": self.timestamp,
            "retry_count": self.retry_count,
            "next_attempt_at": self.next_attempt_at,
            "last_error": self.last_error,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SyncOperation":
        return cls(
            id=data["id"],
            type=OperationType.parse(data["type"]),
            payload=data.get("payload") or {},
            branch_id=data["branch_id"],
            timestamp=float(data.get("timestamp", 0.0)),
            retry_count=int(data.get("retry_count", 0)),
            next_attempt_at=float(data.get("next_attempt_at", 0.0)),
            last_error=str(data.get("last_error", "")),
        )


class OperationLog:
    """FIFO queue of SyncOperations persisted through a key-value store.

    The whole queue lives under a single key so every write replaces it
    atomically; there is no window in which an index and its entries disagree.
    """

    def __init__(
        self,
        store: KeyValueStore,
        clock: Callable[[], float] = time.time,
        key: str = OPERATIONS_KEY,
    ) -> None:
        self.store = store
        self.clock = clock
        self.key = key
        self._lock = threading.RLock()

    def _load(self) -> List[SyncOperation]:
        raw = self.store.get(self.key) or []
        return [SyncOperation.from_dict(item) for item in raw]

    def _save(self, operations: List[SyncOperation]) -> None:
        self.store.set(self.key, [op.to_dict() for op in operations])

    def enqueue(self, kind: Any, payload: Dict[str, Any], branch_id: str) -> SyncOperation:
        """Append a new operation and persist it before returning."""
        op_type = OperationType.parse(kind)
        if not branch_id:
            raise ValueError("branch_id is required")
        operation = SyncOperation(
            id=uuid.uuid4().hex,
            type=op_type,
            payload=dict(payload or {}),
            branch_id=str(branch_id),
            timestamp=self.clock(),
        )
        with self._lock:
            operations = self._load()
            operations.append(operation)
            self._save(operations)
        logger.debug(
            "Queued %s for branch %s (%s)", op_type.value, branch_id, operation.id,
            extra={"branch_id": branch_id, "operation_id": operation.id},
        )
        return operation

    def list(self, branch_id: Optional[str] = None) -> List[SyncOperation]:
        """Pending operations in enqueue order."""
        with self._lock:
            operations = self._load()
        if branch_id is None:
            return operations
        return [op for op in operations if op.branch_id == branch_id]

    def get(self, operation_id: str) -> Optional[SyncOperation]:
        for op in self.list():
            if op.id == operation_id:
                return op
        return None

    def contains(self, operation_id: str) -> bool:
        return self.get(operation_id) is not None

    def count(self, branch_id: Optional[str] = None) -> int:
        return len(self.list(branch_id))

    def remove(self, operation_id: str) -> bool:
        """Drop an operation. Returns False if it was already gone."""
        with self._lock:
            operations = self._load()
            remaining = [op for op in operations if op.id != operation_id]
            if len(remaining) == len(operations):
                return False
            self._save(remaining)
        return True

    def update(self, operation: SyncOperation) -> bool:
        """Replace an operation in place.

        An operation that is no longer in the log (trimmed or already applied)
        is not re-added; the call returns False.
        """
        with self._lock:
            operations = self._load()
            for index, existing in enumerate(operations):
                if existing.id == operation.id:
                    operations[index] = replace(operation)
                    self._save(operations)
                    return True
        return False

    def trim(self, keep: int) -> List[SyncOperation]:
        """Keep the ``keep`` most recent operations; return the discarded ones."""
        keep = max(0, int(keep))
        with self._lock:
            operations = self._load()
            if len(operations) <= keep:
                return []
            cut = len(operations) - keep
            discarded, retained = operations[:cut], operations[cut:]
            self._save(retained)
        return discarded

    def clear(self, branch_id: Optional[str] = None) -> int:
        with self._lock:
            operations = self._load()
            if branch_id is None:
                retained: List[SyncOperation] = []
            else:
                retained = [op for op in operations if op.branch_id != branch_id]
            self._save(retained)
        return len(operations) - len(retained)

    # Dead letters are opt-in; see SyncSettings.max_retries.

    def dead_letter(self, operation: SyncOperation) -> bool:
        """Move an operation out of the live queue into the dead-letter list."""
        with self._lock:
            if not self.remove(operation.id):
                return False
            letters = self.store.get(DEAD_LETTER_KEY) or []
            letters.append(operation.to_dict())
            self.store.set(DEAD_LETTER_KEY, letters)
        logger.warning(
            "Moved %s (%s) for branch %s to dead letters after %d retries: %s",
            operation.type.value,
            operation.id,
            operation.branch_id,
            operation.retry_count,
            operation.last_error or "no error recorded",
            extra={"branch_id": operation.branch_id, "operation_id": operation.id},
        )
        return True

    def dead_letters(self) -> List[SyncOperation]:
        with self._lock:
            return [SyncOperation.from_dict(item) for item in self.store.get(DEAD_LETTER_KEY) or []]

    def requeue_dead_letter(self, operation_id: str) -> Optional[SyncOperation]:
        """Put a dead-lettered operation back in the queue with a fresh retry budget.

        It is re-inserted at its original enqueue position relative to the
        operations still queued.
        """
        with self._lock:
            letters = self.dead_letters()
            match = next((op for op in letters if op.id == operation_id), None)
            if match is None:
                return None
            self.store.set(
                DEAD_LETTER_KEY,
                [op.to_dict() for op in letters if op.id != operation_id],
            )
            revived = replace(match, retry_count=0, next_attempt_at=0.0, last_error="")
            operations = self._load()
            position = next(
                (i for i, op in enumerate(operations) if op.timestamp > revived.timestamp),
                len(operations),
            )
            operations.insert(position, revived)
            self._save(operations)
        return revived


__all__ = [
    "OperationLog",
    "OperationType",
    "OperationVerb",
    "SyncOperation",
]
