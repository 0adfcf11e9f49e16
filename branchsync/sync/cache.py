"""Offline snapshot of remote entity collections."""

from __future__ import annotations

from collections import OrderedDict
import logging
import threading
import uuid
from typing import Any, Callable, Dict, Iterable, List, Optional

from ..storage.kv import KeyValueStore

logger = logging.getLogger("branchsync.sync.cache")

CACHE_PREFIX = "cache:"
OWNER_PREFIX = "cache-owners:"


def _record_id(item: Dict[str, Any]) -> str:
    value = item.get("id")
    if value is None:
        # Records without an id still need a slot; they can never be upserted by id.
        return f"_anon_{uuid.uuid4().hex}"
    return str(value)


class EntityCache:
    """Per-entity-type collections, each an id-indexed ordered map.

    Collections are loaded lazily from the store and written back on every
    mutation. Nothing expires on its own; only ``remove`` (driven by the
    storage monitor) evicts.

    Several branches share one collection per type. Records that arrive in a
    branch's pull are tagged with that branch, and the branch's next pull only
    replaces what it owns. Untagged records (local writes, untargeted
    replaces) stay until something updates or evicts them.
    """

    def __init__(self, store: KeyValueStore) -> None:
        self.store = store
        self._collections: Dict[str, "OrderedDict[str, Dict[str, Any]]"] = {}
        self._owners: Dict[str, Dict[str, str]] = {}
        self._lock = threading.RLock()

    def _key(self, entity_type: str) -> str:
        if not entity_type:
            raise ValueError("entity_type is required")
        return f"{CACHE_PREFIX}{entity_type}"

    def _collection(self, entity_type: str) -> "OrderedDict[str, Dict[str, Any]]":
        collection = self._collections.get(entity_type)
        if collection is None:
            collection = OrderedDict()
            for item in self.store.get(self._key(entity_type)) or []:
                collection[_record_id(item)] = item
            self._collections[entity_type] = collection
        return collection

    def _owner_map(self, entity_type: str) -> Dict[str, str]:
        owners = self._owners.get(entity_type)
        if owners is None:
            owners = dict(self.store.get(f"{OWNER_PREFIX}{entity_type}") or {})
            self._owners[entity_type] = owners
        return owners

    def _persist(self, entity_type: str) -> None:
        collection = self._collections[entity_type]
        self.store.set(self._key(entity_type), list(collection.values()))
        owners = self._owner_map(entity_type)
        for record_id in [key for key in owners if key not in collection]:
            del owners[record_id]
        self.store.set(f"{OWNER_PREFIX}{entity_type}", owners)

    def batch_replace(
        self,
        entity_type: str,
        items: Iterable[Dict[str, Any]],
        branch_id: Optional[str] = None,
    ) -> int:
        """Replace cached records with a fresh pull.

        Without ``branch_id`` the whole collection is swapped. With it, only
        the records that branch pulled last time are dropped or overwritten;
        other branches' records keep their place.
        """
        incoming: "OrderedDict[str, Dict[str, Any]]" = OrderedDict()
        for item in items:
            incoming[_record_id(item)] = dict(item)
        with self._lock:
            if branch_id is None:
                self._collections[entity_type] = incoming
                self._owners[entity_type] = {}
            else:
                collection = self._collection(entity_type)
                owners = self._owner_map(entity_type)
                stale = [key for key, owner in owners.items() if owner == branch_id and key not in incoming]
                for record_id in stale:
                    collection.pop(record_id, None)
                for record_id, item in incoming.items():
                    collection[record_id] = item
                    owners[record_id] = branch_id
            self._persist(entity_type)
        logger.debug(
            "Replaced %d %s records%s",
            len(incoming),
            entity_type,
            f" for {branch_id}" if branch_id else "",
            extra={"branch_id": branch_id or ""},
        )
        return len(incoming)

    def upsert_one(self, entity_type: str, item: Dict[str, Any], merge: bool = True) -> None:
        """Insert or update a single record by id, keeping its original position.

        With ``merge`` the new fields are layered over the cached record, so a
        partial update does not drop fields it does not mention.
        """
        with self._lock:
            collection = self._collection(entity_type)
            record_id = _record_id(item)
            if merge and record_id in collection:
                merged = dict(collection[record_id])
                merged.update(item)
                collection[record_id] = merged
            else:
                collection[record_id] = dict(item)
            self._persist(entity_type)

    def get_all(self, entity_type: str) -> List[Dict[str, Any]]:
        with self._lock:
            return [dict(item) for item in self._collection(entity_type).values()]

    def get(self, entity_type: str, entity_id: Any) -> Optional[Dict[str, Any]]:
        with self._lock:
            item = self._collection(entity_type).get(str(entity_id))
            return dict(item) if item is not None else None

    def count(self, entity_type: str) -> int:
        with self._lock:
            return len(self._collection(entity_type))

    def remove(self, entity_type: str, entity_ids: Iterable[Any]) -> int:
        """Evict records by id; returns how many were present."""
        with self._lock:
            collection = self._collection(entity_type)
            removed = 0
            for entity_id in entity_ids:
                if collection.pop(str(entity_id), None) is not None:
                    removed += 1
            if removed:
                self._persist(entity_type)
        return removed

    def remove_where(self, entity_type: str, predicate: Callable[[Dict[str, Any]], bool]) -> int:
        """Evict every record matching ``predicate``; returns how many went."""
        with self._lock:
            collection = self._collection(entity_type)
            doomed = [key for key, item in collection.items() if predicate(item)]
            for key in doomed:
                del collection[key]
            if doomed:
                self._persist(entity_type)
        return len(doomed)

    def entity_types(self) -> List[str]:
        with self._lock:
            persisted = {key[len(CACHE_PREFIX):] for key in self.store.keys(CACHE_PREFIX)}
            return sorted(persisted | set(self._collections))


__all__ = ["EntityCache"]
