"""In-process record store.

Records live in nested dicts guarded by a single lock. Every record carries a
version that is bumped on each committed write, which is what units of work
validate against at commit time.
"""

import copy
import threading
from typing import Dict, List, Optional, Tuple

from .repository import DELETED, CommitConflict, Key, Store, UnitOfWork


class MemoryUnitOfWork(UnitOfWork):
    """Unit of work against a MemoryStore."""

    def __init__(self, store: "MemoryStore"):
        super().__init__()
        self._store = store

    def _read(self, collection: str, key: str) -> Optional[Tuple[int, dict]]:
        with self._store._lock:
            found = self._store._data.get(collection, {}).get(key)
            return (found[0], copy.deepcopy(found[1])) if found else None

    def _apply(self, reads: Dict[Key, Optional[int]], writes: Dict[Key, object]) -> None:
        with self._store._lock:
            data = self._store._data
            for (collection, key), version in reads.items():
                current = data.get(collection, {}).get(key)
                current_version = current[0] if current else None
                if current_version != version:
                    raise CommitConflict(collection, key)

            for (collection, key), staged in writes.items():
                records = data.setdefault(collection, {})
                current = records.get(key)
                if staged is DELETED:
                    records.pop(key, None)
                    continue
                version = current[0] + 1 if current else 1
                records[key] = (version, staged.merged_onto(current[1] if current else None))


class MemoryStore(Store):
    """Dict-backed store for a single process (tests, local runs)."""

    def __init__(self):
        self._lock = threading.RLock()
        self._data: Dict[str, Dict[str, Tuple[int, dict]]] = {}

    def begin(self) -> UnitOfWork:
        return MemoryUnitOfWork(self)

    def due_movements(self, now_ms: int) -> List[dict]:
        with self._lock:
            due = [
                dict(copy.deepcopy(record), id=key)
                for key, (_, record) in self._data.get("movements", {}).items()
                if int(record.get("arrival_ms", 0)) <= now_ms
            ]
        return sorted(due, key=lambda m: m["arrival_ms"])

    def list_records(self, collection: str) -> List[dict]:
        with self._lock:
            return [
                dict(copy.deepcopy(record), id=key)
                for key, (_, record) in self._data.get(collection, {}).items()
            ]

    def get_record(self, collection: str, key: str) -> Optional[dict]:
        with self._lock:
            found = self._data.get(collection, {}).get(key)
            return copy.deepcopy(found[1]) if found else None

    def version_of(self, collection: str, key: str) -> Optional[int]:
        """Current version of a record, None if absent."""
        with self._lock:
            found = self._data.get(collection, {}).get(key)
            return found[0] if found else None
