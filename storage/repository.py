"""Abstract storage interfaces for the movement core.

The processor never talks to a database directly. It opens a unit of work,
reads the records it needs, stages field-scoped writes and commits. Every
backend must apply a commit atomically and refuse it when any record read
inside the unit of work was changed by someone else in the meantime
(optimistic concurrency). Sibling subsystems write other fields of the same
settlement records, so writes only ever touch the fields they name.
"""

import copy
from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Tuple

Key = Tuple[str, str]

# Marker for a staged deletion
DELETED = object()


class TransientCommitFailure(Exception):
    """Commit could not be applied; the caller may retry later."""


class CommitConflict(TransientCommitFailure):
    """A record read inside the unit of work changed before commit."""

    def __init__(self, collection: str, key: str):
        super().__init__(f"{collection}/{key} was modified concurrently")
        self.collection = collection
        self.key = key


class StagedWrite:
    """Pending field-scoped write of one record.

    ``replace`` is set when the record was deleted earlier in the same unit
    of work, so the stored fields must not be merged back in.
    """

    __slots__ = ("fields", "replace")

    def __init__(self, fields: dict, replace: bool = False):
        self.fields = fields
        self.replace = replace

    def merged_onto(self, stored: Optional[dict]) -> dict:
        if self.replace or stored is None:
            return copy.deepcopy(self.fields)
        merged = copy.deepcopy(stored)
        merged.update(copy.deepcopy(self.fields))
        return merged


class UnitOfWork(ABC):
    """Buffered read-modify-write transaction over the store.

    Subclasses supply ``_read`` (current version and data of one record) and
    ``_apply`` (validate read versions and apply staged writes atomically).
    """

    def __init__(self):
        self._reads: Dict[Key, Optional[int]] = {}
        self._snapshots: Dict[Key, Optional[dict]] = {}
        self._writes: Dict[Key, object] = {}
        self._closed = False

    def __enter__(self) -> "UnitOfWork":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if not self._closed:
            self.rollback()

    @abstractmethod
    def _read(self, collection: str, key: str) -> Optional[Tuple[int, dict]]:
        """Return (version, data) of a stored record, or None if absent."""
        pass

    @abstractmethod
    def _apply(self, reads: Dict[Key, Optional[int]], writes: Dict[Key, object]) -> None:
        """Check read versions and apply writes, all or nothing.

        Writes map each key to a StagedWrite or to DELETED.

        Raises:
            CommitConflict: If any read record changed since it was read
        """
        pass

    def _ensure_open(self) -> None:
        if self._closed:
            raise RuntimeError("unit of work is already closed")

    def get(self, collection: str, key: Optional[str]) -> Optional[dict]:
        """Read a record, seeing this unit's own staged writes."""
        self._ensure_open()
        if key is None:
            return None
        ref = (collection, key)
        if ref not in self._reads:
            found = self._read(collection, key)
            self._reads[ref] = found[0] if found else None
            self._snapshots[ref] = copy.deepcopy(found[1]) if found else None

        staged = self._writes.get(ref)
        if staged is DELETED:
            return None
        if staged is not None:
            return staged.merged_onto(self._snapshots[ref])
        snapshot = self._snapshots[ref]
        return copy.deepcopy(snapshot) if snapshot is not None else None

    def set(self, collection: str, key: str, fields: dict) -> None:
        """Stage a write of the named top-level fields; other fields are left alone."""
        self._ensure_open()
        ref = (collection, key)
        staged = self._writes.get(ref)
        if staged is DELETED:
            self._writes[ref] = StagedWrite(copy.deepcopy(fields), replace=True)
        elif staged is None:
            self._writes[ref] = StagedWrite(copy.deepcopy(fields))
        else:
            staged.fields.update(copy.deepcopy(fields))

    def delete(self, collection: str, key: str) -> None:
        """Stage removal of a record."""
        self._ensure_open()
        self._writes[(collection, key)] = DELETED

    def commit(self) -> None:
        """Apply every staged write atomically.

        Raises:
            CommitConflict: If a record read in this unit changed concurrently
        """
        self._ensure_open()
        try:
            self._apply(dict(self._reads), dict(self._writes))
        finally:
            self._closed = True

    def rollback(self) -> None:
        """Discard staged writes."""
        self._writes.clear()
        self._reads.clear()
        self._snapshots.clear()
        self._closed = True


class Store(ABC):
    """Abstract transactional record store."""

    @abstractmethod
    def begin(self) -> UnitOfWork:
        """Open a new unit of work."""
        pass

    @abstractmethod
    def due_movements(self, now_ms: int) -> List[dict]:
        """Return all movement records with arrival_ms <= now_ms, oldest first."""
        pass

    @abstractmethod
    def list_records(self, collection: str) -> List[dict]:
        """Return every record of a collection, each with its key under 'id'."""
        pass

    @abstractmethod
    def get_record(self, collection: str, key: str) -> Optional[dict]:
        """Load a single record outside any unit of work."""
        pass

    def put_record(self, collection: str, key: str, data: dict) -> None:
        """Insert or overwrite a record (seeding and external writers)."""
        with self.begin() as uow:
            uow.delete(collection, key)
            uow.set(collection, key, data)
            uow.commit()

    def movements_for(self, owner_id: str) -> List[dict]:
        """Movements in which the owner is an involved party."""
        return [
            movement for movement in self.list_records("movements")
            if owner_id in (movement.get("involved_parties") or [])
        ]

    def reports_for(self, owner_id: str) -> List[dict]:
        """Reports addressed to the owner, newest first."""
        reports = [
            report for report in self.list_records("reports")
            if report.get("recipient_id") == owner_id
        ]
        return sorted(reports, key=lambda r: r.get("ts_ms", 0), reverse=True)
