"""
Sync Kernel — RecordStore

In-memory keyed collection of versioned records. Pure data structure:
no IO, no asyncio. Mutated only by the EventReconciler; everyone else reads
snapshot() or registers an observer.

Guarantees:
  - at most one Record per id
  - upsert with a lower revision than the stored one is a no-op
  - upsert of an identical record is a no-op and notifies nobody
  - snapshot() is insertion-stable and excludes pending-delete tombstones
"""

from __future__ import annotations

import contextlib
import logging
from collections.abc import Callable, Iterator

from syncengine.kernel.types import Record

logger = logging.getLogger(__name__)

Observer = Callable[[frozenset[str]], None]


class RecordStore:
    """Versioned records keyed by id, with change notification."""

    def __init__(self, name: str = "records") -> None:
        self.name = name
        # dicts preserve insertion order; replacing a key keeps its position
        self._records: dict[str, Record] = {}
        self._observers: list[Observer] = []
        self._batch_depth = 0
        self._changed: set[str] = set()
        self._snapshot: tuple[Record, ...] | None = None

    # -- reads --

    def get(self, record_id: str) -> Record | None:
        """Return the stored record, tombstones included."""
        return self._records.get(record_id)

    def snapshot(self) -> tuple[Record, ...]:
        """Immutable, insertion-ordered view of the visible records."""
        if self._snapshot is None:
            self._snapshot = tuple(r for r in self._records.values() if not r.is_tombstone)
        return self._snapshot

    def ids(self) -> list[str]:
        return list(self._records)

    def __len__(self) -> int:
        return len(self.snapshot())

    def __contains__(self, record_id: object) -> bool:
        return record_id in self._records

    # -- writes --

    def upsert(self, record: Record) -> bool:
        """
        Insert or replace a record. Returns True if the store changed.
        """
        current = self._records.get(record.id)
        if current is not None:
            if record.revision < current.revision:
                return False
            if current == record:
                return False
        self._records[record.id] = record
        self._touch(record.id)
        return True

    def remove(self, record_id: str) -> bool:
        """Physically remove a record. Returns True if it existed."""
        if record_id not in self._records:
            return False
        del self._records[record_id]
        self._touch(record_id)
        return True

    def clear(self) -> None:
        if not self._records:
            return
        ids = list(self._records)
        self._records.clear()
        for record_id in ids:
            self._touch(record_id)

    # -- observers --

    def subscribe(self, observer: Observer) -> Callable[[], None]:
        """
        Register an observer called with the set of changed ids after each
        mutation (or once per outermost batch). Returns an idempotent unsubscribe.
        """
        self._observers.append(observer)

        def unsubscribe() -> None:
            with contextlib.suppress(ValueError):
                self._observers.remove(observer)

        return unsubscribe

    @contextlib.contextmanager
    def batch(self) -> Iterator[None]:
        """Coalesce notifications: observers hear about the batch once, on exit."""
        self._batch_depth += 1
        try:
            yield
        finally:
            self._batch_depth -= 1
            if self._batch_depth == 0:
                self._flush()

    # -- internals --

    def _touch(self, record_id: str) -> None:
        self._snapshot = None
        self._changed.add(record_id)
        if self._batch_depth == 0:
            self._flush()

    def _flush(self) -> None:
        if not self._changed:
            return
        changed = frozenset(self._changed)
        self._changed.clear()
        for observer in list(self._observers):
            try:
                observer(changed)
            except Exception:
                logger.exception("store[%s]: observer failed for %d changed ids", self.name, len(changed))
