"""
Sync Kernel — EventReconciler

(store, event) → ReconcileResult. The only writer of the RecordStore.

Per-id state machine:
  Unknown → Confirmed            remote-push for a record we never saw
  Unknown → Pending              local-optimistic create
  Confirmed → Pending            local-optimistic update / delete
  Pending → Confirmed            remote-confirm of the last pending mutation
  Pending → RolledBack → Confirmed | Unknown
                                 remote-reject; Unknown when a create is rejected

A pending id keeps its *base* (last confirmed Record, or None for a local
create) and the ordered list of mutations not yet settled. The displayed
record is the fold of those mutations over the base, so confirming or
rejecting the head is just "move the base, fold again".

Pushes that target a pending id are buffered and replayed, in arrival order,
once the id has nothing pending. Every event is applied inside one store
batch: observers never see a half-applied event.

A push carries only the row's own columns. Relation fields (tag_ids) that it
lacks are carried over from the cached record.
"""

from __future__ import annotations

import logging
from collections import OrderedDict
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import Any

from syncengine.kernel.store import RecordStore
from syncengine.kernel.types import (
    CONFIRMED,
    LOCAL_OPTIMISTIC,
    OP_CREATE,
    OP_DELETE,
    OP_UPDATE,
    PENDING_CREATE,
    PENDING_DELETE,
    PENDING_UPDATE,
    PROVISIONAL_REVISION,
    RELATION_FIELDS,
    REMOTE_CONFIRM,
    REMOTE_PUSH,
    REMOTE_REJECT,
    ChangeEvent,
    ReconcileResult,
    Record,
)

logger = logging.getLogger(__name__)

STATE_UNKNOWN = "unknown"
STATE_PENDING = "pending"
STATE_CONFIRMED = "confirmed"

# How many deleted ids are remembered for rejecting late pushes.
REMOVED_WINDOW = 1000


@dataclass
class _Mutation:
    mutation_id: str
    op: str
    payload: dict[str, Any]


@dataclass
class _Entry:
    base: Record | None
    pending: list[_Mutation] = field(default_factory=list)
    deferred: list[ChangeEvent] = field(default_factory=list)


def _ok(reason: str | None = None) -> ReconcileResult:
    return ReconcileResult(applied=True, reason=reason)


def _skip(reason: str) -> ReconcileResult:
    return ReconcileResult(applied=False, reason=reason)


def _defer(reason: str) -> ReconcileResult:
    return ReconcileResult(applied=False, reason=reason, deferred=True)


def _with_relations(fields: dict[str, Any], previous: Record | None) -> dict[str, Any]:
    """Fill relation fields missing from `fields` from the previous record."""
    if previous is None:
        return fields
    for name in RELATION_FIELDS:
        if name not in fields and name in previous.fields:
            fields[name] = previous.fields[name]
    return fields


class EventReconciler:
    """Applies ChangeEvents to a RecordStore under ordering and conflict rules."""

    def __init__(self, store: RecordStore | None = None, *, removed_window: int = REMOVED_WINDOW) -> None:
        self._store = store if store is not None else RecordStore()
        self._entries: dict[str, _Entry] = {}
        self._aliases: dict[str, str] = {}
        self._removed: OrderedDict[str, None] = OrderedDict()
        self._removed_window = removed_window
        # mutation ids still pending; a settled id is forgotten
        self._seen_mutations: set[str] = set()
        # ids settled by the remote since begin_resync(), or None when no resync is open
        self._settled_since: set[str] | None = None
        self._handlers: dict[str, Callable[[ChangeEvent], ReconcileResult]] = {
            LOCAL_OPTIMISTIC: self._on_local,
            REMOTE_CONFIRM: self._on_confirm,
            REMOTE_REJECT: self._on_reject,
            REMOTE_PUSH: self._on_push,
        }

    @property
    def store(self) -> RecordStore:
        return self._store

    # -- public API --

    def apply(self, event: ChangeEvent) -> ReconcileResult:
        """
        Apply one event. Never raises on a bad event; the reason explains
        why nothing changed.
        """
        handler = self._handlers.get(event.kind)
        if handler is None:
            logger.warning("reconciler: UNKNOWN_KIND %r for %s", event.kind, event.record_id)
            return _skip(f"UNKNOWN_KIND: {event.kind}")
        with self._store.batch():
            return handler(event)

    def apply_all(self, events: Iterable[ChangeEvent]) -> list[ReconcileResult]:
        return [self.apply(e) for e in events]

    def begin_resync(self) -> None:
        """
        Call before fetching the rows for load_snapshot(). Ids the remote
        settles while the fetch is in flight are newer than the fetched rows,
        and load_snapshot() leaves them alone.
        """
        self._settled_since = set()

    def cancel_resync(self) -> None:
        self._settled_since = None

    def load_snapshot(self, records: Iterable[Record]) -> None:
        """
        Full resynchronization against the remote store's current rows.

        Confirmed records absent from `records` are removed. Pending ids keep
        their pending mutations but take the server row as their new base.
        """
        incoming = {r.id: r.replace(local_state=CONFIRMED) for r in records}
        fresh, self._settled_since = self._settled_since or set(), None
        with self._store.batch():
            for record_id in self._store.ids():
                if record_id not in incoming and record_id not in self._entries and record_id not in fresh:
                    self._store.remove(record_id)
            for record_id, record in incoming.items():
                if record_id in fresh and record_id in self._removed:
                    # deleted after the rows were read
                    continue
                self._removed.pop(record_id, None)
                entry = self._entries.get(record_id)
                if entry is not None:
                    if entry.base is None or record.revision >= entry.base.revision:
                        entry.base = record
                    self._render(record_id, entry)
                    continue
                current = self._store.get(record_id)
                if current is None or record.revision >= current.revision:
                    self._store.upsert(record)
        logger.info(
            "reconciler: resynchronized %s with %d records (%d pending)",
            self._store.name,
            len(incoming),
            len(self._entries),
        )

    def resolve_id(self, record_id: str) -> str:
        """Follow provisional → server id aliases."""
        seen: set[str] = set()
        while record_id in self._aliases and record_id not in seen:
            seen.add(record_id)
            record_id = self._aliases[record_id]
        return record_id

    def state_of(self, record_id: str) -> str:
        record_id = self.resolve_id(record_id)
        if record_id in self._entries:
            return STATE_PENDING
        if record_id in self._store:
            return STATE_CONFIRMED
        return STATE_UNKNOWN

    def pending_ids(self) -> list[str]:
        return list(self._entries)

    def deferred_count(self, record_id: str) -> int:
        entry = self._entries.get(self.resolve_id(record_id))
        return len(entry.deferred) if entry else 0

    def reset(self) -> None:
        """Forget everything. The store is cleared too."""
        self._entries.clear()
        self._aliases.clear()
        self._removed.clear()
        self._seen_mutations.clear()
        self._settled_since = None
        self._store.clear()

    # -- handlers --

    def _on_local(self, event: ChangeEvent) -> ReconcileResult:
        if event.mutation_id is None or event.op is None:
            return _skip("MALFORMED: local-optimistic requires op and mutation_id")
        if event.mutation_id in self._seen_mutations:
            return _skip(f"DUPLICATE: mutation {event.mutation_id} already applied")

        record_id = self.resolve_id(event.record_id)
        entry = self._entries.get(record_id)
        current = self._store.get(record_id)

        if event.op == OP_CREATE:
            if entry is not None or current is not None:
                return _skip(f"ALREADY_EXISTS: '{record_id}' already exists")
            entry = _Entry(base=None)
        elif entry is None:
            if current is None:
                logger.warning("reconciler: UNKNOWN_RECORD %s for local %s", record_id, event.op)
                return _skip(f"UNKNOWN_RECORD: '{record_id}' is not cached")
            entry = _Entry(base=current)
        elif entry.pending and entry.pending[-1].op == OP_DELETE:
            return _skip(f"ALREADY_REMOVED: '{record_id}' has a pending delete")

        entry.pending.append(
            _Mutation(
                mutation_id=event.mutation_id,
                op=event.op,
                payload=dict(event.payload or {}),
            )
        )
        self._entries[record_id] = entry
        self._seen_mutations.add(event.mutation_id)
        self._render(record_id, entry)
        return _ok()

    def _on_confirm(self, event: ChangeEvent) -> ReconcileResult:
        record_id = self.resolve_id(event.record_id)
        entry, mutation = self._take_mutation(record_id, event)
        if entry is None or mutation is None:
            logger.warning(
                "reconciler: UNKNOWN_RECORD confirm for %s (mutation %s), dropped",
                record_id,
                event.mutation_id,
            )
            return _skip(f"UNKNOWN_RECORD: no pending mutation {event.mutation_id} for '{record_id}'")

        if mutation.op == OP_DELETE:
            del self._entries[record_id]
            self._mark_removed(record_id)
            self._store.remove(record_id)
            if entry.deferred:
                logger.debug(
                    "reconciler: dropping %d deferred pushes for deleted %s",
                    len(entry.deferred),
                    record_id,
                )
            return _ok()

        if event.revision is None:
            logger.warning("reconciler: confirm for %s carries no revision", record_id)
            revision = entry.base.revision if entry.base else PROVISIONAL_REVISION
        else:
            revision = event.revision

        if event.server_id and event.server_id != record_id:
            record_id = self._rekey(record_id, event.server_id, entry)

        authoritative = Record(
            id=record_id,
            revision=revision,
            fields=_with_relations(dict(event.payload or {}), entry.base),
            local_state=CONFIRMED,
        )
        if entry.base is None or authoritative.revision >= entry.base.revision:
            entry.base = authoritative
        self._note_settled(record_id)
        self._settle(record_id, entry)
        return _ok()

    def _on_reject(self, event: ChangeEvent) -> ReconcileResult:
        record_id = self.resolve_id(event.record_id)
        entry, mutation = self._take_mutation(record_id, event)
        if entry is None or mutation is None:
            logger.warning(
                "reconciler: UNKNOWN_RECORD reject for %s (mutation %s), dropped",
                record_id,
                event.mutation_id,
            )
            return _skip(f"UNKNOWN_RECORD: no pending mutation {event.mutation_id} for '{record_id}'")

        logger.info("reconciler: rolled back %s of %s", mutation.op, record_id)
        self._settle(record_id, entry)
        return _ok("ROLLED_BACK")

    def _on_push(self, event: ChangeEvent) -> ReconcileResult:
        record_id = self.resolve_id(event.record_id)

        entry = self._entries.get(record_id)
        if entry is not None:
            if (
                entry.base is not None
                and event.revision is not None
                and event.revision < entry.base.revision
            ):
                logger.debug("reconciler: STALE push for pending %s", record_id)
                return _skip(f"STALE: revision {event.revision} < {entry.base.revision}")
            entry.deferred.append(event)
            return _defer(f"DEFERRED: '{record_id}' has pending mutations")

        if record_id in self._removed:
            logger.debug("reconciler: STALE push for deleted %s", record_id)
            return _skip(f"STALE: '{record_id}' was deleted")

        current = self._store.get(record_id)

        if event.op == OP_DELETE:
            if current is None:
                self._mark_removed(record_id)
                self._note_settled(record_id)
                return _skip(f"UNKNOWN_RECORD: '{record_id}' is not cached")
            if event.revision is not None and event.revision < current.revision:
                logger.debug("reconciler: STALE delete push for %s", record_id)
                return _skip(f"STALE: delete revision {event.revision} < {current.revision}")
            self._store.remove(record_id)
            self._mark_removed(record_id)
            self._note_settled(record_id)
            return _ok()

        if event.revision is None:
            logger.warning("reconciler: push for %s carries no revision, dropped", record_id)
            return _skip(f"MISSING_REVISION: push for '{record_id}'")
        if current is not None and event.revision < current.revision:
            logger.debug(
                "reconciler: STALE push for %s (%d < %d)", record_id, event.revision, current.revision
            )
            return _skip(f"STALE: revision {event.revision} < {current.revision}")

        record = Record(
            id=record_id,
            revision=event.revision,
            fields=_with_relations(dict(event.payload or {}), current),
            local_state=CONFIRMED,
        )
        if not self._store.upsert(record):
            return _skip(f"DUPLICATE: '{record_id}' already at revision {event.revision}")
        self._note_settled(record_id)
        return _ok()

    # -- internals --

    def _take_mutation(
        self, record_id: str, event: ChangeEvent
    ) -> tuple[_Entry | None, _Mutation | None]:
        entry = self._entries.get(record_id)
        if entry is None:
            return None, None
        for i, mutation in enumerate(entry.pending):
            if mutation.mutation_id == event.mutation_id:
                if i != 0:
                    logger.warning(
                        "reconciler: %s settled out of order for %s (position %d)",
                        event.mutation_id,
                        record_id,
                        i,
                    )
                self._seen_mutations.discard(mutation.mutation_id)
                return entry, entry.pending.pop(i)
        return entry, None

    def _mark_removed(self, record_id: str) -> None:
        self._removed[record_id] = None
        self._removed.move_to_end(record_id)
        while len(self._removed) > self._removed_window:
            self._removed.popitem(last=False)

    def _note_settled(self, record_id: str) -> None:
        if self._settled_since is not None:
            self._settled_since.add(record_id)

    def _rekey(self, old_id: str, new_id: str, entry: _Entry) -> str:
        """Move a pending create from its provisional id to the server's id."""
        self._store.remove(old_id)
        del self._entries[old_id]
        self._aliases[old_id] = new_id

        existing = self._store.get(new_id)
        if existing is not None and (entry.base is None or existing.revision > entry.base.revision):
            entry.base = existing
        collided = self._entries.pop(new_id, None)
        if collided is not None:
            entry.deferred.extend(collided.deferred)
        self._entries[new_id] = entry
        logger.info("reconciler: %s is now %s", old_id, new_id)
        return new_id

    def _fold(self, record_id: str, entry: _Entry) -> Record | None:
        """Displayed record: pending mutations laid over the base."""
        base = entry.base
        if not entry.pending:
            return base

        fields: dict[str, Any] | None = dict(base.fields) if base is not None else None
        deleted = False
        for mutation in entry.pending:
            if mutation.op == OP_CREATE:
                fields = dict(mutation.payload)
                deleted = False
            elif mutation.op == OP_UPDATE:
                if fields is None:
                    # update over a rejected create: nothing left to show
                    continue
                fields.update(mutation.payload)
            elif mutation.op == OP_DELETE:
                deleted = True

        if fields is None:
            return None

        if deleted:
            state = PENDING_DELETE
        elif base is None:
            state = PENDING_CREATE
        else:
            state = PENDING_UPDATE

        return Record(
            id=record_id,
            revision=base.revision if base is not None else PROVISIONAL_REVISION,
            fields=fields,
            local_state=state,
        )

    def _render(self, record_id: str, entry: _Entry) -> None:
        displayed = self._fold(record_id, entry)
        if displayed is None:
            self._store.remove(record_id)
        else:
            self._store.upsert(displayed)

    def _settle(self, record_id: str, entry: _Entry) -> None:
        """Re-render after the head mutation left; replay buffered pushes once idle."""
        self._render(record_id, entry)
        if entry.pending:
            return

        del self._entries[record_id]
        deferred, entry.deferred = entry.deferred, []
        base_revision = entry.base.revision if entry.base is not None else None
        for event in deferred:
            if (
                base_revision is not None
                and event.revision is not None
                and event.op != OP_DELETE
                and event.revision <= base_revision
            ):
                # the confirmed row at this revision is already in the store
                logger.debug("reconciler: dropping deferred push for %s at %d", record_id, event.revision)
                continue
            result = self._on_push(event)
            logger.debug(
                "reconciler: replayed deferred push for %s (applied=%s, reason=%s)",
                record_id,
                result.applied,
                result.reason,
            )
