"""
Sync Kernel — Shared Types

Data classes used across the store, reconciler, materializer, and views.
These are the contracts that bind the kernel together.

- Record: one cached item of a collection (todo, project, tag)
- ChangeEvent: the only way anything changes the cache
- FilterSpec / SortSpec / PageWindow: the inputs of a view
- ViewResult: the output of a view
"""

from __future__ import annotations

import dataclasses
import math
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, date, datetime
from typing import Any

# ---------------------------------------------------------------------------
# Local states
# ---------------------------------------------------------------------------

CONFIRMED = "confirmed"
PENDING_CREATE = "pending-create"
PENDING_UPDATE = "pending-update"
PENDING_DELETE = "pending-delete"

LOCAL_STATES: set[str] = {CONFIRMED, PENDING_CREATE, PENDING_UPDATE, PENDING_DELETE}
PENDING_STATES: set[str] = {PENDING_CREATE, PENDING_UPDATE, PENDING_DELETE}

# ---------------------------------------------------------------------------
# Event kinds and mutation ops
# ---------------------------------------------------------------------------

LOCAL_OPTIMISTIC = "local-optimistic"
REMOTE_CONFIRM = "remote-confirm"
REMOTE_REJECT = "remote-reject"
REMOTE_PUSH = "remote-push"

EVENT_KINDS: set[str] = {LOCAL_OPTIMISTIC, REMOTE_CONFIRM, REMOTE_REJECT, REMOTE_PUSH}

OP_CREATE = "create"
OP_UPDATE = "update"
OP_DELETE = "delete"

OPS: set[str] = {OP_CREATE, OP_UPDATE, OP_DELETE}

# A record that only exists locally carries this revision.
# Real revisions handed out by the remote store are always >= 1.
PROVISIONAL_REVISION = 0

# Fields derived from join tables rather than the row itself. A row-level
# push never carries them.
RELATION_FIELDS: frozenset[str] = frozenset({"tag_ids"})

# ---------------------------------------------------------------------------
# Domain orders
# ---------------------------------------------------------------------------

TODO_STATUSES: tuple[str, ...] = ("todo", "in_progress", "done", "cancelled")
TODO_PRIORITIES: tuple[str, ...] = ("low", "medium", "high", "urgent")

# Unknown enum values rank 0, below every known value.
ENUM_ORDERS: dict[str, dict[str, int]] = {
    "status": {value: rank for rank, value in enumerate(TODO_STATUSES, start=1)},
    "priority": {value: rank for rank, value in enumerate(TODO_PRIORITIES, start=1)},
}

DATE_FIELDS: set[str] = {
    "created_at",
    "updated_at",
    "due_date",
    "scheduled_date",
    "completed_at",
}

ASC = "asc"
DESC = "desc"


# ---------------------------------------------------------------------------
# Record
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Record:
    """
    One cached item of a collection.

    Records are immutable; every change produces a new Record.
    `fields` must be treated as read-only by everyone holding a Record.
    """

    id: str
    revision: int
    fields: Mapping[str, Any] = field(default_factory=dict)
    local_state: str = CONFIRMED

    @property
    def is_pending(self) -> bool:
        return self.local_state in PENDING_STATES

    @property
    def is_tombstone(self) -> bool:
        return self.local_state == PENDING_DELETE

    def replace(self, **changes: Any) -> Record:
        return dataclasses.replace(self, **changes)

    def merged(self, patch: Mapping[str, Any]) -> Record:
        """Return a copy with `patch` laid over the current fields."""
        return dataclasses.replace(self, fields={**self.fields, **patch})

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "revision": self.revision,
            "fields": dict(self.fields),
            "local_state": self.local_state,
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> Record:
        return cls(
            id=d["id"],
            revision=d.get("revision", PROVISIONAL_REVISION),
            fields=dict(d.get("fields", {})),
            local_state=d.get("local_state", CONFIRMED),
        )


# ---------------------------------------------------------------------------
# ChangeEvent
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ChangeEvent:
    """
    A single change to the cache. Consumed exactly once by the reconciler.

    kind         local-optimistic | remote-confirm | remote-reject | remote-push
    record_id    id the event targets (provisional id for a pending create)
    payload      fields (full record for create/confirm/push, patch for update)
    revision     authoritative revision (confirm/push only)
    op           create | update | delete
    mutation_id  the optimistic mutation a confirm/reject settles
    server_id    id assigned by the remote store, when it differs from record_id
    """

    kind: str
    record_id: str
    payload: Mapping[str, Any] | None = None
    revision: int | None = None
    op: str | None = None
    mutation_id: str | None = None
    server_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {"kind": self.kind, "record_id": self.record_id}
        if self.payload is not None:
            d["payload"] = dict(self.payload)
        if self.revision is not None:
            d["revision"] = self.revision
        if self.op is not None:
            d["op"] = self.op
        if self.mutation_id is not None:
            d["mutation_id"] = self.mutation_id
        if self.server_id is not None:
            d["server_id"] = self.server_id
        return d


@dataclass(frozen=True)
class ReconcileResult:
    """
    Result of applying one ChangeEvent.
    The reconciler never throws on a bad event; it always returns one of these.
    """

    applied: bool
    reason: str | None = None
    deferred: bool = False


# ---------------------------------------------------------------------------
# Filter predicates
# ---------------------------------------------------------------------------


def as_datetime(value: Any) -> datetime | None:
    """
    Coerce a date-ish field value into an aware datetime.
    Date-only values become midnight UTC. Returns None when unparseable.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=UTC)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=UTC)
    if isinstance(value, str) and value:
        try:
            parsed = datetime.fromisoformat(value)
        except ValueError:
            return None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)
    return None


@dataclass(frozen=True)
class InSet:
    """Field value is one of `values`. No values means no constraint."""

    field: str
    values: frozenset[Any] = frozenset()

    @property
    def is_noop(self) -> bool:
        return not self.values

    def matches(self, fields: Mapping[str, Any]) -> bool:
        try:
            return fields.get(self.field) in self.values
        except TypeError:  # unhashable field value
            return False


@dataclass(frozen=True)
class Equals:
    """Field value equals `value` exactly."""

    field: str
    value: Any

    @property
    def is_noop(self) -> bool:
        return False

    def matches(self, fields: Mapping[str, Any]) -> bool:
        return fields.get(self.field) == self.value


@dataclass(frozen=True)
class InRange:
    """
    Date field lies within [start, end], both inclusive and optional.
    A record without a parseable value fails any bounded range.
    """

    field: str
    start: Any = None
    end: Any = None

    @property
    def is_noop(self) -> bool:
        return self.start is None and self.end is None

    def matches(self, fields: Mapping[str, Any]) -> bool:
        value = as_datetime(fields.get(self.field))
        if value is None:
            return False
        start = as_datetime(self.start)
        if start is not None and value < start:
            return False
        end = as_datetime(self.end)
        if end is not None and value > end:
            return False
        return True


@dataclass(frozen=True)
class Contains:
    """Case-insensitive substring match over any of `fields`."""

    fields: tuple[str, ...]
    text: str = ""

    @property
    def is_noop(self) -> bool:
        return not self.text.strip()

    def matches(self, fields: Mapping[str, Any]) -> bool:
        needle = self.text.strip().casefold()
        for name in self.fields:
            value = fields.get(name)
            if isinstance(value, str) and needle in value.casefold():
                return True
        return False


@dataclass(frozen=True)
class Intersects:
    """Many-valued field shares at least one value with `values`."""

    field: str
    values: frozenset[Any] = frozenset()

    @property
    def is_noop(self) -> bool:
        return not self.values

    def matches(self, fields: Mapping[str, Any]) -> bool:
        present = fields.get(self.field)
        if not isinstance(present, (list, tuple, set, frozenset)):
            return False
        return any(v in self.values for v in present)


Predicate = InSet | Equals | InRange | Contains | Intersects


@dataclass(frozen=True)
class FilterSpec:
    """A conjunction of predicates. The empty spec matches everything."""

    predicates: tuple[Predicate, ...] = ()

    @property
    def active(self) -> tuple[Predicate, ...]:
        return tuple(p for p in self.predicates if not p.is_noop)

    @classmethod
    def for_todos(
        cls,
        *,
        status: list[str] | None = None,
        priority: list[str] | None = None,
        project_id: str | None = None,
        tag_ids: list[str] | None = None,
        due_from: Any = None,
        due_to: Any = None,
        search: str | None = None,
    ) -> FilterSpec:
        """Build the to-do filter bar: status, priority, project, tags, due range, search."""
        predicates: list[Predicate] = []
        if search:
            predicates.append(Contains(fields=("title", "description"), text=search))
        if status:
            predicates.append(InSet("status", frozenset(status)))
        if priority:
            predicates.append(InSet("priority", frozenset(priority)))
        if project_id:
            predicates.append(InSet("project_id", frozenset([project_id])))
        if tag_ids:
            predicates.append(Intersects("tag_ids", frozenset(tag_ids)))
        if due_from is not None or due_to is not None:
            predicates.append(InRange("due_date", due_from, due_to))
        return cls(tuple(predicates))


# ---------------------------------------------------------------------------
# Sort / Page
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SortKey:
    field: str
    direction: str = ASC

    def __post_init__(self) -> None:
        if self.direction not in (ASC, DESC):
            raise ValueError(f"INVALID_DIRECTION: {self.direction!r} must be 'asc' or 'desc'")


@dataclass(frozen=True)
class SortSpec:
    """Ordered sort keys, primary first. Ties always break by id ascending."""

    keys: tuple[SortKey, ...] = ()

    @classmethod
    def by(cls, *pairs: tuple[str, str]) -> SortSpec:
        return cls(tuple(SortKey(f, d) for f, d in pairs))


@dataclass(frozen=True)
class PageWindow:
    size: int = 20
    index: int = 0

    def __post_init__(self) -> None:
        if self.size < 1:
            raise ValueError(f"INVALID_WINDOW: size must be >= 1, got {self.size}")
        if self.index < 0:
            raise ValueError(f"INVALID_WINDOW: index must be >= 0, got {self.index}")

    @property
    def start(self) -> int:
        return self.index * self.size

    @property
    def stop(self) -> int:
        return self.start + self.size


@dataclass(frozen=True)
class ViewResult:
    """The visible slice of a view plus the size of the filtered set."""

    records: tuple[Record, ...]
    total: int
    window: PageWindow

    @property
    def page_count(self) -> int:
        return math.ceil(self.total / self.window.size)

    @property
    def ids(self) -> list[str]:
        return [r.id for r in self.records]


# ---------------------------------------------------------------------------
# Default views per collection
# ---------------------------------------------------------------------------

DEFAULT_SORTS: dict[str, SortSpec] = {
    "todos": SortSpec.by(("created_at", DESC)),
    "projects": SortSpec.by(("display_order", ASC), ("name", ASC)),
    "tags": SortSpec.by(("name", ASC)),
}


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def now_iso() -> str:
    """Current UTC time as ISO 8601 string."""
    return datetime.now(UTC).strftime("%Y-%m-%dT%H:%M:%SZ")
