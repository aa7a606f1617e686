"""
Sync Kernel — ViewMaterializer

Pure function: (snapshot, filter, sort, window) → ViewResult

  filter   single linear pass, predicates short-circuit in order
  sort     stable sorts by composed key extractors, id ascending as the
           final tie-break, so the order is strict and total
  slice    [index * size, index * size + size)

Inputs are never mutated. Identical inputs always produce an equal result,
which is what lets LiveView skip callbacks when nothing visible changed.
"""

from __future__ import annotations

from collections import Counter
from collections.abc import Callable, Iterable, Sequence
from typing import Any

from syncengine.kernel.types import (
    DATE_FIELDS,
    DESC,
    ENUM_ORDERS,
    FilterSpec,
    PageWindow,
    Record,
    SortKey,
    SortSpec,
    ViewResult,
    as_datetime,
)

# Type ranks keep mixed-type columns totally ordered: missing < numbers < text < other.
_RANK_MISSING = 0
_RANK_NUMBER = 1
_RANK_TEXT = 2
_RANK_OTHER = 3


# ---------------------------------------------------------------------------
# Filter
# ---------------------------------------------------------------------------


def apply_filter(records: Iterable[Record], spec: FilterSpec | None) -> list[Record]:
    """Return the records matching every active predicate, in input order."""
    if spec is None:
        return list(records)
    predicates = spec.active
    if not predicates:
        return list(records)
    return [r for r in records if all(p.matches(r.fields) for p in predicates)]


# ---------------------------------------------------------------------------
# Sort
# ---------------------------------------------------------------------------


def sort_value(field: str, value: Any) -> tuple[int, Any]:
    """
    Comparable key for one field value.

    Enumerated fields use their domain order, date fields compare as
    timestamps, strings compare case-insensitively.
    """
    order = ENUM_ORDERS.get(field)
    if order is not None:
        return (_RANK_NUMBER, order.get(value, 0))
    if value is None:
        return (_RANK_MISSING, 0)
    if field in DATE_FIELDS:
        parsed = as_datetime(value)
        if parsed is None:
            return (_RANK_MISSING, 0)
        return (_RANK_NUMBER, parsed.timestamp())
    if isinstance(value, bool):
        return (_RANK_NUMBER, int(value))
    if isinstance(value, (int, float)):
        return (_RANK_NUMBER, value)
    if isinstance(value, str):
        return (_RANK_TEXT, value.casefold())
    return (_RANK_OTHER, repr(value))


def key_extractor(key: SortKey) -> Callable[[Record], tuple[int, Any]]:
    name = key.field
    return lambda r: sort_value(name, r.fields.get(name))


def apply_sort(records: Iterable[Record], spec: SortSpec | None) -> list[Record]:
    """
    Sort into a new list. Python's sort is stable, so sorting by id first and
    then by each key from last to first composes into one total order.
    """
    result = sorted(records, key=lambda r: r.id)
    if spec is None:
        return result
    for key in reversed(spec.keys):
        result.sort(key=key_extractor(key), reverse=key.direction == DESC)
    return result


# ---------------------------------------------------------------------------
# Paginate
# ---------------------------------------------------------------------------


def paginate(records: Sequence[Record], window: PageWindow) -> tuple[Record, ...]:
    return tuple(records[window.start : window.stop])


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def materialize(
    snapshot: Iterable[Record],
    filter_spec: FilterSpec | None = None,
    sort_spec: SortSpec | None = None,
    window: PageWindow | None = None,
) -> ViewResult:
    """
    Compute the visible slice of a view.

    Pure function. O(n log n) in the size of the snapshot.
    """
    window = window or PageWindow()
    matched = apply_filter(snapshot, filter_spec)
    ordered = apply_sort(matched, sort_spec)
    return ViewResult(records=paginate(ordered, window), total=len(ordered), window=window)


def count_by(snapshot: Iterable[Record], field: str) -> Counter[Any]:
    """
    Count records per value of `field`. Many-valued fields count once per value.

    Used for per-project todo counts and per-tag usage counts.
    """
    counts: Counter[Any] = Counter()
    for record in snapshot:
        value = record.fields.get(field)
        if value is None:
            continue
        if isinstance(value, (list, tuple, set, frozenset)):
            counts.update(set(value))
        else:
            counts[value] += 1
    return counts
