"""
Sync Kernel — the pure engine.

Four components:
  store        — RecordStore: versioned records keyed by id, with observers
  reconciler   — (store, event) → store  (the only writer; deterministic)
  materializer — (snapshot, filter, sort, window) → view  (pure)
  views        — LiveView: a materialized view kept current against a store

No IO happens here. The async edge (remote store, push feed, mutation
manager) lives in todosync.
"""

from syncengine.kernel.materializer import apply_filter, apply_sort, count_by, materialize, paginate
from syncengine.kernel.reconciler import EventReconciler
from syncengine.kernel.store import RecordStore
from syncengine.kernel.types import (
    ChangeEvent,
    FilterSpec,
    PageWindow,
    ReconcileResult,
    Record,
    SortKey,
    SortSpec,
    ViewResult,
)
from syncengine.kernel.views import LiveView

__all__ = [
    "RecordStore",
    "EventReconciler",
    "LiveView",
    "materialize",
    "apply_filter",
    "apply_sort",
    "paginate",
    "count_by",
    "Record",
    "ChangeEvent",
    "ReconcileResult",
    "FilterSpec",
    "SortKey",
    "SortSpec",
    "PageWindow",
    "ViewResult",
]
