"""
Sync Kernel — LiveView

An explicit view subscription: a RecordStore plus filter/sort/window and a
callback. Recomputes on every store notification and every spec change, and
calls back only when the ViewResult actually changed.

Lifecycle is owned by whoever created the view, not by any UI component:
unsubscribe() is idempotent and a disposed view is never called back.
"""

from __future__ import annotations

import dataclasses
import logging
from collections.abc import Callable

from syncengine.kernel.materializer import materialize
from syncengine.kernel.store import RecordStore
from syncengine.kernel.types import FilterSpec, PageWindow, SortSpec, ViewResult

logger = logging.getLogger(__name__)

ViewCallback = Callable[[ViewResult], None]


class LiveView:
    """A materialized view kept current against a RecordStore."""

    def __init__(
        self,
        store: RecordStore,
        filter_spec: FilterSpec | None,
        sort_spec: SortSpec | None,
        window: PageWindow | None,
        callback: ViewCallback,
    ) -> None:
        self._store = store
        self._filter = filter_spec or FilterSpec()
        self._sort = sort_spec or SortSpec()
        self._window = window or PageWindow()
        self._callback: ViewCallback | None = callback
        self._result: ViewResult | None = None
        self._unsubscribe_store = store.subscribe(self._on_store_change)
        self.refresh()

    # -- reads --

    @property
    def result(self) -> ViewResult | None:
        return self._result

    @property
    def closed(self) -> bool:
        return self._callback is None

    @property
    def filter_spec(self) -> FilterSpec:
        return self._filter

    @property
    def sort_spec(self) -> SortSpec:
        return self._sort

    @property
    def window(self) -> PageWindow:
        return self._window

    # -- spec changes --

    def set_filter(self, filter_spec: FilterSpec | None) -> None:
        """Change the filter; back to the first page."""
        self._filter = filter_spec or FilterSpec()
        self._window = dataclasses.replace(self._window, index=0)
        self.refresh()

    def set_sort(self, sort_spec: SortSpec | None) -> None:
        """Change the sort; back to the first page."""
        self._sort = sort_spec or SortSpec()
        self._window = dataclasses.replace(self._window, index=0)
        self.refresh()

    def set_window(self, window: PageWindow) -> None:
        self._window = window
        self.refresh()

    def go_to_page(self, index: int) -> None:
        self.set_window(dataclasses.replace(self._window, index=index))

    # -- recompute --

    def refresh(self) -> ViewResult | None:
        """Recompute now; call back if the visible result changed."""
        if self._callback is None:
            return self._result
        result = materialize(self._store.snapshot(), self._filter, self._sort, self._window)
        if result == self._result:
            return result
        self._result = result
        self._callback(result)
        return result

    def unsubscribe(self) -> None:
        if self._callback is None:
            return
        self._callback = None
        self._unsubscribe_store()
        logger.debug("view: unsubscribed from %s", self._store.name)

    close = unsubscribe

    def _on_store_change(self, changed: frozenset[str]) -> None:
        self.refresh()
