"""
SyncedCollection — one cached collection (todos, projects, or tags).

Wires a RecordStore, the EventReconciler that owns it, the mutation manager,
and the subscription adapter, and exposes the two things a UI needs:

  subscribe_to_view(filter, sort, window, callback) → unsubscribe
  dispatch("create" | "update" | "delete", ...)       fire-and-forget
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections import Counter
from collections.abc import Callable
from typing import Any

from syncengine.kernel.materializer import count_by
from syncengine.kernel.reconciler import EventReconciler
from syncengine.kernel.store import RecordStore
from syncengine.kernel.types import (
    DEFAULT_SORTS,
    FilterSpec,
    PageWindow,
    Record,
    SortSpec,
    now_iso,
)
from syncengine.kernel.views import LiveView, ViewCallback
from todosync.config import settings
from todosync.models.todo import INPUT_MODELS
from todosync.services.mutation_manager import ErrorListener, OptimisticMutationManager
from todosync.services.push_feed import PushFeed
from todosync.services.remote_store import RemoteStore
from todosync.services.subscription_adapter import SubscriptionAdapter

logger = logging.getLogger(__name__)

ACTIONS = {"create", "update", "delete"}


class SyncedCollection:
    """A locally cached, remotely backed, live-viewable collection."""

    def __init__(
        self,
        name: str,
        remote: RemoteStore,
        *,
        feed: PushFeed | None = None,
        adapter_options: dict[str, Any] | None = None,
    ) -> None:
        self.name = name
        self.store = RecordStore(name)
        self.reconciler = EventReconciler(self.store)
        self.mutations = OptimisticMutationManager(self.reconciler, remote)
        self.adapter = SubscriptionAdapter(self.reconciler, remote, **(adapter_options or {}))
        self._remote = remote
        self._feed = feed
        self._feed_task: asyncio.Task[None] | None = None
        self._views: list[LiveView] = []
        self._closed = False

    # -- lifecycle --

    async def load(self) -> None:
        """Initial fill from the remote store."""
        self.reconciler.begin_resync()
        try:
            records = await self._remote.fetch_all()
        except BaseException:
            self.reconciler.cancel_resync()
            raise
        self.reconciler.load_snapshot(records)

    def start(self) -> None:
        """Start consuming the push feed in the background."""
        if self._feed is None or self._feed_task is not None:
            return
        self._feed_task = asyncio.get_running_loop().create_task(self.adapter.run(self._feed))

    async def open(self) -> None:
        await self.load()
        self.start()

    async def close(self) -> None:
        """
        Tear down: views stop hearing anything, the feed stops, new mutations
        are refused. Mutations already in flight still settle into the cache.
        Safe to call more than once.
        """
        if self._closed:
            return
        self._closed = True

        for view in list(self._views):
            view.unsubscribe()
        self._views.clear()

        self.adapter.stop()
        if self._feed_task is not None:
            self._feed_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._feed_task
            self._feed_task = None

        self.mutations.close()
        await self.mutations.drain()

        if self._feed is not None:
            await self._feed.close()
        await self._remote.close()
        logger.info("collection: %s closed", self.name)

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def remote(self) -> RemoteStore:
        return self._remote

    @property
    def feed(self) -> PushFeed | None:
        return self._feed

    # -- reads --

    def snapshot(self) -> tuple[Record, ...]:
        return self.store.snapshot()

    def get(self, record_id: str) -> Record | None:
        return self.store.get(self.reconciler.resolve_id(record_id))

    def counts(self, field: str) -> Counter[Any]:
        """Per-value counts, e.g. todos per project_id or uses per tag id."""
        return count_by(self.store.snapshot(), field)

    # -- views --

    def open_view(
        self,
        callback: ViewCallback,
        filter_spec: FilterSpec | None = None,
        sort_spec: SortSpec | None = None,
        window: PageWindow | None = None,
    ) -> LiveView:
        """A LiveView the caller can re-filter, re-sort, and page through."""
        if self._closed:
            raise RuntimeError(f"collection {self.name} is closed")
        view = LiveView(
            self.store,
            filter_spec,
            sort_spec or DEFAULT_SORTS.get(self.name),
            window or PageWindow(size=settings.DEFAULT_PAGE_SIZE),
            callback,
        )
        self._views.append(view)
        return view

    def subscribe_to_view(
        self,
        filter_spec: FilterSpec | None,
        sort_spec: SortSpec | None,
        window: PageWindow | None,
        callback: ViewCallback,
    ) -> Callable[[], None]:
        """Subscribe `callback` to a view. The callback fires once immediately."""
        view = self.open_view(callback, filter_spec, sort_spec, window)

        def unsubscribe() -> None:
            view.unsubscribe()
            with contextlib.suppress(ValueError):
                self._views.remove(view)

        return unsubscribe

    # -- mutations --

    def on_error(self, listener: ErrorListener) -> Callable[[], None]:
        return self.mutations.on_error(listener)

    def dispatch(
        self,
        action: str,
        record_id: str | None = None,
        fields: dict[str, Any] | None = None,
    ) -> str:
        """
        Issue a mutation. Returns the affected id (provisional for a create).

        Input shape errors raise immediately; remote failures never do:
        they roll back and reach on_error listeners.
        """
        if action not in ACTIONS:
            raise ValueError(f"UNKNOWN_ACTION: {action!r}")

        if action == "create":
            return self.mutations.create(self._create_fields(fields or {}))

        if record_id is None:
            raise ValueError(f"MISSING_ID: {action} requires a record id")

        if action == "update":
            return self.mutations.update(record_id, self._update_fields(fields or {}))
        return self.mutations.delete(record_id)

    def _create_fields(self, fields: dict[str, Any]) -> dict[str, Any]:
        models = INPUT_MODELS.get(self.name)
        if models is None:
            return dict(fields)
        record_id = fields.get("id")
        data = models[0].model_validate({k: v for k, v in fields.items() if k != "id"}).to_fields()
        if record_id is not None:
            data["id"] = record_id
        return data

    def _update_fields(self, fields: dict[str, Any]) -> dict[str, Any]:
        models = INPUT_MODELS.get(self.name)
        patch = models[1].model_validate(fields).to_fields() if models else dict(fields)
        if self.name == "todos" and "status" in patch and "completed_at" not in patch:
            patch["completed_at"] = now_iso() if patch["status"] == "done" else None
        return patch
