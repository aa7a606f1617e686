"""
Subscription adapter: push feed → remote-push ChangeEvents.

Raw feed messages are untrusted for shape and ordering (trusted for content).
Each one goes through FeedMessage before the reconciler sees it; messages
without an id or a usable revision are dropped, and exact duplicate
deliveries (same operation, id, revision) are dropped within a bounded window.

When the transport drops, the interval we missed is unknown, so the adapter
reloads the whole collection from the remote store before reconnecting.
"""

from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict
from typing import Any

from pydantic import ValidationError

from syncengine.kernel.reconciler import EventReconciler
from syncengine.kernel.types import ChangeEvent, ReconcileResult
from todosync.config import settings
from todosync.models.remote import FeedMessage
from todosync.services.push_feed import FeedDisconnect, PushFeed
from todosync.services.remote_store import RemoteRejected, RemoteStore

logger = logging.getLogger(__name__)


class SubscriptionAdapter:
    """Normalizes, de-duplicates, and forwards push-feed deliveries."""

    def __init__(
        self,
        reconciler: EventReconciler,
        remote: RemoteStore | None = None,
        *,
        dedup_window: int | None = None,
        reconnect_delay: float | None = None,
        max_reconnects: int | None = None,
    ) -> None:
        self._reconciler = reconciler
        self._remote = remote
        self._dedup_window = dedup_window if dedup_window is not None else settings.DEDUP_WINDOW
        self._reconnect_delay = (
            reconnect_delay if reconnect_delay is not None else settings.FEED_RECONNECT_DELAY
        )
        self._max_reconnects = max_reconnects if max_reconnects is not None else settings.FEED_MAX_RECONNECTS
        self._seen: OrderedDict[tuple[str, str, int | None], None] = OrderedDict()
        self._stopped = False
        self.resyncs = 0

    # -- normalization --

    def normalize(self, raw: Any) -> ChangeEvent | None:
        """Raw delivery → remote-push event, or None when malformed or duplicate."""
        try:
            message = FeedMessage.model_validate(raw)
        except ValidationError as e:
            logger.warning("feed: dropping malformed message %r: %s", str(raw)[:200], e.errors()[0]["msg"])
            return None

        key = message.dedup_key
        if key in self._seen:
            logger.debug("feed: duplicate delivery %s", key)
            return None
        self._seen[key] = None
        while len(self._seen) > self._dedup_window:
            self._seen.popitem(last=False)
        return message.to_event()

    def handle(self, raw: Any) -> ReconcileResult | None:
        event = self.normalize(raw)
        if event is None:
            return None
        return self._reconciler.apply(event)

    # -- connection loop --

    async def resync(self) -> None:
        """Reload the full collection from the remote store."""
        if self._remote is None:
            raise RuntimeError("resync needs a remote store")
        self._reconciler.begin_resync()
        try:
            records = await self._remote.fetch_all()
        except BaseException:
            self._reconciler.cancel_resync()
            raise
        self._reconciler.load_snapshot(records)
        self.resyncs += 1

    async def run(self, feed: PushFeed) -> None:
        """
        Consume `feed` until it closes or stop() is called.

        FeedDisconnect → full resync → wait → reconnect. Gives up (re-raising)
        after max_reconnects consecutive failures.
        """
        failures = 0
        needs_resync = False
        while not self._stopped:
            if needs_resync:
                try:
                    await self.resync()
                    needs_resync = False
                except RemoteRejected as e:
                    failures += 1
                    logger.warning("feed: resync failed (%d/%d): %s", failures, self._max_reconnects, e)
                    if failures > self._max_reconnects:
                        raise
                    await asyncio.sleep(self._reconnect_delay)
                    continue
            try:
                async for raw in feed.messages():
                    failures = 0
                    self.handle(raw)
                    if self._stopped:
                        return
                logger.info("feed: closed")
                return
            except FeedDisconnect as e:
                failures += 1
                logger.warning("feed: disconnected (%d/%d): %s", failures, self._max_reconnects, e)
                if failures > self._max_reconnects:
                    raise
                needs_resync = self._remote is not None
                await asyncio.sleep(self._reconnect_delay)

    def stop(self) -> None:
        self._stopped = True
