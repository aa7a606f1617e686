"""
Process-wide sync session.

One SyncedCollection per collection type, constructed once at startup and
torn down explicitly at session end. All cache access goes through
get_session(); nothing recreates a collection per view.
"""

from __future__ import annotations

import logging

from todosync.collection import SyncedCollection
from todosync.config import settings
from todosync.services.postgrest import PostgrestRemoteStore
from todosync.services.push_feed import PushFeed, SsePushFeed
from todosync.services.remote_store import RemoteStore

logger = logging.getLogger(__name__)

COLLECTIONS: tuple[str, ...] = ("todos", "projects", "tags")


class SyncSession:
    """The set of synced collections for one signed-in user."""

    def __init__(
        self,
        remotes: dict[str, RemoteStore],
        feeds: dict[str, PushFeed] | None = None,
    ) -> None:
        feeds = feeds or {}
        self.collections: dict[str, SyncedCollection] = {
            name: SyncedCollection(name, remote, feed=feeds.get(name)) for name, remote in remotes.items()
        }
        self._closed = False

    @classmethod
    def from_settings(cls, token: str | None = None) -> SyncSession:
        """PostgREST stores and (when FEED_URL is set) SSE feeds for every collection."""
        remotes: dict[str, RemoteStore] = {
            name: PostgrestRemoteStore(name, token=token) for name in COLLECTIONS
        }
        feeds: dict[str, PushFeed] = {}
        if settings.FEED_URL:
            for name in COLLECTIONS:
                feeds[name] = SsePushFeed(
                    f"{settings.FEED_URL.rstrip('/')}/{name}",
                    token=token or settings.SUPABASE_ACCESS_TOKEN,
                    api_key=settings.SUPABASE_ANON_KEY,
                    timeout=settings.REQUEST_TIMEOUT,
                )
        return cls(remotes, feeds)

    def __getitem__(self, name: str) -> SyncedCollection:
        return self.collections[name]

    @property
    def todos(self) -> SyncedCollection:
        return self.collections["todos"]

    @property
    def projects(self) -> SyncedCollection:
        return self.collections["projects"]

    @property
    def tags(self) -> SyncedCollection:
        return self.collections["tags"]

    async def open(self) -> None:
        for collection in self.collections.values():
            await collection.open()

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        for collection in self.collections.values():
            await collection.close()

    async def __aenter__(self) -> SyncSession:
        await self.open()
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()


session: SyncSession | None = None


async def init_session(new_session: SyncSession | None = None) -> SyncSession:
    """
    Open the process-wide session.
    Called once at startup; a second call without close_session() is an error.
    """
    global session
    if session is not None:
        raise RuntimeError("sync session already initialized")
    new_session = new_session or SyncSession.from_settings()
    await new_session.open()
    session = new_session
    logger.info("session: opened %s", ", ".join(new_session.collections))
    return new_session


def get_session() -> SyncSession:
    if session is None:
        raise RuntimeError("sync session not initialized; call init_session() first")
    return session


async def close_session() -> None:
    """
    Close the process-wide session.
    Called at session end. Safe to call when nothing is open.
    """
    global session
    if session is not None:
        current, session = session, None
        await current.close()
