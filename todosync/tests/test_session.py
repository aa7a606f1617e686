"""Tests for the process-wide SyncSession lifecycle."""

from __future__ import annotations

import pytest

from todosync import session as session_module
from todosync.config import settings
from todosync.services.postgrest import PostgrestRemoteStore
from todosync.services.push_feed import SsePushFeed
from todosync.services.remote_store import MemoryRemoteStore
from todosync.session import COLLECTIONS, SyncSession, close_session, get_session, init_session

pytestmark = pytest.mark.asyncio


def memory_session() -> SyncSession:
    return SyncSession({name: MemoryRemoteStore(name) for name in COLLECTIONS})


@pytest.fixture(autouse=True)
def no_leftover_session():
    yield
    assert session_module.session is None, "test left the process-wide session open"


async def test_init_get_close():
    opened = await init_session(memory_session())
    try:
        assert get_session() is opened
        assert set(opened.collections) == {"todos", "projects", "tags"}
        with pytest.raises(RuntimeError, match="already initialized"):
            await init_session(memory_session())
    finally:
        await close_session()

    assert opened.todos.closed
    with pytest.raises(RuntimeError, match="not initialized"):
        get_session()


async def test_close_session_without_session_is_safe():
    await close_session()
    await close_session()


async def test_context_manager_closes_every_collection():
    async with memory_session() as s:
        record_id = s.tags.dispatch("create", fields={"name": "errand"})
        assert s["tags"].get(record_id) is not None

    assert all(c.closed for c in s.collections.values())
    assert s.tags.get(record_id).fields["name"] == "errand"


async def test_from_settings_builds_http_collaborators(monkeypatch):
    monkeypatch.delenv("REST_URL", raising=False)
    monkeypatch.setattr(settings, "SUPABASE_URL", "https://abc.supabase.co")
    monkeypatch.setattr(settings, "SUPABASE_ANON_KEY", "anon")
    monkeypatch.setattr(settings, "FEED_URL", "https://feed.test/")

    s = SyncSession.from_settings(token="user-token")
    try:
        remote = s.todos.remote
        assert isinstance(remote, PostgrestRemoteStore)
        assert remote.base_url == "https://abc.supabase.co/rest/v1"
        assert remote.token == "user-token"
        assert remote.tag_links is not None
        assert s.projects.remote.tag_links is None

        feed = s.todos.feed
        assert isinstance(feed, SsePushFeed)
        assert feed.url == "https://feed.test/todos"
    finally:
        await s.close()


async def test_from_settings_requires_remote_settings(monkeypatch):
    monkeypatch.delenv("REST_URL", raising=False)
    monkeypatch.setattr(settings, "SUPABASE_URL", "")
    with pytest.raises(RuntimeError, match="SUPABASE_URL"):
        SyncSession.from_settings()
