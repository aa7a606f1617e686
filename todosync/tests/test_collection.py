"""
Tests for SyncedCollection: views, dispatch, feed, and teardown end to end.

Runs against MemoryRemoteStore + MemoryPushFeed, so every write the
collection makes comes back through the feed the way it would in production.
"""

from __future__ import annotations

import asyncio

import pytest
import pytest_asyncio
from pydantic import ValidationError

from syncengine.kernel.types import CONFIRMED, PENDING_CREATE, PENDING_DELETE, FilterSpec
from todosync.collection import SyncedCollection
from todosync.services.remote_store import MemoryRemoteStore

pytestmark = pytest.mark.asyncio


@pytest_asyncio.fixture
async def todos(remote, feed):
    remote.seed("7", {"title": "Call mom", "status": "todo", "project_id": "p1", "created_at": "2024-05-01T10:00:00Z"})
    remote.seed("3", {"title": "Buy milk", "status": "todo", "project_id": "p2", "created_at": "2024-05-02T10:00:00Z"})
    collection = SyncedCollection("todos", remote, feed=feed, adapter_options={"reconnect_delay": 0})
    await collection.open()
    yield collection
    await collection.close()


async def test_open_loads_everything(todos):
    assert sorted(r.id for r in todos.snapshot()) == ["3", "7"]
    assert all(r.local_state == CONFIRMED for r in todos.snapshot())


async def test_subscribe_fires_immediately_with_default_sort(todos):
    results = []
    todos.subscribe_to_view(None, None, None, results.append)
    assert len(results) == 1
    # newest first
    assert results[0].ids == ["3", "7"]


async def test_optimistic_update_is_in_the_next_callback(todos):
    results = []
    todos.subscribe_to_view(FilterSpec.for_todos(status=["todo"]), None, None, results.append)
    assert results[-1].ids == ["3", "7"]

    todos.dispatch("update", "7", {"status": "done"})
    assert results[-1].ids == ["3"]
    callbacks = len(results)

    await todos.mutations.drain()
    assert todos.get("7").local_state == CONFIRMED
    assert todos.get("7").fields["status"] == "done"
    # confirm changed nothing the view shows
    assert len(results) == callbacks


async def test_done_sets_completed_at(todos):
    todos.dispatch("update", "7", {"status": "done"})
    assert isinstance(todos.get("7").fields["completed_at"], str)
    todos.dispatch("update", "7", {"status": "todo"})
    assert todos.get("7").fields["completed_at"] is None
    await todos.mutations.drain()


async def test_rejected_delete_restores_and_reports(todos, remote):
    errors = []
    todos.on_error(errors.append)
    remote.fail_next("PERMISSION_DENIED", op="delete")

    todos.dispatch("delete", "3")
    assert [r.id for r in todos.snapshot()] == ["7"]
    assert todos.store.get("3").local_state == PENDING_DELETE

    await todos.mutations.drain()
    assert todos.get("3").fields["title"] == "Buy milk"
    assert todos.get("3").local_state == CONFIRMED
    assert errors[0].reason == "PERMISSION_DENIED"


async def test_create_validates_and_fills_defaults(todos):
    record_id = todos.dispatch("create", fields={"title": "Walk dog", "project_id": "p1"})
    record = todos.get(record_id)
    assert record.local_state == PENDING_CREATE
    assert record.fields["priority"] == "medium"
    assert record.fields["tag_ids"] == []

    await todos.mutations.drain()
    assert todos.get(record_id).local_state == CONFIRMED


async def test_dispatch_rejects_bad_input(todos):
    with pytest.raises(ValueError, match="UNKNOWN_ACTION"):
        todos.dispatch("archive", "7")
    with pytest.raises(ValueError, match="MISSING_ID"):
        todos.dispatch("update", None, {"title": "x"})
    with pytest.raises(ValidationError):
        todos.dispatch("create", fields={"project_id": "p1"})
    with pytest.raises(ValidationError):
        todos.dispatch("update", "7", {"priority": "whenever"})
    with pytest.raises(KeyError):
        todos.dispatch("update", "ghost", {"title": "x"})
    assert todos.mutations.in_flight == 0


async def test_remote_edit_arrives_through_feed(todos, remote, settle_tasks):
    remote.touch("7", {"title": "Call dad"})
    await settle_tasks()
    assert todos.get("7").fields["title"] == "Call dad"


async def test_remote_edit_during_pending_update_is_not_lost(todos, remote, settle_tasks):
    """Another session renames the todo while our status change is in flight."""
    remote.hold()
    todos.dispatch("update", "7", {"status": "done"})
    remote.touch("7", {"title": "Call dad"})
    await settle_tasks()

    # buffered: the optimistic status is still what we see
    assert todos.get("7").fields["status"] == "done"
    assert todos.reconciler.deferred_count("7") == 1

    remote.release()
    await todos.mutations.drain()
    await settle_tasks()

    record = todos.get("7")
    assert record.local_state == CONFIRMED
    assert record.fields["status"] == "done"
    assert record.fields["title"] == "Call dad"
    assert record.revision == remote.rows["7"].revision


async def test_counts(todos):
    assert todos.counts("project_id") == {"p1": 1, "p2": 1}


async def test_unsubscribe_stops_callbacks(todos):
    results = []
    unsubscribe = todos.subscribe_to_view(None, None, None, results.append)
    unsubscribe()
    unsubscribe()
    todos.dispatch("update", "7", {"title": "x"})
    assert len(results) == 1
    await todos.mutations.drain()


async def test_close_is_idempotent_and_silences_views(remote, feed):
    collection = SyncedCollection("todos", remote, feed=feed)
    await collection.open()
    results = []
    collection.subscribe_to_view(None, None, None, results.append)

    await collection.close()
    await collection.close()

    assert collection.closed
    with pytest.raises(RuntimeError):
        collection.dispatch("create", fields={"title": "x", "project_id": "p1"})
    with pytest.raises(RuntimeError):
        collection.subscribe_to_view(None, None, None, results.append)
    assert len(results) == 1


async def test_in_flight_mutation_settles_after_close(remote, feed, settle_tasks):
    remote.seed("7", {"title": "Call mom", "status": "todo"})
    collection = SyncedCollection("todos", remote, feed=feed)
    await collection.open()
    remote.hold()
    collection.dispatch("update", "7", {"status": "done"})

    closing = asyncio.create_task(collection.close())
    await settle_tasks()
    assert not closing.done()

    remote.release()
    await asyncio.wait_for(closing, timeout=1)
    assert collection.get("7").local_state == CONFIRMED
    assert remote.rows["7"].fields["status"] == "done"


async def test_projects_use_their_own_inputs():
    projects = SyncedCollection("projects", MemoryRemoteStore("projects"))
    await projects.open()
    record_id = projects.dispatch("create", fields={"name": "Home"})
    assert projects.get(record_id).fields["is_archived"] is False
    with pytest.raises(ValidationError):
        projects.dispatch("create", fields={"title": "not a project"})
    await projects.close()
