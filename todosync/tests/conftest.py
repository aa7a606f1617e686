"""
Pytest configuration and fixtures for todo-sync tests.

Everything runs against in-memory collaborators: no network, no database.
"""

from __future__ import annotations

import asyncio

import pytest

from syncengine.kernel.reconciler import EventReconciler
from syncengine.kernel.store import RecordStore
from todosync.services.push_feed import MemoryPushFeed
from todosync.services.remote_store import MemoryRemoteStore


async def settle(rounds: int = 50) -> None:
    """Let background tasks (feed consumer, mutations) run until quiet."""
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.fixture
def feed():
    return MemoryPushFeed()


@pytest.fixture
def remote(feed):
    return MemoryRemoteStore("todos", feed=feed)


@pytest.fixture
def reconciler():
    return EventReconciler(RecordStore("todos"))


@pytest.fixture
def settle_tasks():
    return settle
