"""
Sync kernel test configuration.

Kernel tests are synchronous: no event loop, no collaborators.
"""

import pytest

from syncengine.kernel.reconciler import EventReconciler
from syncengine.kernel.store import RecordStore


@pytest.fixture
def store():
    return RecordStore("test")


@pytest.fixture
def reconciler(store):
    return EventReconciler(store)


@pytest.fixture
def notifications(store):
    """Every batch of changed ids the store announces, in order."""
    seen: list[frozenset[str]] = []
    store.subscribe(seen.append)
    return seen
