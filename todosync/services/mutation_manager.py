"""
Optimistic mutation manager.

Every mutation is applied to the cache first (local-optimistic, synchronous)
and sent to the remote store second (asyncio task). When the remote call
settles the outcome goes back through the reconciler as remote-confirm or
remote-reject. Callers never await anything: failures surface as a rollback
plus a call to the registered error listeners.

Remote calls for the same record are serialized with a per-record lock, so
the server sees one id's writes in the order they were issued.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Callable
from typing import Any

from syncengine.kernel.events import local_optimistic, new_provisional_id, remote_confirm, remote_reject
from syncengine.kernel.reconciler import EventReconciler
from syncengine.kernel.types import OP_CREATE, OP_DELETE, OP_UPDATE, Record
from todosync.services.remote_store import RemoteRejected, RemoteStore

logger = logging.getLogger(__name__)

ErrorListener = Callable[[RemoteRejected], None]


class OptimisticMutationManager:
    """Issues mutations against a remote store, reflecting them locally first."""

    def __init__(self, reconciler: EventReconciler, remote: RemoteStore) -> None:
        self._reconciler = reconciler
        self._remote = remote
        self._locks: dict[str, asyncio.Lock] = {}
        # issued-but-unsettled mutations per lock; a lock is dropped at zero
        self._lock_users: dict[asyncio.Lock, int] = {}
        self._tasks: set[asyncio.Task[None]] = set()
        self._error_listeners: list[ErrorListener] = []
        self._closed = False

    # -- public API --

    def create(self, fields: dict[str, Any]) -> str:
        """Create a record. Returns its provisional id (also sent to the server)."""
        fields = dict(fields)
        record_id = str(fields.pop("id", None) or new_provisional_id())
        return self._submit(OP_CREATE, record_id, fields)

    def update(self, record_id: str, partial_fields: dict[str, Any]) -> str:
        return self._submit(OP_UPDATE, record_id, dict(partial_fields))

    def delete(self, record_id: str) -> str:
        return self._submit(OP_DELETE, record_id, {})

    def on_error(self, listener: ErrorListener) -> Callable[[], None]:
        """Register a listener for rejected mutations. Returns an idempotent unsubscribe."""
        self._error_listeners.append(listener)

        def unsubscribe() -> None:
            with contextlib.suppress(ValueError):
                self._error_listeners.remove(listener)

        return unsubscribe

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    @property
    def active_locks(self) -> int:
        return len(self._locks)

    async def drain(self) -> None:
        """Wait until every issued mutation has settled."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def close(self) -> None:
        """
        Refuse new mutations and stop notifying error listeners.
        In-flight mutations still settle into the cache.
        """
        self._closed = True
        self._error_listeners.clear()

    # -- internals --

    def _get_lock(self, record_id: str) -> asyncio.Lock:
        """Per-record asyncio lock for issuing one remote call at a time."""
        if record_id not in self._locks:
            self._locks[record_id] = asyncio.Lock()
        return self._locks[record_id]

    def _submit(self, op: str, record_id: str, payload: dict[str, Any]) -> str:
        if self._closed:
            raise RuntimeError("mutation manager is closed")

        record_id = self._reconciler.resolve_id(record_id)
        event = local_optimistic(op, record_id, payload)
        result = self._reconciler.apply(event)
        if not result.applied:
            reason = result.reason or "REFUSED"
            if reason.startswith(("UNKNOWN_RECORD", "ALREADY_REMOVED")):
                raise KeyError(reason)
            raise ValueError(reason)

        # Tasks start in creation order and asyncio.Lock wakes waiters FIFO.
        lock = self._get_lock(record_id)
        self._lock_users[lock] = self._lock_users.get(lock, 0) + 1
        task = asyncio.get_running_loop().create_task(
            self._issue(op, record_id, event.mutation_id or "", payload, lock)
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return record_id

    async def _call_remote(self, op: str, record_id: str, payload: dict[str, Any]) -> Record | None:
        if op == OP_CREATE:
            return await self._remote.insert({**payload, "id": record_id})
        if op == OP_UPDATE:
            return await self._remote.update(record_id, payload)
        await self._remote.delete(record_id)
        return None

    async def _issue(
        self,
        op: str,
        record_id: str,
        mutation_id: str,
        payload: dict[str, Any],
        lock: asyncio.Lock,
    ) -> None:
        try:
            await self._issue_locked(op, record_id, mutation_id, payload, lock)
        finally:
            self._release_lock(lock)

    def _release_lock(self, lock: asyncio.Lock) -> None:
        users = self._lock_users.get(lock, 0) - 1
        if users > 0:
            self._lock_users[lock] = users
            return
        self._lock_users.pop(lock, None)
        for key in [k for k, v in self._locks.items() if v is lock]:
            del self._locks[key]

    async def _issue_locked(
        self,
        op: str,
        record_id: str,
        mutation_id: str,
        payload: dict[str, Any],
        lock: asyncio.Lock,
    ) -> None:
        async with lock:
            target = self._reconciler.resolve_id(record_id)
            try:
                record = await self._call_remote(op, target, payload)
            except RemoteRejected as e:
                logger.info("mutations: %s %s rejected: %s", op, target, e.reason)
                self._reconciler.apply(remote_reject(target, mutation_id, op))
                self._notify_error(e)
                return
            except Exception as e:
                logger.exception("mutations: %s %s failed unexpectedly", op, target)
                self._reconciler.apply(remote_reject(target, mutation_id, op))
                self._notify_error(RemoteRejected(op, target, f"UNEXPECTED: {e}"))
                return

            self._reconciler.apply(remote_confirm(target, mutation_id, op, record))
            if record is not None and record.id != target:
                # later mutations addressed to the server id queue behind this one
                self._locks.setdefault(record.id, lock)
            logger.debug("mutations: %s %s confirmed", op, target)

    def _notify_error(self, error: RemoteRejected) -> None:
        for listener in list(self._error_listeners):
            try:
                listener(error)
            except Exception:
                logger.exception("mutations: error listener failed")
