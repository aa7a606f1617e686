"""
Remote store collaborator.

The hosted database that is the source of truth. The sync engine only ever
sees Records coming back from it; every failure is a RemoteRejected.
Implement with PostgREST for production, or in-memory for tests.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Any

from syncengine.kernel.types import Record
from todosync.services.push_feed import MemoryPushFeed

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class RemoteRejected(Exception):
    """The remote store refused a mutation (validation, permission, conflict, missing row)."""

    def __init__(self, op: str, record_id: str | None, reason: str):
        self.op = op
        self.record_id = record_id
        self.reason = reason
        super().__init__(f"{op} {record_id or '<new>'} rejected: {reason}")


# ---------------------------------------------------------------------------
# Storage protocol
# ---------------------------------------------------------------------------


class RemoteStore:
    """
    Abstract remote store for one collection.
    Every successful call returns a Record with an authoritative id and revision.
    """

    table: str = "records"

    async def insert(self, fields: dict[str, Any]) -> Record:
        """Create a row. `fields` may carry a client-generated `id`."""
        raise NotImplementedError

    async def update(self, record_id: str, partial_fields: dict[str, Any]) -> Record:
        """Patch a row and return its new state."""
        raise NotImplementedError

    async def delete(self, record_id: str) -> None:
        raise NotImplementedError

    async def fetch_all(self) -> list[Record]:
        """Every row of the collection, for full resynchronization."""
        raise NotImplementedError

    async def close(self) -> None:
        return None


class MemoryRemoteStore(RemoteStore):
    """
    In-memory remote store for testing.

    Hands out increasing integer revisions, optionally echoes every write to a
    MemoryPushFeed the way a realtime backend would, and can be told to reject
    calls or to hold them in flight.
    """

    def __init__(
        self,
        table: str = "records",
        *,
        feed: MemoryPushFeed | None = None,
        assign_ids: bool = False,
    ) -> None:
        self.table = table
        self.rows: dict[str, Record] = {}
        self.calls: list[tuple[str, str | None]] = []
        self._feed = feed
        self._assign_ids = assign_ids
        self._revision = 0
        self._failures: list[tuple[str | None, str | None, str]] = []
        self._gate = asyncio.Event()
        self._gate.set()

    # -- test controls --

    def seed(self, record_id: str, fields: dict[str, Any]) -> Record:
        """Put a row in place without going through a call."""
        record = Record(id=record_id, revision=self._next_revision(), fields=dict(fields))
        self.rows[record_id] = record
        return record

    def touch(self, record_id: str, patch: dict[str, Any]) -> Record:
        """Simulate another session editing a row. Echoed to the feed."""
        record = self.rows[record_id]
        record = Record(id=record_id, revision=self._next_revision(), fields={**record.fields, **patch})
        self.rows[record_id] = record
        self._echo("update", record)
        return record

    def fail_next(self, reason: str = "REJECTED", *, op: str | None = None, record_id: str | None = None) -> None:
        """Reject the next call matching op/record_id (None matches anything)."""
        self._failures.append((op, record_id, reason))

    def hold(self) -> None:
        """Keep every subsequent call in flight until release()."""
        self._gate.clear()

    def release(self) -> None:
        self._gate.set()

    # -- RemoteStore --

    async def insert(self, fields: dict[str, Any]) -> Record:
        fields = dict(fields)
        client_id = fields.pop("id", None)
        record_id = str(uuid.uuid4()) if self._assign_ids or not client_id else str(client_id)
        await self._enter("insert", record_id)
        if record_id in self.rows:
            raise RemoteRejected("insert", record_id, "DUPLICATE_KEY")
        record = Record(id=record_id, revision=self._next_revision(), fields=fields)
        self.rows[record_id] = record
        self._echo("insert", record)
        return record

    async def update(self, record_id: str, partial_fields: dict[str, Any]) -> Record:
        await self._enter("update", record_id)
        current = self.rows.get(record_id)
        if current is None:
            raise RemoteRejected("update", record_id, "NOT_FOUND")
        record = Record(
            id=record_id,
            revision=self._next_revision(),
            fields={**current.fields, **partial_fields},
        )
        self.rows[record_id] = record
        self._echo("update", record)
        return record

    async def delete(self, record_id: str) -> None:
        await self._enter("delete", record_id)
        if record_id not in self.rows:
            raise RemoteRejected("delete", record_id, "NOT_FOUND")
        del self.rows[record_id]
        self._echo("delete", Record(id=record_id, revision=self._next_revision()))

    async def fetch_all(self) -> list[Record]:
        await self._enter("fetch_all", None)
        return list(self.rows.values())

    # -- internals --

    def _next_revision(self) -> int:
        self._revision += 1
        return self._revision

    async def _enter(self, op: str, record_id: str | None) -> None:
        self.calls.append((op, record_id))
        await self._gate.wait()
        for i, (f_op, f_id, reason) in enumerate(self._failures):
            if f_op in (None, op) and f_id in (None, record_id):
                del self._failures[i]
                raise RemoteRejected(op, record_id, reason)

    def _echo(self, operation: str, record: Record) -> None:
        if self._feed is None:
            return
        message: dict[str, Any] = {"operation": operation, "id": record.id, "revision": record.revision}
        if operation != "delete":
            message["fields"] = dict(record.fields)
        self._feed.publish(message)
