"""
Sync Kernel — Event Construction

Factory functions for creating well-formed ChangeEvents.
Used by the mutation manager and the subscription adapter before feeding
events to the reconciler, and by tests to build events concisely.
"""

from __future__ import annotations

import uuid
from collections.abc import Mapping
from typing import Any

from syncengine.kernel.types import (
    LOCAL_OPTIMISTIC,
    OP_CREATE,
    OP_DELETE,
    OP_UPDATE,
    OPS,
    REMOTE_CONFIRM,
    REMOTE_PUSH,
    REMOTE_REJECT,
    ChangeEvent,
    Record,
)


def new_mutation_id() -> str:
    return f"mut_{uuid.uuid4().hex[:12]}"


def new_provisional_id() -> str:
    """Client-generated id for a record created locally. Sent to the remote store with the insert."""
    return str(uuid.uuid4())


def local_optimistic(
    op: str,
    record_id: str,
    payload: Mapping[str, Any] | None = None,
    *,
    mutation_id: str | None = None,
) -> ChangeEvent:
    """
    Build a local-optimistic event.

    payload is the full field set for create, the partial patch for update,
    and ignored for delete.
    """
    if op not in OPS:
        raise ValueError(f"UNKNOWN_OP: {op!r}")
    return ChangeEvent(
        kind=LOCAL_OPTIMISTIC,
        record_id=record_id,
        payload=dict(payload) if payload and op != OP_DELETE else None,
        op=op,
        mutation_id=mutation_id or new_mutation_id(),
    )


def remote_confirm(
    record_id: str,
    mutation_id: str,
    op: str,
    record: Record | None = None,
) -> ChangeEvent:
    """
    Build a remote-confirm event from the authoritative record the server returned.
    A confirmed delete carries no record.
    """
    if record is None:
        return ChangeEvent(
            kind=REMOTE_CONFIRM,
            record_id=record_id,
            op=op,
            mutation_id=mutation_id,
        )
    return ChangeEvent(
        kind=REMOTE_CONFIRM,
        record_id=record_id,
        payload=dict(record.fields),
        revision=record.revision,
        op=op,
        mutation_id=mutation_id,
        server_id=record.id if record.id != record_id else None,
    )


def remote_reject(record_id: str, mutation_id: str, op: str) -> ChangeEvent:
    return ChangeEvent(kind=REMOTE_REJECT, record_id=record_id, op=op, mutation_id=mutation_id)


def remote_push(
    op: str,
    record_id: str,
    revision: int | None,
    payload: Mapping[str, Any] | None = None,
) -> ChangeEvent:
    """
    Build a remote-push event. Feed inserts and updates both carry the full row,
    so they map to create/update; deletes may omit revision and payload.
    """
    if op not in OPS:
        raise ValueError(f"UNKNOWN_OP: {op!r}")
    return ChangeEvent(
        kind=REMOTE_PUSH,
        record_id=record_id,
        payload=dict(payload) if payload is not None else None,
        revision=revision,
        op=op,
    )


def push_upsert(record: Record) -> ChangeEvent:
    """Shorthand for tests: push the full state of `record`."""
    return remote_push(OP_UPDATE, record.id, record.revision, record.fields)


def push_insert(record: Record) -> ChangeEvent:
    return remote_push(OP_CREATE, record.id, record.revision, record.fields)
