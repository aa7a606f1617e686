"""
Remote shapes — what the remote store and the push feed actually send.

Both collaborators speak loosely-typed JSON. These models are the boundary:
nothing past them sees anything but Record / ChangeEvent.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator, model_validator

from syncengine.kernel.events import remote_push
from syncengine.kernel.types import OP_CREATE, OP_DELETE, OP_UPDATE, ChangeEvent, Record, as_datetime

# Keys that describe the row rather than belong to it.
_META_KEYS = {"id", "revision"}

_FEED_OPS: dict[str, str] = {
    "insert": OP_CREATE,
    "update": OP_UPDATE,
    "delete": OP_DELETE,
}

_EPOCH = datetime(1970, 1, 1, tzinfo=UTC)
_MICROSECOND = timedelta(microseconds=1)


def revision_from(value: Any) -> int | None:
    """
    Coerce a revision-ish value into an integer ordering key.

    Integers pass through. Timestamps (datetime or ISO 8601) become integer
    microseconds since the epoch, so `updated_at` can stand in for a revision.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    if isinstance(value, str):
        stripped = value.strip()
        if stripped.isdigit():
            return int(stripped)
    parsed = as_datetime(value)
    if parsed is None:
        return None
    return (parsed - _EPOCH) // _MICROSECOND


def normalize_fields(row: dict[str, Any]) -> dict[str, Any]:
    """
    Flatten joined relations into plain fields.

    `tags` arrives either as tag rows or as join rows wrapping a tag
    ({"tag": {...}}); views filter on `tag_ids`.
    """
    fields = {k: v for k, v in row.items() if k not in _META_KEYS}
    tags = fields.get("tags")
    if isinstance(tags, list) and "tag_ids" not in fields:
        tag_ids: list[str] = []
        for item in tags:
            if isinstance(item, dict) and isinstance(item.get("tag"), dict):
                item = item["tag"]
            if isinstance(item, dict) and item.get("id") is not None:
                tag_ids.append(str(item["id"]))
            elif isinstance(item, str):
                tag_ids.append(item)
        fields["tag_ids"] = tag_ids
    return fields


class RemoteRow(BaseModel):
    """One row returned by the remote store."""

    model_config = {"extra": "allow"}

    id: str
    revision: int | None = None

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, v: Any) -> Any:
        if v is None:
            return v
        return str(v)

    @field_validator("revision", mode="before")
    @classmethod
    def _coerce_revision(cls, v: Any) -> Any:
        return revision_from(v)

    def to_record(self) -> Record:
        extra = dict(self.model_extra or {})
        revision = self.revision
        if revision is None:
            revision = revision_from(extra.get("updated_at")) or revision_from(extra.get("created_at"))
        if revision is None:
            raise ValueError(f"MISSING_REVISION: row '{self.id}' has no revision or updated_at")
        return Record(id=self.id, revision=revision, fields=normalize_fields(extra))


class FeedMessage(BaseModel):
    """
    One push-feed delivery.

    Accepts the canonical {operation, id, revision, fields} shape as well as
    realtime-style payloads ({eventType: "UPDATE", new: {...}, old: {...}}).
    """

    operation: Literal["insert", "update", "delete"]
    id: str = Field(min_length=1)
    revision: int | None = None
    fields: dict[str, Any] | None = None

    @model_validator(mode="before")
    @classmethod
    def _normalize(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        op = data.get("operation") or data.get("type") or data.get("eventType") or ""
        row = data.get("fields") or data.get("record") or data.get("new") or data.get("old")
        if not isinstance(row, dict) or not row:
            row = None

        record_id = data.get("id")
        if record_id is None and row is not None:
            record_id = row.get("id")

        revision = data.get("revision")
        if revision is None and row is not None:
            revision = row.get("revision") or row.get("updated_at")
        if revision is None:
            revision = data.get("commit_timestamp")

        return {
            "operation": str(op).lower(),
            "id": str(record_id) if record_id is not None else "",
            "revision": revision_from(revision),
            "fields": normalize_fields(row) if row is not None else None,
        }

    @model_validator(mode="after")
    def _require_revision(self) -> FeedMessage:
        if self.operation != "delete" and self.revision is None:
            raise ValueError(f"MISSING_REVISION: {self.operation} for '{self.id}'")
        return self

    @property
    def dedup_key(self) -> tuple[str, str, int | None]:
        return (self.operation, self.id, self.revision)

    def to_event(self) -> ChangeEvent:
        return remote_push(_FEED_OPS[self.operation], self.id, self.revision, self.fields)
