"""
PostgREST remote store (Supabase REST API).

Rows come back as loosely-typed JSON; RemoteRow turns them into Records
before anything else sees them. Every HTTP or transport failure becomes a
RemoteRejected so the mutation manager can roll back.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

import httpx
from pydantic import ValidationError

from syncengine.kernel.types import Record
from todosync.config import require_remote_settings, settings
from todosync.models.remote import RemoteRow
from todosync.services.remote_store import RemoteRejected, RemoteStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TagLinks:
    """A many-to-many join table kept in sync from a record's `tag_ids` field."""

    table: str = "todo_tags"
    owner_key: str = "todo_id"
    tag_key: str = "tag_id"


# Default select per table: todos come back with their tags joined.
DEFAULT_SELECTS: dict[str, str] = {
    "todos": "*,tags:todo_tags(tag:tags(*))",
}


class PostgrestRemoteStore(RemoteStore):
    """Remote store for one table behind a PostgREST endpoint."""

    def __init__(
        self,
        table: str,
        *,
        base_url: str | None = None,
        api_key: str | None = None,
        token: str | None = None,
        select: str | None = None,
        tag_links: TagLinks | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        if base_url is None:
            require_remote_settings()
            base_url = settings.REST_URL
        self.table = table
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key if api_key is not None else settings.SUPABASE_ANON_KEY
        self.token = token if token is not None else settings.SUPABASE_ACCESS_TOKEN
        self.select = select or DEFAULT_SELECTS.get(table, "*")
        self.tag_links = tag_links if tag_links is not None else (TagLinks() if table == "todos" else None)
        self._client = client or httpx.AsyncClient(timeout=settings.REQUEST_TIMEOUT)
        self._owns_client = client is None

    def _headers(self, *, representation: bool = False) -> dict[str, str]:
        """Build request headers."""
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if self.api_key:
            headers["apikey"] = self.api_key
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        if representation:
            headers["Prefer"] = "return=representation"
        return headers

    def _url(self, table: str | None = None) -> str:
        return f"{self.base_url}/{table or self.table}"

    async def _request(
        self,
        op: str,
        record_id: str | None,
        method: str,
        url: str,
        *,
        params: dict[str, str] | None = None,
        json: Any = None,
        representation: bool = False,
    ) -> Any:
        try:
            res = await self._client.request(
                method,
                url,
                params=params,
                json=json,
                headers=self._headers(representation=representation),
            )
            res.raise_for_status()
        except httpx.HTTPStatusError as e:
            body = e.response.text[:200]
            raise RemoteRejected(op, record_id, f"HTTP_{e.response.status_code}: {body}") from e
        except httpx.HTTPError as e:
            raise RemoteRejected(op, record_id, f"TRANSPORT: {e}") from e
        if not res.content:
            return None
        return res.json()

    def _to_record(self, op: str, record_id: str | None, row: Any) -> Record:
        try:
            return RemoteRow.model_validate(row).to_record()
        except (ValidationError, ValueError) as e:
            raise RemoteRejected(op, record_id, f"BAD_ROW: {e}") from e

    async def _fetch_one(self, op: str, record_id: str) -> Record:
        rows = await self._request(
            op,
            record_id,
            "GET",
            self._url(),
            params={"select": self.select, "id": f"eq.{record_id}"},
        )
        if not rows:
            raise RemoteRejected(op, record_id, "NOT_FOUND")
        return self._to_record(op, record_id, rows[0])

    async def _sync_tags(self, op: str, record_id: str, tag_ids: list[str]) -> None:
        links = self.tag_links
        if links is None:
            return
        await self._request(
            op,
            record_id,
            "DELETE",
            self._url(links.table),
            params={links.owner_key: f"eq.{record_id}"},
        )
        if tag_ids:
            await self._request(
                op,
                record_id,
                "POST",
                self._url(links.table),
                json=[{links.owner_key: record_id, links.tag_key: t} for t in tag_ids],
            )

    def _split_tags(self, fields: dict[str, Any]) -> tuple[dict[str, Any], list[str] | None]:
        if self.tag_links is None:
            return fields, None
        fields = dict(fields)
        tag_ids = fields.pop("tag_ids", None)
        return fields, tag_ids

    # -- RemoteStore --

    async def insert(self, fields: dict[str, Any]) -> Record:
        row_fields, tag_ids = self._split_tags(fields)
        rows = await self._request(
            "insert",
            fields.get("id"),
            "POST",
            self._url(),
            params={"select": self.select},
            json=row_fields,
            representation=True,
        )
        if not rows:
            raise RemoteRejected("insert", fields.get("id"), "EMPTY_RESPONSE")
        record = self._to_record("insert", fields.get("id"), rows[0])
        if tag_ids is None:
            return record
        await self._sync_tags("insert", record.id, tag_ids)
        return await self._fetch_one("insert", record.id)

    async def update(self, record_id: str, partial_fields: dict[str, Any]) -> Record:
        row_fields, tag_ids = self._split_tags(partial_fields)
        if row_fields:
            rows = await self._request(
                "update",
                record_id,
                "PATCH",
                self._url(),
                params={"id": f"eq.{record_id}", "select": self.select},
                json=row_fields,
                representation=True,
            )
            if not rows:
                raise RemoteRejected("update", record_id, "NOT_FOUND")
            if tag_ids is None:
                return self._to_record("update", record_id, rows[0])
        if tag_ids is not None:
            await self._sync_tags("update", record_id, tag_ids)
        return await self._fetch_one("update", record_id)

    async def delete(self, record_id: str) -> None:
        rows = await self._request(
            "delete",
            record_id,
            "DELETE",
            self._url(),
            params={"id": f"eq.{record_id}"},
            representation=True,
        )
        if not rows:
            raise RemoteRejected("delete", record_id, "NOT_FOUND")

    async def fetch_all(self) -> list[Record]:
        rows = await self._request("fetch_all", None, "GET", self._url(), params={"select": self.select})
        records: list[Record] = []
        for row in rows or []:
            try:
                records.append(RemoteRow.model_validate(row).to_record())
            except (ValidationError, ValueError) as e:
                logger.warning("postgrest: skipping bad %s row: %s", self.table, e)
        return records

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()
