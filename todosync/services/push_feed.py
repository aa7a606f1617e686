"""
Push notification feed collaborator.

An append-only stream of raw change messages made by any session:
delivered at-least-once, unordered across ids, never deduplicated.
Each call to messages() is one connection; when the transport drops, the
iterator raises FeedDisconnect and the caller decides whether to reconnect.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator
from typing import Any

import httpx

logger = logging.getLogger(__name__)


class FeedDisconnect(Exception):
    """The feed transport dropped; changes may have been missed."""


class PushFeed:
    """Abstract push feed."""

    def messages(self) -> AsyncIterator[dict[str, Any]]:
        """Connect and yield raw messages until closed (returns) or dropped (raises FeedDisconnect)."""
        raise NotImplementedError

    async def close(self) -> None:
        return None


_DISCONNECT = object()
_CLOSE = object()


class MemoryPushFeed(PushFeed):
    """In-memory feed for testing. publish() delivers, disconnect() drops the connection."""

    def __init__(self) -> None:
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self.connections = 0

    def publish(self, message: dict[str, Any]) -> None:
        self._queue.put_nowait(message)

    def disconnect(self) -> None:
        self._queue.put_nowait(_DISCONNECT)

    async def close(self) -> None:
        self._queue.put_nowait(_CLOSE)

    async def messages(self) -> AsyncIterator[dict[str, Any]]:
        self.connections += 1
        while True:
            item = await self._queue.get()
            if item is _CLOSE:
                return
            if item is _DISCONNECT:
                raise FeedDisconnect("memory feed disconnected")
            yield item


class SsePushFeed(PushFeed):
    """
    Server-sent events over httpx.

    Reads `event:` / `data:` lines; every `data:` line is one JSON message.
    `event: close` ends the feed cleanly, anything else that ends the stream
    is a disconnect.
    """

    def __init__(
        self,
        url: str,
        *,
        token: str | None = None,
        api_key: str | None = None,
        client: httpx.AsyncClient | None = None,
        timeout: float | None = None,
    ) -> None:
        self.url = url
        self.token = token
        self.api_key = api_key
        self._client = client or httpx.AsyncClient(timeout=httpx.Timeout(timeout, read=None))
        self._owns_client = client is None

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "text/event-stream"}
        if self.api_key:
            headers["apikey"] = self.api_key
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    async def messages(self) -> AsyncIterator[dict[str, Any]]:
        event_type = None
        try:
            async with self._client.stream("GET", self.url, headers=self._headers()) as response:
                response.raise_for_status()
                async for line in response.aiter_lines():
                    line = line.strip()

                    if not line:
                        continue

                    if line.startswith("event:"):
                        event_type = line[6:].strip()
                        if event_type == "close":
                            return
                    elif line.startswith("data:"):
                        try:
                            data = json.loads(line[5:].strip())
                        except json.JSONDecodeError:
                            logger.warning("feed: skipping malformed data line: %r", line[:200])
                            continue
                        if isinstance(data, dict):
                            yield data
        except httpx.HTTPError as e:
            raise FeedDisconnect(str(e)) from e
        raise FeedDisconnect("stream ended")

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()
