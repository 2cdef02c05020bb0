"""Client-side Transport ABC with Server-Sent Events and WebSocket implementations."""

from __future__ import annotations

import abc
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator
from urllib.parse import urlencode, urlsplit, urlunsplit

import httpx
import websockets
import websockets.asyncio.client

from calstream.net.frames import SSEParser, StreamFrame

logger = logging.getLogger(__name__)

FrameStream = AsyncIterator[StreamFrame]


def _with_cursor(url: str, cursor: int) -> str:
    parts = urlsplit(url)
    query = f"{parts.query}&" if parts.query else ""
    query += urlencode({"lastEventId": cursor})
    return urlunsplit((parts.scheme, parts.netloc, parts.path, query, parts.fragment))


class Transport(abc.ABC):
    """Opens one streaming connection resuming after ``cursor``.

    ``connect`` is an async context manager: entering it means the connection is
    open; the yielded iterator produces frames until the server ends the stream.
    Every connection-level failure surfaces as ``ConnectionError``.
    """

    @abc.abstractmethod
    def connect(self, cursor: int) -> Any: ...

    async def close(self) -> None:
        """Release shared resources. Default: nothing to do."""


class SSETransport(Transport):
    """Server-Sent Events over a streaming httpx GET."""

    def __init__(
        self,
        url: str,
        *,
        client: httpx.AsyncClient | None = None,
        headers: dict[str, str] | None = None,
        read_timeout: float | None = 60.0,
    ) -> None:
        self._url = url
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(10.0, read=read_timeout),
        )
        self._headers = headers or {}

    @asynccontextmanager
    async def connect(self, cursor: int) -> AsyncIterator[FrameStream]:
        headers = {
            "Accept": "text/event-stream",
            "Cache-Control": "no-cache",
            "Last-Event-ID": str(cursor),
            **self._headers,
        }
        try:
            async with self._client.stream(
                "GET", self._url, params={"lastEventId": cursor}, headers=headers
            ) as response:
                if response.status_code != 200:
                    raise ConnectionError(f"stream endpoint returned HTTP {response.status_code}")
                content_type = response.headers.get("content-type", "")
                if not content_type.startswith("text/event-stream"):
                    raise ConnectionError(f"unexpected stream content type {content_type!r}")
                yield self._frames(response)
        except httpx.HTTPError as exc:
            raise ConnectionError(f"stream connection failed: {exc}") from exc

    @staticmethod
    async def _frames(response: httpx.Response) -> FrameStream:
        parser = SSEParser()
        try:
            async for line in response.aiter_lines():
                frame = parser.feed_line(line)
                if frame is not None:
                    yield frame
        except httpx.HTTPError as exc:
            raise ConnectionError(f"stream read failed: {exc}") from exc

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()


class WebSocketTransport(Transport):
    """The same frames carried as JSON text messages over a WebSocket."""

    def __init__(
        self,
        uri: str,
        *,
        token: str | None = None,
        max_size: int | None = 10 * 1024 * 1024,
        open_timeout: float | None = 10.0,
    ) -> None:
        self._uri = uri
        connect_kwargs: dict[str, Any] = {"max_size": max_size, "open_timeout": open_timeout}
        if token is not None:
            connect_kwargs["additional_headers"] = {"Authorization": f"Bearer {token}"}
        self._connect_kwargs = connect_kwargs

    @asynccontextmanager
    async def connect(self, cursor: int) -> AsyncIterator[FrameStream]:
        uri = _with_cursor(self._uri, cursor)
        try:
            async with websockets.asyncio.client.connect(uri, **self._connect_kwargs) as ws:
                yield self._frames(ws)
        except (OSError, websockets.exceptions.WebSocketException) as exc:
            if isinstance(exc, ConnectionError):
                raise
            raise ConnectionError(f"websocket connection failed: {exc}") from exc

    @staticmethod
    async def _frames(ws: Any) -> FrameStream:
        try:
            async for message in ws:
                try:
                    yield StreamFrame.from_json(message)
                except ValueError:
                    logger.warning("dropping malformed frame from stream server")
        except websockets.exceptions.ConnectionClosedOK:
            return
        except websockets.exceptions.ConnectionClosed as exc:
            raise ConnectionError("websocket receive failed; connection closed") from exc
