"""
FastAPI application exposing the update stream.

Endpoints:
- GET  /api/updates/stream   -> Server-Sent Events update stream
- WS   /api/updates/ws       -> same frames as JSON messages
- GET  /api/updates          -> one page of records after ``last_id``
- GET  /api/updates/latest   -> highest assigned record id
- GET  /api/updates/stats    -> log statistics
- POST /api/notifications    -> broadcast a notification record

Usage:
    uvicorn calstream.api.app:create_app --factory
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any

import anyio
from fastapi import FastAPI, Header, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field

from calstream.api.service import StreamService
from calstream.config import StreamConfig
from calstream.exceptions import CalstreamError, ChangeLogError

logger = logging.getLogger(__name__)

MAX_PAGE_LIMIT = 50

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",  # Disable nginx buffering
}


class NotificationRequest(BaseModel):
    message: str = Field(min_length=1)
    type: str = "info"
    data: dict[str, Any] = Field(default_factory=dict)


class NotificationResponse(BaseModel):
    success: bool
    id: int | None = None


def resume_cursor(query_value: int | None, header_value: str | None) -> int:
    """Pick the resume point from the query string and the Last-Event-ID header.

    Native EventSource reconnects resend the original URL (stale query) plus a
    fresh header, so the larger value wins.
    """
    header_cursor = 0
    if header_value:
        try:
            header_cursor = max(int(header_value), 0)
        except ValueError:
            logger.warning("ignoring non-numeric Last-Event-ID header %r", header_value)
    return max(query_value or 0, header_cursor)


def _iso(ts: float | None) -> str | None:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


def create_app(service: StreamService | None = None, *, config: StreamConfig | None = None) -> FastAPI:
    if service is None:
        service = StreamService(config or StreamConfig.from_env())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await service.open()
        try:
            yield
        finally:
            await service.close()

    app = FastAPI(
        title="calstream",
        description="Real-time calendar update stream",
        lifespan=lifespan,
    )
    app.state.service = service

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST"],
        allow_headers=["Cache-Control", "Content-Type", "Last-Event-ID"],
    )

    @app.exception_handler(CalstreamError)
    async def calstream_error_handler(request: Request, exc: CalstreamError) -> JSONResponse:
        logger.error("request to %s failed: %s", request.url.path, exc.message)
        status = 503 if isinstance(exc, ChangeLogError) else 500
        return JSONResponse(status_code=status, content={"error": exc.message})

    @app.get("/health/live")
    async def live() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/api/updates/stream")
    async def stream_updates(
        request: Request,
        last_event_id: int | None = Query(default=None, alias="lastEventId", ge=0),
        last_event_id_header: str | None = Header(default=None, alias="Last-Event-ID"),
    ) -> StreamingResponse:
        session = service.new_session(resume_cursor(last_event_id, last_event_id_header))

        async def body():
            async for frame in session.stream(request.is_disconnected):
                yield frame.encode_sse()

        return StreamingResponse(body(), media_type="text/event-stream", headers=SSE_HEADERS)

    @app.websocket("/api/updates/ws")
    async def stream_updates_ws(
        websocket: WebSocket,
        last_event_id: int = Query(default=0, alias="lastEventId", ge=0),
    ) -> None:
        await websocket.accept()
        session = service.new_session(last_event_id)
        disconnected = anyio.Event()

        async def watch_disconnect() -> None:
            while True:
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    disconnected.set()
                    return

        async def is_disconnected() -> bool:
            return disconnected.is_set()

        async with anyio.create_task_group() as tg:
            tg.start_soon(watch_disconnect)
            try:
                async for frame in session.stream(is_disconnected):
                    await websocket.send_text(frame.to_json())
            except WebSocketDisconnect:
                logger.debug("websocket client went away during send (session %s)", session.session_id)
                disconnected.set()
            finally:
                tg.cancel_scope.cancel()
        if not disconnected.is_set():
            await websocket.close()

    @app.get("/api/updates")
    async def list_updates(
        last_id: int = Query(default=0, ge=0),
        limit: int = Query(default=10),
    ) -> list[dict[str, Any]]:
        limit = max(1, min(limit, MAX_PAGE_LIMIT))
        records = await service.store.read_since(last_id, limit)
        return [record.to_dict() for record in records]

    @app.get("/api/updates/latest")
    async def latest_update_id() -> dict[str, int]:
        return {"latest_id": await service.store.latest_id()}

    @app.get("/api/updates/stats")
    async def update_stats() -> dict[str, Any]:
        stats = (await service.store.stats()).to_dict()
        stats["oldest_update"] = _iso(stats["oldest_update"])
        stats["newest_update"] = _iso(stats["newest_update"])
        return stats

    @app.post("/api/notifications", response_model=NotificationResponse)
    async def broadcast_notification(request: NotificationRequest) -> NotificationResponse:
        record_id = await service.writer.broadcast_notification(request.message, request.type, request.data)
        return NotificationResponse(success=record_id is not None, id=record_id)

    return app
