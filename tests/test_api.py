"""Tests for api module: StreamService and the FastAPI app."""

import httpx
import pytest
from fastapi.testclient import TestClient

from calstream._util.clock import ManualClock
from calstream.api.app import create_app, resume_cursor
from calstream.api.service import StreamService
from calstream.config import StreamConfig
from calstream.core.memory import MemoryChangeLog
from calstream.core.types import RetentionPolicy
from calstream.exceptions import ChangeLogReadError
from calstream.net.frames import SSEParser, StreamFrame


class _BrokenLog(MemoryChangeLog):
    async def read_since(self, last_id, limit):
        raise ChangeLogReadError(last_id, OSError("database is locked"))


def _service(store=None, **overrides):
    clock = ManualClock()
    settings = dict(poll_interval=1.0, heartbeat_interval=10.0, max_duration=3.0, trim_probability=0.0)
    settings.update(overrides)
    store = store if store is not None else MemoryChangeLog(clock=clock)
    return StreamService(StreamConfig(**settings), store=store, clock=clock)


def _client(service):
    app = create_app(service)
    return httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test")


def _parse(text):
    return list(SSEParser().feed(text.split("\n")))


class TestResumeCursor:
    def test_larger_value_wins(self):
        assert resume_cursor(1, "3") == 3
        assert resume_cursor(5, "3") == 5
        assert resume_cursor(None, None) == 0

    def test_bad_header_is_ignored(self):
        assert resume_cursor(4, "abc") == 4
        assert resume_cursor(None, "-2") == 0


class TestStreamService:
    @pytest.mark.anyio
    async def test_open_runs_startup_trim(self):
        store = MemoryChangeLog()
        for n in range(5):
            await store.append("create", {"id": n})

        service = StreamService(
            StreamConfig(retention=RetentionPolicy(max_records=2, max_age=None), trim_probability=0.0),
            store=store,
        )
        await service.open()
        assert len(store) == 2
        assert service.pruner.runs == 1
        await service.close()

    def test_new_session_uses_config(self):
        service = _service(batch_limit=3)
        session = service.new_session(17)
        assert session.cursor == 17
        assert session.batch_limit == 3
        assert session.max_duration == 3.0


class TestStreamEndpoint:
    @pytest.mark.anyio
    async def test_stream_from_cursor(self):
        service = _service()
        for n in range(3):
            await service.store.append("create", {"id": n})

        async with _client(service) as client:
            response = await client.get("/api/updates/stream", params={"lastEventId": 1})

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")
        assert response.headers["cache-control"] == "no-cache"
        assert response.headers["x-accel-buffering"] == "no"

        frames = _parse(response.text)
        assert [(f.id, f.event) for f in frames] == [(1, "heartbeat"), (2, "create"), (3, "create"), (3, "timeout")]
        assert frames[0].data["message"] == "connection established"
        assert frames[0].data["lastEventId"] == 1
        assert frames[1].data == {"id": 1}

    @pytest.mark.anyio
    async def test_last_event_id_header_beats_stale_query(self):
        service = _service()
        for n in range(4):
            await service.store.append("update", {"id": n})

        async with _client(service) as client:
            response = await client.get(
                "/api/updates/stream",
                params={"lastEventId": 1},
                headers={"Last-Event-ID": "3"},
            )

        frames = _parse(response.text)
        assert frames[0].id == 3
        assert [f.id for f in frames if not f.is_control] == [4]

    @pytest.mark.anyio
    async def test_negative_cursor_is_rejected(self):
        async with _client(_service()) as client:
            response = await client.get("/api/updates/stream", params={"lastEventId": -1})
        assert response.status_code == 422

    @pytest.mark.anyio
    async def test_read_failure_ends_with_error_frame(self):
        service = _service(store=_BrokenLog())
        async with _client(service) as client:
            response = await client.get("/api/updates/stream", params={"lastEventId": 9})

        frames = _parse(response.text)
        assert [(f.id, f.event) for f in frames] == [(9, "heartbeat"), (9, "error")]
        assert frames[-1].data["message"] == "server error occurred"

    @pytest.mark.anyio
    async def test_cors_allows_any_origin(self):
        async with _client(_service()) as client:
            preflight = await client.options(
                "/api/updates/stream",
                headers={
                    "Origin": "https://calendar.example",
                    "Access-Control-Request-Method": "GET",
                    "Access-Control-Request-Headers": "Last-Event-ID, Cache-Control",
                },
            )
            response = await client.get("/api/updates/latest", headers={"Origin": "https://calendar.example"})

        assert preflight.status_code == 200
        assert "last-event-id" in preflight.headers["access-control-allow-headers"].lower()
        assert response.headers["access-control-allow-origin"] == "*"


class TestReadEndpoints:
    @pytest.mark.anyio
    async def test_health(self):
        async with _client(_service()) as client:
            response = await client.get("/health/live")
        assert response.json() == {"status": "ok"}

    @pytest.mark.anyio
    async def test_list_updates_pages_and_clamps(self):
        service = _service()
        for n in range(60):
            await service.store.append("create", {"id": n})

        async with _client(service) as client:
            big = (await client.get("/api/updates", params={"last_id": 0, "limit": 100})).json()
            small = (await client.get("/api/updates", params={"last_id": 0, "limit": 0})).json()
            tail = (await client.get("/api/updates", params={"last_id": 58})).json()

        assert len(big) == 50
        assert [r["id"] for r in small] == [1]
        assert [r["id"] for r in tail] == [59, 60]
        assert tail[0]["event_type"] == "create"
        assert tail[0]["event_data"] == {"id": 58}

    @pytest.mark.anyio
    async def test_latest_and_stats(self):
        service = _service()
        await service.store.append("create", {"id": 1})
        await service.store.append("notification", {"message": "hi"})

        async with _client(service) as client:
            latest = (await client.get("/api/updates/latest")).json()
            stats = (await client.get("/api/updates/stats")).json()

        assert latest == {"latest_id": 2}
        assert stats["total_updates"] == 2
        assert stats["latest_id"] == 2
        assert stats["by_type"] == {"create": 1, "notification": 1}
        assert stats["oldest_update"].startswith("2023-11-14T")

    @pytest.mark.anyio
    async def test_store_failure_maps_to_503(self):
        async with _client(_service(store=_BrokenLog())) as client:
            response = await client.get("/api/updates")
        assert response.status_code == 503
        assert response.json()["error"].startswith("Failed to read change log")


class TestNotificationEndpoint:
    @pytest.mark.anyio
    async def test_broadcast_appends_record(self):
        service = _service()
        async with _client(service) as client:
            response = await client.post(
                "/api/notifications",
                json={"message": "Maintenance at noon", "type": "warning", "data": {"link": "/status"}},
            )

        assert response.json() == {"success": True, "id": 1}
        (record,) = await service.store.read_since(0, 10)
        assert record.event_type == "notification"
        assert record.payload["message"] == "Maintenance at noon"
        assert record.payload["type"] == "warning"
        assert record.payload["link"] == "/status"

    @pytest.mark.anyio
    async def test_empty_message_is_rejected(self):
        service = _service()
        async with _client(service) as client:
            response = await client.post("/api/notifications", json={"message": ""})
        assert response.status_code == 422
        assert len(service.store) == 0


class TestWebSocketEndpoint:
    def test_ws_stream_carries_same_frames(self):
        clock = ManualClock()
        store = MemoryChangeLog(clock=clock)
        service = StreamService(
            StreamConfig(poll_interval=1.0, heartbeat_interval=10.0, max_duration=3.0, trim_probability=0.0),
            store=store,
            clock=clock,
        )
        app = create_app(service)

        with TestClient(app) as client:
            client.post("/api/notifications", json={"message": "first"})
            client.post("/api/notifications", json={"message": "second"})
            frames = []
            with client.websocket_connect("/api/updates/ws?lastEventId=1") as ws:
                while not frames or frames[-1].event != "timeout":
                    frames.append(StreamFrame.from_json(ws.receive_text()))

        assert [(f.id, f.event) for f in frames] == [(1, "heartbeat"), (2, "notification"), (2, "timeout")]
        assert frames[1].data["message"] == "second"
