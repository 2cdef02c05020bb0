"""Tests for net module: frames, SSE parsing, stream sessions."""

import time

import anyio
import pytest

from calstream._util.clock import ManualClock
from calstream.config import StreamConfig
from calstream.core.memory import MemoryChangeLog
from calstream.core.pruner import Pruner
from calstream.core.types import ChangeRecord, RetentionPolicy
from calstream.exceptions import ChangeLogReadError
from calstream.net.frames import SSEParser, StreamFrame
from calstream.net.session import CloseReason, StreamSession


class _FailingReadLog(MemoryChangeLog):
    async def read_since(self, last_id, limit):
        raise OSError("database disk image is malformed")


class _ReplayingLog(MemoryChangeLog):
    """Returns every record regardless of the cursor."""

    async def read_since(self, last_id, limit):
        return await super().read_since(0, limit)


async def _collect(session, is_disconnected=None):
    return [frame async for frame in session.stream(is_disconnected)]


class TestStreamFrame:
    def test_encode_sse(self):
        frame = StreamFrame(id=501, event="create", data={"id": 42, "title": "Meeting"})
        assert frame.encode_sse() == 'id: 501\nevent: create\ndata: {"id":42,"title":"Meeting"}\n\n'

    def test_from_record(self):
        record = ChangeRecord(id=7, event_type="delete", payload={"id": 42}, created_at=0.0)
        frame = StreamFrame.from_record(record)
        assert (frame.id, frame.event, frame.data) == (7, "delete", {"id": 42})
        assert not frame.is_control
        assert StreamFrame(id=7, event="heartbeat").is_control

    def test_json_round_trip(self):
        frame = StreamFrame(id=3, event="update", data={"id": 1})
        assert StreamFrame.from_json(frame.to_json()) == frame

    @pytest.mark.parametrize(
        "text",
        [
            "not json",
            "[1, 2]",
            '{"id": 1, "event": "create"}',
            '{"id": -1, "event": "create", "data": {}}',
            '{"id": true, "event": "create", "data": {}}',
            '{"id": 1, "event": "", "data": {}}',
            '{"id": 1, "event": "create", "data": [1]}',
        ],
    )
    def test_from_json_rejects_bad_frames(self, text):
        with pytest.raises(ValueError):
            StreamFrame.from_json(text)


class TestSSEParser:
    def test_parses_units(self):
        parser = SSEParser()
        text = (
            StreamFrame(id=0, event="heartbeat", data={"message": "connection established"}).encode_sse()
            + StreamFrame(id=501, event="create", data={"id": 42}).encode_sse()
        )
        frames = list(parser.feed(text.split("\n")))
        assert [(f.id, f.event) for f in frames] == [(0, "heartbeat"), (501, "create")]
        assert frames[1].data == {"id": 42}
        assert parser.last_event_id == 501

    def test_ignores_comments_and_retry(self):
        parser = SSEParser()
        lines = [": keep-alive", "retry: 3000", "id: 4", "event: update", "data: {}", ""]
        (frame,) = list(parser.feed(lines))
        assert (frame.id, frame.event, frame.data) == (4, "update", {})

    def test_unit_without_id_inherits_last_id(self):
        parser = SSEParser()
        lines = ["id: 9", "event: create", "data: {}", "", "event: notification", 'data: {"message": "hi"}', ""]
        frames = list(parser.feed(lines))
        assert [f.id for f in frames] == [9, 9]

    def test_multiline_data_and_crlf(self):
        parser = SSEParser()
        lines = ["id: 2\r", "event: update\r", 'data: {"id":\r', "data: 5}\r", "\r"]
        (frame,) = list(parser.feed(lines))
        assert frame.data == {"id": 5}

    def test_malformed_units_are_dropped(self):
        parser = SSEParser()
        lines = [
            "id: 1", "event: create", "data: {oops", "",
            "id: 2", "event: create", "data: [1]", "",
            "id: 3", "event: delete", 'data: {"id": 1}', "",
        ]
        frames = list(parser.feed(lines))
        assert [f.id for f in frames] == [3]


class TestStreamSession:
    def test_open_sends_heartbeat_with_cursor_id(self):
        clock = ManualClock()
        session = StreamSession(MemoryChangeLog(), cursor=500, clock=clock)
        frame = session.open()
        assert frame.event == "heartbeat"
        assert frame.id == 500
        assert frame.data == {"timestamp": clock.now(), "message": "connection established", "lastEventId": 500}
        with pytest.raises(RuntimeError):
            session.open()

    def test_rejects_bad_settings(self):
        with pytest.raises(ValueError):
            StreamSession(MemoryChangeLog(), poll_interval=0)
        with pytest.raises(ValueError):
            StreamSession(MemoryChangeLog(), batch_limit=0)

    @pytest.mark.anyio
    async def test_poll_delivers_in_order_and_advances_cursor(self):
        log = MemoryChangeLog()
        for n in range(3):
            await log.append("create", {"id": n})

        session = StreamSession(log, clock=ManualClock())
        session.open()
        frames = await session.poll()
        assert [f.id for f in frames] == [1, 2, 3]
        assert session.cursor == 3
        assert await session.poll() == []

    @pytest.mark.anyio
    async def test_batch_limit_spreads_backlog_over_iterations(self):
        log = MemoryChangeLog()
        for n in range(25):
            await log.append("update", {"id": n})

        session = StreamSession(log, batch_limit=10, clock=ManualClock())
        session.open()
        sizes = [len(await session.poll()) for _ in range(4)]
        assert sizes == [10, 10, 5, 0]
        assert session.delivered == 25

    @pytest.mark.anyio
    async def test_resume_skips_delivered_records(self):
        log = MemoryChangeLog()
        for n in range(5):
            await log.append("create", {"id": n})

        session = StreamSession(log, cursor=3, clock=ManualClock())
        session.open()
        assert [f.id for f in await session.poll()] == [4, 5]

    @pytest.mark.anyio
    async def test_resume_is_idempotent(self):
        log = MemoryChangeLog()
        for n in range(6):
            await log.append("update", {"id": n})

        async def ids_from(cursor):
            session = StreamSession(log, cursor=cursor, clock=ManualClock())
            session.open()
            return [f.id for f in await session.poll()]

        assert await ids_from(2) == await ids_from(2) == [3, 4, 5, 6]

    @pytest.mark.anyio
    async def test_out_of_order_records_are_not_resent(self):
        log = _ReplayingLog()
        for n in range(3):
            await log.append("create", {"id": n})

        session = StreamSession(log, cursor=2, clock=ManualClock())
        session.open()
        assert [f.id for f in await session.poll()] == [3]

    @pytest.mark.anyio
    async def test_heartbeat_cadence(self):
        clock = ManualClock()
        session = StreamSession(MemoryChangeLog(), heartbeat_interval=10.0, clock=clock)
        session.open()
        clock.advance(9.5)
        assert await session.poll() == []
        clock.advance(0.5)
        (beat,) = await session.poll()
        assert beat.event == "heartbeat"
        assert beat.data["message"] == "connection alive"
        assert await session.poll() == []

    @pytest.mark.anyio
    async def test_heartbeat_carries_current_cursor(self):
        clock = ManualClock()
        log = MemoryChangeLog()
        await log.append("create", {"id": 1})
        session = StreamSession(log, heartbeat_interval=1.0, clock=clock)
        session.open()
        clock.advance(1.0)
        record, beat = await session.poll()
        assert (record.id, beat.event, beat.id) == (1, "heartbeat", 1)
        assert beat.data["lastEventId"] == 1

    @pytest.mark.anyio
    async def test_stream_ends_with_timeout_after_max_duration(self):
        clock = ManualClock()
        session = StreamSession(
            MemoryChangeLog(),
            poll_interval=1.0,
            heartbeat_interval=2.0,
            max_duration=5.0,
            clock=clock,
        )
        frames = await _collect(session)
        assert [f.event for f in frames] == ["heartbeat", "heartbeat", "heartbeat", "timeout"]
        assert frames[-1].data["message"] == "connection timeout - please reconnect"
        assert clock.sleeps == [1.0] * 5
        assert session.close_reason is CloseReason.TIMEOUT

    @pytest.mark.anyio
    async def test_stream_delivers_records_appended_mid_session(self):
        clock = ManualClock()
        log = MemoryChangeLog()
        session = StreamSession(log, poll_interval=1.0, heartbeat_interval=100.0, max_duration=10.0, clock=clock)

        frames = []
        async for frame in session.stream():
            frames.append(frame)
            if len(frames) == 1:
                await log.append("create", {"id": 42})
                await log.append("delete", {"id": 42})
        assert [(f.id, f.event) for f in frames] == [(0, "heartbeat"), (1, "create"), (2, "delete"), (2, "timeout")]

    @pytest.mark.anyio
    async def test_read_failure_sends_error_frame(self):
        session = StreamSession(_FailingReadLog(), cursor=12, clock=ManualClock())
        frames = await _collect(session)
        assert [f.event for f in frames] == ["heartbeat", "error"]
        assert frames[-1].id == 12
        assert frames[-1].data["message"] == "server error occurred"
        assert session.close_reason is CloseReason.ERROR

    @pytest.mark.anyio
    async def test_poll_wraps_store_errors(self):
        session = StreamSession(_FailingReadLog(), clock=ManualClock())
        session.open()
        with pytest.raises(ChangeLogReadError):
            await session.poll()

    @pytest.mark.anyio
    async def test_disconnect_ends_stream_without_final_frame(self):
        checks = []

        async def is_disconnected():
            checks.append(True)
            return len(checks) >= 2

        session = StreamSession(MemoryChangeLog(), max_duration=100.0, clock=ManualClock())
        frames = await _collect(session, is_disconnected)
        assert [f.event for f in frames] == ["heartbeat"]
        assert session.close_reason is CloseReason.DISCONNECTED
        assert session.close(CloseReason.TIMEOUT) is None

    @pytest.mark.anyio
    async def test_closing_generator_marks_session_disconnected(self):
        session = StreamSession(MemoryChangeLog(), clock=ManualClock())
        stream = session.stream()
        await stream.__anext__()
        await stream.aclose()
        assert session.close_reason is CloseReason.DISCONNECTED

    @pytest.mark.anyio
    async def test_each_iteration_rolls_the_pruner(self):
        log = MemoryChangeLog()
        for n in range(8):
            await log.append("create", {"id": n})
        pruner = Pruner(log, RetentionPolicy(max_records=2, max_age=None), probability=1.0)
        session = StreamSession(log, batch_limit=3, pruner=pruner, clock=ManualClock())
        session.open()

        assert [f.id for f in await session.poll()] == [1, 2, 3]
        # Records 4..6 were pruned behind the cursor's back; the reader skips them.
        assert [f.id for f in await session.poll()] == [7, 8]
        assert pruner.runs == 2

    def test_from_config(self):
        config = StreamConfig(poll_interval=0.5, heartbeat_interval=5.0, max_duration=30.0, batch_limit=4)
        session = StreamSession.from_config(MemoryChangeLog(), config, cursor=9)
        assert (session.poll_interval, session.heartbeat_interval) == (0.5, 5.0)
        assert (session.max_duration, session.batch_limit, session.cursor) == (30.0, 4, 9)

    @pytest.mark.anyio
    async def test_delivery_latency_within_two_poll_intervals(self):
        poll = 0.05
        log = MemoryChangeLog()
        session = StreamSession(log, poll_interval=poll, heartbeat_interval=60.0, max_duration=5.0)
        appended_at: list[float] = []
        latency: list[float] = []

        async def consume():
            async for frame in session.stream():
                if frame.event == "create":
                    latency.append(time.monotonic() - appended_at[0])
                    return

        async with anyio.create_task_group() as tg:
            tg.start_soon(consume)
            await anyio.sleep(0.22)
            appended_at.append(time.monotonic())
            await log.append("create", {"id": 42})
            with anyio.fail_after(2):
                while not latency:
                    await anyio.sleep(0.01)

        # Two poll intervals plus scheduling slack.
        assert latency[0] < 2 * poll + 0.05
