"""StreamSession: one client's poll-emit-heartbeat loop over the change log."""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Callable

from calstream._util.clock import SYSTEM_CLOCK, Clock
from calstream._util.ids import generate_session_id
from calstream.core.pruner import Pruner
from calstream.core.store import ChangeLogStore
from calstream.core.types import EventType
from calstream.exceptions import ChangeLogError, ChangeLogReadError
from calstream.net.frames import StreamFrame

logger = logging.getLogger(__name__)

DisconnectCheck = Callable[[], Awaitable[bool]]


class CloseReason(str, Enum):
    TIMEOUT = "timeout"
    ERROR = "error"
    DISCONNECTED = "disconnected"


class StreamSession:
    """State machine for one open stream.

    ``open``, ``poll`` and ``close`` advance the state using the injected clock
    and never sleep; ``stream`` drives them in real time. Within a session
    frames always go out in strictly increasing record id order.
    """

    def __init__(
        self,
        store: ChangeLogStore,
        *,
        cursor: int = 0,
        poll_interval: float = 1.0,
        heartbeat_interval: float = 10.0,
        max_duration: float = 300.0,
        batch_limit: int = 10,
        pruner: Pruner | None = None,
        clock: Clock | None = None,
        session_id: str | None = None,
    ) -> None:
        if poll_interval <= 0:
            raise ValueError("poll_interval must be > 0")
        if batch_limit < 1:
            raise ValueError("batch_limit must be >= 1")
        self._store = store
        self._pruner = pruner
        self._clock = clock or SYSTEM_CLOCK
        self.session_id = session_id or generate_session_id()
        self.cursor = max(int(cursor), 0)
        self.poll_interval = poll_interval
        self.heartbeat_interval = heartbeat_interval
        self.max_duration = max_duration
        self.batch_limit = batch_limit
        self.opened_at: float | None = None
        self.last_heartbeat_at: float | None = None
        self.close_reason: CloseReason | None = None
        self.delivered = 0

    @classmethod
    def from_config(cls, store: ChangeLogStore, config: Any, **kwargs: Any) -> StreamSession:
        return cls(
            store,
            poll_interval=config.poll_interval,
            heartbeat_interval=config.heartbeat_interval,
            max_duration=config.max_duration,
            batch_limit=config.batch_limit,
            **kwargs,
        )

    @property
    def is_open(self) -> bool:
        return self.opened_at is not None and self.close_reason is None

    @property
    def expired(self) -> bool:
        if self.opened_at is None:
            return False
        return self._clock.now() - self.opened_at >= self.max_duration

    def _control(self, event: EventType, message: str) -> StreamFrame:
        return StreamFrame(
            id=self.cursor,
            event=event.value,
            data={"timestamp": self._clock.now(), "message": message, "lastEventId": self.cursor},
        )

    def open(self) -> StreamFrame:
        """Start the session and return the initial heartbeat."""
        if self.opened_at is not None:
            raise RuntimeError("stream session already opened")
        now = self._clock.now()
        self.opened_at = now
        self.last_heartbeat_at = now
        logger.info("stream session %s opened with lastEventId=%s", self.session_id, self.cursor)
        return self._control(EventType.HEARTBEAT, "connection established")

    async def poll(self) -> list[StreamFrame]:
        """Run one iteration: read, emit, maybe trim, maybe heartbeat."""
        if not self.is_open:
            raise RuntimeError("cannot poll a stream session that is not open")
        try:
            records = await self._store.read_since(self.cursor, self.batch_limit)
        except ChangeLogReadError:
            raise
        except Exception as exc:
            raise ChangeLogReadError(self.cursor, exc) from exc

        frames: list[StreamFrame] = []
        for record in records:
            if record.id <= self.cursor:
                logger.warning(
                    "store returned out-of-order record id=%s at cursor=%s; skipping",
                    record.id,
                    self.cursor,
                )
                continue
            frames.append(StreamFrame.from_record(record))
            self.cursor = record.id
            logger.debug("session %s sending record id=%s type=%s", self.session_id, record.id, record.event_type)
        self.delivered += len(frames)

        if self._pruner is not None:
            await self._pruner.maybe_trim()

        now = self._clock.now()
        assert self.last_heartbeat_at is not None
        if now - self.last_heartbeat_at >= self.heartbeat_interval:
            frames.append(self._control(EventType.HEARTBEAT, "connection alive"))
            self.last_heartbeat_at = now
        return frames

    def close(self, reason: CloseReason) -> StreamFrame | None:
        """Finish the session; returns the final frame to send, if any."""
        if self.close_reason is not None:
            return None
        self.close_reason = reason
        duration = self._clock.now() - self.opened_at if self.opened_at is not None else 0.0
        logger.info(
            "stream session %s closed (%s) after %.1fs, %s records delivered, cursor=%s",
            self.session_id,
            reason.value,
            duration,
            self.delivered,
            self.cursor,
        )
        if reason is CloseReason.TIMEOUT:
            return self._control(EventType.TIMEOUT, "connection timeout - please reconnect")
        if reason is CloseReason.ERROR:
            return self._control(EventType.ERROR, "server error occurred")
        return None

    async def stream(self, is_disconnected: DisconnectCheck | None = None) -> AsyncIterator[StreamFrame]:
        """Yield every frame of the session until the ceiling, a failure, or disconnect."""
        try:
            yield self.open()
            while not self.expired:
                try:
                    frames = await self.poll()
                except ChangeLogError:
                    logger.exception("stream session %s failed to read the change log", self.session_id)
                    final = self.close(CloseReason.ERROR)
                    if final is not None:
                        yield final
                    return
                for frame in frames:
                    yield frame
                await self._clock.sleep(self.poll_interval)
                if is_disconnected is not None and await is_disconnected():
                    self.close(CloseReason.DISCONNECTED)
                    return
            final = self.close(CloseReason.TIMEOUT)
            if final is not None:
                yield final
        finally:
            # Generator closed early by the transport (client went away mid-send).
            if self.close_reason is None:
                self.close(CloseReason.DISCONNECTED)
