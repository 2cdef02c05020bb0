"""ReconnectController: one logical, always-on stream for the lifetime of a page."""

from __future__ import annotations

import logging
from contextlib import aclosing
from enum import Enum
from typing import Any

import anyio

from calstream._util.clock import SYSTEM_CLOCK, Clock
from calstream.client.calendar import CalendarState
from calstream.client.lifecycle import ClientEvent, ClientHooks
from calstream.core.types import EventType
from calstream.net.frames import StreamFrame
from calstream.net.transport import Transport

logger = logging.getLogger(__name__)


class ConnectionStatus(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    FAILED = "failed"


class Outcome(Enum):
    """Why one connection ended."""

    ROTATE = "rotate"  # planned server-side timeout
    ERROR = "error"  # server sent an error frame
    DROPPED = "dropped"  # transport failure or stream ended without a closing frame
    STOPPED = "stopped"  # stop() was called


class ReconnectController:
    """Hides the server's bounded session length and transient failures.

    Composes a Transport, a CalendarState and ClientHooks. The cursor only ever
    moves forward and survives every reconnect, so each new connection resumes
    from the furthest record seen.
    """

    def __init__(
        self,
        transport: Transport,
        *,
        calendar: CalendarState | None = None,
        cursor: int = 0,
        backoff_base: float = 1.0,
        backoff_max: float = 30.0,
        max_attempts: int | None = None,
        clock: Clock | None = None,
        hooks: ClientHooks | None = None,
    ) -> None:
        self._transport = transport
        self.calendar = calendar if calendar is not None else CalendarState()
        self.cursor = cursor
        self.reconnect_attempts = 0
        self._backoff_base = backoff_base
        self._backoff_max = backoff_max
        self._max_attempts = max_attempts
        self._clock = clock or SYSTEM_CLOCK
        self._hooks = hooks or ClientHooks()
        self._status = ConnectionStatus.DISCONNECTED
        self._running = False
        self._stopped = False
        self._scope: anyio.CancelScope | None = None
        self._wake: anyio.Event | None = None

    @classmethod
    def from_config(cls, transport: Transport, config: Any, **kwargs: Any) -> ReconnectController:
        return cls(
            transport,
            backoff_base=config.backoff_base,
            backoff_max=config.backoff_max,
            max_attempts=config.max_attempts,
            **kwargs,
        )

    @property
    def status(self) -> ConnectionStatus:
        return self._status

    @property
    def hooks(self) -> ClientHooks:
        return self._hooks

    @property
    def is_running(self) -> bool:
        return self._running

    def on(self, event: ClientEvent, hook: Any) -> None:
        self._hooks.on(event, hook)

    def backoff_delay(self, attempts: int | None = None) -> float:
        n = self.reconnect_attempts if attempts is None else attempts
        return min(self._backoff_base * (2**n), self._backoff_max)

    def _set_status(self, status: ConnectionStatus) -> None:
        if status is self._status:
            return
        self._status = status
        logger.info("stream status: %s", status.value)
        self._hooks.fire(ClientEvent.STATUS_CHANGE, status)

    async def apply(self, frame: StreamFrame) -> Outcome | None:
        """Apply one frame to local state; returns an Outcome when the connection should end."""
        if frame.is_control:
            self.cursor = max(self.cursor, frame.id)
            if frame.event == EventType.TIMEOUT.value:
                logger.info("server rotated the stream at cursor=%s; reconnecting", self.cursor)
                return Outcome.ROTATE
            if frame.event == EventType.ERROR.value:
                logger.warning("server reported a stream error: %s", frame.data.get("message"))
                self._hooks.fire(ClientEvent.ERROR, frame)
                return Outcome.ERROR
            return None

        if frame.id <= self.cursor:
            logger.debug("skipping already-applied record id=%s (cursor=%s)", frame.id, self.cursor)
            return None
        try:
            await self._dispatch(frame)
        except Exception:
            logger.exception("error handling %s record id=%s", frame.event, frame.id)
        self.cursor = frame.id
        return None

    async def _dispatch(self, frame: StreamFrame) -> None:
        event, data = frame.event, frame.data
        if event == EventType.CREATE.value:
            self.calendar.add(data)
        elif event == EventType.UPDATE.value:
            self.calendar.update(data)
        elif event == EventType.DELETE.value:
            self.calendar.remove(data.get("id"))
        elif event == EventType.USER_CREATED.value:
            await self._hooks.fire_async(ClientEvent.USERS_REFRESH, data)
        else:
            await self._hooks.fire_async(ClientEvent.NOTIFICATION, frame)
        await self._hooks.fire_async(ClientEvent.RECORD, frame)

    async def connect(self, cursor: int | None = None) -> Outcome:
        """Open one connection resuming after ``cursor`` and consume it until it ends."""
        if cursor is not None:
            self.cursor = cursor
        # A planned rotation reconnects without leaving the connected status.
        if self._status is not ConnectionStatus.CONNECTED:
            self._set_status(ConnectionStatus.CONNECTING)
        logger.info("opening stream with lastEventId=%s", self.cursor)
        try:
            with anyio.CancelScope() as scope:
                self._scope = scope
                async with self._transport.connect(self.cursor) as frames:
                    self.reconnect_attempts = 0
                    self._set_status(ConnectionStatus.CONNECTED)
                    async with aclosing(frames):
                        async for frame in frames:
                            outcome = await self.apply(frame)
                            if outcome is not None:
                                return outcome
            if scope.cancelled_caught:
                return Outcome.STOPPED
        except ConnectionError as exc:
            logger.warning("stream transport failure: %s", exc)
            self._hooks.fire(ClientEvent.ERROR, exc)
            return Outcome.DROPPED
        finally:
            self._scope = None
        logger.warning("stream ended without a closing frame")
        return Outcome.DROPPED

    async def _wait(self, delay: float) -> None:
        wake = self._wake = anyio.Event()
        try:
            async with anyio.create_task_group() as tg:

                async def sleeper() -> None:
                    await self._clock.sleep(delay)
                    tg.cancel_scope.cancel()

                async def waker() -> None:
                    await wake.wait()
                    tg.cancel_scope.cancel()

                tg.start_soon(sleeper)
                tg.start_soon(waker)
        finally:
            self._wake = None

    async def run(self) -> None:
        """Keep a stream open until stop(), reconnecting with exponential backoff."""
        if self._running:
            raise RuntimeError("controller is already running")
        self._running = True
        self._stopped = False
        try:
            while self._running:
                outcome = await self.connect()
                if outcome is Outcome.STOPPED or not self._running:
                    break
                if outcome is Outcome.ROTATE:
                    continue
                self._set_status(ConnectionStatus.DISCONNECTED)
                self.reconnect_attempts += 1
                if self._max_attempts is not None and self.reconnect_attempts > self._max_attempts:
                    logger.error("giving up after %s reconnection attempts", self._max_attempts)
                    self._set_status(ConnectionStatus.FAILED)
                    break
                delay = self.backoff_delay()
                logger.info("reconnecting in %.2fs (attempt %s)", delay, self.reconnect_attempts)
                await self._wait(delay)
        finally:
            self._running = False
            if self._status is not ConnectionStatus.FAILED:
                self._set_status(ConnectionStatus.DISCONNECTED)

    def notify_visibility(self, visible: bool) -> bool:
        """Page became visible again: reconnect now if not connected.

        Returns True when the caller's stream is about to reconnect. While
        ``run()`` is waiting out a backoff the wait is cut short. When ``run()``
        has already ended (attempts exhausted, or never started) the controller
        is reset to a fresh ``disconnected`` state and the caller is expected to
        start ``run()`` again. After an explicit ``stop()`` nothing happens.
        """
        if not visible or self._status is ConnectionStatus.CONNECTED or self._stopped:
            return False
        if self._wake is not None:
            logger.info("page visible while %s; reconnecting immediately", self._status.value)
            self._wake.set()
            return True
        if self._running:
            # Mid-connect: the attempt in flight already is the reconnect.
            return False
        logger.info("page visible while idle (%s); ready to reconnect", self._status.value)
        self.reconnect_attempts = 0
        self._set_status(ConnectionStatus.DISCONNECTED)
        return True

    def stop(self) -> None:
        self._stopped = True
        self._running = False
        if self._scope is not None:
            self._scope.cancel()
        if self._wake is not None:
            self._wake.set()

    async def aclose(self) -> None:
        self.stop()
        await self._transport.close()
