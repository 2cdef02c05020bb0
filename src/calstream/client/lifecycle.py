"""ClientHooks + ClientEvent enum: how the controller notifies the page."""

from __future__ import annotations

import inspect
import logging
from enum import Enum, auto
from typing import Any, Callable

logger = logging.getLogger(__name__)


class ClientEvent(Enum):
    STATUS_CHANGE = auto()
    RECORD = auto()
    USERS_REFRESH = auto()
    NOTIFICATION = auto()
    ERROR = auto()


# Fired from synchronous code paths (status transitions, transport failures).
SYNC_EVENTS = frozenset({ClientEvent.STATUS_CHANGE, ClientEvent.ERROR})

Hook = Callable[..., Any]


def _discard(result: Any, event: ClientEvent) -> None:
    logger.error("hook for %s returned an awaitable from a synchronous fire; discarding it", event.name)
    close = getattr(result, "close", None)
    if close is not None:
        close()


class ClientHooks:
    """Page callbacks keyed by ClientEvent.

    A failing hook is logged and skipped: the stream must keep running whatever
    the page's widgets do. Coroutine hooks are only accepted for events fired
    with ``fire_async``.
    """

    def __init__(self) -> None:
        self._hooks: dict[ClientEvent, list[Hook]] = {}

    def on(self, event: ClientEvent, hook: Hook) -> None:
        if event in SYNC_EVENTS and inspect.iscoroutinefunction(hook):
            raise TypeError(f"{event.name} hooks are called synchronously; register a plain function")
        self._hooks.setdefault(event, []).append(hook)

    def off(self, event: ClientEvent, hook: Hook) -> None:
        hooks = self._hooks.get(event, [])
        if hook in hooks:
            hooks.remove(hook)

    def fire(self, event: ClientEvent, *args: Any, **kwargs: Any) -> None:
        for hook in list(self._hooks.get(event, [])):
            try:
                result = hook(*args, **kwargs)
            except Exception:
                logger.exception("%s hook %r failed", event.name, hook)
                continue
            if inspect.isawaitable(result):
                _discard(result, event)

    async def fire_async(self, event: ClientEvent, *args: Any, **kwargs: Any) -> None:
        for hook in list(self._hooks.get(event, [])):
            try:
                result = hook(*args, **kwargs)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("%s hook %r failed", event.name, hook)

    def hook(self, event: ClientEvent) -> Callable[[Hook], Hook]:
        """Decorator form of ``on``."""

        def decorator(fn: Hook) -> Hook:
            self.on(event, fn)
            return fn

        return decorator
