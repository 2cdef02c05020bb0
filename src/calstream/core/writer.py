"""ChangeLogWriter: the producer side, called by mutation handlers after they commit."""

from __future__ import annotations

import inspect
import logging
from collections.abc import Mapping
from typing import Any, Awaitable, Callable, Union

from calstream._util.clock import SYSTEM_CLOCK, Clock
from calstream.core.pruner import Pruner
from calstream.core.store import ChangeLogStore
from calstream.core.types import EventType, Payload

logger = logging.getLogger(__name__)

PayloadResolver = Callable[[Any], Union[Payload, Awaitable[Payload]]]


def event_view(event: Mapping[str, Any], owner: Mapping[str, Any]) -> Payload:
    """Build the calendar-ready, owner-denormalized view of an event row."""
    color = owner.get("color")
    return {
        "id": event["id"],
        "title": event.get("title", ""),
        "start": event.get("start") or event.get("start_datetime"),
        "end": event.get("end") or event.get("end_datetime") or event.get("start") or event.get("start_datetime"),
        "backgroundColor": color,
        "borderColor": color,
        "extendedProps": {
            "userId": owner.get("id", event.get("user_id")),
            "userName": owner.get("name"),
        },
    }


class ChangeLogWriter:
    """Appends exactly one record per mutation.

    This is a best-effort notification layer, not an outbox: a failed append is
    logged and swallowed so the already-committed mutation still succeeds, and
    the change simply does not propagate live.
    """

    def __init__(
        self,
        store: ChangeLogStore,
        *,
        pruner: Pruner | None = None,
        resolver: PayloadResolver | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._store = store
        self._pruner = pruner
        self._resolver = resolver
        self._clock = clock or SYSTEM_CLOCK

    async def _resolve(self, entity: Any, resolver: PayloadResolver | None) -> Payload:
        resolver = resolver or self._resolver
        if resolver is None:
            return dict(entity)
        result = resolver(entity)
        if inspect.isawaitable(result):
            result = await result
        return result

    async def record(self, event_type: str | EventType, payload: Any) -> int | None:
        """Append one record; returns its id, or None when the append failed."""
        try:
            record_id = await self._store.append(event_type, payload)
        except Exception:
            logger.exception("failed to append %s change record", getattr(event_type, "value", event_type))
            return None
        logger.info("broadcast update: %s id=%s", getattr(event_type, "value", event_type), record_id)
        if self._pruner is not None:
            await self._pruner.maybe_trim()
        return record_id

    async def _record_entity(self, event_type: EventType, entity: Any, resolver: PayloadResolver | None) -> int | None:
        try:
            payload = await self._resolve(entity, resolver)
        except Exception:
            logger.exception("failed to resolve %s payload", event_type.value)
            return None
        return await self.record(event_type, payload)

    async def event_created(self, event: Any, *, resolver: PayloadResolver | None = None) -> int | None:
        return await self._record_entity(EventType.CREATE, event, resolver)

    async def event_updated(self, event: Any, *, resolver: PayloadResolver | None = None) -> int | None:
        return await self._record_entity(EventType.UPDATE, event, resolver)

    async def event_deleted(self, event_id: Any) -> int | None:
        return await self.record(EventType.DELETE, {"id": event_id})

    async def user_created(self, user: Mapping[str, Any]) -> int | None:
        return await self.record(EventType.USER_CREATED, dict(user))

    async def broadcast_notification(
        self,
        message: str,
        type: str = "info",
        data: Mapping[str, Any] | None = None,
    ) -> int | None:
        payload = {"message": message, "type": type, "timestamp": int(self._clock.now())}
        payload.update(data or {})
        return await self.record(EventType.NOTIFICATION, payload)

    async def broadcast_user_activity(
        self,
        user_id: Any,
        activity: str,
        data: Mapping[str, Any] | None = None,
    ) -> int | None:
        payload = {"userId": user_id, "activity": activity, "timestamp": int(self._clock.now())}
        payload.update(data or {})
        return await self.record(EventType.USER_ACTIVITY, payload)
