"""Type definitions for the change log core."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


RecordID = int
Payload = dict[str, Any]


class EventType(str, Enum):
    """Well-known record and control frame types."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    USER_CREATED = "user_created"
    NOTIFICATION = "notification"
    USER_ACTIVITY = "user_activity"
    # Control frames, emitted by stream sessions only.
    HEARTBEAT = "heartbeat"
    TIMEOUT = "timeout"
    ERROR = "error"


CONTROL_TYPES = frozenset({EventType.HEARTBEAT.value, EventType.TIMEOUT.value, EventType.ERROR.value})

MAX_EVENT_TYPE_LENGTH = 50


def validate_event_type(event_type: str) -> str:
    """Return the normalized record type or raise ValueError.

    Control frame types are rejected so producers cannot forge session signals.
    """
    if isinstance(event_type, EventType):
        event_type = event_type.value
    if not isinstance(event_type, str) or not event_type.strip():
        raise ValueError("event type must be a non-empty string")
    event_type = event_type.strip()
    if len(event_type) > MAX_EVENT_TYPE_LENGTH:
        raise ValueError(f"event type longer than {MAX_EVENT_TYPE_LENGTH} characters")
    if event_type in CONTROL_TYPES:
        raise ValueError(f"event type {event_type!r} is reserved for stream control frames")
    return event_type


@dataclass(frozen=True)
class ChangeRecord:
    """One immutable entry of the change log."""

    id: RecordID
    event_type: str
    payload: Payload
    created_at: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "event_type": self.event_type,
            "event_data": self.payload,
            "created_at": self.created_at,
        }


@dataclass(frozen=True)
class RetentionPolicy:
    """Delete-by-threshold retention. A record goes if either limit condemns it."""

    max_records: int | None = 100
    max_age: float | None = 3600.0  # seconds

    def __post_init__(self) -> None:
        if self.max_records is not None and self.max_records < 0:
            raise ValueError("max_records must be >= 0")
        if self.max_age is not None and self.max_age < 0:
            raise ValueError("max_age must be >= 0")

    @property
    def is_noop(self) -> bool:
        return self.max_records is None and self.max_age is None


@dataclass
class LogStats:
    total: int = 0
    latest_id: int = 0
    oldest: float | None = None
    newest: float | None = None
    by_type: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_updates": self.total,
            "latest_id": self.latest_id,
            "oldest_update": self.oldest,
            "newest_update": self.newest,
            "by_type": dict(self.by_type),
        }
