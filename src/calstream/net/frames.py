"""StreamFrame wire format: Server-Sent Events text units and JSON messages."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Iterator

from calstream.core.types import CONTROL_TYPES, ChangeRecord

logger = logging.getLogger(__name__)


@dataclass
class StreamFrame:
    """One unit of the update stream: numeric id, event type, JSON payload."""

    id: int
    event: str
    data: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_record(cls, record: ChangeRecord) -> StreamFrame:
        return cls(id=record.id, event=record.event_type, data=record.payload)

    @property
    def is_control(self) -> bool:
        return self.event in CONTROL_TYPES

    def encode_sse(self) -> str:
        body = json.dumps(self.data, separators=(",", ":"), default=str)
        return f"id: {self.id}\nevent: {self.event}\ndata: {body}\n\n"

    def to_json(self) -> str:
        return json.dumps({"id": self.id, "event": self.event, "data": self.data}, default=str)

    @classmethod
    def from_json(cls, text: str | bytes) -> StreamFrame:
        try:
            d = json.loads(text)
        except (TypeError, ValueError) as exc:
            raise ValueError("invalid frame encoding") from exc
        if not isinstance(d, dict):
            raise ValueError("invalid frame payload shape")
        if not {"id", "event", "data"}.issubset(d.keys()):
            raise ValueError("frame missing required fields")
        return cls._validated(d["id"], d["event"], d["data"])

    @classmethod
    def _validated(cls, frame_id: Any, event: Any, data: Any) -> StreamFrame:
        if isinstance(frame_id, bool) or not isinstance(frame_id, int) or frame_id < 0:
            raise ValueError("frame id must be a non-negative int")
        if not isinstance(event, str) or not event:
            raise ValueError("frame event must be a non-empty string")
        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise ValueError("frame data must be a JSON object")
        return cls(id=frame_id, event=event, data=data)


class SSEParser:
    """Incremental parser for ``text/event-stream`` bodies.

    Feed it lines (without their terminators); it returns a frame whenever a
    blank line completes one. Comment lines and ``retry`` fields are ignored.
    A unit without an ``id`` field inherits the last one seen, as browsers do.
    """

    def __init__(self) -> None:
        self.last_event_id = 0
        self._event: str | None = None
        self._data: list[str] = []
        self._id: int | None = None

    def feed_line(self, line: str) -> StreamFrame | None:
        line = line.rstrip("\r")
        if line == "":
            return self._dispatch()
        if line.startswith(":"):
            return None
        name, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if name == "event":
            self._event = value
        elif name == "data":
            self._data.append(value)
        elif name == "id":
            try:
                self._id = int(value)
            except ValueError:
                logger.warning("ignoring non-numeric SSE id %r", value)
        # "retry" and unknown fields are ignored.
        return None

    def feed(self, lines: Iterable[str]) -> Iterator[StreamFrame]:
        for line in lines:
            frame = self.feed_line(line)
            if frame is not None:
                yield frame

    def _dispatch(self) -> StreamFrame | None:
        event, data, frame_id = self._event, self._data, self._id
        self._event, self._data, self._id = None, [], None
        if frame_id is not None:
            self.last_event_id = frame_id
        if not data:
            return None
        try:
            payload = json.loads("\n".join(data))
        except ValueError:
            logger.warning("dropping SSE unit with malformed JSON data")
            return None
        try:
            return StreamFrame._validated(self.last_event_id, event or "message", payload)
        except ValueError:
            logger.warning("dropping SSE unit with invalid shape (event=%s)", event)
            return None
