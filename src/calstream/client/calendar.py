"""CalendarState: the in-memory calendar a page shows, patched by stream records."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from threading import RLock
from typing import Any

logger = logging.getLogger(__name__)


def _key(value: Any) -> str:
    return str(value)


def owner_of(entry: Mapping[str, Any]) -> str | None:
    props = entry.get("extendedProps") or {}
    owner = props.get("userId", entry.get("userId", entry.get("user_id")))
    return None if owner is None else _key(owner)


class CalendarState:
    """Calendar entries keyed by event id, filtered by the visible users.

    ``visible_users`` of None shows every owner; entries without an owner are
    always shown.
    """

    def __init__(self, visible_users: Iterable[Any] | None = None) -> None:
        self._lock = RLock()
        self._entries: dict[str, dict[str, Any]] = {}
        self._visible: set[str] | None = None
        if visible_users is not None:
            self.set_visible_users(visible_users)

    def set_visible_users(self, user_ids: Iterable[Any] | None) -> None:
        with self._lock:
            self._visible = None if user_ids is None else {_key(u) for u in user_ids}
            if self._visible is not None:
                hidden = [k for k, e in self._entries.items() if not self.is_visible(e)]
                for k in hidden:
                    del self._entries[k]

    def is_visible(self, entry: Mapping[str, Any]) -> bool:
        if self._visible is None:
            return True
        owner = owner_of(entry)
        return owner is None or owner in self._visible

    def load(self, entries: Iterable[Mapping[str, Any]]) -> None:
        """Replace everything with a baseline fetched through the CRUD read path."""
        with self._lock:
            self._entries.clear()
            for entry in entries:
                if "id" in entry and self.is_visible(entry):
                    self._entries[_key(entry["id"])] = dict(entry)

    def add(self, entry: Mapping[str, Any]) -> bool:
        if "id" not in entry:
            logger.warning("ignoring calendar entry without id")
            return False
        with self._lock:
            if not self.is_visible(entry):
                return False
            self._entries[_key(entry["id"])] = dict(entry)
            return True

    def update(self, entry: Mapping[str, Any]) -> bool:
        if "id" not in entry:
            logger.warning("ignoring calendar update without id")
            return False
        with self._lock:
            current = self._entries.get(_key(entry["id"]))
            if current is None:
                # Not shown yet (e.g. created before this page loaded): add if visible.
                return self.add(entry)
            props = {**(current.get("extendedProps") or {}), **(entry.get("extendedProps") or {})}
            current.update(entry)
            if props:
                current["extendedProps"] = props
            if not self.is_visible(current):
                del self._entries[_key(entry["id"])]
            return True

    def remove(self, entry_id: Any) -> bool:
        with self._lock:
            return self._entries.pop(_key(entry_id), None) is not None

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def get(self, entry_id: Any) -> dict[str, Any] | None:
        with self._lock:
            entry = self._entries.get(_key(entry_id))
            return dict(entry) if entry is not None else None

    @property
    def ids(self) -> list[str]:
        with self._lock:
            return list(self._entries)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, entry_id: Any) -> bool:
        with self._lock:
            return _key(entry_id) in self._entries
