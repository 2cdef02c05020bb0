"""ChangeLogStore: the contract every change log backend implements."""

from __future__ import annotations

import abc
from typing import Any

from calstream.core.types import ChangeRecord, LogStats, RetentionPolicy


class ChangeLogStore(abc.ABC):
    """Append-only, ID-ordered log of mutations.

    Every operation is independently safe to interleave across sessions and
    writers; backends rely on their own atomic insert and delete statements
    rather than application-level locks spanning several operations.
    """

    name = "change_log"

    async def open(self) -> None:
        """Acquire backend resources. Default: nothing to do."""

    async def close(self) -> None:
        """Release backend resources. Default: nothing to do."""

    @abc.abstractmethod
    async def append(self, event_type: str, payload: Any, *, created_at: float | None = None) -> int:
        """Insert one record and return its newly assigned, strictly increasing id."""

    @abc.abstractmethod
    async def read_since(self, last_id: int, limit: int) -> list[ChangeRecord]:
        """Return at most ``limit`` records with ``id > last_id`` in ascending id order."""

    @abc.abstractmethod
    async def trim(self, policy: RetentionPolicy, *, now: float | None = None) -> int:
        """Delete records condemned by ``policy`` and return how many went."""

    @abc.abstractmethod
    async def latest_id(self) -> int:
        """Highest id ever assigned (0 for a fresh log)."""

    @abc.abstractmethod
    async def stats(self) -> LogStats: ...

    @abc.abstractmethod
    async def clear(self) -> int:
        """Delete every record without resetting the id counter."""

    async def __aenter__(self) -> ChangeLogStore:
        await self.open()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()


def check_limit(limit: int) -> int:
    if not isinstance(limit, int) or limit < 1:
        raise ValueError("limit must be a positive int")
    return limit
