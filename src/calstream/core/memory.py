"""MemoryChangeLog: in-process change log with optional length-prefixed file persistence."""

from __future__ import annotations

import bisect
import logging
import struct
from pathlib import Path
from threading import RLock
from typing import Any

from calstream._util.clock import SYSTEM_CLOCK, Clock
from calstream._util.serialization import freeze_payload, pack, unpack
from calstream.core.store import ChangeLogStore, check_limit
from calstream.core.types import ChangeRecord, LogStats, RetentionPolicy, validate_event_type

logger = logging.getLogger(__name__)


class _Entry:
    __slots__ = ("id", "event_type", "payload", "created_at")

    def __init__(self, id: int, event_type: str, payload: bytes, created_at: float) -> None:
        self.id = id
        self.event_type = event_type
        self.payload = payload
        self.created_at = created_at

    def to_record(self) -> ChangeRecord:
        return ChangeRecord(
            id=self.id,
            event_type=self.event_type,
            payload=unpack(self.payload),
            created_at=self.created_at,
        )

    def encode(self) -> bytes:
        return pack({"i": self.id, "t": self.event_type, "p": self.payload, "c": self.created_at})


class MemoryChangeLog(ChangeLogStore):
    """Change log kept in a list ordered by id.

    Wire format of the optional file: [4-byte big-endian length][msgpack entry].
    The first entry after a rewrite is a counter marker ``{"n": next_id}`` so
    ids are never reused, even after clear() and a restart.

    File writes are synchronous and guarded by a threading lock, so the
    file-backed mode suits tests and single-process demos, not a server
    shared by several workers; use SQLiteChangeLog there.
    """

    name = "memory"

    def __init__(self, path: str | Path | None = None, *, clock: Clock | None = None) -> None:
        self._path = Path(path) if path else None
        self._clock = clock or SYSTEM_CLOCK
        self._lock = RLock()
        self._entries: list[_Entry] = []
        self._ids: list[int] = []
        self._next_id = 1
        if self._path and self._path.exists():
            self._load()

    def _load(self) -> None:
        assert self._path is not None
        data = self._path.read_bytes()
        offset = 0
        while offset < len(data):
            if offset + 4 > len(data):
                logger.warning("ignoring truncated length prefix at offset %s in %s", offset, self._path)
                break
            length = struct.unpack("!I", data[offset : offset + 4])[0]
            offset += 4
            if offset + length > len(data):
                logger.warning("ignoring truncated entry at offset %s in %s", offset, self._path)
                break
            try:
                raw = unpack(data[offset : offset + length])
            except Exception:
                logger.warning("skipping malformed change log entry at offset %s", offset)
                offset += length
                continue
            offset += length
            if "n" in raw:
                self._next_id = max(self._next_id, int(raw["n"]))
                continue
            entry = _Entry(int(raw["i"]), raw["t"], bytes(raw["p"]), float(raw["c"]))
            self._entries.append(entry)
            self._ids.append(entry.id)
            self._next_id = max(self._next_id, entry.id + 1)

    async def append(self, event_type: str, payload: Any, *, created_at: float | None = None) -> int:
        event_type = validate_event_type(event_type)
        frozen = freeze_payload(payload)
        with self._lock:
            entry = _Entry(
                self._next_id,
                event_type,
                frozen,
                self._clock.now() if created_at is None else created_at,
            )
            self._next_id += 1
            self._entries.append(entry)
            self._ids.append(entry.id)
            if self._path:
                with self._path.open("ab") as f:
                    if f.tell() == 0:
                        self._write_marker(f)
                    self._write_entry(f, entry.encode())
            return entry.id

    async def read_since(self, last_id: int, limit: int) -> list[ChangeRecord]:
        check_limit(limit)
        with self._lock:
            start = bisect.bisect_right(self._ids, last_id)
            window = self._entries[start : start + limit]
        return [entry.to_record() for entry in window]

    async def trim(self, policy: RetentionPolicy, *, now: float | None = None) -> int:
        if policy.is_noop:
            return 0
        with self._lock:
            keep = self._entries
            if policy.max_age is not None:
                threshold = (self._clock.now() if now is None else now) - policy.max_age
                keep = [e for e in keep if e.created_at >= threshold]
            if policy.max_records is not None and len(keep) > policy.max_records:
                keep = keep[len(keep) - policy.max_records :]
            removed = len(self._entries) - len(keep)
            if removed:
                self._entries = list(keep)
                self._ids = [e.id for e in self._entries]
                self._rewrite_file()
            return removed

    async def latest_id(self) -> int:
        with self._lock:
            return self._next_id - 1

    async def stats(self) -> LogStats:
        with self._lock:
            stats = LogStats(total=len(self._entries), latest_id=self._next_id - 1)
            for entry in self._entries:
                stats.by_type[entry.event_type] = stats.by_type.get(entry.event_type, 0) + 1
            if self._entries:
                stats.oldest = min(e.created_at for e in self._entries)
                stats.newest = max(e.created_at for e in self._entries)
            return stats

    async def clear(self) -> int:
        with self._lock:
            removed = len(self._entries)
            self._entries.clear()
            self._ids.clear()
            self._rewrite_file()
            return removed

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    @staticmethod
    def _write_entry(f: Any, encoded: bytes) -> None:
        f.write(struct.pack("!I", len(encoded)))
        f.write(encoded)

    def _write_marker(self, f: Any) -> None:
        self._write_entry(f, pack({"n": self._next_id}))

    def _rewrite_file(self) -> None:
        if self._path is None:
            return
        with self._path.open("wb") as f:
            self._write_marker(f)
            for entry in self._entries:
                self._write_entry(f, entry.encode())
